"""
Time-domain PPG analysis.

Algorithm
---------
1. Summarise the buffered brightness samples: mean, extrema, range and
   population standard deviation.
2. Place an adaptive detection line slightly above the mean
   (``average + 0.3 × std_dev``).  A noisy segment raises the line, a calm
   one lowers it.
3. Walk the samples and keep every rising edge through the line that comes
   more than 300 ms after the previous one.  Each accepted edge stands for
   one heartbeat.
4. Convert the gaps between edges into inter-beat intervals, drop the ones
   further than 30 % from the median interval (missed or doubled beats),
   and turn the mean of the rest into beats per minute.

All functions here are pure: they never modify their inputs and return
the same result for the same samples.
"""

from __future__ import annotations

from typing import NamedTuple, Optional, Sequence, Tuple

import numpy as np

from pulse_monitor.sample_buffer import Sample

THRESHOLD_FACTOR = 0.3
REFRACTORY_MS = 300.0
OUTLIER_TOLERANCE = 0.3


class DataStats(NamedTuple):
    """Summary of the buffer contents at one tick."""

    average: float
    min: float
    max: float
    range: float
    std_dev: float
    threshold: float
    crossings: Tuple[Sample, ...]


def analyze_samples(
    samples: Sequence[Sample],
    threshold_factor: float = THRESHOLD_FACTOR,
    refractory_ms: float = REFRACTORY_MS,
) -> DataStats:
    """
    Compute statistics and the accepted crossings of *samples*.

    Parameters
    ----------
    samples:
        Chronological samples; must not be empty.
    threshold_factor:
        Multiple of the standard deviation added to the mean to obtain the
        detection threshold.
    refractory_ms:
        Minimum spacing between two accepted crossings.

    Raises
    ------
    ValueError
        If *samples* is empty.
    """
    if not samples:
        raise ValueError("cannot analyse an empty sample sequence")

    values = np.fromiter((s.value for s in samples), dtype=np.float64, count=len(samples))
    lo = float(values.min())
    hi = float(values.max())
    # Rounding can push the mean of a flat signal just outside its extrema
    average = min(max(float(values.mean()), lo), hi)
    std_dev = float(np.sqrt(np.mean((values - average) ** 2)))

    threshold = average + std_dev * threshold_factor
    crossings = find_crossings(samples, threshold, refractory_ms)

    return DataStats(
        average=average,
        min=lo,
        max=hi,
        range=hi - lo,
        std_dev=std_dev,
        threshold=threshold,
        crossings=crossings,
    )


def find_crossings(
    samples: Sequence[Sample],
    threshold: float,
    refractory_ms: float = REFRACTORY_MS,
) -> Tuple[Sample, ...]:
    """
    Return the rising edges of *samples* through *threshold*.

    A sample is accepted when it is above the threshold, the sample before
    it was at or below it, and more than *refractory_ms* have passed since
    the previously accepted crossing (or since the first sample).
    """
    if not samples:
        return ()

    accepted = []
    previous = samples[0]
    last_crossing_time = samples[0].time

    for current in samples:
        if (
            current.value > threshold
            and previous.value <= threshold
            and current.time - last_crossing_time > refractory_ms
        ):
            accepted.append(current)
            last_crossing_time = current.time
        previous = current

    return tuple(accepted)


def median_interval(intervals: Sequence[float]) -> float:
    """
    Middle element of the sorted intervals.

    For an even count this is the upper of the two middle values (index
    ``n // 2``), not their average.
    """
    return sorted(intervals)[len(intervals) // 2]


def estimate_bpm(
    crossings: Sequence[Sample],
    tolerance: float = OUTLIER_TOLERANCE,
) -> Optional[float]:
    """
    Turn crossing timestamps into a heart rate.

    Returns ``None`` when fewer than two crossings exist or when no
    interval lies within ``tolerance × median`` of the median interval.
    """
    if len(crossings) < 2:
        return None

    intervals = [b.time - a.time for a, b in zip(crossings, crossings[1:])]
    median = median_interval(intervals)
    kept = [i for i in intervals if abs(i - median) < median * tolerance]
    if not kept:
        return None

    return 60000.0 / (sum(kept) / len(kept))
