"""
Bounded, time-ordered store of brightness samples.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, NamedTuple, Optional, Tuple

# 5 minutes at 1 Hz nominal; the real rate follows the capture frame rate
MAX_SAMPLES = 60 * 5


class Sample(NamedTuple):
    """One brightness reading.

    ``value`` is normalised to [0, 1]; ``time`` is a monotonic timestamp
    in milliseconds.
    """

    value: float
    time: float


class SampleBuffer:
    """
    FIFO ring buffer of :class:`Sample` objects.

    Insertion order is chronological order.  When the buffer is full the
    oldest sample is dropped before the new one is stored, so its length
    never exceeds ``capacity``.

    Parameters
    ----------
    capacity:
        Maximum number of samples kept (default :data:`MAX_SAMPLES`).
    """

    def __init__(self, capacity: int = MAX_SAMPLES) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._samples: Deque[Sample] = deque(maxlen=capacity)

    def append(self, sample: Sample) -> None:
        self._samples.append(sample)

    def contents(self) -> Tuple[Sample, ...]:
        """Return an immutable, chronological snapshot of the buffer."""
        return tuple(self._samples)

    def clear(self) -> None:
        self._samples.clear()

    @property
    def capacity(self) -> int:
        return self._samples.maxlen

    @property
    def fill_ratio(self) -> float:
        """How full the buffer is (0 – 1)."""
        return len(self._samples) / self._samples.maxlen

    @property
    def latest(self) -> Optional[Sample]:
        return self._samples[-1] if self._samples else None

    def __len__(self) -> int:
        return len(self._samples)
