"""
Heart-rate monitor controller.

Owns one measurement session: the capture source, the sample buffer and
the listener callbacks.  Every delivered frame runs one synchronous tick:

    frame → brightness sample → buffer → statistics → crossings → BPM
          → callbacks

The controller is either ``IDLE`` or ``RUNNING``.  ``start()`` acquires the
capture source and arms a short warm-up (frames arriving during the first
1.5 s are dropped while exposure and the torch settle); ``stop()`` releases
it again.  Both can be repeated any number of times.
"""

from __future__ import annotations

import enum
import logging
import time
from typing import Callable, Dict, Mapping, Optional, Tuple

import numpy as np

from pulse_monitor.analysis import (
    OUTLIER_TOLERANCE,
    REFRACTORY_MS,
    THRESHOLD_FACTOR,
    DataStats,
    analyze_samples,
    estimate_bpm,
)
from pulse_monitor.camera import CaptureSource
from pulse_monitor.errors import CaptureUnavailable, TransientFrameError
from pulse_monitor.frame_sampler import FrameSampler
from pulse_monitor.sample_buffer import MAX_SAMPLES, Sample, SampleBuffer
from pulse_monitor.vitals import VitalsEstimator

logger = logging.getLogger(__name__)

START_DELAY_MS = 1500.0
STALE_AFTER_MS = 3000.0
PULSE_GATE_FACTOR = 0.8
MAX_MISSING_FRAMES = 10

BpmCallback = Callable[[Optional[float]], None]
DataCallback = Callable[[Tuple[Sample, ...], DataStats], None]
PulseCallback = Callable[[float], None]
VitalsCallback = Callable[[Dict[str, Optional[float]]], None]


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class MonitorState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class HeartRateMonitor:
    """
    Streaming PPG heart-rate estimator.

    Parameters
    ----------
    capture:
        Frame source implementing :class:`~pulse_monitor.camera.CaptureSource`.
    on_bpm_change:
        Called on every tick with the BPM estimate, or ``None`` while it is
        unavailable.
    on_data_update:
        Called on every tick with a snapshot of the buffer and its statistics.
    on_pulse:
        Called with the tick timestamp (ms) roughly once per detected beat
        period, for driving a pulse animation or a beep.
    on_vitals_update:
        Called on every tick with ``{name: value}`` for the estimators in
        *vitals*.
    vitals:
        Named secondary estimators (e.g. ``{"spo2": ..., "hrv": ...}``).
    sampler:
        Frame → brightness converter.  Default: :class:`FrameSampler`.
    capacity:
        Sample buffer size.
    start_delay_ms:
        Warm-up period after :meth:`start` during which frames are dropped.
    stale_after_ms:
        Without a new sample for this long, the estimate is withdrawn
        (see :meth:`check_stale`).
    clear_on_start:
        Empty the buffer on every :meth:`start` so that a new session never
        mixes with samples from the previous one.
    clock:
        Callable returning a monotonic timestamp in milliseconds.
    """

    def __init__(
        self,
        capture: CaptureSource,
        *,
        on_bpm_change: Optional[BpmCallback] = None,
        on_data_update: Optional[DataCallback] = None,
        on_pulse: Optional[PulseCallback] = None,
        on_vitals_update: Optional[VitalsCallback] = None,
        vitals: Optional[Mapping[str, VitalsEstimator]] = None,
        sampler: Optional[FrameSampler] = None,
        capacity: int = MAX_SAMPLES,
        start_delay_ms: float = START_DELAY_MS,
        stale_after_ms: float = STALE_AFTER_MS,
        threshold_factor: float = THRESHOLD_FACTOR,
        refractory_ms: float = REFRACTORY_MS,
        outlier_tolerance: float = OUTLIER_TOLERANCE,
        clear_on_start: bool = True,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._capture = capture
        self.on_bpm_change = on_bpm_change
        self.on_data_update = on_data_update
        self.on_pulse = on_pulse
        self.on_vitals_update = on_vitals_update
        self.vitals: Dict[str, VitalsEstimator] = dict(vitals or {})

        self._sampler = sampler if sampler is not None else FrameSampler()
        self._buffer = SampleBuffer(capacity)
        self.start_delay_ms = start_delay_ms
        self.stale_after_ms = stale_after_ms
        self.threshold_factor = threshold_factor
        self.refractory_ms = refractory_ms
        self.outlier_tolerance = outlier_tolerance
        self.clear_on_start = clear_on_start
        self._clock = clock if clock is not None else monotonic_ms

        self._state = MonitorState.IDLE
        self._ticks_from: float = 0.0
        self._last_sample_at: Optional[float] = None
        self._last_pulse_time: float = 0.0
        self._stalled = False
        self._skipped_frames = 0

        self._last_bpm: Optional[float] = None
        self._last_stats: Optional[DataStats] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Acquire the capture source and begin accepting frames.

        Raises
        ------
        CaptureUnavailable
            If the source cannot be acquired.  The monitor stays idle.
        """
        if self._state is MonitorState.RUNNING:
            logger.warning("start() called while already running – ignored.")
            return

        try:
            self._capture.acquire()
        except CaptureUnavailable as exc:
            logger.error("Cannot start monitoring: %s", exc)
            raise

        if self.clear_on_start:
            self.reset()
        self._ticks_from = self._clock() + self.start_delay_ms
        self._last_sample_at = None
        self._stalled = False
        self._skipped_frames = 0
        self._state = MonitorState.RUNNING
        logger.info(
            "Monitoring started – warm-up %.0f ms, buffer %d samples.",
            self.start_delay_ms,
            self._buffer.capacity,
        )

    def stop(self) -> None:
        """Release the capture source and go idle.  Safe to call at any time."""
        was_running = self._state is MonitorState.RUNNING
        try:
            self._capture.release()
        finally:
            self._state = MonitorState.IDLE
            self._last_pulse_time = 0.0
            self._stalled = False
        if was_running:
            logger.info("Monitoring stopped after %d samples.", len(self._buffer))

    def toggle(self) -> None:
        """Start when idle, stop when running."""
        if self._state is MonitorState.RUNNING:
            self.stop()
        else:
            self.start()

    def reset(self) -> None:
        """Clear the sample buffer and the last estimate."""
        self._buffer.clear()
        self._last_bpm = None
        self._last_stats = None

    def __enter__(self) -> "HeartRateMonitor":
        self.start()
        return self

    def __exit__(self, *_) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def process_frame(
        self,
        frame: Optional[np.ndarray],
        timestamp_ms: Optional[float] = None,
    ) -> Optional[DataStats]:
        """
        Run one tick for *frame*.

        *timestamp_ms* defaults to the monitor clock.  An explicit value must
        be on the same time base as that clock: warm-up and stall detection
        compare it with timestamps taken from the clock.

        Returns the statistics computed for this tick, or ``None`` when the
        frame was not used (monitor idle, warming up, unreadable frame, or a
        timestamp older than the newest buffered sample).
        """
        if self._state is not MonitorState.RUNNING:
            return None

        now = self._clock() if timestamp_ms is None else timestamp_ms
        if now < self._ticks_from:
            return None

        try:
            value = self._sampler.sample(frame)
        except TransientFrameError as exc:
            self._skipped_frames += 1
            logger.debug("Skipping frame: %s", exc)
            return None

        latest = self._buffer.latest
        if latest is not None and now < latest.time:
            self._skipped_frames += 1
            logger.debug("Skipping frame stamped %.1f ms before the newest sample.", latest.time - now)
            return None

        self._buffer.append(Sample(value, now))
        self._last_sample_at = now
        if self._stalled:
            logger.info("Frames are arriving again.")
            self._stalled = False

        samples = self._buffer.contents()
        stats = analyze_samples(samples, self.threshold_factor, self.refractory_ms)
        bpm = estimate_bpm(stats.crossings, self.outlier_tolerance)
        self._last_stats = stats
        self._last_bpm = bpm

        self._publish(bpm, samples, stats, now)
        return stats

    def check_stale(self, now_ms: Optional[float] = None) -> bool:
        """
        Withdraw the estimate if no sample has arrived for ``stale_after_ms``.

        Publishes ``None`` through ``on_bpm_change`` once per stall and
        returns True while the feed is considered stalled.
        """
        if self._state is not MonitorState.RUNNING:
            return False

        now = self._clock() if now_ms is None else now_ms
        if now < self._ticks_from:
            return False
        since = self._last_sample_at if self._last_sample_at is not None else self._ticks_from
        if now - since < self.stale_after_ms:
            return False

        if not self._stalled:
            self._stalled = True
            self._last_bpm = None
            logger.warning("No usable frame for %.0f ms – estimate withdrawn.", now - since)
            if self.on_bpm_change is not None:
                self.on_bpm_change(None)
        return True

    def run(self, max_frames: Optional[int] = None) -> int:
        """
        Read frames from the capture source and tick until stopped.

        Starts the monitor first if it is idle.  Returns after *max_frames*
        reads (if given) or once :meth:`stop` has been called, e.g. from a
        callback.  Gives up and stops after ``MAX_MISSING_FRAMES`` consecutive
        reads deliver no frame.  Returns the number of frames read.
        """
        if self._state is MonitorState.IDLE:
            self.start()

        frames_read = 0
        missing_streak = 0
        while self._state is MonitorState.RUNNING:
            if max_frames is not None and frames_read >= max_frames:
                break
            frame = self._capture.read_frame()
            frames_read += 1
            if frame is None:
                missing_streak += 1
                if missing_streak >= MAX_MISSING_FRAMES:
                    logger.error(
                        "Capture returned %d consecutive empty frames – stopping.",
                        missing_streak,
                    )
                    self.stop()
                    break
            else:
                missing_streak = 0
            if self.process_frame(frame) is None:
                self.check_stale()
        return frames_read

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is MonitorState.RUNNING

    @property
    def warming_up(self) -> bool:
        return self.running and self._clock() < self._ticks_from

    @property
    def last_bpm(self) -> Optional[float]:
        return self._last_bpm

    @property
    def last_stats(self) -> Optional[DataStats]:
        return self._last_stats

    @property
    def last_pulse_time(self) -> float:
        return self._last_pulse_time

    @property
    def samples(self) -> Tuple[Sample, ...]:
        return self._buffer.contents()

    @property
    def buffer_fill_ratio(self) -> float:
        return self._buffer.fill_ratio

    @property
    def skipped_frames(self) -> int:
        return self._skipped_frames

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _publish(
        self,
        bpm: Optional[float],
        samples: Tuple[Sample, ...],
        stats: DataStats,
        now: float,
    ) -> None:
        if self.on_bpm_change is not None:
            self.on_bpm_change(bpm)

        if self.vitals and self.on_vitals_update is not None:
            self.on_vitals_update({
                name: (estimator.estimate(bpm, stats) if bpm is not None else None)
                for name, estimator in self.vitals.items()
            })

        if bpm is not None and now - self._last_pulse_time > (60000.0 / bpm) * PULSE_GATE_FACTOR:
            self._last_pulse_time = now
            if self.on_pulse is not None:
                self.on_pulse(now)

        if self.on_data_update is not None:
            self.on_data_update(samples, stats)
