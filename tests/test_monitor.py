"""
Unit tests for HeartRateMonitor.
Run with:  pytest tests/test_monitor.py
"""

from __future__ import annotations

import numpy as np
import pytest

from pulse_monitor import camera
from pulse_monitor.camera import CameraCapture, SyntheticCapture
from pulse_monitor.errors import CaptureUnavailable
from pulse_monitor.monitor import MAX_MISSING_FRAMES, HeartRateMonitor, MonitorState

WARMUP_FRAMES = 45          # 1500 ms at 30 fps


class FakeClock:

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class StaticCapture:
    """Always delivers the same frame; counts acquire/release calls."""

    def __init__(self, frame=None) -> None:
        self.frame = frame if frame is not None else np.full((8, 8, 3), 120, dtype=np.uint8)
        self.acquired = 0
        self.released = 0

    def acquire(self) -> None:
        self.acquired += 1

    def release(self) -> None:
        self.released += 1

    def read_frame(self):
        return self.frame


class UnavailableCapture(StaticCapture):

    def acquire(self) -> None:
        raise CaptureUnavailable("no camera")


class FailingReleaseCapture(StaticCapture):

    def release(self) -> None:
        super().release()
        raise RuntimeError("device busy")


class FlakyCapture(StaticCapture):
    """Drops every other frame."""

    def __init__(self) -> None:
        super().__init__()
        self.reads = 0

    def read_frame(self):
        self.reads += 1
        return self.frame if self.reads % 2 else None


class _DeadVideoCapture:
    """Opens fine, then never delivers a frame."""

    def __init__(self, index):
        pass

    def isOpened(self):
        return True

    def set(self, prop, value):
        pass

    def read(self):
        return False, None

    def release(self):
        pass


def _synthetic_monitor(bpm=72.0, noise=0.0, **kwargs):
    cap = SyntheticCapture(bpm=bpm, fps=30.0, noise=noise, seed=1)
    return cap, HeartRateMonitor(cap, clock=cap.clock_ms, **kwargs)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:

    def test_initially_idle(self):
        mon = HeartRateMonitor(StaticCapture())
        assert mon.state is MonitorState.IDLE
        assert not mon.running
        assert mon.last_bpm is None

    def test_stop_twice_is_safe(self):
        mon = HeartRateMonitor(StaticCapture())
        mon.stop()
        mon.stop()
        assert mon.state is MonitorState.IDLE

    def test_start_stop_releases_capture(self):
        cap = StaticCapture()
        mon = HeartRateMonitor(cap)
        mon.start()
        assert mon.running
        assert cap.acquired == 1
        mon.stop()
        assert mon.state is MonitorState.IDLE
        assert cap.released >= 1

    def test_start_while_running_is_noop(self):
        cap = StaticCapture()
        mon = HeartRateMonitor(cap)
        mon.start()
        mon.start()
        assert cap.acquired == 1

    def test_unavailable_capture_keeps_idle(self):
        mon = HeartRateMonitor(UnavailableCapture())
        with pytest.raises(CaptureUnavailable):
            mon.start()
        assert mon.state is MonitorState.IDLE

    def test_run_propagates_capture_unavailable(self):
        mon = HeartRateMonitor(UnavailableCapture())
        with pytest.raises(CaptureUnavailable):
            mon.run(max_frames=5)
        assert not mon.running

    def test_failing_release_still_goes_idle(self):
        cap = FailingReleaseCapture()
        mon = HeartRateMonitor(cap)
        mon.start()
        with pytest.raises(RuntimeError):
            mon.stop()
        assert mon.state is MonitorState.IDLE
        assert cap.released == 1
        mon.start()
        assert mon.running

    def test_toggle(self):
        mon = HeartRateMonitor(StaticCapture())
        mon.toggle()
        assert mon.running
        mon.toggle()
        assert not mon.running

    def test_restartable(self):
        cap, mon = _synthetic_monitor()
        for _ in range(3):
            mon.run(max_frames=WARMUP_FRAMES + 10)
            mon.stop()
        assert cap.frames_delivered == WARMUP_FRAMES + 10
        assert mon.state is MonitorState.IDLE

    def test_context_manager(self):
        cap = SyntheticCapture()
        with HeartRateMonitor(cap, clock=cap.clock_ms) as mon:
            assert mon.running
            assert cap.is_open
        assert not mon.running
        assert not cap.is_open

    def test_monitors_are_independent(self):
        _, first = _synthetic_monitor()
        _, second = _synthetic_monitor()
        first.run(max_frames=WARMUP_FRAMES + 20)
        assert len(first.samples) == 20
        assert second.samples == ()


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------

class TestTicks:

    def test_idle_monitor_ignores_frames(self):
        mon = HeartRateMonitor(StaticCapture())
        assert mon.process_frame(np.zeros((4, 4, 3), dtype=np.uint8), 5000.0) is None
        assert mon.samples == ()

    def test_warmup_frames_dropped(self):
        calls = []
        cap, mon = _synthetic_monitor(on_bpm_change=calls.append)
        mon.run(max_frames=WARMUP_FRAMES)
        assert calls == []
        assert mon.samples == ()
        assert mon.warming_up
        mon.run(max_frames=1)
        assert len(mon.samples) == 1
        assert mon.samples[0].time == pytest.approx(1500.0)
        assert not mon.warming_up

    def test_unreadable_frame_skipped(self):
        clock = FakeClock()
        calls = []
        mon = HeartRateMonitor(StaticCapture(), on_bpm_change=calls.append, clock=clock)
        mon.start()
        clock.now = 2000.0
        assert mon.process_frame(None) is None
        assert mon.skipped_frames == 1
        assert mon.samples == ()
        assert calls == []
        assert mon.running

    def test_data_update_receives_snapshot(self):
        updates = []
        _, mon = _synthetic_monitor(on_data_update=lambda s, st: updates.append((s, st)))
        mon.run(max_frames=WARMUP_FRAMES + 3)
        assert len(updates) == 3
        samples, stats = updates[-1]
        assert isinstance(samples, tuple)
        assert len(samples) == 3
        assert stats.min <= stats.average <= stats.max
        assert mon.last_stats == stats

    @pytest.mark.parametrize("bpm", [60.0, 72.0, 90.0])
    def test_synthetic_rate_recovered(self, bpm):
        _, mon = _synthetic_monitor(bpm=bpm)
        mon.run(max_frames=WARMUP_FRAMES + 300)
        assert mon.last_bpm is not None
        assert mon.last_bpm == pytest.approx(bpm, abs=0.5)
        assert len(mon.samples) == 300

    def test_noisy_synthetic_rate_recovered(self):
        _, mon = _synthetic_monitor(bpm=72.0, noise=3.0)
        mon.run(max_frames=WARMUP_FRAMES + 300)
        assert mon.last_bpm == pytest.approx(72.0, abs=3.0)

    def test_buffer_bounded(self):
        _, mon = _synthetic_monitor(capacity=50)
        mon.run(max_frames=WARMUP_FRAMES + 120)
        assert len(mon.samples) == 50
        assert mon.buffer_fill_ratio == 1.0

    def test_bpm_unavailable_on_flat_signal(self):
        clock = FakeClock()
        calls = []
        cap = StaticCapture()
        mon = HeartRateMonitor(cap, on_bpm_change=calls.append, clock=clock)
        mon.start()
        for i in range(100):
            clock.now = 1500.0 + i * 33.0
            mon.process_frame(cap.frame)
        assert calls == [None] * 100

    def test_run_stops_from_callback(self):
        calls = []

        def _on_bpm(bpm):
            calls.append(bpm)
            if len(calls) == 10:
                mon.stop()

        _, mon = _synthetic_monitor(on_bpm_change=_on_bpm)
        frames = mon.run(max_frames=1000)
        assert frames == WARMUP_FRAMES + 10
        assert mon.state is MonitorState.IDLE

    def test_run_gives_up_on_dead_camera(self, monkeypatch):
        monkeypatch.setattr(camera.cv2, "VideoCapture", _DeadVideoCapture)
        cam = CameraCapture()
        mon = HeartRateMonitor(cam)
        frames = mon.run(max_frames=5000)
        assert frames == MAX_MISSING_FRAMES
        assert mon.state is MonitorState.IDLE
        assert not cam.is_open

    def test_run_tolerates_intermittent_missing_frames(self):
        cap = FlakyCapture()
        mon = HeartRateMonitor(cap)
        assert mon.run(max_frames=4 * MAX_MISSING_FRAMES) == 4 * MAX_MISSING_FRAMES
        assert mon.running

    def test_out_of_order_timestamp_skipped(self):
        clock = FakeClock()
        cap = StaticCapture()
        mon = HeartRateMonitor(cap, clock=clock)
        mon.start()
        assert mon.process_frame(cap.frame, timestamp_ms=2000.0) is not None
        assert mon.process_frame(cap.frame, timestamp_ms=1900.0) is None
        assert mon.skipped_frames == 1
        assert mon.process_frame(cap.frame, timestamp_ms=2000.0) is not None
        assert [s.time for s in mon.samples] == [2000.0, 2000.0]


# ---------------------------------------------------------------------------
# Buffer across sessions
# ---------------------------------------------------------------------------

class TestSessions:

    def test_buffer_kept_after_stop(self):
        _, mon = _synthetic_monitor()
        mon.run(max_frames=WARMUP_FRAMES + 20)
        mon.stop()
        assert len(mon.samples) == 20

    def test_buffer_cleared_on_start(self):
        _, mon = _synthetic_monitor()
        mon.run(max_frames=WARMUP_FRAMES + 20)
        mon.stop()
        mon.start()
        assert mon.samples == ()
        assert mon.last_bpm is None

    def test_buffer_kept_on_start_when_requested(self):
        _, mon = _synthetic_monitor(clear_on_start=False)
        mon.run(max_frames=WARMUP_FRAMES + 250)
        mon.stop()
        mon.start()
        assert len(mon.samples) == 250

        mon.run(max_frames=WARMUP_FRAMES + 40)
        times = [s.time for s in mon.samples]
        assert len(times) >= 290
        assert np.all(np.diff(times) >= 0)
        assert mon.skipped_frames == 0
        assert mon.last_bpm == pytest.approx(72.0, abs=5.0)

    def test_reset(self):
        _, mon = _synthetic_monitor()
        mon.run(max_frames=WARMUP_FRAMES + 300)
        mon.reset()
        assert mon.samples == ()
        assert mon.last_bpm is None
        assert mon.running


# ---------------------------------------------------------------------------
# Pulses, vitals and stalls
# ---------------------------------------------------------------------------

class _FixedEstimator:

    def __init__(self, value):
        self.value = value
        self.seen = []

    def estimate(self, bpm, stats):
        self.seen.append(bpm)
        return self.value


class TestPublishing:

    def test_pulses_spaced_by_beat_period(self):
        pulses = []
        _, mon = _synthetic_monitor(on_pulse=pulses.append)
        mon.run(max_frames=WARMUP_FRAMES + 300)
        assert len(pulses) >= 5
        gaps = np.diff(pulses)
        assert np.all(gaps > 0.8 * 60000.0 / 72.0 - 1e-6)
        assert mon.last_pulse_time == pulses[-1]

    def test_stop_resets_pulse_time(self):
        _, mon = _synthetic_monitor()
        mon.run(max_frames=WARMUP_FRAMES + 300)
        assert mon.last_pulse_time > 0
        mon.stop()
        assert mon.last_pulse_time == 0.0

    def test_vitals_only_with_bpm(self):
        updates = []
        spo2 = _FixedEstimator(97.0)
        _, mon = _synthetic_monitor(vitals={"spo2": spo2}, on_vitals_update=updates.append)
        mon.run(max_frames=WARMUP_FRAMES + 300)
        assert updates[0] == {"spo2": None}
        assert updates[-1] == {"spo2": 97.0}
        assert all(bpm is not None for bpm in spo2.seen)

    def test_stall_withdraws_estimate_once(self):
        clock = FakeClock()
        calls = []
        cap = StaticCapture()
        mon = HeartRateMonitor(cap, on_bpm_change=calls.append, clock=clock)
        mon.start()

        assert not mon.check_stale(now_ms=1000.0)       # still warming up
        mon.process_frame(cap.frame, timestamp_ms=1600.0)
        assert calls == [None]

        assert not mon.check_stale(now_ms=4000.0)
        assert mon.check_stale(now_ms=4700.0)
        assert mon.check_stale(now_ms=5000.0)
        assert calls == [None, None]

        mon.process_frame(cap.frame, timestamp_ms=5100.0)
        assert not mon.check_stale(now_ms=5200.0)

    def test_stall_without_any_sample(self):
        clock = FakeClock()
        mon = HeartRateMonitor(StaticCapture(), clock=clock)
        mon.start()
        assert not mon.check_stale(now_ms=4000.0)
        assert mon.check_stale(now_ms=4500.0)

    def test_idle_monitor_never_stale(self):
        mon = HeartRateMonitor(StaticCapture(), clock=FakeClock())
        assert not mon.check_stale(now_ms=1e9)
