"""
Exception hierarchy for the pulse monitor.

Only :class:`CaptureUnavailable` is meant to reach callers of
:class:`~pulse_monitor.monitor.HeartRateMonitor`.  A
:class:`TransientFrameError` is absorbed by the monitor tick that raised it,
and a shortage of data is never an exception at all: it is reported as a
BPM of ``None``.
"""

from __future__ import annotations


class MonitorError(Exception):
    """Base class for all pulse monitor errors."""


class CaptureUnavailable(MonitorError):
    """No capture device could be opened (missing, busy or not permitted)."""


class TransientFrameError(MonitorError):
    """A single frame could not be turned into a brightness sample."""
