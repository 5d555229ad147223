"""
Secondary vital-sign estimators (SpO2, HRV, ...).

A single camera brightness trace is not enough to measure oxygen
saturation or heart-rate variability, so no estimator ships with a formula.
The monitor only needs the :class:`VitalsEstimator` interface: it asks every
registered estimator for a value on each tick that has a BPM estimate and
reports ``None`` for all of them otherwise.
"""

from __future__ import annotations

from typing import Optional, Protocol

from pulse_monitor.analysis import DataStats


class VitalsEstimator(Protocol):
    def estimate(self, bpm: float, stats: DataStats) -> Optional[float]:
        """Return an estimate, or ``None`` when it cannot be computed."""
        ...


class UnavailableEstimator:
    """Placeholder estimator that never produces a value."""

    def estimate(self, bpm: float, stats: DataStats) -> Optional[float]:
        return None
