"""
Real-time overlay visualiser.

Draws the following elements onto each video frame:
  • BPM readout, or a ``--`` placeholder while no estimate is available.
  • Secondary vitals readouts (SpO2, HRV, ...), same placeholder rule.
  • A buffer fill bar.
  • The buffered brightness trace with beat markers and the detection line.
  • Monitoring status hint and an optional frame-rate counter.
"""

from __future__ import annotations

from typing import List, Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np

from pulse_monitor.analysis import DataStats
from pulse_monitor.sample_buffer import Sample

Point = Tuple[float, float]

# ---------------------------------------------------------------------------
# Colour palette (BGR)
# ---------------------------------------------------------------------------
_GREEN  = (0, 220,  80)
_RED    = (0,  50, 220)
_YELLOW = (0, 210, 210)
_WHITE  = (255, 255, 255)
_BLACK  = (0, 0, 0)
_CYAN   = (220, 200,  0)
_BLUE   = (235, 102, 40)
_DARK   = (30, 30, 30)

PLACEHOLDER = "--"


def format_bpm(bpm: Optional[float]) -> str:
    """Rounded BPM, or the placeholder when unavailable."""
    if bpm is None:
        return PLACEHOLDER
    return f"{bpm:.0f}"


def project_waveform(
    samples: Sequence[Sample],
    stats: DataStats,
    width: int = 300,
    height: int = 150,
    padding: int = 20,
) -> Tuple[List[Point], List[Point]]:
    """
    Map buffered samples onto a ``width × height`` plot.

    Returns ``(points, beat_points)``.  Samples are spread evenly along x
    inside the padding; y is the value scaled between ``stats.min`` (bottom)
    and ``stats.max`` (top).  Beat points mark samples that rise through
    ``stats.average``.
    """
    if len(samples) < 2:
        return [], []

    eff_w = width - padding * 2
    eff_h = height - padding * 2
    span = stats.max - stats.min if stats.max != stats.min else 1.0
    n = len(samples)

    def _xy(i: int, value: float) -> Point:
        x = padding + (i / n) * eff_w
        y = padding + eff_h - ((value - stats.min) / span) * eff_h
        return x, y

    points = [_xy(i, s.value) for i, s in enumerate(samples)]

    beats: List[Point] = []
    previous = samples[0]
    for i, s in enumerate(samples):
        if s.value > stats.average and previous.value <= stats.average:
            beats.append(points[i])
        previous = s

    return points, beats


class Visualizer:
    """
    Draws heart-rate monitoring UI onto OpenCV frames in-place.

    Parameters
    ----------
    resolution:
        (width, height) of the video frame.
    waveform_height:
        Pixel height of the waveform panel at the bottom of the frame.
    show_fps:
        Whether to overlay computed FPS in the top-right corner.
    """

    def __init__(
        self,
        resolution: Tuple[int, int] = (640, 480),
        waveform_height: int = 80,
        show_fps: bool = True,
    ) -> None:
        self.w, self.h = resolution
        self.waveform_height = waveform_height
        self.show_fps = show_fps

        # FPS tracking
        self._fps_tick = cv2.getTickCount()
        self._fps_display: float = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def draw(
        self,
        frame: np.ndarray,
        bpm: Optional[float],
        running: bool,
        warming_up: bool = False,
        buffer_fill: float = 0.0,
        samples: Sequence[Sample] = (),
        stats: Optional[DataStats] = None,
        vitals: Optional[Mapping[str, Optional[float]]] = None,
        pulse: bool = False,
    ) -> np.ndarray:
        """
        Annotate *frame* in-place and return it.

        Parameters
        ----------
        frame:
            BGR frame from the camera.  Resized to the configured resolution
            if it differs.
        bpm:
            Current heart-rate estimate, or ``None``.
        running:
            Whether the monitor is running.
        warming_up:
            Whether the monitor is still inside its start delay.
        buffer_fill:
            How full the sample buffer is (0 – 1).
        samples, stats:
            Buffer snapshot and statistics from the last tick.
        vitals:
            ``{label: value}`` for secondary readouts.
        pulse:
            Flash the heart marker (a beat was signalled on this tick).
        """
        if frame.shape[1] != self.w or frame.shape[0] != self.h:
            frame = cv2.resize(frame, (self.w, self.h))
        self._update_fps()

        self._draw_bpm(frame, bpm, pulse)
        if vitals:
            self._draw_vitals(frame, vitals)
        self._draw_status(frame, bpm, running, warming_up)
        self._draw_fill_bar(frame, buffer_fill)
        if stats is not None and len(samples) > 1:
            self._draw_waveform(frame, samples, stats)

        if self.show_fps:
            cv2.putText(
                frame,
                f"FPS {self._fps_display:.1f}",
                (self.w - 100, 20),
                cv2.FONT_HERSHEY_SIMPLEX, 0.45, _WHITE, 1, cv2.LINE_AA,
            )
        return frame

    # ------------------------------------------------------------------
    # Private drawing helpers
    # ------------------------------------------------------------------

    def _draw_bpm(self, frame: np.ndarray, bpm: Optional[float], pulse: bool) -> None:
        text = f"{format_bpm(bpm)} BPM"
        col = _GREEN if bpm is not None else _YELLOW
        cv2.putText(
            frame, text,
            (16, 52), cv2.FONT_HERSHEY_SIMPLEX, 1.6, _BLACK, 5, cv2.LINE_AA,
        )
        cv2.putText(
            frame, text,
            (16, 52), cv2.FONT_HERSHEY_SIMPLEX, 1.6, col, 3, cv2.LINE_AA,
        )
        radius = 12 if pulse else 8
        cv2.circle(frame, (self.w - 130, 40), radius, _RED, -1, cv2.LINE_AA)

    def _draw_vitals(
        self,
        frame: np.ndarray,
        vitals: Mapping[str, Optional[float]],
    ) -> None:
        y = 84
        for label, value in vitals.items():
            text = f"{label.upper()}: {PLACEHOLDER if value is None else f'{value:.0f}'}"
            cv2.putText(
                frame, text,
                (16, y), cv2.FONT_HERSHEY_SIMPLEX, 0.6, _BLACK, 3, cv2.LINE_AA,
            )
            cv2.putText(
                frame, text,
                (16, y), cv2.FONT_HERSHEY_SIMPLEX, 0.6, _WHITE, 1, cv2.LINE_AA,
            )
            y += 24

    def _draw_status(
        self,
        frame: np.ndarray,
        bpm: Optional[float],
        running: bool,
        warming_up: bool,
    ) -> None:
        if not running:
            status, col = "Press SPACE to start", _YELLOW
        elif warming_up:
            status, col = "Warming up...", _YELLOW
        elif bpm is None:
            status, col = "Cover the lens with your finger", _YELLOW
        else:
            status, col = "Measuring", _GREEN
        y = self.h - self.waveform_height - 22
        cv2.putText(
            frame, status,
            (16, y), cv2.FONT_HERSHEY_SIMPLEX, 0.5, col, 1, cv2.LINE_AA,
        )

    def _draw_fill_bar(self, frame: np.ndarray, fill: float) -> None:
        bar_w = int((self.w - 32) * min(fill, 1.0))
        y0, y1 = self.h - self.waveform_height - 12, self.h - self.waveform_height - 4
        cv2.rectangle(frame, (16, y0), (self.w - 16, y1), _DARK, -1)
        cv2.rectangle(frame, (16, y0), (16 + bar_w, y1), _CYAN, -1)

    def _draw_waveform(
        self,
        frame: np.ndarray,
        samples: Sequence[Sample],
        stats: DataStats,
    ) -> None:
        """Draw the buffered trace in a dark strip at the bottom of the frame."""
        panel_top = self.h - self.waveform_height
        cv2.rectangle(frame, (0, panel_top), (self.w, self.h), _DARK, -1)

        margin = 6
        points, beats = project_waveform(
            samples, stats, width=self.w, height=self.waveform_height, padding=margin,
        )
        pts = np.array([(x, y + panel_top) for x, y in points], dtype=np.int32)
        cv2.polylines(frame, [pts[:, None, :]], False, _BLUE, 2, cv2.LINE_AA)

        for x, y in beats:
            cv2.circle(frame, (int(x), int(y + panel_top)), 3, _RED, -1, cv2.LINE_AA)

        # Detection threshold line
        if stats.range > 0 and stats.threshold <= stats.max:
            plot_h = self.waveform_height - 2 * margin
            ty = panel_top + margin + plot_h * (1.0 - (stats.threshold - stats.min) / stats.range)
            cv2.line(frame, (0, int(ty)), (self.w, int(ty)), _YELLOW, 1, cv2.LINE_AA)

        cv2.putText(
            frame, "PPG",
            (4, panel_top + 14), cv2.FONT_HERSHEY_SIMPLEX, 0.4, _WHITE, 1, cv2.LINE_AA,
        )

    def _update_fps(self) -> None:
        """Compute rolling FPS."""
        now = cv2.getTickCount()
        elapsed = (now - self._fps_tick) / cv2.getTickFrequency()
        if elapsed > 0:
            self._fps_display = 1.0 / elapsed
        self._fps_tick = now
