"""
Capture sources for the heart-rate monitor.

:class:`CameraCapture` wraps OpenCV ``VideoCapture`` (any webcam or phone
camera exposed as a V4L2/AVFoundation device).  :class:`SyntheticCapture`
simulates a fingertip on the lens so the pipeline can run without hardware;
it also carries its own clock, which makes monitor runs reproducible.

Both implement the :class:`CaptureSource` protocol used by
:class:`~pulse_monitor.monitor.HeartRateMonitor`.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Protocol, Tuple

import cv2
import numpy as np

from pulse_monitor.errors import CaptureUnavailable

logger = logging.getLogger(__name__)


class CaptureSource(Protocol):
    def acquire(self) -> None: ...

    def release(self) -> None: ...

    def read_frame(self) -> Optional[np.ndarray]: ...


class CameraCapture:
    """
    Thin wrapper around an OpenCV capture device.

    Parameters
    ----------
    camera_index:
        OpenCV device index.
    resolution:
        Requested (width, height).  The device may pick another size; the
        sampler does not care.
    fps:
        Requested frame rate.  Actual rate may differ slightly.
    flip_horizontal:
        Mirror the image left-to-right (only affects the preview).
    """

    def __init__(
        self,
        camera_index: int = 0,
        resolution: Tuple[int, int] = (640, 480),
        fps: int = 30,
        flip_horizontal: bool = False,
    ) -> None:
        self.camera_index = camera_index
        self.resolution = resolution
        self.fps = fps
        self.flip_horizontal = flip_horizontal

        self._cam: "cv2.VideoCapture | None" = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._cam is not None

    def acquire(self) -> None:
        """Open and configure the device."""
        if self._cam is not None:
            return
        cap = cv2.VideoCapture(self.camera_index)
        if not cap.isOpened():
            cap.release()
            raise CaptureUnavailable(
                f"Cannot open video capture device index={self.camera_index}"
            )
        w, h = self.resolution
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
        cap.set(cv2.CAP_PROP_FPS, self.fps)
        self._cam = cap
        logger.info(
            "Camera opened – index=%d resolution=%s fps=%d",
            self.camera_index,
            self.resolution,
            self.fps,
        )

    def release(self) -> None:
        """Release the device.  Safe to call repeatedly."""
        if self._cam is None:
            return
        self._cam.release()
        self._cam = None
        logger.info("Camera closed.")

    # Context-manager support
    def __enter__(self) -> "CameraCapture":
        self.acquire()
        return self

    def __exit__(self, *_) -> None:
        self.release()

    # ------------------------------------------------------------------
    # Frame acquisition
    # ------------------------------------------------------------------

    def read_frame(self) -> np.ndarray | None:
        """
        Capture a single frame.

        Returns
        -------
        numpy.ndarray
            BGR image array (H × W × 3, dtype uint8), or *None* on failure.
        """
        if self._cam is None:
            raise RuntimeError("Camera is not open.  Call acquire() first.")

        ok, frame = self._cam.read()
        if not ok:
            logger.warning("VideoCapture.read() returned False.")
            return None
        if self.flip_horizontal:
            frame = cv2.flip(frame, 1)
        return frame


class SyntheticCapture:
    """
    Simulated fingertip-on-lens video.

    Every frame is a uniform reddish patch whose brightness follows a sine
    wave at *bpm* beats per minute, optionally with Gaussian noise.  Frame
    *n* is stamped ``n × 1000 / fps`` milliseconds after :meth:`acquire`;
    pass :meth:`clock_ms` as the monitor clock to use those stamps.  The
    frames restart on every :meth:`acquire` but the clock keeps counting, so
    timestamps never go backwards across sessions.

    Parameters
    ----------
    bpm:
        Simulated heart rate.
    fps:
        Simulated frame rate.
    resolution:
        (width, height) of generated frames.
    base:
        Mean red-channel level (0 – 255).  Green sits at half of it.
    amplitude:
        Peak deviation of the red channel around *base*.
    noise:
        Standard deviation of per-pixel Gaussian noise.
    seed:
        Seed for the noise generator.
    realtime:
        Sleep between frames so the stream runs at *fps* in wall-clock time.
    """

    def __init__(
        self,
        bpm: float = 72.0,
        fps: float = 30.0,
        resolution: Tuple[int, int] = (64, 48),
        base: float = 140.0,
        amplitude: float = 20.0,
        noise: float = 0.0,
        seed: Optional[int] = None,
        realtime: bool = False,
    ) -> None:
        self.bpm = bpm
        self.fps = fps
        self.resolution = resolution
        self.base = base
        self.amplitude = amplitude
        self.noise = noise
        self.seed = seed
        self.realtime = realtime

        self._rng = np.random.default_rng(seed)
        self._open = False
        self._next_index = 0
        self._last_time_ms = 0.0
        self._offset_ms = 0.0

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def frames_delivered(self) -> int:
        return self._next_index

    def acquire(self) -> None:
        if self._next_index:
            self._offset_ms = self._last_time_ms + 1000.0 / self.fps
        self._open = True
        self._next_index = 0
        self._rng = np.random.default_rng(self.seed)
        logger.info("Synthetic capture started – bpm=%.1f fps=%.1f", self.bpm, self.fps)

    def release(self) -> None:
        if self._open:
            self._open = False
            logger.info("Synthetic capture stopped.")

    def __enter__(self) -> "SyntheticCapture":
        self.acquire()
        return self

    def __exit__(self, *_) -> None:
        self.release()

    def clock_ms(self) -> float:
        """Timestamp of the most recently delivered frame."""
        return self._last_time_ms

    def read_frame(self) -> np.ndarray:
        if not self._open:
            raise RuntimeError("Synthetic capture is not open.  Call acquire() first.")

        t = self._next_index / self.fps
        red = self.base + self.amplitude * np.sin(2 * np.pi * (self.bpm / 60.0) * t)

        w, h = self.resolution
        frame = np.empty((h, w, 3), dtype=np.float64)
        frame[:, :, 0] = red * 0.2      # Blue
        frame[:, :, 1] = red * 0.5      # Green
        frame[:, :, 2] = red            # Red
        if self.noise > 0:
            frame += self._rng.normal(0.0, self.noise, frame.shape)

        self._last_time_ms = self._offset_ms + t * 1000.0
        self._next_index += 1
        if self.realtime:
            time.sleep(1.0 / self.fps)
        return np.clip(np.rint(frame), 0, 255).astype(np.uint8)
