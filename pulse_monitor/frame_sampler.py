"""
Frame → brightness sampler.

With a finger pressed on the lens and the torch on, the whole frame glows
red and its brightness rises and falls with the blood volume in the
fingertip.  Each frame is shrunk to a tiny thumbnail first (the exact pixel
detail is irrelevant, only the overall level matters) and the mean of the
red and green channels is taken as the sample.  Blue carries almost no
pulsatile signal through tissue and is ignored.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from pulse_monitor.errors import TransientFrameError

logger = logging.getLogger(__name__)

IMAGE_WIDTH = 30
IMAGE_HEIGHT = 30


class FrameSampler:
    """
    Reduce a frame to one brightness value in [0, 1].

    Parameters
    ----------
    size:
        (width, height) of the thumbnail the frame is resized to before
        averaging.  Default: 30 × 30.
    """

    def __init__(self, size: Tuple[int, int] = (IMAGE_WIDTH, IMAGE_HEIGHT)) -> None:
        self.size = size

    def sample(self, frame: Optional[np.ndarray]) -> float:
        """
        Return the normalised red/green brightness of *frame*.

        Parameters
        ----------
        frame:
            BGR image array (H × W × 3, uint8).  A 4-channel frame has its
            alpha channel dropped; a 2-D frame is read as grayscale.

        Raises
        ------
        TransientFrameError
            If the frame is missing, empty or has an unusable shape.
        """
        if frame is None:
            raise TransientFrameError("no frame delivered")
        if frame.size == 0:
            raise TransientFrameError("empty frame")

        if frame.ndim == 3 and frame.shape[2] == 4:
            frame = frame[:, :, :3]
        if frame.ndim == 2:
            frame = np.dstack([frame] * 3)
        if frame.ndim != 3 or frame.shape[2] != 3:
            raise TransientFrameError(f"unsupported frame shape {frame.shape}")

        thumb = cv2.resize(frame, self.size, interpolation=cv2.INTER_AREA)
        red_mean = float(np.mean(thumb[:, :, 2]))    # channel 2 = Red in BGR
        green_mean = float(np.mean(thumb[:, :, 1]))  # channel 1 = Green in BGR
        return (red_mean + green_mean) / 2.0 / 255.0
