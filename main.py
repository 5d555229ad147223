#!/usr/bin/env python3
"""
Pulse Monitor – main entry point.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --camera-index INT   OpenCV camera index (default: 0)
    --resolution WxH     Camera resolution (default: 640x480)
    --fps INT            Target frame rate  (default: 30)
    --synthetic BPM      Use a simulated fingertip beating at BPM instead of a camera
    --noise FLOAT        Pixel noise of the simulated fingertip (default: 0)
    --frames INT         Stop after this many frames (default: run until quit)
    --start-delay MS     Warm-up before samples are taken (default: 1500)
    --stale-after MS     Withdraw the estimate after this long without frames
    --keep-buffer        Keep samples from the previous run when restarting
    --no-flip            Disable horizontal mirror
    --headless           Run without display window (log BPM to stdout)
    --verbose            Debug logging

Keyboard shortcuts (when a window is open)
------------------------------------------
    q / ESC  – quit
    SPACE    – start / stop monitoring
    r        – reset signal buffer
    s        – save a single annotated frame as PNG
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import Dict, Optional

# Must be set before cv2 is imported so Qt5 uses X11/XWayland instead of
# looking for a Wayland plugin that is not bundled with pip-installed opencv.
import os
os.environ.setdefault("QT_QPA_PLATFORM", "xcb")

import cv2
import numpy as np

from pulse_monitor.camera import CameraCapture, CaptureSource, SyntheticCapture
from pulse_monitor.errors import CaptureUnavailable
from pulse_monitor.monitor import START_DELAY_MS, STALE_AFTER_MS, HeartRateMonitor
from pulse_monitor.vitals import UnavailableEstimator
from pulse_monitor.visualizer import Visualizer, format_bpm

logger = logging.getLogger("pulse_monitor")

WINDOW_NAME = "Pulse Monitor"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fingertip heart-rate monitor (camera PPG)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--camera-index", type=int, default=0,
                        help="OpenCV VideoCapture index")
    parser.add_argument("--resolution", default="640x480",
                        help="Camera resolution, e.g. 640x480")
    parser.add_argument("--fps", type=int, default=30,
                        help="Target capture frame rate")
    parser.add_argument("--synthetic", type=float, default=None, metavar="BPM",
                        help="Simulate a fingertip beating at BPM instead of using a camera")
    parser.add_argument("--noise", type=float, default=0.0,
                        help="Pixel noise of the simulated fingertip")
    parser.add_argument("--frames", type=int, default=None,
                        help="Stop after this many frames")
    parser.add_argument("--start-delay", type=float, default=START_DELAY_MS,
                        help="Warm-up in ms before samples are taken")
    parser.add_argument("--stale-after", type=float, default=STALE_AFTER_MS,
                        help="Withdraw the estimate after this many ms without frames")
    parser.add_argument("--keep-buffer", action="store_true",
                        help="Keep samples from the previous run when restarting")
    parser.add_argument("--no-flip", action="store_true",
                        help="Disable horizontal image flip")
    parser.add_argument("--headless", action="store_true",
                        help="No display window; log BPM to stdout only")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable debug logging")
    return parser.parse_args(argv)


def parse_resolution(text: str) -> tuple[int, int]:
    w, h = (int(v) for v in text.lower().split("x"))
    if w <= 0 or h <= 0:
        raise ValueError(text)
    return w, h


# ---------------------------------------------------------------------------
# Headless reporting
# ---------------------------------------------------------------------------

class ConsoleReporter:
    """Print the running estimate about once every *every* ticks."""

    def __init__(self, every: int) -> None:
        self.every = max(1, every)
        self.ticks = 0
        self.vitals: Dict[str, Optional[float]] = {}

    def on_vitals_update(self, vitals: Dict[str, Optional[float]]) -> None:
        self.vitals = vitals

    def on_bpm_change(self, bpm: Optional[float]) -> None:
        self.ticks += 1
        if self.ticks % self.every:
            return
        ts = time.strftime("%H:%M:%S")
        extras = "  ".join(
            f"{name.upper()}={'--' if value is None else f'{value:.0f}'}"
            for name, value in self.vitals.items()
        )
        print(f"[{ts}] BPM={format_bpm(bpm)}  {extras}".rstrip())


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    try:
        resolution = parse_resolution(args.resolution)
    except ValueError:
        logger.error("Invalid --resolution format.  Use WxH, e.g. 640x480.")
        return 1

    clock = None
    if args.synthetic is not None:
        capture = SyntheticCapture(
            bpm=args.synthetic,
            fps=float(args.fps),
            resolution=resolution,
            noise=args.noise,
            realtime=not args.headless,
        )
        clock = capture.clock_ms
    else:
        capture = CameraCapture(
            camera_index=args.camera_index,
            resolution=resolution,
            fps=args.fps,
            flip_horizontal=not args.no_flip,
        )

    vitals = {"spo2": UnavailableEstimator(), "hrv": UnavailableEstimator()}
    monitor = HeartRateMonitor(
        capture,
        vitals=vitals,
        start_delay_ms=args.start_delay,
        stale_after_ms=args.stale_after,
        clear_on_start=not args.keep_buffer,
        clock=clock,
    )

    try:
        if args.headless:
            return _run_headless(monitor, args)
        return _run_window(monitor, capture, resolution, args)
    except CaptureUnavailable as exc:
        logger.error("%s", exc)
        return 1
    finally:
        monitor.stop()


def _run_headless(monitor: HeartRateMonitor, args: argparse.Namespace) -> int:
    reporter = ConsoleReporter(every=args.fps)
    monitor.on_bpm_change = reporter.on_bpm_change
    monitor.on_vitals_update = reporter.on_vitals_update

    logger.info("Starting pulse monitor (headless).  Press Ctrl-C to quit.")
    try:
        frames = monitor.run(max_frames=args.frames)
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        return 0

    bpm = monitor.last_bpm
    logger.info("Processed %d frames, final estimate %s BPM.", frames, format_bpm(bpm))
    return 0


def _run_window(
    monitor: HeartRateMonitor,
    capture: CaptureSource,
    resolution: tuple[int, int],
    args: argparse.Namespace,
) -> int:
    vis = Visualizer(resolution=resolution)
    state = {"pulse": False, "vitals": {}}

    def _on_pulse(_ts: float) -> None:
        state["pulse"] = True

    def _on_vitals(vitals: Dict[str, Optional[float]]) -> None:
        state["vitals"] = vitals

    monitor.on_pulse = _on_pulse
    monitor.on_vitals_update = _on_vitals

    cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_NORMAL)
    cv2.resizeWindow(WINDOW_NAME, *resolution)
    logger.info("Starting pulse monitor.  Press 'q' or ESC to quit, SPACE to pause.")

    monitor.start()
    blank = np.zeros((resolution[1], resolution[0], 3), dtype=np.uint8)
    frame_idx = 0
    try:
        while args.frames is None or frame_idx < args.frames:
            if monitor.running:
                frame = capture.read_frame()
                if monitor.process_frame(frame) is None:
                    monitor.check_stale()
                view = frame.copy() if frame is not None else blank.copy()
            else:
                view = blank.copy()

            annotated = vis.draw(
                view,
                bpm=monitor.last_bpm if monitor.running else None,
                running=monitor.running,
                warming_up=monitor.warming_up,
                buffer_fill=monitor.buffer_fill_ratio,
                samples=monitor.samples,
                stats=monitor.last_stats,
                vitals=state["vitals"],
                pulse=state["pulse"],
            )
            state["pulse"] = False
            cv2.imshow(WINDOW_NAME, annotated)

            key = cv2.waitKey(1 if monitor.running else 30) & 0xFF
            if key in (ord("q"), 27):          # q or ESC
                logger.info("Quit requested by user.")
                break
            elif key == ord(" "):
                monitor.toggle()
            elif key == ord("r"):
                monitor.reset()
                logger.info("Signal buffer reset.")
            elif key == ord("s"):
                fname = f"snapshot_{int(time.time())}.png"
                cv2.imwrite(fname, annotated)
                logger.info("Saved snapshot: %s", fname)

            frame_idx += 1
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        cv2.destroyAllWindows()

    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
