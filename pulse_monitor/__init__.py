"""
Pulse Monitor — fingertip heart-rate estimation from a camera feed.
Cover the camera lens (torch on) with a fingertip; each frame is reduced to
a brightness sample and the heart rate is derived from the timing of the
rising edges of that photoplethysmography (PPG) signal.
"""

__version__ = "0.1.0"
__author__ = "pulse_monitor"
