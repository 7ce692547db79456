"""
Synthetic finger-PPG frame generators for demos and tests.

The signals imitate what a phone camera sees with the flash on and a
fingertip over the lens: a bright red level modulated by the cardiac pulse,
much darker green and blue, optional respiration and baseline drift, and
sensor noise.
"""

import math
from typing import Iterator, Optional

import numpy as np

from ppg_engine.models import ColorMeans, FrameStats


def finger_frames(
    duration_s: float = 10.0,
    fps: float = 30.0,
    bpm: float = 72.0,
    amplitude: float = 10.0,
    baseline: float = 150.0,
    green: float = 60.0,
    blue: float = 50.0,
    coverage: float = 0.9,
    noise_std: float = 0.0,
    resp_amplitude: float = 0.0,
    drift_amplitude: float = 0.0,
    start_ms: int = 0,
    seed: Optional[int] = None,
) -> Iterator[FrameStats]:
    """Yield frames of a pulsing fingertip.  With defaults: a clean 1.2 Hz sine."""
    rng = np.random.default_rng(seed)
    heart_freq = bpm / 60.0
    resp_freq = 0.25     # Hz
    drift_freq = 0.01    # Hz
    n = int(round(duration_s * fps))
    for i in range(n):
        t = i / fps
        red = (
            baseline
            + amplitude * math.sin(2 * math.pi * heart_freq * t)
            + resp_amplitude * math.sin(2 * math.pi * resp_freq * t)
            + drift_amplitude * math.sin(2 * math.pi * drift_freq * t)
        )
        if noise_std > 0:
            red += float(rng.normal(0.0, noise_std))
        yield FrameStats(
            timestamp=start_ms + int(round(i * 1000.0 / fps)),
            color_means=ColorMeans(red, green, blue),
            coverage_ratio=coverage,
        )


def constant_frames(
    duration_s: float = 3.0,
    fps: float = 30.0,
    red: float = 150.0,
    green: float = 60.0,
    blue: float = 50.0,
    coverage: float = 0.9,
    start_ms: int = 0,
) -> Iterator[FrameStats]:
    """Yield frames with a perfectly flat colour (no pulse)."""
    n = int(round(duration_s * fps))
    for i in range(n):
        yield FrameStats(
            timestamp=start_ms + int(round(i * 1000.0 / fps)),
            color_means=ColorMeans(red, green, blue),
            coverage_ratio=coverage,
        )


def with_spike(frames, index: int, red: float = 255.0) -> Iterator[FrameStats]:
    """Replace the red mean of frame *index* with *red*."""
    for i, frame in enumerate(frames):
        if i == index:
            c = frame.color_means
            frame = FrameStats(
                timestamp=frame.timestamp,
                color_means=ColorMeans(red, c.g, c.b),
                coverage_ratio=frame.coverage_ratio,
                motion_level=frame.motion_level,
                texture_score=frame.texture_score,
            )
        yield frame
