"""
One-shot per-session calibration.

For a short window after the finger is placed the calibrator collects the
raw red level, the smoothed quality and a texture score, then classifies the
finger (skin tone, thickness, perfusion) and derives adaptive thresholds
that the engine hands to the validator and the quality detector.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import numpy as np

from ppg_engine.config import CalibrationConfig
from ppg_engine.models import (
    AdaptiveThresholds,
    CalibrationProfile,
    FingerCharacteristics,
    Perfusion,
    SkinTone,
    Thickness,
)

logger = logging.getLogger(__name__)


class Calibrator:
    """
    Parameters
    ----------
    config:
        Window length and sample counts; defaults to :class:`CalibrationConfig`.
    """

    def __init__(self, config: Optional[CalibrationConfig] = None) -> None:
        self.config = config if config is not None else CalibrationConfig()
        self.config.validate()
        self.reset()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start_calibration(self, timestamp: Optional[float] = None) -> bool:
        """Begin a new calibration; returns False if one is already running."""
        if self._calibrating:
            logger.debug("start_calibration ignored: already calibrating")
            return False
        self.reset()
        self._calibrating = True
        self._start_time = None if timestamp is None else float(timestamp)
        logger.info("Calibration started")
        return True

    def add_sample(self, raw_value: float, quality: float, texture_score: float,
                   timestamp: float) -> bool:
        """Record one frame; returns True when this sample completed calibration."""
        if not self._calibrating:
            return False
        if self._start_time is None:
            self._start_time = float(timestamp)

        self._red.append(float(raw_value))
        self._quality.append(float(quality))
        self._texture.append(float(texture_score))

        elapsed = float(timestamp) - self._start_time
        progress = min(100.0, elapsed / self.config.duration_ms * 100.0)
        self._progress = max(self._progress, min(progress, 99.0))

        if elapsed >= self.config.duration_ms or len(self._red) >= self.config.sample_quota:
            return self._complete()
        return False

    def force_complete(self) -> bool:
        """Finish early; succeeds only with at least ``min_samples`` collected."""
        if not self._calibrating:
            return False
        return self._complete()

    def reset(self) -> None:
        self._calibrating = False
        self._complete_flag = False
        self._start_time: Optional[float] = None
        self._progress = 0.0
        self._red: List[float] = []
        self._quality: List[float] = []
        self._texture: List[float] = []
        self._warned = False
        self._thresholds = AdaptiveThresholds()
        self._characteristics = FingerCharacteristics()

    @property
    def profile(self) -> CalibrationProfile:
        return CalibrationProfile(
            adaptive_thresholds=self._thresholds,
            finger_characteristics=self._characteristics,
            progress=self._progress,
            is_calibrating=self._calibrating,
            is_complete=self._complete_flag,
            sample_count=len(self._red),
        )

    @property
    def is_calibrating(self) -> bool:
        return self._calibrating

    @property
    def is_complete(self) -> bool:
        return self._complete_flag

    @property
    def progress(self) -> float:
        return self._progress

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _complete(self) -> bool:
        if len(self._red) < self.config.min_samples:
            if not self._warned:
                logger.warning(
                    "Calibration has only %d samples (need %d); extending",
                    len(self._red), self.config.min_samples,
                )
                self._warned = True
            return False

        red = np.asarray(self._red)
        self._characteristics = self._classify(red, float(np.mean(self._texture)))
        self._thresholds = self._derive_thresholds(red, float(np.mean(self._quality)))
        self._calibrating = False
        self._complete_flag = True
        self._progress = 100.0
        logger.info(
            "Calibration complete with %d samples: %s / %s",
            red.size, self._characteristics, self._thresholds,
        )
        return True

    @staticmethod
    def _classify(red: np.ndarray, mean_texture: float) -> FingerCharacteristics:
        mean_red = float(red.mean())
        if mean_red < 30:
            tone = SkinTone.DARK
        elif mean_red < 80:
            tone = SkinTone.MEDIUM
        else:
            tone = SkinTone.LIGHT

        if mean_texture < 0.3:
            thickness = Thickness.THICK
        elif mean_texture < 0.6:
            thickness = Thickness.MEDIUM
        else:
            thickness = Thickness.THIN

        variance = float(red.var())
        if variance < 10:
            perfusion = Perfusion.LOW
        elif variance < 50:
            perfusion = Perfusion.NORMAL
        else:
            perfusion = Perfusion.HIGH
        return FingerCharacteristics(skin_tone=tone, thickness=thickness, perfusion=perfusion)

    def _derive_thresholds(self, red: np.ndarray, mean_quality: float) -> AdaptiveThresholds:
        c = self._characteristics
        mean_red = float(red.mean())
        min_red = float(red.min())
        max_red = float(red.max())

        red_factor = 0.3
        if c.skin_tone is SkinTone.DARK:
            red_factor = 0.1
        elif c.skin_tone is SkinTone.LIGHT:
            red_factor = 0.4
        if c.thickness is Thickness.THICK:
            red_factor *= 0.7
        if c.perfusion is Perfusion.LOW:
            red_factor *= 0.5

        quality_factor = 0.4
        if c.skin_tone is SkinTone.DARK or c.thickness is Thickness.THICK:
            quality_factor = 0.2
        if c.perfusion is Perfusion.LOW:
            quality_factor = 0.3

        amplitude = 0.02
        if mean_red > 0:
            amplitude = max(0.02, (max_red - min_red) / mean_red * 0.1)

        return AdaptiveThresholds(
            red_min=max(1.0, min_red * red_factor),
            red_max=min(240.0, max_red * 1.2),
            quality_min=max(3.0, mean_quality * quality_factor),
            amplitude_min=amplitude,
        )
