"""
Physiological plausibility checks for a finger over a lit camera.

Light transmitted through a fingertip is dominated by red; green and blue are
strongly absorbed by haemoglobin but never vanish.  The validator scores the
colour balance against those expectations and measures how pulsatile the
conditioned signal is.  It holds no detection state of its own.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from typing import Deque, Optional, Sequence, Tuple

import numpy as np

from ppg_engine.config import ValidatorConfig
from ppg_engine.models import AdaptiveThresholds, ColorMeans

logger = logging.getLogger(__name__)


def _bell(value: float, band: Tuple[float, float]) -> float:
    """Gaussian bell centred on *band* with sigma equal to half its width."""
    low, high = band
    centre = (low + high) / 2.0
    sigma = (high - low) / 2.0
    return math.exp(-((value - centre) ** 2) / (2.0 * sigma * sigma))


def _finite_array(window: Sequence[float]) -> np.ndarray:
    arr = np.asarray(window, dtype=np.float64).ravel()
    return arr[np.isfinite(arr)]


class BiophysicalValidator:
    """
    Pulsatility, colour plausibility and perfusion index.

    Parameters
    ----------
    config:
        Thresholds; defaults to :class:`ValidatorConfig`.
    """

    def __init__(self, config: Optional[ValidatorConfig] = None) -> None:
        self.config = config if config is not None else ValidatorConfig()
        self.config.validate()
        self._history: Deque[float] = deque(maxlen=self.config.smoothing_size)
        self.clear_calibration()

    # ------------------------------------------------------------------
    # Scores
    # ------------------------------------------------------------------

    def pulsatility_score(self, window: Sequence[float]) -> float:
        arr = _finite_array(window)[-self.config.pulsatility_window:]
        if arr.size < self.config.min_window:
            return 0.0
        amplitude = float(np.ptp(arr))
        return float(np.clip(amplitude / self.config.pulsatility_normalization, 0.0, 1.0))

    def is_pulsatile(self, window: Sequence[float]) -> bool:
        return self.pulsatility_score(window) > self._pulsatility_threshold

    def color_plausibility_score(self, color_means: ColorMeans) -> float:
        """
        Score in [0, 1] for how finger-like the ROI colour is.

        Too dark, saturated, or missing green/blue light scores 0 outright.
        Otherwise the R/G ratio, R/B ratio and red intensity are each scored
        with a bell around the centre of their expected band.
        """
        cfg = self.config
        r, g, b = float(color_means.r), float(color_means.g), float(color_means.b)
        if not all(math.isfinite(v) for v in (r, g, b)):
            return 0.0
        if r < self._red_min:
            return 0.0
        if r > self._red_max or max(r, g, b) >= cfg.saturation_level:
            return 0.0
        if g < cfg.min_green or b < cfg.min_blue or g <= 0 or b <= 0:
            return 0.0

        score = (
            cfg.ratio_weight_rg * _bell(r / g, cfg.red_to_green)
            + cfg.ratio_weight_rb * _bell(r / b, cfg.red_to_blue)
            + cfg.intensity_weight * _bell(r, (self._red_min, self._red_max))
        )
        return float(np.clip(score, 0.0, 1.0))

    def biophysical_score(self, color_means: ColorMeans) -> float:
        """Colour plausibility smoothed over the last few frames."""
        self._history.append(self.color_plausibility_score(color_means))
        return float(np.mean(self._history))

    def perfusion_index(self, filtered_window: Sequence[float], raw_window: Sequence[float]) -> float:
        """AC/DC ratio in percent: peak-to-peak of the filtered signal over the raw mean."""
        filtered = _finite_array(filtered_window)[-self.config.perfusion_window:]
        raw = _finite_array(raw_window)[-self.config.perfusion_window:]
        if filtered.size < self.config.min_window or raw.size == 0:
            return 0.0
        dc = float(raw.mean())
        if dc <= 0:
            return 0.0
        return float(np.ptp(filtered)) / dc * 100.0

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def apply_calibration(self, thresholds: AdaptiveThresholds) -> None:
        """Adopt per-session red bounds and a (never stricter) pulsatility threshold."""
        cfg = self.config
        red_min = max(0.0, float(thresholds.red_min))
        red_max = min(cfg.saturation_level, float(thresholds.red_max))
        if red_max <= red_min:
            logger.warning(
                "Ignoring calibrated red range %.1f–%.1f (empty)", red_min, red_max
            )
            return
        self._red_min = red_min
        self._red_max = red_max
        self._pulsatility_threshold = min(
            cfg.pulsatility_threshold,
            max(cfg.min_pulsatility_threshold, float(thresholds.amplitude_min)),
        )
        self._calibrated = True
        logger.info(
            "Validator calibrated: red %.1f–%.1f, pulsatility threshold %.3f",
            self._red_min, self._red_max, self._pulsatility_threshold,
        )

    def clear_calibration(self) -> None:
        self._red_min = self.config.red_min
        self._red_max = self.config.red_max
        self._pulsatility_threshold = self.config.pulsatility_threshold
        self._calibrated = False

    def reset(self) -> None:
        self._history.clear()

    @property
    def red_min(self) -> float:
        return self._red_min

    @property
    def red_max(self) -> float:
        return self._red_max

    @property
    def pulsatility_threshold(self) -> float:
        return self._pulsatility_threshold

    @property
    def is_calibrated(self) -> bool:
        return self._calibrated
