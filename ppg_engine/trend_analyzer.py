"""
Trend-based detector scores: channel, stability and periodicity.

The analyser keeps short histories of the raw red scalar and of the
conditioned signal and turns them into three of the five scores fused by
:class:`~ppg_engine.quality_detector.QualityDetector`.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from typing import Deque, Optional

import numpy as np

from ppg_engine.config import TrendConfig
from ppg_engine.models import ColorMeans

logger = logging.getLogger(__name__)


class SignalTrendAnalyzer:
    """
    Scores derived from the recent signal history.

    Parameters
    ----------
    sample_rate:
        Frame rate in Hz; fixes the autocorrelation lag range.
    config:
        Scoring settings; defaults to :class:`TrendConfig`.
    min_bpm, max_bpm:
        Physiological heart-rate window searched by :meth:`periodicity_score`.
    """

    def __init__(
        self,
        sample_rate: float = 30.0,
        config: Optional[TrendConfig] = None,
        min_bpm: float = 45.0,
        max_bpm: float = 180.0,
    ) -> None:
        self.config = config if config is not None else TrendConfig()
        self.config.validate()
        if not 0 < min_bpm < max_bpm:
            raise ValueError("BPM range must satisfy 0 < min_bpm < max_bpm")
        self._min_bpm = float(min_bpm)
        self._max_bpm = float(max_bpm)
        self._raw: Deque[float] = deque()
        self._filtered: Deque[float] = deque()
        self.set_sample_rate(sample_rate)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push(self, raw_value: float, filtered_value: float) -> None:
        self._raw.append(float(raw_value))
        self._filtered.append(float(filtered_value))

    def channel_score(self, color_means: ColorMeans, coverage_ratio: float = 1.0) -> float:
        """Red-intensity band score scaled by how much of the ROI is covered."""
        cfg = self.config
        red = color_means.r / 255.0
        if not math.isfinite(red) or red < cfg.red_floor or red > cfg.red_ceiling:
            band = 0.1
        elif cfg.red_optimal_low <= red <= cfg.red_optimal_high:
            band = 1.0
        else:
            band = 0.6

        span = cfg.full_coverage - cfg.min_coverage
        coverage = float(np.clip((coverage_ratio - cfg.min_coverage) / span, 0.0, 1.0))
        return band * coverage

    def stability_score(self, motion_level: float = 0.0) -> float:
        """1 for a steady raw level, falling towards 0 with large jumps or motion."""
        if len(self._raw) < 2:
            return 0.0
        window = np.fromiter(self._raw, dtype=np.float64)[-self.config.stability_window:]
        max_jump = float(np.max(np.abs(np.diff(window))))
        score = 1.0 - min(1.0, max_jump / self.config.max_value_jump)
        return score / (1.0 + max(0.0, float(motion_level)))

    def periodicity_score(self) -> float:
        """Peak normalised autocorrelation within the physiological lag range."""
        n_needed = 2 * self._lag_max
        if len(self._filtered) < n_needed:
            return 0.0
        x = np.fromiter(self._filtered, dtype=np.float64)[-self._periodicity_len:]
        # filter transients left after the finger is lifted still autocorrelate
        if float(np.ptp(x)) < self.config.min_periodicity_amplitude:
            return 0.0
        x = x - x.mean()
        n = x.size
        var = float(np.dot(x, x)) / n
        if var < 1e-12:
            return 0.0

        best = 0.0
        for lag in range(self._lag_min, self._lag_max + 1):
            r = float(np.dot(x[:-lag], x[lag:])) / ((n - lag) * var)
            best = max(best, r)
        return float(np.clip(best, 0.0, 1.0))

    def set_sample_rate(self, sample_rate: float) -> None:
        if not sample_rate > 0:
            raise ValueError(f"sample_rate must be positive, got {sample_rate!r}")
        self._sample_rate = float(sample_rate)
        self._lag_min = max(1, int(math.floor(self._sample_rate * 60.0 / self._max_bpm)))
        self._lag_max = max(self._lag_min + 1,
                            int(math.ceil(self._sample_rate * 60.0 / self._min_bpm)))
        self._periodicity_len = max(self.config.periodicity_window, 2 * self._lag_max)
        self._raw = deque(maxlen=max(self.config.history_size, self.config.stability_window))
        self._filtered = deque(maxlen=max(self.config.history_size, self._periodicity_len))

    def reset(self) -> None:
        self._raw.clear()
        self._filtered.clear()

    @property
    def sample_count(self) -> int:
        return len(self._filtered)
