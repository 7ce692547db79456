"""
Sample-by-sample PPG signal conditioner.

Pipeline
--------
1. Sanitise the raw scalar (non-finite input becomes 0).
2. Jump guard: isolated non-physiological jumps are held at the last accepted
   value; a jump that persists is accepted as a new level and the filter
   memory is re-seeded there, so placing the finger does not ring the filters.
3. 2nd-order Butterworth high-pass (default 0.5 Hz) removes DC and baseline
   drift.
4. 2nd-order Butterworth low-pass (default 4 Hz) removes high-frequency noise.
5. 5-point Savitzky–Golay smoothing (coefficients [-3, 12, 17, 12, -3] / 35)
   which keeps the systolic peak shape.
6. Outlier clamp: a value further than 3 σ from the rolling mean of the last
   ~30 outputs is replaced by that mean.

Filter coefficients come from :func:`scipy.signal.butter` (bilinear transform)
and are cached until :meth:`SignalConditioner.set_sample_rate` is called.
A numerical blow-up anywhere in the chain resets the filter memory and
yields 0.0 for that sample; no exception reaches the caller.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from typing import Deque, Dict, Iterable, Optional

import numpy as np
from scipy.signal import butter, savgol_coeffs, sosfilt, sosfilt_zi

from ppg_engine.config import ConditionerConfig
from ppg_engine.models import ConditionedSample

logger = logging.getLogger(__name__)


class _FilterDivergence(ArithmeticError):
    """Raised internally when a stage output leaves the finite/bounded range."""


class SignalConditioner:
    """
    Cascaded band-limiting filter with smoothing and outlier rejection.

    Parameters
    ----------
    sample_rate:
        Sampling rate of the incoming scalar in Hz (the camera frame rate).
    config:
        Filter settings; defaults to :class:`ConditionerConfig`.
    """

    def __init__(
        self,
        sample_rate: float = 30.0,
        config: Optional[ConditionerConfig] = None,
    ) -> None:
        self.config = config if config is not None else ConditionerConfig()
        self.config.validate()
        if not sample_rate > 0:
            raise ValueError(f"sample_rate must be positive, got {sample_rate!r}")
        self._sample_rate = float(sample_rate)

        self._smooth_coeffs = savgol_coeffs(
            self.config.smoothing_window, self.config.smoothing_polyorder, use="dot"
        )
        self._smooth_buffer: Deque[float] = deque(maxlen=self.config.smoothing_window)
        self._outlier_window: Deque[float] = deque(maxlen=self.config.outlier_window)

        self._hp_sos, self._lp_sos = self._design_filters()
        self._hp_zi: Optional[np.ndarray] = None
        self._lp_zi: Optional[np.ndarray] = None

        self._last_accepted: Optional[float] = None
        self._pending_level: Optional[float] = None
        self._pending_count: int = 0

        self._substitutions: int = 0
        self._divergences: int = 0
        self._suppressed_jumps: int = 0
        self._clamped: int = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def filter(self, raw_value: float) -> float:
        """Condition one raw sample and return the filtered value (always finite)."""
        return self._filter_value(self._sanitize(raw_value))

    def condition(self, timestamp: int, raw_value: float) -> ConditionedSample:
        """Like :meth:`filter`, keeping the timestamp and the substituted raw value."""
        x = self._sanitize(raw_value)
        return ConditionedSample(timestamp, x, self._filter_value(x))

    def process(self, values: Iterable[float]) -> np.ndarray:
        """Condition a whole sequence, sample by sample."""
        return np.array([self.filter(v) for v in values], dtype=np.float64)

    def set_sample_rate(self, sample_rate: float) -> None:
        """Redesign the filters for *sample_rate* and reset all state."""
        if not sample_rate > 0:
            raise ValueError(f"sample_rate must be positive, got {sample_rate!r}")
        self._sample_rate = float(sample_rate)
        self._hp_sos, self._lp_sos = self._design_filters()
        self.reset()
        logger.info("Conditioner sample rate set to %.2f Hz", self._sample_rate)

    def reset(self) -> None:
        """Clear filter memory, smoothing buffer, outlier window and counters."""
        self._reset_filter_state()
        self._last_accepted = None
        self._pending_level = None
        self._pending_count = 0
        self._substitutions = 0
        self._divergences = 0
        self._suppressed_jumps = 0
        self._clamped = 0

    @property
    def sample_rate(self) -> float:
        return self._sample_rate

    @property
    def coefficients(self) -> Dict[str, np.ndarray]:
        """Copies of the cached filter coefficients."""
        return {
            "highpass": self._hp_sos.copy(),
            "lowpass": self._lp_sos.copy(),
            "smoothing": self._smooth_coeffs.copy(),
        }

    @property
    def substitution_count(self) -> int:
        return self._substitutions

    @property
    def divergence_count(self) -> int:
        return self._divergences

    @property
    def suppressed_jump_count(self) -> int:
        return self._suppressed_jumps

    @property
    def clamped_count(self) -> int:
        return self._clamped

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _design_filters(self):
        """Return ``(highpass_sos, lowpass_sos)`` for the current sample rate."""
        cfg = self.config
        nyq = self._sample_rate / 2.0
        lowpass = min(cfg.lowpass_hz, 0.95 * nyq)
        if cfg.highpass_hz >= lowpass:
            raise ValueError(
                f"Sample rate {self._sample_rate} Hz is too low for a "
                f"{cfg.highpass_hz} Hz high-pass"
            )
        hp = butter(cfg.filter_order, cfg.highpass_hz, btype="highpass",
                    fs=self._sample_rate, output="sos")
        lp = butter(cfg.filter_order, lowpass, btype="lowpass",
                    fs=self._sample_rate, output="sos")
        return hp, lp

    def _sanitize(self, raw_value: float) -> float:
        try:
            x = float(raw_value)
        except (TypeError, ValueError):
            x = math.nan
        if not math.isfinite(x):
            self._substitutions += 1
            logger.debug("Non-finite conditioner input %r replaced by 0", raw_value)
            return 0.0
        return x

    def _filter_value(self, x: float) -> float:
        x = self._guard_jump(x)

        try:
            if self._hp_zi is None:
                self._seed(x)
            hp, self._hp_zi = sosfilt(self._hp_sos, [x], zi=self._hp_zi)
            hp_value = self._checked(hp[0])
            lp, self._lp_zi = sosfilt(self._lp_sos, [hp_value], zi=self._lp_zi)
            lp_value = self._checked(lp[0])
            smoothed = self._checked(self._smooth(lp_value))
            return self._checked(self._reject_outlier(smoothed))
        except _FilterDivergence:
            self._divergences += 1
            logger.warning(
                "Filter diverged on input %.3f, resetting filter state (%d so far)",
                x, self._divergences,
            )
            self._reset_filter_state()
            return 0.0

    def _guard_jump(self, x: float) -> float:
        limit = self.config.max_value_jump
        if limit is None or self._last_accepted is None:
            self._last_accepted = x
            return x

        if abs(x - self._last_accepted) <= limit:
            self._pending_level = None
            self._pending_count = 0
            self._last_accepted = x
            return x

        # Jump: count how long the new level persists
        if self._pending_level is not None and abs(x - self._pending_level) <= limit:
            self._pending_count += 1
        else:
            self._pending_level = x
            self._pending_count = 1

        if self._pending_count >= self.config.jump_confirm_samples:
            logger.info(
                "Level change %.1f -> %.1f accepted; re-seeding filters",
                self._last_accepted, x,
            )
            self._pending_level = None
            self._pending_count = 0
            self._last_accepted = x
            self._hp_zi = None
            return x

        self._suppressed_jumps += 1
        return self._last_accepted

    def _seed(self, x: float) -> None:
        """Start the filters in steady state for a constant input *x*."""
        self._hp_zi = sosfilt_zi(self._hp_sos) * x
        self._lp_zi = np.zeros_like(sosfilt_zi(self._lp_sos))

    def _smooth(self, value: float) -> float:
        self._smooth_buffer.append(value)
        if len(self._smooth_buffer) < self._smooth_buffer.maxlen:
            return value
        return float(np.dot(self._smooth_coeffs, np.fromiter(self._smooth_buffer, dtype=np.float64)))

    def _reject_outlier(self, value: float) -> float:
        window = self._outlier_window
        if len(window) >= self.config.outlier_min_samples:
            arr = np.fromiter(window, dtype=np.float64)
            mean = float(arr.mean())
            std = float(arr.std())
            if std > 1e-9 and abs(value - mean) > self.config.outlier_sigma * std:
                self._clamped += 1
                value = mean
        window.append(value)
        return value

    def _checked(self, value: float) -> float:
        value = float(value)
        if not math.isfinite(value) or abs(value) > self.config.divergence_limit:
            raise _FilterDivergence(value)
        return value

    def _reset_filter_state(self) -> None:
        self._hp_zi = None
        self._lp_zi = None
        self._smooth_buffer.clear()
        self._outlier_window.clear()
