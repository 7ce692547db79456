"""
Beat registration, RR validation and robust BPM estimation.

Samples are pushed one at a time with :meth:`BeatDetector.push`; once per
frame :meth:`BeatDetector.finalize` runs the peak detectors over the analysis
window, registers newly confirmed beats and updates BPM, HRV and rhythm
flags.

BPM estimation
--------------
On every new valid RR interval the target interval is a weighted blend of
the mean, median and histogram mode of the recent intervals.  As the
intervals become more variable (higher coefficient of variation) weight
moves from the mean towards the median and mode.  The displayed BPM follows
the target through a single-pole filter whose per-update step is bounded.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from typing import Deque, List, Optional, Sequence, Tuple

import numpy as np

from ppg_engine.config import BeatConfig
from ppg_engine.hrv import assess_rhythm, compute_hrv, histogram_mode, rr_statistics
from ppg_engine.models import BeatEvent, BeatResult, BeatStatus
from ppg_engine.peak_methods import FusedPeak, PeakMethod, default_methods, fuse_candidates

logger = logging.getLogger(__name__)


class BeatDetector:
    """
    Multi-method beat detector.

    Parameters
    ----------
    sample_rate:
        Frame rate in Hz.
    config:
        Detection settings; defaults to :class:`BeatConfig`.
    methods:
        Peak detectors to fuse; defaults to the derivative, prominence and
        wavelet-template methods weighted by ``config.method_weights``.
    """

    def __init__(
        self,
        sample_rate: float = 30.0,
        config: Optional[BeatConfig] = None,
        methods: Optional[Sequence[PeakMethod]] = None,
    ) -> None:
        self.config = config if config is not None else BeatConfig()
        self.config.validate()
        self.methods: List[PeakMethod] = (
            list(methods) if methods is not None else default_methods(self.config.method_weights)
        )
        if len(self.methods) < 2:
            raise ValueError("at least two peak methods are needed for consensus")

        cfg = self.config
        self._values: Deque[float] = deque(maxlen=cfg.window_size)
        self._timestamps: Deque[float] = deque(maxlen=cfg.window_size)
        self._rr: Deque[float] = deque(maxlen=cfg.rr_history_size)
        self._beats: Deque[BeatEvent] = deque(maxlen=cfg.beat_history_size)
        self.set_sample_rate(sample_rate)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push(self, value: float, timestamp: float) -> None:
        value = float(value)
        self._values.append(value if math.isfinite(value) else 0.0)
        self._timestamps.append(float(timestamp))
        self._sample_count += 1

    def finalize(self, quality: float) -> BeatResult:
        """Run detection over the current window and return this frame's result."""
        cfg = self.config
        if len(self._values) < cfg.min_history:
            return BeatResult(status=BeatStatus.INITIALIZING, bpm=self._bpm, confidence=0.0)

        window = np.fromiter(self._values, dtype=np.float64)
        timestamps = np.fromiter(self._timestamps, dtype=np.float64)
        peaks = self.detect_peaks(window)
        self._last_peaks = peaks

        gated = not quality >= cfg.min_quality
        new_rr, is_peak = self._register(peaks, window, timestamps, gated)
        if new_rr:
            self._update_bpm()

        rr = np.fromiter(self._rr, dtype=np.float64)
        hrv = compute_hrv(rr[-cfg.hrv_window:], cfg.min_rr_for_hrv)
        flags, irregularity = assess_rhythm(
            rr, cfg.min_rr_for_hrv, cfg.rhythm_window,
            cfg.irregular_cv, cfg.premature_ratio, cfg.compensatory_ratio,
        )

        if gated or len(peaks) < 2 or not self._has_estimate:
            status, confidence = BeatStatus.SEARCHING, 0.0
        else:
            status = BeatStatus.TRACKING
            cv = rr_statistics(rr[-cfg.bpm_window:])["cv"] if rr.size >= 2 else 0.0
            mean_conf = float(np.mean([p.confidence for p in peaks]))
            confidence = float(np.clip(
                mean_conf * (1.0 - min(1.0, cv)) * quality / 100.0, 0.0, 1.0
            ))

        return BeatResult(
            status=status,
            bpm=self._bpm,
            confidence=confidence,
            is_peak=is_peak,
            rr_intervals=tuple(rr.tolist()),
            hrv=hrv,
            rhythm_flags=flags,
            irregularity=irregularity,
            beat_count=self._beat_total,
        )

    def detect_peaks(self, window: np.ndarray) -> List[FusedPeak]:
        """Consensus peaks (positions in window samples) of a raw window."""
        x = np.asarray(window, dtype=np.float64)
        std = float(x.std()) if x.size else 0.0
        if x.size < 3 or std < 1e-9:
            return []
        z = (x - x.mean()) / std
        candidates = [m.detect(z, self._sample_rate, self._min_distance) for m in self.methods]
        return fuse_candidates(
            candidates,
            tolerance=self.config.merge_tolerance_s * self._sample_rate,
            consensus_threshold=self.config.consensus_threshold,
            min_distance=self._min_distance,
        )

    def set_sample_rate(self, sample_rate: float) -> None:
        if not sample_rate > 0:
            raise ValueError(f"sample_rate must be positive, got {sample_rate!r}")
        self._sample_rate = float(sample_rate)
        self._min_distance = max(1, int(round(self.config.min_rr_ms / 1000.0 * self._sample_rate)))
        self.reset()

    def reset(self) -> None:
        self._values.clear()
        self._timestamps.clear()
        self._rr.clear()
        self._beats.clear()
        self._sample_count = 0
        self._last_beat_index: Optional[int] = None
        self._chain_time: Optional[float] = None
        self._bpm = float(self.config.prior_bpm)
        self._has_estimate = False
        self._beat_total = 0
        self._rejected_rr = 0
        self._last_peaks: List[FusedPeak] = []

    @property
    def bpm(self) -> float:
        return self._bpm

    @property
    def rr_intervals(self) -> Tuple[float, ...]:
        return tuple(self._rr)

    @property
    def beats(self) -> Tuple[BeatEvent, ...]:
        return tuple(self._beats)

    @property
    def rejected_rr_count(self) -> int:
        return self._rejected_rr

    @property
    def last_peaks(self) -> Tuple[FusedPeak, ...]:
        return tuple(self._last_peaks)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _register(
        self,
        peaks: List[FusedPeak],
        window: np.ndarray,
        timestamps: np.ndarray,
        gated: bool,
    ) -> Tuple[bool, bool]:
        """Register new beats; return ``(new_rr_added, beat_registered)``."""
        cfg = self.config
        offset = self._sample_count - window.size
        last_local = window.size - 1 - cfg.edge_margin
        new_rr = False
        registered = False

        if gated and self._chain_time is not None:
            logger.debug("Beat registration paused (low quality); RR chain broken")
            self._chain_time = None

        for peak in peaks:
            local = int(round(peak.position))
            if local < 1 or local > last_local:
                continue
            absolute = offset + local
            if self._last_beat_index is not None and absolute < self._last_beat_index + self._min_distance:
                continue
            self._last_beat_index = absolute
            if gated:
                continue

            t = self._refine_time(window, timestamps, local)
            self._beats.append(BeatEvent(
                index=absolute,
                timestamp=t,
                amplitude=float(window[local]),
                confidence=peak.confidence,
            ))
            self._beat_total += 1
            registered = True

            if self._chain_time is not None:
                rr = t - self._chain_time
                if cfg.min_rr_ms <= rr <= cfg.max_rr_ms:
                    self._rr.append(rr)
                    new_rr = True
                else:
                    self._rejected_rr += 1
                    logger.debug("RR interval %.0f ms outside physiological range; discarded", rr)
            self._chain_time = t
        return new_rr, registered

    @staticmethod
    def _refine_time(window: np.ndarray, timestamps: np.ndarray, i: int) -> float:
        """Parabolic interpolation of the peak time around sample *i*."""
        if i <= 0 or i >= window.size - 1:
            return float(timestamps[i])
        y0, y1, y2 = window[i - 1], window[i], window[i + 1]
        denom = y0 - 2.0 * y1 + y2
        if denom >= 0:
            return float(timestamps[i])
        delta = float(np.clip(0.5 * (y0 - y2) / denom, -0.5, 0.5))
        if delta >= 0:
            return float(timestamps[i] + delta * (timestamps[i + 1] - timestamps[i]))
        return float(timestamps[i] + delta * (timestamps[i] - timestamps[i - 1]))

    def _update_bpm(self) -> None:
        cfg = self.config
        recent = np.fromiter(self._rr, dtype=np.float64)[-cfg.bpm_window:]
        mean = float(recent.mean())
        median = float(np.median(recent))
        mode = histogram_mode(recent, cfg.mode_bin_ms)
        cv = rr_statistics(recent)["cv"]

        irr = min(1.0, cv / cfg.high_cv)
        w_mean = 0.5 - 0.35 * irr
        w_median = 0.3 + 0.2 * irr
        w_mode = 0.2 + 0.15 * irr
        target_rr = w_mean * mean + w_median * median + w_mode * mode
        target = float(np.clip(60000.0 / target_rr, cfg.min_bpm, cfg.max_bpm))

        step = float(np.clip(cfg.bpm_alpha * (target - self._bpm), -cfg.max_bpm_step, cfg.max_bpm_step))
        previous = self._bpm
        self._bpm = previous + step
        if not self._has_estimate:
            logger.info("First BPM estimate: target %.1f, reported %.1f", target, self._bpm)
        self._has_estimate = True
        logger.debug("BPM %.1f -> %.1f (target %.1f, RR cv %.3f)", previous, self._bpm, target, cv)
