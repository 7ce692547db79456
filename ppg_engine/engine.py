"""
Per-frame orchestration of the PPG pipeline.

:class:`PPGEngine` owns one instance of every component and pushes each
:class:`~ppg_engine.models.FrameStats` through them in a fixed order::

    sanitise -> SignalConditioner -> {trend scores, validator scores,
    BeatDetector.push} -> QualityDetector.update -> BeatDetector.finalize
    -> Calibrator.add_sample (while calibrating) -> ProcessedSignal

Everything runs synchronously on the caller's thread.  Data problems are
recovered locally and counted; only invalid configuration raises.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np

from ppg_engine.beat_detector import BeatDetector
from ppg_engine.biophysical_validator import BiophysicalValidator
from ppg_engine.calibrator import Calibrator
from ppg_engine.config import EngineConfig, get_profile
from ppg_engine.models import (
    BeatEvent,
    CalibrationProfile,
    ColorMeans,
    DetectorScoreSet,
    Diagnostics,
    FrameStats,
    ProcessedSignal,
    QualityState,
)
from ppg_engine.quality_detector import QualityDetector
from ppg_engine.signal_conditioner import SignalConditioner
from ppg_engine.trend_analyzer import SignalTrendAnalyzer

logger = logging.getLogger(__name__)


class PPGEngine:
    """
    Finger-PPG engine.

    Parameters
    ----------
    config:
        Profile name (``"strict"`` or ``"permissive"``) or a full
        :class:`EngineConfig`.
    conditioner, trend, validator, quality_detector, beat_detector, calibrator:
        Optional pre-built components; anything not supplied is built from
        *config*.
    """

    def __init__(
        self,
        config: Union[str, EngineConfig] = "strict",
        *,
        conditioner: Optional[SignalConditioner] = None,
        trend: Optional[SignalTrendAnalyzer] = None,
        validator: Optional[BiophysicalValidator] = None,
        quality_detector: Optional[QualityDetector] = None,
        beat_detector: Optional[BeatDetector] = None,
        calibrator: Optional[Calibrator] = None,
    ) -> None:
        self.config = get_profile(config) if isinstance(config, str) else config.validate()
        cfg = self.config
        fs = cfg.sample_rate

        self.conditioner = conditioner or SignalConditioner(fs, cfg.conditioner)
        self.trend = trend or SignalTrendAnalyzer(fs, cfg.trend, cfg.beat.min_bpm, cfg.beat.max_bpm)
        self.validator = validator or BiophysicalValidator(cfg.validator)
        self.quality_detector = quality_detector or QualityDetector(cfg.quality)
        self.beat_detector = beat_detector or BeatDetector(fs, cfg.beat)
        self.calibrator = calibrator or Calibrator(cfg.calibration)

        self._raw: Deque[float] = deque(maxlen=cfg.buffer_size)
        self._filtered: Deque[float] = deque(maxlen=cfg.buffer_size)
        self._running = False
        self._reset_counters()
        logger.info("PPGEngine created (profile %s, %.1f Hz)", cfg.name, fs)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self) -> bool:
        if self._running:
            logger.debug("start() ignored: already running")
            return False
        self._running = True
        logger.info("Engine started")
        return True

    def stop(self) -> None:
        """Stop processing and clear all state.  Safe to call repeatedly."""
        if self._running:
            logger.info("Engine stopped after %d frames", self._frames)
        self._running = False
        self.reset()

    def reset(self) -> None:
        """Clear every buffer, counter and calibration without changing run state."""
        self.conditioner.reset()
        self.trend.reset()
        self.validator.reset()
        self.validator.clear_calibration()
        self.quality_detector.reset()
        self.quality_detector.clear_calibration()
        self.beat_detector.reset()
        self.calibrator.reset()
        self._raw.clear()
        self._filtered.clear()
        self._reset_counters()

    def start_calibration(self) -> bool:
        if not self._running:
            logger.debug("start_calibration() ignored: engine not running")
            return False
        if not self.calibrator.start_calibration():
            return False
        self.validator.clear_calibration()
        self.quality_detector.clear_calibration()
        return True

    def force_complete(self) -> bool:
        """Finish a running calibration early (needs enough samples)."""
        if not self.calibrator.force_complete():
            return False
        self._apply_calibration()
        return True

    def set_sample_rate(self, sample_rate: float) -> None:
        if not sample_rate > 0:
            raise ValueError(f"sample_rate must be positive, got {sample_rate!r}")
        self.config.sample_rate = float(sample_rate)
        self.conditioner.set_sample_rate(sample_rate)
        self.trend.set_sample_rate(sample_rate)
        self.beat_detector.set_sample_rate(sample_rate)
        self.reset()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_frame(self, frame: FrameStats) -> Optional[ProcessedSignal]:
        """
        Process one frame.

        Returns ``None`` when the engine is not running or when the frame's
        timestamp does not advance past the previous frame's (the frame is
        dropped and counted).
        """
        if not self._running:
            logger.debug("Frame at %s ignored: engine not running", frame.timestamp)
            return None
        timestamp = frame.timestamp
        if self._last_timestamp is not None and not timestamp > self._last_timestamp:
            self._dropped += 1
            logger.debug("Dropping out-of-order frame %s (last %s)", timestamp, self._last_timestamp)
            return None
        self._last_timestamp = timestamp

        colors = ColorMeans(
            r=self._sanitize(frame.color_means.r, 0.0, 255.0),
            g=self._sanitize(frame.color_means.g, 0.0, 255.0),
            b=self._sanitize(frame.color_means.b, 0.0, 255.0),
        )
        coverage = self._sanitize(frame.coverage_ratio, 0.0, 1.0)
        motion = self._sanitize(frame.motion_level, 0.0, math.inf)
        raw = colors.r

        sample = self.conditioner.condition(timestamp, raw)
        filtered = sample.filtered_value
        self._raw.append(raw)
        self._filtered.append(filtered)
        self.trend.push(raw, filtered)
        filtered_window = np.fromiter(self._filtered, dtype=np.float64)

        scores = DetectorScoreSet(
            channel=self.trend.channel_score(colors, coverage),
            stability=self.trend.stability_score(motion),
            pulsatility=self.validator.pulsatility_score(filtered_window),
            biophysical=self.validator.biophysical_score(colors),
            periodicity=self.trend.periodicity_score(),
        )
        self.beat_detector.push(filtered, timestamp)
        detection = self.quality_detector.update(scores)
        beat = self.beat_detector.finalize(detection.quality)
        perfusion = self.validator.perfusion_index(filtered_window, self._raw)

        if self.calibrator.is_calibrating:
            texture = frame.texture_score if frame.texture_score is not None else coverage
            texture = self._sanitize(texture, 0.0, 1.0)
            if self.calibrator.add_sample(raw, detection.quality, texture, timestamp):
                self._apply_calibration()

        self._frames += 1
        calibration = self.calibrator.profile
        diagnostics = Diagnostics(
            contact_state=detection.state,
            scores=scores,
            breakdown=detection.breakdown,
            beat=beat,
            calibration_progress=calibration.progress,
            is_calibrating=calibration.is_calibrating,
            input_substitutions=self._substitutions + self.conditioner.substitution_count,
            divergence_resets=self.conditioner.divergence_count,
            suppressed_jumps=self.conditioner.suppressed_jump_count,
        )
        return ProcessedSignal(
            timestamp=timestamp,
            raw_value=raw,
            filtered_value=filtered,
            quality=detection.quality,
            finger_detected=detection.is_detected,
            perfusion_index=perfusion,
            diagnostics=diagnostics,
        )

    def process_frames(self, frames: Iterable[FrameStats]) -> List[ProcessedSignal]:
        """Process a sequence of frames, skipping dropped ones."""
        results = []
        for frame in frames:
            result = self.process_frame(frame)
            if result is not None:
                results.append(result)
        return results

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def filtered_buffer(self, n: Optional[int] = None) -> np.ndarray:
        """Copy of the most recent *n* filtered samples (all when *n* is None)."""
        return self._tail(self._filtered, n)

    def raw_buffer(self, n: Optional[int] = None) -> np.ndarray:
        return self._tail(self._raw, n)

    @property
    def rr_intervals(self) -> Tuple[float, ...]:
        return self.beat_detector.rr_intervals

    @property
    def beats(self) -> Tuple[BeatEvent, ...]:
        return self.beat_detector.beats

    @property
    def bpm(self) -> float:
        return self.beat_detector.bpm

    @property
    def quality_state(self) -> QualityState:
        return self.quality_detector.state

    @property
    def calibration_profile(self) -> CalibrationProfile:
        return self.calibrator.profile

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def statistics(self) -> Dict[str, int]:
        return {
            "frames_processed": self._frames,
            "frames_dropped": self._dropped,
            "input_substitutions": self._substitutions + self.conditioner.substitution_count,
            "divergence_resets": self.conditioner.divergence_count,
            "suppressed_jumps": self.conditioner.suppressed_jump_count,
            "rejected_rr": self.beat_detector.rejected_rr_count,
            "beats": len(self.beat_detector.beats),
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _reset_counters(self) -> None:
        self._frames = 0
        self._dropped = 0
        self._substitutions = 0
        self._last_timestamp: Optional[float] = None

    def _sanitize(self, value: float, low: float, high: float) -> float:
        try:
            x = float(value)
        except (TypeError, ValueError):
            x = math.nan
        if not math.isfinite(x):
            self._substitutions += 1
            logger.debug("Non-finite input %r replaced by %s", value, low)
            return low
        if x < low or x > high:
            self._substitutions += 1
            logger.debug("Input %r clipped to [%s, %s]", value, low, high)
            return min(high, max(low, x))
        return x

    def _apply_calibration(self) -> None:
        thresholds = self.calibrator.profile.adaptive_thresholds
        self.validator.apply_calibration(thresholds)
        self.quality_detector.apply_calibration(thresholds.quality_min)
        logger.info("Calibrated thresholds applied: %s", thresholds)

    @staticmethod
    def _tail(buffer: Deque[float], n: Optional[int]) -> np.ndarray:
        arr = np.fromiter(buffer, dtype=np.float64)
        if n is None:
            return arr
        if n <= 0:
            return arr[:0].copy()
        return arr[-n:].copy()
