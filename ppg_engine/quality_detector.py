"""
Fusion of detector scores into a smoothed quality and a contact decision.

A :class:`WeightingStrategy` turns the per-frame :class:`DetectorScoreSet`
into a frame quality; disagreement between physically linked scores pulls
it towards zero; a recency-weighted average smooths it; and a hysteresis
state machine decides whether a finger is in contact.

Colour and stability alone describe any steady red surface, so a frame
whose pulsatility and periodicity both stay under ``pulsatile_floor`` is
capped below the release threshold, calibrated or not.

State machine
-------------
::

    NO_CONTACT --(q >= detection)--> ACQUIRING
    ACQUIRING  --(min_consecutive_detections frames >= detection)--> CONTACT_CONFIRMED
    ACQUIRING  --(q < release)--> NO_CONTACT
    CONTACT_CONFIRMED --(max_consecutive_no_detections frames < release)--> NO_CONTACT

Quality inside the dead band ``[release, detection)`` leaves both counters
and the state untouched.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, Mapping, Optional, Tuple, Union

import numpy as np

from ppg_engine.config import SCORE_NAMES, QualityConfig, resolve_weights
from ppg_engine.models import ContactState, DetectionResult, DetectorScoreSet, QualityState

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Weighting strategies
# ---------------------------------------------------------------------------

class WeightingStrategy(ABC):
    """Maps a score set to a combined value in [0, 1]."""

    name: str = "abstract"

    @abstractmethod
    def combine(self, scores: DetectorScoreSet) -> Tuple[float, Dict[str, float]]:
        """Return ``(combined, per_score_contributions)``."""


class WeightedSumStrategy(WeightingStrategy):
    """
    Normalised weighted sum of the detector scores.

    *weights* is either a preset name from
    :data:`ppg_engine.config.WEIGHTING_PRESETS` or an explicit mapping
    (normalised to sum 1).
    """

    def __init__(self, weights: Union[str, Mapping[str, float]] = "balanced",
                 name: Optional[str] = None) -> None:
        self.weights = resolve_weights(weights)
        self.name = name or (weights if isinstance(weights, str) else "custom")

    def combine(self, scores: DetectorScoreSet) -> Tuple[float, Dict[str, float]]:
        values = scores.as_dict()
        contributions = {n: self.weights[n] * values[n] for n in SCORE_NAMES}
        return float(np.clip(sum(contributions.values()), 0.0, 1.0)), contributions

    def __repr__(self) -> str:
        return f"WeightedSumStrategy(name={self.name!r}, weights={self.weights!r})"


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------

class QualityDetector:
    """
    Parameters
    ----------
    config:
        Thresholds and smoothing; defaults to :class:`QualityConfig`.
    strategy:
        Fusion strategy; defaults to a :class:`WeightedSumStrategy` built from
        ``config.weighting``.
    """

    def __init__(
        self,
        config: Optional[QualityConfig] = None,
        strategy: Optional[WeightingStrategy] = None,
    ) -> None:
        self.config = config if config is not None else QualityConfig()
        self.config.validate()
        self.strategy = strategy if strategy is not None else WeightedSumStrategy(self.config.weighting)
        self._history: Deque[float] = deque(maxlen=self.config.history_size)
        self._detection_threshold = self.config.detection_threshold
        self._release_threshold = self.config.release_threshold
        self.reset()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def update(self, scores: DetectorScoreSet) -> DetectionResult:
        combined, contributions = self.strategy.combine(scores)
        disagreement = self._disagreement(scores)
        factor = self._consistency_factor(disagreement)
        frame_quality = 100.0 * combined * factor

        evidence = self._pulsatile_evidence(scores)
        gated = evidence < self.config.pulsatile_floor
        if gated:
            frame_quality = min(frame_quality, self.config.gated_quality_ratio * self._release_threshold)

        self._history.append(frame_quality)
        self._quality = self._smoothed()
        self._advance(self._quality)

        breakdown = {f"{n}_contribution": 100.0 * c for n, c in contributions.items()}
        breakdown.update(
            raw_quality=100.0 * combined,
            disagreement=disagreement,
            consistency_factor=factor,
            pulsatile_evidence=evidence,
            pulsatile_gated=float(gated),
            frame_quality=frame_quality,
            smoothed_quality=self._quality,
            detection_threshold=self._detection_threshold,
            release_threshold=self._release_threshold,
        )
        return DetectionResult(
            is_detected=self._state is ContactState.CONTACT_CONFIRMED,
            quality=self._quality,
            frame_quality=frame_quality,
            state=self._state,
            breakdown=breakdown,
        )

    def apply_calibration(self, quality_min: float) -> None:
        """
        Lower the detection threshold to a calibrated quality level.

        The threshold never goes below ``calibration_floor`` nor above the
        profile value; the release threshold keeps the profile gap.
        """
        cfg = self.config
        gap = cfg.detection_threshold - cfg.release_threshold
        detection = float(np.clip(quality_min, cfg.calibration_floor, cfg.detection_threshold))
        self._detection_threshold = detection
        self._release_threshold = max(0.0, detection - gap)
        logger.info(
            "Quality thresholds calibrated: detect %.1f, release %.1f",
            self._detection_threshold, self._release_threshold,
        )

    def clear_calibration(self) -> None:
        self._detection_threshold = self.config.detection_threshold
        self._release_threshold = self.config.release_threshold

    def reset(self) -> None:
        self._history.clear()
        self._quality = 0.0
        self._detections = 0
        self._no_detections = 0
        self._state = ContactState.NO_CONTACT

    @property
    def state(self) -> QualityState:
        return QualityState(
            smoothed_quality=self._quality,
            consecutive_detections=self._detections,
            consecutive_no_detections=self._no_detections,
            contact_state=self._state,
        )

    @property
    def detection_threshold(self) -> float:
        return self._detection_threshold

    @property
    def release_threshold(self) -> float:
        return self._release_threshold

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _disagreement(self, scores: DetectorScoreSet) -> float:
        return max(
            (abs(getattr(scores, a) - getattr(scores, b)) for a, b in self.config.consistency_pairs),
            default=0.0,
        )

    def _pulsatile_evidence(self, scores: DetectorScoreSet) -> float:
        names = self.config.pulsatile_scores
        if not names:
            return 1.0
        return max(getattr(scores, n) for n in names)

    def _consistency_factor(self, disagreement: float) -> float:
        tol = self.config.consistency_tolerance
        if disagreement <= tol:
            return 1.0
        return max(0.0, 1.0 - (disagreement - tol) / (1.0 - tol))

    def _smoothed(self) -> float:
        values = np.fromiter(self._history, dtype=np.float64)
        weights = np.arange(1, values.size + 1, dtype=np.float64)
        return float(np.clip(np.dot(values, weights) / weights.sum(), 0.0, 100.0))

    def _advance(self, quality: float) -> None:
        cfg = self.config
        if quality >= self._detection_threshold:
            self._detections += 1
            self._no_detections = 0
            if self._state is not ContactState.CONTACT_CONFIRMED:
                if self._detections >= cfg.min_consecutive_detections:
                    self._transition(ContactState.CONTACT_CONFIRMED, quality)
                else:
                    self._transition(ContactState.ACQUIRING, quality)
        elif quality < self._release_threshold:
            self._no_detections += 1
            self._detections = 0
            if self._state is ContactState.ACQUIRING:
                self._transition(ContactState.NO_CONTACT, quality)
            elif (self._state is ContactState.CONTACT_CONFIRMED
                  and self._no_detections >= cfg.max_consecutive_no_detections):
                self._transition(ContactState.NO_CONTACT, quality)

    def _transition(self, new_state: ContactState, quality: float) -> None:
        if new_state is self._state:
            return
        logger.info(
            "Contact %s -> %s (quality %.1f)", self._state.value, new_state.value, quality
        )
        self._state = new_state
