"""
Engine configuration.

Every threshold, window length and fusion weight used by the pipeline lives
here, grouped in one dataclass per component.  Two named threshold profiles
are provided:

``"strict"``
    Narrow colour bands, higher quality thresholds and a 70 % consensus
    requirement for beats.  Preferred default for a health signal: it trades
    slower acquisition for fewer false "finger detected" reports.
``"permissive"``
    Wider colour bands and lower thresholds for dark skin tones, thick
    fingers or weak flash illumination.

Detector weights are not physiologically pinned down (published tunings put
the red-channel weight anywhere between 0.15 and 0.40), so they are exposed
as named presets in :data:`WEIGHTING_PRESETS` rather than hard-coded.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

SCORE_NAMES: Tuple[str, ...] = (
    "channel",
    "stability",
    "pulsatility",
    "biophysical",
    "periodicity",
)

# ---------------------------------------------------------------------------
# Detector weighting presets (each sums to 1)
# ---------------------------------------------------------------------------

WEIGHTING_PRESETS: Dict[str, Dict[str, float]] = {
    "balanced": {
        "channel":     0.25,
        "stability":   0.15,
        "pulsatility": 0.30,
        "biophysical": 0.15,
        "periodicity": 0.15,
    },
    "red_dominant": {
        "channel":     0.40,
        "stability":   0.15,
        "pulsatility": 0.30,
        "biophysical": 0.10,
        "periodicity": 0.05,
    },
}


def _check_positive(name: str, value: float) -> None:
    if not value > 0:
        raise ValueError(f"{name} must be positive, got {value!r}")


# ---------------------------------------------------------------------------
# Component configurations
# ---------------------------------------------------------------------------

@dataclass
class ConditionerConfig:
    """
    Cascaded filter settings.

    ``max_value_jump`` is the largest sample-to-sample change of the raw
    scalar still considered physiological; ``None`` disables the jump guard.
    """

    highpass_hz: float = 0.5
    lowpass_hz: float = 4.0
    filter_order: int = 2
    smoothing_window: int = 5
    smoothing_polyorder: int = 2
    outlier_window: int = 30
    outlier_min_samples: int = 10
    outlier_sigma: float = 3.0
    divergence_limit: float = 1e10
    max_value_jump: Optional[float] = 45.0
    jump_confirm_samples: int = 3

    def validate(self) -> None:
        _check_positive("highpass_hz", self.highpass_hz)
        _check_positive("lowpass_hz", self.lowpass_hz)
        if self.highpass_hz >= self.lowpass_hz:
            raise ValueError("highpass_hz must be below lowpass_hz")
        if self.smoothing_window % 2 == 0 or self.smoothing_window <= self.smoothing_polyorder:
            raise ValueError("smoothing_window must be odd and larger than smoothing_polyorder")
        if self.outlier_window < self.outlier_min_samples:
            raise ValueError("outlier_window must hold at least outlier_min_samples")
        if self.jump_confirm_samples < 1:
            raise ValueError("jump_confirm_samples must be >= 1")


@dataclass
class TrendConfig:
    """Channel / stability / periodicity scoring."""

    history_size: int = 90
    stability_window: int = 20
    periodicity_window: int = 90
    # Peak-to-peak of the filtered window below which periodicity scores 0
    min_periodicity_amplitude: float = 0.5
    max_value_jump: float = 45.0
    # Red intensity as a fraction of full scale
    red_floor: float = 0.10
    red_ceiling: float = 0.95
    red_optimal_low: float = 0.30
    red_optimal_high: float = 0.80
    min_coverage: float = 0.35
    full_coverage: float = 0.60

    def validate(self) -> None:
        _check_positive("max_value_jump", self.max_value_jump)
        if self.min_periodicity_amplitude < 0:
            raise ValueError("min_periodicity_amplitude must be >= 0")
        if not 0.0 <= self.min_coverage < self.full_coverage <= 1.0:
            raise ValueError("coverage bounds must satisfy 0 <= min < full <= 1")


@dataclass
class ValidatorConfig:
    """Pulsatility and colour plausibility thresholds."""

    pulsatility_window: int = 30
    min_window: int = 5
    pulsatility_normalization: float = 25.0
    pulsatility_threshold: float = 0.15
    red_min: float = 35.0
    red_max: float = 220.0
    saturation_level: float = 250.0
    min_green: float = 5.0
    min_blue: float = 3.0
    red_to_green: Tuple[float, float] = (1.2, 3.0)
    red_to_blue: Tuple[float, float] = (1.1, 3.5)
    ratio_weight_rg: float = 0.4
    ratio_weight_rb: float = 0.3
    intensity_weight: float = 0.3
    smoothing_size: int = 5
    perfusion_window: int = 60
    min_pulsatility_threshold: float = 0.02

    def validate(self) -> None:
        _check_positive("pulsatility_normalization", self.pulsatility_normalization)
        if self.red_min >= self.red_max:
            raise ValueError("red_min must be below red_max")
        for name, band in (("red_to_green", self.red_to_green), ("red_to_blue", self.red_to_blue)):
            if band[0] >= band[1]:
                raise ValueError(f"{name} band must be increasing")
        total = self.ratio_weight_rg + self.ratio_weight_rb + self.intensity_weight
        if abs(total - 1.0) > 1e-6:
            raise ValueError("colour score weights must sum to 1")


@dataclass
class QualityConfig:
    """Fusion, smoothing and hysteresis of the contact decision."""

    weighting: str = "balanced"
    history_size: int = 20
    detection_threshold: float = 55.0
    release_threshold: float = 40.0
    min_consecutive_detections: int = 5
    max_consecutive_no_detections: int = 10
    consistency_tolerance: float = 0.5
    consistency_pairs: Tuple[Tuple[str, str], ...] = (("biophysical", "pulsatility"),)
    calibration_floor: float = 25.0
    # Without pulsatile evidence frame quality is capped at
    # gated_quality_ratio * release threshold; an empty pulsatile_scores disables the cap.
    pulsatile_scores: Tuple[str, ...] = ("pulsatility", "periodicity")
    pulsatile_floor: float = 0.1
    gated_quality_ratio: float = 0.5

    def validate(self) -> None:
        if self.weighting not in WEIGHTING_PRESETS:
            raise ValueError(f"Unknown weighting preset {self.weighting!r}")
        if not 0.0 <= self.release_threshold < self.detection_threshold <= 100.0:
            raise ValueError("thresholds must satisfy 0 <= release < detection <= 100")
        if self.history_size < 1:
            raise ValueError("history_size must be >= 1")
        if self.min_consecutive_detections < 1 or self.max_consecutive_no_detections < 1:
            raise ValueError("consecutive frame counts must be >= 1")
        if not 0.0 <= self.consistency_tolerance < 1.0:
            raise ValueError("consistency_tolerance must lie in [0, 1)")
        for pair in self.consistency_pairs:
            for name in pair:
                if name not in SCORE_NAMES:
                    raise ValueError(f"Unknown detector score {name!r}")
        for name in self.pulsatile_scores:
            if name not in SCORE_NAMES:
                raise ValueError(f"Unknown detector score {name!r}")
        if not 0.0 <= self.pulsatile_floor <= 1.0:
            raise ValueError("pulsatile_floor must lie in [0, 1]")
        if not 0.0 <= self.gated_quality_ratio < 1.0:
            raise ValueError("gated_quality_ratio must lie in [0, 1)")


@dataclass
class BeatConfig:
    """Peak detection, RR validation and BPM estimation."""

    window_size: int = 300
    min_history: int = 90
    min_bpm: float = 45.0
    max_bpm: float = 180.0
    prior_bpm: float = 75.0
    merge_tolerance_s: float = 0.1
    consensus_threshold: float = 0.7
    method_weights: Dict[str, float] = field(default_factory=lambda: {
        "derivative": 0.40,
        "prominence": 0.35,
        "wavelet":    0.25,
    })
    edge_margin: int = 2
    min_quality: float = 40.0
    bpm_window: int = 20
    bpm_alpha: float = 0.4
    max_bpm_step: float = 8.0
    mode_bin_ms: float = 25.0
    high_cv: float = 0.3
    rr_history_size: int = 100
    beat_history_size: int = 100
    hrv_window: int = 50
    min_rr_for_hrv: int = 10
    rhythm_window: int = 20
    irregular_cv: float = 0.15
    premature_ratio: float = 0.8
    compensatory_ratio: float = 1.1

    @property
    def min_rr_ms(self) -> float:
        return 60000.0 / self.max_bpm

    @property
    def max_rr_ms(self) -> float:
        return 60000.0 / self.min_bpm

    def validate(self) -> None:
        if not 0 < self.min_bpm < self.max_bpm:
            raise ValueError("BPM range must satisfy 0 < min_bpm < max_bpm")
        if not self.min_bpm <= self.prior_bpm <= self.max_bpm:
            raise ValueError("prior_bpm must lie inside the BPM range")
        if self.min_history > self.window_size:
            raise ValueError("min_history cannot exceed window_size")
        if not 0.0 < self.consensus_threshold <= 1.0:
            raise ValueError("consensus_threshold must lie in (0, 1]")
        if not 0.0 < self.bpm_alpha <= 1.0:
            raise ValueError("bpm_alpha must lie in (0, 1]")
        _check_positive("max_bpm_step", self.max_bpm_step)
        if not self.method_weights or any(w <= 0 for w in self.method_weights.values()):
            raise ValueError("method_weights must be non-empty and positive")


@dataclass
class CalibrationConfig:
    """One-shot per-session calibration window."""

    duration_ms: float = 3000.0
    sample_quota: int = 100
    min_samples: int = 30

    def validate(self) -> None:
        _check_positive("duration_ms", self.duration_ms)
        if not 1 <= self.min_samples <= self.sample_quota:
            raise ValueError("min_samples must lie in [1, sample_quota]")


@dataclass
class EngineConfig:
    """Complete engine configuration, one section per component."""

    name: str = "strict"
    sample_rate: float = 30.0
    conditioner: ConditionerConfig = field(default_factory=ConditionerConfig)
    trend: TrendConfig = field(default_factory=TrendConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    beat: BeatConfig = field(default_factory=BeatConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    buffer_size: int = 300

    def validate(self) -> "EngineConfig":
        _check_positive("sample_rate", self.sample_rate)
        if self.buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        for section in (self.conditioner, self.trend, self.validator,
                        self.quality, self.beat, self.calibration):
            section.validate()
        return self


# ---------------------------------------------------------------------------
# Named profiles
# ---------------------------------------------------------------------------

def _strict() -> EngineConfig:
    return EngineConfig(name="strict")


def _permissive() -> EngineConfig:
    return EngineConfig(
        name="permissive",
        trend=TrendConfig(min_coverage=0.15, full_coverage=0.45),
        validator=ValidatorConfig(
            pulsatility_normalization=15.0,
            pulsatility_threshold=0.08,
            red_min=20.0,
            red_max=245.0,
            saturation_level=254.0,
            min_green=2.0,
            min_blue=1.0,
            red_to_green=(1.0, 4.0),
            red_to_blue=(0.9, 5.0),
        ),
        quality=QualityConfig(
            history_size=15,
            detection_threshold=45.0,
            release_threshold=30.0,
            min_consecutive_detections=3,
            max_consecutive_no_detections=15,
            consistency_tolerance=0.65,
            calibration_floor=20.0,
        ),
        beat=BeatConfig(consensus_threshold=0.6, min_quality=30.0),
    )


PROFILES = {
    "strict": _strict,
    "permissive": _permissive,
}


def get_profile(name: str = "strict", **overrides) -> EngineConfig:
    """
    Return a fresh, validated :class:`EngineConfig` for profile *name*.

    Keyword *overrides* replace top-level fields (e.g. ``sample_rate=60``).
    """
    try:
        factory = PROFILES[name]
    except KeyError:
        raise ValueError(
            f"Unknown profile {name!r}; choose from {sorted(PROFILES)}"
        ) from None
    config = factory()
    for key, value in overrides.items():
        if not hasattr(config, key):
            raise ValueError(f"EngineConfig has no field {key!r}")
        setattr(config, key, value)
    return config.validate()


def resolve_weights(weighting: "str | Mapping[str, float]") -> Dict[str, float]:
    """Return a normalised copy of a preset name or explicit weight mapping."""
    if isinstance(weighting, str):
        try:
            weights = copy.deepcopy(WEIGHTING_PRESETS[weighting])
        except KeyError:
            raise ValueError(f"Unknown weighting preset {weighting!r}") from None
    else:
        weights = {name: float(w) for name, w in weighting.items()}
    unknown = set(weights) - set(SCORE_NAMES)
    if unknown:
        raise ValueError(f"Unknown detector scores in weights: {sorted(unknown)}")
    if any(w < 0 for w in weights.values()):
        raise ValueError("detector weights must be non-negative")
    total = sum(weights.values())
    if total <= 0:
        raise ValueError("detector weights must not all be zero")
    return {name: weights.get(name, 0.0) / total for name in SCORE_NAMES}
