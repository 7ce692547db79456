"""
Data model shared by the pipeline components.

All records are plain dataclasses.  Containers handed out across component
boundaries are tuples or fresh copies so that no caller can reach into a
component's ring buffers.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple


def _unit(value: float) -> float:
    """Clip *value* into [0, 1]; non-finite values become 0."""
    value = float(value)
    if not math.isfinite(value):
        return 0.0
    return min(1.0, max(0.0, value))


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColorMeans:
    """Mean red / green / blue intensity of the region of interest (0 – 255)."""

    r: float
    g: float
    b: float


@dataclass(frozen=True)
class FrameStats:
    """
    Per-frame statistics produced by the external frame source.

    Parameters
    ----------
    timestamp:
        Capture time in milliseconds.
    color_means:
        ROI colour averages.
    coverage_ratio:
        Fraction of the ROI covered by the finger (0 – 1).
    motion_level:
        Non-negative motion estimate supplied by the frame source.
    texture_score:
        Optional spatial texture score (0 – 1).  When absent the coverage
        ratio stands in for it during calibration.
    """

    timestamp: int
    color_means: ColorMeans
    coverage_ratio: float = 1.0
    motion_level: float = 0.0
    texture_score: Optional[float] = None


@dataclass(frozen=True)
class ConditionedSample:
    timestamp: int
    raw_value: float
    filtered_value: float


# ---------------------------------------------------------------------------
# Contact / quality
# ---------------------------------------------------------------------------

class ContactState(str, Enum):
    NO_CONTACT = "NO_CONTACT"
    ACQUIRING = "ACQUIRING"
    CONTACT_CONFIRMED = "CONTACT_CONFIRMED"


@dataclass(frozen=True)
class DetectorScoreSet:
    """Per-frame detector scores, each clipped into [0, 1]."""

    channel: float = 0.0
    stability: float = 0.0
    pulsatility: float = 0.0
    biophysical: float = 0.0
    periodicity: float = 0.0

    def __post_init__(self) -> None:
        for name in ("channel", "stability", "pulsatility", "biophysical", "periodicity"):
            object.__setattr__(self, name, _unit(getattr(self, name)))

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class QualityState:
    smoothed_quality: float = 0.0
    consecutive_detections: int = 0
    consecutive_no_detections: int = 0
    contact_state: ContactState = ContactState.NO_CONTACT

    @property
    def is_contact_detected(self) -> bool:
        return self.contact_state is ContactState.CONTACT_CONFIRMED


@dataclass(frozen=True)
class DetectionResult:
    """Output of one :meth:`QualityDetector.update` call."""

    is_detected: bool
    quality: float
    frame_quality: float
    state: ContactState
    breakdown: Dict[str, float] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Beats
# ---------------------------------------------------------------------------

class BeatStatus(str, Enum):
    INITIALIZING = "INITIALIZING"
    SEARCHING = "SEARCHING"
    TRACKING = "TRACKING"


class RhythmFlag(str, Enum):
    """Advisory rhythm categories.  Not a clinical classification."""

    INSUFFICIENT_DATA = "insufficient_data"
    REGULAR = "regular"
    IRREGULAR = "irregular"
    POSSIBLE_ECTOPIC = "possible_ectopic"


@dataclass(frozen=True)
class BeatEvent:
    index: int
    timestamp: float
    amplitude: float
    confidence: float


@dataclass(frozen=True)
class HRVMetrics:
    rmssd: float = 35.0
    pnn50: float = 12.0
    triangular_index: float = 28.0
    stress_index: float = 45.0
    mean_rr: float = 800.0
    sdnn: float = 50.0
    pnn20: float = 35.0
    cv: float = 6.25
    sd1: float = 25.0
    sd2: float = 65.0
    is_default: bool = True


@dataclass(frozen=True)
class BeatResult:
    status: BeatStatus
    bpm: float
    confidence: float
    is_peak: bool = False
    rr_intervals: Tuple[float, ...] = ()
    hrv: HRVMetrics = field(default_factory=HRVMetrics)
    rhythm_flags: Tuple[RhythmFlag, ...] = (RhythmFlag.INSUFFICIENT_DATA,)
    irregularity: float = 0.0
    beat_count: int = 0


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------

class SkinTone(str, Enum):
    UNKNOWN = "unknown"
    LIGHT = "light"
    MEDIUM = "medium"
    DARK = "dark"


class Thickness(str, Enum):
    UNKNOWN = "unknown"
    THIN = "thin"
    MEDIUM = "medium"
    THICK = "thick"


class Perfusion(str, Enum):
    UNKNOWN = "unknown"
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


@dataclass(frozen=True)
class AdaptiveThresholds:
    red_min: float = 5.0
    red_max: float = 200.0
    quality_min: float = 8.0
    amplitude_min: float = 0.05


@dataclass(frozen=True)
class FingerCharacteristics:
    skin_tone: SkinTone = SkinTone.UNKNOWN
    thickness: Thickness = Thickness.UNKNOWN
    perfusion: Perfusion = Perfusion.UNKNOWN


@dataclass(frozen=True)
class CalibrationProfile:
    adaptive_thresholds: AdaptiveThresholds = field(default_factory=AdaptiveThresholds)
    finger_characteristics: FingerCharacteristics = field(default_factory=FingerCharacteristics)
    progress: float = 0.0
    is_calibrating: bool = False
    is_complete: bool = False
    sample_count: int = 0


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Diagnostics:
    contact_state: ContactState
    scores: DetectorScoreSet
    breakdown: Dict[str, float]
    beat: BeatResult
    calibration_progress: float
    is_calibrating: bool
    input_substitutions: int
    divergence_resets: int
    suppressed_jumps: int


@dataclass(frozen=True)
class ProcessedSignal:
    timestamp: int
    raw_value: float
    filtered_value: float
    quality: float
    finger_detected: bool
    perfusion_index: float
    diagnostics: Diagnostics

    @property
    def bpm(self) -> float:
        return self.diagnostics.beat.bpm
