"""
Independent systolic-peak detectors and their consensus fusion.

Each method receives a z-scored analysis window and returns
:class:`PeakCandidates`.  :func:`fuse_candidates` merges candidates that
fall within a small tolerance of each other and keeps only peaks on which
enough methods (by weight) agree.

Methods
-------
* :class:`DerivativePeakMethod` – first-difference sign change with negative
  curvature above a z-score threshold.
* :class:`ProminencePeakMethod` – :func:`scipy.signal.find_peaks` with a
  prominence requirement.
* :class:`WaveletTemplatePeakMethod` – correlation with Mexican-hat templates
  (PyWavelets ``mexh``) at several beat-width scales.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pywt
from scipy.signal import find_peaks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeakCandidates:
    method: str
    indices: np.ndarray
    confidences: np.ndarray
    weight: float

    def __len__(self) -> int:
        return int(self.indices.size)


@dataclass(frozen=True)
class FusedPeak:
    position: float
    confidence: float
    methods: Tuple[str, ...]


def enforce_min_distance(indices: np.ndarray, scores: np.ndarray, distance: float) -> np.ndarray:
    """Greedy selection: keep the highest-scoring peaks at least *distance* apart."""
    indices = np.asarray(indices)
    if indices.size == 0 or distance <= 0:
        return np.sort(indices)
    keep: List[int] = []
    for i in np.argsort(-np.asarray(scores), kind="stable"):
        if all(abs(indices[i] - indices[k]) >= distance for k in keep):
            keep.append(int(i))
    return np.sort(indices[keep])


def _empty(method: str, weight: float) -> PeakCandidates:
    return PeakCandidates(method, np.zeros(0, dtype=np.int64), np.zeros(0), weight)


# ---------------------------------------------------------------------------
# Methods
# ---------------------------------------------------------------------------

class PeakMethod(ABC):
    """A named, weighted peak detector; subclasses implement :meth:`detect`."""

    name = "base"

    def __init__(self, weight: float) -> None:
        if not weight > 0:
            raise ValueError(f"{self.name} weight must be positive, got {weight!r}")
        self.weight = float(weight)

    @abstractmethod
    def detect(self, window: np.ndarray, sample_rate: float, min_distance: int) -> PeakCandidates:
        """Candidate peaks of a z-scored *window*."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(weight={self.weight})"


class DerivativePeakMethod(PeakMethod):
    """
    Local maxima of the first difference with a curvature check.

    ``curvature_threshold`` is the second difference required at 30 Hz; it is
    rescaled by ``(30 / sample_rate) ** 2`` for other rates.
    """

    name = "derivative"

    def __init__(self, weight: float = 0.40, threshold_std: float = 0.3,
                 curvature_threshold: float = 0.02) -> None:
        super().__init__(weight)
        self.threshold_std = threshold_std
        self.curvature_threshold = curvature_threshold

    def detect(self, window: np.ndarray, sample_rate: float, min_distance: int) -> PeakCandidates:
        x = np.asarray(window, dtype=np.float64)
        if x.size < 3:
            return _empty(self.name, self.weight)
        d1 = np.diff(x)
        d2 = d1[1:] - d1[:-1]
        # d1[i-1] > 0 >= d1[i] marks a local maximum at i
        idx = np.nonzero((d1[:-1] > 0) & (d1[1:] <= 0))[0] + 1
        level = x.mean() + self.threshold_std * x.std()
        curvature = self.curvature_threshold * (30.0 / sample_rate) ** 2
        idx = idx[(d2[idx - 1] < -curvature) & (x[idx] > level)]
        if idx.size == 0:
            return _empty(self.name, self.weight)
        idx = enforce_min_distance(idx, x[idx], min_distance)
        conf = np.clip(x[idx] / 2.0, 0.0, 1.0)
        return PeakCandidates(self.name, idx, conf, self.weight)


class ProminencePeakMethod(PeakMethod):
    name = "prominence"

    def __init__(self, weight: float = 0.35, prominence_std: float = 0.5) -> None:
        super().__init__(weight)
        self.prominence_std = prominence_std

    def detect(self, window: np.ndarray, sample_rate: float, min_distance: int) -> PeakCandidates:
        x = np.asarray(window, dtype=np.float64)
        span = float(np.ptp(x)) if x.size else 0.0
        if x.size < 3 or span <= 0:
            return _empty(self.name, self.weight)
        idx, props = find_peaks(
            x, distance=max(1, int(min_distance)), prominence=self.prominence_std * x.std()
        )
        conf = np.clip(props["prominences"] / span, 0.0, 1.0)
        return PeakCandidates(self.name, idx, conf, self.weight)


class WaveletTemplatePeakMethod(PeakMethod):
    """
    Multi-scale Mexican-hat template matching.

    Scales are given in samples at 30 Hz and rescaled with the actual sample
    rate.  A scale ``s`` gives a positive lobe roughly ``2 s`` samples wide,
    which covers systolic upstrokes from ~180 BPM down to ~45 BPM.
    """

    name = "wavelet"

    def __init__(self, weight: float = 0.25, scales: Sequence[float] = (2.5, 4.0, 6.3, 10.0),
                 height_ratio: float = 0.3) -> None:
        super().__init__(weight)
        self.scales = tuple(float(s) for s in scales)
        self.height_ratio = height_ratio
        mother = pywt.ContinuousWavelet("mexh")
        self._psi, self._grid = mother.wavefun(level=10)

    def template(self, scale: float, max_half_length: int) -> np.ndarray:
        """Zero-mean, unit-norm Mexican-hat kernel dilated by *scale* samples."""
        half = int(min(np.ceil(4.0 * scale), max_half_length))
        t = np.arange(-half, half + 1, dtype=np.float64) / scale
        kernel = np.interp(t, self._grid, self._psi, left=0.0, right=0.0)
        kernel -= kernel.mean()
        norm = np.linalg.norm(kernel)
        return kernel / norm if norm > 0 else kernel

    def response(self, window: np.ndarray, sample_rate: float) -> np.ndarray:
        x = np.asarray(window, dtype=np.float64)
        max_half = (x.size - 1) // 2
        out = np.zeros_like(x)
        if max_half < 1:
            return out
        factor = sample_rate / 30.0
        for scale in self.scales:
            out += np.correlate(x, self.template(scale * factor, max_half), mode="same")
        return out / len(self.scales)

    def detect(self, window: np.ndarray, sample_rate: float, min_distance: int) -> PeakCandidates:
        response = self.response(window, sample_rate)
        top = float(response.max()) if response.size else 0.0
        if top <= 0:
            return _empty(self.name, self.weight)
        idx, _ = find_peaks(response, distance=max(1, int(min_distance)),
                            height=self.height_ratio * top)
        conf = np.clip(response[idx] / top, 0.0, 1.0)
        return PeakCandidates(self.name, idx, conf, self.weight)


def default_methods(weights: Optional[Mapping[str, float]] = None) -> List[PeakMethod]:
    """The three standard detectors, with weights taken from *weights* when given."""
    weights = dict(weights or {})
    classes = (DerivativePeakMethod, ProminencePeakMethod, WaveletTemplatePeakMethod)
    unknown = set(weights) - {cls.name for cls in classes}
    if unknown:
        raise ValueError(f"Unknown peak methods in weights: {sorted(unknown)}")
    return [cls(weight=weights[cls.name]) if cls.name in weights else cls() for cls in classes]


# ---------------------------------------------------------------------------
# Fusion
# ---------------------------------------------------------------------------

def fuse_candidates(
    candidates: Sequence[PeakCandidates],
    tolerance: float,
    consensus_threshold: float,
    min_distance: float = 0,
    min_methods: int = 2,
) -> List[FusedPeak]:
    """
    Merge per-method candidates into consensus peaks.

    Candidates within *tolerance* samples of a cluster's first member are
    merged.  Per method only the most confident candidate of a cluster votes.
    A cluster is accepted when the summed weight of its voting methods is at
    least ``consensus_threshold`` of the total weight and at least
    *min_methods* distinct methods voted.  Accepted peaks closer than
    *min_distance* keep the more confident one.
    """
    total_weight = sum(c.weight for c in candidates)
    if total_weight <= 0:
        return []

    entries = sorted(
        (float(i), float(conf), c.method, c.weight)
        for c in candidates
        for i, conf in zip(c.indices, c.confidences)
    )

    clusters: List[List[Tuple[float, float, str, float]]] = []
    for entry in entries:
        if clusters and entry[0] - clusters[-1][0][0] <= tolerance:
            clusters[-1].append(entry)
        else:
            clusters.append([entry])

    accepted: List[FusedPeak] = []
    for cluster in clusters:
        best: Dict[str, Tuple[float, float, float]] = {}
        for index, conf, method, weight in cluster:
            if method not in best or conf > best[method][1]:
                best[method] = (index, conf, weight)
        votes = sum(w for _, _, w in best.values())
        if len(best) < min_methods or votes + 1e-9 < consensus_threshold * total_weight:
            continue
        mass = sum(conf * w for _, conf, w in best.values())
        if mass > 0:
            position = sum(i * conf * w for i, conf, w in best.values()) / mass
        else:
            position = float(np.mean([i for i, _, _ in best.values()]))
        accepted.append(FusedPeak(
            position=position,
            confidence=float(np.clip(mass / total_weight, 0.0, 1.0)),
            methods=tuple(sorted(best)),
        ))

    if min_distance > 0 and len(accepted) > 1:
        kept = set(enforce_min_distance(
            np.array([p.position for p in accepted]),
            np.array([p.confidence for p in accepted]),
            min_distance,
        ).tolist())
        accepted = [p for p in accepted if p.position in kept]
    return accepted
