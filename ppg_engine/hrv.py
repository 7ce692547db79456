"""
Heart-rate variability metrics and rhythm advisories from RR intervals (ms).

The rhythm flags are coarse heuristics meant to tell the user that a reading
looks unusual.  They are not a diagnosis.
"""

from __future__ import annotations

from typing import Dict, Sequence, Tuple

import numpy as np

from ppg_engine.models import HRVMetrics, RhythmFlag

TRIANGULAR_BIN_MS = 7.8125   # 1/128 s, the conventional HRV triangular index bin
STRESS_BIN_MS = 50.0
STRESS_INDEX_CAP = 1000.0


def _histogram(rr: np.ndarray, bin_ms: float) -> Tuple[np.ndarray, np.ndarray]:
    lo = float(rr.min())
    n_bins = int((float(rr.max()) - lo) // bin_ms) + 1
    edges = lo + bin_ms * np.arange(n_bins + 1)
    counts, edges = np.histogram(rr, bins=edges)
    return counts, edges


def histogram_mode(rr: Sequence[float], bin_ms: float) -> float:
    """Centre of the most populated *bin_ms*-wide bin (first one on ties)."""
    arr = np.asarray(rr, dtype=np.float64)
    if arr.size == 0:
        raise ValueError("histogram_mode needs at least one interval")
    counts, edges = _histogram(arr, bin_ms)
    i = int(np.argmax(counts))
    return float((edges[i] + edges[i + 1]) / 2.0)


def rr_statistics(rr: Sequence[float]) -> Dict[str, float]:
    arr = np.asarray(rr, dtype=np.float64)
    if arr.size == 0:
        return {"count": 0, "mean": 0.0, "std": 0.0, "cv": 0.0}
    mean = float(arr.mean())
    std = float(arr.std())
    return {
        "count": int(arr.size),
        "mean": mean,
        "std": std,
        "cv": std / mean if mean > 0 else 0.0,
    }


def compute_hrv(rr: Sequence[float], min_count: int = 10) -> HRVMetrics:
    """
    Time-domain, histogram and Poincaré HRV metrics.

    Covers mean RR, SDNN, RMSSD, pNN50, pNN20, the coefficient of variation
    (percent), the HRV triangular index, the Baevsky stress index and the
    Poincaré SD1/SD2 axes.  With fewer than *min_count* intervals the nominal
    resting defaults are returned (``is_default=True``) rather than zeros.
    """
    arr = np.asarray(rr, dtype=np.float64)
    if arr.size < max(2, min_count):
        return HRVMetrics()

    mean_rr = float(arr.mean())
    sdnn = float(arr.std())
    diffs = np.diff(arr)
    rmssd = float(np.sqrt(np.mean(diffs ** 2)))
    pnn50 = float(np.mean(np.abs(diffs) > 50.0) * 100.0)
    pnn20 = float(np.mean(np.abs(diffs) > 20.0) * 100.0)

    # SD1 across the identity line, SD2 along it
    sd1 = float(np.sqrt(np.var(diffs) / 2.0))
    sd2 = float(np.sqrt(max(0.0, 2.0 * sdnn ** 2 - sd1 ** 2)))

    counts, _ = _histogram(arr, TRIANGULAR_BIN_MS)
    triangular = float(arr.size / counts.max())

    # Baevsky: SI = AMo / (2 * Mo * MxDMn), Mo and MxDMn in seconds, AMo in %
    counts, edges = _histogram(arr, STRESS_BIN_MS)
    i = int(np.argmax(counts))
    mode_s = (edges[i] + edges[i + 1]) / 2000.0
    amo = counts[i] / arr.size * 100.0
    spread_s = (float(arr.max()) - float(arr.min())) / 1000.0
    if spread_s <= 0:
        stress = STRESS_INDEX_CAP
    else:
        stress = min(STRESS_INDEX_CAP, float(amo / (2.0 * mode_s * spread_s)))

    return HRVMetrics(
        rmssd=rmssd,
        pnn50=pnn50,
        triangular_index=triangular,
        stress_index=stress,
        mean_rr=mean_rr,
        sdnn=sdnn,
        pnn20=pnn20,
        cv=sdnn / mean_rr * 100.0 if mean_rr > 0 else 0.0,
        sd1=sd1,
        sd2=sd2,
        is_default=False,
    )


def assess_rhythm(
    rr: Sequence[float],
    min_count: int = 10,
    window: int = 20,
    irregular_cv: float = 0.15,
    premature_ratio: float = 0.8,
    compensatory_ratio: float = 1.1,
) -> Tuple[Tuple[RhythmFlag, ...], float]:
    """
    Return ``(flags, irregularity)`` for the most recent *window* intervals.

    ``irregularity`` is the coefficient of variation of that window.  A short
    interval (below ``premature_ratio`` × median) immediately followed by a
    long one (above ``compensatory_ratio`` × median) is reported as a possible
    ectopic beat.
    """
    arr = np.asarray(rr, dtype=np.float64)
    if arr.size < min_count:
        return (RhythmFlag.INSUFFICIENT_DATA,), 0.0

    recent = arr[-window:]
    irregularity = rr_statistics(recent)["cv"]
    flags = []
    if irregularity > irregular_cv:
        flags.append(RhythmFlag.IRREGULAR)

    median = float(np.median(recent))
    short = recent[:-1] < premature_ratio * median
    long_after = recent[1:] > compensatory_ratio * median
    if np.any(short & long_after):
        flags.append(RhythmFlag.POSSIBLE_ECTOPIC)

    if not flags:
        flags.append(RhythmFlag.REGULAR)
    return tuple(flags), float(irregularity)
