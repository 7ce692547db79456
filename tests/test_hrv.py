"""
Unit tests for HRV metrics and rhythm advisories.
Run with:  pytest tests/
"""

from __future__ import annotations

import numpy as np
import pytest

from ppg_engine.hrv import assess_rhythm, compute_hrv, histogram_mode, rr_statistics
from ppg_engine.models import HRVMetrics, RhythmFlag


class TestHRV:

    def test_defaults_with_few_intervals(self):
        hrv = compute_hrv([800.0] * 9)
        assert hrv == HRVMetrics()
        assert hrv.is_default
        assert (hrv.rmssd, hrv.pnn50, hrv.triangular_index, hrv.stress_index) == (35.0, 12.0, 28.0, 45.0)

    def test_constant_rhythm(self):
        hrv = compute_hrv([800.0] * 20)
        assert not hrv.is_default
        assert hrv.rmssd == 0.0
        assert hrv.pnn50 == 0.0
        assert hrv.triangular_index == 1.0
        assert hrv.stress_index == 1000.0

    def test_alternating_rhythm(self):
        hrv = compute_hrv([800.0, 900.0] * 10)
        assert hrv.rmssd == pytest.approx(100.0)
        assert hrv.pnn50 == pytest.approx(100.0)
        assert hrv.triangular_index == pytest.approx(2.0)
        # Mo 0.825 s, AMo 50 %, MxDMn 0.1 s
        assert hrv.stress_index == pytest.approx(50.0 / (2 * 0.825 * 0.1))

    def test_time_domain_extras(self):
        hrv = compute_hrv([800.0, 830.0] * 10)
        assert hrv.mean_rr == pytest.approx(815.0)
        assert hrv.sdnn == pytest.approx(15.0)
        assert hrv.cv == pytest.approx(15.0 / 815.0 * 100.0)
        assert hrv.pnn20 == pytest.approx(100.0)
        assert hrv.pnn50 == 0.0

    def test_pnn20_threshold_is_strict(self):
        assert compute_hrv([800.0, 820.0] * 10).pnn20 == 0.0

    def test_poincare_axes(self):
        rr = [800.0, 850.0, 780.0, 900.0, 820.0, 760.0, 880.0, 810.0, 840.0, 790.0, 870.0, 805.0]
        hrv = compute_hrv(rr)
        assert hrv.sd1 ** 2 + hrv.sd2 ** 2 == pytest.approx(2.0 * hrv.sdnn ** 2)
        diffs = np.diff(rr)
        assert hrv.sd1 == pytest.approx(np.std(diffs) / np.sqrt(2.0))
        assert hrv.sd1 > 0.0 and hrv.sd2 > 0.0

    def test_constant_rhythm_extras(self):
        hrv = compute_hrv([800.0] * 20)
        assert hrv.mean_rr == 800.0
        assert (hrv.sdnn, hrv.pnn20, hrv.cv, hrv.sd1, hrv.sd2) == (0.0, 0.0, 0.0, 0.0, 0.0)

    def test_histogram_mode(self):
        assert histogram_mode([800.0, 805.0, 810.0, 900.0], 25.0) == pytest.approx(812.5)
        with pytest.raises(ValueError):
            histogram_mode([], 25.0)

    def test_rr_statistics(self):
        stats = rr_statistics([600.0, 1000.0])
        assert stats["mean"] == 800.0
        assert stats["cv"] == pytest.approx(0.25)
        assert rr_statistics([])["count"] == 0


class TestRhythm:

    def test_insufficient_data(self):
        flags, irregularity = assess_rhythm([800.0] * 5)
        assert flags == (RhythmFlag.INSUFFICIENT_DATA,)
        assert irregularity == 0.0

    def test_regular(self):
        flags, irregularity = assess_rhythm([800.0, 810.0, 790.0] * 5)
        assert flags == (RhythmFlag.REGULAR,)
        assert irregularity < 0.05

    def test_possible_ectopic(self):
        rr = [800.0] * 15 + [600.0, 1000.0, 800.0, 800.0]
        flags, _ = assess_rhythm(rr)
        assert flags == (RhythmFlag.POSSIBLE_ECTOPIC,)

    def test_irregular(self):
        flags, irregularity = assess_rhythm([600.0, 1000.0] * 10)
        assert RhythmFlag.IRREGULAR in flags
        assert irregularity == pytest.approx(0.25)
