"""
Unit tests for BiophysicalValidator and SignalTrendAnalyzer.
Run with:  pytest tests/
"""

from __future__ import annotations

import numpy as np
import pytest

from ppg_engine.biophysical_validator import BiophysicalValidator
from ppg_engine.config import TrendConfig, ValidatorConfig
from ppg_engine.models import AdaptiveThresholds, ColorMeans
from ppg_engine.signal_conditioner import SignalConditioner
from ppg_engine.trend_analyzer import SignalTrendAnalyzer

FINGER = ColorMeans(150.0, 60.0, 50.0)


# ---------------------------------------------------------------------------
# BiophysicalValidator tests
# ---------------------------------------------------------------------------

class TestBiophysicalValidator:

    def test_short_window_has_no_pulsatility(self):
        v = BiophysicalValidator()
        assert v.pulsatility_score([1.0, -1.0, 1.0, -1.0]) == 0.0

    def test_pulsatility_normalised(self):
        v = BiophysicalValidator()
        window = np.tile([6.25, -6.25], 10)          # peak-to-peak 12.5
        assert v.pulsatility_score(window) == pytest.approx(0.5)
        assert v.pulsatility_score(window * 10) == 1.0

    def test_pulsatility_ignores_non_finite(self):
        v = BiophysicalValidator()
        window = [0.0, 5.0, float("nan"), -5.0, 0.0, 5.0, float("inf")]
        assert v.pulsatility_score(window) == pytest.approx(10.0 / 25.0)

    def test_is_pulsatile(self):
        v = BiophysicalValidator()
        assert v.is_pulsatile(np.tile([5.0, -5.0], 10))
        assert not v.is_pulsatile(np.tile([0.5, -0.5], 10))

    def test_finger_colour_scores_high(self):
        v = BiophysicalValidator()
        assert v.color_plausibility_score(FINGER) > 0.8

    @pytest.mark.parametrize("colour", [
        ColorMeans(20.0, 10.0, 8.0),      # too dark
        ColorMeans(230.0, 80.0, 60.0),    # above red_max
        ColorMeans(200.0, 251.0, 60.0),   # saturated channel
        ColorMeans(150.0, 2.0, 50.0),     # no green light
        ColorMeans(150.0, 60.0, 1.0),     # no blue light
        ColorMeans(float("nan"), 60.0, 50.0),
    ])
    def test_implausible_colour_is_zero(self, colour):
        assert BiophysicalValidator().color_plausibility_score(colour) == 0.0

    def test_grey_scores_below_finger(self):
        v = BiophysicalValidator()
        assert v.color_plausibility_score(ColorMeans(100.0, 100.0, 100.0)) < \
            v.color_plausibility_score(FINGER)

    def test_biophysical_score_is_smoothed(self):
        v = BiophysicalValidator()
        single = v.color_plausibility_score(FINGER)
        for _ in range(5):
            v.biophysical_score(FINGER)
        smoothed = v.biophysical_score(ColorMeans(10.0, 10.0, 10.0))
        assert smoothed == pytest.approx(single * 4 / 5)

    def test_reset_clears_smoothing(self):
        v = BiophysicalValidator()
        for _ in range(5):
            v.biophysical_score(FINGER)
        v.reset()
        assert v.biophysical_score(ColorMeans(10.0, 10.0, 10.0)) == 0.0

    def test_perfusion_index(self):
        v = BiophysicalValidator()
        filtered = np.tile([10.0, -10.0], 20)
        raw = np.full(40, 150.0)
        assert v.perfusion_index(filtered, raw) == pytest.approx(20.0 / 150.0 * 100.0)

    def test_perfusion_index_degenerate(self):
        v = BiophysicalValidator()
        assert v.perfusion_index([1.0, 2.0], [150.0, 150.0]) == 0.0
        assert v.perfusion_index(np.ones(20), np.zeros(20)) == 0.0

    def test_apply_and_clear_calibration(self):
        v = BiophysicalValidator()
        v.apply_calibration(AdaptiveThresholds(red_min=45.0, red_max=200.0,
                                               quality_min=30.0, amplitude_min=0.05))
        assert v.is_calibrated
        assert v.red_min == 45.0
        assert v.red_max == 200.0
        assert v.pulsatility_threshold == pytest.approx(0.05)
        assert v.color_plausibility_score(ColorMeans(40.0, 20.0, 15.0)) == 0.0

        v.clear_calibration()
        assert not v.is_calibrated
        assert v.red_min == ValidatorConfig().red_min
        assert v.pulsatility_threshold == ValidatorConfig().pulsatility_threshold

    def test_calibration_never_raises_pulsatility_threshold(self):
        v = BiophysicalValidator()
        v.apply_calibration(AdaptiveThresholds(amplitude_min=0.9))
        assert v.pulsatility_threshold == ValidatorConfig().pulsatility_threshold

    def test_empty_calibrated_range_ignored(self):
        v = BiophysicalValidator()
        v.apply_calibration(AdaptiveThresholds(red_min=200.0, red_max=100.0))
        assert not v.is_calibrated

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            BiophysicalValidator(ValidatorConfig(red_min=200.0, red_max=100.0))
        with pytest.raises(ValueError):
            BiophysicalValidator(ValidatorConfig(ratio_weight_rg=0.9))


# ---------------------------------------------------------------------------
# SignalTrendAnalyzer tests
# ---------------------------------------------------------------------------

class TestSignalTrendAnalyzer:

    def test_channel_score_bands(self):
        ta = SignalTrendAnalyzer()
        assert ta.channel_score(ColorMeans(150.0, 60.0, 50.0), 0.9) == 1.0
        assert ta.channel_score(ColorMeans(10.0, 5.0, 5.0), 0.9) == pytest.approx(0.1)
        assert ta.channel_score(ColorMeans(240.0, 60.0, 50.0), 0.9) == pytest.approx(0.6)

    def test_channel_score_coverage(self):
        ta = SignalTrendAnalyzer()
        assert ta.channel_score(FINGER, 0.2) == 0.0
        cfg = TrendConfig()
        middle = (cfg.min_coverage + cfg.full_coverage) / 2
        assert ta.channel_score(FINGER, middle) == pytest.approx(0.5)

    def test_stability(self):
        ta = SignalTrendAnalyzer()
        assert ta.stability_score() == 0.0
        for _ in range(10):
            ta.push(150.0, 0.0)
        assert ta.stability_score() == 1.0
        assert ta.stability_score(motion_level=1.0) == 0.5
        ta.push(200.0, 0.0)
        assert ta.stability_score() == 0.0

    def test_periodicity_of_sine(self):
        ta = SignalTrendAnalyzer()
        for i in range(120):
            ta.push(150.0, 10.0 * np.sin(2 * np.pi * i / 25.0))
        assert ta.periodicity_score() > 0.8

    def test_periodicity_of_noise(self):
        ta = SignalTrendAnalyzer()
        rng = np.random.default_rng(3)
        for v in rng.normal(0.0, 1.0, 120):
            ta.push(150.0, float(v))
        assert ta.periodicity_score() < 0.6

    def test_periodicity_needs_data(self):
        ta = SignalTrendAnalyzer()
        for i in range(20):
            ta.push(150.0, np.sin(i))
        assert ta.periodicity_score() == 0.0

    def test_periodicity_flat(self):
        ta = SignalTrendAnalyzer()
        for _ in range(120):
            ta.push(150.0, 0.0)
        assert ta.periodicity_score() == 0.0

    def test_periodicity_ignores_tiny_oscillation(self):
        ta = SignalTrendAnalyzer()
        for i in range(120):
            ta.push(150.0, 1e-8 * np.sin(2 * np.pi * i / 25.0))
        assert ta.periodicity_score() == 0.0

    def test_periodicity_drops_after_pulse_stops(self):
        sc = SignalConditioner()
        ta = SignalTrendAnalyzer()
        pulse = 150.0 + 10.0 * np.sin(2 * np.pi * 1.2 * np.arange(300) / 30.0)
        for raw in pulse:
            ta.push(raw, sc.filter(raw))
        assert ta.periodicity_score() > 0.8
        for _ in range(180):
            ta.push(150.0, sc.filter(150.0))
        assert ta.periodicity_score() == 0.0

    def test_reset(self):
        ta = SignalTrendAnalyzer()
        for _ in range(10):
            ta.push(150.0, 0.0)
        ta.reset()
        ta.reset()
        assert ta.sample_count == 0
        assert ta.stability_score() == 0.0
