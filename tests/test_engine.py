"""
End-to-end tests for PPGEngine.
Run with:  pytest tests/
"""

from __future__ import annotations

import numpy as np
import pytest

from ppg_engine import PPGEngine
from ppg_engine.config import EngineConfig, get_profile
from ppg_engine.models import ColorMeans, ContactState, FrameStats, QualityState
from ppg_engine.quality_detector import QualityDetector, WeightedSumStrategy
from ppg_engine.synthetic import constant_frames, finger_frames, with_spike


def _started(profile="strict") -> PPGEngine:
    engine = PPGEngine(profile)
    engine.start()
    return engine


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

class TestScenarios:

    def test_clean_pulse_confirms_contact_and_bpm(self):
        engine = _started()
        results = engine.process_frames(finger_frames(duration_s=10.0, bpm=72.0, amplitude=10.0))
        assert len(results) == 300
        final = results[-1]
        assert final.diagnostics.contact_state is ContactState.CONTACT_CONFIRMED
        assert final.finger_detected
        assert abs(final.bpm - 72.0) <= 3.0, f"got {final.bpm:.1f}"
        assert final.perfusion_index > 0.0

    def test_constant_signal_never_detected(self):
        engine = _started()
        results = engine.process_frames(constant_frames(duration_s=3.0))
        assert len(results) == 90
        assert all(r.diagnostics.contact_state is ContactState.NO_CONTACT for r in results)
        assert not any(r.finger_detected for r in results)

    @pytest.mark.parametrize("spike", [255.0, 1e9])
    def test_single_spike_is_absorbed(self, spike):
        engine = _started()
        frames = with_spike(finger_frames(duration_s=10.0), index=150, red=spike)
        results = engine.process_frames(frames)
        assert len(results) == 300
        filtered = np.array([r.filtered_value for r in results])
        assert np.all(np.isfinite(filtered))
        assert np.max(np.abs(filtered[145:160])) < 15.0
        assert results[-1].diagnostics.suppressed_jumps >= 1
        detection = engine.quality_detector.detection_threshold
        assert all(r.quality >= detection for r in results[210:])
        assert results[-1].diagnostics.contact_state is ContactState.CONTACT_CONFIRMED

    @pytest.mark.parametrize("profile", ["strict", "permissive"])
    @pytest.mark.parametrize("preset", ["balanced", "red_dominant"])
    @pytest.mark.parametrize("green", [60.0, 20.0, 4.0])
    def test_flat_red_surface_never_detected(self, profile, preset, green):
        qd = QualityDetector(get_profile(profile).quality, WeightedSumStrategy(preset))
        engine = PPGEngine(profile, quality_detector=qd)
        engine.start()
        results = engine.process_frames(constant_frames(duration_s=5.0, green=green))
        assert all(r.diagnostics.contact_state is ContactState.NO_CONTACT for r in results)
        assert max(r.quality for r in results) < qd.release_threshold

    def test_calibrated_contact_released_on_flat_surface(self):
        engine = _started()
        engine.start_calibration()
        results = engine.process_frames(finger_frames(duration_s=8.0))
        assert engine.calibration_profile.is_complete
        assert results[-1].diagnostics.contact_state is ContactState.CONTACT_CONFIRMED
        assert engine.quality_detector.detection_threshold < 55.0

        flat = engine.process_frames(constant_frames(duration_s=10.0, green=4.0, start_ms=8000))
        assert flat[-1].diagnostics.contact_state is ContactState.NO_CONTACT
        assert not any(r.finger_detected for r in flat[-90:])
        assert flat[-1].diagnostics.scores.periodicity == 0.0

    def test_stop_start_clears_everything(self):
        engine = _started()
        engine.start_calibration()
        engine.process_frames(finger_frames(duration_s=5.0))
        assert engine.statistics["frames_processed"] == 150
        assert engine.rr_intervals

        engine.stop()
        assert engine.start()
        stats = engine.statistics
        assert all(value == 0 for value in stats.values())
        assert engine.rr_intervals == ()
        assert engine.beats == ()
        assert engine.calibration_profile.progress == 0.0
        assert not engine.calibration_profile.is_complete
        assert engine.quality_state == QualityState()
        assert engine.filtered_buffer().size == 0
        assert engine.bpm == 75.0


# ---------------------------------------------------------------------------
# Control surface
# ---------------------------------------------------------------------------

class TestEngineControl:

    def test_frames_ignored_before_start(self):
        engine = PPGEngine()
        frame = next(finger_frames(duration_s=1.0))
        assert engine.process_frame(frame) is None
        assert engine.statistics["frames_processed"] == 0

    def test_start_and_stop_idempotent(self):
        engine = PPGEngine()
        assert engine.start()
        assert not engine.start()
        engine.stop()
        engine.stop()
        assert not engine.is_running

    def test_reset_idempotent(self):
        engine = _started()
        engine.process_frames(finger_frames(duration_s=4.0))
        engine.reset()
        engine.reset()
        assert engine.is_running
        assert engine.statistics["frames_processed"] == 0
        assert engine.quality_state == QualityState()

    def test_out_of_order_frames_dropped(self):
        engine = _started()
        frames = list(finger_frames(duration_s=1.0))
        assert engine.process_frame(frames[5]) is not None
        assert engine.process_frame(frames[3]) is None
        assert engine.process_frame(frames[5]) is None
        assert engine.process_frame(frames[6]) is not None
        assert engine.statistics["frames_dropped"] == 2

    def test_bad_input_is_substituted(self):
        engine = _started()
        engine.process_frames(finger_frames(duration_s=1.0))
        result = engine.process_frame(FrameStats(
            timestamp=10_000,
            color_means=ColorMeans(float("nan"), float("inf"), -5.0),
            coverage_ratio=3.0,
            motion_level=-1.0,
        ))
        assert result is not None
        assert np.isfinite(result.filtered_value)
        assert result.raw_value == 0.0
        assert result.diagnostics.input_substitutions == 5

    def test_calibration_requires_running_engine(self):
        engine = PPGEngine()
        assert not engine.start_calibration()
        engine.start()
        assert engine.start_calibration()
        assert not engine.start_calibration()

    def test_calibration_applies_thresholds(self):
        engine = _started()
        engine.start_calibration()
        results = engine.process_frames(finger_frames(duration_s=8.0))
        profile = engine.calibration_profile
        assert profile.is_complete
        assert results[-1].diagnostics.calibration_progress == 100.0
        assert engine.validator.is_calibrated
        assert engine.quality_detector.detection_threshold <= 55.0
        progress = [r.diagnostics.calibration_progress for r in results]
        assert all(b >= a for a, b in zip(progress, progress[1:]))
        assert results[-1].finger_detected

    def test_force_complete(self):
        engine = _started()
        assert not engine.force_complete()
        engine.start_calibration()
        engine.process_frames(finger_frames(duration_s=0.5))
        assert not engine.force_complete()
        engine.process_frames(finger_frames(duration_s=0.6, start_ms=600))
        assert engine.force_complete()
        assert engine.validator.is_calibrated

    def test_buffers_are_copies(self):
        engine = _started()
        engine.process_frames(finger_frames(duration_s=2.0))
        assert engine.filtered_buffer().size == 60
        assert engine.raw_buffer(10).size == 10
        tail = engine.filtered_buffer(5)
        tail[:] = 1e6
        assert np.all(engine.filtered_buffer(5) != 1e6)
        assert engine.filtered_buffer(0).size == 0

    def test_bpm_output_step_bounded(self):
        engine = _started()
        results = engine.process_frames(finger_frames(duration_s=20.0, bpm=110.0, noise_std=0.5,
                                                      seed=4))
        bpms = np.array([r.bpm for r in results])
        assert np.max(np.abs(np.diff(bpms))) <= engine.config.beat.max_bpm_step + 1e-9

    def test_rr_intervals_in_bounds_under_noise(self):
        engine = _started("permissive")
        engine.process_frames(finger_frames(duration_s=15.0, noise_std=3.0, seed=7))
        cfg = engine.config.beat
        assert all(cfg.min_rr_ms <= rr <= cfg.max_rr_ms for rr in engine.rr_intervals)

    def test_set_sample_rate(self):
        engine = _started()
        engine.set_sample_rate(60.0)
        assert engine.config.sample_rate == 60.0
        assert engine.conditioner.sample_rate == 60.0
        results = engine.process_frames(finger_frames(duration_s=10.0, fps=60.0))
        assert results[-1].finger_detected
        assert abs(results[-1].bpm - 72.0) <= 3.0
        with pytest.raises(ValueError):
            engine.set_sample_rate(0.0)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

class TestEngineConstruction:

    def test_profiles(self):
        assert PPGEngine("permissive").config.name == "permissive"
        assert PPGEngine(EngineConfig()).config.name == "strict"
        with pytest.raises(ValueError):
            PPGEngine("lenient")

    def test_profile_overrides(self):
        assert get_profile("strict", sample_rate=60.0).sample_rate == 60.0
        with pytest.raises(ValueError):
            get_profile("strict", frame_rate=60.0)
        with pytest.raises(ValueError):
            get_profile("strict", sample_rate=-1.0)

    def test_profiles_are_independent(self):
        a = get_profile("strict")
        a.quality.detection_threshold = 90.0
        assert get_profile("strict").quality.detection_threshold == 55.0

    def test_component_injection(self):
        qd = QualityDetector(strategy=WeightedSumStrategy("red_dominant"))
        engine = PPGEngine(quality_detector=qd)
        assert engine.quality_detector is qd
        engine.start()
        results = engine.process_frames(finger_frames(duration_s=6.0))
        assert results[-1].finger_detected

    def test_permissive_detects_weak_pulse(self):
        strict = _started("strict")
        permissive = _started("permissive")
        frames = list(finger_frames(duration_s=8.0, amplitude=3.0, baseline=60.0,
                                    green=35.0, blue=30.0))
        strict_q = strict.process_frames(frames)[-1].quality
        permissive_q = permissive.process_frames(frames)[-1].quality
        assert permissive_q > strict_q
