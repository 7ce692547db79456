"""
PPG Engine — finger photoplethysmography signal engine.
Press a fingertip on a phone camera with the flash on; per-frame ROI colour
statistics go in, a filtered cardiac waveform, a contact/quality decision
and beat metrics (BPM, RR intervals, HRV, rhythm advisories) come out.
"""

from ppg_engine.config import EngineConfig, get_profile
from ppg_engine.engine import PPGEngine
from ppg_engine.models import ColorMeans, ContactState, FrameStats, ProcessedSignal

__version__ = "0.1.0"
__author__ = "ppg_engine"

__all__ = [
    "ColorMeans",
    "ContactState",
    "EngineConfig",
    "FrameStats",
    "PPGEngine",
    "ProcessedSignal",
    "get_profile",
]
