#!/usr/bin/env python3
"""
PPG Engine – headless runner.

Feeds frame statistics through :class:`ppg_engine.PPGEngine` and logs the
heart rate roughly once per second.  Without ``--input`` a synthetic
fingertip signal is generated.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --profile NAME       Threshold profile: strict | permissive (default: strict)
    --fps FLOAT          Frame rate of the input (default: 30)
    --duration FLOAT     Length of the synthetic signal in seconds (default: 20)
    --bpm FLOAT          Heart rate of the synthetic signal (default: 72)
    --noise FLOAT        Noise std of the synthetic signal (default: 0.5)
    --input PATH         CSV file with rows timestamp,r,g,b[,coverage,motion]
    --calibrate          Run a calibration pass once contact is confirmed
"""

from __future__ import annotations

import argparse
import csv
import logging
import sys
from pathlib import Path
from typing import Iterator

from ppg_engine import PPGEngine
from ppg_engine.config import PROFILES
from ppg_engine.models import ColorMeans, ContactState, FrameStats
from ppg_engine.synthetic import finger_frames

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("ppg_engine")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Finger-PPG engine (headless)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--profile", choices=sorted(PROFILES), default="strict",
                        help="Threshold profile")
    parser.add_argument("--fps", type=float, default=30.0,
                        help="Frame rate of the input")
    parser.add_argument("--duration", type=float, default=20.0,
                        help="Synthetic signal length in seconds")
    parser.add_argument("--bpm", type=float, default=72.0,
                        help="Synthetic heart rate")
    parser.add_argument("--noise", type=float, default=0.5,
                        help="Synthetic sensor noise (std, intensity units)")
    parser.add_argument("--input", type=Path, default=None,
                        help="CSV of timestamp,r,g,b[,coverage,motion] rows")
    parser.add_argument("--calibrate", action="store_true",
                        help="Calibrate once contact is confirmed")
    return parser.parse_args(argv)


def read_csv(path: Path) -> Iterator[FrameStats]:
    """Yield frames from a CSV file; a header row is skipped if present."""
    with path.open(newline="") as fh:
        for row in csv.reader(fh):
            if not row or row[0].strip().startswith("#"):
                continue
            try:
                values = [float(v) for v in row]
            except ValueError:
                continue  # header
            if len(values) < 4:
                logger.warning("Skipping short CSV row: %s", row)
                continue
            yield FrameStats(
                timestamp=int(values[0]),
                color_means=ColorMeans(values[1], values[2], values[3]),
                coverage_ratio=values[4] if len(values) > 4 else 1.0,
                motion_level=values[5] if len(values) > 5 else 0.0,
            )


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    if args.input is not None:
        if not args.input.is_file():
            logger.error("Input file %s not found.", args.input)
            return 1
        frames = read_csv(args.input)
        logger.info("Reading frames from %s", args.input)
    else:
        frames = finger_frames(duration_s=args.duration, fps=args.fps, bpm=args.bpm,
                               noise_std=args.noise, seed=0)
        logger.info("Generating %.0f s synthetic signal at %.1f BPM", args.duration, args.bpm)

    try:
        engine = PPGEngine(args.profile)
        engine.set_sample_rate(args.fps)
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    engine.start()
    log_interval = max(1, int(round(args.fps)))  # ~1 second
    calibration_requested = False
    result = None

    try:
        for frame_idx, frame in enumerate(frames):
            result = engine.process_frame(frame)
            if result is None:
                continue

            state = result.diagnostics.contact_state
            if (args.calibrate and not calibration_requested
                    and state is ContactState.CONTACT_CONFIRMED):
                calibration_requested = engine.start_calibration()

            if frame_idx % log_interval == 0:
                beat = result.diagnostics.beat
                if result.finger_detected:
                    print(f"[{result.timestamp / 1000:7.1f}s] BPM={beat.bpm:.1f}  "
                          f"conf={beat.confidence:.2f}  quality={result.quality:.0f}  "
                          f"PI={result.perfusion_index:.2f}%  {beat.status.value}")
                else:
                    print(f"[{result.timestamp / 1000:7.1f}s] Waiting for finger…  "
                          f"quality={result.quality:.0f}  {state.value}")
    except KeyboardInterrupt:
        logger.info("Interrupted.")

    if result is not None:
        beat = result.diagnostics.beat
        logger.info("Final BPM %.1f, %d beats, HRV RMSSD %.1f ms, rhythm %s",
                    beat.bpm, beat.beat_count, beat.hrv.rmssd,
                    ", ".join(f.value for f in beat.rhythm_flags))
    logger.info("Statistics: %s", engine.statistics)
    engine.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    return run(parse_args(argv))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())
