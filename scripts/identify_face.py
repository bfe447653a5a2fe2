#!/usr/bin/env python3
"""CLI for identifying the person in front of the camera against the facebank."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from faceguide.capture.frame_source import OpenCVCameraSource
from faceguide.config import PipelineConfig
from faceguide.detectors.face_dlib import RetinaDlibDetector
from faceguide.errors import DetectionError, FaceGuideError
from faceguide.io_utils import setup_logging
from faceguide.recognition.gallery import FacebankParquet
from faceguide.session import FaceSession, IdentifyResult, Mode
from faceguide.types import MatchOutcome

LOGGER = logging.getLogger("scripts.identify")

EXIT_MATCH = 0
EXIT_NO_MATCH = 1
EXIT_ERROR = 2
EXIT_NO_FACE = 3


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Identify a face against the facebank")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/capture.yaml"),
        help="Capture configuration YAML",
    )
    parser.add_argument(
        "--facebank",
        type=Path,
        default=Path("data/facebank.parquet"),
        help="Parquet facebank to match against",
    )
    parser.add_argument("--camera", type=int, default=0, help="Camera device index")
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Maximum (exclusive) Euclidean distance for a match (default from config)",
    )
    parser.add_argument(
        "--wait-seconds",
        type=float,
        default=10.0,
        help="How long to wait for a well-positioned face before identifying anyway",
    )
    parser.add_argument("--top-k", type=int, default=0, help="Also print the k nearest identities")
    parser.add_argument(
        "--providers",
        type=str,
        nargs="*",
        default=None,
        help="Execution providers for ONNXRuntime (e.g. CUDAExecutionProvider)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def result_payload(result: IdentifyResult, session: FaceSession, top_k: int = 0) -> dict:
    if not result.face_found:
        return {"outcome": "no_face_detected"}
    match = result.match
    payload = {
        "outcome": match.outcome.value,
        "identity": match.identity,
        "distance": match.distance,
        "confidence": match.confidence,
        "nearest_identity": match.nearest_identity,
    }
    if top_k > 0 and result.descriptor is not None:
        payload["nearest"] = [
            {"identity": label, "distance": dist} for label, dist in session.engine.rank(result.descriptor, top_k)
        ]
    return payload


def exit_code(result: IdentifyResult) -> int:
    if not result.face_found:
        return EXIT_NO_FACE
    return EXIT_MATCH if result.match.outcome is MatchOutcome.MATCH_FOUND else EXIT_NO_MATCH


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    config = PipelineConfig.from_yaml(args.config) if args.config.exists() else PipelineConfig()
    if args.threshold is not None:
        config.match.distance_threshold = args.threshold
    if args.providers:
        config.detector.providers = tuple(args.providers)
    config.validate()

    facebank = FacebankParquet(args.facebank)
    session = FaceSession(
        lambda: OpenCVCameraSource(args.camera),
        RetinaDlibDetector(config.detector),
        gallery_source=facebank,
        config=config,
    )

    progress = tqdm(total=100, desc="Initializing", unit="%")

    def on_progress(stage: str, percent: int, message: str) -> None:
        progress.set_postfix_str(message)
        progress.update(percent - progress.n)

    try:
        session.initialize(on_progress)
    except FaceGuideError as exc:
        LOGGER.error("%s", exc)
        return EXIT_ERROR
    finally:
        progress.close()

    if not session.gallery:
        LOGGER.warning("No face descriptors available for matching")

    try:
        with session:
            session.start(Mode.IDENTIFY)
            deadline = time.monotonic() + args.wait_seconds
            while time.monotonic() < deadline:
                report = session.step()
                if report is not None and report.status.valid:
                    break
                time.sleep(config.capture.poll_interval_ms / 1000.0)
            result = session.identify()
    except DetectionError as exc:
        LOGGER.error("Failed to identify face: %s", exc)
        return EXIT_ERROR
    except FaceGuideError as exc:
        LOGGER.error("%s", exc)
        return EXIT_ERROR

    print(json.dumps(result_payload(result, session, args.top_k), indent=2))
    return exit_code(result)


if __name__ == "__main__":
    sys.exit(main())
