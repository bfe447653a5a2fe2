#!/usr/bin/env python3
"""CLI for registering a face: guided auto-capture, averaging, facebank save."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Optional

import cv2
from tqdm import tqdm

from faceguide.capture.frame_source import OpenCVCameraSource
from faceguide.capture.loop import TickReport
from faceguide.capture.state_machine import CaptureState
from faceguide.config import PipelineConfig
from faceguide.detectors.face_dlib import RetinaDlibDetector
from faceguide.errors import AggregationError, EnrollmentError, FaceGuideError
from faceguide.io_utils import setup_logging
from faceguide.recognition.gallery import FacebankParquet
from faceguide.session import FaceSession, Mode
from faceguide.types import FaceWithDescriptor, FaceWithLandmarks
from faceguide.viz.overlay import draw_capture_flash, draw_guide, draw_progress

LOGGER = logging.getLogger("scripts.enroll")

WINDOW = "faceguide - register"


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Register a face with guided auto-capture")
    parser.add_argument("identity", type=str, help="Identity label to store the descriptor under")
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
        help="Parquet facebank used as gallery and enrollment store",
    )
    parser.add_argument("--camera", type=int, default=0, help="Camera device index")
    parser.add_argument(
        "--enrollment-size",
        type=int,
        default=None,
        help="Number of captures to average (default from config)",
    )
    parser.add_argument(
        "--cooldown-ms",
        type=float,
        default=None,
        help="Minimum time between successful captures (default from config)",
    )
    parser.add_argument(
        "--providers",
        type=str,
        nargs="*",
        default=None,
        help="Execution providers for ONNXRuntime (e.g. CUDAExecutionProvider)",
    )
    parser.add_argument("--preview", action="store_true", help="Show the guided preview window")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> PipelineConfig:
    config = PipelineConfig.from_yaml(args.config) if args.config.exists() else PipelineConfig()
    if args.enrollment_size is not None:
        config.capture.enrollment_size = args.enrollment_size
    if args.cooldown_ms is not None:
        config.capture.cooldown_ms = args.cooldown_ms
    if args.providers:
        config.detector.providers = tuple(args.providers)
    config.validate()
    return config


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    config = load_config(args)

    facebank = FacebankParquet(args.facebank)
    detector = RetinaDlibDetector(config.detector)
    stop_event = threading.Event()
    flash = {"pending": False}

    def on_capture(count: int, target: int) -> None:
        LOGGER.info("Capture %d/%d", count, target)
        flash["pending"] = True

    def on_status(report: TickReport) -> None:
        if not args.preview:
            return
        image = report.frame.image.copy()
        box = report.detection.box if isinstance(report.detection, (FaceWithLandmarks, FaceWithDescriptor)) else None
        draw_guide(image, report.status, box)
        snapshot = session.snapshot()
        if snapshot is not None:
            draw_progress(image, snapshot.captured_count, snapshot.enrollment_size)
        if flash["pending"]:
            draw_capture_flash(image)
            flash["pending"] = False
        cv2.imshow(WINDOW, image)
        if cv2.waitKey(1) & 0xFF == ord("q"):
            stop_event.set()

    session = FaceSession(
        lambda: OpenCVCameraSource(args.camera),
        detector,
        gallery_source=facebank,
        sink=facebank,
        config=config,
        on_status=on_status,
        on_capture=on_capture,
    )

    progress = tqdm(total=100, desc="Initializing", unit="%")

    def on_progress(stage: str, percent: int, message: str) -> None:
        progress.set_postfix_str(message)
        progress.update(percent - progress.n)

    try:
        session.initialize(on_progress)
    except FaceGuideError as exc:
        LOGGER.error("%s", exc)
        return 2
    finally:
        progress.close()

    try:
        with session:
            session.start(Mode.REGISTER)
            session.arm()
            poll = threading.Event()
            while not stop_event.is_set():
                session.step()
                snapshot = session.snapshot()
                if snapshot is not None and snapshot.state is CaptureState.COMPLETE:
                    break
                poll.wait(config.capture.poll_interval_ms / 1000.0)
            else:
                LOGGER.warning("Registration cancelled")
                session.cancel()
                return 1
            descriptor = session.commit_enrollment(args.identity)
            LOGGER.info(
                "Registered %s (descriptor norm=%.3f, gallery=%d identities)",
                args.identity,
                float((descriptor ** 2).sum() ** 0.5),
                len(session.gallery),
            )
    except (AggregationError, EnrollmentError) as exc:
        LOGGER.error("Failed to save face descriptor: %s", exc)
        return 1
    except FaceGuideError as exc:
        LOGGER.error("%s", exc)
        return 2
    finally:
        if args.preview:
            cv2.destroyAllWindows()
    return 0


if __name__ == "__main__":
    sys.exit(main())
