"""Fixed-period polling loop driving the position overlay and auto-capture."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from faceguide.capture.frame_source import FrameSource
from faceguide.capture.state_machine import CaptureStateMachine, TickOutcome
from faceguide.config import PositionConfig
from faceguide.detectors.base import DetectionService
from faceguide.errors import DetectionError
from faceguide.quality.position import validate_position
from faceguide.types import DetectionResult, FaceWithDescriptor, FaceWithLandmarks, Frame, PositionStatus

LOGGER = logging.getLogger("faceguide.capture.loop")


@dataclass(frozen=True)
class TickReport:
    frame: Frame
    detection: DetectionResult
    status: PositionStatus
    outcome: Optional[TickOutcome]


StatusListener = Callable[[TickReport], None]


class CaptureLoop:
    """Single polling loop for one session.

    Each step reads the current frame, runs the cheap detection, validates
    the position and reports it. When a state machine is attached (register
    mode) the step then ticks it; the report never waits on the expensive
    capture call.
    """

    def __init__(
        self,
        frame_source: FrameSource,
        detector: DetectionService,
        machine: Optional[CaptureStateMachine] = None,
        position_config: Optional[PositionConfig] = None,
        poll_interval_ms: float = 100.0,
        on_status: Optional[StatusListener] = None,
    ) -> None:
        if poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be positive")
        self.frame_source = frame_source
        self.detector = detector
        self.machine = machine
        self.position_config = position_config or PositionConfig()
        self.poll_interval_ms = poll_interval_ms
        self.on_status = on_status
        self.last_report: Optional[TickReport] = None

    def step(self, now_ms: Optional[float] = None) -> Optional[TickReport]:
        """Run one poll tick. Returns None when the tick was skipped."""
        frame = self.frame_source.read()
        if frame is None or not frame.ready:
            LOGGER.debug("Detection skipped - video not ready")
            return None
        try:
            detection = self.detector.detect_landmarks(frame)
        except DetectionError as exc:
            LOGGER.warning("Error during position detection: %s", exc)
            return None

        box = detection.box if isinstance(detection, (FaceWithLandmarks, FaceWithDescriptor)) else None
        status = validate_position(box, frame.width, frame.height, self.position_config)

        outcome = None
        if self.machine is not None:
            tick_time = frame.timestamp_ms if now_ms is None else now_ms
            outcome = self.machine.tick(frame, status, tick_time)

        report = TickReport(frame=frame, detection=detection, status=status, outcome=outcome)
        self.last_report = report
        if self.on_status is not None:
            self.on_status(report)
        return report

    def run(self, *stop_events: threading.Event, max_ticks: Optional[int] = None) -> int:
        """Poll every `poll_interval_ms` until any of `stop_events` is set. Returns ticks run.

        The first event is the one waited on between ticks; the others are
        checked once per tick.
        """
        if not stop_events:
            raise ValueError("at least one stop event is required")
        primary = stop_events[0]
        period_s = self.poll_interval_ms / 1000.0
        ticks = 0
        next_deadline = time.monotonic()
        while not any(event.is_set() for event in stop_events):
            self.step()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            next_deadline += period_s
            delay = next_deadline - time.monotonic()
            if delay < 0:
                # Fell behind; drop missed ticks instead of bursting.
                next_deadline = time.monotonic()
                delay = 0.0
            primary.wait(delay)
        LOGGER.debug("Polling loop stopped after %d ticks", ticks)
        return ticks