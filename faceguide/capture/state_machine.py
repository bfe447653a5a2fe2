"""Timing-gated auto-capture for enrollment.

The CaptureStateMachine owns the single CaptureSession of a register-mode
run. Every mutation (arm, cancel, reset, tick, applying a resolved capture)
goes through the machine under one lock, so timer ticks and user actions
cannot interleave half-way through an update.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from faceguide.config import CaptureConfig
from faceguide.detectors.base import DetectionService
from faceguide.errors import CaptureRejected, DescriptorLengthError, DetectionError, FaceGuideError
from faceguide.types import FaceWithDescriptor, Frame, NoFace, PositionStatus, as_descriptor

LOGGER = logging.getLogger("faceguide.capture.state")

CaptureListener = Callable[[int, int], None]


class CaptureState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    COMPLETE = "complete"


class TickOutcome(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    POSITION_INVALID = "position_invalid"
    COOLING_DOWN = "cooling_down"
    SUBMITTED = "submitted"
    COMPLETE = "complete"


@dataclass
class CaptureSession:
    """Mutable capture state. Only CaptureStateMachine writes to it."""

    state: CaptureState = CaptureState.IDLE
    descriptors: List[np.ndarray] = field(default_factory=list)
    last_capture_ms: Optional[float] = None

    @property
    def captured_count(self) -> int:
        return len(self.descriptors)

    @property
    def armed(self) -> bool:
        return self.state is CaptureState.ARMED


@dataclass(frozen=True)
class SessionSnapshot:
    state: CaptureState
    captured_count: int
    enrollment_size: int
    last_capture_ms: Optional[float]
    capture_in_flight: bool

    @property
    def armed(self) -> bool:
        return self.state is CaptureState.ARMED


@dataclass
class _PendingCapture:
    future: concurrent.futures.Future
    issued_at_ms: float
    generation: int


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class CaptureStateMachine:
    """Idle -> Armed -> Complete, with a cooldown between successful captures.

    While armed, a tick with a valid position status, an elapsed cooldown and
    fewer than `enrollment_size` descriptors submits one expensive detection
    to `executor`. At most one such call is in flight; ticks that find it
    unresolved skip the capture check entirely. The cooldown is measured
    from the tick that issued the last successful capture.
    """

    def __init__(
        self,
        detector: DetectionService,
        config: Optional[CaptureConfig] = None,
        executor: Optional[concurrent.futures.Executor] = None,
        on_capture: Optional[CaptureListener] = None,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.detector = detector
        self.config = config or CaptureConfig()
        self._owns_executor = executor is None
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="capture"
        )
        self.on_capture = on_capture
        self._clock = clock
        self._lock = threading.Lock()
        self._session = CaptureSession()
        self._pending: Optional[_PendingCapture] = None
        # Bumped whenever in-flight results must be ignored (arm/cancel/reset).
        self._generation = 0

    @property
    def enrollment_size(self) -> int:
        return self.config.enrollment_size

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def captured_descriptors(self) -> List[np.ndarray]:
        with self._lock:
            return [vec.copy() for vec in self._session.descriptors]

    def arm(self) -> None:
        """Request auto-capture. Starts a fresh set of captures."""
        with self._lock:
            self._generation += 1
            self._session = CaptureSession(state=CaptureState.ARMED)
        LOGGER.info("Auto-capture armed (target=%d)", self.enrollment_size)

    def cancel(self) -> None:
        """Stop auto-capture. Partial captures are kept until reset()."""
        with self._lock:
            if self._session.state is not CaptureState.ARMED:
                return
            self._generation += 1
            self._session.state = CaptureState.IDLE
            count = self._session.captured_count
        LOGGER.info("Auto-capture cancelled with %d/%d captures", count, self.enrollment_size)

    def reset(self) -> None:
        """Return to Idle and discard all captures."""
        with self._lock:
            self._generation += 1
            self._session = CaptureSession()
        LOGGER.debug("Capture session reset")

    def tick(self, frame: Frame, status: PositionStatus, now_ms: Optional[float] = None) -> TickOutcome:
        now = self._clock() if now_ms is None else float(now_ms)
        notify: List[int] = []
        with self._lock:
            outcome = self._tick_locked(frame, status, now, notify)
        self._notify(notify)
        return outcome

    def wait_for_pending(self, timeout: Optional[float] = None) -> None:
        """Block until the in-flight capture (if any) resolves, then apply it."""
        with self._lock:
            pending = self._pending
        if pending is None:
            return
        concurrent.futures.wait([pending.future], timeout=timeout)
        notify: List[int] = []
        with self._lock:
            self._apply_resolved_locked(notify)
        self._notify(notify)

    def close(self) -> None:
        self.reset()
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    def _tick_locked(self, frame: Frame, status: PositionStatus, now: float, notify: List[int]) -> TickOutcome:
        self._apply_resolved_locked(notify)
        if self._pending is not None:
            return TickOutcome.IN_FLIGHT

        session = self._session
        if session.state is CaptureState.COMPLETE:
            return TickOutcome.COMPLETE
        if session.state is not CaptureState.ARMED:
            return TickOutcome.IDLE
        if not status.valid:
            return TickOutcome.POSITION_INVALID
        if session.last_capture_ms is not None:
            elapsed = now - session.last_capture_ms
            if elapsed <= self.config.cooldown_ms:
                LOGGER.debug("Waiting for cooldown... %.1fs remaining", (self.config.cooldown_ms - elapsed) / 1000.0)
                return TickOutcome.COOLING_DOWN
        if session.captured_count >= self.enrollment_size:
            session.state = CaptureState.COMPLETE
            return TickOutcome.COMPLETE

        LOGGER.info("Capturing %d/%d", session.captured_count + 1, self.enrollment_size)
        future = self._executor.submit(self.detector.detect_descriptor, frame)
        self._pending = _PendingCapture(future=future, issued_at_ms=now, generation=self._generation)
        # Synchronous executors resolve immediately; apply in the same tick.
        self._apply_resolved_locked(notify)
        return TickOutcome.SUBMITTED

    def _apply_resolved_locked(self, notify: List[int]) -> None:
        pending = self._pending
        if pending is None or not pending.future.done():
            return
        self._pending = None
        if pending.generation != self._generation:
            LOGGER.debug("Discarding capture result from a superseded session")
            return
        try:
            result = pending.future.result()
            if isinstance(result, NoFace):
                raise CaptureRejected("No face detected in capture attempt")
            if not isinstance(result, FaceWithDescriptor):
                raise DetectionError(f"Expected a descriptor result, got {type(result).__name__}")
            descriptor = as_descriptor(result.descriptor)
        except CaptureRejected as exc:
            LOGGER.warning("%s; capture count unchanged", exc)
            return
        except (FaceGuideError, DescriptorLengthError) as exc:
            # Any pipeline error from one attempt leaves the session untouched.
            LOGGER.warning("Capture failed: %s", exc)
            return

        session = self._session
        session.descriptors.append(descriptor)
        session.last_capture_ms = pending.issued_at_ms
        count = session.captured_count
        LOGGER.info("Capture %d/%d complete", count, self.enrollment_size)
        if count >= self.enrollment_size:
            session.state = CaptureState.COMPLETE
            LOGGER.info("All %d captures complete; auto-capture stopped", count)
        notify.append(count)

    def _snapshot_locked(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._session.state,
            captured_count=self._session.captured_count,
            enrollment_size=self.enrollment_size,
            last_capture_ms=self._session.last_capture_ms,
            capture_in_flight=self._pending is not None,
        )

    def _notify(self, counts: List[int]) -> None:
        if self.on_capture is None:
            return
        for count in counts:
            self.on_capture(count, self.enrollment_size)
