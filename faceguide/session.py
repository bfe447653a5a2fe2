"""Identify/register session: model lifecycle, camera scope and mode switching."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

import numpy as np

from faceguide.capture.frame_source import FrameSource
from faceguide.capture.loop import CaptureLoop, StatusListener, TickReport
from faceguide.capture.state_machine import CaptureListener, CaptureStateMachine, SessionSnapshot
from faceguide.config import PipelineConfig
from faceguide.detectors.base import DetectionService
from faceguide.errors import CameraUnavailableError, DetectionError, EnrollmentError, NotReadyError
from faceguide.lifecycle import LoadStage, ModelPipeline, ProgressCallback
from faceguide.recognition.aggregate import aggregate_descriptors
from faceguide.recognition.gallery import EnrollmentSink, GallerySource, load_gallery
from faceguide.recognition.matcher import MatchEngine
from faceguide.types import DetectionBox, FaceWithDescriptor, Frame, GalleryEntry, MatchResult

LOGGER = logging.getLogger("faceguide.session")

GALLERY_STAGE_PROGRESS = 80
STOP_JOIN_TIMEOUT_S = 5.0


class Mode(str, Enum):
    IDENTIFY = "identify"
    REGISTER = "register"


@dataclass(frozen=True)
class IdentifyResult:
    """Result of one identify attempt. `match` is None when no face was found."""

    face_found: bool
    match: Optional[MatchResult] = None
    box: Optional[DetectionBox] = None
    descriptor: Optional[np.ndarray] = None


class FaceSession:
    """Owns the detector lifecycle, the gallery and at most one active camera.

    Register mode gets a fresh CaptureStateMachine on every start; stopping or
    switching modes resets it to Idle and releases the camera before anything
    else runs.
    """

    def __init__(
        self,
        frame_source_factory: Callable[[], FrameSource],
        detector: DetectionService,
        gallery_source: GallerySource,
        sink: Optional[EnrollmentSink] = None,
        config: Optional[PipelineConfig] = None,
        on_status: Optional[StatusListener] = None,
        on_capture: Optional[CaptureListener] = None,
        capture_executor: Optional[concurrent.futures.Executor] = None,
    ) -> None:
        self.frame_source_factory = frame_source_factory
        self.detector = detector
        self.gallery_source = gallery_source
        self.sink = sink
        self.config = config or PipelineConfig()
        self.on_status = on_status
        self.on_capture = on_capture
        self.capture_executor = capture_executor
        self._initialized = False
        self._gallery: Tuple[GalleryEntry, ...] = ()
        self._engine = MatchEngine((), threshold=self.config.match.distance_threshold)
        self._mode: Optional[Mode] = None
        self._source: Optional[FrameSource] = None
        self._machine: Optional[CaptureStateMachine] = None
        self._loop: Optional[CaptureLoop] = None
        self._stop_event = threading.Event()
        self._loop_exited = threading.Event()
        self._loop_exited.set()
        self._run_thread: Optional[threading.Thread] = None

    # lifecycle -----------------------------------------------------------
    @property
    def ready(self) -> bool:
        return self._initialized

    def initialize(self, on_progress: Optional[ProgressCallback] = None) -> None:
        if self._initialized:
            return
        stages = list(self.detector.load_stages())
        stages.append(LoadStage("gallery", self.refresh_gallery, GALLERY_STAGE_PROGRESS, "Loading gallery data..."))
        ModelPipeline(stages, timeout_s=self.config.lifecycle.stage_timeout_s, on_progress=on_progress).run()
        self._initialized = True
        LOGGER.info("Face session initialized (%d identities)", len(self._gallery))

    def _require_ready(self) -> None:
        if not self._initialized:
            raise NotReadyError("Face session is not initialized")

    # gallery -------------------------------------------------------------
    @property
    def gallery(self) -> Tuple[GalleryEntry, ...]:
        return self._gallery

    @property
    def engine(self) -> MatchEngine:
        return self._engine

    def refresh_gallery(self) -> None:
        """Re-fetch the whole gallery; never patched in place."""
        gallery = load_gallery(self.gallery_source)
        self._engine = MatchEngine(gallery, threshold=self.config.match.distance_threshold)
        self._gallery = gallery

    # camera / modes --------------------------------------------------------
    @property
    def mode(self) -> Optional[Mode]:
        return self._mode

    @property
    def active(self) -> bool:
        return self._source is not None

    @property
    def machine(self) -> Optional[CaptureStateMachine]:
        return self._machine

    def start(self, mode: Mode) -> None:
        self._require_ready()
        if self.active:
            raise RuntimeError(f"Session already running in {self._mode.value} mode; use switch_mode()")
        mode = Mode(mode)
        source = self.frame_source_factory()
        try:
            source.open()
        except CameraUnavailableError:
            source.close()
            raise
        except Exception as exc:
            source.close()
            raise CameraUnavailableError(getattr(source, "device", source), str(exc)) from exc

        machine = None
        if mode is Mode.REGISTER:
            machine = CaptureStateMachine(
                self.detector,
                self.config.capture,
                executor=self.capture_executor,
                on_capture=self.on_capture,
            )
        self._source = source
        self._machine = machine
        self._mode = mode
        self._stop_event = threading.Event()
        self._loop = CaptureLoop(
            source,
            self.detector,
            machine=machine,
            position_config=self.config.position,
            poll_interval_ms=self.config.capture.poll_interval_ms,
            on_status=self.on_status,
        )
        LOGGER.info("Started %s mode", mode.value)

    def stop(self) -> None:
        """Stop polling, reset capture state and release the camera.

        A loop running on another thread is waited for before the camera is
        closed, so no read is in progress when the source goes away.
        """
        self._stop_event.set()
        run_thread = self._run_thread
        if run_thread is not None and run_thread is not threading.current_thread():
            if not self._loop_exited.wait(STOP_JOIN_TIMEOUT_S):
                LOGGER.warning("Polling loop did not exit within %.1fs", STOP_JOIN_TIMEOUT_S)
        machine, source = self._machine, self._source
        self._loop = None
        self._machine = None
        self._source = None
        self._mode = None
        try:
            if machine is not None:
                machine.close()
        finally:
            if source is not None:
                source.close()
                LOGGER.info("Camera released")

    def switch_mode(self, mode: Mode) -> None:
        self.stop()
        self.start(mode)

    def __enter__(self) -> "FaceSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    # polling -------------------------------------------------------------
    def step(self, now_ms: Optional[float] = None) -> Optional[TickReport]:
        if self._loop is None:
            raise RuntimeError("Session is not started")
        return self._loop.step(now_ms)

    def run(self, stop_event: Optional[threading.Event] = None, max_ticks: Optional[int] = None) -> int:
        """Poll until stop() is called or `stop_event` is set.

        Releases the camera if polling raises.
        """
        if self._loop is None:
            raise RuntimeError("Session is not started")
        events = [self._stop_event]
        if stop_event is not None:
            events.append(stop_event)
        self._loop_exited.clear()
        self._run_thread = threading.current_thread()
        try:
            return self._loop.run(*events, max_ticks=max_ticks)
        except BaseException:
            self.stop()
            raise
        finally:
            self._run_thread = None
            self._loop_exited.set()

    # register mode -------------------------------------------------------
    def _require_machine(self) -> CaptureStateMachine:
        if self._machine is None:
            raise RuntimeError("Auto-capture is only available in register mode")
        return self._machine

    def arm(self) -> None:
        self._require_machine().arm()

    def cancel(self) -> None:
        self._require_machine().cancel()

    def reset_capture(self) -> None:
        self._require_machine().reset()

    def snapshot(self) -> Optional[SessionSnapshot]:
        return None if self._machine is None else self._machine.snapshot()

    def commit_enrollment(self, identity: str) -> np.ndarray:
        """Average the captures, store them for `identity` and refresh the gallery.

        Captures are kept when the sink refuses so the commit can be retried.
        """
        if not identity:
            raise ValueError("identity is required")
        if self.sink is None:
            raise EnrollmentError("No enrollment sink configured")
        machine = self._require_machine()
        descriptor = aggregate_descriptors(machine.captured_descriptors(), machine.enrollment_size)
        try:
            saved = self.sink.save(identity, descriptor)
        except OSError as exc:
            raise EnrollmentError(f"Failed to save face descriptor: {exc}") from exc
        if not saved:
            raise EnrollmentError(f"Enrollment sink rejected descriptor for {identity}")
        LOGGER.info("Enrolled %s", identity)
        self.refresh_gallery()
        machine.reset()
        return descriptor

    # identify mode -------------------------------------------------------
    def identify(self, frame: Optional[Frame] = None) -> IdentifyResult:
        self._require_ready()
        if frame is None:
            if self._source is None:
                raise RuntimeError("Session is not started")
            frame = self._source.read()
            if frame is None:
                raise DetectionError("Frame is not ready")
        result = self.detector.detect_descriptor(frame)
        if not isinstance(result, FaceWithDescriptor):
            LOGGER.info("No face detected")
            return IdentifyResult(face_found=False)
        match = self._engine.match(result.descriptor)
        return IdentifyResult(face_found=True, match=match, box=result.box, descriptor=result.descriptor)
