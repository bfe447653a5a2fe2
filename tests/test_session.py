import concurrent.futures
import threading
import time

import numpy as np
import pytest

from faceguide.capture.state_machine import CaptureState
from faceguide.config import CaptureConfig, PipelineConfig
from faceguide.errors import (
    AggregationError,
    CameraUnavailableError,
    EnrollmentError,
    InitializationError,
    NotReadyError,
)
from faceguide.lifecycle import LoadStage
from faceguide.session import FaceSession, Mode
from faceguide.types import DetectionBox, FaceWithDescriptor, FaceWithLandmarks, Frame, MatchOutcome, NoFace

WIDTH, HEIGHT = 640, 480
GOOD_BOX = DetectionBox(x=128.0, y=120.0, width=384.0, height=240.0, score=0.9)


class _ImmediateExecutor(concurrent.futures.Executor):
    def submit(self, fn, *args, **kwargs):
        future = concurrent.futures.Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:  # noqa: BLE001 - mirror executor semantics
            future.set_exception(exc)
        return future


class _FakeCamera:
    def __init__(self, fail=False):
        self.fail = fail
        self.opened = 0
        self.closed = 0
        self._open = False
        self.t = 0.0

    @property
    def is_open(self):
        return self._open

    def open(self):
        if self.fail:
            raise PermissionError("camera permission denied")
        self.opened += 1
        self._open = True

    def read(self):
        if not self._open:
            return None
        frame = Frame(np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8), WIDTH, HEIGHT, self.t)
        self.t += 100.0
        return frame

    def close(self):
        if self._open:
            self.closed += 1
        self._open = False


class _FakeDetector:
    def __init__(self, descriptor_results=None):
        self.loaded = False
        self.descriptor_results = list(descriptor_results or [])
        self.descriptor_calls = 0

    @property
    def ready(self):
        return self.loaded

    def load_stages(self):
        def _load():
            self.loaded = True

        return [LoadStage("fake-models", _load, 20, "Loading fake models...")]

    def detect_landmarks(self, frame):
        if not self.loaded:
            raise NotReadyError("not loaded")
        return FaceWithLandmarks(box=GOOD_BOX)

    def detect_descriptor(self, frame):
        if not self.loaded:
            raise NotReadyError("not loaded")
        self.descriptor_calls += 1
        if self.descriptor_results:
            return self.descriptor_results.pop(0)
        vec = np.zeros((128,), dtype=np.float32)
        vec[(self.descriptor_calls - 1) % 128] = 1.0
        return FaceWithDescriptor(box=GOOD_BOX, descriptor=vec)


class _MemoryBank:
    def __init__(self, records=None, accept=True):
        self.records = list(records or [])
        self.accept = accept
        self.fetches = 0
        self.saved = []

    def fetch(self):
        self.fetches += 1
        return list(self.records)

    def save(self, identity, descriptor):
        if not self.accept:
            return False
        self.saved.append((identity, descriptor))
        self.records.append({"identity": identity, "descriptor": descriptor.tolist()})
        return True


def _session(detector=None, bank=None, cameras=None, **capture):
    cameras = cameras if cameras is not None else []

    def factory():
        camera = _FakeCamera()
        cameras.append(camera)
        return camera

    bank = bank if bank is not None else _MemoryBank()
    config = PipelineConfig(capture=CaptureConfig(**capture))
    return FaceSession(
        factory,
        detector or _FakeDetector(),
        gallery_source=bank,
        sink=bank,
        config=config,
        capture_executor=_ImmediateExecutor(),
    )


def _capture_all(session, ticks=40):
    for _ in range(ticks):
        session.step()
        if session.snapshot().state is CaptureState.COMPLETE:
            return


def test_initialize_reports_stages_and_loads_gallery():
    bank = _MemoryBank([{"identity": "1", "descriptor": [0.0] * 128}, {"identity": "2", "descriptor": [0.0] * 12}])
    session = _session(bank=bank)
    events = []
    session.initialize(lambda *event: events.append(event))
    assert session.ready
    assert [name for name, _, _ in events] == ["fake-models", "gallery", "complete"]
    assert [percent for _, percent, _ in events] == [20, 80, 100]
    assert [entry.identity for entry in session.gallery] == ["1"]
    assert bank.fetches == 1


def test_gallery_failure_is_initialization_error():
    class _BrokenBank(_MemoryBank):
        def fetch(self):
            raise ConnectionError("api down")

    session = _session(bank=_BrokenBank())
    with pytest.raises(InitializationError) as excinfo:
        session.initialize()
    assert excinfo.value.stage == "gallery"
    assert not session.ready


def test_calls_before_initialize_fail_fast():
    session = _session()
    with pytest.raises(NotReadyError):
        session.start(Mode.REGISTER)
    frame = Frame(np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8), WIDTH, HEIGHT, 0.0)
    with pytest.raises(NotReadyError):
        session.identify(frame)


def test_camera_failure_is_fatal_and_released():
    cameras = []

    def factory():
        camera = _FakeCamera(fail=True)
        cameras.append(camera)
        return camera

    session = FaceSession(factory, _FakeDetector(), gallery_source=_MemoryBank())
    session.initialize()
    with pytest.raises(CameraUnavailableError):
        session.start(Mode.IDENTIFY)
    assert not session.active
    assert not cameras[0].is_open


def test_register_flow_commits_average_and_refreshes_gallery():
    bank = _MemoryBank()
    session = _session(bank=bank, cooldown_ms=150)
    session.initialize()
    session.start(Mode.REGISTER)
    session.arm()
    _capture_all(session)
    assert session.snapshot().captured_count == 3

    descriptor = session.commit_enrollment("42")
    assert descriptor[:3] == pytest.approx([1 / 3, 1 / 3, 1 / 3], abs=1e-6)
    assert bank.saved[0][0] == "42"
    assert bank.fetches == 2
    assert [entry.identity for entry in session.gallery] == ["42"]
    snapshot = session.snapshot()
    assert snapshot.state is CaptureState.IDLE
    assert snapshot.captured_count == 0

    result = session.identify(Frame(np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8), WIDTH, HEIGHT, 0.0))
    assert result.face_found
    assert result.match.outcome in (MatchOutcome.MATCH_FOUND, MatchOutcome.MATCH_BELOW_THRESHOLD)
    session.stop()


def test_rejected_save_keeps_captures_for_retry():
    bank = _MemoryBank(accept=False)
    session = _session(bank=bank, cooldown_ms=0)
    session.initialize()
    session.start(Mode.REGISTER)
    session.arm()
    _capture_all(session)
    with pytest.raises(EnrollmentError):
        session.commit_enrollment("42")
    assert session.snapshot().captured_count == 3
    assert bank.fetches == 1
    session.stop()


def test_partial_capture_cannot_be_committed():
    session = _session(cooldown_ms=10_000)
    session.initialize()
    session.start(Mode.REGISTER)
    session.arm()
    session.step()
    assert session.snapshot().captured_count == 1
    with pytest.raises(AggregationError):
        session.commit_enrollment("42")
    session.stop()


def test_switching_modes_resets_capture_and_swaps_camera():
    cameras = []
    session = _session(cameras=cameras, cooldown_ms=0)
    session.initialize()
    session.start(Mode.REGISTER)
    session.arm()
    session.step()
    session.step()
    register_machine = session.machine
    assert register_machine.snapshot().captured_count == 2

    session.switch_mode(Mode.IDENTIFY)
    snapshot = register_machine.snapshot()
    assert snapshot.state is CaptureState.IDLE
    assert snapshot.captured_count == 0
    assert cameras[0].closed == 1
    assert not cameras[0].is_open
    assert cameras[1].is_open
    assert session.mode is Mode.IDENTIFY
    assert session.machine is None

    session.switch_mode(Mode.REGISTER)
    fresh = session.snapshot()
    assert fresh.state is CaptureState.IDLE
    assert fresh.captured_count == 0
    assert cameras[1].closed == 1
    session.stop()
    assert all(not camera.is_open for camera in cameras)


def test_identify_reports_no_face_and_no_gallery_data():
    detector = _FakeDetector(descriptor_results=[NoFace()])
    session = _session(detector=detector)
    session.initialize()
    with session:
        session.start(Mode.IDENTIFY)
        assert not session.identify().face_found
        result = session.identify()
        assert result.face_found
        assert result.match.outcome is MatchOutcome.NO_GALLERY_DATA
    assert not session.active


def test_identify_matches_known_identity():
    vec = np.zeros((128,), dtype=np.float32)
    vec[0] = 1.0
    session = _session(bank=_MemoryBank([{"identity": "7", "descriptor": vec.tolist()}]))
    session.initialize()
    result = session.identify(Frame(np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8), WIDTH, HEIGHT, 0.0))
    assert result.match.outcome is MatchOutcome.MATCH_FOUND
    assert result.match.identity == "7"
    assert result.match.confidence == pytest.approx(100.0)


def test_auto_capture_requires_register_mode():
    session = _session()
    session.initialize()
    session.start(Mode.IDENTIFY)
    with pytest.raises(RuntimeError):
        session.arm()
    session.stop()


def test_run_polls_until_max_ticks_and_reset_clears_captures():
    session = _session(cooldown_ms=0)
    session.initialize()
    session.start(Mode.REGISTER)
    session.arm()
    assert session.run(max_ticks=2) == 2
    assert session.snapshot().captured_count == 2
    session.reset_capture()
    assert session.snapshot().captured_count == 0
    session.stop()


class _SlowCamera(_FakeCamera):
    """Slow reads; records any read overlapping or following close()."""

    def __init__(self):
        super().__init__()
        self.first_read = threading.Event()
        self.in_read = False
        self.read_in_progress_at_close = None
        self.reads_after_close = 0

    def read(self):
        if self.closed:
            self.reads_after_close += 1
        self.in_read = True
        try:
            self.first_read.set()
            time.sleep(0.02)
            return super().read()
        finally:
            self.in_read = False

    def close(self):
        if self._open:
            self.read_in_progress_at_close = self.in_read
        super().close()


def _slow_session(cameras):
    def factory():
        camera = _SlowCamera()
        cameras.append(camera)
        return camera

    return FaceSession(
        factory,
        _FakeDetector(),
        gallery_source=_MemoryBank(),
        config=PipelineConfig(capture=CaptureConfig(poll_interval_ms=1)),
        capture_executor=_ImmediateExecutor(),
    )


def _poll_in_background(session, camera, stop_event=None):
    poller = threading.Thread(target=session.run, kwargs={"stop_event": stop_event}, daemon=True)
    poller.start()
    assert camera.first_read.wait(5.0)
    return poller


def test_stop_ends_run_with_caller_event_before_camera_closes():
    cameras = []
    session = _slow_session(cameras)
    session.initialize()
    session.start(Mode.REGISTER)
    caller_event = threading.Event()
    poller = _poll_in_background(session, cameras[0], stop_event=caller_event)

    session.stop()
    poller.join(2.0)
    assert not poller.is_alive()
    assert not caller_event.is_set()
    assert cameras[0].read_in_progress_at_close is False
    time.sleep(0.05)
    assert cameras[0].reads_after_close == 0


def test_switch_mode_waits_for_polling_loop_before_releasing_camera():
    cameras = []
    session = _slow_session(cameras)
    session.initialize()
    session.start(Mode.REGISTER)
    poller = _poll_in_background(session, cameras[0])

    session.switch_mode(Mode.IDENTIFY)
    poller.join(2.0)
    assert not poller.is_alive()
    assert cameras[0].read_in_progress_at_close is False
    assert cameras[0].reads_after_close == 0
    assert cameras[1].is_open
    session.stop()
