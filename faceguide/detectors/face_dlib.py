"""RetinaFace detection with dlib 128-D descriptors."""

from __future__ import annotations

import logging
import os
import platform
from typing import Any, List, Optional, Tuple

import cv2
import numpy as np

from faceguide.config import DetectorConfig
from faceguide.errors import DetectionError, NotReadyError
from faceguide.lifecycle import LoadStage
from faceguide.types import (
    DetectionBox,
    DetectionResult,
    FaceWithDescriptor,
    FaceWithLandmarks,
    Frame,
    NoFace,
    as_descriptor,
)

LOGGER = logging.getLogger("faceguide.detectors.face")


def _default_providers() -> Tuple[str, ...]:
    """Choose default ONNX providers for RetinaFace."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin" and machine in {"arm64", "aarch64"}:
        return ("CoreMLExecutionProvider", "CPUExecutionProvider")
    return ("CPUExecutionProvider",)


def _best_face(faces: List[Any]) -> Optional[Any]:
    if not faces:
        return None
    return max(faces, key=lambda face: float(face.det_score))


class RetinaDlibDetector:
    """InsightFace RetinaFace for boxes/landmarks, dlib ResNet for descriptors.

    The fast detector (small input size) serves the per-tick position check.
    Capture and identify instants use a second, larger RetinaFace instance
    followed by dlib's five-point shape predictor and face recognition model,
    which produce the 128-component descriptors the gallery stores. The two
    RetinaFace instances are separate so the expensive call can run on a
    worker thread while the poll loop keeps using the fast one.
    """

    def __init__(self, config: Optional[DetectorConfig] = None) -> None:
        os.environ.setdefault("OMP_NUM_THREADS", "2")
        os.environ.setdefault("MKL_NUM_THREADS", "2")
        os.environ.setdefault("ORT_INTRA_OP_NUM_THREADS", "2")
        self.config = config or DetectorConfig()
        provider_list: Tuple[str, ...]
        if self.config.providers is None:
            provider_list = _default_providers()
        else:
            provider_list = tuple(self.config.providers)
        self.providers = provider_list
        self._fast_app = None
        self._accurate_app = None
        self._dlib = None
        self._shape_predictor = None
        self._encoder = None

    @property
    def ready(self) -> bool:
        return all(
            part is not None
            for part in (self._fast_app, self._accurate_app, self._shape_predictor, self._encoder)
        )

    def load_stages(self) -> List[LoadStage]:
        return [
            LoadStage("RetinaFaceFast", self._load_fast_detector, 20, "Loading RetinaFaceFast..."),
            LoadStage("ShapePredictor", self._load_shape_predictor, 40, "Loading ShapePredictor..."),
            LoadStage("FaceRecognitionResNet", self._load_encoder, 50, "Loading FaceRecognitionResNet..."),
            LoadStage("RetinaFaceAccurate", self._load_accurate_detector, 60, "Loading RetinaFaceAccurate..."),
        ]

    def _build_analysis(self, det_size: Tuple[int, int]):
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:  # pragma: no cover - import guard
            raise RuntimeError(
                "insightface is required for RetinaDlibDetector. "
                "Install it via `pip install insightface`."
            ) from exc
        app = FaceAnalysis(name="buffalo_l", allowed_modules=["detection"], providers=list(self.providers))
        app.prepare(ctx_id=0, det_size=det_size, det_thresh=self.config.det_thresh)
        backend = None
        try:
            detection_model = app.models.get("detection")
            if detection_model is not None and hasattr(detection_model, "session"):
                backend = detection_model.session.get_providers()[0]
        except Exception:  # pragma: no cover - optional logging
            backend = None
        LOGGER.info(
            "Loaded RetinaFace det_size=%s det_thresh=%.2f providers=%s backend=%s",
            det_size,
            self.config.det_thresh,
            self.providers,
            backend,
        )
        return app

    def _load_fast_detector(self) -> None:
        self._fast_app = self._build_analysis(tuple(self.config.fast_det_size))

    def _load_accurate_detector(self) -> None:
        self._accurate_app = self._build_analysis(tuple(self.config.accurate_det_size))

    def _load_shape_predictor(self) -> None:
        dlib, models = _import_dlib()
        self._dlib = dlib
        self._shape_predictor = dlib.shape_predictor(models.pose_predictor_five_point_model_location())

    def _load_encoder(self) -> None:
        dlib, models = _import_dlib()
        self._encoder = dlib.face_recognition_model_v1(models.face_recognition_model_location())

    def _check(self, frame: Frame) -> None:
        if not self.ready:
            raise NotReadyError("Detection models are not loaded yet")
        if not frame.ready or frame.image is None or frame.image.size == 0:
            raise DetectionError("Frame is not ready")

    def detect_landmarks(self, frame: Frame) -> DetectionResult:
        self._check(frame)
        try:
            face = _best_face(self._fast_app.get(frame.image))
        except Exception as exc:
            raise DetectionError(f"Fast detection failed: {exc}") from exc
        if face is None:
            return NoFace()
        box = DetectionBox.from_xyxy(tuple(float(v) for v in face.bbox), float(face.det_score))
        landmarks = np.asarray(face.kps, dtype=np.float32) if face.kps is not None else None
        return FaceWithLandmarks(box=box, landmarks=landmarks)

    def detect_descriptor(self, frame: Frame) -> DetectionResult:
        self._check(frame)
        try:
            face = _best_face(self._accurate_app.get(frame.image))
            if face is None:
                return NoFace()
            x1, y1, x2, y2 = [int(round(v)) for v in face.bbox]
            rgb = cv2.cvtColor(frame.image, cv2.COLOR_BGR2RGB)
            rect = self._dlib.rectangle(max(0, x1), max(0, y1), max(0, x2), max(0, y2))
            shape = self._shape_predictor(rgb, rect)
            raw = self._encoder.compute_face_descriptor(rgb, shape, self.config.num_jitters)
        except Exception as exc:
            raise DetectionError(f"Descriptor extraction failed: {exc}") from exc
        box = DetectionBox.from_xyxy((float(x1), float(y1), float(x2), float(y2)), float(face.det_score))
        landmarks = np.asarray(face.kps, dtype=np.float32) if face.kps is not None else None
        return FaceWithDescriptor(box=box, descriptor=as_descriptor(np.asarray(raw)), landmarks=landmarks)


def _import_dlib():
    try:
        import dlib
        import face_recognition_models
    except ImportError as exc:  # pragma: no cover - import guard
        raise RuntimeError(
            "dlib and face_recognition_models are required for descriptors. "
            "Install them via `pip install face_recognition`."
        ) from exc
    return dlib, face_recognition_models
