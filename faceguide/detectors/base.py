"""Detection service contract shared by the capture loop and the session."""

from __future__ import annotations

from typing import List, Protocol

from faceguide.lifecycle import LoadStage
from faceguide.types import DetectionResult, Frame


class DetectionService(Protocol):
    """Face detection capability with a cheap and an expensive call shape.

    `detect_landmarks` runs every poll tick and returns NoFace or
    FaceWithLandmarks. `detect_descriptor` runs only at capture/identify
    instants and returns NoFace or FaceWithDescriptor. Both raise
    NotReadyError before `load_stages()` have all run and DetectionError for
    transient failures.
    """

    def load_stages(self) -> List[LoadStage]:
        ...

    @property
    def ready(self) -> bool:
        ...

    def detect_landmarks(self, frame: Frame) -> DetectionResult:
        ...

    def detect_descriptor(self, frame: Frame) -> DetectionResult:
        ...
