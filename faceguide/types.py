"""Common dataclasses and type aliases used across the faceguide package."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from faceguide.errors import DescriptorLengthError

DESCRIPTOR_LENGTH = 128

# Bounding box order: x1, y1, x2, y2 (pixel coordinates)
BBox = Tuple[float, float, float, float]
Point = Tuple[float, float]


@dataclass
class Frame:
    """Single video frame handed out by a frame source."""

    image: np.ndarray
    width: int
    height: int
    timestamp_ms: float

    @classmethod
    def from_image(cls, image: np.ndarray, timestamp_ms: float) -> "Frame":
        height, width = image.shape[:2]
        return cls(image=image, width=int(width), height=int(height), timestamp_ms=float(timestamp_ms))

    @property
    def ready(self) -> bool:
        return self.width > 0 and self.height > 0


@dataclass(frozen=True)
class DetectionBox:
    """Face box in x/y/width/height form with detector confidence."""

    x: float
    y: float
    width: float
    height: float
    score: float

    @classmethod
    def from_xyxy(cls, bbox: BBox, score: float) -> "DetectionBox":
        x1, y1, x2, y2 = bbox
        return cls(x=float(x1), y=float(y1), width=float(x2 - x1), height=float(y2 - y1), score=float(score))

    @property
    def center(self) -> Point:
        return self.x + self.width / 2.0, self.y + self.height / 2.0

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    def as_xyxy(self) -> BBox:
        return self.x, self.y, self.x + self.width, self.y + self.height


@dataclass(frozen=True)
class NoFace:
    """Detector ran and found nothing."""


@dataclass(frozen=True)
class FaceWithLandmarks:
    """Cheap detection result: box plus optional five-point landmarks."""

    box: DetectionBox
    landmarks: Optional[np.ndarray] = None


@dataclass(frozen=True)
class FaceWithDescriptor:
    """Expensive detection result carrying a 128-D descriptor."""

    box: DetectionBox
    descriptor: np.ndarray
    landmarks: Optional[np.ndarray] = None


DetectionResult = Union[NoFace, FaceWithLandmarks, FaceWithDescriptor]


class GuideStyle(str, Enum):
    """How the oval guide is drawn for a position status."""

    NO_FACE = "no_face"  # dashed, neutral
    INVALID = "invalid"  # solid, warning colour
    VALID = "valid"  # solid, success colour


@dataclass(frozen=True)
class PositionStatus:
    valid: bool
    messages: Tuple[str, ...]
    guide: GuideStyle
    h_offset: Optional[float] = None
    v_offset: Optional[float] = None
    area_ratio: Optional[float] = None

    @property
    def face_detected(self) -> bool:
        return self.guide is not GuideStyle.NO_FACE


@dataclass(frozen=True)
class GalleryEntry:
    """Known identity and its stored descriptors. Immutable once built."""

    identity: str
    descriptors: Tuple[np.ndarray, ...] = field(default_factory=tuple)

    def stacked(self) -> np.ndarray:
        return np.stack(self.descriptors, axis=0)


class MatchOutcome(str, Enum):
    MATCH_FOUND = "match_found"
    MATCH_BELOW_THRESHOLD = "match_below_threshold"
    NO_GALLERY_DATA = "no_gallery_data"


@dataclass(frozen=True)
class MatchResult:
    """Outcome of a nearest-neighbour search against the gallery.

    `identity` and `confidence` are only set for MATCH_FOUND. For
    MATCH_BELOW_THRESHOLD the closest identity is reported through
    `nearest_identity` together with its distance.
    """

    outcome: MatchOutcome
    identity: Optional[str] = None
    distance: Optional[float] = None
    confidence: Optional[float] = None
    nearest_identity: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.outcome is MatchOutcome.MATCH_FOUND


def as_descriptor(values: Union[Sequence[float], np.ndarray], length: int = DESCRIPTOR_LENGTH) -> np.ndarray:
    """Convert values to a flat float32 descriptor, enforcing the fixed length."""
    arr = np.asarray(values, dtype=np.float32).reshape(-1)
    if arr.shape[0] != length:
        raise DescriptorLengthError(int(arr.shape[0]), length)
    return arr
