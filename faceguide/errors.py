"""Exception types raised by the capture and identification pipeline."""

from __future__ import annotations

from typing import Optional


class FaceGuideError(RuntimeError):
    """Base class for pipeline errors."""


class InitializationError(FaceGuideError):
    """A model loading stage failed or timed out. Fatal to the session."""

    def __init__(self, stage: str, reason: str, timed_out: bool = False) -> None:
        self.stage = stage
        self.reason = reason
        self.timed_out = timed_out
        super().__init__(f"Initialization failed at stage '{stage}': {reason}")


class NotReadyError(FaceGuideError):
    """Detection was requested before the models finished loading."""


class DetectionError(FaceGuideError):
    """Transient detection failure (frame not ready, backend hiccup)."""


class CaptureRejected(FaceGuideError):
    """The descriptor pass found no face at the capture instant."""


class AggregationError(FaceGuideError, ValueError):
    """Descriptor set cannot be averaged (wrong count or malformed vectors)."""


class DescriptorLengthError(ValueError):
    """A descriptor does not have the fixed component count."""

    def __init__(self, length: int, expected: int) -> None:
        self.length = length
        self.expected = expected
        super().__init__(f"Descriptor must have {expected} components, got {length}")


class CameraUnavailableError(FaceGuideError):
    """The frame source could not be acquired (permission denied, device busy)."""

    def __init__(self, device: object, reason: Optional[str] = None) -> None:
        self.device = device
        message = f"Unable to open camera {device!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class EnrollmentError(FaceGuideError):
    """The enrollment sink refused or failed to store a descriptor."""
