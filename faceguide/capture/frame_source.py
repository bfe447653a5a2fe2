"""Frame sources: scoped camera acquisition yielding Frame objects."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Protocol, Union

import cv2

from faceguide.errors import CameraUnavailableError
from faceguide.types import Frame

LOGGER = logging.getLogger("faceguide.capture.frames")


class FrameSource(Protocol):
    """Scoped frame provider. `read` returns None until stream metadata is ready."""

    @property
    def is_open(self) -> bool:
        ...

    def open(self) -> None:
        ...

    def read(self) -> Optional[Frame]:
        ...

    def close(self) -> None:
        ...


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class OpenCVCameraSource:
    """cv2.VideoCapture-backed camera. Use as a context manager or pair open/close."""

    def __init__(
        self,
        device: Union[int, str] = 0,
        width: int = 1280,
        height: int = 720,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.device = device
        self.width = width
        self.height = height
        self._clock = clock
        self._cap: Optional[cv2.VideoCapture] = None

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def open(self) -> None:
        if self._cap is not None:
            return
        cap = cv2.VideoCapture(self.device)
        if not cap.isOpened():
            cap.release()
            raise CameraUnavailableError(self.device, "device busy or permission denied")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._cap = cap
        LOGGER.info(
            "Opened camera %s at %sx%s",
            self.device,
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )

    def read(self) -> Optional[Frame]:
        if self._cap is None:
            return None
        ok, image = self._cap.read()
        if not ok or image is None or image.size == 0:
            return None
        return Frame.from_image(image, self._clock())

    def close(self) -> None:
        if self._cap is None:
            return
        try:
            self._cap.release()
        finally:
            self._cap = None
            LOGGER.info("Released camera %s", self.device)

    def __enter__(self) -> "OpenCVCameraSource":
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
