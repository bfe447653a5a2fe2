"""Guide overlay rendering for the live preview."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from faceguide.types import DetectionBox, GuideStyle, PositionStatus

LOGGER = logging.getLogger("faceguide.viz.overlay")

# BGR
COLOR_SUCCESS = (129, 185, 16)
COLOR_WARNING = (11, 158, 245)
COLOR_ERROR = (68, 68, 239)
COLOR_NEUTRAL = (184, 163, 148)

GUIDE_AXES_FRAC = (0.25, 0.35)
DASH_DEG = 12
GAP_DEG = 6


def guide_color(style: GuideStyle) -> Tuple[int, int, int]:
    if style is GuideStyle.VALID:
        return COLOR_SUCCESS
    if style is GuideStyle.INVALID:
        return COLOR_WARNING
    return COLOR_NEUTRAL


def _guide_geometry(image: np.ndarray) -> Tuple[Tuple[int, int], Tuple[int, int]]:
    height, width = image.shape[:2]
    center = (int(round(width / 2.0)), int(round(height / 2.0)))
    axes = (int(round(width * GUIDE_AXES_FRAC[0])), int(round(height * GUIDE_AXES_FRAC[1])))
    return center, axes


def draw_guide(image: np.ndarray, status: PositionStatus, box: Optional[DetectionBox] = None) -> np.ndarray:
    """Draw the oval guide, the face box and the first guidance message in place."""
    center, axes = _guide_geometry(image)
    color = guide_color(status.guide)
    if status.guide is GuideStyle.NO_FACE:
        for start in range(0, 360, DASH_DEG + GAP_DEG):
            cv2.ellipse(image, center, axes, 0, start, start + DASH_DEG, color, 3, cv2.LINE_AA)
    else:
        cv2.ellipse(image, center, axes, 0, 0, 360, color, 4, cv2.LINE_AA)

    if box is not None and status.face_detected:
        x1, y1, x2, y2 = map(int, box.as_xyxy())
        box_color = COLOR_SUCCESS if status.valid else COLOR_ERROR
        cv2.rectangle(image, (x1, y1), (x2, y2), box_color, 3)

    if status.messages:
        cv2.putText(
            image,
            status.messages[0],
            (16, 32),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.8,
            color,
            2,
            cv2.LINE_AA,
        )
    return image


def draw_capture_flash(image: np.ndarray, alpha: float = 0.3) -> np.ndarray:
    """Blend a translucent success-coloured fill over the frame."""
    fill = np.empty_like(image)
    fill[:] = COLOR_SUCCESS
    cv2.addWeighted(fill, alpha, image, 1.0 - alpha, 0, dst=image)
    return image


def draw_progress(image: np.ndarray, captured: int, target: int) -> np.ndarray:
    height = image.shape[0]
    cv2.putText(
        image,
        f"{captured}/{target}",
        (16, height - 20),
        cv2.FONT_HERSHEY_SIMPLEX,
        0.8,
        COLOR_SUCCESS if captured >= target else COLOR_NEUTRAL,
        2,
        cv2.LINE_AA,
    )
    return image
