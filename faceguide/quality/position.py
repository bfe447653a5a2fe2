"""Geometric and quality gating of a detected face against the frame."""

from __future__ import annotations

import logging
from typing import List, Optional

from faceguide.config import PositionConfig
from faceguide.types import DetectionBox, GuideStyle, PositionStatus

LOGGER = logging.getLogger("faceguide.quality.position")

MSG_MOVE_LEFT = "Move left"
MSG_MOVE_RIGHT = "Move right"
MSG_MOVE_UP = "Move up"
MSG_MOVE_DOWN = "Move down"
MSG_MOVE_CLOSER = "Move closer"
MSG_MOVE_BACK = "Move back"
MSG_POOR_LIGHTING = "Poor lighting"
MSG_HOLD_STEADY = "Perfect! Hold steady"
MSG_NO_FACE = "No face detected"

NO_FACE_STATUS = PositionStatus(valid=False, messages=(MSG_NO_FACE,), guide=GuideStyle.NO_FACE)


def validate_position(
    box: Optional[DetectionBox],
    frame_width: float,
    frame_height: float,
    config: Optional[PositionConfig] = None,
) -> PositionStatus:
    """Judge whether `box` is usable for capture and build corrective guidance.

    Offsets are the distance between box centre and frame centre, normalised
    by the frame dimension on the same axis. The preview is mirrored, so a
    face left of centre is asked to move right and a face above centre to
    move down. Messages are ordered horizontal, vertical, size, lighting; a
    valid box yields only the hold-steady message.
    """
    if frame_width <= 0 or frame_height <= 0:
        raise ValueError(f"Frame dimensions must be positive, got {frame_width}x{frame_height}")
    if box is None:
        return NO_FACE_STATUS
    cfg = config or PositionConfig()

    center_x, center_y = box.center
    frame_cx = frame_width / 2.0
    frame_cy = frame_height / 2.0
    h_offset = abs(center_x - frame_cx) / frame_width
    v_offset = abs(center_y - frame_cy) / frame_height
    area_ratio = box.area / (frame_width * frame_height)

    centered = h_offset < cfg.max_offset and v_offset < cfg.max_offset
    correct_size = cfg.min_area_ratio < area_ratio < cfg.max_area_ratio
    well_lit = box.score > cfg.min_confidence
    valid = centered and correct_size and well_lit

    messages: List[str] = []
    if valid:
        messages.append(MSG_HOLD_STEADY)
    else:
        if h_offset >= cfg.max_offset:
            messages.append(MSG_MOVE_RIGHT if center_x < frame_cx else MSG_MOVE_LEFT)
        if v_offset >= cfg.max_offset:
            messages.append(MSG_MOVE_DOWN if center_y < frame_cy else MSG_MOVE_UP)
        if not correct_size:
            messages.append(MSG_MOVE_CLOSER if area_ratio <= cfg.min_area_ratio else MSG_MOVE_BACK)
        if not well_lit:
            messages.append(MSG_POOR_LIGHTING)

    return PositionStatus(
        valid=valid,
        messages=tuple(messages),
        guide=GuideStyle.VALID if valid else GuideStyle.INVALID,
        h_offset=h_offset,
        v_offset=v_offset,
        area_ratio=area_ratio,
    )
