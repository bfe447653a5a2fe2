"""Collapse an enrollment's captured descriptors into one reference vector."""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from faceguide.errors import AggregationError
from faceguide.types import DESCRIPTOR_LENGTH

LOGGER = logging.getLogger("faceguide.recognition.aggregate")


def aggregate_descriptors(
    descriptors: Sequence[np.ndarray],
    enrollment_size: int = 3,
    length: int = DESCRIPTOR_LENGTH,
) -> np.ndarray:
    """Element-wise mean of exactly `enrollment_size` descriptors.

    Raises AggregationError when the count is off or any vector is not a
    finite 1-D array of `length` components; partial sets are never averaged.
    """
    if len(descriptors) != enrollment_size:
        raise AggregationError(
            f"Expected {enrollment_size} descriptors for enrollment, got {len(descriptors)}"
        )
    rows = []
    for idx, vec in enumerate(descriptors):
        arr = np.asarray(vec, dtype=np.float32)
        if arr.ndim != 1 or arr.shape[0] != length:
            raise AggregationError(f"Descriptor {idx} has shape {arr.shape}, expected ({length},)")
        if not np.all(np.isfinite(arr)):
            raise AggregationError(f"Descriptor {idx} contains non-finite values")
        rows.append(arr)
    stacked = np.stack(rows, axis=0)
    mean = stacked.mean(axis=0).astype(np.float32)
    LOGGER.debug("Aggregated %d descriptors (spread=%.4f)", len(rows), float(stacked.std(axis=0).mean()))
    return mean
