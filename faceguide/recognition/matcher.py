"""Euclidean nearest-neighbour matching against the gallery."""

from __future__ import annotations

import logging
from typing import Iterable, List, Tuple

import numpy as np
from scipy.spatial.distance import cdist

from faceguide.types import GalleryEntry, MatchOutcome, MatchResult, as_descriptor

LOGGER = logging.getLogger("faceguide.recognition.matcher")


class MatchEngine:
    """Finds the closest gallery identity to a probe descriptor.

    Each identity's distance is the minimum over its stored descriptors. The
    match is accepted only when the best distance is strictly below
    `threshold`.
    """

    def __init__(self, gallery: Iterable[GalleryEntry], threshold: float = 0.6) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.entries: Tuple[GalleryEntry, ...] = tuple(entry for entry in gallery if entry.descriptors)
        self.threshold = threshold
        if self.entries:
            self._matrix = np.concatenate([entry.stacked() for entry in self.entries], axis=0).astype(np.float64)
            self._owners = np.concatenate(
                [np.full(len(entry.descriptors), idx, dtype=np.int64) for idx, entry in enumerate(self.entries)]
            )
        else:
            self._matrix = np.empty((0, 0), dtype=np.float64)
            self._owners = np.empty((0,), dtype=np.int64)

    def __len__(self) -> int:
        return len(self.entries)

    def _identity_distances(self, probe: np.ndarray) -> np.ndarray:
        vec = as_descriptor(probe).astype(np.float64)
        if self._matrix.shape[1] != vec.shape[0]:
            raise ValueError("Descriptor shapes do not match")
        dists = cdist(vec[None, :], self._matrix, metric="euclidean")[0]
        per_identity = np.full(len(self.entries), np.inf, dtype=np.float64)
        np.minimum.at(per_identity, self._owners, dists)
        return per_identity

    def match(self, probe: np.ndarray) -> MatchResult:
        if not self.entries:
            return MatchResult(outcome=MatchOutcome.NO_GALLERY_DATA)
        per_identity = self._identity_distances(probe)
        best_idx = int(np.argmin(per_identity))
        distance = float(per_identity[best_idx])
        identity = self.entries[best_idx].identity
        if distance < self.threshold:
            confidence = (1.0 - distance) * 100.0
            LOGGER.info("Matched %s distance=%.3f confidence=%.1f%%", identity, distance, confidence)
            return MatchResult(
                outcome=MatchOutcome.MATCH_FOUND,
                identity=identity,
                distance=distance,
                confidence=confidence,
                nearest_identity=identity,
            )
        LOGGER.info("Nearest identity %s at distance %.3f is above threshold %.2f", identity, distance, self.threshold)
        return MatchResult(
            outcome=MatchOutcome.MATCH_BELOW_THRESHOLD,
            distance=distance,
            nearest_identity=identity,
        )

    def rank(self, probe: np.ndarray, k: int = 3) -> List[Tuple[str, float]]:
        """Return the k nearest identities without applying the threshold."""
        if not self.entries:
            return []
        per_identity = self._identity_distances(probe)
        order = np.argsort(per_identity, kind="stable")[:k]
        return [(self.entries[idx].identity, float(per_identity[idx])) for idx in order]
