"""Gallery construction and the parquet facebank adapter."""

from __future__ import annotations

import logging
import os
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

import numpy as np
import pandas as pd

from faceguide.io_utils import dump_json, ensure_dir
from faceguide.types import DESCRIPTOR_LENGTH, GalleryEntry, as_descriptor

LOGGER = logging.getLogger("faceguide.recognition.gallery")

GalleryRecord = Any  # Mapping with identity/descriptor keys, or an (identity, descriptor) pair


class GallerySource(Protocol):
    def fetch(self) -> Iterable[GalleryRecord]:
        ...


class EnrollmentSink(Protocol):
    def save(self, identity: str, descriptor: np.ndarray) -> bool:
        ...


def _normalize_descriptor(raw) -> Optional[np.ndarray]:
    """Unwrap a stored descriptor payload into a float32 vector, or None if unusable."""
    payload = raw
    # Descriptor service responses arrive wrapped in a few shapes.
    for _ in range(3):
        if isinstance(payload, Mapping):
            if payload.get("descriptor") is not None:
                payload = payload["descriptor"]
            elif isinstance(payload.get("data"), Mapping):
                payload = payload["data"]
            else:
                return None
        else:
            break
    if payload is None or isinstance(payload, (str, bytes)):
        return None
    try:
        arr = np.asarray(payload, dtype=np.float32).reshape(-1)
    except (TypeError, ValueError):
        return None
    if arr.shape[0] != DESCRIPTOR_LENGTH or not np.all(np.isfinite(arr)):
        return None
    return arr


def _split_record(record: GalleryRecord) -> Tuple[Optional[str], Any]:
    if isinstance(record, Mapping):
        identity = record.get("identity", record.get("id", record.get("label")))
        descriptor = record.get("descriptor")
        if descriptor is None and isinstance(record.get("data"), Mapping):
            descriptor = record["data"]
        return (None if identity is None else str(identity)), descriptor
    if isinstance(record, (tuple, list)) and len(record) == 2:
        identity, descriptor = record
        return (None if identity is None else str(identity)), descriptor
    return None, None


def build_gallery(records: Iterable[GalleryRecord]) -> Tuple[GalleryEntry, ...]:
    """Group usable descriptors by identity.

    Records without an identity or without a finite 128-component descriptor
    are skipped; identities that end up with nothing usable are left out.
    """
    grouped: "OrderedDict[str, List[np.ndarray]]" = OrderedDict()
    skipped = 0
    for record in records:
        identity, payload = _split_record(record)
        descriptor = _normalize_descriptor(payload) if identity else None
        if descriptor is None:
            skipped += 1
            LOGGER.debug("No descriptor for identity %s", identity)
            continue
        grouped.setdefault(identity, []).append(descriptor)
    entries = tuple(GalleryEntry(identity=label, descriptors=tuple(vecs)) for label, vecs in grouped.items())
    LOGGER.info("Loaded %d gallery identities (%d records skipped)", len(entries), skipped)
    return entries


def load_gallery(source: GallerySource) -> Tuple[GalleryEntry, ...]:
    return build_gallery(source.fetch())


class FacebankParquet:
    """Parquet file acting as both gallery source and enrollment sink.

    One row per identity; saving an identity replaces its previous
    descriptor. A JSON sidecar lists labels and counts.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.meta_json_path = self.path.with_name(self.path.stem + "_meta.json")

    def _read(self) -> pd.DataFrame:
        if not self.path.exists():
            return pd.DataFrame({"identity": pd.Series(dtype=object), "descriptor": pd.Series(dtype=object)})
        return pd.read_parquet(self.path)

    def fetch(self) -> List[Dict[str, Any]]:
        df = self._read()
        return [{"identity": row["identity"], "descriptor": row["descriptor"]} for _, row in df.iterrows()]

    def save(self, identity: str, descriptor: np.ndarray) -> bool:
        vec = as_descriptor(descriptor)
        df = self._read()
        df = df[df["identity"] != identity].copy()
        df["descriptor"] = df["descriptor"].map(lambda raw: np.asarray(raw, dtype=np.float32).tolist())
        row = pd.DataFrame({"identity": [identity], "descriptor": [vec.astype(np.float32).tolist()]})
        df = pd.concat([df, row], ignore_index=True)

        ensure_dir(self.path.parent)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        df.to_parquet(tmp_path, index=False)
        os.replace(tmp_path, self.path)

        metadata = {
            "labels": df["identity"].tolist(),
            "num_labels": len(df),
            "descriptor_length": DESCRIPTOR_LENGTH,
        }
        dump_json(self.meta_json_path, metadata)
        LOGGER.info("Facebank saved %s (%d identities)", identity, len(df))
        return True
