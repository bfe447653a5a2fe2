"""Pipeline configuration: thresholds, timings and detector settings.

All empirical constants live here as named, overridable values. Defaults
match the calibration the console shipped with.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from faceguide.io_utils import dump_yaml, load_yaml

LOGGER = logging.getLogger("faceguide.config")


@dataclass
class PositionConfig:
    max_offset: float = 0.2
    min_area_ratio: float = 0.08
    max_area_ratio: float = 0.5
    min_confidence: float = 0.6


@dataclass
class CaptureConfig:
    enrollment_size: int = 3
    cooldown_ms: float = 1500.0
    poll_interval_ms: float = 100.0


@dataclass
class MatchConfig:
    distance_threshold: float = 0.6


@dataclass
class LifecycleConfig:
    stage_timeout_s: float = 30.0


@dataclass
class DetectorConfig:
    providers: Optional[Tuple[str, ...]] = None
    fast_det_size: Tuple[int, int] = (320, 320)
    accurate_det_size: Tuple[int, int] = (640, 640)
    det_thresh: float = 0.3
    num_jitters: int = 1


@dataclass
class PipelineConfig:
    position: PositionConfig = field(default_factory=PositionConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    match: MatchConfig = field(default_factory=MatchConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.capture.enrollment_size < 1:
            raise ValueError("capture.enrollment_size must be at least 1")
        if self.capture.cooldown_ms < 0 or self.capture.poll_interval_ms <= 0:
            raise ValueError("capture timings must be non-negative (poll interval positive)")
        if not 0.0 < self.position.min_area_ratio < self.position.max_area_ratio:
            raise ValueError("position area ratio bounds must satisfy 0 < min < max")
        if self.match.distance_threshold <= 0:
            raise ValueError("match.distance_threshold must be positive")
        if self.lifecycle.stage_timeout_s <= 0:
            raise ValueError("lifecycle.stage_timeout_s must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        sections = {f.name: f for f in fields(cls)}
        unknown = set(data) - set(sections)
        if unknown:
            raise ValueError(f"Unknown config sections: {sorted(unknown)}")
        kwargs: Dict[str, Any] = {}
        for name, payload in data.items():
            section_type = sections[name].default_factory  # type: ignore[misc]
            kwargs[name] = _build_section(section_type, name, payload or {})
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Path) -> "PipelineConfig":
        config = cls.from_dict(load_yaml(path))
        LOGGER.info("Loaded pipeline config from %s", path)
        return config

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_yaml(self, path: Path) -> None:
        data = self.to_dict()
        for key in ("providers", "fast_det_size", "accurate_det_size"):
            if data["detector"][key] is not None:
                data["detector"][key] = list(data["detector"][key])
        dump_yaml(path, data)


def _build_section(section_type, name: str, payload: Dict[str, Any]):
    known = {f.name for f in fields(section_type)}
    unknown = set(payload) - known
    if unknown:
        raise ValueError(f"Unknown keys in config section '{name}': {sorted(unknown)}")
    values = dict(payload)
    for key in ("providers", "fast_det_size", "accurate_det_size"):
        if values.get(key) is not None and key in known:
            values[key] = tuple(values[key])
    return section_type(**values)
