from pathlib import Path

import pytest
import yaml

from faceguide.config import PipelineConfig

CONFIG_PATH = Path(__file__).resolve().parents[1] / "configs" / "capture.yaml"


def test_defaults_match_calibration():
    config = PipelineConfig()
    assert config.position.max_offset == pytest.approx(0.2)
    assert config.position.min_area_ratio == pytest.approx(0.08)
    assert config.position.max_area_ratio == pytest.approx(0.5)
    assert config.position.min_confidence == pytest.approx(0.6)
    assert config.capture.enrollment_size == 3
    assert config.capture.cooldown_ms == pytest.approx(1500.0)
    assert config.match.distance_threshold == pytest.approx(0.6)
    assert config.lifecycle.stage_timeout_s == pytest.approx(30.0)


def test_shipped_yaml_loads_to_defaults():
    config = PipelineConfig.from_yaml(CONFIG_PATH)
    assert config.to_dict() == PipelineConfig().to_dict()


def test_partial_yaml_overrides(tmp_path):
    path = tmp_path / "capture.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "capture": {"enrollment_size": 5, "cooldown_ms": 800},
                "detector": {"providers": ["CPUExecutionProvider"], "fast_det_size": [256, 256]},
            }
        )
    )
    config = PipelineConfig.from_yaml(path)
    assert config.capture.enrollment_size == 5
    assert config.capture.cooldown_ms == 800
    assert config.detector.providers == ("CPUExecutionProvider",)
    assert config.detector.fast_det_size == (256, 256)
    assert config.match.distance_threshold == pytest.approx(0.6)


def test_unknown_keys_are_rejected():
    with pytest.raises(ValueError):
        PipelineConfig.from_dict({"capture": {"enrolment_size": 3}})
    with pytest.raises(ValueError):
        PipelineConfig.from_dict({"tracking": {}})


def test_invalid_values_are_rejected():
    with pytest.raises(ValueError):
        PipelineConfig.from_dict({"position": {"min_area_ratio": 0.6, "max_area_ratio": 0.5}})
    with pytest.raises(ValueError):
        PipelineConfig.from_dict({"capture": {"enrollment_size": 0}})
    with pytest.raises(ValueError):
        PipelineConfig.from_dict({"match": {"distance_threshold": 0}})


def test_yaml_top_level_must_be_mapping(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- 1\n- 2\n")
    with pytest.raises(ValueError):
        PipelineConfig.from_yaml(path)


def test_to_yaml_writes_loadable_config(tmp_path):
    config = PipelineConfig.from_dict({"detector": {"providers": ["CUDAExecutionProvider"]}, "match": {"distance_threshold": 0.5}})
    path = tmp_path / "out.yaml"
    config.to_yaml(path)
    reloaded = PipelineConfig.from_yaml(path)
    assert reloaded.detector.providers == ("CUDAExecutionProvider",)
    assert reloaded.match.distance_threshold == pytest.approx(0.5)
