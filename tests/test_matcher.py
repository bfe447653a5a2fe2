import numpy as np
import pytest

from faceguide.errors import DescriptorLengthError
from faceguide.recognition.matcher import MatchEngine
from faceguide.types import GalleryEntry, MatchOutcome


def _vec(value: float = 0.0, idx: int = 0) -> np.ndarray:
    vec = np.zeros((128,), dtype=np.float32)
    vec[idx] = value
    return vec


def _gallery():
    return [
        GalleryEntry("alice", (_vec(1.0, 0),)),
        GalleryEntry("bob", (_vec(1.0, 1), _vec(3.0, 1))),
    ]


def test_identical_probe_matches_with_full_confidence():
    engine = MatchEngine(_gallery())
    result = engine.match(_vec(1.0, 1))
    assert result.outcome is MatchOutcome.MATCH_FOUND
    assert result.identity == "bob"
    assert result.distance == 0.0
    assert result.confidence == pytest.approx(100.0)


def test_identity_distance_is_minimum_over_its_descriptors():
    engine = MatchEngine(_gallery())
    result = engine.match(_vec(2.9, 1))
    assert result.identity == "bob"
    assert result.distance == pytest.approx(0.1, abs=1e-6)
    assert result.confidence == pytest.approx(90.0, abs=1e-4)


def test_distance_equal_to_threshold_is_below_threshold():
    gallery = [GalleryEntry("alice", (_vec(0.0),))]
    result = MatchEngine(gallery, threshold=0.5).match(_vec(0.5))
    assert result.distance == pytest.approx(0.5)
    assert result.outcome is MatchOutcome.MATCH_BELOW_THRESHOLD
    assert result.identity is None
    assert result.confidence is None
    assert result.nearest_identity == "alice"


def test_default_threshold_boundary_is_exclusive():
    gallery = [GalleryEntry("alice", (_vec(0.0),))]
    result = MatchEngine(gallery).match(_vec(0.6))
    assert result.outcome is MatchOutcome.MATCH_BELOW_THRESHOLD
    assert not result.matched


def test_empty_gallery_reports_no_data():
    result = MatchEngine([]).match(_vec(0.6))
    assert result.outcome is MatchOutcome.NO_GALLERY_DATA
    assert result.distance is None
    assert result.nearest_identity is None


def test_rank_orders_identities_without_threshold():
    engine = MatchEngine(_gallery(), threshold=0.01)
    ranked = engine.rank(_vec(1.0, 0), k=2)
    assert [label for label, _ in ranked] == ["alice", "bob"]
    assert ranked[0][1] == pytest.approx(0.0)
    assert ranked[1][1] == pytest.approx(np.sqrt(2.0))


def test_probe_with_wrong_length_is_a_hard_error():
    with pytest.raises(DescriptorLengthError):
        MatchEngine(_gallery()).match(np.zeros((64,), dtype=np.float32))
