"""Tests for descriptor comparison and the biometric matcher."""

from __future__ import annotations

from unittest.mock import MagicMock

import numpy as np
import pytest
from django.core.exceptions import ImproperlyConfigured

from verification import monitoring
from verification.biometrics import (
    BiometricMatcher,
    FaceRegion,
    PixelStatisticsEmbedder,
    compare,
    descriptor_distance,
    distance_to_confidence,
    normalize_descriptor,
)
from verification.errors import LowImageQuality, NoFaceDetected, ProfileNotFound


def _unit(*values):
    return normalize_descriptor(values)


def test_identical_descriptors_have_full_confidence():
    descriptor = _unit(*np.linspace(-1, 1, 128))
    assert compare(descriptor, descriptor) == 100.0


def test_confidence_drops_linearly_with_distance():
    assert distance_to_confidence(0.3, 0.6) == pytest.approx(50.0)
    assert distance_to_confidence(0.0, 0.6) == 100.0


def test_confidence_is_clamped_at_zero():
    assert distance_to_confidence(1.4, 0.6) == 0.0


def test_distance_threshold_is_configurable():
    a = _unit(1, 0, 0, 0)
    b = _unit(0.9, 0.1, 0, 0)
    assert compare(a, b, distance_threshold=1.0) > compare(a, b, distance_threshold=0.2)


def test_dimension_mismatch_is_rejected():
    with pytest.raises(ValueError):
        descriptor_distance([1.0, 0.0], [1.0, 0.0, 0.0])


def test_non_finite_descriptors_are_rejected():
    with pytest.raises(ValueError):
        descriptor_distance([1.0, float("nan")], [1.0, 0.0])


@pytest.mark.parametrize(
    "values,dimension",
    [
        ([], None),
        ([0.0, 0.0, 0.0], None),
        ([1.0, float("inf")], None),
        ([1.0, 2.0, 3.0], 4),
        (["a", "b"], None),
    ],
)
def test_normalize_descriptor_rejects_unusable_input(values, dimension):
    with pytest.raises(ValueError):
        normalize_descriptor(values, dimension)


def test_normalize_descriptor_returns_unit_vector():
    vector = normalize_descriptor([3.0, 4.0])
    assert np.linalg.norm(vector) == pytest.approx(1.0)
    assert vector == pytest.approx([0.6, 0.8])


def test_extract_descriptor_requires_a_face(matcher, fakes):
    with pytest.raises(NoFaceDetected):
        matcher.extract_descriptor(fakes.empty_frame())
    with pytest.raises(NoFaceDetected):
        matcher.extract_descriptor(None)


def test_extract_descriptor_is_normalised(matcher, fakes):
    descriptor = matcher.extract_descriptor(fakes.face_frame(10, 20, 30, 40))
    assert descriptor.shape == (4,)
    assert np.linalg.norm(descriptor) == pytest.approx(1.0)


def test_extract_descriptor_blocks_dark_frames(embedder, fakes):
    matcher = BiometricMatcher(embedder, quality_check=True, dimension=embedder.dimension)
    frame = np.full((64, 64, 3), 10, dtype=np.uint8)

    with pytest.raises(LowImageQuality) as excinfo:
        matcher.extract_descriptor(frame)

    assert any("too dark" in issue for issue in excinfo.value.issues)


def test_embedder_failure_is_reported_as_low_quality(fakes):
    embedder = fakes.FakeEmbedder()
    embedder.embed = MagicMock(return_value=np.zeros(4))
    matcher = BiometricMatcher(embedder, quality_check=False, dimension=embedder.dimension)

    with pytest.raises(LowImageQuality):
        matcher.extract_descriptor(fakes.face_frame(10, 20, 30, 40))


def test_verify_picks_the_best_enrolled_pose(matcher):
    probe = _unit(1, 2, 3, 4)
    enrolled = {
        "front": _unit(4, 3, 2, 1),
        "left": _unit(1, 2, 3, 4.2),
        "right": _unit(2, 2, 2, 2),
    }

    result = matcher.verify(probe, enrolled)

    assert result.verified is True
    assert result.matched_pose == "left"
    assert result.confidence > 90


def test_verify_reports_mismatch_below_threshold(matcher):
    result = matcher.verify(_unit(1, 2, 3, 4), {"front": _unit(4, 3, 2, 1)})

    assert result.verified is False
    assert result.confidence < matcher.match_threshold
    assert monitoring.metric_value("verification_biometric_matches", {"result": "mismatch"}) == 1.0


def test_verify_skips_unusable_enrolled_descriptors(matcher):
    result = matcher.verify(_unit(1, 2, 3, 4), {"front": [1.0, 2.0], "up": _unit(1, 2, 3, 4)})
    assert result.matched_pose == "up"
    assert result.confidence == 100.0


def test_verify_without_enrolled_descriptors_raises(matcher):
    with pytest.raises(ProfileNotFound):
        matcher.verify(_unit(1, 2, 3, 4), {})


def test_match_threshold_is_inclusive(embedder):
    matcher = BiometricMatcher(
        embedder, match_threshold=70.0, quality_check=False, dimension=embedder.dimension
    )
    assert matcher.is_match(70.0) is True
    assert matcher.is_match(69.99) is False


def test_matcher_defaults_come_from_settings(embedder, settings):
    settings.VERIFICATION_DESCRIPTOR_DISTANCE_THRESHOLD = 0.5
    settings.VERIFICATION_MATCH_CONFIDENCE_THRESHOLD = 80
    matcher = BiometricMatcher(embedder, dimension=embedder.dimension)
    assert matcher.distance_threshold == 0.5
    assert matcher.match_threshold == 80.0


def test_embedder_must_match_configured_dimension(embedder, settings):
    settings.VERIFICATION_DESCRIPTOR_DIMENSION = 128

    with pytest.raises(ImproperlyConfigured):
        BiometricMatcher(embedder)


def test_default_embedder_follows_configured_dimension(settings):
    settings.VERIFICATION_DESCRIPTOR_DIMENSION = 64

    assert BiometricMatcher().dimension == 64


class TestPixelStatisticsEmbedder:
    def test_dimension_follows_grid(self):
        assert PixelStatisticsEmbedder().dimension == 128
        assert PixelStatisticsEmbedder(grid=(4, 4)).dimension == 16

    def test_loads_bundled_cascade(self):
        embedder = PixelStatisticsEmbedder()
        assert embedder.is_ready() is False
        embedder.load()
        assert embedder.is_ready() is True

    def test_blank_frame_has_no_face(self):
        embedder = PixelStatisticsEmbedder()
        assert embedder.detect(np.zeros((120, 160, 3), dtype=np.uint8)) is None

    def test_embed_is_normalised_and_deterministic(self):
        embedder = PixelStatisticsEmbedder()
        rng = np.random.default_rng(7)
        frame = rng.integers(0, 255, size=(120, 160, 3), dtype=np.uint8)
        region = FaceRegion(20, 10, 64, 80)

        first = embedder.embed(frame, region)
        second = embedder.embed(frame, region)

        assert first.shape == (128,)
        assert np.linalg.norm(first) == pytest.approx(1.0)
        assert np.array_equal(first, second)

    def test_embed_rejects_region_outside_frame(self):
        embedder = PixelStatisticsEmbedder()
        with pytest.raises(ValueError):
            embedder.embed(np.ones((20, 20, 3), dtype=np.uint8), FaceRegion(40, 40, 10, 10))
