"""Tests for frame quality assessment."""

from __future__ import annotations

import numpy as np

from verification.quality import assess_frame_quality, to_grayscale


def _checkerboard(size: int = 64, low: int = 60, high: int = 190) -> np.ndarray:
    board = np.indices((size, size)).sum(axis=0) % 2
    gray = np.where(board, high, low).astype(np.uint8)
    return np.dstack([gray, gray, gray])


def test_sharp_well_lit_frame_is_acceptable():
    quality = assess_frame_quality(_checkerboard(), (0, 0, 64, 64))

    assert quality.acceptable
    assert quality.issues == []
    assert quality.face_size_ratio == 1.0


def test_dark_frame_is_blocking():
    frame = np.full((64, 64, 3), 20, dtype=np.uint8)
    quality = assess_frame_quality(frame)

    assert not quality.acceptable
    assert any("too dark" in issue for issue in quality.blocking)


def test_overexposed_frame_is_blocking():
    frame = np.full((64, 64, 3), 240, dtype=np.uint8)
    quality = assess_frame_quality(frame)

    assert any("overexposed" in issue for issue in quality.blocking)


def test_small_face_is_blocking():
    quality = assess_frame_quality(_checkerboard(), (0, 0, 8, 8))

    assert quality.face_size_ratio < 0.05
    assert any("too small" in issue for issue in quality.blocking)


def test_blur_is_reported_but_not_blocking():
    frame = np.full((64, 64, 3), 128, dtype=np.uint8)
    quality = assess_frame_quality(frame)

    assert quality.acceptable
    assert any("blurry" in issue for issue in quality.issues)


def test_empty_frame_is_blocking():
    assert not assess_frame_quality(np.zeros((0, 0, 3), dtype=np.uint8)).acceptable
    assert not assess_frame_quality(None).acceptable


def test_to_grayscale_accepts_single_channel():
    frame = np.full((4, 4), 7, dtype=np.uint8)
    assert to_grayscale(frame) is frame
    assert to_grayscale(frame[:, :, None]).shape == (4, 4)
