"""Frame quality checks applied before a descriptor is extracted."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


# Thresholds for quality assessment
BRIGHTNESS_LOW_THRESHOLD = 60
BRIGHTNESS_HIGH_THRESHOLD = 200
SHARPNESS_MIN_THRESHOLD = 50.0
FACE_SIZE_MIN_RATIO = 0.05  # Face should cover at least 5% of the frame


@dataclass
class FrameQuality:
    """Quality metrics for a single captured frame.

    Attributes:
        brightness_score: Mean brightness (0-255) of the face crop.
        sharpness_score: Laplacian variance, higher is sharper.
        face_size_ratio: Face area as a ratio of the frame area.
        issues: Human-readable problems found.
        blocking: Subset of ``issues`` that make the frame unusable.
    """

    brightness_score: float = 0.0
    sharpness_score: float = 0.0
    face_size_ratio: float = 0.0
    issues: List[str] = field(default_factory=list)
    blocking: List[str] = field(default_factory=list)

    @property
    def acceptable(self) -> bool:
        return not self.blocking


def to_grayscale(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.ndim == 3 and image.shape[2] == 1:
        return image[:, :, 0]
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def _calculate_sharpness(gray_image: np.ndarray) -> float:
    """Calculate image sharpness using Laplacian variance."""
    laplacian = cv2.Laplacian(gray_image, cv2.CV_64F)
    return float(laplacian.var())


def assess_frame_quality(
    frame: np.ndarray,
    face_region: Optional[tuple[int, int, int, int]] = None,
) -> FrameQuality:
    """Evaluate lighting, focus and face size for ``frame``.

    ``face_region`` is an ``(x, y, w, h)`` box; when given, brightness and
    sharpness are measured on the face crop only.
    """

    metrics = FrameQuality()
    if frame is None or not isinstance(frame, np.ndarray) or frame.size == 0:
        metrics.issues.append("Invalid or empty image")
        metrics.blocking.append("Invalid or empty image")
        return metrics

    gray = to_grayscale(frame)
    crop = gray
    if face_region is not None:
        x, y, w, h = face_region
        frame_pixels = gray.shape[0] * gray.shape[1]
        metrics.face_size_ratio = (w * h) / frame_pixels if frame_pixels else 0.0
        if metrics.face_size_ratio < FACE_SIZE_MIN_RATIO:
            message = "Face is too small in frame - move closer to camera"
            metrics.issues.append(message)
            metrics.blocking.append(message)
        candidate = gray[max(y, 0) : y + h, max(x, 0) : x + w]
        if candidate.size:
            crop = candidate

    metrics.brightness_score = float(np.mean(crop))
    if metrics.brightness_score < BRIGHTNESS_LOW_THRESHOLD:
        message = "Image is too dark - consider better lighting"
        metrics.issues.append(message)
        metrics.blocking.append(message)
    elif metrics.brightness_score > BRIGHTNESS_HIGH_THRESHOLD:
        message = "Image may be overexposed - reduce lighting intensity"
        metrics.issues.append(message)
        metrics.blocking.append(message)

    metrics.sharpness_score = _calculate_sharpness(crop)
    if metrics.sharpness_score < SHARPNESS_MIN_THRESHOLD:
        # Blur alone lowers match confidence but does not block the capture.
        metrics.issues.append(f"Image is blurry (sharpness: {metrics.sharpness_score:.1f})")

    if metrics.issues:
        logger.debug("Frame quality issues: %s", metrics.issues)
    return metrics
