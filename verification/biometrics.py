"""Face descriptor extraction and comparison.

The matcher only depends on the :class:`FaceEmbedder` protocol, so a real
recognition model can replace :class:`PixelStatisticsEmbedder` without any
change to the capture session or the decision engine. Descriptors are
L2-normalised fixed-length vectors compared with Euclidean distance, and the
distance is mapped to a 0-100 confidence score::

    confidence = clamp(0, 100, (1 - distance / threshold) * 100)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Sequence

import cv2
import numpy as np
from django.core.exceptions import ImproperlyConfigured

from . import config, monitoring
from .errors import LowImageQuality, NoFaceDetected, ProfileNotFound
from .quality import assess_frame_quality, to_grayscale

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FaceRegion:
    x: int
    y: int
    w: int
    h: int

    @property
    def area(self) -> int:
        return self.w * self.h

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.x, self.y, self.w, self.h)


class FaceEmbedder(Protocol):
    """Pluggable face detector + descriptor extractor."""

    dimension: int

    def is_ready(self) -> bool:
        """Return ``True`` once the underlying model is loaded."""

    def load(self) -> None:
        """Load the model; may be slow."""

    def detect(self, frame: np.ndarray) -> Optional[FaceRegion]:
        """Return the most prominent face in ``frame`` or ``None``."""

    def embed(self, frame: np.ndarray, region: FaceRegion) -> np.ndarray:
        """Return a raw descriptor of length ``dimension`` for ``region``."""


@dataclass(frozen=True)
class MatchResult:
    """Outcome of comparing a probe descriptor with enrolled descriptors."""

    verified: bool
    confidence: float
    distance: Optional[float]
    matched_pose: Optional[str] = None


def normalize_descriptor(values: Sequence[float], dimension: Optional[int] = None) -> np.ndarray:
    """Return ``values`` as a unit-length float vector.

    Raises ``ValueError`` for non-numeric, non-finite, zero-magnitude or
    wrongly sized input.
    """

    try:
        vector = np.asarray(values, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError) as exc:
        raise ValueError("Descriptor values must be numeric") from exc

    if vector.size == 0:
        raise ValueError("Descriptor is empty")
    if dimension is not None and vector.size != dimension:
        raise ValueError(f"Descriptor has {vector.size} values, expected {dimension}")
    if not np.all(np.isfinite(vector)):
        raise ValueError("Descriptor contains non-finite values")

    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        raise ValueError("Descriptor has zero magnitude")
    return vector / norm


def descriptor_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Return the Euclidean distance between two descriptors of equal length."""

    first = np.asarray(a, dtype=np.float64).reshape(-1)
    second = np.asarray(b, dtype=np.float64).reshape(-1)
    if first.shape != second.shape:
        raise ValueError(f"Descriptor dimensions differ: {first.size} != {second.size}")
    if not (np.all(np.isfinite(first)) and np.all(np.isfinite(second))):
        raise ValueError("Descriptors contain non-finite values")
    return float(np.linalg.norm(first - second))


def distance_to_confidence(distance: float, threshold: float) -> float:
    if threshold <= 0:
        raise ValueError("Distance threshold must be positive")
    if math.isnan(distance):
        return 0.0
    return max(0.0, min(100.0, (1.0 - distance / threshold) * 100.0))


def compare(a: Sequence[float], b: Sequence[float], *, distance_threshold: Optional[float] = None) -> float:
    """Return the match confidence (0-100) between two descriptors."""

    threshold = (
        config.get_descriptor_distance_threshold() if distance_threshold is None else distance_threshold
    )
    return distance_to_confidence(descriptor_distance(a, b), threshold)


class PixelStatisticsEmbedder:
    """Placeholder embedder built on OpenCV's Haar cascade face detector.

    The descriptor is the grid of mean intensities of the grayscale face crop
    (16 x 8 cells by default), mean-centred and L2-normalised. It is
    deterministic and cheap but has no identity discrimination to speak of;
    thresholds must be recalibrated when a real model is plugged in.
    """

    def __init__(
        self,
        *,
        cascade_path: Optional[str] = None,
        grid: tuple[int, int] = (16, 8),
        scale_factor: float = 1.1,
        min_neighbors: int = 5,
        min_face_size: tuple[int, int] = (60, 60),
    ) -> None:
        self._cascade_path = cascade_path
        self._rows, self._cols = grid
        self.dimension = self._rows * self._cols
        self._scale_factor = scale_factor
        self._min_neighbors = min_neighbors
        self._min_face_size = min_face_size
        self._classifier: Optional[cv2.CascadeClassifier] = None

    def is_ready(self) -> bool:
        return self._classifier is not None

    def load(self) -> None:
        if self._classifier is not None:
            return
        path = self._cascade_path or (cv2.data.haarcascades + "haarcascade_frontalface_default.xml")
        classifier = cv2.CascadeClassifier(path)
        if classifier.empty():
            raise RuntimeError(f"Unable to load face cascade from {path}")
        self._classifier = classifier
        logger.info("Loaded face cascade", extra={"event": "model_load", "path": path})

    def detect(self, frame: np.ndarray) -> Optional[FaceRegion]:
        if self._classifier is None:
            self.load()
        gray = to_grayscale(frame)
        faces = self._classifier.detectMultiScale(
            gray,
            scaleFactor=self._scale_factor,
            minNeighbors=self._min_neighbors,
            minSize=self._min_face_size,
        )
        if len(faces) == 0:
            return None
        x, y, w, h = max(faces, key=lambda box: int(box[2]) * int(box[3]))
        return FaceRegion(int(x), int(y), int(w), int(h))

    def embed(self, frame: np.ndarray, region: FaceRegion) -> np.ndarray:
        gray = to_grayscale(frame)
        crop = gray[max(region.y, 0) : region.y + region.h, max(region.x, 0) : region.x + region.w]
        if crop.size == 0:
            raise ValueError("Face region lies outside the frame")
        cells = cv2.resize(crop, (self._cols, self._rows), interpolation=cv2.INTER_AREA)
        vector = cells.astype(np.float64).reshape(-1)
        return normalize_descriptor(vector - vector.mean(), self.dimension)


def _grid_for(dimension: int) -> tuple[int, int]:
    cols = 8 if dimension % 8 == 0 else 1
    return dimension // cols, cols


class BiometricMatcher:
    """Extract descriptors from frames and score them against enrolled ones."""

    def __init__(
        self,
        embedder: Optional[FaceEmbedder] = None,
        *,
        distance_threshold: Optional[float] = None,
        match_threshold: Optional[float] = None,
        quality_check: Optional[bool] = None,
        dimension: Optional[int] = None,
    ) -> None:
        expected = config.get_descriptor_dimension() if dimension is None else int(dimension)
        self.embedder = embedder if embedder is not None else PixelStatisticsEmbedder(grid=_grid_for(expected))
        if self.embedder.dimension != expected:
            raise ImproperlyConfigured(
                f"Face embedder produces {self.embedder.dimension}-dimensional descriptors "
                f"but VERIFICATION_DESCRIPTOR_DIMENSION is {expected}."
            )
        self.distance_threshold = (
            config.get_descriptor_distance_threshold()
            if distance_threshold is None
            else float(distance_threshold)
        )
        self.match_threshold = (
            config.get_match_confidence_threshold() if match_threshold is None else float(match_threshold)
        )
        self.quality_check = config.is_quality_check_enabled() if quality_check is None else quality_check

    @property
    def dimension(self) -> int:
        return self.embedder.dimension

    def detect(self, frame: Optional[np.ndarray]) -> Optional[FaceRegion]:
        if frame is None or not isinstance(frame, np.ndarray) or frame.size == 0:
            return None
        return self.embedder.detect(frame)

    def extract_descriptor(self, frame: Optional[np.ndarray]) -> np.ndarray:
        """Return the normalised descriptor for the face in ``frame``.

        Raises :class:`NoFaceDetected` or :class:`LowImageQuality`; both are
        retryable and leave the caller's state untouched.
        """

        region = self.detect(frame)
        if region is None:
            raise NoFaceDetected(
                "No face detected. Please ensure your face is clearly visible in the frame."
            )

        if self.quality_check:
            quality = assess_frame_quality(frame, region.as_tuple())
            if not quality.acceptable:
                raise LowImageQuality("; ".join(quality.blocking), issues=quality.blocking)

        try:
            return normalize_descriptor(self.embedder.embed(frame, region), self.dimension)
        except ValueError as exc:
            raise LowImageQuality("Failed to extract face features") from exc

    def compare(self, a: Sequence[float], b: Sequence[float]) -> float:
        return compare(a, b, distance_threshold=self.distance_threshold)

    def is_match(self, confidence: float) -> bool:
        return confidence >= self.match_threshold

    def verify(self, descriptor: Sequence[float], enrolled: Mapping[str, Sequence[float]]) -> MatchResult:
        """Return the best match of ``descriptor`` across every enrolled pose."""

        if not enrolled:
            raise ProfileNotFound()

        best: Optional[MatchResult] = None
        for pose, candidate in enrolled.items():
            try:
                distance = descriptor_distance(descriptor, candidate)
            except ValueError:
                logger.warning("Skipping unusable enrolled descriptor for pose %s", pose)
                continue
            confidence = distance_to_confidence(distance, self.distance_threshold)
            if best is None or confidence > best.confidence:
                best = MatchResult(
                    verified=self.is_match(confidence),
                    confidence=confidence,
                    distance=distance,
                    matched_pose=getattr(pose, "value", pose),
                )

        if best is None:
            best = MatchResult(verified=False, confidence=0.0, distance=None)

        monitoring.record_biometric_match(best.verified, best.confidence)
        logger.info(
            "Biometric comparison confidence=%.1f verified=%s",
            best.confidence,
            best.verified,
            extra={"event": "biometric_match", "status": "match" if best.verified else "mismatch"},
        )
        return best
