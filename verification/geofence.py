"""Great-circle geofence checks for attendance locations.

All functions here are pure: they take coordinates and return results without
touching settings, storage or devices, so they can be exercised directly in
unit tests.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from .errors import InvalidCoordinate

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0

# Map link formats, most specific first.
_MAP_LINK_PATTERNS = (
    re.compile(r"[?&]q=([+-]?\d+\.?\d*),([+-]?\d+\.?\d*)"),
    re.compile(r"place/[^@]+@([+-]?\d+\.?\d*),([+-]?\d+\.?\d*)"),
    re.compile(r"@([+-]?\d+\.?\d*),([+-]?\d+\.?\d*)"),
    re.compile(r"[?&]ll=([+-]?\d+\.?\d*),([+-]?\d+\.?\d*)"),
)
_SHORT_LINK_HOSTS = ("maps.app.goo.gl", "goo.gl/maps")


@dataclass(frozen=True)
class LocationPolicy:
    """Per-site attendance configuration, read-only to the pipeline."""

    site_id: str
    display_name: str
    latitude: float
    longitude: float
    radius_meters: float
    biometric_required: bool = False
    biometric_mandatory: bool = False
    active: bool = True


@dataclass(frozen=True)
class GeofenceResult:
    """Outcome of a geofence check.

    ``distance_m`` is rounded to two decimals for display; ``raw_distance_m``
    is the value the radius comparison was made against.
    """

    verified: bool
    distance_m: float
    raw_distance_m: float
    radius_m: float


def _coerce_coordinate(value, name: str) -> float:
    if isinstance(value, bool):
        raise InvalidCoordinate(f"{name} must be a number, got {value!r}")
    try:
        numeric = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidCoordinate(f"{name} must be a number, got {value!r}") from exc
    if not math.isfinite(numeric):
        raise InvalidCoordinate(f"{name} must be finite, got {value!r}")
    return numeric


def validate_coordinate(latitude, longitude) -> Tuple[float, float]:
    """Return ``(latitude, longitude)`` as floats or raise :class:`InvalidCoordinate`."""

    lat = _coerce_coordinate(latitude, "latitude")
    lon = _coerce_coordinate(longitude, "longitude")
    if not -90.0 <= lat <= 90.0:
        raise InvalidCoordinate(f"latitude {lat} is outside [-90, 90]")
    if not -180.0 <= lon <= 180.0:
        raise InvalidCoordinate(f"longitude {lon} is outside [-180, 180]")
    return lat, lon


def haversine_distance(lat1, lon1, lat2, lon2) -> float:
    """Return the great-circle distance in metres between two points."""

    lat1, lon1 = validate_coordinate(lat1, lon1)
    lat2, lon2 = validate_coordinate(lat2, lon2)

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    # Rounding can push ``a`` a hair outside [0, 1] for antipodal points.
    a = min(1.0, max(0.0, a))
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def verify(user_lat, user_lon, site_lat, site_lon, radius_m) -> GeofenceResult:
    """Check whether the user position lies within ``radius_m`` of the site."""

    radius = float(radius_m)
    if not math.isfinite(radius) or radius <= 0:
        raise ValueError(f"radius_m must be a positive number, got {radius_m!r}")

    distance = haversine_distance(user_lat, user_lon, site_lat, site_lon)
    result = GeofenceResult(
        verified=distance <= radius,
        distance_m=round(distance, 2),
        raw_distance_m=distance,
        radius_m=radius,
    )
    logger.debug(
        "Geofence check distance=%.2fm radius=%.2fm verified=%s",
        distance,
        radius,
        result.verified,
    )
    return result


def verify_policy(policy: LocationPolicy, user_lat, user_lon) -> GeofenceResult:
    """Apply :func:`verify` against the coordinates configured on ``policy``."""

    return verify(user_lat, user_lon, policy.latitude, policy.longitude, policy.radius_meters)


def parse_map_link(url: str) -> Optional[Tuple[float, float]]:
    """Extract ``(latitude, longitude)`` from a shared map URL.

    Supports ``?q=lat,lng``, ``/@lat,lng,zoom``, ``?ll=lat,lng`` and
    ``/place/Name/@lat,lng`` forms. Returns ``None`` when no coordinates are
    present. Short links cannot be resolved offline and raise ``ValueError``.
    """

    if not url:
        return None

    for pattern in _MAP_LINK_PATTERNS:
        match = pattern.search(url)
        if match:
            return validate_coordinate(match.group(1), match.group(2))

    if any(host in url for host in _SHORT_LINK_HOSTS):
        raise ValueError(
            "Short map links cannot be resolved. Please paste the full map URL "
            "from the address bar."
        )
    return None
