"""Position-fix acquisition from a device geolocation provider."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol

from . import config
from .errors import (
    DeviceUnavailable,
    PermissionDenied,
    VerificationError,
    VerificationTimeout,
)
from .geofence import validate_coordinate

logger = logging.getLogger(__name__)


class GeolocationErrorCode(str, Enum):
    """Failure codes reported by device geolocation APIs."""

    DENIED = "denied"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"


class GeolocationError(Exception):
    """Raised by :class:`GeolocationProvider` implementations."""

    def __init__(self, code: GeolocationErrorCode, message: str = "") -> None:
        self.code = GeolocationErrorCode(code)
        super().__init__(message or self.code.value)


@dataclass(frozen=True)
class PositionFix:
    latitude: float
    longitude: float
    accuracy_m: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


class GeolocationProvider(Protocol):
    async def get_fix(self, timeout: float, max_age: float) -> PositionFix:
        """Return the current position, possibly a cached fix up to ``max_age`` old."""


_ERROR_MESSAGES = {
    GeolocationErrorCode.DENIED: (
        PermissionDenied,
        "Location access was denied.",
        "Please allow location access in your browser settings and try again.",
    ),
    GeolocationErrorCode.UNAVAILABLE: (
        DeviceUnavailable,
        "Location information is unavailable.",
        "Please check your device location settings.",
    ),
    GeolocationErrorCode.TIMEOUT: (
        VerificationTimeout,
        "Location request timed out.",
        "Please ensure your device has GPS or a network connection and try again.",
    ),
}


def _translate(code: GeolocationErrorCode) -> VerificationError:
    error_cls, message, remediation = _ERROR_MESSAGES[code]
    return error_cls(f"Failed to get your location. {message}", remediation=remediation)


async def acquire_position_fix(
    provider: GeolocationProvider,
    *,
    timeout: Optional[float] = None,
    max_age: Optional[float] = None,
    clock: Callable[[], float] = time.time,
) -> PositionFix:
    """Await a position fix and convert provider failures into pipeline errors.

    The wait is bounded by ``timeout`` even if the provider ignores it, and a
    fix older than ``max_age`` seconds is rejected as a timeout.
    """

    timeout = config.get_position_fix_timeout() if timeout is None else timeout
    max_age = config.get_position_fix_max_age() if max_age is None else max_age

    try:
        fix = await asyncio.wait_for(provider.get_fix(timeout, max_age), timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.warning(
            "Position fix timed out", extra={"event": "position_fix", "status": "timeout"}
        )
        raise _translate(GeolocationErrorCode.TIMEOUT) from exc
    except GeolocationError as exc:
        logger.warning(
            "Position fix failed: %s",
            exc.code.value,
            extra={"event": "position_fix", "status": exc.code.value},
        )
        raise _translate(exc.code) from exc
    except PermissionError as exc:
        raise _translate(GeolocationErrorCode.DENIED) from exc
    except OSError as exc:
        logger.exception(
            "Geolocation provider failed", extra={"event": "position_fix", "status": "failure"}
        )
        raise _translate(GeolocationErrorCode.UNAVAILABLE) from exc

    validate_coordinate(fix.latitude, fix.longitude)

    age = clock() - fix.timestamp
    if age > max_age:
        logger.warning(
            "Discarding stale position fix (%.1fs old)",
            age,
            extra={"event": "position_fix", "status": "stale"},
        )
        raise _translate(GeolocationErrorCode.TIMEOUT)

    logger.info("Position fix acquired", extra={"event": "position_fix", "status": "success"})
    return fix
