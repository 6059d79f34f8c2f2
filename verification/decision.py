"""Combine location and biometric signals into a punch decision."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional, Tuple, Union

from django.utils import timezone

from . import monitoring
from .biometrics import MatchResult
from .geofence import GeofenceResult, LocationPolicy
from .geolocation import PositionFix

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"


class VerificationMethod(str, Enum):
    GEO_FACE = "geo_face"
    GEO_ONLY = "geo_only"
    FACE_ONLY = "face_only"
    HARDWARE_CREDENTIAL = "hardware_credential"
    MANUAL = "manual"


class RejectionReason(str, Enum):
    OUT_OF_RANGE = "OUT_OF_RANGE"
    LOCATION_NOT_VERIFIED = "LOCATION_NOT_VERIFIED"
    BIOMETRIC_NOT_VERIFIED = "BIOMETRIC_NOT_VERIFIED"
    BIOMETRIC_NOT_ENROLLED = "BIOMETRIC_NOT_ENROLLED"
    POLICY_NOT_CONFIGURED = "POLICY_NOT_CONFIGURED"


_REJECTION_MESSAGES = {
    RejectionReason.OUT_OF_RANGE: "You are outside the allowed attendance radius.",
    RejectionReason.LOCATION_NOT_VERIFIED: "Please verify your location first.",
    RejectionReason.BIOMETRIC_NOT_VERIFIED: "Please verify your face or device first.",
    RejectionReason.BIOMETRIC_NOT_ENROLLED: "Face enrollment is required before you can punch.",
    RejectionReason.POLICY_NOT_CONFIGURED: "Attendance location not configured. Please contact HR.",
}


@dataclass(frozen=True)
class PunchRecord:
    """An accepted attendance event. Created once and never modified."""

    employee_id: str
    date: date
    event_type: EventType
    timestamp: datetime
    location_verified: bool
    distance_meters: Optional[float]
    biometric_verified: bool
    biometric_confidence: Optional[float]
    verification_method: VerificationMethod
    device_info: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    site_id: Optional[str] = None


@dataclass(frozen=True)
class VerificationSignals:
    """Everything the pipeline learned about one employee before a punch.

    ``biometric`` is ``None`` when no face verification was attempted and
    ``has_profile`` says whether the employee has an enrolled face at all.
    """

    geofence: Optional[GeofenceResult] = None
    position: Optional[PositionFix] = None
    biometric: Optional[MatchResult] = None
    hardware_verified: bool = False
    has_profile: bool = False


@dataclass(frozen=True)
class Rejection:
    reasons: Tuple[RejectionReason, ...]
    distance_meters: Optional[float] = None

    @property
    def reason(self) -> RejectionReason:
        return self.reasons[0]

    @property
    def messages(self) -> Tuple[str, ...]:
        return tuple(_REJECTION_MESSAGES[reason] for reason in self.reasons)


Decision = Union[PunchRecord, Rejection]


def _location_failures(policy: LocationPolicy, geofence: Optional[GeofenceResult]) -> Tuple[RejectionReason, ...]:
    if geofence is None:
        return (RejectionReason.LOCATION_NOT_VERIFIED,)
    if not geofence.verified:
        return (RejectionReason.OUT_OF_RANGE,)
    return ()


def _biometric_failures(policy: LocationPolicy, signals: VerificationSignals) -> Tuple[RejectionReason, ...]:
    face_verified = signals.biometric is not None and signals.biometric.verified
    attempted = signals.biometric is not None

    biometric_ok = (
        not policy.biometric_required
        or (not signals.has_profile and not policy.biometric_mandatory)
        or face_verified
        or signals.hardware_verified
        or (not attempted and not policy.biometric_mandatory)
    )
    if biometric_ok:
        return ()
    if not signals.has_profile:
        return (RejectionReason.BIOMETRIC_NOT_ENROLLED,)
    return (RejectionReason.BIOMETRIC_NOT_VERIFIED,)


def select_method(location_verified: bool, face_verified: bool, hardware_verified: bool) -> VerificationMethod:
    if hardware_verified and not face_verified:
        return VerificationMethod.HARDWARE_CREDENTIAL
    if location_verified and face_verified:
        return VerificationMethod.GEO_FACE
    if location_verified:
        return VerificationMethod.GEO_ONLY
    if face_verified:
        return VerificationMethod.FACE_ONLY
    return VerificationMethod.MANUAL


def decide(
    policy: Optional[LocationPolicy],
    signals: VerificationSignals,
    *,
    employee_id: str,
    event_type: EventType,
    device_info: str = "",
    now: Optional[datetime] = None,
) -> Decision:
    """Return a :class:`PunchRecord` if every precondition holds, else a :class:`Rejection`.

    Location and biometric failures are reported separately and all of them
    are listed; :attr:`Rejection.reason` is the first.
    """

    geofence = signals.geofence
    distance = geofence.distance_m if geofence is not None else None

    if policy is None or not policy.active:
        rejection = Rejection(reasons=(RejectionReason.POLICY_NOT_CONFIGURED,), distance_meters=distance)
        monitoring.record_punch_decision(False, "none")
        logger.warning(
            "Punch rejected: no active location policy",
            extra={"event": "punch_decision", "status": "rejected", "employee_id": employee_id},
        )
        return rejection

    failures = _location_failures(policy, geofence) + _biometric_failures(policy, signals)
    location_verified = geofence is not None and geofence.verified
    face_verified = signals.biometric is not None and signals.biometric.verified
    method = select_method(location_verified, face_verified, signals.hardware_verified)

    if failures:
        monitoring.record_punch_decision(False, method.value)
        logger.info(
            "Punch rejected: %s",
            ", ".join(reason.value for reason in failures),
            extra={"event": "punch_decision", "status": "rejected", "employee_id": employee_id},
        )
        return Rejection(reasons=failures, distance_meters=distance)

    timestamp = now or timezone.now()
    position = signals.position
    record = PunchRecord(
        employee_id=employee_id,
        date=timezone.localdate(timestamp) if timezone.is_aware(timestamp) else timestamp.date(),
        event_type=EventType(event_type),
        timestamp=timestamp,
        location_verified=location_verified,
        distance_meters=distance,
        biometric_verified=face_verified or signals.hardware_verified,
        biometric_confidence=signals.biometric.confidence if signals.biometric is not None else None,
        verification_method=method,
        device_info=device_info,
        latitude=position.latitude if position is not None else None,
        longitude=position.longitude if position is not None else None,
        site_id=policy.site_id,
    )
    monitoring.record_punch_decision(True, method.value)
    logger.info(
        "Punch accepted via %s",
        method.value,
        extra={"event": "punch_decision", "status": "accepted", "employee_id": employee_id},
    )
    return record
