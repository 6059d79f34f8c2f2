"""Persistence collaborators for the verification pipeline.

The pipeline only talks to the ``Protocol`` classes below. The ``Django*``
implementations map them onto :mod:`verification.models`; they are
synchronous and must be called through ``sync_to_async`` from coroutines.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Mapping, Optional, Protocol, Sequence

import numpy as np
from django.db import transaction
from django.utils import timezone

from src.common.crypto import DescriptorCipher, get_descriptor_cipher

from . import models
from .decision import PunchRecord
from .geofence import LocationPolicy
from .webauthn import CredentialStore, HardwareCredential

logger = logging.getLogger(__name__)

__all__ = [
    "CredentialStore",
    "DjangoCredentialStore",
    "DjangoFaceProfileStore",
    "DjangoLocationPolicyStore",
    "DjangoPunchStore",
    "EmployeeDirectory",
    "FaceProfile",
    "FaceProfileStore",
    "LocationPolicyStore",
    "PunchStore",
]


@dataclass(frozen=True, eq=False)
class FaceProfile:
    employee_id: str
    descriptor: np.ndarray
    pose_descriptors: Mapping[str, np.ndarray] = field(default_factory=dict)
    enrolled_at: datetime = field(default_factory=timezone.now)
    capture_device_info: str = ""
    is_primary: bool = True

    def matching_descriptors(self) -> Dict[str, np.ndarray]:
        """Return every descriptor usable for matching, keyed by pose."""

        if self.pose_descriptors:
            return dict(self.pose_descriptors)
        return {"front": self.descriptor}


class EmployeeDirectory(Protocol):
    def get_display_name(self, employee_id: str) -> Optional[str]:
        ...


class LocationPolicyStore(Protocol):
    def get_active(self, site_id: Optional[str] = None) -> Optional[LocationPolicy]:
        """Return the policy for ``site_id`` (or the default site), or ``None``."""


class FaceProfileStore(Protocol):
    def get_primary(self, employee_id: str) -> Optional[FaceProfile]:
        ...

    def replace_primary(self, profile: FaceProfile) -> FaceProfile:
        """Store ``profile`` as the only primary profile, demoting the previous one atomically."""


class PunchStore(Protocol):
    def save(self, record: PunchRecord) -> PunchRecord:
        ...


def _policy_from_row(row: models.LocationPolicy) -> LocationPolicy:
    return LocationPolicy(
        site_id=row.site_id,
        display_name=row.display_name,
        latitude=row.latitude,
        longitude=row.longitude,
        radius_meters=row.radius_meters,
        biometric_required=row.biometric_required,
        biometric_mandatory=row.biometric_mandatory,
        active=row.active,
    )


class DjangoLocationPolicyStore:
    def get_active(self, site_id: Optional[str] = None) -> Optional[LocationPolicy]:
        queryset = models.LocationPolicy.objects.filter(active=True)
        if site_id:
            queryset = queryset.filter(site_id=site_id)
        row = queryset.order_by("id").first()
        return _policy_from_row(row) if row is not None else None


class DjangoFaceProfileStore:
    """Face profiles with Fernet-encrypted descriptors."""

    def __init__(self, cipher: Optional[DescriptorCipher] = None) -> None:
        self._cipher = cipher

    @property
    def cipher(self) -> DescriptorCipher:
        return self._cipher or get_descriptor_cipher()

    def get_primary(self, employee_id: str) -> Optional[FaceProfile]:
        row = models.FaceProfile.objects.filter(employee_id=employee_id, is_primary=True).first()
        if row is None:
            return None
        return FaceProfile(
            employee_id=row.employee_id,
            descriptor=self.cipher.decrypt_descriptor(bytes(row.descriptor)),
            pose_descriptors=self.cipher.decrypt_pose_descriptors(bytes(row.pose_descriptors)),
            enrolled_at=row.enrolled_at,
            capture_device_info=row.capture_device_info,
            is_primary=True,
        )

    def replace_primary(self, profile: FaceProfile) -> FaceProfile:
        descriptor = np.asarray(profile.descriptor, dtype=np.float64).reshape(-1)
        encrypted_descriptor = self.cipher.encrypt_descriptor(descriptor)
        encrypted_poses = self.cipher.encrypt_pose_descriptors(profile.pose_descriptors)
        poses = [str(getattr(pose, "value", pose)) for pose in profile.pose_descriptors]

        with transaction.atomic():
            previous = list(
                models.FaceProfile.objects.select_for_update().filter(
                    employee_id=profile.employee_id, is_primary=True
                )
            )
            # Demote first so the partial unique index never sees two primaries.
            models.FaceProfile.objects.filter(pk__in=[row.pk for row in previous]).update(
                is_primary=False, superseded_at=timezone.now()
            )
            models.FaceProfile.objects.create(
                employee_id=profile.employee_id,
                descriptor=encrypted_descriptor,
                pose_descriptors=encrypted_poses,
                poses=poses,
                dimension=descriptor.size,
                capture_device_info=profile.capture_device_info,
                enrolled_at=profile.enrolled_at,
                is_primary=True,
            )

        logger.info(
            "Stored primary face profile (%d poses, %d superseded)",
            len(poses),
            len(previous),
            extra={"event": "face_enrollment", "status": "stored", "employee_id": profile.employee_id},
        )
        return profile


def _credential_from_row(row: models.HardwareCredential) -> HardwareCredential:
    return HardwareCredential(
        credential_id=row.credential_id,
        employee_id=row.employee_id,
        public_key=row.public_key,
        algorithm=row.algorithm,
        signature_counter=row.signature_counter,
        device_label=row.device_label,
        registered_at=row.registered_at,
        last_used_at=row.last_used_at,
        flagged_for_review=row.flagged_for_review,
        flag_reason=row.flag_reason,
    )


class DjangoCredentialStore:
    def list_for_employee(self, employee_id: str) -> Sequence[HardwareCredential]:
        rows = models.HardwareCredential.objects.filter(employee_id=employee_id).order_by("registered_at", "id")
        return [_credential_from_row(row) for row in rows]

    def get(self, credential_id: str) -> Optional[HardwareCredential]:
        row = models.HardwareCredential.objects.filter(credential_id=credential_id).first()
        return _credential_from_row(row) if row is not None else None

    def add(self, credential: HardwareCredential) -> HardwareCredential:
        row = models.HardwareCredential.objects.create(
            credential_id=credential.credential_id,
            employee_id=credential.employee_id,
            public_key=credential.public_key,
            algorithm=credential.algorithm,
            signature_counter=credential.signature_counter,
            device_label=credential.device_label,
            registered_at=credential.registered_at,
        )
        return _credential_from_row(row)

    def record_use(self, credential_id: str, new_counter: int, used_at: datetime) -> bool:
        """Compare-and-set: only move the counter forward."""

        updated = models.HardwareCredential.objects.filter(
            credential_id=credential_id,
            signature_counter__lt=new_counter,
            flagged_for_review=False,
        ).update(signature_counter=new_counter, last_used_at=used_at)
        return updated == 1

    def flag_for_review(self, credential_id: str, reason: str) -> None:
        models.HardwareCredential.objects.filter(credential_id=credential_id).update(
            flagged_for_review=True, flag_reason=reason
        )

    def remove(self, credential_id: str) -> bool:
        deleted, _ = models.HardwareCredential.objects.filter(credential_id=credential_id).delete()
        return deleted > 0


class DjangoPunchStore:
    def save(self, record: PunchRecord) -> PunchRecord:
        models.AttendancePunch.objects.create(
            employee_id=record.employee_id,
            date=record.date,
            event_type=record.event_type.value,
            timestamp=record.timestamp,
            location_verified=record.location_verified,
            distance_meters=record.distance_meters,
            biometric_verified=record.biometric_verified,
            biometric_confidence=record.biometric_confidence,
            verification_method=record.verification_method.value,
            device_info=record.device_info,
            latitude=record.latitude,
            longitude=record.longitude,
            site_id=record.site_id or "",
        )
        return record
