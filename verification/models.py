"""
Database models for the verification app.

Face descriptors are stored Fernet-encrypted; the models never see plaintext
vectors. Rows here are the persistence side of the dataclasses the pipeline
works with (``LocationPolicy``, ``FaceProfile``, ``HardwareCredential`` and
``PunchRecord``), see :mod:`verification.stores`.
"""

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from .geofence import parse_map_link


class LocationPolicy(models.Model):
    """Attendance site with its geofence and biometric requirements."""

    site_id = models.CharField(
        max_length=64,
        unique=True,
        help_text="Stable identifier for the attendance site.",
    )
    display_name = models.CharField(max_length=255, help_text="Name shown to employees.")
    latitude = models.FloatField(help_text="Site latitude in decimal degrees.")
    longitude = models.FloatField(help_text="Site longitude in decimal degrees.")
    radius_meters = models.FloatField(
        default=100.0,
        help_text="Allowed distance from the site in metres.",
    )
    maps_link = models.URLField(
        max_length=1024,
        blank=True,
        help_text="Shared map link the coordinates were taken from.",
    )
    biometric_required = models.BooleanField(
        default=False,
        help_text="Require face or hardware verification before punching.",
    )
    biometric_mandatory = models.BooleanField(
        default=False,
        help_text="Refuse punches from employees without an enrolled face.",
    )
    active = models.BooleanField(default=True, help_text="Inactive sites accept no punches.")
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = "Location policies"
        constraints = [
            models.CheckConstraint(
                condition=Q(radius_meters__gt=0),
                name="verification_policy_radius_positive",
            ),
        ]

    def __str__(self):
        return f"{self.display_name} ({self.radius_meters:.0f}m)"

    def clean(self):
        """Take the site coordinates from ``maps_link`` when one is given."""

        super().clean()
        if not self.maps_link:
            return
        try:
            coordinates = parse_map_link(self.maps_link)
        except ValueError as exc:
            raise ValidationError({"maps_link": str(exc)}) from exc
        if coordinates is None:
            raise ValidationError({"maps_link": "No coordinates found in this map link."})
        self.latitude, self.longitude = coordinates


class FaceProfile(models.Model):
    """
    Enrolled face descriptors for an employee.

    Re-enrollment creates a new row and demotes the previous primary one, which
    is kept for audit with ``superseded_at`` set.
    """

    employee_id = models.CharField(max_length=64, db_index=True)
    descriptor = models.BinaryField(help_text="Encrypted primary (front) descriptor.")
    pose_descriptors = models.BinaryField(help_text="Encrypted JSON of descriptors keyed by pose.")
    poses = models.JSONField(default=list, help_text="Pose labels captured during enrollment.")
    dimension = models.PositiveIntegerField(default=128)
    capture_device_info = models.TextField(blank=True)
    enrolled_at = models.DateTimeField(default=timezone.now, db_index=True)
    is_primary = models.BooleanField(default=True)
    superseded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["employee_id"],
                condition=Q(is_primary=True),
                name="verification_one_primary_face_profile",
            ),
        ]
        indexes = [
            models.Index(fields=["employee_id", "is_primary"], name="verif_face_emp_primary_idx"),
        ]

    def __str__(self):
        status = "primary" if self.is_primary else "superseded"
        return f"{self.employee_id} - {self.enrolled_at:%Y-%m-%d %H:%M} - {status}"


class HardwareCredential(models.Model):
    """Device-bound public key registered by an employee."""

    credential_id = models.CharField(max_length=512, unique=True)
    employee_id = models.CharField(max_length=64, db_index=True)
    public_key = models.TextField(help_text="Base64 DER SubjectPublicKeyInfo.")
    algorithm = models.IntegerField(default=-7, help_text="COSE algorithm identifier.")
    signature_counter = models.PositiveBigIntegerField(default=0)
    device_label = models.CharField(max_length=128, blank=True)
    registered_at = models.DateTimeField(default=timezone.now)
    last_used_at = models.DateTimeField(null=True, blank=True)
    flagged_for_review = models.BooleanField(default=False)
    flag_reason = models.TextField(blank=True)

    def __str__(self):
        flag = " [flagged]" if self.flagged_for_review else ""
        return f"{self.employee_id} - {self.device_label or self.credential_id[:12]}{flag}"


class AttendancePunch(models.Model):
    """An accepted check-in or check-out. Rows are written once and never updated."""

    class EventType(models.TextChoices):
        CHECK_IN = "check_in", "Check in"
        CHECK_OUT = "check_out", "Check out"

    class Method(models.TextChoices):
        GEO_FACE = "geo_face", "Location and face"
        GEO_ONLY = "geo_only", "Location only"
        FACE_ONLY = "face_only", "Face only"
        HARDWARE_CREDENTIAL = "hardware_credential", "Hardware credential"
        MANUAL = "manual", "Manual"

    employee_id = models.CharField(max_length=64, db_index=True)
    date = models.DateField(default=timezone.localdate, db_index=True)
    event_type = models.CharField(max_length=16, choices=EventType.choices)
    timestamp = models.DateTimeField(default=timezone.now)
    location_verified = models.BooleanField(default=False)
    distance_meters = models.FloatField(null=True, blank=True)
    biometric_verified = models.BooleanField(default=False)
    biometric_confidence = models.FloatField(null=True, blank=True)
    verification_method = models.CharField(max_length=32, choices=Method.choices)
    device_info = models.TextField(blank=True)
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)
    site_id = models.CharField(max_length=64, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["employee_id", "date"], name="verif_punch_emp_date_idx"),
        ]

    def __str__(self):
        return f"{self.employee_id} - {self.timestamp:%Y-%m-%d %H:%M:%S} - {self.get_event_type_display()}"
