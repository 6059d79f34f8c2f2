"""Create the verification tables."""

import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="LocationPolicy",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "site_id",
                    models.CharField(
                        help_text="Stable identifier for the attendance site.", max_length=64, unique=True
                    ),
                ),
                ("display_name", models.CharField(help_text="Name shown to employees.", max_length=255)),
                ("latitude", models.FloatField(help_text="Site latitude in decimal degrees.")),
                ("longitude", models.FloatField(help_text="Site longitude in decimal degrees.")),
                (
                    "radius_meters",
                    models.FloatField(default=100.0, help_text="Allowed distance from the site in metres."),
                ),
                (
                    "maps_link",
                    models.URLField(
                        blank=True, help_text="Shared map link the coordinates were taken from.", max_length=1024
                    ),
                ),
                (
                    "biometric_required",
                    models.BooleanField(
                        default=False, help_text="Require face or hardware verification before punching."
                    ),
                ),
                (
                    "biometric_mandatory",
                    models.BooleanField(
                        default=False, help_text="Refuse punches from employees without an enrolled face."
                    ),
                ),
                ("active", models.BooleanField(default=True, help_text="Inactive sites accept no punches.")),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name_plural": "Location policies",
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(radius_meters__gt=0),
                        name="verification_policy_radius_positive",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="FaceProfile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("employee_id", models.CharField(db_index=True, max_length=64)),
                ("descriptor", models.BinaryField(help_text="Encrypted primary (front) descriptor.")),
                (
                    "pose_descriptors",
                    models.BinaryField(help_text="Encrypted JSON of descriptors keyed by pose."),
                ),
                (
                    "poses",
                    models.JSONField(default=list, help_text="Pose labels captured during enrollment."),
                ),
                ("dimension", models.PositiveIntegerField(default=128)),
                ("capture_device_info", models.TextField(blank=True)),
                ("enrolled_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("is_primary", models.BooleanField(default=True)),
                ("superseded_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["employee_id", "is_primary"], name="verif_face_emp_primary_idx")
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(is_primary=True),
                        fields=("employee_id",),
                        name="verification_one_primary_face_profile",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="HardwareCredential",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("credential_id", models.CharField(max_length=512, unique=True)),
                ("employee_id", models.CharField(db_index=True, max_length=64)),
                ("public_key", models.TextField(help_text="Base64 DER SubjectPublicKeyInfo.")),
                ("algorithm", models.IntegerField(default=-7, help_text="COSE algorithm identifier.")),
                ("signature_counter", models.PositiveBigIntegerField(default=0)),
                ("device_label", models.CharField(blank=True, max_length=128)),
                ("registered_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("last_used_at", models.DateTimeField(blank=True, null=True)),
                ("flagged_for_review", models.BooleanField(default=False)),
                ("flag_reason", models.TextField(blank=True)),
            ],
        ),
        migrations.CreateModel(
            name="AttendancePunch",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("employee_id", models.CharField(db_index=True, max_length=64)),
                ("date", models.DateField(db_index=True, default=django.utils.timezone.localdate)),
                (
                    "event_type",
                    models.CharField(
                        choices=[("check_in", "Check in"), ("check_out", "Check out")], max_length=16
                    ),
                ),
                ("timestamp", models.DateTimeField(default=django.utils.timezone.now)),
                ("location_verified", models.BooleanField(default=False)),
                ("distance_meters", models.FloatField(blank=True, null=True)),
                ("biometric_verified", models.BooleanField(default=False)),
                ("biometric_confidence", models.FloatField(blank=True, null=True)),
                (
                    "verification_method",
                    models.CharField(
                        choices=[
                            ("geo_face", "Location and face"),
                            ("geo_only", "Location only"),
                            ("face_only", "Face only"),
                            ("hardware_credential", "Hardware credential"),
                            ("manual", "Manual"),
                        ],
                        max_length=32,
                    ),
                ),
                ("device_info", models.TextField(blank=True)),
                ("latitude", models.FloatField(blank=True, null=True)),
                ("longitude", models.FloatField(blank=True, null=True)),
                ("site_id", models.CharField(blank=True, max_length=64)),
            ],
            options={
                "indexes": [models.Index(fields=["employee_id", "date"], name="verif_punch_emp_date_idx")],
            },
        ),
    ]
