"""App configuration for the attendance verification pipeline."""

from django.apps import AppConfig


class VerificationConfig(AppConfig):
    """Register the verification models and pipeline with Django."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "verification"
    verbose_name = "Attendance verification"
