"""
Configuration utilities for the verification pipeline.

Every tunable value is read through these getters so tests can override them
with ``override_settings`` and the pipeline never hard-codes thresholds.
"""

from __future__ import annotations

from django.conf import settings


def get_descriptor_distance_threshold() -> float:
    """Return the descriptor distance mapped to zero confidence."""
    return float(getattr(settings, "VERIFICATION_DESCRIPTOR_DISTANCE_THRESHOLD", 0.6))


def get_match_confidence_threshold() -> float:
    """Return the minimum confidence (0-100) accepted as a match."""
    return float(getattr(settings, "VERIFICATION_MATCH_CONFIDENCE_THRESHOLD", 70.0))


def get_descriptor_dimension() -> int:
    return int(getattr(settings, "VERIFICATION_DESCRIPTOR_DIMENSION", 128))


def is_quality_check_enabled() -> bool:
    return getattr(settings, "VERIFICATION_QUALITY_CHECK_ENABLED", True)


def get_detection_interval() -> float:
    """Return the face-detection probe interval in seconds."""
    return float(getattr(settings, "VERIFICATION_DETECTION_INTERVAL_SECONDS", 0.3))


def get_model_load_timeout() -> float:
    return float(getattr(settings, "VERIFICATION_MODEL_LOAD_TIMEOUT_SECONDS", 5.0))


def get_model_poll_interval() -> float:
    return float(getattr(settings, "VERIFICATION_MODEL_POLL_INTERVAL_SECONDS", 0.5))


def get_model_poll_attempts() -> int:
    return int(getattr(settings, "VERIFICATION_MODEL_POLL_ATTEMPTS", 60))


def get_camera_source() -> int:
    return int(getattr(settings, "VERIFICATION_CAMERA_SOURCE", 0))


def get_camera_warmup() -> float:
    return float(getattr(settings, "VERIFICATION_CAMERA_WARMUP_SECONDS", 0.5))


def get_camera_restart_delay() -> float:
    """Return the pause between releasing and re-acquiring the camera per pose."""
    return float(getattr(settings, "VERIFICATION_CAMERA_RESTART_DELAY_SECONDS", 0.3))


def get_position_fix_timeout() -> float:
    return float(getattr(settings, "VERIFICATION_POSITION_FIX_TIMEOUT_SECONDS", 30.0))


def get_position_fix_max_age() -> float:
    """Return the oldest cached position fix (seconds) that is still accepted."""
    return float(getattr(settings, "VERIFICATION_POSITION_FIX_MAX_AGE_SECONDS", 60.0))


def get_authenticator_timeout() -> float:
    return float(getattr(settings, "VERIFICATION_AUTHENTICATOR_TIMEOUT_SECONDS", 60.0))


def get_challenge_bytes() -> int:
    return int(getattr(settings, "VERIFICATION_CHALLENGE_BYTES", 32))


def get_challenge_ttl() -> float:
    return float(getattr(settings, "VERIFICATION_CHALLENGE_TTL_SECONDS", 120.0))


def get_relying_party_id() -> str:
    return getattr(settings, "VERIFICATION_RELYING_PARTY_ID", "localhost")


def get_relying_party_name() -> str:
    return getattr(settings, "VERIFICATION_RELYING_PARTY_NAME", "HR System")


def get_default_site_id() -> str | None:
    return getattr(settings, "VERIFICATION_DEFAULT_SITE_ID", None)
