"""
Django settings for the attendance verification project.

Sensitive values and every verification tunable are read from environment
variables so deployments never need to edit this file.
"""

import json
import os
import sys
import warnings
from pathlib import Path

from django.core.exceptions import ImproperlyConfigured

import dj_database_url
from cryptography.fernet import Fernet

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DEV_KEY_CACHE_PATH = Path(
    os.environ.get("DEV_ENCRYPTION_KEY_FILE", BASE_DIR / ".dev_encryption_keys.json")
)


def _get_bool_env(var_name: str, default: bool = False) -> bool:
    """Return a boolean from an environment variable."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default
    return raw_value.lower() in {"1", "true", "yes", "on"}


def _parse_int_env(var_name: str, default: int, *, minimum: int | None = None) -> int:
    """Return an integer from the environment, enforcing an optional minimum."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default

    try:
        value = int(raw_value)
    except ValueError as exc:
        raise ImproperlyConfigured(f"{var_name} must be an integer if provided.") from exc

    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{var_name} must be >= {minimum} if provided.")

    return value


def _get_float_env(
    var_name: str,
    default: float,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
    positive: bool = False,
) -> float:
    """Return a float from the environment with optional bounds."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default

    try:
        value = float(raw_value)
    except ValueError as exc:
        raise ImproperlyConfigured(f"{var_name} must be a float if provided.") from exc

    if positive and not value > 0:
        raise ImproperlyConfigured(f"{var_name} must be > 0 if provided.")
    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{var_name} must be >= {minimum} if provided.")
    if maximum is not None and value > maximum:
        raise ImproperlyConfigured(f"{var_name} must be <= {maximum} if provided.")

    return value


# Detect if we're running tests
TESTING = "test" in sys.argv or (len(sys.argv) > 0 and "pytest" in sys.argv[0])

DEFAULT_SECRET_KEY = "a-secure-default-key-for-development-only"

DEBUG = _get_bool_env("DJANGO_DEBUG", default=not TESTING)

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", DEFAULT_SECRET_KEY)
if SECRET_KEY == DEFAULT_SECRET_KEY and not (DEBUG or TESTING):
    raise ImproperlyConfigured(
        "DJANGO_SECRET_KEY must be set to a secure value when DJANGO_DEBUG is not enabled."
    )

ALLOWED_HOSTS = [
    host.strip()
    for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,[::1]").split(",")
    if host.strip()
]


# --- Face data encryption ---


def _validate_fernet_key(key: str | bytes, setting_name: str) -> bytes:
    """Ensure the provided key material is a valid Fernet key."""

    key_bytes = key.encode() if isinstance(key, str) else key
    try:
        Fernet(key_bytes)
    except (ValueError, TypeError) as exc:
        raise ImproperlyConfigured(
            f"{setting_name} must be a valid 32-byte base64-encoded Fernet key."
        ) from exc
    return key_bytes


def _load_cached_dev_key(var_name: str) -> bytes | None:
    """Load a previously generated development key from disk."""

    if not DEV_KEY_CACHE_PATH.exists():
        return None

    try:
        cache = json.loads(DEV_KEY_CACHE_PATH.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        warnings.warn(f"Ignoring invalid dev key cache file: {exc}")
        return None

    cached_value = cache.get(var_name)
    if not cached_value:
        return None

    try:
        return _validate_fernet_key(cached_value, var_name)
    except ImproperlyConfigured:
        warnings.warn(f"Ignoring invalid cached {var_name}; regenerating.")
        return None


def _persist_dev_key(var_name: str, key: bytes) -> None:
    """Persist generated development keys so encrypted rows survive restarts."""

    try:
        existing = (
            json.loads(DEV_KEY_CACHE_PATH.read_text()) if DEV_KEY_CACHE_PATH.exists() else {}
        )
    except (OSError, json.JSONDecodeError):
        existing = {}

    existing[var_name] = key.decode()

    try:
        DEV_KEY_CACHE_PATH.write_text(json.dumps(existing, indent=2))
    except OSError as exc:
        warnings.warn(f"Unable to persist dev encryption key cache: {exc}")


def _load_face_data_encryption_key() -> bytes:
    """Load the Fernet key used to encrypt stored face descriptors."""

    key = os.environ.get("FACE_DATA_ENCRYPTION_KEY")
    if key:
        return _validate_fernet_key(key, "FACE_DATA_ENCRYPTION_KEY")

    if TESTING:
        # Test databases are throwaway, so the key can be too.
        return Fernet.generate_key()

    if DEBUG:
        cached_key = _load_cached_dev_key("FACE_DATA_ENCRYPTION_KEY")
        if cached_key:
            return cached_key
        key_bytes = Fernet.generate_key()
        _persist_dev_key("FACE_DATA_ENCRYPTION_KEY", key_bytes)
        return key_bytes

    raise ImproperlyConfigured(
        "FACE_DATA_ENCRYPTION_KEY environment variable must be set in production environments."
    )


FACE_DATA_ENCRYPTION_KEY = _load_face_data_encryption_key()


# --- Application Configuration ---

INSTALLED_APPS = [
    "verification.apps.VerificationConfig",
    "django.contrib.contenttypes",
]

MIDDLEWARE: list[str] = []


# --- Database Configuration ---

default_db_url = os.environ.get("DATABASE_URL", f"sqlite:///{(BASE_DIR / 'db.sqlite3').as_posix()}")

DATABASES = {
    "default": dj_database_url.parse(
        default_db_url,
        conn_max_age=_parse_int_env("DATABASE_CONN_MAX_AGE", 0, minimum=0),
    ),
}


def build_postgres_database_config() -> dict[str, object]:
    """Return a PostgreSQL configuration derived from discrete environment variables."""

    return {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME", "attendance"),
        "USER": os.environ.get("DB_USER", "attendance"),
        "PASSWORD": os.environ.get("DB_PASSWORD", "attendance"),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
        "CONN_MAX_AGE": _parse_int_env("DB_CONN_MAX_AGE", 600, minimum=0),
    }


# --- Internationalization ---

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("DJANGO_TIME_ZONE", "Asia/Kuwait")
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


# --- Logging ---

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "verbose"},
    },
    "loggers": {
        "verification": {
            "handlers": ["console"],
            "level": os.environ.get("VERIFICATION_LOG_LEVEL", "INFO"),
            "propagate": True,
        },
    },
}


# --- Verification pipeline ---

# Descriptor distance that maps to zero confidence. Lower values are stricter.
VERIFICATION_DESCRIPTOR_DISTANCE_THRESHOLD = _get_float_env(
    "VERIFICATION_DESCRIPTOR_DISTANCE_THRESHOLD",
    default=0.6,
    positive=True,
)
# Minimum confidence (0-100) accepted as a biometric match.
VERIFICATION_MATCH_CONFIDENCE_THRESHOLD = _get_float_env(
    "VERIFICATION_MATCH_CONFIDENCE_THRESHOLD",
    default=70.0,
    minimum=0.0,
    maximum=100.0,
)
VERIFICATION_DESCRIPTOR_DIMENSION = _parse_int_env(
    "VERIFICATION_DESCRIPTOR_DIMENSION",
    default=128,
    minimum=1,
)
VERIFICATION_QUALITY_CHECK_ENABLED = _get_bool_env(
    "VERIFICATION_QUALITY_CHECK_ENABLED",
    default=True,
)

VERIFICATION_DETECTION_INTERVAL_SECONDS = _get_float_env(
    "VERIFICATION_DETECTION_INTERVAL_SECONDS",
    default=0.3,
    minimum=0.0,
)
VERIFICATION_MODEL_LOAD_TIMEOUT_SECONDS = _get_float_env(
    "VERIFICATION_MODEL_LOAD_TIMEOUT_SECONDS",
    default=5.0,
    minimum=0.0,
)
VERIFICATION_MODEL_POLL_INTERVAL_SECONDS = _get_float_env(
    "VERIFICATION_MODEL_POLL_INTERVAL_SECONDS",
    default=0.5,
    minimum=0.0,
)
VERIFICATION_MODEL_POLL_ATTEMPTS = _parse_int_env(
    "VERIFICATION_MODEL_POLL_ATTEMPTS",
    default=60,
    minimum=0,
)

VERIFICATION_CAMERA_SOURCE = _parse_int_env("VERIFICATION_CAMERA_SOURCE", default=0, minimum=0)
VERIFICATION_CAMERA_WARMUP_SECONDS = _get_float_env(
    "VERIFICATION_CAMERA_WARMUP_SECONDS",
    default=0.5,
    minimum=0.0,
)
VERIFICATION_CAMERA_RESTART_DELAY_SECONDS = _get_float_env(
    "VERIFICATION_CAMERA_RESTART_DELAY_SECONDS",
    default=0.3,
    minimum=0.0,
)

VERIFICATION_POSITION_FIX_TIMEOUT_SECONDS = _get_float_env(
    "VERIFICATION_POSITION_FIX_TIMEOUT_SECONDS",
    default=30.0,
    minimum=0.0,
)
VERIFICATION_POSITION_FIX_MAX_AGE_SECONDS = _get_float_env(
    "VERIFICATION_POSITION_FIX_MAX_AGE_SECONDS",
    default=60.0,
    minimum=0.0,
)

VERIFICATION_AUTHENTICATOR_TIMEOUT_SECONDS = _get_float_env(
    "VERIFICATION_AUTHENTICATOR_TIMEOUT_SECONDS",
    default=60.0,
    minimum=1.0,
)
VERIFICATION_CHALLENGE_BYTES = _parse_int_env(
    "VERIFICATION_CHALLENGE_BYTES",
    default=32,
    minimum=32,
)
VERIFICATION_CHALLENGE_TTL_SECONDS = _get_float_env(
    "VERIFICATION_CHALLENGE_TTL_SECONDS",
    default=120.0,
    minimum=1.0,
)
VERIFICATION_RELYING_PARTY_ID = os.environ.get("VERIFICATION_RELYING_PARTY_ID", "localhost")
VERIFICATION_RELYING_PARTY_NAME = os.environ.get("VERIFICATION_RELYING_PARTY_NAME", "HR System")
VERIFICATION_DEFAULT_SITE_ID = os.environ.get("VERIFICATION_DEFAULT_SITE_ID") or None

VERIFICATION_CAMERA_START_ALERT_SECONDS = _get_float_env(
    "VERIFICATION_CAMERA_START_ALERT_SECONDS",
    default=3.0,
    minimum=0.0,
)
VERIFICATION_MODEL_LOAD_ALERT_SECONDS = _get_float_env(
    "VERIFICATION_MODEL_LOAD_ALERT_SECONDS",
    default=4.0,
    minimum=0.0,
)
VERIFICATION_HEALTH_ALERT_HISTORY = _parse_int_env(
    "VERIFICATION_HEALTH_ALERT_HISTORY",
    default=50,
    minimum=1,
)
