"""Production settings overriding the defaults with hardened options."""

from __future__ import annotations

from django.core.exceptions import ImproperlyConfigured

from .base import *  # noqa: F401,F403
from .base import DATABASES, SECRET_KEY, DEFAULT_SECRET_KEY, build_postgres_database_config
from .sentry import initialize_sentry

DEBUG = False

if SECRET_KEY == DEFAULT_SECRET_KEY:
    raise ImproperlyConfigured("DJANGO_SECRET_KEY must be set in production.")

if DATABASES["default"].get("ENGINE") == "django.db.backends.sqlite3":
    DATABASES["default"] = build_postgres_database_config()

SESSION_COOKIE_SECURE = True
CSRF_COOKIE_SECURE = True

initialize_sentry()
