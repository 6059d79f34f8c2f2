"""Sentry configuration helpers used by production deployments."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping, MutableMapping
from typing import Any

from django.core.exceptions import ImproperlyConfigured

import sentry_sdk
from sentry_sdk.integrations.django import DjangoIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from . import base as base_settings

__all__ = ["initialize_sentry", "scrub_event"]

_SENSITIVE_HEADERS = {"authorization", "cookie", "set-cookie"}
# Biometric and credential material must never leave the process.
_SENSITIVE_KEYS = {
    "descriptor",
    "descriptors",
    "pose_descriptors",
    "challenge",
    "signature",
    "public_key",
    "authenticator_data",
    "attestation",
    "latitude",
    "longitude",
}
_FILTERED = "[Filtered]"


def _get_sample_rate(var_name: str, default: float) -> float:
    """Return a tracing sample rate constrained between 0.0 and 1.0 inclusive."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default
    try:
        value = float(raw_value)
    except ValueError as exc:
        raise ImproperlyConfigured(
            f"{var_name} must be a floating point number between 0.0 and 1.0."
        ) from exc
    if not 0.0 <= value <= 1.0:
        raise ImproperlyConfigured(f"{var_name} must be between 0.0 and 1.0 when provided.")
    return value


def _scrub_headers(headers: MutableMapping[str, Any]) -> None:
    for header in list(headers):
        if header.lower() in _SENSITIVE_HEADERS:
            headers[header] = _FILTERED


def _scrub_mapping(payload: Any) -> Any:
    """Recursively replace sensitive keys in dictionaries and lists."""

    if isinstance(payload, MutableMapping):
        for key in list(payload):
            if str(key).lower() in _SENSITIVE_KEYS:
                payload[key] = _FILTERED
            else:
                payload[key] = _scrub_mapping(payload[key])
    elif isinstance(payload, list):
        return [_scrub_mapping(item) for item in payload]
    return payload


def scrub_event(event: dict[str, Any], *, send_default_pii: bool = False) -> dict[str, Any]:
    """Strip headers, biometric payloads and credential material from an event."""

    request = event.get("request")
    if isinstance(request, dict):
        headers = request.get("headers")
        if isinstance(headers, MutableMapping):
            _scrub_headers(headers)
        if "data" in request:
            request["data"] = _scrub_mapping(request["data"])

    extra = event.get("extra")
    if isinstance(extra, Mapping):
        event["extra"] = _scrub_mapping(dict(extra))

    for entry in (event.get("exception") or {}).get("values", []) or []:
        for frame in (entry.get("stacktrace") or {}).get("frames", []) or []:
            if isinstance(frame.get("vars"), dict):
                _scrub_mapping(frame["vars"])

    if not send_default_pii:
        event.pop("user", None)
    return event


def initialize_sentry() -> None:
    """Initialise Sentry SDK when a DSN is supplied via the environment."""

    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return

    send_default_pii = base_settings._get_bool_env("SENTRY_SEND_DEFAULT_PII", default=False)

    def _before_send(event: dict[str, Any], _hint: object | None) -> dict[str, Any] | None:
        return scrub_event(event, send_default_pii=send_default_pii)

    sentry_sdk.init(
        dsn=dsn,
        environment=os.environ.get("SENTRY_ENVIRONMENT", "production"),
        release=os.environ.get("SENTRY_RELEASE"),
        integrations=[
            DjangoIntegration(transaction_style="url"),
            LoggingIntegration(level=None, event_level=logging.ERROR),
        ],
        traces_sample_rate=_get_sample_rate("SENTRY_TRACES_SAMPLE_RATE", default=0.0),
        send_default_pii=send_default_pii,
        before_send=_before_send,
    )
