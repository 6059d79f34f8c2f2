"""Tests for position-fix acquisition."""

from __future__ import annotations

import asyncio

import pytest

from verification.errors import (
    DeviceUnavailable,
    InvalidCoordinate,
    PermissionDenied,
    VerificationTimeout,
)
from verification.geolocation import (
    GeolocationError,
    GeolocationErrorCode,
    acquire_position_fix,
)


def _acquire(provider, **kwargs):
    kwargs.setdefault("timeout", 1.0)
    kwargs.setdefault("max_age", 60.0)
    return asyncio.run(acquire_position_fix(provider, **kwargs))


def test_fix_is_returned(fakes):
    fix = _acquire(fakes.FakeGeolocation())

    assert (fix.latitude, fix.longitude) == fakes.KUWAIT_CITY
    assert fix.accuracy_m == 5.0


def test_slow_provider_times_out(fakes):
    provider = fakes.FakeGeolocation(delay=1.0)

    with pytest.raises(VerificationTimeout) as excinfo:
        _acquire(provider, timeout=0.01)

    assert str(excinfo.value).startswith("Failed to get your location.")
    assert excinfo.value.retryable is True


@pytest.mark.parametrize(
    "code,expected",
    [
        (GeolocationErrorCode.DENIED, PermissionDenied),
        (GeolocationErrorCode.UNAVAILABLE, DeviceUnavailable),
        (GeolocationErrorCode.TIMEOUT, VerificationTimeout),
    ],
)
def test_provider_errors_are_translated(fakes, code, expected):
    provider = fakes.FakeGeolocation(error=GeolocationError(code))

    with pytest.raises(expected) as excinfo:
        _acquire(provider)

    assert "Failed to get your location" in str(excinfo.value)
    assert excinfo.value.remediation


def test_denied_message_points_at_browser_settings(fakes):
    provider = fakes.FakeGeolocation(error=GeolocationError("denied"))

    with pytest.raises(PermissionDenied) as excinfo:
        _acquire(provider)

    assert "denied" in str(excinfo.value)
    assert "location access" in excinfo.value.remediation


def test_platform_permission_error_is_denied(fakes):
    provider = fakes.FakeGeolocation(error=PermissionError("blocked"))

    with pytest.raises(PermissionDenied):
        _acquire(provider)


def test_platform_os_error_is_unavailable(fakes):
    provider = fakes.FakeGeolocation(error=OSError("no gps"))

    with pytest.raises(DeviceUnavailable):
        _acquire(provider)


def test_stale_fix_is_rejected(fakes):
    provider = fakes.FakeGeolocation()
    provider.timestamp = 1_000.0

    with pytest.raises(VerificationTimeout):
        _acquire(provider, max_age=30.0, clock=lambda: 1_100.0)


def test_fix_within_max_age_is_accepted(fakes):
    provider = fakes.FakeGeolocation()
    provider.timestamp = 1_000.0

    fix = _acquire(provider, max_age=30.0, clock=lambda: 1_020.0)

    assert fix.timestamp == 1_000.0


def test_out_of_range_fix_is_rejected(fakes):
    provider = fakes.FakeGeolocation(latitude=123.0)

    with pytest.raises(InvalidCoordinate):
        _acquire(provider)


def test_unknown_error_code_is_rejected():
    with pytest.raises(ValueError):
        GeolocationError("sideways")


def test_timings_default_to_settings(fakes, settings):
    settings.VERIFICATION_POSITION_FIX_TIMEOUT_SECONDS = 0.01
    provider = fakes.FakeGeolocation(delay=1.0)

    with pytest.raises(VerificationTimeout):
        asyncio.run(acquire_position_fix(provider))
