"""Monitoring utilities for camera, model and verification health."""

from __future__ import annotations

import datetime as _dt
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Optional

from django.conf import settings

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


@dataclass
class _HealthState:
    """Mutable snapshot of the latest monitoring information."""

    camera_running: bool = False
    last_camera_start: Optional[Dict[str, Any]] = None
    last_camera_stop: Optional[Dict[str, Any]] = None
    last_model_load: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None


_STATE = _HealthState()
_STATE_LOCK = threading.Lock()
_ALERTS: deque[Dict[str, Any]] = deque()

_THRESHOLD_SETTING_NAMES: Dict[str, str] = {
    "camera_start": "VERIFICATION_CAMERA_START_ALERT_SECONDS",
    "model_load": "VERIFICATION_MODEL_LOAD_ALERT_SECONDS",
}

_DEFAULT_THRESHOLDS: Dict[str, float] = {
    "camera_start": 3.0,
    "model_load": 4.0,
}


def _max_alert_history() -> int:
    value = getattr(settings, "VERIFICATION_HEALTH_ALERT_HISTORY", 50)
    try:
        numeric = int(value)
    except (TypeError, ValueError):  # pragma: no cover - defensive
        numeric = 50
    return max(1, numeric)


def _now_timestamp() -> float:
    return time.time()


def _format_timestamp(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return _dt.datetime.fromtimestamp(ts, tz=_dt.timezone.utc).isoformat()


def _create_event(status: str, latency: Optional[float], error: Optional[str]) -> Dict[str, Any]:
    return {
        "timestamp": _now_timestamp(),
        "status": status,
        "latency": latency,
        "error": error,
    }


def _append_alert(
    event_type: str, severity: str, message: str, data: Optional[Dict[str, Any]] = None
) -> None:
    payload = {
        "timestamp": _format_timestamp(_now_timestamp()),
        "type": event_type,
        "severity": severity,
        "message": message,
        "data": data or {},
    }
    with _STATE_LOCK:
        _ALERTS.append(payload)
        max_alerts = _max_alert_history()
        while len(_ALERTS) > max_alerts:
            _ALERTS.popleft()


def _build_metrics() -> None:
    global REGISTRY
    global CAMERA_START_COUNTER
    global CAMERA_START_LATENCY
    global CAMERA_STOP_COUNTER
    global CAMERA_RUNNING_GAUGE
    global MODEL_LOAD_COUNTER
    global MODEL_LOAD_DURATION
    global GEOFENCE_COUNTER
    global GEOFENCE_DISTANCE
    global BIOMETRIC_MATCH_COUNTER
    global MATCH_CONFIDENCE_HISTOGRAM
    global CAPTURE_SESSION_COUNTER
    global HARDWARE_AUTH_COUNTER
    global CREDENTIAL_CLONE_COUNTER
    global PUNCH_DECISION_COUNTER

    REGISTRY = CollectorRegistry(auto_describe=True)

    CAMERA_START_COUNTER = Counter(
        "verification_camera_start",
        "Total camera acquisition attempts",
        labelnames=("status",),
        registry=REGISTRY,
    )
    CAMERA_START_LATENCY = Histogram(
        "verification_camera_start_latency_seconds",
        "Camera acquisition latency in seconds",
        buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0),
        registry=REGISTRY,
    )
    CAMERA_STOP_COUNTER = Counter(
        "verification_camera_stop",
        "Total camera releases",
        labelnames=("status",),
        registry=REGISTRY,
    )
    CAMERA_RUNNING_GAUGE = Gauge(
        "verification_camera_running",
        "1 while a capture session holds the camera",
        registry=REGISTRY,
    )
    MODEL_LOAD_COUNTER = Counter(
        "verification_model_load",
        "Biometric model readiness outcomes",
        labelnames=("status",),
        registry=REGISTRY,
    )
    MODEL_LOAD_DURATION = Histogram(
        "verification_model_load_seconds",
        "Time taken for biometric models to become ready",
        buckets=(0.01, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        registry=REGISTRY,
    )
    GEOFENCE_COUNTER = Counter(
        "verification_geofence_checks",
        "Geofence checks by result",
        labelnames=("result",),
        registry=REGISTRY,
    )
    GEOFENCE_DISTANCE = Histogram(
        "verification_geofence_distance_meters",
        "Distance between the reported position and the site",
        buckets=(10, 25, 50, 100, 250, 500, 1000, 5000, 25000),
        registry=REGISTRY,
    )
    BIOMETRIC_MATCH_COUNTER = Counter(
        "verification_biometric_matches",
        "Biometric comparisons by result",
        labelnames=("result",),
        registry=REGISTRY,
    )
    MATCH_CONFIDENCE_HISTOGRAM = Histogram(
        "verification_match_confidence",
        "Confidence of biometric comparisons (0-100)",
        buckets=(10, 20, 30, 40, 50, 60, 70, 80, 90, 100),
        registry=REGISTRY,
    )
    CAPTURE_SESSION_COUNTER = Counter(
        "verification_capture_sessions",
        "Capture sessions by mode and terminal state",
        labelnames=("mode", "outcome"),
        registry=REGISTRY,
    )
    HARDWARE_AUTH_COUNTER = Counter(
        "verification_hardware_credential",
        "Hardware credential operations by outcome",
        labelnames=("operation", "status"),
        registry=REGISTRY,
    )
    CREDENTIAL_CLONE_COUNTER = Counter(
        "verification_credential_clone_alerts",
        "Signature counter regressions flagged for review",
        registry=REGISTRY,
    )
    PUNCH_DECISION_COUNTER = Counter(
        "verification_punch_decisions",
        "Attendance decisions by outcome and method",
        labelnames=("outcome", "method"),
        registry=REGISTRY,
    )


_build_metrics()


def reset_for_tests() -> None:
    """Reset in-memory state and metrics (intended for test suites)."""

    with _STATE_LOCK:
        global _STATE
        _STATE = _HealthState()
        _ALERTS.clear()
    _build_metrics()


def get_threshold(key: str) -> float:
    """Fetch the configured alert threshold for the supplied key."""

    if key not in _THRESHOLD_SETTING_NAMES:
        raise KeyError(f"Unknown threshold key: {key}")
    setting = _THRESHOLD_SETTING_NAMES[key]
    default = _DEFAULT_THRESHOLDS[key]
    value = getattr(settings, setting, default)
    try:
        numeric = float(value)
    except (TypeError, ValueError):  # pragma: no cover - defensive
        numeric = default
    return numeric


def metric_value(name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
    """Return the current value of a sample in the private registry."""

    labels = labels or {}
    sample = REGISTRY.get_sample_value(name, labels)
    if sample is None and not name.endswith("_total"):
        sample = REGISTRY.get_sample_value(f"{name}_total", labels)
    return sample


def record_camera_start(
    success: bool, latency: Optional[float], error: Optional[str] = None
) -> None:
    """Record metrics and internal state for a camera acquisition attempt."""

    status = "success" if success else "failure"
    CAMERA_START_COUNTER.labels(status=status).inc()
    if latency is not None:
        CAMERA_START_LATENCY.observe(latency)
    with _STATE_LOCK:
        if success:
            _STATE.camera_running = True
            _STATE.last_error = None
            CAMERA_RUNNING_GAUGE.set(1)
        else:
            _STATE.last_error = error
            CAMERA_RUNNING_GAUGE.set(0)
        _STATE.last_camera_start = _create_event(status, latency, error)
    log_extra = {
        "event": "camera_start",
        "status": status,
        "latency_seconds": latency,
    }
    if success:
        logger.info("Camera acquired", extra=log_extra)
        threshold = get_threshold("camera_start")
        if latency is not None and latency > threshold:
            message = f"Camera start latency {latency:.3f}s exceeded threshold {threshold:.3f}s"
            logger.warning(message, extra={**log_extra, "threshold": threshold})
            _append_alert(
                "camera_start_latency",
                "warning",
                message,
                {"latency": latency, "threshold": threshold},
            )
    else:
        message = "Failed to acquire camera"
        logger.error(message, extra={**log_extra, "error": error})
        _append_alert(
            "camera_start_failure",
            "error",
            message,
            {"error": error or "unknown", "latency": latency},
        )


def record_camera_stop(success: bool, *, error: Optional[str] = None) -> None:
    """Record a camera release."""

    status = "success" if success else "failure"
    CAMERA_STOP_COUNTER.labels(status=status).inc()
    with _STATE_LOCK:
        _STATE.camera_running = False
        CAMERA_RUNNING_GAUGE.set(0)
        if not success:
            _STATE.last_error = error
        _STATE.last_camera_stop = _create_event(status, None, error)
    if success:
        logger.info("Camera released", extra={"event": "camera_stop", "status": status})
    else:
        message = "Camera failed to release cleanly"
        logger.error(message, extra={"event": "camera_stop", "status": status, "error": error})
        _append_alert("camera_stop_failure", "error", message, {"error": error or "unknown"})


def record_model_load(status: str, duration: Optional[float]) -> None:
    """Record the outcome of a model readiness check (ready, timeout or failed)."""

    MODEL_LOAD_COUNTER.labels(status=status).inc()
    if duration is not None:
        MODEL_LOAD_DURATION.observe(duration)
    with _STATE_LOCK:
        _STATE.last_model_load = _create_event(status, duration, None)
    log_extra = {"event": "model_load", "status": status, "duration_seconds": duration}
    if status == "ready":
        logger.info("Biometric models ready", extra=log_extra)
        threshold = get_threshold("model_load")
        if duration is not None and duration > threshold:
            message = f"Model load took {duration:.3f}s, above {threshold:.3f}s"
            logger.warning(message, extra={**log_extra, "threshold": threshold})
            _append_alert("model_load_latency", "warning", message, {"duration": duration})
    else:
        message = f"Biometric models not ready ({status})"
        logger.error(message, extra=log_extra)
        _append_alert("model_load_failure", "error", message, {"duration": duration})


def record_geofence_check(verified: bool, distance_m: float) -> None:
    GEOFENCE_COUNTER.labels(result="inside" if verified else "outside").inc()
    GEOFENCE_DISTANCE.observe(distance_m)


def record_biometric_match(verified: bool, confidence: float) -> None:
    BIOMETRIC_MATCH_COUNTER.labels(result="match" if verified else "mismatch").inc()
    MATCH_CONFIDENCE_HISTOGRAM.observe(confidence)


def record_capture_session(mode: str, outcome: str) -> None:
    CAPTURE_SESSION_COUNTER.labels(mode=mode, outcome=outcome).inc()


def record_hardware_credential(operation: str, status: str) -> None:
    HARDWARE_AUTH_COUNTER.labels(operation=operation, status=status).inc()


def record_credential_clone(credential_id: str, employee_id: str) -> None:
    """Raise a critical alert for a signature counter regression."""

    CREDENTIAL_CLONE_COUNTER.inc()
    message = "Hardware credential counter regression; credential flagged for review"
    logger.critical(
        message,
        extra={"event": "credential_clone", "credential_id": credential_id, "employee_id": employee_id},
    )
    _append_alert(
        "credential_clone",
        "critical",
        message,
        {"credential_id": credential_id, "employee_id": employee_id},
    )


def record_punch_decision(accepted: bool, method: str) -> None:
    PUNCH_DECISION_COUNTER.labels(outcome="accepted" if accepted else "rejected", method=method).inc()


def get_health_snapshot() -> Dict[str, Any]:
    """Return a serialisable view of the current health state."""

    with _STATE_LOCK:
        state = _STATE
        alerts = list(_ALERTS)
        camera = {
            "running": state.camera_running,
            "last_start": state.last_camera_start,
            "last_stop": state.last_camera_stop,
            "last_error": state.last_error,
        }
        models = {"last_load": state.last_model_load}

    return {
        "camera": camera,
        "models": models,
        "metrics": {
            "camera_start": {
                "success": metric_value("verification_camera_start_total", {"status": "success"}) or 0.0,
                "failure": metric_value("verification_camera_start_total", {"status": "failure"}) or 0.0,
            },
            "clone_alerts": metric_value("verification_credential_clone_alerts_total") or 0.0,
        },
        "alerts": alerts,
    }


def export_metrics() -> tuple[bytes, str]:
    """Return the Prometheus exposition payload and its content type."""

    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
