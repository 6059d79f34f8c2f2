"""Tests for the monitoring instrumentation utilities."""

from __future__ import annotations

from django.test import SimpleTestCase, override_settings

from verification import monitoring


class MonitoringInstrumentationTests(SimpleTestCase):
    """Ensure monitoring helpers capture health signals as expected."""

    def setUp(self) -> None:
        monitoring.reset_for_tests()
        return super().setUp()

    def test_camera_start_and_stop_state(self) -> None:
        monitoring.record_camera_start(success=True, latency=0.25)
        snapshot = monitoring.get_health_snapshot()
        self.assertTrue(snapshot["camera"]["running"])
        self.assertEqual(snapshot["camera"]["last_start"]["status"], "success")
        self.assertEqual(snapshot["metrics"]["camera_start"]["success"], 1.0)

        monitoring.record_camera_stop(success=True)
        snapshot = monitoring.get_health_snapshot()
        self.assertFalse(snapshot["camera"]["running"])
        self.assertEqual(snapshot["camera"]["last_stop"]["status"], "success")

    def test_camera_failure_raises_alert(self) -> None:
        monitoring.record_camera_start(success=False, latency=0.1, error="busy")
        snapshot = monitoring.get_health_snapshot()
        self.assertEqual(snapshot["camera"]["last_error"], "busy")
        self.assertEqual(snapshot["metrics"]["camera_start"]["failure"], 1.0)
        self.assertEqual(snapshot["alerts"][-1]["type"], "camera_start_failure")

    @override_settings(VERIFICATION_CAMERA_START_ALERT_SECONDS=0.01)
    def test_slow_camera_start_raises_alert(self) -> None:
        monitoring.record_camera_start(success=True, latency=0.05)
        alert_types = {alert["type"] for alert in monitoring.get_health_snapshot()["alerts"]}
        self.assertIn("camera_start_latency", alert_types)

    @override_settings(VERIFICATION_MODEL_LOAD_ALERT_SECONDS=0.01)
    def test_slow_model_load_raises_alert(self) -> None:
        monitoring.record_model_load("ready", 0.05)
        snapshot = monitoring.get_health_snapshot()
        self.assertEqual(snapshot["models"]["last_load"]["status"], "ready")
        self.assertIn("model_load_latency", {alert["type"] for alert in snapshot["alerts"]})

    @override_settings(VERIFICATION_HEALTH_ALERT_HISTORY=2)
    def test_alert_history_is_bounded(self) -> None:
        for _ in range(5):
            monitoring.record_model_load("timeout", 1.0)
        self.assertEqual(len(monitoring.get_health_snapshot()["alerts"]), 2)

    def test_clone_alert_is_critical(self) -> None:
        monitoring.record_credential_clone("cred-1", "emp-1")
        snapshot = monitoring.get_health_snapshot()
        self.assertEqual(snapshot["metrics"]["clone_alerts"], 1.0)
        alert = snapshot["alerts"][-1]
        self.assertEqual(alert["severity"], "critical")
        self.assertEqual(alert["data"], {"credential_id": "cred-1", "employee_id": "emp-1"})

    def test_decision_and_geofence_counters(self) -> None:
        monitoring.record_punch_decision(True, "geo_face")
        monitoring.record_geofence_check(False, 250.0)
        self.assertEqual(
            monitoring.metric_value(
                "verification_punch_decisions", {"outcome": "accepted", "method": "geo_face"}
            ),
            1.0,
        )
        self.assertEqual(
            monitoring.metric_value("verification_geofence_checks", {"result": "outside"}), 1.0
        )

    def test_reset_clears_metrics(self) -> None:
        monitoring.record_biometric_match(True, 90.0)
        monitoring.reset_for_tests()
        self.assertIsNone(
            monitoring.metric_value("verification_biometric_matches", {"result": "match"})
        )

    def test_export_uses_prometheus_format(self) -> None:
        monitoring.record_capture_session("enrollment", "complete")
        payload, content_type = monitoring.export_metrics()
        self.assertIn(b"verification_capture_sessions_total", payload)
        self.assertTrue(content_type.startswith("text/plain"))

    def test_unknown_threshold_key(self) -> None:
        with self.assertRaises(KeyError):
            monitoring.get_threshold("frame_delay")
