import logging
import unittest
from unittest.mock import Mock, patch

from fastapi.testclient import TestClient

logging.disable(logging.CRITICAL)


def _status_payload(**overrides):
    payload = {
        "status": "healthy",
        "last_sync": "2024-06-01T12:00:00Z",
        "last_issue_sync": "2024-06-01T11:58:00Z",
        "last_completed_sync": "never",
        "sync_token_age": "incremental",
        "poll_count": 4,
        "time_since_last_poll_minutes": 3,
        "polling_enabled": True,
        "polling_interval_minutes": 15,
        "known_group_count": 2,
        "pending_backfill_group_ids": [],
        "last_error": None,
        "recent_error_count": 0,
        "consecutive_failures": 0,
        "error_count_since_last_success": 0,
        "last_successful_sync": "2024-06-01T12:00:00Z",
    }
    payload.update(overrides)
    return payload


class SyncApiTests(unittest.TestCase):
    def setUp(self):
        from taskbridge.main import app
        from taskbridge.models.base import get_db

        def _fake_db():
            yield Mock()

        app.dependency_overrides[get_db] = _fake_db
        self.addCleanup(app.dependency_overrides.clear)
        # Not used as a context manager: the lifespan (DB init, scheduler) stays off
        self.client = TestClient(app)

        patcher = patch("taskbridge.api.sync.SyncService")
        self.service_cls = patcher.start()
        self.addCleanup(patcher.stop)
        self.service = self.service_cls.return_value

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "healthy", "service": "TaskBridge"})

    def test_status(self):
        self.service.status.return_value = _status_payload(
            status="degraded",
            consecutive_failures=1,
            last_error={
                "timestamp": "2024-06-01T12:00:00Z",
                "operation": "github-polling:acme/widgets",
                "message": "GitHub API error: 502 - bad gateway",
                "code": "HTTP_502",
            },
            warning="1 consecutive sync failure(s)",
        )

        response = self.client.get("/api/sync/status")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "degraded")
        self.assertEqual(body["last_error"]["code"], "HTTP_502")
        self.assertEqual(body["warning"], "1 consecutive sync failure(s)")

    def test_status_failure_is_500(self):
        self.service.status.side_effect = RuntimeError("db locked")
        response = self.client.get("/api/sync/status")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["detail"], "db locked")

    def test_trigger_returns_cycle_result(self):
        from taskbridge.services.sync_service import SyncResult

        self.service.run_cycle.return_value = SyncResult(success=False, duration_ms=0, error="Sync already in progress")

        response = self.client.post("/api/sync/trigger")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "Sync already in progress")
        self.assertIn("github", body["results"])

    def test_reset_groups_passes_request_through(self):
        self.service.reset_groups.return_value = {"success": True, "reset_groups": []}

        response = self.client.post(
            "/api/sync/reset-groups", json={"mode": "specific", "group_ids": ["300"], "dry_run": True}
        )

        self.assertEqual(response.status_code, 200)
        self.service.reset_groups.assert_called_once_with("specific", ["300"], True)

    def test_reset_groups_error_mapping(self):
        from taskbridge.services.hierarchy import ConfigurationError
        from taskbridge.services.sync_service import SyncInProgressError

        cases = [
            (ValueError('mode must be "all" or "specific"'), 400),
            (ConfigurationError("No ORG_MAPPINGS configured"), 400),
            (SyncInProgressError("Sync already in progress"), 409),
            (RuntimeError("boom"), 500),
        ]
        for error, status in cases:
            with self.subTest(error=type(error).__name__):
                self.service.reset_groups.side_effect = error
                response = self.client.post("/api/sync/reset-groups", json={"mode": "all"})
                self.assertEqual(response.status_code, status)
                self.assertEqual(response.json()["detail"], str(error))

    def test_backfill_builds_request(self):
        from taskbridge.services.manual_backfill import BackfillRequest

        self.service.backfill.return_value = {"mode": "org", "summary": {"total": 0}}

        response = self.client.post(
            "/api/sync/backfill", json={"mode": "org", "owner": "acme", "dry_run": True, "limit": 5}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["mode"], "org")
        self.service.backfill.assert_called_once_with(
            BackfillRequest(mode="org", owner="acme", state="open", dry_run=True, limit=5)
        )

    def test_backfill_error_mapping(self):
        from taskbridge.services.hierarchy import ConfigurationError
        from taskbridge.services.sync_service import SyncInProgressError

        cases = [
            (ValueError("owner is required for single-repo and org modes"), 400),
            (ConfigurationError("ORG_MAPPINGS is required for this mode"), 400),
            (SyncInProgressError("Sync already in progress"), 409),
            (RuntimeError("boom"), 500),
        ]
        for error, status in cases:
            with self.subTest(error=type(error).__name__):
                self.service.backfill.side_effect = error
                response = self.client.post("/api/sync/backfill", json={"mode": "org"})
                self.assertEqual(response.status_code, status)
                self.assertEqual(response.json()["detail"], str(error))

    def test_backfill_requires_mode(self):
        response = self.client.post("/api/sync/backfill", json={})
        self.assertEqual(response.status_code, 422)
        self.service.backfill.assert_not_called()
