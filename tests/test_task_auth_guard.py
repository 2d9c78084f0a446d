"""Tests that worker task endpoints require authentication.

Verifies that endpoints protected by verify_task_auth return 401 when called
without credentials, and reach their handler when auth is mocked.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from rainbowpay.api.factory import create_app
from rainbowpay.api.routes.tasks_refunds import MAX_BATCH
from rainbowpay.api.task_auth import extract_bearer_token, verify_task_auth, verify_task_oidc


@pytest.fixture
def worker_client():
    """Create a test client for the worker app (no auth mock)."""
    app = create_app(role="worker")
    return TestClient(app)


class TestReconciliationSweepAuth:
    """Auth tests for POST /tasks/reconciliation/sweep."""

    def test_no_auth_returns_401(self, worker_client):
        response = worker_client.post("/tasks/reconciliation/sweep", json={})
        assert response.status_code == 401

    def test_with_valid_auth_runs_sweep(self, worker_client, store):
        store.add_booking(1, payment_status="paid")
        with patch(
            "rainbowpay.api.routes.tasks_reconciliation.verify_task_auth", return_value=True
        ):
            response = worker_client.post("/tasks/reconciliation/sweep", json={})
        assert response.status_code == 200
        body = response.json()
        assert body["dry_run"] is False
        assert body["mutated_booking_ids"] == [1]
        assert store.bookings[1]["payment_status"] == "not_paid"

    def test_sweep_error_returns_500(self, worker_client):
        with patch(
            "rainbowpay.api.routes.tasks_reconciliation.verify_task_auth", return_value=True
        ):
            with patch(
                "rainbowpay.api.routes.tasks_reconciliation.reconcile",
                side_effect=RuntimeError("db down"),
            ):
                response = worker_client.post("/tasks/reconciliation/sweep", json={})
        assert response.status_code == 500


class TestReleaseQueuedRefundsAuth:
    """Auth tests for POST /tasks/refunds/release-queued."""

    def test_no_auth_returns_401(self, worker_client):
        response = worker_client.post("/tasks/refunds/release-queued", json={"limit": 5})
        assert response.status_code == 401

    def test_with_valid_auth_passes_limit(self, worker_client):
        sweep = MagicMock()
        sweep.as_dict.return_value = {
            "examined": 0,
            "submitted": [],
            "still_queued": [],
            "resubmitted": [],
            "outcome_unknown": [],
        }
        with patch("rainbowpay.api.routes.tasks_refunds.verify_task_auth", return_value=True):
            with patch(
                "rainbowpay.api.routes.tasks_refunds.retry_queued_automatic_refunds",
                return_value=sweep,
            ) as mock_retry:
                response = worker_client.post("/tasks/refunds/release-queued", json={"limit": 5})
        assert response.status_code == 200
        assert response.json()["examined"] == 0
        mock_retry.assert_called_once_with(limit=5)

    def test_invalid_payload_returns_400(self, worker_client):
        with patch("rainbowpay.api.routes.tasks_refunds.verify_task_auth", return_value=True):
            response = worker_client.post(
                "/tasks/refunds/release-queued",
                content=b"not json",
                headers={"Content-Type": "application/json"},
            )
        assert response.status_code == 400

    @pytest.mark.parametrize("limit", [-1, 0, "5", 2.5, True, None])
    def test_bad_limit_returns_400(self, worker_client, limit):
        with patch("rainbowpay.api.routes.tasks_refunds.verify_task_auth", return_value=True):
            with patch(
                "rainbowpay.api.routes.tasks_refunds.retry_queued_automatic_refunds"
            ) as mock_retry:
                response = worker_client.post(
                    "/tasks/refunds/release-queued", json={"limit": limit}
                )
        assert response.status_code == 400
        mock_retry.assert_not_called()

    def test_non_object_payload_returns_400(self, worker_client):
        with patch("rainbowpay.api.routes.tasks_refunds.verify_task_auth", return_value=True):
            response = worker_client.post("/tasks/refunds/release-queued", json=[5])
        assert response.status_code == 400

    def test_large_limit_is_capped(self, worker_client):
        sweep = MagicMock()
        sweep.as_dict.return_value = {"examined": 0}
        with patch("rainbowpay.api.routes.tasks_refunds.verify_task_auth", return_value=True):
            with patch(
                "rainbowpay.api.routes.tasks_refunds.retry_queued_automatic_refunds",
                return_value=sweep,
            ) as mock_retry:
                response = worker_client.post(
                    "/tasks/refunds/release-queued", json={"limit": 10_000_000}
                )
        assert response.status_code == 200
        mock_retry.assert_called_once_with(limit=MAX_BATCH)

    def test_sweep_runs_off_the_event_loop(self, worker_client):
        seen = {}

        def fake_retry(*, limit):
            try:
                asyncio.get_running_loop()
                seen["on_loop"] = True
            except RuntimeError:
                seen["on_loop"] = False
            sweep = MagicMock()
            sweep.as_dict.return_value = {"examined": 0}
            return sweep

        with patch("rainbowpay.api.routes.tasks_refunds.verify_task_auth", return_value=True):
            with patch(
                "rainbowpay.api.routes.tasks_refunds.retry_queued_automatic_refunds", fake_retry
            ):
                response = worker_client.post("/tasks/refunds/release-queued")
        assert response.status_code == 200
        assert seen == {"on_loop": False}


class TestVerifyTaskAuth:
    """verify_task_auth / verify_task_oidc behavior."""

    def _request(self, headers: dict[str, str]) -> MagicMock:
        request = MagicMock()
        request.headers = headers
        return request

    def test_extract_bearer_token(self):
        assert extract_bearer_token(self._request({"Authorization": "Bearer abc"})) == "abc"
        assert extract_bearer_token(self._request({"Authorization": "Basic abc"})) is None
        assert extract_bearer_token(self._request({})) is None

    def test_local_dev_secret_accepted(self):
        env = {
            "TASKS_OIDC_AUDIENCE": "rainbowpay-tasks-local",
            "INTERNAL_TASK_SECRET": "s3cret",
        }
        with patch.dict("os.environ", env, clear=True):
            request = self._request({"X-Internal-Task-Secret": "s3cret"})
            assert verify_task_auth(request) is True

    def test_local_dev_wrong_secret_rejected(self):
        env = {
            "TASKS_OIDC_AUDIENCE": "rainbowpay-tasks-local",
            "INTERNAL_TASK_SECRET": "s3cret",
        }
        with patch.dict("os.environ", env, clear=True):
            request = self._request({"X-Internal-Task-Secret": "nope"})
            assert verify_task_auth(request) is False

    def test_secret_ignored_outside_local_dev(self):
        env = {
            "TASKS_OIDC_AUDIENCE": "https://worker.example.com",
            "INTERNAL_TASK_SECRET": "s3cret",
        }
        with patch.dict("os.environ", env, clear=True):
            request = self._request({"X-Internal-Task-Secret": "s3cret"})
            assert verify_task_auth(request) is False

    def test_oidc_fails_closed_without_audience(self):
        with patch.dict("os.environ", {}, clear=True):
            assert verify_task_oidc("some.jwt.token") is False

    def test_oidc_valid_token(self):
        with patch.dict("os.environ", {"TASKS_OIDC_AUDIENCE": "https://worker.example.com"}, clear=True):
            with patch(
                "rainbowpay.api.task_auth.id_token.verify_oauth2_token",
                return_value={"email": "tasks@example.iam.gserviceaccount.com"},
            ) as mock_verify:
                assert verify_task_oidc("some.jwt.token") is True
        assert mock_verify.call_args.kwargs["audience"] == "https://worker.example.com"

    def test_oidc_invalid_token(self):
        with patch.dict("os.environ", {"TASKS_OIDC_AUDIENCE": "https://worker.example.com"}, clear=True):
            with patch(
                "rainbowpay.api.task_auth.id_token.verify_oauth2_token",
                side_effect=ValueError("Token expired"),
            ):
                assert verify_task_oidc("some.jwt.token") is False

    def test_oidc_service_account_mismatch(self):
        env = {
            "TASKS_OIDC_AUDIENCE": "https://worker.example.com",
            "TASKS_OIDC_SERVICE_ACCOUNT": "tasks@example.iam.gserviceaccount.com",
        }
        with patch.dict("os.environ", env, clear=True):
            with patch(
                "rainbowpay.api.task_auth.id_token.verify_oauth2_token",
                return_value={"email": "other@example.iam.gserviceaccount.com"},
            ):
                assert verify_task_oidc("some.jwt.token") is False
