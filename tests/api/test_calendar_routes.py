"""Tests for the /api/calendar endpoints."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from parallel_task.calendar.credentials import Credential
from parallel_task.calendar.errors import (
    ExternalTransientError,
    MalformedMappingError,
    NotConnectedError,
    TaskNotFoundError,
)
from parallel_task.calendar.mapper import DisplayRecord, TaskKind
from parallel_task.calendar.reconcile import NotificationOutcome
from parallel_task.calendar.sync import SyncOutcome, SyncResult

pytestmark = pytest.mark.unit

USER_ID = "11111111-1111-1111-1111-111111111111"
TASK_ID = "22222222-2222-2222-2222-222222222222"


def _result(outcome: SyncOutcome, event_id: str | None = "evt_1", kind=TaskKind.TASK):
    return SyncResult(outcome=outcome, kind=kind, task_id=TASK_ID, event_id=event_id)


class TestSyncEndpoint:
    async def test_create_runs_sync(self, client, services):
        services.orchestrator.sync.return_value = _result(SyncOutcome.CREATED)

        response = await client.post("/api/calendar/sync", json={"task_id": TASK_ID})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "outcome": "created",
            "kind": "task",
            "task_id": TASK_ID,
            "event_id": "evt_1",
        }
        services.orchestrator.sync.assert_awaited_once_with(TaskKind.TASK, TASK_ID, USER_ID)

    async def test_update_of_subtask_runs_sync(self, client, services):
        services.orchestrator.sync.return_value = _result(
            SyncOutcome.UPDATED, kind=TaskKind.SUBTASK
        )

        response = await client.post(
            "/api/calendar/sync",
            json={"task_id": TASK_ID, "kind": "subtask", "action": "update"},
        )

        assert response.json()["outcome"] == "updated"
        services.orchestrator.sync.assert_awaited_once_with(TaskKind.SUBTASK, TASK_ID, USER_ID)

    async def test_delete_action_runs_unsync(self, client, services):
        services.orchestrator.unsync.return_value = _result(SyncOutcome.DELETED, event_id=None)

        response = await client.post(
            "/api/calendar/sync", json={"task_id": TASK_ID, "action": "delete"}
        )

        assert response.json()["outcome"] == "deleted"
        services.orchestrator.sync.assert_not_awaited()

    async def test_not_connected_needs_auth(self, client, services):
        services.orchestrator.sync.side_effect = NotConnectedError(USER_ID)

        response = await client.post("/api/calendar/sync", json={"task_id": TASK_ID})

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "NOT_CONNECTED"
        assert error["needs_auth"] is True

    @pytest.mark.parametrize(
        ("exc", "status", "code"),
        [
            (TaskNotFoundError("task", TASK_ID), 404, "TASK_NOT_FOUND"),
            (MalformedMappingError("Unparseable due date"), 422, "MALFORMED_MAPPING"),
            (ExternalTransientError("timed out"), 502, "EXTERNAL_TRANSIENT"),
        ],
    )
    async def test_sync_errors_map_to_status(self, client, services, exc, status, code):
        services.orchestrator.sync.side_effect = exc

        response = await client.post("/api/calendar/sync", json={"task_id": TASK_ID})

        assert response.status_code == status
        assert response.json()["error"]["code"] == code
        assert response.json()["error"]["needs_auth"] is False

    @pytest.mark.parametrize(
        "body",
        [
            {"task_id": "not-a-uuid"},
            {"task_id": TASK_ID, "action": "archive"},
            {"task_id": TASK_ID, "kind": "epic"},
            {"task_id": TASK_ID, "event_id": "evt_1"},
        ],
    )
    async def test_invalid_body_rejected(self, client, services, body):
        response = await client.post("/api/calendar/sync", json=body)

        assert response.status_code == 422
        services.orchestrator.sync.assert_not_awaited()


class TestUnsyncEndpoint:
    async def test_delete_sync(self, client, services):
        services.orchestrator.unsync.return_value = _result(SyncOutcome.NOOP, event_id=None)

        response = await client.delete(
            "/api/calendar/sync", params={"task_id": TASK_ID, "kind": "subtask"}
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "noop"
        services.orchestrator.unsync.assert_awaited_once_with(TaskKind.SUBTASK, TASK_ID, USER_ID)


class TestEventsEndpoint:
    async def test_returns_tagged_events(self, client, services):
        services.listener.list_upcoming.return_value = [
            DisplayRecord(
                id="evt_1",
                title="Write report",
                start="2025-03-10",
                end="2025-03-11",
                all_day=True,
                task_id=TASK_ID,
                task_kind=TaskKind.TASK,
                task_status="todo",
                is_from_app=True,
            )
        ]

        response = await client.get(
            "/api/calendar/events",
            params={
                "time_min": "2025-03-01T00:00:00Z",
                "time_max": "2025-03-31T00:00:00Z",
                "max_results": 20,
            },
        )

        assert response.status_code == 200
        event = response.json()["events"][0]
        assert event["task_id"] == TASK_ID
        assert event["is_from_app"] is True
        args, kwargs = services.listener.list_upcoming.await_args
        assert args[0] == USER_ID
        assert args[1].start == datetime(2025, 3, 1, tzinfo=UTC)
        assert args[1].end == datetime(2025, 3, 31, tzinfo=UTC)
        assert kwargs == {"limit": 20}

    async def test_window_defaults_to_now(self, client, services):
        before = datetime.now(UTC)

        await client.get("/api/calendar/events")

        window = services.listener.list_upcoming.await_args.args[1]
        assert window.start >= before
        assert window.end is None

    async def test_naive_time_max_taken_as_utc(self, client, services):
        response = await client.get(
            "/api/calendar/events", params={"time_max": "2030-01-01T00:00:00"}
        )

        assert response.status_code == 200
        window = services.listener.list_upcoming.await_args.args[1]
        assert window.end == datetime(2030, 1, 1, tzinfo=UTC)

    async def test_inverted_window_is_bad_request(self, client):
        response = await client.get(
            "/api/calendar/events",
            params={"time_min": "2025-03-31T00:00:00Z", "time_max": "2025-03-01T00:00:00Z"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_max_results_bounded(self, client):
        response = await client.get("/api/calendar/events", params={"max_results": 1000})

        assert response.status_code == 422


class TestStatusEndpoint:
    async def test_not_connected(self, client):
        response = await client.get("/api/calendar/status")

        assert response.json() == {
            "connected": False,
            "expires_at": None,
            "is_expired": False,
            "last_updated": None,
        }

    async def test_connected(self, client, services, future):
        services.credential_store.get.return_value = Credential(
            user_id=USER_ID, access_token="a", refresh_token="r", expires_at=future
        )

        body = (await client.get("/api/calendar/status")).json()

        assert body["connected"] is True
        assert body["is_expired"] is False
        assert "access_token" not in body
        assert "refresh_token" not in body

    async def test_expired_token_still_connected(self, client, services):
        services.credential_store.get.return_value = Credential(
            user_id=USER_ID,
            access_token="a",
            refresh_token="r",
            expires_at=datetime.now(UTC) - timedelta(minutes=1),
        )

        body = (await client.get("/api/calendar/status")).json()

        assert body["connected"] is True
        assert body["is_expired"] is True


class TestDisconnect:
    async def test_disconnect_deletes_credential_and_logs(self, client, services, logged):
        services.credential_store.delete.return_value = True

        response = await client.delete("/api/calendar/status")

        assert response.json() == {"success": True, "disconnected": True}
        services.credential_store.delete.assert_awaited_once_with(USER_ID)
        assert logged() == [(USER_ID, None, None, "delete", "success")]

    async def test_disconnect_when_not_connected(self, client, logged):
        response = await client.delete("/api/calendar/status")

        assert response.json() == {"success": True, "disconnected": False}
        assert logged() == []


class TestWebhook:
    async def test_notification_forwarded(self, client, services):
        services.listener.on_external_change_notification.return_value = (
            NotificationOutcome.ENQUEUED
        )

        response = await client.post(
            "/api/calendar/webhook",
            headers={
                "X-Goog-Channel-ID": "chan-1",
                "X-Goog-Resource-State": "exists",
                "X-Goog-Resource-ID": "res-1",
            },
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        services.listener.on_external_change_notification.assert_awaited_once_with(
            "chan-1", "exists"
        )

    async def test_failed_enqueue_still_acknowledged(self, client, services):
        services.listener.on_external_change_notification.return_value = (
            NotificationOutcome.FAILED
        )

        response = await client.post("/api/calendar/webhook")

        assert response.status_code == 200

    async def test_status_probe(self, client):
        response = await client.get("/api/calendar/webhook")

        assert response.json() == {"status": "Webhook endpoint active"}
