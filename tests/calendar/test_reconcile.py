"""Tests for parallel_task.calendar.reconcile.ReconciliationListener."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from parallel_task.calendar.errors import ExternalTransientError, NotConnectedError
from parallel_task.calendar.mapper import APP_MARKER, SyncableTask, TaskKind
from parallel_task.calendar.reconcile import (
    CHECK_UPDATES_ACTION,
    NotificationOutcome,
    ReconciliationListener,
    TimeWindow,
)

pytestmark = pytest.mark.unit

USER_ID = "11111111-1111-1111-1111-111111111111"
OTHER_USER = "33333333-3333-3333-3333-333333333333"
TASK_ID = "22222222-2222-2222-2222-222222222222"
START = datetime(2025, 3, 1, tzinfo=UTC)


@pytest.fixture
def listener(log_pool, repo, credentials, calendar) -> ReconciliationListener:
    log_pool.fetchval = AsyncMock(return_value=None)
    log_pool.fetch = AsyncMock(return_value=[])
    return ReconciliationListener(log_pool, repo, credentials, calendar)


def _linked_task(event_id: str = "evt_1", **overrides) -> SyncableTask:
    fields = {"id": TASK_ID, "title": "Write report", "external_event_id": event_id}
    fields.update(overrides)
    return SyncableTask(**fields)


def _queue_updates(pool) -> list[tuple]:
    return [
        call.args[1:]
        for call in pool.execute.await_args_list
        if "UPDATE calendar_sync_queue" in call.args[0]
    ]


class TestTimeWindow:
    def test_end_must_follow_start(self):
        with pytest.raises(ValueError):
            TimeWindow(start=START, end=START)

    def test_open_ended(self):
        assert TimeWindow(start=START).end is None

    def test_naive_bounds_taken_as_utc(self):
        window = TimeWindow(start=START, end=datetime(2025, 3, 2))

        assert window.end == datetime(2025, 3, 2, tzinfo=UTC)

    def test_offset_bounds_normalized_to_utc(self):
        paris = timezone(timedelta(hours=1))
        window = TimeWindow(start=datetime(2025, 3, 1, 1, 0, tzinfo=paris))

        assert window.start == START
        assert window.start.tzinfo is UTC


class TestListUpcoming:
    async def test_tags_linked_and_foreign_events(self, listener, repo, calendar):
        calendar.events["evt_1"] = {"id": "evt_1", "summary": "Write report"}
        calendar.events["evt_2"] = {"id": "evt_2", "summary": "Lunch"}
        calendar.events["evt_3"] = {
            "id": "evt_3",
            "summary": "Old task",
            "description": f"notes\n\n---\n{APP_MARKER}",
        }
        repo.add(_linked_task("evt_1", status="in_progress"))

        records = await listener.list_upcoming(
            USER_ID, TimeWindow(start=START, end=START + timedelta(days=7))
        )

        by_id = {record.id: record for record in records}
        assert by_id["evt_1"].task_id == TASK_ID
        assert by_id["evt_1"].task_status == "in_progress"
        assert by_id["evt_2"].is_foreign
        assert by_id["evt_3"].is_from_app
        assert by_id["evt_3"].task_id is None

    async def test_not_connected(self, listener, credentials):
        credentials.token = None

        with pytest.raises(NotConnectedError):
            await listener.list_upcoming(USER_ID, TimeWindow(start=START))


class TestNotifications:
    async def test_sync_handshake_acknowledged(self, listener, log_pool):
        outcome = await listener.on_external_change_notification("chan-1", "sync")

        assert outcome == NotificationOutcome.ACKNOWLEDGED
        log_pool.fetchval.assert_not_awaited()

    async def test_exists_enqueues_check_updates(self, listener, log_pool):
        log_pool.fetchval.return_value = USER_ID

        outcome = await listener.on_external_change_notification("chan-1", "exists")

        assert outcome == NotificationOutcome.ENQUEUED
        sql, *args = log_pool.execute.await_args.args
        assert "INSERT INTO calendar_sync_queue" in sql
        assert args == [USER_ID, CHECK_UPDATES_ACTION]

    async def test_duplicate_notifications_enqueue_twice(self, listener, log_pool):
        log_pool.fetchval.return_value = USER_ID

        await listener.on_external_change_notification("chan-1", "exists")
        await listener.on_external_change_notification("chan-1", "exists")

        assert log_pool.execute.await_count == 2

    async def test_unknown_channel_ignored(self, listener, log_pool):
        outcome = await listener.on_external_change_notification("chan-x", "exists")

        assert outcome == NotificationOutcome.IGNORED
        log_pool.execute.assert_not_awaited()

    @pytest.mark.parametrize(("channel", "state"), [(None, "exists"), ("chan-1", "not_exists")])
    async def test_other_states_ignored(self, listener, channel, state):
        assert (
            await listener.on_external_change_notification(channel, state)
            == NotificationOutcome.IGNORED
        )

    async def test_storage_failure_reported_not_raised(self, listener, log_pool):
        log_pool.fetchval.side_effect = OSError("connection reset")

        outcome = await listener.on_external_change_notification("chan-1", "exists")

        assert outcome == NotificationOutcome.FAILED


class TestDrainQueue:
    async def test_live_event_keeps_link(self, listener, log_pool, repo, calendar):
        calendar.events["evt_1"] = {"id": "evt_1", "status": "confirmed"}
        repo.add(_linked_task("evt_1"))
        log_pool.fetch.return_value = [{"id": "q1", "user_id": USER_ID}]

        report = await listener.drain_sync_queue()

        assert report.claimed == 1
        assert report.done == 1
        assert report.links_cleared == 0
        assert repo.row(TaskKind.TASK, TASK_ID).external_event_id == "evt_1"
        assert _queue_updates(log_pool) == [(["q1"], "done", None)]

    async def test_duplicate_items_for_one_user_reconciled_once(
        self, listener, log_pool, repo, calendar
    ):
        repo.add(_linked_task("evt_gone"))
        log_pool.fetch.return_value = [
            {"id": "q1", "user_id": USER_ID},
            {"id": "q2", "user_id": USER_ID},
        ]

        report = await listener.drain_sync_queue()

        assert report.users == 1
        assert report.done == 2
        assert report.links_cleared == 1
        assert [op for op, _ in calendar.calls] == ["get"]
        assert _queue_updates(log_pool) == [(["q1", "q2"], "done", None)]

    async def test_removed_event_clears_link(self, listener, log_pool, repo, sync_log):
        repo.add(_linked_task("evt_gone"))
        log_pool.fetch.return_value = [{"id": "q1", "user_id": USER_ID}]

        await listener.drain_sync_queue()

        task = repo.row(TaskKind.TASK, TASK_ID)
        assert task.external_event_id is None
        assert task.sync_version == 2
        assert sync_log() == [("sync", "success", TASK_ID, "evt_gone", None)]

    async def test_cancelled_event_clears_link_of_active_task(
        self, listener, log_pool, repo, calendar
    ):
        calendar.events["evt_1"] = {"id": "evt_1", "status": "cancelled"}
        repo.add(_linked_task("evt_1", status="todo"))
        log_pool.fetch.return_value = [{"id": "q1", "user_id": USER_ID}]

        report = await listener.drain_sync_queue()

        assert report.links_cleared == 1

    async def test_cancelled_event_of_cancelled_task_kept(
        self, listener, log_pool, repo, calendar
    ):
        calendar.events["evt_1"] = {"id": "evt_1", "status": "cancelled"}
        repo.add(_linked_task("evt_1", status="cancelled"))
        log_pool.fetch.return_value = [{"id": "q1", "user_id": USER_ID}]

        report = await listener.drain_sync_queue()

        assert report.links_cleared == 0
        assert repo.row(TaskKind.TASK, TASK_ID).external_event_id == "evt_1"

    async def test_failures_mark_items_failed_per_user(self, listener, log_pool):
        async def reconcile(user_id: str) -> int:
            if user_id == USER_ID:
                raise ExternalTransientError("Google unavailable", status_code=503)
            return 0

        listener.reconcile_user = AsyncMock(side_effect=reconcile)
        log_pool.fetch.return_value = [
            {"id": "q1", "user_id": USER_ID},
            {"id": "q2", "user_id": OTHER_USER},
        ]

        report = await listener.drain_sync_queue()

        assert report.users == 2
        assert report.failed == 1
        assert report.done == 1
        assert report.errors == {USER_ID: "Google unavailable"}
        assert (["q1"], "failed", "Google unavailable") in _queue_updates(log_pool)

    async def test_unexpected_error_fails_items_and_continues(self, listener, log_pool, repo):
        repo.list_links = AsyncMock(side_effect=[ConnectionError("db connection lost"), []])
        log_pool.fetch.return_value = [
            {"id": "q1", "user_id": USER_ID},
            {"id": "q2", "user_id": OTHER_USER},
        ]

        report = await listener.drain_sync_queue()

        assert report.failed == 1
        assert report.done == 1
        assert report.errors == {USER_ID: "db connection lost"}
        assert _queue_updates(log_pool) == [
            (["q1"], "failed", "db connection lost"),
            (["q2"], "done", None),
        ]

    async def test_disconnected_user_fails_items(self, listener, log_pool, credentials):
        credentials.token = None
        log_pool.fetch.return_value = [{"id": "q1", "user_id": USER_ID}]

        report = await listener.drain_sync_queue()

        assert report.failed == 1
        assert _queue_updates(log_pool)[0][1] == "failed"

    async def test_empty_queue(self, listener):
        report = await listener.drain_sync_queue(limit=10)

        assert report.claimed == 0
        assert report.users == 0

    async def test_limit_must_be_positive(self, listener):
        with pytest.raises(ValueError):
            await listener.drain_sync_queue(limit=0)
