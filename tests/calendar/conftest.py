"""In-memory stand-ins for the sync subsystem's collaborators.

The fakes keep the same async signatures as ``TaskRepository``,
``CredentialManager`` and ``GoogleCalendarClient`` so the orchestrator and
the reconciliation listener run unchanged against them.
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from parallel_task.calendar.errors import (
    CalendarSyncError,
    ExternalConflictError,
    ExternalNotFoundError,
    NotConnectedError,
)
from parallel_task.calendar.mapper import ExternalEvent, SyncableTask, TaskKind, TaskLink
from parallel_task.calendar.sync import SyncOrchestrator
from parallel_task.calendar.token_manager import AccessToken

USER_ID = "11111111-1111-1111-1111-111111111111"
TASK_ID = "22222222-2222-2222-2222-222222222222"
FIXED_NOW = datetime(2025, 3, 1, 9, 30, tzinfo=UTC)


class FakeTaskRepository:
    """Task rows keyed by ``(kind, id)`` with a real compare-and-set."""

    def __init__(self) -> None:
        self.rows: dict[tuple[TaskKind, str], SyncableTask] = {}

    def add(self, task: SyncableTask) -> SyncableTask:
        self.rows[(task.kind, task.id)] = task
        return task

    def row(self, kind: TaskKind, task_id: str) -> SyncableTask:
        return self.rows[(kind, task_id)]

    async def get(self, kind: TaskKind, task_id: str, user_id: str) -> SyncableTask | None:
        task = self.rows.get((TaskKind(kind), task_id))
        return task.model_copy() if task is not None else None

    async def compare_and_set_event_id(
        self, kind: TaskKind, task_id: str, expected_version: int, event_id: str | None
    ) -> int:
        key = (TaskKind(kind), task_id)
        current = self.rows.get(key)
        if current is None or current.sync_version != expected_version:
            raise ExternalConflictError(
                kind=str(kind),
                task_id=task_id,
                expected_version=expected_version,
                actual_version=current.sync_version if current else None,
            )
        version = current.sync_version + 1
        self.rows[key] = current.model_copy(
            update={"external_event_id": event_id, "sync_version": version}
        )
        return version

    async def list_links(self, user_id: str) -> list[TaskLink]:
        return [
            TaskLink(
                task_id=task.id,
                kind=task.kind,
                external_event_id=task.external_event_id,
                status=task.status,
            )
            for task in self.rows.values()
            if task.external_event_id
        ]


class FakeCalendar:
    """Google Calendar double holding events in a dict.

    ``fail_with`` makes every call raise that error.  ``create_event`` yields
    to the event loop before answering so concurrent syncs interleave.
    """

    def __init__(self) -> None:
        self.events: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.fail_with: CalendarSyncError | None = None
        self._ids = itertools.count(1)

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def create_event(self, access_token: str, body: dict[str, Any]) -> str:
        self.calls.append(("create", None))
        self._check()
        await asyncio.sleep(0)
        event_id = f"evt_{next(self._ids)}"
        self.events[event_id] = {**body, "id": event_id}
        return event_id

    async def patch_event(self, access_token: str, event_id: str, body: dict[str, Any]) -> None:
        self.calls.append(("patch", event_id))
        self._check()
        if event_id not in self.events:
            raise ExternalNotFoundError(event_id)
        self.events[event_id].update(body)

    async def delete_event(self, access_token: str, event_id: str) -> None:
        self.calls.append(("delete", event_id))
        self._check()
        self.events.pop(event_id, None)

    async def get_event(self, access_token: str, event_id: str) -> ExternalEvent | None:
        self.calls.append(("get", event_id))
        self._check()
        item = self.events.get(event_id)
        return ExternalEvent.from_google(item) if item is not None else None

    async def list_events(
        self,
        access_token: str,
        *,
        time_min: datetime,
        time_max: datetime | None = None,
        limit: int = 100,
    ) -> list[ExternalEvent]:
        self.calls.append(("list", None))
        self._check()
        return [ExternalEvent.from_google(item) for item in list(self.events.values())[:limit]]


class FakeCredentials:
    """Credential Manager double; ``token=None`` means not connected."""

    def __init__(self, token: str | None = "ya29.test-access") -> None:
        self.token = token
        self.calls = 0

    async def get_valid_access_token(self, user_id: str) -> AccessToken | None:
        self.calls += 1
        if self.token is None:
            return None
        return AccessToken(token=self.token, expires_at=FIXED_NOW + timedelta(hours=1))

    async def require_access_token(self, user_id: str) -> AccessToken:
        token = await self.get_valid_access_token(user_id)
        if token is None:
            raise NotConnectedError(user_id)
        return token


def make_log_pool() -> MagicMock:
    """Pool mock whose ``execute`` records sync log inserts."""
    pool = MagicMock()
    pool.execute = AsyncMock(return_value="INSERT 0 1")
    return pool


def log_entries(pool: MagicMock) -> list[tuple[str, str, str | None, str | None, str | None]]:
    """``(action, status, task_id, event_id, error_message)`` for every sync log insert."""
    entries = []
    for call in pool.execute.await_args_list:
        args = call.args
        if "calendar_sync_log" not in args[0]:
            continue
        entries.append((args[4], args[5], args[2], args[3], args[6]))
    return entries


@pytest.fixture
def repo() -> FakeTaskRepository:
    return FakeTaskRepository()


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def credentials() -> FakeCredentials:
    return FakeCredentials()


@pytest.fixture
def log_pool() -> MagicMock:
    return make_log_pool()


@pytest.fixture
def orchestrator(repo, credentials, calendar, log_pool) -> SyncOrchestrator:
    return SyncOrchestrator(
        repo,
        credentials,
        calendar,
        log_pool,
        timezone="Europe/Paris",
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def sync_log(log_pool):
    """Callable returning the sync log entries written so far."""
    return lambda: log_entries(log_pool)
