"""Pydantic request/response models for the calendar sync endpoints."""

from __future__ import annotations

from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from parallel_task.calendar.mapper import DisplayRecord, TaskKind
from parallel_task.calendar.sync import SyncOutcome, SyncResult


class SyncRequest(BaseModel):
    """Body of ``POST /api/calendar/sync``.

    ``create`` and ``update`` both run the sync decision (create when the
    task is unlinked, patch otherwise); ``delete`` unsyncs.
    """

    model_config = ConfigDict(extra="forbid")

    task_id: UUID
    kind: TaskKind = TaskKind.TASK
    action: Literal["create", "update", "delete"] = "create"


class SyncResponse(BaseModel):
    """Outcome of a successful sync or unsync."""

    success: bool = True
    outcome: SyncOutcome
    kind: TaskKind
    task_id: str
    event_id: str | None = None

    @classmethod
    def from_result(cls, result: SyncResult) -> SyncResponse:
        return cls(
            outcome=result.outcome,
            kind=result.kind,
            task_id=result.task_id,
            event_id=result.event_id,
        )


class CalendarEventsResponse(BaseModel):
    """Upcoming events merged with local task links."""

    events: list[DisplayRecord]


class WebhookAck(BaseModel):
    """Acknowledgement returned to Google for every push notification."""

    received: bool = True


class WebhookStatus(BaseModel):
    status: str = "Webhook endpoint active"
