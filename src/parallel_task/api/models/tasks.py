"""Pydantic models for the task edit endpoints."""

from __future__ import annotations

from datetime import date
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

TaskStatus = Literal["backlog", "todo", "in_progress", "done", "cancelled"]


class TaskUpdate(BaseModel):
    """Editable task fields; omitted fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    status: TaskStatus | None = None
    priority: int | None = Field(default=None, ge=0, le=4)
    due_date: date | None = None
    assignee_id: UUID | None = None
    position: int | None = Field(default=None, ge=0)

    @field_validator("title", "status", "priority", "position")
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        # Only runs for values the client sent; omitted fields keep their default.
        if value is None:
            raise ValueError("field cannot be null")
        return value

    def changes(self) -> dict[str, Any]:
        """Fields the client actually sent, including explicit nulls on nullable fields."""
        return self.model_dump(exclude_unset=True)


class CalendarSyncReport(BaseModel):
    """Result of the calendar re-sync that follows an edit of a linked task.

    A failed re-sync never rolls the edit back; it is reported here instead.
    """

    success: bool
    outcome: str | None = None
    event_id: str | None = None
    error_code: str | None = None
    message: str | None = None
    needs_auth: bool = False


class TaskResponse(BaseModel):
    """A task row plus, after an edit, the calendar re-sync report."""

    task: dict[str, Any]
    calendar_sync: CalendarSyncReport | None = None
