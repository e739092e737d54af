"""Pure task <-> Google Calendar event mapping.

Nothing in this module performs I/O.  ``to_external_event`` turns a task or
subtask into the event body the sync orchestrator sends to Google;
``from_external_event`` turns a fetched event into the display record the UI
renders, tagged against locally known event-id links.

Date/time policy
----------------
- ``due_date`` + ``due_time``: timed event at that wall-clock time in the
  configured timezone, lasting ``duration`` minutes (60 when unset).
- ``due_date`` only: all-day event on the date portion of ``due_date``;
  anything from ``T`` onwards is discarded.  Google's all-day ``end.date`` is
  exclusive, so the event ends on the following day.
- neither: a one-hour timed event starting now, so creation never fails for
  missing date data.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field

from parallel_task.calendar.errors import MalformedMappingError

APP_MARKER = "Synced from Parallel Task"
DEFAULT_DURATION_MINUTES = 60

_WALL_CLOCK_FORMAT = "%Y-%m-%dT%H:%M:%S"

# ---------------------------------------------------------------------------
# Enumerations and lookup tables
# ---------------------------------------------------------------------------


class TaskKind(enum.StrEnum):
    """Which table a syncable record lives in."""

    TASK = "task"
    SUBTASK = "subtask"


class ColorSlot(enum.StrEnum):
    """Priority-derived color category of an app-synced event."""

    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    DEFAULT = "default"


PRIORITY_COLOR_SLOTS: dict[int, ColorSlot] = {
    4: ColorSlot.URGENT,
    3: ColorSlot.HIGH,
    2: ColorSlot.MEDIUM,
    1: ColorSlot.LOW,
}

# Google Calendar event color ids (1-11).
GOOGLE_COLOR_IDS: dict[ColorSlot, str] = {
    ColorSlot.URGENT: "11",  # red
    ColorSlot.HIGH: "6",  # orange
    ColorSlot.MEDIUM: "5",  # yellow
    ColorSlot.LOW: "8",  # gray
    ColorSlot.DEFAULT: "1",  # blue
}

PRIORITY_LABELS: dict[int, str] = {
    0: "No priority",
    1: "Low",
    2: "Medium",
    3: "High",
    4: "Urgent",
}

STATUS_GLYPHS: dict[str, str] = {
    "backlog": "📋",
    "todo": "📝",
    "in_progress": "🔄",
    "done": "✅",
    "cancelled": "❌",
}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class SyncableTask(BaseModel):
    """The subset of a task/subtask row the sync subsystem reads and writes.

    ``due_date`` is kept as loaded (a ``date``, or a string that may carry a
    time component); normalization happens in the mapper.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    kind: TaskKind = TaskKind.TASK
    title: str = ""
    description: str | None = None
    status: str = "todo"
    priority: int | None = None
    due_date: date | str | None = None
    due_time: time | str | None = None
    duration: int | None = None
    external_event_id: str | None = None
    sync_version: int = 1

    @property
    def is_synced(self) -> bool:
        return bool(self.external_event_id)


class EventTime(BaseModel):
    """Start or end of an event: either an all-day ``date`` or a wall-clock ``date_time``."""

    date: str | None = None
    date_time: str | None = None
    time_zone: str | None = None

    @property
    def is_all_day(self) -> bool:
        return self.date is not None and self.date_time is None

    def to_google(self) -> dict[str, str]:
        if self.date_time is not None:
            body = {"dateTime": self.date_time}
            if self.time_zone:
                body["timeZone"] = self.time_zone
            return body
        return {"date": self.date or ""}

    @classmethod
    def from_google(cls, payload: Any) -> EventTime:
        if not isinstance(payload, dict):
            return cls()
        return cls(
            date=payload.get("date"),
            date_time=payload.get("dateTime"),
            time_zone=payload.get("timeZone"),
        )

    @property
    def value(self) -> str | None:
        return self.date_time or self.date


class EventPayload(BaseModel):
    """Full event state written to Google on create and on every patch."""

    summary: str
    description: str
    start: EventTime
    end: EventTime
    color_slot: ColorSlot
    status: str

    @property
    def color_id(self) -> str:
        return GOOGLE_COLOR_IDS[self.color_slot]

    def to_google_body(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "description": self.description,
            "start": self.start.to_google(),
            "end": self.end.to_google(),
            "colorId": self.color_id,
            "status": self.status,
        }


class ExternalEvent(BaseModel):
    """A Google Calendar event as fetched; never stored locally."""

    id: str
    summary: str | None = None
    description: str | None = None
    start: EventTime = Field(default_factory=EventTime)
    end: EventTime = Field(default_factory=EventTime)
    color_id: str | None = None
    status: str | None = None
    html_link: str | None = None

    @classmethod
    def from_google(cls, item: dict[str, Any]) -> ExternalEvent:
        return cls(
            id=str(item.get("id", "")),
            summary=item.get("summary"),
            description=item.get("description"),
            start=EventTime.from_google(item.get("start")),
            end=EventTime.from_google(item.get("end")),
            color_id=item.get("colorId"),
            status=item.get("status"),
            html_link=item.get("htmlLink"),
        )


class TaskLink(BaseModel):
    """A locally known ``(task, external event id, status)`` triple."""

    task_id: str
    kind: TaskKind
    external_event_id: str
    status: str


class DisplayRecord(BaseModel):
    """An external event merged with its local linkage, for the calendar view."""

    id: str
    title: str
    description: str | None = None
    start: str | None = None
    end: str | None = None
    all_day: bool
    color: str | None = None
    html_link: str | None = None
    status: str | None = None
    task_id: str | None = None
    task_kind: TaskKind | None = None
    task_status: str | None = None
    is_from_app: bool

    @property
    def is_foreign(self) -> bool:
        return not self.is_from_app


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def color_slot_for_priority(priority: int | None) -> ColorSlot:
    return PRIORITY_COLOR_SLOTS.get(priority or 0, ColorSlot.DEFAULT)


def format_description(task: SyncableTask) -> str:
    """Build the human-readable event body, ending with the app marker."""
    glyph = STATUS_GLYPHS.get(task.status, STATUS_GLYPHS["backlog"])
    label = PRIORITY_LABELS.get(task.priority or 0, PRIORITY_LABELS[0])
    body = f"{glyph} Status: {task.status.replace('_', ' ')}\n🎯 Priority: {label}\n"
    if task.description:
        body += f"\n{task.description}"
    return body + f"\n\n---\n{APP_MARKER}"


def _date_portion(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = value.strip().split("T", 1)[0]
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise MalformedMappingError(f"Invalid due date: {value!r}") from exc


def _wall_time(value: time | str) -> time:
    if isinstance(value, time):
        return value.replace(tzinfo=None)
    try:
        return time.fromisoformat(value.strip())
    except ValueError as exc:
        raise MalformedMappingError(f"Invalid due time: {value!r}") from exc


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise MalformedMappingError(f"Unknown timezone: {name!r}") from exc


def _duration(minutes: int | None) -> timedelta:
    if minutes is None or minutes == 0:
        return timedelta(minutes=DEFAULT_DURATION_MINUTES)
    if minutes < 0:
        raise MalformedMappingError(f"Invalid duration: {minutes} minutes")
    return timedelta(minutes=minutes)


def _timed_range(start: datetime, length: timedelta, timezone: str) -> tuple[EventTime, EventTime]:
    # Add the duration on the UTC timeline so DST shifts keep the real length.
    end = (start.astimezone(UTC) + length).astimezone(start.tzinfo)
    return (
        EventTime(date_time=start.strftime(_WALL_CLOCK_FORMAT), time_zone=timezone),
        EventTime(date_time=end.strftime(_WALL_CLOCK_FORMAT), time_zone=timezone),
    )


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------


def to_external_event(
    task: SyncableTask,
    timezone: str,
    *,
    now: datetime | None = None,
) -> EventPayload:
    """Map *task* to the event state to write to Google.

    Raises
    ------
    MalformedMappingError
        If ``due_date``/``due_time`` cannot be parsed, the timezone is
        unknown, or the duration is negative.
    """
    zone = _zone(timezone)

    if task.due_date not in (None, "") and task.due_time not in (None, ""):
        local_start = datetime.combine(
            _date_portion(task.due_date), _wall_time(task.due_time), tzinfo=zone
        )
        start, end = _timed_range(local_start, _duration(task.duration), timezone)
    elif task.due_date not in (None, ""):
        day = _date_portion(task.due_date)
        start = EventTime(date=day.isoformat())
        end = EventTime(date=(day + timedelta(days=1)).isoformat())
    else:
        current = (now or datetime.now(UTC)).astimezone(zone).replace(microsecond=0)
        start, end = _timed_range(current, timedelta(hours=1), timezone)

    return EventPayload(
        summary=task.title,
        description=format_description(task),
        start=start,
        end=end,
        color_slot=color_slot_for_priority(task.priority),
        status="cancelled" if task.status == "cancelled" else "confirmed",
    )


def from_external_event(event: ExternalEvent, links: dict[str, TaskLink]) -> DisplayRecord:
    """Merge *event* with the local link registered for its id, if any.

    *links* maps external event id to the local link.  An event is app-owned
    when it is linked or when its description carries the app marker.
    """
    link = links.get(event.id)
    has_marker = bool(event.description and APP_MARKER in event.description)
    return DisplayRecord(
        id=event.id,
        title=event.summary or "Untitled",
        description=event.description,
        start=event.start.value,
        end=event.end.value,
        all_day=event.start.date_time is None,
        color=event.color_id,
        html_link=event.html_link,
        status=event.status,
        task_id=link.task_id if link else None,
        task_kind=link.kind if link else None,
        task_status=link.status if link else None,
        is_from_app=link is not None or has_marker,
    )


def index_links(links: Iterable[TaskLink]) -> dict[str, TaskLink]:
    """Key links by external event id for ``from_external_event``."""
    return {link.external_event_id: link for link in links}
