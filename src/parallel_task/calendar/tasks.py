"""Task/subtask persistence for the sync subsystem.

Reads the syncable subset of ``tasks`` and ``subtasks`` rows, applies the
per-user visibility rule (the user owns the task's project or is one of its
members), and writes ``google_calendar_event_id`` under compare-and-set on
``sync_version``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from parallel_task.calendar.errors import ExternalConflictError
from parallel_task.calendar.mapper import SyncableTask, TaskKind, TaskLink

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

# Columns selected per kind.  ``tasks`` carries no wall-clock time or
# duration, so those come back NULL and map to all-day events.
_SELECT_COLUMNS: dict[TaskKind, str] = {
    TaskKind.TASK: (
        "t.id, t.title, t.description, t.status, t.priority, t.due_date, "
        "NULL::time AS due_time, NULL::integer AS duration, "
        "t.google_calendar_event_id, t.sync_version"
    ),
    TaskKind.SUBTASK: (
        "s.id, s.title, s.description, s.status, s.priority, s.due_date, "
        "s.due_time, s.duration, s.google_calendar_event_id, s.sync_version"
    ),
}

_FROM: dict[TaskKind, str] = {
    TaskKind.TASK: "tasks t",
    TaskKind.SUBTASK: "subtasks s JOIN tasks t ON t.id = s.task_id",
}

_TABLE: dict[TaskKind, str] = {
    TaskKind.TASK: "tasks",
    TaskKind.SUBTASK: "subtasks",
}

_ALIAS: dict[TaskKind, str] = {
    TaskKind.TASK: "t",
    TaskKind.SUBTASK: "s",
}


# Visibility predicate over alias ``t`` for the user bound at *param*.
def _visible_to_user(param: str) -> str:
    return f"""
    EXISTS (
        SELECT 1 FROM projects p
        WHERE p.id = t.project_id
          AND (
            p.owner_id = {param}
            OR EXISTS (
                SELECT 1 FROM project_members m
                WHERE m.project_id = p.id AND m.user_id = {param}
            )
          )
    )
"""


# Fields a task edit may change.  The external event id and sync_version are
# owned by the sync orchestrator and are never accepted here.
EDITABLE_TASK_FIELDS: frozenset[str] = frozenset(
    {"title", "description", "status", "priority", "due_date", "assignee_id", "position"}
)


def _row_to_task(row: Any, kind: TaskKind) -> SyncableTask:
    return SyncableTask(
        id=str(row["id"]),
        kind=kind,
        title=row["title"] or "",
        description=row["description"],
        status=row["status"],
        priority=row["priority"],
        due_date=row["due_date"],
        due_time=row["due_time"],
        duration=row["duration"],
        external_event_id=row["google_calendar_event_id"],
        sync_version=row["sync_version"],
    )


class TaskRepository:
    """asyncpg-backed access to the syncable fields of tasks and subtasks."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, kind: TaskKind, task_id: str, user_id: str) -> SyncableTask | None:
        """Return the record if it exists and *user_id* can see it."""
        alias = _ALIAS[kind]
        row = await self._pool.fetchrow(
            f"""
            SELECT {_SELECT_COLUMNS[kind]}
            FROM {_FROM[kind]}
            WHERE {alias}.id = $1 AND {_visible_to_user('$2')}
            """,
            task_id,
            user_id,
        )
        if row is None:
            return None
        return _row_to_task(row, kind)

    async def compare_and_set_event_id(
        self,
        kind: TaskKind,
        task_id: str,
        expected_version: int,
        event_id: str | None,
    ) -> int:
        """Write the external event id only if ``sync_version`` still equals *expected_version*.

        Two syncs that read the same version race here and exactly one wins;
        the loser gets :exc:`ExternalConflictError` and must decide again from
        a fresh read.

        Returns
        -------
        int
            The new ``sync_version``.

        Raises
        ------
        ExternalConflictError
            If the version moved on or the row disappeared.
        """
        table = _TABLE[kind]
        row = await self._pool.fetchrow(
            f"""
            UPDATE {table}
            SET google_calendar_event_id = $3,
                sync_version = sync_version + 1
            WHERE id = $1 AND sync_version = $2
            RETURNING sync_version
            """,
            task_id,
            expected_version,
            event_id,
        )
        if row is not None:
            return row["sync_version"]

        actual = await self._pool.fetchval(
            f"SELECT sync_version FROM {table} WHERE id = $1",
            task_id,
        )
        raise ExternalConflictError(
            kind=str(kind),
            task_id=task_id,
            expected_version=expected_version,
            actual_version=actual,
        )

    async def list_links(self, user_id: str) -> list[TaskLink]:
        """All visible tasks and subtasks that currently point at an external event."""
        rows = await self._pool.fetch(
            f"""
            SELECT 'task' AS kind, t.id, t.google_calendar_event_id, t.status
            FROM tasks t
            WHERE t.google_calendar_event_id IS NOT NULL
              AND {_visible_to_user('$1')}
            UNION ALL
            SELECT 'subtask' AS kind, s.id, s.google_calendar_event_id, s.status
            FROM subtasks s JOIN tasks t ON t.id = s.task_id
            WHERE s.google_calendar_event_id IS NOT NULL
              AND {_visible_to_user('$1')}
            """,
            user_id,
        )
        return [
            TaskLink(
                task_id=str(row["id"]),
                kind=TaskKind(row["kind"]),
                external_event_id=row["google_calendar_event_id"],
                status=row["status"],
            )
            for row in rows
        ]

    async def get_record(self, task_id: str, user_id: str) -> dict[str, Any] | None:
        """Return the full ``tasks`` row as a dict if visible to *user_id*."""
        row = await self._pool.fetchrow(
            f"SELECT t.* FROM tasks t WHERE t.id = $1 AND {_visible_to_user('$2')}",
            task_id,
            user_id,
        )
        return dict(row) if row is not None else None

    async def update_fields(
        self, task_id: str, user_id: str, fields: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Apply a task edit and return the updated row, or ``None`` if not visible.

        Raises
        ------
        ValueError
            If *fields* is empty or names a column outside ``EDITABLE_TASK_FIELDS``.
        """
        unknown = set(fields) - EDITABLE_TASK_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        if not fields:
            raise ValueError("No fields to update")

        columns = sorted(fields)
        # $1 = id, $2 = user id, then one placeholder per edited column.
        assignments = ", ".join(f"{column} = ${index}" for index, column in enumerate(columns, 3))
        row = await self._pool.fetchrow(
            f"""
            UPDATE tasks t
            SET {assignments}, updated_at = now()
            WHERE t.id = $1 AND {_visible_to_user('$2')}
            RETURNING t.*
            """,
            task_id,
            user_id,
            *(fields[column] for column in columns),
        )
        return dict(row) if row is not None else None
