"""Append-only calendar sync log.

Writes one ``calendar_sync_log`` row per sync attempt.  Rows are never
updated or deleted; they exist for debugging and do not influence behavior.

Fire-and-forget: insert failures are logged and swallowed so that a broken
log table never turns a successful sync into a failed one.
"""

from __future__ import annotations

import enum
import logging

import asyncpg

logger = logging.getLogger(__name__)


class SyncAction(enum.StrEnum):
    """Kind of attempt being recorded."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SYNC = "sync"


class SyncStatus(enum.StrEnum):
    """Outcome of the attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


async def write_sync_log_entry(
    pool: asyncpg.Pool | None,
    user_id: str,
    action: SyncAction,
    status: SyncStatus,
    *,
    task_id: str | None = None,
    event_id: str | None = None,
    error_message: str | None = None,
) -> None:
    """Insert a sync log entry.

    Parameters
    ----------
    pool:
        asyncpg pool.  If ``None``, the call is a silent no-op.
    user_id:
        The user the attempt was made for.
    action:
        ``create``, ``update``, ``delete`` or ``sync`` (connection and
        reconciliation events).
    status:
        ``success``, ``failed`` or ``pending``.
    task_id:
        The task or subtask id; ``None`` for pure connection events.
    event_id:
        The Google Calendar event id involved, when known.
    error_message:
        Raw error text for failed attempts.
    """
    if pool is None:
        return

    try:
        await pool.execute(
            "INSERT INTO calendar_sync_log "
            "(user_id, task_id, event_id, action, status, error_message) "
            "VALUES ($1, $2, $3, $4, $5, $6)",
            user_id,
            task_id,
            event_id,
            str(action),
            str(status),
            error_message,
        )
    except Exception:
        logger.warning(
            "Failed to write calendar sync log entry: user=%s action=%s status=%s",
            user_id,
            action,
            status,
            exc_info=True,
        )
