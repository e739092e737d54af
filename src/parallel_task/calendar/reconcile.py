"""Reconciliation Listener: external calendar changes flowing back to local state.

Two entry points:

- ``list_upcoming`` fetches the user's events for a time window and tags each
  one against the locally known event-id links (app-owned vs. foreign).
- ``on_external_change_notification`` handles a Google push notification.  It
  never fetches events inline: an ``exists`` notification only enqueues a
  ``check_updates`` work item for the channel's owner.  Duplicate deliveries
  enqueue duplicate items, which the drain pass collapses per user.

``drain_sync_queue`` is the background pass that works those items off.  For
every linked task it checks that the event still exists; a link to an event
Google no longer has is cleared (compare-and-set), so that
a stored external id always points at a live event.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from parallel_task.calendar.errors import (
    CalendarSyncError,
    ExternalConflictError,
)
from parallel_task.calendar.mapper import (
    DisplayRecord,
    TaskLink,
    from_external_event,
    index_links,
)
from parallel_task.calendar.provider import DEFAULT_LIST_LIMIT
from parallel_task.core.sync_log import SyncAction, SyncStatus, write_sync_log_entry
from parallel_task.core.telemetry import sync_span

if TYPE_CHECKING:
    import asyncpg

    from parallel_task.calendar.provider import GoogleCalendarClient
    from parallel_task.calendar.tasks import TaskRepository
    from parallel_task.calendar.token_manager import AccessToken, CredentialManager

logger = logging.getLogger(__name__)

CHECK_UPDATES_ACTION = "check_updates"


class NotificationOutcome(enum.StrEnum):
    """What the webhook handler did with a notification."""

    ACKNOWLEDGED = "acknowledged"
    ENQUEUED = "enqueued"
    IGNORED = "ignored"
    FAILED = "failed"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open ``[start, end)`` window; ``end=None`` means open-ended.

    Naive bounds are taken as UTC.
    """

    start: datetime
    end: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", _as_utc(self.start))
        if self.end is not None:
            object.__setattr__(self, "end", _as_utc(self.end))
        if self.end is not None and self.end <= self.start:
            raise ValueError("time window end must be after its start")


@dataclass
class DrainReport:
    """Counters from one ``drain_sync_queue`` pass."""

    claimed: int = 0
    users: int = 0
    done: int = 0
    failed: int = 0
    links_cleared: int = 0
    errors: dict[str, str] = field(default_factory=dict)


class ReconciliationListener:
    """Merge external events with local links and process change notifications.

    Parameters
    ----------
    pool:
        asyncpg pool holding ``calendar_watches``, ``calendar_sync_queue`` and
        the sync log.
    tasks:
        Task repository (links and compare-and-set).
    credentials:
        Credential Manager.
    calendar:
        Google Calendar client.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        tasks: TaskRepository,
        credentials: CredentialManager,
        calendar: GoogleCalendarClient,
    ) -> None:
        self._pool = pool
        self._tasks = tasks
        self._credentials = credentials
        self._calendar = calendar

    # ------------------------------------------------------------------
    # Merged view
    # ------------------------------------------------------------------

    async def list_upcoming(
        self,
        user_id: str,
        window: TimeWindow,
        *,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[DisplayRecord]:
        """Events overlapping *window*, tagged with their linked task where one exists.

        Raises
        ------
        NotConnectedError
            If the user has no usable Google credential.
        ExternalTransientError
            If Google could not be reached.
        """
        token = await self._credentials.require_access_token(user_id)
        events = await self._calendar.list_events(
            token.token, time_min=window.start, time_max=window.end, limit=limit
        )
        links = index_links(await self._tasks.list_links(user_id))
        return [from_external_event(event, links) for event in events]

    # ------------------------------------------------------------------
    # Push notifications
    # ------------------------------------------------------------------

    async def on_external_change_notification(
        self,
        channel_id: str | None,
        resource_state: str | None,
    ) -> NotificationOutcome:
        """Handle one Google push notification without ever raising.

        ``sync`` (the channel handshake) is acknowledged; ``exists`` enqueues
        a ``check_updates`` item for the channel's owner; anything else, or
        an unknown channel, is ignored.  Storage failures are logged and
        reported as ``FAILED``.
        """
        if resource_state == "sync":
            logger.info("Calendar watch channel %s handshake acknowledged", channel_id)
            return NotificationOutcome.ACKNOWLEDGED

        if resource_state != "exists" or not channel_id:
            logger.debug(
                "Ignoring calendar notification channel=%s state=%s", channel_id, resource_state
            )
            return NotificationOutcome.IGNORED

        try:
            user_id = await self._pool.fetchval(
                "SELECT user_id FROM calendar_watches WHERE channel_id = $1",
                channel_id,
            )
            if user_id is None:
                logger.warning("Calendar notification for unknown channel %s", channel_id)
                return NotificationOutcome.IGNORED
            await self._pool.execute(
                "INSERT INTO calendar_sync_queue (user_id, action) VALUES ($1, $2)",
                user_id,
                CHECK_UPDATES_ACTION,
            )
        except Exception:
            logger.error(
                "Failed to enqueue calendar reconciliation for channel %s",
                channel_id,
                exc_info=True,
            )
            return NotificationOutcome.FAILED

        logger.info("Enqueued calendar reconciliation for user %s", user_id)
        return NotificationOutcome.ENQUEUED

    # ------------------------------------------------------------------
    # Background drain
    # ------------------------------------------------------------------

    async def _claim(self, limit: int) -> list[Any]:
        return await self._pool.fetch(
            """
            UPDATE calendar_sync_queue q
            SET status = 'processing'
            WHERE q.id IN (
                SELECT id FROM calendar_sync_queue
                WHERE status = 'pending'
                ORDER BY created_at
                LIMIT $1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING q.id, q.user_id
            """,
            limit,
        )

    async def _finish(self, item_ids: list[Any], status: str, error: str | None) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_sync_queue
            SET status = $2, error = $3, processed_at = now()
            WHERE id = ANY($1::uuid[])
            """,
            item_ids,
            status,
            error,
        )

    async def drain_sync_queue(self, limit: int = 50) -> DrainReport:
        """Claim up to *limit* pending items and reconcile each distinct user once."""
        if limit < 1:
            raise ValueError("limit must be at least 1")

        report = DrainReport()
        with sync_span("drain_queue", limit=limit):
            rows = await self._claim(limit)
            report.claimed = len(rows)

            by_user: dict[str, list[Any]] = {}
            for row in rows:
                by_user.setdefault(str(row["user_id"]), []).append(row["id"])
            report.users = len(by_user)

            for user_id, item_ids in by_user.items():
                try:
                    report.links_cleared += await self.reconcile_user(user_id)
                except Exception as exc:
                    if isinstance(exc, CalendarSyncError):
                        logger.warning(
                            "Calendar reconciliation failed for user %s: %s", user_id, exc
                        )
                    else:
                        logger.exception(
                            "Unexpected error reconciling calendar for user %s", user_id
                        )
                    error = str(exc) or type(exc).__name__
                    report.errors[user_id] = error
                    report.failed += len(item_ids)
                    await self._finish(item_ids, "failed", error)
                    continue
                report.done += len(item_ids)
                await self._finish(item_ids, "done", None)

        if report.claimed:
            logger.info(
                "Drained calendar sync queue: claimed=%d users=%d cleared=%d failed=%d",
                report.claimed,
                report.users,
                report.links_cleared,
                report.failed,
            )
        return report

    async def reconcile_user(self, user_id: str) -> int:
        """Clear links whose events Google no longer has.  Returns the number cleared.

        An event counts as gone when Google returns not-found, or reports it
        ``cancelled`` while the local task is not itself cancelled (cancelled
        tasks are synced as cancelled events on purpose).

        Raises
        ------
        NotConnectedError
            If the user has no usable Google credential.
        ExternalTransientError
            If Google could not be reached.
        """
        token = await self._credentials.require_access_token(user_id)

        cleared = 0
        for link in await self._tasks.list_links(user_id):
            if await self._clear_if_gone(user_id, token, link):
                cleared += 1
        return cleared

    async def _clear_if_gone(self, user_id: str, token: AccessToken, link: TaskLink) -> bool:
        event = await self._calendar.get_event(token.token, link.external_event_id)
        if event is not None and not (event.status == "cancelled" and link.status != "cancelled"):
            return False

        task = await self._tasks.get(link.kind, link.task_id, user_id)
        if task is None or task.external_event_id != link.external_event_id:
            return False
        try:
            await self._tasks.compare_and_set_event_id(
                link.kind, task.id, task.sync_version, None
            )
        except ExternalConflictError:
            logger.info(
                "Link for %s %s changed during reconciliation; skipping", link.kind, task.id
            )
            return False

        logger.info(
            "Cleared link from %s %s to removed calendar event %s",
            link.kind,
            task.id,
            link.external_event_id,
        )
        await write_sync_log_entry(
            self._pool,
            user_id,
            SyncAction.SYNC,
            SyncStatus.SUCCESS,
            task_id=task.id,
            event_id=link.external_event_id,
        )
        return True
