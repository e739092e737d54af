"""Sync Orchestrator: keeps a task's Google Calendar event and its local link consistent.

Per-task state machine keyed by the stored external event id:

    Unsynced (id NULL) --sync--> Synced (id set) --unsync--> Unsynced

- ``sync`` on Unsynced creates the event and records its id; on Synced it
  patches the event with the full current task state.  A patch that finds the
  event gone clears the link and recreates the event in the same call.
- ``unsync`` on Synced deletes the event (already-deleted counts as success)
  and clears the link; on Unsynced it does nothing.

Every write of the link is a compare-and-set on ``sync_version``.  A create
that loses that race deletes the event it just made and decides again from a
fresh read, so concurrent syncs of one task leave exactly one event behind.

Every attempt is recorded in the sync log.  Failures are logged as ``failed``
with the raw error text and re-raised (as typed ``CalendarSyncError``s where the
failure is a sync failure); nothing is retried automatically apart from the
bounded conflict re-reads.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NoReturn

from parallel_task.calendar.errors import (
    CalendarSyncError,
    ExternalConflictError,
    ExternalNotFoundError,
    ExternalTransientError,
    NotConnectedError,
    TaskNotFoundError,
)
from parallel_task.calendar.mapper import SyncableTask, TaskKind, to_external_event
from parallel_task.core.sync_log import SyncAction, SyncStatus, write_sync_log_entry
from parallel_task.core.telemetry import sync_span

if TYPE_CHECKING:
    import asyncpg

    from parallel_task.calendar.provider import GoogleCalendarClient
    from parallel_task.calendar.tasks import TaskRepository
    from parallel_task.calendar.token_manager import AccessToken, CredentialManager

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
NEEDS_AUTH_MARKER = "needs_auth"


class SyncOutcome(enum.StrEnum):
    """What a sync/unsync call did to the external calendar."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    NOOP = "noop"


@dataclass(frozen=True)
class SyncResult:
    """Structured result of a successful sync or unsync."""

    outcome: SyncOutcome
    kind: TaskKind
    task_id: str
    event_id: str | None


class SyncOrchestrator:
    """Drive the create/patch/delete decisions for one user's tasks.

    Parameters
    ----------
    tasks:
        Task/subtask repository; the only path through which the external
        event id is written.
    credentials:
        Credential Manager consulted before every external call.
    calendar:
        Google Calendar client.
    log_pool:
        asyncpg pool for the append-only sync log (``None`` disables logging).
    timezone:
        IANA zone in which due dates and times are interpreted.
    max_attempts:
        Upper bound on decide-act-commit rounds when the link changes
        underneath a call.
    """

    def __init__(
        self,
        tasks: TaskRepository,
        credentials: CredentialManager,
        calendar: GoogleCalendarClient,
        log_pool: asyncpg.Pool | None,
        *,
        timezone: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._tasks = tasks
        self._credentials = credentials
        self._calendar = calendar
        self._log_pool = log_pool
        self._timezone = timezone
        self._max_attempts = max_attempts
        self._clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _log(
        self,
        user_id: str,
        action: SyncAction,
        status: SyncStatus,
        task_id: str | None,
        event_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        await write_sync_log_entry(
            self._log_pool,
            user_id,
            action,
            status,
            task_id=task_id,
            event_id=event_id,
            error_message=error_message,
        )

    async def _load(self, kind: TaskKind, task_id: str, user_id: str) -> SyncableTask:
        task = await self._tasks.get(kind, task_id, user_id)
        if task is None:
            raise TaskNotFoundError(str(kind), task_id)
        return task

    async def _token(self, user_id: str) -> AccessToken:
        token = await self._credentials.get_valid_access_token(user_id)
        if token is None:
            raise NotConnectedError(user_id)
        return token

    @staticmethod
    def _classify(exc: CalendarSyncError, user_id: str) -> CalendarSyncError:
        """Google rejecting a token we believed valid means the grant is gone."""
        if isinstance(exc, ExternalTransientError) and exc.status_code == 401:
            return NotConnectedError(
                user_id, f"Google Calendar rejected the stored credential: {exc}"
            )
        return exc

    async def _fail(
        self,
        user_id: str,
        action: SyncAction,
        task_id: str,
        event_id: str | None,
        exc: CalendarSyncError,
    ) -> NoReturn:
        """Record a failed attempt and raise the (possibly reclassified) error."""
        error = self._classify(exc, user_id)
        message = str(error)
        if isinstance(error, NotConnectedError):
            message = f"{NEEDS_AUTH_MARKER}: {message}"
        logger.warning(
            "Calendar %s failed for %s (user=%s): %s", action, task_id, user_id, message
        )
        await self._log(user_id, action, SyncStatus.FAILED, task_id, event_id, message)
        if error is exc:
            raise exc
        raise error from exc

    async def _fail_unexpected(
        self,
        user_id: str,
        action: SyncAction,
        task_id: str,
        event_id: str | None,
        exc: Exception,
    ) -> NoReturn:
        """Record a failed attempt for an error outside the sync taxonomy and re-raise it."""
        message = str(exc) or type(exc).__name__
        logger.error(
            "Calendar %s failed unexpectedly for %s (user=%s): %s",
            action,
            task_id,
            user_id,
            message,
            exc_info=exc,
        )
        await self._log(user_id, action, SyncStatus.FAILED, task_id, event_id, message)
        raise exc

    async def _discard_orphan(self, token: AccessToken, event_id: str, user_id: str) -> None:
        """Delete an event whose id lost the compare-and-set."""
        try:
            await self._calendar.delete_event(token.token, event_id)
        except CalendarSyncError as exc:
            logger.error(
                "Could not delete orphaned calendar event %s for user %s: %s",
                event_id,
                user_id,
                exc,
            )

    # ------------------------------------------------------------------
    # sync
    # ------------------------------------------------------------------

    async def sync(self, kind: TaskKind | str, task_id: str, user_id: str) -> SyncResult:
        """Create or update the external event for a task.

        Raises
        ------
        TaskNotFoundError
            The task does not exist or is not visible to *user_id*.
        NotConnectedError
            No usable Google credential; nothing was called or written.
        ExternalTransientError
            Google could not be reached or returned an error.
        MalformedMappingError
            The task could not be mapped to an event.
        ExternalConflictError
            The link kept changing concurrently for every allowed attempt.
        """
        kind = TaskKind(kind)
        with sync_span("sync", kind=str(kind), task_id=task_id):
            last_conflict: ExternalConflictError | None = None
            for attempt in range(1, self._max_attempts + 1):
                try:
                    task = await self._load(kind, task_id, user_id)
                except TaskNotFoundError as exc:
                    await self._fail(user_id, SyncAction.SYNC, task_id, None, exc)
                except Exception as exc:
                    await self._fail_unexpected(user_id, SyncAction.SYNC, task_id, None, exc)
                action = SyncAction.UPDATE if task.is_synced else SyncAction.CREATE
                try:
                    token = await self._token(user_id)
                    payload = to_external_event(task, self._timezone, now=self._clock())
                    body = payload.to_google_body()
                    if task.is_synced:
                        result = await self._patch(kind, task, token, body, user_id)
                    else:
                        result = await self._create(kind, task, token, body, user_id)
                except ExternalConflictError as exc:
                    logger.info(
                        "Link for %s %s changed concurrently (attempt %d/%d); re-reading",
                        kind,
                        task_id,
                        attempt,
                        self._max_attempts,
                    )
                    last_conflict = exc
                    continue
                except CalendarSyncError as exc:
                    await self._fail(user_id, action, task_id, task.external_event_id, exc)
                except Exception as exc:
                    await self._fail_unexpected(
                        user_id, action, task_id, task.external_event_id, exc
                    )
                return result

            assert last_conflict is not None
            await self._fail(user_id, SyncAction.SYNC, task_id, None, last_conflict)

    async def _create(
        self,
        kind: TaskKind,
        task: SyncableTask,
        token: AccessToken,
        body: dict,
        user_id: str,
    ) -> SyncResult:
        event_id = await self._calendar.create_event(token.token, body)
        try:
            await self._tasks.compare_and_set_event_id(kind, task.id, task.sync_version, event_id)
        except Exception:
            # The id never reached the row; do not leave the event behind.
            await self._discard_orphan(token, event_id, user_id)
            raise
        await self._log(user_id, SyncAction.CREATE, SyncStatus.SUCCESS, task.id, event_id)
        logger.info("Created calendar event %s for %s %s", event_id, kind, task.id)
        return SyncResult(SyncOutcome.CREATED, kind, task.id, event_id)

    async def _patch(
        self,
        kind: TaskKind,
        task: SyncableTask,
        token: AccessToken,
        body: dict,
        user_id: str,
    ) -> SyncResult:
        """Patch the linked event, recreating it if Google no longer has it."""
        event_id = task.external_event_id
        assert event_id is not None
        try:
            await self._calendar.patch_event(token.token, event_id, body)
        except ExternalNotFoundError as exc:
            logger.info(
                "Calendar event %s for %s %s was deleted externally; recreating",
                event_id,
                kind,
                task.id,
            )
            await self._log(
                user_id, SyncAction.UPDATE, SyncStatus.FAILED, task.id, event_id, str(exc)
            )
            version = await self._tasks.compare_and_set_event_id(
                kind, task.id, task.sync_version, None
            )
            unlinked = task.model_copy(update={"external_event_id": None, "sync_version": version})
            return await self._create(kind, unlinked, token, body, user_id)
        await self._log(user_id, SyncAction.UPDATE, SyncStatus.SUCCESS, task.id, event_id)
        return SyncResult(SyncOutcome.UPDATED, kind, task.id, event_id)

    # ------------------------------------------------------------------
    # unsync
    # ------------------------------------------------------------------

    async def unsync(self, kind: TaskKind | str, task_id: str, user_id: str) -> SyncResult:
        """Remove the external event for a task and clear its link.

        Idempotent: an unsynced task is a no-op that needs no credential, and
        an event that was already deleted externally counts as deleted.
        """
        kind = TaskKind(kind)
        with sync_span("unsync", kind=str(kind), task_id=task_id):
            last_conflict: ExternalConflictError | None = None
            for attempt in range(1, self._max_attempts + 1):
                try:
                    task = await self._load(kind, task_id, user_id)
                except TaskNotFoundError as exc:
                    await self._fail(user_id, SyncAction.DELETE, task_id, None, exc)
                except Exception as exc:
                    await self._fail_unexpected(user_id, SyncAction.DELETE, task_id, None, exc)
                event_id = task.external_event_id
                if event_id is None:
                    return SyncResult(SyncOutcome.NOOP, kind, task_id, None)
                try:
                    token = await self._token(user_id)
                    await self._calendar.delete_event(token.token, event_id)
                    await self._tasks.compare_and_set_event_id(
                        kind, task_id, task.sync_version, None
                    )
                except ExternalConflictError as exc:
                    logger.info(
                        "Link for %s %s changed during unsync (attempt %d/%d); re-reading",
                        kind,
                        task_id,
                        attempt,
                        self._max_attempts,
                    )
                    last_conflict = exc
                    continue
                except CalendarSyncError as exc:
                    await self._fail(user_id, SyncAction.DELETE, task_id, event_id, exc)
                except Exception as exc:
                    await self._fail_unexpected(user_id, SyncAction.DELETE, task_id, event_id, exc)
                await self._log(user_id, SyncAction.DELETE, SyncStatus.SUCCESS, task_id, event_id)
                logger.info("Deleted calendar event %s for %s %s", event_id, kind, task_id)
                return SyncResult(SyncOutcome.DELETED, kind, task_id, event_id)

            assert last_conflict is not None
            await self._fail(user_id, SyncAction.DELETE, task_id, None, last_conflict)
