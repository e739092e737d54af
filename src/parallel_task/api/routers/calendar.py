"""Calendar sync endpoints.

Provides a single router mounted at ``/api/calendar``:

- ``POST/DELETE /sync``: push one task or subtask to Google Calendar, or
  remove its event.
- ``GET /events``: upcoming events merged with the caller's task links.
- ``GET/DELETE /status``: connection state and disconnect.
- ``POST/GET /webhook``: Google push notifications (unauthenticated; Google
  identifies the channel through ``X-Goog-*`` headers).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query

from parallel_task.api.deps import AuthenticatedUser, Services, get_current_user, get_services
from parallel_task.api.models.calendar import (
    CalendarEventsResponse,
    SyncRequest,
    SyncResponse,
    WebhookAck,
    WebhookStatus,
)
from parallel_task.api.models.oauth import CalendarConnectionStatus, DisconnectResponse
from parallel_task.calendar.mapper import TaskKind
from parallel_task.calendar.provider import DEFAULT_LIST_LIMIT
from parallel_task.calendar.reconcile import TimeWindow
from parallel_task.core.sync_log import SyncAction, SyncStatus, write_sync_log_entry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar"])


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@router.post("/sync", response_model=SyncResponse)
async def sync_task(
    body: SyncRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> SyncResponse:
    """Create, update or delete the calendar event for a task.

    ``create`` and ``update`` share one decision: the stored link, read
    fresh, decides between creating and patching.
    """
    orchestrator = services.orchestrator
    if body.action == "delete":
        result = await orchestrator.unsync(body.kind, str(body.task_id), user.id)
    else:
        result = await orchestrator.sync(body.kind, str(body.task_id), user.id)
    return SyncResponse.from_result(result)


@router.delete("/sync", response_model=SyncResponse)
async def unsync_task(
    task_id: UUID = Query(..., description="Task or subtask id."),
    kind: TaskKind = Query(default=TaskKind.TASK),
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> SyncResponse:
    """Remove the task's calendar event and clear its link."""
    result = await services.orchestrator.unsync(kind, str(task_id), user.id)
    return SyncResponse.from_result(result)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@router.get("/events", response_model=CalendarEventsResponse)
async def list_events(
    time_min: datetime | None = Query(default=None, description="Window start; defaults to now."),
    time_max: datetime | None = Query(default=None, description="Window end; open when omitted."),
    max_results: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=250),
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> CalendarEventsResponse:
    """Upcoming events, each tagged with its linked task when the app owns it."""
    start = time_min or datetime.now(UTC)
    window = TimeWindow(start=start, end=time_max)
    events = await services.listener.list_upcoming(user.id, window, limit=max_results)
    return CalendarEventsResponse(events=events)


# ---------------------------------------------------------------------------
# Connection status
# ---------------------------------------------------------------------------


@router.get("/status", response_model=CalendarConnectionStatus)
async def connection_status(
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> CalendarConnectionStatus:
    """Report whether the caller has connected Google Calendar."""
    credential = await services.credential_store.get(user.id)
    if credential is None:
        return CalendarConnectionStatus(connected=False)
    return CalendarConnectionStatus(
        connected=True,
        expires_at=credential.expires_at,
        is_expired=credential.is_expired(datetime.now(UTC)),
        last_updated=credential.updated_at,
    )


@router.delete("/status", response_model=DisconnectResponse)
async def disconnect(
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> DisconnectResponse:
    """Delete the caller's Google credential.

    Existing task links are left as they are; syncs fail with ``needs_auth``
    until the user reconnects.
    """
    removed = await services.credential_store.delete(user.id)
    if removed:
        await write_sync_log_entry(services.pool, user.id, SyncAction.DELETE, SyncStatus.SUCCESS)
        logger.info("Google Calendar disconnected for user %s", user.id)
    return DisconnectResponse(disconnected=removed)


# ---------------------------------------------------------------------------
# Push notifications
# ---------------------------------------------------------------------------


@router.post("/webhook", response_model=WebhookAck)
async def calendar_webhook(
    x_goog_channel_id: str | None = Header(default=None),
    x_goog_resource_state: str | None = Header(default=None),
    x_goog_resource_id: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> WebhookAck:
    """Acknowledge a Google push notification, enqueueing reconciliation when needed.

    Always answers 200 so Google does not retry or disable the channel.
    """
    logger.debug(
        "Calendar webhook channel=%s state=%s resource=%s",
        x_goog_channel_id,
        x_goog_resource_state,
        x_goog_resource_id,
    )
    await services.listener.on_external_change_notification(
        x_goog_channel_id, x_goog_resource_state
    )
    return WebhookAck()


@router.get("/webhook", response_model=WebhookStatus)
async def webhook_status() -> WebhookStatus:
    return WebhookStatus()
