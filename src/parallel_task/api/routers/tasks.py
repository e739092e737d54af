"""Task read/edit endpoints.

An edit of a task that is linked to a calendar event is followed by a
re-sync.  The edit itself is committed first and never rolled back: a
calendar failure is reported in ``calendar_sync`` of the response.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends

from parallel_task.api.deps import AuthenticatedUser, Services, get_current_user, get_services
from parallel_task.api.middleware import error_detail
from parallel_task.api.models.tasks import CalendarSyncReport, TaskResponse, TaskUpdate
from parallel_task.calendar.errors import CalendarSyncError, TaskNotFoundError
from parallel_task.calendar.mapper import TaskKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> TaskResponse:
    record = await services.tasks.get_record(str(task_id), user.id)
    if record is None:
        raise TaskNotFoundError(str(TaskKind.TASK), str(task_id))
    return TaskResponse(task=record)


@router.patch("/{task_id}", response_model=TaskResponse)
async def update_task(
    task_id: UUID,
    body: TaskUpdate,
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> TaskResponse:
    """Apply an edit and, when the task has a calendar event, push it there too."""
    record = await services.tasks.update_fields(str(task_id), user.id, body.changes())
    if record is None:
        raise TaskNotFoundError(str(TaskKind.TASK), str(task_id))

    if not record.get("google_calendar_event_id"):
        return TaskResponse(task=record)

    try:
        result = await services.orchestrator.sync(TaskKind.TASK, str(task_id), user.id)
    except CalendarSyncError as exc:
        logger.warning("Task %s updated but calendar re-sync failed: %s", task_id, exc)
        detail = error_detail(exc)
        report = CalendarSyncReport(
            success=False,
            error_code=detail.code,
            message=detail.message,
            needs_auth=detail.needs_auth,
        )
    else:
        report = CalendarSyncReport(
            success=True,
            outcome=str(result.outcome),
            event_id=result.event_id,
        )
        # The sync may have replaced the link (event deleted out of band).
        record = await services.tasks.get_record(str(task_id), user.id) or record
    return TaskResponse(task=record, calendar_sync=report)
