"""Error taxonomy for calendar synchronization.

Every failure surfaced by the sync subsystem is a ``CalendarSyncError``
subclass carrying a stable ``code`` so HTTP handlers and the sync log can tell
"needs authorization" apart from "try again later".
"""

from __future__ import annotations


class CalendarSyncError(RuntimeError):
    """Base class for calendar synchronization failures."""

    code = "CALENDAR_SYNC_ERROR"

    def details(self) -> dict | None:
        """Structured context for the error envelope, if any."""
        return None


class UnauthenticatedError(CalendarSyncError):
    """No (or an invalid) user identity was presented."""

    code = "UNAUTHENTICATED"


class NotConnectedError(CalendarSyncError):
    """The user has no usable Google Calendar credential.

    Raised when the credential row is absent or could not be refreshed. The
    stored refresh token is left in place so a later attempt can recover.
    """

    code = "NOT_CONNECTED"

    def __init__(self, user_id: str, message: str | None = None) -> None:
        self.user_id = user_id
        super().__init__(message or "Google Calendar not connected: authorization required")


class ExternalTransientError(CalendarSyncError):
    """Network failure, timeout, or server error from Google Calendar."""

    code = "EXTERNAL_TRANSIENT"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ExternalNotFoundError(CalendarSyncError):
    """The referenced external event no longer exists."""

    code = "EXTERNAL_NOT_FOUND"

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Calendar event not found: {event_id}")


class ExternalConflictError(CalendarSyncError):
    """Compare-and-set on a task's external event id lost to a concurrent writer.

    Attributes
    ----------
    kind:
        ``"task"`` or ``"subtask"``.
    task_id:
        The row whose linkage changed underneath the caller.
    expected_version:
        The ``sync_version`` the caller read.
    actual_version:
        The version found at write time, or ``None`` if the row vanished.
    """

    code = "EXTERNAL_CONFLICT"

    def __init__(
        self,
        kind: str,
        task_id: str,
        expected_version: int,
        actual_version: int | None,
    ) -> None:
        self.kind = kind
        self.task_id = task_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrent sync conflict on {kind} {task_id!r}: "
            f"expected version {expected_version}, found {actual_version}"
        )

    def details(self) -> dict:
        return {
            "kind": self.kind,
            "task_id": self.task_id,
            "expected_version": self.expected_version,
            "actual_version": self.actual_version,
        }


class MalformedMappingError(CalendarSyncError):
    """Task data cannot be turned into a valid calendar event."""

    code = "MALFORMED_MAPPING"


class TaskNotFoundError(CalendarSyncError):
    """The task does not exist or is not visible to the caller."""

    code = "TASK_NOT_FOUND"

    def __init__(self, kind: str, task_id: str) -> None:
        self.kind = kind
        self.task_id = task_id
        super().__init__(f"{kind.capitalize()} not found: {task_id}")


class TokenExchangeError(CalendarSyncError):
    """OAuth authorization-code exchange failed."""

    code = "TOKEN_EXCHANGE_FAILED"


class TokenRefreshError(CalendarSyncError):
    """OAuth access-token refresh failed."""

    code = "TOKEN_REFRESH_FAILED"
