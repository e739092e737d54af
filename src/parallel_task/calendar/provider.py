"""Google Calendar v3 REST client for the user's primary calendar.

Each call takes the caller's access token explicitly; token validity is the
Credential Manager's concern.  Responses are classified into the sync error
taxonomy:

- transport errors, timeouts, 5xx and unexpected 4xx -> ``ExternalTransientError``
- 400 on create/patch -> ``MalformedMappingError``
- 404/410 on patch -> ``ExternalNotFoundError``
- 404/410 on delete -> success
- 404/410 on get -> ``None``

No request is retried automatically; a failed call is surfaced to the caller.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from parallel_task.calendar.errors import (
    ExternalNotFoundError,
    ExternalTransientError,
    MalformedMappingError,
)
from parallel_task.calendar.mapper import ExternalEvent

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
PRIMARY_CALENDAR_ID = "primary"
DEFAULT_LIST_LIMIT = 100
_MAX_LIST_LIMIT = 250
_GONE_STATUSES = frozenset({404, 410})


def safe_google_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error message from a Google error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return " ".join(f"{error_payload}: {description}".split())[:200]
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def google_rfc3339(value: datetime) -> str:
    """Format *value* as an RFC 3339 UTC timestamp (``...Z``); naive means UTC."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


class GoogleCalendarClient:
    """Thin async wrapper around the Calendar v3 events endpoints.

    Parameters
    ----------
    http_client:
        Shared ``httpx.AsyncClient``; its timeout bounds every call.
    calendar_id:
        Calendar to operate on.  Only the user's primary calendar is supported
        by the sync subsystem.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        calendar_id: str = PRIMARY_CALENDAR_ID,
    ) -> None:
        self._http = http_client
        self._calendar_path = f"/calendars/{quote(calendar_id, safe='')}/events"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _event_path(self, event_id: str) -> str:
        normalized = event_id.strip()
        if not normalized:
            raise ValueError("event_id must be a non-empty string")
        return f"{self._calendar_path}/{quote(normalized, safe='')}"

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            return await self._http.request(
                method,
                f"{GOOGLE_CALENDAR_API_BASE_URL}{path}",
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TimeoutException as exc:
            raise ExternalTransientError(f"Google Calendar request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ExternalTransientError(f"Google Calendar request failed: {exc}") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if 200 <= response.status_code < 300:
            return
        message = safe_google_error_message(response)
        if response.status_code == 400 and operation in {"create", "patch"}:
            raise MalformedMappingError(f"Google Calendar rejected the event payload: {message}")
        raise ExternalTransientError(
            f"Google Calendar {operation} failed ({response.status_code}): {message}",
            status_code=response.status_code,
        )

    @staticmethod
    def _json_object(response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalTransientError(
                f"Google Calendar returned invalid JSON for {operation}"
            ) from exc
        if not isinstance(payload, dict):
            raise ExternalTransientError(
                f"Google Calendar returned an unexpected {operation} payload"
            )
        return payload

    # ------------------------------------------------------------------
    # Events API
    # ------------------------------------------------------------------

    async def create_event(self, access_token: str, body: dict[str, Any]) -> str:
        """Create an event and return the id Google assigned to it."""
        response = await self._request("POST", self._calendar_path, access_token, json_body=body)
        self._raise_for_status(response, "create")
        payload = self._json_object(response, "create")
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise ExternalTransientError("Google Calendar create response is missing an event id")
        logger.debug("Created Google Calendar event %s", event_id)
        return event_id

    async def patch_event(self, access_token: str, event_id: str, body: dict[str, Any]) -> None:
        """Overwrite the event's synced fields.

        Raises
        ------
        ExternalNotFoundError
            If the event no longer exists; the caller must recreate it.
        """
        response = await self._request(
            "PATCH", self._event_path(event_id), access_token, json_body=body
        )
        if response.status_code in _GONE_STATUSES:
            raise ExternalNotFoundError(event_id)
        self._raise_for_status(response, "patch")

    async def delete_event(self, access_token: str, event_id: str) -> None:
        """Delete an event.  An already-deleted event counts as success."""
        response = await self._request("DELETE", self._event_path(event_id), access_token)
        if response.status_code in _GONE_STATUSES:
            logger.info("Google Calendar event %s already deleted", event_id)
            return
        self._raise_for_status(response, "delete")

    async def get_event(self, access_token: str, event_id: str) -> ExternalEvent | None:
        """Fetch one event, or ``None`` if it does not exist."""
        response = await self._request("GET", self._event_path(event_id), access_token)
        if response.status_code in _GONE_STATUSES:
            return None
        self._raise_for_status(response, "get")
        return ExternalEvent.from_google(self._json_object(response, "get"))

    async def list_events(
        self,
        access_token: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[ExternalEvent]:
        """List single (expanded) events overlapping ``[time_min, time_max)``, by start time."""
        if limit < 1:
            raise ValueError("limit must be at least 1")

        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "maxResults": min(limit, _MAX_LIST_LIMIT),
        }
        if time_min is not None:
            params["timeMin"] = google_rfc3339(time_min)
        if time_max is not None:
            params["timeMax"] = google_rfc3339(time_max)

        response = await self._request("GET", self._calendar_path, access_token, params=params)
        self._raise_for_status(response, "list")
        payload = self._json_object(response, "list")

        items = payload.get("items", [])
        if not isinstance(items, list):
            raise ExternalTransientError(
                "Google Calendar list response has a malformed items field"
            )
        return [ExternalEvent.from_google(item) for item in items if isinstance(item, dict)]
