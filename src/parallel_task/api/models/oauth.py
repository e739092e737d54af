"""Pydantic models for the Google Calendar OAuth connection endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class AuthUrlResponse(BaseModel):
    """Consent URL the browser should be sent to."""

    url: str


class CalendarConnectionStatus(BaseModel):
    """Whether the caller has a stored Google Calendar credential.

    ``connected`` only reflects that a credential row exists: an expired
    access token is refreshed transparently on the next sync, so
    ``is_expired`` is informational.
    """

    connected: bool
    expires_at: datetime | None = None
    """Expiry of the stored access token."""

    is_expired: bool = False
    """``True`` when the stored access token must be refreshed before use."""

    last_updated: datetime | None = None
    """When the credential was last written (consent or refresh)."""


class DisconnectResponse(BaseModel):
    """Result of removing the caller's Google Calendar credential."""

    success: bool = True
    disconnected: bool
