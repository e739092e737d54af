"""Credential Manager: hands out currently valid Google access tokens.

Fast path: the stored token is returned untouched while ``expires_at`` is
strictly in the future.  Otherwise the stored refresh token is exchanged for
a new access token, which is persisted before being returned.

A failed refresh (network error, timeout, revoked grant) is absorbed: the
caller sees "not connected", and the stored credential is kept so that a later
attempt can still succeed without re-authorization.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from parallel_task.calendar.credentials import CredentialStore
from parallel_task.calendar.errors import NotConnectedError, TokenRefreshError
from parallel_task.calendar.oauth import GoogleOAuthClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessToken:
    """A bearer token that was valid when handed out."""

    token: str
    expires_at: datetime

    def __repr__(self) -> str:
        return f"AccessToken(token=<REDACTED>, expires_at={self.expires_at.isoformat()!r})"

    __str__ = __repr__


class CredentialManager:
    """Resolve a valid access token for a user, refreshing when needed."""

    def __init__(
        self,
        store: CredentialStore,
        oauth: GoogleOAuthClient,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._clock = clock or (lambda: datetime.now(UTC))

    async def get_valid_access_token(self, user_id: str) -> AccessToken | None:
        """Return a token with ``expires_at > now``, or ``None`` when not connected."""
        credential = await self._store.get(user_id)
        if credential is None:
            logger.debug("No Google Calendar credential for user %s", user_id)
            return None

        now = self._clock()
        if not credential.is_expired(now):
            return AccessToken(token=credential.access_token, expires_at=credential.expires_at)

        try:
            refreshed = await self._oauth.refresh(credential.refresh_token)
        except TokenRefreshError as exc:
            logger.warning(
                "Google token refresh failed for user %s; credential kept: %s", user_id, exc
            )
            return None

        if refreshed.expires_at <= self._clock():
            logger.warning(
                "Google token refresh for user %s returned an already-expired token", user_id
            )
            return None

        updated = await self._store.update_access_token(
            user_id,
            refreshed.access_token,
            refreshed.expires_at,
            refresh_token=refreshed.refresh_token,
        )
        if not updated:
            # Disconnected while the refresh was in flight.
            logger.info("Credential for user %s removed during refresh", user_id)
            return None

        logger.info("Refreshed Google access token for user %s", user_id)
        return AccessToken(token=refreshed.access_token, expires_at=refreshed.expires_at)

    async def require_access_token(self, user_id: str) -> AccessToken:
        """Like ``get_valid_access_token`` but raises ``NotConnectedError`` instead of ``None``."""
        token = await self.get_valid_access_token(user_id)
        if token is None:
            raise NotConnectedError(user_id)
        return token
