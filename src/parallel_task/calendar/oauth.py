"""Google OAuth 2.0 client for the calendar connection flow.

Covers the three token-endpoint interactions the sync subsystem needs:

- building the consent URL (offline access, forced consent so Google always
  returns a refresh token),
- exchanging the one-time authorization code,
- refreshing an expired access token.

The OAuth ``state`` parameter carries the user id, HMAC-signed with the
configured state secret so the callback can trust it without server-side
session storage.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict

from parallel_task.calendar.errors import TokenExchangeError, TokenRefreshError
from parallel_task.calendar.provider import safe_google_error_message

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

CALENDAR_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
)

DEFAULT_EXPIRES_IN_SECONDS = 3600


class OAuthStateError(ValueError):
    """Raised when a callback ``state`` is missing, malformed, or forged."""


# ---------------------------------------------------------------------------
# Token models
# ---------------------------------------------------------------------------


class TokenSet(BaseModel):
    """Tokens returned by a successful authorization-code exchange."""

    model_config = ConfigDict(extra="forbid")

    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: str
    token_type: str = "Bearer"

    def __repr__(self) -> str:
        return (
            "TokenSet(access_token=<REDACTED>, refresh_token=<REDACTED>, "
            f"expires_at={self.expires_at.isoformat()!r}, scope={self.scope!r})"
        )

    __str__ = __repr__


class RefreshedToken(BaseModel):
    """Result of a refresh-token grant.

    ``refresh_token`` is set only when Google rotated it.
    """

    model_config = ConfigDict(extra="forbid")

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None

    def __repr__(self) -> str:
        expires = self.expires_at.isoformat()
        return f"RefreshedToken(access_token=<REDACTED>, expires_at={expires!r})"

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _non_empty(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


# ---------------------------------------------------------------------------
# GoogleOAuthClient
# ---------------------------------------------------------------------------


class GoogleOAuthClient:
    """Talks to Google's OAuth endpoints over a shared ``httpx.AsyncClient``.

    The caller owns *http_client* (and therefore its timeout); every request
    made here is bounded by it.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        state_secret: str,
        scopes: tuple[str, ...] = CALENDAR_SCOPES,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._http = http_client
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._state_key = state_secret.encode("utf-8")
        self._scopes = scopes
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def scope(self) -> str:
        return " ".join(self._scopes)

    # -- state -------------------------------------------------------------

    def _sign(self, payload: str) -> str:
        return hmac.new(self._state_key, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def encode_state(self, user_id: str) -> str:
        """Return an opaque, signed state string embedding *user_id*."""
        encoded = _b64encode(user_id.encode("utf-8"))
        return f"{encoded}.{self._sign(encoded)}"

    def decode_state(self, state: str | None) -> str:
        """Verify a callback state and return the embedded user id.

        Raises
        ------
        OAuthStateError
            If the state is absent, malformed, or its signature does not match.
        """
        if not state or "." not in state:
            raise OAuthStateError("Missing or malformed OAuth state")
        encoded, signature = state.rsplit(".", 1)
        if not hmac.compare_digest(signature, self._sign(encoded)):
            raise OAuthStateError("OAuth state signature mismatch")
        try:
            user_id = _b64decode(encoded).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise OAuthStateError("Malformed OAuth state payload") from exc
        if not user_id:
            raise OAuthStateError("OAuth state carries no user id")
        return user_id

    # -- consent URL -------------------------------------------------------

    def authorization_url(self, user_id: str) -> str:
        """Build the Google consent URL for *user_id*."""
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "access_type": "offline",
            "prompt": "consent",
            "state": self.encode_state(user_id),
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    # -- token endpoint ----------------------------------------------------

    async def _post_token(self, data: dict[str, str], error_cls: type[Exception]) -> dict:
        try:
            response = await self._http.post(
                GOOGLE_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise error_cls(f"Network error calling Google token endpoint: {exc}") from exc

        if response.status_code != 200:
            raise error_cls(
                f"Google token endpoint returned HTTP {response.status_code}: "
                f"{safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise error_cls("Google token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise error_cls("Google token endpoint returned a non-object JSON payload")
        return payload

    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange a one-time authorization code for a token set.

        Raises
        ------
        TokenExchangeError
            On transport errors, non-200 responses, or when either the access
            token or the refresh token is missing from the response.
        """
        payload = await self._post_token(
            {
                "code": code,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": self._redirect_uri,
                "grant_type": "authorization_code",
            },
            TokenExchangeError,
        )

        access_token = _non_empty(payload, "access_token")
        refresh_token = _non_empty(payload, "refresh_token")
        if access_token is None or refresh_token is None:
            raise TokenExchangeError("Failed to get tokens from Google")

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
            scope=_non_empty(payload, "scope") or self.scope,
            token_type=_non_empty(payload, "token_type") or "Bearer",
        )

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        """Obtain a fresh access token with a stored refresh token.

        Raises
        ------
        TokenRefreshError
            On transport errors, non-200 responses (including a revoked
            ``invalid_grant``), or a response without an access token.
        """
        payload = await self._post_token(
            {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            TokenRefreshError,
        )

        access_token = _non_empty(payload, "access_token")
        if access_token is None:
            raise TokenRefreshError("Google token response is missing a non-empty access_token")

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return RefreshedToken(
            access_token=access_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
            refresh_token=_non_empty(payload, "refresh_token"),
        )
