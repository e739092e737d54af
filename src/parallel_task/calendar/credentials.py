"""Per-user Google Calendar OAuth credential storage.

One ``google_oauth_tokens`` row per user: created on first consent, updated on
every refresh, deleted on disconnect.  Secret material (access and refresh
tokens) is never logged and is redacted from ``repr``/``str``.

The stored refresh token is never replaced by an empty value; Google omits it
from most refresh responses and the previous one stays valid.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "google_oauth_tokens"


def _ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to a naive datetime returned by asyncpg."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


# ---------------------------------------------------------------------------
# Credential model
# ---------------------------------------------------------------------------


class Credential(BaseModel):
    """OAuth credential set authorizing Google Calendar calls for one user."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_at: datetime
    scope: str | None = None
    token_type: str = "Bearer"
    updated_at: datetime | None = None

    @field_validator("expires_at", "updated_at")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return None if value is None else _ensure_utc(value)

    def is_expired(self, now: datetime) -> bool:
        """True when the access token must not be used (``expires_at <= now``)."""
        return self.expires_at <= now

    def __repr__(self) -> str:
        return (
            f"Credential(user_id={self.user_id!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token=<REDACTED>, "
            f"expires_at={self.expires_at.isoformat()!r}, "
            f"scope={self.scope!r})"
        )

    # Pydantic's default __str__ would print token values verbatim.
    __str__ = __repr__


def _row_to_credential(row: Any) -> Credential:
    return Credential(
        user_id=str(row["user_id"]),
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=row["expires_at"],
        scope=row["scope"],
        token_type=row["token_type"] or "Bearer",
        updated_at=row["updated_at"],
    )


# ---------------------------------------------------------------------------
# CredentialStore
# ---------------------------------------------------------------------------


class CredentialStore:
    """asyncpg-backed repository for ``google_oauth_tokens``.

    Parameters
    ----------
    pool:
        asyncpg pool (or anything exposing ``fetchrow``/``execute``).
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, user_id: str) -> Credential | None:
        """Return the user's credential, or ``None`` if they never connected."""
        row = await self._pool.fetchrow(
            f"""
            SELECT user_id, access_token, refresh_token, expires_at,
                   scope, token_type, updated_at
            FROM {_TABLE}
            WHERE user_id = $1
            """,
            user_id,
        )
        if row is None:
            return None
        return _row_to_credential(row)

    async def save(self, credential: Credential) -> None:
        """Insert or replace the user's credential after an OAuth consent."""
        await self._pool.execute(
            f"""
            INSERT INTO {_TABLE}
                (user_id, access_token, refresh_token, expires_at, scope, token_type, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, now())
            ON CONFLICT (user_id) DO UPDATE SET
                access_token  = EXCLUDED.access_token,
                refresh_token = COALESCE(NULLIF(EXCLUDED.refresh_token, ''),
                                         {_TABLE}.refresh_token),
                expires_at    = EXCLUDED.expires_at,
                scope         = EXCLUDED.scope,
                token_type    = EXCLUDED.token_type,
                updated_at    = now()
            """,
            credential.user_id,
            credential.access_token,
            credential.refresh_token,
            credential.expires_at,
            credential.scope,
            credential.token_type,
        )
        logger.info("Stored Google Calendar credential for user %s", credential.user_id)

    async def update_access_token(
        self,
        user_id: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> bool:
        """Persist a refreshed access token.

        The stored refresh token is replaced only when *refresh_token* is a
        non-empty string.  Concurrent refreshes are last-write-wins: every
        refresh response carries a valid token.

        Returns
        -------
        bool
            ``True`` if a row was updated, ``False`` if the user disconnected
            in the meantime.
        """
        result = await self._pool.execute(
            f"""
            UPDATE {_TABLE}
            SET access_token  = $2,
                expires_at    = $3,
                refresh_token = COALESCE(NULLIF($4, ''), refresh_token),
                updated_at    = now()
            WHERE user_id = $1
            """,
            user_id,
            access_token,
            expires_at,
            refresh_token,
        )
        return _affected_rows(result) > 0

    async def delete(self, user_id: str) -> bool:
        """Remove the user's credential.  Returns ``True`` if a row existed."""
        result = await self._pool.execute(
            f"DELETE FROM {_TABLE} WHERE user_id = $1",
            user_id,
        )
        deleted = _affected_rows(result) > 0
        if deleted:
            logger.info("Deleted Google Calendar credential for user %s", user_id)
        return deleted


def _affected_rows(status: Any) -> int:
    """Parse the row count from an asyncpg command tag such as ``"UPDATE 1"``."""
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0
