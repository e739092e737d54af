"""Tests for parallel_task.calendar.token_manager.CredentialManager."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from parallel_task.calendar.credentials import Credential
from parallel_task.calendar.errors import NotConnectedError, TokenRefreshError
from parallel_task.calendar.oauth import RefreshedToken
from parallel_task.calendar.token_manager import AccessToken, CredentialManager

pytestmark = pytest.mark.unit

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)
USER_ID = "11111111-1111-1111-1111-111111111111"


def _credential(expires_at: datetime) -> Credential:
    return Credential(
        user_id=USER_ID,
        access_token="ya29.stored",
        refresh_token="1//stored-refresh",
        expires_at=expires_at,
    )


def _manager(credential: Credential | None, *, refresh=None, updated: bool = True):
    store = MagicMock()
    store.get = AsyncMock(return_value=credential)
    store.update_access_token = AsyncMock(return_value=updated)
    oauth = MagicMock()
    oauth.refresh = refresh or AsyncMock(
        return_value=RefreshedToken(
            access_token="ya29.fresh", expires_at=NOW + timedelta(hours=1)
        )
    )
    return CredentialManager(store, oauth, clock=lambda: NOW), store, oauth


class TestFastPath:
    async def test_unexpired_token_returned_without_refresh(self):
        manager, store, oauth = _manager(_credential(NOW + timedelta(minutes=5)))

        token = await manager.get_valid_access_token(USER_ID)

        assert token == AccessToken(token="ya29.stored", expires_at=NOW + timedelta(minutes=5))
        oauth.refresh.assert_not_awaited()
        store.update_access_token.assert_not_awaited()

    async def test_not_connected_returns_none(self):
        manager, _, oauth = _manager(None)

        assert await manager.get_valid_access_token(USER_ID) is None
        oauth.refresh.assert_not_awaited()


class TestRefresh:
    async def test_token_expiring_now_is_refreshed(self):
        manager, store, oauth = _manager(_credential(NOW))

        token = await manager.get_valid_access_token(USER_ID)

        assert token.token == "ya29.fresh"
        oauth.refresh.assert_awaited_once_with("1//stored-refresh")
        store.update_access_token.assert_awaited_once_with(
            USER_ID, "ya29.fresh", NOW + timedelta(hours=1), refresh_token=None
        )

    async def test_rotated_refresh_token_is_persisted(self):
        refresh = AsyncMock(
            return_value=RefreshedToken(
                access_token="ya29.fresh",
                expires_at=NOW + timedelta(hours=1),
                refresh_token="1//rotated",
            )
        )
        manager, store, _ = _manager(_credential(NOW - timedelta(hours=1)), refresh=refresh)

        await manager.get_valid_access_token(USER_ID)

        assert store.update_access_token.await_args.kwargs["refresh_token"] == "1//rotated"

    async def test_refresh_failure_returns_none_and_keeps_credential(self):
        refresh = AsyncMock(side_effect=TokenRefreshError("invalid_grant"))
        manager, store, _ = _manager(_credential(NOW - timedelta(hours=1)), refresh=refresh)

        assert await manager.get_valid_access_token(USER_ID) is None
        store.update_access_token.assert_not_awaited()
        store.delete.assert_not_called()

    async def test_already_expired_refresh_result_returns_none(self):
        refresh = AsyncMock(
            return_value=RefreshedToken(access_token="ya29.stale", expires_at=NOW)
        )
        manager, store, _ = _manager(_credential(NOW - timedelta(hours=1)), refresh=refresh)

        assert await manager.get_valid_access_token(USER_ID) is None
        store.update_access_token.assert_not_awaited()

    async def test_disconnect_during_refresh_returns_none(self):
        manager, _, _ = _manager(_credential(NOW - timedelta(hours=1)), updated=False)

        assert await manager.get_valid_access_token(USER_ID) is None


class TestRequireAccessToken:
    async def test_raises_not_connected(self):
        manager, _, _ = _manager(None)

        with pytest.raises(NotConnectedError) as excinfo:
            await manager.require_access_token(USER_ID)

        assert excinfo.value.user_id == USER_ID

    async def test_returns_token(self):
        manager, _, _ = _manager(_credential(NOW + timedelta(hours=1)))

        token = await manager.require_access_token(USER_ID)

        assert token.token == "ya29.stored"
        assert "ya29" not in repr(token)
