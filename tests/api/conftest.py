"""Shared fixtures for HTTP API tests.

Covers:
- A minimal ``AppConfig`` (no file, no environment)
- A ``Services`` stand-in built from mocks, injected via ``app.dependency_overrides``
- An authenticated ``httpx.AsyncClient`` over ``ASGITransport``
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from parallel_task.api.app import create_app
from parallel_task.api.deps import AuthenticatedUser, get_current_user, get_services
from parallel_task.config import AppConfig, AuthConfig, GoogleConfig

API_USER_ID = "11111111-1111-1111-1111-111111111111"
API_TASK_ID = "22222222-2222-2222-2222-222222222222"


def make_config(**overrides) -> AppConfig:
    fields = {
        "google": GoogleConfig(
            client_id="client-123.apps.googleusercontent.com",
            client_secret="shh",
            redirect_uri="http://localhost:3000/api/auth/callback/google",
        ),
        "app_url": "http://localhost:3000",
        "auth": AuthConfig(
            supabase_url="https://project.supabase.co",
            supabase_anon_key="anon-key",
            oauth_state_secret="state-secret",
        ),
    }
    fields.update(overrides)
    return AppConfig(**fields)


def make_services(config: AppConfig | None = None) -> MagicMock:
    """A ``Services`` double: every component is a mock with async methods."""
    services = MagicMock()
    services.config = config or make_config()
    services.pool = MagicMock()
    services.pool.execute = AsyncMock(return_value="INSERT 0 1")

    services.oauth = MagicMock()
    services.oauth.exchange_code = AsyncMock()

    services.credential_store = MagicMock()
    services.credential_store.get = AsyncMock(return_value=None)
    services.credential_store.save = AsyncMock()
    services.credential_store.delete = AsyncMock(return_value=False)

    services.orchestrator = MagicMock()
    services.orchestrator.sync = AsyncMock()
    services.orchestrator.unsync = AsyncMock()

    services.listener = MagicMock()
    services.listener.list_upcoming = AsyncMock(return_value=[])
    services.listener.on_external_change_notification = AsyncMock()

    services.tasks = MagicMock()
    services.tasks.get_record = AsyncMock(return_value=None)
    services.tasks.update_fields = AsyncMock(return_value=None)
    return services


def sync_log_calls(pool: MagicMock) -> list[tuple]:
    """``(user_id, task_id, event_id, action, status)`` of every sync log insert."""
    return [
        call.args[1:6]
        for call in pool.execute.await_args_list
        if "calendar_sync_log" in call.args[0]
    ]


@pytest.fixture
def app_config() -> AppConfig:
    return make_config()


@pytest.fixture
def services(app_config) -> MagicMock:
    return make_services(app_config)


@pytest.fixture
def app(app_config, services):
    application = create_app(app_config)
    application.dependency_overrides[get_services] = lambda: services
    application.dependency_overrides[get_current_user] = lambda: AuthenticatedUser(
        id=API_USER_ID, email="ada@example.com"
    )
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as http:
        yield http


@pytest.fixture
def logged(services):
    """Callable returning the sync log inserts made through ``services.pool``."""
    return lambda: sync_log_calls(services.pool)


@pytest.fixture
def future() -> datetime:
    return datetime.now(UTC) + timedelta(hours=1)
