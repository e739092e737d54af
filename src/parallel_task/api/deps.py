"""Service wiring and FastAPI dependencies for the HTTP API.

Provides:
- ``Services``: the explicitly constructed clients and components (DB pool,
  shared ``httpx.AsyncClient``, OAuth and Calendar clients, repositories,
  orchestrator, reconciliation listener).
- ``build_services()`` / ``close_services()``: called from the app lifespan.
  The resulting ``Services`` lives on ``app.state``; nothing is module-global.
- ``get_services()`` and ``get_current_user()``: FastAPI dependencies.  Tests
  replace them through ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
from fastapi import Header, Request

from parallel_task.calendar.credentials import CredentialStore
from parallel_task.calendar.errors import UnauthenticatedError
from parallel_task.calendar.oauth import GoogleOAuthClient
from parallel_task.calendar.provider import GoogleCalendarClient
from parallel_task.calendar.reconcile import ReconciliationListener
from parallel_task.calendar.sync import SyncOrchestrator
from parallel_task.calendar.tasks import TaskRepository
from parallel_task.calendar.token_manager import CredentialManager
from parallel_task.core.logging import set_user_context
from parallel_task.db import Database

if TYPE_CHECKING:
    import asyncpg

    from parallel_task.config import AppConfig

logger = logging.getLogger(__name__)

_SUPABASE_USER_PATH = "/auth/v1/user"


@dataclass
class Services:
    """Everything a request handler needs, built once per application."""

    config: AppConfig
    pool: asyncpg.Pool
    http_client: httpx.AsyncClient
    oauth: GoogleOAuthClient
    credential_store: CredentialStore
    credentials: CredentialManager
    calendar: GoogleCalendarClient
    tasks: TaskRepository
    orchestrator: SyncOrchestrator
    listener: ReconciliationListener
    database: Database | None = None


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity resolved from the request's bearer token."""

    id: str
    email: str | None = None


def wire_services(
    config: AppConfig,
    pool: asyncpg.Pool,
    http_client: httpx.AsyncClient,
    database: Database | None = None,
) -> Services:
    """Assemble the component graph from already-open resources."""
    oauth = GoogleOAuthClient(
        http_client,
        client_id=config.google.client_id,
        client_secret=config.google.client_secret,
        redirect_uri=config.google.redirect_uri,
        state_secret=config.auth.oauth_state_secret,
    )
    credential_store = CredentialStore(pool)
    credentials = CredentialManager(credential_store, oauth)
    calendar = GoogleCalendarClient(http_client)
    tasks = TaskRepository(pool)
    orchestrator = SyncOrchestrator(
        tasks,
        credentials,
        calendar,
        pool,
        timezone=config.calendar.timezone,
    )
    listener = ReconciliationListener(pool, tasks, credentials, calendar)
    return Services(
        config=config,
        pool=pool,
        http_client=http_client,
        oauth=oauth,
        credential_store=credential_store,
        credentials=credentials,
        calendar=calendar,
        tasks=tasks,
        orchestrator=orchestrator,
        listener=listener,
        database=database,
    )


async def build_services(config: AppConfig) -> Services:
    """Open the DB pool and HTTP client and wire the components.

    The database comes from ``DATABASE_URL`` / ``POSTGRES_*``; every outbound
    HTTP call shares one client bounded by ``calendar.http_timeout_seconds``.
    """
    database = Database.from_env()
    pool = await database.connect()
    http_client = httpx.AsyncClient(timeout=config.calendar.http_timeout_seconds)
    logger.info(
        "Services initialized (db=%s, timezone=%s)",
        database.db_name,
        config.calendar.timezone,
    )
    return wire_services(config, pool, http_client, database=database)


async def close_services(services: Services) -> None:
    """Close the HTTP client and the DB pool."""
    try:
        await services.http_client.aclose()
    except Exception:
        logger.warning("Error closing HTTP client", exc_info=True)
    if services.database is not None:
        await services.database.close()


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_services(request: Request) -> Services:
    """FastAPI dependency: the ``Services`` built by the lifespan handler."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized; the app lifespan has not run")
    return services


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise UnauthenticatedError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthenticatedError("Authorization header must be 'Bearer <token>'")
    return token.strip()


async def verify_user_token(services: Services, token: str) -> AuthenticatedUser:
    """Resolve *token* to a user through the hosted auth service.

    Raises
    ------
    UnauthenticatedError
        If the auth service is not configured, unreachable, or rejects the token.
    """
    auth = services.config.auth
    if not auth.supabase_url or not auth.supabase_anon_key:
        logger.error("User authentication is not configured (SUPABASE_URL/SUPABASE_ANON_KEY)")
        raise UnauthenticatedError("Authentication service is not configured")

    url = auth.supabase_url.rstrip("/") + _SUPABASE_USER_PATH
    try:
        response = await services.http_client.get(
            url,
            headers={"apikey": auth.supabase_anon_key, "Authorization": f"Bearer {token}"},
        )
    except httpx.HTTPError as exc:
        logger.warning("Auth service request failed: %s", exc)
        raise UnauthenticatedError("Could not verify credentials") from exc

    if response.status_code != 200:
        logger.info("Auth service rejected token (status=%d)", response.status_code)
        raise UnauthenticatedError("Invalid or expired session")

    try:
        payload = response.json()
    except ValueError as exc:
        raise UnauthenticatedError("Could not verify credentials") from exc
    user_id = payload.get("id") if isinstance(payload, dict) else None
    if not isinstance(user_id, str) or not user_id:
        raise UnauthenticatedError("Invalid or expired session")
    return AuthenticatedUser(id=user_id, email=payload.get("email"))


async def get_current_user(
    request: Request,
    authorization: str | None = Header(default=None),
) -> AuthenticatedUser:
    """FastAPI dependency: the caller's verified identity.

    Also binds the user id to the logging context for the rest of the request.
    """
    token = _bearer_token(authorization)
    user = await verify_user_token(get_services(request), token)
    set_user_context(user.id)
    return user
