"""Google Calendar connection endpoints.

Two-leg OAuth 2.0 authorization-code flow:

  1. GET /api/auth/google
     - Requires the caller's session.
     - Returns the Google consent URL; its ``state`` carries the caller's
       user id, HMAC-signed so the callback can trust it.

  2. GET /api/auth/callback/google
     - Verifies ``state``, exchanges ``code`` for tokens, upserts the
       credential and writes a ``sync/success`` log entry.
     - Always answers with a browser redirect back to the app:
       ``/?google_connected=true`` on success, ``/?error=<reason>`` otherwise.

Token values are never logged or echoed back.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from parallel_task.api.deps import AuthenticatedUser, Services, get_current_user, get_services
from parallel_task.api.models.oauth import AuthUrlResponse
from parallel_task.calendar.credentials import Credential
from parallel_task.calendar.errors import TokenExchangeError
from parallel_task.calendar.oauth import OAuthStateError
from parallel_task.core.sync_log import SyncAction, SyncStatus, write_sync_log_entry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _app_redirect(services: Services, **params: str) -> RedirectResponse:
    url = f"{services.config.app_url.rstrip('/')}/?{urlencode(params)}"
    return RedirectResponse(url=url, status_code=302)


@router.get("/google", response_model=AuthUrlResponse)
async def google_auth_url(
    user: AuthenticatedUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> AuthUrlResponse:
    """Return the Google consent URL for the authenticated caller."""
    logger.info("Google Calendar connection started for user %s", user.id)
    return AuthUrlResponse(url=services.oauth.authorization_url(user.id))


@router.get("/callback/google")
async def google_callback(
    code: str | None = Query(default=None, description="Authorization code from Google."),
    state: str | None = Query(default=None, description="Signed user id from the consent URL."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
    services: Services = Depends(get_services),
) -> RedirectResponse:
    """Finish the consent flow and redirect the browser back to the app."""
    if error:
        logger.warning("Google OAuth provider error: %s", error)
        return _app_redirect(services, error="google_auth_failed", message=error)

    if not code or not state:
        return _app_redirect(services, error="missing_params")

    try:
        user_id = services.oauth.decode_state(state)
    except OAuthStateError as exc:
        logger.warning("OAuth callback rejected: %s", exc)
        return _app_redirect(services, error="invalid_state")

    try:
        tokens = await services.oauth.exchange_code(code)
    except TokenExchangeError as exc:
        logger.warning("Google token exchange failed for user %s: %s", user_id, exc)
        return _app_redirect(services, error="oauth_failed")

    credential = Credential(
        user_id=user_id,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_at=tokens.expires_at,
        scope=tokens.scope,
        token_type=tokens.token_type,
    )
    try:
        await services.credential_store.save(credential)
    except Exception:
        logger.error("Failed to store Google credential for user %s", user_id, exc_info=True)
        return _app_redirect(services, error="token_storage_failed")

    await write_sync_log_entry(services.pool, user_id, SyncAction.SYNC, SyncStatus.SUCCESS)
    logger.info("Google Calendar connected for user %s (scope=%s)", user_id, tokens.scope)
    return _app_redirect(services, google_connected="true")
