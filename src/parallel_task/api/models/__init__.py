"""Shared Pydantic response models for the HTTP API.

Error responses follow
``{"error": {"code": ..., "message": ..., "needs_auth": ..., "details": ...}}``.
"""

from __future__ import annotations

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Structured error payload.

    ``needs_auth`` is true only when the caller must (re)connect Google
    Calendar, so the UI can tell it apart from "try again later".
    """

    code: str
    message: str
    needs_auth: bool = False
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail
