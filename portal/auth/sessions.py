"""Admin session guard + session lifecycle.

Provides:
  - SessionGuard.authenticate()  - session_token cookie → SessionContext
  - require_session()            - FastAPI Depends()-compatible wrapper
  - create_session() / delete_session()

Authentication steps (all rejections are 401):
  1. cookie present                                  [missing]
  2. exact token lookup, smart retry                 [invalid] (miss OR store error)
  3. now < expires_at, otherwise lazy delete         [expired]
     (delete is best effort, ≤2 retries; the request fails closed either way)
"""

from __future__ import annotations

import secrets
from dataclasses import replace
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException, Request

from portal.auth.context import SessionContext
from portal.auth.models import SessionRecord
from portal.constants import SESSION_COOKIE_NAME, SESSION_DELETE_MAX_RETRIES, SESSION_TOKEN_BYTES
from portal.store.protocol import RowStore, eq
from portal.utils.logger import get_logger
from portal.utils.retry import RetryOptions, log_retry, with_smart_retry
from portal.utils.sanitizer import sanitize_error, sanitize_token
from portal.utils.timestamps import to_iso, utc_now
from portal.utils.ulid import generate_ulid

logger = get_logger(__name__)

_TABLE = "sessions"


class SessionAuthError(HTTPException):
    """Rejection raised by the session guard. ``detail`` = ``{error, reason, message}``."""

    def __init__(self, reason: str, error: str, message: str) -> None:
        super().__init__(
            status_code=401,
            detail={"error": error, "reason": reason, "message": message},
        )
        self.reason = reason


# ─── Lifecycle ────────────────────────────────────────────────────────────────


async def create_session(store: RowStore, user_id: str, ttl_hours: int) -> SessionRecord:
    """Insert a new session for ``user_id`` valid for ``ttl_hours``."""
    now = utc_now()
    row = {
        "id": generate_ulid(),
        "user_id": user_id,
        "session_token": secrets.token_hex(SESSION_TOKEN_BYTES),
        "expires_at": to_iso(now + timedelta(hours=ttl_hours)),
        "created_at": to_iso(now),
    }
    stored = await store.insert(_TABLE, row)
    logger.info("session_created", user_id=user_id, session_id=row["id"])
    return SessionRecord.from_row(stored)


async def delete_session(store: RowStore, token: str) -> int:
    return await store.delete(_TABLE, [eq("session_token", token)])


# ─── Guard ────────────────────────────────────────────────────────────────────


class SessionGuard:
    """Cookie-session authentication against the sessions table."""

    def __init__(
        self,
        store: RowStore,
        *,
        retry_options: Optional[RetryOptions] = None,
    ) -> None:
        self._store = store
        options = retry_options or RetryOptions(max_retries=3, initial_delay_ms=100)
        self._lookup_options = replace(
            options, on_retry=options.on_retry or log_retry(logger, "session_lookup")
        )
        self._delete_options = replace(
            options,
            max_retries=min(options.max_retries, SESSION_DELETE_MAX_RETRIES),
            on_retry=log_retry(logger, "session_delete"),
        )

    async def authenticate(self, token: Optional[str]) -> SessionContext:
        if not token:
            raise SessionAuthError("missing", "Authentication required", "No session cookie")

        try:
            rows = await with_smart_retry(
                lambda: self._store.select(_TABLE, [eq("session_token", token)], limit=1),
                self._lookup_options,
            )
            record = SessionRecord.from_row(rows[0]) if rows else None
        except Exception as exc:
            logger.error(
                "session_lookup_failed",
                error=sanitize_error(exc),
                error_type=type(exc).__name__,
            )
            record = None

        if record is None:
            logger.warning("session_auth_rejected", reason="invalid", token=sanitize_token(token))
            raise SessionAuthError(
                "invalid", "Invalid or expired session", "Session not found"
            )

        if record.is_expired(utc_now()):
            await self._delete_expired(record)
            logger.info("session_auth_rejected", reason="expired", session_id=record.id)
            raise SessionAuthError("expired", "Session expired", "Please log in again")

        return SessionContext(session_id=record.id, user_id=record.user_id)

    async def _delete_expired(self, record: SessionRecord) -> None:
        try:
            await with_smart_retry(
                lambda: self._store.delete(_TABLE, [eq("id", record.id)]),
                self._delete_options,
            )
        except Exception as exc:
            logger.warning(
                "expired_session_delete_failed",
                session_id=record.id,
                error=sanitize_error(exc),
            )


async def require_session(request: Request) -> SessionContext:
    """FastAPI dependency: authenticate the ``session_token`` cookie."""
    guard: SessionGuard = request.app.state.session_guard
    return await guard.authenticate(request.cookies.get(SESSION_COOKIE_NAME))
