"""API key authentication guard + scope check.

Provides:
  - ApiKeyGuard.authenticate()  - resolve a bearer credential to ApiKeyContext
  - require_api_key()           - FastAPI Depends()-compatible wrapper
  - check_scope()               - pure, synchronous scope check (403)
  - require_scope(scope)        - dependency factory: auth + scope in one

Authentication steps, strictly in order (terminal rejection reason in brackets):
  1. Authorization header present                 [missing-header]   401
  2. "Bearer <token>"                             [bad-format]       401
  3. sk_live_/sk_test_ + 64 hex, 72 chars         [invalid-format]   401
  4. fetch active keys, smart retry               [internal-error]   500
  5. at least one active key                      [no-active-keys]   401
  6. bcrypt scan, oldest key first, first match   [invalid-key]      401
  7. expires_at not in the past                   [expired]          401
  8. quota window below the hourly cap            [rate-limited]     429 + Retry-After: 3600

On acceptance the usage update and the api_key_usage activity entry are handed
to BackgroundTaskQueue; the request never awaits them.

Cost: step 6 is O(active keys) bcrypt compares per request. The stored value
is a one-way hash, so the match cannot be pushed into a store predicate.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Coroutine, Optional

from fastapi import Depends, HTTPException, Request

from portal.activity.logger import ActivityLogger
from portal.auth.context import ApiKeyContext, RequestInfo
from portal.auth.generator import is_valid_key_format, verify_api_key
from portal.auth.keys import fetch_active_keys, record_key_usage
from portal.auth.models import ApiKeyRecord
from portal.constants import RATE_LIMIT_RETRY_AFTER_SECONDS
from portal.store.protocol import RowStore
from portal.utils.background import BackgroundTaskQueue
from portal.utils.logger import PerformanceLogger, get_logger
from portal.utils.retry import RetryOptions, log_retry, with_smart_retry
from portal.utils.sanitizer import sanitize_api_key, sanitize_error
from portal.utils.timestamps import utc_now

logger = get_logger(__name__)

_BEARER_PREFIX = "Bearer "


# ─── Rejection ────────────────────────────────────────────────────────────────


class ApiKeyAuthError(HTTPException):
    """Rejection raised by the API key guard.

    ``detail`` is a dict ``{error, reason, message[, retryAfter]}``; ``reason``
    is the stable machine-checkable code.
    """

    def __init__(
        self,
        status_code: int,
        reason: str,
        error: str,
        message: str,
        *,
        retry_after: Optional[int] = None,
    ) -> None:
        detail: dict[str, Any] = {"error": error, "reason": reason, "message": message}
        headers: Optional[dict[str, str]] = None
        if retry_after is not None:
            detail["retryAfter"] = retry_after
            headers = {"Retry-After": str(retry_after)}
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.reason = reason


# ─── Guard ────────────────────────────────────────────────────────────────────


class ApiKeyGuard:
    """Bearer-credential authentication against the api_keys table.

    One instance per application, created in the lifespan and stored on
    ``app.state.api_key_guard``.
    """

    def __init__(
        self,
        store: RowStore,
        activity: ActivityLogger,
        background: BackgroundTaskQueue,
        *,
        max_requests_per_window: int,
        window_seconds: int,
        retry_options: Optional[RetryOptions] = None,
    ) -> None:
        self._store = store
        self._activity = activity
        self._background = background
        self._max_requests = max_requests_per_window
        self._window_seconds = window_seconds
        options = retry_options or RetryOptions(max_retries=3, initial_delay_ms=100)
        if options.on_retry is None:
            options = replace(options, on_retry=log_retry(logger, "api_key_lookup"))
        self._retry_options = options

    async def authenticate(
        self,
        authorization: Optional[str],
        info: RequestInfo,
    ) -> ApiKeyContext:
        """Resolve ``authorization`` to an ApiKeyContext or raise ApiKeyAuthError."""
        # ── 1-2. Header extraction ────────────────────────────────────────────
        if not authorization:
            self._reject_log("missing-header", info)
            raise ApiKeyAuthError(
                401,
                "missing-header",
                "Authentication required",
                "Missing Authorization header. Include your API key as: "
                "Authorization: Bearer sk_live_...",
            )
        if not authorization.startswith(_BEARER_PREFIX):
            self._reject_log("bad-format", info)
            raise ApiKeyAuthError(
                401,
                "bad-format",
                "Invalid authentication format",
                "Authorization header must use Bearer token format: "
                "Authorization: Bearer sk_live_...",
            )
        token = authorization[len(_BEARER_PREFIX):]

        # ── 3. Format check (no store access) ─────────────────────────────────
        if not is_valid_key_format(token):
            self._reject_log("invalid-format", info, key=sanitize_api_key(token))
            raise ApiKeyAuthError(
                401,
                "invalid-format",
                "Invalid API key format",
                "API key must start with sk_live_ or sk_test_ and be 72 characters long",
            )

        # ── 4. Active keys (transient failures retried) ───────────────────────
        try:
            active = await with_smart_retry(
                lambda: fetch_active_keys(self._store), self._retry_options
            )
        except Exception as exc:
            logger.error(
                "api_key_lookup_failed",
                error=sanitize_error(exc),
                error_type=type(exc).__name__,
                path=info.path,
            )
            raise ApiKeyAuthError(
                500,
                "internal-error",
                "Internal server error",
                "An internal error occurred. Please try again later.",
            ) from exc

        # ── 5. Empty key store ────────────────────────────────────────────────
        if not active:
            self._reject_log("no-active-keys", info)
            raise ApiKeyAuthError(
                401,
                "no-active-keys",
                "Invalid API key",
                "No active API keys found. Please create an API key in the admin panel.",
            )

        # ── 6. Linear bcrypt scan ─────────────────────────────────────────────
        matched = await self._find_match(token, active)
        if matched is None:
            self._reject_log("invalid-key", info, key=sanitize_api_key(token))
            raise ApiKeyAuthError(
                401,
                "invalid-key",
                "Invalid API key",
                "The provided API key is not valid or has been revoked.",
            )

        # ── 7. Expiry ─────────────────────────────────────────────────────────
        now = utc_now()
        if matched.is_expired(now):
            self._reject_log("expired", info, key_id=matched.id)
            raise ApiKeyAuthError(
                401,
                "expired",
                "API key expired",
                "This API key has expired. Please create a new one in the admin panel.",
            )

        # ── 8. Hourly quota ───────────────────────────────────────────────────
        used = matched.window_usage(now, self._window_seconds)
        if used >= self._max_requests:
            self._reject_log("rate-limited", info, key_id=matched.id, used=used)
            await self._activity.log_rate_limit_violation(
                info, "api_key", api_key_id=matched.id
            )
            raise ApiKeyAuthError(
                429,
                "rate-limited",
                "API rate limit exceeded",
                f"Maximum {self._max_requests} requests per hour allowed for this API key.",
                retry_after=RATE_LIMIT_RETRY_AFTER_SECONDS,
            )

        # ── Accepted: side effects off the request path ───────────────────────
        self._dispatch(
            record_key_usage(self._store, matched, self._window_seconds, now),
            "api_key_usage_update",
        )
        self._dispatch(
            self._activity.log_api_key_usage(info, matched.id),
            "api_key_usage_log",
        )

        return ApiKeyContext(
            id=matched.id,
            key_name=matched.key_name,
            scopes=tuple(matched.scopes),
            created_by=matched.created_by,
        )

    async def _find_match(
        self, token: str, candidates: list[ApiKeyRecord]
    ) -> Optional[ApiKeyRecord]:
        with PerformanceLogger("api_key_scan", logger):
            for record in candidates:
                if await verify_api_key(token, record.api_key_hash):
                    return record
        return None

    def _dispatch(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        self._background.submit(coro, name=name)

    @staticmethod
    def _reject_log(reason: str, info: RequestInfo, **fields: Any) -> None:
        logger.warning(
            "api_key_auth_rejected",
            reason=reason,
            path=info.path,
            method=info.method,
            ip_address=info.ip_address,
            **fields,
        )


# ─── FastAPI dependencies ─────────────────────────────────────────────────────


async def require_api_key(request: Request) -> ApiKeyContext:
    """FastAPI dependency: authenticate the bearer credential on ``request``."""
    guard: ApiKeyGuard = request.app.state.api_key_guard
    return await guard.authenticate(
        request.headers.get("Authorization"),
        RequestInfo.from_request(request),
    )


def check_scope(context: Optional[ApiKeyContext], scope: str) -> None:
    """Raise 403 ``insufficient-scope`` unless ``context`` grants ``scope``.

    Pure: no store access, no side effects.
    """
    if context is None:
        raise ApiKeyAuthError(
            401,
            "missing-header",
            "Authentication required",
            "This endpoint requires API key authentication",
        )
    if not context.has_scope(scope):
        logger.warning("api_key_scope_denied", key_id=context.id, required_scope=scope)
        raise ApiKeyAuthError(
            403,
            "insufficient-scope",
            "Insufficient permissions",
            f"This API key does not have the required permission: {scope}",
        )


def require_scope(scope: str) -> Callable[..., Coroutine[Any, Any, ApiKeyContext]]:
    """Dependency factory: ``Depends(require_scope("sites:read"))``."""

    async def _require_scope(
        context: ApiKeyContext = Depends(require_api_key),
    ) -> ApiKeyContext:
        check_scope(context, scope)
        return context

    return _require_scope
