"""ActivityLogger - best-effort writer for the activity_log table.

Contract:
  - log_activity() NEVER raises. A failed insert is logged at ERROR level
    and swallowed; the caller's operation is unaffected.
  - metadata is passed through sanitize_object() before it is persisted.
  - The request path never awaits log_activity() directly for usage
    entries; the API-key guard hands them to BackgroundTaskQueue.

Event types written by the helpers below:
  api_key_usage, rate_limit_violation, api_key_rotation, api_key_deactivation,
  api_key_created, api_key_revoked, api_key_deleted, login, failed_login, logout
"""

from __future__ import annotations

from typing import Optional

from portal.activity.models import VALID_SEVERITIES, ActivityLogEntry
from portal.auth.context import RequestInfo
from portal.store.protocol import Filter, RowStore, eq
from portal.utils.logger import get_logger
from portal.utils.sanitizer import sanitize_error, sanitize_object
from portal.utils.timestamps import utc_now, utc_now_iso
from portal.utils.ulid import generate_ulid

logger = get_logger(__name__)

_TABLE = "activity_log"


class ActivityLogger:
    """Writes and reads activity_log entries through a RowStore."""

    def __init__(self, store: RowStore) -> None:
        self._store = store

    # ── Write path ────────────────────────────────────────────────────────────

    async def log_activity(self, entry: ActivityLogEntry) -> None:
        """Persist ``entry``. Failures are logged, never raised."""
        try:
            if entry.severity not in VALID_SEVERITIES:
                raise ValueError(f"invalid severity {entry.severity!r}")
            entry.id = entry.id or generate_ulid()
            entry.created_at = entry.created_at or utc_now()
            row = entry.to_dict()
            row["metadata"] = sanitize_object(entry.metadata)
            await self._store.insert(_TABLE, row)
        except Exception as exc:
            logger.error(
                "activity_log_write_failed",
                event_type=entry.event_type,
                error=sanitize_error(exc),
                error_type=type(exc).__name__,
            )

    async def log_rate_limit_violation(
        self,
        info: RequestInfo,
        limit_type: str,
        *,
        user_id: Optional[str] = None,
        api_key_id: Optional[str] = None,
    ) -> None:
        await self.log_activity(
            ActivityLogEntry(
                event_type="rate_limit_violation",
                description=f"Rate limit exceeded for {limit_type}",
                severity="warning",
                created_by_user=user_id,
                created_by_api_key=api_key_id,
                ip_address=info.ip_address,
                user_agent=info.user_agent,
                metadata={"limit_type": limit_type, "timestamp": utc_now_iso()},
            )
        )

    async def log_api_key_usage(
        self,
        info: RequestInfo,
        api_key_id: str,
        status_code: int = 200,
    ) -> None:
        await self.log_activity(
            ActivityLogEntry(
                event_type="api_key_usage",
                description=f"API key used: {info.method} {info.path}",
                severity="info",
                created_by_api_key=api_key_id,
                ip_address=info.ip_address,
                user_agent=info.user_agent,
                metadata={
                    "endpoint": info.path,
                    "method": info.method,
                    "status_code": status_code,
                    "timestamp": utc_now_iso(),
                },
            )
        )

    async def log_api_key_rotation(
        self,
        user_id: Optional[str],
        old_key_id: str,
        new_key_id: str,
        grace_period_days: int,
    ) -> None:
        await self.log_activity(
            ActivityLogEntry(
                event_type="api_key_rotation",
                description=(
                    f"API key rotated. Old key will expire in {grace_period_days} days."
                ),
                severity="info",
                created_by_user=user_id,
                metadata={
                    "old_key_id": old_key_id,
                    "new_key_id": new_key_id,
                    "grace_period_days": grace_period_days,
                    "timestamp": utc_now_iso(),
                },
            )
        )

    async def log_api_key_deactivation(self, key_id: str, reason: str) -> None:
        await self.log_activity(
            ActivityLogEntry(
                event_type="api_key_deactivation",
                description=f"API key deactivated: {reason}",
                severity="info",
                metadata={"key_id": key_id, "reason": reason, "timestamp": utc_now_iso()},
            )
        )

    async def log_api_key_created(
        self,
        user_id: Optional[str],
        key_id: str,
        key_name: str,
        scopes: list[str],
    ) -> None:
        await self.log_activity(
            ActivityLogEntry(
                event_type="api_key_created",
                description=f"API key created: {key_name}",
                severity="info",
                created_by_user=user_id,
                metadata={"key_id": key_id, "scopes": list(scopes), "timestamp": utc_now_iso()},
            )
        )

    async def log_api_key_revoked(self, user_id: Optional[str], key_id: str) -> None:
        await self.log_activity(
            ActivityLogEntry(
                event_type="api_key_revoked",
                description="API key revoked",
                severity="warning",
                created_by_user=user_id,
                metadata={"key_id": key_id, "timestamp": utc_now_iso()},
            )
        )

    async def log_api_key_deleted(self, user_id: Optional[str], key_id: str) -> None:
        await self.log_activity(
            ActivityLogEntry(
                event_type="api_key_deleted",
                description="API key deleted",
                severity="warning",
                created_by_user=user_id,
                metadata={"key_id": key_id, "timestamp": utc_now_iso()},
            )
        )

    async def log_failed_login(self, info: RequestInfo, username: str, reason: str) -> None:
        await self.log_activity(
            ActivityLogEntry(
                event_type="failed_login",
                description=f"Failed login attempt for user: {username} ({reason})",
                severity="warning",
                ip_address=info.ip_address,
                user_agent=info.user_agent,
                metadata={"username": username, "reason": reason, "timestamp": utc_now_iso()},
            )
        )

    async def log_successful_login(self, info: RequestInfo, user_id: str, username: str) -> None:
        await self.log_activity(
            ActivityLogEntry(
                event_type="login",
                description=f"User logged in: {username}",
                severity="info",
                created_by_user=user_id,
                ip_address=info.ip_address,
                user_agent=info.user_agent,
                metadata={"username": username, "timestamp": utc_now_iso()},
            )
        )

    async def log_logout(self, info: RequestInfo, user_id: str) -> None:
        await self.log_activity(
            ActivityLogEntry(
                event_type="logout",
                description="User logged out",
                severity="info",
                created_by_user=user_id,
                ip_address=info.ip_address,
                user_agent=info.user_agent,
                metadata={"timestamp": utc_now_iso()},
            )
        )

    # ── Read path ─────────────────────────────────────────────────────────────

    async def list_activity(
        self,
        limit: int = 50,
        offset: int = 0,
        *,
        event_type: Optional[str] = None,
    ) -> tuple[list[ActivityLogEntry], int]:
        """Newest-first page of entries plus the total count. Store errors propagate."""
        filters: list[Filter] = [eq("event_type", event_type)] if event_type else []
        rows = await self._store.select(
            _TABLE,
            filters,
            order_by="created_at",
            descending=True,
            limit=limit,
            offset=offset,
        )
        total = await self._store.count(_TABLE, filters)
        return [ActivityLogEntry.from_row(row) for row in rows], total
