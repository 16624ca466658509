"""Key rotation with grace periods + the periodic deactivation sweep.

KeyRotationManager:
  - rotate()                       - issue a replacement key linked to the old one;
                                     the old key stays active until its grace
                                     period lapses
  - sweep_expired_grace_periods()  - deactivate active keys whose grace period
                                     is strictly in the past; per-key failures
                                     are logged and skipped
  - stats()                        - read-only aggregate counts

KeyDeactivationScheduler:
  Background asyncio task owned by the FastAPI lifespan. Runs one sweep at
  start(), then one every ``interval_ms``; stop() cancels it.

The sweep races live authentication on the same rows: a key may be
deactivated between a guard's active-key fetch and its usage update. The
usage update then lands on an inactive row, which is harmless.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Optional

from portal.activity.logger import ActivityLogger
from portal.auth.keys import InvalidKeyError, KeyValidationError, create_api_key, get_api_key
from portal.auth.models import ApiKeyRecord
from portal.constants import DEFAULT_GRACE_PERIOD_DAYS, MAX_GRACE_PERIOD_DAYS
from portal.store.protocol import RowStore, eq, lt, not_null
from portal.utils.logger import get_logger
from portal.utils.retry import RetryOptions, log_retry, with_smart_retry
from portal.utils.sanitizer import sanitize_error
from portal.utils.timestamps import to_iso, utc_now

logger = get_logger(__name__)

_TABLE = "api_keys"

DEACTIVATION_REASON = "Grace period expired after rotation"


# ─── Results ──────────────────────────────────────────────────────────────────


@dataclass
class RotationResult:
    """Outcome of rotate(). ``full_key`` is the only copy of the new plaintext."""

    new_key: ApiKeyRecord
    full_key: str
    old_key_id: str
    old_key_name: str
    grace_period_expires_at: datetime
    grace_period_days: int

    def __repr__(self) -> str:
        return (
            f"RotationResult(new_key_id={self.new_key.id!r}, old_key_id={self.old_key_id!r}, "
            f"grace_period_days={self.grace_period_days})"
        )

    def to_response(self) -> dict[str, Any]:
        new_key = self.new_key.to_public_dict()
        new_key["full_key"] = self.full_key
        return {
            "message": "API key rotated successfully",
            "newKey": new_key,
            "oldKey": {
                "id": self.old_key_id,
                "key_name": self.old_key_name,
                "grace_period_expires_at": to_iso(self.grace_period_expires_at),
                "grace_period_days": self.grace_period_days,
            },
            "warning": (
                "This is the only time the new API key will be displayed. "
                "Please save it securely. The old key will remain active for "
                f"{self.grace_period_days} days."
            ),
        }


@dataclass
class SweepResult:
    checked: int = 0
    deactivated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    error: Optional[str] = None
    """Set when the candidate query itself failed; nothing was processed."""


@dataclass
class RotationStats:
    total_keys: int = 0
    active_keys: int = 0
    inactive_keys: int = 0
    keys_in_grace_period: int = 0
    """Keys with a grace_period_expires_at, lapsed or not."""
    rotated_keys: int = 0
    """Keys carrying a rotated_from_key_id back-reference."""

    def to_dict(self) -> dict[str, int]:
        return {
            "totalKeys": self.total_keys,
            "activeKeys": self.active_keys,
            "inactiveKeys": self.inactive_keys,
            "keysInGracePeriod": self.keys_in_grace_period,
            "rotatedKeys": self.rotated_keys,
        }


# ─── KeyRotationManager ───────────────────────────────────────────────────────


class KeyRotationManager:
    def __init__(
        self,
        store: RowStore,
        activity: ActivityLogger,
        *,
        grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
        retry_options: Optional[RetryOptions] = None,
    ) -> None:
        self._store = store
        self._activity = activity
        self.grace_period_days = grace_period_days
        options = retry_options or RetryOptions()
        self._retry_options = replace(
            options, on_retry=options.on_retry or log_retry(logger, "key_rotation_sweep")
        )

    async def rotate(
        self,
        old_key_id: str,
        actor_user_id: Optional[str],
        grace_period_days: Optional[int] = None,
    ) -> RotationResult:
        """Issue a replacement for ``old_key_id``.

        The new key inherits environment, scopes and expiry and points back at
        the old key. The old key stays active, with its grace period set to
        now + ``grace_period_days``.

        If stamping the old key fails, the new key is deleted again before the
        error propagates.

        Raises:
            InvalidKeyError:    No key with ``old_key_id``.
            KeyValidationError: Grace period outside 0..MAX_GRACE_PERIOD_DAYS.
        """
        days = self.grace_period_days if grace_period_days is None else grace_period_days
        if days < 0:
            raise KeyValidationError("Grace period must not be negative")
        if days > MAX_GRACE_PERIOD_DAYS:
            raise KeyValidationError(
                f"Grace period must not exceed {MAX_GRACE_PERIOD_DAYS} days"
            )

        old = await get_api_key(self._store, old_key_id)
        if old is None:
            raise InvalidKeyError()

        now = utc_now()
        grace_expires = now + timedelta(days=days)

        new_record, material = await create_api_key(
            self._store,
            key_name=old.key_name,
            scopes=old.scopes,
            expires_at=old.expires_at,
            environment=old.environment,
            created_by=actor_user_id,
            notes=f"Rotated from key {old.id}",
            rotated_from_key_id=old.id,
        )

        try:
            await self._store.update(
                _TABLE,
                {"grace_period_expires_at": to_iso(grace_expires), "updated_at": to_iso(now)},
                [eq("id", old.id)],
            )
        except Exception as exc:
            logger.error(
                "api_key_rotation_rolled_back",
                old_key_id=old.id,
                new_key_id=new_record.id,
                error=sanitize_error(exc),
            )
            await self._store.delete(_TABLE, [eq("id", new_record.id)])
            raise

        await self._activity.log_api_key_rotation(actor_user_id, old.id, new_record.id, days)
        logger.info(
            "api_key_rotated",
            old_key_id=old.id,
            new_key_id=new_record.id,
            grace_period_days=days,
            grace_period_expires_at=to_iso(grace_expires),
        )

        return RotationResult(
            new_key=new_record,
            full_key=material.full_key,
            old_key_id=old.id,
            old_key_name=old.key_name,
            grace_period_expires_at=grace_expires,
            grace_period_days=days,
        )

    async def sweep_expired_grace_periods(self) -> SweepResult:
        """Deactivate active keys whose grace period has lapsed. Never raises."""
        result = SweepResult()
        now_iso = to_iso(utc_now())
        logger.info("key_deactivation_sweep_start")

        try:
            candidates = await with_smart_retry(
                lambda: self._store.select(
                    _TABLE,
                    [
                        eq("is_active", True),
                        not_null("grace_period_expires_at"),
                        lt("grace_period_expires_at", now_iso),
                    ],
                    columns=("id", "key_name", "grace_period_expires_at"),
                ),
                self._retry_options,
            )
        except Exception as exc:
            result.error = sanitize_error(exc)
            logger.error(
                "key_deactivation_query_failed",
                error=result.error,
                error_type=type(exc).__name__,
            )
            return result

        result.checked = len(candidates)
        for row in candidates:
            key_id = row["id"]
            try:
                updated = await self._store.update(
                    _TABLE,
                    {"is_active": False, "updated_at": to_iso(utc_now())},
                    [eq("id", key_id)],
                )
                if not updated:
                    result.failed.append(key_id)
                    logger.warning("key_deactivation_missing", key_id=key_id)
                    continue
                await self._activity.log_api_key_deactivation(key_id, DEACTIVATION_REASON)
                result.deactivated.append(key_id)
                logger.info("key_deactivated", key_id=key_id, key_name=row.get("key_name"))
            except Exception as exc:
                result.failed.append(key_id)
                logger.error(
                    "key_deactivation_failed",
                    key_id=key_id,
                    error=sanitize_error(exc),
                    error_type=type(exc).__name__,
                )

        logger.info(
            "key_deactivation_sweep_complete",
            checked=result.checked,
            deactivated=len(result.deactivated),
            failed=len(result.failed),
        )
        return result

    async def stats(self) -> RotationStats:
        """Aggregate key counts. Store errors propagate."""
        total = await self._store.count(_TABLE)
        active = await self._store.count(_TABLE, [eq("is_active", True)])
        in_grace = await self._store.count(_TABLE, [not_null("grace_period_expires_at")])
        rotated = await self._store.count(_TABLE, [not_null("rotated_from_key_id")])
        return RotationStats(
            total_keys=total,
            active_keys=active,
            inactive_keys=total - active,
            keys_in_grace_period=in_grace,
            rotated_keys=rotated,
        )


# ─── KeyDeactivationScheduler ─────────────────────────────────────────────────


class KeyDeactivationScheduler:
    """Runs KeyRotationManager.sweep_expired_grace_periods() on an interval.

    Usage (FastAPI lifespan):
        scheduler = KeyDeactivationScheduler(manager, interval_ms=3_600_000)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, manager: KeyRotationManager, interval_ms: int) -> None:
        self._manager = manager
        self._interval_s = interval_ms / 1000
        self._task: Optional[asyncio.Task[None]] = None
        self._run_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> SweepResult:
        """One sweep; concurrent calls are serialized."""
        async with self._run_lock:
            return await self._manager.sweep_expired_grace_periods()

    async def start(self) -> None:
        if self.is_running:
            logger.warning("key_deactivation_scheduler_already_running")
            return
        self._task = asyncio.create_task(
            self._background_loop(), name="key_deactivation_scheduler"
        )
        logger.info(
            "key_deactivation_scheduler_started",
            interval_minutes=round(self._interval_s / 60, 2),
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("key_deactivation_scheduler_stopped")

    async def _background_loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "key_deactivation_cycle_error",
                    error=sanitize_error(exc),
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(self._interval_s)
