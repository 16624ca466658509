"""Unit tests for portal/auth/rotation.py.

Covers:
  - rotate(): inherited attributes, grace period on the old key, activity entry
  - sweep_expired_grace_periods(): strict-past cutoff, per-key failure tolerance,
    query failure reported on the result, idempotence
  - stats(): aggregate counts
  - KeyDeactivationScheduler: start/stop lifecycle and serialized run_once()
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from portal.activity.logger import ActivityLogger
from portal.auth.keys import InvalidKeyError, KeyValidationError, get_api_key
from portal.auth.rotation import (
    DEACTIVATION_REASON,
    KeyDeactivationScheduler,
    KeyRotationManager,
    SweepResult,
)
from portal.constants import MAX_GRACE_PERIOD_DAYS
from portal.store import eq
from portal.store.sqlite_backend import LocalSQLiteStore
from portal.utils.retry import RetryOptions
from portal.utils.timestamps import to_iso, utc_now

FAST_RETRY = RetryOptions(max_retries=2, initial_delay_ms=1, max_delay_ms=2)


@pytest.fixture
def manager(store: LocalSQLiteStore, activity: ActivityLogger) -> KeyRotationManager:
    return KeyRotationManager(store, activity, grace_period_days=10, retry_options=FAST_RETRY)


async def _set_grace(store: LocalSQLiteStore, key_id: str, delta: timedelta) -> None:
    await store.update(
        "api_keys",
        {"grace_period_expires_at": to_iso(utc_now() + delta)},
        [eq("id", key_id)],
    )


class TestRotate:
    async def test_new_key_inherits_attributes(
        self, manager: KeyRotationManager, store: LocalSQLiteStore, make_key
    ) -> None:
        expires = utc_now() + timedelta(days=90)
        old, old_full_key = await make_key(
            key_name="deploy", scopes=["sites:read"], environment="test", expires_at=expires
        )

        result = await manager.rotate(old.id, "admin-1")

        new = result.new_key
        assert new.id != old.id
        assert new.key_name == "deploy"
        assert new.scopes == ["sites:read"]
        assert new.environment == "test"
        assert new.expires_at == old.expires_at
        assert new.rotated_from_key_id == old.id
        assert new.notes == f"Rotated from key {old.id}"
        assert new.created_by == "admin-1"
        assert result.full_key.startswith("sk_test_")
        assert result.full_key != old_full_key

    async def test_old_key_gets_grace_period(
        self, manager: KeyRotationManager, store: LocalSQLiteStore, make_key
    ) -> None:
        old, _ = await make_key()
        before = utc_now()
        result = await manager.rotate(old.id, "admin-1", grace_period_days=3)

        refreshed = await get_api_key(store, old.id)
        assert refreshed is not None
        assert refreshed.is_active is True
        assert refreshed.grace_period_expires_at == result.grace_period_expires_at
        assert (
            before + timedelta(days=3)
            <= refreshed.grace_period_expires_at
            <= utc_now() + timedelta(days=3)
        )
        assert result.grace_period_days == 3

    async def test_logs_rotation(
        self, manager: KeyRotationManager, store: LocalSQLiteStore, make_key
    ) -> None:
        old, _ = await make_key()
        result = await manager.rotate(old.id, "admin-1")
        rows = await store.select("activity_log", [eq("event_type", "api_key_rotation")])
        assert len(rows) == 1
        assert rows[0]["metadata"]["new_key_id"] == result.new_key.id
        assert rows[0]["metadata"]["grace_period_days"] == 10

    async def test_zero_day_grace_allowed(self, manager: KeyRotationManager, make_key) -> None:
        old, _ = await make_key()
        result = await manager.rotate(old.id, None, grace_period_days=0)
        assert result.grace_period_days == 0

    async def test_negative_grace_rejected(self, manager: KeyRotationManager, make_key) -> None:
        old, _ = await make_key()
        with pytest.raises(KeyValidationError):
            await manager.rotate(old.id, None, grace_period_days=-1)

    async def test_oversized_grace_rejected_before_insert(
        self, manager: KeyRotationManager, store: LocalSQLiteStore, make_key
    ) -> None:
        old, _ = await make_key()
        with pytest.raises(KeyValidationError, match="must not exceed"):
            await manager.rotate(old.id, None, grace_period_days=10**7)

        assert await store.count("api_keys") == 1
        refreshed = await get_api_key(store, old.id)
        assert refreshed is not None
        assert refreshed.grace_period_expires_at is None

    async def test_max_grace_allowed(self, manager: KeyRotationManager, make_key) -> None:
        old, _ = await make_key()
        result = await manager.rotate(old.id, None, grace_period_days=MAX_GRACE_PERIOD_DAYS)
        assert result.grace_period_days == MAX_GRACE_PERIOD_DAYS

    async def test_failed_grace_stamp_removes_new_key(
        self,
        manager: KeyRotationManager,
        store: LocalSQLiteStore,
        make_key,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        old, _ = await make_key()
        monkeypatch.setattr(store, "update", AsyncMock(side_effect=RuntimeError("disk I/O error")))

        with pytest.raises(RuntimeError, match="disk I/O error"):
            await manager.rotate(old.id, "admin-1")

        rows = await store.select("api_keys")
        assert [row["id"] for row in rows] == [old.id]
        assert await store.count("activity_log", [eq("event_type", "api_key_rotation")]) == 0

    async def test_unknown_key(self, manager: KeyRotationManager) -> None:
        with pytest.raises(InvalidKeyError):
            await manager.rotate("missing", None)

    async def test_response_shape(self, manager: KeyRotationManager, make_key) -> None:
        old, _ = await make_key(key_name="deploy")
        result = await manager.rotate(old.id, None, grace_period_days=5)
        body = result.to_response()
        assert body["message"] == "API key rotated successfully"
        assert body["newKey"]["full_key"] == result.full_key
        assert "api_key" not in body["newKey"]
        assert body["oldKey"]["id"] == old.id
        assert body["oldKey"]["key_name"] == "deploy"
        assert body["oldKey"]["grace_period_days"] == 5
        assert "5 days" in body["warning"]
        assert result.full_key not in repr(result)


class TestSweep:
    async def test_deactivates_only_lapsed_grace(
        self, manager: KeyRotationManager, store: LocalSQLiteStore, make_key
    ) -> None:
        lapsed, _ = await make_key(key_name="lapsed")
        pending, _ = await make_key(key_name="pending")
        plain, _ = await make_key(key_name="plain")
        await _set_grace(store, lapsed.id, timedelta(minutes=-1))
        await _set_grace(store, pending.id, timedelta(days=1))

        result = await manager.sweep_expired_grace_periods()

        assert result.checked == 1
        assert result.deactivated == [lapsed.id]
        assert result.failed == []
        assert result.error is None
        assert (await get_api_key(store, lapsed.id)).is_active is False
        assert (await get_api_key(store, pending.id)).is_active is True
        assert (await get_api_key(store, plain.id)).is_active is True

        rows = await store.select("activity_log", [eq("event_type", "api_key_deactivation")])
        assert [row["metadata"]["key_id"] for row in rows] == [lapsed.id]
        assert rows[0]["metadata"]["reason"] == DEACTIVATION_REASON

    async def test_second_sweep_is_noop(
        self, manager: KeyRotationManager, store: LocalSQLiteStore, make_key
    ) -> None:
        lapsed, _ = await make_key()
        await _set_grace(store, lapsed.id, timedelta(seconds=-5))
        await manager.sweep_expired_grace_periods()
        again = await manager.sweep_expired_grace_periods()
        assert again.checked == 0
        assert again.deactivated == []

    async def test_rotated_then_swept(
        self, manager: KeyRotationManager, store: LocalSQLiteStore, make_key
    ) -> None:
        old, _ = await make_key()
        result = await manager.rotate(old.id, None, grace_period_days=0)
        await asyncio.sleep(0.01)
        sweep = await manager.sweep_expired_grace_periods()
        assert sweep.deactivated == [old.id]
        assert (await get_api_key(store, result.new_key.id)).is_active is True

    async def test_query_failure_reported(self, activity: ActivityLogger) -> None:
        store = MagicMock()
        store.select = AsyncMock(side_effect=RuntimeError("relation missing"))
        manager = KeyRotationManager(store, activity, retry_options=FAST_RETRY)
        result = await manager.sweep_expired_grace_periods()
        assert result.error == "relation missing"
        assert result.checked == 0

    async def test_per_key_failures_do_not_stop_sweep(self) -> None:
        store = MagicMock()
        store.select = AsyncMock(
            return_value=[
                {"id": "k1", "key_name": "a"},
                {"id": "k2", "key_name": "b"},
                {"id": "k3", "key_name": "c"},
            ]
        )
        store.update = AsyncMock(
            side_effect=[RuntimeError("write failed"), [], [{"id": "k3"}]]
        )
        activity = MagicMock()
        activity.log_api_key_deactivation = AsyncMock()
        manager = KeyRotationManager(store, activity, retry_options=FAST_RETRY)

        result = await manager.sweep_expired_grace_periods()

        assert result.checked == 3
        assert result.failed == ["k1", "k2"]
        assert result.deactivated == ["k3"]
        activity.log_api_key_deactivation.assert_awaited_once_with("k3", DEACTIVATION_REASON)


class TestStats:
    async def test_counts(
        self, manager: KeyRotationManager, store: LocalSQLiteStore, make_key
    ) -> None:
        first, _ = await make_key()
        await make_key()
        await manager.rotate(first.id, None)
        revoked, _ = await make_key()
        await store.update("api_keys", {"is_active": False}, [eq("id", revoked.id)])

        stats = await manager.stats()
        assert stats.total_keys == 4
        assert stats.active_keys == 3
        assert stats.inactive_keys == 1
        assert stats.keys_in_grace_period == 1
        assert stats.rotated_keys == 1
        assert stats.to_dict() == {
            "totalKeys": 4,
            "activeKeys": 3,
            "inactiveKeys": 1,
            "keysInGracePeriod": 1,
            "rotatedKeys": 1,
        }


class TestScheduler:
    async def test_start_runs_sweep_and_stop_cancels(self) -> None:
        manager = MagicMock()
        manager.sweep_expired_grace_periods = AsyncMock(return_value=SweepResult())
        scheduler = KeyDeactivationScheduler(manager, interval_ms=60_000)

        await scheduler.start()
        assert scheduler.is_running
        await asyncio.sleep(0.01)
        manager.sweep_expired_grace_periods.assert_awaited_once()

        await scheduler.stop()
        assert not scheduler.is_running

    async def test_loop_survives_errors(self) -> None:
        manager = MagicMock()
        calls = 0

        async def _sweep() -> SweepResult:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("boom")
            return SweepResult()

        manager.sweep_expired_grace_periods = _sweep
        scheduler = KeyDeactivationScheduler(manager, interval_ms=1)
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        assert calls >= 2

    async def test_double_start_is_ignored(self) -> None:
        manager = MagicMock()
        manager.sweep_expired_grace_periods = AsyncMock(return_value=SweepResult())
        scheduler = KeyDeactivationScheduler(manager, interval_ms=60_000)
        await scheduler.start()
        first_task = scheduler._task
        await scheduler.start()
        assert scheduler._task is first_task
        await scheduler.stop()

    async def test_stop_without_start(self) -> None:
        scheduler = KeyDeactivationScheduler(MagicMock(), interval_ms=1000)
        await scheduler.stop()
        assert not scheduler.is_running

    async def test_run_once_serialized(self) -> None:
        active = 0
        peak = 0

        async def _sweep() -> SweepResult:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return SweepResult()

        manager = MagicMock()
        manager.sweep_expired_grace_periods = _sweep
        scheduler = KeyDeactivationScheduler(manager, interval_ms=1000)
        await asyncio.gather(scheduler.run_once(), scheduler.run_once())
        assert peak == 1
