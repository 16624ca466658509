"""API key CRUD over the api_keys table.

Implements:
  - validate_scopes()      - check against the fixed scope enumeration
  - create_api_key()       - generate key material, persist hash + fragments
  - list_api_keys()        - newest-first page + total, metadata only
  - get_api_key()          - single record by id
  - fetch_active_keys()    - every active record, oldest first (guard scan order)
  - update_api_key()       - name/scopes/notes/is_active/expires_at
  - revoke_api_key()       - soft-deactivate (is_active = False)
  - delete_api_key()       - explicit administrative hard delete
  - record_key_usage()     - lifetime counter + hourly quota window + last_used_at

Non-negotiables:
  - Plaintext NEVER stored - only the bcrypt hash and the display fragments.
  - The plaintext is returned once, by create_api_key(), inside ApiKeyMaterial.
  - Store errors propagate; callers decide whether to retry.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from portal.auth.generator import ApiKeyMaterial, generate_api_key
from portal.auth.models import ApiKeyRecord
from portal.constants import DEFAULT_SCOPES, VALID_SCOPES
from portal.store.protocol import RowStore, eq
from portal.utils.logger import get_logger
from portal.utils.timestamps import to_iso, utc_now, utc_now_iso
from portal.utils.ulid import generate_ulid

logger = get_logger(__name__)

_TABLE = "api_keys"

_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {"key_name", "scopes", "notes", "is_active", "expires_at"}
)


# ─── Exceptions ───────────────────────────────────────────────────────────────


class KeyValidationError(Exception):
    """Malformed key-management input.

    HTTP mapping: 400 Bad Request
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidScopeError(KeyValidationError):
    """A requested scope is not in VALID_SCOPES."""

    def __init__(self, scope: str) -> None:
        super().__init__(
            f"Invalid scope: {scope}. Valid scopes are: {', '.join(sorted(VALID_SCOPES))}"
        )
        self.scope = scope


class InvalidKeyError(Exception):
    """Raised when an operation references a key id that does not exist.

    HTTP mapping: 404 Not Found
    """

    def __init__(self, message: str = "API key not found") -> None:
        super().__init__(message)
        self.message = message


# ─── Helpers ──────────────────────────────────────────────────────────────────


def validate_scopes(scopes: Optional[Iterable[str]]) -> list[str]:
    """Return ``scopes`` as a de-duplicated list, or the default scope set if None.

    Raises:
        InvalidScopeError: On the first scope outside VALID_SCOPES.
    """
    if scopes is None:
        return list(DEFAULT_SCOPES)
    result: list[str] = []
    for scope in scopes:
        if scope not in VALID_SCOPES:
            raise InvalidScopeError(scope)
        if scope not in result:
            result.append(scope)
    return result


def _timestamp_or_none(value: Optional[datetime | str]) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_iso(value)
    return value


# ─── CRUD ─────────────────────────────────────────────────────────────────────


async def create_api_key(
    store: RowStore,
    *,
    key_name: str,
    scopes: Optional[Iterable[str]] = None,
    notes: Optional[str] = None,
    expires_at: Optional[datetime | str] = None,
    environment: str = "live",
    created_by: Optional[str] = None,
    rotated_from_key_id: Optional[str] = None,
) -> tuple[ApiKeyRecord, ApiKeyMaterial]:
    """Generate a key, store its hash, and return (record, material).

    ``material.full_key`` is the only copy of the plaintext - show it once.

    Raises:
        KeyValidationError: Empty name or unknown environment.
        InvalidScopeError:  Scope outside the fixed enumeration.
    """
    if not key_name or not key_name.strip():
        raise KeyValidationError("Key name is required")
    granted = validate_scopes(scopes)
    try:
        material = await generate_api_key(environment)
    except ValueError as exc:
        raise KeyValidationError(str(exc)) from exc

    now = utc_now_iso()
    row: dict[str, Any] = {
        "id": generate_ulid(),
        "key_name": key_name.strip(),
        "api_key": material.hashed_key,
        "api_key_prefix": material.prefix,
        "api_key_suffix": material.suffix,
        "environment": material.environment,
        "scopes": granted,
        "created_by": created_by,
        "created_at": now,
        "updated_at": now,
        "usage_count": 0,
        "rate_window_count": 0,
        "expires_at": _timestamp_or_none(expires_at),
        "is_active": True,
        "notes": notes or None,
        "rotated_from_key_id": rotated_from_key_id,
    }
    stored = await store.insert(_TABLE, row)
    record = ApiKeyRecord.from_row(stored)

    logger.info(
        "api_key_created",
        key_id=record.id,
        display_key=record.display_key,
        environment=record.environment,
        created_by=created_by,
    )
    return record, material


async def list_api_keys(
    store: RowStore,
    *,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ApiKeyRecord], int]:
    rows = await store.select(
        _TABLE, order_by="created_at", descending=True, limit=limit, offset=offset
    )
    total = await store.count(_TABLE)
    return [ApiKeyRecord.from_row(row) for row in rows], total


async def get_api_key(store: RowStore, key_id: str) -> Optional[ApiKeyRecord]:
    rows = await store.select(_TABLE, [eq("id", key_id)], limit=1)
    return ApiKeyRecord.from_row(rows[0]) if rows else None


async def fetch_active_keys(store: RowStore) -> list[ApiKeyRecord]:
    """All active keys, oldest first. This order is the guard's tie-break."""
    rows = await store.select(_TABLE, [eq("is_active", True)], order_by="created_at")
    return [ApiKeyRecord.from_row(row) for row in rows]


async def update_api_key(
    store: RowStore,
    key_id: str,
    updates: dict[str, Any],
) -> ApiKeyRecord:
    """Apply a partial update. Unknown fields are rejected, not ignored.

    Raises:
        KeyValidationError: No fields, unknown field, blank name or null is_active.
        InvalidScopeError:  Scope outside the fixed enumeration.
        InvalidKeyError:    No key with ``key_id``.
    """
    if not updates:
        raise KeyValidationError("No fields to update")
    unknown = set(updates) - _UPDATABLE_FIELDS
    if unknown:
        raise KeyValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    values: dict[str, Any] = {}
    for name, value in updates.items():
        if name == "scopes":
            if value is None:
                raise KeyValidationError("scopes must be a list")
            values["scopes"] = validate_scopes(value)
        elif name == "key_name":
            if not value or not str(value).strip():
                raise KeyValidationError("Key name is required")
            values["key_name"] = str(value).strip()
        elif name == "expires_at":
            values["expires_at"] = _timestamp_or_none(value)
        elif name == "is_active":
            if not isinstance(value, bool):
                raise KeyValidationError("is_active must be true or false")
            values["is_active"] = value
        else:
            values[name] = value
    values["updated_at"] = utc_now_iso()

    rows = await store.update(_TABLE, values, [eq("id", key_id)])
    if not rows:
        raise InvalidKeyError()
    record = ApiKeyRecord.from_row(rows[0])
    logger.info("api_key_updated", key_id=key_id, fields=sorted(updates))
    return record


async def revoke_api_key(store: RowStore, key_id: str) -> ApiKeyRecord:
    """Soft-deactivate a key. Raises InvalidKeyError if absent."""
    rows = await store.update(
        _TABLE,
        {"is_active": False, "updated_at": utc_now_iso()},
        [eq("id", key_id)],
    )
    if not rows:
        raise InvalidKeyError()
    logger.info("api_key_revoked", key_id=key_id)
    return ApiKeyRecord.from_row(rows[0])


async def delete_api_key(store: RowStore, key_id: str) -> bool:
    """Hard delete. The only path that physically removes a key record."""
    deleted = await store.delete(_TABLE, [eq("id", key_id)])
    if deleted:
        logger.info("api_key_deleted", key_id=key_id)
    return deleted > 0


async def record_key_usage(
    store: RowStore,
    record: ApiKeyRecord,
    window_seconds: int,
    now: Optional[datetime] = None,
) -> None:
    """Stamp one accepted request on ``record``.

    usage_count grows forever. The quota window restarts at ``now`` when it
    never started or has run for ``window_seconds`` or more.

    Read-then-write: two concurrent requests may both write the same count,
    so the hourly cap is a soft limit.
    """
    now = now or utc_now()
    in_window = record.window_usage(now, window_seconds)
    window_started = record.rate_window_started_at if in_window else now
    values = {
        "usage_count": record.usage_count + 1,
        "last_used_at": to_iso(now),
        "rate_window_started_at": to_iso(window_started or now),
        "rate_window_count": in_window + 1,
    }
    await store.update(_TABLE, values, [eq("id", record.id)])
