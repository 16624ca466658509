"""Record dataclasses for the auth tables: api_keys, sessions, admin_users.

Rows come back from the RowStore as plain dicts; these dataclasses give the
guards and the rotation manager typed access. Timestamps are parsed to aware
UTC datetimes on the way in.

IMPORTANT: ApiKeyRecord.api_key_hash must never leave the process -
to_public_dict() omits it, and no route may return the raw row.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

from portal.auth.generator import get_key_display_name
from portal.utils.timestamps import parse_iso, to_iso

KeyEnvironment = Literal["live", "test"]


def _iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return to_iso(value) if value is not None else None


# ─── ApiKeyRecord ─────────────────────────────────────────────────────────────


@dataclass
class ApiKeyRecord:
    """One row of api_keys."""

    id: str
    key_name: str
    api_key_hash: str
    """bcrypt hash of the full key (column ``api_key``)."""
    api_key_prefix: str
    api_key_suffix: str
    environment: KeyEnvironment
    scopes: list[str] = field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    usage_count: int = 0
    """Lifetime count of accepted requests. Never reset."""
    rate_window_started_at: Optional[datetime] = None
    """Start of the current hourly quota window. None until first use."""
    rate_window_count: int = 0
    """Accepted requests inside the current quota window."""
    expires_at: Optional[datetime] = None
    is_active: bool = True
    notes: Optional[str] = None
    rotated_from_key_id: Optional[str] = None
    grace_period_expires_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ApiKeyRecord":
        return cls(
            id=row["id"],
            key_name=row.get("key_name", ""),
            api_key_hash=row.get("api_key", ""),
            api_key_prefix=row.get("api_key_prefix", ""),
            api_key_suffix=row.get("api_key_suffix", ""),
            environment=row.get("environment") or "live",
            scopes=list(row.get("scopes") or []),
            created_by=row.get("created_by"),
            created_at=parse_iso(row.get("created_at")),
            updated_at=parse_iso(row.get("updated_at")),
            last_used_at=parse_iso(row.get("last_used_at")),
            usage_count=int(row.get("usage_count") or 0),
            rate_window_started_at=parse_iso(row.get("rate_window_started_at")),
            rate_window_count=int(row.get("rate_window_count") or 0),
            expires_at=parse_iso(row.get("expires_at")),
            is_active=bool(row.get("is_active", True)),
            notes=row.get("notes"),
            rotated_from_key_id=row.get("rotated_from_key_id"),
            grace_period_expires_at=parse_iso(row.get("grace_period_expires_at")),
        )

    @property
    def display_key(self) -> str:
        return get_key_display_name(self.api_key_prefix, self.api_key_suffix)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def window_usage(self, now: datetime, window_seconds: int) -> int:
        """Requests counted in the quota window that contains ``now``.

        A window that never started, or started ``window_seconds`` or more ago,
        counts as empty.
        """
        started = self.rate_window_started_at
        if started is None or (now - started).total_seconds() >= window_seconds:
            return 0
        return self.rate_window_count

    def to_public_dict(self) -> dict[str, Any]:
        """JSON-safe representation for API responses. Never includes the hash."""
        return {
            "id": self.id,
            "key_name": self.key_name,
            "api_key_prefix": self.api_key_prefix,
            "api_key_suffix": self.api_key_suffix,
            "display_key": self.display_key,
            "environment": self.environment,
            "scopes": list(self.scopes),
            "created_by": self.created_by,
            "created_at": _iso_or_none(self.created_at),
            "updated_at": _iso_or_none(self.updated_at),
            "last_used_at": _iso_or_none(self.last_used_at),
            "usage_count": self.usage_count,
            "expires_at": _iso_or_none(self.expires_at),
            "is_active": self.is_active,
            "notes": self.notes,
            "rotated_from_key_id": self.rotated_from_key_id,
            "grace_period_expires_at": _iso_or_none(self.grace_period_expires_at),
        }


# ─── SessionRecord ────────────────────────────────────────────────────────────


@dataclass
class SessionRecord:
    id: str
    user_id: str
    session_token: str
    expires_at: datetime
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SessionRecord":
        expires_at = parse_iso(row.get("expires_at"))
        if expires_at is None:
            raise ValueError(f"session {row.get('id')!r} has no expires_at")
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            session_token=row["session_token"],
            expires_at=expires_at,
            created_at=parse_iso(row.get("created_at")),
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# ─── AdminUser ────────────────────────────────────────────────────────────────


@dataclass
class AdminUser:
    id: str
    username: str
    password_hash: str
    email: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AdminUser":
        return cls(
            id=row["id"],
            username=row["username"],
            password_hash=row["password_hash"],
            email=row.get("email"),
            created_by=row.get("created_by"),
            created_at=parse_iso(row.get("created_at")),
            updated_at=parse_iso(row.get("updated_at")),
        )

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "created_at": _iso_or_none(self.created_at),
        }
