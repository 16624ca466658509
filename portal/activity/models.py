"""ActivityLogEntry dataclass and the Severity alias.

activity_log is append-only: entries are written once by ActivityLogger and
never updated or deleted.

IMPORTANT: metadata MUST NOT carry raw credentials. ActivityLogger runs it
through sanitize_object() before the insert; callers should still avoid
putting secrets there.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

from portal.utils.timestamps import parse_iso, to_iso

Severity = Literal["info", "warning", "error", "critical"]

VALID_SEVERITIES: frozenset[str] = frozenset({"info", "warning", "error", "critical"})


@dataclass
class ActivityLogEntry:
    """One audit-trail entry."""

    event_type: str
    """Machine name, e.g. 'api_key_usage', 'rate_limit_violation', 'login'."""
    description: str
    severity: Severity = "info"
    created_by_user: Optional[str] = None
    created_by_api_key: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    """Assigned by ActivityLogger on write."""
    created_at: Optional[datetime] = None
    """Assigned by ActivityLogger on write."""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ActivityLogEntry":
        return cls(
            id=row.get("id"),
            event_type=row.get("event_type", ""),
            description=row.get("description", ""),
            severity=row.get("severity", "info"),
            created_by_user=row.get("created_by_user"),
            created_by_api_key=row.get("created_by_api_key"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            metadata=dict(row.get("metadata") or {}),
            created_at=parse_iso(row.get("created_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "description": self.description,
            "severity": self.severity,
            "created_by_user": self.created_by_user,
            "created_by_api_key": self.created_by_api_key,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": self.metadata,
            "created_at": to_iso(self.created_at) if self.created_at else None,
        }
