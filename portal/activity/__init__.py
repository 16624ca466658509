"""Activity log: best-effort audit trail of key usage, rotation and logins."""

from portal.activity.logger import ActivityLogger
from portal.activity.models import ActivityLogEntry, Severity

__all__ = ["ActivityLogEntry", "ActivityLogger", "Severity"]
