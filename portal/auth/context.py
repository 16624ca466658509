"""Typed request context produced by the authentication dependencies.

Handlers receive these values from ``Depends(require_api_key)`` /
``Depends(require_session)``; nothing is attached to the Request object.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request


@dataclass(frozen=True)
class ApiKeyContext:
    """Identity of the API key that authenticated the current request."""

    id: str
    key_name: str
    scopes: tuple[str, ...] = field(default_factory=tuple)
    created_by: Optional[str] = None

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


@dataclass(frozen=True)
class SessionContext:
    """Admin user behind the current session cookie."""

    session_id: str
    user_id: str


@dataclass(frozen=True)
class RequestInfo:
    """Client attributes recorded on activity-log entries."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"
    method: str = ""
    path: str = ""

    @classmethod
    def from_request(cls, request: Request) -> "RequestInfo":
        client = request.client
        return cls(
            ip_address=client.host if client is not None else "unknown",
            user_agent=request.headers.get("user-agent", "unknown"),
            method=request.method,
            path=request.url.path,
        )
