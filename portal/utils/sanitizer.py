"""Sanitizers for log lines, error messages and activity-log metadata.

Every value that may carry a credential (API keys, session tokens, passwords,
Authorization headers) is routed through one of these helpers before it is
written to stdout or to the activity_log table.

No function here ever returns its input unchanged when the input is a
credential-named field.
"""

from __future__ import annotations

import re
from typing import Any

# Field names whose values are always masked by sanitize_object().
SENSITIVE_FIELDS: frozenset[str] = frozenset(
    {
        "password",
        "api_key",
        "apiKey",
        "token",
        "session_token",
        "sessionToken",
        "secret",
        "authorization",
        "Authorization",
        "supabase_key",
        "supabaseKey",
        "access_token",
        "accessToken",
        "refresh_token",
        "refreshToken",
    }
)

# Header names (lower-case) stripped by sanitize_headers().
SENSITIVE_HEADERS: tuple[str, ...] = (
    "authorization",
    "cookie",
    "x-api-key",
    "x-auth-token",
    "x-access-token",
)

_ERROR_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"sk_[a-z0-9_]+", re.IGNORECASE), "[REDACTED_API_KEY]"),
    (re.compile(r"Bearer\s+[a-zA-Z0-9_\-.]+", re.IGNORECASE), "Bearer [REDACTED_TOKEN]"),
    (re.compile(r"password[=:]\s*[^\s,}]+", re.IGNORECASE), "password=[REDACTED]"),
    (re.compile(r"api[_-]?key[=:]\s*[^\s,}]+", re.IGNORECASE), "api_key=[REDACTED]"),
    (re.compile(r"token[=:]\s*[^\s,}]+", re.IGNORECASE), "token=[REDACTED]"),
)


def sanitize_api_key(key: str | None) -> str:
    """Render an API key as its first 8 and last 4 characters.

    >>> sanitize_api_key("sk_live_abc123def456ghi789jkl")
    'sk_live_...9jkl'
    """
    if not key or len(key) < 12:
        return "***"
    return f"{key[:8]}...{key[-4:]}"


def sanitize_password(password: str | None) -> str:
    """Asterisks only, capped at 8 so the length of long passwords is not leaked."""
    if not password:
        return "***"
    return "*" * min(len(password), 8)


def sanitize_token(token: str | None) -> str:
    if not token or len(token) < 12:
        return "***"
    return f"{token[:8]}...{token[-4:]}"


def sanitize_email(email: str | None) -> str:
    """Keep the first local-part character and the domain: ``j***@example.com``."""
    if not email or "@" not in email:
        return "***"
    local_part, _, domain = email.partition("@")
    if not local_part:
        return f"***@{domain}"
    return f"{local_part[0]}***@{domain}"


def _mask_field(field_name: str, value: Any) -> Any:
    if not isinstance(value, str):
        return "***"
    if "password" in field_name:
        return sanitize_password(value)
    if "api_key" in field_name or "apiKey" in field_name:
        return sanitize_api_key(value)
    if "token" in field_name:
        return sanitize_token(value)
    return "***"


def sanitize_object(obj: Any) -> Any:
    """Return a copy of ``obj`` with sensitive fields masked, recursively.

    Dicts and lists/tuples are walked; every other value is returned as-is.
    The input is never mutated.

    >>> sanitize_object({"username": "john", "password": "secret123"})
    {'username': 'john', 'password': '********'}
    """
    if isinstance(obj, dict):
        sanitized: dict[Any, Any] = {}
        for key, value in obj.items():
            if isinstance(key, str) and key in SENSITIVE_FIELDS:
                sanitized[key] = _mask_field(key, value)
            else:
                sanitized[key] = sanitize_object(value)
        return sanitized
    if isinstance(obj, list):
        return [sanitize_object(item) for item in obj]
    if isinstance(obj, tuple):
        return tuple(sanitize_object(item) for item in obj)
    return obj


def sanitize_error(error: BaseException | str | None) -> str:
    """Render an exception message with embedded credentials redacted."""
    if error is None:
        return "Unknown error"
    message = str(error) or type(error).__name__
    for pattern, replacement in _ERROR_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


def sanitize_auth_header(header: str | None) -> str:
    if not header:
        return "***"
    if header.startswith("Bearer "):
        return "Bearer [REDACTED_TOKEN]"
    if header.startswith("Basic "):
        return "Basic [REDACTED_CREDENTIALS]"
    return "[REDACTED_AUTH]"


def sanitize_headers(headers: dict[str, str]) -> dict[str, str]:
    """Copy of ``headers`` with Authorization/Cookie/X-API-Key style values removed.

    Header names are matched case-insensitively.
    """
    sanitized = dict(headers)
    for name in list(sanitized):
        lowered = name.lower()
        if lowered not in SENSITIVE_HEADERS:
            continue
        if lowered == "authorization":
            sanitized[name] = sanitize_auth_header(sanitized[name])
        else:
            sanitized[name] = "[REDACTED]"
    return sanitized
