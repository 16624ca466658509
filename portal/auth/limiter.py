"""Shared per-IP rate limiter for the portal HTTP surface.

Uses slowapi (Starlette-compatible rate limiting):
  - every route gets the general limit through SlowAPIMiddleware
  - POST /api/auth/login carries the stricter login limit

This limiter is per client address and independent of the per-key hourly
quota enforced by ApiKeyGuard.

The Limiter instance is created here and shared between:
  - portal/auth/session_router.py  (login decorator)
  - portal/main.py                 (app.state.limiter + SlowAPIMiddleware registration)

Limit strings come from ``Config.rate_limits``; configure_limits() is called
from the lifespan before the first request.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from portal.config import RateLimitConfig

_limits = RateLimitConfig()


def configure_limits(limits: RateLimitConfig) -> None:
    global _limits
    _limits = limits


def general_rate_limit() -> str:
    return _limits.general


def login_rate_limit() -> str:
    return _limits.login


# Module-level limiter - imported by main.py and the routers
limiter = Limiter(key_func=get_remote_address, default_limits=[general_rate_limit])
