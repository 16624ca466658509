"""API key material: generation, bcrypt verification, format checks, masking.

Key format: sk_{live|test}_{64 lowercase hex chars} (72 chars total)
  - 32 random bytes from `secrets` → 64 hex chars
  - prefix = first 16 chars ("sk_live_" + 8 hex), suffix = last 4 chars
  - hash = bcrypt, cost 10

Non-negotiables:
  - The full key is returned exactly once by generate_api_key() and is never
    stored; only the hash and the two display fragments are persisted.
  - bcrypt runs in a worker thread (asyncio.to_thread) so the event loop keeps
    serving other requests during the ~50-80ms hash/compare.
  - verify_api_key() fails closed: any internal error → False.
"""

from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass
from typing import Literal, Optional

import bcrypt

from portal.constants import (
    API_KEY_DISPLAY_PREFIX_LENGTH,
    API_KEY_DISPLAY_SUFFIX_LENGTH,
    API_KEY_ENVIRONMENTS,
    API_KEY_LENGTH,
    API_KEY_PREFIX_LIVE,
    API_KEY_PREFIX_TEST,
    API_KEY_RANDOM_BYTES,
    BCRYPT_ROUNDS,
)
from portal.utils.logger import get_logger
from portal.utils.sanitizer import sanitize_error

logger = get_logger(__name__)

KeyEnvironment = Literal["live", "test"]

_RANDOM_PART_RE = re.compile(r"^[a-f0-9]{64}$")

_MASK = "****"


@dataclass(frozen=True)
class ApiKeyMaterial:
    """Output of generate_api_key(). ``full_key`` must be shown once, then dropped."""

    full_key: str
    hashed_key: str
    prefix: str
    suffix: str
    environment: KeyEnvironment

    def __repr__(self) -> str:
        return (
            f"ApiKeyMaterial(prefix={self.prefix!r}, suffix={self.suffix!r}, "
            f"environment={self.environment!r})"
        )


def _hash(value: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(value.encode(), salt).decode()


def _checkpw(value: str, hashed: str) -> bool:
    return bcrypt.checkpw(value.encode(), hashed.encode())


async def generate_api_key(environment: str = "live") -> ApiKeyMaterial:
    """Generate a new API key and its bcrypt hash.

    Raises:
        ValueError: If ``environment`` is not "live" or "test".
    """
    if environment not in API_KEY_ENVIRONMENTS:
        raise ValueError(
            f"Invalid environment {environment!r}; expected one of {API_KEY_ENVIRONMENTS}"
        )

    full_key = f"sk_{environment}_{secrets.token_hex(API_KEY_RANDOM_BYTES)}"
    hashed_key = await asyncio.to_thread(_hash, full_key)

    return ApiKeyMaterial(
        full_key=full_key,
        hashed_key=hashed_key,
        prefix=full_key[:API_KEY_DISPLAY_PREFIX_LENGTH],
        suffix=full_key[-API_KEY_DISPLAY_SUFFIX_LENGTH:],
        environment=environment,  # type: ignore[arg-type]
    )


async def verify_api_key(provided_key: str, stored_hash: str) -> bool:
    """bcrypt compare of ``provided_key`` against ``stored_hash``. Fails closed."""
    try:
        return await asyncio.to_thread(_checkpw, provided_key, stored_hash)
    except Exception as exc:
        logger.warning("api_key_verify_error", error=sanitize_error(exc))
        return False


def is_valid_key_format(key: Optional[str]) -> bool:
    """True for ``sk_live_``/``sk_test_`` + 64 lowercase hex chars (72 total)."""
    if not key or len(key) != API_KEY_LENGTH:
        return False
    if key.startswith(API_KEY_PREFIX_LIVE):
        random_part = key[len(API_KEY_PREFIX_LIVE):]
    elif key.startswith(API_KEY_PREFIX_TEST):
        random_part = key[len(API_KEY_PREFIX_TEST):]
    else:
        return False
    return bool(_RANDOM_PART_RE.match(random_part))


def get_key_environment(key: Optional[str]) -> Optional[KeyEnvironment]:
    if not key:
        return None
    if key.startswith(API_KEY_PREFIX_LIVE):
        return "live"
    if key.startswith(API_KEY_PREFIX_TEST):
        return "test"
    return None


def mask_api_key(key: Optional[str]) -> str:
    """``{first 16}****{last 4}``; anything shorter than 20 chars → ``****``.

    Masking an already-masked key returns it unchanged.
    """
    if not key or len(key) < API_KEY_DISPLAY_PREFIX_LENGTH + API_KEY_DISPLAY_SUFFIX_LENGTH:
        return _MASK
    return (
        f"{key[:API_KEY_DISPLAY_PREFIX_LENGTH]}{_MASK}"
        f"{key[-API_KEY_DISPLAY_SUFFIX_LENGTH:]}"
    )


def get_key_display_name(prefix: str, suffix: str) -> str:
    return f"{prefix}{_MASK}{suffix}"


async def hash_secret(value: str) -> str:
    """bcrypt-hash an arbitrary secret (admin passwords) off the event loop."""
    return await asyncio.to_thread(_hash, value)


async def verify_secret(value: str, hashed: str) -> bool:
    """bcrypt compare for admin passwords. Fails closed like verify_api_key()."""
    try:
        return await asyncio.to_thread(_checkpw, value, hashed)
    except Exception as exc:
        logger.warning("secret_verify_error", error=sanitize_error(exc))
        return False
