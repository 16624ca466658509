"""Admin user accounts (admin_users table).

Passwords are bcrypt-hashed (cost 10) off the event loop, like API keys.
"""

from __future__ import annotations

from typing import Optional

from portal.auth.generator import hash_secret, verify_secret
from portal.auth.models import AdminUser
from portal.store.protocol import RowStore, eq
from portal.utils.logger import get_logger
from portal.utils.timestamps import utc_now_iso
from portal.utils.ulid import generate_ulid

logger = get_logger(__name__)

_TABLE = "admin_users"

MIN_PASSWORD_LENGTH = 8

_dummy_password_hash: Optional[str] = None


class AdminUserError(Exception):
    """Invalid admin user input (HTTP 400)."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


async def count_admin_users(store: RowStore) -> int:
    return await store.count(_TABLE)


async def get_admin_user(store: RowStore, user_id: str) -> Optional[AdminUser]:
    rows = await store.select(_TABLE, [eq("id", user_id)], limit=1)
    return AdminUser.from_row(rows[0]) if rows else None


async def get_admin_by_username(store: RowStore, username: str) -> Optional[AdminUser]:
    rows = await store.select(_TABLE, [eq("username", username)], limit=1)
    return AdminUser.from_row(rows[0]) if rows else None


async def create_admin_user(
    store: RowStore,
    *,
    username: str,
    password: str,
    email: Optional[str] = None,
    created_by: Optional[str] = None,
) -> AdminUser:
    """Create an admin user.

    Raises:
        AdminUserError: Blank username, short password, or username taken.
    """
    username = (username or "").strip()
    if not username:
        raise AdminUserError("Username is required")
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise AdminUserError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if await get_admin_by_username(store, username) is not None:
        raise AdminUserError("Username already exists")

    now = utc_now_iso()
    row = {
        "id": generate_ulid(),
        "username": username,
        "email": email,
        "password_hash": await hash_secret(password),
        "created_by": created_by,
        "created_at": now,
        "updated_at": now,
    }
    stored = await store.insert(_TABLE, row)
    logger.info("admin_user_created", user_id=row["id"], created_by=created_by)
    return AdminUser.from_row(stored)


async def authenticate_admin(
    store: RowStore, username: str, password: str
) -> tuple[Optional[AdminUser], str]:
    """Check credentials. Returns ``(user, "")`` or ``(None, failure_reason)``."""
    user = await get_admin_by_username(store, username)
    if user is None:
        # unknown usernames still cost one bcrypt compare
        await verify_secret(password, await _dummy_hash())
        return None, "unknown user"
    if not await verify_secret(password, user.password_hash):
        return None, "invalid password"
    return user, ""


async def _dummy_hash() -> str:
    global _dummy_password_hash
    if _dummy_password_hash is None:
        _dummy_password_hash = await hash_secret(generate_ulid())
    return _dummy_password_hash
