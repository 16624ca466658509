"""ULID generation for row identifiers.

Every row written by the portal (api_keys, sessions, admin_users,
activity_log) and every request id bound into the log context uses a ULID:
26 characters, Crockford Base32, lexicographically sortable by creation time.
Sorting api_keys by ``id`` therefore matches sorting by ``created_at``.

Uses the `python-ulid` library - do NOT hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Example::

        key_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
        assert len(key_id) == 26
    """
    return str(ULID())
