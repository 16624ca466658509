"""Portal authentication package.

Public API:
  - generate_api_key() / verify_api_key()  - key material + bcrypt (cost 10)
  - create_api_key() ... delete_api_key()  - api_keys CRUD
  - ApiKeyContext / SessionContext         - typed request identity
  - SessionGuard / require_session()       - admin cookie sessions
  - InvalidKeyError, KeyValidationError, InvalidScopeError

The API key guard (portal.auth.middleware) and the rotation manager
(portal.auth.rotation) depend on portal.activity and are imported from their
modules directly.
"""

from __future__ import annotations

from portal.auth.context import ApiKeyContext, RequestInfo, SessionContext
from portal.auth.generator import ApiKeyMaterial, generate_api_key, mask_api_key, verify_api_key
from portal.auth.keys import (
    InvalidKeyError,
    InvalidScopeError,
    KeyValidationError,
    create_api_key,
    delete_api_key,
    get_api_key,
    list_api_keys,
    revoke_api_key,
    update_api_key,
    validate_scopes,
)
from portal.auth.sessions import SessionAuthError, SessionGuard, require_session

__all__ = [
    "ApiKeyContext",
    "ApiKeyMaterial",
    "InvalidKeyError",
    "InvalidScopeError",
    "KeyValidationError",
    "RequestInfo",
    "SessionAuthError",
    "SessionContext",
    "SessionGuard",
    "create_api_key",
    "delete_api_key",
    "generate_api_key",
    "get_api_key",
    "list_api_keys",
    "mask_api_key",
    "require_session",
    "revoke_api_key",
    "update_api_key",
    "validate_scopes",
    "verify_api_key",
]
