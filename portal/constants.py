"""Shared constants for the accessibility status portal.

Credential formats, scope names and numeric defaults used across modules are
defined here. No magic numbers in other modules - import from here.
"""

# ─── API key wire format ─────────────────────────────────────────────────────

# Full key: sk_{environment}_{64 lowercase hex chars}
API_KEY_PREFIX_LIVE: str = "sk_live_"
API_KEY_PREFIX_TEST: str = "sk_test_"
API_KEY_ENVIRONMENTS: tuple[str, ...] = ("live", "test")

API_KEY_RANDOM_BYTES: int = 32          # 32 bytes → 64 hex chars
API_KEY_LENGTH: int = 72                # len("sk_live_") + 64
API_KEY_DISPLAY_PREFIX_LENGTH: int = 16  # "sk_live_" + 8 hex chars
API_KEY_DISPLAY_SUFFIX_LENGTH: int = 4

# bcrypt cost factor for API keys and admin passwords
BCRYPT_ROUNDS: int = 10

# ─── Scopes ──────────────────────────────────────────────────────────────────

SCOPE_SITES_READ: str = "sites:read"
SCOPE_SITES_WRITE: str = "sites:write"
SCOPE_SITES_DELETE: str = "sites:delete"

VALID_SCOPES: frozenset[str] = frozenset(
    {SCOPE_SITES_READ, SCOPE_SITES_WRITE, SCOPE_SITES_DELETE}
)

DEFAULT_SCOPES: tuple[str, ...] = (SCOPE_SITES_WRITE,)

# ─── Per-key quota ───────────────────────────────────────────────────────────

DEFAULT_RATE_LIMIT_MAX_REQUESTS: int = 100
DEFAULT_RATE_LIMIT_WINDOW_SECONDS: int = 3600

# Advertised in Retry-After and the 429 body
RATE_LIMIT_RETRY_AFTER_SECONDS: int = 3600

# ─── Rotation ────────────────────────────────────────────────────────────────

DEFAULT_GRACE_PERIOD_DAYS: int = 10
MAX_GRACE_PERIOD_DAYS: int = 3650
DEFAULT_DEACTIVATION_CHECK_INTERVAL_MS: int = 3_600_000  # hourly

# ─── Store retry policy ──────────────────────────────────────────────────────

DEFAULT_STORE_MAX_RETRIES: int = 3
DEFAULT_STORE_INITIAL_DELAY_MS: int = 100
DEFAULT_STORE_MAX_DELAY_MS: int = 5000

# Lazy deletion of an expired session is attempted at most this many extra times
SESSION_DELETE_MAX_RETRIES: int = 2

# ─── Sessions ────────────────────────────────────────────────────────────────

SESSION_COOKIE_NAME: str = "session_token"
SESSION_TOKEN_BYTES: int = 32
DEFAULT_SESSION_TTL_HOURS: int = 24

# ─── Pagination ──────────────────────────────────────────────────────────────

DEFAULT_PAGE_LIMIT: int = 50
MAX_PAGE_LIMIT: int = 100
