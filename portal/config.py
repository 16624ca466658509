"""Config loading for the accessibility status portal.

Reads `.portal/config.yaml` (or `~/.portal/config.yaml`).
Raises SystemExit on parse errors or missing `version` field.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided - for testing or explicit override)
  2. PORTAL_CONFIG environment variable (if set)
  3. `.portal/config.yaml` (working directory - for development)
  4. `~/.portal/config.yaml` (home directory - for production deployments)

Environment variable overrides (applied after the file, always win):
  PORT                                → server.port
  API_KEY_RATE_LIMIT_MAX_REQUESTS     → api_keys.rate_limit_max_requests
  API_KEY_RATE_LIMIT_WINDOW_SECONDS   → api_keys.rate_limit_window_seconds
  API_KEY_ROTATION_GRACE_PERIOD_DAYS  → api_keys.grace_period_days
  KEY_DEACTIVATION_CHECK_INTERVAL_MS  → api_keys.deactivation_check_interval_ms
  STORE_RETRY_MAX_RETRIES             → store.retry_max_retries
  STORE_RETRY_INITIAL_DELAY_MS        → store.retry_initial_delay_ms
  STORE_RETRY_MAX_DELAY_MS            → store.retry_max_delay_ms
  SESSION_TTL_HOURS                   → sessions.ttl_hours
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import yaml

from portal.constants import (
    DEFAULT_DEACTIVATION_CHECK_INTERVAL_MS,
    DEFAULT_GRACE_PERIOD_DAYS,
    DEFAULT_RATE_LIMIT_MAX_REQUESTS,
    DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
    DEFAULT_SESSION_TTL_HOURS,
    DEFAULT_STORE_INITIAL_DELAY_MS,
    DEFAULT_STORE_MAX_DELAY_MS,
    DEFAULT_STORE_MAX_RETRIES,
)
from portal.utils.logger import get_logger
from portal.utils.retry import RetryOptions

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# Default config search paths (PORTAL_CONFIG env var prepended at runtime)
DEFAULT_CONFIG_PATHS = [
    ".portal/config.yaml",
    os.path.expanduser("~/.portal/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding configuration."""

    host: str = "127.0.0.1"
    port: int = 3001


@dataclass
class ApiKeyConfig:
    """Per-key quota and rotation configuration."""

    rate_limit_max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS
    rate_limit_window_seconds: int = DEFAULT_RATE_LIMIT_WINDOW_SECONDS
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    deactivation_check_interval_ms: int = DEFAULT_DEACTIVATION_CHECK_INTERVAL_MS


@dataclass
class StoreConfig:
    """Row store location and retry policy."""

    db_path: str = "~/.portal/portal.db"
    timeout_s: float = 5.0
    retry_max_retries: int = DEFAULT_STORE_MAX_RETRIES
    retry_initial_delay_ms: int = DEFAULT_STORE_INITIAL_DELAY_MS
    retry_max_delay_ms: int = DEFAULT_STORE_MAX_DELAY_MS

    def retry_options(
        self,
        *,
        max_retries: Optional[int] = None,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> RetryOptions:
        """RetryOptions for a store call, optionally capping the retry count."""
        return RetryOptions(
            max_retries=self.retry_max_retries if max_retries is None else max_retries,
            initial_delay_ms=self.retry_initial_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            on_retry=on_retry,
        )


@dataclass
class SessionConfig:
    """Admin session configuration."""

    ttl_hours: int = DEFAULT_SESSION_TTL_HOURS
    cookie_secure: bool = False


@dataclass
class RateLimitConfig:
    """Per-IP request limits (slowapi limit strings)."""

    general: str = "1000/hour"
    login: str = "5/10 minutes"


@dataclass
class Config:
    """Root configuration object populated from .portal/config.yaml.

    All fields have safe defaults - the portal can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    api_keys: ApiKeyConfig = field(default_factory=ApiKeyConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On a non-positive numeric setting.
        """
        server_raw = raw.get("server") or {}
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 3001),
        )

        keys_raw = raw.get("api_keys") or {}
        api_keys = ApiKeyConfig(
            rate_limit_max_requests=keys_raw.get(
                "rate_limit_max_requests", DEFAULT_RATE_LIMIT_MAX_REQUESTS
            ),
            rate_limit_window_seconds=keys_raw.get(
                "rate_limit_window_seconds", DEFAULT_RATE_LIMIT_WINDOW_SECONDS
            ),
            grace_period_days=keys_raw.get("grace_period_days", DEFAULT_GRACE_PERIOD_DAYS),
            deactivation_check_interval_ms=keys_raw.get(
                "deactivation_check_interval_ms", DEFAULT_DEACTIVATION_CHECK_INTERVAL_MS
            ),
        )

        store_raw = raw.get("store") or {}
        store = StoreConfig(
            db_path=store_raw.get("db_path", "~/.portal/portal.db"),
            timeout_s=store_raw.get("timeout_s", 5.0),
            retry_max_retries=store_raw.get("retry_max_retries", DEFAULT_STORE_MAX_RETRIES),
            retry_initial_delay_ms=store_raw.get(
                "retry_initial_delay_ms", DEFAULT_STORE_INITIAL_DELAY_MS
            ),
            retry_max_delay_ms=store_raw.get("retry_max_delay_ms", DEFAULT_STORE_MAX_DELAY_MS),
        )

        sessions_raw = raw.get("sessions") or {}
        sessions = SessionConfig(
            ttl_hours=sessions_raw.get("ttl_hours", DEFAULT_SESSION_TTL_HOURS),
            cookie_secure=bool(sessions_raw.get("cookie_secure", False)),
        )

        limits_raw = raw.get("rate_limits") or {}
        rate_limits = RateLimitConfig(
            general=limits_raw.get("general", "1000/hour"),
            login=limits_raw.get("login", "5/10 minutes"),
        )

        config = cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            api_keys=api_keys,
            store=store,
            sessions=sessions,
            rate_limits=rate_limits,
            path=path,
        )
        _validate_numbers(config)
        return config


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate portal configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes the error to stderr and raises SystemExit(1).
    Environment overrides are applied in both cases.

    Raises:
        SystemExit(1): On YAML parse error, missing or unsupported ``version``,
                       or an invalid environment override.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("PORTAL_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found - using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        msg = (
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "The portal refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)
    except OSError as exc:
        msg = f"CONFIG ERROR: Could not read {found_path}: {exc}"
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if not isinstance(raw, dict):
        if raw is None:
            msg = (
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        else:
            msg = (
                f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
                "The config file must be a YAML dictionary at the top level."
            )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    version = raw.get("version")
    if version is None:
        msg = (
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if version not in SUPPORTED_VERSIONS:
        msg = (
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.server.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: the portal is configured to bind on 0.0.0.0 (all interfaces). "
            "Put it behind a TLS-terminating reverse proxy."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        rate_limit_max_requests=config.api_keys.rate_limit_max_requests,
        grace_period_days=config.api_keys.grace_period_days,
    )
    return config


# ─── Environment overrides ────────────────────────────────────────────────────


def _config_error(msg: str) -> SystemExit:
    print(f"CONFIG ERROR: {msg}", file=sys.stderr)
    return SystemExit(1)


def _env_positive_int(name: str) -> Optional[int]:
    """Read a positive integer env var. None if unset; SystemExit(1) if invalid."""
    raw = os.environ.get(name)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise _config_error(f"{name} environment variable is not a valid integer: '{raw}'")
    if value <= 0:
        raise _config_error(f"{name} must be a positive integer, got {value}")
    return value


# env var → (section attribute, field name)
_INT_OVERRIDES: dict[str, tuple[str, str]] = {
    "PORT": ("server", "port"),
    "API_KEY_RATE_LIMIT_MAX_REQUESTS": ("api_keys", "rate_limit_max_requests"),
    "API_KEY_RATE_LIMIT_WINDOW_SECONDS": ("api_keys", "rate_limit_window_seconds"),
    "API_KEY_ROTATION_GRACE_PERIOD_DAYS": ("api_keys", "grace_period_days"),
    "KEY_DEACTIVATION_CHECK_INTERVAL_MS": ("api_keys", "deactivation_check_interval_ms"),
    "STORE_RETRY_MAX_RETRIES": ("store", "retry_max_retries"),
    "STORE_RETRY_INITIAL_DELAY_MS": ("store", "retry_initial_delay_ms"),
    "STORE_RETRY_MAX_DELAY_MS": ("store", "retry_max_delay_ms"),
    "SESSION_TTL_HOURS": ("sessions", "ttl_hours"),
}


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If a numeric override is not a positive integer.
    """
    for env_name, (section_name, field_name) in _INT_OVERRIDES.items():
        value = _env_positive_int(env_name)
        if value is not None:
            setattr(getattr(config, section_name), field_name, value)

    _validate_numbers(config)


def _validate_numbers(config: Config) -> None:
    checks: list[tuple[str, Any]] = [
        ("server.port", config.server.port),
        ("api_keys.rate_limit_max_requests", config.api_keys.rate_limit_max_requests),
        ("api_keys.rate_limit_window_seconds", config.api_keys.rate_limit_window_seconds),
        ("api_keys.grace_period_days", config.api_keys.grace_period_days),
        (
            "api_keys.deactivation_check_interval_ms",
            config.api_keys.deactivation_check_interval_ms,
        ),
        ("sessions.ttl_hours", config.sessions.ttl_hours),
    ]
    for name, value in checks:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise _config_error(f"{name} must be a positive integer, got {value!r}")
    if not 0 < config.server.port < 65536:
        raise _config_error(f"server.port out of range: {config.server.port}")
    if config.store.retry_max_retries < 0:
        raise _config_error("store.retry_max_retries must not be negative")
