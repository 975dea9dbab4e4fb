"""Service configuration loading and validation.

Reads ``timeblock-sync.toml`` (or the file named by ``TIMEBLOCK_SYNC_CONFIG``),
resolves ``${VAR}`` references, applies environment fallbacks for secrets,
and returns a validated :class:`SyncSettings` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_ENV_VAR = "TIMEBLOCK_SYNC_CONFIG"
DEFAULT_CONFIG_FILENAME = "timeblock-sync.toml"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_DEFAULT_ALLOWED_HOSTS: tuple[str, ...] = ("localhost", "127.0.0.1")


class ConfigError(Exception):
    """Raised when service configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class GoogleConfig:
    """OAuth client registration from the [google] section."""

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None

    def require_client(self) -> tuple[str, str]:
        """Return ``(client_id, client_secret)`` or raise ConfigError."""
        if not self.client_id or not self.client_secret:
            raise ConfigError(
                "Google OAuth client is not configured "
                "(set google.client_id/google.client_secret or "
                "GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET)."
            )
        return self.client_id, self.client_secret


@dataclass
class SyncConfig:
    """Change-detection tuning from the [sync] section."""

    token_encryption_key: str | None = None
    refresh_buffer_seconds: int = 300
    full_sync_past_days: int = 30
    full_sync_future_days: int = 90
    page_size: int = 250


@dataclass
class OAuthConfig:
    """Browser redirect handling from the [oauth] section.

    ``allowed_hosts`` are matched exactly; ``allowed_host_suffixes`` match
    any host ending with the suffix (e.g. ``.example.app``).
    """

    default_origin: str = "http://localhost:5173"
    default_return_path: str = "/settings"
    allowed_hosts: tuple[str, ...] = _DEFAULT_ALLOWED_HOSTS
    allowed_host_suffixes: tuple[str, ...] = ()
    state_ttl_seconds: int = 300


@dataclass
class DatabaseConfig:
    """PostgreSQL connection settings from the [database] section."""

    url: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class SyncSettings:
    """Fully resolved service configuration."""

    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)  # keep placeholder for error reporting
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _optional_str(section: dict[str, Any], key: str, env_var: str | None = None) -> str | None:
    raw = section.get(key)
    if raw is None and env_var is not None:
        raw = os.environ.get(env_var)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{key} must be a string")
    stripped = raw.strip()
    return stripped or None


def _positive_int(section: dict[str, Any], key: str, default: int, *, prefix: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{prefix}.{key} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{prefix}.{key} must be > 0, got {value}")
    return value


def _str_tuple(section: dict[str, Any], key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = section.get(key)
    if raw is None:
        return default
    if not isinstance(raw, list):
        raise ConfigError(f"oauth.{key} must be a list of strings")
    return tuple(str(item).strip().lower() for item in raw if isinstance(item, str) and item.strip())


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    page_size = _positive_int(section, "page_size", 250, prefix="sync")
    if page_size > 2500:
        # Calendar API caps maxResults at 2500
        raise ConfigError(f"sync.page_size must be <= 2500, got {page_size}")
    return SyncConfig(
        token_encryption_key=_optional_str(section, "token_encryption_key", "TIMEBLOCK_TOKEN_KEY"),
        refresh_buffer_seconds=_positive_int(section, "refresh_buffer_seconds", 300, prefix="sync"),
        full_sync_past_days=_positive_int(section, "full_sync_past_days", 30, prefix="sync"),
        full_sync_future_days=_positive_int(section, "full_sync_future_days", 90, prefix="sync"),
        page_size=page_size,
    )


def _parse_oauth(section: dict[str, Any]) -> OAuthConfig:
    default_origin = _optional_str(section, "default_origin") or OAuthConfig.default_origin
    return_path = _optional_str(section, "default_return_path") or "/settings"
    if not return_path.startswith("/"):
        raise ConfigError("oauth.default_return_path must start with '/'")
    return OAuthConfig(
        default_origin=default_origin.rstrip("/"),
        default_return_path=return_path,
        allowed_hosts=_str_tuple(section, "allowed_hosts", _DEFAULT_ALLOWED_HOSTS),
        allowed_host_suffixes=_str_tuple(section, "allowed_host_suffixes", ()),
        state_ttl_seconds=_positive_int(section, "state_ttl_seconds", 300, prefix="oauth"),
    )


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    min_size = _positive_int(section, "min_pool_size", 2, prefix="database")
    max_size = _positive_int(section, "max_pool_size", 10, prefix="database")
    if min_size > max_size:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")
    return DatabaseConfig(
        url=_optional_str(section, "url", "DATABASE_URL"),
        min_pool_size=min_size,
        max_pool_size=max_size,
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", os.environ.get("LOG_LEVEL", "INFO"))).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _discover_config_path() -> Path | None:
    explicit = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if explicit:
        return Path(explicit)
    candidate = Path.cwd() / DEFAULT_CONFIG_FILENAME
    return candidate if candidate.exists() else None


def load_settings(path: Path | None = None) -> SyncSettings:
    """Load and validate service settings.

    When *path* is ``None`` the file named by ``TIMEBLOCK_SYNC_CONFIG`` is
    used, then ``./timeblock-sync.toml``; without either, settings come from
    defaults plus environment variables alone.

    Raises
    ------
    ConfigError
        If an explicit file is missing, contains invalid TOML, or holds
        invalid values.
    """
    config_path = path if path is not None else _discover_config_path()

    data: dict[str, Any] = {}
    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            data = tomllib.loads(config_path.read_bytes().decode())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc

    data = resolve_env_vars(data)

    google_section = _section(data, "google")
    return SyncSettings(
        google=GoogleConfig(
            client_id=_optional_str(google_section, "client_id", "GOOGLE_CLIENT_ID"),
            client_secret=_optional_str(google_section, "client_secret", "GOOGLE_CLIENT_SECRET"),
            redirect_uri=_optional_str(google_section, "redirect_uri", "GOOGLE_OAUTH_REDIRECT_URI"),
        ),
        sync=_parse_sync(_section(data, "sync")),
        oauth=_parse_oauth(_section(data, "oauth")),
        database=_parse_database(_section(data, "database")),
        logging=_parse_logging(_section(data, "logging")),
    )
