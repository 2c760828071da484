"""calsync configuration loading and validation.

Reads ``calsync.toml``, resolves ``${VAR_NAME}`` references against the
environment, and returns a validated ``CalsyncConfig`` dataclass.  When no
file is available, ``config_from_env()`` builds the same structure from
environment variables alone.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calsync.sync.google import GOOGLE_CALENDAR_API_BASE_URL, MAX_PAGE_SIZE
from calsync.sync.models import DEFAULT_CALENDAR_ID
from calsync.sync.tokens import GOOGLE_OAUTH_TOKEN_URL
from calsync.sync.watch import DEFAULT_WATCH_TTL_SECONDS

DEFAULT_CONFIG_FILENAME = "calsync.toml"

# Matches ${VAR_NAME} placeholders (letters, digits and underscores).
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_WEBHOOK_FALLBACKS = ("none", "window")


class ConfigError(Exception):
    """Raised when calsync configuration is missing, malformed, or invalid."""


@dataclass
class GoogleConfig:
    """OAuth client and API settings from the [google] section."""

    client_id: str = ""
    client_secret: str = ""
    calendar_id: str = DEFAULT_CALENDAR_ID
    api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL
    token_url: str = GOOGLE_OAUTH_TOKEN_URL
    request_timeout_s: float = 30.0

    def __repr__(self) -> str:
        return (
            f"GoogleConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"calendar_id={self.calendar_id!r})"
        )


@dataclass
class SyncConfig:
    """Reconciliation and webhook settings from the [sync] section."""

    page_size: int = 250
    recent_window_minutes: int = 5
    webhook_lookback_minutes: int = 10
    webhook_fallback: str = "none"  # "none" or "window"
    token_expiry_skew_seconds: int = 60
    default_timezone: str = "UTC"


@dataclass
class WatchConfig:
    webhook_url: str | None = None
    ttl_seconds: int = DEFAULT_WATCH_TTL_SECONDS


@dataclass
class DatabaseConfig:
    name: str = "calsync"
    schema: str | None = None


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class CalsyncConfig:
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

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
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _positive_int(section: dict[str, Any], key: str, default: int, *, label: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {label}.{key}: {raw!r}. Must be a positive integer.") from exc
    if isinstance(raw, bool) or value <= 0:
        raise ConfigError(f"Invalid {label}.{key}: {raw!r}. Must be a positive integer.")
    return value


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Validate an already-loaded (and env-resolved) config mapping."""
    # --- [google] ---
    google_section = _section(data, "google")
    calendar_id = str(google_section.get("calendar_id", DEFAULT_CALENDAR_ID)).strip()
    if not calendar_id:
        raise ConfigError("google.calendar_id must be a non-empty string")
    try:
        request_timeout_s = float(google_section.get("request_timeout_s", 30.0))
    except (TypeError, ValueError) as exc:
        raise ConfigError("google.request_timeout_s must be a number") from exc
    if request_timeout_s <= 0:
        raise ConfigError("google.request_timeout_s must be positive")
    google = GoogleConfig(
        client_id=str(google_section.get("client_id", "")).strip(),
        client_secret=str(google_section.get("client_secret", "")).strip(),
        calendar_id=calendar_id,
        api_base_url=str(google_section.get("api_base_url", GOOGLE_CALENDAR_API_BASE_URL)),
        token_url=str(google_section.get("token_url", GOOGLE_OAUTH_TOKEN_URL)),
        request_timeout_s=request_timeout_s,
    )

    # --- [sync] ---
    sync_section = _section(data, "sync")
    page_size = _positive_int(sync_section, "page_size", 250, label="sync")
    if page_size > MAX_PAGE_SIZE:
        raise ConfigError(f"Invalid sync.page_size: {page_size}. Must be <= {MAX_PAGE_SIZE}.")
    webhook_fallback = str(sync_section.get("webhook_fallback", "none")).lower()
    if webhook_fallback not in _WEBHOOK_FALLBACKS:
        raise ConfigError(
            f"Invalid sync.webhook_fallback: {webhook_fallback!r}. Expected 'none' or 'window'."
        )
    skew_raw = sync_section.get("token_expiry_skew_seconds", 60)
    if isinstance(skew_raw, bool) or not isinstance(skew_raw, int) or skew_raw < 0:
        raise ConfigError(
            f"Invalid sync.token_expiry_skew_seconds: {skew_raw!r}. "
            "Must be a non-negative integer."
        )
    default_timezone = str(sync_section.get("default_timezone", "UTC")).strip()
    try:
        ZoneInfo(default_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid sync.default_timezone: {default_timezone!r}") from exc
    sync = SyncConfig(
        page_size=page_size,
        recent_window_minutes=_positive_int(
            sync_section, "recent_window_minutes", 5, label="sync"
        ),
        webhook_lookback_minutes=_positive_int(
            sync_section, "webhook_lookback_minutes", 10, label="sync"
        ),
        webhook_fallback=webhook_fallback,
        token_expiry_skew_seconds=skew_raw,
        default_timezone=default_timezone,
    )

    # --- [watch] ---
    watch_section = _section(data, "watch")
    webhook_url = watch_section.get("webhook_url")
    if webhook_url is not None and (not isinstance(webhook_url, str) or not webhook_url.strip()):
        raise ConfigError("watch.webhook_url must be a non-empty string when set")
    watch = WatchConfig(
        webhook_url=webhook_url.strip() if webhook_url else None,
        ttl_seconds=_positive_int(
            watch_section, "ttl_seconds", DEFAULT_WATCH_TTL_SECONDS, label="watch"
        ),
    )

    # --- [database] ---
    db_section = _section(data, "database")
    db_name = str(db_section.get("name", "calsync")).strip()
    if not db_name:
        raise ConfigError("database.name must be a non-empty string")
    db_schema_raw = db_section.get("schema")
    db_schema: str | None = None
    if db_schema_raw is not None:
        if not isinstance(db_schema_raw, str) or not db_schema_raw.strip():
            raise ConfigError("database.schema must be a non-empty string when set")
        if _DB_SCHEMA_PATTERN.fullmatch(db_schema_raw.strip()) is None:
            raise ConfigError(
                f"Invalid database.schema: {db_schema_raw!r}. "
                "Expected a valid SQL identifier-style value."
            )
        db_schema = db_schema_raw.strip()
    database = DatabaseConfig(name=db_name, schema=db_schema)

    # --- [logging] ---
    logging_section = _section(data, "logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    return CalsyncConfig(
        google=google,
        sync=sync,
        watch=watch,
        database=database,
        logging=logging_config,
    )


def load_config(config_path: Path) -> CalsyncConfig:
    """Load and validate a ``calsync.toml`` file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        data = tomllib.loads(config_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc

    return parse_config(resolve_env_vars(data))


def config_from_env() -> CalsyncConfig:
    """Build configuration from environment variables only."""
    data: dict[str, Any] = {
        "google": {
            "client_id": os.environ.get("GOOGLE_OAUTH_CLIENT_ID", ""),
            "client_secret": os.environ.get("GOOGLE_OAUTH_CLIENT_SECRET", ""),
        },
        "database": {"name": os.environ.get("CALSYNC_DB_NAME", "calsync")},
        "logging": {
            "level": os.environ.get("CALSYNC_LOG_LEVEL", "INFO"),
            "format": os.environ.get("CALSYNC_LOG_FORMAT", "text"),
        },
    }
    webhook_url = os.environ.get("CALSYNC_WEBHOOK_URL")
    if webhook_url:
        data["watch"] = {"webhook_url": webhook_url}
    return parse_config(data)


def resolve_config(config_path: Path | None = None) -> CalsyncConfig:
    """Load *config_path*, or ``./calsync.toml`` when present, else fall back to the env."""
    if config_path is not None:
        return load_config(config_path)
    default_path = Path(DEFAULT_CONFIG_FILENAME)
    if default_path.exists():
        return load_config(default_path)
    return config_from_env()
