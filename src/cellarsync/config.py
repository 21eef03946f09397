"""cellarsync configuration loading and validation.

Reads cellarsync.toml from a config directory, resolves ``${VAR}``
references against the environment, parses all sections, and returns a
validated SyncServiceConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

CONFIG_FILENAME = "cellarsync.toml"
DEFAULT_TIMEZONE = "Europe/Paris"
DEFAULT_SYNC_CRON = "0 * * * *"
DEFAULT_CALDAV_SERVER_URL = "https://caldav.orange.fr"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [cellarsync.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """asyncpg connection parameters from [cellarsync.db]."""

    name: str = "cellarsync"
    host: str = "localhost"
    port: int = 5432
    user: str = "cellarsync"
    password: str = "cellarsync"
    ssl: str | None = None
    min_pool_size: int = 1
    max_pool_size: int = 5


@dataclass
class SyncConfig:
    """Recurring sync settings from [cellarsync.sync]."""

    enabled: bool = True
    cron: str = DEFAULT_SYNC_CRON
    http_timeout_s: float = 15.0
    caldav_window_months: int = 1
    oauth_window_months: int = 3


@dataclass
class CaldavConfig:
    """CalDAV provider settings from [cellarsync.caldav].

    The three offsets are independent empirical corrections and are applied
    separately: ``no_zone_offset_hours`` at normalization when a timestamp
    carries no zone at all, ``persist_offset_hours`` when a CalDAV event is
    written to the local store, and ``write_offset_hours`` to a booking's
    start time before it is uploaded.
    """

    server_url: str = DEFAULT_CALDAV_SERVER_URL
    discovery_cache_ttl_s: float = 300.0
    discovery_max_retries: int = 2
    no_zone_offset_hours: int = 5
    persist_offset_hours: int = 3
    write_offset_hours: int = -1


@dataclass
class OAuthClientConfig:
    """OAuth application credentials for one provider."""

    client_id: str
    client_secret: str
    redirect_uri: str | None = None
    scope: str | None = None
    tenant: str = "common"

    def __repr__(self) -> str:
        return (
            f"OAuthClientConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"redirect_uri={self.redirect_uri!r}, scope={self.scope!r}, tenant={self.tenant!r})"
        )


@dataclass
class SyncServiceConfig:
    """Parsed representation of cellarsync.toml."""

    encryption_key: str
    timezone: str = DEFAULT_TIMEZONE
    sync: SyncConfig = field(default_factory=SyncConfig)
    caldav: CaldavConfig = field(default_factory=CaldavConfig)
    microsoft: OAuthClientConfig | None = None
    google: OAuthClientConfig | None = None
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __repr__(self) -> str:
        return (
            f"SyncServiceConfig(timezone={self.timezone!r}, encryption_key=<REDACTED>, "
            f"sync={self.sync!r}, caldav={self.caldav!r}, microsoft={self.microsoft!r}, "
            f"google={self.google!r})"
        )


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


def _require_section(parent: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    section = parent.get(key, {})
    if not isinstance(section, dict):
        raise ConfigError(f"{path} must be a table")
    return section


def _parse_timezone(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError("cellarsync.timezone must be a non-empty string")
    normalized = raw.strip()
    try:
        ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid cellarsync.timezone: {raw!r}") from exc
    return normalized


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    cron = str(section.get("cron", DEFAULT_SYNC_CRON)).strip()
    if not croniter.is_valid(cron):
        raise ConfigError(f"Invalid cellarsync.sync.cron expression: {cron!r}")

    http_timeout_s = float(section.get("http_timeout_s", 15.0))
    if http_timeout_s <= 0:
        raise ConfigError("cellarsync.sync.http_timeout_s must be positive")

    caldav_window_months = int(section.get("caldav_window_months", 1))
    oauth_window_months = int(section.get("oauth_window_months", 3))
    if caldav_window_months < 1 or oauth_window_months < 1:
        raise ConfigError("cellarsync.sync window sizes must be at least 1 month")

    return SyncConfig(
        enabled=bool(section.get("enabled", True)),
        cron=cron,
        http_timeout_s=http_timeout_s,
        caldav_window_months=caldav_window_months,
        oauth_window_months=oauth_window_months,
    )


def _parse_caldav(section: dict[str, Any]) -> CaldavConfig:
    server_url = str(section.get("server_url", DEFAULT_CALDAV_SERVER_URL)).strip().rstrip("/")
    if not server_url.startswith(("http://", "https://")):
        raise ConfigError(f"Invalid cellarsync.caldav.server_url: {server_url!r}")

    ttl = float(section.get("discovery_cache_ttl_s", 300.0))
    if ttl <= 0:
        raise ConfigError("cellarsync.caldav.discovery_cache_ttl_s must be positive")

    max_retries = int(section.get("discovery_max_retries", 2))
    if max_retries < 0:
        raise ConfigError("cellarsync.caldav.discovery_max_retries must not be negative")

    return CaldavConfig(
        server_url=server_url,
        discovery_cache_ttl_s=ttl,
        discovery_max_retries=max_retries,
        no_zone_offset_hours=int(section.get("no_zone_offset_hours", 5)),
        persist_offset_hours=int(section.get("persist_offset_hours", 3)),
        write_offset_hours=int(section.get("write_offset_hours", -1)),
    )


def _parse_oauth_client(section: dict[str, Any], name: str) -> OAuthClientConfig | None:
    """Parse an optional provider table; an absent table disables the provider."""
    if not section:
        return None

    missing = [key for key in ("client_id", "client_secret") if not section.get(key)]
    if missing:
        fields = ", ".join(f"cellarsync.{name}.{key}" for key in missing)
        raise ConfigError(f"Missing required field(s): {fields}")

    return OAuthClientConfig(
        client_id=str(section["client_id"]).strip(),
        client_secret=str(section["client_secret"]).strip(),
        redirect_uri=section.get("redirect_uri"),
        scope=section.get("scope"),
        tenant=str(section.get("tenant", "common")),
    )


def _parse_db(section: dict[str, Any]) -> DatabaseConfig:
    return DatabaseConfig(
        name=str(section.get("name", "cellarsync")),
        host=str(section.get("host", "localhost")),
        port=int(section.get("port", 5432)),
        user=str(section.get("user", "cellarsync")),
        password=str(section.get("password", "cellarsync")),
        ssl=section.get("ssl"),
        min_pool_size=int(section.get("min_pool_size", 1)),
        max_pool_size=int(section.get("max_pool_size", 5)),
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid cellarsync.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


def parse_config(data: dict[str, Any]) -> SyncServiceConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    root = data.get("cellarsync")
    if not isinstance(root, dict):
        raise ConfigError("Missing [cellarsync] section in config")

    vault_section = _require_section(root, "vault", "cellarsync.vault")
    encryption_key = vault_section.get("encryption_key")
    if not isinstance(encryption_key, str) or not encryption_key.strip():
        raise ConfigError(
            "Missing required field: cellarsync.vault.encryption_key "
            "(credential encryption has no built-in fallback key)"
        )

    return SyncServiceConfig(
        encryption_key=encryption_key.strip(),
        timezone=_parse_timezone(root.get("timezone", DEFAULT_TIMEZONE)),
        sync=_parse_sync(_require_section(root, "sync", "cellarsync.sync")),
        caldav=_parse_caldav(_require_section(root, "caldav", "cellarsync.caldav")),
        microsoft=_parse_oauth_client(
            _require_section(root, "microsoft", "cellarsync.microsoft"), "microsoft"
        ),
        google=_parse_oauth_client(_require_section(root, "google", "cellarsync.google"), "google"),
        db=_parse_db(_require_section(root, "db", "cellarsync.db")),
        logging=_parse_logging(_require_section(root, "logging", "cellarsync.logging")),
    )


def load_config(config_dir: Path) -> SyncServiceConfig:
    """Load and validate a cellarsync.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
