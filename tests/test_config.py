"""Tests for cellarsync.toml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from cellarsync.config import (
    CONFIG_FILENAME,
    DEFAULT_CALDAV_SERVER_URL,
    DEFAULT_SYNC_CRON,
    ConfigError,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

MINIMAL_TOML = """
[cellarsync]
timezone = "Europe/Paris"

[cellarsync.vault]
encryption_key = "k"
"""


def _write(tmp_path: Path, content: str) -> Path:
    (tmp_path / CONFIG_FILENAME).write_text(content)
    return tmp_path


def test_minimal_config_uses_defaults(tmp_path: Path):
    config = load_config(_write(tmp_path, MINIMAL_TOML))

    assert config.timezone == "Europe/Paris"
    assert config.encryption_key == "k"
    assert config.sync.cron == DEFAULT_SYNC_CRON
    assert config.sync.caldav_window_months == 1
    assert config.sync.oauth_window_months == 3
    assert config.caldav.server_url == DEFAULT_CALDAV_SERVER_URL
    assert config.caldav.no_zone_offset_hours == 5
    assert config.caldav.persist_offset_hours == 3
    assert config.caldav.write_offset_hours == -1
    assert config.microsoft is None
    assert config.google is None
    assert config.logging.format == "text"


def test_full_config_parses_every_section(tmp_path: Path):
    config = load_config(
        _write(
            tmp_path,
            """
[cellarsync]
timezone = "America/New_York"

[cellarsync.vault]
encryption_key = "secret"

[cellarsync.sync]
enabled = false
cron = "*/15 * * * *"
caldav_window_months = 2

[cellarsync.caldav]
server_url = "https://dav.example.com/"
no_zone_offset_hours = 0

[cellarsync.microsoft]
client_id = "ms-id"
client_secret = "ms-secret"
tenant = "organizations"

[cellarsync.google]
client_id = "g-id"
client_secret = "g-secret"
redirect_uri = "https://app.example.com/callback"

[cellarsync.db]
name = "bookings"
port = 6543

[cellarsync.logging]
level = "debug"
format = "JSON"
""",
        )
    )

    assert config.sync.enabled is False
    assert config.sync.cron == "*/15 * * * *"
    assert config.sync.caldav_window_months == 2
    assert config.caldav.server_url == "https://dav.example.com"
    assert config.caldav.no_zone_offset_hours == 0
    assert config.microsoft is not None
    assert config.microsoft.tenant == "organizations"
    assert config.google is not None
    assert config.google.redirect_uri == "https://app.example.com/callback"
    assert config.db.name == "bookings"
    assert config.db.port == 6543
    assert config.logging.level == "DEBUG"
    assert config.logging.format == "json"


def test_missing_file_raises(tmp_path: Path):
    with pytest.raises(ConfigError, match="Config file not found"):
        load_config(tmp_path)


def test_invalid_toml_raises(tmp_path: Path):
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(_write(tmp_path, "[cellarsync\n"))


def test_encryption_key_is_mandatory():
    with pytest.raises(ConfigError, match="encryption_key"):
        parse_config({"cellarsync": {"timezone": "Europe/Paris"}})


def test_missing_root_section():
    with pytest.raises(ConfigError, match=r"\[cellarsync\]"):
        parse_config({})


def test_invalid_timezone_rejected():
    with pytest.raises(ConfigError, match="timezone"):
        parse_config({"cellarsync": {"timezone": "Mars/Olympus", "vault": {"encryption_key": "k"}}})


def test_invalid_cron_rejected():
    with pytest.raises(ConfigError, match="cron"):
        parse_config(
            {"cellarsync": {"vault": {"encryption_key": "k"}, "sync": {"cron": "every hour"}}}
        )


def test_oauth_section_requires_client_credentials():
    with pytest.raises(ConfigError, match="cellarsync.google.client_secret"):
        parse_config(
            {"cellarsync": {"vault": {"encryption_key": "k"}, "google": {"client_id": "x"}}}
        )


def test_invalid_logging_format_rejected():
    with pytest.raises(ConfigError, match="logging.format"):
        parse_config(
            {"cellarsync": {"vault": {"encryption_key": "k"}, "logging": {"format": "xml"}}}
        )


def test_env_vars_are_resolved(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CELLARSYNC_KEY", "from-env")
    config = parse_config({"cellarsync": {"vault": {"encryption_key": "${CELLARSYNC_KEY}"}}})
    assert config.encryption_key == "from-env"


def test_unresolved_env_var_reports_every_missing_name(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("MISSING_A", raising=False)
    monkeypatch.delenv("MISSING_B", raising=False)
    with pytest.raises(ConfigError, match="MISSING_A, MISSING_B"):
        resolve_env_vars({"nested": ["${MISSING_A}-${MISSING_B}"]})


def test_resolve_env_vars_leaves_non_strings_alone():
    assert resolve_env_vars({"a": 1, "b": [True, None, 2.5]}) == {"a": 1, "b": [True, None, 2.5]}


def test_repr_redacts_secrets():
    config = parse_config(
        {
            "cellarsync": {
                "vault": {"encryption_key": "top-secret-key"},
                "microsoft": {"client_id": "id", "client_secret": "ms-client-secret"},
            }
        }
    )
    rendered = repr(config)
    assert "top-secret-key" not in rendered
    assert "ms-client-secret" not in rendered
