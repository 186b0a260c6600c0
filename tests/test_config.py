"""Tests for gatehouse.config loading, overrides and logging setup."""

import configparser
import json
import logging
import textwrap

import pytest

import gatehouse.config as config_module
from gatehouse.config import (
    GatehouseConfig,
    _load_from_ini,
    configure_logging,
    get_config_status,
    load_config,
    use_test_storage,
)


@pytest.mark.unit
def test_defaults():
    cfg = GatehouseConfig()

    assert cfg.linking.cooldown_seconds == 30
    assert cfg.linking.code_ttl_seconds == 300
    assert cfg.linking.max_attempts == 5
    assert cfg.discord.cache_minutes == 30
    assert cfg.discord.max_concurrent_requests == 5
    assert cfg.discord.min_request_interval_ms == 200
    assert cfg.attempts.max_entries == 200
    assert cfg.linking_available is False


@pytest.mark.unit
def test_ini_values_are_loaded():
    parser = configparser.ConfigParser()
    parser.read_string(
        textwrap.dedent(
            """
        [storage]
        backend = memory
        [linking]
        enabled = yes
        cooldown_seconds = 45
        require_role = true
        required_role_id = 777
        message_template = Code {code} valid for {minutes} min (100%% yours)
        [discord]
        bot_token = abc
        server_id = 42
        timeout_seconds = 2.5
        [logging]
        format = json
        """
        )
    )
    cfg = GatehouseConfig()

    _load_from_ini(parser, cfg)

    assert cfg.storage.backend == "memory"
    assert cfg.linking.enabled is True
    assert cfg.linking.cooldown_seconds == 45
    assert cfg.linking.require_role is True
    assert cfg.linking.required_role_id == "777"
    assert cfg.linking.message_template == "Code {code} valid for {minutes} min (100%% yours)"
    assert cfg.discord.timeout_seconds == 2.5
    assert cfg.logging.format == "json"
    assert cfg.linking_available is True


@pytest.mark.unit
def test_unknown_backend_is_ignored():
    parser = configparser.ConfigParser()
    parser.read_dict({"storage": {"backend": "postgres"}})
    cfg = GatehouseConfig()

    _load_from_ini(parser, cfg)

    assert cfg.storage.backend == "sqlite"


@pytest.mark.unit
def test_env_overrides(monkeypatch):
    monkeypatch.setenv("GATE_STORAGE_BACKEND", "memory")
    monkeypatch.setenv("GATE_LINKING_ENABLED", "true")
    monkeypatch.setenv("GATE_LINK_COOLDOWN_SECONDS", "60")
    monkeypatch.setenv("GATE_LINK_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("GATE_DISCORD_BOT_TOKEN", "token")
    monkeypatch.setenv("GATE_DISCORD_SERVER_ID", "99")
    monkeypatch.setenv("GATE_DISCORD_TIMEOUT", "4.5")
    monkeypatch.setenv("GATE_LOG_LEVEL", "debug")

    cfg = load_config()

    assert cfg.storage.backend == "memory"
    assert cfg.linking.enabled is True
    assert cfg.linking.cooldown_seconds == 60
    assert cfg.linking.max_attempts == 3
    assert cfg.discord.timeout_seconds == 4.5
    assert cfg.logging.level == "DEBUG"
    assert cfg.linking_available is True


@pytest.mark.unit
def test_placeholder_discord_values_are_not_configured():
    cfg = GatehouseConfig()
    cfg.discord.bot_token = "YOUR_BOT_TOKEN_HERE"
    cfg.discord.server_id = "42"
    assert cfg.discord.is_configured is False


@pytest.mark.unit
def test_relative_paths_resolve_under_project_root(tmp_path):
    cfg = GatehouseConfig()
    assert cfg.storage.absolute_path == config_module.PROJECT_ROOT / "data" / "gatehouse.db"

    cfg.audit.path = str(tmp_path / "audit.jsonl")
    assert cfg.audit.absolute_path == tmp_path / "audit.jsonl"


@pytest.mark.unit
def test_use_test_storage_restores_paths(tmp_path):
    original = (config_module.config.storage.path, config_module.config.audit.path)

    with use_test_storage(tmp_path) as root:
        assert root == tmp_path
        assert config_module.config.storage.absolute_path == tmp_path / "gatehouse.db"
        assert config_module.config.audit.absolute_path == tmp_path / "audit.jsonl"

    assert (config_module.config.storage.path, config_module.config.audit.path) == original


@pytest.mark.unit
def test_config_status_hides_secrets():
    status = get_config_status()

    assert set(status) >= {"storage_backend", "linking_enabled", "discord_configured"}
    assert "bot_token" not in json.dumps(status)


@pytest.mark.unit
def test_configure_logging_replaces_own_handler(capsys):
    cfg = GatehouseConfig()
    cfg.logging.format = "json"
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        configure_logging(cfg)
        configure_logging(cfg)
        ours = [h for h in root.handlers if getattr(h, "_gatehouse", False)]
        assert len(ours) == 1

        logging.getLogger("gatehouse.test").warning("hello %s", "world")
        line = capsys.readouterr().err.strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["message"] == "hello world"
        assert payload["logger"] == "gatehouse.test"
    finally:
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
        root.setLevel(level)
