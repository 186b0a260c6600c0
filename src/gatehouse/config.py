"""
Gatehouse configuration management.

This module loads configuration from multiple sources with a clear priority
order:

    1. Environment variables (highest priority) - for containerized deployments
    2. Config file (config/gatehouse.ini) - for static deployments
    3. Built-in defaults (lowest priority) - sensible fallbacks

Configuration is loaded once at module import time and cached. The
GatehouseConfig dataclass provides typed access to all settings.

Usage:
    from gatehouse.config import config

    print(config.linking.code_ttl_seconds)
    print(config.storage.absolute_path)

Environment Variable Mapping:
    GATE_STORAGE_BACKEND        -> storage.backend
    GATE_DB_PATH                -> storage.path
    GATE_AUDIT_PATH             -> audit.path
    GATE_AUDIT_ENABLED          -> audit.enabled
    GATE_LINKING_ENABLED        -> linking.enabled
    GATE_LINK_COOLDOWN_SECONDS  -> linking.cooldown_seconds
    GATE_LINK_CODE_TTL_SECONDS  -> linking.code_ttl_seconds
    GATE_LINK_MAX_ATTEMPTS      -> linking.max_attempts
    GATE_DISCORD_BOT_TOKEN      -> discord.bot_token
    GATE_DISCORD_SERVER_ID      -> discord.server_id
    GATE_DISCORD_TIMEOUT        -> discord.timeout_seconds
    GATE_LOG_LEVEL              -> logging.level
"""

import configparser
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root directory (contains src/, config/, data/)
PROJECT_ROOT = Path(__file__).parent.parent.parent

CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_FILE = CONFIG_DIR / "gatehouse.ini"
CONFIG_EXAMPLE = CONFIG_DIR / "gatehouse.example.ini"


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================


@dataclass
class StorageSettings:
    """Persistence backend configuration."""

    backend: Literal["sqlite", "memory"] = "sqlite"
    path: str = "data/gatehouse.db"

    @property
    def absolute_path(self) -> Path:
        """Get absolute path to the SQLite database file."""
        p = Path(self.path)
        if p.is_absolute():
            return p
        return PROJECT_ROOT / p


@dataclass
class AuditSettings:
    """Audit log configuration."""

    enabled: bool = True
    path: str = "data/logs/audit.jsonl"

    @property
    def absolute_path(self) -> Path:
        """Get absolute path to the audit log file."""
        p = Path(self.path)
        if p.is_absolute():
            return p
        return PROJECT_ROOT / p


@dataclass
class LinkingSettings:
    """External identity linking workflow."""

    enabled: bool = False
    cooldown_seconds: int = 30
    code_ttl_seconds: int = 300
    max_attempts: int = 5
    code_length: int = 6
    require_role: bool = False
    required_role_id: str = ""
    worker_threads: int = 4
    message_template: str = (
        "Your verification code is {code}. It expires in {minutes} minutes."
    )


@dataclass
class DiscordSettings:
    """Discord REST client configuration."""

    bot_token: str = ""
    server_id: str = ""
    api_base_url: str = "https://discord.com/api/v10"
    timeout_seconds: float = 10.0
    cache_minutes: int = 30
    max_concurrent_requests: int = 5
    min_request_interval_ms: int = 200

    @property
    def is_configured(self) -> bool:
        """True when both the bot token and the server id are set."""
        placeholders = ("", "YOUR_BOT_TOKEN_HERE", "YOUR_SERVER_ID_HERE")
        return self.bot_token not in placeholders and self.server_id not in placeholders


@dataclass
class AttemptSettings:
    """Join-attempt tracker limits."""

    max_entries: int = 200


@dataclass
class ExclusionSettings:
    """Exclusion ledger housekeeping."""

    purge_after_days: int = 30


@dataclass
class LoggingSettings:
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["simple", "detailed", "json"] = "detailed"


@dataclass
class GatehouseConfig:
    """
    Complete gatehouse configuration.

    Aggregates all settings sections. Access via the module-level `config`
    singleton.
    """

    storage: StorageSettings = field(default_factory=StorageSettings)
    audit: AuditSettings = field(default_factory=AuditSettings)
    linking: LinkingSettings = field(default_factory=LinkingSettings)
    discord: DiscordSettings = field(default_factory=DiscordSettings)
    attempts: AttemptSettings = field(default_factory=AttemptSettings)
    exclusions: ExclusionSettings = field(default_factory=ExclusionSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @property
    def linking_available(self) -> bool:
        """Linking is usable only when enabled and the Discord client can be built."""
        return self.linking.enabled and self.discord.is_configured


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================


def _parse_bool(value: str) -> bool:
    """Parse a string value to boolean."""
    return value.lower() in ("true", "yes", "1", "on", "enabled")


def _load_from_ini(parser: configparser.ConfigParser, cfg: GatehouseConfig) -> None:
    """Load configuration from parsed INI file into GatehouseConfig."""
    if parser.has_section("storage"):
        if parser.has_option("storage", "backend"):
            val = parser.get("storage", "backend").lower()
            if val in ("sqlite", "memory"):
                cfg.storage.backend = val  # type: ignore[assignment]
        if parser.has_option("storage", "path"):
            cfg.storage.path = parser.get("storage", "path")

    if parser.has_section("audit"):
        if parser.has_option("audit", "enabled"):
            cfg.audit.enabled = _parse_bool(parser.get("audit", "enabled"))
        if parser.has_option("audit", "path"):
            cfg.audit.path = parser.get("audit", "path")

    if parser.has_section("linking"):
        if parser.has_option("linking", "enabled"):
            cfg.linking.enabled = _parse_bool(parser.get("linking", "enabled"))
        for key in ("cooldown_seconds", "code_ttl_seconds", "max_attempts", "code_length"):
            if parser.has_option("linking", key):
                setattr(cfg.linking, key, parser.getint("linking", key))
        if parser.has_option("linking", "worker_threads"):
            cfg.linking.worker_threads = parser.getint("linking", "worker_threads")
        if parser.has_option("linking", "require_role"):
            cfg.linking.require_role = _parse_bool(parser.get("linking", "require_role"))
        if parser.has_option("linking", "required_role_id"):
            cfg.linking.required_role_id = parser.get("linking", "required_role_id")
        if parser.has_option("linking", "message_template"):
            # Raw read: the template carries {code} placeholders, not % interpolation.
            cfg.linking.message_template = parser.get("linking", "message_template", raw=True)

    if parser.has_section("discord"):
        if parser.has_option("discord", "bot_token"):
            cfg.discord.bot_token = parser.get("discord", "bot_token")
        if parser.has_option("discord", "server_id"):
            cfg.discord.server_id = parser.get("discord", "server_id")
        if parser.has_option("discord", "api_base_url"):
            cfg.discord.api_base_url = parser.get("discord", "api_base_url")
        if parser.has_option("discord", "timeout_seconds"):
            cfg.discord.timeout_seconds = parser.getfloat("discord", "timeout_seconds")
        if parser.has_option("discord", "cache_minutes"):
            cfg.discord.cache_minutes = parser.getint("discord", "cache_minutes")
        if parser.has_option("discord", "max_concurrent_requests"):
            cfg.discord.max_concurrent_requests = parser.getint(
                "discord", "max_concurrent_requests"
            )
        if parser.has_option("discord", "min_request_interval_ms"):
            cfg.discord.min_request_interval_ms = parser.getint(
                "discord", "min_request_interval_ms"
            )

    if parser.has_section("attempts"):
        if parser.has_option("attempts", "max_entries"):
            cfg.attempts.max_entries = parser.getint("attempts", "max_entries")

    if parser.has_section("exclusions"):
        if parser.has_option("exclusions", "purge_after_days"):
            cfg.exclusions.purge_after_days = parser.getint("exclusions", "purge_after_days")

    if parser.has_section("logging"):
        if parser.has_option("logging", "level"):
            cfg.logging.level = parser.get("logging", "level").upper()
        if parser.has_option("logging", "format"):
            val = parser.get("logging", "format").lower()
            if val in ("simple", "detailed", "json"):
                cfg.logging.format = val  # type: ignore[assignment]


def _apply_env_overrides(cfg: GatehouseConfig) -> None:
    """Apply environment variable overrides to configuration."""
    if env_backend := os.getenv("GATE_STORAGE_BACKEND"):
        if env_backend.lower() in ("sqlite", "memory"):
            cfg.storage.backend = env_backend.lower()  # type: ignore[assignment]
    if env_db := os.getenv("GATE_DB_PATH"):
        cfg.storage.path = env_db

    if env_audit := os.getenv("GATE_AUDIT_PATH"):
        cfg.audit.path = env_audit
    if env_audit_enabled := os.getenv("GATE_AUDIT_ENABLED"):
        cfg.audit.enabled = _parse_bool(env_audit_enabled)

    if env_linking := os.getenv("GATE_LINKING_ENABLED"):
        cfg.linking.enabled = _parse_bool(env_linking)
    if env_cooldown := os.getenv("GATE_LINK_COOLDOWN_SECONDS"):
        cfg.linking.cooldown_seconds = int(env_cooldown)
    if env_ttl := os.getenv("GATE_LINK_CODE_TTL_SECONDS"):
        cfg.linking.code_ttl_seconds = int(env_ttl)
    if env_attempts := os.getenv("GATE_LINK_MAX_ATTEMPTS"):
        cfg.linking.max_attempts = int(env_attempts)

    if env_token := os.getenv("GATE_DISCORD_BOT_TOKEN"):
        cfg.discord.bot_token = env_token
    if env_server := os.getenv("GATE_DISCORD_SERVER_ID"):
        cfg.discord.server_id = env_server
    if env_timeout := os.getenv("GATE_DISCORD_TIMEOUT"):
        cfg.discord.timeout_seconds = float(env_timeout)

    if env_log := os.getenv("GATE_LOG_LEVEL"):
        cfg.logging.level = env_log.upper()


def load_config() -> GatehouseConfig:
    """
    Load configuration from all sources with proper priority.

    Priority (highest wins):
        1. Environment variables
        2. config/gatehouse.ini
        3. config/gatehouse.example.ini (fallback for development)
        4. Built-in defaults

    Returns:
        GatehouseConfig: Fully populated configuration object.
    """
    cfg = GatehouseConfig()

    config_file = None
    if CONFIG_FILE.exists():
        config_file = CONFIG_FILE
    elif CONFIG_EXAMPLE.exists():
        config_file = CONFIG_EXAMPLE

    if config_file:
        parser = configparser.ConfigParser()
        parser.read(config_file)
        _load_from_ini(parser, cfg)

    _apply_env_overrides(cfg)

    return cfg


def reload_config() -> "GatehouseConfig":
    """
    Reload configuration from disk and environment.

    This updates the module-level `config` singleton. Components that were
    already built keep the settings they were constructed with.
    """
    global config
    config = load_config()
    return config


# =============================================================================
# MODULE-LEVEL SINGLETON
# =============================================================================

config = load_config()


# =============================================================================
# LOGGING
# =============================================================================


class _JsonFormatter(logging.Formatter):
    """Render each record as a single JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


_LOG_FORMATS = {
    "simple": "%(levelname)s %(message)s",
    "detailed": "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
}


def configure_logging(cfg: GatehouseConfig | None = None) -> None:
    """
    Install a root stream handler honoring ``cfg.logging``.

    Safe to call more than once: previously installed gatehouse handlers are
    replaced rather than stacked.
    """
    cfg = cfg or config
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_gatehouse", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler._gatehouse = True  # type: ignore[attr-defined]
    if cfg.logging.format == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_LOG_FORMATS[cfg.logging.format]))
    root.addHandler(handler)
    root.setLevel(cfg.logging.level)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def get_config_status() -> dict:
    """
    Get configuration status for diagnostics.

    Returns a dictionary with configuration source information. Secrets are
    reported only as present/absent.
    """
    return {
        "config_file_exists": CONFIG_FILE.exists(),
        "config_file_path": str(CONFIG_FILE),
        "using_example": not CONFIG_FILE.exists() and CONFIG_EXAMPLE.exists(),
        "storage_backend": config.storage.backend,
        "audit_enabled": config.audit.enabled,
        "linking_enabled": config.linking.enabled,
        "discord_configured": config.discord.is_configured,
    }


# =============================================================================
# TEST HELPERS
# =============================================================================


class use_test_storage:
    """
    Context manager for pointing storage and audit paths at a temp directory.

    Usage:
        from gatehouse.config import use_test_storage

        def test_something(tmp_path):
            with use_test_storage(tmp_path):
                gatehouse = build_gatehouse()

    Args:
        root: Directory that receives ``gatehouse.db`` and ``audit.jsonl``.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self.original: tuple[str, str] | None = None

    def __enter__(self) -> Path:
        """Redirect storage and audit paths."""
        self.original = (config.storage.path, config.audit.path)
        config.storage.path = str(self.root / "gatehouse.db")
        config.audit.path = str(self.root / "audit.jsonl")
        return self.root

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Restore original paths."""
        if self.original is not None:
            config.storage.path, config.audit.path = self.original
        return None
