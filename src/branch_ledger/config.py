"""
Collector and branch configuration management.

This module handles loading and accessing configuration from multiple sources
with a clear priority order:

    1. Environment variables (highest priority) - for containerized deployments
    2. Config file (config/branch_ledger.ini) - for static deployments
    3. Built-in defaults (lowest priority) - sensible fallbacks

Configuration is loaded once at module import time and cached. The
LedgerConfig dataclass provides typed access to all settings.

Usage:
    from branch_ledger.config import config

    print(config.collector.timeout_seconds)
    print(config.network.socket_family)

Environment Variable Mapping:
    BRANCH_LEDGER_TIMEOUT          -> collector.timeout_seconds
    BRANCH_LEDGER_CONNECT_TIMEOUT  -> collector.connect_timeout_seconds
    BRANCH_LEDGER_RECV_BYTES       -> collector.recv_buffer_bytes
    BRANCH_LEDGER_ADDRESS_FAMILY   -> network.address_family
    BRANCH_LEDGER_HOST             -> server.host
    BRANCH_LEDGER_LOG_LEVEL        -> logging.level
    BRANCH_LEDGER_LOG_FORMAT       -> logging.format
"""

import configparser
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root directory (contains src/, config/)
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Config file paths
CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_FILE = CONFIG_DIR / "branch_ledger.ini"
CONFIG_EXAMPLE = CONFIG_DIR / "branch_ledger.example.ini"

AddressFamily = Literal["v4", "v6", "dual"]

_FAMILIES: dict[str, socket.AddressFamily] = {
    "v4": socket.AF_INET,
    "v6": socket.AF_INET6,
    "dual": socket.AF_UNSPEC,
}


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================


@dataclass
class CollectorSettings:
    """Collector run settings."""

    timeout_seconds: float = 5.0  # shared deadline, starts after all sends
    connect_timeout_seconds: float = 5.0
    recv_buffer_bytes: int = 4096
    max_reply_bytes: int = 65536


@dataclass
class NetworkSettings:
    """Address resolution settings shared by collector and branch."""

    address_family: AddressFamily = "v4"

    @property
    def socket_family(self) -> socket.AddressFamily:
        """The ``getaddrinfo`` family matching ``address_family``."""
        return _FAMILIES[self.address_family]


@dataclass
class ServerSettings:
    """Branch responder settings."""

    host: str = ""  # empty string binds the wildcard address
    backlog: int = 5
    request_max_bytes: int = 128
    request_timeout_seconds: float = 10.0


@dataclass
class LedgerSettings:
    """Ledger file settings."""

    header: str = "received_timestamp,branch_id,record_count,subtotal,logged_timestamp"


@dataclass
class LoggingSettings:
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["simple", "detailed", "json"] = "detailed"


@dataclass
class LedgerConfig:
    """
    Complete configuration.

    Aggregates all settings sections. Access via the module-level `config`
    singleton.
    """

    collector: CollectorSettings = field(default_factory=CollectorSettings)
    network: NetworkSettings = field(default_factory=NetworkSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================


def _parse_family(value: str) -> AddressFamily:
    """Validate an address family name, raising ValueError on unknown values."""
    val = value.strip().lower()
    if val not in _FAMILIES:
        raise ValueError(f"address_family must be one of v4, v6, dual (got {value!r})")
    return val  # type: ignore[return-value]


def _load_from_ini(parser: configparser.ConfigParser, cfg: LedgerConfig) -> None:
    """Load configuration from parsed INI file into LedgerConfig."""
    # Collector section
    if parser.has_section("collector"):
        if parser.has_option("collector", "timeout_seconds"):
            cfg.collector.timeout_seconds = parser.getfloat("collector", "timeout_seconds")
        if parser.has_option("collector", "connect_timeout_seconds"):
            cfg.collector.connect_timeout_seconds = parser.getfloat(
                "collector", "connect_timeout_seconds"
            )
        if parser.has_option("collector", "recv_buffer_bytes"):
            cfg.collector.recv_buffer_bytes = parser.getint("collector", "recv_buffer_bytes")
        if parser.has_option("collector", "max_reply_bytes"):
            cfg.collector.max_reply_bytes = parser.getint("collector", "max_reply_bytes")

    # Network section
    if parser.has_section("network"):
        if parser.has_option("network", "address_family"):
            cfg.network.address_family = _parse_family(parser.get("network", "address_family"))

    # Server section
    if parser.has_section("server"):
        if parser.has_option("server", "host"):
            cfg.server.host = parser.get("server", "host")
        if parser.has_option("server", "backlog"):
            cfg.server.backlog = parser.getint("server", "backlog")
        if parser.has_option("server", "request_max_bytes"):
            cfg.server.request_max_bytes = parser.getint("server", "request_max_bytes")
        if parser.has_option("server", "request_timeout_seconds"):
            cfg.server.request_timeout_seconds = parser.getfloat(
                "server", "request_timeout_seconds"
            )

    # Ledger section
    if parser.has_section("ledger"):
        if parser.has_option("ledger", "header"):
            cfg.ledger.header = parser.get("ledger", "header").strip()

    # Logging section
    if parser.has_section("logging"):
        if parser.has_option("logging", "level"):
            cfg.logging.level = parser.get("logging", "level").upper()
        if parser.has_option("logging", "format"):
            val = parser.get("logging", "format").lower()
            if val in ("simple", "detailed", "json"):
                cfg.logging.format = val  # type: ignore[assignment]


def _apply_env_overrides(cfg: LedgerConfig) -> None:
    """Apply environment variable overrides to configuration."""
    # Collector settings
    if env_timeout := os.getenv("BRANCH_LEDGER_TIMEOUT"):
        cfg.collector.timeout_seconds = float(env_timeout)
    if env_connect := os.getenv("BRANCH_LEDGER_CONNECT_TIMEOUT"):
        cfg.collector.connect_timeout_seconds = float(env_connect)
    if env_recv := os.getenv("BRANCH_LEDGER_RECV_BYTES"):
        cfg.collector.recv_buffer_bytes = int(env_recv)

    # Network settings
    if env_family := os.getenv("BRANCH_LEDGER_ADDRESS_FAMILY"):
        cfg.network.address_family = _parse_family(env_family)

    # Server settings
    if env_host := os.getenv("BRANCH_LEDGER_HOST"):
        cfg.server.host = env_host

    # Logging settings
    if env_log := os.getenv("BRANCH_LEDGER_LOG_LEVEL"):
        cfg.logging.level = env_log.upper()
    if env_format := os.getenv("BRANCH_LEDGER_LOG_FORMAT"):
        if env_format.lower() in ("simple", "detailed", "json"):
            cfg.logging.format = env_format.lower()  # type: ignore[assignment]


def load_config(config_file: Path | None = None) -> LedgerConfig:
    """
    Load configuration from all sources with proper priority.

    Priority (highest wins):
        1. Environment variables
        2. ``config_file`` when given, else config/branch_ledger.ini
        3. config/branch_ledger.example.ini (fallback for development)
        4. Built-in defaults

    Args:
        config_file: Explicit INI file to read instead of the default lookup.

    Returns:
        LedgerConfig: Fully populated configuration object.

    Raises:
        FileNotFoundError: If an explicit ``config_file`` does not exist.
    """
    cfg = LedgerConfig()

    if config_file is not None:
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_file}")
    elif CONFIG_FILE.exists():
        config_file = CONFIG_FILE
    elif CONFIG_EXAMPLE.exists():
        # Use example as fallback for development
        config_file = CONFIG_EXAMPLE

    # Load from INI file if available
    if config_file:
        parser = configparser.ConfigParser()
        parser.read(config_file)
        _load_from_ini(parser, cfg)

    # Apply environment variable overrides (highest priority)
    _apply_env_overrides(cfg)

    return cfg


def reload_config(config_file: Path | None = None) -> "LedgerConfig":
    """
    Reload configuration from disk and environment.

    This updates the module-level `config` singleton.

    Returns:
        LedgerConfig: The newly loaded configuration.
    """
    global config
    config = load_config(config_file)
    return config


# =============================================================================
# MODULE-LEVEL SINGLETON
# =============================================================================

# Load configuration once at module import time
config = load_config()
