"""
Unified settings management for KeepKey Vault components.

This module provides a centralized configuration system using pydantic-settings
that supports:
1. TOML configuration file (~/.keepkey-vault/config.toml)
2. Environment variables
3. CLI arguments (via typer, handled by components)

Priority (highest to lowest):
1. CLI arguments
2. Environment variables
3. Config file
4. Default values

The config file is generated with all settings commented out, allowing users
to selectively override only the settings they want to change.

Usage:
    from kkcore.settings import get_settings

    settings = get_settings()
    print(settings.backend.mempool_url)
    print(settings.signing.session_timeout)

Environment Variable Naming:
    - Use uppercase with double underscore for nested settings
    - Examples: BACKEND__MEMPOOL_URL, SIGNING__BRIDGE_URL, SELECTION__DUST_THRESHOLD
    - Maps to TOML sections: SIGNING__BRIDGE_URL -> [signing] bridge_url
"""

from __future__ import annotations

import sys
import tomllib
from decimal import Decimal
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from kkcore.constants import DUST_THRESHOLD
from kkcore.models import FeeTier, NetworkType
from kkcore.paths import get_config_file_path, get_data_dir_path, get_default_data_dir

# Esplora-compatible API roots per network
DEFAULT_MEMPOOL_URLS: dict[str, str] = {
    "mainnet": "https://mempool.space/api",
    "testnet": "https://mempool.space/testnet/api",
    "signet": "https://mempool.space/signet/api",
    "regtest": "http://127.0.0.1:3002/api",
}

LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


class NetworkSettings(BaseModel):
    """Bitcoin network selection."""

    network: NetworkType = Field(
        default=NetworkType.MAINNET,
        description="Bitcoin network: mainnet, testnet, signet, regtest",
    )


class BackendSettings(BaseModel):
    """Blockchain data backend (mempool.space / Esplora API)."""

    mempool_url: str | None = Field(
        default=None,
        description="Esplora-compatible API root (defaults to mempool.space for the network)",
    )
    http_timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="HTTP request timeout in seconds",
    )
    gap_limit: int = Field(
        default=20,
        ge=1,
        le=1000,
        description="Consecutive unused addresses scanned before UTXO discovery stops",
    )


class SelectionSettings(BaseModel):
    """Coin selection parameters."""

    min_confirmations: int = Field(
        default=1,
        ge=0,
        description="Minimum confirmations for a UTXO to be spendable",
    )
    dust_threshold: int = Field(
        default=DUST_THRESHOLD,
        ge=0,
        description="Change at or below this amount (sats) is added to the fee",
    )
    default_fee_tier: FeeTier = Field(
        default=FeeTier.MEDIUM,
        description="Fee tier used when no manual rate is given: slow, medium, fast",
    )
    min_fee_rate: Decimal = Field(
        default=Decimal("1"),
        gt=0,
        description="Fee rate floor in sat/vB applied to oracle estimates",
    )


class TransactionSettings(BaseModel):
    """Unsigned transaction parameters."""

    version: int = Field(
        default=1,
        ge=1,
        le=2,
        description="Transaction version",
    )
    locktime: int = Field(
        default=0,
        ge=0,
        description="Transaction locktime",
    )
    coin_name: str = Field(
        default="Bitcoin",
        description="Coin name sent to the device with SignTx",
    )


class SigningSettings(BaseModel):
    """Hardware wallet signing configuration."""

    bridge_url: str = Field(
        default="http://127.0.0.1:1646",
        description="KeepKey bridge REST endpoint",
    )
    session_timeout: float = Field(
        default=300.0,
        gt=0.0,
        description="Seconds to wait for any single device reply before failing the session",
    )
    cancel_timeout: float = Field(
        default=5.0,
        gt=0.0,
        description="Seconds allowed for the best-effort Cancel sent to the device",
    )
    max_pin_attempts: int = Field(
        default=3,
        ge=1,
        description="Wrong PIN entries tolerated within one signing session",
    )


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        description="Log level: TRACE, DEBUG, INFO, WARNING, ERROR",
    )

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {v}")
        return level


class KeepKeyVaultSettings(BaseSettings):
    """
    Main KeepKey Vault settings class.

    Loads configuration from multiple sources with the following priority:
    1. CLI arguments (passed to the constructor)
    2. Environment variables
    3. TOML config file (~/.keepkey-vault/config.toml)
    4. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    data_dir: Path | None = Field(
        default=None,
        description="Data directory (defaults to ~/.keepkey-vault)",
    )

    network_config: NetworkSettings = Field(default_factory=NetworkSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    selection: SelectionSettings = Field(default_factory=SelectionSettings)
    transaction: TransactionSettings = Field(default_factory=TransactionSettings)
    signing: SigningSettings = Field(default_factory=SigningSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """
        Priority (highest to lowest):
        1. init_settings (CLI arguments passed to constructor)
        2. env_settings (environment variables with __ delimiter)
        3. toml_settings (config.toml file)
        """
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    def get_data_dir(self) -> Path:
        """Get the data directory, using default if not set."""
        if self.data_dir is not None:
            return self.data_dir
        return get_default_data_dir()

    def get_mempool_url(self) -> str:
        """Get the backend URL, using the network default if not set."""
        if self.backend.mempool_url:
            return self.backend.mempool_url.rstrip("/")
        return DEFAULT_MEMPOOL_URLS[self.network_config.network.value]


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """
    Settings source that reads from a TOML config file.

    The file is $KEEPKEY_VAULT_CONFIG_FILE if set, otherwise config.toml in
    the data directory.
    """

    def __init__(self, settings_cls: type[BaseSettings]) -> None:
        super().__init__(settings_cls)
        self._config: dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        config_path = get_config_file_path()

        if not config_path.exists():
            logger.debug(f"Config file not found at {config_path}, using defaults")
            return

        try:
            with open(config_path, "rb") as f:
                self._config = tomllib.load(f)
            logger.info(f"Loaded config from {config_path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Invalid TOML syntax in config file {config_path}")
            logger.error(f"Error: {e}")
            logger.error("Tip: Make sure section headers like [signing] are uncommented")
            sys.exit(1)
        except OSError as e:
            logger.error(f"Failed to read config from {config_path}: {e}")
            sys.exit(1)

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        value = self._config.get(field_name)
        return value, field_name, value is not None

    def __call__(self) -> dict[str, Any]:
        return self._config


def get_config_path() -> Path:
    """Get the path to the config file."""
    return get_config_file_path()


def _format_toml_value(value: Any) -> str | None:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, str) and hasattr(value, "value"):  # str enums
        return f'"{value.value}"'
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, Decimal):
        return str(value)
    if value is None:
        return None
    return str(value)


def generate_config_template() -> str:
    """
    Generate a config file template with all settings commented out.

    Users see every available setting with its default and description and
    uncomment only what they want to change.
    """
    lines: list[str] = [
        "# KeepKey Vault Configuration",
        "#",
        "# This file contains all available settings with their default values.",
        "# Settings are commented out by default - uncomment to override.",
        "#",
        "# Priority (highest to lowest):",
        "#   1. CLI arguments",
        "#   2. Environment variables",
        "#   3. This config file",
        "#   4. Built-in defaults",
        "#",
        "# Environment variables use uppercase with double underscore for nesting:",
        "#   SIGNING__BRIDGE_URL=http://127.0.0.1:1646",
        "#   NETWORK_CONFIG__NETWORK=testnet",
        "#",
        "",
        "# Data directory for KeepKey Vault files",
        "# Defaults to ~/.keepkey-vault or $KEEPKEY_VAULT_DATA_DIR",
        "# data_dir = ",
        "",
    ]

    def add_section(title: str, model_cls: type[BaseModel], prefix: str) -> None:
        lines.append(f"# {'=' * 60}")
        lines.append(f"# {title}")
        lines.append(f"# {'=' * 60}")
        lines.append(f"[{prefix}]")
        lines.append("")

        for field_name, field_info in model_cls.model_fields.items():
            if field_info.description:
                lines.append(f"# {field_info.description}")

            value_str = _format_toml_value(field_info.default)
            if value_str is None:
                lines.append(f"# {field_name} = ")
            else:
                lines.append(f"# {field_name} = {value_str}")
            lines.append("")

    add_section("Network Settings", NetworkSettings, "network_config")
    add_section("Backend Settings", BackendSettings, "backend")
    add_section("Coin Selection Settings", SelectionSettings, "selection")
    add_section("Transaction Settings", TransactionSettings, "transaction")
    add_section("Signing Settings", SigningSettings, "signing")
    add_section("Logging Settings", LoggingSettings, "logging")

    return "\n".join(lines)


def ensure_config_file(data_dir: Path | None = None) -> Path:
    """
    Ensure the config file exists, creating a template if it doesn't.

    Args:
        data_dir: Optional data directory path. Uses default if not provided.

    Returns:
        Path to the config file.
    """
    if data_dir is None:
        data_dir = get_data_dir_path()

    config_path = data_dir / "config.toml"

    if not config_path.exists():
        logger.info(f"Creating config file template at {config_path}")
        data_dir.mkdir(parents=True, exist_ok=True)
        config_path.write_text(generate_config_template())

    return config_path


# Global settings instance (lazy-loaded)
_settings: KeepKeyVaultSettings | None = None


def get_settings(**overrides: Any) -> KeepKeyVaultSettings:
    """
    Get the KeepKey Vault settings instance.

    On first call, loads settings from all sources. Subsequent calls
    return the cached instance unless reset_settings() is called.

    Args:
        **overrides: Optional settings overrides (highest priority)

    Returns:
        KeepKeyVaultSettings instance
    """
    global _settings
    if _settings is None or overrides:
        _settings = KeepKeyVaultSettings(**overrides)
    return _settings


def reset_settings() -> None:
    """Reset the global settings instance (useful for testing)."""
    global _settings
    _settings = None


__all__ = [
    "KeepKeyVaultSettings",
    "NetworkSettings",
    "BackendSettings",
    "SelectionSettings",
    "TransactionSettings",
    "SigningSettings",
    "LoggingSettings",
    "get_settings",
    "reset_settings",
    "get_config_path",
    "generate_config_template",
    "ensure_config_file",
    "DEFAULT_MEMPOOL_URLS",
]
