"""
Common CLI components for KeepKey Vault.

Architecture:
- Resolver functions: Take CLI args + settings and return resolved values
- Setup functions: Common initialization (logging, settings)

The CLI parameter definitions live in each CLI module; the resolution logic is
centralized here so kkcore stays free of the typer dependency.

Usage:
    from kkcore.cli_common import resolve_backend_settings, setup_cli

    @app.command()
    def my_command(
        network: Annotated[str | None, typer.Option("--network")] = None,
        mempool_url: Annotated[str | None, typer.Option("--mempool-url")] = None,
    ):
        settings = setup_cli(log_level)
        backend = resolve_backend_settings(settings, network=network, mempool_url=mempool_url)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass

from loguru import logger

from kkcore.models import NetworkType
from kkcore.settings import DEFAULT_MEMPOOL_URLS, KeepKeyVaultSettings, get_settings, reset_settings


@dataclass
class ResolvedBackendSettings:
    """Resolved backend settings ready for use."""

    network: NetworkType
    mempool_url: str
    http_timeout: float
    gap_limit: int


@dataclass
class ResolvedSigningSettings:
    """Resolved signing settings ready for use."""

    bridge_url: str
    session_timeout: float
    cancel_timeout: float
    max_pin_attempts: int


def setup_logging(level: str = "INFO") -> None:
    """
    Configure loguru logging with consistent format.

    Args:
        level: Log level (TRACE, DEBUG, INFO, WARNING, ERROR)
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=level.upper(),
        colorize=True,
    )


def setup_cli(log_level: str | None = None) -> KeepKeyVaultSettings:
    """
    Common CLI setup: reset settings cache, configure logging, return settings.

    Log level priority: CLI argument > settings (env/config) > default "INFO"

    Args:
        log_level: Log level override from CLI (None means use settings)

    Returns:
        KeepKeyVaultSettings instance with all sources loaded
    """
    reset_settings()
    settings = get_settings()

    effective_log_level = log_level if log_level is not None else settings.logging.level
    setup_logging(effective_log_level)

    return settings


def resolve_backend_settings(
    settings: KeepKeyVaultSettings,
    *,
    network: NetworkType | str | None = None,
    mempool_url: str | None = None,
    gap_limit: int | None = None,
) -> ResolvedBackendSettings:
    """
    Resolve backend settings with priority: CLI > Settings (env + config) > Defaults.

    When the network is overridden on the command line and no URL is given
    anywhere, the mempool.space default for that network is used.
    """
    if network is not None:
        resolved_network = NetworkType(network)
    else:
        resolved_network = settings.network_config.network

    if mempool_url is not None:
        resolved_url = mempool_url.rstrip("/")
    elif settings.backend.mempool_url:
        resolved_url = settings.backend.mempool_url.rstrip("/")
    else:
        resolved_url = DEFAULT_MEMPOOL_URLS[resolved_network.value]

    return ResolvedBackendSettings(
        network=resolved_network,
        mempool_url=resolved_url,
        http_timeout=settings.backend.http_timeout,
        gap_limit=gap_limit if gap_limit is not None else settings.backend.gap_limit,
    )


def resolve_signing_settings(
    settings: KeepKeyVaultSettings,
    *,
    bridge_url: str | None = None,
    session_timeout: float | None = None,
) -> ResolvedSigningSettings:
    """Resolve signing settings with priority: CLI > Settings > Defaults."""
    return ResolvedSigningSettings(
        bridge_url=(bridge_url if bridge_url is not None else settings.signing.bridge_url).rstrip(
            "/"
        ),
        session_timeout=(
            session_timeout if session_timeout is not None else settings.signing.session_timeout
        ),
        cancel_timeout=settings.signing.cancel_timeout,
        max_pin_attempts=settings.signing.max_pin_attempts,
    )


def log_resolved_settings(
    backend: ResolvedBackendSettings,
    signing: ResolvedSigningSettings | None = None,
) -> None:
    """Log resolved settings for debugging/transparency."""
    logger.info(f"Network: {backend.network.value}")
    logger.info(f"Backend: {backend.mempool_url}")
    if signing:
        logger.info(f"Signing bridge: {signing.bridge_url}")
