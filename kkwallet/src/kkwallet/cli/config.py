"""
Configuration commands.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from kkcore.paths import DATA_DIR_ENV
from kkcore.settings import ensure_config_file
from kkwallet.cli import app


@app.command()
def config_init(
    data_dir: Annotated[
        Path | None,
        typer.Option(
            "--data-dir",
            "-d",
            envvar=DATA_DIR_ENV,
            help="Data directory for KeepKey Vault files",
        ),
    ] = None,
) -> None:
    """Initialize the config file with default settings."""
    config_path = ensure_config_file(data_dir)
    typer.echo(f"Config file created at: {config_path}")
    typer.echo("\nAll settings are commented out by default.")
    typer.echo("Edit the file to customize your configuration.")
    typer.echo("\nPriority (highest to lowest):")
    typer.echo("  1. CLI arguments")
    typer.echo("  2. Environment variables")
    typer.echo("  3. Config file")
    typer.echo("  4. Built-in defaults")
