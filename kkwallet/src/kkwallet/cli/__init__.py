"""
KeepKey Vault wallet CLI package.

Commands are organized into submodules and registered via ``@app.command()``
decorators that reference the ``app`` Typer instance defined here.
"""

from __future__ import annotations

import typer

app = typer.Typer(
    name="kk-wallet",
    help="KeepKey Vault: send Bitcoin from a KeepKey",
    add_completion=False,
)


def main() -> None:
    """Entry point for the ``kk-wallet`` console script."""
    app()


# ---------------------------------------------------------------------------
# Import submodules to register their ``@app.command()`` decorated functions.
# These imports MUST come after ``app`` is defined above.
# ---------------------------------------------------------------------------
from kkwallet.cli import config, send, wallet  # noqa: E402, F401

if __name__ == "__main__":
    main()
