"""Main Typer application — imports and registers all CLI commands.

Entry point: ``bunci`` (configured via pyproject.toml project.scripts).
"""

from __future__ import annotations

from typing import Optional

import typer

from bunci import __version__
from bunci.cli import common
from bunci.cli.commands.cache import cache_app
from bunci.cli.commands.cleanup import cleanup_cmd
from bunci.cli.commands.ensure import ensure_image_cmd
from bunci.cli.commands.images import images_cmd
from bunci.cli.commands.run import run_cmd
from bunci.cli.commands.versions import versions_cmd

app = typer.Typer(
    name="bunci",
    help="bunci: macOS build image lifecycle and build cache for Bun CI.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (defaults to BUNCI_LOG_LEVEL)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging before any subcommand runs."""
    level = "DEBUG" if verbose else (log_level or common.load_settings().log_level)
    common.setup_logging(level)


# Register subcommands
app.command(name="ensure-image", help="Ensure the versioned build image exists.")(ensure_image_cmd)
app.command(name="versions", help="Show resolved versions and image names.")(versions_cmd)
app.command(name="images", help="List local versioned images.")(images_cmd)
app.command(name="cleanup", help="Remove orphaned VMs and relieve disk pressure.")(cleanup_cmd)
app.command(name="run", help="Run a command in a throwaway build VM.")(run_cmd)
app.add_typer(cache_app, name="cache")


@app.command(name="version", help="Print the bunci version.")
def version_cmd() -> None:
    typer.echo(__version__)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
