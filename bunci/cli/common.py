"""Shared CLI plumbing: consoles, logging, settings and error reporting."""

from __future__ import annotations

import logging
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from bunci.bridge.tart import TartError
from bunci.config import BunciSettings
from bunci.core.control_plane import ControlPlane
from bunci.core.errors import BunciError

console = Console()
err_console = Console(stderr=True)


def setup_logging(level: str) -> None:
    """Route all library logging through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def load_settings() -> BunciSettings:
    return BunciSettings()


def build_control_plane(settings: BunciSettings, **kwargs) -> ControlPlane:
    return ControlPlane(settings, **kwargs)


def fail(exc: BunciError | TartError) -> NoReturn:
    """Print a fatal error with its step and remedy, then exit 1."""
    if isinstance(exc, BunciError):
        err_console.print(f"[bold red]Failed:[/bold red] {exc.args[0]}")
        if exc.step:
            err_console.print(f"  [dim]step:[/dim] {exc.step}")
        if exc.remedy:
            err_console.print(f"  [dim]next:[/dim] {exc.remedy}")
    else:
        err_console.print(f"[bold red]tart failed:[/bold red] {exc}")
    raise typer.Exit(code=1)
