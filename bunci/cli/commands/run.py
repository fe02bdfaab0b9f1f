"""``bunci run COMMAND`` — run a CI command in a throwaway build VM.

Without ``--image`` the build image is ensured first, exactly as
``ensure-image`` would. The guest command's exit code becomes this
command's exit code.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from bunci.bridge.tart import TartError
from bunci.cli import common
from bunci.config import host_environment
from bunci.core.errors import BunciError


def _echo_stream(stream: str, text: str) -> None:
    typer.echo(text, nl=False, err=stream == "stderr")


def run_cmd(
    command: str = typer.Argument(..., help="Shell command to run inside the VM."),
    workspace: Optional[Path] = typer.Option(
        None,
        "--workspace",
        "-w",
        help="Host directory shared into the VM (defaults to BUNCI_WORKSPACE).",
    ),
    image: Optional[str] = typer.Option(
        None,
        "--image",
        help="Local image to clone; skips ensuring the image.",
    ),
) -> None:
    """Run COMMAND from the shared workspace inside an ephemeral VM."""
    settings = common.load_settings()
    plane = common.build_control_plane(settings, on_stream=_echo_stream)
    workspace = (workspace or settings.workspace).resolve()

    try:
        if image is None:
            target = plane.resolver.resolve()
            image = plane.provisioner.ensure(target).image_name
        exit_code = plane.job_runner.run(image, command, workspace, host_environment())
    except (BunciError, TartError) as exc:
        common.fail(exc)

    if exit_code != 0:
        common.err_console.print(f"[red]Command exited {exit_code}.[/red]")
    raise typer.Exit(code=exit_code)
