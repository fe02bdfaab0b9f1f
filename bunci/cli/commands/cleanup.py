"""``bunci cleanup`` — remove orphaned session VMs, optionally free disk space."""

from __future__ import annotations

import typer

from bunci.bridge.tart import TartError
from bunci.cli import common


def cleanup_cmd(
    emergency: bool = typer.Option(
        False,
        "--emergency",
        help="Also delete images from older bootstrap versions, regardless of disk usage.",
    ),
) -> None:
    """Delete orphaned session VMs left behind by interrupted jobs."""
    settings = common.load_settings()
    plane = common.build_control_plane(settings)

    removed = plane.janitor.cleanup_orphans()
    common.console.print(f"Removed {len(removed)} orphaned VM(s).")
    for name in removed:
        common.console.print(f"  [dim]-[/dim] {name}")

    if emergency:
        keep = plane.resolver.bootstrap_version()
        try:
            healthy = plane.janitor.relieve_disk_pressure(keep_bootstrap=keep, force=True)
        except TartError as exc:
            common.fail(exc)
        if healthy:
            common.console.print("[green]Disk usage is under the threshold.[/green]")
        else:
            common.console.print("[yellow]Disk usage is still above the threshold.[/yellow]")
