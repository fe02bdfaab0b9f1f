"""``bunci images`` — list local versioned images and how they match."""

from __future__ import annotations

from typing import Optional

import typer
from rich.table import Table

from bunci.bridge.tart import TartError
from bunci.cli import common
from bunci.models.versioning import MacOSRelease


def images_cmd(
    release: Optional[MacOSRelease] = typer.Option(
        None, "--release", "-r", help="macOS release to classify against."
    ),
) -> None:
    """Show every local versioned image with its match against the target."""
    settings = common.load_settings()
    plane = common.build_control_plane(settings)
    target = plane.resolver.resolve(release=release)

    try:
        records = plane.index.list_all()
    except TartError as exc:
        common.fail(exc)

    if not records:
        common.console.print("[dim]No versioned images on this host.[/dim]")
        return

    classification = plane.index.classify(target, records)
    usable = {r.name for r in classification.usable}

    table = Table(title=f"Local images (target {plane.codec.encode(target)})")
    table.add_column("Name", style="cyan")
    table.add_column("Release")
    table.add_column("Arch")
    table.add_column("Bun", style="green")
    table.add_column("Bootstrap")
    table.add_column("Size", justify="right")
    table.add_column("Match", justify="center")

    for record in sorted(records, key=lambda r: r.name):
        t = record.version_tuple
        if classification.exact and record.name == classification.exact.name:
            match = "[bold green]exact[/bold green]"
        elif classification.compatible and record.name == classification.compatible.name:
            match = "[yellow]compatible[/yellow]"
        elif record.name in usable:
            match = "[dim]usable[/dim]"
        else:
            match = "-"
        size = f"{record.size_bytes / 1024 ** 3:.0f} GB" if record.size_bytes else "?"
        table.add_row(
            record.name, t.release.value, t.arch.value,
            t.project_version, t.bootstrap_version, size, match,
        )
    common.console.print(table)
