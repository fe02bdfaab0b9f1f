"""``bunci versions`` — show the resolved version tuple and derived names."""

from __future__ import annotations

from typing import Optional

import typer
from rich.table import Table

from bunci.cli import common
from bunci.models.versioning import MacOSRelease


def versions_cmd(
    release: Optional[MacOSRelease] = typer.Option(
        None, "--release", "-r", help="macOS release to resolve for."
    ),
) -> None:
    """Print the target tuple, local image name and registry URL."""
    settings = common.load_settings()
    plane = common.build_control_plane(settings)
    target = plane.resolver.resolve(release=release)

    table = Table(title="Resolved versions", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("macOS release", target.release.value)
    table.add_row("Architecture", target.arch.value)
    table.add_row("Bun version", target.project_version)
    table.add_row("Bootstrap version", target.bootstrap_version)
    table.add_row("Local image", plane.codec.encode(target))
    table.add_row("Remote image", plane.codec.remote_url(target))
    table.add_row("Base image", settings.base_image_for(target.release))
    common.console.print(table)
