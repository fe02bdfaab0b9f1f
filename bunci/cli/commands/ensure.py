"""``bunci ensure-image`` — make sure the build image for this checkout exists.

Resolves the target version tuple, cleans up the host, decides between the
local, remote and build tiers, and executes the decision. The final local
image name is printed on success.
"""

from __future__ import annotations

from typing import Optional

import typer
from rich.panel import Panel

from bunci.bridge.tart import TartError
from bunci.cli import common
from bunci.core.errors import BunciError
from bunci.models.decisions import DecisionFlags, describe_decision
from bunci.models.versioning import MacOSRelease


def ensure_image_cmd(
    release: Optional[MacOSRelease] = typer.Option(
        None,
        "--release",
        "-r",
        help="macOS release to target (defaults to BUNCI_MACOS_RELEASE).",
    ),
    force_refresh: bool = typer.Option(
        False,
        "--force-refresh",
        help="Ignore local images and go straight to the registry tier.",
    ),
    force_remote_refresh: bool = typer.Option(
        False,
        "--force-remote-refresh",
        help="Re-pull from the registry even if the image is cached locally.",
    ),
    local_dev: bool = typer.Option(
        False,
        "--local-dev",
        help="Never consult the registry.",
    ),
    cleanup_only: bool = typer.Option(
        False,
        "--cleanup-only",
        help="Only clean up orphaned VMs and disk pressure, then exit.",
    ),
    force_rebuild_all: bool = typer.Option(
        False,
        "--force-rebuild-all",
        help="Delete every local image for this release/arch and build from scratch.",
    ),
    push: Optional[bool] = typer.Option(
        None,
        "--push/--no-push",
        help="Push a freshly built image (defaults to BUNCI_PUSH_IMAGES).",
    ),
) -> None:
    """Ensure the versioned build image exists locally and print its name."""
    settings = common.load_settings()
    plane = common.build_control_plane(settings)
    target = plane.resolver.resolve(release=release)

    common.console.print(
        Panel(
            f"[bold]Release:[/bold] macOS {target.release.value}  "
            f"[bold]Arch:[/bold] {target.arch.value}\n"
            f"[bold]Bun:[/bold] {target.project_version}  "
            f"[bold]Bootstrap:[/bold] {target.bootstrap_version}\n"
            f"[bold]Image:[/bold] {plane.codec.encode(target)}",
            title="Target",
            border_style="cyan",
        )
    )

    if cleanup_only:
        plane.provisioner.housekeeping(target)
        common.console.print("[green]Cleanup complete.[/green]")
        return

    flags = DecisionFlags(
        force_refresh=force_refresh,
        force_remote_refresh=force_remote_refresh,
        local_dev_only=local_dev,
    )
    try:
        result = plane.provisioner.ensure(
            target, flags, force_rebuild_all=force_rebuild_all, push=push
        )
    except (BunciError, TartError) as exc:
        common.fail(exc)

    common.console.print(f"[bold]Decision:[/bold] {describe_decision(result.decision)}")
    common.console.print(f"[bold green]Image ready:[/bold green] {result.image_name}")
