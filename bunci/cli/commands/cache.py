"""``bunci cache`` — compute keys for, restore and save build artifacts."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from bunci.cli import common
from bunci.core.artifact_cache import ArtifactCacheError
from bunci.models.artifacts import BuildType

cache_app = typer.Typer(
    name="cache",
    help="Source-hash keyed build artifact cache.",
    no_args_is_help=True,
)


def _key(plane, build_type: BuildType, source_root: Path | None, revision: str | None) -> str:
    root = source_root or plane.settings.workspace
    return plane.artifact_cache.source_hash(
        build_type, root, revision or plane.resolver.revision()
    )


@cache_app.command(name="key")
def key_cmd(
    build_type: BuildType = typer.Argument(..., help="Build type (cpp or zig)."),
    source_root: Optional[Path] = typer.Option(None, "--source-root", help="Tree to hash."),
    revision: Optional[str] = typer.Option(None, "--revision", help="Source revision."),
) -> None:
    """Print the cache key for the current sources."""
    settings = common.load_settings()
    plane = common.build_control_plane(settings)
    typer.echo(_key(plane, build_type, source_root, revision))


@cache_app.command(name="lookup")
def lookup_cmd(
    build_type: BuildType = typer.Argument(..., help="Build type (cpp or zig)."),
    dest: Path = typer.Option(..., "--dest", "-d", help="Where to restore artifacts."),
    key: Optional[str] = typer.Option(None, "--key", help="Explicit cache key."),
    source_root: Optional[Path] = typer.Option(None, "--source-root", help="Tree to hash."),
    revision: Optional[str] = typer.Option(None, "--revision", help="Source revision."),
    require_hit: bool = typer.Option(
        False, "--require-hit", help="Exit 1 on a cache miss."
    ),
) -> None:
    """Restore cached artifacts into DEST if the key is present."""
    settings = common.load_settings()
    plane = common.build_control_plane(settings)
    cache_key = key or _key(plane, build_type, source_root, revision)

    try:
        restored = plane.artifact_cache.lookup(build_type, cache_key, dest)
    except ArtifactCacheError as exc:
        common.err_console.print(f"[bold red]Cache lookup failed:[/bold red] {exc}")
        raise typer.Exit(code=1)
    if restored is None:
        common.console.print(f"[yellow]miss[/yellow] {build_type.value}-{cache_key}")
        if require_hit:
            raise typer.Exit(code=1)
        return
    common.console.print(f"[green]hit[/green] {build_type.value}-{cache_key}")
    for path in restored:
        common.console.print(f"  {path}")


@cache_app.command(name="store")
def store_cmd(
    build_type: BuildType = typer.Argument(..., help="Build type (cpp or zig)."),
    artifacts: list[Path] = typer.Argument(..., help="Artifact files to store."),
    key: Optional[str] = typer.Option(None, "--key", help="Explicit cache key."),
    source_root: Optional[Path] = typer.Option(None, "--source-root", help="Tree to hash."),
    revision: Optional[str] = typer.Option(None, "--revision", help="Source revision."),
) -> None:
    """Save ARTIFACTS under the key for the current sources."""
    settings = common.load_settings()
    plane = common.build_control_plane(settings)
    rev = revision or plane.resolver.revision()
    cache_key = key or _key(plane, build_type, source_root, rev)

    try:
        entry = plane.artifact_cache.store(build_type, cache_key, artifacts, rev)
    except ArtifactCacheError as exc:
        common.err_console.print(f"[bold red]Cache store failed:[/bold red] {exc}")
        raise typer.Exit(code=1)
    common.console.print(
        f"[green]stored[/green] {entry.build_type.value}-{entry.key} "
        f"({len(entry.artifact_paths)} file(s))"
    )
