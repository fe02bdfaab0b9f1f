"""bunci CLI — Typer-based command-line interface.

Provides the ``bunci`` command with subcommands for ensuring the build image,
inspecting versions and local images, cleaning up the host, running jobs in
throwaway VMs and driving the build artifact cache.

All output uses Rich for formatted terminal display.
"""
