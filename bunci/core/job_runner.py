"""Run a CI command inside a throwaway VM cloned from the build image.

The host environment is forwarded through a shell file written into the
shared workspace and sourced in the guest before the command runs. Host-only
variables are dropped and ``BUILDKITE_BUILD_PATH`` is pointed at the guest
copy of the workspace.
"""

from __future__ import annotations

import logging
import re
import shlex
from collections.abc import Callable, Mapping
from pathlib import Path

from bunci.bridge.ssh import ExecResult, OutputCallback, ShellFactory
from bunci.bridge.tart import VmStoreClient
from bunci.config import BunciSettings
from bunci.core.image_names import ImageNameCodec
from bunci.core.janitor import VmJanitor
from bunci.core.session import VmResources, VmSession

logger = logging.getLogger(__name__)

ENV_FILE_NAME = ".bunci-env.sh"

# Host-specific variables that would break the guest if forwarded.
ALWAYS_EXCLUDED = frozenset({"HOME", "TMPDIR", "LD_SUPPORT_TMPDIR", "PATH"})

_GUEST_PATH = 'export PATH="$HOME/.buildkite-agent/bin:/usr/local/bin:/opt/homebrew/bin:$PATH"\n'
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def forwarded_environment(
    environ: Mapping[str, str],
    guest_workspace: str,
    exclude: frozenset[str] | set[str] = frozenset(),
) -> dict[str, str]:
    """Select and rewrite the variables passed into the guest."""
    excluded = ALWAYS_EXCLUDED | set(exclude)
    forwarded = {
        name: value
        for name, value in environ.items()
        if value and name not in excluded and _IDENTIFIER.match(name)
    }
    if "BUILDKITE_BUILD_PATH" in forwarded:
        forwarded["BUILDKITE_BUILD_PATH"] = f"{guest_workspace}/build-workdir"
    return forwarded


def render_env_file(values: Mapping[str, str]) -> str:
    lines = [f"export {name}={shlex.quote(value)}\n" for name, value in sorted(values.items())]
    return "".join(lines) + _GUEST_PATH


class JobRunner:
    """Executes a command in an ephemeral clone of a build image.

    Parameters
    ----------
    store:
        Local VM store.
    shell_factory:
        Opens guest shells.
    codec:
        Names the ephemeral VM.
    janitor:
        Cleans up orphans before a new VM is created.
    settings:
        Resources, waits and forwarding exclusions.
    on_output:
        Receives the guest command's result (stdout/stderr) when it finishes.
    on_stream:
        Receives ``(stream, text)`` chunks of guest output while the command
        runs.
    """

    def __init__(
        self,
        store: VmStoreClient,
        shell_factory: ShellFactory,
        codec: ImageNameCodec,
        janitor: VmJanitor,
        settings: BunciSettings,
        *,
        on_output: Callable[[ExecResult], None] | None = None,
        on_stream: OutputCallback | None = None,
        sleep=None,
    ) -> None:
        self._store = store
        self._shell_factory = shell_factory
        self._codec = codec
        self._janitor = janitor
        self._settings = settings
        self._on_output = on_output
        self._on_stream = on_stream
        self._sleep = sleep

    def run(
        self,
        image_name: str,
        command: str,
        workspace: Path,
        environ: Mapping[str, str] | None = None,
    ) -> int:
        """Run *command* from the guest workspace and return its exit code.

        Raises
        ------
        VmSessionError
            If the VM could not be created, booted or reached.
        """
        self._janitor.cleanup_orphans()
        workspace = Path(workspace)
        guest_workspace = self._settings.guest_workspace
        env_file = workspace / ENV_FILE_NAME
        env_file.write_text(
            render_env_file(
                forwarded_environment(
                    environ or {},
                    guest_workspace,
                    set(self._settings.forward_env_exclude),
                )
            ),
            encoding="utf-8",
        )

        vm_name = self._codec.ephemeral_name()
        logger.info("Running job in %s (from %s).", vm_name, image_name)
        try:
            with VmSession(
                self._store,
                self._shell_factory,
                self._settings,
                vm_name,
                clone_from=image_name,
                resources=VmResources(
                    cpu=self._settings.vm_cpu, memory_mb=self._settings.vm_memory_mb
                ),
                shared_dir=workspace,
                ephemeral=True,
                sleep=self._sleep,
            ) as session:
                session.wait_until_ready()
                inner = (
                    f"cd {shlex.quote(guest_workspace)} && "
                    f"source {shlex.quote(guest_workspace + '/' + ENV_FILE_NAME)} && "
                    f"{command}"
                )
                result = session.exec(
                    f"bash -l -c {shlex.quote(inner)}", on_data=self._on_stream
                )
        finally:
            env_file.unlink(missing_ok=True)

        if self._on_output is not None:
            self._on_output(result)
        logger.info("Job exited %d.", result.exit_code)
        return result.exit_code
