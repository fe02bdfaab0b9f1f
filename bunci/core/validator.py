"""Image validator — does an image actually carry the build toolchain?

A candidate image is never booted directly: it is cloned into a throwaway
session VM, probed over SSH and discarded. Deleting a candidate that fails is
left to the caller.
"""

from __future__ import annotations

import logging
import shlex
from typing import Protocol

from bunci.bridge.ssh import ExecResult, RemoteShellError, ShellFactory
from bunci.bridge.tart import VmStoreClient
from bunci.config import BunciSettings
from bunci.core.errors import VmSessionError
from bunci.core.image_names import ImageNameCodec
from bunci.core.session import VmResources, VmSession
from bunci.models.validation import ProbeResult, ValidationResult

logger = logging.getLogger(__name__)

REQUIRED_TOOLS: tuple[str, ...] = ("bun", "cargo", "cmake", "node", "clang", "ninja")

SDK_PROBE = "xcrun --sdk macosx --show-sdk-path && command -v codesign"


class _Executor(Protocol):
    def exec(self, command: str, *, timeout: float | None = None) -> ExecResult: ...


def _login(command: str) -> str:
    # Tools live under paths only a login shell puts on PATH.
    return f"bash -l -c {shlex.quote(command)}"


class ImageValidator:
    """Probes images for the required tools.

    Parameters
    ----------
    store:
        Local VM store; validation clones go here.
    shell_factory:
        Opens guest shells.
    codec:
        Names the throwaway validation VMs.
    settings:
        Wait bounds and guest resources.
    """

    def __init__(
        self,
        store: VmStoreClient,
        shell_factory: ShellFactory,
        codec: ImageNameCodec,
        settings: BunciSettings,
        *,
        tools: tuple[str, ...] = REQUIRED_TOOLS,
        sleep=None,
    ) -> None:
        self._store = store
        self._shell_factory = shell_factory
        self._codec = codec
        self._settings = settings
        self._tools = tools
        self._sleep = sleep

    def run_probes(self, shell: _Executor) -> ValidationResult:
        """Run every probe through *shell* (a session or a raw shell)."""
        probes: list[ProbeResult] = []
        for tool in self._tools:
            probes.append(self._probe(shell, tool, f"command -v {tool}"))
        probes.append(self._probe(shell, "macos-sdk", SDK_PROBE))

        missing = [p.name for p in probes if not p.passed]
        if missing:
            logger.warning("Missing from image: %s", ", ".join(missing))
            return ValidationResult(
                passed=False,
                missing_tools=missing,
                probes=probes,
                reason=f"missing {', '.join(missing)}",
            )
        return ValidationResult(passed=True, probes=probes)

    def _probe(self, shell: _Executor, name: str, command: str) -> ProbeResult:
        try:
            result = shell.exec(_login(command), timeout=self._settings.shell_connect_timeout * 3)
        except (RemoteShellError, VmSessionError) as exc:
            return ProbeResult(name=name, passed=False, output=str(exc))
        output = (result.stdout or result.stderr).strip()
        logger.debug("Probe %s: exit %d %s", name, result.exit_code, output)
        return ProbeResult(name=name, passed=result.ok, output=output)

    def validate(self, image_name: str) -> ValidationResult:
        """Clone *image_name*, boot the clone and probe it."""
        vm_name = self._codec.ephemeral_name()
        logger.info("Validating %s in %s.", image_name, vm_name)
        session = VmSession(
            self._store,
            self._shell_factory,
            self._settings,
            vm_name,
            clone_from=image_name,
            resources=VmResources(
                cpu=self._settings.vm_cpu, memory_mb=self._settings.vm_memory_mb
            ),
            ephemeral=True,
            sleep=self._sleep,
        )
        try:
            with session:
                session.wait_until_ready()
                result = self.run_probes(session)
        except VmSessionError as exc:
            logger.warning("Validation of %s could not run: %s", image_name, exc)
            return ValidationResult(passed=False, reason=str(exc))

        if result.passed:
            logger.info("Image %s passed validation.", image_name)
        return result
