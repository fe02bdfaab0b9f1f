"""VM session — one scoped, always-cleaned-up guest VM.

Lifecycle
---------
1. Acquire: optional clone, optional cpu/memory resize, headless boot with an
   optional shared workspace directory.
2. Cleanup is armed immediately after the clone, before anything that can
   fail: the ``with`` block, SIGINT and SIGTERM all lead to ``shutdown()``,
   which runs exactly once. A signal that arrives while teardown is running
   is held until teardown completes, then re-raised.
3. Shutdown: ``sudo shutdown -h now`` in the guest, bounded grace wait,
   forced ``stop``, terminate the host process, delete if ephemeral. The VM's
   existence is re-checked before stop and delete.

If the hypervisor rejects the shared directory, the boot is retried once with
the resolved host path and then, when degraded boots are allowed, once
without a shared directory.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Callable, Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from bunci.bridge.ssh import (
    ExecResult,
    OutputCallback,
    RemoteShell,
    RemoteShellError,
    ShellFactory,
)
from bunci.bridge.tart import (
    RunOptions,
    SharedDirectoryError,
    TartError,
    VmHandle,
    VmStoreClient,
)
from bunci.config import BunciSettings
from bunci.core.errors import RetryCancelledError, RetryExhaustedError, VmSessionError
from bunci.core.retry import retry_with_backoff

logger = logging.getLogger(__name__)

_HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class VmResources(BaseModel):
    model_config = ConfigDict(frozen=True)

    cpu: int | None = None
    memory_mb: int | None = None


def mount_candidates(shared_dir: Path | None, *, allow_degraded: bool) -> list[Path | None]:
    """Shared directories to try in order; each distinct path appears once."""
    if shared_dir is None:
        return [None]
    candidates: list[Path | None] = [shared_dir]
    resolved = Path(os.path.realpath(shared_dir))
    if resolved != shared_dir:
        candidates.append(resolved)
    if allow_degraded:
        candidates.append(None)
    return candidates


class VmSession:
    """Context manager owning a single guest VM.

    Parameters
    ----------
    store:
        Local VM store.
    shell_factory:
        Opens a ``RemoteShell`` to a guest address.
    settings:
        Wait bounds, guest credentials and the shared directory tag.
    vm_name:
        Name of the VM to boot (and create, when *clone_from* is given).
    clone_from:
        Source image; ``None`` boots *vm_name* in place.
    resources:
        cpu/memory applied with ``tart set`` before boot.
    shared_dir:
        Host directory exposed at ``settings.guest_workspace``.
    ephemeral:
        Delete the VM on shutdown.
    allow_degraded_mount:
        Boot without the shared directory if every mount attempt fails.
    """

    def __init__(
        self,
        store: VmStoreClient,
        shell_factory: ShellFactory,
        settings: BunciSettings,
        vm_name: str,
        *,
        clone_from: str | None = None,
        resources: VmResources | None = None,
        shared_dir: Path | None = None,
        ephemeral: bool = True,
        allow_degraded_mount: bool = False,
        install_signal_handlers: bool = True,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.name = vm_name
        self.clone_from = clone_from
        self.resources = resources
        self.shared_dir = shared_dir
        self.ephemeral = ephemeral
        self._shell_factory = shell_factory
        self._allow_degraded = allow_degraded_mount
        self._install_handlers = install_signal_handlers
        self._sleep = sleep

        self.cancel_event = threading.Event()
        self.mounted_dir: Path | None = None
        self.ip: str | None = None
        self._handle: VmHandle | None = None
        self._shell: RemoteShell | None = None
        self._armed = False
        self._closed = False
        self._previous_handlers: dict[int, object] = {}
        self._deferred_signal: int | None = None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> "VmSession":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    @property
    def mounted(self) -> bool:
        """True when the guest can see the shared workspace."""
        return self.mounted_dir is not None

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def acquire(self) -> None:
        """Clone (optionally), resize and boot the VM."""
        if self.clone_from is not None:
            logger.info("Cloning %s -> %s.", self.clone_from, self.name)
            try:
                self.store.clone(self.clone_from, self.name)
            except TartError as exc:
                raise VmSessionError(
                    f"Could not clone {self.clone_from}: {exc}",
                    step="clone",
                    remedy=f"tart list; tart delete {self.name}",
                ) from exc
        self._arm()
        try:
            if self.resources is not None:
                self.store.set(
                    self.name,
                    cpu=self.resources.cpu,
                    memory_mb=self.resources.memory_mb,
                )
            self._boot()
        except BaseException:
            self.shutdown()
            raise

    def _boot(self) -> None:
        last_error: TartError | None = None
        for candidate in mount_candidates(self.shared_dir, allow_degraded=self._allow_degraded):
            options = RunOptions(
                cpu=self.resources.cpu if self.resources else None,
                memory_mb=self.resources.memory_mb if self.resources else None,
                shared_dir=candidate,
                shared_dir_tag=self.settings.shared_dir_tag,
            )
            try:
                self._handle = self.store.run(self.name, options)
            except SharedDirectoryError as exc:
                logger.warning("Shared directory %s rejected: %s", candidate, exc.stderr)
                last_error = exc
                continue
            except TartError as exc:
                raise VmSessionError(
                    f"VM {self.name} failed to start: {exc}",
                    step="run",
                    remedy=f"tart run {self.name} --no-graphics",
                ) from exc
            self.mounted_dir = candidate
            if candidate is None and self.shared_dir is not None:
                logger.warning(
                    "Booted %s without a shared directory; files will be copied over SSH.",
                    self.name,
                )
            logger.info("Booted %s.", self.name)
            return
        raise VmSessionError(
            f"VM {self.name} could not mount {self.shared_dir}: {last_error}",
            step="run",
            remedy="check the workspace path is on a local volume",
        )

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _arm(self) -> None:
        self._armed = True
        if not self._install_handlers:
            return
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread; signal cleanup not installed.")
            return
        for signum in _HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._on_signal)

    def _disarm(self) -> None:
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous)
        self._previous_handlers.clear()

    def _on_signal(self, signum, frame) -> None:
        self.cancel_event.set()
        if self._deferred_signal is None:
            self._deferred_signal = signum
        name = signal.Signals(signum).name
        if self._closed:
            logger.warning("Received %s while tearing down %s; finishing first.", name, self.name)
            return
        logger.warning("Received %s; tearing down %s.", name, self.name)
        self.shutdown()

    def _raise_deferred_signal(self) -> None:
        signum, self._deferred_signal = self._deferred_signal, None
        if signum is None:
            return
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        raise SystemExit(128 + signum)

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _check_alive(self) -> None:
        if self._handle is not None and self._handle.poll() is not None:
            raise VmSessionError(
                f"VM {self.name} exited during startup",
                step="run",
                remedy=f"tart run {self.name} --no-graphics",
            )

    def wait_for_network(
        self,
        max_attempts: int | None = None,
        interval: float | None = None,
    ) -> str:
        """Poll until the guest reports an IP address."""

        def _attempt() -> str | None:
            self._check_alive()
            return self.store.ip(self.name)

        try:
            self.ip = retry_with_backoff(
                _attempt,
                max_attempts or self.settings.network_attempts,
                self.settings.network_interval if interval is None else interval,
                description=f"network for {self.name}",
                cancel_event=self.cancel_event,
                sleep=self._sleep,
            )
        except (RetryExhaustedError, RetryCancelledError) as exc:
            raise VmSessionError(
                f"VM {self.name} never got an IP address",
                step="wait_for_network",
                remedy=f"tart ip {self.name}",
            ) from exc
        logger.info("%s is at %s.", self.name, self.ip)
        return self.ip

    def wait_for_shell(
        self,
        max_attempts: int | None = None,
        interval: float | None = None,
    ) -> RemoteShell:
        """Poll until an SSH shell answers."""
        ip = self.ip or self.wait_for_network()

        def _attempt() -> RemoteShell | None:
            self._check_alive()
            shell = self._shell_factory(ip)
            if shell.exec("echo ready", timeout=self.settings.shell_connect_timeout).ok:
                return shell
            shell.close()
            return None

        try:
            self._shell = retry_with_backoff(
                _attempt,
                max_attempts or self.settings.shell_attempts,
                self.settings.shell_interval if interval is None else interval,
                description=f"ssh to {self.name}",
                cancel_event=self.cancel_event,
                retry_on=(RemoteShellError, OSError),
                sleep=self._sleep,
            )
        except (RetryExhaustedError, RetryCancelledError) as exc:
            raise VmSessionError(
                f"SSH to {self.settings.vm_user}@{ip} never became available",
                step="wait_for_shell",
                remedy=f"ssh {self.settings.vm_user}@{ip}",
            ) from exc
        return self._shell

    def wait_until_ready(self) -> RemoteShell:
        self.wait_for_network()
        return self.wait_for_shell()

    # ------------------------------------------------------------------
    # Guest operations
    # ------------------------------------------------------------------

    @property
    def shell(self) -> RemoteShell:
        if self._shell is None or self._closed:
            raise VmSessionError(f"No shell open to {self.name}", step="exec")
        return self._shell

    def exec(
        self,
        command: str,
        *,
        timeout: float | None = None,
        on_data: OutputCallback | None = None,
    ) -> ExecResult:
        try:
            return self.shell.exec(command, timeout=timeout, on_data=on_data)
        except RemoteShellError as exc:
            raise VmSessionError(str(exc), step="exec") from exc

    def put_files(self, files: Mapping[str, Path], remote_dir: str) -> None:
        try:
            self.shell.put_archive(files, remote_dir)
        except RemoteShellError as exc:
            raise VmSessionError(
                str(exc), step="upload", remedy=f"ssh {self.settings.vm_user}@{self.ip}"
            ) from exc

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _vm_exists(self) -> bool:
        try:
            return any(entry.name == self.name for entry in self.store.list())
        except TartError as exc:
            logger.debug("Could not list VMs, assuming %s exists: %s", self.name, exc)
            return True

    def _graceful_shutdown(self) -> None:
        if self._shell is None:
            return
        try:
            self._shell.exec("sudo shutdown -h now", timeout=self.settings.shell_connect_timeout)
        except RemoteShellError as exc:
            logger.debug("Guest shutdown command failed on %s: %s", self.name, exc)
        finally:
            self._shell.close()
            self._shell = None

        if self._handle is None:
            return
        grace = self.settings.shutdown_grace_seconds
        try:
            retry_with_backoff(
                lambda: self._handle.poll() is not None,
                max(1, int(grace)),
                1.0,
                description=f"graceful shutdown of {self.name}",
                sleep=self._sleep,
            )
        except RetryExhaustedError:
            logger.info("%s still running after %.0fs grace period.", self.name, grace)

    def shutdown(self) -> None:
        """Tear the VM down. Safe to call any number of times."""
        if self._closed:
            return
        self._closed = True
        self.cancel_event.set()
        try:
            if not self._armed:
                return
            self._graceful_shutdown()

            still_running = self._handle is not None and self._handle.poll() is None
            if still_running and self._vm_exists():
                try:
                    self.store.stop(self.name, timeout=self.settings.shutdown_grace_seconds)
                except TartError as exc:
                    logger.warning("tart stop %s failed: %s", self.name, exc)
            if self._handle is not None:
                self._handle.terminate()

            if self.ephemeral and self._vm_exists():
                try:
                    self.store.delete(self.name)
                    logger.info("Deleted %s.", self.name)
                except TartError as exc:
                    logger.warning(
                        "Could not delete %s; remove it with `tart delete %s`: %s",
                        self.name, self.name, exc,
                    )
        finally:
            self._disarm()
            self._raise_deferred_signal()
