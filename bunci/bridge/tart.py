"""Tart bridge — typed access to the local VM store and the OCI registry.

Bridge boundary
---------------
The ``tart`` CLI is the only way to talk to the hypervisor and the registry.
This module wraps it behind the ``VmStoreClient`` and ``RegistryClient``
Protocols so that decision logic never parses tool output. If the CLI output
format changes, this is the only file that should change.

Registry credentials are handed to ``tart`` through its documented
``TART_REGISTRY_USERNAME`` / ``TART_REGISTRY_PASSWORD`` variables in the
child process environment only.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from bunci.models.images import VmEntry, VmSource

logger = logging.getLogger(__name__)

# Hypervisor messages that mean the --dir share could not be attached.
_SHARED_DIR_ERRORS = re.compile(
    r"(shared director|directory shar|--dir|VZErrorDomain|virtiofs|mount)",
    re.IGNORECASE,
)


class TartError(RuntimeError):
    """Raised when a tart command exits non-zero.

    Carries the command, exit code and stderr so callers can decide policy.
    """

    def __init__(self, args: Sequence[str], returncode: int, stderr: str) -> None:
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(
            f"{' '.join(self.args_list)} exited {returncode}: {self.stderr or 'no output'}"
        )


class SharedDirectoryError(TartError):
    """Raised by ``run`` when the VM died because the shared directory failed."""


class RegistryCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    password: str


class RunOptions(BaseModel):
    """Boot parameters for ``tart run``."""

    model_config = ConfigDict(frozen=True)

    cpu: int | None = None
    memory_mb: int | None = None
    shared_dir: Path | None = None
    shared_dir_tag: str = "workspace"
    headless: bool = True


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class VmHandle(Protocol):
    """A booted VM's host-side process."""

    def poll(self) -> int | None:
        """Return the exit code if the VM process has exited, else ``None``."""
        ...

    def terminate(self, timeout: float = 10.0) -> None:
        """Stop the VM process, escalating to kill after *timeout*."""
        ...


@runtime_checkable
class VmStoreClient(Protocol):
    """Operations on the local VM store."""

    def list(self) -> list[VmEntry]: ...

    def clone(self, source: str, name: str) -> None: ...

    def run(self, name: str, options: RunOptions) -> VmHandle: ...

    def ip(self, name: str) -> str | None: ...

    def stop(self, name: str, timeout: float = 30.0) -> None: ...

    def delete(self, name: str) -> None: ...

    def set(self, name: str, *, cpu: int | None = None, memory_mb: int | None = None) -> None: ...


@runtime_checkable
class RegistryClient(Protocol):
    """Operations against the remote OCI registry."""

    def pull(self, url: str, credentials: RegistryCredentials | None = None) -> None: ...

    def push(
        self,
        name: str,
        urls: Sequence[str],
        credentials: RegistryCredentials | None = None,
    ) -> None: ...


# ---------------------------------------------------------------------------
# Tart implementation
# ---------------------------------------------------------------------------


class TartProcess:
    """``VmHandle`` backed by a background ``tart run`` process."""

    def __init__(self, process: subprocess.Popen, log_path: Path | None = None) -> None:
        self._process = process
        self.log_path = log_path

    @property
    def pid(self) -> int:
        return self._process.pid

    def poll(self) -> int | None:
        return self._process.poll()

    def terminate(self, timeout: float = 10.0) -> None:
        if self._process.poll() is not None:
            return
        self._process.terminate()
        try:
            self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("tart run (pid %d) ignored SIGTERM, killing.", self._process.pid)
            self._process.kill()
            self._process.wait(timeout=timeout)


def parse_list_output(raw: str) -> list[VmEntry]:
    """Parse ``tart list --format json`` output into ``VmEntry`` rows.

    Unknown keys are ignored and rows without a name are skipped.
    """
    try:
        rows = json.loads(raw or "[]")
    except json.JSONDecodeError as exc:
        raise ValueError(f"Unparseable tart list output: {exc}") from exc

    entries: list[VmEntry] = []
    for row in rows:
        name = row.get("Name") or row.get("name")
        if not name:
            continue
        source = str(row.get("Source") or row.get("source") or "local").lower()
        state = str(row.get("State") or row.get("state") or "stopped").lower()
        running = bool(row.get("Running", state == "running"))
        entries.append(
            VmEntry(
                name=name,
                source=VmSource.OCI if source == "oci" else VmSource.LOCAL,
                disk_gb=int(row.get("Disk") or 0),
                size_gb=int(row.get("Size") or 0),
                running=running,
                state=state,
            )
        )
    return entries


class TartClient:
    """``VmStoreClient`` + ``RegistryClient`` implemented with the tart CLI.

    Parameters
    ----------
    binary:
        Path or name of the tart executable.
    log_dir:
        Where ``tart run`` output is written, one file per VM.
    startup_probe_seconds:
        How long ``run`` watches a fresh process for an immediate exit.
    """

    def __init__(
        self,
        binary: str = "tart",
        *,
        log_dir: Path | None = None,
        startup_probe_seconds: float = 3.0,
        command_timeout: float = 3600.0,
    ) -> None:
        self._binary = binary
        self._log_dir = log_dir or Path(tempfile.gettempdir()) / "bunci-tart"
        self._startup_probe = startup_probe_seconds
        self._timeout = command_timeout

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _run(
        self,
        *args: str,
        credentials: RegistryCredentials | None = None,
        timeout: float | None = None,
    ) -> str:
        cmd = [self._binary, *args]
        env = None
        if credentials is not None:
            env = dict(os.environ)
            env["TART_REGISTRY_USERNAME"] = credentials.username
            env["TART_REGISTRY_PASSWORD"] = credentials.password
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                env=env,
                timeout=timeout or self._timeout,
            )
        except (subprocess.SubprocessError, OSError) as exc:
            raise TartError(cmd, -1, str(exc)) from exc
        if result.returncode != 0:
            raise TartError(cmd, result.returncode, result.stderr or result.stdout)
        return result.stdout

    # ------------------------------------------------------------------
    # VmStoreClient
    # ------------------------------------------------------------------

    def list(self) -> list[VmEntry]:
        return parse_list_output(self._run("list", "--format", "json", timeout=60))

    def clone(self, source: str, name: str) -> None:
        self._run("clone", source, name)

    def run(self, name: str, options: RunOptions) -> VmHandle:
        cmd = [self._binary, "run", name]
        if options.headless:
            cmd.append("--no-graphics")
        if options.shared_dir is not None:
            cmd.append(f"--dir={options.shared_dir_tag}:{options.shared_dir}")

        self._log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self._log_dir / f"{name}.log"
        logger.debug("Starting: %s", " ".join(cmd))
        # The child keeps its own copy of the log descriptor.
        with open(log_path, "w") as log_file:
            try:
                process = subprocess.Popen(
                    cmd,
                    stdout=subprocess.DEVNULL,
                    stderr=log_file,
                    text=True,
                )
            except OSError as exc:
                raise TartError(cmd, -1, str(exc)) from exc

        try:
            code = process.wait(timeout=self._startup_probe)
        except subprocess.TimeoutExpired:
            return TartProcess(process, log_path)

        stderr = log_path.read_text(errors="replace")
        if options.shared_dir is not None and _SHARED_DIR_ERRORS.search(stderr):
            raise SharedDirectoryError(cmd, code, stderr)
        raise TartError(cmd, code, stderr)

    def ip(self, name: str) -> str | None:
        try:
            address = self._run("ip", name, timeout=30).strip()
        except TartError:
            return None
        return address or None

    def stop(self, name: str, timeout: float = 30.0) -> None:
        self._run("stop", name, "--timeout", str(int(timeout)), timeout=timeout + 30)

    def delete(self, name: str) -> None:
        self._run("delete", name, timeout=300)

    def set(self, name: str, *, cpu: int | None = None, memory_mb: int | None = None) -> None:
        args = ["set", name]
        if cpu is not None:
            args += ["--cpu", str(cpu)]
        if memory_mb is not None:
            args += ["--memory", str(memory_mb)]
        if len(args) > 2:
            self._run(*args, timeout=60)

    # ------------------------------------------------------------------
    # RegistryClient
    # ------------------------------------------------------------------

    def pull(self, url: str, credentials: RegistryCredentials | None = None) -> None:
        self._run("pull", url, credentials=credentials)

    def push(
        self,
        name: str,
        urls: Sequence[str],
        credentials: RegistryCredentials | None = None,
    ) -> None:
        self._run("push", name, *urls, credentials=credentials)
