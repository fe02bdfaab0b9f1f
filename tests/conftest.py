"""Shared test fixtures for bunci.

The VM store, registry and guest shell are replaced by in-memory fakes that
record every call, so lifecycle ordering can be asserted without a
hypervisor.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from bunci.bridge.ssh import ExecResult, RemoteShellError
from bunci.bridge.tart import (
    RegistryCredentials,
    RunOptions,
    SharedDirectoryError,
    TartError,
)
from bunci.config import BunciSettings
from bunci.core.control_plane import ControlPlane
from bunci.core.image_names import ImageNameCodec
from bunci.models.images import VmEntry, VmSource
from bunci.models.versioning import Arch, MacOSRelease, VersionTuple

BOOTSTRAP_SCRIPT = """#!/bin/bash
# Version: 4.1
# Installs the Bun build toolchain.
set -euo pipefail
echo "bootstrapping bun $BUN_VERSION"
"""


def no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeHandle:
    """A booted VM process that runs until stopped or terminated."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.returncode: int | None = None
        self.terminated = 0

    def poll(self) -> int | None:
        return self.returncode

    def terminate(self, timeout: float = 10.0) -> None:
        self.terminated += 1
        if self.returncode is None:
            self.returncode = -15


class FakeVmStore:
    """In-memory VM store that records every call in ``calls``."""

    def __init__(self) -> None:
        self.vms: dict[str, VmEntry] = {}
        self.sources: dict[str, str] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.handles: dict[str, FakeHandle] = {}
        self.run_options: list[tuple[str, RunOptions]] = []
        self.fail_clone: set[str] = set()
        self.fail_delete: set[str] = set()
        self.rejected_dirs: set[Path] = set()
        self.network_up = True
        self._ips: dict[str, str] = {}

    def add(
        self,
        name: str,
        *,
        source: VmSource = VmSource.LOCAL,
        running: bool = False,
        size_gb: int = 60,
    ) -> None:
        self.vms[name] = VmEntry(
            name=name,
            source=source,
            size_gb=size_gb,
            running=running,
            state="running" if running else "stopped",
        )

    def names(self) -> set[str]:
        return set(self.vms)

    def calls_named(self, op: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == op]

    @property
    def deleted(self) -> list[str]:
        return [c[1] for c in self.calls_named("delete")]

    def vm_for_ip(self, ip: str) -> str | None:
        for name, address in self._ips.items():
            if address == ip:
                return name
        return None

    def origin(self, name: str) -> str:
        """The image a VM was cloned from, or its own name."""
        return self.sources.get(name, name)

    # VmStoreClient ------------------------------------------------------

    def list(self) -> list[VmEntry]:
        self.calls.append(("list",))
        return list(self.vms.values())

    def clone(self, source: str, name: str) -> None:
        self.calls.append(("clone", source, name))
        if source in self.fail_clone:
            raise TartError(["tart", "clone", source, name], 1, "clone failed")
        if "/" not in source and source not in self.vms:
            raise TartError(["tart", "clone", source, name], 1, f"VM {source} not found")
        self.add(name)
        self.sources[name] = source

    def run(self, name: str, options: RunOptions) -> FakeHandle:
        self.calls.append(("run", name, options.shared_dir))
        self.run_options.append((name, options))
        if name not in self.vms:
            raise TartError(["tart", "run", name], 1, f"VM {name} not found")
        if options.shared_dir is not None and options.shared_dir in self.rejected_dirs:
            raise SharedDirectoryError(["tart", "run", name], 1, "shared directory failed")
        self.add(name, running=True)
        handle = FakeHandle(name)
        self.handles[name] = handle
        self._ips[name] = f"192.168.64.{len(self._ips) + 2}"
        return handle

    def ip(self, name: str) -> str | None:
        self.calls.append(("ip", name))
        if not self.network_up:
            return None
        return self._ips.get(name)

    def stop(self, name: str, timeout: float = 30.0) -> None:
        self.calls.append(("stop", name))
        if name in self.vms:
            self.add(name, running=False)
        handle = self.handles.get(name)
        if handle is not None and handle.returncode is None:
            handle.returncode = 0

    def delete(self, name: str) -> None:
        self.calls.append(("delete", name))
        if name in self.fail_delete:
            raise TartError(["tart", "delete", name], 1, "delete failed")
        if name not in self.vms:
            raise TartError(["tart", "delete", name], 1, f"VM {name} not found")
        del self.vms[name]

    def set(self, name: str, *, cpu: int | None = None, memory_mb: int | None = None) -> None:
        self.calls.append(("set", name, cpu, memory_mb))


class FakeRegistry:
    """Registry holding a set of URLs; pulls land in the store as OCI entries."""

    def __init__(self, store: FakeVmStore) -> None:
        self.store = store
        self.available: set[str] = set()
        self.pulls: list[tuple[str, RegistryCredentials | None]] = []
        self.pushes: list[tuple[str, list[str], RegistryCredentials | None]] = []
        self.fail_push = False

    def pull(self, url: str, credentials: RegistryCredentials | None = None) -> None:
        self.pulls.append((url, credentials))
        if url not in self.available:
            raise TartError(["tart", "pull", url], 1, "manifest unknown")
        self.store.add(url, source=VmSource.OCI)

    def push(
        self,
        name: str,
        urls: Sequence[str],
        credentials: RegistryCredentials | None = None,
    ) -> None:
        self.pushes.append((name, list(urls), credentials))
        if self.fail_push:
            raise TartError(["tart", "push", name], 1, "denied")
        self.available.update(urls)


class FakeShell:
    """Guest shell answering probes according to its factory's configuration."""

    def __init__(self, host: str, vm_name: str | None, missing: set[str], factory: "FakeShellFactory") -> None:
        self.host = host
        self.vm_name = vm_name
        self.missing = missing
        self.factory = factory
        self.commands: list[str] = []
        self.uploads: list[tuple[dict[str, Path], str]] = []
        self.closed = False

    def exec(
        self,
        command: str,
        *,
        stdin: bytes | None = None,
        timeout: float | None = None,
        on_data: Callable[[str, str], None] | None = None,
    ) -> ExecResult:
        self.commands.append(command)
        self.factory.commands.append(command)
        result = self._answer(command)
        if on_data is not None:
            for stream in ("stdout", "stderr"):
                if getattr(result, stream):
                    on_data(stream, getattr(result, stream))
        return result

    def _answer(self, command: str) -> ExecResult:
        if "echo ready" in command:
            return ExecResult(exit_code=0, stdout="ready\n")
        if "xcrun --sdk macosx" in command:
            if "macos-sdk" in self.missing:
                return ExecResult(exit_code=1, stderr="xcrun: error")
            return ExecResult(exit_code=0, stdout="/Library/Developer/SDKs/MacOSX.sdk\n")
        for tool in ("bun", "cargo", "cmake", "node", "clang", "ninja"):
            if f"command -v {tool}" in command:
                if tool in self.missing:
                    return ExecResult(exit_code=1)
                return ExecResult(exit_code=0, stdout=f"/usr/local/bin/{tool}\n")
        if "sudo shutdown" in command:
            return ExecResult(exit_code=0)
        for fragment, result in self.factory.results.items():
            if fragment in command:
                return result
        return ExecResult(exit_code=0)

    def put_archive(self, files: Mapping[str, Path], remote_dir: str) -> None:
        self.uploads.append((dict(files), remote_dir))
        self.factory.uploads.append((dict(files), remote_dir))

    def close(self) -> None:
        self.closed = True


class FakeShellFactory:
    """Callable shell factory.

    ``broken_images`` lists images whose clones are missing ``bun``;
    ``unreachable`` makes every connection attempt fail.
    """

    def __init__(self, store: FakeVmStore) -> None:
        self.store = store
        self.shells: list[FakeShell] = []
        self.commands: list[str] = []
        self.uploads: list[tuple[dict[str, Path], str]] = []
        self.results: dict[str, ExecResult] = {}
        self.broken_images: set[str] = set()
        self.unreachable = False

    def __call__(self, host: str) -> FakeShell:
        if self.unreachable:
            raise RemoteShellError(f"connection to {host} refused")
        vm_name = self.store.vm_for_ip(host)
        missing: set[str] = set()
        if vm_name is not None and self.store.origin(vm_name) in self.broken_images:
            missing = {"bun"}
        shell = FakeShell(host, vm_name, missing, self)
        self.shells.append(shell)
        return shell


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A checkout with a package.json and a versioned bootstrap script."""
    ws = tmp_path / "workspace"
    (ws / "scripts").mkdir(parents=True)
    (ws / "package.json").write_text('{"name": "bun", "version": "1.2.16"}')
    (ws / "scripts" / "bootstrap-macos.sh").write_text(BOOTSTRAP_SCRIPT)
    return ws


@pytest.fixture
def make_settings(tmp_path: Path, workspace: Path) -> Callable[..., BunciSettings]:
    """Factory fixture: settings with zero waits and no ambient credentials."""

    def _factory(**overrides: Any) -> BunciSettings:
        values: dict[str, Any] = dict(
            workspace=workspace,
            bootstrap_script=Path("scripts/bootstrap-macos.sh"),
            macos_release=MacOSRelease.SONOMA,
            arch=Arch.ARM64,
            registry_username="",
            registry_password="",
            registry_username_file=tmp_path / "no-username.txt",
            registry_token_file=tmp_path / "no-token.txt",
            network_attempts=3,
            network_interval=0.0,
            shell_attempts=3,
            shell_interval=0.0,
            shutdown_grace_seconds=0.0,
            pull_attempts=2,
            pull_interval=0.0,
            cache_root=tmp_path / "cache",
        )
        values.update(overrides)
        return BunciSettings(_env_file=None, **values)

    return _factory


@pytest.fixture
def settings(make_settings: Callable[..., BunciSettings]) -> BunciSettings:
    return make_settings()


@pytest.fixture
def codec() -> ImageNameCodec:
    return ImageNameCodec()


@pytest.fixture
def store() -> FakeVmStore:
    return FakeVmStore()


@pytest.fixture
def registry(store: FakeVmStore) -> FakeRegistry:
    return FakeRegistry(store)


@pytest.fixture
def shell_factory(store: FakeVmStore) -> FakeShellFactory:
    return FakeShellFactory(store)


@pytest.fixture
def target() -> VersionTuple:
    """The tuple the ``workspace`` fixture resolves to on Sonoma/arm64."""
    return VersionTuple(
        release=MacOSRelease.SONOMA,
        arch=Arch.ARM64,
        project_version="1.2.16",
        bootstrap_version="4.1",
    )


@pytest.fixture
def make_plane(
    settings: BunciSettings,
    store: FakeVmStore,
    registry: FakeRegistry,
    shell_factory: FakeShellFactory,
) -> Callable[..., ControlPlane]:
    """Factory fixture: a ControlPlane wired to the fakes."""

    def _factory(**overrides: Any) -> ControlPlane:
        kwargs: dict[str, Any] = dict(
            store=store,
            registry=registry,
            shell_factory=shell_factory,
            sleep=no_sleep,
            clock=lambda: 1_700_000_000.0,
            disk_usage=lambda _path: 50,
        )
        kwargs.update(overrides)
        plane_settings = kwargs.pop("settings", settings)
        return ControlPlane(plane_settings, **kwargs)

    return _factory


@pytest.fixture
def plane(make_plane: Callable[..., ControlPlane]) -> ControlPlane:
    return make_plane()
