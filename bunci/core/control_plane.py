"""Control plane — wires every component from one ``BunciSettings``.

The CLI builds a single ``ControlPlane`` per invocation. Tests pass fake
store, registry and shell implementations through the keyword arguments.
"""

from __future__ import annotations

from collections.abc import Callable

from bunci.bridge.ssh import (
    ExecResult,
    OutputCallback,
    ShellFactory,
    paramiko_shell_factory,
)
from bunci.bridge.tart import RegistryClient, RegistryCredentials, TartClient, VmStoreClient
from bunci.config import BunciSettings
from bunci.core.artifact_cache import BuildArtifactCache
from bunci.core.decision_engine import CachingDecisionEngine
from bunci.core.image_builder import ImageBuilder
from bunci.core.image_names import ImageNameCodec
from bunci.core.janitor import VmJanitor
from bunci.core.job_runner import JobRunner
from bunci.core.local_index import LocalImageIndex
from bunci.core.provisioner import ImageProvisioner
from bunci.core.remote_client import RemoteImageClient
from bunci.core.validator import ImageValidator
from bunci.core.version_resolver import VersionResolver


class ControlPlane:
    """All components for one invocation, sharing one store and registry."""

    def __init__(
        self,
        settings: BunciSettings | None = None,
        *,
        store: VmStoreClient | None = None,
        registry: RegistryClient | None = None,
        shell_factory: ShellFactory | None = None,
        credentials: RegistryCredentials | None = None,
        on_output: Callable[[ExecResult], None] | None = None,
        on_stream: OutputCallback | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] | None = None,
        disk_usage: Callable | None = None,
    ) -> None:
        self.settings = settings or BunciSettings()
        s = self.settings

        # Adapters
        tart = TartClient(s.tart_binary) if store is None or registry is None else None
        self.store: VmStoreClient = store if store is not None else tart
        self.registry: RegistryClient = registry if registry is not None else tart
        self.shell_factory = shell_factory or paramiko_shell_factory(
            s.vm_user, s.vm_password, s.shell_connect_timeout
        )

        # Naming and discovery
        self.resolver = VersionResolver(s)
        self.codec = ImageNameCodec.from_settings(s)
        self.index = LocalImageIndex(self.store, self.codec)
        self.remote = RemoteImageClient(
            self.registry, self.store, self.codec, s, credentials=credentials, sleep=sleep
        )

        # Lifecycle
        janitor_kwargs = {}
        if clock is not None:
            janitor_kwargs["clock"] = clock
        if disk_usage is not None:
            janitor_kwargs["usage"] = disk_usage
        self.janitor = VmJanitor(self.store, self.codec, s, **janitor_kwargs)
        self.validator = ImageValidator(
            self.store, self.shell_factory, self.codec, s, sleep=sleep
        )
        self.engine = CachingDecisionEngine(
            self.index, self.remote, self.validator, self.store, s
        )
        self.builder = ImageBuilder(
            self.store, self.shell_factory, self.codec, self.index,
            self.validator, self.remote, s, sleep=sleep,
        )
        self.provisioner = ImageProvisioner(
            self.engine, self.builder, self.janitor, self.store, self.codec, s
        )
        self.job_runner = JobRunner(
            self.store, self.shell_factory, self.codec, self.janitor, s,
            on_output=on_output, on_stream=on_stream, sleep=sleep,
        )

        # Build artifacts
        self.artifact_cache = BuildArtifactCache(s.cache_root)
