"""Bidirectional codec between ``VersionTuple`` and store/registry names.

Image identity lives entirely in names, so this is the one place that knows
the naming templates::

    local   <prefix>-macos-<release>[-<arch>]-<version>-bootstrap-<bootstrap>
    remote  <host>/<org>/<repo>/<prefix>-macos-<release>[-<arch>]:<version>-bootstrap-<bootstrap>
    latest  <host>/<org>/<repo>/<prefix>-macos-<release>[-<arch>]:latest
    session <prefix>-<epoch>-<hex>

The arch segment is omitted for the host's default arch (unless the codec is
arch-qualified), and a missing arch segment decodes to the default arch, so
``decode(encode(t)) == t`` holds for every well-formed tuple.
"""

from __future__ import annotations

import re
import time
import uuid

from bunci.config import BunciSettings
from bunci.models.versioning import Arch, MacOSRelease, VersionTuple

_RELEASE = r"(?P<release>\d+)"
_ARCH = r"(?:-(?P<arch>arm64|x64))?"
_VERSION = r"(?P<version>\d+\.\d+\.\d+)"
_BOOTSTRAP = r"(?P<bootstrap>\d+\.\d+)"


class ImageNameCodec:
    """Encode and decode image names for one naming configuration.

    Parameters
    ----------
    prefix:
        Leading name component shared by every image (``bun-build``).
    default_arch:
        The arch implied by names without an arch segment.
    arch_qualified:
        Always emit the arch segment.
    registry_base:
        ``<host>/<org>/<repo>`` for remote URLs.
    """

    def __init__(
        self,
        prefix: str = "bun-build",
        *,
        default_arch: Arch = Arch.ARM64,
        arch_qualified: bool = False,
        registry_base: str = "ghcr.io/build-archetype/client-oven-sh-bun",
    ) -> None:
        self.prefix = prefix
        self.default_arch = default_arch
        self.arch_qualified = arch_qualified
        self.registry_base = registry_base.rstrip("/")
        p = re.escape(prefix)
        self._local = re.compile(
            rf"^{p}-macos-{_RELEASE}{_ARCH}-{_VERSION}-bootstrap-{_BOOTSTRAP}$"
        )
        self._remote = re.compile(
            rf"^{re.escape(self.registry_base)}/{p}-macos-{_RELEASE}{_ARCH}"
            rf":{_VERSION}-bootstrap-{_BOOTSTRAP}$"
        )
        self._session = re.compile(rf"^{p}-(?P<epoch>\d+)-[0-9a-f]+$")

    @classmethod
    def from_settings(cls, settings: BunciSettings) -> "ImageNameCodec":
        return cls(
            settings.image_prefix,
            default_arch=settings.arch,
            arch_qualified=settings.arch_qualified_names,
            registry_base=settings.registry_repository_base,
        )

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _repository(self, t: VersionTuple) -> str:
        name = f"{self.prefix}-{t.os_name}"
        if self.arch_qualified or t.arch != self.default_arch:
            name = f"{name}-{t.arch.value}"
        return name

    def encode(self, t: VersionTuple) -> str:
        """Local image name for *t*."""
        return f"{self._repository(t)}-{t.project_version}-bootstrap-{t.bootstrap_version}"

    def remote_tag(self, t: VersionTuple) -> str:
        return f"{t.project_version}-bootstrap-{t.bootstrap_version}"

    def remote_url(self, t: VersionTuple) -> str:
        """Versioned registry URL for *t*."""
        return f"{self.registry_base}/{self._repository(t)}:{self.remote_tag(t)}"

    def latest_url(self, t: VersionTuple) -> str:
        """Floating ``latest`` URL for *t*'s release and arch."""
        return f"{self.registry_base}/{self._repository(t)}:latest"

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _tuple_from(self, match: re.Match[str] | None) -> VersionTuple | None:
        if match is None:
            return None
        try:
            release = MacOSRelease(match.group("release"))
        except ValueError:
            return None
        arch = Arch(match.group("arch")) if match.group("arch") else self.default_arch
        return VersionTuple(
            release=release,
            arch=arch,
            project_version=match.group("version"),
            bootstrap_version=match.group("bootstrap"),
        )

    def decode(self, name: str) -> VersionTuple | None:
        """Parse a local image name; ``None`` for anything that is not one."""
        if not isinstance(name, str):
            return None
        return self._tuple_from(self._local.match(name.strip()))

    def decode_remote(self, url: str) -> VersionTuple | None:
        """Parse a versioned registry URL; ``None`` for anything else."""
        if not isinstance(url, str):
            return None
        return self._tuple_from(self._remote.match(url.strip()))

    # ------------------------------------------------------------------
    # Ephemeral session VMs
    # ------------------------------------------------------------------

    def ephemeral_name(self, now: float | None = None) -> str:
        """A fresh, unique name for a throwaway session VM."""
        epoch = int(now if now is not None else time.time())
        return f"{self.prefix}-{epoch}-{uuid.uuid4().hex[:12]}"

    def is_ephemeral(self, name: str) -> bool:
        return bool(self._session.match(name))

    def ephemeral_created_at(self, name: str) -> int | None:
        """Creation epoch embedded in an ephemeral name."""
        match = self._session.match(name)
        return int(match.group("epoch")) if match else None
