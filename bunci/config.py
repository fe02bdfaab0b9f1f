"""Runtime configuration — env-driven, loaded once at the entry point.

Centralized settings using pydantic-settings. Reads from a .env file and
BUNCI_* environment variables. Registry credentials additionally accept the
names the CI hosts already export (TART_REGISTRY_*, GITHUB_*).

This is the only module that reads the process environment. Every other
component receives a ``BunciSettings`` instance explicitly.
"""

from __future__ import annotations

import logging
import os
import platform
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from bunci.models.versioning import Arch, MacOSRelease

logger = logging.getLogger(__name__)

# Stock Cirrus Labs images used as the starting point of a full bootstrap.
BASE_IMAGES: dict[MacOSRelease, str] = {
    MacOSRelease.VENTURA: "ghcr.io/cirruslabs/macos-ventura-xcode:latest",
    MacOSRelease.SONOMA: "ghcr.io/cirruslabs/macos-sonoma-xcode:latest",
    MacOSRelease.SEQUOIA: "ghcr.io/cirruslabs/macos-sequoia-xcode:latest",
}


def _host_arch() -> Arch:
    try:
        return Arch.from_machine(platform.machine())
    except ValueError:
        return Arch.ARM64


class BunciSettings(BaseSettings):
    """CI host configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export BUNCI_MACOS_RELEASE=14
        export BUNCI_DISK_USAGE_THRESHOLD=85
        export TART_REGISTRY_PASSWORD=ghp_...

    Or via .env file::

        BUNCI_PUSH_IMAGES=true
        BUNCI_VM_MEMORY_MB=16384
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="BUNCI_",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Logging
    log_level: str = "INFO"

    # Project layout
    workspace: Path = Path(".")
    bootstrap_script: Path = Path("scripts/bootstrap-macos.sh")

    # Image identity
    macos_release: MacOSRelease = MacOSRelease.SONOMA
    arch: Arch = Field(default_factory=_host_arch)
    arch_qualified_names: bool = False
    image_prefix: str = "bun-build"

    # Registry
    registry_host: str = "ghcr.io"
    registry_org: str = "build-archetype"
    registry_repo: str = "client-oven-sh-bun"
    registry_username: str = Field(
        default="",
        validation_alias=AliasChoices(
            "BUNCI_REGISTRY_USERNAME", "TART_REGISTRY_USERNAME",
            "GITHUB_USERNAME", "GITHUB_ACTOR",
        ),
    )
    registry_password: str = Field(
        default="",
        validation_alias=AliasChoices(
            "BUNCI_REGISTRY_PASSWORD", "TART_REGISTRY_PASSWORD", "GITHUB_TOKEN",
        ),
    )
    registry_username_file: Path = Path.home() / ".buildkite-agent" / "github-username.txt"
    registry_token_file: Path = Path.home() / ".buildkite-agent" / "github-token.txt"
    push_images: bool = False

    # Hypervisor and guest access
    tart_binary: str = "tart"
    vm_user: str = "admin"
    vm_password: str = "admin"
    vm_cpu: int = 4
    vm_memory_mb: int = 8192
    shared_dir_tag: str = "workspace"

    # Bounded waits
    network_attempts: int = 15
    network_interval: float = 5.0
    shell_attempts: int = 30
    shell_interval: float = 5.0
    shell_connect_timeout: float = 10.0
    shutdown_grace_seconds: float = 10.0
    bootstrap_timeout: float = 7200.0
    pull_attempts: int = 3
    pull_interval: float = 10.0

    # Host hygiene
    disk_usage_threshold: int = 80
    max_vm_age_hours: float = 1.0
    cache_root: Path = Path("/opt/buildkite-cache")

    # Job environment forwarding
    forward_env_exclude: list[str] = Field(default_factory=list)

    @property
    def registry_repository_base(self) -> str:
        """``<host>/<org>/<repo>`` prefix shared by every pushed image."""
        return f"{self.registry_host}/{self.registry_org}/{self.registry_repo}"

    @property
    def guest_workspace(self) -> str:
        """Where the shared workspace appears inside the guest."""
        return f"/Volumes/My Shared Files/{self.shared_dir_tag}"

    def base_image_for(self, release: MacOSRelease | str) -> str:
        """Return the stock OS image a full bootstrap starts from."""
        try:
            return BASE_IMAGES[MacOSRelease(release)]
        except (ValueError, KeyError):
            logger.warning(
                "Unknown macOS release %r, defaulting to Sonoma (14).", release
            )
            return BASE_IMAGES[MacOSRelease.SONOMA]


def host_environment() -> dict[str, str]:
    """Snapshot of the process environment, for forwarding into guest jobs."""
    return dict(os.environ)
