"""Version coordinates that key every image cache decision."""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator

SEMVER_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
BOOTSTRAP_PATTERN = re.compile(r"^(\d+)\.(\d+)$")

# Single fallback per coordinate. Used when no well-formed value can be found.
FALLBACK_PROJECT_VERSION = "1.2.16"
FALLBACK_BOOTSTRAP_VERSION = "4.0"


class MacOSRelease(str, Enum):
    """macOS releases we know how to build images for."""

    VENTURA = "13"
    SONOMA = "14"
    SEQUOIA = "15"


class Arch(str, Enum):
    ARM64 = "arm64"
    X64 = "x64"

    @classmethod
    def from_machine(cls, machine: str) -> "Arch":
        """Map a ``platform.machine()`` string to an Arch."""
        normalized = machine.strip().lower()
        if normalized in ("arm64", "aarch64"):
            return cls.ARM64
        if normalized in ("x86_64", "amd64", "x64"):
            return cls.X64
        raise ValueError(f"Unsupported architecture: {machine!r}")


class VersionTuple(BaseModel):
    """The full identity of a build image.

    Two images are interchangeable only if all four coordinates match.
    """

    model_config = ConfigDict(frozen=True)

    release: MacOSRelease
    arch: Arch
    project_version: str
    bootstrap_version: str

    @field_validator("project_version")
    @classmethod
    def _check_semver(cls, value: str) -> str:
        if not SEMVER_PATTERN.match(value):
            raise ValueError(f"project_version must be MAJOR.MINOR.PATCH, got {value!r}")
        return value

    @field_validator("bootstrap_version")
    @classmethod
    def _check_bootstrap(cls, value: str) -> str:
        if not BOOTSTRAP_PATTERN.match(value):
            raise ValueError(f"bootstrap_version must be MAJOR.MINOR, got {value!r}")
        return value

    @property
    def os_name(self) -> str:
        return f"macos-{self.release.value}"

    @property
    def semver(self) -> tuple[int, int, int]:
        major, minor, patch = SEMVER_PATTERN.match(self.project_version).groups()  # type: ignore[union-attr]
        return int(major), int(minor), int(patch)

    @property
    def minor_line(self) -> tuple[int, int]:
        """``(major, minor)`` of the project version."""
        return self.semver[:2]

    @property
    def bootstrap_key(self) -> tuple[int, int]:
        major, minor = BOOTSTRAP_PATTERN.match(self.bootstrap_version).groups()  # type: ignore[union-attr]
        return int(major), int(minor)

    @property
    def label(self) -> str:
        return f"{self.os_name}/{self.arch.value} {self.project_version} (bootstrap {self.bootstrap_version})"

    def same_platform(self, other: "VersionTuple") -> bool:
        return self.release == other.release and self.arch == other.arch
