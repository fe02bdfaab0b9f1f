"""Image store models — listing rows, records and classification."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from bunci.models.versioning import VersionTuple


class ImageLocation(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class VmSource(str, Enum):
    """Where a VM store entry came from, as reported by the store."""

    LOCAL = "local"
    OCI = "oci"


class VmEntry(BaseModel):
    """One row of a VM store listing, already parsed by the adapter."""

    model_config = ConfigDict(frozen=True)

    name: str
    source: VmSource = VmSource.LOCAL
    disk_gb: int = 0
    size_gb: int = 0
    running: bool = False
    state: str = "stopped"


class ImageRecord(BaseModel):
    """A versioned build image discovered in a store listing.

    Records are rebuilt on every decision cycle and never cached, since
    images can be created or deleted out-of-band.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    location: ImageLocation
    version_tuple: VersionTuple
    size_bytes: int | None = None


class ImageClassification(BaseModel):
    """Local records grouped by how well they serve a target tuple."""

    model_config = ConfigDict(frozen=True)

    exact: ImageRecord | None = None
    compatible: ImageRecord | None = None
    usable: list[ImageRecord] = Field(default_factory=list)
