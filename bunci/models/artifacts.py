"""Build artifact cache models (entries are immutable once stored)."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BuildType(str, Enum):
    CPP = "cpp"
    ZIG = "zig"


# Source patterns tracked per build type; a change to any matching file
# produces a new cache key.
SOURCE_PATTERNS: dict[BuildType, tuple[str, ...]] = {
    BuildType.CPP: ("*.c", "*.cc", "*.cpp", "*.cxx", "*.h", "*.hh", "*.hpp", "*.mm"),
    BuildType.ZIG: ("*.zig",),
}


class ArtifactCacheEntry(BaseModel):
    """Manifest of one cached compile result.

    ``key`` is the source hash; ``artifact_paths`` are file names relative to
    the entry directory.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    build_type: BuildType
    artifact_paths: list[str]
    revision: str = "unknown"
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
