"""Pydantic data models for bunci."""

from bunci.models.artifacts import ArtifactCacheEntry, BuildType
from bunci.models.decisions import (
    BuildIncremental,
    BuildNew,
    CacheDecision,
    DecisionFlags,
    UseLocalExact,
    UseRemote,
)
from bunci.models.images import (
    ImageClassification,
    ImageLocation,
    ImageRecord,
    VmEntry,
    VmSource,
)
from bunci.models.validation import ProbeResult, ValidationResult
from bunci.models.versioning import Arch, MacOSRelease, VersionTuple

__all__ = [
    "Arch",
    "ArtifactCacheEntry",
    "BuildIncremental",
    "BuildNew",
    "BuildType",
    "CacheDecision",
    "DecisionFlags",
    "ImageClassification",
    "ImageLocation",
    "ImageRecord",
    "MacOSRelease",
    "ProbeResult",
    "UseLocalExact",
    "UseRemote",
    "ValidationResult",
    "VersionTuple",
    "VmEntry",
    "VmSource",
]
