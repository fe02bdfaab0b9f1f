"""Validation results — transient, never persisted."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ProbeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    passed: bool
    output: str = ""


class ValidationResult(BaseModel):
    """Aggregate outcome of probing an image for the required toolchain."""

    model_config = ConfigDict(frozen=True)

    passed: bool
    missing_tools: list[str] = Field(default_factory=list)
    probes: list[ProbeResult] = Field(default_factory=list)
    reason: str = ""
