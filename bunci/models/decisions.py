"""Cache decision variants produced by the decision engine."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class DecisionFlags(BaseModel):
    """Caller-supplied switches that alter the decision priority order."""

    model_config = ConfigDict(frozen=True)

    force_refresh: bool = False
    force_remote_refresh: bool = False
    local_dev_only: bool = False


class UseLocalExact(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["use_local_exact"] = "use_local_exact"
    image_name: str


class UseRemote(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["use_remote"] = "use_remote"
    url: str


class BuildIncremental(BaseModel):
    """Re-run the bootstrap on top of a compatible local image."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["build_incremental"] = "build_incremental"
    base_image: str


class BuildNew(BaseModel):
    """Full bootstrap from the stock OS image."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["build_new"] = "build_new"
    base_image: str


CacheDecision = Annotated[
    Union[UseLocalExact, UseRemote, BuildIncremental, BuildNew],
    Field(discriminator="kind"),
]

BuildDecision = Union[BuildIncremental, BuildNew]


def describe_decision(decision: UseLocalExact | UseRemote | BuildIncremental | BuildNew) -> str:
    """One-line human description of a decision."""
    if isinstance(decision, UseLocalExact):
        return f"use local image {decision.image_name}"
    if isinstance(decision, UseRemote):
        return f"use remote image {decision.url}"
    if isinstance(decision, BuildIncremental):
        return f"incremental build from {decision.base_image}"
    return f"full build from {decision.base_image}"
