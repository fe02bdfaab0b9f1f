"""Image provisioner — turn a cache decision into a ready local image.

This is the one place where a decision is executed:

- ``UseLocalExact``: the image is already there.
- ``UseRemote``: the pulled OCI image is cloned to the local versioned name;
  if that clone fails the provisioner falls back to a full build.
- ``BuildIncremental`` / ``BuildNew``: handed to the ``ImageBuilder``.

Host hygiene (orphan cleanup, disk pressure) runs first on every call.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from bunci.bridge.tart import TartError, VmStoreClient
from bunci.config import BunciSettings
from bunci.core.decision_engine import CachingDecisionEngine
from bunci.core.errors import ImageProvisionError
from bunci.core.image_builder import ImageBuilder
from bunci.core.image_names import ImageNameCodec
from bunci.core.janitor import VmJanitor
from bunci.models.decisions import (
    BuildIncremental,
    BuildNew,
    CacheDecision,
    DecisionFlags,
    UseLocalExact,
    UseRemote,
)
from bunci.models.versioning import VersionTuple

logger = logging.getLogger(__name__)


class ProvisionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    decision: CacheDecision
    image_name: str


class ImageProvisioner:
    """Ensures the image for a target tuple exists locally."""

    def __init__(
        self,
        engine: CachingDecisionEngine,
        builder: ImageBuilder,
        janitor: VmJanitor,
        store: VmStoreClient,
        codec: ImageNameCodec,
        settings: BunciSettings,
        *,
        disk_path: Path | None = None,
    ) -> None:
        self._engine = engine
        self._builder = builder
        self._janitor = janitor
        self._store = store
        self._codec = codec
        self._settings = settings
        self._disk_path = disk_path

    def housekeeping(self, target: VersionTuple, *, force_disk_relief: bool = False) -> None:
        """Orphan cleanup plus a single disk-pressure pass."""
        self._janitor.cleanup_orphans()
        self._janitor.relieve_disk_pressure(
            self._disk_path, target.bootstrap_version, force=force_disk_relief
        )

    def _present(self, name: str) -> bool:
        return any(entry.name == name for entry in self._store.list())

    def _materialize_remote(self, decision: UseRemote, target: VersionTuple) -> str | None:
        name = self._codec.encode(target)
        try:
            if self._present(name):
                self._store.delete(name)
            self._store.clone(decision.url, name)
        except TartError as exc:
            logger.warning("Could not clone %s to %s: %s", decision.url, name, exc)
            return None
        logger.info("Cloned %s to %s.", decision.url, name)
        return name

    def ensure(
        self,
        target: VersionTuple,
        flags: DecisionFlags | None = None,
        *,
        force_rebuild_all: bool = False,
        push: bool | None = None,
    ) -> ProvisionResult:
        """Decide and execute; returns the decision and the local image name.

        Raises
        ------
        ImageProvisionError
            When the decision was an image that has since disappeared.
        ImageBuildError
            When a build was required and failed.
        """
        flags = flags or DecisionFlags()
        self.housekeeping(target)

        decision: UseLocalExact | UseRemote | BuildIncremental | BuildNew
        if force_rebuild_all:
            purged = self._janitor.purge_versioned(target.release, target.arch)
            logger.info("Rebuild requested; removed %d local image(s).", len(purged))
            decision = BuildNew(base_image=self._settings.base_image_for(target.release))
        else:
            decision = self._engine.decide(target, flags)

        if isinstance(decision, UseLocalExact):
            if not self._present(decision.image_name):
                raise ImageProvisionError(
                    f"Image {decision.image_name} disappeared after validation",
                    step="provision",
                    remedy="rerun ensure-image; another job may be cleaning this host",
                )
            return ProvisionResult(decision=decision, image_name=decision.image_name)

        if isinstance(decision, UseRemote):
            name = self._materialize_remote(decision, target)
            if name is not None:
                return ProvisionResult(decision=decision, image_name=name)
            decision = BuildNew(base_image=self._settings.base_image_for(target.release))
            logger.warning("Falling back to a full build of %s.", target.label)

        if isinstance(decision, (BuildIncremental, BuildNew)):
            name = self._builder.build(decision, target, push=push)
            return ProvisionResult(decision=decision, image_name=name)

        raise ImageProvisionError(
            f"Unhandled decision {decision!r}",
            step="provision",
            remedy="report this as a bug",
        )
