"""Caching decision engine — local exact, local compatible, remote, or build.

Priority (first match wins):

1. ``force_refresh`` skips local reasoning and goes to the remote tier.
2. An exact local match that validates is used as-is.
3. A compatible local match that validates becomes an incremental build base.
4. Unless ``local_dev_only``, an image already in the registry is used.
5. Otherwise a full build from the stock OS image.

Candidates that fail validation are deleted, so a broken image is never
offered twice. ``plan`` is the pure core; ``decide`` wires it to the index,
the validator and the registry.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from bunci.bridge.tart import TartError, VmStoreClient
from bunci.config import BunciSettings
from bunci.core.local_index import LocalImageIndex
from bunci.core.remote_client import RemoteImageClient
from bunci.core.validator import ImageValidator
from bunci.models.decisions import (
    BuildIncremental,
    BuildNew,
    DecisionFlags,
    UseLocalExact,
    UseRemote,
)
from bunci.models.images import ImageClassification
from bunci.models.versioning import VersionTuple

logger = logging.getLogger(__name__)

Decision = UseLocalExact | UseRemote | BuildIncremental | BuildNew


def plan(
    target: VersionTuple,
    classification: ImageClassification,
    remote_exists: Callable[[], bool],
    flags: DecisionFlags,
    validate: Callable[[str], bool],
    *,
    remote_url: str,
    base_image: str,
) -> Decision:
    """Apply the priority order.

    *remote_exists* and *validate* are only called when their tier is
    reached, so an exact local hit never touches the network.
    """
    if flags.force_refresh:
        logger.info("Force refresh requested for %s; ignoring local images.", target.label)
    else:
        exact = classification.exact
        if exact is not None:
            if validate(exact.name):
                return UseLocalExact(image_name=exact.name)
            logger.warning("Exact match %s failed validation.", exact.name)

        compatible = classification.compatible
        if compatible is not None:
            if validate(compatible.name):
                return BuildIncremental(base_image=compatible.name)
            logger.warning("Compatible match %s failed validation.", compatible.name)

    if flags.local_dev_only:
        logger.info("Local development mode; not consulting the registry.")
    elif remote_exists():
        return UseRemote(url=remote_url)

    return BuildNew(base_image=base_image)


class CachingDecisionEngine:
    """Decides how to obtain the image for a target tuple.

    Parameters
    ----------
    index:
        Local image index; re-queried on every ``decide`` call.
    remote:
        Registry client.
    validator:
        Boots and probes candidates.
    store:
        Used to delete candidates that fail validation.
    settings:
        Supplies the OS base image per release.
    """

    def __init__(
        self,
        index: LocalImageIndex,
        remote: RemoteImageClient,
        validator: ImageValidator,
        store: VmStoreClient,
        settings: BunciSettings,
    ) -> None:
        self._index = index
        self._remote = remote
        self._validator = validator
        self._store = store
        self._settings = settings

    def _validate_or_delete(self, name: str) -> bool:
        result = self._validator.validate(name)
        if result.passed:
            return True
        logger.warning("Deleting %s: %s", name, result.reason or "validation failed")
        try:
            self._store.delete(name)
        except TartError as exc:
            logger.warning("Could not delete failed image %s: %s", name, exc)
        return False

    def decide(self, target: VersionTuple, flags: DecisionFlags | None = None) -> Decision:
        flags = flags or DecisionFlags()
        classification = self._index.classify(target)
        logger.debug(
            "Local images for %s: exact=%s compatible=%s usable=%d",
            target.label,
            classification.exact.name if classification.exact else None,
            classification.compatible.name if classification.compatible else None,
            len(classification.usable),
        )
        decision = plan(
            target,
            classification,
            lambda: self._remote.exists(
                target, force_remote_refresh=flags.force_remote_refresh
            ),
            flags,
            self._validate_or_delete,
            remote_url=self._remote.url_for(target),
            base_image=self._settings.base_image_for(target.release),
        )
        logger.info("Decision for %s: %s", target.label, decision.kind)
        return decision
