"""Local image index — what versioned images does this host already have?

The index is re-queried on every call; nothing is cached because other jobs
and operators create and delete VMs out-of-band.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from bunci.bridge.tart import VmStoreClient
from bunci.core.image_names import ImageNameCodec
from bunci.models.images import (
    ImageClassification,
    ImageLocation,
    ImageRecord,
    VmSource,
)
from bunci.models.versioning import VersionTuple

logger = logging.getLogger(__name__)

_GB = 1024 ** 3


def classify(target: VersionTuple, records: Iterable[ImageRecord]) -> ImageClassification:
    """Group *records* by how well they serve *target*.

    - exact: identical tuple.
    - compatible: same release, arch and bootstrap version, same
      major.minor project version; the highest patch wins, ties go to the
      higher bootstrap version.
    - usable: same release and arch but a different major.minor line,
      newest first.
    """
    exact: ImageRecord | None = None
    compatible: list[ImageRecord] = []
    usable: list[ImageRecord] = []

    for record in records:
        t = record.version_tuple
        if not t.same_platform(target):
            continue
        if t == target:
            if exact is None:
                exact = record
            continue
        if t.minor_line == target.minor_line:
            if t.bootstrap_version == target.bootstrap_version:
                compatible.append(record)
        else:
            usable.append(record)

    best = max(
        compatible,
        key=lambda r: (r.version_tuple.semver, r.version_tuple.bootstrap_key),
        default=None,
    )
    usable.sort(
        key=lambda r: (r.version_tuple.semver, r.version_tuple.bootstrap_key),
        reverse=True,
    )
    return ImageClassification(exact=exact, compatible=best, usable=usable)


class LocalImageIndex:
    """Lists the versioned images present in the local VM store."""

    def __init__(self, store: VmStoreClient, codec: ImageNameCodec) -> None:
        self._store = store
        self._codec = codec

    def list_all(self) -> list[ImageRecord]:
        """Return every local entry whose name decodes; others are skipped."""
        records: list[ImageRecord] = []
        for entry in self._store.list():
            if entry.source != VmSource.LOCAL:
                continue
            decoded = self._codec.decode(entry.name)
            if decoded is None:
                logger.debug("Skipping unrelated VM %r.", entry.name)
                continue
            records.append(
                ImageRecord(
                    name=entry.name,
                    location=ImageLocation.LOCAL,
                    version_tuple=decoded,
                    size_bytes=entry.size_gb * _GB if entry.size_gb else None,
                )
            )
        return records

    def classify(
        self,
        target: VersionTuple,
        records: Iterable[ImageRecord] | None = None,
    ) -> ImageClassification:
        """Classify *records* (or a fresh listing) against *target*."""
        return classify(target, self.list_all() if records is None else records)

    def exists(self, name: str) -> bool:
        """Re-check that a named VM is still present in the store."""
        return any(entry.name == name for entry in self._store.list())
