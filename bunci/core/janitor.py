"""Host hygiene: orphaned session VMs and disk pressure.

Runs at the start of every build or validate cycle. Nothing here is fatal:
failures are logged and the caller carries on.
"""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable
from pathlib import Path

from bunci.bridge.tart import TartError, VmStoreClient
from bunci.config import BunciSettings
from bunci.core.image_names import ImageNameCodec
from bunci.models.images import VmEntry, VmSource
from bunci.models.versioning import Arch, MacOSRelease

logger = logging.getLogger(__name__)


def disk_usage_percent(path: Path) -> int:
    """Used space on the volume holding *path*, as a whole percentage."""
    usage = shutil.disk_usage(path)
    if usage.total == 0:
        return 0
    return int(usage.used * 100 / usage.total)


class VmJanitor:
    """Deletes leftovers from interrupted sessions and stale images.

    Parameters
    ----------
    store:
        Local VM store.
    codec:
        Recognizes ephemeral and versioned names.
    settings:
        ``max_vm_age_hours`` and ``disk_usage_threshold``.
    clock:
        Returns the current epoch time.
    usage:
        Returns the used-space percentage of a path.
    """

    def __init__(
        self,
        store: VmStoreClient,
        codec: ImageNameCodec,
        settings: BunciSettings,
        *,
        clock: Callable[[], float] = time.time,
        usage: Callable[[Path], int] = disk_usage_percent,
    ) -> None:
        self._store = store
        self._codec = codec
        self._settings = settings
        self._clock = clock
        self._usage = usage

    def _delete(self, name: str) -> bool:
        try:
            self._store.delete(name)
        except TartError as exc:
            logger.warning("Could not delete %s: %s", name, exc)
            return False
        logger.info("Deleted %s.", name)
        return True

    def _is_orphan(self, entry: VmEntry, now: float) -> bool:
        created = self._codec.ephemeral_created_at(entry.name)
        if created is None:
            return False
        if not entry.running:
            return True
        age_hours = (now - created) / 3600.0
        return age_hours > self._settings.max_vm_age_hours

    def cleanup_orphans(self) -> list[str]:
        """Delete session VMs that are stopped or older than the age limit.

        Running session VMs younger than the limit may belong to a concurrent
        job on this host and are left alone.
        """
        try:
            entries = self._store.list()
        except TartError as exc:
            logger.warning("Orphan cleanup skipped, could not list VMs: %s", exc)
            return []
        now = self._clock()
        deleted: list[str] = []
        for entry in entries:
            if entry.source != VmSource.LOCAL or not self._is_orphan(entry, now):
                continue
            if entry.running:
                try:
                    self._store.stop(entry.name, timeout=self._settings.shutdown_grace_seconds)
                except TartError as exc:
                    logger.debug("Stop of %s failed: %s", entry.name, exc)
            if self._delete(entry.name):
                deleted.append(entry.name)
        if deleted:
            logger.info("Removed %d orphaned VM(s).", len(deleted))
        return deleted

    def purge_stale_bootstrap(self, keep_bootstrap: str) -> list[str]:
        """Delete versioned images built with any other bootstrap version."""
        deleted: list[str] = []
        for entry in self._store.list():
            if entry.source != VmSource.LOCAL or entry.running:
                continue
            decoded = self._codec.decode(entry.name)
            if decoded is None or decoded.bootstrap_version == keep_bootstrap:
                continue
            if self._delete(entry.name):
                deleted.append(entry.name)
        return deleted

    def purge_versioned(self, release: MacOSRelease, arch: Arch) -> list[str]:
        """Delete every versioned image for *release*/*arch*."""
        deleted: list[str] = []
        for entry in self._store.list():
            if entry.source != VmSource.LOCAL:
                continue
            decoded = self._codec.decode(entry.name)
            if decoded is None or decoded.release != release or decoded.arch != arch:
                continue
            if self._delete(entry.name):
                deleted.append(entry.name)
        return deleted

    def relieve_disk_pressure(
        self,
        path: Path | None = None,
        keep_bootstrap: str | None = None,
        *,
        force: bool = False,
    ) -> bool:
        """Free space when usage exceeds the threshold; runs a single pass.

        Returns ``True`` if usage is at or below the threshold afterwards.
        Never raises for a full disk, only warns.
        """
        path = path or Path.home()
        threshold = self._settings.disk_usage_threshold
        try:
            before = self._usage(path)
        except OSError as exc:
            logger.warning("Could not read disk usage of %s: %s", path, exc)
            return True

        if before <= threshold and not force:
            logger.debug("Disk usage %d%% is under the %d%% threshold.", before, threshold)
            return True

        logger.warning("Disk usage %d%% (threshold %d%%); cleaning up.", before, threshold)
        self.cleanup_orphans()
        if keep_bootstrap is not None:
            try:
                self.purge_stale_bootstrap(keep_bootstrap)
            except TartError as exc:
                logger.warning("Stale image cleanup skipped: %s", exc)

        after = self._usage(path)
        if after > threshold:
            logger.warning(
                "Disk usage still %d%% after cleanup; builds may fail for lack of space.",
                after,
            )
            return False
        logger.info("Disk usage down from %d%% to %d%%.", before, after)
        return True
