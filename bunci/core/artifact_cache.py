"""Source-hash keyed build artifact cache on the host filesystem.

Storage layout: {cache_root}/build-results/{build_type}-{key}/{artifact}
plus ``entry.json`` (the ``ArtifactCacheEntry`` manifest).

Entries are written to a temporary directory and renamed into place, so a
reader never sees a partial entry. A complete entry is never overwritten.
No eviction; the cache root is expected to be pruned by the host.
"""

from __future__ import annotations

import logging
import re
import shutil
import tempfile
from collections.abc import Sequence
from pathlib import Path

from pydantic import ValidationError

from bunci.core.hasher import compute_source_hash
from bunci.models.artifacts import SOURCE_PATTERNS, ArtifactCacheEntry, BuildType

logger = logging.getLogger(__name__)

MANIFEST_NAME = "entry.json"

_KEY = re.compile(r"^[0-9A-Za-z][0-9A-Za-z._-]*$")


class ArtifactCacheError(RuntimeError):
    """Raised when artifacts cannot be stored."""


class BuildArtifactCache:
    """Per-build-type cache of compile outputs.

    Parameters
    ----------
    cache_root:
        Root directory; entries live under ``build-results/``.
    """

    def __init__(self, cache_root: Path) -> None:
        self._root = Path(cache_root) / "build-results"

    @property
    def root(self) -> Path:
        return self._root

    def _entry_dir(self, build_type: BuildType, key: str) -> Path:
        if not isinstance(key, str) or not _KEY.match(key):
            raise ArtifactCacheError(f"Invalid cache key: {key!r}")
        return self._root / f"{BuildType(build_type).value}-{key}"

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def source_hash(self, build_type: BuildType, source_root: Path, revision: str) -> str:
        """Cache key for the sources of *build_type* under *source_root*."""
        build_type = BuildType(build_type)
        return compute_source_hash(
            build_type.value, source_root, SOURCE_PATTERNS[build_type], revision
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def entry(self, build_type: BuildType, key: str) -> ArtifactCacheEntry | None:
        """Return the manifest of a complete entry, or ``None``."""
        entry_dir = self._entry_dir(build_type, key)
        manifest = entry_dir / MANIFEST_NAME
        if not manifest.is_file():
            return None
        try:
            entry = ArtifactCacheEntry.model_validate_json(manifest.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Ignoring unreadable cache manifest %s: %s", manifest, exc)
            return None
        if any(Path(name).name != name or name in ("", ".", "..") for name in entry.artifact_paths):
            logger.warning("Cache manifest %s names files outside its entry.", manifest)
            return None
        if not all((entry_dir / name).is_file() for name in entry.artifact_paths):
            logger.warning("Cache entry %s is incomplete; treating as a miss.", entry_dir.name)
            return None
        return entry

    def lookup(self, build_type: BuildType, key: str, dest_dir: Path) -> list[Path] | None:
        """Copy a hit's artifacts into *dest_dir*; ``None`` on a miss."""
        entry = self.entry(build_type, key)
        if entry is None:
            logger.info("Cache miss for %s-%s.", BuildType(build_type).value, key[:12])
            return None
        entry_dir = self._entry_dir(build_type, key)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        restored = []
        for name in entry.artifact_paths:
            target = dest_dir / name
            shutil.copy2(entry_dir / name, target)
            restored.append(target)
        logger.info(
            "Cache hit for %s-%s: restored %d file(s).",
            BuildType(build_type).value, key[:12], len(restored),
        )
        return restored

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store(
        self,
        build_type: BuildType,
        key: str,
        artifact_paths: Sequence[Path],
        revision: str = "unknown",
    ) -> ArtifactCacheEntry:
        """Store *artifact_paths* under *key*.

        Storing to a key that already holds a complete entry is a no-op and
        returns the existing manifest.
        """
        build_type = BuildType(build_type)
        existing = self.entry(build_type, key)
        if existing is not None:
            logger.info("Cache entry %s-%s already present.", build_type.value, key[:12])
            return existing

        sources = [Path(p) for p in artifact_paths]
        missing = [str(p) for p in sources if not p.is_file()]
        if missing:
            raise ArtifactCacheError(f"Artifacts not found: {', '.join(missing)}")
        names = [p.name for p in sources]
        if len(set(names)) != len(names):
            raise ArtifactCacheError(f"Duplicate artifact file names: {names}")

        entry = ArtifactCacheEntry(
            key=key,
            build_type=build_type,
            artifact_paths=names,
            revision=revision,
        )
        final_dir = self._entry_dir(build_type, key)
        self._root.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".{final_dir.name}-", dir=self._root))
        try:
            for source in sources:
                shutil.copy2(source, staging / source.name)
            (staging / MANIFEST_NAME).write_text(entry.model_dump_json(indent=2), encoding="utf-8")
            if final_dir.exists():
                # Leftover of an interrupted store; it has no valid manifest.
                shutil.rmtree(final_dir)
            staging.rename(final_dir)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raced = self.entry(build_type, key)
            if raced is not None:
                # Another job stored the same key first.
                return raced
            raise ArtifactCacheError(f"Could not store cache entry {final_dir.name}: {exc}") from exc

        logger.info("Stored %d artifact(s) as %s.", len(names), final_dir.name)
        return entry
