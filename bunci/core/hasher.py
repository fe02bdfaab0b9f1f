"""Canonical hashing helpers for build-cache keys.

Keys must be stable across hosts and Python versions, so every hashed
structure goes through one canonical JSON encoding.
"""

from __future__ import annotations

import fnmatch
import hashlib
import json
import os
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

# Directories never hashed: build outputs, dependency trees and VCS metadata.
SKIP_DIRS = frozenset({
    ".git", ".hg", ".svn", "build", "out", "dist", "node_modules",
    "zig-cache", ".zig-cache", "zig-out", "target", ".cache",
})

_CHUNK = 1024 * 1024


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: sorted keys, compact, ASCII, UTF-8."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """SHA-256 of a file's contents, read in chunks."""
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def iter_source_files(root: Path, patterns: Sequence[str]) -> Iterator[Path]:
    """Yield files under *root* matching any of *patterns*, skipping ``SKIP_DIRS``."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for filename in sorted(filenames):
            if any(fnmatch.fnmatch(filename, pattern) for pattern in patterns):
                yield Path(dirpath) / filename


def compute_source_hash(
    build_type: str,
    root: Path,
    patterns: Sequence[str],
    revision: str,
) -> str:
    """SHA-256 of canonical(build type + revision + sorted (path, content hash)).

    Paths are relative to *root* and use forward slashes, so the same tree
    hashes identically wherever it is checked out.
    """
    root = Path(root)
    files = sorted(
        (path.relative_to(root).as_posix(), sha256_file(path))
        for path in iter_source_files(root, patterns)
    )
    payload = {
        "build_type": build_type,
        "revision": revision,
        "files": [list(pair) for pair in files],
    }
    return sha256_hex(canonical_json_bytes(payload))
