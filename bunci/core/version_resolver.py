"""Resolve the version coordinates that key every image cache decision.

Project version sources are tried in a fixed order: ``package.json`` >
``CMakeLists.txt`` > ``git describe`` > fallback constant. The first
non-empty, well-formed candidate wins. The resolver never raises.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from pathlib import Path

from bunci.config import BunciSettings
from bunci.models.versioning import (
    FALLBACK_BOOTSTRAP_VERSION,
    FALLBACK_PROJECT_VERSION,
    Arch,
    MacOSRelease,
    VersionTuple,
)

logger = logging.getLogger(__name__)

_LEADING_SEMVER = re.compile(r"^(\d+\.\d+\.\d+)")
_CMAKE_VERSION = re.compile(r'set\(\s*Bun_VERSION\s+"([^"]+)"')
_VERSION_MARKER = re.compile(r"^# Version: (\d+\.\d+)\b")


def normalize_version(raw: str | None) -> str | None:
    """Strip ``bun-v``/``v`` prefixes and return the leading MAJOR.MINOR.PATCH.

    Returns ``None`` when the candidate is empty or malformed.
    """
    if not raw:
        return None
    candidate = raw.strip()
    for prefix in ("bun-v", "bun-", "v"):
        if candidate.startswith(prefix):
            candidate = candidate[len(prefix):]
    match = _LEADING_SEMVER.match(candidate)
    return match.group(1) if match else None


def read_bootstrap_version(script: Path) -> str | None:
    """Return the ``# Version: X.Y`` marker of a bootstrap script, if any."""
    try:
        with script.open(encoding="utf-8", errors="replace") as fh:
            for line in fh:
                match = _VERSION_MARKER.match(line)
                if match:
                    return match.group(1)
    except OSError:
        return None
    return None


class VersionResolver:
    """Derives the target ``VersionTuple`` from the checked-out project.

    Parameters
    ----------
    settings:
        Supplies the project root, bootstrap script path, release and arch.
    git_binary:
        Executable used for the VCS fallback.
    """

    def __init__(self, settings: BunciSettings, *, git_binary: str = "git") -> None:
        self._settings = settings
        self._root = Path(settings.workspace)
        self._git_binary = git_binary

    # ------------------------------------------------------------------
    # Project version sources, in priority order
    # ------------------------------------------------------------------

    def _from_manifest(self) -> str | None:
        path = self._root / "package.json"
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        return normalize_version(str(data.get("version") or ""))

    def _from_build_config(self) -> str | None:
        path = self._root / "CMakeLists.txt"
        try:
            match = _CMAKE_VERSION.search(path.read_text(encoding="utf-8"))
        except OSError:
            return None
        return normalize_version(match.group(1)) if match else None

    def _git(self, *args: str) -> str | None:
        try:
            result = subprocess.run(
                [self._git_binary, *args],
                cwd=self._root,
                capture_output=True,
                text=True,
                timeout=15,
            )
        except (subprocess.SubprocessError, OSError):
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def _from_vcs(self) -> str | None:
        return normalize_version(self._git("describe", "--tags", "--always", "--dirty"))

    def project_version(self) -> str:
        for source, reader in (
            ("package.json", self._from_manifest),
            ("CMakeLists.txt", self._from_build_config),
            ("git describe", self._from_vcs),
        ):
            version = reader()
            if version:
                logger.debug("Project version %s from %s.", version, source)
                return version
        logger.warning(
            "No well-formed project version found, using fallback %s.",
            FALLBACK_PROJECT_VERSION,
        )
        return FALLBACK_PROJECT_VERSION

    def bootstrap_version(self) -> str:
        script = Path(self._settings.bootstrap_script)
        if not script.is_absolute():
            script = self._root / script
        version = read_bootstrap_version(script)
        if version is None:
            logger.warning(
                "No '# Version:' marker in %s, using fallback bootstrap version %s.",
                script, FALLBACK_BOOTSTRAP_VERSION,
            )
            return FALLBACK_BOOTSTRAP_VERSION
        return version

    def revision(self) -> str:
        """Current source-control revision, or ``"unknown"``."""
        return self._git("rev-parse", "HEAD") or "unknown"

    def resolve(
        self,
        *,
        release: MacOSRelease | None = None,
        arch: Arch | None = None,
    ) -> VersionTuple:
        return VersionTuple(
            release=release or self._settings.macos_release,
            arch=arch or self._settings.arch,
            project_version=self.project_version(),
            bootstrap_version=self.bootstrap_version(),
        )
