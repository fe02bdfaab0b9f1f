"""Tests for VersionResolver — source priority and fallbacks."""

from __future__ import annotations

from pathlib import Path

import pytest

from bunci.core.version_resolver import (
    VersionResolver,
    normalize_version,
    read_bootstrap_version,
)
from bunci.models.versioning import (
    FALLBACK_BOOTSTRAP_VERSION,
    FALLBACK_PROJECT_VERSION,
    Arch,
    MacOSRelease,
)


class TestNormalizeVersion:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("1.2.16", "1.2.16"),
            ("v1.2.16", "1.2.16"),
            ("bun-v1.2.16", "1.2.16"),
            ("bun-v1.2.16-5-gabc123-dirty", "1.2.16"),
            (" 1.3.0\n", "1.3.0"),
            ("1.2", None),
            ("abc1234", None),
            ("", None),
            (None, None),
        ],
    )
    def test_cases(self, raw, expected):
        assert normalize_version(raw) == expected


class TestBootstrapMarker:
    def test_reads_marker(self, tmp_path: Path):
        script = tmp_path / "bootstrap.sh"
        script.write_text("#!/bin/bash\n# Version: 4.1\n")
        assert read_bootstrap_version(script) == "4.1"

    def test_missing_marker(self, tmp_path: Path):
        script = tmp_path / "bootstrap.sh"
        script.write_text("#!/bin/bash\necho hi\n")
        assert read_bootstrap_version(script) is None

    def test_missing_file(self, tmp_path: Path):
        assert read_bootstrap_version(tmp_path / "nope.sh") is None


class TestVersionResolver:
    def test_resolves_workspace(self, settings):
        t = VersionResolver(settings).resolve()
        assert t.project_version == "1.2.16"
        assert t.bootstrap_version == "4.1"
        assert t.release == MacOSRelease.SONOMA
        assert t.arch == Arch.ARM64

    def test_release_override(self, settings):
        t = VersionResolver(settings).resolve(release=MacOSRelease.SEQUOIA)
        assert t.release == MacOSRelease.SEQUOIA

    def test_build_config_used_when_manifest_malformed(self, settings, workspace: Path):
        (workspace / "package.json").write_text('{"version": "latest"}')
        (workspace / "CMakeLists.txt").write_text('set(Bun_VERSION "1.2.17")\n')
        assert VersionResolver(settings).project_version() == "1.2.17"

    def test_vcs_used_after_files(self, settings, workspace: Path, monkeypatch):
        (workspace / "package.json").unlink()
        resolver = VersionResolver(settings)
        monkeypatch.setattr(resolver, "_git", lambda *args: "bun-v1.2.18-3-gdeadbee")
        assert resolver.project_version() == "1.2.18"

    def test_fallback_when_nothing_found(self, settings, workspace: Path, monkeypatch):
        (workspace / "package.json").unlink()
        resolver = VersionResolver(settings)
        monkeypatch.setattr(resolver, "_git", lambda *args: None)
        assert resolver.project_version() == FALLBACK_PROJECT_VERSION

    def test_bootstrap_fallback(self, make_settings, workspace: Path):
        settings = make_settings(bootstrap_script=workspace / "missing.sh")
        assert VersionResolver(settings).bootstrap_version() == FALLBACK_BOOTSTRAP_VERSION

    def test_revision_unknown_without_vcs(self, settings, monkeypatch):
        resolver = VersionResolver(settings)
        monkeypatch.setattr(resolver, "_git", lambda *args: None)
        assert resolver.revision() == "unknown"
