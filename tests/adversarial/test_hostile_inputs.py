"""Adversarial tests — hostile names, environments and cache keys.

These tests verify that:
1. Look-alike VM names are never treated as versioned or session VMs
2. Cleanup never touches VMs it did not create
3. A candidate that fails validation is never offered twice
4. Forwarded environment values cannot inject shell commands
5. Cache keys cannot escape the cache root
"""

from __future__ import annotations

import shlex
from pathlib import Path

import pytest

from bunci.core.artifact_cache import ArtifactCacheError, BuildArtifactCache
from bunci.core.janitor import VmJanitor
from bunci.core.job_runner import forwarded_environment, render_env_file
from bunci.models.artifacts import BuildType
from bunci.models.decisions import DecisionFlags, UseLocalExact
from bunci.models.images import VmSource

EXACT = "bun-build-macos-14-1.2.16-bootstrap-4.1"

LOOK_ALIKES = [
    " bun-build-macos-14-1.2.16-bootstrap-4.1-copy",
    "bun-build-macos-14-1.2.16-bootstrap-4.1.bak",
    "bun-build-macos-14-1.2.16-rc1-bootstrap-4.1",
    "bun-build-macos-14-01.2.16x-bootstrap-4.1",
    "BUN-BUILD-MACOS-14-1.2.16-BOOTSTRAP-4.1",
    "bun-build-macos-14-1.2.16-bootstrap-4.1\nrm -rf /",
    "../bun-build-macos-14-1.2.16-bootstrap-4.1",
    "bun-build-macos-14-1.2.16-bootstrap-4.1; tart delete everything",
]

SESSION_LOOK_ALIKES = [
    "bun-build-1700000000",
    "bun-build-1700000000-ABCDEF",
    "bun-build-1700000000-abc123-keep",
    "bun-build-now-abc123",
    "my-bun-build-1700000000-abc123",
]


class TestLookAlikeNames:
    @pytest.mark.parametrize("name", LOOK_ALIKES)
    def test_not_decoded(self, codec, name):
        assert codec.decode(name) is None

    @pytest.mark.parametrize("name", SESSION_LOOK_ALIKES)
    def test_not_ephemeral(self, codec, name):
        assert not codec.is_ephemeral(name)

    def test_index_ignores_look_alikes(self, plane, store, target):
        for name in LOOK_ALIKES:
            store.add(name)
        classification = plane.index.classify(target)
        assert classification.exact is None
        assert classification.compatible is None
        assert classification.usable == []

    def test_oci_entries_are_not_local_images(self, plane, store, target):
        store.add(EXACT, source=VmSource.OCI)
        assert plane.index.classify(target).exact is None


class TestCleanupBoundaries:
    def test_janitor_spares_foreign_vms(self, store, codec, settings):
        keep = SESSION_LOOK_ALIKES + LOOK_ALIKES + [EXACT, "macos-sonoma-xcode"]
        for name in keep:
            store.add(name)
        store.add("bun-build-1699999000-dead01")
        janitor = VmJanitor(store, codec, settings, clock=lambda: 1_700_000_000.0)
        assert janitor.cleanup_orphans() == ["bun-build-1699999000-dead01"]
        assert store.names() == set(keep)

    def test_purge_spares_running_images(self, store, codec, settings, target):
        others = [
            "bun-build-macos-15-1.2.16-bootstrap-3.0",
            "bun-build-macos-14-x64-1.2.16-bootstrap-3.0",
        ]
        for name in others:
            store.add(name, running=True)
        janitor = VmJanitor(store, codec, settings)
        assert janitor.purge_stale_bootstrap(target.bootstrap_version) == []
        assert store.names() == set(others)


class TestFailedCandidates:
    def test_failed_exact_is_not_chosen_twice(self, plane, store, shell_factory, target):
        store.add(EXACT)
        shell_factory.broken_images.add(EXACT)
        flags = DecisionFlags(local_dev_only=True)
        plane.engine.decide(target, flags)
        plane.engine.decide(target, flags)
        validations = [c for c in store.calls_named("clone") if c[1] == EXACT]
        assert len(validations) == 1

    def test_rebuilt_image_replaces_broken_one(self, plane, store, shell_factory, target):
        store.add(EXACT)
        shell_factory.broken_images.add(EXACT)
        result = plane.provisioner.ensure(target, DecisionFlags(local_dev_only=True))
        assert result.image_name == EXACT
        assert store.origin(EXACT) != EXACT
        shell_factory.broken_images.clear()
        again = plane.provisioner.ensure(target, DecisionFlags(local_dev_only=True))
        assert again.decision == UseLocalExact(image_name=EXACT)


class TestEnvironmentInjection:
    @pytest.mark.parametrize(
        "value",
        ["$(touch /tmp/pwned)", "`id`", "a'; rm -rf ~; echo '", "line1\nline2", "x && y"],
    )
    def test_values_are_inert(self, value):
        text = render_env_file({"PAYLOAD": value})
        first = text.split("\nexport PATH")[0]
        assert shlex.split(first) == ["export", f"PAYLOAD={value}"]

    def test_hostile_names_dropped(self):
        env = forwarded_environment(
            {"A;rm -rf /": "1", "$(id)": "1", "B C": "1", "1ABC": "1", "OK_NAME": "1"},
            "/Volumes/My Shared Files/workspace",
        )
        assert env == {"OK_NAME": "1"}


class TestCacheKeys:
    @pytest.mark.parametrize(
        "key", ["../escape", "a/b", "", ".hidden", "..", "k\x00ey", "/abs"]
    )
    def test_unsafe_keys_rejected(self, tmp_path: Path, key):
        cache = BuildArtifactCache(tmp_path / "cache")
        artifact = tmp_path / "lib.a"
        artifact.write_bytes(b"x")
        with pytest.raises(ArtifactCacheError):
            cache.store(BuildType.CPP, key, [artifact])
        with pytest.raises(ArtifactCacheError):
            cache.lookup(BuildType.CPP, key, tmp_path / "out")
        assert not (tmp_path / "escape").exists()

    def test_corrupt_manifest_is_a_miss(self, tmp_path: Path):
        cache = BuildArtifactCache(tmp_path / "cache")
        entry_dir = cache.root / "cpp-abc"
        entry_dir.mkdir(parents=True)
        (entry_dir / "entry.json").write_text("{not json")
        assert cache.lookup(BuildType.CPP, "abc", tmp_path / "out") is None

    def test_manifest_cannot_reference_outside_files(self, tmp_path: Path):
        secret = tmp_path / "secret.txt"
        secret.write_text("s")
        cache = BuildArtifactCache(tmp_path / "cache")
        entry_dir = cache.root / "cpp-abc"
        entry_dir.mkdir(parents=True)
        (entry_dir / "entry.json").write_text(
            '{"key": "abc", "build_type": "cpp", "artifact_paths": ["../../../secret.txt"]}'
        )
        assert cache.lookup(BuildType.CPP, "abc", tmp_path / "out") is None
