"""Tests for ImageNameCodec — naming templates in both directions."""

from __future__ import annotations

import pytest

from bunci.core.image_names import ImageNameCodec
from bunci.models.versioning import Arch, MacOSRelease, VersionTuple

REGISTRY = "ghcr.io/build-archetype/client-oven-sh-bun"


def _tuple(release="14", arch=Arch.ARM64, version="1.2.16", bootstrap="4.1") -> VersionTuple:
    return VersionTuple(
        release=MacOSRelease(release),
        arch=arch,
        project_version=version,
        bootstrap_version=bootstrap,
    )


class TestEncode:
    def test_default_arch_is_omitted(self, codec: ImageNameCodec):
        assert codec.encode(_tuple()) == "bun-build-macos-14-1.2.16-bootstrap-4.1"

    def test_other_arch_is_included(self, codec: ImageNameCodec):
        name = codec.encode(_tuple(arch=Arch.X64))
        assert name == "bun-build-macos-14-x64-1.2.16-bootstrap-4.1"

    def test_arch_qualified_codec(self):
        codec = ImageNameCodec(arch_qualified=True)
        assert codec.encode(_tuple()) == "bun-build-macos-14-arm64-1.2.16-bootstrap-4.1"

    def test_remote_urls(self, codec: ImageNameCodec):
        t = _tuple()
        assert codec.remote_url(t) == f"{REGISTRY}/bun-build-macos-14:1.2.16-bootstrap-4.1"
        assert codec.latest_url(t) == f"{REGISTRY}/bun-build-macos-14:latest"


class TestDecode:
    @pytest.mark.parametrize(
        "t",
        [
            _tuple(),
            _tuple("13", Arch.X64, "0.9.0", "3.6"),
            _tuple("15", Arch.ARM64, "10.20.30", "12.0"),
        ],
    )
    @pytest.mark.parametrize("qualified", [False, True])
    def test_round_trip(self, t: VersionTuple, qualified: bool):
        codec = ImageNameCodec(arch_qualified=qualified)
        assert codec.decode(codec.encode(t)) == t
        assert codec.decode_remote(codec.remote_url(t)) == t

    def test_decode_known_names(self, codec: ImageNameCodec):
        assert codec.decode("bun-build-macos-14-1.2.15-bootstrap-4.1") == _tuple(version="1.2.15")
        assert codec.decode("bun-build-macos-15-x64-1.3.0-bootstrap-5.0") == _tuple(
            "15", Arch.X64, "1.3.0", "5.0"
        )

    @pytest.mark.parametrize(
        "name",
        [
            "",
            "macos-sonoma-xcode",
            "bun-build-macos-14",
            "bun-build-macos-14-1.2-bootstrap-4.1",
            "bun-build-macos-14-1.2.16-bootstrap-4",
            "bun-build-macos-14-1.2.16-bootstrap-4.1-extra",
            "bun-build-macos-12-1.2.16-bootstrap-4.1",
            "bun-build-macos-14-riscv-1.2.16-bootstrap-4.1",
            "bun-build-1700000000-abcdef",
            "other-build-macos-14-1.2.16-bootstrap-4.1",
        ],
    )
    def test_unrelated_names_decode_to_none(self, codec: ImageNameCodec, name: str):
        assert codec.decode(name) is None

    def test_remote_from_other_registry_is_none(self, codec: ImageNameCodec):
        assert codec.decode_remote("ghcr.io/someone/else/bun-build-macos-14:1.2.16-bootstrap-4.1") is None
        assert codec.decode_remote(f"{REGISTRY}/bun-build-macos-14:latest") is None

    def test_custom_prefix(self):
        codec = ImageNameCodec("ci")
        t = _tuple()
        assert codec.encode(t).startswith("ci-macos-14-")
        assert codec.decode("bun-build-macos-14-1.2.16-bootstrap-4.1") is None


class TestEphemeralNames:
    def test_ephemeral_names_are_unique_and_recognized(self, codec: ImageNameCodec):
        a = codec.ephemeral_name(now=1_700_000_000)
        b = codec.ephemeral_name(now=1_700_000_000)
        assert a != b
        assert codec.is_ephemeral(a)
        assert codec.ephemeral_created_at(a) == 1_700_000_000

    def test_versioned_names_are_not_ephemeral(self, codec: ImageNameCodec):
        name = codec.encode(_tuple())
        assert not codec.is_ephemeral(name)
        assert codec.ephemeral_created_at(name) is None
