"""Tests for ImageValidator — probing images through throwaway clones."""

from __future__ import annotations

from bunci.bridge.ssh import ExecResult
from bunci.core.validator import REQUIRED_TOOLS, ImageValidator

from tests.conftest import FakeShell, no_sleep

IMAGE = "bun-build-macos-14-1.2.16-bootstrap-4.1"


def _validator(store, shell_factory, codec, settings) -> ImageValidator:
    return ImageValidator(store, shell_factory, codec, settings, sleep=no_sleep)


class TestValidate:
    def test_complete_image_passes(self, store, shell_factory, codec, settings):
        store.add(IMAGE)
        result = _validator(store, shell_factory, codec, settings).validate(IMAGE)
        assert result.passed
        assert {p.name for p in result.probes} == set(REQUIRED_TOOLS) | {"macos-sdk"}

    def test_candidate_never_booted(self, store, shell_factory, codec, settings):
        store.add(IMAGE)
        _validator(store, shell_factory, codec, settings).validate(IMAGE)
        booted = [c[1] for c in store.calls_named("run")]
        assert IMAGE not in booted
        assert all(codec.is_ephemeral(name) for name in booted)

    def test_clone_is_always_deleted(self, store, shell_factory, codec, settings):
        store.add(IMAGE)
        _validator(store, shell_factory, codec, settings).validate(IMAGE)
        assert store.names() == {IMAGE}

    def test_missing_tool_fails(self, store, shell_factory, codec, settings):
        store.add(IMAGE)
        shell_factory.broken_images.add(IMAGE)
        result = _validator(store, shell_factory, codec, settings).validate(IMAGE)
        assert not result.passed
        assert result.missing_tools == ["bun"]
        assert IMAGE in store.names()

    def test_session_error_is_a_failed_result(self, store, shell_factory, codec, settings):
        store.add(IMAGE)
        store.network_up = False
        result = _validator(store, shell_factory, codec, settings).validate(IMAGE)
        assert not result.passed
        assert "wait_for_network" in result.reason
        assert store.names() == {IMAGE}

    def test_missing_image_is_a_failed_result(self, store, shell_factory, codec, settings):
        result = _validator(store, shell_factory, codec, settings).validate(IMAGE)
        assert not result.passed
        assert "clone" in result.reason


class TestRunProbes:
    def test_probes_use_login_shell(self, store, shell_factory, codec, settings):
        shell = FakeShell("10.0.0.1", None, set(), shell_factory)
        result = _validator(store, shell_factory, codec, settings).run_probes(shell)
        assert result.passed
        assert all(cmd.startswith("bash -l -c ") for cmd in shell.commands)

    def test_sdk_probe_failure(self, store, shell_factory, codec, settings):
        shell = FakeShell("10.0.0.1", None, {"macos-sdk"}, shell_factory)
        result = _validator(store, shell_factory, codec, settings).run_probes(shell)
        assert result.missing_tools == ["macos-sdk"]

    def test_probe_output_recorded(self, store, shell_factory, codec, settings):
        class OneShell:
            def exec(self, command, *, timeout=None):
                return ExecResult(exit_code=0, stdout="/opt/homebrew/bin/tool\n")

        result = _validator(store, shell_factory, codec, settings).run_probes(OneShell())
        assert result.probes[0].output == "/opt/homebrew/bin/tool"
