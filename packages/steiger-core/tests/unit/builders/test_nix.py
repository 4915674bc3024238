"""Unit tests for the nix flake backend.

Tests cover:
- Platform to nix system conversion
- internal-json log line parsing and forwarding
- Package selection by attribute path
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from steiger_core.builders import BuildContext, NixBuilder
from steiger_core.builders.nix import (
    NIX_BINARY_ENV,
    NIX_EVAL_JOBS_BINARY_ENV,
    NixError,
    parse_log_line,
    report_action,
    try_system,
)
from steiger_core.progress import MessageLevel, ProgressTree
from steiger_core.schemas.config import NixBuildConfig


class TestTrySystem:
    @pytest.mark.parametrize(
        ("platform", "system"),
        [
            ("linux/amd64", "x86_64-linux"),
            ("linux/arm64", "aarch64-linux"),
            ("darwin/arm64", "aarch64-darwin"),
        ],
    )
    def test_supported(self, platform: str, system: str) -> None:
        assert try_system(platform) == system

    def test_unsupported_architecture(self) -> None:
        with pytest.raises(NixError, match="failed to convert platform to nix system"):
            try_system("linux/riscv64")

    @pytest.mark.parametrize("platform", ["linux", "linux/", "/amd64"])
    def test_malformed(self, platform: str) -> None:
        with pytest.raises(NixError, match="invalid platform"):
            try_system(platform)


class TestLogParsing:
    """Tests for nix internal-json log handling."""

    def test_plain_line_is_ignored(self) -> None:
        assert parse_log_line("warning: Git tree is dirty") is None

    def test_action_line(self) -> None:
        action = parse_log_line('@nix {"action":"msg","level":0,"msg":"evaluating"}')

        assert action == {"action": "msg", "level": 0, "msg": "evaluating"}

    def test_malformed_action(self) -> None:
        with pytest.raises(NixError, match="failed to parse nix log message"):
            parse_log_line("@nix {broken")

    def test_build_log_line_is_forwarded_unescaped(self) -> None:
        tree = ProgressTree()
        report_action(
            {"action": "result", "type": 101, "fields": ["\\u001b[1mcompiling\\u001b[0m"]},
            tree.add_child("pkg"),
        )

        assert tree.messages[0].text == "\x1b[1mcompiling\x1b[0m"

    def test_set_phase_renames_node(self) -> None:
        tree = ProgressTree()
        node = tree.add_child("pkg")

        report_action({"action": "result", "type": 104, "fields": ["buildPhase"]}, node)

        assert node.name == "buildPhase"
        assert tree.messages[0].text == "entering buildPhase"

    def test_corrupted_path_is_failure(self) -> None:
        tree = ProgressTree()

        report_action({"action": "result", "type": 103, "fields": ["/nix/store/x"]}, tree.add_child("p"))

        assert tree.messages[0].level is MessageLevel.FAILURE

    def test_verbose_messages_are_dropped(self) -> None:
        tree = ProgressTree()
        node = tree.add_child("pkg")

        report_action({"action": "msg", "level": 5, "msg": "debug noise"}, node)
        report_action({"action": "start", "id": 1}, node)

        assert tree.messages == []


class TestNixBuilder:
    """Tests for the build flow with nix commands mocked out."""

    def test_initialize_honours_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(NIX_BINARY_ENV, "/opt/nix/bin/nix")
        monkeypatch.setenv(NIX_EVAL_JOBS_BINARY_ENV, "/opt/nix/bin/nix-eval-jobs")

        builder = NixBuilder.initialize()

        assert builder.nix_binary == Path("/opt/nix/bin/nix")
        assert builder.eval_binary == Path("/opt/nix/bin/nix-eval-jobs")

    @pytest.mark.asyncio
    async def test_system_without_packages_builds_nothing(self) -> None:
        builder = NixBuilder(Path("nix"), Path("nix-eval-jobs"))
        builder.detect_systems = AsyncMock(return_value=["x86_64-linux"])  # type: ignore[method-assign]
        builder.evaluate = AsyncMock()  # type: ignore[method-assign]
        context = BuildContext("tools", "linux/arm64", ProgressTree().add_child("tools"))

        output = await builder.build(context, NixBuildConfig(packages={"toolbox": "toolbox"}))

        assert output.artifacts == {}
        builder.evaluate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_selects_configured_packages(
        self, monkeypatch: pytest.MonkeyPatch, make_image
    ) -> None:
        image = make_image([b"toolbox"])
        jobs = [
            {"attr": "toolbox", "attrPath": ["toolbox"], "drvPath": "/nix/store/a.drv",
             "outputs": {"out": "/nix/store/a-toolbox"}},
            {"attr": "docs", "attrPath": ["docs"], "drvPath": "/nix/store/b.drv",
             "outputs": {"out": "/nix/store/b-docs"}},
        ]
        builder = NixBuilder(Path("nix"), Path("nix-eval-jobs"))
        builder.detect_systems = AsyncMock(return_value=["x86_64-linux"])  # type: ignore[method-assign]
        builder.evaluate = AsyncMock(return_value=jobs)  # type: ignore[method-assign]
        builder.build_job = AsyncMock(return_value=Path("/nix/store/a-toolbox"))  # type: ignore[method-assign]
        load = AsyncMock(return_value=[image])
        monkeypatch.setattr("steiger_core.builders.nix.load_from_path", load)
        context = BuildContext("tools", "linux/amd64", ProgressTree().add_child("tools"))

        output = await builder.build(context, NixBuildConfig(packages={"box": "toolbox"}))

        assert output.artifacts == {"box": [image]}
        assert builder.build_job.await_count == 1
        assert builder.build_job.await_args.args[0]["attr"] == "toolbox"
        load.assert_awaited_once_with(Path("/nix/store/a-toolbox"))

    @pytest.mark.asyncio
    async def test_evaluation_error_fails_job(self) -> None:
        builder = NixBuilder(Path("nix"), Path("nix-eval-jobs"))
        progress = ProgressTree().add_child("tools")

        with pytest.raises(NixError, match="failed to evaluate toolbox: attribute missing"):
            await builder.build_job({"attr": "toolbox", "error": "attribute missing"}, progress)
