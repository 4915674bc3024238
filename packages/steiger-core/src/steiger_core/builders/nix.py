"""Nix flake backend.

The flake is evaluated with ``nix-eval-jobs`` for the system matching the
requested platform; every evaluated derivation whose attribute path is a
configured package is then built with ``nix build``. Each package output is
expected to be an OCI image layout directory (e.g. from ``nix2container``
or ``dockerTools`` with an OCI exporter).

Both binaries can be overridden with ``NIX_BINARY`` and
``NIX_EVAL_JOBS_BINARY``.

Build logs are read from nix's ``internal-json`` log format: every
relevant stderr line looks like ``@nix {"action": "...", ...}``.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any

import structlog

from steiger_core.builders.base import BuildContext, Builder, BuildOutput
from steiger_core.errors import BuildError, ExitError
from steiger_core.exec import iter_lines, proxy_lines, run_with_output, spawn, which
from steiger_core.image import load_from_path
from steiger_core.progress import Progress
from steiger_core.schemas.config import BuilderKind, NixBuildConfig

logger = structlog.get_logger(__name__)

NIX_BINARY_ENV = "NIX_BINARY"
NIX_EVAL_JOBS_BINARY_ENV = "NIX_EVAL_JOBS_BINARY"

_NIX_ARCHITECTURES = {"arm64": "aarch64", "amd64": "x86_64"}

# Nix sometimes double-escapes ANSI sequences in build log lines.
_ESCAPED_ANSI = re.compile(r"\\u001b|\\033|\\x1b|\\e")

# Verbosity levels up to and including "info" are forwarded.
_MAX_FORWARDED_VERBOSITY = 3


class NixError(BuildError):
    """Raised when evaluation fails or a platform has no nix system."""


def try_system(platform: str) -> str:
    """Convert an ``os/arch`` platform into a nix system string.

    Raises:
        NixError: If the platform is malformed or has no nix equivalent.

    Example:
        >>> try_system("linux/amd64")
        'x86_64-linux'
    """
    os_name, sep, arch = platform.partition("/")
    if not sep or not os_name or not arch:
        raise NixError(f"invalid platform: {platform}")
    if arch not in _NIX_ARCHITECTURES:
        raise NixError(f"failed to convert platform to nix system: {platform}")
    return f"{_NIX_ARCHITECTURES[arch]}-{os_name}"


def unescape_ansi(text: str) -> str:
    return _ESCAPED_ANSI.sub("\x1b", text)


# =============================================================================
# internal-json log events
# =============================================================================

_FILE_LINKED = 100
_BUILD_LOG_LINE = 101
_UNTRUSTED_PATH = 102
_CORRUPTED_PATH = 103
_SET_PHASE = 104
_POST_BUILD_LOG_LINE = 107


def report_action(action: dict[str, Any], progress: Progress) -> None:
    """Forward one ``@nix`` log action to a progress node."""
    kind = action.get("action")
    if kind == "msg":
        message = action.get("msg") or ""
        if message and action.get("level", 0) <= _MAX_FORWARDED_VERBOSITY:
            progress.info(message)
        return
    if kind != "result":
        return

    fields = action.get("fields") or []
    if not fields or not isinstance(fields[0], str):
        return

    result_type = action.get("type")
    if result_type in (_BUILD_LOG_LINE, _POST_BUILD_LOG_LINE):
        progress.info(unescape_ansi(fields[0]))
    elif result_type == _FILE_LINKED and len(fields) > 1:
        progress.done(f"linked {fields[0]} → {fields[1]}")
    elif result_type == _UNTRUSTED_PATH:
        progress.fail(f"untrusted: {fields[0]}")
    elif result_type == _CORRUPTED_PATH:
        progress.fail(f"corrupted: {fields[0]}")
    elif result_type == _SET_PHASE:
        progress.set_name(fields[0])
        progress.info(f"entering {fields[0]}")


def parse_log_line(line: str) -> dict[str, Any] | None:
    """Parse an ``@nix {...}`` stderr line, or return None for plain output."""
    if not line.startswith("@nix "):
        return None
    try:
        action = json.loads(line[len("@nix ") :])
    except json.JSONDecodeError as e:
        raise NixError(f"failed to parse nix log message: {e}") from e
    return action if isinstance(action, dict) else None


# =============================================================================
# Builder
# =============================================================================


class NixBuilder(Builder):
    kind = BuilderKind.NIX

    def __init__(self, nix_binary: Path, eval_binary: Path) -> None:
        self.nix_binary = nix_binary
        self.eval_binary = eval_binary

    @classmethod
    def initialize(cls) -> NixBuilder:
        nix = os.environ.get(NIX_BINARY_ENV)
        eval_jobs = os.environ.get(NIX_EVAL_JOBS_BINARY_ENV)
        return cls(
            nix_binary=Path(nix) if nix else which(cls.kind.value, "nix"),
            eval_binary=Path(eval_jobs) if eval_jobs else which(cls.kind.value, "nix-eval-jobs"),
        )

    async def detect_systems(self, flake: str) -> list[str]:
        """List the systems the flake exposes packages for."""
        stdout = await run_with_output(
            [self.nix_binary, "eval", f"{flake}#packages", "--apply", "builtins.attrNames", "--json"]
        )
        try:
            systems = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise NixError(f"failed to parse flake systems: {e}") from e
        return [str(system) for system in systems]

    async def evaluate(self, flake: str, system: str, progress: Progress) -> list[dict[str, Any]]:
        """Evaluate ``packages.<system>`` and return every job result."""
        with tempfile.TemporaryDirectory(prefix="steiger-nix-gcroots-") as gc_roots:
            command = [
                self.eval_binary,
                "--verbose",
                "--log-format",
                "internal-json",
                "--gc-roots-dir",
                gc_roots,
                "--flake",
                f"{flake}#packages.{system}",
            ]
            child = await spawn(command)
            lines: list[str] = []

            async def collect() -> None:
                async for line in iter_lines(child.stdout):
                    lines.append(line.decode("utf-8", errors="replace").strip())

            try:
                await asyncio.gather(collect(), proxy_lines(child.stderr, progress.add_child("nix")))
            except BaseException:
                await child.kill()
                raise
            code = await child.wait()
            if code != 0:
                raise ExitError(child.command, code)

        try:
            return [json.loads(line) for line in lines if line]
        except json.JSONDecodeError as e:
            raise NixError(f"failed to parse nix-eval-jobs output: {e}") from e

    async def build_job(self, job: dict[str, Any], progress: Progress) -> Path:
        """Build one evaluated derivation and return its ``out`` path."""
        attr = job.get("attr", "")
        if job.get("error"):
            progress.fail(job["error"])
            raise NixError(f"failed to evaluate {attr}: {job['error']}")

        drv_path = job.get("drvPath")
        out_path = (job.get("outputs") or {}).get("out")
        if not drv_path or not out_path:
            raise NixError(f"derivation for {attr} has no 'out' output")

        progress.info(f"starting build for package: {attr}")
        child = await spawn(
            [self.nix_binary, "build", "--no-link", "--log-format", "internal-json", f"{drv_path}^out"]
        )
        node = progress.add_child(attr)
        try:
            async for line in iter_lines(child.stderr):
                action = parse_log_line(line.decode("utf-8", errors="replace").rstrip())
                if action is not None:
                    report_action(action, node)
        except BaseException:
            await child.kill()
            raise

        code = await child.wait()
        progress.inc()
        if code != 0:
            progress.fail(f"build failed with exit code: {code}")
            raise ExitError(child.command, code)

        progress.done(f"successfully built package: {attr}")
        return Path(out_path)

    async def build(self, context: BuildContext, config: NixBuildConfig) -> BuildOutput:
        progress = context.progress
        progress.set_name(context.target_name)
        progress.info("starting builder")

        flake = str(config.flake) if config.flake is not None else "."
        system = try_system(context.platform)
        if system not in await self.detect_systems(flake):
            progress.info(f"flake has no packages for {system}")
            return BuildOutput()

        eval_progress = progress.add_child("eval")
        eval_progress.info(f"using platform: {system}")
        jobs = await self.evaluate(flake, system, eval_progress)
        progress.done("evaluation finished")

        # Attribute path -> artifact name
        wanted = {attr: artifact for artifact, attr in config.packages.items()}
        selected = [job for job in jobs if ".".join(job.get("attrPath", [])) in wanted]
        progress.init(total=len(selected))

        results = await asyncio.gather(
            *(self.build_job(job, progress.add_child(f"{'.'.join(job['attrPath'])} › nix")) for job in selected),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        progress.done("finished building packages")

        output = BuildOutput()
        for job, out_path in zip(selected, results):
            artifact = wanted[".".join(job["attrPath"])]
            output.artifacts[artifact] = await load_from_path(out_path)
        return output


__all__ = [
    "NIX_BINARY_ENV",
    "NIX_EVAL_JOBS_BINARY_ENV",
    "NixBuilder",
    "NixError",
    "parse_log_line",
    "report_action",
    "try_system",
]
