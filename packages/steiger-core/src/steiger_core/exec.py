"""Async subprocess helpers for build backends.

Build tools are spawned with asyncio so that many targets can run on one
event loop. Output is either captured (for short queries whose result is
parsed) or streamed line by line into a progress node.

Example:
    >>> stdout = await run_with_output(["docker", "buildx", "ls", "--format=json"])
    >>> code = await run_with_progress(["ko", "build", "."], progress.add_child("ko"))
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from steiger_core.errors import BackendNotFoundError, ExitError

if TYPE_CHECKING:
    from steiger_core.progress import Progress

logger = structlog.get_logger(__name__)

READ_CHUNK_SIZE = 64 * 1024


def which(kind: str, *names: str) -> Path:
    """Resolve the first executable found on PATH.

    Args:
        kind: Backend kind, used in the error message.
        *names: Executable names to try, in order.

    Returns:
        Absolute path to the executable.

    Raises:
        BackendNotFoundError: If none of the names resolve.
    """
    for name in names:
        found = shutil.which(name)
        if found is not None:
            logger.debug("backend_binary_resolved", kind=kind, binary=found)
            return Path(found)
    raise BackendNotFoundError(kind, names)


@dataclass
class ChildProcess:
    """A spawned process with piped stdout/stderr."""

    command: list[str]
    process: asyncio.subprocess.Process

    @property
    def stdout(self) -> asyncio.StreamReader:
        if self.process.stdout is None:
            raise RuntimeError(f"stdout of {self.command[0]} is not piped")
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        if self.process.stderr is None:
            raise RuntimeError(f"stderr of {self.command[0]} is not piped")
        return self.process.stderr

    async def kill(self) -> None:
        """Kill the process if it is still running and reap it."""
        if self.process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()
        await self.process.wait()

    async def wait(self) -> int:
        return await self.process.wait()


async def spawn(command: Sequence[str | Path], *, cwd: Path | None = None) -> ChildProcess:
    """Spawn a command with stdin closed and stdout/stderr piped."""
    args = [str(arg) for arg in command]
    logger.debug("process_spawn", command=args)
    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    return ChildProcess(command=args, process=process)


async def iter_lines(reader: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield the lines of a stream without their trailing newline.

    The stream is read in fixed-size chunks, so a line of any length is
    yielded whole instead of overrunning the reader's buffer limit.
    """
    pending = b""
    while chunk := await reader.read(READ_CHUNK_SIZE):
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            yield line
    if pending:
        yield pending


async def proxy_lines(reader: asyncio.StreamReader, progress: Progress) -> None:
    """Forward every line of a stream to a progress node."""
    async for line in iter_lines(reader):
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            progress.info(text)


async def run_with_progress(
    command: Sequence[str | Path],
    progress: Progress,
    *,
    cwd: Path | None = None,
) -> int:
    """Run a command, streaming stdout and stderr into ``progress``.

    Returns:
        The process exit code.
    """
    child = await spawn(command, cwd=cwd)
    try:
        await asyncio.gather(
            proxy_lines(child.stdout, progress),
            proxy_lines(child.stderr, progress),
        )
    except BaseException:
        await child.kill()
        raise
    return await child.wait()


async def run_with_output(command: Sequence[str | Path], *, cwd: Path | None = None) -> str:
    """Run a command and return its stdout.

    Raises:
        ExitError: If the command exits non-zero (carries stderr).
    """
    child = await spawn(command, cwd=cwd)
    stdout, stderr = await child.process.communicate()
    code = child.process.returncode
    if code != 0:
        raise ExitError(child.command, code or 0, stderr.decode("utf-8", errors="replace"))
    return stdout.decode("utf-8", errors="replace")


__all__ = [
    "ChildProcess",
    "iter_lines",
    "proxy_lines",
    "run_with_output",
    "run_with_progress",
    "spawn",
    "which",
]
