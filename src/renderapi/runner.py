# runner.py
from __future__ import annotations

import asyncio
import os
import signal
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

from .errors import OutputTooLarge, StepExecutionError
from .model import StepResult
from .settings import DEFAULT_KILL_GRACE_MS, DEFAULT_MAX_OUTPUT_BYTES

# Explicit shell for predictable behaviour across base images.
SHELL = "/bin/sh"

# Tails kept on the StepResult; ffmpeg writes its progress to stderr.
STDOUT_TAIL = 500
STDERR_TAIL = 1000

READ_CHUNK = 64 * 1024

Spawn = Callable[[str, Path], Awaitable[asyncio.subprocess.Process]]


# ----------------------------------------------------------------------
# Process handling
# ----------------------------------------------------------------------

async def spawn_shell(command: str, cwd: Path) -> asyncio.subprocess.Process:
    """Start `command` under SHELL as the leader of a new process group."""
    return await asyncio.create_subprocess_exec(
        SHELL,
        "-c",
        command,
        cwd=str(cwd),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )


def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
    # The whole group, so children of the shell go down with it.
    try:
        os.killpg(proc.pid, sig)
        return
    except (ProcessLookupError, PermissionError):
        pass
    if proc.returncode is None:
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass


@asynccontextmanager
async def spawned(command: str, cwd: str | Path, spawn: Spawn = spawn_shell) -> AsyncIterator[asyncio.subprocess.Process]:
    """
    Scoped process handle: whatever way the block is left (normal exit,
    error, cancellation by an enclosing timer) the process group is killed
    and reaped.
    """
    try:
        proc = await spawn(command, Path(cwd))
    except OSError as e:
        raise StepExecutionError(f"Could not start command: {e}") from e

    try:
        yield proc
    finally:
        _signal(proc, signal.SIGKILL)
        if proc.returncode is None:
            await proc.wait()


# ----------------------------------------------------------------------
# Output capture
# ----------------------------------------------------------------------

class _Capture:
    def __init__(self, name: str, limit: int, index: int):
        self.name = name
        self.limit = limit
        self.index = index
        self.data = bytearray()

    def feed(self, chunk: bytes) -> None:
        if len(self.data) + len(chunk) > self.limit:
            raise OutputTooLarge(
                f"Step {self.index + 1}: {self.name} exceeded {self.limit} bytes",
                step=self.index + 1,
                detail=self.tail(STDERR_TAIL),
            )
        self.data.extend(chunk)

    def tail(self, n: int) -> str:
        # 4 bytes per character covers any UTF-8 sequence
        return bytes(self.data[-n * 4:]).decode("utf-8", errors="replace")[-n:]


async def _drain(stream: asyncio.StreamReader | None, capture: _Capture) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            return
        capture.feed(chunk)


async def _collect(proc: asyncio.subprocess.Process, out: _Capture, err: _Capture) -> int:
    await asyncio.gather(_drain(proc.stdout, out), _drain(proc.stderr, err))
    return await proc.wait()


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

async def run_command(
    command: str,
    cwd: str | Path,
    timeout: float,
    *,
    index: int = 0,
    grace: float = DEFAULT_KILL_GRACE_MS / 1000,
    max_output: int = DEFAULT_MAX_OUTPUT_BYTES,
    spawn: Spawn = spawn_shell,
) -> StepResult:
    """
    Run one shell command in `cwd` and wait for it.

    At `timeout` seconds the process group gets SIGTERM; if it is still
    alive `grace` seconds later it gets SIGKILL. A non-zero exit, a signal
    or a timeout produce a StepResult with ok=False.

    Raises:
        OutputTooLarge: either stream went past `max_output` bytes.
        StepExecutionError: the shell could not be started.
    """
    out = _Capture("stdout", max_output, index)
    err = _Capture("stderr", max_output, index)
    timed_out = killed = False
    start = time.monotonic()

    async with spawned(command, cwd, spawn) as proc:
        collect = asyncio.create_task(_collect(proc, out, err))
        try:
            try:
                returncode = await asyncio.wait_for(asyncio.shield(collect), timeout)
            except asyncio.TimeoutError:
                timed_out = True
                _signal(proc, signal.SIGTERM)
                try:
                    returncode = await asyncio.wait_for(asyncio.shield(collect), grace)
                except asyncio.TimeoutError:
                    killed = True
                    _signal(proc, signal.SIGKILL)
                    returncode = await collect
        finally:
            if not collect.done():
                collect.cancel()

    return StepResult(
        index=index,
        duration=time.monotonic() - start,
        stdout_tail=out.tail(STDOUT_TAIL),
        stderr_tail=err.tail(STDERR_TAIL),
        ok=returncode == 0 and not timed_out,
        exit_code=returncode if returncode >= 0 else None,
        signal=-returncode if returncode < 0 else None,
        timed_out=timed_out,
        killed=killed,
    )
