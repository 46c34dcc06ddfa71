"""Command tools: shell commands and git, run inside the workspace root.

The denylist is a heuristic screen for obviously destructive commands. The
command string still goes to ``/bin/sh``, so it is not a security boundary:
anything the proxy's user may do, a sufficiently creative command can do.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import TYPE_CHECKING

from pydantic import BaseModel

from toolproxy.schemas import ToolResult
from toolproxy.tools import register
from toolproxy.workspace import PathEscapeError

if TYPE_CHECKING:
    from toolproxy.sandbox import Sandbox

logger = logging.getLogger(__name__)

_READ_SIZE = 64 * 1024


class ExecCmdArgs(BaseModel):
    cmd: str
    cwd: str | None = None


class GitArgs(BaseModel):
    sub: str
    cwd: str | None = None


class CommandTimeout(Exception):
    pass


class OutputLimitExceeded(Exception):
    pass


class _OutputBudget:
    """Byte allowance shared by stdout and stderr of one process."""

    def __init__(self, limit: int):
        self.limit = limit
        self.used = 0

    def consume(self, n: int) -> None:
        self.used += n
        if self.used > self.limit:
            raise OutputLimitExceeded(f"Output exceeded {self.limit} bytes")


async def _drain(stream: asyncio.StreamReader, budget: _OutputBudget) -> bytes:
    chunks = []
    while chunk := await stream.read(_READ_SIZE):
        budget.consume(len(chunk))
        chunks.append(chunk)
    return b"".join(chunks)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    # The shell runs in its own session; kill its children with it.
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def run_shell(
    cmd: str, cwd: str, timeout: float, max_buffer: int
) -> tuple[int, str, str]:
    """Run ``cmd`` through ``/bin/sh`` and return ``(returncode, stdout, stderr)``.

    Raises ``CommandTimeout`` or ``OutputLimitExceeded``; the process group is
    killed before either propagates.
    """
    proc = await asyncio.create_subprocess_shell(
        cmd,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    budget = _OutputBudget(max_buffer)

    try:
        stdout, stderr, returncode = await asyncio.wait_for(
            asyncio.gather(
                _drain(proc.stdout, budget),
                _drain(proc.stderr, budget),
                proc.wait(),
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        _kill_group(proc)
        await proc.wait()
        raise CommandTimeout(f"Command timed out after {timeout:g}s") from None
    except OutputLimitExceeded:
        _kill_group(proc)
        await proc.wait()
        raise

    return (
        returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


def _describe_failure(returncode: int, stderr: str) -> str:
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"Command was terminated by signal {name}"
    if stderr.strip():
        return stderr.strip()
    return f"Command exited with code {returncode}"


@register("exec_cmd", ExecCmdArgs)
async def exec_cmd(sandbox: Sandbox, args: ExecCmdArgs) -> ToolResult:
    """Run a shell command with the sandbox's timeout and output cap."""
    if sandbox.is_blocked(args.cmd):
        logger.warning(f"Blocked command: {args.cmd!r}")
        return ToolResult.fail("blocked command")

    try:
        workdir = sandbox.resolve(args.cwd or ".")
    except PathEscapeError as e:
        logger.warning(f"exec_cmd rejected: {e}")
        return ToolResult.fail("Working directory outside WORKSPACE_ROOT")
    if not workdir.is_dir():
        return ToolResult.fail("Working directory does not exist")

    try:
        returncode, stdout, stderr = await run_shell(
            args.cmd,
            cwd=str(workdir),
            timeout=sandbox.exec_timeout,
            max_buffer=sandbox.max_buffer,
        )
    except CommandTimeout:
        return ToolResult.fail("Command timed out")
    except OutputLimitExceeded as e:
        return ToolResult.fail(str(e))
    except OSError as e:
        return ToolResult.fail(f"Command execution failed: {e}")

    if returncode != 0:
        return ToolResult.fail(_describe_failure(returncode, stderr))

    return ToolResult.ok(
        {
            "stdout": stdout.strip(),
            "stderr": stderr.strip(),
            "cmd": args.cmd,
            "cwd": args.cwd or ".",
        }
    )


@register("git", GitArgs)
async def git(sandbox: Sandbox, args: GitArgs) -> ToolResult:
    """Run ``git <sub>``; same policy as exec_cmd."""
    return await exec_cmd(sandbox, ExecCmdArgs(cmd=f"git {args.sub}", cwd=args.cwd))
