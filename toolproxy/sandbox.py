"""Sandbox executor: runs tool calls confined to the workspace root.

Owns the process-wide execution policy (root, timeout, output cap,
denylist). Every operation returns a ``ToolResult``; nothing raises past
``execute``.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from toolproxy.config import DEFAULT_DENYLIST, ProxyConfig
from toolproxy.schemas import ToolCall, ToolResult
from toolproxy.tools import format_tool_result, resolve_tool
from toolproxy.workspace import resolve_in_root

logger = logging.getLogger(__name__)


class Sandbox:
    def __init__(
        self,
        workspace_root: str | Path,
        exec_timeout_ms: int = 8000,
        exec_max_buffer: int = 1048576,
        denylist: str = DEFAULT_DENYLIST,
    ):
        self.root = os.path.realpath(os.fspath(workspace_root))
        self.exec_timeout = exec_timeout_ms / 1000
        self.max_buffer = exec_max_buffer
        self.denylist = re.compile(denylist, re.IGNORECASE)

        if not os.path.isdir(self.root):
            logger.warning(f"Workspace root {self.root} does not exist")

    @classmethod
    def from_config(cls, config: ProxyConfig) -> Sandbox:
        return cls(
            config.workspace_root,
            exec_timeout_ms=config.exec_timeout_ms,
            exec_max_buffer=config.exec_max_buffer,
            denylist=config.exec_denylist,
        )

    def resolve(self, path: str | Path) -> Path:
        """Confine ``path`` to the root. Raises ``PathEscapeError``."""
        return resolve_in_root(self.root, path)

    def is_blocked(self, cmd: str) -> bool:
        return self.denylist.search(cmd) is not None

    async def execute(self, call: ToolCall) -> ToolResult:
        """Validate the call's args against its tool and run it."""
        try:
            spec = resolve_tool(call.tool)
        except ValueError as e:
            return ToolResult.fail(str(e))

        try:
            args = spec.args_model.model_validate(call.args)
        except ValidationError as e:
            return ToolResult.fail(f"Invalid arguments for {call.tool}: {_summarize(e)}")

        try:
            result = await spec.handler(self, args)
        except Exception as e:
            logger.error(f"Tool {call.tool} crashed: {e}", exc_info=True)
            return ToolResult.fail(f"{call.tool} failed: {e}")

        if result.success:
            logger.info(f"Tool {call.tool} succeeded")
        else:
            logger.info(f"Tool {call.tool} failed: {result.error}")
        return result

    async def run(self, call: ToolCall) -> str:
        """Execute and render the result as client-facing text."""
        result = await self.execute(call)
        return format_tool_result(call.tool, result)

    # ── The five primitive operations ────────────────────────────────────────

    async def list_files(self, path: str = ".") -> ToolResult:
        return await self._call("list_files", path=path)

    async def read_file(self, path: str) -> ToolResult:
        return await self._call("read_file", path=path)

    async def write_file(self, path: str, content: str) -> ToolResult:
        return await self._call("write_file", path=path, content=content)

    async def exec_cmd(self, cmd: str, cwd: str | None = None) -> ToolResult:
        return await self._call("exec_cmd", cmd=cmd, cwd=cwd)

    async def git(self, sub: str, cwd: str | None = None) -> ToolResult:
        return await self._call("git", sub=sub, cwd=cwd)

    async def _call(self, tool: str, **args: Any) -> ToolResult:
        return await self.execute(ToolCall(tool=tool, args=args))


def _summarize(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "args"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)
