"""Filesystem tools: list, read and write inside the workspace root.

Blocking filesystem calls run in a worker thread so a large directory or
file never stalls the event loop that is relaying the stream.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel

from toolproxy.schemas import ToolResult
from toolproxy.tools import register
from toolproxy.workspace import PathEscapeError

if TYPE_CHECKING:
    from toolproxy.sandbox import Sandbox

logger = logging.getLogger(__name__)

MAX_READ_BYTES = 256 * 1024

OUTSIDE_ROOT = "Path outside WORKSPACE_ROOT"


class ListFilesArgs(BaseModel):
    path: str = "."


class ReadFileArgs(BaseModel):
    path: str


class WriteFileArgs(BaseModel):
    path: str
    content: str


# ── Blocking helpers (run via asyncio.to_thread) ─────────────────────────────


def _list_dir(target: Path) -> ToolResult:
    if not target.exists():
        return ToolResult.fail("Path does not exist")
    if not target.is_dir():
        return ToolResult.fail("Path is not a directory")

    items = []
    with os.scandir(target) as entries:
        for entry in entries:
            items.append({"name": entry.name, "type": "dir" if entry.is_dir() else "file"})
    items.sort(key=lambda item: item["name"])
    return ToolResult.ok(items)


def _read_text(target: Path) -> ToolResult:
    if not target.exists():
        return ToolResult.fail("File does not exist")
    if not target.is_file():
        return ToolResult.fail("Path is not a file")
    if target.stat().st_size > MAX_READ_BYTES:
        return ToolResult.fail("File too large (max 256KB)")

    # Read one byte past the limit in case the file grew after the stat.
    with open(target, "rb") as f:
        data = f.read(MAX_READ_BYTES + 1)
    if len(data) > MAX_READ_BYTES:
        return ToolResult.fail("File too large (max 256KB)")
    return ToolResult.ok(data.decode("utf-8", errors="replace"))


def _write_text(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "w", encoding="utf-8") as f:
        f.write(content)


# ── Tools ────────────────────────────────────────────────────────────────────


@register("list_files", ListFilesArgs)
async def list_files(sandbox: Sandbox, args: ListFilesArgs) -> ToolResult:
    """List the immediate entries of a workspace directory as ``{name, type}``."""
    try:
        target = sandbox.resolve(args.path or ".")
    except PathEscapeError as e:
        logger.warning(f"list_files rejected: {e}")
        return ToolResult.fail(OUTSIDE_ROOT)

    try:
        return await asyncio.to_thread(_list_dir, target)
    except OSError as e:
        return ToolResult.fail(f"Failed to list files: {e}")


@register("read_file", ReadFileArgs)
async def read_file(sandbox: Sandbox, args: ReadFileArgs) -> ToolResult:
    """Return a file's full text. Files over 256 KiB are refused, never truncated."""
    try:
        target = sandbox.resolve(args.path)
    except PathEscapeError as e:
        logger.warning(f"read_file rejected: {e}")
        return ToolResult.fail(OUTSIDE_ROOT)

    try:
        return await asyncio.to_thread(_read_text, target)
    except OSError as e:
        return ToolResult.fail(f"Failed to read file: {e}")


@register("write_file", WriteFileArgs)
async def write_file(sandbox: Sandbox, args: WriteFileArgs) -> ToolResult:
    """Write a file, creating parent directories. Concurrent writers race."""
    try:
        target = sandbox.resolve(args.path)
    except PathEscapeError as e:
        logger.warning(f"write_file rejected: {e}")
        return ToolResult.fail(OUTSIDE_ROOT)

    try:
        await asyncio.to_thread(_write_text, target, args.content)
    except OSError as e:
        return ToolResult.fail(f"Failed to write file: {e}")
    return ToolResult.ok(f"File written successfully: {args.path}")
