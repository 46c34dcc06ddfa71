"""Tool registry: name-based lookup for the sandboxed tool handlers.

Handlers are async functions decorated with ``@register``. The model names
them in its fenced ``json`` blocks and the sandbox resolves the name to a
handler plus the pydantic model its ``args`` must satisfy.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from toolproxy.schemas import ToolResult

if TYPE_CHECKING:
    from toolproxy.sandbox import Sandbox

ToolHandler = Callable[["Sandbox", Any], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    args_model: type[BaseModel]
    handler: ToolHandler


_registry: dict[str, ToolSpec] = {}


def register(name: str, args_model: type[BaseModel]) -> Callable[[ToolHandler], ToolHandler]:
    """Add a handler to the registry under ``name``::

        @register("read_file", ReadFileArgs)
        async def read_file(sandbox: Sandbox, args: ReadFileArgs) -> ToolResult:
            ...
    """

    def decorator(handler: ToolHandler) -> ToolHandler:
        _registry[name] = ToolSpec(name=name, args_model=args_model, handler=handler)
        return handler

    return decorator


def resolve_tool(name: str) -> ToolSpec:
    """Look up a tool by name. Raises ``ValueError`` if it is not registered."""
    try:
        return _registry[name]
    except KeyError:
        raise ValueError(f"Unknown tool: {name}") from None


def list_tools() -> list[str]:
    """Return all registered tool names."""
    return list(_registry.keys())


def format_tool_result(tool: str, result: ToolResult) -> str:
    """Render a result the way it is shown to the client and the model."""
    if not result.success:
        return f"TOOL_ERROR: {result.error}"
    if isinstance(result.result, str):
        body = result.result
    else:
        body = json.dumps(result.result, indent=2, ensure_ascii=False)
    return f"[Tool {tool} Result]\n{body}"


# Auto-import handlers so the registry is populated on first access.
import toolproxy.tools.filesystem as _filesystem  # noqa: E402, F401
import toolproxy.tools.shell as _shell  # noqa: E402, F401
