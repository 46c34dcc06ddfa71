"""Tool-call validation: decides whether a fenced block is a tool invocation."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from toolproxy.schemas import TOOL_NAMES, ToolCall

logger = logging.getLogger(__name__)


def safe_json_parse(text: str) -> Any | None:
    """Parse JSON, returning None instead of raising on malformed input."""
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


def is_valid_tool_call(value: Any) -> bool:
    """Accept iff ``value`` is a mapping whose ``tool`` is one of the known
    names and whose ``args`` is a mapping."""
    if not isinstance(value, Mapping):
        return False
    return (
        isinstance(value.get("tool"), str)
        and value["tool"] in TOOL_NAMES
        and isinstance(value.get("args"), Mapping)
    )


def coerce_tool_call(value: Any) -> ToolCall | None:
    """Turn a parsed block into a dispatchable ToolCall, or None if it is prose.

    Valid calls are returned as-is. A mapping that names an unrecognized
    ``tool`` is still returned (with ``args`` defaulting to ``{}``) so the
    sandbox can answer "unknown tool"; anything else stays ordinary text.
    """
    if not isinstance(value, Mapping) or not isinstance(value.get("tool"), str):
        return None

    if value["tool"] not in TOOL_NAMES:
        args = value.get("args")
        logger.warning(f"Block names unknown tool '{value['tool']}'")
        return ToolCall(
            tool=value["tool"],
            args=dict(args) if isinstance(args, Mapping) else {},
            comment=_comment(value),
        )

    if not is_valid_tool_call(value):
        return None

    try:
        return ToolCall(tool=value["tool"], args=dict(value["args"]), comment=_comment(value))
    except ValidationError as e:
        logger.warning(f"Rejected tool call block: {e}")
        return None


def _comment(value: Mapping) -> str | None:
    comment = value.get("comment")
    return comment if isinstance(comment, str) else None
