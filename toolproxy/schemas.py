"""Request/response models: the contract between the proxy, its clients and the upstream."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

TOOL_NAMES = frozenset({"list_files", "read_file", "write_file", "exec_cmd", "git"})


class ChatCompletionRequest(BaseModel):
    """Incoming request body. Unknown parameters (temperature, top_p, ...)
    are kept and forwarded to the upstream untouched."""

    model_config = ConfigDict(extra="allow")

    messages: list[dict[str, Any]]
    model: str | None = None
    stream: bool = True  # ignored, the proxy always streams
    tools: list[Any] | None = None
    tool_choice: Any = None


class UpstreamEvent(BaseModel):
    """One decoded SSE frame from the upstream.

    Kinds:
        message - ``payload`` holds the frame's data text
        done    - the upstream sent ``[DONE]``
    """

    kind: Literal["message", "done"]
    payload: str = ""


class ToolCall(BaseModel):
    """A tool invocation parsed out of a fenced ``json`` block."""

    tool: str
    args: dict[str, Any]
    comment: str | None = None


class ToolResult(BaseModel):
    """Outcome of one sandboxed operation. ``result`` is absent on failure."""

    success: bool
    result: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, result: Any) -> "ToolResult":
        return cls(success=True, result=result)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)


# ---------------------------------------------------------------------------
# Outgoing chat.completion.chunk frames
# ---------------------------------------------------------------------------


class FunctionCall(BaseModel):
    name: str
    arguments: str  # JSON-encoded args


class ToolCallEnvelope(BaseModel):
    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class ChunkChoice(BaseModel):
    index: int = 0
    delta: dict[str, Any]
    finish_reason: str | None = None


class ChatChunk(BaseModel):
    """A single frame of the outgoing completion stream.

    ``delta`` is one of ``{}``, ``{"content": ...}`` or ``{"tool_calls": [...]}``;
    ``finish_reason`` is only set on the terminal frame.
    """

    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: list[ChunkChoice]
