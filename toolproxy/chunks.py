"""Chunk encoder: builds chat.completion.chunk frames for one response stream."""

from __future__ import annotations

import json
import time
import uuid

from toolproxy.schemas import ChatChunk, ChunkChoice, FunctionCall, ToolCallEnvelope

DONE_FRAME = "data: [DONE]\n\n"


def sse_frame(data: ChatChunk | dict) -> str:
    """Serialize one payload as a ``data: ...`` SSE frame."""
    if isinstance(data, ChatChunk):
        body = data.model_dump_json()
    else:
        body = json.dumps(data)
    return f"data: {body}\n\n"


def generate_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class ChunkEncoder:
    """Produces the frames of a single completion stream.

    Every chunk from one encoder carries the same ``chatcmpl-`` id, so a
    client can stitch them back into one message.
    """

    def __init__(self, model: str, index: int = 0, completion_id: str | None = None):
        self.model = model
        self.index = index
        self.id = completion_id or f"chatcmpl-{uuid.uuid4().hex[:24]}"

    def _chunk(self, delta: dict, finish_reason: str | None = None) -> ChatChunk:
        return ChatChunk(
            id=self.id,
            created=int(time.time()),
            model=self.model,
            choices=[ChunkChoice(index=self.index, delta=delta, finish_reason=finish_reason)],
        )

    def initial(self) -> ChatChunk:
        return self._chunk({})

    def content(self, text: str) -> ChatChunk:
        return self._chunk({"content": text})

    def tool_call(self, call_id: str, name: str, arguments: str) -> ChatChunk:
        envelope = ToolCallEnvelope(
            id=call_id,
            function=FunctionCall(name=name, arguments=arguments),
        )
        return self._chunk({"tool_calls": [envelope.model_dump()]})

    def final(self, finish_reason: str = "stop") -> ChatChunk:
        return self._chunk({}, finish_reason=finish_reason)
