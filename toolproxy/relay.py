"""Stream relay: bridges the upstream SSE stream to the client's completion stream.

In Local mode a ``StreamSession`` parses upstream frames, pulls fenced tool
calls out of the assistant text, runs them in the sandbox and splices their
results back in. In Agent mode ``passthrough`` relays bytes untouched.

Session lifecycle::

    STREAMING --upstream done--> DRAINING --no tools pending--> CLOSED

The terminal chunk and ``[DONE]`` are only written on entering CLOSED, so a
tool that finishes after the model stops talking still reaches the client.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from enum import Enum

import httpx

from toolproxy.blocks import FenceScanner, Segment
from toolproxy.chunks import DONE_FRAME, ChunkEncoder, generate_tool_call_id, sse_frame
from toolproxy.sandbox import Sandbox
from toolproxy.schemas import ChatChunk, ToolCall, UpstreamEvent
from toolproxy.sse import SSEParser
from toolproxy.validation import coerce_tool_call, safe_json_parse

logger = logging.getLogger(__name__)

_CLOSE = object()


class SessionState(str, Enum):
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"


class StreamSession:
    """Per-request relay state. Create one per request; never share."""

    def __init__(self, sandbox: Sandbox, encoder: ChunkEncoder):
        self.sandbox = sandbox
        self.encoder = encoder
        self.scanner = FenceScanner()
        self.parser = SSEParser()
        self.processed: set[str] = set()
        self.pending = 0
        self.state = SessionState.STREAMING
        self.finish_reason = "stop"
        self._tasks: set[asyncio.Task] = set()
        self._queue: asyncio.Queue = asyncio.Queue()

    async def frames(self, upstream: AsyncIterable[str]) -> AsyncIterator[str]:
        """Consume upstream body lines and yield outgoing SSE frames until CLOSED."""
        self._emit(self.encoder.initial())
        reader = asyncio.create_task(self._pump(upstream))
        try:
            while True:
                frame = await self._queue.get()
                if frame is _CLOSE:
                    break
                yield frame
        finally:
            if not reader.done():
                reader.cancel()

    # ── Upstream side ────────────────────────────────────────────────────────

    async def _pump(self, upstream: AsyncIterable[str]) -> None:
        try:
            async for line in upstream:
                event = self.parser.feed_line(line)
                if event is not None:
                    self._handle_event(event)
                if self.state is not SessionState.STREAMING:
                    return
            for event in self.parser.flush():
                self._handle_event(event)
        except Exception as e:
            logger.error(f"Upstream stream read failed: {e}", exc_info=True)
            self._emit_content(f"\n\n[proxy] upstream stream error: {e}")

        # Stream ended (or broke) without [DONE].
        self._upstream_done()

    def _handle_event(self, event: UpstreamEvent) -> None:
        if self.state is not SessionState.STREAMING:
            return
        if event.kind == "done":
            self._upstream_done()
        else:
            self._handle_message(event.payload)

    def _handle_message(self, payload: str) -> None:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning(f"Unparseable upstream frame: {e}: {payload[:200]!r}")
            self._emit_content(f"\n\n[proxy] could not parse upstream frame: {e}")
            return

        if not isinstance(data, dict):
            return
        if data.get("error"):
            error = data["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            logger.error(f"Upstream reported an error mid-stream: {message}")
            self._emit_content(f"\n\n[proxy] upstream error: {message}")
            return

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return  # usage-only and keep-alive frames
        choice = choices[0]

        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]

        delta = choice.get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            self._feed_content(content)

    def _feed_content(self, text: str) -> None:
        prose: list[str] = []
        for segment in self.scanner.feed(text):
            if segment.kind == "text":
                prose.append(segment.text)
                continue

            call = self._as_tool_call(segment)
            if call is None:
                prose.append(segment.text)
                continue

            self.scanner.excise(segment)
            if segment.body in self.processed:
                logger.warning(f"Skipping repeated tool call block: {segment.body[:200]!r}")
                continue

            self._flush_prose(prose)
            self.processed.add(segment.body)
            self._dispatch(call)

        self._flush_prose(prose)

    @staticmethod
    def _as_tool_call(segment: Segment) -> ToolCall | None:
        value = safe_json_parse(segment.body)
        if value is None:
            return None
        return coerce_tool_call(value)

    def _flush_prose(self, prose: list[str]) -> None:
        text = "".join(prose)
        prose.clear()
        if text:
            self._emit_content(text)

    def _upstream_done(self) -> None:
        if self.state is not SessionState.STREAMING:
            return
        rest = self.scanner.flush()
        if rest:
            self._emit_content(rest)

        self.state = SessionState.DRAINING
        if self.pending == 0:
            self._close()
        else:
            logger.info(f"Upstream finished; waiting on {self.pending} tool call(s)")

    # ── Tool side ────────────────────────────────────────────────────────────

    def _dispatch(self, call: ToolCall) -> None:
        call_id = generate_tool_call_id()
        self.pending += 1
        self._emit(self.encoder.tool_call(call_id, call.tool, json.dumps(call.args)))
        logger.info(f"Dispatching {call.tool} ({call_id}) args={call.args}")

        task = asyncio.create_task(self._run_tool(call))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_tool(self, call: ToolCall) -> None:
        try:
            text = await self.sandbox.run(call)
        except Exception as e:
            logger.error(f"Tool {call.tool} raised: {e}", exc_info=True)
            text = f"TOOL_ERROR: {e}"

        self._emit_content(f"\n\n{text}")
        self.pending -= 1
        if self.state is SessionState.DRAINING and self.pending == 0:
            self._close()

    # ── Output ───────────────────────────────────────────────────────────────

    def _emit(self, chunk: ChatChunk) -> None:
        if self.state is SessionState.CLOSED:
            logger.warning("Dropping chunk emitted after stream close")
            return
        self._queue.put_nowait(sse_frame(chunk))

    def _emit_content(self, text: str) -> None:
        self._emit(self.encoder.content(text))

    def _close(self) -> None:
        self._emit(self.encoder.final(self.finish_reason))
        self._queue.put_nowait(DONE_FRAME)
        self._queue.put_nowait(_CLOSE)
        self.state = SessionState.CLOSED


async def passthrough(response: httpx.Response) -> AsyncIterator[bytes]:
    """Relay the upstream body as-is (Agent mode)."""
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.HTTPError as e:
        logger.error(f"Passthrough stream broke: {e}", exc_info=True)
