"""Tests for the Local-mode stream relay and its completion sequencing."""

import asyncio
import json

import httpx
import pytest

from toolproxy.chunks import ChunkEncoder
from toolproxy.relay import SessionState, StreamSession

LIST_CALL = '{"tool":"list_files","args":{"path":"."}}'


def content_frame(text: str, finish_reason=None) -> str:
    data = {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": finish_reason}]}
    return f"data: {json.dumps(data)}\n\n"


DONE = "data: [DONE]\n\n"


def fence(body: str) -> str:
    return f"```json\n{body}\n```"


class RecordingSandbox:
    """Stands in for Sandbox.run; records calls and answers after ``delay``."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = []

    async def run(self, call):
        self.calls.append(call)
        await asyncio.sleep(self.delay)
        return f"[Tool {call.tool} Result]\nok"


async def feed(*pieces, delay: float = 0.0):
    for piece in pieces:
        if delay:
            await asyncio.sleep(delay)
        yield piece


async def as_lines(pieces):
    """Split upstream text into body lines, as the HTTP response would."""
    async for piece in pieces:
        for line in piece.splitlines():
            yield line


async def collect(session: StreamSession, upstream) -> list:
    """Run the session and decode every outgoing frame ('[DONE]' stays a string)."""
    out = []
    async for frame in session.frames(as_lines(upstream)):
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        body = frame[len("data: ") : -2]
        out.append(body if body == "[DONE]" else json.loads(body))
    return out


def contents(frames) -> list[str]:
    return [
        f["choices"][0]["delta"]["content"]
        for f in frames
        if isinstance(f, dict) and "content" in f["choices"][0]["delta"]
    ]


def tool_call_frames(frames) -> list[dict]:
    return [
        f["choices"][0]["delta"]["tool_calls"][0]
        for f in frames
        if isinstance(f, dict) and "tool_calls" in f["choices"][0]["delta"]
    ]


def new_session(sandbox) -> StreamSession:
    return StreamSession(sandbox, ChunkEncoder(model="test-model"))


class TestProse:
    @pytest.mark.asyncio
    async def test_prose_is_forwarded_and_stream_terminates(self):
        session = new_session(RecordingSandbox())

        frames = await collect(session, feed(content_frame("Hello "), content_frame("world"), DONE))

        assert frames[0]["choices"][0]["delta"] == {}
        assert "".join(contents(frames)) == "Hello world"
        assert frames[-2]["choices"][0]["finish_reason"] == "stop"
        assert frames[-1] == "[DONE]"
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_finish_reason_only_on_terminal_frame(self):
        session = new_session(RecordingSandbox())
        frames = await collect(
            session, feed(content_frame("a"), content_frame("b", finish_reason="length"), DONE)
        )

        reasons = [f["choices"][0]["finish_reason"] for f in frames if isinstance(f, dict)]
        assert reasons[:-1] == [None] * (len(reasons) - 1)
        assert reasons[-1] == "length"

    @pytest.mark.asyncio
    async def test_all_frames_share_one_id(self):
        session = new_session(RecordingSandbox())
        frames = await collect(session, feed(content_frame(f"x {fence(LIST_CALL)}"), DONE))
        ids = {f["id"] for f in frames if isinstance(f, dict)}
        assert len(ids) == 1

    @pytest.mark.asyncio
    async def test_role_only_deltas_are_not_forwarded(self):
        role = 'data: {"choices":[{"index":0,"delta":{"role":"assistant"}}]}\n\n'
        session = new_session(RecordingSandbox())
        frames = await collect(session, feed(role, content_frame("hi"), DONE))
        assert len(frames) == 4  # initial, "hi", final, [DONE]


class TestToolDispatch:
    @pytest.mark.asyncio
    async def test_tool_call_is_notified_executed_and_excised(self):
        sandbox = RecordingSandbox()
        session = new_session(sandbox)

        frames = await collect(
            session, feed(content_frame(f"Let me look.\n{fence(LIST_CALL)}\n"), DONE)
        )

        assert [c.tool for c in sandbox.calls] == ["list_files"]
        [call] = tool_call_frames(frames)
        assert call["type"] == "function"
        assert call["function"]["name"] == "list_files"
        assert json.loads(call["function"]["arguments"]) == {"path": "."}

        text = "".join(contents(frames))
        assert "```json" not in text
        assert "Let me look." in text
        assert "[Tool list_files Result]\nok" in text
        assert "```json" not in session.scanner.text

    @pytest.mark.asyncio
    async def test_partial_fence_dispatches_once_when_complete(self):
        sandbox = RecordingSandbox()
        session = new_session(sandbox)

        async def upstream():
            yield content_frame('```json\n{"tool":"read_file"')
            await asyncio.sleep(0)
            assert sandbox.calls == []
            assert session.pending == 0
            yield content_frame(',"args":{"path":"a.txt"}}\n```')
            yield DONE

        await collect(session, upstream())

        assert len(sandbox.calls) == 1
        assert sandbox.calls[0].tool == "read_file"
        assert sandbox.calls[0].args == {"path": "a.txt"}

    @pytest.mark.asyncio
    async def test_identical_blocks_dispatch_once(self):
        sandbox = RecordingSandbox()
        session = new_session(sandbox)

        frames = await collect(
            session, feed(content_frame(f"{fence(LIST_CALL)}\n{fence(LIST_CALL)}"), DONE)
        )

        assert len(sandbox.calls) == 1
        assert len(tool_call_frames(frames)) == 1
        assert session.processed == {LIST_CALL}

    @pytest.mark.asyncio
    async def test_repeat_later_in_stream_is_also_skipped(self):
        sandbox = RecordingSandbox()
        session = new_session(sandbox)

        await collect(
            session,
            feed(content_frame(fence(LIST_CALL)), content_frame("\nagain\n" + fence(LIST_CALL)), DONE),
        )

        assert len(sandbox.calls) == 1

    @pytest.mark.asyncio
    async def test_distinct_blocks_each_dispatch(self):
        sandbox = RecordingSandbox()
        session = new_session(sandbox)
        other = '{"tool":"git","args":{"sub":"status"}}'

        await collect(session, feed(content_frame(fence(LIST_CALL) + fence(other)), DONE))

        assert sorted(c.tool for c in sandbox.calls) == ["git", "list_files"]

    @pytest.mark.asyncio
    async def test_invalid_block_stays_as_text(self):
        sandbox = RecordingSandbox()
        session = new_session(sandbox)
        bad = fence('{"tool":"read_file","args":["a.txt"]}')

        frames = await collect(session, feed(content_frame(f"see {bad} ok"), DONE))

        assert sandbox.calls == []
        assert tool_call_frames(frames) == []
        assert "".join(contents(frames)) == f"see {bad} ok"

    @pytest.mark.asyncio
    async def test_malformed_json_block_stays_as_text(self):
        sandbox = RecordingSandbox()
        session = new_session(sandbox)
        bad = fence('{"tool": "read_file", "args": ')

        frames = await collect(session, feed(content_frame(bad), DONE))

        assert sandbox.calls == []
        assert "".join(contents(frames)) == bad

    @pytest.mark.asyncio
    async def test_unknown_tool_reported_by_sandbox(self, sandbox):
        session = new_session(sandbox)

        frames = await collect(
            session, feed(content_frame(fence('{"tool":"format_disk","args":{}}')), DONE)
        )

        assert len(tool_call_frames(frames)) == 1
        assert "TOOL_ERROR: Unknown tool: format_disk" in "".join(contents(frames))

    @pytest.mark.asyncio
    async def test_real_sandbox_result_is_spliced_in(self, sandbox, workspace):
        (workspace / "a.txt").write_text("file body")
        session = new_session(sandbox)

        frames = await collect(
            session, feed(content_frame(fence('{"tool":"read_file","args":{"path":"a.txt"}}')), DONE)
        )

        assert "\n\n[Tool read_file Result]\nfile body" in contents(frames)

    @pytest.mark.asyncio
    async def test_crashing_tool_becomes_error_content(self):
        class Exploding:
            async def run(self, call):
                raise RuntimeError("kaboom")

        session = new_session(Exploding())
        frames = await collect(session, feed(content_frame(fence(LIST_CALL)), DONE))

        assert "\n\nTOOL_ERROR: kaboom" in contents(frames)
        assert frames[-1] == "[DONE]"


class TestSequencing:
    @pytest.mark.asyncio
    async def test_terminal_waits_for_slow_tool(self):
        sandbox = RecordingSandbox(delay=0.05)
        session = new_session(sandbox)

        frames = await collect(session, feed(content_frame(fence(LIST_CALL)), DONE))

        result_index = next(
            i for i, f in enumerate(frames)
            if isinstance(f, dict) and "Result]" in f["choices"][0]["delta"].get("content", "")
        )
        final_index = next(
            i for i, f in enumerate(frames)
            if isinstance(f, dict) and f["choices"][0]["finish_reason"] is not None
        )
        assert result_index < final_index
        assert frames[-1] == "[DONE]"
        assert session.pending == 0

    @pytest.mark.asyncio
    async def test_notification_precedes_result(self):
        session = new_session(RecordingSandbox(delay=0.01))
        frames = await collect(session, feed(content_frame(fence(LIST_CALL)), DONE))

        kinds = []
        for f in frames:
            if not isinstance(f, dict):
                continue
            delta = f["choices"][0]["delta"]
            if "tool_calls" in delta:
                kinds.append("call")
            elif "Result]" in delta.get("content", ""):
                kinds.append("result")
        assert kinds == ["call", "result"]

    @pytest.mark.asyncio
    async def test_concurrent_tools_all_reported_before_close(self):
        sandbox = RecordingSandbox(delay=0.03)
        session = new_session(sandbox)
        calls = [f'{{"tool":"read_file","args":{{"path":"{n}.txt"}}}}' for n in range(3)]

        frames = await collect(
            session, feed(content_frame("".join(fence(c) + "\n" for c in calls)), DONE)
        )

        results = [c for c in contents(frames) if "Result]" in c]
        assert len(results) == 3
        assert frames[-2]["choices"][0]["finish_reason"] == "stop"

    @pytest.mark.asyncio
    async def test_stream_end_without_done_still_terminates(self):
        session = new_session(RecordingSandbox(delay=0.01))
        frames = await collect(session, feed(content_frame(fence(LIST_CALL))))

        assert frames[-1] == "[DONE]"
        assert "\n\n[Tool list_files Result]\nok" in contents(frames)

    @pytest.mark.asyncio
    async def test_unclosed_fence_flushed_as_text_at_end(self):
        sandbox = RecordingSandbox()
        session = new_session(sandbox)
        frames = await collect(session, feed(content_frame('```json\n{"tool":"git"'), DONE))

        assert sandbox.calls == []
        assert "".join(contents(frames)) == '```json\n{"tool":"git"'

    @pytest.mark.asyncio
    async def test_frames_after_done_are_ignored(self):
        sandbox = RecordingSandbox()
        session = new_session(sandbox)
        frames = await collect(session, feed(DONE + content_frame(fence(LIST_CALL))))

        assert sandbox.calls == []
        assert frames[-1] == "[DONE]"


class TestFaults:
    @pytest.mark.asyncio
    async def test_parse_fault_reported_and_stream_continues(self):
        session = new_session(RecordingSandbox())

        frames = await collect(session, feed("data: {not json}\n\n", content_frame("after"), DONE))

        texts = contents(frames)
        assert any("could not parse upstream frame" in t for t in texts)
        assert texts[-1] == "after"
        assert frames[-1] == "[DONE]"

    @pytest.mark.asyncio
    async def test_transport_fault_reported_then_closed(self):
        session = new_session(RecordingSandbox())

        async def broken():
            yield content_frame("partial")
            raise httpx.ReadError("connection reset")

        frames = await collect(session, broken())

        texts = contents(frames)
        assert texts[0] == "partial"
        assert "upstream stream error: connection reset" in texts[1]
        assert frames[-2]["choices"][0]["finish_reason"] == "stop"
        assert frames[-1] == "[DONE]"

    @pytest.mark.asyncio
    async def test_transport_fault_waits_for_pending_tool(self):
        session = new_session(RecordingSandbox(delay=0.03))

        async def broken():
            yield content_frame(fence(LIST_CALL))
            raise httpx.ReadError("gone")

        frames = await collect(session, broken())

        assert "\n\n[Tool list_files Result]\nok" in contents(frames)
        assert frames[-1] == "[DONE]"

    @pytest.mark.asyncio
    async def test_upstream_error_payload_reported(self):
        session = new_session(RecordingSandbox())
        error = 'data: {"error": {"message": "model overloaded"}}\n\n'

        frames = await collect(session, feed(error, DONE))

        assert any("upstream error: model overloaded" in t for t in contents(frames))


class TestClientDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_cancels_reader_but_tool_finishes(self):
        sandbox = RecordingSandbox(delay=0.02)
        session = new_session(sandbox)
        reader_cancelled = asyncio.Event()

        async def never_done():
            try:
                yield content_frame(fence(LIST_CALL))
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                reader_cancelled.set()
                raise

        frames = session.frames(as_lines(never_done()))
        async for frame in frames:
            if "tool_calls" in frame:
                break
        await frames.aclose()

        await asyncio.wait_for(reader_cancelled.wait(), timeout=1)
        await asyncio.sleep(0.1)

        assert [c.tool for c in sandbox.calls] == ["list_files"]
        assert session.pending == 0
        assert session.state is SessionState.STREAMING
