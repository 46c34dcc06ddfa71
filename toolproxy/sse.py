"""Server-sent-event frame assembly for the upstream stream.

The transport splits the body into lines (``httpx.Response.aiter_lines``);
this parser turns those lines into ``UpstreamEvent`` objects. Only the
``data`` field matters to the proxy, so ``event``/``id``/``retry`` lines are
accepted and dropped.
"""

from __future__ import annotations

from toolproxy.schemas import UpstreamEvent

DONE_SENTINEL = "[DONE]"


class SSEParser:
    def __init__(self) -> None:
        self._data_lines: list[str] = []

    def feed_line(self, line: str) -> UpstreamEvent | None:
        """Consume one line (terminator stripped); return the frame it completes, if any."""
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data_lines.append(value)
        return None

    def flush(self) -> list[UpstreamEvent]:
        """Dispatch a trailing frame left unterminated at end of stream."""
        event = self._dispatch()
        return [event] if event is not None else []

    def _dispatch(self) -> UpstreamEvent | None:
        if not self._data_lines:
            return None
        data = "\n".join(self._data_lines)
        self._data_lines = []
        if data.strip() == DONE_SENTINEL:
            return UpstreamEvent(kind="done")
        return UpstreamEvent(kind="message", payload=data)
