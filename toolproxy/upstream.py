"""Upstream client: mode selection, payload shaping and the outbound streaming call."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import httpx

from toolproxy.config import ProxyConfig
from toolproxy.prompts import SYSTEM_PROMPT
from toolproxy.schemas import ChatCompletionRequest

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    AGENT = "agent"  # caller declared native tools: relay bytes untouched
    LOCAL = "local"  # fenced-JSON tool emulation


class UpstreamError(RuntimeError):
    """The upstream could not be reached or answered with a non-2xx status."""


def select_mode(body: ChatCompletionRequest) -> Mode:
    """Agent mode when the caller declares tools or a tool_choice."""
    if body.tools or body.tool_choice is not None:
        return Mode.AGENT
    return Mode.LOCAL


def build_upstream_payload(
    body: ChatCompletionRequest,
    config: ProxyConfig,
    mode: Mode,
    system_prompt: str = SYSTEM_PROMPT,
) -> dict[str, Any]:
    """Shape the request forwarded upstream.

    Only fields the caller actually sent are forwarded, plus a default model
    and ``stream: true``. Local mode prepends the instruction message and
    drops ``tools``/``tool_choice``.
    """
    payload = body.model_dump(exclude_unset=True)
    payload.update(body.model_extra or {})
    payload["model"] = body.model or config.default_model
    payload["stream"] = True

    if mode is Mode.LOCAL:
        payload.pop("tools", None)
        payload.pop("tool_choice", None)
        payload["messages"] = [{"role": "system", "content": system_prompt}, *body.messages]

    return payload


async def open_upstream_stream(
    client: httpx.AsyncClient,
    config: ProxyConfig,
    payload: dict[str, Any],
) -> httpx.Response:
    """POST the payload and return the open streaming response.

    The caller owns the response and must ``aclose()`` it. Raises
    ``ConfigurationError`` before any I/O if no upstream URL is set, and
    ``UpstreamError`` if the upstream is unreachable or answers non-2xx.
    """
    url = config.require_upstream_url()

    headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
    if config.upstream_api_key:
        headers["Authorization"] = f"Bearer {config.upstream_api_key}"

    request = client.build_request(
        "POST", url, json=payload, headers=headers, timeout=config.upstream_timeout
    )
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        logger.error(f"Upstream request to {url} failed: {e}", exc_info=True)
        raise UpstreamError(f"Upstream unreachable: {e}") from e

    if not response.is_success:
        body = await response.aread()
        await response.aclose()
        detail = body[:500].decode("utf-8", errors="replace").strip()
        logger.error(f"Upstream error {response.status_code}: {detail}")
        message = f"Upstream error: {response.status_code} {response.reason_phrase}"
        if detail:
            message = f"{message}: {detail}"
        raise UpstreamError(message)

    return response
