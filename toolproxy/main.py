"""LLM tool proxy: FastAPI app exposing an OpenAI-style streaming completions endpoint.

Requests that declare native ``tools`` are relayed to the upstream untouched
(Agent mode). Everything else gets the fenced-JSON tool instructions, and the
model's tool calls are executed in the workspace sandbox with results spliced
into the stream (Local mode).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from toolproxy.chunks import ChunkEncoder
from toolproxy.config import ConfigurationError, ProxyConfig, load_config
from toolproxy.relay import StreamSession, passthrough
from toolproxy.sandbox import Sandbox
from toolproxy.schemas import ChatCompletionRequest
from toolproxy.tools import list_tools
from toolproxy.upstream import Mode, UpstreamError, build_upstream_payload, open_upstream_stream, select_mode

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

router = APIRouter()


# ---------------------------------------------------------------------------
# Completions endpoint
# ---------------------------------------------------------------------------


@router.post("/v1/chat/completions")
async def chat_completions(body: ChatCompletionRequest, request: Request):
    """Proxy a chat completion, always answering as a chunked SSE stream."""
    config: ProxyConfig = request.app.state.config

    mode = select_mode(body)
    payload = build_upstream_payload(body, config, mode)
    logger.info(
        f"Chat completion: mode={mode.value}, model={payload['model']}, "
        f"messages={len(body.messages)}"
    )

    try:
        response = await open_upstream_stream(request.app.state.http, config, payload)
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except UpstreamError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if mode is Mode.AGENT:

        async def relay_bytes():
            try:
                async for chunk in passthrough(response):
                    yield chunk
            finally:
                await response.aclose()

        return StreamingResponse(
            relay_bytes(),
            media_type=response.headers.get("content-type", "text/event-stream"),
            headers=_SSE_HEADERS,
        )

    session = StreamSession(request.app.state.sandbox, ChunkEncoder(model=payload["model"]))

    async def stream():
        try:
            async for frame in session.frames(response.aiter_lines()):
                yield frame
        finally:
            await response.aclose()

    return StreamingResponse(stream(), media_type="text/event-stream", headers=_SSE_HEADERS)


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


@router.get("/healthz")
async def healthz():
    """Liveness check."""
    return {"ok": True}


@router.get("/v1/models")
async def models(request: Request):
    """Advertise the default upstream model."""
    config: ProxyConfig = request.app.state.config
    return {
        "object": "list",
        "data": [{"id": config.default_model, "object": "model", "owned_by": "upstream"}],
    }


@router.get("/v1/tools")
async def tools():
    """Names of the tools available in Local mode."""
    return {"tools": list_tools()}


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


async def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": "Invalid messages format"})


async def _not_found(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"detail": "Not found. This proxy only supports /v1/chat/completions and /healthz"},
    )


def create_app(
    config: ProxyConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the app. ``transport`` replaces the upstream network transport (tests)."""
    if config is None:
        config = load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create the sandbox and the shared upstream client."""
        app.state.sandbox = Sandbox.from_config(config)
        app.state.http = httpx.AsyncClient(transport=transport, timeout=config.upstream_timeout)
        logger.info(
            f"Tool proxy started (upstream={config.upstream_url or 'not configured'}, "
            f"workspace_root={app.state.sandbox.root}, default_model={config.default_model})"
        )
        yield
        await app.state.http.aclose()
        logger.info("Tool proxy shutting down")

    app = FastAPI(title="LLM Tool Proxy", version="0.1.0", lifespan=lifespan)
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RequestValidationError, _invalid_body)
    app.add_exception_handler(404, _not_found)
    app.include_router(router)
    return app


app = create_app()
