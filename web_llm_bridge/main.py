from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from web_llm_bridge.bridge import ChatBridge, ChatStream
from web_llm_bridge.credentials.oauth import OAuthClientConfig, OAuthExchange
from web_llm_bridge.credentials.pool import (
    CredentialPool,
    PoolEmptyError,
    RefreshFailedError,
)
from web_llm_bridge.credentials.store import CredentialStore
from web_llm_bridge.gateway.auth import AuthConfigurationError, Authenticator
from web_llm_bridge.profiles import BridgeProfile, UnknownModelError, load_bridge_profile
from web_llm_bridge.runtime.access import AccessSerializer
from web_llm_bridge.settings import get_settings
from web_llm_bridge.streaming.transcript import SseTranscriptLogger
from web_llm_bridge.upstream import UpstreamClient, UpstreamRequestError, UpstreamStatusError

app = FastAPI(
    title="Web LLM Bridge",
    description="OpenAI-compatible streaming API over pooled web chat accounts.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


def _error_response(
    status_code: int,
    *,
    error_type: str,
    message: str,
    code: str | None = None,
    **extra: Any,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": message,
                "type": error_type,
                "param": None,
                "code": code or error_type,
                **extra,
            }
        },
    )


def _build_models_response(profile: BridgeProfile) -> dict[str, Any]:
    data: list[dict[str, Any]] = []
    seen: set[str] = set()
    for provider in profile.providers:
        for model_id in provider.models:
            if model_id in seen:
                continue
            seen.add(model_id)
            data.append(
                {
                    "id": model_id,
                    "object": "model",
                    "created": 0,
                    "owned_by": provider.name,
                }
            )
    return {"object": "list", "data": data}


class ChatStreamResponse(StreamingResponse):
    """SSE response that always hands its lease back, even if the body never starts."""

    def __init__(self, chat: ChatStream, headers: dict[str, str]) -> None:
        super().__init__(
            content=chat.iter_sse(),
            media_type="text/event-stream",
            headers=headers,
        )
        self.chat = chat

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.chat.aclose()


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    bridge_profile = load_bridge_profile(settings.profile_config_path)
    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)
    app.state.bridge_profile = bridge_profile

    http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout_seconds))
    app.state.http_client = http_client
    exchange = OAuthExchange(
        OAuthClientConfig.from_settings(settings),
        client_getter=lambda: app.state.http_client,
    )
    pool = CredentialPool(
        store=CredentialStore(settings.accounts_dir),
        refresher=exchange,
        refresh_skew_seconds=settings.refresh_skew_seconds,
    )
    loaded = await pool.load_all()
    app.state.credential_pool = pool

    transcript = SseTranscriptLogger(
        path=settings.sse_transcript_path,
        enabled=settings.sse_transcript_enabled,
    )
    app.state.sse_transcript = transcript
    upstream = UpstreamClient(timeout_seconds=settings.http_timeout_seconds)
    app.state.upstream_client = upstream
    app.state.chat_bridge = ChatBridge(
        pool=pool,
        serializer=AccessSerializer(),
        upstream=upstream,
        profile=bridge_profile,
        transcript=transcript,
    )
    logger.info(
        (
            "startup complete profile_config_path=%s providers=%d models=%d "
            "accounts_dir=%s accounts=%d sse_transcript_enabled=%s"
        ),
        settings.profile_config_path,
        len(bridge_profile.providers),
        len(bridge_profile.available_models()),
        settings.accounts_dir,
        loaded,
        settings.sse_transcript_enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    upstream: UpstreamClient | None = getattr(app.state, "upstream_client", None)
    if upstream is not None:
        await upstream.close()
    http_client: httpx.AsyncClient | None = getattr(app.state, "http_client", None)
    if http_client is not None:
        await http_client.aclose()
    transcript: SseTranscriptLogger | None = getattr(app.state, "sse_transcript", None)
    if transcript is not None:
        transcript.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    profile: BridgeProfile = app.state.bridge_profile
    return _build_models_response(profile)


@app.get("/v1/accounts")
async def accounts() -> dict[str, Any]:
    pool: CredentialPool = app.state.credential_pool
    return {"object": "list", "data": await pool.snapshot()}


@app.post("/v1/accounts/reload")
async def reload_accounts() -> dict[str, Any]:
    pool: CredentialPool = app.state.credential_pool
    loaded = await pool.load_all()
    logger.info("credential_pool_reloaded count=%d", loaded)
    return {"object": "accounts.reload", "loaded": loaded}


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    try:
        payload = await request.json()
    except Exception as exc:
        raise HTTPException(
            status_code=400, detail=f"Expected JSON body: {exc}"
        ) from exc

    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=400, detail="Expected a JSON object request body."
        )

    bridge: ChatBridge = app.state.chat_bridge
    chat = await bridge.open(payload)
    headers = {"x-bridge-session-id": chat.session_id}
    if payload.get("stream"):
        headers["cache-control"] = "no-cache"
        return ChatStreamResponse(chat, headers)
    try:
        completion = await chat.collect()
    finally:
        await chat.aclose()
    return JSONResponse(content=completion, headers=headers)


@app.exception_handler(PoolEmptyError)
async def pool_empty_handler(_: Request, exc: PoolEmptyError) -> JSONResponse:
    return _error_response(
        503, error_type="credential_pool_empty", message=str(exc)
    )


@app.exception_handler(RefreshFailedError)
async def refresh_failed_handler(_: Request, exc: RefreshFailedError) -> JSONResponse:
    return _error_response(
        502,
        error_type="credential_refresh_failed",
        message=str(exc),
        account=exc.email,
    )


@app.exception_handler(UnknownModelError)
async def unknown_model_handler(_: Request, exc: UnknownModelError) -> JSONResponse:
    return _error_response(
        400,
        error_type="invalid_request_error",
        code="model_not_found",
        message=str(exc),
    )


@app.exception_handler(UpstreamStatusError)
async def upstream_status_handler(_: Request, exc: UpstreamStatusError) -> JSONResponse:
    return _error_response(
        502,
        error_type="upstream_error",
        message=str(exc),
        provider=exc.provider,
        upstream_status=exc.status_code,
    )


@app.exception_handler(UpstreamRequestError)
async def upstream_request_handler(_: Request, exc: UpstreamRequestError) -> JSONResponse:
    return _error_response(
        502,
        error_type="upstream_unreachable",
        message=str(exc),
        provider=exc.provider,
    )


@app.exception_handler(FileNotFoundError)
async def config_missing_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(AuthConfigurationError)
async def auth_config_handler(_: Request, exc: AuthConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run(host: str = "0.0.0.0", port: int = 8000) -> None:
    import uvicorn

    uvicorn.run("web_llm_bridge.main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    run()
