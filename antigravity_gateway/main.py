from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from antigravity_gateway.errors import (
    AuthError,
    InvalidRequestError,
    NoFallbackAvailableError,
    UpstreamError,
)
from antigravity_gateway.gateway.client import UpstreamClient, UpstreamTimeouts
from antigravity_gateway.gateway.ledger import RequestLedger
from antigravity_gateway.gateway.rotation import CredentialRotationManager
from antigravity_gateway.models import build_models_response
from antigravity_gateway.runtime.fallback import ModelFallbackConfig, ModelFallbackEngine
from antigravity_gateway.service import ChatCompletionService
from antigravity_gateway.settings import get_settings

app = FastAPI(
    title="Antigravity Gateway",
    description="OpenAI-compatible gateway for the Antigravity and Gemini Code Assist backends.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

_SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    rotation = CredentialRotationManager(
        settings.credentials_path,
        debounce_seconds=settings.credentials_watch_debounce_seconds,
        timezone_offset_hours=settings.rotation_reset_timezone_offset_hours,
        reset_hour=settings.rotation_reset_hour,
    )
    explicit_paths = settings.credentials_paths_list
    if explicit_paths:
        rotation.initialize(explicit_paths)
    elif settings.credentials_dir:
        await rotation.initialize_from_directory(
            settings.credentials_dir,
            watch=settings.credentials_watch_enabled,
        )

    client = UpstreamClient(
        rotation=rotation,
        credentials_path=settings.credentials_path,
        token_url=settings.oauth_token_url,
        oauth_client_id=settings.oauth_client_id,
        oauth_client_secret=settings.oauth_client_secret,
        ledger=RequestLedger(settings.request_ledger_path),
        project_id=settings.upstream_project_id,
        timeouts=UpstreamTimeouts(
            connect_seconds=settings.upstream_connect_timeout_seconds,
            read_seconds=settings.upstream_read_timeout_seconds,
            write_seconds=settings.upstream_write_timeout_seconds,
            pool_seconds=settings.upstream_pool_timeout_seconds,
            discovery_seconds=settings.discovery_timeout_seconds,
        ),
    )
    fallback = ModelFallbackEngine(
        ModelFallbackConfig(cooldown_seconds=max(1.0, settings.model_cooldown_seconds))
    )
    app.state.settings = settings
    app.state.rotation = rotation
    app.state.upstream_client = client
    app.state.fallback_engine = fallback
    app.state.chat_service = ChatCompletionService(
        client=client,
        fallback=fallback,
        default_model=settings.default_model,
        auto_switch_enabled=settings.auto_model_switch_enabled,
    )
    logger.info(
        (
            "startup complete credentials_path=%s accounts=%d rotation_enabled=%s "
            "default_model=%s auto_model_switch=%s"
        ),
        settings.credentials_path,
        rotation.get_account_count(),
        rotation.is_rotation_enabled(),
        settings.default_model,
        settings.auto_model_switch_enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    rotation: CredentialRotationManager | None = getattr(app.state, "rotation", None)
    if rotation is not None:
        await rotation.close()
    client: UpstreamClient | None = getattr(app.state, "upstream_client", None)
    if client is not None:
        await client.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, Any]:
    rotation: CredentialRotationManager = app.state.rotation
    fallback: ModelFallbackEngine = app.state.fallback_engine
    return {
        "status": "ok",
        "accounts": rotation.get_account_count(),
        "rotation_enabled": rotation.is_rotation_enabled(),
        "current_account": rotation.get_current_account_id(),
        "exhausted": rotation.exhausted,
        "cooldowns": fallback.snapshot(),
    }


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    return build_models_response()


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    try:
        payload = await request.json()
    except Exception as exc:
        raise HTTPException(status_code=400, detail=f"Expected JSON body: {exc}") from exc

    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object request body.")

    service: ChatCompletionService = app.state.chat_service
    if bool(payload.get("stream")):
        frames = await service.open_stream(payload)
        return StreamingResponse(frames, media_type="text/event-stream", headers=_SSE_HEADERS)
    return JSONResponse(content=await service.complete(payload))


@app.exception_handler(InvalidRequestError)
async def invalid_request_handler(_: Request, exc: InvalidRequestError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": {"message": str(exc), "type": "invalid_request_error", "code": 400}},
    )


@app.exception_handler(AuthError)
async def auth_error_handler(_: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"error": {"message": str(exc), "type": "authentication_error", "code": 401}},
    )


@app.exception_handler(UpstreamError)
async def upstream_error_handler(_: Request, exc: UpstreamError) -> JSONResponse:
    logger.warning(
        "upstream_error_response status=%d endpoint=%s error=%s",
        exc.status_code,
        exc.endpoint,
        exc,
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.error_payload()})


@app.exception_handler(NoFallbackAvailableError)
async def no_fallback_handler(_: Request, exc: NoFallbackAvailableError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"error": {"message": str(exc), "code": 503}},
    )


def run() -> None:
    import uvicorn

    uvicorn.run("antigravity_gateway.main:app", host="0.0.0.0", port=8000, reload=False)
