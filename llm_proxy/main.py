from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from llm_proxy.errors import AuthConfigurationError, ProxyError
from llm_proxy.gateway.admin import ConnectionProbe
from llm_proxy.gateway.admin import router as admin_router
from llm_proxy.gateway.auth import (
    AdminAuthenticator,
    build_admin_authenticator,
    unauthorized_response,
)
from llm_proxy.gateway.console import admin_console_response
from llm_proxy.gateway.proxy import UpstreamForwarder
from llm_proxy.gateway.resolver import resolve_target
from llm_proxy.runtime.store import OperationalStore, build_operational_store
from llm_proxy.settings import Settings, get_settings
from llm_proxy.utils.url_utils import strip_trailing_slash

CORS_ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
CORS_MAX_AGE_SECONDS = "86400"

app = FastAPI(
    title="LLM Proxy API",
    description="OpenAI-compatible forwarding proxy with an admin view of recent traffic.",
    version="0.1.0",
)
app.include_router(admin_router)

logger = logging.getLogger("uvicorn.error")


def _is_admin_api_path(path: str) -> bool:
    return path.startswith("/admin/") and path != "/admin/"


def _preflight_response(request: Request) -> Response:
    requested_headers = request.headers.get("access-control-request-headers", "")
    return Response(
        status_code=status.HTTP_204_NO_CONTENT,
        headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
            "Access-Control-Allow-Headers": requested_headers.strip() or "*",
            "Access-Control-Max-Age": CORS_MAX_AGE_SECONDS,
        },
    )


@app.middleware("http")
async def admin_auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not _is_admin_api_path(request.url.path):
        return await call_next(request)

    authenticator: AdminAuthenticator | None = getattr(
        app.state, "admin_authenticator", None
    )
    if authenticator is None:
        logger.warning("admin_auth_unavailable path=%s", request.url.path)
        return unauthorized_response()

    auth_error = await authenticator.authenticate_request(request)
    if auth_error is not None:
        return auth_error

    return await call_next(request)


# Registered last so it wraps the admin check above.
@app.middleware("http")
async def ingress_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    settings: Settings = getattr(app.state, "settings", None) or get_settings()
    if settings.is_production and request.url.scheme != "https":
        return PlainTextResponse("Please use HTTPS", status_code=status.HTTP_403_FORBIDDEN)

    if request.method == "OPTIONS":
        return _preflight_response(request)

    try:
        return await call_next(request)
    except Exception as exc:
        logger.exception(
            "request_failed method=%s path=%s error=%s",
            request.method,
            request.url.path,
            exc,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "message": str(exc)},
        )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    if settings.debug:
        logger.setLevel(logging.DEBUG)

    store = build_operational_store(
        backend=settings.store_backend,
        path=settings.store_path,
        name=settings.store_name,
        capacity=settings.log_capacity,
    )
    admin_authenticator = build_admin_authenticator(settings, store)
    await store.start()

    app.state.settings = settings
    app.state.store = store
    app.state.admin_authenticator = admin_authenticator
    app.state.forwarder = UpstreamForwarder(
        store=store,
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
    )
    app.state.connection_probe = ConnectionProbe(
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
    )
    logger.info(
        (
            "startup complete environment=%s store_backend=%s store_path=%s "
            "admin_auth_mode=%s default_target=%s debug=%s"
        ),
        settings.environment,
        settings.store_backend,
        settings.store_path,
        settings.admin_auth_mode,
        strip_trailing_slash(settings.target_api_url),
        settings.debug,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    forwarder: UpstreamForwarder | None = getattr(app.state, "forwarder", None)
    if forwarder is not None:
        await forwarder.close()
    probe: ConnectionProbe | None = getattr(app.state, "connection_probe", None)
    if probe is not None:
        await probe.close()
    store: OperationalStore | None = getattr(app.state, "store", None)
    if store is not None:
        await store.close()
    logger.info("shutdown complete")


@app.get("/")
@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "OK", "message": "LLM Proxy API is running"}


async def _forward_llm_request(request: Request, endpoint: str) -> Response:
    settings: Settings = app.state.settings
    forwarder: UpstreamForwarder = app.state.forwarder
    started = time.perf_counter()
    try:
        target = await resolve_target(request.headers, app.state.store, settings)
    except Exception as exc:
        await forwarder.record_outcome(
            endpoint=endpoint,
            target_api=strip_trailing_slash(settings.target_api_url),
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            started=started,
            error=str(exc),
        )
        raise
    return await forwarder.forward(request, endpoint, target)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _forward_llm_request(request, "/v1/chat/completions")


@app.post("/v1/completions")
async def completions(request: Request) -> Response:
    return await _forward_llm_request(request, "/v1/completions")


@app.post("/v1/embeddings")
async def embeddings(request: Request) -> Response:
    return await _forward_llm_request(request, "/v1/embeddings")


@app.get("/admin")
@app.get("/admin/")
async def admin_console() -> Response:
    settings: Settings = app.state.settings
    return admin_console_response(settings.admin_html_path)


@app.exception_handler(ProxyError)
async def proxy_error_handler(_: Request, exc: ProxyError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(AuthConfigurationError)
async def auth_config_handler(_: Request, exc: AuthConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    uvicorn.run(
        "llm_proxy.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips=get_settings().forwarded_allow_ips,
    )


if __name__ == "__main__":
    run()
