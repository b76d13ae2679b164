from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.datastructures import Headers

from llm_proxy.errors import UpstreamUnavailableError
from llm_proxy.gateway.resolver import (
    TARGET_KEY_HEADER,
    TARGET_URL_HEADER,
    ResolvedTarget,
)
from llm_proxy.runtime.store import OperationalStore, utc_timestamp
from llm_proxy.utils.url_utils import join_upstream_url

PROXY_USER_AGENT = "LLM-Proxy-API/1.0"

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

STRIPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {
    "host",
    "content-length",
    TARGET_URL_HEADER,
    TARGET_KEY_HEADER,
}

STRIPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-length"}

SECURITY_RESPONSE_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "X-Content-Type-Options": "nosniff",
}

_MAX_LOGGED_ERROR_BODY = 2000

logger = logging.getLogger("uvicorn.error")


def request_error_details(exc: Exception) -> dict[str, Any]:
    error_repr = repr(exc)
    return {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__ or "Exception",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def build_upstream_headers(
    incoming_headers: Headers,
    api_key: str | None,
) -> list[tuple[str, str]]:
    headers: list[tuple[str, str]] = []
    for name, value in incoming_headers.items():
        lower = name.lower()
        if lower in STRIPPED_REQUEST_HEADERS or lower == "user-agent":
            continue
        if api_key and lower == "authorization":
            continue
        headers.append((name, value))

    if api_key:
        headers.append(("Authorization", f"Bearer {api_key}"))
    headers.append(("User-Agent", PROXY_USER_AGENT))
    # Without this httpx would ask for compression the caller never requested.
    if "accept-encoding" not in incoming_headers:
        headers.append(("Accept-Encoding", "identity"))
    return headers


def apply_security_headers(headers: dict[str, str]) -> dict[str, str]:
    overridden = {name.lower() for name in SECURITY_RESPONSE_HEADERS}
    secured = {
        name: value for name, value in headers.items() if name.lower() not in overridden
    }
    secured.update(SECURITY_RESPONSE_HEADERS)
    return secured


def filter_response_headers(
    headers: httpx.Headers,
    *,
    drop: set[str] | None = None,
) -> dict[str, str]:
    excluded = STRIPPED_RESPONSE_HEADERS | (drop or set())
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in excluded:
            filtered[name] = value
    return apply_security_headers(filtered)


def parse_upstream_error(body: bytes) -> Any | None:
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def forward_failure_response(message: str) -> JSONResponse:
    error = UpstreamUnavailableError("Failed to forward request", message=message)
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_payload(),
        headers=dict(SECURITY_RESPONSE_HEADERS),
    )


async def _iter_request_body(request: Request) -> AsyncIterator[bytes]:
    async for chunk in request.stream():
        if chunk:
            yield chunk


class UpstreamForwarder:
    """Relays one inbound LLM call to the resolved upstream and records it."""

    def __init__(
        self,
        *,
        store: OperationalStore,
        timeout_seconds: float = 600.0,
        connect_timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=max(0.1, float(timeout_seconds)),
                connect=max(0.1, float(connect_timeout_seconds)),
            ),
            limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def forward(
        self,
        request: Request,
        endpoint: str,
        target: ResolvedTarget,
    ) -> Response:
        started = time.perf_counter()
        upstream_url = join_upstream_url(target.base_url, endpoint, request.url.query)
        logger.debug(
            "proxy_forwarding endpoint=%s upstream_url=%s url_source=%s key_source=%s",
            endpoint,
            upstream_url,
            target.url_source,
            target.key_source,
        )

        error: str | None = None
        try:
            upstream_request = self.client.build_request(
                method=request.method,
                url=upstream_url,
                headers=build_upstream_headers(request.headers, target.api_key),
                content=_iter_request_body(request),
            )
            upstream = await self.client.send(upstream_request, stream=True)
            logger.debug(
                "proxy_upstream_status endpoint=%s status=%d",
                endpoint,
                upstream.status_code,
            )
            if upstream.is_success:
                response: Response = self._stream_response(upstream)
            else:
                response = await self._error_passthrough_response(upstream, endpoint)
        except Exception as exc:
            details = request_error_details(exc)
            error = details["error"]
            logger.error(
                "proxy_forward_failed endpoint=%s upstream_url=%s error_type=%s "
                "is_timeout=%s error=%s",
                endpoint,
                upstream_url,
                details["error_type"],
                details["is_timeout"],
                error,
            )
            response = forward_failure_response(error)

        await self.record_outcome(
            endpoint=endpoint,
            target_api=target.base_url,
            status_code=response.status_code,
            started=started,
            error=error,
        )
        return response

    async def record_outcome(
        self,
        *,
        endpoint: str,
        target_api: str,
        status_code: int,
        started: float,
        error: str | None = None,
    ) -> None:
        entry: dict[str, Any] = {
            "endpoint": endpoint,
            "targetApi": target_api,
            "status": int(status_code),
            "duration": int((time.perf_counter() - started) * 1000),
            "timestamp": utc_timestamp(),
        }
        if error:
            entry["error"] = error
        try:
            await self._store.append_log(entry)
        except Exception as exc:
            logger.warning(
                "proxy_log_append_failed endpoint=%s status=%d error=%s",
                endpoint,
                int(status_code),
                exc,
            )

    @staticmethod
    def _stream_response(upstream: httpx.Response) -> StreamingResponse:
        # An already-read body is decoded, so its encoding header is stale.
        response_headers = filter_response_headers(
            upstream.headers,
            drop={"content-encoding"} if upstream.is_stream_consumed else None,
        )

        async def stream_generator() -> AsyncIterator[bytes]:
            try:
                if upstream.is_stream_consumed:
                    body = await upstream.aread()
                    if body:
                        yield body
                else:
                    async for chunk in upstream.aiter_raw():
                        yield chunk
            finally:
                await upstream.aclose()

        return StreamingResponse(
            content=stream_generator(),
            status_code=upstream.status_code,
            headers=response_headers,
        )

    @staticmethod
    async def _error_passthrough_response(
        upstream: httpx.Response,
        endpoint: str,
    ) -> Response:
        try:
            body = await upstream.aread()
        finally:
            await upstream.aclose()

        error_details = parse_upstream_error(body)
        if error_details is not None:
            logger.error(
                "proxy_upstream_error endpoint=%s status=%d reason=%s details=%s",
                endpoint,
                upstream.status_code,
                upstream.reason_phrase,
                json.dumps(error_details, ensure_ascii=False, default=str),
            )
        else:
            logger.error(
                "proxy_upstream_error endpoint=%s status=%d reason=%s body=%s",
                endpoint,
                upstream.status_code,
                upstream.reason_phrase,
                body[:_MAX_LOGGED_ERROR_BODY].decode("utf-8", errors="replace")
                or "<empty>",
            )

        # The body was decoded by httpx, so the encoding header no longer applies.
        return Response(
            content=body,
            status_code=upstream.status_code,
            headers=filter_response_headers(
                upstream.headers, drop={"content-encoding"}
            ),
        )
