from __future__ import annotations

import logging
from typing import Any

import httpx
from fastapi import APIRouter, Request

from llm_proxy.errors import StoreValidationError, UpstreamUnavailableError
from llm_proxy.gateway.proxy import PROXY_USER_AGENT, request_error_details
from llm_proxy.runtime.store import OperationalStore
from llm_proxy.utils.url_utils import join_upstream_url, strip_trailing_slash

PROBE_PATH = "/v1/models"
# An auth or not-found answer still proves the upstream is reachable.
REACHABLE_ERROR_STATUSES = {401, 403, 404}

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/admin")


def is_reachable_status(status_code: int) -> bool:
    return status_code in REACHABLE_ERROR_STATUSES or status_code >= 200


class ConnectionProbe:
    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        connect_timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=max(0.1, float(timeout_seconds)),
                connect=max(0.1, float(connect_timeout_seconds)),
            ),
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def probe(self, target_api_url: str) -> dict[str, Any]:
        probe_url = join_upstream_url(strip_trailing_slash(target_api_url), PROBE_PATH)
        try:
            response = await self.client.get(
                probe_url,
                headers={"User-Agent": PROXY_USER_AGENT},
            )
        except Exception as exc:
            details = request_error_details(exc)
            logger.warning(
                "admin_probe_failed url=%s error_type=%s is_timeout=%s error=%s",
                probe_url,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            raise UpstreamUnavailableError(
                "Connection failed", message=details["error"]
            ) from exc

        logger.info(
            "admin_probe_complete url=%s status=%d", probe_url, response.status_code
        )
        if not is_reachable_status(response.status_code):
            raise UpstreamUnavailableError(
                "Connection failed",
                status=response.status_code,
                statusText=response.reason_phrase,
            )
        return {"message": "Connection successful", "status": response.status_code}


def _store(request: Request) -> OperationalStore:
    return request.app.state.store


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise StoreValidationError("Invalid JSON body") from exc


@router.get("/config")
async def get_config(request: Request) -> dict[str, Any]:
    return await _store(request).get_config()


@router.post("/config")
async def update_config(request: Request) -> dict[str, Any]:
    payload = await _json_body(request)
    config = await _store(request).set_config(payload)
    logger.info(
        "admin_config_updated target_api_url=%s admin_password_set=%s",
        config.get("targetApiUrl"),
        "adminPassword" in config,
    )
    return config


@router.get("/logs")
async def get_logs(request: Request) -> list[dict[str, Any]]:
    return await _store(request).get_logs(request.query_params.get("limit"))


@router.post("/logs")
async def append_log(request: Request) -> dict[str, Any]:
    payload = await _json_body(request)
    return await _store(request).append_log(payload)


@router.delete("/logs")
async def clear_logs(request: Request) -> dict[str, str]:
    await _store(request).clear_logs()
    logger.info("admin_logs_cleared")
    return {"message": "Logs cleared"}


@router.get("/stats")
async def get_stats(request: Request) -> dict[str, Any]:
    stats = await _store(request).get_stats()
    return stats.to_dict()


@router.post("/test-connection")
async def test_connection(request: Request) -> dict[str, Any]:
    payload = await _json_body(request)
    target_api_url = payload.get("targetApiUrl") if isinstance(payload, dict) else None
    if not isinstance(target_api_url, str) or not target_api_url.strip():
        raise StoreValidationError("Missing targetApiUrl")
    probe: ConnectionProbe = request.app.state.connection_probe
    return await probe.probe(target_api_url.strip())
