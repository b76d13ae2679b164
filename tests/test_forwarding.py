from __future__ import annotations

import json
import logging
from typing import Any

import httpx
import pytest

from llm_proxy.main import app
from llm_proxy.runtime.store import InMemoryOperationalStore
from tests.client_test_utils import (
    ChunkedUpstreamStream,
    admin_headers,
    build_test_client,
    install_upstream,
    streamed_response,
)


def _latest_logs(client: Any) -> list[dict[str, Any]]:
    response = client.get("/admin/logs?limit=10", headers=admin_headers())
    assert response.status_code == 200
    return response.json()


def test_forwards_body_and_rewrites_headers(monkeypatch: Any) -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["headers"] = dict(request.headers)
        captured["body"] = request.content
        return streamed_response(
            200,
            [b'{"id": ', b'"chatcmpl-1"}'],
            headers={
                "Content-Type": "application/json",
                "Access-Control-Allow-Origin": "https://evil.example",
            },
        )

    with build_test_client(monkeypatch, TARGET_API_KEY="sk-default") as client:
        install_upstream(handler)
        body = b'{"model":"gpt-4o","messages":[]}'
        response = client.post(
            "/v1/chat/completions?trace=1",
            content=body,
            headers={
                "Content-Type": "application/json",
                "Authorization": "Bearer caller-token",
                "x-target-api-url": "https://header.example/",
                "x-target-api-key": "sk-header",
                "X-Custom": "kept",
            },
        )

        assert response.status_code == 200
        assert response.json() == {"id": "chatcmpl-1"}
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["x-content-type-options"] == "nosniff"

        assert captured["url"] == "https://header.example/v1/chat/completions?trace=1"
        assert captured["body"] == body
        upstream_headers = captured["headers"]
        assert upstream_headers["authorization"] == "Bearer sk-header"
        assert upstream_headers["user-agent"] == "LLM-Proxy-API/1.0"
        assert upstream_headers["x-custom"] == "kept"
        assert "x-target-api-url" not in upstream_headers
        assert "x-target-api-key" not in upstream_headers

        logs = _latest_logs(client)
        assert len(logs) == 1
        assert logs[0]["endpoint"] == "/v1/chat/completions"
        assert logs[0]["targetApi"] == "https://header.example"
        assert logs[0]["status"] == 200
        assert isinstance(logs[0]["duration"], int)
        assert "error" not in logs[0]


def test_uses_default_url_and_leaves_auth_alone_without_key(monkeypatch: Any) -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["headers"] = dict(request.headers)
        return httpx.Response(200, json={"data": []})

    with build_test_client(
        monkeypatch, TARGET_API_URL="https://api.openai.com/"
    ) as client:
        install_upstream(handler)
        response = client.post(
            "/v1/embeddings",
            json={"input": "hi"},
            headers={"Authorization": "Bearer caller-token"},
        )

    assert response.status_code == 200
    assert captured["url"] == "https://api.openai.com/v1/embeddings"
    assert captured["headers"]["authorization"] == "Bearer caller-token"


def test_stored_target_url_is_used_when_no_header(monkeypatch: Any) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={})

    with build_test_client(monkeypatch, TARGET_API_KEY="sk-default") as client:
        install_upstream(handler)
        client.post(
            "/admin/config",
            json={"targetApiUrl": "https://stored.example/"},
            headers=admin_headers(),
        )
        client.post("/v1/completions", json={"prompt": "x"})

    assert seen == ["https://stored.example/v1/completions"]


def test_streaming_response_is_relayed(monkeypatch: Any) -> None:
    chunks = [
        b'data: {"delta":"he"}\n\n',
        b'data: {"delta":"llo"}\n\n',
        b"data: [DONE]\n\n",
    ]
    streams: list[ChunkedUpstreamStream] = []

    def handler(request: httpx.Request) -> httpx.Response:
        response = streamed_response(
            200, chunks, headers={"Content-Type": "text/event-stream"}
        )
        streams.append(response.stream)
        return response

    with build_test_client(monkeypatch, TARGET_API_KEY="sk-default") as client:
        install_upstream(handler)
        with client.stream(
            "POST", "/v1/chat/completions", json={"stream": True}
        ) as response:
            body = b"".join(response.iter_bytes())

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["access-control-allow-origin"] == "*"
        assert body == b"".join(chunks)
        assert streams[0].closed
        assert _latest_logs(client)[0]["status"] == 200


def test_pre_read_upstream_body_is_relayed(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'{"ok":true}')

    with build_test_client(monkeypatch, TARGET_API_KEY="sk-default") as client:
        install_upstream(handler)
        response = client.post("/v1/completions", json={})

    assert response.status_code == 200
    assert response.content == b'{"ok":true}'


def test_non_success_upstream_is_passed_through(monkeypatch: Any, caplog: Any) -> None:
    error_body = {"error": {"message": "Rate limit reached", "type": "rate_limit"}}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            content=json.dumps(error_body).encode("utf-8"),
            headers={"Content-Type": "application/json", "Retry-After": "3"},
        )

    with build_test_client(monkeypatch, TARGET_API_KEY="sk-default") as client:
        install_upstream(handler)
        with caplog.at_level(logging.ERROR):
            response = client.post("/v1/chat/completions", json={})

        assert response.status_code == 429
        assert response.json() == error_body
        assert response.headers["retry-after"] == "3"
        assert response.headers["access-control-allow-origin"] == "*"
        assert "proxy_upstream_error" in caplog.text
        assert "Rate limit reached" in caplog.text
        assert _latest_logs(client)[0]["status"] == 429


def test_unparseable_error_body_is_still_relayed(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, content=b"<html>upstream down</html>")

    with build_test_client(monkeypatch, TARGET_API_KEY="sk-default") as client:
        install_upstream(handler)
        response = client.post("/v1/completions", json={})

    assert response.status_code == 503
    assert response.content == b"<html>upstream down</html>"
    assert response.headers["x-content-type-options"] == "nosniff"


def test_unreachable_upstream_returns_502_and_logs_once(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with build_test_client(monkeypatch, TARGET_API_KEY="sk-default") as client:
        install_upstream(handler)
        response = client.post("/v1/chat/completions", json={})

        assert response.status_code == 502
        assert response.json() == {
            "error": "Failed to forward request",
            "message": "connection refused",
        }
        logs = _latest_logs(client)
        assert len(logs) == 1
        assert logs[0]["status"] == 502
        assert logs[0]["error"] == "connection refused"
        assert logs[0]["targetApi"] == "https://upstream.example"


def test_log_append_failure_does_not_change_response(
    monkeypatch: Any, caplog: Any
) -> None:
    async def failing_append(self: Any, entry: Any) -> Any:
        msg = "disk full"
        raise OSError(msg)

    monkeypatch.setattr(InMemoryOperationalStore, "append_log", failing_append)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True})

    with build_test_client(monkeypatch, TARGET_API_KEY="sk-default") as client:
        install_upstream(handler)
        with caplog.at_level(logging.WARNING):
            response = client.post("/v1/chat/completions", json={})

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert "proxy_log_append_failed" in caplog.text


def test_pipeline_fault_is_logged_once_and_returns_500(monkeypatch: Any) -> None:
    async def broken_resolve(*args: Any, **kwargs: Any) -> Any:
        msg = "resolver exploded"
        raise RuntimeError(msg)

    monkeypatch.setattr("llm_proxy.main.resolve_target", broken_resolve)

    with build_test_client(monkeypatch) as client:
        response = client.post("/v1/embeddings", json={})

        assert response.status_code == 500
        assert response.json() == {
            "error": "Internal server error",
            "message": "resolver exploded",
        }
        logs = _latest_logs(client)
        assert [entry["status"] for entry in logs] == [500]
        assert logs[0]["error"] == "resolver exploded"


@pytest.mark.parametrize(
    "path", ["/v1/chat/completions", "/v1/completions", "/v1/embeddings"]
)
def test_llm_paths_reject_get(monkeypatch: Any, path: str) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.get(path)

    assert response.status_code == 405
    assert "error" in response.json()


def test_forwarder_is_attached_on_startup(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch):
        assert isinstance(app.state.store, InMemoryOperationalStore)
        assert app.state.forwarder.client is not None
