from __future__ import annotations

import json
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from src.codegen.client import ApiClient, ChatApi


def install_sandbox(server: Any, monkeypatch: pytest.MonkeyPatch, handler: Any) -> list[float]:
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    api = ChatApi(
        ApiClient("https://sandbox.test", transport=httpx.MockTransport(handler), sleep=fake_sleep)
    )
    monkeypatch.setattr(server, "sandbox_api", lambda: api)
    return delays


def test_sandbox_unavailable_without_configuration(server_module: Any) -> None:
    client = TestClient(server_module.app)

    response = client.post("/api/sandbox", json={"fragment": {}})

    assert response.status_code == 503
    assert response.json()["code"] == "SANDBOX_UNAVAILABLE"


def test_sandbox_request_is_forwarded(server_module: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json={"sbxId": "sbx-42", "url": "https://sbx-42.test"})

    install_sandbox(server_module, monkeypatch, handler)
    client = TestClient(server_module.app)

    response = client.post("/api/sandbox", json={"fragment": {"code": "print(1)"}, "userID": "u-1"})

    assert response.status_code == 201
    assert response.json() == {"sbxId": "sbx-42", "url": "https://sbx-42.test"}
    assert response.headers["x-codegen-request-id"]
    assert captured == {
        "url": "https://sandbox.test/api/sandbox",
        "body": {"fragment": {"code": "print(1)"}, "userID": "u-1"},
    }


def test_sandbox_server_errors_are_retried_then_reported(
    server_module: Any, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(502, json={"error": "sandbox pool exhausted"})

    delays = install_sandbox(server_module, monkeypatch, handler)
    client = TestClient(server_module.app)

    response = client.post("/api/sandbox", json={"fragment": {}})

    assert calls == 3
    assert delays == [1.0, 2.0]
    assert response.status_code == 502
    body = response.json()
    assert body["code"] == "SANDBOX_ERROR"
    assert body["details"] == "sandbox pool exhausted"


def test_sandbox_transport_failure_maps_to_bad_gateway(
    server_module: Any, monkeypatch: pytest.MonkeyPatch
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    install_sandbox(server_module, monkeypatch, handler)
    client = TestClient(server_module.app)

    response = client.post("/api/sandbox", json={"fragment": {}})

    assert response.status_code == 502
    assert response.json()["details"] == "connection refused"


def test_sandbox_empty_success_has_no_body(server_module: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(204)

    install_sandbox(server_module, monkeypatch, handler)
    client = TestClient(server_module.app)

    response = client.post("/api/sandbox", json={"fragment": {}})

    assert response.status_code == 204
    assert response.content == b""
    assert response.headers["x-codegen-request-id"]
