import asyncio
import json
from typing import Any

import httpx
import pytest

from src.codegen.config import ProviderDef
from src.codegen.errors import UpstreamError
from src.codegen.providers import DummyBackend, OllamaBackend

SCHEMA = {"type": "object", "properties": {"code": {"type": "string"}}}


def ndjson(*lines: dict[str, Any]) -> bytes:
    return "".join(json.dumps(line) + "\n" for line in lines).encode("utf-8")


def build_backend(handler: Any, params: dict[str, Any] | None = None) -> OllamaBackend:
    defn = ProviderDef(name="ollama", type="ollama", base_url="http://localhost:11434")
    return OllamaBackend(
        defn,
        model="llama3.1",
        base_url="http://localhost:11434/",
        params=params,
        transport=httpx.MockTransport(handler),
    )


def collect(backend: Any, messages: list[dict[str, Any]] | None = None) -> list[str]:
    async def run() -> list[str]:
        return [
            fragment
            async for fragment in backend.stream_object(
                system="system prompt",
                messages=messages or [{"role": "user", "content": "hello"}],
                schema=SCHEMA,
            )
        ]

    return asyncio.run(run())


def test_streams_ndjson_until_done() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["headers"] = request.headers
        captured["json"] = json.loads(request.content)
        body = ndjson(
            {"message": {"role": "assistant", "content": '{"code": '}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": False},
            {"message": {"role": "assistant", "content": '"x"}'}, "done": True},
            {"message": {"role": "assistant", "content": "after done"}, "done": False},
        )
        return httpx.Response(200, content=body)

    backend = build_backend(handler, params={"temperature": 0.4, "max_tokens": 128, "keep_alive": "5m"})

    assert collect(backend) == ['{"code": ', '"x"}']
    assert captured["url"] == "http://localhost:11434/api/chat"
    assert "authorization" not in captured["headers"]
    payload = captured["json"]
    assert payload["format"] == SCHEMA
    assert payload["stream"] is True
    assert payload["options"] == {"temperature": 0.4, "num_predict": 128}
    assert payload["keep_alive"] == "5m"
    assert payload["messages"][0] == {"role": "system", "content": "system prompt"}


def test_error_line_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=ndjson({"error": "model 'llama9' not found"}))

    backend = build_backend(handler)

    with pytest.raises(UpstreamError, match="not found"):
        collect(backend)


def test_http_error_uses_error_field() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "model 'llama9' not found, try pulling it first"})

    backend = build_backend(handler)

    with pytest.raises(UpstreamError) as exc_info:
        collect(backend)

    assert exc_info.value.status_code == 404
    assert exc_info.value.message.startswith("model 'llama9' not found")


def test_dummy_backend_streams_valid_fragment_json() -> None:
    defn = ProviderDef(name="dummy", type="dummy", base_url="local://dummy")
    backend = DummyBackend(defn, model="echo", base_url="local://dummy")

    fragments = collect(backend, [{"role": "user", "content": "print hello"}])

    assert len(fragments) > 1
    fragment = json.loads("".join(fragments))
    assert fragment["template"] == "code-interpreter-v1"
    assert fragment["code"] == "print('print hello')\n"
    assert fragment["port"] is None
