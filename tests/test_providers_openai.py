import asyncio
import json
from typing import Any

import httpx
import pytest

from src.codegen.config import ProviderDef
from src.codegen.errors import UpstreamError
from src.codegen.providers import OpenAICompatBackend

SCHEMA = {"type": "object", "properties": {"code": {"type": "string"}}, "required": ["code"]}


def sse(*events: Any) -> bytes:
    frames = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        frames.append(f"data: {data}\n\n")
    return "".join(frames).encode("utf-8")


def delta(text: str, index: int = 0) -> dict[str, Any]:
    return {"choices": [{"index": index, "delta": {"content": text}}]}


def build_backend(
    handler: Any,
    *,
    response_format: str = "json_schema",
    base_url: str = "https://api.openai.com/v1",
    params: dict[str, Any] | None = None,
) -> OpenAICompatBackend:
    defn = ProviderDef(
        name="openai",
        type="openai",
        base_url=base_url,
        auth_env="OPENAI_API_KEY",
        response_format=response_format,  # type: ignore[arg-type]
    )
    return OpenAICompatBackend(
        defn,
        model="gpt-4o",
        base_url=base_url,
        api_key="sk-test",
        params=params,
        transport=httpx.MockTransport(handler),
    )


def collect(backend: OpenAICompatBackend, messages: list[dict[str, Any]] | None = None) -> list[str]:
    async def run() -> list[str]:
        return [
            fragment
            async for fragment in backend.stream_object(
                system="You are a skilled software engineer.",
                messages=messages or [{"role": "user", "content": "plot a sine wave"}],
                schema=SCHEMA,
            )
        ]

    return asyncio.run(run())


def test_streams_content_deltas_in_order() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("authorization")
        captured["json"] = json.loads(request.content)
        body = sse(
            {"choices": [{"index": 0, "delta": {"role": "assistant"}}]},
            delta('{"code": '),
            delta("ignored", index=1),
            delta('"print(1)"}'),
            "[DONE]",
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    backend = build_backend(handler, params={"temperature": 0.2, "top_k": 3, "max_tokens": 256})

    assert collect(backend) == ['{"code": ', '"print(1)"}']
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured["auth"] == "Bearer sk-test"
    payload = captured["json"]
    assert payload["model"] == "gpt-4o"
    assert payload["stream"] is True
    assert payload["temperature"] == 0.2
    assert payload["max_tokens"] == 256
    assert "top_k" not in payload
    assert payload["messages"][0] == {"role": "system", "content": "You are a skilled software engineer."}
    assert payload["response_format"] == {
        "type": "json_schema",
        "json_schema": {"name": "fragment", "schema": SCHEMA, "strict": False},
    }


def test_json_object_mode_carries_schema_in_system_prompt() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["json"] = json.loads(request.content)
        return httpx.Response(200, content=sse(delta("{}"), "[DONE]"))

    backend = build_backend(handler, response_format="json_object")
    collect(backend)

    payload = captured["json"]
    assert payload["response_format"] == {"type": "json_object"}
    assert '"required": ["code"]' in payload["messages"][0]["content"]


def test_user_image_parts_are_mapped() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["json"] = json.loads(request.content)
        return httpx.Response(200, content=sse("[DONE]"))

    backend = build_backend(handler)
    collect(
        backend,
        [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "recreate this"},
                    {"type": "image", "image": "data:image/png;base64,AAAA"},
                ],
            },
            {"role": "assistant", "content": [{"type": "text", "text": "done"}]},
        ],
    )

    messages = captured["json"]["messages"]
    assert messages[1]["content"] == [
        {"type": "text", "text": "recreate this"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
    ]
    assert messages[2] == {"role": "assistant", "content": "done"}


def test_http_error_raises_upstream_error_with_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

    backend = build_backend(handler)

    with pytest.raises(UpstreamError) as exc_info:
        collect(backend)

    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "Incorrect API key provided"


def test_in_stream_error_frame_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=sse(delta("{"), {"error": {"message": "Rate limit reached", "code": 429}}),
        )

    backend = build_backend(handler)

    with pytest.raises(UpstreamError) as exc_info:
        collect(backend)

    assert exc_info.value.status_code == 429


def test_connection_failure_has_no_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    backend = build_backend(handler)

    with pytest.raises(UpstreamError) as exc_info:
        collect(backend)

    assert exc_info.value.status_code is None


def test_full_endpoint_base_url_is_not_extended() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        return httpx.Response(200, content=sse("[DONE]"))

    backend = build_backend(handler, base_url="https://proxy.test/v1/chat/completions")
    collect(backend)

    assert captured["url"] == "https://proxy.test/v1/chat/completions"
