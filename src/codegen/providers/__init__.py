import asyncio
import json
from typing import Any, AsyncIterator, List

import httpx

from ..config import ProviderDef
from ..errors import OVERLOADED_STATUS, UpstreamError


def http_error_details(response: httpx.Response) -> tuple[int, str]:
    status = response.status_code
    message: str | None = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error_field = payload.get("error")
        if isinstance(error_field, dict):
            error_message = error_field.get("message")
            if isinstance(error_message, str) and error_message:
                message = error_message
        elif isinstance(error_field, str) and error_field:
            message = error_field
        if message is None:
            nested_message = payload.get("message")
            if isinstance(nested_message, str) and nested_message:
                message = nested_message
    if message is None:
        text = response.text
        if text:
            message = text
    if message is None:
        message = response.reason_phrase or f"HTTP {status}"
    return status, message


async def raise_for_upstream_status(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    await response.aread()
    status, message = http_error_details(response)
    raise UpstreamError(status, message)


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the joined ``data:`` payload of each server-sent event."""
    buffer: list[str] = []
    async for line in response.aiter_lines():
        stripped = line.strip()
        if not stripped:
            if not buffer:
                continue
            data_text = "\n".join(buffer).strip()
            buffer.clear()
            if data_text and data_text != "[DONE]":
                yield data_text
            continue
        if stripped.startswith("data:"):
            buffer.append(stripped[5:].lstrip())
    if buffer:
        data_text = "\n".join(buffer).strip()
        if data_text and data_text != "[DONE]":
            yield data_text


def text_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "\n".join(parts)
    raise ValueError("message content must be a string or a list of content parts")


def schema_instruction(schema: dict[str, Any]) -> str:
    return (
        "Respond only with a JSON object that matches this JSON schema:\n"
        + json.dumps(schema, ensure_ascii=False)
    )


class BaseBackend:
    """One upstream call bound to a provider, credential and parameter set."""

    _RESERVED_OPTION_KEYS: frozenset[str] = frozenset(
        {
            "model",
            "messages",
            "system",
            "stream",
            "response_format",
            "format",
        }
    )

    def __init__(
        self,
        defn: ProviderDef,
        *,
        model: str,
        base_url: str,
        api_key: str | None = None,
        params: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.defn = defn
        self.model = model
        self.base_url = base_url
        self._api_key = api_key
        self.params = dict(params or {})
        self._transport = transport

    def __repr__(self) -> str:
        return f"{type(self).__name__}(provider={self.defn.name!r}, model={self.model!r})"

    def _prepare_request(
        self,
        system: str,
        messages: List[dict[str, Any]],
        schema: dict[str, Any],
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        raise NotImplementedError

    def _iter_fragments(self, response: httpx.Response) -> AsyncIterator[str]:
        raise NotImplementedError

    @classmethod
    def _merge_extra_options(
        cls,
        payload: dict[str, Any],
        extra_options: dict[str, Any] | None,
        *,
        skip: frozenset[str] = frozenset(),
    ) -> None:
        if not extra_options:
            return
        for key, value in extra_options.items():
            if key in cls._RESERVED_OPTION_KEYS or key in skip:
                continue
            if value is None:
                continue
            payload[key] = value

    async def stream_object(
        self,
        *,
        system: str,
        messages: List[dict[str, Any]],
        schema: dict[str, Any],
    ) -> AsyncIterator[str]:
        url, headers, payload = self._prepare_request(system, messages, schema)
        try:
            async with httpx.AsyncClient(
                timeout=self.defn.timeout_s, transport=self._transport
            ) as client:
                async with client.stream("POST", url, headers=headers, json=payload) as response:
                    await raise_for_upstream_status(response)
                    async for fragment in self._iter_fragments(response):
                        if fragment:
                            yield fragment
        except httpx.TimeoutException as exc:
            raise UpstreamError(None, "upstream request timed out") from exc
        except httpx.TransportError as exc:
            raise UpstreamError(None, str(exc) or "upstream connection failed") from exc


class AnthropicBackend(BaseBackend):
    DEFAULT_MAX_TOKENS = 4096
    _ERROR_STATUS: dict[str, int] = {
        "invalid_request_error": 400,
        "authentication_error": 401,
        "permission_error": 403,
        "not_found_error": 404,
        "request_too_large": 413,
        "rate_limit_error": 429,
        "api_error": 500,
        "overloaded_error": OVERLOADED_STATUS,
    }
    _UNSUPPORTED_OPTIONS: frozenset[str] = frozenset(
        {"frequency_penalty", "presence_penalty"}
    )

    def _url(self) -> str:
        base = self.base_url.rstrip("/")
        if base.endswith("/messages"):
            return base
        if base.endswith("/v1"):
            return f"{base}/messages"
        return f"{base}/v1/messages"

    def _prepare_request(
        self,
        system: str,
        messages: List[dict[str, Any]],
        schema: dict[str, Any],
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers: dict[str, str] = {
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json",
        }
        if self._api_key:
            headers["x-api-key"] = self._api_key
        system_parts = [system, schema_instruction(schema)]
        mapped: list[dict[str, Any]] = []
        for message in messages:
            role = message.get("role")
            if role == "system":
                system_parts.append(text_content(message.get("content")))
                continue
            if role not in ("user", "assistant"):
                continue
            mapped.append({"role": role, "content": text_content(message.get("content"))})
        params = dict(self.params)
        payload: dict[str, Any] = {
            "model": self.model,
            "system": "\n\n".join(part for part in system_parts if part),
            "messages": mapped,
            "max_tokens": params.pop("max_tokens", None) or self.DEFAULT_MAX_TOKENS,
            "stream": True,
        }
        self._merge_extra_options(payload, params, skip=self._UNSUPPORTED_OPTIONS)
        return self._url(), headers, payload

    async def _iter_fragments(self, response: httpx.Response) -> AsyncIterator[str]:
        async for data_text in iter_sse_data(response):
            try:
                event = json.loads(data_text)
            except json.JSONDecodeError:
                continue
            if not isinstance(event, dict):
                continue
            event_type = event.get("type")
            if event_type == "content_block_delta":
                delta = event.get("delta")
                if isinstance(delta, dict) and delta.get("type") == "text_delta":
                    text = delta.get("text")
                    if isinstance(text, str):
                        yield text
            elif event_type == "error":
                error_info = event.get("error")
                error_type = ""
                message = "upstream stream error"
                if isinstance(error_info, dict):
                    error_type = str(error_info.get("type") or "")
                    message = str(error_info.get("message") or message)
                raise UpstreamError(self._ERROR_STATUS.get(error_type), message)


class OllamaBackend(BaseBackend):
    _OPTION_NAMES: dict[str, str] = {
        "temperature": "temperature",
        "top_p": "top_p",
        "top_k": "top_k",
        "frequency_penalty": "frequency_penalty",
        "presence_penalty": "presence_penalty",
        "max_tokens": "num_predict",
    }

    def _prepare_request(
        self,
        system: str,
        messages: List[dict[str, Any]],
        schema: dict[str, Any],
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = f"{self.base_url.rstrip('/')}/api/chat"
        mapped: list[dict[str, Any]] = [{"role": "system", "content": system}]
        for message in messages:
            mapped.append(
                {
                    "role": message.get("role", "user"),
                    "content": text_content(message.get("content")),
                }
            )
        options: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in self.params.items():
            option_name = self._OPTION_NAMES.get(key)
            if option_name is not None:
                options[option_name] = value
            else:
                extra[key] = value
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": mapped,
            "stream": True,
            "format": schema,
        }
        if options:
            payload["options"] = options
        self._merge_extra_options(payload, extra)
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return url, headers, payload

    async def _iter_fragments(self, response: httpx.Response) -> AsyncIterator[str]:
        async for line in response.aiter_lines():
            if not line.strip():
                continue
            try:
                payload_line = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(payload_line, dict):
                continue
            error_message = payload_line.get("error")
            if isinstance(error_message, str) and error_message:
                raise UpstreamError(None, error_message)
            message = payload_line.get("message")
            if isinstance(message, dict):
                content = message.get("content")
                if isinstance(content, str):
                    yield content
            if payload_line.get("done"):
                break


class DummyBackend(BaseBackend):
    """Local backend that streams a canned fragment; needs no network or key."""

    CHUNK_SIZE = 24

    async def stream_object(
        self,
        *,
        system: str,
        messages: List[dict[str, Any]],
        schema: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system
        _ = schema
        last_user = next(
            (text_content(m.get("content")) for m in reversed(messages) if m.get("role") == "user"),
            "hello",
        )
        fragment = {
            "commentary": f"Printing the request back: {last_user}",
            "template": "code-interpreter-v1",
            "title": "Echo request",
            "description": "Prints the user's request.",
            "additional_dependencies": [],
            "has_additional_dependencies": False,
            "install_dependencies_command": "",
            "port": None,
            "file_path": "script.py",
            "code": f"print({last_user!r})\n",
        }
        text = json.dumps(fragment)
        for start in range(0, len(text), self.CHUNK_SIZE):
            yield text[start : start + self.CHUNK_SIZE]
            await asyncio.sleep(0)


from .openai import OpenAICompatBackend  # noqa: E402


BACKEND_FACTORIES: dict[str, type[BaseBackend]] = {
    "openai": OpenAICompatBackend,
    "anthropic": AnthropicBackend,
    "ollama": OllamaBackend,
    "dummy": DummyBackend,
}


__all__ = [
    "AnthropicBackend",
    "BACKEND_FACTORIES",
    "BaseBackend",
    "DummyBackend",
    "OllamaBackend",
    "OpenAICompatBackend",
    "http_error_details",
    "iter_sse_data",
    "raise_for_upstream_status",
    "schema_instruction",
    "text_content",
]
