from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, List

import httpx

from ..errors import UpstreamError
from . import BaseBackend, iter_sse_data, schema_instruction, text_content


class OpenAICompatBackend(BaseBackend):
    _UNSUPPORTED_OPTIONS: frozenset[str] = frozenset({"top_k"})

    def _url(self) -> str:
        base = self.base_url.rstrip("/")
        if base.endswith("/chat/completions"):
            return base
        return f"{base}/chat/completions"

    @staticmethod
    def _map_content(content: Any) -> Any:
        if isinstance(content, str):
            return content
        parts: list[dict[str, Any]] = []
        for block in content or []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                parts.append({"type": "text", "text": str(block.get("text", ""))})
            elif block_type == "image":
                image = block.get("image")
                if isinstance(image, str) and image:
                    parts.append({"type": "image_url", "image_url": {"url": image}})
            elif block_type == "image_url":
                parts.append(dict(block))
        return parts

    def _response_format(self, schema: dict[str, Any]) -> dict[str, Any]:
        if self.defn.response_format == "json_object":
            return {"type": "json_object"}
        return {
            "type": "json_schema",
            "json_schema": {"name": "fragment", "schema": schema, "strict": False},
        }

    def _prepare_request(
        self,
        system: str,
        messages: List[dict[str, Any]],
        schema: dict[str, Any],
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        system_text = system
        if self.defn.response_format == "json_object":
            system_text = f"{system}\n\n{schema_instruction(schema)}"
        mapped: list[dict[str, Any]] = [{"role": "system", "content": system_text}]
        for message in messages:
            role = message.get("role", "user")
            content = message.get("content")
            if role == "user":
                mapped.append({"role": role, "content": self._map_content(content)})
            else:
                mapped.append({"role": role, "content": text_content(content)})
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": mapped,
            "stream": True,
            "response_format": self._response_format(schema),
        }
        self._merge_extra_options(payload, self.params, skip=self._UNSUPPORTED_OPTIONS)
        return self._url(), headers, payload

    async def _iter_fragments(self, response: httpx.Response) -> AsyncIterator[str]:
        async for data_text in iter_sse_data(response):
            try:
                chunk = json.loads(data_text)
            except json.JSONDecodeError:
                continue
            if not isinstance(chunk, dict):
                continue
            error_info = chunk.get("error")
            if isinstance(error_info, dict):
                code = error_info.get("code")
                status = code if isinstance(code, int) and not isinstance(code, bool) else None
                raise UpstreamError(status, str(error_info.get("message") or "upstream stream error"))
            choices = chunk.get("choices")
            if not isinstance(choices, list):
                continue
            for choice in choices:
                if not isinstance(choice, dict) or choice.get("index", 0) != 0:
                    continue
                delta = choice.get("delta")
                if isinstance(delta, dict):
                    content = delta.get("content")
                    if isinstance(content, str):
                        yield content
