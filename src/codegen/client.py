"""Retrying HTTP client for non-streamed calls to secondary services.

``ApiClient.request`` never raises: every attempt ends as a success, a
retriable failure (transport error, timeout, HTTP 5xx) or a final failure
(HTTP 4xx and everything else), and the loop resolves to a single
``ClientCallOutcome``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class ClientOptions:
    retries: int = 3
    retry_delay: float = 1.0
    timeout: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ClientCallOutcome:
    success: bool
    status: int
    data: Any = None
    error: str | None = None


@dataclass(frozen=True)
class _AttemptFailure:
    status: int
    message: str
    retriable: bool


def is_retriable_status(status: int) -> bool:
    if 400 <= status < 500:
        return False
    return status >= 500


def _parse_body(response: httpx.Response) -> Any:
    text = response.text
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError as exc:
        logger.warning("api.response unparseable status=%s detail=%s", response.status_code, exc)
        return None


def _failure_message(response: httpx.Response, data: Any) -> str:
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, str) and error:
            return error
        if isinstance(error, dict):
            nested = error.get("message")
            if isinstance(nested, str) and nested:
                return nested
    reason = response.reason_phrase or ""
    return f"HTTP {response.status_code}: {reason}".rstrip(": ")


class ApiClient:
    def __init__(
        self,
        base_url: str = "",
        options: ClientOptions | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_options = options or ClientOptions()
        self._transport = transport
        self._sleep: SleepFn = sleep or asyncio.sleep

    def _options(self, overrides: dict[str, Any]) -> ClientOptions:
        values = {key: value for key, value in overrides.items() if value is not None}
        headers = values.pop("headers", None)
        options = replace(self.default_options, **values)
        if headers:
            options = replace(options, headers={**options.headers, **headers})
        return options

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        *,
        content: bytes | None,
        options: ClientOptions,
    ) -> ClientCallOutcome | _AttemptFailure:
        try:
            response = await asyncio.wait_for(
                client.request(method, url, content=content, headers=options.headers),
                timeout=options.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return _AttemptFailure(0, f"Request timed out after {options.timeout:g}s", True)
        except httpx.TransportError as exc:
            return _AttemptFailure(0, str(exc) or "Network error", True)
        except Exception as exc:
            logger.exception("api.request unexpected failure url=%s", url)
            return _AttemptFailure(0, str(exc) or type(exc).__name__, False)
        data = _parse_body(response)
        if response.is_success:
            return ClientCallOutcome(success=True, status=response.status_code, data=data)
        return _AttemptFailure(
            response.status_code,
            _failure_message(response, data),
            is_retriable_status(response.status_code),
        )

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        *,
        retries: int | None = None,
        retry_delay: float | None = None,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> ClientCallOutcome:
        options = self._options(
            {"retries": retries, "retry_delay": retry_delay, "timeout": timeout, "headers": headers}
        )
        url = self.base_url + endpoint
        content: bytes | None = None
        if body is not None:
            content = json.dumps(body).encode("utf-8")
        max_attempts = max(options.retries, 0) + 1
        last_failure = _AttemptFailure(0, "Request failed after all retries", False)
        async with httpx.AsyncClient(transport=self._transport, timeout=options.timeout) as client:
            for attempt in range(max_attempts):
                logger.info(
                    "api.request attempt=%d/%d method=%s endpoint=%s",
                    attempt + 1,
                    max_attempts,
                    method,
                    endpoint,
                )
                result = await self._attempt(client, method, url, content=content, options=options)
                if isinstance(result, ClientCallOutcome):
                    return result
                last_failure = result
                logger.warning(
                    "api.request failed attempt=%d status=%d retriable=%s detail=%s",
                    attempt + 1,
                    result.status,
                    result.retriable,
                    result.message,
                )
                if not result.retriable or attempt + 1 >= max_attempts:
                    break
                delay = options.retry_delay * (2**attempt)
                logger.info("api.request retrying in %.3fs", delay)
                await self._sleep(delay)
        return ClientCallOutcome(
            success=False,
            status=last_failure.status,
            error=last_failure.message,
        )

    async def get(self, endpoint: str, **options: Any) -> ClientCallOutcome:
        return await self.request(endpoint, "GET", **options)

    async def post(self, endpoint: str, body: Any = None, **options: Any) -> ClientCallOutcome:
        headers = {"Content-Type": "application/json", **(options.pop("headers", None) or {})}
        return await self.request(endpoint, "POST", body, headers=headers, **options)

    async def put(self, endpoint: str, body: Any = None, **options: Any) -> ClientCallOutcome:
        headers = {"Content-Type": "application/json", **(options.pop("headers", None) or {})}
        return await self.request(endpoint, "PUT", body, headers=headers, **options)

    async def delete(self, endpoint: str, **options: Any) -> ClientCallOutcome:
        return await self.request(endpoint, "DELETE", **options)


class ChatApi:
    GENERATE_TIMEOUT_S = 60.0
    SANDBOX_TIMEOUT_S = 45.0
    SLOW_CALL_RETRIES = 2

    def __init__(self, client: ApiClient) -> None:
        self.client = client

    async def generate_code(self, payload: dict[str, Any]) -> ClientCallOutcome:
        return await self.client.post(
            "/api/chat",
            payload,
            timeout=self.GENERATE_TIMEOUT_S,
            retries=self.SLOW_CALL_RETRIES,
        )

    async def create_sandbox(self, payload: dict[str, Any]) -> ClientCallOutcome:
        return await self.client.post(
            "/api/sandbox",
            payload,
            timeout=self.SANDBOX_TIMEOUT_S,
            retries=self.SLOW_CALL_RETRIES,
        )
