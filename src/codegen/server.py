import logging
import os
import time
import uuid
from collections.abc import AsyncIterator
from typing import Any, Callable, Literal

from typing_extensions import TypedDict

from fastapi import Body, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .client import ApiClient, ChatApi
from .config import load_config
from .errors import (
    ClientConfigError,
    ErrorCode,
    TemplateNotFoundError,
    classify_exception,
    error_body_for,
    make_error_body,
)
from .metrics import MetricsLogger
from .models import BackendSelector
from .prompt import select_templates, to_prompt
from .rate_limiter import FixedWindowRateLimiter, identity_from_forwarded_for, parse_duration
from .types import ChatRequest, fragment_json_schema

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper()
logging.basicConfig(level=LOG_LEVEL if isinstance(logging.getLevelName(LOG_LEVEL), int) else "INFO")
logger = logging.getLogger(__name__)

app = FastAPI(title="codegen")

_ROOT_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..")
CONFIG_DIR = os.environ.get("CODEGEN_CONFIG_DIR", os.path.join(_ROOT_DIR, "config"))
METRICS_DIR = os.environ.get("CODEGEN_METRICS_DIR", os.path.join(_ROOT_DIR, "metrics"))

REQUEST_ID_HEADER = "x-codegen-request-id"
PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"
RATE_LIMIT_MESSAGE = "You have reached your request limit for the day."
DEFAULT_RATE_LIMIT_MAX_REQUESTS = 10
DEFAULT_RATE_LIMIT_WINDOW = "1d"
BAD_GATEWAY_STATUS = 502


class _RateLimitInfo(TypedDict):
    max_requests: int
    window: str


class _HealthResponse(TypedDict):
    status: Literal["ok"]
    providers: list[str]
    templates: list[str]
    rate_limit: _RateLimitInfo
    sandbox: bool


def _env_var_as_int(name: str, *, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_var_as_duration(name: str, *, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        parse_duration(raw)
    except ValueError:
        logger.warning("config.invalid name=%s value=%r fallback=%s", name, raw, default)
        return default
    return raw.strip()


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


RATE_LIMIT_MAX_REQUESTS: int = _env_var_as_int(
    "RATE_LIMIT_MAX_REQUESTS", default=DEFAULT_RATE_LIMIT_MAX_REQUESTS
)
RATE_LIMIT_WINDOW: str = _env_var_as_duration("RATE_LIMIT_WINDOW", default=DEFAULT_RATE_LIMIT_WINDOW)
SANDBOX_API_URL: str = os.environ.get("SANDBOX_API_URL", "").strip()
ALLOWED_ORIGINS = _parse_env_list(os.environ.get("CODEGEN_CORS_ALLOW_ORIGINS", ""))

cfg = load_config(CONFIG_DIR)
selector = BackendSelector(cfg.providers)
limiter = FixedWindowRateLimiter()
metrics = MetricsLogger(METRICS_DIR)

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _default_sandbox_api() -> ChatApi | None:
    if not SANDBOX_API_URL:
        return None
    return ChatApi(ApiClient(SANDBOX_API_URL))


sandbox_api: Callable[[], ChatApi | None] = _default_sandbox_api


def _log_request_event(
    level: int,
    *,
    event: str,
    req_id: str,
    provider: str | None,
    model: str | None = None,
    detail: str | None = None,
    **fields: Any,
) -> None:
    message = f"{event} req_id={req_id} provider={provider or 'unknown'} model={model or 'unknown'}"
    for key, value in fields.items():
        message = f"{message} {key}={value}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


async def _log_metrics(
    *,
    req_id: str,
    provider: str | None,
    model: str | None,
    start: float,
    ok: bool,
    status: int,
    code: str | None = None,
) -> None:
    record: dict[str, Any] = {
        "req_id": req_id,
        "ts": time.time(),
        "provider": provider,
        "model": model,
        "latency_ms": int((time.perf_counter() - start) * 1000),
        "ok": ok,
        "status": status,
        "code": code,
    }
    try:
        await metrics.write(record)
    except OSError as exc:
        logger.warning("metrics.write_failed req_id=%s detail=%s", req_id, exc)


@app.get("/healthz")
async def healthz() -> _HealthResponse:
    payload: _HealthResponse = {
        "status": "ok",
        "providers": sorted(cfg.providers),
        "templates": sorted(cfg.templates),
        "rate_limit": {
            "max_requests": RATE_LIMIT_MAX_REQUESTS,
            "window": RATE_LIMIT_WINDOW,
        },
        "sandbox": bool(SANDBOX_API_URL),
    }
    return payload


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    return Response(metrics.render_prometheus(), media_type=PROM_CONTENT_TYPE)


@app.post("/api/chat")
async def chat(req: Request, body: ChatRequest):
    req_id = str(uuid.uuid4())
    headers = {REQUEST_ID_HEADER: req_id}
    start = time.perf_counter()
    identity = identity_from_forwarded_for(req.headers.get("x-forwarded-for"))
    provider_id = body.model.provider_id
    model_name = body.model.id
    template_ids = (
        body.template if isinstance(body.template, str) else ",".join(sorted(body.template))
    )
    _log_request_event(
        logging.INFO,
        event="chat.request",
        req_id=req_id,
        provider=provider_id,
        model=model_name,
        identity=identity,
        user_id=body.user_id or "-",
        team_id=body.team_id or "-",
        template=template_ids or "auto",
        config=body.config.redacted(),
    )

    if not body.config.has_api_key():
        decision = limiter.check(identity, RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW)
        if not decision.allowed:
            retry_after = max(decision.reset_at - int(time.time()), 0)
            headers.update(
                {
                    "X-RateLimit-Limit": str(decision.limit_amount),
                    "X-RateLimit-Remaining": str(decision.remaining),
                    "X-RateLimit-Reset": str(decision.reset_at),
                    "Retry-After": str(retry_after),
                }
            )
            error_body = make_error_body(
                ErrorCode.RATE_LIMITED,
                RATE_LIMIT_MESSAGE,
                "Provide your own API key to continue generating code.",
            )
            error_body.update(
                {
                    "limit": decision.limit_amount,
                    "remaining": decision.remaining,
                    "reset": decision.reset_at,
                }
            )
            _log_request_event(
                logging.WARNING,
                event="chat.rate_limited",
                req_id=req_id,
                provider=provider_id,
                model=model_name,
                identity=identity,
                reset=decision.reset_at,
            )
            await _log_metrics(
                req_id=req_id,
                provider=provider_id,
                model=model_name,
                start=start,
                ok=False,
                status=429,
                code=ErrorCode.RATE_LIMITED.value,
            )
            return JSONResponse(error_body, status_code=429, headers=headers)

    try:
        templates = select_templates(body.template, cfg.templates)
    except TemplateNotFoundError as exc:
        detail = str(exc.args[0]) if exc.args else "unknown template"
        _log_request_event(
            logging.WARNING,
            event="chat.invalid_template",
            req_id=req_id,
            provider=provider_id,
            model=model_name,
            detail=detail,
        )
        await _log_metrics(
            req_id=req_id,
            provider=provider_id,
            model=model_name,
            start=start,
            ok=False,
            status=400,
            code=ErrorCode.INVALID_TEMPLATE.value,
        )
        return JSONResponse(
            make_error_body(ErrorCode.INVALID_TEMPLATE, "Unknown template", detail),
            status_code=400,
            headers=headers,
        )

    try:
        handle = selector.resolve(body.model, body.config)
    except ClientConfigError as exc:
        _log_request_event(
            logging.ERROR,
            event="chat.client_config_error",
            req_id=req_id,
            provider=provider_id,
            model=model_name,
            detail=str(exc),
        )
        await _log_metrics(
            req_id=req_id,
            provider=provider_id,
            model=model_name,
            start=start,
            ok=False,
            status=500,
            code=ErrorCode.CLIENT_CONFIG_ERROR.value,
        )
        return JSONResponse(
            make_error_body(ErrorCode.CLIENT_CONFIG_ERROR, "Failed to create model client", str(exc)),
            status_code=500,
            headers=headers,
        )

    messages = [message.model_dump(mode="json", exclude_none=True) for message in body.messages]
    stream = handle.stream(
        system=to_prompt(templates),
        messages=messages,
        schema=fragment_json_schema(),
    )
    try:
        first_fragment = await anext(stream, None)
    except Exception as exc:
        await stream.aclose()
        classified = classify_exception(exc)
        error_body = error_body_for(classified)
        _log_request_event(
            logging.WARNING,
            event="chat.failure",
            req_id=req_id,
            provider=handle.provider_id,
            model=handle.model_id,
            category=classified.category.value,
            status=classified.http_status,
            detail=classified.message,
        )
        await _log_metrics(
            req_id=req_id,
            provider=handle.provider_id,
            model=handle.model_id,
            start=start,
            ok=False,
            status=classified.http_status,
            code=error_body["code"],
        )
        return JSONResponse(error_body, status_code=classified.http_status, headers=headers)

    async def relay() -> AsyncIterator[str]:
        status, code = 200, None
        try:
            if first_fragment is not None:
                yield first_fragment
            async for fragment in stream:
                yield fragment
        except Exception as exc:
            classified = classify_exception(exc)
            status, code = classified.http_status, error_body_for(classified)["code"]
            _log_request_event(
                logging.WARNING,
                event="chat.stream_failure",
                req_id=req_id,
                provider=handle.provider_id,
                model=handle.model_id,
                category=classified.category.value,
                status=status,
                detail=classified.message,
            )
        finally:
            await stream.aclose()
            await _log_metrics(
                req_id=req_id,
                provider=handle.provider_id,
                model=handle.model_id,
                start=start,
                ok=code is None,
                status=status,
                code=code,
            )

    return StreamingResponse(relay(), media_type=STREAM_MEDIA_TYPE, headers=headers)


@app.post("/api/sandbox")
async def create_sandbox(payload: dict[str, Any] = Body(...)):
    req_id = str(uuid.uuid4())
    headers = {REQUEST_ID_HEADER: req_id}
    api = sandbox_api()
    if api is None:
        return JSONResponse(
            make_error_body(
                ErrorCode.SANDBOX_UNAVAILABLE,
                "Sandbox service is not configured",
                "Set SANDBOX_API_URL to enable sandbox creation.",
            ),
            status_code=503,
            headers=headers,
        )
    outcome = await api.create_sandbox(payload)
    if outcome.success:
        logger.info("sandbox.created req_id=%s status=%d", req_id, outcome.status)
        if outcome.data is None:
            return Response(status_code=outcome.status, headers=headers)
        return JSONResponse(outcome.data, status_code=outcome.status, headers=headers)
    status = outcome.status or BAD_GATEWAY_STATUS
    logger.warning("sandbox.failure req_id=%s status=%d detail=%s", req_id, status, outcome.error)
    return JSONResponse(
        make_error_body(ErrorCode.SANDBOX_ERROR, "Failed to create sandbox", outcome.error),
        status_code=status,
        headers=headers,
    )
