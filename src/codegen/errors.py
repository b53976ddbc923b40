from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx


class ClientConfigError(ValueError):
    """Raised when a backend cannot be assembled from the request configuration."""


class TemplateNotFoundError(KeyError):
    """Raised when the request selects a template that is not configured."""


class UpstreamError(RuntimeError):
    """Failure reported by an upstream generation backend."""

    def __init__(self, status_code: int | None, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class ErrorCategory(str, Enum):
    RATE_LIMITED = "RateLimited"
    OVERLOADED = "Overloaded"
    ACCESS_DENIED = "AccessDenied"
    INVALID_CREDENTIAL = "InvalidCredential"
    MODEL_FAULT = "ModelFault"
    SERVER_FAULT = "ServerFault"
    UNKNOWN = "Unknown"


class ErrorCode(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    OVERLOADED = "OVERLOADED"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    INVALID_API_KEY = "INVALID_API_KEY"
    MODEL_ERROR = "MODEL_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    CLIENT_CONFIG_ERROR = "CLIENT_CONFIG_ERROR"
    INVALID_TEMPLATE = "INVALID_TEMPLATE"
    SANDBOX_ERROR = "SANDBOX_ERROR"
    SANDBOX_UNAVAILABLE = "SANDBOX_UNAVAILABLE"


OVERLOADED_STATUS = 529

_RATE_LIMIT_MARKERS: tuple[str, ...] = ("limit", "too many requests")
_API_KEY_MARKERS: tuple[str, ...] = ("api key", "api_key", "apikey")
_MODEL_MARKERS: tuple[str, ...] = ("model",)


@dataclass(frozen=True)
class ClassifiedError:
    category: ErrorCategory
    http_status: int
    message: str


@dataclass(frozen=True)
class _ErrorResponseSpec:
    code: ErrorCode
    message: str


_RESPONSES: dict[ErrorCategory, _ErrorResponseSpec] = {
    ErrorCategory.RATE_LIMITED: _ErrorResponseSpec(
        ErrorCode.RATE_LIMITED,
        "The provider is currently unavailable due to request limit. Try using your own API key.",
    ),
    ErrorCategory.OVERLOADED: _ErrorResponseSpec(
        ErrorCode.OVERLOADED,
        "The provider is currently unavailable. Please try again later.",
    ),
    ErrorCategory.ACCESS_DENIED: _ErrorResponseSpec(
        ErrorCode.AUTH_REQUIRED,
        "Authentication required. Please sign in to continue.",
    ),
    ErrorCategory.INVALID_CREDENTIAL: _ErrorResponseSpec(
        ErrorCode.INVALID_API_KEY,
        "Invalid API key. Please check your API key configuration.",
    ),
    ErrorCategory.MODEL_FAULT: _ErrorResponseSpec(
        ErrorCode.MODEL_ERROR,
        "Model error. Please try selecting a different model.",
    ),
    ErrorCategory.SERVER_FAULT: _ErrorResponseSpec(
        ErrorCode.SERVER_ERROR,
        "Server error. Please try again in a moment.",
    ),
    ErrorCategory.UNKNOWN: _ErrorResponseSpec(
        ErrorCode.UNKNOWN_ERROR,
        "An unexpected error has occurred. Please try again later.",
    ),
}

_AUTH_REQUIRED_DETAILS = (
    "You need to be signed in to generate code. Please click the sign in button."
)


def _contains_any(message: str, markers: tuple[str, ...]) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in markers)


def error_details(exc: BaseException) -> tuple[int | None, str]:
    """Extract (status, message) from an upstream failure."""
    if isinstance(exc, UpstreamError):
        return exc.status_code, exc.message
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return response.status_code, response.reason_phrase or str(exc)
    status: Any = getattr(exc, "status_code", None)
    if not isinstance(status, int) or isinstance(status, bool):
        status = None
    return status, str(exc)


def classify(status: int | None, message: str | None = None) -> ClassifiedError:
    text = message or ""
    if status == 429 or _contains_any(text, _RATE_LIMIT_MARKERS):
        return ClassifiedError(ErrorCategory.RATE_LIMITED, 429, text)
    if status in (OVERLOADED_STATUS, 503):
        return ClassifiedError(ErrorCategory.OVERLOADED, OVERLOADED_STATUS, text)
    if status in (401, 403):
        return ClassifiedError(ErrorCategory.ACCESS_DENIED, 403, text)
    if _contains_any(text, _API_KEY_MARKERS):
        return ClassifiedError(ErrorCategory.INVALID_CREDENTIAL, 500, text)
    if _contains_any(text, _MODEL_MARKERS):
        return ClassifiedError(ErrorCategory.MODEL_FAULT, 500, text)
    if status == 500:
        return ClassifiedError(ErrorCategory.SERVER_FAULT, 500, text)
    return ClassifiedError(ErrorCategory.UNKNOWN, 500, text)


def classify_exception(exc: BaseException) -> ClassifiedError:
    status, message = error_details(exc)
    return classify(status, message)


def make_error_body(code: ErrorCode | str, message: str, details: str | None = None) -> dict[str, Any]:
    resolved = code.value if isinstance(code, ErrorCode) else str(code)
    return {
        "error": message,
        "code": resolved,
        "details": details or message,
    }


def error_body_for(classified: ClassifiedError) -> dict[str, Any]:
    spec = _RESPONSES[classified.category]
    if classified.category is ErrorCategory.ACCESS_DENIED:
        return make_error_body(spec.code, spec.message, _AUTH_REQUIRED_DETAILS)
    return make_error_body(
        spec.code, spec.message, classified.message or "Unknown error occurred"
    )


__all__ = [
    "ClassifiedError",
    "ClientConfigError",
    "ErrorCategory",
    "ErrorCode",
    "OVERLOADED_STATUS",
    "TemplateNotFoundError",
    "UpstreamError",
    "classify",
    "classify_exception",
    "error_body_for",
    "error_details",
    "make_error_body",
]
