"""
OpenAI-style error taxonomy and failure classification.

Every failure that reaches a route boundary is turned into one of the
ApiError subclasses below and rendered as:

    {"error": {"message": "...", "type": "...", "param": "...", "code": "..."}}

Errors that are not already typed are classified by exception class where
that is unambiguous (validation, transport) and otherwise by matching
well-known fragments of the message text.
"""

import logging
from typing import Any, Dict, Optional

import httpx
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .ollama_client import BackendError

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Error with an HTTP status and an OpenAI error body."""

    status_code: int = 500

    def __init__(
        self,
        status_code: int,
        message: str,
        error_type: str,
        param: Optional[str] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.type = error_type
        self.param = param
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"message": self.message, "type": self.type}
        if self.param is not None:
            error["param"] = self.param
        if self.code is not None:
            error["code"] = self.code
        return {"error": error}

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class BadRequestError(ApiError):
    def __init__(self, message: str, param: Optional[str] = None):
        super().__init__(400, message, "invalid_request_error", param)


class UnauthorizedError(ApiError):
    def __init__(self, message: str = "Invalid API key"):
        super().__init__(401, message, "invalid_request_error", code="invalid_api_key")


class NotFoundError(ApiError):
    def __init__(self, message: str = "Model not found"):
        super().__init__(404, message, "invalid_request_error", code="model_not_found")


class RequestTimeoutError(ApiError):
    def __init__(self, message: str = "Request timeout"):
        super().__init__(408, message, "timeout", code="timeout")


class RequestTooLargeError(ApiError):
    def __init__(self, message: str = "Prompt too long"):
        super().__init__(413, message, "invalid_request_error", code="context_length_exceeded")


class UnprocessableError(ApiError):
    def __init__(self, message: str, param: Optional[str] = None):
        super().__init__(422, message, "invalid_request_error", param)


class RateLimitError(ApiError):
    def __init__(self, message: str = "Rate limit exceeded"):
        super().__init__(429, message, "rate_limit_error", code="rate_limit_exceeded")


class InternalServerError(ApiError):
    def __init__(self, message: str = "Internal server error"):
        super().__init__(500, message, "internal_error", code="internal_error")


class ServiceUnavailableError(ApiError):
    def __init__(self, message: str = "Model not loaded"):
        super().__init__(503, message, "service_unavailable", code="model_not_loaded")


_BACKEND_STATUS_ERRORS = {
    400: BadRequestError,
    401: UnauthorizedError,
    403: UnauthorizedError,
    404: NotFoundError,
    408: RequestTimeoutError,
    413: RequestTooLargeError,
    422: UnprocessableError,
    429: RateLimitError,
    503: ServiceUnavailableError,
}


def _from_validation_error(exc: ValidationError) -> BadRequestError:
    first = exc.errors()[0] if exc.errors() else {}
    loc = first.get("loc", ())
    param = ".".join(str(p) for p in loc) or None
    message = first.get("msg", "Invalid request body")
    if param:
        message = f"{param}: {message}"
    return BadRequestError(message, param=param)


def handle_error(error: BaseException) -> ApiError:
    """Classify any failure into the API error taxonomy."""
    if isinstance(error, ApiError):
        return error

    if isinstance(error, ValidationError):
        return _from_validation_error(error)

    if isinstance(error, httpx.TimeoutException):
        return RequestTimeoutError(f"Inference backend timeout: {error}")
    if isinstance(error, httpx.TransportError):
        return ServiceUnavailableError(f"Inference backend unreachable: {error}")

    message = str(error) or error.__class__.__name__

    # Other backend statuses (500 included) fall through to the text heuristics
    if isinstance(error, BackendError) and error.status_code in _BACKEND_STATUS_ERRORS:
        return _BACKEND_STATUS_ERRORS[error.status_code](message)

    lowered = message.lower()

    if "api key" in lowered or "unauthorized" in lowered:
        return UnauthorizedError(message)
    if "not found" in lowered or "does not exist" in lowered:
        return NotFoundError(message)
    if "timeout" in lowered or "timed out" in lowered:
        return RequestTimeoutError(message)
    if "too long" in lowered or "context length" in lowered:
        return RequestTooLargeError(message)
    if "rate limit" in lowered:
        return RateLimitError(message)
    if (
        "not loaded" in lowered
        or "not ready" in lowered
        or "out of memory" in lowered
    ):
        return ServiceUnavailableError(message)

    return InternalServerError(message)


def error_response(error: BaseException) -> JSONResponse:
    """Classify, log once, and render a failure caught at a route boundary."""
    api_error = handle_error(error)
    if api_error.status_code >= 500:
        logger.error(f"{api_error.type} ({api_error.status_code}): {api_error.message}", exc_info=error)
    else:
        logger.warning(f"{api_error.type} ({api_error.status_code}): {api_error.message}")
    return api_error.to_response()
