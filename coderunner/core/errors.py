"""Error taxonomy and FastAPI exception handlers.

Only two kinds of failure are raised as exceptions:

1. ``ValidationError`` subclasses, raised by the request validator before any
   sandbox exists (surfaced as 400).
2. ``SandboxInfrastructureError``, raised when the container runtime itself is
   at fault (surfaced as 500 and logged as an operational incident).

Compile errors, runtime errors and timeouts are ordinary outcomes of running
arbitrary code and are returned as classified results, never raised.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for errors the service turns into structured responses."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "internal_error"
    detail: str = "An unexpected error occurred"

    def __init__(self, detail: str | None = None, **context: Any) -> None:
        self.detail = detail or self.__class__.detail
        self.context = context if context else None
        super().__init__(self.detail)


class ValidationError(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "validation_error"
    detail = "Invalid execution request"


class MissingFieldError(ValidationError):
    detail = "A required field is missing"

    def __init__(self, field: str) -> None:
        super().__init__(f"{field.capitalize()} is required", field=field)


class UnsupportedLanguageError(ValidationError):
    detail = "Unsupported language"

    def __init__(self, language: str, supported: list[str]) -> None:
        super().__init__(
            f"Unsupported language: {language}. Supported languages: {', '.join(supported)}",
            language=language,
        )


class CodeTooLargeError(ValidationError):
    detail = "Code size exceeds the maximum limit"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Code size exceeds maximum limit of {limit} bytes", size=size, limit=limit
        )


class InputTooLargeError(ValidationError):
    detail = "Input size exceeds the maximum limit"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Input size exceeds maximum limit of {limit} bytes", size=size, limit=limit
        )


class TimeoutLimitError(ValidationError):
    detail = "Requested timeout exceeds the maximum"

    def __init__(self, requested: int, limit: int) -> None:
        super().__init__(
            f"timeoutMs exceeds maximum of {limit} ms", requested=requested, limit=limit
        )


class SandboxInfrastructureError(ServiceError):
    """The execution environment failed; never attributable to submitted code."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "infrastructure_error"
    detail = "Execution environment unavailable"


def failure_payload(message: str, *, error_kind: str | None = None) -> dict[str, Any]:
    """Body for failures that happen outside the orchestrator."""
    payload: dict[str, Any] = {
        "stdout": "",
        "stderr": "",
        "executionTime": 0,
        "exitCode": -1,
        "timeout": False,
        "error": message,
    }
    if error_kind is not None:
        payload["errorKind"] = error_kind
    return payload


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Service error: %s (path=%s)", exc.detail, request.url.path)
    else:
        logger.info("Rejected request: %s (path=%s)", exc.detail, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content=failure_payload(exc.detail, error_kind=_error_kind_for(exc)),
    )


def _error_kind_for(exc: ServiceError) -> str | None:
    if isinstance(exc, ValidationError):
        return "validation"
    if isinstance(exc, SandboxInfrastructureError):
        return "infrastructure"
    return None


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed bodies as 400 in the execution response shape."""
    problems = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ()) if part != "body")
        problems.append(f"{location or 'body'}: {item.get('msg', 'invalid value')}")
    message = "Invalid request body: " + "; ".join(problems)
    logger.info("Rejected request: %s (path=%s)", message, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=failure_payload(message, error_kind="validation"),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception: %s (path=%s)", exc, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=failure_payload("Internal server error"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, service_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
