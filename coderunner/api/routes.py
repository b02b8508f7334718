from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache

from fastapi import APIRouter, Depends, Response, status

from coderunner.core.config import get_settings
from coderunner.models.schemas import (
    ExecuteRequest,
    ExecuteResponse,
    HealthResponse,
    LanguagesResponse,
)
from coderunner.services.classifier import ErrorKind, ExecutionResult
from coderunner.services.orchestrator import ExecutionOrchestrator
from coderunner.services.validator import ExecutionRequest


router = APIRouter()

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INFRASTRUCTURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@lru_cache(maxsize=1)
def get_orchestrator() -> ExecutionOrchestrator:
    return ExecutionOrchestrator(get_settings())


def _to_response(result: ExecutionResult) -> ExecuteResponse:
    return ExecuteResponse(
        stdout=result.stdout,
        stderr=result.stderr,
        execution_time=result.duration_ms,
        exit_code=result.exit_code,
        timeout=result.timed_out,
        error_kind=result.error_kind.value,
        stdout_truncated=result.stdout_truncated,
        stderr_truncated=result.stderr_truncated,
        error=result.error,
    )


@router.post(
    "/execute",
    response_model=ExecuteResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_200_OK,
)
def execute(
    req: ExecuteRequest,
    response: Response,
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
) -> ExecuteResponse:
    """Run submitted code in a fresh sandbox and report its output.

    Compile errors, runtime errors and timeouts are normal results (200). Rejected
    requests are 400 and runtime/infrastructure faults are 500, in the same shape.
    """
    result = orchestrator.execute(
        ExecutionRequest(
            code=req.code,
            language=req.language,
            stdin=req.input,
            timeout_ms=req.timeout_ms,
        )
    )
    response.status_code = _STATUS_BY_KIND.get(result.error_kind, status.HTTP_200_OK)
    return _to_response(result)


@router.get("/languages", response_model=LanguagesResponse)
def languages(
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
) -> LanguagesResponse:
    return LanguagesResponse(languages=orchestrator.registry.languages())


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        service="code-execution",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
