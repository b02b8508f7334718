from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final


# Reported instead of a process status when a phase hits its deadline.
# Real statuses are 0-255, or a small negative signal number from the CLI.
TIMEOUT_EXIT_CODE: Final[int] = -124
# Reported when no user process ran at all (validation or infrastructure).
NO_EXIT_CODE: Final[int] = -1

OUTPUT_LIMIT_MESSAGE: Final[str] = "Output limit exceeded; process was terminated"


class Phase(str, Enum):
    COMPILE = "compile"
    RUN = "run"


class ErrorKind(str, Enum):
    NONE = "none"
    VALIDATION = "validation"
    COMPILE = "compile"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"
    INFRASTRUCTURE = "infrastructure"


@dataclass(frozen=True, slots=True)
class CapturedStream:
    data: bytes
    truncated: bool

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


EMPTY_STREAM: Final[CapturedStream] = CapturedStream(b"", False)


@dataclass(frozen=True, slots=True)
class PhaseOutcome:
    """Raw observations from one sandbox phase, before classification."""

    sandbox_id: str
    exit_code: int
    stdout: CapturedStream
    stderr: CapturedStream
    timed_out: bool
    duration_ms: int
    # Killed by us after the output cap and grace period ran out.
    output_limited: bool = False

    @property
    def terminated(self) -> bool:
        return self.timed_out or self.output_limited


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    stdout: str
    stderr: str
    stdout_truncated: bool
    stderr_truncated: bool
    exit_code: int
    duration_ms: int
    timed_out: bool
    error_kind: ErrorKind
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error_kind is ErrorKind.NONE

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated


def classify(
    raw_exit: int,
    stdout: CapturedStream,
    stderr: CapturedStream,
    timed_out: bool,
    phase: Phase,
    *,
    duration_ms: int,
    time_budget_ms: int | None = None,
    output_limited: bool = False,
) -> ExecutionResult:
    """Map the raw result of a compile or run phase to a typed outcome.

    Partial output is always kept, including after a timeout.
    """
    if timed_out:
        kind = ErrorKind.TIMEOUT
        exit_code = TIMEOUT_EXIT_CODE
        label = "Compilation" if phase is Phase.COMPILE else "Execution"
        message = f"{label} timed out"
        if time_budget_ms is not None:
            message += f" after {time_budget_ms} ms"
    elif raw_exit != 0:
        exit_code = raw_exit
        if output_limited:
            # The status comes from our kill, not from the program.
            kind = ErrorKind.COMPILE if phase is Phase.COMPILE else ErrorKind.RUNTIME
            message = OUTPUT_LIMIT_MESSAGE
        elif phase is Phase.COMPILE:
            kind = ErrorKind.COMPILE
            message = "Compilation failed"
        else:
            kind = ErrorKind.RUNTIME
            message = f"Process exited with code {raw_exit}"
    else:
        exit_code = 0
        if phase is Phase.COMPILE:
            # A successful compile is never a final result on its own.
            raise ValueError("a successful compile phase cannot be classified as a result")
        kind = ErrorKind.NONE
        message = None

    return ExecutionResult(
        stdout=stdout.text(),
        stderr=stderr.text(),
        stdout_truncated=stdout.truncated,
        stderr_truncated=stderr.truncated,
        exit_code=exit_code,
        duration_ms=duration_ms,
        timed_out=timed_out,
        error_kind=kind,
        error=message,
    )


def classify_outcome(
    outcome: PhaseOutcome,
    phase: Phase,
    *,
    duration_ms: int,
    time_budget_ms: int | None = None,
) -> ExecutionResult:
    return classify(
        outcome.exit_code,
        outcome.stdout,
        outcome.stderr,
        outcome.timed_out,
        phase,
        duration_ms=duration_ms,
        time_budget_ms=time_budget_ms,
        output_limited=outcome.output_limited,
    )


def validation_failure(message: str, *, duration_ms: int = 0) -> ExecutionResult:
    return _failure(ErrorKind.VALIDATION, message, duration_ms)


def infrastructure_failure(message: str, *, duration_ms: int = 0) -> ExecutionResult:
    return _failure(ErrorKind.INFRASTRUCTURE, message, duration_ms)


def _failure(kind: ErrorKind, message: str, duration_ms: int) -> ExecutionResult:
    return ExecutionResult(
        stdout="",
        stderr="",
        stdout_truncated=False,
        stderr_truncated=False,
        exit_code=NO_EXIT_CODE,
        duration_ms=duration_ms,
        timed_out=False,
        error_kind=kind,
        error=message,
    )
