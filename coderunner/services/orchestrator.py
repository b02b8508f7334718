from __future__ import annotations

import logging
import threading
import time
from concurrent import futures
from typing import IO

from coderunner.core.config import Settings
from coderunner.core.errors import SandboxInfrastructureError, ValidationError
from coderunner.services.classifier import (
    CapturedStream,
    ExecutionResult,
    Phase,
    PhaseOutcome,
    classify_outcome,
    infrastructure_failure,
    validation_failure,
)
from coderunner.services.languages import LanguageProfile, LanguageRegistry, build_registry
from coderunner.services.sandbox import (
    ContainerRuntime,
    SandboxHandle,
    SandboxLauncher,
    Workspace,
)
from coderunner.services.validator import ExecutionRequest, RequestValidator


logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _resolve(future: futures.Future[None]) -> None:
    # Both stream collectors may hit the cap at the same moment.
    try:
        future.set_result(None)
    except futures.InvalidStateError:
        pass


class _StreamCollector:
    """Reads one stdio stream as bytes arrive, keeping at most ``limit`` bytes.

    Past the cap the stream is still drained (so the process is never blocked on a
    full pipe) but the surplus is discarded and ``overflow`` is resolved.
    """

    def __init__(
        self, stream: IO[bytes], limit: int, overflow: futures.Future[None], name: str
    ) -> None:
        self._stream = stream
        self._limit = limit
        self._overflow = overflow
        self._buffer = bytearray()
        self._total = 0
        self._thread = threading.Thread(target=self._pump, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: float) -> None:
        self._thread.join(timeout)

    def captured(self) -> CapturedStream:
        return CapturedStream(data=bytes(self._buffer), truncated=self._total > self._limit)

    def _pump(self) -> None:
        read = getattr(self._stream, "read1", self._stream.read)
        try:
            while True:
                chunk = read(_CHUNK_SIZE)
                if not chunk:
                    return
                room = self._limit - len(self._buffer)
                if room > 0:
                    self._buffer += chunk[:room]
                self._total += len(chunk)
                if self._total > self._limit:
                    _resolve(self._overflow)
        except (OSError, ValueError) as exc:  # pipe closed during teardown
            logger.debug("Stream reader %s stopped: %s", self._thread.name, exc)


def _feed_stdin(stream: IO[bytes], payload: bytes | None) -> None:
    try:
        if payload:
            stream.write(payload)
        stream.close()
    except (BrokenPipeError, ValueError) as exc:
        # The program exited (or was killed) without reading all of its input.
        logger.debug("stdin not fully delivered: %s", exc)


def _await_exit(handle: SandboxHandle, exited: futures.Future[int]) -> None:
    try:
        exited.set_result(handle.wait())
    except Exception as exc:  # surfaced to the supervising thread
        exited.set_exception(exc)


class ExecutionOrchestrator:
    """Runs one request through validation, optional compile, and run.

    Every sandbox is torn down on every exit path. Requests share nothing but the
    read-only language registry, so one orchestrator serves concurrent callers.
    """

    def __init__(
        self,
        settings: Settings,
        registry: LanguageRegistry | None = None,
        launcher: SandboxLauncher | None = None,
    ) -> None:
        self._settings = settings
        self.registry = registry or build_registry(settings)
        self._validator = RequestValidator(settings, self.registry)
        self._launcher = launcher or SandboxLauncher(settings)

    @property
    def runtime(self) -> ContainerRuntime:
        return self._launcher.runtime

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        start = time.perf_counter()
        try:
            validated = self._validator.validate(request)
        except ValidationError as exc:
            logger.info("Rejected execution request: %s", exc.detail)
            return validation_failure(exc.detail, duration_ms=_elapsed_ms(start))

        profile = validated.profile
        sandbox_ids: list[str] = []
        try:
            result = self._execute_validated(
                profile,
                validated.code,
                validated.stdin,
                validated.time_budget_ms,
                start,
                sandbox_ids,
            )
        except SandboxInfrastructureError as exc:
            logger.error(
                "Sandbox infrastructure failure (language=%s sandboxes=%s): %s",
                profile.id,
                ",".join(sandbox_ids) or "-",
                exc.detail,
            )
            return infrastructure_failure(exc.detail, duration_ms=_elapsed_ms(start))

        logger.info(
            "Execution finished sandboxes=%s language=%s kind=%s exit=%d duration=%dms truncated=%s",
            ",".join(sandbox_ids) or "-",
            profile.id,
            result.error_kind.value,
            result.exit_code,
            result.duration_ms,
            result.truncated,
        )
        return result

    def _execute_validated(
        self,
        profile: LanguageProfile,
        code: str,
        stdin: str | None,
        budget_ms: int,
        start: float,
        sandbox_ids: list[str],
    ) -> ExecutionResult:
        with self._launcher.materialize(profile, code) as workspace:
            run_budget_ms = budget_ms
            if profile.has_compile_step:
                compile_budget_ms = profile.compile_budget_ms(budget_ms)
                compiled = self._run_phase(
                    profile, Phase.COMPILE, workspace, None, compile_budget_ms, sandbox_ids
                )
                if compiled.timed_out or compiled.exit_code != 0:
                    return classify_outcome(
                        compiled,
                        Phase.COMPILE,
                        duration_ms=_elapsed_ms(start),
                        time_budget_ms=compile_budget_ms,
                    )
                run_budget_ms = max(1, budget_ms - compiled.duration_ms)

            ran = self._run_phase(profile, Phase.RUN, workspace, stdin, run_budget_ms, sandbox_ids)
            return classify_outcome(
                ran, Phase.RUN, duration_ms=_elapsed_ms(start), time_budget_ms=budget_ms
            )

    def _run_phase(
        self,
        profile: LanguageProfile,
        phase: Phase,
        workspace: Workspace,
        stdin: str | None,
        budget_ms: int,
        sandbox_ids: list[str],
    ) -> PhaseOutcome:
        with self._launcher.launch(profile, phase, workspace, stdin, budget_ms) as handle:
            sandbox_ids.append(handle.id)
            outcome = self._supervise(handle)
            if outcome.exit_code != 0 and not outcome.terminated:
                # The exit status is the program's; ask the daemon whether it ever ran.
                start_error = handle.start_error()
                if start_error:
                    raise SandboxInfrastructureError(
                        f"Container runtime failed to start the {phase.value} sandbox: "
                        f"{start_error[:500]}"
                    )
            logger.debug(
                "%s phase of sandbox %s ended exit=%d timed_out=%s in %dms",
                phase.value,
                handle.id,
                outcome.exit_code,
                outcome.timed_out,
                outcome.duration_ms,
            )
            return outcome

    def _supervise(self, handle: SandboxHandle) -> PhaseOutcome:
        """Race natural exit, the output cap and the wall-clock deadline."""
        limit = self._settings.max_output_bytes
        call_timeout = self._launcher.runtime.call_timeout
        overflow: futures.Future[None] = futures.Future()
        exited: futures.Future[int] = futures.Future()

        collectors = [
            _StreamCollector(handle.stdout_stream, limit, overflow, f"{handle.id}-stdout"),
            _StreamCollector(handle.stderr_stream, limit, overflow, f"{handle.id}-stderr"),
        ]
        for collector in collectors:
            collector.start()
        threading.Thread(
            target=_feed_stdin,
            args=(handle.stdin_writer, handle.stdin_payload),
            name=f"{handle.id}-stdin",
            daemon=True,
        ).start()
        threading.Thread(
            target=_await_exit, args=(handle, exited), name=f"{handle.id}-wait", daemon=True
        ).start()

        timed_out = False
        output_limited = False
        done, _ = futures.wait(
            [exited, overflow],
            timeout=max(0.0, handle.deadline - time.monotonic()),
            return_when=futures.FIRST_COMPLETED,
        )
        if not done:
            timed_out = True
            handle.terminate()
        elif exited not in done:
            # Output cap hit first: let the program finish briefly, discarding output.
            remaining = max(0.0, handle.deadline - time.monotonic())
            grace = min(self._settings.output_grace_ms / 1000.0, remaining)
            try:
                exited.result(timeout=grace)
            except futures.TimeoutError:
                timed_out = grace >= remaining
                output_limited = not timed_out
                handle.terminate()

        try:
            exit_code = exited.result(timeout=call_timeout)
        except futures.TimeoutError as exc:
            raise SandboxInfrastructureError(
                f"Sandbox {handle.id} did not exit after termination"
            ) from exc
        duration_ms = int((time.monotonic() - handle.started_at) * 1000)

        for collector in collectors:
            collector.join(call_timeout)

        return PhaseOutcome(
            sandbox_id=handle.id,
            exit_code=exit_code,
            stdout=collectors[0].captured(),
            stderr=collectors[1].captured(),
            timed_out=timed_out,
            duration_ms=duration_ms,
            output_limited=output_limited,
        )
