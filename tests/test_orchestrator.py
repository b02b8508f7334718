from __future__ import annotations

import logging
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from coderunner.services.classifier import (
    OUTPUT_LIMIT_MESSAGE,
    TIMEOUT_EXIT_CODE,
    ErrorKind,
    Phase,
)
from coderunner.services.validator import ExecutionRequest

from tests.conftest import RuntimeLog


def _assert_each_sandbox_removed_once(runtime_log: RuntimeLog) -> None:
    started = runtime_log.names("create")
    removed = Counter(runtime_log.names("rm"))
    assert started
    assert removed == Counter(started)


def test_hello_world(make_orchestrator, runtime_log: RuntimeLog) -> None:
    orchestrator, launcher = make_orchestrator()

    result = orchestrator.execute(ExecutionRequest(code="print('Hello')", language="python"))

    assert result.error_kind is ErrorKind.NONE
    assert result.stdout == "Hello\n"
    assert result.stderr == ""
    assert result.exit_code == 0
    assert result.timed_out is False
    assert result.error is None
    assert launcher.launches == [("python", Phase.RUN)]
    _assert_each_sandbox_removed_once(runtime_log)


def test_stdin_is_piped_to_the_program(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator()

    result = orchestrator.execute(
        ExecutionRequest(
            code="import sys\nprint(sys.stdin.read().upper())",
            language="python",
            stdin="hello there",
        )
    )

    assert result.stdout == "HELLO THERE\n"
    assert result.exit_code == 0


def test_missing_stdin_reads_as_eof(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator()

    result = orchestrator.execute(
        ExecutionRequest(code="import sys\nprint(repr(sys.stdin.read()))", language="python")
    )

    assert result.stdout == "''\n"


def test_nonzero_exit_is_runtime_error_with_code_preserved(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator()

    result = orchestrator.execute(
        ExecutionRequest(
            code="import sys\nprint('partial')\nsys.stderr.write('bad\\n')\nsys.exit(3)",
            language="python",
        )
    )

    assert result.error_kind is ErrorKind.RUNTIME
    assert result.exit_code == 3
    assert result.stdout == "partial\n"
    assert result.stderr == "bad\n"
    assert result.timed_out is False


def test_uncaught_exception_is_runtime_error(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator()

    result = orchestrator.execute(ExecutionRequest(code="raise ValueError('boom')", language="python"))

    assert result.error_kind is ErrorKind.RUNTIME
    assert result.exit_code == 1
    assert "ValueError: boom" in result.stderr


@pytest.mark.parametrize(
    "stderr_line",
    [
        "Error: bad input",
        "docker: Error response from daemon: conflict.",
    ],
)
def test_program_mimicking_the_runtime_is_still_a_runtime_error(
    make_orchestrator, runtime_log: RuntimeLog, caplog: pytest.LogCaptureFixture, stderr_line: str
) -> None:
    orchestrator, _ = make_orchestrator()
    code = (
        "import sys\n"
        "print('before')\n"
        f"sys.stderr.write({stderr_line + chr(10)!r})\n"
        "sys.exit(125)"
    )

    with caplog.at_level(logging.ERROR, logger="coderunner"):
        result = orchestrator.execute(ExecutionRequest(code=code, language="python"))

    assert result.error_kind is ErrorKind.RUNTIME
    assert result.exit_code == 125
    assert result.stdout == "before\n"
    assert result.stderr == stderr_line + "\n"
    assert result.error == "Process exited with code 125"
    assert not [record for record in caplog.records if record.levelno >= logging.ERROR]
    _assert_each_sandbox_removed_once(runtime_log)


def test_infinite_loop_times_out_near_the_budget(make_orchestrator, runtime_log: RuntimeLog) -> None:
    orchestrator, _ = make_orchestrator(execution_timeout_ms=1_000)

    result = orchestrator.execute(
        ExecutionRequest(code="print('started', flush=True)\nwhile True:\n    pass", language="python")
    )

    assert result.timed_out is True
    assert result.error_kind is ErrorKind.TIMEOUT
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert 1_000 <= result.duration_ms < 4_000
    # Output produced before the deadline is kept.
    assert result.stdout == "started\n"
    assert runtime_log.names("kill")
    _assert_each_sandbox_removed_once(runtime_log)


def test_timeout_kills_child_processes_too(make_orchestrator, tmp_path: Path) -> None:
    orchestrator, _ = make_orchestrator(execution_timeout_ms=1_000)
    marker = tmp_path / "child-survived"
    child = f'import time; time.sleep(2); open({str(marker)!r}, "w").close()'
    code = (
        "import subprocess, sys, time\n"
        f"subprocess.Popen([sys.executable, '-c', {child!r}])\n"
        "time.sleep(60)\n"
    )

    result = orchestrator.execute(ExecutionRequest(code=code, language="python"))

    assert result.timed_out is True
    time.sleep(2.5)
    assert not marker.exists()


def test_request_timeout_lowers_budget(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator(execution_timeout_ms=10_000)

    result = orchestrator.execute(
        ExecutionRequest(code="import time\ntime.sleep(30)", language="python", timeout_ms=500)
    )

    assert result.timed_out is True
    assert result.duration_ms < 5_000
    assert result.error == "Execution timed out after 500 ms"


def test_compile_error_never_enters_run_phase(make_orchestrator, runtime_log: RuntimeLog) -> None:
    orchestrator, launcher = make_orchestrator()

    result = orchestrator.execute(ExecutionRequest(code="print('missing quote)", language="pycompiled"))

    assert result.error_kind is ErrorKind.COMPILE
    assert result.exit_code != 0
    assert result.stderr.strip()
    assert result.error == "Compilation failed"
    assert launcher.launches == [("pycompiled", Phase.COMPILE)]
    assert len(runtime_log.names("create")) == 1
    _assert_each_sandbox_removed_once(runtime_log)


def test_compile_timeout_never_enters_run_phase(make_orchestrator, runtime_log: RuntimeLog) -> None:
    orchestrator, launcher = make_orchestrator(execution_timeout_ms=2_000)

    result = orchestrator.execute(ExecutionRequest(code="print(1)", language="slowcompile"))

    # Half of the 2000 ms budget is reserved for compiling.
    assert result.error_kind is ErrorKind.TIMEOUT
    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.error == "Compilation timed out after 1000 ms"
    assert 1_000 <= result.duration_ms < 4_000
    assert launcher.launches == [("slowcompile", Phase.COMPILE)]
    assert runtime_log.names("kill") == runtime_log.names("create")
    _assert_each_sandbox_removed_once(runtime_log)


def test_compiled_language_uses_two_separate_sandboxes(
    make_orchestrator, runtime_log: RuntimeLog
) -> None:
    orchestrator, launcher = make_orchestrator()

    result = orchestrator.execute(ExecutionRequest(code="print(6 * 7)", language="pycompiled"))

    assert result.error_kind is ErrorKind.NONE
    assert result.stdout == "42\n"
    assert launcher.launches == [("pycompiled", Phase.COMPILE), ("pycompiled", Phase.RUN)]
    started = runtime_log.names("create")
    assert len(started) == 2
    assert started[0] != started[1]
    _assert_each_sandbox_removed_once(runtime_log)


def test_output_is_truncated_to_exactly_the_cap(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator(max_output_bytes=1_000)

    result = orchestrator.execute(
        ExecutionRequest(
            code="import sys\nsys.stdout.write('x' * 50_000)\nsys.stderr.write('e' * 10)",
            language="python",
        )
    )

    assert result.stdout == "x" * 1_000
    assert result.stdout_truncated is True
    assert result.stderr == "e" * 10
    assert result.stderr_truncated is False
    # The program finished inside the grace period, so this is still a success.
    assert result.error_kind is ErrorKind.NONE
    assert result.timed_out is False


def test_endless_output_is_cut_after_grace_period(make_orchestrator, runtime_log: RuntimeLog) -> None:
    orchestrator, _ = make_orchestrator(
        max_output_bytes=4_096, output_grace_ms=200, execution_timeout_ms=10_000
    )

    result = orchestrator.execute(
        ExecutionRequest(code="while True:\n    print('y' * 100)", language="python")
    )

    assert len(result.stdout.encode()) == 4_096
    assert result.stdout_truncated is True
    assert result.timed_out is False
    assert result.exit_code != 0
    assert result.error_kind is ErrorKind.RUNTIME
    assert result.error == OUTPUT_LIMIT_MESSAGE
    assert result.duration_ms < 5_000
    _assert_each_sandbox_removed_once(runtime_log)


def test_concurrent_identical_requests_do_not_interfere(make_orchestrator) -> None:
    orchestrator, launcher = make_orchestrator()
    request = ExecutionRequest(
        code="import time\ntime.sleep(0.3)\nprint(sum(range(1000)))", language="python"
    )

    with ThreadPoolExecutor(max_workers=2) as pool:
        first, second = pool.map(orchestrator.execute, [request, request])

    assert first.stdout == second.stdout == "499500\n"
    assert first.exit_code == second.exit_code == 0
    assert len(launcher.launches) == 2


def test_oversized_code_is_rejected_before_any_sandbox(
    make_orchestrator, runtime_log: RuntimeLog, workspace_root: Path
) -> None:
    orchestrator, launcher = make_orchestrator(max_code_size_bytes=100)

    result = orchestrator.execute(ExecutionRequest(code="#" * 101, language="python"))

    assert result.error_kind is ErrorKind.VALIDATION
    assert result.error == "Code size exceeds maximum limit of 100 bytes"
    assert launcher.launches == []
    assert runtime_log.calls("create") == []
    assert list(workspace_root.iterdir()) == []


def test_unsupported_language_is_a_validation_result(make_orchestrator) -> None:
    orchestrator, launcher = make_orchestrator()

    result = orchestrator.execute(ExecutionRequest(code="puts 1", language="ruby"))

    assert result.error_kind is ErrorKind.VALIDATION
    assert result.exit_code == -1
    assert "Unsupported language: ruby" in (result.error or "")
    assert launcher.launches == []


def test_missing_image_is_an_infrastructure_error(make_orchestrator, runtime_log: RuntimeLog) -> None:
    orchestrator, launcher = make_orchestrator()

    result = orchestrator.execute(ExecutionRequest(code="print(1)", language="ghost"))

    assert result.error_kind is ErrorKind.INFRASTRUCTURE
    assert result.error == "Sandbox image not available: missing-image"
    assert launcher.launches == []
    assert runtime_log.calls("create") == []


def test_daemon_failure_on_run_is_an_infrastructure_error(
    make_orchestrator, runtime_log: RuntimeLog
) -> None:
    orchestrator, _ = make_orchestrator()

    result = orchestrator.execute(ExecutionRequest(code="print(1)", language="brokendaemon"))

    assert result.error_kind is ErrorKind.INFRASTRUCTURE
    assert "simulated failure" in (result.error or "")
    _assert_each_sandbox_removed_once(runtime_log)


def test_missing_runtime_cli_is_an_infrastructure_error(make_orchestrator) -> None:
    orchestrator, _ = make_orchestrator(container_runtime="definitely-not-a-container-cli")

    result = orchestrator.execute(ExecutionRequest(code="print(1)", language="python"))

    assert result.error_kind is ErrorKind.INFRASTRUCTURE
    assert result.error == "Container runtime CLI not found: definitely-not-a-container-cli"


def test_sandbox_is_torn_down_when_orchestrator_crashes(
    make_orchestrator, runtime_log: RuntimeLog, monkeypatch: pytest.MonkeyPatch
) -> None:
    orchestrator, _ = make_orchestrator()

    def _explode(handle):
        raise RuntimeError("supervisor bug")

    monkeypatch.setattr(orchestrator, "_supervise", _explode)

    with pytest.raises(RuntimeError, match="supervisor bug"):
        orchestrator.execute(ExecutionRequest(code="import time\ntime.sleep(30)", language="python"))

    _assert_each_sandbox_removed_once(runtime_log)
    assert runtime_log.names("kill") == runtime_log.names("create")


def test_workspace_does_not_outlive_the_request(make_orchestrator, workspace_root: Path) -> None:
    orchestrator, _ = make_orchestrator()

    orchestrator.execute(ExecutionRequest(code="print(6 * 7)", language="pycompiled"))

    assert list(workspace_root.iterdir()) == []
