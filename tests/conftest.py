from __future__ import annotations

import shlex
import sys
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from coderunner.core.config import Settings
from coderunner.services.classifier import Phase
from coderunner.services.languages import LanguageProfile, LanguageRegistry
from coderunner.services.orchestrator import ExecutionOrchestrator
from coderunner.services.sandbox import SandboxHandle, SandboxLauncher, Workspace


FAKE_DOCKER = Path(__file__).with_name("fake_docker.py")

# Profiles the fake runtime can execute on the host: one interpreted, two with a
# compile step (one of which never finishes compiling), and two whose images make
# the runtime fail.
TEST_PROFILES = (
    LanguageProfile(
        id="python",
        image_ref="fake-python",
        source_extension="py",
        run_command_template="python3 -u {source}",
    ),
    LanguageProfile(
        id="pycompiled",
        image_ref="fake-python",
        source_extension="py",
        compile_command_template="python3 -m py_compile {source}",
        run_command_template="python3 -u {source}",
    ),
    LanguageProfile(
        id="ghost",
        image_ref="missing-image",
        source_extension="py",
        run_command_template="python3 {source}",
    ),
    LanguageProfile(
        id="brokendaemon",
        image_ref="broken-daemon",
        source_extension="py",
        run_command_template="python3 {source}",
    ),
    LanguageProfile(
        id="slowcompile",
        image_ref="fake-python",
        source_extension="py",
        compile_command_template="python3 -c 'import time; time.sleep(30)'",
        run_command_template="python3 -u {source}",
    ),
)


class RecordingLauncher(SandboxLauncher):
    """Launcher that remembers every sandbox it started."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.launches: list[tuple[str, Phase]] = []
        self._lock = threading.Lock()

    def launch(
        self,
        profile: LanguageProfile,
        phase: Phase,
        workspace: Workspace,
        stdin: str | None,
        time_budget_ms: int,
    ) -> SandboxHandle:
        handle = super().launch(profile, phase, workspace, stdin, time_budget_ms)
        with self._lock:
            self.launches.append((profile.id, phase))
        return handle


class RuntimeLog:
    def __init__(self, path: Path) -> None:
        self.path = path

    def calls(self, verb: str) -> list[list[str]]:
        if not self.path.exists():
            return []
        lines = self.path.read_text(encoding="utf-8").splitlines()
        return [line.split()[1:] for line in lines if line.split()[0] == verb]

    def names(self, verb: str) -> list[str]:
        return [fields[0] for fields in self.calls(verb)]


@pytest.fixture
def runtime_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> RuntimeLog:
    state = tmp_path / "runtime"
    state.mkdir()
    monkeypatch.setenv("FAKE_DOCKER_STATE", str(state))
    return RuntimeLog(state / "calls.log")


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def make_settings(runtime_log: RuntimeLog, workspace_root: Path) -> Callable[..., Settings]:
    def _make(**overrides: object) -> Settings:
        values: dict[str, object] = {
            "container_runtime": shlex.join([sys.executable, str(FAKE_DOCKER)]),
            "workspace_root": str(workspace_root),
            "output_grace_ms": 1_000,
        }
        values.update(overrides)
        return Settings(**values)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def make_orchestrator(
    make_settings: Callable[..., Settings],
) -> Callable[..., tuple[ExecutionOrchestrator, RecordingLauncher]]:
    def _make(**overrides: object) -> tuple[ExecutionOrchestrator, RecordingLauncher]:
        settings = make_settings(**overrides)
        launcher = RecordingLauncher(settings)
        orchestrator = ExecutionOrchestrator(settings, LanguageRegistry(TEST_PROFILES), launcher)
        return orchestrator, launcher

    return _make
