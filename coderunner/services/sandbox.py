"""Sandbox launcher backed by a Docker-compatible container CLI.

Each compile or run phase gets its own container:

- ``--network=none``: no network reachability
- ``--read-only`` root with a size-bounded ``/tmp`` tmpfs for scratch files
- ``--memory``/``--memory-swap``: hard memory ceiling, no swap
- ``--pids-limit``: process/thread ceiling (fork bombs hit it)
- ``--cap-drop=ALL`` and ``no-new-privileges``; runs as an unprivileged uid
- created, started and force-removed once; containers are never reused

The per-request workspace holding the source is bind-mounted at
``/workspace``: writable while compiling, read-only while running.

Containers are created first and then started attached, so a failure to create
or start one is reported by the daemon (``State.Error``) and never inferred from
the exit status, which belongs to the sandboxed program.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import tempfile
import time
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import IO, Final

from coderunner.core.config import Settings
from coderunner.core.errors import SandboxInfrastructureError
from coderunner.services.classifier import Phase
from coderunner.services.languages import WORKSPACE_DIR, LanguageProfile


logger = logging.getLogger(__name__)

SANDBOX_LABEL: Final[str] = "coderunner.sandbox"

_MAX_OPEN_FILES = 64
_MAX_FILE_SIZE_BYTES = 16 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    memory: str
    pids: int
    cpu_shares: int
    scratch_size: str
    user: str
    network_disabled: bool = True
    read_only_root: bool = True
    max_open_files: int = _MAX_OPEN_FILES
    max_file_size_bytes: int = _MAX_FILE_SIZE_BYTES

    def as_run_flags(self) -> list[str]:
        flags: list[str] = []
        if self.network_disabled:
            flags.append("--network=none")
        if self.read_only_root:
            flags.append("--read-only")
        flags.extend(
            [
                f"--tmpfs=/tmp:rw,exec,nosuid,nodev,mode=1777,size={self.scratch_size}",
                f"--memory={self.memory}",
                f"--memory-swap={self.memory}",
                f"--pids-limit={self.pids}",
                f"--cpu-shares={self.cpu_shares}",
                "--cap-drop=ALL",
                "--security-opt=no-new-privileges",
                f"--user={self.user}",
                f"--ulimit=nofile={self.max_open_files}:{self.max_open_files}",
                f"--ulimit=fsize={self.max_file_size_bytes}:{self.max_file_size_bytes}",
            ]
        )
        return flags


class ContainerRuntime:
    """Adapter over the container CLI (``docker`` by default).

    Every call except the attached ``start`` is bounded by ``call_timeout``.
    """

    def __init__(self, command: str, call_timeout_ms: int) -> None:
        self._cli = shlex.split(command)
        if not self._cli:
            raise ValueError("container runtime command must not be empty")
        self.call_timeout = call_timeout_ms / 1000.0

    def create_args(
        self,
        *,
        name: str,
        image: str,
        limits: ResourceLimits,
        workspace: Path,
        writable: bool,
        env: Mapping[str, str],
        command: list[str],
    ) -> list[str]:
        mount = f"--mount=type=bind,source={workspace},target={WORKSPACE_DIR}"
        if not writable:
            mount += ",readonly"
        args = [
            "create",
            "--interactive",
            f"--name={name}",
            f"--label={SANDBOX_LABEL}=1",
            "--pull=never",
            "--log-driver=none",
            *limits.as_run_flags(),
            mount,
            f"--workdir={WORKSPACE_DIR}",
        ]
        for key, value in sorted(env.items()):
            args.append(f"--env={key}={value}")
        args.append(image)
        args.extend(command)
        return args

    def create(self, args: list[str]) -> None:
        """Create a stopped container; no sandboxed process exists yet."""
        result = self._call(*args)
        if result.returncode != 0:
            detail = _first_line(result.stderr) or "unknown error"
            raise SandboxInfrastructureError(f"Failed to create sandbox: {detail}")

    def start(self, name: str) -> subprocess.Popen[bytes]:
        """Start a created container with its stdio attached to the returned process."""
        try:
            return subprocess.Popen(  # nosec: B603 (controlled argv)
                [*self._cli, "start", "--attach", "--interactive", name],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        except FileNotFoundError as exc:
            raise SandboxInfrastructureError(
                f"Container runtime CLI not found: {self._cli[0]}"
            ) from exc
        except OSError as exc:
            raise SandboxInfrastructureError(f"Failed to start container runtime: {exc}") from exc

    def ensure_image(self, image: str) -> None:
        result = self._call("image", "inspect", "--format={{.Id}}", image)
        if result.returncode == 0:
            return
        detail = _first_line(result.stderr) or "unknown error"
        if "no such image" in detail.lower():
            raise SandboxInfrastructureError(f"Sandbox image not available: {image}")
        raise SandboxInfrastructureError(f"Container runtime unreachable: {detail}")

    def kill(self, name: str) -> None:
        try:
            result = self._call("kill", "--signal=KILL", name)
        except SandboxInfrastructureError as exc:
            logger.warning("Could not kill sandbox %s: %s", name, exc)
            return
        if result.returncode != 0:
            # Already stopped: the container exited on its own.
            logger.debug("kill %s: %s", name, _first_line(result.stderr))

    def remove(self, name: str) -> None:
        try:
            result = self._call("rm", "--force", "--volumes", name)
        except SandboxInfrastructureError as exc:
            logger.warning("Could not remove sandbox %s: %s", name, exc)
            return
        if result.returncode != 0:
            logger.debug("rm %s: %s", name, _first_line(result.stderr))

    def check_health(self) -> tuple[bool, str]:
        """Return (healthy, detail) for runtime availability."""
        try:
            result = self._call("info", "--format={{.ServerVersion}}")
        except SandboxInfrastructureError as exc:
            return False, str(exc)
        if result.returncode != 0:
            return False, _first_line(result.stderr) or "container daemon unavailable"
        version = result.stdout.decode("utf-8", errors="replace").strip() or "unknown"
        return True, f"container runtime ready (server {version})"

    def start_error(self, name: str) -> str:
        """Return the daemon's record of why ``name`` failed to start, or ``""``.

        Only the daemon writes ``State.Error``; the sandboxed program cannot.
        """
        result = self._call("inspect", "--type=container", "--format={{.State.Error}}", name)
        if result.returncode != 0:
            detail = _first_line(result.stderr) or "unknown error"
            raise SandboxInfrastructureError(f"Could not inspect sandbox {name}: {detail}")
        return result.stdout.decode("utf-8", errors="replace").strip()

    def _call(self, *args: str) -> subprocess.CompletedProcess[bytes]:
        try:
            return subprocess.run(  # nosec: B603 (controlled argv)
                [*self._cli, *args],
                capture_output=True,
                timeout=self.call_timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SandboxInfrastructureError(
                f"Container runtime CLI not found: {self._cli[0]}"
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise SandboxInfrastructureError(
                f"Container runtime call timed out after {self.call_timeout:g}s: {args[0]}"
            ) from exc


def _first_line(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace").strip()
    return text.splitlines()[0] if text else ""


@dataclass(frozen=True, slots=True)
class Workspace:
    host_path: Path
    source_path: Path


class SandboxHandle:
    """One running sandbox phase. Owned by the orchestrator for its lifetime."""

    def __init__(
        self,
        *,
        sandbox_id: str,
        phase: Phase,
        process: subprocess.Popen[bytes],
        runtime: ContainerRuntime,
        resource_limits: ResourceLimits,
        time_budget_ms: int,
        stdin_payload: bytes | None,
    ) -> None:
        self.id = sandbox_id
        self.phase = phase
        self.resource_limits = resource_limits
        self.time_budget_ms = time_budget_ms
        self.stdin_payload = stdin_payload
        self.started_at = time.monotonic()
        self.terminated = False
        self._process = process
        self._runtime = runtime
        self._torn_down = False

    @property
    def deadline(self) -> float:
        return self.started_at + self.time_budget_ms / 1000.0

    @property
    def stdout_stream(self) -> IO[bytes]:
        assert self._process.stdout is not None
        return self._process.stdout

    @property
    def stderr_stream(self) -> IO[bytes]:
        assert self._process.stderr is not None
        return self._process.stderr

    @property
    def stdin_writer(self) -> IO[bytes]:
        assert self._process.stdin is not None
        return self._process.stdin

    def wait(self, timeout: float | None = None) -> int:
        return self._process.wait(timeout=timeout)

    def poll(self) -> int | None:
        return self._process.poll()

    def start_error(self) -> str:
        return self._runtime.start_error(self.id)

    def terminate(self) -> None:
        """Kill every process in the sandbox, then the local runtime client."""
        self.terminated = True
        self._runtime.kill(self.id)
        try:
            if os.name == "posix":
                os.killpg(self._process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        self._process.kill()

    def teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        try:
            if self._process.poll() is None:
                self.terminate()
                try:
                    self._process.wait(timeout=self._runtime.call_timeout)
                except subprocess.TimeoutExpired:
                    logger.warning("Runtime client for sandbox %s did not exit after kill", self.id)
        finally:
            self._runtime.remove(self.id)
            self._close_pipes()
            logger.debug("Sandbox %s torn down", self.id)

    def _close_pipes(self) -> None:
        for stream in (self._process.stdin, self._process.stdout, self._process.stderr):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError as exc:  # stdin flush into an exited process
                logger.debug("Closing pipe of sandbox %s: %s", self.id, exc)

    def __enter__(self) -> "SandboxHandle":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.teardown()


class SandboxLauncher:
    def __init__(self, settings: Settings, runtime: ContainerRuntime | None = None) -> None:
        self._settings = settings
        self.runtime = runtime or ContainerRuntime(
            settings.container_runtime, settings.runtime_call_timeout_ms
        )

    @contextmanager
    def materialize(self, profile: LanguageProfile, code: str) -> Iterator[Workspace]:
        """Write the source into a fresh workspace that lives for one request."""
        with tempfile.TemporaryDirectory(
            prefix="exec-", dir=self._settings.workspace_root, ignore_cleanup_errors=True
        ) as workdir:
            # The 0700 parent keeps other host users out of the shared workspace below it.
            private = Path(workdir)
            private.chmod(0o700)
            root = private / "workspace"
            root.mkdir()
            # The sandbox uid is unrelated to ours; the compile phase writes artifacts here.
            root.chmod(0o777)
            source = root / profile.filename
            source.write_text(code, encoding="utf-8")
            source.chmod(0o644)
            yield Workspace(host_path=root, source_path=source)

    def launch(
        self,
        profile: LanguageProfile,
        phase: Phase,
        workspace: Workspace,
        stdin: str | None,
        time_budget_ms: int,
    ) -> SandboxHandle:
        """Start one isolated container for ``phase``.

        Raises ``SandboxInfrastructureError`` when the runtime or image is unavailable.
        """
        self.runtime.ensure_image(profile.image_ref)

        sandbox_id = f"sandbox-{uuid.uuid4().hex}"
        limits = self._limits_for(profile)
        command = profile.compile_argv() if phase is Phase.COMPILE else profile.run_argv()
        args = self.runtime.create_args(
            name=sandbox_id,
            image=profile.image_ref,
            limits=limits,
            workspace=workspace.host_path,
            writable=phase is Phase.COMPILE,
            env=profile.env,
            command=command,
        )
        try:
            self.runtime.create(args)
            process = self.runtime.start(sandbox_id)
        except SandboxInfrastructureError:
            # A failed create can still leave a stopped container behind.
            self.runtime.remove(sandbox_id)
            raise
        logger.debug(
            "Launched %s sandbox %s (language=%s image=%s budget=%dms)",
            phase.value,
            sandbox_id,
            profile.id,
            profile.image_ref,
            time_budget_ms,
        )
        return SandboxHandle(
            sandbox_id=sandbox_id,
            phase=phase,
            process=process,
            runtime=self.runtime,
            resource_limits=limits,
            time_budget_ms=time_budget_ms,
            stdin_payload=stdin.encode("utf-8") if stdin is not None else None,
        )

    def _limits_for(self, profile: LanguageProfile) -> ResourceLimits:
        return ResourceLimits(
            memory=profile.memory_limit or self._settings.memory_limit,
            pids=self._settings.pids_limit,
            cpu_shares=self._settings.cpu_shares,
            scratch_size=self._settings.scratch_size,
            user=self._settings.sandbox_user,
        )
