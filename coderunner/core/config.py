from __future__ import annotations

import os
import re
from dataclasses import dataclass
from functools import lru_cache


_SIZE_PATTERN = re.compile(r"^\d+[bkmg]?$", re.IGNORECASE)


def _int_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _str_from_env(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _size_from_env(name: str, default: str) -> str:
    """Read a Docker-style size ("256m", "1g") and fall back on anything else."""
    raw = _str_from_env(name, default)
    if not _SIZE_PATTERN.match(raw):
        return default
    return raw.lower()


@dataclass(frozen=True, slots=True)
class Settings:
    execution_timeout_ms: int = 5_000
    max_execution_timeout_ms: int = 30_000  # ceiling for a per-request timeoutMs
    memory_limit: str = "256m"              # --memory and --memory-swap
    max_code_size_bytes: int = 50_000
    max_input_size_bytes: int = 1_000_000
    max_output_bytes: int = 1_000_000       # cap per stream, enforced while reading
    output_grace_ms: int = 250
    runtime_call_timeout_ms: int = 10_000   # inspect / kill / rm calls
    container_runtime: str = "docker"
    pids_limit: int = 64
    cpu_shares: int = 512
    scratch_size: str = "64m"              # tmpfs mounted at /tmp
    sandbox_user: str = "65534:65534"
    image_registry: str = ""
    workspace_root: str | None = None
    log_level: str = "INFO"

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            execution_timeout_ms=_int_from_env("EXECUTION_TIMEOUT_MS", 5_000),
            max_execution_timeout_ms=_int_from_env("MAX_EXECUTION_TIMEOUT_MS", 30_000),
            memory_limit=_size_from_env("MEMORY_LIMIT", "256m"),
            max_code_size_bytes=_int_from_env("MAX_CODE_SIZE_BYTES", 50_000),
            max_input_size_bytes=_int_from_env("MAX_INPUT_SIZE_BYTES", 1_000_000),
            max_output_bytes=_int_from_env("MAX_OUTPUT_BYTES", 1_000_000),
            output_grace_ms=_int_from_env("OUTPUT_GRACE_MS", 250),
            runtime_call_timeout_ms=_int_from_env("RUNTIME_CALL_TIMEOUT_MS", 10_000),
            container_runtime=_str_from_env("CONTAINER_RUNTIME", "docker"),
            pids_limit=_int_from_env("PIDS_LIMIT", 64),
            cpu_shares=_int_from_env("CPU_SHARES", 512),
            scratch_size=_size_from_env("SCRATCH_SIZE", "64m"),
            sandbox_user=_str_from_env("SANDBOX_USER", "65534:65534"),
            image_registry=_str_from_env("IMAGE_REGISTRY", ""),
            workspace_root=os.environ.get("WORKSPACE_ROOT") or None,
            log_level=_str_from_env("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
