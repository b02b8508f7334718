from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from coderunner.core.config import Settings
from coderunner.core.errors import (
    CodeTooLargeError,
    InputTooLargeError,
    MissingFieldError,
    TimeoutLimitError,
    UnsupportedLanguageError,
)
from coderunner.services.languages import LanguageProfile, LanguageRegistry


audit_logger = logging.getLogger("coderunner.audit")

# Audit only. The sandbox is the security boundary; nothing here blocks execution.
_SUSPICIOUS_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("eval", re.compile(r"eval\s*\(", re.IGNORECASE)),
    ("exec", re.compile(r"exec\s*\(", re.IGNORECASE)),
    ("system", re.compile(r"system\s*\(", re.IGNORECASE)),
    ("os-import", re.compile(r"__import__\s*\(\s*['\"]os['\"]\s*\)", re.IGNORECASE)),
    ("subprocess", re.compile(r"subprocess", re.IGNORECASE)),
    ("docker-socket", re.compile(r"/var/run/docker\.sock")),
    ("proc-escape", re.compile(r"/proc/(?:1|self)/(?:root|ns|environ)")),
    ("shell-substitution", re.compile(r"\$\([^)]*\)|`[^`]*`")),
    ("network", re.compile(r"\b(?:socket|urllib|requests\.get|fetch|http\.Get|curl|wget)\b")),
)


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    code: str | None
    language: str | None
    stdin: str | None = None
    timeout_ms: int | None = None


@dataclass(frozen=True, slots=True)
class ValidatedRequest:
    code: str
    profile: LanguageProfile
    stdin: str | None
    time_budget_ms: int


class RequestValidator:
    def __init__(self, settings: Settings, registry: LanguageRegistry) -> None:
        self._settings = settings
        self._registry = registry

    def validate(self, request: ExecutionRequest) -> ValidatedRequest:
        """Check a request against size and language limits.

        Raises a ``ValidationError`` subclass; no sandbox resources are touched.
        """
        if not request.code:
            raise MissingFieldError("code")
        if not request.language:
            raise MissingFieldError("language")

        profile = self._registry.lookup(request.language)
        if profile is None:
            raise UnsupportedLanguageError(request.language, self._registry.languages())

        code_size = len(request.code.encode("utf-8"))
        if code_size > self._settings.max_code_size_bytes:
            raise CodeTooLargeError(code_size, self._settings.max_code_size_bytes)

        if request.stdin is not None:
            input_size = len(request.stdin.encode("utf-8"))
            if input_size > self._settings.max_input_size_bytes:
                raise InputTooLargeError(input_size, self._settings.max_input_size_bytes)

        budget_ms = profile.timeout_ms or self._settings.execution_timeout_ms
        if request.timeout_ms is not None:
            if request.timeout_ms > self._settings.max_execution_timeout_ms:
                raise TimeoutLimitError(
                    request.timeout_ms, self._settings.max_execution_timeout_ms
                )
            budget_ms = min(budget_ms, request.timeout_ms)

        self._audit(request.code, profile.id)
        return ValidatedRequest(
            code=request.code,
            profile=profile,
            stdin=request.stdin,
            time_budget_ms=budget_ms,
        )

    def _audit(self, code: str, language: str) -> None:
        findings = [name for name, pattern in _SUSPICIOUS_PATTERNS if pattern.search(code)]
        if findings:
            audit_logger.warning(
                "Potentially dangerous pattern(s) in %s submission: %s",
                language,
                ", ".join(findings),
            )
