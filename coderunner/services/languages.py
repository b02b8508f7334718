from __future__ import annotations

import shlex
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType

from coderunner.core.config import Settings


WORKSPACE_DIR = "/workspace"

_DEFAULT_COMPILE_FRACTION = 0.5
_GO_ENV = {
    "HOME": "/tmp",
    "GOCACHE": "/tmp/.gocache",
    "GOPATH": "/tmp/go",
    "CGO_ENABLED": "0",
}


@dataclass(frozen=True, slots=True)
class LanguageProfile:
    """How to build and run one language inside a sandbox image."""

    id: str
    image_ref: str
    source_extension: str
    run_command_template: str
    compile_command_template: str | None = None
    compile_time_budget_fraction: float = _DEFAULT_COMPILE_FRACTION
    source_filename: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_ms: int | None = None
    memory_limit: str | None = None

    def __post_init__(self) -> None:
        if not self.run_command_template.strip():
            raise ValueError(f"profile {self.id!r} has an empty run command")
        if not 0.0 < self.compile_time_budget_fraction < 1.0:
            raise ValueError(
                f"profile {self.id!r}: compile_time_budget_fraction must be in (0, 1)"
            )

    @property
    def has_compile_step(self) -> bool:
        return bool(self.compile_command_template)

    @property
    def filename(self) -> str:
        return self.source_filename or f"main.{self.source_extension}"

    def compile_argv(self) -> list[str]:
        if self.compile_command_template is None:
            raise ValueError(f"profile {self.id!r} has no compile step")
        return self._render(self.compile_command_template)

    def run_argv(self) -> list[str]:
        return self._render(self.run_command_template)

    def compile_budget_ms(self, total_ms: int) -> int:
        return max(1, int(total_ms * self.compile_time_budget_fraction))

    def _render(self, template: str) -> list[str]:
        # Split first so substituted values can never introduce extra arguments.
        values = {
            "workspace": WORKSPACE_DIR,
            "source": f"{WORKSPACE_DIR}/{self.filename}",
        }
        return [token.format(**values) for token in shlex.split(template)]


_PROFILES: tuple[LanguageProfile, ...] = (
    LanguageProfile(
        id="python",
        image_ref="code-executor-python",
        source_extension="py",
        run_command_template="python3 -u {source}",
        env={"PYTHONDONTWRITEBYTECODE": "1"},
    ),
    LanguageProfile(
        id="javascript",
        image_ref="code-executor-node",
        source_extension="js",
        run_command_template="node {source}",
    ),
    LanguageProfile(
        id="typescript",
        image_ref="code-executor-node",
        source_extension="ts",
        compile_command_template="tsc --outDir {workspace} {source}",
        run_command_template="node {workspace}/main.js",
        env={"HOME": "/tmp"},
    ),
    LanguageProfile(
        id="java",
        image_ref="code-executor-java",
        source_extension="java",
        source_filename="Main.java",
        compile_command_template=(
            "javac -J-XX:TieredStopAtLevel=1 -J-Xshare:auto -d {workspace} {source}"
        ),
        run_command_template=(
            "java -Xss8m -XX:+UseSerialGC -XX:TieredStopAtLevel=1 -Xshare:auto"
            " -cp {workspace} Main"
        ),
        compile_time_budget_fraction=0.6,
        timeout_ms=10_000,
    ),
    LanguageProfile(
        id="cpp",
        image_ref="code-executor-cpp",
        source_extension="cpp",
        compile_command_template="g++ -O2 -std=c++17 -o {workspace}/program {source}",
        run_command_template="{workspace}/program",
    ),
    LanguageProfile(
        id="c",
        image_ref="code-executor-c",
        source_extension="c",
        compile_command_template="gcc -O2 -std=c11 -o {workspace}/program {source} -lm",
        run_command_template="{workspace}/program",
    ),
    LanguageProfile(
        id="go",
        image_ref="code-executor-go",
        source_extension="go",
        compile_command_template="go build -o {workspace}/program {source}",
        run_command_template="{workspace}/program",
        compile_time_budget_fraction=0.7,
        env=_GO_ENV,
        timeout_ms=10_000,
    ),
    LanguageProfile(
        id="html",
        image_ref="code-executor-node",
        source_extension="html",
        run_command_template="cat {source}",
    ),
    LanguageProfile(
        id="css",
        image_ref="code-executor-node",
        source_extension="css",
        run_command_template="cat {source}",
    ),
)


class LanguageRegistry(Mapping[str, LanguageProfile]):
    """Read-only table of language profiles, built once at startup."""

    def __init__(self, profiles: Iterable[LanguageProfile]) -> None:
        table: dict[str, LanguageProfile] = {}
        for profile in profiles:
            if profile.id in table:
                raise ValueError(f"duplicate language profile: {profile.id}")
            table[profile.id] = profile
        self._profiles = MappingProxyType(table)

    def lookup(self, language_id: str) -> LanguageProfile | None:
        return self._profiles.get(language_id)

    def languages(self) -> list[str]:
        return list(self._profiles)

    def __getitem__(self, key: str) -> LanguageProfile:
        return self._profiles[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._profiles)

    def __len__(self) -> int:
        return len(self._profiles)


def build_registry(settings: Settings) -> LanguageRegistry:
    registry_prefix = settings.image_registry.rstrip("/")
    if not registry_prefix:
        return LanguageRegistry(_PROFILES)
    return LanguageRegistry(
        tuple(
            replace(profile, image_ref=f"{registry_prefix}/{profile.image_ref}")
            for profile in _PROFILES
        )
    )
