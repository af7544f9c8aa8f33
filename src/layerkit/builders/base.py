"""Typed interfaces for language toolchains and command execution."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from layerkit.errors import RecipeError
from layerkit.models import BuildProfile
from layerkit.recipe import Recipe


@dataclass(frozen=True, slots=True)
class BuildSpec:
    bin_name: str
    profile: BuildProfile = "release"
    target: str | None = None
    reproducible: bool = True
    flags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    def run(
        self,
        argv: tuple[str, ...],
        *,
        cwd: Path,
        env: Mapping[str, str],
    ) -> CommandResult:
        """Run *argv* in *cwd* with *env* layered over the process environment."""


class Toolchain(Protocol):
    name: str
    dependency_dir: str
    excluded_dirs: tuple[str, ...]

    def plan(self, source: Path) -> Recipe:
        """Build a recipe from the dependency manifests under *source*."""

    def write_skeleton(self, recipe: Recipe, destination: Path) -> None:
        """Materialize manifests and stub sources so dependencies can compile."""

    def cook_command(self, recipe: Recipe, spec: BuildSpec) -> tuple[str, ...]:
        """Command that compiles dependencies only."""

    def prune_local_artifacts(self, recipe: Recipe, workspace: Path, spec: BuildSpec) -> None:
        """Drop outputs of the stub local packages after cooking."""

    def compile_command(self, recipe: Recipe, spec: BuildSpec) -> tuple[str, ...]:
        """Command that compiles exactly one executable."""

    def binary_path(self, workspace: Path, spec: BuildSpec) -> Path:
        """Where the compile command leaves the executable."""

    def environment(self, workspace: Path, spec: BuildSpec) -> dict[str, str]:
        """Extra environment for cook and compile commands."""


def read_source_text(source: Path, rel: str) -> str:
    """Read a manifest-like file, reporting unreadable files as recipe errors."""
    try:
        return (source / rel).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise RecipeError(
            f"{rel} could not be read.",
            hint=str(exc),
            context={"path": rel},
        ) from exc
