"""Recipe typed model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

RECIPE_VERSION = 1

TargetKind = Literal["lib", "bin", "example", "test", "bench", "build-script"]


@dataclass(frozen=True, slots=True)
class RecipeTarget:
    kind: TargetKind
    name: str
    path: str


@dataclass(frozen=True, slots=True)
class RecipeFile:
    """A dependency-relevant file, stored by source-relative POSIX path."""

    path: str
    contents: str
    targets: tuple[RecipeTarget, ...] = ()


@dataclass(frozen=True, slots=True)
class DependencyPin:
    name: str
    version: str
    source: str | None = None


@dataclass(frozen=True, slots=True)
class Recipe:
    version: int
    toolchain: str
    manifests: tuple[RecipeFile, ...]
    lockfile: RecipeFile | None = None
    auxiliary: tuple[RecipeFile, ...] = ()
    dependencies: tuple[DependencyPin, ...] = ()

    @property
    def files(self) -> tuple[RecipeFile, ...]:
        lock = () if self.lockfile is None else (self.lockfile,)
        return (*self.manifests, *lock, *self.auxiliary)

    @property
    def targets(self) -> tuple[RecipeTarget, ...]:
        return tuple(target for manifest in self.manifests for target in manifest.targets)
