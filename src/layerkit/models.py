"""Core typed dataclasses for pipeline artifacts and state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Literal

ToolchainName = Literal["cargo", "go"]
BuildProfile = Literal["release", "debug"]
StageName = Literal["plan", "cook", "compile", "assemble"]

STAGE_ORDER: tuple[StageName, ...] = ("plan", "cook", "compile", "assemble")


class PipelineState(StrEnum):
    INIT = "init"
    RECIPE_GENERATED = "recipe_generated"
    DEPENDENCIES_CACHED = "dependencies_cached"
    COMPILED = "compiled"
    ASSEMBLED = "assembled"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.FAILED)


@dataclass(frozen=True, slots=True)
class CredentialSpec:
    """Opaque file carried from the source tree into the runtime image.

    ``source`` is relative to the source tree (and to the builder context);
    ``destination`` is the absolute path inside the runtime image.
    """

    source: str = "development.p8"
    destination: str = "/app/development.p8"


@dataclass(frozen=True, slots=True)
class RuntimeSpec:
    base: str = "debian:bookworm-slim"
    packages: tuple[str, ...] = ("libssl3", "ca-certificates")
    install_dir: str = "/usr/local/bin"
    workdir: str = "/app"

    def install_command(self) -> str:
        """Package installation that leaves no package-manager lists behind."""
        if not self.packages:
            return ""
        return (
            "apt-get update && "
            f"apt-get install -y --no-install-recommends {' '.join(self.packages)} && "
            "rm -rf /var/lib/apt/lists/*"
        )

    def entrypoint_for(self, bin_name: str) -> str:
        return f"{self.install_dir.rstrip('/')}/{bin_name}"


@dataclass(frozen=True, slots=True)
class DependencyLayer:
    key: str
    path: Path
    recipe_digest: str
    cache_hit: bool


@dataclass(frozen=True, slots=True)
class CompiledExecutable:
    name: str
    path: Path
    sha256: str
    metadata_path: Path | None = None


@dataclass(frozen=True, slots=True)
class RuntimeImage:
    path: Path
    rootfs: Path
    config_path: Path
    layer_path: Path
    layer_digest: str
    entrypoint: tuple[str, ...]
    files: tuple[str, ...]


__all__ = [
    "BuildProfile",
    "CompiledExecutable",
    "CredentialSpec",
    "DependencyLayer",
    "PipelineState",
    "RuntimeImage",
    "RuntimeSpec",
    "STAGE_ORDER",
    "StageName",
    "ToolchainName",
]
