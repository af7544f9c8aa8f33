"""Language toolchain builders."""

from __future__ import annotations

from layerkit.errors import ValidationError

from .base import BuildSpec, CommandResult, CommandRunner, Toolchain
from .go import GoBuilder
from .materialize import SubprocessRunner
from .rust import RustBuilder


def get_builder(name: str) -> Toolchain:
    if name == "cargo":
        return RustBuilder()
    if name == "go":
        return GoBuilder()
    raise ValidationError(
        f"Unsupported toolchain {name!r}.",
        hint="Use one of: cargo, go.",
        context={"toolchain": name},
    )


__all__ = [
    "BuildSpec",
    "CommandResult",
    "CommandRunner",
    "GoBuilder",
    "RustBuilder",
    "SubprocessRunner",
    "Toolchain",
    "get_builder",
]
