"""Application compile stage: full source plus a cooked dependency layer."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path

from layerkit.builders.base import BuildSpec, CommandRunner, Toolchain
from layerkit.builders.materialize import (
    build_environment,
    failure_context,
    materialize_executable,
)
from layerkit.errors import CompileError, StagingError
from layerkit.models import CompiledExecutable, CredentialSpec, DependencyLayer
from layerkit.observability import StructuredLogger
from layerkit.recipe import Recipe
from layerkit.staging import copy_tree, stage_file


@dataclass(slots=True)
class ApplicationCompiler:
    toolchain: Toolchain
    runner: CommandRunner
    credential: CredentialSpec | None = None
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def compile(
        self,
        *,
        source: Path,
        recipe: Recipe,
        layer: DependencyLayer,
        spec: BuildSpec,
        context_dir: Path,
        exclude: tuple[Path, ...] = (),
    ) -> CompiledExecutable:
        declared = {target.name for target in recipe.targets if target.kind == "bin"}
        if declared and spec.bin_name not in declared:
            raise CompileError(
                f"Binary target `{spec.bin_name}` is not declared by any manifest.",
                hint="Pick one of the declared binaries.",
                context={"declared": ",".join(sorted(declared))},
            )
        if not layer.path.is_dir():
            raise CompileError(
                "Dependency layer is missing.",
                hint="Re-run the cook stage.",
                context={"key": layer.key, "path": str(layer.path)},
            )

        if context_dir.exists():
            shutil.rmtree(context_dir)
        # Dependencies first so source files never get shadowed by the layer.
        copy_tree(layer.path, context_dir / self.toolchain.dependency_dir)
        copy_tree(
            source,
            context_dir,
            exclude=(*exclude, *(source / name for name in self.toolchain.excluded_dirs)),
        )
        if self.credential is not None:
            try:
                stage_file(source / self.credential.source, context_dir / self.credential.source)
            except StagingError as exc:
                raise CompileError(
                    "Credential artifact is missing from the source tree.",
                    hint="Place the credential file in the source tree before building.",
                    context={"credential": self.credential.source},
                ) from exc

        binary = self.toolchain.binary_path(context_dir, spec)
        binary.unlink(missing_ok=True)
        command = self.toolchain.compile_command(recipe, spec)
        env = build_environment(spec, self.toolchain.environment(context_dir, spec))
        self.logger.log(
            operation="compile_start",
            stage="compile",
            toolchain=self.toolchain.name,
            message="Compiling application binary.",
            extra={"bin": spec.bin_name, "layer": layer.key},
        )
        result = self.runner.run(command, cwd=context_dir, env=env)
        if not result.ok:
            binary.unlink(missing_ok=True)
            raise CompileError(
                "Application compilation failed.",
                hint="Fix the compiler diagnostics and rebuild.",
                context=failure_context(result, toolchain=self.toolchain.name, bin=spec.bin_name),
            )
        if not binary.is_file():
            raise CompileError(
                "Compiler reported success but produced no binary.",
                context={"expected": str(binary)},
            )

        executable = materialize_executable(
            toolchain=self.toolchain.name,
            binary=binary,
            command=command,
            spec=spec,
        )
        self.logger.log(
            operation="compile_complete",
            stage="compile",
            toolchain=self.toolchain.name,
            message="Compiled application binary.",
            extra={"bin": spec.bin_name, "sha256": executable.sha256},
        )
        return executable
