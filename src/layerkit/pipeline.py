"""Pipeline state machine driving plan, cook, compile and assemble.

Layout under ``config.build_dir``::

    planner/recipe.json     recipe produced by the plan stage
    .cache/dependencies/    content-addressed dependency layers (default)
    builder/                compile context: source + restored dependency layer
    image/                  runtime image
    report.json             run report
    logs.jsonl              structured log records
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from layerkit.builders import BuildSpec, CommandRunner, SubprocessRunner, get_builder
from layerkit.cache import BuildCacheStore
from layerkit.config import BuildConfig
from layerkit.errors import LayerkitError, StagingError, ValidationError
from layerkit.models import (
    CompiledExecutable,
    DependencyLayer,
    PipelineState,
    RuntimeImage,
    StageName,
)
from layerkit.observability import StructuredLogger
from layerkit.recipe import Recipe, read_recipe, recipe_digest
from layerkit.stages import (
    ApplicationCompiler,
    DependencyCacheBuilder,
    RecipeGenerator,
    RuntimeImageAssembler,
)

_TRANSITIONS: dict[PipelineState, tuple[StageName | None, PipelineState]] = {
    PipelineState.INIT: ("plan", PipelineState.RECIPE_GENERATED),
    PipelineState.RECIPE_GENERATED: ("cook", PipelineState.DEPENDENCIES_CACHED),
    PipelineState.DEPENDENCIES_CACHED: ("compile", PipelineState.COMPILED),
    PipelineState.COMPILED: ("assemble", PipelineState.ASSEMBLED),
    PipelineState.ASSEMBLED: (None, PipelineState.DONE),
}


@dataclass(slots=True)
class PipelineRun:
    state: PipelineState = PipelineState.INIT
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.INIT])
    recipe: Recipe | None = None
    recipe_path: Path | None = None
    dependency_layer: DependencyLayer | None = None
    executable: CompiledExecutable | None = None
    image: RuntimeImage | None = None
    failed_stage: StageName | None = None
    error: LayerkitError | None = None
    report_path: Path | None = None


class Pipeline:
    def __init__(
        self,
        config: BuildConfig,
        *,
        runner: CommandRunner | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        _check_build_dir(config)
        self.config = config
        self.runner = runner or SubprocessRunner()
        self.logger = logger or StructuredLogger()
        self.toolchain = get_builder(config.toolchain)
        self.spec = build_spec_for(config)
        self.store = BuildCacheStore(config.resolved_cache_dir)

    @property
    def recipe_path(self) -> Path:
        return self.config.build_dir / "planner" / "recipe.json"

    @property
    def context_dir(self) -> Path:
        return self.config.build_dir / "builder"

    @property
    def image_dir(self) -> Path:
        return self.config.build_dir / "image"

    @property
    def report_path(self) -> Path:
        return self.config.build_dir / "report.json"

    @property
    def logs_path(self) -> Path:
        return self.config.build_dir / "logs.jsonl"

    def start(self) -> PipelineRun:
        return PipelineRun()

    def run(self) -> PipelineRun:
        """Drive a fresh run to a terminal state; stage errors propagate."""
        run = self.start()
        while not run.state.terminal:
            self.advance(run)
        return run

    def advance(self, run: PipelineRun) -> PipelineRun:
        """Run exactly one transition."""
        if run.state.terminal:
            raise ValidationError(
                f"Pipeline run is already {run.state}.",
                hint="Start a new run.",
                context={"state": str(run.state)},
            )
        stage, next_state = _TRANSITIONS[run.state]
        try:
            if stage == "plan":
                self._plan(run)
            elif stage == "cook":
                self._cook(run)
            elif stage == "compile":
                self._compile(run)
            elif stage == "assemble":
                self._assemble(run)
        except OSError as exc:
            error = StagingError(
                f"Filesystem error during the {stage} stage.",
                hint=str(exc),
                context={"stage": str(stage)},
            )
            self._fail(run, stage, error)
            raise error from exc
        except LayerkitError as exc:
            self._fail(run, stage, exc)
            raise

        run.state = next_state
        run.history.append(next_state)
        self.logger.log(
            operation="state_transition",
            stage=stage,
            toolchain=self.toolchain.name,
            message=f"Pipeline reached {next_state}.",
        )
        if next_state is PipelineState.DONE:
            self._write_report(run)
        return run

    def _fail(self, run: PipelineRun, stage: StageName | None, exc: LayerkitError) -> None:
        run.state = PipelineState.FAILED
        run.history.append(run.state)
        run.failed_stage = stage
        run.error = exc
        self.logger.log(
            operation="stage_failed",
            stage=stage,
            toolchain=self.toolchain.name,
            message=exc.message,
            level="error",
            extra=exc.to_dict(),
        )
        self._write_report(run)

    def _plan(self, run: PipelineRun) -> None:
        generator = RecipeGenerator(toolchain=self.toolchain, logger=self.logger)
        run.recipe = generator.generate_to(self.config.source_dir, self.recipe_path)
        run.recipe_path = self.recipe_path

    def _cook(self, run: PipelineRun) -> None:
        if run.recipe_path is None:
            raise _missing_output("recipe", "cook")
        # The recipe file is the only input to this stage.
        recipe = read_recipe(run.recipe_path)
        builder = DependencyCacheBuilder(
            toolchain=self.toolchain,
            store=self.store,
            runner=self.runner,
            toolchain_image=self.config.resolved_toolchain_image,
            logger=self.logger,
        )
        run.dependency_layer = builder.cook(recipe, self.spec)

    def _compile(self, run: PipelineRun) -> None:
        if run.recipe is None:
            raise _missing_output("recipe", "compile")
        if run.dependency_layer is None:
            raise _missing_output("dependency layer", "compile")
        compiler = ApplicationCompiler(
            toolchain=self.toolchain,
            runner=self.runner,
            credential=self.config.credential,
            logger=self.logger,
        )
        run.executable = compiler.compile(
            source=self.config.source_dir,
            recipe=run.recipe,
            layer=run.dependency_layer,
            spec=self.spec,
            context_dir=self.context_dir,
            exclude=(self.config.build_dir, self.config.resolved_cache_dir),
        )

    def _assemble(self, run: PipelineRun) -> None:
        if run.executable is None:
            raise _missing_output("executable", "assemble")
        assembler = RuntimeImageAssembler(
            runtime=self.config.runtime,
            credential=self.config.credential,
            logger=self.logger,
        )
        run.image = assembler.assemble(
            executable=run.executable,
            builder_context=self.context_dir,
            destination=self.image_dir,
        )

    def _write_report(self, run: PipelineRun) -> None:
        payload: dict[str, Any] = {
            "state": str(run.state),
            "history": [str(state) for state in run.history],
            "failed_stage": run.failed_stage,
            "error": None if run.error is None else run.error.to_dict(),
            "toolchain": self.toolchain.name,
            "bin": self.config.bin_name,
            "recipe_digest": None if run.recipe is None else recipe_digest(run.recipe),
            "cache": None,
            "executable_sha256": None if run.executable is None else run.executable.sha256,
            "layer_digest": None if run.image is None else run.image.layer_digest,
            "logs": self.logger.records,
            "failure_logs": [],
        }
        if run.failed_stage is not None:
            payload["failure_logs"] = self.logger.records_for_stage(run.failed_stage)
        if run.dependency_layer is not None:
            payload["cache"] = {
                "key": run.dependency_layer.key,
                "hit": run.dependency_layer.cache_hit,
            }
        self.report_path.parent.mkdir(parents=True, exist_ok=True)
        self.report_path.write_text(
            json.dumps(payload, indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        self.logger.to_json_lines(self.logs_path)
        run.report_path = self.report_path


def _missing_output(output: str, stage: StageName) -> ValidationError:
    return ValidationError(
        f"The {stage} stage needs the {output} from an earlier stage.",
        hint="Drive the run with `advance` from its initial state.",
        context={"stage": stage, "output": output},
    )


def _check_build_dir(config: BuildConfig) -> None:
    source = config.source_dir.resolve()
    build_dir = config.build_dir.resolve()
    if not build_dir.is_relative_to(source):
        return
    parts = build_dir.relative_to(source).parts
    if not parts or not parts[0].startswith("."):
        raise ValidationError(
            "A build directory inside the source tree must be hidden.",
            hint="Use a dot-prefixed directory such as `.layerkit`.",
            context={"source": str(source), "build_dir": str(build_dir)},
        )


def build_spec_for(config: BuildConfig) -> BuildSpec:
    return BuildSpec(
        bin_name=config.bin_name,
        profile=config.profile,
        target=config.target,
        reproducible=config.reproducible,
        flags=config.flags,
        env=dict(config.env),
    )
