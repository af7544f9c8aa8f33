import json
from collections.abc import Mapping
from dataclasses import replace
from pathlib import Path

import pytest

from conftest import RecordingRunner
from layerkit import Pipeline, PipelineRun, PipelineState
from layerkit.builders import CommandResult
from layerkit.config import BuildConfig
from layerkit.errors import (
    AssemblyError,
    CompileError,
    RecipeError,
    StagingError,
    ValidationError,
)


def test_pipeline_walks_every_state_to_done(
    build_config: BuildConfig,
    runner: RecordingRunner,
) -> None:
    pipeline = Pipeline(build_config, runner=runner)
    run = pipeline.start()

    states = [run.state]
    while not run.state.terminal:
        pipeline.advance(run)
        states.append(run.state)

    assert states == [
        PipelineState.INIT,
        PipelineState.RECIPE_GENERATED,
        PipelineState.DEPENDENCIES_CACHED,
        PipelineState.COMPILED,
        PipelineState.ASSEMBLED,
        PipelineState.DONE,
    ]
    assert run.history == states
    assert run.image is not None
    assert run.image.path == build_config.build_dir / "image"
    assert (build_config.build_dir / "planner" / "recipe.json").is_file()


def test_advancing_a_finished_run_is_rejected(
    build_config: BuildConfig,
    runner: RecordingRunner,
) -> None:
    pipeline = Pipeline(build_config, runner=runner)
    run = pipeline.run()

    with pytest.raises(ValidationError):
        pipeline.advance(run)


def test_report_and_logs_are_written(
    build_config: BuildConfig,
    runner: RecordingRunner,
) -> None:
    run = Pipeline(build_config, runner=runner).run()

    assert run.report_path == build_config.build_dir / "report.json"
    report = json.loads(run.report_path.read_text(encoding="utf-8"))
    assert report["state"] == "done"
    assert report["failed_stage"] is None
    assert report["history"][-1] == "done"
    assert report["cache"]["hit"] is False
    assert run.executable is not None and run.image is not None
    assert report["executable_sha256"] == run.executable.sha256
    assert report["layer_digest"] == run.image.layer_digest
    assert len(report["recipe_digest"]) == 64

    lines = (build_config.build_dir / "logs.jsonl").read_text(encoding="utf-8").splitlines()
    operations = [json.loads(line)["operation"] for line in lines]
    assert operations[0] == "recipe_generated"
    assert "image_assembled" in operations


def test_removing_credential_before_assembly_fails_at_assemble(
    build_config: BuildConfig,
    runner: RecordingRunner,
) -> None:
    pipeline = Pipeline(build_config, runner=runner)
    run = pipeline.start()
    while run.state is not PipelineState.COMPILED:
        pipeline.advance(run)
    (pipeline.context_dir / "development.p8").unlink()

    with pytest.raises(AssemblyError):
        pipeline.advance(run)

    assert run.state is PipelineState.FAILED
    assert run.failed_stage == "assemble"
    assert isinstance(run.error, AssemblyError)
    assert not pipeline.image_dir.exists()
    report = json.loads(pipeline.report_path.read_text(encoding="utf-8"))
    assert report["failed_stage"] == "assemble"
    assert report["error"]["code"] == "E_ASSEMBLY"
    with pytest.raises(ValidationError):
        pipeline.advance(run)


def test_comment_only_change_reuses_dependency_layer(
    build_config: BuildConfig,
    runner: RecordingRunner,
) -> None:
    first = Pipeline(build_config, runner=runner).run()
    main_rs = build_config.source_dir / "src" / "main.rs"
    main_rs.write_text(
        "// handles requests\n" + main_rs.read_text(encoding="utf-8"),
        encoding="utf-8",
    )

    second = Pipeline(build_config, runner=runner).run()

    assert first.dependency_layer is not None and second.dependency_layer is not None
    assert second.dependency_layer.cache_hit is True
    assert second.dependency_layer.key == first.dependency_layer.key
    assert runner.cook_calls() == 1
    assert runner.compile_calls() == 2
    assert first.executable is not None and second.executable is not None
    assert first.executable.sha256 != second.executable.sha256


def test_compile_failure_stops_the_pipeline(
    build_config: BuildConfig,
    runner: RecordingRunner,
) -> None:
    (build_config.source_dir / "src" / "main.rs").write_text(
        "fn main() { does_not_exist(); }\n",
        encoding="utf-8",
    )
    pipeline = Pipeline(build_config, runner=runner)

    with pytest.raises(CompileError):
        pipeline.run()

    report = json.loads(pipeline.report_path.read_text(encoding="utf-8"))
    assert report["state"] == "failed"
    assert report["failed_stage"] == "compile"
    assert report["history"] == [
        "init",
        "recipe_generated",
        "dependencies_cached",
        "failed",
    ]
    assert not pipeline.image_dir.exists()


def test_build_dir_inside_source_must_be_hidden(build_config: BuildConfig) -> None:
    visible = replace(build_config, build_dir=build_config.source_dir / "build")
    hidden = replace(build_config, build_dir=build_config.source_dir / ".layerkit")

    with pytest.raises(ValidationError, match="hidden"):
        Pipeline(visible)
    assert Pipeline(hidden).image_dir == build_config.source_dir / ".layerkit" / "image"


def test_hidden_build_dir_inside_source_is_not_copied(
    build_config: BuildConfig,
    runner: RecordingRunner,
) -> None:
    config = replace(build_config, build_dir=build_config.source_dir / ".layerkit")
    Pipeline(config, runner=runner).run()

    second = Pipeline(config, runner=runner).run()

    assert second.dependency_layer is not None
    assert second.dependency_layer.cache_hit is True
    assert not (config.build_dir / "builder" / ".layerkit").exists()
    assert second.image is not None
    assert second.image.files == ("/app/development.p8", "/usr/local/bin/backend")


def test_debug_profile_is_forwarded(
    tmp_path: Path,
    rust_source: Path,
    runner: RecordingRunner,
) -> None:
    config = BuildConfig(
        source_dir=rust_source,
        bin_name="backend",
        profile="debug",
        build_dir=tmp_path / "build",
    )

    run = Pipeline(config, runner=runner).run()

    assert runner.calls[0] == ("cargo", "build", "--workspace", "--locked")
    assert run.executable is not None
    assert run.executable.path.parent.name == "debug"


def test_unreadable_member_manifest_fails_the_plan_stage(
    build_config: BuildConfig,
    runner: RecordingRunner,
) -> None:
    member = build_config.source_dir / "member"
    member.mkdir()
    (member / "Cargo.toml").symlink_to(build_config.source_dir / "absent.toml")
    pipeline = Pipeline(build_config, runner=runner)
    run = pipeline.start()

    with pytest.raises(RecipeError, match="could not be read"):
        pipeline.advance(run)

    assert run.state is PipelineState.FAILED
    assert run.failed_stage == "plan"
    report = json.loads(pipeline.report_path.read_text(encoding="utf-8"))
    assert report["error"]["code"] == "E_RECIPE"
    assert report["failure_logs"][-1]["operation"] == "stage_failed"
    assert (build_config.build_dir / "logs.jsonl").is_file()
    assert runner.calls == []


def test_filesystem_error_inside_a_stage_fails_the_run(
    build_config: BuildConfig,
) -> None:
    class Unwritable(RecordingRunner):
        def run(
            self,
            argv: tuple[str, ...],
            *,
            cwd: Path,
            env: Mapping[str, str],
        ) -> CommandResult:
            raise PermissionError(13, "Permission denied", str(cwd))

    pipeline = Pipeline(build_config, runner=Unwritable())

    with pytest.raises(StagingError) as excinfo:
        pipeline.run()

    assert isinstance(excinfo.value.__cause__, PermissionError)
    report = json.loads(pipeline.report_path.read_text(encoding="utf-8"))
    assert report["state"] == "failed"
    assert report["failed_stage"] == "cook"
    assert report["error"]["code"] == "E_STAGING"
    assert report["history"] == ["init", "recipe_generated", "failed"]


def test_stage_without_earlier_output_is_rejected(
    build_config: BuildConfig,
    runner: RecordingRunner,
) -> None:
    pipeline = Pipeline(build_config, runner=runner)
    run = PipelineRun(state=PipelineState.COMPILED)

    with pytest.raises(ValidationError, match="executable"):
        pipeline.advance(run)

    assert run.state is PipelineState.FAILED
    assert run.failed_stage == "assemble"
