from pathlib import Path

import pytest

from layerkit.errors import (
    AssemblyError,
    CacheIntegrityError,
    CompileError,
    DependencyBuildError,
    ErrorCode,
    LayerkitError,
    RecipeError,
    StagingError,
    ValidationError,
)
from layerkit.models import CredentialSpec, PipelineState, RuntimeSpec
from layerkit.staging import remove_matching, stage_file, tree_digest


def test_error_codes_are_stable() -> None:
    assert ValidationError("x").code == ErrorCode.VALIDATION.value == "E_VALIDATION"
    assert RecipeError("x").code == "E_RECIPE"
    assert DependencyBuildError("x").code == "E_DEPENDENCY_BUILD"
    assert CompileError("x").code == "E_COMPILE"
    assert AssemblyError("x").code == "E_ASSEMBLY"
    assert CacheIntegrityError("x").code == "E_CACHE_INTEGRITY"
    assert StagingError("x").code == "E_STAGING"


def test_error_to_dict_includes_hint_and_context() -> None:
    error = CompileError(
        "Application compilation failed.",
        hint="Fix the compiler diagnostics and rebuild.",
        context={"bin": "backend", "returncode": "101"},
    )

    payload = error.to_dict()

    assert isinstance(error, LayerkitError)
    assert payload["code"] == "E_COMPILE"
    assert payload["hint"] == "Fix the compiler diagnostics and rebuild."
    assert payload["context"] == {"bin": "backend", "returncode": "101"}
    assert error.message == "Application compilation failed."
    assert "Hint: Fix the compiler diagnostics" in str(error)
    assert "  bin: backend" in str(error)


def test_pipeline_terminal_states() -> None:
    assert PipelineState.DONE.terminal
    assert PipelineState.FAILED.terminal
    assert not any(
        state.terminal
        for state in PipelineState
        if state not in (PipelineState.DONE, PipelineState.FAILED)
    )


def test_runtime_spec_defaults() -> None:
    runtime = RuntimeSpec()

    assert runtime.entrypoint_for("backend") == "/usr/local/bin/backend"
    assert runtime.install_command().endswith("rm -rf /var/lib/apt/lists/*")
    assert RuntimeSpec(packages=()).install_command() == ""
    assert CredentialSpec().destination == "/app/development.p8"


def test_stage_file_copies_bytes_verbatim(tmp_path: Path) -> None:
    source = tmp_path / "development.p8"
    source.write_bytes(b"\x00\xffkey material\r\n")

    staged = stage_file(source, tmp_path / "out" / "app" / "development.p8", mode=0o600)

    assert staged.read_bytes() == b"\x00\xffkey material\r\n"
    assert staged.stat().st_mode & 0o777 == 0o600


def test_stage_file_missing_source(tmp_path: Path) -> None:
    with pytest.raises(StagingError) as excinfo:
        stage_file(tmp_path / "absent", tmp_path / "out")
    assert excinfo.value.context["source"] == str(tmp_path / "absent")
    assert not (tmp_path / "out").exists()


def test_tree_digest_tracks_content_not_mtime(tmp_path: Path) -> None:
    root = tmp_path / "tree"
    (root / "deps").mkdir(parents=True)
    (root / "deps" / "libserde.rlib").write_bytes(b"serde")
    before = tree_digest(root)

    (root / "deps" / "libserde.rlib").touch()
    assert tree_digest(root) == before

    (root / "deps" / "libserde.rlib").write_bytes(b"serde2")
    assert tree_digest(root) != before


def test_remove_matching(tmp_path: Path) -> None:
    (tmp_path / "deps").mkdir()
    (tmp_path / "deps" / "backend-1").write_bytes(b"")
    (tmp_path / "deps" / "libserde-1.rlib").write_bytes(b"")

    (tmp_path / "deps" / "backend-extra-1").write_bytes(b"")

    removed = remove_matching(tmp_path, [("deps", "backend-[0-9]+"), ("missing", ".*")])

    assert removed == [tmp_path / "deps" / "backend-1"]
    assert (tmp_path / "deps" / "libserde-1.rlib").exists()
    assert (tmp_path / "deps" / "backend-extra-1").exists()
