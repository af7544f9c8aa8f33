import hashlib
import json
import tarfile
from pathlib import Path

import pytest

from conftest import RecordingRunner
from layerkit.builders import BuildSpec, RustBuilder
from layerkit.cache import BuildCacheStore
from layerkit.errors import AssemblyError
from layerkit.measure import ImageMeasurements
from layerkit.models import CompiledExecutable, CredentialSpec
from layerkit.stages import (
    ApplicationCompiler,
    DependencyCacheBuilder,
    RuntimeImageAssembler,
    write_layer,
)


def _compile(tmp_path: Path, source: Path, runner: RecordingRunner) -> CompiledExecutable:
    recipe = RustBuilder().plan(source)
    spec = BuildSpec(bin_name="backend")
    layer = DependencyCacheBuilder(
        toolchain=RustBuilder(),
        store=BuildCacheStore(tmp_path / "cache"),
        runner=runner,
        toolchain_image="lukemathwalker/cargo-chef:latest-rust-1",
    ).cook(recipe, spec)
    return ApplicationCompiler(
        toolchain=RustBuilder(),
        runner=runner,
        credential=CredentialSpec(),
    ).compile(
        source=source,
        recipe=recipe,
        layer=layer,
        spec=spec,
        context_dir=tmp_path / "builder",
    )


def test_image_holds_exactly_the_executable_and_credential(
    tmp_path: Path,
    rust_source: Path,
    runner: RecordingRunner,
) -> None:
    executable = _compile(tmp_path, rust_source, runner)

    image = RuntimeImageAssembler(credential=CredentialSpec()).assemble(
        executable=executable,
        builder_context=tmp_path / "builder",
        destination=tmp_path / "image",
    )

    files = sorted(
        p.relative_to(image.rootfs).as_posix() for p in image.rootfs.rglob("*") if p.is_file()
    )
    assert files == ["app/development.p8", "usr/local/bin/backend"]
    assert image.files == ("/app/development.p8", "/usr/local/bin/backend")
    assert image.entrypoint == ("/usr/local/bin/backend",)
    assert (image.rootfs / "usr/local/bin/backend").stat().st_mode & 0o777 == 0o755
    assert (image.rootfs / "app/development.p8").read_bytes() == (
        rust_source / "development.p8"
    ).read_bytes()
    # No toolchain output, sources or recipe.
    for name in ("Cargo.toml", "Cargo.lock", "main.rs", "recipe.json", "deps"):
        assert not list(image.rootfs.rglob(name))
    assert sorted(p.name for p in image.path.iterdir()) == [
        "config.json",
        "layer.tar",
        "measurements.cbor",
        "measurements.json",
        "rootfs",
    ]


def test_config_declares_runtime_packages_and_entrypoint(
    tmp_path: Path,
    rust_source: Path,
    runner: RecordingRunner,
) -> None:
    executable = _compile(tmp_path, rust_source, runner)

    image = RuntimeImageAssembler(credential=CredentialSpec()).assemble(
        executable=executable,
        builder_context=tmp_path / "builder",
        destination=tmp_path / "image",
    )
    config = json.loads(image.config_path.read_text(encoding="utf-8"))

    assert config["base"] == "debian:bookworm-slim"
    assert config["packages"] == ["libssl3", "ca-certificates"]
    assert config["install"] == (
        "apt-get update && apt-get install -y --no-install-recommends libssl3 ca-certificates"
        " && rm -rf /var/lib/apt/lists/*"
    )
    assert config["entrypoint"] == ["/usr/local/bin/backend"]
    assert config["cmd"] == []
    assert config["workdir"] == "/app"
    assert config["files"]["/usr/local/bin/backend"] == executable.sha256


def test_layer_tar_is_deterministic(
    tmp_path: Path,
    rust_source: Path,
    runner: RecordingRunner,
) -> None:
    executable = _compile(tmp_path, rust_source, runner)
    assembler = RuntimeImageAssembler(credential=CredentialSpec())

    first = assembler.assemble(
        executable=executable,
        builder_context=tmp_path / "builder",
        destination=tmp_path / "image-a",
    )
    second = assembler.assemble(
        executable=executable,
        builder_context=tmp_path / "builder",
        destination=tmp_path / "image-b",
    )

    assert first.layer_digest == second.layer_digest
    with tarfile.open(first.layer_path) as archive:
        members = archive.getmembers()
    assert [m.name for m in members] == [
        "app",
        "app/development.p8",
        "usr",
        "usr/local",
        "usr/local/bin",
        "usr/local/bin/backend",
    ]
    assert {(m.mtime, m.uid, m.gid, m.uname, m.gname) for m in members} == {(0, 0, 0, "", "")}


def test_write_layer_ignores_mtimes(tmp_path: Path) -> None:
    root = tmp_path / "rootfs"
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "motd").write_text("hi\n", encoding="utf-8")
    first = hashlib.sha256(write_layer(root, tmp_path / "a.tar").read_bytes()).hexdigest()
    (root / "etc" / "motd").touch()
    second = hashlib.sha256(write_layer(root, tmp_path / "b.tar").read_bytes()).hexdigest()

    assert first == second


def test_measurements_cover_files_layer_and_config(
    tmp_path: Path,
    rust_source: Path,
    runner: RecordingRunner,
) -> None:
    executable = _compile(tmp_path, rust_source, runner)

    image = RuntimeImageAssembler(credential=CredentialSpec()).assemble(
        executable=executable,
        builder_context=tmp_path / "builder",
        destination=tmp_path / "image",
    )
    measurements = ImageMeasurements.from_json(
        (image.path / "measurements.json").read_text(encoding="utf-8"),
    )

    assert sorted(measurements.values) == [
        "config",
        "file:/app/development.p8",
        "file:/usr/local/bin/backend",
        "layer",
    ]
    assert measurements.values["layer"] == image.layer_digest
    assert measurements.values["file:/usr/local/bin/backend"] == executable.sha256


def test_missing_credential_fails_without_publishing(
    tmp_path: Path,
    rust_source: Path,
    runner: RecordingRunner,
) -> None:
    executable = _compile(tmp_path, rust_source, runner)
    (tmp_path / "builder" / "development.p8").unlink()

    with pytest.raises(AssemblyError, match="Credential"):
        RuntimeImageAssembler(credential=CredentialSpec()).assemble(
            executable=executable,
            builder_context=tmp_path / "builder",
            destination=tmp_path / "image",
        )

    assert sorted(p.name for p in tmp_path.iterdir()) == ["builder", "cache", "service"]


def test_modified_executable_is_rejected(
    tmp_path: Path,
    rust_source: Path,
    runner: RecordingRunner,
) -> None:
    executable = _compile(tmp_path, rust_source, runner)
    executable.path.write_bytes(b"swapped")

    with pytest.raises(AssemblyError, match="changed after compilation"):
        RuntimeImageAssembler(credential=CredentialSpec()).assemble(
            executable=executable,
            builder_context=tmp_path / "builder",
            destination=tmp_path / "image",
        )
    assert not (tmp_path / "image").exists()


def test_image_without_credential(
    tmp_path: Path,
    rust_source: Path,
    runner: RecordingRunner,
) -> None:
    executable = _compile(tmp_path, rust_source, runner)

    image = RuntimeImageAssembler(credential=None).assemble(
        executable=executable,
        builder_context=tmp_path / "builder",
        destination=tmp_path / "image",
    )

    assert image.files == ("/usr/local/bin/backend",)
