"""Cargo toolchain: recipe planning, dependency cooking and binary builds.

The recipe holds every ``Cargo.toml`` in the tree, the root ``Cargo.lock``
and the cargo/rustup config files, plus the list of compilation targets each
manifest implies. Cooking recreates that layout with stub sources
(``fn main() {}`` / empty libs) and runs ``cargo build`` so only third-party
crates are compiled for real.
"""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any

from layerkit.builders.base import BuildSpec, read_source_text
from layerkit.errors import RecipeError
from layerkit.recipe import RECIPE_VERSION, DependencyPin, Recipe, RecipeFile, RecipeTarget
from layerkit.recipe.model import TargetKind
from layerkit.staging import remove_matching

MASKED_VERSION = "0.0.1"
AUXILIARY_FILES = (
    ".cargo/config.toml",
    ".cargo/config",
    "rust-toolchain.toml",
    "rust-toolchain",
)
DEPENDENCY_TABLES = ("dependencies", "dev-dependencies", "build-dependencies")
STUB_MAIN = "fn main() {}\n"
STUB_LIB = ""

# `cargo build` never compiles these, but cargo still needs their files to exist.
_EXPLICIT_ONLY_TARGETS: tuple[tuple[TargetKind, str], ...] = (
    ("example", "examples"),
    ("test", "tests"),
    ("bench", "benches"),
)

_PACKAGE_HEADER = re.compile(r"^\[\s*package\s*\]\s*(#.*)?$")
_VERSION_LINE = re.compile(r'^\s*version\s*=\s*"[^"]*"\s*(#.*)?$')
_LOCK_NAME_LINE = re.compile(r'^name\s*=\s*"([^"]+)"\s*$')
_LOCK_SOURCE_LINE = re.compile(r"^source\s*=")
_HASH = "[0-9a-f]+"
_INCREMENTAL_HASH = "[0-9a-z]+"
_EXTENSION = r"(\.[a-z]+)?"


@dataclass(slots=True)
class RustBuilder:
    tool: str = "cargo"
    name: str = "cargo"
    dependency_dir: str = "target"
    excluded_dirs: tuple[str, ...] = ("target", ".git")

    def plan(self, source: Path) -> Recipe:
        if not (source / "Cargo.toml").is_file():
            raise RecipeError(
                "No Cargo.toml found at the source root.",
                context={"source": str(source)},
            )

        texts: dict[str, str] = {}
        manifests: dict[str, dict[str, Any]] = {}
        for rel in _discover_manifests(source):
            texts[rel], manifests[rel] = _load_toml(source, rel)

        workspace_deps = _workspace_dependencies(manifests["Cargo.toml"])
        local_packages: dict[str, str] = {}
        for rel, data in manifests.items():
            package_name = _check_manifest(rel, data, workspace_deps)
            if package_name is not None:
                local_packages[package_name] = rel

        lock_text: str | None = None
        lock_packages: list[dict[str, Any]] = []
        if (source / "Cargo.lock").is_file():
            lock_text, lock_data = _load_toml(source, "Cargo.lock")
            lock_packages = _lock_packages(lock_data)
            _check_declared_in_lock(manifests, workspace_deps, lock_packages, local_packages)

        # Members inheriting `version.workspace = true` keep their real version.
        literal_versions = {
            name
            for name, rel in local_packages.items()
            if isinstance(manifests[rel]["package"].get("version"), str)
        }
        maskable = literal_versions - _version_pinned_locals(manifests, workspace_deps)
        recipe_manifests = tuple(
            RecipeFile(
                path=rel,
                contents=_mask_manifest(texts[rel], manifests[rel], maskable),
                targets=_targets(source, rel, manifests[rel]),
            )
            for rel in sorted(manifests)
        )
        lockfile = None
        if lock_text is not None:
            lockfile = RecipeFile(path="Cargo.lock", contents=_mask_lockfile(lock_text, maskable))

        auxiliary = tuple(
            RecipeFile(path=rel, contents=read_source_text(source, rel))
            for rel in AUXILIARY_FILES
            if (source / rel).is_file()
        )
        if lock_text is not None:
            pins = _pins_from_lock(lock_packages)
        else:
            pins = _pins_from_declarations(manifests, workspace_deps)
        return Recipe(
            version=RECIPE_VERSION,
            toolchain=self.name,
            manifests=recipe_manifests,
            lockfile=lockfile,
            auxiliary=auxiliary,
            dependencies=pins,
        )

    def write_skeleton(self, recipe: Recipe, destination: Path) -> None:
        for item in recipe.files:
            path = destination / item.path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(item.contents, encoding="utf-8")
        for target in recipe.targets:
            path = destination / target.path
            if path.exists():
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(STUB_LIB if target.kind == "lib" else STUB_MAIN, encoding="utf-8")

    def cook_command(self, recipe: Recipe, spec: BuildSpec) -> tuple[str, ...]:
        return (self.tool, "build", "--workspace", *self._common_flags(recipe, spec))

    def prune_local_artifacts(self, recipe: Recipe, workspace: Path, spec: BuildSpec) -> None:
        profile_dir = self._profile_dir(workspace, spec)
        if not profile_dir.is_dir():
            return
        # Only `<name>-<hash>` entries belong to a local package; a registry
        # crate such as `foo-bar` must survive pruning of local `foo`.
        patterns: list[tuple[str, str]] = []
        for manifest in recipe.manifests:
            package = tomllib.loads(manifest.contents).get("package")
            if isinstance(package, dict) and isinstance(package.get("name"), str):
                name = re.escape(package["name"])
                crate = re.escape(package["name"].replace("-", "_"))
                patterns.extend(
                    (
                        (".fingerprint", f"{name}-{_HASH}"),
                        ("build", f"{name}-{_HASH}"),
                        ("deps", f"(lib)?{crate}-{_HASH}{_EXTENSION}"),
                        ("incremental", f"{crate}-{_INCREMENTAL_HASH}"),
                    ),
                )
            for target in manifest.targets:
                crate = re.escape(target.name.replace("-", "_"))
                if target.kind == "bin":
                    patterns.append(("", rf"{re.escape(target.name)}(\.d)?"))
                patterns.extend(
                    (
                        ("deps", f"(lib)?{crate}-{_HASH}{_EXTENSION}"),
                        ("", f"lib{crate}{_EXTENSION}"),
                    ),
                )
        remove_matching(profile_dir, dict.fromkeys(patterns))

    def compile_command(self, recipe: Recipe, spec: BuildSpec) -> tuple[str, ...]:
        return (self.tool, "build", *self._common_flags(recipe, spec), "--bin", spec.bin_name)

    def binary_path(self, workspace: Path, spec: BuildSpec) -> Path:
        return self._profile_dir(workspace, spec) / spec.bin_name

    def environment(self, workspace: Path, spec: BuildSpec) -> dict[str, str]:
        return {"CARGO_TERM_COLOR": "never"}

    def _common_flags(self, recipe: Recipe, spec: BuildSpec) -> list[str]:
        flags: list[str] = []
        if spec.profile == "release":
            flags.append("--release")
        if spec.reproducible and recipe.lockfile is not None and "--locked" not in spec.flags:
            flags.append("--locked")
        if spec.target is not None:
            flags.extend(("--target", spec.target))
        flags.extend(spec.flags)
        return flags

    def _profile_dir(self, workspace: Path, spec: BuildSpec) -> Path:
        target_dir = workspace / self.dependency_dir
        if spec.target is not None:
            target_dir = target_dir / spec.target
        return target_dir / ("release" if spec.profile == "release" else "debug")


def _discover_manifests(source: Path) -> list[str]:
    found: list[str] = []
    for current, dirs, files in os.walk(source):
        dirs[:] = sorted(d for d in dirs if d != "target" and not d.startswith("."))
        if "Cargo.toml" in files:
            found.append((Path(current) / "Cargo.toml").relative_to(source).as_posix())
    return sorted(found)


def _load_toml(source: Path, rel: str) -> tuple[str, dict[str, Any]]:
    text = read_source_text(source, rel)
    try:
        return text, tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise RecipeError(
            f"{rel} is not valid TOML.",
            hint=str(exc),
            context={"path": rel},
        ) from exc


def _workspace_dependencies(root: dict[str, Any]) -> dict[str, Any]:
    workspace = root.get("workspace")
    if not isinstance(workspace, dict):
        return {}
    deps = workspace.get("dependencies", {})
    return deps if isinstance(deps, dict) else {}


def _check_manifest(rel: str, data: dict[str, Any], workspace_deps: dict[str, Any]) -> str | None:
    package = data.get("package")
    if package is None and "workspace" not in data:
        raise RecipeError(
            f"{rel} declares neither [package] nor [workspace].",
            context={"path": rel},
        )
    package_name: str | None = None
    if package is not None:
        if not isinstance(package, dict) or not isinstance(package.get("name"), str):
            raise RecipeError(f"{rel} has a [package] table without a name.", context={"path": rel})
        package_name = package["name"]

    for dep_name, spec in _iter_dependencies(data):
        if _inherits_workspace(spec) and dep_name not in workspace_deps:
            raise RecipeError(
                f"{rel} inherits `{dep_name}` from the workspace, which does not declare it.",
                hint="Add the dependency to [workspace.dependencies] in the root Cargo.toml.",
                context={"path": rel, "dependency": dep_name},
            )
    return package_name


def _iter_dependencies(data: dict[str, Any]) -> Iterator[tuple[str, Any]]:
    tables: list[Any] = [data.get(name) for name in DEPENDENCY_TABLES]
    platforms = data.get("target")
    if isinstance(platforms, dict):
        for platform in platforms.values():
            if isinstance(platform, dict):
                tables.extend(platform.get(name) for name in DEPENDENCY_TABLES)
    for table in tables:
        if isinstance(table, dict):
            yield from table.items()


def _inherits_workspace(spec: Any) -> bool:
    return isinstance(spec, dict) and spec.get("workspace") is True


def _resolve(dep_name: str, spec: Any, workspace_deps: dict[str, Any]) -> tuple[str, Any]:
    """Return (crate name, effective spec) after workspace inheritance."""
    if _inherits_workspace(spec):
        spec = workspace_deps[dep_name]
    if isinstance(spec, dict) and isinstance(spec.get("package"), str):
        return spec["package"], spec
    return dep_name, spec


def _is_local(spec: Any) -> bool:
    return isinstance(spec, dict) and "path" in spec


def _lock_packages(lock_data: dict[str, Any]) -> list[dict[str, Any]]:
    packages = lock_data.get("package", [])
    if not isinstance(packages, list):
        raise RecipeError("Cargo.lock has an invalid [[package]] list.")
    checksums: dict[tuple[str, str, str | None], str | None] = {}
    for entry in packages:
        if (
            not isinstance(entry, dict)
            or not isinstance(entry.get("name"), str)
            or not isinstance(entry.get("version"), str)
        ):
            raise RecipeError("Cargo.lock has a package entry without name or version.")
        identity = (entry["name"], entry["version"], entry.get("source"))
        checksum = entry.get("checksum")
        if identity in checksums and checksums[identity] != checksum:
            raise RecipeError(
                "Cargo.lock pins the same package twice with different checksums.",
                hint="Regenerate the lockfile with `cargo generate-lockfile`.",
                context={"package": identity[0], "version": identity[1]},
            )
        checksums[identity] = checksum
    return packages


def _check_declared_in_lock(
    manifests: dict[str, dict[str, Any]],
    workspace_deps: dict[str, Any],
    lock_packages: list[dict[str, Any]],
    local_packages: dict[str, str],
) -> None:
    locked = {entry["name"] for entry in lock_packages}
    for rel, data in sorted(manifests.items()):
        for dep_name, spec in _iter_dependencies(data):
            crate, effective = _resolve(dep_name, spec, workspace_deps)
            if _is_local(effective) or crate in local_packages:
                continue
            if crate not in locked:
                raise RecipeError(
                    f"Cargo.lock does not pin `{crate}` required by {rel}.",
                    hint="Run `cargo update` and commit the refreshed Cargo.lock.",
                    context={"path": rel, "dependency": crate},
                )


def _version_pinned_locals(
    manifests: dict[str, dict[str, Any]],
    workspace_deps: dict[str, Any],
) -> set[str]:
    pinned: set[str] = set()
    for data in manifests.values():
        for dep_name, spec in _iter_dependencies(data):
            crate, effective = _resolve(dep_name, spec, workspace_deps)
            if _is_local(effective) and "version" in effective:
                pinned.add(crate)
    return pinned


def _mask_manifest(text: str, data: dict[str, Any], maskable: set[str]) -> str:
    package = data.get("package")
    if not isinstance(package, dict) or package.get("name") not in maskable:
        return text
    if not isinstance(package.get("version"), str):
        return text
    lines = text.splitlines(keepends=True)
    in_package = False
    for index, line in enumerate(lines):
        body = line.rstrip("\r\n")
        stripped = body.strip()
        if stripped.startswith("["):
            in_package = bool(_PACKAGE_HEADER.match(stripped))
            continue
        if in_package and _VERSION_LINE.match(body):
            lines[index] = f'version = "{MASKED_VERSION}"' + line[len(body):]
            break
    return "".join(lines)


def _mask_lockfile(text: str, maskable: set[str]) -> str:
    if not maskable:
        return text
    blocks = re.split(r"(?m)^(?=\[\[package\]\]\s*$)", text)
    masked: list[str] = []
    for block in blocks:
        lines = block.splitlines(keepends=True)
        name = next(
            (m.group(1) for line in lines if (m := _LOCK_NAME_LINE.match(line.rstrip("\r\n")))),
            None,
        )
        has_source = any(_LOCK_SOURCE_LINE.match(line) for line in lines)
        if name in maskable and not has_source:
            for index, line in enumerate(lines):
                body = line.rstrip("\r\n")
                if _VERSION_LINE.match(body):
                    lines[index] = f'version = "{MASKED_VERSION}"' + line[len(body):]
                    break
        masked.append("".join(lines))
    return "".join(masked)


def _targets(source: Path, rel: str, data: dict[str, Any]) -> tuple[RecipeTarget, ...]:
    package = data.get("package")
    if not isinstance(package, dict):
        return ()
    package_name: str = package["name"]
    base = PurePosixPath(rel).parent
    manifest_dir = source / base

    def target(kind: TargetKind, name: str, path: str) -> RecipeTarget:
        return RecipeTarget(kind=kind, name=name, path=(base / path).as_posix())

    targets: list[RecipeTarget] = []
    lib = data.get("lib")
    if isinstance(lib, dict):
        targets.append(
            target(
                "lib",
                lib.get("name", package_name.replace("-", "_")),
                lib.get("path", "src/lib.rs"),
            ),
        )
    elif (manifest_dir / "src" / "lib.rs").is_file():
        targets.append(target("lib", package_name.replace("-", "_"), "src/lib.rs"))

    explicit_bins: dict[str, str] = {}
    for entry in _target_tables(rel, data, "bin"):
        name = entry["name"]
        path = entry.get("path") or _default_bin_path(manifest_dir, package_name, name)
        explicit_bins[name] = path
        targets.append(target("bin", name, path))

    if package.get("autobins", True):
        discovered: list[tuple[str, str]] = []
        if (manifest_dir / "src" / "main.rs").is_file():
            discovered.append((package_name, "src/main.rs"))
        bin_dir = manifest_dir / "src" / "bin"
        if bin_dir.is_dir():
            for candidate in sorted(bin_dir.iterdir()):
                if candidate.is_file() and candidate.suffix == ".rs":
                    discovered.append((candidate.stem, f"src/bin/{candidate.name}"))
                elif candidate.is_dir() and (candidate / "main.rs").is_file():
                    discovered.append((candidate.name, f"src/bin/{candidate.name}/main.rs"))
        for name, path in discovered:
            if name in explicit_bins or path in explicit_bins.values():
                continue
            targets.append(target("bin", name, path))

    for kind, directory in _EXPLICIT_ONLY_TARGETS:
        for entry in _target_tables(rel, data, kind):
            path = entry.get("path") or f"{directory}/{entry['name']}.rs"
            targets.append(target(kind, entry["name"], path))

    build = package.get("build")
    if isinstance(build, str):
        targets.append(target("build-script", "build-script-build", build))
    elif build is not False and (manifest_dir / "build.rs").is_file():
        targets.append(target("build-script", "build-script-build", "build.rs"))

    return tuple(sorted(targets, key=lambda item: (item.kind, item.name, item.path)))


def _target_tables(rel: str, data: dict[str, Any], key: str) -> list[dict[str, Any]]:
    entries = data.get(key, [])
    if not isinstance(entries, list):
        raise RecipeError(f"{rel} has an invalid [[{key}]] section.", context={"path": rel})
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            raise RecipeError(f"{rel} has a [[{key}]] entry without a name.", context={"path": rel})
    return entries


def _default_bin_path(manifest_dir: Path, package_name: str, name: str) -> str:
    if name == package_name and (manifest_dir / "src" / "main.rs").is_file():
        return "src/main.rs"
    if (manifest_dir / "src" / "bin" / name / "main.rs").is_file():
        return f"src/bin/{name}/main.rs"
    return f"src/bin/{name}.rs"


def _pins_from_lock(lock_packages: list[dict[str, Any]]) -> tuple[DependencyPin, ...]:
    pins = {
        DependencyPin(name=entry["name"], version=entry["version"], source=entry["source"])
        for entry in lock_packages
        if isinstance(entry.get("source"), str)
    }
    return tuple(sorted(pins, key=lambda pin: (pin.name, pin.version, pin.source or "")))


def _pins_from_declarations(
    manifests: dict[str, dict[str, Any]],
    workspace_deps: dict[str, Any],
) -> tuple[DependencyPin, ...]:
    pins: set[DependencyPin] = set()
    for data in manifests.values():
        for dep_name, spec in _iter_dependencies(data):
            crate, effective = _resolve(dep_name, spec, workspace_deps)
            if _is_local(effective):
                continue
            if isinstance(effective, str):
                pins.add(DependencyPin(name=crate, version=effective))
            elif isinstance(effective, dict):
                git = effective.get("git")
                pins.add(
                    DependencyPin(
                        name=crate,
                        version=str(effective.get("version", "*")),
                        source=f"git+{git}" if isinstance(git, str) else None,
                    ),
                )
    return tuple(sorted(pins, key=lambda pin: (pin.name, pin.version, pin.source or "")))
