"""Go toolchain."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from layerkit.builders.base import BuildSpec, read_source_text
from layerkit.errors import RecipeError
from layerkit.recipe import RECIPE_VERSION, DependencyPin, Recipe, RecipeFile

AUXILIARY_FILES = ("go.work", "go.work.sum")

_MODULE_LINE = re.compile(r"^module\s+(\S+)$")
_REQUIRE_LINE = re.compile(r"^require\s+(\S+)\s+(\S+)$")
_BLOCK_START = re.compile(r"^(\w+)\s*\($")
_BLOCK_ENTRY = re.compile(r"^(\S+)\s+(\S+)$")


@dataclass(slots=True)
class GoBuilder:
    tool: str = "go"
    name: str = "go"
    main_package: str = "."
    dependency_dir: str = ".gomodcache"
    excluded_dirs: tuple[str, ...] = (".git", ".gomodcache", "bin")

    def plan(self, source: Path) -> Recipe:
        go_mod = source / "go.mod"
        if not go_mod.is_file():
            raise RecipeError(
                "No go.mod found at the source root.",
                context={"source": str(source)},
            )
        mod_text = read_source_text(source, "go.mod")
        requires = parse_go_mod(mod_text)

        lockfile: RecipeFile | None = None
        go_sum = source / "go.sum"
        if go_sum.is_file():
            sum_text = read_source_text(source, "go.sum")
            _check_sums(requires, sum_text)
            lockfile = RecipeFile(path="go.sum", contents=sum_text)
        elif requires:
            raise RecipeError(
                "go.mod requires modules but go.sum is missing.",
                hint="Run `go mod tidy` and commit go.sum.",
            )

        auxiliary = tuple(
            RecipeFile(path=rel, contents=read_source_text(source, rel))
            for rel in AUXILIARY_FILES
            if (source / rel).is_file()
        )
        pins = tuple(
            DependencyPin(name=path, version=version)
            for path, version in sorted(requires.items())
        )
        return Recipe(
            version=RECIPE_VERSION,
            toolchain=self.name,
            manifests=(RecipeFile(path="go.mod", contents=mod_text),),
            lockfile=lockfile,
            auxiliary=auxiliary,
            dependencies=pins,
        )

    def write_skeleton(self, recipe: Recipe, destination: Path) -> None:
        for item in recipe.files:
            path = destination / item.path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(item.contents, encoding="utf-8")

    def cook_command(self, recipe: Recipe, spec: BuildSpec) -> tuple[str, ...]:
        return (self.tool, "mod", "download")

    def prune_local_artifacts(self, recipe: Recipe, workspace: Path, spec: BuildSpec) -> None:
        # The module cache never holds local packages.
        return None

    def compile_command(self, recipe: Recipe, spec: BuildSpec) -> tuple[str, ...]:
        flags = list(spec.flags)
        if spec.reproducible and "-trimpath" not in flags:
            flags.append("-trimpath")
        if spec.profile == "release" and not any(flag.startswith("-ldflags") for flag in flags):
            flags.append("-ldflags=-s -w")
        return (self.tool, "build", *flags, "-o", f"bin/{spec.bin_name}", self.main_package)

    def binary_path(self, workspace: Path, spec: BuildSpec) -> Path:
        return workspace / "bin" / spec.bin_name

    def environment(self, workspace: Path, spec: BuildSpec) -> dict[str, str]:
        env = {
            "GOMODCACHE": str(workspace / self.dependency_dir),
            "GOFLAGS": "-modcacherw -mod=readonly",
        }
        if spec.target is not None:
            goos, _, goarch = spec.target.partition("/")
            env.update({"GOOS": goos, "GOARCH": goarch})
        return env


def parse_go_mod(text: str) -> dict[str, str]:
    """Return the required module versions declared in go.mod."""
    module: str | None = None
    requires: dict[str, str] = {}
    block: str | None = None

    def require(path: str, version: str) -> None:
        existing = requires.get(path)
        if existing is not None and existing != version:
            raise RecipeError(
                f"go.mod requires `{path}` at conflicting versions.",
                context={"module": path, "versions": f"{existing},{version}"},
            )
        requires[path] = version

    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.split("//", 1)[0].strip()
        if not line:
            continue
        if block is not None:
            if line == ")":
                block = None
            elif block == "require":
                entry = _BLOCK_ENTRY.match(line)
                if entry is None:
                    raise RecipeError(
                        "Malformed require entry in go.mod.",
                        context={"line": str(number)},
                    )
                require(entry.group(1), entry.group(2))
            continue
        if (match := _BLOCK_START.match(line)) is not None:
            block = match.group(1)
        elif (match := _MODULE_LINE.match(line)) is not None:
            module = match.group(1)
        elif (match := _REQUIRE_LINE.match(line)) is not None:
            require(match.group(1), match.group(2))
        elif line.startswith("require"):
            raise RecipeError(
                "Malformed require directive in go.mod.",
                context={"line": str(number)},
            )

    if block is not None:
        raise RecipeError("go.mod has an unterminated block.", context={"block": block})
    if module is None:
        raise RecipeError("go.mod has no module directive.")
    return requires


def _check_sums(requires: dict[str, str], sum_text: str) -> None:
    summed: set[tuple[str, str]] = set()
    for line in sum_text.splitlines():
        parts = line.split()
        if len(parts) != 3:
            continue
        summed.add((parts[0], parts[1].removesuffix("/go.mod")))
    for path, version in sorted(requires.items()):
        if (path, version) not in summed:
            raise RecipeError(
                f"go.sum has no entry for `{path} {version}`.",
                hint="Run `go mod tidy` and commit go.sum.",
                context={"module": path, "version": version},
            )
