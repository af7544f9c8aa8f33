"""Recipe parser and serializer."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, cast

from layerkit.errors import RecipeError
from layerkit.recipe.model import (
    DependencyPin,
    Recipe,
    RecipeFile,
    RecipeTarget,
    TargetKind,
)
from layerkit.staging import atomic_write_text

_TARGET_KINDS = ("lib", "bin", "example", "test", "bench", "build-script")


def serialize_recipe(recipe: Recipe) -> str:
    payload = {
        "version": recipe.version,
        "toolchain": recipe.toolchain,
        "manifests": [_file_payload(item) for item in recipe.manifests],
        "lockfile": None if recipe.lockfile is None else _file_payload(recipe.lockfile),
        "auxiliary": [_file_payload(item) for item in recipe.auxiliary],
        "dependencies": [
            {"name": pin.name, "version": pin.version, "source": pin.source}
            for pin in recipe.dependencies
        ],
    }
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def recipe_digest(recipe: Recipe) -> str:
    return hashlib.sha256(serialize_recipe(recipe).encode("utf-8")).hexdigest()


def parse_recipe(raw: str) -> Recipe:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RecipeError("Invalid recipe JSON.", hint=str(exc)) from exc

    if not isinstance(payload, dict):
        raise RecipeError("Invalid recipe payload type.")

    version = payload.get("version")
    if not isinstance(version, int):
        raise RecipeError("Invalid recipe `version` value.")
    manifests = _required_list(payload, "manifests")
    if not manifests:
        raise RecipeError("Recipe lists no manifests.")
    lockfile_raw = payload.get("lockfile")
    dependencies = _required_list(payload, "dependencies")
    return Recipe(
        version=version,
        toolchain=_required_str(payload, "toolchain"),
        manifests=tuple(_parse_file(item) for item in manifests),
        lockfile=None if lockfile_raw is None else _parse_file(lockfile_raw),
        auxiliary=tuple(_parse_file(item) for item in _required_list(payload, "auxiliary")),
        dependencies=tuple(_parse_pin(item) for item in dependencies),
    )


def read_recipe(path: str | Path) -> Recipe:
    recipe_path = Path(path)
    try:
        raw = recipe_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise RecipeError(
            "Recipe does not exist.",
            hint="Run `layerkit plan` to generate it.",
            context={"path": str(recipe_path)},
        ) from exc
    return parse_recipe(raw)


def write_recipe(recipe: Recipe, path: str | Path) -> Path:
    return atomic_write_text(Path(path), serialize_recipe(recipe))


def _file_payload(item: RecipeFile) -> dict[str, Any]:
    return {
        "path": item.path,
        "contents": item.contents,
        "targets": [
            {"kind": target.kind, "name": target.name, "path": target.path}
            for target in item.targets
        ],
    }


def _parse_file(item: Any) -> RecipeFile:
    if not isinstance(item, dict):
        raise RecipeError("Invalid file entry in recipe.")
    contents = item.get("contents")
    if not isinstance(contents, str):
        raise RecipeError("Invalid recipe `contents` value.")
    targets = item.get("targets", [])
    if not isinstance(targets, list):
        raise RecipeError("Invalid recipe `targets` value.")
    return RecipeFile(
        path=_safe_relative(_required_str(item, "path")),
        contents=contents,
        targets=tuple(_parse_target(target) for target in targets),
    )


def _parse_target(item: Any) -> RecipeTarget:
    if not isinstance(item, dict):
        raise RecipeError("Invalid target entry in recipe.")
    kind = _required_str(item, "kind")
    if kind not in _TARGET_KINDS:
        raise RecipeError(f"Unknown recipe target kind {kind!r}.")
    return RecipeTarget(
        kind=cast(TargetKind, kind),
        name=_required_str(item, "name"),
        path=_safe_relative(_required_str(item, "path")),
    )


def _parse_pin(item: Any) -> DependencyPin:
    if not isinstance(item, dict):
        raise RecipeError("Invalid dependency entry in recipe.")
    source = item.get("source")
    if source is not None and not isinstance(source, str):
        raise RecipeError("Invalid recipe dependency `source` value.")
    return DependencyPin(
        name=_required_str(item, "name"),
        version=_required_str(item, "version"),
        source=source,
    )


def _safe_relative(path: str) -> str:
    parts = Path(path).parts
    if Path(path).is_absolute() or ".." in parts:
        raise RecipeError(
            "Recipe paths must stay inside the source tree.",
            context={"path": path},
        )
    return path


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise RecipeError(f"Invalid recipe `{key}` value.")
    return value


def _required_list(payload: dict[str, Any], key: str) -> list[Any]:
    value = payload.get(key)
    if not isinstance(value, list):
        raise RecipeError(f"Invalid recipe `{key}` value.")
    return value
