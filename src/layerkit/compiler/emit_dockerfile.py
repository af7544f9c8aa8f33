"""Multi-stage Dockerfile emission for container engines.

Renders the same plan/cook/compile/assemble split the native pipeline runs:

- cargo: a cargo-chef ``planner`` stage, a ``builder`` stage that cooks the
  recipe before copying sources, and a slim ``runtime`` stage
- go: a ``planner`` stage holding only ``go.mod``/``go.sum``, a ``builder``
  stage running ``go mod download`` before copying sources, and the same
  ``runtime`` stage
"""

from __future__ import annotations

import json
import shlex
from pathlib import Path

from layerkit.builders import BuildSpec, Toolchain, get_builder
from layerkit.config import BuildConfig
from layerkit.pipeline import build_spec_for
from layerkit.recipe import RECIPE_VERSION, Recipe

WORKDIR = "/app"


def emit_dockerfile(config: BuildConfig, recipe: Recipe | None = None) -> str:
    """Render a Dockerfile; *recipe* refines the compile command when known."""
    toolchain = get_builder(config.toolchain)
    spec = build_spec_for(config)
    if recipe is None:
        recipe = Recipe(version=RECIPE_VERSION, toolchain=toolchain.name, manifests=())

    lines = [f"FROM {config.resolved_toolchain_image} AS chef", f"WORKDIR {WORKDIR}", ""]
    if config.toolchain == "cargo":
        lines.extend(_cargo_stages(spec))
    else:
        lines.extend(_go_stages(toolchain, recipe, spec))
    lines.extend(_builder_tail(config, toolchain, recipe, spec))
    lines.extend(_runtime_stage(config, toolchain, spec))
    return "\n".join(lines) + "\n"


def write_dockerfile(config: BuildConfig, path: str | Path, recipe: Recipe | None = None) -> Path:
    destination = Path(path)
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(emit_dockerfile(config, recipe), encoding="utf-8")
    return destination


def _cargo_stages(spec: BuildSpec) -> list[str]:
    cook = ["cargo", "chef", "cook"]
    if spec.profile == "release":
        cook.append("--release")
    if spec.target is not None:
        cook.extend(("--target", spec.target))
    cook.extend(("--recipe-path", "recipe.json"))
    return [
        "FROM chef AS planner",
        "COPY . .",
        "RUN cargo chef prepare --recipe-path recipe.json",
        "",
        "FROM chef AS builder",
        "COPY --from=planner /app/recipe.json recipe.json",
        "# Dependencies only; this layer is reused until the recipe changes.",
        f"RUN {shlex.join(cook)}",
    ]


def _go_stages(toolchain: Toolchain, recipe: Recipe, spec: BuildSpec) -> list[str]:
    env = toolchain.environment(Path(WORKDIR), spec)
    lines = [
        "FROM chef AS planner",
        "COPY go.mod go.sum* ./",
        "",
        "FROM chef AS builder",
        f"ENV GOMODCACHE={env['GOMODCACHE']}",
        f"ENV GOFLAGS={json.dumps(env['GOFLAGS'])}",
    ]
    if "GOOS" in env:
        lines.append(f"ENV GOOS={env['GOOS']} GOARCH={env['GOARCH']}")
    lines.extend(
        [
            "COPY --from=planner /app/ ./",
            "# Dependencies only; this layer is reused until go.mod or go.sum change.",
            f"RUN {shlex.join(toolchain.cook_command(recipe, spec))}",
        ],
    )
    return lines


def _builder_tail(
    config: BuildConfig,
    toolchain: Toolchain,
    recipe: Recipe,
    spec: BuildSpec,
) -> list[str]:
    lines = ["COPY . ."]
    if config.credential is not None:
        source = config.credential.source
        lines.append(f"COPY {source} {WORKDIR}/{source}")
    env_prefix = ""
    if spec.reproducible:
        env_prefix = "SOURCE_DATE_EPOCH=0 "
    lines.append(f"RUN {env_prefix}{shlex.join(toolchain.compile_command(recipe, spec))}")
    lines.append("")
    return lines


def _runtime_stage(config: BuildConfig, toolchain: Toolchain, spec: BuildSpec) -> list[str]:
    runtime = config.runtime
    entrypoint = runtime.entrypoint_for(config.bin_name)
    binary = toolchain.binary_path(Path(WORKDIR), spec).as_posix()
    lines = [f"FROM {runtime.base} AS runtime"]
    install = runtime.install_command()
    if install:
        lines.append(f"RUN {install}")
    lines.extend(
        [
            f"WORKDIR {runtime.workdir}",
            "",
            f"COPY --from=builder {binary} {entrypoint}",
        ],
    )
    if config.credential is not None:
        lines.append(
            f"COPY --from=builder {WORKDIR}/{config.credential.source} "
            f"{config.credential.destination}",
        )
    lines.extend(["", f"ENTRYPOINT {json.dumps([entrypoint])}"])
    return lines
