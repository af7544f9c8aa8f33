"""Command-line interface.

Usage:
    layerkit plan SOURCE [--toolchain cargo] [-o recipe.json]
    layerkit cook RECIPE --cache-dir DIR [--profile release] [--target TRIPLE]
    layerkit build (--config layerkit.toml | SOURCE --bin NAME)
    layerkit dockerfile (--config layerkit.toml | SOURCE --bin NAME) [-o Dockerfile]
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from layerkit.builders import BuildSpec, SubprocessRunner, get_builder
from layerkit.cache import BuildCacheStore
from layerkit.compiler import emit_dockerfile
from layerkit.config import DEFAULT_TOOLCHAIN_IMAGES, BuildConfig, load_config
from layerkit.errors import LayerkitError
from layerkit.observability import StructuredLogger
from layerkit.pipeline import Pipeline
from layerkit.recipe import read_recipe
from layerkit.stages import DependencyCacheBuilder, RecipeGenerator


def cmd_plan(args: argparse.Namespace) -> None:
    generator = RecipeGenerator(toolchain=get_builder(args.toolchain))
    generator.generate_to(Path(args.source), Path(args.output))
    print(f"Wrote recipe to {args.output}")


def cmd_cook(args: argparse.Namespace) -> None:
    recipe = read_recipe(Path(args.recipe))
    builder = DependencyCacheBuilder(
        toolchain=get_builder(recipe.toolchain),
        store=BuildCacheStore(Path(args.cache_dir)),
        runner=SubprocessRunner(),
        toolchain_image=args.toolchain_image or DEFAULT_TOOLCHAIN_IMAGES[recipe.toolchain],
    )
    # Cooking never needs the binary name.
    spec = BuildSpec(bin_name="", profile=args.profile, target=args.target)
    layer = builder.cook(recipe, spec)
    status = "hit" if layer.cache_hit else "built"
    print(f"Dependency layer {layer.key} ({status}): {layer.path}")


def cmd_build(args: argparse.Namespace) -> None:
    config = _config_from_args(args)
    logger = StructuredLogger()
    run = Pipeline(config, runner=SubprocessRunner(), logger=logger).run()
    print(f"Pipeline {run.state}: {run.image.path if run.image else '-'}")
    print(f"Report: {run.report_path}")


def cmd_dockerfile(args: argparse.Namespace) -> None:
    config = _config_from_args(args)
    recipe = None
    if config.source_dir.is_dir():
        recipe = RecipeGenerator(toolchain=get_builder(config.toolchain)).generate(
            config.source_dir,
        )
    rendered = emit_dockerfile(config, recipe)
    if args.output:
        Path(args.output).write_text(rendered, encoding="utf-8")
        print(f"Wrote Dockerfile to {args.output}")
    else:
        sys.stdout.write(rendered)


def _config_from_args(args: argparse.Namespace) -> BuildConfig:
    if args.config:
        return load_config(args.config)
    source = Path(args.source or ".")
    return BuildConfig(
        source_dir=source,
        bin_name=args.bin or "",
        toolchain=args.toolchain,
        build_dir=Path(args.build_dir) if args.build_dir else source / ".layerkit",
    )


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("source", nargs="?", help="Source tree (default: current directory)")
    parser.add_argument("--config", help="Path to a layerkit.toml file")
    parser.add_argument("--bin", help="Binary target to build")
    parser.add_argument("--toolchain", choices=("cargo", "go"), default="cargo")
    parser.add_argument("--build-dir", help="Build directory (default: SOURCE/.layerkit)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="layerkit", description="Layered service image builder")
    sub = parser.add_subparsers(dest="command", required=True)

    plan_p = sub.add_parser("plan", help="Generate a dependency recipe from a source tree")
    plan_p.add_argument("source", help="Source tree")
    plan_p.add_argument("--toolchain", choices=("cargo", "go"), default="cargo")
    plan_p.add_argument("-o", "--output", default="recipe.json", help="Recipe output path")
    plan_p.set_defaults(func=cmd_plan)

    cook_p = sub.add_parser("cook", help="Build the dependency layer from a recipe file")
    cook_p.add_argument("recipe", help="Recipe file produced by `plan`")
    cook_p.add_argument("--cache-dir", required=True, help="Dependency layer cache directory")
    cook_p.add_argument("--profile", choices=("release", "debug"), default="release")
    cook_p.add_argument("--target", help="Target triple (cargo) or GOOS/GOARCH (go)")
    cook_p.add_argument("--toolchain-image", help="Toolchain image recorded in the cache key")
    cook_p.set_defaults(func=cmd_cook)

    build_p = sub.add_parser("build", help="Run plan, cook, compile and assemble")
    _add_config_arguments(build_p)
    build_p.set_defaults(func=cmd_build)

    docker_p = sub.add_parser("dockerfile", help="Emit an equivalent multi-stage Dockerfile")
    _add_config_arguments(docker_p)
    docker_p.add_argument("-o", "--output", help="Write to a file instead of stdout")
    docker_p.set_defaults(func=cmd_dockerfile)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        args.func(args)
    except LayerkitError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0
