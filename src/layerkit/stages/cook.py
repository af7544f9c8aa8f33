"""Dependency cache stage: recipe to a cached, precompiled dependency layer.

Only the recipe reaches this stage. The cache key is derived from the
recipe digest and toolchain inputs, so the runner is never invoked while the
recipe is unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from layerkit.builders.base import BuildSpec, CommandRunner, Toolchain
from layerkit.builders.materialize import build_environment, failure_context
from layerkit.cache import BuildCacheInput, BuildCacheStore, cache_key
from layerkit.errors import DependencyBuildError
from layerkit.models import DependencyLayer
from layerkit.observability import StructuredLogger
from layerkit.recipe import Recipe, recipe_digest


@dataclass(slots=True)
class DependencyCacheBuilder:
    toolchain: Toolchain
    store: BuildCacheStore
    runner: CommandRunner
    toolchain_image: str
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def cache_inputs(self, recipe: Recipe, spec: BuildSpec) -> BuildCacheInput:
        return BuildCacheInput(
            recipe_digest=recipe_digest(recipe),
            toolchain=self.toolchain.name,
            toolchain_image=self.toolchain_image,
            profile=spec.profile,
            target=spec.target,
            flags=spec.flags,
            env=dict(spec.env),
        )

    def cook(self, recipe: Recipe, spec: BuildSpec) -> DependencyLayer:
        if recipe.toolchain != self.toolchain.name:
            raise DependencyBuildError(
                "Recipe was generated for a different toolchain.",
                context={"recipe": recipe.toolchain, "toolchain": self.toolchain.name},
            )
        inputs = self.cache_inputs(recipe, spec)
        key = cache_key(inputs)
        cached = self.store.load(key=key, expected_inputs=inputs)
        if cached is not None:
            self.logger.log(
                operation="dependency_cache_hit",
                stage="cook",
                toolchain=self.toolchain.name,
                message="Reusing cached dependency layer.",
                extra={"key": key},
            )
            return DependencyLayer(
                key=key,
                path=cached,
                recipe_digest=inputs.recipe_digest,
                cache_hit=True,
            )

        self.logger.log(
            operation="dependency_cache_miss",
            stage="cook",
            toolchain=self.toolchain.name,
            message="Cooking dependencies from recipe.",
            extra={"key": key, "dependencies": len(recipe.dependencies)},
        )
        with self.store.staging() as staging_dir:
            workspace = staging_dir / "workspace"
            self.toolchain.write_skeleton(recipe, workspace)
            command = self.toolchain.cook_command(recipe, spec)
            env = build_environment(spec, self.toolchain.environment(workspace, spec))
            result = self.runner.run(command, cwd=workspace, env=env)
            if not result.ok:
                raise DependencyBuildError(
                    "Dependency build failed.",
                    hint="Check that every dependency in the recipe resolves and compiles.",
                    context=failure_context(result, toolchain=self.toolchain.name, key=key),
                )
            self.toolchain.prune_local_artifacts(recipe, workspace, spec)
            layer_dir = workspace / self.toolchain.dependency_dir
            if not layer_dir.is_dir():
                raise DependencyBuildError(
                    "Dependency build produced no dependency directory.",
                    context={
                        "toolchain": self.toolchain.name,
                        "expected": self.toolchain.dependency_dir,
                    },
                )
            self.store.publish(inputs=inputs, layer_dir=layer_dir)

        layer_path = self.store.load(key=key, expected_inputs=inputs)
        if layer_path is None:
            raise DependencyBuildError(
                "Published dependency layer is not loadable.",
                context={"key": key},
            )
        self.logger.log(
            operation="dependency_layer_published",
            stage="cook",
            toolchain=self.toolchain.name,
            message="Published dependency layer.",
            extra={"key": key},
        )
        return DependencyLayer(
            key=key,
            path=layer_path,
            recipe_digest=inputs.recipe_digest,
            cache_hit=False,
        )
