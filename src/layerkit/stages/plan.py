"""Planner stage: source tree to recipe."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from layerkit.builders.base import Toolchain
from layerkit.errors import ValidationError
from layerkit.observability import StructuredLogger
from layerkit.recipe import Recipe, recipe_digest, write_recipe


@dataclass(slots=True)
class RecipeGenerator:
    toolchain: Toolchain
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def generate(self, source: Path) -> Recipe:
        if not source.is_dir():
            raise ValidationError(
                "Source tree does not exist.",
                context={"source": str(source)},
            )
        recipe = self.toolchain.plan(source)
        self.logger.log(
            operation="recipe_generated",
            stage="plan",
            toolchain=self.toolchain.name,
            message="Generated dependency recipe.",
            extra={
                "digest": recipe_digest(recipe),
                "manifests": [item.path for item in recipe.manifests],
                "dependencies": len(recipe.dependencies),
            },
        )
        return recipe

    def generate_to(self, source: Path, destination: Path) -> Recipe:
        """Generate a recipe and write it; nothing is written on failure."""
        recipe = self.generate(source)
        write_recipe(recipe, destination)
        return recipe
