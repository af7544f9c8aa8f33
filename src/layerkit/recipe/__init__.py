"""Recipe model and serialization."""

from .io import parse_recipe, read_recipe, recipe_digest, serialize_recipe, write_recipe
from .model import RECIPE_VERSION, DependencyPin, Recipe, RecipeFile, RecipeTarget

__all__ = [
    "DependencyPin",
    "RECIPE_VERSION",
    "Recipe",
    "RecipeFile",
    "RecipeTarget",
    "parse_recipe",
    "read_recipe",
    "recipe_digest",
    "serialize_recipe",
    "write_recipe",
]
