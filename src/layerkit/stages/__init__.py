"""Pipeline stages: plan, cook, compile and assemble."""

from .assemble import RuntimeImageAssembler, write_layer
from .compile import ApplicationCompiler
from .cook import DependencyCacheBuilder
from .plan import RecipeGenerator

__all__ = [
    "ApplicationCompiler",
    "DependencyCacheBuilder",
    "RecipeGenerator",
    "RuntimeImageAssembler",
    "write_layer",
]
