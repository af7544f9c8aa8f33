"""Public package entrypoint for the layered service image builder."""

from .config import BuildConfig, load_config
from .errors import (
    AssemblyError,
    CacheIntegrityError,
    CompileError,
    DependencyBuildError,
    LayerkitError,
    RecipeError,
    StagingError,
    ValidationError,
)
from .measure import ImageMeasurements
from .models import (
    CompiledExecutable,
    CredentialSpec,
    DependencyLayer,
    PipelineState,
    RuntimeImage,
    RuntimeSpec,
)
from .pipeline import Pipeline, PipelineRun
from .recipe import Recipe

__all__ = [
    "AssemblyError",
    "BuildConfig",
    "CacheIntegrityError",
    "CompileError",
    "CompiledExecutable",
    "CredentialSpec",
    "DependencyBuildError",
    "DependencyLayer",
    "ImageMeasurements",
    "LayerkitError",
    "Pipeline",
    "PipelineRun",
    "PipelineState",
    "Recipe",
    "RecipeError",
    "RuntimeImage",
    "RuntimeSpec",
    "StagingError",
    "ValidationError",
    "load_config",
]
