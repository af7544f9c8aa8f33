"""Typed pipeline error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across API surfaces."""

    VALIDATION = "E_VALIDATION"
    RECIPE = "E_RECIPE"
    DEPENDENCY_BUILD = "E_DEPENDENCY_BUILD"
    COMPILE = "E_COMPILE"
    ASSEMBLY = "E_ASSEMBLY"
    CACHE_INTEGRITY = "E_CACHE_INTEGRITY"
    STAGING = "E_STAGING"


class LayerkitError(Exception):
    """Base error class that carries code, optional hint, and context."""

    message: str
    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(LayerkitError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class RecipeError(LayerkitError):
    """Dependency manifests are malformed, inconsistent, or unresolvable."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.RECIPE, hint=hint, context=context)


class DependencyBuildError(LayerkitError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.DEPENDENCY_BUILD, hint=hint, context=context)


class CompileError(LayerkitError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.COMPILE, hint=hint, context=context)


class AssemblyError(LayerkitError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.ASSEMBLY, hint=hint, context=context)


class CacheIntegrityError(LayerkitError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CACHE_INTEGRITY, hint=hint, context=context)


class StagingError(LayerkitError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.STAGING, hint=hint, context=context)


__all__ = [
    "AssemblyError",
    "CacheIntegrityError",
    "CompileError",
    "DependencyBuildError",
    "ErrorCode",
    "LayerkitError",
    "RecipeError",
    "StagingError",
    "ValidationError",
]
