"""Compiler interfaces for emitting container-engine build files."""

from .emit_dockerfile import emit_dockerfile, write_dockerfile

__all__ = ["emit_dockerfile", "write_dockerfile"]
