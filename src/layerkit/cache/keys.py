"""Cache key derivation."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class BuildCacheInput:
    recipe_digest: str
    toolchain: str
    toolchain_image: str
    profile: str = "release"
    target: str | None = None
    flags: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)


def cache_key(inputs: BuildCacheInput) -> str:
    canonical = json.dumps(_to_payload(inputs), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _to_payload(inputs: BuildCacheInput) -> dict[str, Any]:
    return {
        "recipe_digest": inputs.recipe_digest,
        "toolchain": inputs.toolchain,
        "toolchain_image": inputs.toolchain_image,
        "profile": inputs.profile,
        "target": inputs.target,
        "flags": list(inputs.flags),
        "env": dict(sorted(inputs.env.items())),
    }
