"""Build configuration and TOML loading."""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

from layerkit.errors import ValidationError
from layerkit.models import BuildProfile, CredentialSpec, RuntimeSpec, ToolchainName

DEFAULT_TOOLCHAIN_IMAGES: dict[str, str] = {
    "cargo": "lukemathwalker/cargo-chef:latest-rust-1",
    "go": "golang:1.22-bookworm",
}

_TOOLCHAINS = ("cargo", "go")
_PROFILES = ("release", "debug")


@dataclass(frozen=True, slots=True)
class BuildConfig:
    source_dir: Path
    bin_name: str
    toolchain: ToolchainName = "cargo"
    profile: BuildProfile = "release"
    build_dir: Path = field(default_factory=lambda: Path(".layerkit"))
    cache_dir: Path | None = None
    toolchain_image: str | None = None
    target: str | None = None
    flags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    reproducible: bool = True
    credential: CredentialSpec | None = field(default_factory=CredentialSpec)
    runtime: RuntimeSpec = field(default_factory=RuntimeSpec)

    def __post_init__(self) -> None:
        if not self.bin_name:
            raise ValidationError("A binary name is required.", context={"field": "bin_name"})
        if self.toolchain not in _TOOLCHAINS:
            raise ValidationError(
                f"Unsupported toolchain {self.toolchain!r}.",
                hint=f"Use one of: {', '.join(_TOOLCHAINS)}.",
                context={"field": "toolchain"},
            )
        if self.profile not in _PROFILES:
            raise ValidationError(
                f"Unsupported build profile {self.profile!r}.",
                hint=f"Use one of: {', '.join(_PROFILES)}.",
                context={"field": "profile"},
            )
        if self.credential is not None:
            if not self.credential.source or Path(self.credential.source).is_absolute():
                raise ValidationError(
                    "Credential source must be a path relative to the source tree.",
                    context={"field": "credential.source", "value": self.credential.source},
                )
            if not self.credential.destination.startswith("/"):
                raise ValidationError(
                    "Credential destination must be an absolute image path.",
                    context={
                        "field": "credential.destination",
                        "value": self.credential.destination,
                    },
                )

    @property
    def resolved_toolchain_image(self) -> str:
        return self.toolchain_image or DEFAULT_TOOLCHAIN_IMAGES[self.toolchain]

    @property
    def resolved_cache_dir(self) -> Path:
        if self.cache_dir is not None:
            return self.cache_dir
        return self.build_dir / ".cache" / "dependencies"


def load_config(path: str | Path) -> BuildConfig:
    config_path = Path(path)
    try:
        raw = config_path.read_bytes()
    except FileNotFoundError as exc:
        raise ValidationError(
            "Config file does not exist.",
            context={"path": str(config_path)},
        ) from exc
    try:
        payload = tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError(
            "Config file is not valid TOML.",
            hint=str(exc),
            context={"path": str(config_path)},
        ) from exc
    return config_from_mapping(payload, base_dir=config_path.parent)


def config_from_mapping(payload: Mapping[str, Any], *, base_dir: Path) -> BuildConfig:
    build = _table(payload, "build")
    bin_name = build.get("bin")
    if not isinstance(bin_name, str) or not bin_name:
        raise ValidationError("Config `[build].bin` must be a non-empty string.")

    credential: CredentialSpec | None
    if payload.get("credential") is False:
        credential = None
    else:
        credential_table = _table(payload, "credential")
        defaults = CredentialSpec()
        credential = CredentialSpec(
            source=_str(credential_table, "source", defaults.source),
            destination=_str(credential_table, "destination", defaults.destination),
        )

    runtime_table = _table(payload, "runtime")
    runtime_defaults = RuntimeSpec()
    runtime = RuntimeSpec(
        base=_str(runtime_table, "base", runtime_defaults.base),
        packages=_str_tuple(runtime_table, "packages", runtime_defaults.packages),
        install_dir=_str(runtime_table, "install_dir", runtime_defaults.install_dir),
        workdir=_str(runtime_table, "workdir", runtime_defaults.workdir),
    )

    env = build.get("env", {})
    if not isinstance(env, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in env.items()
    ):
        raise ValidationError("Config `[build].env` must be a table of strings.")

    cache_dir = build.get("cache_dir")
    return BuildConfig(
        source_dir=_resolve(base_dir, _str(build, "source", ".")),
        bin_name=bin_name,
        toolchain=cast(ToolchainName, _str(build, "toolchain", "cargo")),
        profile=cast(BuildProfile, _str(build, "profile", "release")),
        build_dir=_resolve(base_dir, _str(build, "build_dir", ".layerkit")),
        cache_dir=None if cache_dir is None else _resolve(base_dir, _str(build, "cache_dir", "")),
        toolchain_image=_optional_str(build, "toolchain_image"),
        target=_optional_str(build, "target"),
        flags=_str_tuple(build, "flags", ()),
        env=dict(env),
        reproducible=bool(build.get("reproducible", True)),
        credential=credential,
        runtime=runtime,
    )


def _resolve(base_dir: Path, value: str) -> Path:
    path = Path(value)
    if path.is_absolute():
        return path
    return base_dir / path


def _table(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key, {})
    if not isinstance(value, dict):
        raise ValidationError(f"Config `[{key}]` must be a table.")
    return value


def _str(table: Mapping[str, Any], key: str, default: str) -> str:
    value = table.get(key, default)
    if not isinstance(value, str):
        raise ValidationError(f"Config key `{key}` must be a string.")
    return value


def _optional_str(table: Mapping[str, Any], key: str) -> str | None:
    if table.get(key) is None:
        return None
    return _str(table, key, "")


def _str_tuple(table: Mapping[str, Any], key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = table.get(key)
    if value is None:
        return default
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"Config key `{key}` must be a list of strings.")
    return tuple(value)
