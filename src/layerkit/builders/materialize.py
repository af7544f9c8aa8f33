"""Subprocess execution and executable materialization for toolchains."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from layerkit.builders.base import BuildSpec, CommandResult
from layerkit.models import CompiledExecutable
from layerkit.staging import file_sha256

STDERR_LIMIT = 2000


@dataclass(slots=True)
class SubprocessRunner:
    """Runs toolchain commands on the host."""

    def run(
        self,
        argv: tuple[str, ...],
        *,
        cwd: Path,
        env: Mapping[str, str],
    ) -> CommandResult:
        merged = dict(os.environ)
        merged.update(env)
        if shutil.which(argv[0], path=merged.get("PATH")) is None:
            return CommandResult(
                argv=argv,
                returncode=127,
                stderr=f"{argv[0]}: command not found",
            )
        result = subprocess.run(
            list(argv),
            cwd=str(cwd),
            env=merged,
            capture_output=True,
            text=True,
            check=False,
        )
        return CommandResult(
            argv=argv,
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )


def build_environment(spec: BuildSpec, extra: Mapping[str, str]) -> dict[str, str]:
    env = dict(extra)
    env.update(spec.env)
    if spec.reproducible:
        env["SOURCE_DATE_EPOCH"] = "0"
    return env


def failure_context(result: CommandResult, **context: str) -> dict[str, str]:
    payload = dict(context)
    payload.update(
        {
            "command": " ".join(result.argv),
            "returncode": str(result.returncode),
            "stderr": result.stderr[-STDERR_LIMIT:] if result.stderr else "",
        },
    )
    return payload


def materialize_executable(
    *,
    toolchain: str,
    binary: Path,
    command: tuple[str, ...],
    spec: BuildSpec,
) -> CompiledExecutable:
    """Record the compiled binary with a metadata file next to it."""
    digest = file_sha256(binary)
    metadata_path = binary.with_name(f"{binary.name}.layerkit.json")
    metadata = {
        "toolchain": toolchain,
        "bin_name": spec.bin_name,
        "profile": spec.profile,
        "target": spec.target,
        "reproducible": spec.reproducible,
        "flags": list(spec.flags),
        "env": dict(sorted(spec.env.items())),
        "command": list(command),
        "path": str(binary),
        "sha256": digest,
    }
    metadata_path.write_text(
        json.dumps(metadata, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    return CompiledExecutable(
        name=spec.bin_name,
        path=binary,
        sha256=digest,
        metadata_path=metadata_path,
    )
