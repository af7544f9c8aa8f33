"""Runtime image stage: the minimal image holding only what the binary needs.

The image directory contains:

- ``rootfs/``: exactly the executable and the credential artifact
- ``config.json``: base image, TLS/CA packages, install command, entrypoint
- ``layer.tar``: deterministic tarball of ``rootfs/``
- ``measurements.json`` / ``measurements.cbor``: digests of the above

The image is written to a hidden sibling directory and renamed into place,
so a failed assembly never leaves a published image behind.
"""

from __future__ import annotations

import json
import os
import shutil
import tarfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from layerkit.errors import AssemblyError, StagingError
from layerkit.measure import ImageMeasurements
from layerkit.models import CompiledExecutable, CredentialSpec, RuntimeImage, RuntimeSpec
from layerkit.observability import StructuredLogger
from layerkit.staging import file_sha256, iter_tree, remove_path, stage_file


@dataclass(slots=True)
class RuntimeImageAssembler:
    runtime: RuntimeSpec = field(default_factory=RuntimeSpec)
    credential: CredentialSpec | None = None
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def assemble(
        self,
        *,
        executable: CompiledExecutable,
        builder_context: Path,
        destination: Path,
    ) -> RuntimeImage:
        remove_path(destination)
        staging = destination.parent / f".{destination.name}.partial-{uuid.uuid4().hex}"
        staging.mkdir(parents=True)
        try:
            image = self._assemble_into(
                staging=staging,
                executable=executable,
                builder_context=builder_context,
                destination=destination,
            )
            os.rename(staging, destination)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        self.logger.log(
            operation="image_assembled",
            stage="assemble",
            toolchain=None,
            message="Assembled runtime image.",
            extra={"layer_digest": image.layer_digest, "files": list(image.files)},
        )
        return image

    def expected_files(self, bin_name: str) -> dict[str, str]:
        """Map of role -> rootfs-relative path for every file the image holds."""
        files = {"entrypoint": self.runtime.entrypoint_for(bin_name).lstrip("/")}
        if self.credential is not None:
            files["credential"] = self.credential.destination.lstrip("/")
        return files

    def _assemble_into(
        self,
        *,
        staging: Path,
        executable: CompiledExecutable,
        builder_context: Path,
        destination: Path,
    ) -> RuntimeImage:
        if not executable.path.is_file():
            raise AssemblyError(
                "Compiled executable is missing.",
                hint="Re-run the compile stage.",
                context={"path": str(executable.path)},
            )
        if file_sha256(executable.path) != executable.sha256:
            raise AssemblyError(
                "Compiled executable changed after compilation.",
                hint="Re-run the compile stage.",
                context={"path": str(executable.path)},
            )

        rootfs = staging / "rootfs"
        expected = self.expected_files(executable.name)
        stage_file(executable.path, rootfs / expected["entrypoint"], mode=0o755)
        if self.credential is not None:
            try:
                stage_file(
                    builder_context / self.credential.source,
                    rootfs / expected["credential"],
                )
            except StagingError as exc:
                raise AssemblyError(
                    "Credential artifact is missing from the builder context.",
                    hint="The credential must survive from the compile stage to assembly.",
                    context={"credential": self.credential.source},
                ) from exc

        present = {rel for rel in iter_tree(rootfs) if not (rootfs / rel).is_dir()}
        if present != set(expected.values()):
            raise AssemblyError(
                "Runtime root filesystem holds unexpected content.",
                context={
                    "expected": ",".join(sorted(expected.values())),
                    "present": ",".join(sorted(present)),
                },
            )

        file_digests = {rel: file_sha256(rootfs / rel) for rel in sorted(present)}
        entrypoint = ("/" + expected["entrypoint"],)
        config = {
            "base": self.runtime.base,
            "packages": list(self.runtime.packages),
            "install": self.runtime.install_command(),
            "workdir": self.runtime.workdir,
            "entrypoint": list(entrypoint),
            "cmd": [],
            "files": {"/" + rel: digest for rel, digest in file_digests.items()},
        }
        config_path = staging / "config.json"
        config_path.write_text(
            json.dumps(config, indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )

        layer_path = staging / "layer.tar"
        write_layer(rootfs, layer_path)
        layer_digest = file_sha256(layer_path)

        values = {f"file:/{rel}": digest for rel, digest in file_digests.items()}
        values["config"] = file_sha256(config_path)
        values["layer"] = layer_digest
        measurements = ImageMeasurements(values=values)
        measurements.to_json(staging / "measurements.json")
        measurements.to_cbor(staging / "measurements.cbor")

        return RuntimeImage(
            path=destination,
            rootfs=destination / "rootfs",
            config_path=destination / "config.json",
            layer_path=destination / "layer.tar",
            layer_digest=layer_digest,
            entrypoint=entrypoint,
            files=tuple("/" + rel for rel in sorted(present)),
        )


def write_layer(rootfs: Path, layer_path: Path) -> Path:
    """Write a tarball whose bytes depend only on rootfs paths and contents."""
    with tarfile.open(layer_path, "w", format=tarfile.PAX_FORMAT) as archive:
        for rel in iter_tree(rootfs):
            path = rootfs / rel
            info = archive.gettarinfo(str(path), arcname=rel)
            info.mtime = 0
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            if info.isdir() or os.access(path, os.X_OK):
                info.mode = 0o755
            else:
                info.mode = 0o644
            if info.isfile():
                with path.open("rb") as handle:
                    archive.addfile(info, handle)
            else:
                archive.addfile(info)
    return layer_path
