"""Content-addressed dependency layer store with manifest verification.

Entries live at ``<root>/<key>/`` and hold a ``layer/`` directory plus a
``manifest.json``. Entries are only ever created by renaming a fully written
directory out of ``<root>/.staging/``, so a visible entry is always complete.
"""

from __future__ import annotations

import json
import os
import shutil
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from layerkit.cache.keys import BuildCacheInput, _to_payload, cache_key
from layerkit.errors import CacheIntegrityError
from layerkit.staging import tree_digest

STAGING_DIR = ".staging"


class BuildCacheStore:
    def __init__(self, root: str | Path, *, verify: bool = True) -> None:
        self.root = Path(root)
        self.verify = verify
        self.root.mkdir(parents=True, exist_ok=True)

    def entry_path(self, key: str) -> Path:
        return self.root / key

    def load(self, *, key: str, expected_inputs: BuildCacheInput) -> Path | None:
        entry = self.entry_path(key)
        layer_path = entry / "layer"
        manifest_path = entry / "manifest.json"
        if not layer_path.is_dir() or not manifest_path.exists():
            return None

        manifest = self._read_manifest(manifest_path)
        expected_payload = _to_payload(expected_inputs)
        if manifest.get("inputs") != expected_payload:
            raise CacheIntegrityError(
                "Cache manifest inputs do not match expected build inputs.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "key": key},
            )
        if manifest.get("key") != key:
            raise CacheIntegrityError(
                "Cache manifest key mismatch.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "key": key},
            )
        if self.verify and manifest.get("tree_sha256") != tree_digest(layer_path):
            raise CacheIntegrityError(
                "Cache layer digest mismatch.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "key": key},
            )
        return layer_path

    @contextmanager
    def staging(self) -> Iterator[Path]:
        """Yield a scratch directory that is removed on exit, published or not."""
        staging_dir = self.root / STAGING_DIR / uuid.uuid4().hex
        staging_dir.mkdir(parents=True)
        try:
            yield staging_dir
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

    def publish(self, *, inputs: BuildCacheInput, layer_dir: Path) -> str:
        key = cache_key(inputs)
        entry = self.entry_path(key)
        pending = self.root / STAGING_DIR / f"{key}.{uuid.uuid4().hex}"
        pending.mkdir(parents=True)
        try:
            shutil.move(str(layer_dir), pending / "layer")
            manifest = {
                "key": key,
                "inputs": _to_payload(inputs),
                "tree_sha256": tree_digest(pending / "layer"),
            }
            (pending / "manifest.json").write_text(
                json.dumps(manifest, indent=2, sort_keys=True) + "\n",
                encoding="utf-8",
            )
            try:
                os.rename(pending, entry)
            except OSError:
                # Another publisher won the race for this key; keys are content
                # derived so the existing entry is equivalent.
                if not (entry / "manifest.json").exists():
                    raise
        finally:
            shutil.rmtree(pending, ignore_errors=True)
        return key

    def invalidate(self, key: str) -> bool:
        entry = self.entry_path(key)
        if not entry.exists():
            return False
        shutil.rmtree(entry)
        return True

    def _read_manifest(self, path: Path) -> dict[str, object]:
        try:
            parsed = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CacheIntegrityError(
                "Cache manifest is not valid JSON.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "path": str(path)},
            ) from exc
        if not isinstance(parsed, dict):
            raise CacheIntegrityError(
                "Cache manifest has invalid structure.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "path": str(path)},
            )
        return parsed
