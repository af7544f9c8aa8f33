"""Filesystem staging helpers shared by pipeline stages.

``stage_file`` is the generic copy step used for the credential artifact and
the executable: it copies bytes verbatim and never inspects content.
``tree_digest`` gives a stable content hash for a directory snapshot.
"""

from __future__ import annotations

import hashlib
import os
import re
import shutil
import tempfile
from collections.abc import Iterable
from pathlib import Path

from layerkit.errors import StagingError

_CHUNK_SIZE = 1024 * 1024


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def stage_file(source: Path, destination: Path, *, mode: int | None = None) -> Path:
    """Copy *source* to *destination* byte-for-byte, creating parent dirs."""
    if not source.is_file():
        raise StagingError(
            "Staged file does not exist.",
            hint="Make sure the file is present before this stage runs.",
            context={"source": str(source), "destination": str(destination)},
        )
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, destination)
    if mode is not None:
        destination.chmod(mode)
    return destination


def copy_tree(
    source: Path,
    destination: Path,
    *,
    exclude: Iterable[Path] = (),
) -> Path:
    """Copy a directory, preserving mtimes, skipping excluded paths."""
    excluded = {path.resolve() for path in exclude}

    def ignore(directory: str, entries: list[str]) -> set[str]:
        base = Path(directory).resolve()
        return {entry for entry in entries if (base / entry).resolve() in excluded}

    shutil.copytree(source, destination, ignore=ignore, symlinks=True, dirs_exist_ok=True)
    return destination


def tree_digest(root: Path) -> str:
    """Hash relative paths, executable bits, symlink targets and file contents."""
    digest = hashlib.sha256()
    for relative in iter_tree(root):
        path = root / relative
        if path.is_symlink():
            digest.update(f"L {relative} {os.readlink(path)}\n".encode())
        elif path.is_dir():
            digest.update(f"D {relative}\n".encode())
        else:
            executable = "x" if os.access(path, os.X_OK) else "-"
            digest.update(f"F {relative} {executable} {file_sha256(path)}\n".encode())
    return digest.hexdigest()


def iter_tree(root: Path) -> list[str]:
    """Return every entry under *root* as sorted POSIX relative paths."""
    entries: list[str] = []
    for current, dirs, files in os.walk(root):
        dirs.sort()
        base = Path(current)
        for name in [*dirs, *sorted(files)]:
            entries.append((base / name).relative_to(root).as_posix())
    return sorted(entries)


def atomic_write_text(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return path


def remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def remove_matching(root: Path, patterns: Iterable[tuple[str, str]]) -> list[Path]:
    """Remove entries whose whole name matches a regex.

    Each pattern is a ``(directory, regex)`` pair relative to *root*; an empty
    directory means *root* itself.
    """
    removed: list[Path] = []
    for directory, regex in patterns:
        parent = root / directory if directory else root
        if not parent.is_dir():
            continue
        compiled = re.compile(regex)
        for candidate in sorted(parent.iterdir()):
            if compiled.fullmatch(candidate.name) is None:
                continue
            remove_path(candidate)
            removed.append(candidate)
    return removed
