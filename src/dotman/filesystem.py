"""Filesystem helpers for dotman."""

from __future__ import annotations

import os
import shutil
import tempfile
from hashlib import blake2b
from pathlib import Path

from .models import EntryType, LinkMode


def ensure_parent(path: Path) -> None:
    """Ensure the parent directory exists."""

    path.parent.mkdir(parents=True, exist_ok=True)


def exists(path: Path) -> bool:
    """Return ``True`` for existing paths and dangling symlinks alike."""

    return path.exists() or path.is_symlink()


def detect_entry_type(path: Path) -> EntryType:
    """Determine the ``EntryType`` for ``path``."""

    if path.is_symlink():
        return EntryType.SYMLINK
    if path.is_dir():
        return EntryType.DIRECTORY
    return EntryType.FILE


def fingerprint(path: Path) -> str:
    """Return a BLAKE2 hash of the content reachable through ``path``.

    Symlinks are followed, so a target linked to a source fingerprints the same
    as the source itself. Directories are hashed by relative name and content
    of every file below them.
    """

    hasher = blake2b(digest_size=32)

    if not path.is_dir():
        hasher.update(EntryType.FILE.value.encode())
        _update_hash_with_file(hasher, path)
        return hasher.hexdigest()

    hasher.update(EntryType.DIRECTORY.value.encode())
    for child in _iter_directory(path):
        rel = child.relative_to(path).as_posix().encode()
        child_type = detect_entry_type(child)
        hasher.update(child_type.value.encode())
        hasher.update(b"\0")
        hasher.update(rel)
        hasher.update(b"\0")
        if child_type == EntryType.FILE:
            _update_hash_with_file(hasher, child)
        elif child_type == EntryType.SYMLINK:
            hasher.update(os.readlink(child).encode())

    return hasher.hexdigest()


def _update_hash_with_file(hasher, path: Path) -> None:
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            hasher.update(chunk)


def _iter_directory(path: Path) -> list[Path]:
    entries: list[Path] = []
    for child in path.iterdir():
        entries.append(child)
        if child.is_dir() and not child.is_symlink():
            entries.extend(_iter_directory(child))
    return sorted(entries)


def copy_entry(source: Path, destination: Path) -> None:
    """Copy ``source`` over ``destination`` preserving metadata.

    Files are staged next to the destination and moved into place so a reader
    never observes a half-written target.
    """

    ensure_parent(destination)

    if source.is_dir():
        staging = _staging_dir(destination)
        try:
            staged = staging / destination.name
            shutil.copytree(source, staged, symlinks=True, copy_function=shutil.copy2)
            _swap_into_place(staged, destination)
        finally:
            remove_path(staging)
        return

    fd, temp_name = tempfile.mkstemp(prefix=f".{destination.name}.dotman-tmp-", dir=destination.parent)
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        shutil.copy2(source, temp_path)
        _swap_into_place(temp_path, destination)
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise


def ensure_symlink(link: Path, target: Path) -> bool:
    """Ensure ``link`` is a symlink to ``target``.

    The new link is created under a temporary name and renamed over ``link``,
    so whatever was there survives a failed attempt. Returns ``True`` if a
    change was made.
    """

    if symlink_points_to(link, target):
        return False

    ensure_parent(link)
    staging = _staging_dir(link)
    try:
        staged = staging / link.name
        staged.symlink_to(target)
        _swap_into_place(staged, link)
    finally:
        remove_path(staging)
    return True


def _staging_dir(destination: Path) -> Path:
    return Path(tempfile.mkdtemp(prefix=f".{destination.name}.dotman-tmp-", dir=destination.parent))


def _is_real_dir(path: Path) -> bool:
    return path.is_dir() and not path.is_symlink()


def _swap_into_place(staged: Path, destination: Path) -> None:
    """Rename ``staged`` over ``destination``.

    A rename cannot replace a directory or put one over a file, so in those
    cases the old ``destination`` is moved aside first and deleted only once
    ``staged`` is in place. On failure it is moved back.
    """

    if not exists(destination) or not (_is_real_dir(destination) or _is_real_dir(staged)):
        os.replace(staged, destination)
        return

    aside_dir = _staging_dir(destination)
    aside = aside_dir / destination.name
    os.rename(destination, aside)
    try:
        os.replace(staged, destination)
    except BaseException:
        os.rename(aside, destination)
        aside_dir.rmdir()
        raise
    remove_path(aside_dir)


def symlink_points_to(link: Path, target: Path) -> bool:
    """Return ``True`` if ``link`` is a symlink resolving to ``target``."""

    if not link.is_symlink():
        return False
    current = Path(os.readlink(link))
    current_resolved = (link.parent / current).resolve(strict=False)
    return current_resolved == target.resolve(strict=False)


def materialise(source: Path, target: Path, mode: LinkMode) -> None:
    """Install ``source`` at ``target`` using ``mode``."""

    if mode is LinkMode.SYMLINK:
        ensure_symlink(target, source)
    else:
        copy_entry(source, target)


def remove_path(path: Path) -> None:
    """Delete ``path`` whether it is a file, directory, or symlink."""

    if not exists(path):
        return
    if path.is_symlink() or path.is_file():
        path.unlink()
        return
    shutil.rmtree(path)


def backup_path(path: Path, backup_root: Path) -> Path:
    """Move ``path`` under ``backup_root`` keeping its absolute layout.

    Returns the location of the backup. Existing backups are never replaced.
    """

    relative = Path(*path.parts[1:]) if path.is_absolute() else path
    destination = backup_root / relative
    counter = 1
    while exists(destination):
        counter += 1
        destination = backup_root / relative.with_name(f"{relative.name}.{counter}")

    ensure_parent(destination)
    shutil.move(str(path), str(destination))
    return destination


def atomic_write_bytes(path: Path, payload: bytes) -> None:
    """Replace ``path`` with ``payload`` in a single rename."""

    ensure_parent(path)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.dotman-tmp-", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
