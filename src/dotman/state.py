"""Persisted install state for dotman."""

from __future__ import annotations

import fcntl
import logging
import os
import tomllib
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from tomli_w import dumps as toml_dumps

from .errors import StateCorrupt, StateIOFailure, StateLocked
from .filesystem import atomic_write_bytes, ensure_parent
from .models import Entry, InstalledRecord, LinkMode

STATE_VERSION = 1

logger = logging.getLogger(__name__)


class StateStore:
    """Tracks which targets dotman has installed, keyed by target path.

    Use :meth:`open` to obtain a locked store; changes are written back when the
    ``with`` block exits, whether it exits normally or through an exception.
    """

    def __init__(self, path: Path, records: dict[str, InstalledRecord] | None = None) -> None:
        self.path = path
        self._records: dict[str, InstalledRecord] = records or {}
        self._dirty = False
        self.warnings: list[str] = []

    @classmethod
    @contextmanager
    def open(cls, path: Path, *, recover: bool = False) -> Iterator["StateStore"]:
        """Lock, load and yield the store at ``path``; flush and unlock on exit.

        With ``recover`` a corrupt state file is set aside and the store starts
        empty; otherwise :class:`StateCorrupt` propagates.
        """

        lock_handle = _acquire_lock(path.with_name(path.name + ".lock"))
        try:
            store = cls(path)
            try:
                store._records = store.load()
            except StateCorrupt as exc:
                if not recover:
                    raise
                moved = store._quarantine()
                message = f"{exc}; starting from an empty state (previous file kept at '{moved}')"
                logger.warning(message)
                store.warnings.append(message)
                store._dirty = True
            try:
                yield store
            finally:
                store.flush()
        finally:
            _release_lock(lock_handle)

    def load(self) -> dict[str, InstalledRecord]:
        """Deserialize the state file; a missing file is an empty state."""

        if not self.path.exists():
            return {}

        try:
            with self.path.open("rb") as handle:
                data = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:
            raise StateCorrupt(f"State file '{self.path}' cannot be parsed: {exc}") from exc
        except OSError as exc:
            raise StateIOFailure(f"Unable to read state file '{self.path}': {exc}") from exc

        records: dict[str, InstalledRecord] = {}
        raw_records = data.get("records", [])
        if not isinstance(raw_records, list):
            raise StateCorrupt(f"State file '{self.path}' has a malformed 'records' table")
        for item in raw_records:
            record = _record_from_dict(item, self.path)
            records[record.target_path] = record
        return records

    def get(self, target_path: Path | str) -> InstalledRecord | None:
        return self._records.get(_key(target_path))

    def records(self) -> Iterable[InstalledRecord]:
        return self._records.values()

    def __len__(self) -> int:
        return len(self._records)

    def record(self, entry: Entry, fingerprint: str, *, bundle: str | None = None) -> InstalledRecord:
        """Upsert the record for ``entry`` and schedule a write."""

        record = InstalledRecord(
            target_path=entry.target_key(),
            content_fingerprint=fingerprint,
            installed_at=datetime.now(timezone.utc),
            link_mode=entry.link_mode,
            bundle=bundle,
            source_path=entry.source_path.as_posix(),
        )
        self._records[record.target_path] = record
        self._dirty = True
        return record

    def remove(self, target_path: Path | str) -> None:
        if self._records.pop(_key(target_path), None) is not None:
            self._dirty = True

    def flush(self) -> None:
        """Write pending changes atomically. No-op when nothing changed."""

        if not self._dirty:
            return

        ordered = sorted(self._records.values(), key=lambda record: record.target_path)
        payload = {
            "version": STATE_VERSION,
            "records": [_record_to_dict(record) for record in ordered],
        }
        try:
            atomic_write_bytes(self.path, toml_dumps(payload).encode())
        except OSError as exc:
            raise StateIOFailure(f"Unable to write state file '{self.path}': {exc}") from exc
        self._dirty = False
        logger.debug("wrote %d record(s) to %s", len(self._records), self.path)

    def _quarantine(self) -> Path:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        destination = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            os.replace(self.path, destination)
        except OSError as exc:
            raise StateIOFailure(f"Unable to move corrupt state file '{self.path}' aside: {exc}") from exc
        return destination


def _key(target_path: Path | str) -> str:
    return Path(target_path).as_posix()


def _acquire_lock(lock_path: Path):
    try:
        ensure_parent(lock_path)
        handle = lock_path.open("a+")
    except OSError as exc:
        raise StateIOFailure(f"Unable to open lock file '{lock_path}': {exc}") from exc

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as exc:
        handle.close()
        raise StateLocked(f"State '{lock_path}' is locked by another dotman process") from exc
    except OSError as exc:
        handle.close()
        raise StateIOFailure(f"Unable to lock '{lock_path}': {exc}") from exc
    return handle


def _release_lock(handle) -> None:
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


def _record_from_dict(item: Any, source: Path) -> InstalledRecord:
    if not isinstance(item, dict):
        raise StateCorrupt(f"State file '{source}' contains a malformed record")
    try:
        installed_at = item["installed_at"]
        if isinstance(installed_at, str):
            installed_at = datetime.fromisoformat(installed_at)
        if not isinstance(installed_at, datetime):
            raise TypeError(f"installed_at must be a datetime, got {type(installed_at).__name__}")
        return InstalledRecord(
            target_path=str(item["target_path"]),
            content_fingerprint=str(item["content_fingerprint"]),
            installed_at=installed_at,
            link_mode=LinkMode(item["link_mode"]),
            bundle=item.get("bundle"),
            source_path=item.get("source_path"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise StateCorrupt(f"State file '{source}' contains an invalid record: {exc}") from exc


def _record_to_dict(record: InstalledRecord) -> dict[str, object]:
    payload: dict[str, object] = {
        "target_path": record.target_path,
        "content_fingerprint": record.content_fingerprint,
        "installed_at": record.installed_at,
        "link_mode": record.link_mode.value,
    }
    if record.bundle is not None:
        payload["bundle"] = record.bundle
    if record.source_path is not None:
        payload["source_path"] = record.source_path
    return payload
