"""Shared models and enums for dotman."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path


class LinkMode(str, Enum):
    """How an entry is materialised at its target."""

    COPY = "copy"
    SYMLINK = "symlink"


class EntryType(str, Enum):
    """Kinds of paths dotman can fingerprint."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"


@dataclass(frozen=True, slots=True)
class Entry:
    """One source-to-target mapping inside a bundle."""

    source_path: Path
    target_path: Path
    link_mode: LinkMode = LinkMode.SYMLINK

    def source(self, root: Path) -> Path:
        return root / self.source_path

    def target_key(self) -> str:
        return self.target_path.as_posix()


@dataclass(frozen=True, slots=True)
class Bundle:
    """Named group of entries, kept in declaration order."""

    name: str
    entries: tuple[Entry, ...]


@dataclass(frozen=True, slots=True)
class InstalledRecord:
    """Persisted state for an installed entry."""

    target_path: str
    content_fingerprint: str
    installed_at: datetime
    link_mode: LinkMode
    bundle: str | None = None
    source_path: str | None = None


class ActionKind(str, Enum):
    """Planned action for an entry."""

    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    CONFLICT = "conflict"
    # only produced by uninstall
    REMOVE = "remove"


@dataclass(frozen=True, slots=True)
class PlannedAction:
    bundle: str
    entry: Entry
    kind: ActionKind
    fingerprint: str | None = None
    details: str | None = None


@dataclass(frozen=True, slots=True)
class Plan:
    """Actions computed for one invocation. Never persisted."""

    actions: tuple[PlannedAction, ...]

    def counts(self) -> dict[ActionKind, int]:
        counter = Counter(action.kind for action in self.actions)
        return {kind: counter.get(kind, 0) for kind in ActionKind}

    def conflicts(self) -> list[PlannedAction]:
        return [action for action in self.actions if action.kind is ActionKind.CONFLICT]

    def pending(self) -> list[PlannedAction]:
        return [action for action in self.actions if action.kind in (ActionKind.CREATE, ActionKind.UPDATE)]

    @property
    def is_clean(self) -> bool:
        return all(action.kind is ActionKind.SKIP for action in self.actions)


class ActionOutcome(str, Enum):
    """What actually happened to an entry during apply."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ApplyResult:
    action: PlannedAction
    outcome: ActionOutcome
    details: str | None = None


@dataclass(frozen=True, slots=True)
class ApplyReport:
    """Ordered results of applying a plan."""

    results: tuple[ApplyResult, ...]

    def failures(self) -> list[ApplyResult]:
        return [
            result for result in self.results if result.outcome in (ActionOutcome.CONFLICT, ActionOutcome.FAILED)
        ]

    @property
    def succeeded(self) -> bool:
        return not self.failures()


class StatusState(str, Enum):
    """States reported by ``dotman status``."""

    IN_SYNC = "in_sync"
    PENDING_CREATE = "pending_create"
    PENDING_UPDATE = "pending_update"
    CONFLICT = "conflict"
    ORPHANED = "orphaned"


@dataclass(frozen=True, slots=True)
class StatusEntry:
    bundle: str
    target_path: str
    state: StatusState
    details: str | None = None


@dataclass(frozen=True, slots=True)
class StatusReport:
    entries: tuple[StatusEntry, ...]

    @property
    def needs_attention(self) -> bool:
        """True when something is pending or conflicting; orphans alone do not count."""

        return any(entry.state in _ATTENTION_STATES for entry in self.entries)


_ATTENTION_STATES = frozenset({StatusState.PENDING_CREATE, StatusState.PENDING_UPDATE, StatusState.CONFLICT})
