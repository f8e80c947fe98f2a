"""Core package for the dotman project."""

from .cli import app, run
from .config import Manifest, Settings, load
from .errors import (
    ApplyFailure,
    ConflictError,
    DotmanError,
    ManifestError,
    ManifestInvalid,
    ManifestNotFound,
    ReconcileError,
    StateCorrupt,
    StateError,
    StateIOFailure,
    StateLocked,
)
from .models import (
    ActionKind,
    ActionOutcome,
    ApplyReport,
    ApplyResult,
    Bundle,
    Entry,
    InstalledRecord,
    LinkMode,
    Plan,
    PlannedAction,
    StatusEntry,
    StatusReport,
    StatusState,
)
from .reconciler import Reconciler
from .state import StateStore

__all__ = [
    "Manifest",
    "Settings",
    "load",
    "Reconciler",
    "StateStore",
    "DotmanError",
    "ManifestError",
    "ManifestInvalid",
    "ManifestNotFound",
    "StateError",
    "StateCorrupt",
    "StateLocked",
    "StateIOFailure",
    "ReconcileError",
    "ConflictError",
    "ApplyFailure",
    "ActionKind",
    "ActionOutcome",
    "ApplyReport",
    "ApplyResult",
    "Bundle",
    "Entry",
    "InstalledRecord",
    "LinkMode",
    "Plan",
    "PlannedAction",
    "StatusEntry",
    "StatusReport",
    "StatusState",
    "app",
    "run",
]
