"""Exception hierarchy for dotman."""

from __future__ import annotations


class DotmanError(RuntimeError):
    """Base class for every error dotman reports to the user."""


class ManifestError(DotmanError):
    """Raised when the bundle manifest cannot be loaded."""


class ManifestNotFound(ManifestError):
    """The repository root does not exist."""


class ManifestInvalid(ManifestError):
    """The manifest is malformed or references paths outside the repository."""


class StateError(DotmanError):
    """Raised for problems with the persisted install state."""


class StateCorrupt(StateError):
    """The state file exists but cannot be parsed."""


class StateLocked(StateError):
    """Another dotman invocation holds the state lock."""


class StateIOFailure(StateError):
    """Reading, writing or locking the state file failed."""


class ReconcileError(DotmanError):
    """Raised when an entry could not be reconciled."""


class ConflictError(ReconcileError):
    """Applying would overwrite unmanaged or drifted content."""


class ApplyFailure(ReconcileError):
    """A filesystem operation failed while applying an entry."""
