"""Plan and apply bundle installs against the state store and filesystem."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Iterable

from .config import Manifest, expand_target
from .errors import ApplyFailure, ConflictError, ManifestInvalid
from .filesystem import (
    backup_path,
    copy_entry,
    ensure_parent,
    exists,
    fingerprint,
    materialise,
    remove_path,
    symlink_points_to,
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
from .state import StateStore

logger = logging.getLogger(__name__)

_STATUS_FOR_KIND = {
    ActionKind.CREATE: StatusState.PENDING_CREATE,
    ActionKind.UPDATE: StatusState.PENDING_UPDATE,
    ActionKind.SKIP: StatusState.IN_SYNC,
    ActionKind.CONFLICT: StatusState.CONFLICT,
}


class Reconciler:
    """Computes the minimal set of actions bringing targets in line with the manifest."""

    def __init__(self, manifest: Manifest, store: StateStore, *, backup_dir: Path | None = None) -> None:
        self.manifest = manifest
        self.store = store
        self.backup_dir = backup_dir or manifest.settings.backup_dir
        self._backup_root: Path | None = None

    @property
    def root(self) -> Path:
        return self.manifest.root

    def plan(self, bundles: Iterable[str] | None = None) -> Plan:
        """Classify every entry of the selected bundles without touching anything."""

        claimed: dict[str, str] = {}
        actions: list[PlannedAction] = []
        for bundle in self.manifest.select(bundles):
            for entry in bundle.entries:
                actions.append(self._plan_entry(bundle, entry, claimed))
        return Plan(actions=tuple(actions))

    def apply(self, plan: Plan, *, force: bool = False) -> ApplyReport:
        """Carry out ``plan``. One failing entry never stops the others."""

        results = [self._apply_action(action, force=force) for action in plan.actions]
        return ApplyReport(results=tuple(results))

    def install(self, bundles: Iterable[str] | None = None, *, force: bool = False) -> ApplyReport:
        return self.apply(self.plan(bundles), force=force)

    def status(self, bundles: Iterable[str] | None = None) -> StatusReport:
        selected = None if bundles is None else list(bundles)
        plan = self.plan(selected)
        entries = [
            StatusEntry(
                bundle=action.bundle,
                target_path=action.entry.target_key(),
                state=_STATUS_FOR_KIND[action.kind],
                details=action.details,
            )
            for action in plan.actions
        ]

        declared = {entry.target_key() for bundle in self.manifest.bundles for entry in bundle.entries}
        for record in sorted(self.store.records(), key=lambda item: item.target_path):
            if record.target_path in declared:
                continue
            if selected is not None and record.bundle not in selected:
                continue
            entries.append(
                StatusEntry(
                    bundle=record.bundle or "?",
                    target_path=record.target_path,
                    state=StatusState.ORPHANED,
                    details="Installed by dotman but no longer declared in the manifest",
                )
            )

        return StatusReport(entries=tuple(entries))

    def uninstall(self, bundles: Iterable[str] | None = None, *, force: bool = False) -> ApplyReport:
        """Remove installed targets that still match what dotman put there."""

        results: list[ApplyResult] = []
        for bundle in self.manifest.select(bundles):
            for entry in bundle.entries:
                results.append(self._uninstall_entry(bundle, entry, force=force))
        return ApplyReport(results=tuple(results))

    def add(
        self,
        bundle: str,
        path: Path,
        *,
        mode: LinkMode | None = None,
        target: Path | None = None,
        force: bool = False,
    ) -> ApplyResult:
        """Copy ``path`` into ``bundle``, register it and install it right away.

        If the install does not succeed the manifest change and the copied source
        are reverted before the error propagates.
        """

        if not bundle.strip() or bundle in {".", ".."} or Path(bundle).name != bundle:
            raise ManifestInvalid(f"Invalid bundle name '{bundle}': it must be a single directory name")

        original = expand_target(path, base_dir=Path.cwd())
        if not exists(original):
            raise ManifestInvalid(f"Cannot add '{original}': path does not exist")
        if original.resolve(strict=False).is_relative_to(self.root.resolve(strict=False)):
            raise ManifestInvalid(f"Cannot add '{original}': it already lives inside '{self.root}'")

        target_path = expand_target(target, base_dir=Path.cwd()) if target else original
        for existing in self.manifest.bundles:
            for entry in existing.entries:
                if entry.target_path == target_path:
                    raise ManifestInvalid(f"Target '{target_path}' is already managed by bundle '{existing.name}'")

        source_rel = Path(bundle) / original.name
        source_abs = self.root / source_rel
        if exists(source_abs):
            raise ManifestInvalid(f"Bundle '{bundle}' already contains '{source_rel}'")

        try:
            copy_entry(original, source_abs)
        except OSError as exc:
            raise ApplyFailure(f"[{bundle}] unable to copy '{original}' into the repository: {exc}") from exc

        try:
            entry = self.manifest.add_entry(bundle, source_rel, target_path, mode)
        except BaseException:
            remove_path(source_abs)
            raise

        try:
            action = self._plan_entry(Bundle(name=bundle, entries=(entry,)), entry, {})
            result = self._apply_action(action, force=force)
        except BaseException:
            self._revert_add(bundle, entry, source_abs, original)
            raise

        if result.outcome is ActionOutcome.CONFLICT:
            self._revert_add(bundle, entry, source_abs, original)
            raise ConflictError(f"[{bundle}] {entry.target_path}: {result.details}")
        if result.outcome is ActionOutcome.FAILED:
            self._revert_add(bundle, entry, source_abs, original)
            raise ApplyFailure(f"[{bundle}] {entry.target_path}: {result.details}")
        return result

    # ------------------------------------------------------------------
    # Internal helpers

    def _plan_entry(self, bundle: Bundle, entry: Entry, claimed: dict[str, str]) -> PlannedAction:
        key = entry.target_key()
        if key in claimed:
            return PlannedAction(
                bundle=bundle.name,
                entry=entry,
                kind=ActionKind.CONFLICT,
                details=f"Target already claimed by bundle '{claimed[key]}'",
            )
        claimed[key] = bundle.name

        source = entry.source(self.root)
        try:
            desired = fingerprint(source)
        except OSError as exc:
            return PlannedAction(
                bundle=bundle.name,
                entry=entry,
                kind=ActionKind.CONFLICT,
                details=f"Unable to read source '{entry.source_path}': {exc.strerror or exc}",
            )

        def planned(kind: ActionKind, details: str | None = None) -> PlannedAction:
            return PlannedAction(bundle=bundle.name, entry=entry, kind=kind, fingerprint=desired, details=details)

        record = self.store.get(key)
        target = entry.target_path

        if record is None:
            if not exists(target):
                return planned(ActionKind.CREATE)
            if self._is_equivalent(entry, source, desired):
                return planned(ActionKind.CREATE, "Target already matches the source; adopting it")
            return planned(ActionKind.CONFLICT, "Target exists and is not managed by dotman")

        if not exists(target):
            return planned(ActionKind.CREATE, "Target missing; reinstalling")
        if not self._live_matches(entry, record):
            return planned(ActionKind.CONFLICT, "Target changed outside dotman since the last install")
        if record.content_fingerprint != desired:
            return planned(ActionKind.UPDATE, "Source changed since the last install")
        if record.link_mode is not entry.link_mode:
            return planned(ActionKind.UPDATE, f"Link mode changed to {entry.link_mode.value}")
        return planned(ActionKind.SKIP)

    def _is_equivalent(self, entry: Entry, source: Path, desired: str) -> bool:
        target = entry.target_path
        if entry.link_mode is LinkMode.SYMLINK and symlink_points_to(target, source):
            return True
        # a plain file or directory holding exactly the source content can be replaced losslessly
        if target.is_symlink():
            return False
        try:
            return fingerprint(target) == desired
        except OSError:
            return False

    def _live_matches(self, entry: Entry, record: InstalledRecord) -> bool:
        target = entry.target_path
        if record.link_mode is LinkMode.SYMLINK:
            recorded_source = Path(record.source_path) if record.source_path else entry.source_path
            return symlink_points_to(target, self.root / recorded_source)
        if target.is_symlink():
            return False
        try:
            return fingerprint(target) == record.content_fingerprint
        except OSError:
            return False

    def _apply_action(self, action: PlannedAction, *, force: bool) -> ApplyResult:
        entry = action.entry
        label = f"[{action.bundle}] {entry.target_path}"

        if action.kind is ActionKind.SKIP:
            logger.debug("%s: up to date", label)
            return ApplyResult(action=action, outcome=ActionOutcome.SKIPPED)

        details = action.details
        if action.kind is ActionKind.CONFLICT:
            if not force or action.fingerprint is None:
                logger.warning("%s: conflict: %s", label, action.details)
                return ApplyResult(action=action, outcome=ActionOutcome.CONFLICT, details=action.details)
            try:
                backup = self._backup(entry.target_path)
            except OSError as exc:
                logger.error("%s: unable to back up before overwriting: %s", label, exc)
                return ApplyResult(action=action, outcome=ActionOutcome.FAILED, details=str(exc))
            logger.warning("%s: overwriting (%s); previous content saved to %s", label, action.details, backup)
            details = f"Overwritten; backup at {backup}" if backup else "Overwritten"

        if action.fingerprint is None:
            logger.error("%s: no source fingerprint to record; not applying", label)
            return ApplyResult(action=action, outcome=ActionOutcome.FAILED, details="Source fingerprint unavailable")

        try:
            materialise(entry.source(self.root), entry.target_path, entry.link_mode)
        except OSError as exc:
            logger.error("%s: %s failed: %s", label, action.kind.value, exc)
            return ApplyResult(action=action, outcome=ActionOutcome.FAILED, details=str(exc))

        self.store.record(entry, action.fingerprint, bundle=action.bundle)
        logger.info("%s: %s (%s)", label, action.kind.value, entry.link_mode.value)
        return ApplyResult(action=action, outcome=ActionOutcome.APPLIED, details=details)

    def _uninstall_entry(self, bundle: Bundle, entry: Entry, *, force: bool) -> ApplyResult:
        label = f"[{bundle.name}] {entry.target_path}"
        record = self.store.get(entry.target_key())

        def result(kind: ActionKind, outcome: ActionOutcome, details: str | None = None) -> ApplyResult:
            action = PlannedAction(bundle=bundle.name, entry=entry, kind=kind, details=details)
            return ApplyResult(action=action, outcome=outcome, details=details)

        if record is None:
            return result(ActionKind.SKIP, ActionOutcome.SKIPPED, "Not installed")

        target = entry.target_path
        details = None
        try:
            if not exists(target):
                details = "Target already absent"
            elif self._live_matches(entry, record):
                remove_path(target)
            elif force:
                backup = self._backup(target)
                logger.warning("%s: removing drifted target; previous content saved to %s", label, backup)
                details = f"Backup at {backup}"
            else:
                logger.warning("%s: target changed outside dotman; leaving it in place", label)
                return result(ActionKind.CONFLICT, ActionOutcome.CONFLICT, "Target changed outside dotman")
        except OSError as exc:
            logger.error("%s: remove failed: %s", label, exc)
            return result(ActionKind.REMOVE, ActionOutcome.FAILED, str(exc))

        self.store.remove(entry.target_key())
        logger.info("%s: removed", label)
        return result(ActionKind.REMOVE, ActionOutcome.APPLIED, details)

    def _backup(self, path: Path) -> Path | None:
        if not exists(path):
            return None
        if self._backup_root is None:
            self._backup_root = self.backup_dir / datetime.now().strftime("%Y%m%d_%H%M%S")
        return backup_path(path, self._backup_root)

    def _revert_add(self, bundle: str, entry: Entry, source: Path, original: Path) -> None:
        self.store.remove(entry.target_key())
        self.manifest.remove_entry(bundle, entry.target_path)

        # the repository copy is dropped only while the original still holds its own content
        if symlink_points_to(original, source):
            original.unlink()
        if exists(original):
            remove_path(source)
        else:
            ensure_parent(original)
            shutil.move(str(source), str(original))
            logger.warning("[%s] moved %s back to %s", bundle, entry.source_path, original)
        logger.info("[%s] reverted registration of %s", bundle, entry.source_path)
