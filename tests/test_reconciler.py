from __future__ import annotations

from pathlib import Path

import pytest

from dotman.config import DEFAULT_MANIFEST_FILENAME, load
from dotman.errors import ApplyFailure, ConflictError, ManifestInvalid
from dotman.filesystem import materialise, symlink_points_to
from dotman.models import ActionKind, ActionOutcome, LinkMode, Plan, PlannedAction, StatusState
from dotman.reconciler import Reconciler
from dotman.state import StateStore


def _write_manifest(root: Path, body: str) -> Path:
    manifest_path = root / DEFAULT_MANIFEST_FILENAME
    manifest_path.write_text(body)
    return manifest_path


def _write_source(root: Path, relative: str, content: str) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def _setup_repo(repo: Path, *, mode: str = "symlink") -> Path:
    source = _write_source(repo, "zsh/.zshrc", "export EDITOR=nvim\n")
    _write_manifest(
        repo,
        f"""
[settings]
default_mode = "{mode}"

[bundles.zsh]
entries = [{{ source = "zsh/.zshrc", target = "~/.zshrc" }}]
""",
    )
    return source


def _kinds(plan) -> list[ActionKind]:
    return [action.kind for action in plan.actions]


def test_first_install_creates_and_records(repo: Path, fake_home: Path) -> None:
    source = _setup_repo(repo)
    manifest = load(repo)
    target = fake_home / ".zshrc"

    with StateStore.open(manifest.settings.state_path) as store:
        reconciler = Reconciler(manifest, store)
        plan = reconciler.plan()
        assert _kinds(plan) == [ActionKind.CREATE]

        report = reconciler.apply(plan)
        assert report.succeeded
        assert [result.outcome for result in report.results] == [ActionOutcome.APPLIED]

    assert symlink_points_to(target, source)
    records = StateStore(manifest.settings.state_path).load()
    assert list(records) == [target.as_posix()]


@pytest.mark.parametrize("mode", ["symlink", "copy"])
def test_second_install_skips_everything(repo: Path, fake_home: Path, mode: str) -> None:
    _setup_repo(repo, mode=mode)
    _write_source(repo, "nvim/init.lua", "vim.o.number = true\n")
    with (repo / DEFAULT_MANIFEST_FILENAME).open("a") as handle:
        handle.write('\n[bundles.nvim]\nentries = [{ source = "nvim/init.lua", target = "~/.config/nvim/init.lua" }]\n')
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        Reconciler(manifest, store).install()

    state_before = manifest.settings.state_path.read_bytes()

    with StateStore.open(manifest.settings.state_path) as store:
        report = Reconciler(manifest, store).install()

    assert [result.action.kind for result in report.results] == [ActionKind.SKIP, ActionKind.SKIP]
    assert manifest.settings.state_path.read_bytes() == state_before


def test_untracked_target_is_never_overwritten(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo)
    target = fake_home / ".zshrc"
    target.write_text("# hand written\n")
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        report = Reconciler(manifest, store).install()
        assert len(store) == 0

    (result,) = report.results
    assert result.outcome is ActionOutcome.CONFLICT
    assert not report.succeeded
    assert not target.is_symlink()
    assert target.read_text() == "# hand written\n"


def test_force_overwrites_conflict_with_backup(repo: Path, fake_home: Path) -> None:
    source = _setup_repo(repo)
    target = fake_home / ".zshrc"
    target.write_text("# hand written\n")
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        report = Reconciler(manifest, store).install(force=True)

    (result,) = report.results
    assert result.action.kind is ActionKind.CONFLICT
    assert result.outcome is ActionOutcome.APPLIED
    assert report.succeeded
    assert symlink_points_to(target, source)

    backups = list(manifest.settings.backup_dir.rglob(".zshrc"))
    assert len(backups) == 1
    assert backups[0].read_text() == "# hand written\n"


def test_identical_untracked_target_is_adopted(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo, mode="copy")
    target = fake_home / ".zshrc"
    target.write_text("export EDITOR=nvim\n")
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        plan = Reconciler(manifest, store).plan()

    assert _kinds(plan) == [ActionKind.CREATE]
    assert "adopting" in (plan.actions[0].details or "")


def test_external_edit_is_reported_as_conflict(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo, mode="copy")
    target = fake_home / ".zshrc"
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        Reconciler(manifest, store).install()

    target.write_text("export EDITOR=nano\n")

    with StateStore.open(manifest.settings.state_path) as store:
        reconciler = Reconciler(manifest, store)
        assert _kinds(reconciler.plan()) == [ActionKind.CONFLICT]
        report = reconciler.install()

    assert report.results[0].outcome is ActionOutcome.CONFLICT
    assert target.read_text() == "export EDITOR=nano\n"


def test_replaced_symlink_is_reported_as_conflict(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo)
    target = fake_home / ".zshrc"
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        Reconciler(manifest, store).install()

    target.unlink()
    target.write_text("export EDITOR=nvim\n")

    with StateStore.open(manifest.settings.state_path) as store:
        assert _kinds(Reconciler(manifest, store).plan()) == [ActionKind.CONFLICT]


@pytest.mark.parametrize("mode", ["symlink", "copy"])
def test_source_change_triggers_update(repo: Path, fake_home: Path, mode: str) -> None:
    source = _setup_repo(repo, mode=mode)
    target = fake_home / ".zshrc"
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        Reconciler(manifest, store).install()
        first = store.get(target)

    source.write_text("export EDITOR=hx\n")

    with StateStore.open(manifest.settings.state_path) as store:
        reconciler = Reconciler(manifest, store)
        assert _kinds(reconciler.plan()) == [ActionKind.UPDATE]
        report = reconciler.install()
        second = store.get(target)

    assert report.succeeded
    assert target.read_text() == "export EDITOR=hx\n"
    assert first is not None and second is not None
    assert second.content_fingerprint != first.content_fingerprint


def test_link_mode_change_triggers_update(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo, mode="symlink")
    target = fake_home / ".zshrc"
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        Reconciler(manifest, store).install()

    _setup_repo(repo, mode="copy")
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        report = Reconciler(manifest, store).install()
        record = store.get(target)

    assert report.results[0].action.kind is ActionKind.UPDATE
    assert not target.is_symlink()
    assert record is not None and record.link_mode is LinkMode.COPY


def test_deleted_target_is_recreated(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo)
    target = fake_home / ".zshrc"
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        Reconciler(manifest, store).install()

    target.unlink()

    with StateStore.open(manifest.settings.state_path) as store:
        report = Reconciler(manifest, store).install()

    assert report.results[0].action.kind is ActionKind.CREATE
    assert target.is_symlink()


def test_partial_failure_keeps_going(repo: Path, fake_home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_source(repo, "shell/.bashrc", "bash\n")
    _write_source(repo, "shell/.profile", "profile\n")
    _write_manifest(
        repo,
        """
[bundles.shell]
entries = [
  { source = "shell/.bashrc", target = "~/locked/.bashrc" },
  { source = "shell/.profile", target = "~/.profile" },
]
""",
    )
    manifest = load(repo)

    def flaky(source: Path, target: Path, mode: LinkMode) -> None:
        if target.parent.name == "locked":
            raise PermissionError(13, "Permission denied", str(target.parent))
        materialise(source, target, mode)

    monkeypatch.setattr("dotman.reconciler.materialise", flaky)

    with StateStore.open(manifest.settings.state_path) as store:
        report = Reconciler(manifest, store).install()

    assert [result.outcome for result in report.results] == [ActionOutcome.FAILED, ActionOutcome.APPLIED]
    assert "Permission denied" in (report.results[0].details or "")
    assert not report.succeeded

    records = StateStore(manifest.settings.state_path).load()
    assert list(records) == [(fake_home / ".profile").as_posix()]


def test_duplicate_target_conflicts(repo: Path, fake_home: Path) -> None:
    _write_source(repo, "zsh/.zshrc", "a\n")
    _write_source(repo, "work/.zshrc", "b\n")
    _write_manifest(
        repo,
        """
[bundles.zsh]
entries = [{ source = "zsh/.zshrc", target = "~/.zshrc" }]

[bundles.work]
entries = [{ source = "work/.zshrc", target = "~/.zshrc" }]
""",
    )
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        report = Reconciler(manifest, store).install(force=True)
        assert len(store) == 1

    assert [(r.action.bundle, r.outcome) for r in report.results] == [
        ("zsh", ActionOutcome.APPLIED),
        ("work", ActionOutcome.CONFLICT),
    ]
    assert "claimed by bundle 'zsh'" in (report.results[1].details or "")
    assert (fake_home / ".zshrc").read_text() == "a\n"


def test_status_reports_orphans(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo)
    _write_source(repo, "git/.gitconfig", "[user]\n")
    with (repo / DEFAULT_MANIFEST_FILENAME).open("a") as handle:
        handle.write('\n[bundles.git]\nentries = [{ source = "git/.gitconfig", target = "~/.gitconfig" }]\n')
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        Reconciler(manifest, store).install()

    _setup_repo(repo)
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        report = Reconciler(manifest, store).status()

    assert [(entry.bundle, entry.state) for entry in report.entries] == [
        ("zsh", StatusState.IN_SYNC),
        ("git", StatusState.ORPHANED),
    ]
    assert not report.needs_attention


def test_uninstall_removes_managed_targets(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo)
    target = fake_home / ".zshrc"
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        Reconciler(manifest, store).install()

    with StateStore.open(manifest.settings.state_path) as store:
        report = Reconciler(manifest, store).uninstall()
        assert len(store) == 0

    assert report.results[0].action.kind is ActionKind.REMOVE
    assert not target.exists() and not target.is_symlink()
    assert (repo / "zsh" / ".zshrc").exists()


def test_uninstall_leaves_drifted_target(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo, mode="copy")
    target = fake_home / ".zshrc"
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        Reconciler(manifest, store).install()

    target.write_text("edited\n")

    with StateStore.open(manifest.settings.state_path) as store:
        report = Reconciler(manifest, store).uninstall()
        assert len(store) == 1

    assert report.results[0].outcome is ActionOutcome.CONFLICT
    assert target.read_text() == "edited\n"


def test_add_registers_and_installs(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo)
    original = fake_home / ".gitconfig"
    original.write_text("[user]\n  name = me\n")
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        result = Reconciler(manifest, store).add("git", original)

    assert result.action.kind is ActionKind.CREATE
    assert result.outcome is ActionOutcome.APPLIED
    repo_copy = repo / "git" / ".gitconfig"
    assert repo_copy.read_text() == "[user]\n  name = me\n"
    assert symlink_points_to(original, repo_copy)

    reloaded = load(repo)
    git = reloaded.find("git")
    assert git is not None
    assert [entry.target_path for entry in git.entries] == [original]

    with StateStore.open(reloaded.settings.state_path) as store:
        assert store.get(original) is not None
        report = Reconciler(reloaded, store).install()

    assert [result.action.kind for result in report.results] == [ActionKind.CREATE, ActionKind.SKIP]


def test_add_reverts_on_conflict(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo)
    original = fake_home / "notes.txt"
    original.write_text("notes\n")
    occupied = fake_home / "elsewhere.txt"
    occupied.write_text("someone else's\n")
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        with pytest.raises(ConflictError):
            Reconciler(manifest, store).add("misc", original, target=occupied)
        assert len(store) == 0

    assert not (repo / "misc" / "notes.txt").exists()
    assert load(repo).find("misc") is None
    assert "misc" not in (repo / DEFAULT_MANIFEST_FILENAME).read_text()
    assert occupied.read_text() == "someone else's\n"


def test_add_rejects_managed_target(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo)
    manifest = load(repo)
    other = fake_home / "zshrc-copy"
    other.write_text("x\n")

    with StateStore.open(manifest.settings.state_path) as store:
        with pytest.raises(ManifestInvalid):
            Reconciler(manifest, store).add("zsh2", other, target=fake_home / ".zshrc")
        with pytest.raises(ManifestInvalid):
            Reconciler(manifest, store).add("zsh2", fake_home / "missing")


def test_add_keeps_original_when_link_fails(repo: Path, fake_home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _setup_repo(repo)
    original = fake_home / ".gitconfig"
    original.write_text("[user]\n  name = me\n")
    manifest = load(repo)
    real_symlink_to = Path.symlink_to

    def failing_symlink_to(self: Path, target, target_is_directory: bool = False) -> None:
        if self.name == ".gitconfig":
            raise OSError(28, "No space left on device")
        real_symlink_to(self, target, target_is_directory)

    monkeypatch.setattr(Path, "symlink_to", failing_symlink_to)

    with StateStore.open(manifest.settings.state_path) as store:
        with pytest.raises(ApplyFailure):
            Reconciler(manifest, store).add("git", original)
        assert len(store) == 0

    assert not original.is_symlink()
    assert original.read_text() == "[user]\n  name = me\n"
    assert not (repo / "git" / ".gitconfig").exists()
    assert load(repo).find("git") is None
    assert not list(fake_home.glob(".gitconfig.dotman-tmp-*"))


def test_add_moves_repo_copy_back_when_original_is_gone(
    repo: Path, fake_home: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _setup_repo(repo)
    original = fake_home / ".gitconfig"
    original.write_text("[user]\n")
    manifest = load(repo)

    def destructive(source: Path, target: Path, mode: LinkMode) -> None:
        target.unlink()
        raise OSError(5, "Input/output error")

    monkeypatch.setattr("dotman.reconciler.materialise", destructive)

    with StateStore.open(manifest.settings.state_path) as store:
        with pytest.raises(ApplyFailure):
            Reconciler(manifest, store).add("git", original)

    assert original.read_text() == "[user]\n"
    assert not (repo / "git" / ".gitconfig").exists()


@pytest.mark.parametrize("bundle", ["../escape", "nested/dir", "..", ""])
def test_add_rejects_bundle_names_outside_repository(repo: Path, fake_home: Path, bundle: str) -> None:
    _setup_repo(repo)
    original = fake_home / ".gitconfig"
    original.write_text("[user]\n")
    manifest = load(repo)

    with StateStore.open(manifest.settings.state_path) as store:
        with pytest.raises(ManifestInvalid):
            Reconciler(manifest, store).add(bundle, original)

    assert not (repo.parent / "escape").exists()
    assert not (repo / "nested").exists()
    assert original.read_text() == "[user]\n"


def test_apply_without_fingerprint_fails_cleanly(repo: Path, fake_home: Path) -> None:
    _setup_repo(repo)
    manifest = load(repo)
    zsh = manifest.find("zsh")
    assert zsh is not None
    plan = Plan(actions=(PlannedAction(bundle="zsh", entry=zsh.entries[0], kind=ActionKind.CREATE),))

    with StateStore.open(manifest.settings.state_path) as store:
        report = Reconciler(manifest, store).apply(plan)
        assert len(store) == 0

    assert report.results[0].outcome is ActionOutcome.FAILED
    assert not (fake_home / ".zshrc").exists()
