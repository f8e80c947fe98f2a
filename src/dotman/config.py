"""Bundle manifest loading for dotman."""

from __future__ import annotations

import copy
import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tomli_w import dumps as toml_dumps

from .errors import ManifestInvalid, ManifestNotFound
from .filesystem import atomic_write_bytes
from .models import Bundle, Entry, LinkMode

DEFAULT_MANIFEST_FILENAME = "dotman.toml"
DEFAULT_ROOT = "~/dotfiles"
DEFAULT_BACKUP_DIR = "~/.dotfiles_backup"

# Bundles whose scanned files live under ~/.config/<bundle> instead of ~.
XDG_CONFIG_BUNDLES = frozenset({"nvim", "zellij"})
IGNORED_NAMES = frozenset({".git", ".DS_Store", DEFAULT_MANIFEST_FILENAME})

logger = logging.getLogger(__name__)


def _expand_path(raw: str | os.PathLike[str] | Path, *, base_dir: Path) -> Path:
    """Return an absolute ``Path`` by expanding env vars and user segments."""

    text = str(raw)
    expanded = Path(os.path.expandvars(text)).expanduser()
    if expanded.is_absolute():
        return expanded.resolve(strict=False)
    return (base_dir / expanded).resolve(strict=False)


def expand_target(raw: str | os.PathLike[str] | Path, *, base_dir: Path) -> Path:
    """Like ``_expand_path`` but never follows a symlink at the final component."""

    expanded = Path(os.path.expandvars(str(raw))).expanduser()
    if not expanded.is_absolute():
        expanded = base_dir / expanded
    expanded = Path(os.path.normpath(expanded))
    return expanded.parent.resolve(strict=False) / expanded.name


def _collapse_home(path: Path) -> str:
    home = Path.home().resolve(strict=False)
    try:
        return "~/" + path.relative_to(home).as_posix()
    except ValueError:
        return path.as_posix()


def default_root() -> Path:
    raw = os.environ.get("DOTMAN_ROOT", DEFAULT_ROOT)
    return _expand_path(raw, base_dir=Path.cwd())


def default_state_path() -> Path:
    state_home = os.environ.get("XDG_STATE_HOME")
    if state_home:
        return _expand_path(state_home, base_dir=Path.home()) / "dotman" / "state.toml"
    return Path.home().resolve(strict=False) / ".local" / "state" / "dotman" / "state.toml"


class Settings(BaseModel):
    """Repository-wide options."""

    model_config = ConfigDict(frozen=True)

    root: Path
    state_path: Path
    backup_dir: Path
    default_mode: LinkMode = LinkMode.SYMLINK

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, root: Path) -> "Settings":
        env_state = os.environ.get("DOTMAN_STATE")
        if env_state:
            state = _expand_path(env_state, base_dir=Path.cwd())
        elif raw.get("state_path") is not None:
            state = _expand_path(raw["state_path"], base_dir=root)
        else:
            state = default_state_path()

        backup = _expand_path(raw.get("backup_dir", DEFAULT_BACKUP_DIR), base_dir=root)
        try:
            mode = LinkMode(raw.get("default_mode", LinkMode.SYMLINK.value))
        except ValueError as exc:
            raise ManifestInvalid(f"Unknown default_mode '{raw.get('default_mode')}'") from exc

        return cls(root=root, state_path=state, backup_dir=backup, default_mode=mode)


class EntryConfig(BaseModel):
    """Raw ``{ source, target, mode }`` table from the manifest."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    source: str
    target: str
    mode: LinkMode | None = None


class BundleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    entries: list[EntryConfig] = Field(default_factory=list)


class ManifestFile(BaseModel):
    """Schema of ``dotman.toml``."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    settings: dict[str, Any] = Field(default_factory=dict)
    bundles: dict[str, BundleConfig] = Field(default_factory=dict)


class Manifest:
    """The set of bundles declared under a repository root."""

    def __init__(
        self,
        root: Path,
        settings: Settings,
        bundles: Iterable[Bundle],
        *,
        raw: dict[str, Any],
        declared: bool,
    ) -> None:
        self.root = root
        self.settings = settings
        self._bundles: tuple[Bundle, ...] = tuple(bundles)
        self._raw = raw
        self.declared = declared

    @property
    def path(self) -> Path:
        return self.root / DEFAULT_MANIFEST_FILENAME

    @property
    def bundles(self) -> tuple[Bundle, ...]:
        return self._bundles

    def names(self) -> list[str]:
        return [bundle.name for bundle in self._bundles]

    def find(self, name: str) -> Bundle | None:
        for bundle in self._bundles:
            if bundle.name == name:
                return bundle
        return None

    def select(self, names: Iterable[str] | None) -> list[Bundle]:
        if names is None:
            return list(self._bundles)

        selected: list[Bundle] = []
        for name in names:
            bundle = self.find(name)
            if bundle is None:
                raise ManifestInvalid(f"Unknown bundle '{name}'")
            selected.append(bundle)
        return selected

    def add_entry(self, bundle: str, source: Path, target: Path, mode: LinkMode | None = None) -> Entry:
        """Register a new entry and persist the manifest file.

        ``source`` is relative to the repository root. When the repository was
        scanned rather than declared, the scanned bundles are written out too so
        they keep working once ``dotman.toml`` exists.
        """

        raw = copy.deepcopy(self._raw)
        entries = raw.setdefault("bundles", {}).setdefault(bundle, {}).setdefault("entries", [])
        item: dict[str, str] = {"source": Path(source).as_posix(), "target": _collapse_home(target)}
        if mode is not None:
            item["mode"] = mode.value
        entries.append(item)

        bundles = _build_bundles(raw, self.root, self.settings)
        new_entry = next(b for b in bundles if b.name == bundle).entries[-1]
        self._save(raw)
        self._raw = raw
        self._bundles = bundles
        self.declared = True
        logger.info("registered %s -> %s in bundle '%s'", new_entry.source_path, new_entry.target_path, bundle)
        return new_entry

    def remove_entry(self, bundle: str, target: Path) -> None:
        """Drop the entry of ``bundle`` targeting ``target``; no error if absent."""

        raw = copy.deepcopy(self._raw)
        bundle_raw = raw.get("bundles", {}).get(bundle)
        if bundle_raw is None:
            return

        wanted = Path(target)
        bundle_raw["entries"] = [
            item
            for item in bundle_raw.get("entries", [])
            if expand_target(item["target"], base_dir=Path.home()) != wanted
        ]
        if not bundle_raw["entries"]:
            del raw["bundles"][bundle]

        self._bundles = _build_bundles(raw, self.root, self.settings)
        self._save(raw)
        self._raw = raw

    def _save(self, raw: dict[str, Any]) -> None:
        payload = "# dotman manifest\n\n" + toml_dumps(raw)
        atomic_write_bytes(self.path, payload.encode())


def load(root_dir: Path | str) -> Manifest:
    """Load the bundles declared (or laid out) under ``root_dir``."""

    root = Path(root_dir).expanduser().resolve(strict=False)
    if not root.is_dir():
        raise ManifestNotFound(f"Dotfiles repository '{root}' does not exist")

    manifest_path = root / DEFAULT_MANIFEST_FILENAME
    if manifest_path.exists():
        try:
            with manifest_path.open("rb") as handle:
                raw = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:
            raise ManifestInvalid(f"Failed to parse '{manifest_path}': {exc}") from exc
        declared = True
    else:
        raw = {"bundles": _scan_bundles(root)}
        declared = False
        logger.debug("no %s in %s; scanned %d bundle(s)", DEFAULT_MANIFEST_FILENAME, root, len(raw["bundles"]))

    settings_raw = raw.get("settings") or {}
    if not isinstance(settings_raw, dict):
        raise ManifestInvalid(f"'settings' in '{manifest_path}' must be a table")
    settings = Settings.from_raw(settings_raw, root=root)
    bundles = _build_bundles(raw, root, settings)
    return Manifest(root, settings, bundles, raw=raw, declared=declared)


def _build_bundles(raw: Mapping[str, Any], root: Path, settings: Settings) -> tuple[Bundle, ...]:
    try:
        parsed = ManifestFile.model_validate(raw)
    except ValidationError as exc:
        raise ManifestInvalid(f"Invalid manifest in '{root}': {exc}") from exc

    home = Path.home().resolve(strict=False)
    bundles: list[Bundle] = []
    for name, body in parsed.bundles.items():
        entries = tuple(_build_entry(name, item, root, home, settings) for item in body.entries)
        bundles.append(Bundle(name=name, entries=entries))
    return tuple(bundles)


def _build_entry(bundle: str, item: EntryConfig, root: Path, home: Path, settings: Settings) -> Entry:
    source = Path(item.source)
    if not item.source.strip():
        raise ManifestInvalid(f"Bundle '{bundle}' has an entry with an empty source")
    if source.is_absolute() or ".." in source.parts:
        raise ManifestInvalid(f"Bundle '{bundle}' entry '{source}' must stay inside the repository root")
    absolute = (root / source).resolve(strict=False)
    if not absolute.is_relative_to(root.resolve(strict=False)):
        raise ManifestInvalid(f"Bundle '{bundle}' entry '{source}' resolves outside the repository root")
    if not (root / source).exists():
        raise ManifestInvalid(f"Bundle '{bundle}' entry '{source}' does not exist in '{root}'")

    if not item.target.strip():
        raise ManifestInvalid(f"Bundle '{bundle}' entry '{source}' has an empty target")
    target = expand_target(item.target, base_dir=home)

    return Entry(source_path=source, target_path=target, link_mode=item.mode or settings.default_mode)


def _scan_bundles(root: Path) -> dict[str, dict[str, list[dict[str, str]]]]:
    bundles: dict[str, dict[str, list[dict[str, str]]]] = {}
    for topic in sorted(root.iterdir()):
        if not topic.is_dir() or topic.name.startswith(".") or topic.name in IGNORED_NAMES:
            continue

        target_base = f"~/.config/{topic.name}" if topic.name in XDG_CONFIG_BUNDLES else "~"
        entries: list[dict[str, str]] = []
        for path in _iter_files(topic):
            rel = path.relative_to(topic).as_posix()
            entries.append({"source": path.relative_to(root).as_posix(), "target": f"{target_base}/{rel}"})
        if entries:
            bundles[topic.name] = {"entries": entries}
    return bundles


def _iter_files(directory: Path) -> list[Path]:
    files: list[Path] = []
    for child in sorted(directory.iterdir()):
        if child.name in IGNORED_NAMES:
            continue
        if child.is_dir() and not child.is_symlink():
            files.extend(_iter_files(child))
        else:
            files.append(child)
    return files
