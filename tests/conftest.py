from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture
def fake_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.setenv("COLUMNS", "200")
    for name in ("XDG_STATE_HOME", "DOTMAN_STATE", "DOTMAN_ROOT", "DOTMAN_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    return home.resolve()


@pytest.fixture
def repo(tmp_path: Path, fake_home: Path) -> Path:
    root = tmp_path / "dotfiles"
    root.mkdir()
    return root.resolve()
