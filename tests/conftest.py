from __future__ import annotations

import json
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

GIT_AVAILABLE = subprocess.run(["git", "--version"], capture_output=True).returncode == 0


def _run(cmd: list[str], cwd: Path | None = None) -> str:
    result = subprocess.run(
        cmd, cwd=str(cwd) if cwd else None, check=True, capture_output=True, text=True
    )
    return result.stdout.strip()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    if not GIT_AVAILABLE:
        pytest.skip("git missing")
    root = tmp_path / "repo"
    root.mkdir()
    _run(["git", "init"], cwd=root)
    _run(["git", "symbolic-ref", "HEAD", "refs/heads/main"], cwd=root)
    _run(["git", "config", "user.email", "test@example.com"], cwd=root)
    _run(["git", "config", "user.name", "Test"], cwd=root)
    _run(["git", "config", "commit.gpgsign", "false"], cwd=root)
    (root / ".gitignore").write_text(".taskgit/\n")
    (root / "README.md").write_text("hello\n")
    _run(["git", "add", "."], cwd=root)
    _run(["git", "commit", "-m", "init"], cwd=root)
    return root


@pytest.fixture
def git(repo: Path) -> Callable[..., str]:
    def _git(*args: str) -> str:
        return _run(["git", *args], cwd=repo)

    return _git


@pytest.fixture
def write_settings(repo: Path) -> Callable[[dict[str, object]], Path]:
    def _write(section: dict[str, object]) -> Path:
        path = repo / ".taskgit" / "settings.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"git": section}), encoding="utf-8")
        return path

    return _write
