"""Shared fixtures: throwaway git repositories and an isolated state directory."""

import shutil
import subprocess
from pathlib import Path

import pytest

from timeline.config import TimelineConfig


def run_git(path: Path, *args: str) -> str:
    """Run git in ``path`` and return stripped stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=path,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def _init_git_repo(path: Path, commit: bool = True) -> bool:
    """Initialize a git repo on branch 'main', optionally with one commit."""
    if shutil.which("git") is None:
        return False
    try:
        run_git(path, "init", "-q")
        run_git(path, "symbolic-ref", "HEAD", "refs/heads/main")
        # Configure git user for commits
        run_git(path, "config", "user.email", "test@test.com")
        run_git(path, "config", "user.name", "Test User")
        run_git(path, "config", "commit.gpgsign", "false")
        if commit:
            (path / "README.md").write_text("Test repo\n")
            run_git(path, "add", ".")
            run_git(path, "commit", "-q", "-m", "Initial commit")
        return True
    except (subprocess.CalledProcessError, OSError):
        return False


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A git repository with one commit on 'main'."""
    path = tmp_path / "repo"
    path.mkdir()
    if not _init_git_repo(path):
        pytest.skip("Git not available")
    return path


@pytest.fixture
def empty_repo(tmp_path: Path) -> Path:
    """A git repository on an unborn 'main' branch."""
    path = tmp_path / "empty"
    path.mkdir()
    if not _init_git_repo(path, commit=False):
        pytest.skip("Git not available")
    return path


@pytest.fixture
def config(tmp_path: Path, monkeypatch) -> TimelineConfig:
    """Config whose state directory lives under tmp_path."""
    state_dir = tmp_path / "state"
    monkeypatch.setenv("TIMELINE_HOME", str(state_dir))
    return TimelineConfig(state_dir=state_dir)


@pytest.fixture
def no_sleep():
    """Recording replacement for time.sleep."""
    calls: list[float] = []

    def sleep(seconds: float) -> None:
        calls.append(seconds)

    sleep.calls = calls
    return sleep
