"""Tests for timeline.capture module (hook save and interactive capture)."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import _init_git_repo
from timeline import git
from timeline.capture import capture_now, save
from timeline.errors import ContentionError, GitCommandError
from timeline.hooks import HookPayload
from timeline.lock_guard import CaptureState
from timeline.queue import DeferredQueue


def _refs(repo: Path) -> list[str]:
    return git.for_each_ref("refs/heads/timelines/", "%(refname)", path=repo)


class TestSave:
    def test_creates_snapshot_with_payload_metadata(self, repo: Path, config, no_sleep, tmp_path: Path):
        (repo / "README.md").write_text("edited\n")
        payload = HookPayload(session_id="sess-1", tool="Edit", files=("README.md",))

        outcome = save(repo, config, payload, sleep=no_sleep, projects_dir=tmp_path)

        assert outcome.state is CaptureState.COMMITTED
        assert _refs(repo) == [outcome.result.reference]
        note = json.loads(git.show_note(config.notes_ref, outcome.result.commit, path=repo))
        assert note["sessionId"] == "sess-1"
        assert note["tool"] == "Edit"

    def test_unchanged_workspace_noop(self, repo: Path, config, no_sleep, tmp_path: Path):
        outcome = save(repo, config, sleep=no_sleep, projects_dir=tmp_path)

        assert outcome.state is CaptureState.NOOP
        assert _refs(repo) == []

    def test_uses_payload_cwd(self, repo: Path, config, no_sleep, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (repo / "README.md").write_text("edited\n")

        outcome = save(config=config, payload=HookPayload(project_path=str(repo)), sleep=no_sleep, projects_dir=tmp_path)

        assert outcome.state is CaptureState.COMMITTED

    def test_subdirectory_resolves_to_toplevel(self, repo: Path, config, no_sleep, tmp_path: Path):
        sub = repo / "src"
        sub.mkdir()
        (sub / "a.py").write_text("a\n")

        outcome = save(sub, config, sleep=no_sleep, projects_dir=tmp_path)

        assert outcome.state is CaptureState.COMMITTED
        assert "src/a.py" in git.list_tree_paths(outcome.result.commit, path=repo)

    def test_outside_repository_is_silent(self, tmp_path: Path, config, no_sleep):
        plain = tmp_path / "plain"
        plain.mkdir()

        outcome = save(plain, config, sleep=no_sleep)

        assert outcome.state is CaptureState.FAILED
        assert not config.queue_file.exists()

    def test_index_locked_defers_to_queue(self, repo: Path, config, no_sleep, tmp_path: Path):
        """Caller sees success; the request lands in the deferred log."""
        (repo / "README.md").write_text("edited\n")
        (repo / ".git" / "index.lock").touch()

        outcome = save(repo, config, HookPayload(session_id="s"), sleep=no_sleep, projects_dir=tmp_path)

        assert outcome.deferred
        assert Path(outcome.entry.workspace_path).resolve() == repo.resolve()
        assert outcome.entry.correlation_id == "s"
        assert _refs(repo) == []
        pending = DeferredQueue(config).pending()
        assert len(pending) == 1
        # Waited the whole budget, in backoff steps
        assert sum(no_sleep.calls) == pytest.approx(config.wait_budget_ms / 1000)

    def test_backend_failure_defers(self, repo: Path, config, no_sleep, tmp_path: Path):
        (repo / "README.md").write_text("edited\n")
        with patch("timeline.capture.SnapshotWriter.capture", side_effect=GitCommandError(["mktree"], "boom")):
            outcome = save(repo, config, sleep=no_sleep, projects_dir=tmp_path)

        assert outcome.deferred
        assert len(DeferredQueue(config).pending()) == 1

    def test_drains_queue_after_capture(self, repo: Path, config, no_sleep, tmp_path: Path):
        (repo / "README.md").write_text("edited\n")
        (repo / ".git" / "index.lock").touch()
        save(repo, config, sleep=no_sleep, projects_dir=tmp_path)
        (repo / ".git" / "index.lock").unlink()

        (repo / "README.md").write_text("edited again\n")
        outcome = save(repo, config, sleep=no_sleep, projects_dir=tmp_path)

        assert outcome.state is CaptureState.COMMITTED
        assert DeferredQueue(config).pending() == []
        # The hook's snapshot already holds the state the queued request asked for
        assert _refs(repo) == [outcome.result.reference]

    def test_hooks_elsewhere_do_not_exhaust_a_locked_repo(self, repo: Path, config, no_sleep, tmp_path: Path):
        """A long-held lock in one repo survives any number of saves in another."""
        other = tmp_path / "other"
        other.mkdir()
        assert _init_git_repo(other)
        (other / "README.md").write_text("rebasing\n")
        (other / ".git" / "index.lock").touch()
        config.wait_budget_ms = 0
        assert save(other, config, sleep=no_sleep, projects_dir=tmp_path).deferred

        for n in range(config.max_retries + 2):
            (repo / "README.md").write_text(f"edit {n}\n")
            assert save(repo, config, sleep=no_sleep, projects_dir=tmp_path).state is CaptureState.COMMITTED

        pending = DeferredQueue(config).pending()
        assert [Path(e.workspace_path).resolve() for e in pending] == [other.resolve()]
        assert pending[0].retry_count == 0
        assert not config.dead_letter_file.exists()

    def test_no_drain_when_disabled(self, repo: Path, config, no_sleep, tmp_path: Path):
        config.drain_on_save = False
        (repo / ".git" / "index.lock").touch()
        (repo / "README.md").write_text("edited\n")
        save(repo, config, sleep=no_sleep, projects_dir=tmp_path)
        (repo / ".git" / "index.lock").unlink()

        save(repo, config, sleep=no_sleep, projects_dir=tmp_path)

        assert len(DeferredQueue(config).pending()) == 1

    def test_enqueue_failure_does_not_raise(self, repo: Path, config, no_sleep, tmp_path: Path):
        (repo / ".git" / "index.lock").touch()
        with patch("timeline.capture.DeferredQueue.enqueue", side_effect=OSError("read-only")):
            outcome = save(repo, config, sleep=no_sleep, projects_dir=tmp_path)

        assert outcome.state is CaptureState.FAILED
        assert "read-only" in outcome.error


class TestCaptureNow:
    def test_captures(self, repo: Path, config, no_sleep):
        (repo / "README.md").write_text("edited\n")
        assert capture_now(repo, config, sleep=no_sleep).created

    def test_unchanged_workspace_is_noop(self, repo: Path, config, no_sleep):
        assert capture_now(repo, config, sleep=no_sleep).state is CaptureState.NOOP

    def test_force_publishes_unchanged_workspace(self, repo: Path, config, no_sleep):
        result = capture_now(repo, config, sleep=no_sleep, force=True)

        assert result.created
        assert _refs(repo) == [result.reference]

    def test_contention_raises(self, repo: Path, config, no_sleep):
        (repo / ".git" / "index.lock").touch()
        with pytest.raises(ContentionError):
            capture_now(repo, config, sleep=no_sleep)
