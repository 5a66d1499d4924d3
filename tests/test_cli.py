"""Tests for timeline.cli module (click commands via CliRunner)."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from conftest import run_git
from timeline import git
from timeline.cli import main
from timeline.queue import DeferredQueue, QueueEntry
from timeline.snapshot import SnapshotWriter


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def in_repo(repo: Path, config, monkeypatch) -> Path:
    """Run commands from inside the repo with an isolated state dir."""
    monkeypatch.chdir(repo)
    # Keep hooks from finding real session logs
    monkeypatch.setattr("timeline.hooks.CLAUDE_PROJECTS_DIR", repo.parent / "projects")
    return repo


def _snap(repo: Path, config, content: str):
    (repo / "README.md").write_text(content)
    return SnapshotWriter(repo, config).capture()


def _refs(repo: Path) -> list[str]:
    return git.for_each_ref("refs/heads/timelines/", "%(refname)", path=repo)


class TestSave:
    def test_save_creates_snapshot(self, runner, in_repo, config):
        (in_repo / "README.md").write_text("edited\n")

        result = runner.invoke(main, ["save"], input="")

        assert result.exit_code == 0
        assert "Snapshot" in result.output
        assert len(_refs(in_repo)) == 1

    def test_save_reads_hook_payload(self, runner, in_repo, config):
        (in_repo / "README.md").write_text("edited\n")
        payload = {"session_id": "hook-session", "tool_name": "Write", "cwd": str(in_repo)}

        result = runner.invoke(main, ["save", "--quiet"], input=json.dumps(payload))

        assert result.exit_code == 0
        assert result.output == ""
        commit = git.for_each_ref("refs/heads/timelines/", "%(objectname)", path=in_repo)[0]
        note = json.loads(git.show_note(config.notes_ref, commit, path=in_repo))
        assert note["sessionId"] == "hook-session"
        assert note["tool"] == "Write"

    def test_save_outside_repo_exits_zero(self, runner, tmp_path: Path, config, monkeypatch):
        plain = tmp_path / "plain"
        plain.mkdir()
        monkeypatch.chdir(plain)

        result = runner.invoke(main, ["save"], input="")

        assert result.exit_code == 0

    def test_save_survives_unexpected_error(self, runner, in_repo, config):
        with patch("timeline.cli.save_capture", side_effect=RuntimeError("boom")):
            result = runner.invoke(main, ["save"], input="")

        assert result.exit_code == 0

    def test_save_locked_index_queues(self, runner, in_repo, config):
        (in_repo / "README.md").write_text("edited\n")
        (in_repo / ".git" / "index.lock").touch()
        config.wait_budget_ms = 0
        config.save()

        result = runner.invoke(main, ["save"], input="")

        assert result.exit_code == 0
        assert "queued" in result.output
        assert len(DeferredQueue(config).pending()) == 1

    def test_save_with_malformed_config_uses_defaults(self, runner, in_repo, config):
        config.state_dir.mkdir(parents=True, exist_ok=True)
        (config.state_dir / "config.yaml").write_text("wait_budget_ms: [unclosed\n")
        (in_repo / "README.md").write_text("edited\n")

        result = runner.invoke(main, ["save"], input="")

        assert result.exit_code == 0
        assert len(_refs(in_repo)) == 1

    def test_save_writes_log_file(self, runner, in_repo, config):
        (in_repo / "README.md").write_text("edited\n")
        runner.invoke(main, ["save"], input="")
        assert config.log_file.exists()


class TestList:
    def test_empty(self, runner, in_repo, config):
        result = runner.invoke(main, ["list"])
        assert result.exit_code == 0
        assert "No snapshots found" in result.output

    def test_lists_newest_first(self, runner, in_repo, config):
        _snap(in_repo, config, "v1\n")
        latest = _snap(in_repo, config, "v2\n")

        result = runner.invoke(main, ["list", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [d["commit"] for d in data][0] == latest.commit
        assert len(data) == 2

    def test_table(self, runner, in_repo, config):
        latest = _snap(in_repo, config, "v1\n")
        result = runner.invoke(main, ["list"])
        assert latest.commit[:7] in result.output

    def test_outside_repo_fails(self, runner, tmp_path: Path, config, monkeypatch):
        plain = tmp_path / "plain"
        plain.mkdir()
        monkeypatch.chdir(plain)

        result = runner.invoke(main, ["list"])

        assert result.exit_code == 1
        assert "NOT_A_REPOSITORY" in result.output


class TestMalformedConfig:
    @pytest.fixture(autouse=True)
    def _broken_config(self, config):
        config.state_dir.mkdir(parents=True, exist_ok=True)
        (config.state_dir / "config.yaml").write_text("wait_budget_ms: [unclosed\n")

    @pytest.mark.parametrize("args", [["list"], ["queue", "status"], ["queue", "process"], ["config", "list"]])
    def test_reported_without_traceback(self, runner, in_repo, args):
        result = runner.invoke(main, args)

        assert result.exit_code == 1
        assert "Failed to read config" in result.output
        assert not isinstance(result.exception, yaml.YAMLError)


class TestShow:
    def test_show(self, runner, in_repo, config):
        _snap(in_repo, config, "changed\n")

        result = runner.invoke(main, ["show", "1"])

        assert result.exit_code == 0
        assert "README.md" in result.output

    def test_show_invalid(self, runner, in_repo, config):
        result = runner.invoke(main, ["show", "5"])
        assert result.exit_code == 1
        assert "INVALID_TARGET" in result.output


class TestTravel:
    def test_travel_by_number(self, runner, in_repo, config):
        _snap(in_repo, config, "v1\n")
        _snap(in_repo, config, "v2\n")

        result = runner.invoke(main, ["travel", "2"])

        assert result.exit_code == 0
        assert (in_repo / "README.md").read_text() == "v1\n"

    def test_travel_prompts_without_target(self, runner, in_repo, config):
        _snap(in_repo, config, "v1\n")
        _snap(in_repo, config, "v2\n")

        result = runner.invoke(main, ["travel"], input="2\n")

        assert result.exit_code == 0
        assert (in_repo / "README.md").read_text() == "v1\n"

    def test_travel_invalid_exits_one(self, runner, in_repo, config):
        result = runner.invoke(main, ["travel", "7"])
        assert result.exit_code == 1


class TestSearch:
    def test_missing_pattern_exits_one(self, runner, in_repo, config):
        result = runner.invoke(main, ["search"])
        assert result.exit_code == 1

    def test_matches(self, runner, in_repo, config):
        _snap(in_repo, config, "find [me] here\n")

        result = runner.invoke(main, ["search", "find"])

        assert result.exit_code == 0
        assert "README.md:1:find [me] here" in result.output
        assert "1 snapshot(s)" in result.output

    def test_no_matches(self, runner, in_repo, config):
        _snap(in_repo, config, "v1\n")
        result = runner.invoke(main, ["search", "zzz"])
        assert result.exit_code == 0
        assert "No matches" in result.output


class TestDeleteAndCleanup:
    def test_delete_all_with_confirmation(self, runner, in_repo, config):
        _snap(in_repo, config, "v1\n")
        _snap(in_repo, config, "v2\n")

        result = runner.invoke(main, ["delete"], input="y\n")

        assert result.exit_code == 0
        assert _refs(in_repo) == []

    def test_delete_cancelled(self, runner, in_repo, config):
        _snap(in_repo, config, "v1\n")

        result = runner.invoke(main, ["delete"], input="n\n")

        assert "Cancelled" in result.output
        assert len(_refs(in_repo)) == 1

    def test_delete_single_forced(self, runner, in_repo, config):
        _snap(in_repo, config, "v1\n")
        _snap(in_repo, config, "v2\n")

        result = runner.invoke(main, ["delete", "1", "--force"])

        assert result.exit_code == 0
        assert len(_refs(in_repo)) == 1

    def test_cleanup(self, runner, in_repo, config):
        run_git(in_repo, "checkout", "-q", "-b", "temp")
        _snap(in_repo, config, "temp\n")
        run_git(in_repo, "checkout", "-q", "-f", "main")
        run_git(in_repo, "branch", "-q", "-D", "temp")
        kept = _snap(in_repo, config, "main\n")

        result = runner.invoke(main, ["cleanup", "--force"])

        assert result.exit_code == 0
        assert _refs(in_repo) == [kept.reference]

    def test_cleanup_nothing(self, runner, in_repo, config):
        result = runner.invoke(main, ["cleanup"])
        assert result.exit_code == 0
        assert "No orphaned" in result.output


class TestSessions:
    def test_sessions(self, runner, in_repo, config):
        (in_repo / "README.md").write_text("x\n")
        runner.invoke(main, ["save"], input=json.dumps({"session_id": "abc-session"}))

        result = runner.invoke(main, ["sessions"])

        assert result.exit_code == 0
        assert "abc-session" in result.output


class TestQueueCommands:
    def test_status_and_process(self, runner, in_repo, config):
        (in_repo / "README.md").write_text("queued\n")
        DeferredQueue(config).enqueue(
            QueueEntry(requested_at=1, workspace_path=str(in_repo), line_of_work="main")
        )

        status = runner.invoke(main, ["queue", "status"])
        assert "pending: 1" in status.output

        result = runner.invoke(main, ["queue", "process"])

        assert result.exit_code == 0
        assert "Captured 1" in result.output
        assert len(_refs(in_repo)) == 1


class TestQueueErrors:
    def test_process_write_failure_exits_one(self, runner, in_repo, config):
        with patch("timeline.cli.DeferredQueue.drain", side_effect=OSError("Failed to rewrite queue: disk full")):
            result = runner.invoke(main, ["queue", "process"])

        assert result.exit_code == 1
        assert "disk full" in result.output

    def test_daemon_stops_on_interrupt(self, runner, in_repo, config):
        with patch("timeline.cli.DeferredQueue.run_daemon", side_effect=KeyboardInterrupt) as run:
            result = runner.invoke(main, ["queue", "daemon", "--interval", "2"])

        assert result.exit_code == 0
        assert "Stopped" in result.output
        run.assert_called_once_with(interval_seconds=2.0)


class TestConfigCommands:
    def test_set_and_list(self, runner, config):
        result = runner.invoke(main, ["config", "set", "wait-budget-ms", "500"])
        assert result.exit_code == 0

        saved = yaml.safe_load((config.state_dir / "config.yaml").read_text())
        assert saved == {"wait_budget_ms": 500}

        listing = runner.invoke(main, ["config", "list"])
        assert "wait_budget_ms" in listing.output
        assert "500" in listing.output

    def test_unknown_key(self, runner, config):
        result = runner.invoke(main, ["config", "set", "bogus", "1"])
        assert result.exit_code == 1

    def test_bad_value(self, runner, config):
        result = runner.invoke(main, ["config", "set", "max_retries", "lots"])
        assert result.exit_code == 1


class TestVersion:
    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
