"""Tests for timeline.travel module (TravelEngine)."""

from pathlib import Path

import pytest

from conftest import run_git
from timeline import git
from timeline.errors import ContentionError, InvalidTarget
from timeline.snapshot import SnapshotWriter
from timeline.travel import TravelEngine


def _refs(repo: Path) -> list[str]:
    return git.for_each_ref("refs/heads/timelines/", "%(refname)", path=repo)


@pytest.fixture
def three_versions(repo: Path, config):
    """Snapshots of README.md at v1, v2, v3 (v3 is the working tree)."""
    writer = SnapshotWriter(repo, config)
    commits = []
    for version in ("v1", "v2", "v3"):
        (repo / "README.md").write_text(f"{version}\n")
        commits.append(writer.capture().commit)
    return commits


class TestTravel:
    def test_travel_to_second_most_recent(self, repo: Path, config, no_sleep, three_versions):
        engine = TravelEngine(repo, config, sleep=no_sleep)
        (repo / "README.md").write_text("v4\n")

        result = engine.travel("2")

        assert (repo / "README.md").read_text() == "v2\n"
        assert result.target.commit == three_versions[1]

    def test_safety_snapshot_created_first(self, repo: Path, config, no_sleep, three_versions):
        (repo / "README.md").write_text("unsaved work\n")

        result = TravelEngine(repo, config, sleep=no_sleep).travel("3")

        assert result.safety.created
        assert len(_refs(repo)) == 4
        assert run_git(repo, "show", f"{result.safety.commit}:README.md") == "unsaved work"
        assert (repo / "README.md").read_text() == "v1\n"

    def test_safety_snapshot_even_when_nothing_changed(self, repo: Path, config, no_sleep):
        """Round trip: travel to the current state, then away from an edit."""
        (repo / "README.md").write_text("v2\n")
        v2 = SnapshotWriter(repo, config).capture()
        engine = TravelEngine(repo, config, sleep=no_sleep)

        first = engine.travel("1")

        assert first.safety.created
        assert first.safety.tree == v2.tree
        assert (repo / "README.md").read_text() == "v2\n"
        assert len(_refs(repo)) == 2

        (repo / "README.md").write_text("v3\n")
        second = engine.travel(v2.commit)

        assert (repo / "README.md").read_text() == "v2\n"
        assert run_git(repo, "show", f"{second.safety.commit}:README.md") == "v3"
        assert len(_refs(repo)) == 3

    def test_travel_by_commit_id(self, repo: Path, config, no_sleep, three_versions):
        TravelEngine(repo, config, sleep=no_sleep).travel(three_versions[0][:8])
        assert (repo / "README.md").read_text() == "v1\n"

    def test_travel_removes_files_absent_from_snapshot(self, repo: Path, config, no_sleep):
        writer = SnapshotWriter(repo, config)
        (repo / "README.md").write_text("before\n")
        before = writer.capture()
        (repo / "extra.md").write_text("extra\n")
        run_git(repo, "add", "extra.md")

        TravelEngine(repo, config, sleep=no_sleep).travel(before.commit)

        assert not (repo / "extra.md").exists()
        assert (repo / "README.md").read_text() == "before\n"

    def test_staged_content_untouched(self, repo: Path, config, no_sleep, three_versions):
        staged_before = run_git(repo, "ls-files", "-s")

        TravelEngine(repo, config, sleep=no_sleep).travel("3")

        assert run_git(repo, "ls-files", "-s") == staged_before

    def test_out_of_range_writes_nothing(self, repo: Path, config, no_sleep, three_versions):
        (repo / "README.md").write_text("unsaved\n")

        with pytest.raises(InvalidTarget):
            TravelEngine(repo, config, sleep=no_sleep).travel("9")

        assert (repo / "README.md").read_text() == "unsaved\n"
        assert len(_refs(repo)) == 3

    def test_unknown_id(self, repo: Path, config, no_sleep, three_versions):
        with pytest.raises(InvalidTarget):
            TravelEngine(repo, config, sleep=no_sleep).travel("not-a-commit")

    def test_index_locked_aborts_before_restore(self, repo: Path, config, no_sleep, three_versions):
        (repo / ".git" / "index.lock").touch()

        with pytest.raises(ContentionError):
            TravelEngine(repo, config, sleep=no_sleep).travel("3")

        assert (repo / "README.md").read_text() == "v3\n"
