from __future__ import annotations

import subprocess
from collections.abc import Callable
from pathlib import Path
from unittest import mock

import pytest

from taskgit.config import GitConfig
from taskgit.git_ops import GitRepo
from taskgit.models import Manual, Ours, Theirs


def _diverge(repo: Path, git: Callable[..., str], path: str, ours: bytes, theirs: bytes) -> None:
    """Leave ``path`` changed differently on main and on ``feature``."""
    target = repo / path
    target.parent.mkdir(parents=True, exist_ok=True)
    git("checkout", "-b", "feature")
    target.write_bytes(theirs)
    git("add", path)
    git("commit", "-m", "feature change")
    git("checkout", "main")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(ours)
    git("add", path)
    git("commit", "-m", "main change")


def test_repository_checks(repo: Path, tmp_path: Path) -> None:
    ops = GitRepo(repo)
    assert ops.is_repository()
    assert ops.get_repo_root() == repo.resolve()
    assert ops.get_default_branch() == "main"

    outside = GitRepo(tmp_path / "elsewhere")
    (tmp_path / "elsewhere").mkdir()
    status = outside.get_status()
    assert not status.is_repo
    assert status.current_branch is None


def test_init_repository(tmp_path: Path, repo: Path) -> None:
    fresh = tmp_path / "fresh"
    fresh.mkdir()
    ops = GitRepo(fresh)
    assert not ops.is_repository()
    assert ops.init_repository("trunk").success
    assert ops.is_repository()


def test_status_counts(repo: Path, git: Callable[..., str]) -> None:
    ops = GitRepo(repo)
    clean = ops.get_status()
    assert clean.is_repo
    assert clean.current_branch == "main"
    assert not clean.is_dirty
    assert (clean.ahead, clean.behind) == (0, 0)

    (repo / "README.md").write_text("changed\n")
    (repo / "new.txt").write_text("new\n")
    (repo / "staged.txt").write_text("staged\n")
    git("add", "staged.txt")

    dirty = ops.get_status()
    assert dirty.is_dirty
    assert dirty.staged_count == 1
    assert dirty.modified_count == 1
    assert dirty.untracked_count == 1
    assert not dirty.is_merging
    assert not dirty.is_rebasing


def test_branch_listing_and_task_ids(repo: Path) -> None:
    ops = GitRepo(repo)
    assert ops.create_branch("task/T-7-do-thing", "main").success
    assert ops.create_branch("feature/other").success
    assert ops.branch_exists("task/T-7-do-thing")
    assert not ops.branch_exists("task/T-8-missing")

    branches = {b.name: b for b in ops.list_branches(include_remote=False)}
    assert set(branches) == {"main", "task/T-7-do-thing", "feature/other"}
    assert branches["main"].is_current
    assert branches["task/T-7-do-thing"].task_id == "T-7"
    assert branches["feature/other"].task_id is None
    assert branches["main"].last_commit_message == "init"
    assert not any(b.is_remote for b in branches.values())


def test_branch_create_checkout_rename_delete(repo: Path) -> None:
    ops = GitRepo(repo)
    assert ops.checkout_branch("work", create=True, start_point="main").success
    assert ops.get_status().current_branch == "work"
    assert ops.checkout_branch("main").success
    assert ops.rename_branch("work", "renamed").success
    assert ops.branch_exists("renamed")
    assert ops.delete_branch("renamed").success
    assert not ops.branch_exists("renamed")

    missing = ops.checkout_branch("does-not-exist")
    assert not missing.success
    assert missing.exit_code != 0
    assert missing.error


def test_commit_and_history(repo: Path) -> None:
    ops = GitRepo(repo)
    (repo / "a.txt").write_text("a\n")
    assert ops.stage_files(["a.txt"]).success
    assert ops.get_staged_diff()
    assert ops.unstage_files(["a.txt"]).success
    assert ops.stage_files("all").success
    assert ops.commit("add a").success

    history = ops.get_commit_history(5)
    assert [c.message for c in history] == ["add a", "init"]
    assert history[0].hash == ops.get_head_commit()
    assert history[0].hash.startswith(history[0].short_hash)
    assert history[0].author == "Test"
    assert history[0].author_email == "test@example.com"

    assert "a.txt" in ops.get_diff("HEAD~1", "HEAD")
    (repo / "a.txt").write_text("b\n")
    assert "+b" in ops.get_unstaged_diff()


def test_stash_roundtrip(repo: Path) -> None:
    ops = GitRepo(repo)
    (repo / "README.md").write_text("wip\n")
    assert ops.stash("wip").success
    assert len(ops.stash_list()) == 1
    assert not ops.get_status().is_dirty
    assert ops.stash_pop().success
    assert ops.get_status().is_dirty


def test_clean_merge(repo: Path, git: Callable[..., str]) -> None:
    git("checkout", "-b", "feature")
    (repo / "f.txt").write_text("f\n")
    git("add", "f.txt")
    git("commit", "-m", "feature")
    git("checkout", "main")

    outcome = GitRepo(repo).merge_branch("feature", message="Merge feature")
    assert outcome.success
    assert not outcome.had_conflicts
    assert outcome.merge_commit_hash == git("rev-parse", "HEAD")


def test_merge_conflict_is_reported(repo: Path, git: Callable[..., str]) -> None:
    _diverge(repo, git, "src/app.ts", b"main version\n", b"feature version\n")
    ops = GitRepo(repo)

    outcome = ops.merge_branch("feature", message="Merge feature")
    assert not outcome.success
    assert outcome.had_conflicts
    assert outcome.merge_commit_hash is None
    assert [c.file_path for c in outcome.conflicts] == ["src/app.ts"]

    conflict = outcome.conflicts[0]
    assert conflict.conflict_type == "content"
    assert not conflict.is_binary
    assert conflict.ours_content == "main version"
    assert conflict.theirs_content == "feature version"
    assert conflict.base_content is None
    assert conflict.status == "unresolved"
    assert conflict.file_size > 0
    assert ops.get_status().is_merging

    safety = ops.run_safety_check("checkout", GitConfig())
    assert not safety.safe

    assert ops.abort_merge().success
    assert not ops.get_status().is_merging


def test_binary_conflict(repo: Path, git: Callable[..., str]) -> None:
    _diverge(repo, git, "logo.bin", b"\x00\x01main\x00", b"\x00\x02feature\x00")
    outcome = GitRepo(repo).merge_branch("feature")
    assert outcome.had_conflicts
    conflict = outcome.conflicts[0]
    assert conflict.file_path == "logo.bin"
    assert conflict.is_binary
    assert conflict.conflict_type == "binary"
    assert conflict.ours_content is None
    assert conflict.theirs_content is None


@pytest.mark.parametrize(
    ("resolution", "expected"),
    [
        (Ours(), "main version\n"),
        (Theirs(), "feature version\n"),
        (Manual("combined\n"), "combined\n"),
    ],
)
def test_resolve_conflict(
    repo: Path, git: Callable[..., str], resolution: object, expected: str
) -> None:
    _diverge(repo, git, "app.txt", b"main version\n", b"feature version\n")
    ops = GitRepo(repo)
    assert ops.merge_branch("feature").had_conflicts

    result = ops.resolve_conflict("app.txt", resolution)  # type: ignore[arg-type]
    assert result.success
    assert (repo / "app.txt").read_text() == expected
    assert ops.get_conflicts() == []
    assert ops.commit("resolved").success


def test_conflict_on_non_ascii_path(repo: Path, git: Callable[..., str]) -> None:
    _diverge(repo, git, "docs/café.txt", b"main version\n", b"feature version\n")
    ops = GitRepo(repo)

    outcome = ops.merge_branch("feature")
    assert outcome.had_conflicts
    conflict = outcome.conflicts[0]
    assert conflict.file_path == "docs/café.txt"
    assert conflict.ours_content == "main version"
    assert conflict.theirs_content == "feature version"
    assert conflict.file_size > 0

    assert ops.resolve_conflict(conflict.file_path, Theirs()).success
    assert ops.get_conflicts() == []


def test_stage_single_path_string(repo: Path, git: Callable[..., str]) -> None:
    ops = GitRepo(repo)
    (repo / "README.md").write_text("changed\n")
    assert ops.stage_files("README.md").success
    assert git("diff", "--cached", "--name-only") == "README.md"
    assert ops.unstage_files("README.md").success
    assert git("diff", "--cached", "--name-only") == ""


def test_cleanup_orphan_branches(repo: Path, git: Callable[..., str]) -> None:
    git("branch", "task/T-1-old-work")
    git("branch", "task/T-2-current-work")
    git("branch", "feature/unrelated")
    git("checkout", "-b", "task/T-3-checked-out")

    deleted = GitRepo(repo).cleanup_orphan_branches(["T-2"])

    assert deleted == ["task/T-1-old-work"]
    remaining = git("branch", "--format=%(refname:short)").splitlines()
    assert sorted(remaining) == [
        "feature/unrelated",
        "main",
        "task/T-2-current-work",
        "task/T-3-checked-out",
    ]


def test_cleanup_skips_failed_delete(repo: Path, git: Callable[..., str]) -> None:
    git("checkout", "-b", "task/T-4-unmerged")
    (repo / "x.txt").write_text("x\n")
    git("add", "x.txt")
    git("commit", "-m", "unmerged work")
    git("checkout", "main")

    assert GitRepo(repo).cleanup_orphan_branches([]) == []
    assert "task/T-4-unmerged" in git("branch")


def test_pull_without_remote_fails_softly(repo: Path) -> None:
    result = GitRepo(repo).pull("main")
    assert not result.success
    assert result.error


def test_timeout_is_folded_into_result(tmp_path: Path) -> None:
    timeout = subprocess.TimeoutExpired(cmd=["git", "fetch"], timeout=60, output=b"partial")
    with mock.patch("taskgit.git_ops.subprocess.run", side_effect=timeout):
        result = GitRepo(tmp_path).fetch()
    assert not result.success
    assert result.exit_code == -1
    assert result.error is not None and "timed out" in result.error
    assert result.stdout == "partial"


def test_network_commands_use_longer_timeout(tmp_path: Path) -> None:
    completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr="")
    with mock.patch("taskgit.git_ops.subprocess.run", return_value=completed) as run:
        ops = GitRepo(tmp_path)
        ops.push("main", set_upstream=True)
        ops.get_head_commit()
    assert run.call_args_list[0].args[0] == ["git", "push", "-u", "origin", "main"]
    assert run.call_args_list[0].kwargs["timeout"] == 60
    assert run.call_args_list[1].kwargs["timeout"] == 30


def test_spawn_error_is_folded_into_result(tmp_path: Path) -> None:
    with mock.patch(
        "taskgit.git_ops.subprocess.run", side_effect=FileNotFoundError("no git here")
    ):
        result = GitRepo(tmp_path).get_head_commit()
        status = GitRepo(tmp_path).checkout_branch("main")
    assert result is None
    assert not status.success
    assert status.exit_code == -1
    assert status.error == "no git here"
