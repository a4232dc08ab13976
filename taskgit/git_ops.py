"""Git subprocess operations bound to a single project root."""

import logging
import os
import subprocess
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Literal

from taskgit import safety
from taskgit.config import GitConfig
from taskgit.models import (
    BranchInfo,
    CommandResult,
    CommitInfo,
    ConflictInfo,
    Manual,
    MergeOutcome,
    Ours,
    RepositoryStatus,
    Resolution,
    SafetyCheck,
    Theirs,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
NETWORK_TIMEOUT = 60.0

_FIELD_SEP = "\x1f"


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def run(args: Sequence[str], cwd: Path | None = None, timeout: float = DEFAULT_TIMEOUT) -> CommandResult:
    """Run a git command and fold every outcome into a CommandResult."""
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            env=env,
        )
    except subprocess.TimeoutExpired as exc:
        logger.warning("git %s timed out after %ss", " ".join(args), timeout)
        return CommandResult(
            success=False,
            stdout=_as_text(exc.stdout).rstrip(),
            stderr=_as_text(exc.stderr).strip(),
            exit_code=-1,
            error=f"command timed out after {timeout:g}s",
        )
    except OSError as exc:
        logger.warning("could not start git %s: %s", " ".join(args), exc)
        return CommandResult(
            success=False, stdout="", stderr=str(exc), exit_code=-1, error=str(exc)
        )

    stdout = result.stdout.rstrip()
    stderr = result.stderr.strip()
    logger.debug("git %s -> %s", " ".join(args), result.returncode)
    if result.returncode != 0:
        return CommandResult(
            success=False,
            stdout=stdout,
            stderr=stderr,
            exit_code=result.returncode,
            error=stderr or f"git command failed with exit code {result.returncode}",
        )
    return CommandResult(success=True, stdout=stdout, stderr=stderr, exit_code=0)


class GitRepo:
    """Git operations against a fixed project root. Never raises for git failures."""

    def __init__(self, project_root: Path) -> None:
        self.project_root = project_root

    def run(self, args: Sequence[str], timeout: float = DEFAULT_TIMEOUT) -> CommandResult:
        return run(args, cwd=self.project_root, timeout=timeout)

    @staticmethod
    def is_git_installed() -> bool:
        return run(["--version"]).success

    @staticmethod
    def get_git_version() -> str | None:
        result = run(["--version"])
        if not result.success:
            return None
        return result.stdout.removeprefix("git version ").strip()

    # Repository

    def is_repository(self) -> bool:
        result = self.run(["rev-parse", "--is-inside-work-tree"])
        return result.success and result.stdout == "true"

    def init_repository(self, default_branch: str = "main") -> CommandResult:
        return self.run(["init", "-b", default_branch])

    def get_repo_root(self) -> Path | None:
        result = self.run(["rev-parse", "--show-toplevel"])
        return Path(result.stdout) if result.success else None

    def get_default_branch(self) -> str:
        """Get the default branch name (falls back to 'main')."""
        result = self.run(["symbolic-ref", "--quiet", "--short", "refs/remotes/origin/HEAD"])
        if result.success and "/" in result.stdout:
            return result.stdout.split("/", 1)[1]
        return "main"

    def _git_dir(self) -> Path:
        result = self.run(["rev-parse", "--absolute-git-dir"])
        if result.success and result.stdout:
            return Path(result.stdout)
        return self.project_root / ".git"

    def get_status(self) -> RepositoryStatus:
        if not self.is_repository():
            return RepositoryStatus(is_repo=False, current_branch=None)

        branch = self.run(["branch", "--show-current"])
        current_branch = branch.stdout if branch.success and branch.stdout else None

        staged = modified = untracked = 0
        porcelain = self.run(["status", "--porcelain=v1"])
        for line in porcelain.stdout.splitlines():
            if len(line) < 2:
                continue
            index_status, tree_status = line[0], line[1]
            if index_status not in " ?":
                staged += 1
            if tree_status not in " ?":
                modified += 1
            if index_status == "?":
                untracked += 1

        ahead = behind = 0
        if current_branch:
            counts = self.run(["rev-list", "--left-right", "--count", "HEAD...@{upstream}"])
            parts = counts.stdout.split() if counts.success else []
            if len(parts) == 2 and parts[0].isdigit() and parts[1].isdigit():
                ahead, behind = int(parts[0]), int(parts[1])

        git_dir = self._git_dir()
        return RepositoryStatus(
            is_repo=True,
            current_branch=current_branch,
            is_dirty=staged + modified + untracked > 0,
            staged_count=staged,
            modified_count=modified,
            untracked_count=untracked,
            ahead=ahead,
            behind=behind,
            is_merging=(git_dir / "MERGE_HEAD").exists(),
            is_rebasing=(git_dir / "rebase-merge").exists()
            or (git_dir / "rebase-apply").exists(),
        )

    # Branches

    def list_branches(self, include_remote: bool = True) -> list[BranchInfo]:
        fmt = "%1f".join(
            [
                "%(refname)",
                "%(HEAD)",
                "%(objectname:short)",
                "%(committerdate:iso-strict)",
                "%(subject)",
            ]
        )
        args = ["branch", f"--format={fmt}"]
        if include_remote:
            args.append("-a")
        result = self.run(args)
        if not result.success:
            return []

        branches: list[BranchInfo] = []
        for line in result.stdout.splitlines():
            parts = line.split(_FIELD_SEP, 4)
            if len(parts) < 5:
                continue
            refname, head, commit_hash, date, subject = parts
            if refname.startswith("refs/heads/"):
                name = refname.removeprefix("refs/heads/")
                is_remote = False
            elif refname.startswith("refs/remotes/"):
                remote_ref = refname.removeprefix("refs/remotes/")
                if remote_ref.endswith("/HEAD") or "/" not in remote_ref:
                    continue
                name = remote_ref.split("/", 1)[1]
                is_remote = True
            else:
                continue
            branches.append(
                BranchInfo(
                    name=name,
                    is_current=head.strip() == "*",
                    is_remote=is_remote,
                    task_id=safety.extract_task_id(name),
                    last_commit_hash=commit_hash,
                    last_commit_date=date,
                    last_commit_message=subject,
                )
            )
        return branches

    def create_branch(self, name: str, base: str | None = None) -> CommandResult:
        args = ["branch", name]
        if base:
            args.append(base)
        return self.run(args)

    def checkout_branch(
        self, name: str, create: bool = False, start_point: str | None = None
    ) -> CommandResult:
        args = ["checkout", "-b", name] if create else ["checkout", name]
        if create and start_point:
            args.append(start_point)
        return self.run(args)

    def delete_branch(self, name: str, force: bool = False) -> CommandResult:
        return self.run(["branch", "-D" if force else "-d", name])

    def rename_branch(self, old_name: str, new_name: str) -> CommandResult:
        return self.run(["branch", "-m", old_name, new_name])

    def branch_exists(self, name: str) -> bool:
        return self.run(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"]).success

    # Staging and commits

    def stage_files(self, files: Iterable[str] | Literal["all"]) -> CommandResult:
        if files == "all":
            return self.run(["add", "-A"])
        if isinstance(files, str):
            files = [files]
        return self.run(["add", "--", *files])

    def unstage_files(self, files: Iterable[str] | Literal["all"]) -> CommandResult:
        if files == "all":
            return self.run(["reset", "HEAD"])
        if isinstance(files, str):
            files = [files]
        return self.run(["reset", "HEAD", "--", *files])

    def commit(self, message: str, amend: bool = False) -> CommandResult:
        args = ["commit", "-m", message]
        if amend:
            args.append("--amend")
        return self.run(args)

    def get_head_commit(self) -> str | None:
        result = self.run(["rev-parse", "HEAD"])
        return result.stdout if result.success else None

    def get_commit_history(self, count: int = 20, branch: str | None = None) -> list[CommitInfo]:
        args = ["log", f"-{count}", "--format=%H%x1f%h%x1f%s%x1f%an%x1f%ae%x1f%aI"]
        if branch:
            args.append(branch)
        result = self.run(args)
        if not result.success:
            return []

        commits: list[CommitInfo] = []
        for line in result.stdout.splitlines():
            parts = line.split(_FIELD_SEP)
            if len(parts) != 6:
                continue
            commits.append(
                CommitInfo(
                    hash=parts[0],
                    short_hash=parts[1],
                    message=parts[2],
                    author=parts[3],
                    author_email=parts[4],
                    date=parts[5],
                )
            )
        return commits

    # Merging

    def merge_branch(
        self, name: str, no_commit: bool = False, message: str | None = None
    ) -> MergeOutcome:
        args = ["merge", name]
        if no_commit:
            args.append("--no-commit")
        if message:
            args.extend(["-m", message])

        result = self.run(args)
        if result.success:
            return MergeOutcome(success=True, merge_commit_hash=self.get_head_commit())

        if "CONFLICT" in result.stdout or "CONFLICT" in result.stderr:
            return MergeOutcome(
                success=False,
                had_conflicts=True,
                conflicts=self.get_conflicts(),
                error="Merge conflicts detected",
            )
        return MergeOutcome(success=False, error=result.error or "Merge failed")

    def abort_merge(self) -> CommandResult:
        return self.run(["merge", "--abort"])

    def get_conflicts(self) -> list[ConflictInfo]:
        # -z keeps non-ASCII paths unquoted.
        result = self.run(["diff", "--name-only", "-z", "--diff-filter=U"])
        if not result.success:
            return []
        return [self._conflict_info(path) for path in result.stdout.split("\0") if path.strip()]

    def _is_binary(self, file_path: str) -> bool:
        # --no-index exits 1 whenever the files differ, so only stdout matters.
        result = self.run(["diff", "--no-index", "--numstat", "--", os.devnull, file_path])
        return result.stdout.startswith("-")

    def _conflict_info(self, file_path: str) -> ConflictInfo:
        try:
            file_size = (self.project_root / file_path).stat().st_size
        except OSError:
            file_size = 0

        if self._is_binary(file_path):
            return ConflictInfo(
                file_path=file_path,
                conflict_type="binary",
                is_binary=True,
                ours_content=None,
                theirs_content=None,
                base_content=None,
                file_size=file_size,
            )

        def stage(number: int) -> str | None:
            shown = self.run(["show", f":{number}:{file_path}"])
            return shown.stdout if shown.success else None

        return ConflictInfo(
            file_path=file_path,
            conflict_type="content",
            is_binary=False,
            ours_content=stage(2),
            theirs_content=stage(3),
            base_content=stage(1),
            file_size=file_size,
        )

    def resolve_conflict(self, file_path: str, resolution: Resolution) -> CommandResult:
        """Apply a resolution to a conflicted file and stage the result."""
        if isinstance(resolution, Ours):
            picked = self.run(["checkout", "--ours", "--", file_path])
        elif isinstance(resolution, Theirs):
            picked = self.run(["checkout", "--theirs", "--", file_path])
        elif isinstance(resolution, Manual):
            try:
                (self.project_root / file_path).write_text(resolution.content, encoding="utf-8")
            except OSError as exc:
                return CommandResult(
                    success=False,
                    stdout="",
                    stderr=str(exc),
                    exit_code=-1,
                    error=f"Failed to write resolved content: {exc}",
                )
            picked = None
        else:
            raise TypeError(f"unsupported resolution: {resolution!r}")

        if picked is not None and not picked.success:
            return picked
        return self.run(["add", "--", file_path])

    # Remotes

    def push(self, branch: str | None = None, set_upstream: bool = False, force: bool = False) -> CommandResult:
        args = ["push"]
        if set_upstream:
            args.append("-u")
        if force:
            args.append("--force-with-lease")
        if branch or set_upstream:
            args.append("origin")
        if branch:
            args.append(branch)
        return self.run(args, timeout=NETWORK_TIMEOUT)

    def pull(self, branch: str | None = None) -> CommandResult:
        args = ["pull"]
        if branch:
            args.extend(["origin", branch])
        return self.run(args, timeout=NETWORK_TIMEOUT)

    def fetch(self, prune: bool = False) -> CommandResult:
        args = ["fetch"]
        if prune:
            args.append("--prune")
        return self.run(args, timeout=NETWORK_TIMEOUT)

    # Stash

    def stash(self, message: str | None = None) -> CommandResult:
        args = ["stash", "push"]
        if message:
            args.extend(["-m", message])
        return self.run(args)

    def stash_pop(self) -> CommandResult:
        return self.run(["stash", "pop"])

    def stash_list(self) -> list[str]:
        result = self.run(["stash", "list"])
        return [line for line in result.stdout.splitlines() if line] if result.success else []

    # Diffs

    def get_staged_diff(self) -> str:
        return self.run(["diff", "--cached"]).stdout

    def get_unstaged_diff(self) -> str:
        return self.run(["diff"]).stdout

    def get_diff(self, from_ref: str, to_ref: str) -> str:
        return self.run(["diff", from_ref, to_ref]).stdout

    # Higher level helpers

    def run_safety_check(
        self, operation: str, config: GitConfig, target: str | None = None
    ) -> SafetyCheck:
        return safety.run_safety_check(operation, self.get_status(), config, target)

    def generate_branch_name(self, task_id: str, title: str, convention: str) -> str:
        return safety.generate_branch_name(task_id, title, convention)

    def cleanup_orphan_branches(self, active_task_ids: Iterable[str]) -> list[str]:
        """Delete local task branches whose task is no longer active."""
        active = set(active_task_ids)
        deleted: list[str] = []
        for branch in self.list_branches(include_remote=False):
            if branch.task_id is None or branch.task_id in active or branch.is_current:
                continue
            result = self.delete_branch(branch.name)
            if result.success:
                deleted.append(branch.name)
            else:
                logger.debug("skipping orphan branch %s: %s", branch.name, result.error)
        return deleted
