"""Data models for taskgit."""

from dataclasses import dataclass, field
from typing import Literal

Initiator = Literal["system", "user"]

LOG_OUTPUT_LIMIT = 5000
LOG_CAPACITY = 100
STATE_VERSION = 1


@dataclass
class CommandResult:
    """Outcome of a single git invocation."""

    success: bool
    stdout: str
    stderr: str
    exit_code: int
    error: str | None = None


@dataclass
class RepositoryStatus:
    """Snapshot of the working tree, derived fresh on every query."""

    is_repo: bool
    current_branch: str | None
    is_dirty: bool = False
    staged_count: int = 0
    modified_count: int = 0
    untracked_count: int = 0
    ahead: int = 0
    behind: int = 0
    is_merging: bool = False
    is_rebasing: bool = False


@dataclass
class BranchInfo:
    """A local or remote branch as reported by git."""

    name: str
    is_current: bool
    is_remote: bool
    task_id: str | None
    last_commit_hash: str
    last_commit_date: str
    last_commit_message: str = ""


@dataclass(frozen=True)
class CommitInfo:
    """One entry of the commit history."""

    hash: str
    short_hash: str
    message: str
    author: str
    author_email: str
    date: str


@dataclass
class ConflictInfo:
    """A file left conflicted by a merge."""

    file_path: str
    conflict_type: Literal["content", "binary"]
    is_binary: bool
    ours_content: str | None
    theirs_content: str | None
    base_content: str | None
    status: Literal["unresolved", "resolved"] = "unresolved"
    file_size: int = 0


@dataclass
class MergeOutcome:
    """Result of merging a branch into the current one."""

    success: bool
    had_conflicts: bool = False
    conflicts: list[ConflictInfo] = field(default_factory=list)
    merge_commit_hash: str | None = None
    error: str | None = None


@dataclass
class SafetyCheck:
    safe: bool
    warnings: list[str] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Ours:
    """Keep the current branch's side of a conflict."""


@dataclass(frozen=True)
class Theirs:
    """Keep the incoming branch's side of a conflict."""


@dataclass(frozen=True)
class Manual:
    """Replace the conflicted file with hand-written content."""

    content: str


Resolution = Ours | Theirs | Manual


@dataclass
class TaskBranchMapping:
    """Persisted association between one task and its branch."""

    task_id: str
    branch_name: str
    created_at: str
    base_commit_hash: str
    head_commit_hash: str
    is_checked_out: bool = False
    is_merged: bool = False
    merge_commit_hash: str | None = None
    merged_to: str | None = None


@dataclass
class ReviewBranchInfo:
    """The staging branch and the tasks currently merged into it."""

    name: str
    merged_task_ids: list[str] = field(default_factory=list)
    head_commit_hash: str = ""
    last_merge_at: str = ""


@dataclass
class OperationLogEntry:
    id: str
    command: str
    timestamp: str
    task_id: str | None
    success: bool
    stdout: str
    stderr: str
    initiated_by: Initiator
    duration_ms: int


@dataclass
class LifecycleState:
    """Everything the lifecycle manager persists for a project."""

    mappings: list[TaskBranchMapping] = field(default_factory=list)
    review_branch: ReviewBranchInfo | None = None
    operation_log: list[OperationLogEntry] = field(default_factory=list)
    version: int = STATE_VERSION


@dataclass
class TaskStatusChangeResult:
    """What a lifecycle call hands back to its caller."""

    success: bool
    branch_name: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    merge_result: MergeOutcome | None = None
