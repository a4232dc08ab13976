"""Task-branch lifecycle: maps task status changes onto git operations."""

import copy
import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from taskgit.config import GitConfig, GitMode
from taskgit.git_ops import GitRepo
from taskgit.models import (
    LOG_CAPACITY,
    LOG_OUTPUT_LIMIT,
    CommandResult,
    Initiator,
    LifecycleState,
    Manual,
    MergeOutcome,
    OperationLogEntry,
    Ours,
    Resolution,
    ReviewBranchInfo,
    TaskBranchMapping,
    TaskStatusChangeResult,
)
from taskgit.state import StateStore, default_state_path
from taskgit.tasks import Task, TaskStatus, TaskStore, active_task_ids

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _resolution_label(resolution: Resolution) -> str:
    if isinstance(resolution, Ours):
        return "ours"
    if isinstance(resolution, Manual):
        return "manual"
    return "theirs"


class LifecycleManager:
    """Owns the persisted task/branch mappings for one project root.

    Calls must be serialized by the caller: every transition may check out a
    different branch in the single working tree.
    """

    def __init__(
        self,
        project_root: Path,
        task_store: TaskStore,
        git: GitRepo | None = None,
        state_store: StateStore | None = None,
    ) -> None:
        self.project_root = project_root
        self.task_store = task_store
        self._git = git or GitRepo(project_root)
        self._store = state_store or StateStore(default_state_path(project_root))
        self._state = self._store.load()

    @property
    def git(self) -> GitRepo:
        return self._git

    # State

    def _save(self) -> None:
        self._store.save(self._state)

    def get_state(self) -> LifecycleState:
        return copy.deepcopy(self._state)

    def _log_operation(
        self,
        command: str,
        success: bool,
        stdout: str,
        stderr: str,
        task_id: str | None,
        initiated_by: Initiator,
        duration_ms: int,
    ) -> None:
        entry = OperationLogEntry(
            id=uuid.uuid4().hex,
            command=command,
            timestamp=_now(),
            task_id=task_id,
            success=success,
            stdout=stdout[:LOG_OUTPUT_LIMIT],
            stderr=stderr[:LOG_OUTPUT_LIMIT],
            initiated_by=initiated_by,
            duration_ms=duration_ms,
        )
        self._state.operation_log = [entry, *self._state.operation_log][:LOG_CAPACITY]
        self._save()

    def _logged(
        self,
        command: str,
        task_id: str | None,
        initiated_by: Initiator,
        action: Callable[[], CommandResult],
    ) -> CommandResult:
        started = time.monotonic()
        result = action()
        self._log_operation(
            command,
            result.success,
            result.stdout,
            result.stderr,
            task_id,
            initiated_by,
            _elapsed_ms(started),
        )
        return result

    def _logged_merge(
        self, source: str, message: str, task_id: str | None, initiated_by: Initiator
    ) -> MergeOutcome:
        started = time.monotonic()
        outcome = self._git.merge_branch(source, message=message)
        self._log_operation(
            f"git merge {source}",
            outcome.success,
            "",
            outcome.error or "",
            task_id,
            initiated_by,
            _elapsed_ms(started),
        )
        return outcome

    def get_operation_logs(
        self, limit: int = 50, task_id: str | None = None
    ) -> list[OperationLogEntry]:
        logs = self._state.operation_log
        if task_id is not None:
            logs = [entry for entry in logs if entry.task_id == task_id]
        return [copy.copy(entry) for entry in logs[:limit]]

    # Mappings

    def _find(self, task_id: str) -> TaskBranchMapping | None:
        return next((m for m in self._state.mappings if m.task_id == task_id), None)

    def get_task_branch_mapping(self, task_id: str) -> TaskBranchMapping | None:
        mapping = self._find(task_id)
        return copy.copy(mapping) if mapping else None

    def get_all_mappings(self) -> list[TaskBranchMapping]:
        return [copy.copy(m) for m in self._state.mappings]

    def get_mapping_by_branch(self, branch_name: str) -> TaskBranchMapping | None:
        mapping = next((m for m in self._state.mappings if m.branch_name == branch_name), None)
        return copy.copy(mapping) if mapping else None

    def _mark_checked_out(self, branch_name: str | None) -> None:
        for mapping in self._state.mappings:
            mapping.is_checked_out = mapping.branch_name == branch_name

    def _checkout(
        self, branch: str, task_id: str | None, initiated_by: Initiator
    ) -> CommandResult:
        result = self._logged(
            f"git checkout {branch}",
            task_id,
            initiated_by,
            lambda: self._git.checkout_branch(branch),
        )
        if result.success:
            self._mark_checked_out(branch)
            self._save()
        return result

    def _pull(
        self, branch: str, task_id: str | None, initiated_by: Initiator, warnings: list[str]
    ) -> None:
        result = self._logged(
            f"git pull origin {branch}",
            task_id,
            initiated_by,
            lambda: self._git.pull(branch),
        )
        if not result.success:
            warnings.append(f"Could not pull latest changes for {branch}: {result.error}")

    def create_task_branch(
        self, task: Task, config: GitConfig, initiated_by: Initiator = "system"
    ) -> TaskStatusChangeResult:
        """Create (but do not check out) the branch for a task."""
        existing = self._find(task.id)
        if existing:
            return TaskStatusChangeResult(
                success=False,
                error=f"Task {task.id} already has a branch: {existing.branch_name}",
            )

        branch_name = self._git.generate_branch_name(task.id, task.title, config.branch_convention)
        if self._git.branch_exists(branch_name):
            return TaskStatusChangeResult(
                success=False, error=f"Branch {branch_name} already exists"
            )

        base_commit = self._git.get_head_commit()
        if not base_commit:
            return TaskStatusChangeResult(
                success=False, error="Could not get current HEAD commit"
            )

        result = self._logged(
            f"git branch {branch_name} {config.main_branch}",
            task.id,
            initiated_by,
            lambda: self._git.create_branch(branch_name, config.main_branch),
        )
        if not result.success:
            return TaskStatusChangeResult(
                success=False, error=result.error or "Failed to create branch"
            )

        self._state.mappings.append(
            TaskBranchMapping(
                task_id=task.id,
                branch_name=branch_name,
                created_at=_now(),
                base_commit_hash=base_commit,
                head_commit_hash=base_commit,
            )
        )
        self._save()
        logger.info("created branch %s for task %s", branch_name, task.id)
        return TaskStatusChangeResult(success=True, branch_name=branch_name)

    def checkout_task_branch(
        self, task_id: str, initiated_by: Initiator = "system"
    ) -> TaskStatusChangeResult:
        mapping = self._find(task_id)
        if not mapping:
            return TaskStatusChangeResult(
                success=False, error=f"No branch mapping found for task {task_id}"
            )

        result = self._checkout(mapping.branch_name, task_id, initiated_by)
        if not result.success:
            return TaskStatusChangeResult(
                success=False, error=result.error or "Failed to checkout branch"
            )
        return TaskStatusChangeResult(success=True, branch_name=mapping.branch_name)

    def detach_branch_from_task(self, task_id: str) -> TaskStatusChangeResult:
        """Forget the mapping but leave the branch in place."""
        mapping = self._find(task_id)
        if not mapping:
            return TaskStatusChangeResult(
                success=False, error=f"No branch mapping found for task {task_id}"
            )

        self._state.mappings = [m for m in self._state.mappings if m.task_id != task_id]
        self._save()
        return TaskStatusChangeResult(
            success=True,
            branch_name=mapping.branch_name,
            warnings=[f"Branch {mapping.branch_name} was detached but not deleted"],
        )

    def delete_task_branch(
        self, task_id: str, force: bool = False, initiated_by: Initiator = "system"
    ) -> TaskStatusChangeResult:
        mapping = self._find(task_id)
        if not mapping:
            return TaskStatusChangeResult(
                success=False, error=f"No branch mapping found for task {task_id}"
            )
        if mapping.is_checked_out:
            return TaskStatusChangeResult(
                success=False,
                error=f"Cannot delete currently checked out branch {mapping.branch_name}",
            )

        branch_name = mapping.branch_name
        result = self._logged(
            f"git branch {'-D' if force else '-d'} {branch_name}",
            task_id,
            initiated_by,
            lambda: self._git.delete_branch(branch_name, force),
        )
        if not result.success:
            return TaskStatusChangeResult(
                success=False, error=result.error or "Failed to delete branch"
            )

        self._state.mappings = [m for m in self._state.mappings if m.task_id != task_id]
        self._save()
        return TaskStatusChangeResult(success=True, branch_name=branch_name)

    # State machine

    def handle_task_status_change(
        self,
        task: Task,
        from_status: TaskStatus | str,
        to_status: TaskStatus | str,
        config: GitConfig,
        initiated_by: Initiator = "system",
    ) -> TaskStatusChangeResult:
        """Apply the git side effects of moving ``task`` between two statuses."""
        if not config.is_active:
            return TaskStatusChangeResult(success=True)

        try:
            transition = (TaskStatus(from_status), TaskStatus(to_status))
        except ValueError:
            return TaskStatusChangeResult(success=True)
        handlers = {
            (TaskStatus.BACKLOG, TaskStatus.DOING): self._start_work,
            (TaskStatus.TODO, TaskStatus.DOING): self._start_work,
            (TaskStatus.DOING, TaskStatus.REVIEW): self._move_to_review,
            (TaskStatus.REVIEW, TaskStatus.DONE): self._complete,
            (TaskStatus.REVIEW, TaskStatus.DOING): self._revert_from_review,
        }
        handler = handlers.get(transition)
        if handler is None:
            return TaskStatusChangeResult(success=True)

        logger.info("task %s: %s -> %s", task.id, transition[0].value, transition[1].value)
        result = handler(task, config, initiated_by)
        if not result.success:
            logger.warning("task %s transition failed: %s", task.id, result.error)
        return result

    def handle_status_change_by_id(
        self,
        task_id: str,
        from_status: TaskStatus | str,
        to_status: TaskStatus | str,
        config: GitConfig,
        initiated_by: Initiator = "system",
    ) -> TaskStatusChangeResult:
        task = self.task_store.get_task(task_id)
        if task is None:
            return TaskStatusChangeResult(success=False, error=f"Unknown task {task_id}")
        return self.handle_task_status_change(task, from_status, to_status, config, initiated_by)

    def _start_work(
        self, task: Task, config: GitConfig, initiated_by: Initiator
    ) -> TaskStatusChangeResult:
        if self._find(task.id):
            return self.checkout_task_branch(task.id, initiated_by)

        warnings: list[str] = []
        status = self._git.get_status()
        if status.is_dirty and config.mode is GitMode.ADVANCED:
            warnings.append("Working tree has uncommitted changes")
        if status.behind > 0:
            warnings.append(f"Branch is {status.behind} commits behind upstream")

        if config.mode is GitMode.ADVANCED:
            checkout = self._checkout(config.main_branch, task.id, initiated_by)
            if not checkout.success:
                return TaskStatusChangeResult(
                    success=False,
                    error=f"Failed to checkout {config.main_branch}: {checkout.error}",
                    warnings=warnings,
                )
            self._pull(config.main_branch, task.id, initiated_by, warnings)

        created = self.create_task_branch(task, config, initiated_by)
        if not created.success:
            created.warnings = warnings + created.warnings
            return created

        checkout_result = self.checkout_task_branch(task.id, initiated_by)
        checkout_result.warnings = warnings + checkout_result.warnings
        return checkout_result

    def _move_to_review(
        self, task: Task, config: GitConfig, initiated_by: Initiator
    ) -> TaskStatusChangeResult:
        mapping = self._find(task.id)
        if config.mode is GitMode.BASIC:
            return TaskStatusChangeResult(
                success=True, branch_name=mapping.branch_name if mapping else None
            )
        if not mapping:
            return TaskStatusChangeResult(success=False, error="No branch found for this task")

        warnings: list[str] = []
        if self._git.get_status().is_dirty:
            self._commit_pending(task, mapping, config, initiated_by, warnings)

        if config.review_branch:
            merged = self.merge_task_to_review(task.id, config, initiated_by)
            merged.warnings = warnings + merged.warnings
            return merged

        self._save()
        return TaskStatusChangeResult(
            success=True, branch_name=mapping.branch_name, warnings=warnings
        )

    def _commit_pending(
        self,
        task: Task,
        mapping: TaskBranchMapping,
        config: GitConfig,
        initiated_by: Initiator,
        warnings: list[str],
    ) -> None:
        staged = self._logged(
            "git add -A", task.id, initiated_by, lambda: self._git.stage_files("all")
        )
        if not staged.success:
            warnings.append(f"Could not stage changes: {staged.error}")
            return

        message = config.commit_message_template.replace("{taskId}", task.id).replace(
            "{title}", task.title
        )
        committed = self._logged(
            "git commit", task.id, initiated_by, lambda: self._git.commit(message)
        )
        if not committed.success:
            warnings.append(f"Could not commit changes: {committed.error}")
            return

        head = self._git.get_head_commit()
        if head:
            mapping.head_commit_hash = head
            self._save()

    def _complete(
        self, task: Task, config: GitConfig, initiated_by: Initiator
    ) -> TaskStatusChangeResult:
        mapping = self._find(task.id)
        if not mapping:
            return TaskStatusChangeResult(success=True)

        if config.mode is GitMode.BASIC:
            mapping.is_merged = True
            self._save()
            return TaskStatusChangeResult(success=True, branch_name=mapping.branch_name)

        merged = self.merge_task_to_main(task.id, config, initiated_by)
        if not merged.success:
            return merged

        deleted = self.delete_task_branch(task.id, False, initiated_by)
        warnings = list(merged.warnings)
        if not deleted.success:
            warnings.append(f"Branch was merged but could not be deleted: {deleted.error}")
        return TaskStatusChangeResult(
            success=True,
            branch_name=merged.branch_name,
            warnings=warnings,
            merge_result=merged.merge_result,
        )

    def _revert_from_review(
        self, task: Task, config: GitConfig, initiated_by: Initiator
    ) -> TaskStatusChangeResult:
        mapping = self._find(task.id)
        if not mapping:
            return TaskStatusChangeResult(success=True)
        if config.mode is GitMode.BASIC:
            return TaskStatusChangeResult(success=True, branch_name=mapping.branch_name)

        checkout = self.checkout_task_branch(task.id, initiated_by)
        if not checkout.success:
            return checkout

        review = self._state.review_branch
        if review and task.id in review.merged_task_ids:
            review.merged_task_ids = [tid for tid in review.merged_task_ids if tid != task.id]
            self._save()

        return TaskStatusChangeResult(
            success=True,
            branch_name=mapping.branch_name,
            warnings=["Changes previously merged into the review branch were not reverted"],
        )

    # Merges

    def _merge_failure(self, outcome: MergeOutcome, warnings: list[str]) -> TaskStatusChangeResult:
        error = "Merge conflicts detected" if outcome.had_conflicts else outcome.error
        return TaskStatusChangeResult(
            success=False,
            error=error or "Merge failed",
            warnings=warnings,
            merge_result=outcome,
        )

    def merge_task_to_review(
        self, task_id: str, config: GitConfig, initiated_by: Initiator = "system"
    ) -> TaskStatusChangeResult:
        """Merge a task branch into the configured review branch."""
        review_name = config.review_branch
        if not review_name:
            return TaskStatusChangeResult(success=False, error="No review branch configured")
        mapping = self._find(task_id)
        if not mapping:
            return TaskStatusChangeResult(
                success=False, error=f"No branch found for task {task_id}"
            )

        checkout = self._checkout(review_name, task_id, initiated_by)
        if not checkout.success:
            checkout = self._logged(
                f"git checkout -b {review_name} {config.main_branch}",
                task_id,
                initiated_by,
                lambda: self._git.checkout_branch(
                    review_name, create=True, start_point=config.main_branch
                ),
            )
            if not checkout.success:
                return TaskStatusChangeResult(
                    success=False,
                    error=f"Failed to checkout/create review branch: {checkout.error}",
                )
            self._mark_checked_out(review_name)

        outcome = self._logged_merge(
            mapping.branch_name, f"Merge {task_id} into {review_name}", task_id, initiated_by
        )
        if not outcome.success:
            self._save()
            return self._merge_failure(outcome, [])

        mapping.is_merged = True
        mapping.merge_commit_hash = outcome.merge_commit_hash
        mapping.merged_to = review_name

        review = self._state.review_branch
        if review is None or review.name != review_name:
            review = ReviewBranchInfo(name=review_name)
            self._state.review_branch = review
        if task_id not in review.merged_task_ids:
            review.merged_task_ids.append(task_id)
        if outcome.merge_commit_hash:
            review.head_commit_hash = outcome.merge_commit_hash
        review.last_merge_at = _now()

        self._save()
        return TaskStatusChangeResult(
            success=True, branch_name=mapping.branch_name, merge_result=outcome
        )

    def merge_task_to_main(
        self, task_id: str, config: GitConfig, initiated_by: Initiator = "system"
    ) -> TaskStatusChangeResult:
        mapping = self._find(task_id)
        if not mapping:
            return TaskStatusChangeResult(
                success=False, error=f"No branch found for task {task_id}"
            )

        checkout = self._checkout(config.main_branch, task_id, initiated_by)
        if not checkout.success:
            return TaskStatusChangeResult(
                success=False,
                error=f"Failed to checkout {config.main_branch}: {checkout.error}",
            )

        warnings: list[str] = []
        self._pull(config.main_branch, task_id, initiated_by, warnings)

        outcome = self._logged_merge(
            mapping.branch_name,
            f"Merge {task_id}: {mapping.branch_name}",
            task_id,
            initiated_by,
        )
        if not outcome.success:
            return self._merge_failure(outcome, warnings)

        mapping.is_merged = True
        mapping.merge_commit_hash = outcome.merge_commit_hash
        mapping.merged_to = config.main_branch
        self._save()
        return TaskStatusChangeResult(
            success=True,
            branch_name=mapping.branch_name,
            warnings=warnings,
            merge_result=outcome,
        )

    def merge_review_to_main(
        self, config: GitConfig, initiated_by: Initiator = "system"
    ) -> TaskStatusChangeResult:
        """Promote everything staged on the review branch into main."""
        review_name = config.review_branch
        if not review_name:
            return TaskStatusChangeResult(success=False, error="No review branch configured")

        checkout = self._checkout(config.main_branch, None, initiated_by)
        if not checkout.success:
            return TaskStatusChangeResult(
                success=False,
                error=f"Failed to checkout {config.main_branch}: {checkout.error}",
            )

        warnings: list[str] = []
        self._pull(config.main_branch, None, initiated_by, warnings)

        outcome = self._logged_merge(
            review_name, f"Merge {review_name} into {config.main_branch}", None, initiated_by
        )
        if not outcome.success:
            return self._merge_failure(outcome, warnings)

        review = self._state.review_branch
        if review:
            for task_id in review.merged_task_ids:
                mapping = self._find(task_id)
                if mapping:
                    mapping.merged_to = config.main_branch
            review.merged_task_ids = []

        self._save()
        return TaskStatusChangeResult(success=True, warnings=warnings, merge_result=outcome)

    # Conflicts

    def abort_merge(
        self, task_id: str | None = None, initiated_by: Initiator = "user"
    ) -> CommandResult:
        return self._logged("git merge --abort", task_id, initiated_by, self._git.abort_merge)

    def resolve_conflict(
        self,
        file_path: str,
        resolution: Resolution,
        task_id: str | None = None,
        initiated_by: Initiator = "user",
    ) -> CommandResult:
        return self._logged(
            f"resolve {file_path} ({_resolution_label(resolution)})",
            task_id,
            initiated_by,
            lambda: self._git.resolve_conflict(file_path, resolution),
        )

    # Maintenance

    def sync_with_git_branches(self) -> list[str]:
        """Drop mappings whose branch is gone and refresh checkout flags.

        Returns the task ids whose mappings were dropped.
        """
        branches = self._git.list_branches(include_remote=False)
        if not branches:
            logger.warning("no local branches reported; leaving mappings untouched")
            return []

        names = {branch.name for branch in branches}
        dropped = [m.task_id for m in self._state.mappings if m.branch_name not in names]
        self._state.mappings = [m for m in self._state.mappings if m.branch_name in names]

        current = next((branch.name for branch in branches if branch.is_current), None)
        self._mark_checked_out(current)
        self._save()
        if dropped:
            logger.info("dropped stale mappings for %s", ", ".join(dropped))
        return dropped

    def cleanup_orphan_branches(self, initiated_by: Initiator = "system") -> list[str]:
        """Delete task branches whose task is done or gone from the task store."""
        started = time.monotonic()
        deleted = self._git.cleanup_orphan_branches(active_task_ids(self.task_store))
        gone = set(deleted)
        self._state.mappings = [m for m in self._state.mappings if m.branch_name not in gone]
        self._log_operation(
            "cleanup orphan branches",
            True,
            "\n".join(deleted),
            "",
            None,
            initiated_by,
            _elapsed_ms(started),
        )
        return deleted
