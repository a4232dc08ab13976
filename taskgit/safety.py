"""Pure helpers: branch naming, task id extraction and pre-operation safety checks."""

import re

from taskgit.config import GitConfig
from taskgit.models import RepositoryStatus, SafetyCheck

TASK_BRANCH_RE = re.compile(r"^task/([A-Z]+-\d+)", re.IGNORECASE)
SLUG_MAX_LENGTH = 50

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def slugify(title: str) -> str:
    """Lowercase, collapse non-alphanumerics to hyphens, trim, cap at 50 chars."""
    slug = _NON_ALNUM_RE.sub("-", title.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH]


def generate_branch_name(task_id: str, title: str, convention: str) -> str:
    """Expand a ``{taskId}``/``{slug}`` convention for a task."""
    return convention.replace("{taskId}", task_id).replace("{slug}", slugify(title))


def extract_task_id(branch_name: str) -> str | None:
    match = TASK_BRANCH_RE.match(branch_name)
    return match.group(1) if match else None


def run_safety_check(
    operation: str,
    status: RepositoryStatus,
    config: GitConfig,
    target: str | None = None,
) -> SafetyCheck:
    """Decide whether ``operation`` may proceed given the repository status.

    ``target`` is the branch a delete or force-push acts on; it defaults to the
    current branch.
    """
    warnings: list[str] = []
    blockers: list[str] = []
    suggestions: list[str] = []

    if status.is_dirty and operation in {"checkout", "merge"}:
        warnings.append("You have uncommitted changes that may be affected")
        suggestions.append("Consider committing or stashing your changes first")

    if status.is_merging:
        blockers.append("A merge is currently in progress")
        suggestions.append("Resolve the current merge before proceeding")

    if status.is_rebasing:
        blockers.append("A rebase is currently in progress")
        suggestions.append("Complete or abort the current rebase first")

    if operation in {"delete", "force-push"}:
        branch = target or status.current_branch
        if branch and branch in config.protected_branches:
            blockers.append(f"Cannot perform {operation} on protected branch: {branch}")

    if operation == "push" and status.behind > 0:
        warnings.append(f"Branch is {status.behind} commits behind upstream")
        suggestions.append("Consider pulling first to avoid push rejection")

    return SafetyCheck(
        safe=not blockers,
        warnings=warnings,
        blockers=blockers,
        suggestions=suggestions,
    )
