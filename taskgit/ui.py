from __future__ import annotations

import datetime as dt
from collections.abc import Iterable

import questionary
from prompt_toolkit.completion import FuzzyCompleter, WordCompleter
from prompt_toolkit.shortcuts import prompt
from rich.table import Table
from rich.text import Text

from .models import (
    BranchInfo,
    ConflictInfo,
    Manual,
    OperationLogEntry,
    Ours,
    RepositoryStatus,
    Resolution,
    TaskBranchMapping,
    TaskStatusChangeResult,
    Theirs,
)

MESSAGE_WIDTH = 48


def format_relative_age(timestamp: str, now: dt.datetime | None = None) -> str:
    if not timestamp:
        return "unknown"
    try:
        then = dt.datetime.fromisoformat(timestamp)
    except ValueError:
        return timestamp
    if then.tzinfo is None:
        then = then.replace(tzinfo=dt.timezone.utc)
    now = now or dt.datetime.now(dt.timezone.utc)
    seconds = (now - then).total_seconds()
    if seconds < 60:
        return "just now"
    minutes = int(seconds // 60)
    if minutes < 60:
        unit = "minute" if minutes == 1 else "minutes"
        return f"{minutes} {unit} ago"
    hours = minutes // 60
    if hours < 24:
        unit = "hour" if hours == 1 else "hours"
        return f"{hours} {unit} ago"
    days = hours // 24
    unit = "day" if days == 1 else "days"
    return f"{days} {unit} ago"


def _fit(text: str, width: int) -> str:
    text = text.splitlines()[0] if text else ""
    if len(text) > width:
        return f"{text[: width - 3]}..."
    return text


def _flag(value: bool) -> Text:
    return Text("yes", style="green") if value else Text("-", style="dim")


def render_status(status: RepositoryStatus) -> Table:
    table = Table(show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column()
    if not status.is_repo:
        table.add_row("repository", Text("not a git repository", style="red"))
        return table
    table.add_row("branch", status.current_branch or "(detached)")
    table.add_row("dirty", _flag(status.is_dirty))
    table.add_row(
        "changes",
        f"{status.staged_count} staged, {status.modified_count} modified, "
        f"{status.untracked_count} untracked",
    )
    table.add_row("upstream", f"↑{status.ahead} ↓{status.behind}")
    if status.is_merging:
        table.add_row("state", Text("merge in progress", style="yellow"))
    if status.is_rebasing:
        table.add_row("state", Text("rebase in progress", style="yellow"))
    return table


def render_branches(branches: Iterable[BranchInfo]) -> Table:
    table = Table("", "BRANCH", "TASK", "COMMIT", "MESSAGE")
    for branch in branches:
        name = Text(branch.name, style="cyan" if branch.is_remote else "")
        table.add_row(
            "*" if branch.is_current else "",
            name,
            branch.task_id or "-",
            branch.last_commit_hash,
            _fit(branch.last_commit_message, MESSAGE_WIDTH),
        )
    return table


def render_mappings(mappings: Iterable[TaskBranchMapping]) -> Table:
    table = Table("TASK", "BRANCH", "CHECKED OUT", "MERGED", "MERGED TO", "CREATED")
    for mapping in mappings:
        table.add_row(
            mapping.task_id,
            mapping.branch_name,
            _flag(mapping.is_checked_out),
            _flag(mapping.is_merged),
            mapping.merged_to or "-",
            format_relative_age(mapping.created_at),
        )
    return table


def render_logs(entries: Iterable[OperationLogEntry]) -> Table:
    table = Table("WHEN", "TASK", "COMMAND", "OK", "MS", "BY")
    for entry in entries:
        ok = Text("ok", style="green") if entry.success else Text("fail", style="red")
        table.add_row(
            format_relative_age(entry.timestamp),
            entry.task_id or "-",
            entry.command,
            ok,
            str(entry.duration_ms),
            entry.initiated_by,
        )
    return table


def render_conflicts(conflicts: Iterable[ConflictInfo]) -> Table:
    table = Table("FILE", "TYPE", "SIZE", "STATUS")
    for conflict in conflicts:
        table.add_row(
            conflict.file_path,
            conflict.conflict_type,
            str(conflict.file_size),
            conflict.status,
        )
    return table


def render_result(result: TaskStatusChangeResult) -> Text:
    text = Text()
    if result.success:
        text.append("ok", style="green")
    else:
        text.append("failed", style="red")
        if result.error:
            text.append(f": {result.error}")
    if result.branch_name:
        text.append(f" [{result.branch_name}]", style="cyan")
    for warning in result.warnings:
        text.append(f"\nwarning: {warning}", style="yellow")
    return text


def pick_task(mappings: list[TaskBranchMapping]) -> TaskBranchMapping | None:
    if not mappings:
        return None
    by_label = {f"{m.task_id} {m.branch_name}": m for m in mappings}
    completer = FuzzyCompleter(WordCompleter(list(by_label), ignore_case=True))
    selection = prompt("Task: ", completer=completer)
    return by_label.get(selection)


def pick_resolution(conflict: ConflictInfo) -> Resolution | None:
    choices = ["ours", "theirs"]
    if not conflict.is_binary:
        choices.append("edit")
    choice = questionary.select(
        f"Resolve {conflict.file_path}", choices=[*choices, "skip"]
    ).unsafe_ask()
    if choice == "ours":
        return Ours()
    if choice == "theirs":
        return Theirs()
    if choice == "edit":
        seed = conflict.ours_content or ""
        content = questionary.text("Resolved content", default=seed, multiline=True).unsafe_ask()
        return Manual(content)
    return None


def confirm(text: str) -> bool:
    return bool(questionary.confirm(text, default=False).unsafe_ask())
