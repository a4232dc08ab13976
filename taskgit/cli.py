import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import click
from rich.console import Console

from taskgit import ui
from taskgit.config import ConfigError, GitConfig, load_config
from taskgit.git_ops import GitRepo
from taskgit.lifecycle import LifecycleManager
from taskgit.models import Manual, Ours, Resolution, Theirs
from taskgit.tasks import InMemoryTaskStore, Task, TaskStatus

STATUS_CHOICE = click.Choice([status.value for status in TaskStatus])


@dataclass
class CliContext:
    project_root: Path
    console: Console
    store: InMemoryTaskStore
    _manager: LifecycleManager | None = None

    @property
    def manager(self) -> LifecycleManager:
        if self._manager is None:
            self._manager = LifecycleManager(self.project_root, self.store)
        return self._manager

    @property
    def git(self) -> GitRepo:
        return self.manager.git

    def config(self) -> GitConfig:
        try:
            return load_config(self.project_root)
        except ConfigError as exc:
            raise click.ClickException(str(exc)) from exc


pass_cli = click.make_pass_decorator(CliContext)


def _exit_on_failure(success: bool) -> None:
    if not success:
        raise SystemExit(1)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "-C",
    "--project",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project root (defaults to the enclosing git repository).",
)
@click.option("-v", "--verbose", is_flag=True, help="Log git commands to stderr.")
@click.pass_context
def main(ctx: click.Context, project: Path | None, verbose: bool) -> None:
    """taskgit: keep task branches in step with task status."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    start = (project or Path.cwd()).resolve()
    root = GitRepo(start).get_repo_root() or start
    ctx.obj = CliContext(project_root=root, console=Console(), store=InMemoryTaskStore())


@main.command()
@pass_cli
def status(cli: CliContext) -> None:
    """Show working tree status."""
    cli.console.print(ui.render_status(cli.git.get_status()))


@main.command()
@click.option("--remote/--local", "include_remote", default=False, help="Include remote branches.")
@pass_cli
def branches(cli: CliContext, include_remote: bool) -> None:
    """List branches and the task ids they belong to."""
    cli.console.print(ui.render_branches(cli.git.list_branches(include_remote)))


@main.command()
@pass_cli
def mappings(cli: CliContext) -> None:
    """List persisted task-branch mappings."""
    cli.console.print(ui.render_mappings(cli.manager.get_all_mappings()))


@main.command()
@click.option("-n", "--limit", default=20, show_default=True)
@click.option("--task", "task_id", default=None, help="Only show entries for this task.")
@pass_cli
def logs(cli: CliContext, limit: int, task_id: str | None) -> None:
    """Show the recent git operation log."""
    cli.console.print(ui.render_logs(cli.manager.get_operation_logs(limit, task_id)))


@main.command("branch-name")
@click.argument("task_id")
@click.argument("title")
@pass_cli
def branch_name(cli: CliContext, task_id: str, title: str) -> None:
    """Print the branch name a task would get."""
    convention = cli.config().branch_convention
    click.echo(cli.git.generate_branch_name(task_id, title, convention))


@main.command()
@click.argument("task_id")
@click.argument("from_status", type=STATUS_CHOICE)
@click.argument("to_status", type=STATUS_CHOICE)
@click.option("--title", default="", help="Task title, used for the branch slug.")
@pass_cli
def transition(
    cli: CliContext, task_id: str, from_status: str, to_status: str, title: str
) -> None:
    """Apply the git side effects of moving TASK_ID between statuses."""
    cli.store.put(Task(id=task_id, title=title or task_id, status=TaskStatus(from_status)))
    result = cli.manager.handle_status_change_by_id(
        task_id, from_status, to_status, cli.config(), initiated_by="user"
    )
    cli.console.print(ui.render_result(result))
    if result.merge_result and result.merge_result.conflicts:
        cli.console.print(ui.render_conflicts(result.merge_result.conflicts))
    _exit_on_failure(result.success)


@main.command()
@click.argument("task_id", required=False)
@pass_cli
def checkout(cli: CliContext, task_id: str | None) -> None:
    """Check out a task's branch (pick interactively when TASK_ID is omitted)."""
    if task_id is None:
        picked = ui.pick_task(cli.manager.get_all_mappings())
        if picked is None:
            raise click.ClickException("no task selected")
        task_id = picked.task_id
    result = cli.manager.checkout_task_branch(task_id, initiated_by="user")
    cli.console.print(ui.render_result(result))
    _exit_on_failure(result.success)


@main.command()
@click.argument("task_id")
@pass_cli
def detach(cli: CliContext, task_id: str) -> None:
    """Forget a task's mapping but keep its branch."""
    result = cli.manager.detach_branch_from_task(task_id)
    cli.console.print(ui.render_result(result))
    _exit_on_failure(result.success)


@main.command()
@click.argument("task_id")
@click.option("-f", "--force", is_flag=True, help="Delete even if unmerged.")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation.")
@pass_cli
def delete(cli: CliContext, task_id: str, force: bool, yes: bool) -> None:
    """Delete a task's branch and its mapping."""
    mapping = cli.manager.get_task_branch_mapping(task_id)
    if mapping is None:
        raise click.ClickException(f"No branch mapping found for task {task_id}")
    check = cli.git.run_safety_check("delete", cli.config(), target=mapping.branch_name)
    if not check.safe:
        raise click.ClickException("; ".join(check.blockers))
    if not yes and not ui.confirm(f"Delete branch {mapping.branch_name}?"):
        return
    result = cli.manager.delete_task_branch(task_id, force, initiated_by="user")
    cli.console.print(ui.render_result(result))
    _exit_on_failure(result.success)


@main.command("merge")
@click.argument("task_id")
@click.option("--into", type=click.Choice(["review", "main"]), default="main", show_default=True)
@pass_cli
def merge(cli: CliContext, task_id: str, into: str) -> None:
    """Merge a task branch into the review branch or main."""
    config = cli.config()
    if into == "review":
        result = cli.manager.merge_task_to_review(task_id, config, initiated_by="user")
    else:
        result = cli.manager.merge_task_to_main(task_id, config, initiated_by="user")
    cli.console.print(ui.render_result(result))
    if result.merge_result and result.merge_result.conflicts:
        cli.console.print(ui.render_conflicts(result.merge_result.conflicts))
    _exit_on_failure(result.success)


@main.command()
@pass_cli
def promote(cli: CliContext) -> None:
    """Merge the review branch into main."""
    result = cli.manager.merge_review_to_main(cli.config(), initiated_by="user")
    cli.console.print(ui.render_result(result))
    _exit_on_failure(result.success)


@main.command()
@pass_cli
def conflicts(cli: CliContext) -> None:
    """List files left conflicted by a merge."""
    cli.console.print(ui.render_conflicts(cli.git.get_conflicts()))


@main.command()
@click.argument("file_path", required=False)
@click.option("--ours", "side", flag_value="ours", help="Keep the current branch's version.")
@click.option("--theirs", "side", flag_value="theirs", help="Keep the incoming version.")
@click.option(
    "--content-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Use this file's content as the resolution.",
)
@click.option("--task", "task_id", default=None)
@pass_cli
def resolve(
    cli: CliContext,
    file_path: str | None,
    side: str | None,
    content_file: Path | None,
    task_id: str | None,
) -> None:
    """Resolve conflicted files, interactively when no choice is given."""
    pending = cli.git.get_conflicts()
    if file_path is not None:
        pending = [c for c in pending if c.file_path == file_path]
        if not pending:
            raise click.ClickException(f"{file_path} is not conflicted")

    failed = False
    for conflict in pending:
        resolution: Resolution | None
        if content_file is not None:
            resolution = Manual(content_file.read_text(encoding="utf-8"))
        elif side == "ours":
            resolution = Ours()
        elif side == "theirs":
            resolution = Theirs()
        else:
            resolution = ui.pick_resolution(conflict)
        if resolution is None:
            continue
        result = cli.manager.resolve_conflict(conflict.file_path, resolution, task_id)
        if result.success:
            click.echo(f"resolved {conflict.file_path}")
        else:
            failed = True
            click.echo(f"{conflict.file_path}: {result.error}", err=True)
    _exit_on_failure(not failed)


@main.command()
@click.option("--task", "task_id", default=None)
@pass_cli
def abort(cli: CliContext, task_id: str | None) -> None:
    """Abort the merge in progress."""
    result = cli.manager.abort_merge(task_id)
    if not result.success:
        raise click.ClickException(result.error or "could not abort merge")
    click.echo("merge aborted")


@main.command()
@click.argument("operation")
@click.option("--target", default=None, help="Branch the operation acts on.")
@pass_cli
def check(cli: CliContext, operation: str, target: str | None) -> None:
    """Run the safety check for OPERATION (checkout, merge, push, delete, force-push)."""
    result = cli.git.run_safety_check(operation, cli.config(), target)
    for blocker in result.blockers:
        click.echo(f"blocker: {blocker}")
    for warning in result.warnings:
        click.echo(f"warning: {warning}")
    for suggestion in result.suggestions:
        click.echo(f"suggestion: {suggestion}")
    click.echo("safe" if result.safe else "unsafe")
    _exit_on_failure(result.safe)


@main.command()
@pass_cli
def sync(cli: CliContext) -> None:
    """Reconcile mappings with the branches that actually exist."""
    dropped = cli.manager.sync_with_git_branches()
    for task_id in dropped:
        click.echo(f"dropped mapping for {task_id}")
    click.echo(f"{len(cli.manager.get_all_mappings())} mappings in sync")


@main.command()
@click.option("--active", "active", multiple=True, help="Task id that is still active.")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation.")
@pass_cli
def cleanup(cli: CliContext, active: tuple[str, ...], yes: bool) -> None:
    """Delete task branches whose task is not in --active."""
    for task_id in active:
        cli.store.put(Task(id=task_id, title=task_id, status=TaskStatus.DOING))
    if not yes and not ui.confirm("Delete all task branches not listed as active?"):
        return
    for name in cli.manager.cleanup_orphan_branches(initiated_by="user"):
        click.echo(f"deleted {name}")


if __name__ == "__main__":
    main()
