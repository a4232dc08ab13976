"""Task records and the store interface the lifecycle manager depends on."""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class TaskStatus(str, Enum):
    BACKLOG = "backlog"
    TODO = "todo"
    DOING = "doing"
    REVIEW = "review"
    DONE = "done"


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    status: TaskStatus = TaskStatus.BACKLOG


class TaskStore(Protocol):
    """Read access to the external task store."""

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(self) -> list[Task]: ...


class InMemoryTaskStore:
    """Dict-backed TaskStore used by the CLI and tests."""

    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self._tasks = {task.id: task for task in tasks}

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def list_tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def put(self, task: Task) -> None:
        self._tasks[task.id] = task


def active_task_ids(store: TaskStore) -> set[str]:
    """Ids of tasks that may still own a branch (everything not done)."""
    return {task.id for task in store.list_tasks() if task.status is not TaskStatus.DONE}
