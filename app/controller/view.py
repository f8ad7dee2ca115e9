from typing import Iterable

from app.models import TaskFilter, TaskResponse


def matches(task: TaskResponse, task_filter: TaskFilter) -> bool:
    if task_filter is TaskFilter.ACTIVE:
        return not task.completed
    if task_filter is TaskFilter.COMPLETED:
        return task.completed
    return True


def derive_view(tasks: Iterable[TaskResponse], task_filter: TaskFilter = TaskFilter.ALL) -> list[TaskResponse]:
    """Filter, then order High > Medium > Low. sorted() is stable, so equal
    priorities keep their cache order."""
    kept = [t for t in tasks if matches(t, task_filter)]
    return sorted(kept, key=lambda t: t.priority.rank, reverse=True)
