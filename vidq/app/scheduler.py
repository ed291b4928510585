"""Admission control: which pending tasks may start given the concurrency ceiling."""
from typing import Callable, Iterable, List, Optional

from vidq.core.config import DEFAULT_CONCURRENCY
from vidq.core.entities import Task, TaskStatus


def resolve_ceiling(value) -> int:
    try:
        ceiling = int(value)
    except (TypeError, ValueError):
        return DEFAULT_CONCURRENCY
    return ceiling if ceiling > 0 else DEFAULT_CONCURRENCY


def count_active(tasks: Iterable[Task]) -> int:
    return sum(1 for t in tasks if t.is_active)


def is_eligible(task: Task) -> bool:
    # playlist parents are aggregates and never own a process
    return task.status == TaskStatus.PENDING and not task.is_playlist


def select_admissions(
    tasks: Iterable[Task],
    ceiling: int,
    is_busy: Optional[Callable[[Task], bool]] = None,
) -> List[Task]:
    """
    Pending tasks to start now, in registry order. `is_busy` excludes tasks
    whose previous runner has not finished yet, so a task never owns two
    processes at once.
    """
    tasks = list(tasks)
    free = resolve_ceiling(ceiling) - count_active(tasks)
    admitted = []
    for task in tasks:
        if free <= 0:
            break
        if not is_eligible(task):
            continue
        if is_busy and is_busy(task):
            continue
        admitted.append(task)
        free -= 1
    return admitted
