"""Hierarchy graph validation for the epic/task/subtask lattice.

Rules, each reported independently:
- parent-not-found: parentId must resolve (otherwise the task is an orphan)
- invalid-parent-type: epics have no parent; subtasks have no children
- depth-exceeded: at most ``max_depth`` levels (root is level 0)
- sibling-limit: at most ``max_siblings`` open children per parent
- hierarchy-cycle: following parentId never returns to the start
"""

from collections import defaultdict
from typing import Callable

from taskvault.errors import ErrorCategory, Violation
from taskvault.graph import find_cycles, has_path
from taskvault.models import LiveStore, Task, TaskType
from taskvault.policy import HierarchyPolicy


def infer_type(parent: Task | None) -> TaskType:
    """Type for a task created without one.

    No parent or an epic parent gives ``task``; a task parent gives
    ``subtask``. A subtask parent is rejected later by validation, so the
    inferred type there is irrelevant.
    """
    if parent is None or parent.type == TaskType.EPIC:
        return TaskType.TASK
    return TaskType.SUBTASK


def rotate_cycle(path: list[str]) -> tuple[str, ...]:
    """Rotate a cycle path to start at its smallest id, keeping direction."""
    if not path:
        return ()
    start = path.index(min(path))
    return tuple(path[start:] + path[:start])


def task_depth(task: Task, index: dict[str, Task]) -> int | None:
    """Number of ancestors of a task, or None if the chain loops."""
    depth = 0
    seen = {task.id}
    current = task
    while current.parent_id is not None and current.parent_id in index:
        if current.parent_id in seen:
            return None
        seen.add(current.parent_id)
        current = index[current.parent_id]
        depth += 1
    return depth


def check_parent(
    store: LiveStore,
    parent_id: str | None,
    task_id: str | None = None,
    task_type: TaskType | None = None,
    policy: HierarchyPolicy | None = None,
) -> list[Violation]:
    """Pre-flight check for placing a task under ``parent_id``.

    Used by add and reparent before any mutation so the caller gets the
    same tagged violations the commit-time validator would report.
    """
    policy = policy or HierarchyPolicy()
    if parent_id is None:
        return []
    subject = task_id or "new task"
    if task_type == TaskType.EPIC:
        return [
            Violation(
                ErrorCategory.INVALID_PARENT_TYPE,
                f"Epic {subject} cannot have a parent",
                task_id,
            )
        ]
    index = store.index()
    parent = index.get(parent_id)
    if parent is None:
        return [
            Violation(
                ErrorCategory.PARENT_NOT_FOUND,
                f"Parent {parent_id} not found",
                task_id,
            )
        ]
    violations = []
    if parent.type == TaskType.SUBTASK:
        violations.append(
            Violation(
                ErrorCategory.INVALID_PARENT_TYPE,
                f"Subtask {parent_id} cannot have children",
                task_id,
            )
        )
    if task_id is not None:
        if has_path(parent_id, task_id, _parent_edge(index)):
            violations.append(
                Violation(
                    ErrorCategory.HIERARCHY_CYCLE,
                    f"Moving {task_id} under {parent_id} would create a cycle",
                    task_id,
                )
            )
            return violations
    parent_depth = task_depth(parent, index)
    if parent_depth is not None and parent_depth + 1 >= policy.max_depth:
        violations.append(
            Violation(
                ErrorCategory.DEPTH_EXCEEDED,
                f"Placing {subject} under {parent_id} exceeds maximum depth {policy.max_depth}",
                task_id,
                measure=parent_depth + 1,
            )
        )
    return violations


def _parent_edge(index: dict[str, Task]) -> Callable[[str], list[str]]:
    def edge(task_id: str) -> list[str]:
        parent_id = index[task_id].parent_id if task_id in index else None
        return [parent_id] if parent_id in index else []

    return edge


class HierarchyValidator:
    """Validates parent/child structure of a live store.

    Example:
        >>> validator = HierarchyValidator(HierarchyPolicy(max_siblings=7))
        >>> violations = validator.validate(store)
        >>> [v.code for v in violations]
        ['invalid-parent-type']
    """

    def __init__(self, policy: HierarchyPolicy | None = None):
        self.policy = policy or HierarchyPolicy()

    def validate(self, store: LiveStore) -> list[Violation]:
        index = store.index()
        violations: list[Violation] = []
        violations.extend(self._check_parents(store.tasks, index))
        cycles = self._check_cycles(store.tasks, index)
        violations.extend(cycles)
        in_cycle = {task_id for v in cycles for task_id in v.path}
        violations.extend(self._check_depth(store.tasks, index, in_cycle))
        violations.extend(self._check_siblings(store.tasks, index))
        return violations

    def _check_parents(self, tasks: list[Task], index: dict[str, Task]) -> list[Violation]:
        violations = []
        for task in tasks:
            if task.parent_id is None:
                continue
            if task.type == TaskType.EPIC:
                violations.append(
                    Violation(
                        ErrorCategory.INVALID_PARENT_TYPE,
                        f"Epic {task.id} cannot have a parent",
                        task.id,
                    )
                )
            parent = index.get(task.parent_id)
            if parent is None:
                violations.append(
                    Violation(
                        ErrorCategory.PARENT_NOT_FOUND,
                        f"Parent {task.parent_id} of {task.id} not found",
                        task.id,
                    )
                )
            elif parent.type == TaskType.SUBTASK:
                violations.append(
                    Violation(
                        ErrorCategory.INVALID_PARENT_TYPE,
                        f"Subtask {parent.id} cannot have children ({task.id})",
                        task.id,
                    )
                )
        return violations

    def _check_cycles(self, tasks: list[Task], index: dict[str, Task]) -> list[Violation]:
        violations = []
        for path in find_cycles([t.id for t in tasks], _parent_edge(index)):
            rotated = rotate_cycle(path)
            violations.append(
                Violation(
                    ErrorCategory.HIERARCHY_CYCLE,
                    f"Circular parent chain: {' -> '.join(rotated + rotated[:1])}",
                    rotated[0],
                    path=rotated,
                )
            )
        return violations

    def _check_depth(
        self, tasks: list[Task], index: dict[str, Task], skip: set[str]
    ) -> list[Violation]:
        violations = []
        for task in tasks:
            if task.id in skip:
                continue
            depth = task_depth(task, index)
            if depth is not None and depth >= self.policy.max_depth:
                violations.append(
                    Violation(
                        ErrorCategory.DEPTH_EXCEEDED,
                        f"Task {task.id} is at depth {depth + 1}; maximum is {self.policy.max_depth}",
                        task.id,
                        measure=depth,
                    )
                )
        return violations

    def _check_siblings(self, tasks: list[Task], index: dict[str, Task]) -> list[Violation]:
        limit = self.policy.max_siblings
        if limit == 0:
            return []
        counts: dict[str, int] = defaultdict(int)
        for task in tasks:
            if task.parent_id is None or task.parent_id not in index:
                continue
            if task.status.is_terminal and not self.policy.count_done_in_limit:
                continue
            counts[task.parent_id] += 1
        return [
            Violation(
                ErrorCategory.SIBLING_LIMIT,
                f"Task {parent_id} has {count} children; maximum is {limit}",
                parent_id,
                measure=count,
            )
            for parent_id, count in counts.items()
            if count > limit
        ]
