"""Dependency graph validation.

Every dependsOn edge must resolve, must not point at its own task, and
the graph as a whole must be acyclic. Cycles are reported with their
full path so a caller can see which edge to drop.
"""

from typing import Iterable

from taskvault.errors import ErrorCategory, Violation
from taskvault.graph import find_cycles
from taskvault.hierarchy import rotate_cycle
from taskvault.models import LiveStore


class DependencyValidator:
    """Validates dependsOn edges of a live store.

    Args:
        archived_ids: Ids of archived tasks. Edges to them resolve, since
            a task only reaches the archive once it is finished.
    """

    def __init__(self, archived_ids: Iterable[str] = ()):
        self.archived_ids = set(archived_ids)

    def validate(self, store: LiveStore) -> list[Violation]:
        index = store.index()
        violations: list[Violation] = []

        for task in store.tasks:
            for dep_id in task.depends_on:
                if dep_id == task.id:
                    violations.append(
                        Violation(
                            ErrorCategory.SELF_DEPENDENCY,
                            f"Task {task.id} cannot depend on itself",
                            task.id,
                        )
                    )
                elif dep_id not in index and dep_id not in self.archived_ids:
                    violations.append(
                        Violation(
                            ErrorCategory.DEPENDENCY_NOT_FOUND,
                            f"Task {task.id} depends on unknown task {dep_id}",
                            task.id,
                            path=(dep_id,),
                        )
                    )

        def dependency_edges(task_id: str) -> list[str]:
            return [d for d in index[task_id].depends_on if d != task_id]

        for path in find_cycles([t.id for t in store.tasks], dependency_edges):
            rotated = rotate_cycle(path)
            violations.append(
                Violation(
                    ErrorCategory.DEPENDENCY_CYCLE,
                    f"Circular dependency: {' -> '.join(rotated + rotated[:1])}",
                    rotated[0],
                    path=rotated,
                )
            )
        return violations
