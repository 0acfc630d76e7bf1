"""Store-wide validation run by the write pipeline before every commit.

Combines the hierarchy and dependency validators with the invariants
that span the whole live store: a single active task, a resolvable
focus, status fields consistent with status, and a single active phase
with a resolvable current-phase pointer.
"""

from dataclasses import dataclass, field

from taskvault.checksum import checksum
from taskvault.dependencies import DependencyValidator
from taskvault.errors import ErrorCategory, Violation
from taskvault.hierarchy import HierarchyValidator
from taskvault.models import ArchiveStore, LiveStore, PhaseStatus, TaskStatus
from taskvault.policy import ProjectConfig


def _check_single_active(store: LiveStore) -> list[Violation]:
    active = store.active_tasks()
    if len(active) <= 1:
        return []
    ids = tuple(sorted(t.id for t in active))
    return [
        Violation(
            ErrorCategory.SINGLE_ACTIVE,
            f"Only one task may be active; found {len(active)}: {', '.join(ids)}",
            measure=len(active),
        )
    ]


def _check_focus(store: LiveStore) -> list[Violation]:
    current = store.focus.current_task
    if current is not None and store.get(current) is None:
        return [
            Violation(
                ErrorCategory.FOCUS_INVALID,
                f"Focus points at unknown task {current}",
                current,
            )
        ]
    return []


def _check_status_fields(store: LiveStore) -> list[Violation]:
    violations = []
    for task in store.tasks:
        if task.status == TaskStatus.DONE and not task.completed_at:
            violations.append(
                Violation(ErrorCategory.VALIDATION_FAILED, f"Done task {task.id} has no completedAt", task.id)
            )
        if task.status == TaskStatus.CANCELLED and not task.cancelled_at:
            violations.append(
                Violation(ErrorCategory.VALIDATION_FAILED, f"Cancelled task {task.id} has no cancelledAt", task.id)
            )
        if task.status == TaskStatus.BLOCKED and not (task.blocked_by or "").strip():
            violations.append(
                Violation(ErrorCategory.VALIDATION_FAILED, f"Blocked task {task.id} has no reason", task.id)
            )
    return violations


def _check_phases(store: LiveStore) -> list[Violation]:
    violations = []
    active = [p.slug for p in store.phases_by_order() if p.status == PhaseStatus.ACTIVE]
    if len(active) > 1:
        violations.append(
            Violation(
                ErrorCategory.PHASE_INVALID,
                f"Only one phase may be active; found {', '.join(active)}",
                measure=len(active),
            )
        )
    if store.current_phase is not None and store.current_phase not in store.phases:
        violations.append(
            Violation(
                ErrorCategory.PHASE_INVALID,
                f"Current phase '{store.current_phase}' is not defined",
                path=(store.current_phase,),
            )
        )
    return violations


def _check_archive_overlap(store: LiveStore, archive: ArchiveStore) -> list[Violation]:
    archived = archive.ids()
    return [
        Violation(
            ErrorCategory.SCHEMA_INVALID,
            f"Task {task.id} is both live and archived",
            task.id,
        )
        for task in store.tasks
        if task.id in archived
    ]


@dataclass
class ValidationReport:
    """All findings for a store, split into blocking and pre-existing."""

    violations: list[Violation] = field(default_factory=list)
    preexisting: list[Violation] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "violations": [v.to_dict() for v in self.violations],
            "preexisting": [v.to_dict() for v in self.preexisting],
        }


class StoreValidator:
    """Runs every structural rule against a live store."""

    def __init__(self, config: ProjectConfig | None = None):
        self.config = config or ProjectConfig()
        self.hierarchy = HierarchyValidator(self.config.hierarchy)

    def validate(self, store: LiveStore, archive: ArchiveStore | None = None) -> list[Violation]:
        archived_ids = archive.ids() if archive is not None else set()
        violations: list[Violation] = []
        violations.extend(self.hierarchy.validate(store))
        violations.extend(DependencyValidator(archived_ids).validate(store))
        violations.extend(_check_single_active(store))
        violations.extend(_check_focus(store))
        violations.extend(_check_status_fields(store))
        violations.extend(_check_phases(store))
        if archive is not None:
            violations.extend(_check_archive_overlap(store, archive))
        return violations

    def compare(
        self,
        candidate: LiveStore,
        baseline: LiveStore | None,
        archive: ArchiveStore | None = None,
        baseline_archive: ArchiveStore | None = None,
    ) -> ValidationReport:
        """Validate a candidate, separating findings the mutation introduced.

        A finding already present in the baseline (same code, task and
        path, and not measurably worse) is pre-existing and does not
        block the commit.
        """
        found = self.validate(candidate, archive)
        if baseline is None:
            return ValidationReport(violations=found)
        before = {
            v.key: v
            for v in self.validate(baseline, baseline_archive if baseline_archive is not None else archive)
        }
        report = ValidationReport()
        for violation in found:
            prior = before.get(violation.key)
            if prior is not None and not violation.worsens(prior):
                report.preexisting.append(violation)
            else:
                report.violations.append(violation)
        return report


def repair(store: LiveStore, archive: ArchiveStore | None = None) -> list[str]:
    """Fix the findings that have a single safe resolution, in place.

    - a stored checksum that disagrees with the task list is recomputed
    - archived copies of tasks that are also live are dropped
    - every active task but the first goes back to pending
    - a focus on an unknown or demoted task moves to the remaining active task

    Duplicate ids inside one document fail the schema check before a
    store can be loaded at all; those need a restore.

    Returns:
        One description per fix applied; empty if nothing needed fixing.
    """
    fixes: list[str] = []
    stored = store.meta.checksum
    actual = checksum(store.tasks)
    if stored != actual:
        fixes.append(f"Recomputed checksum (stored {stored or 'none'}, computed {actual})")

    if archive is not None:
        live = {task.id for task in store.tasks}
        overlap = [entry.id for entry in archive.archived_tasks if entry.id in live]
        if overlap:
            archive.archived_tasks = [e for e in archive.archived_tasks if e.id not in live]
            fixes.append(f"Dropped archived copies of live tasks: {', '.join(overlap)}")

    active = store.active_tasks()
    demoted = [task.id for task in active[1:]]
    for task in active[1:]:
        task.status = TaskStatus.PENDING
    if demoted:
        fixes.append(f"Kept {active[0].id} active; set {', '.join(demoted)} to pending")

    current = store.focus.current_task
    if current is not None and (store.get(current) is None or current in demoted):
        store.focus.current_task = active[0].id if active else None
        fixes.append(f"Moved focus off {current}")

    store.meta.checksum = checksum(store.tasks)
    return fixes
