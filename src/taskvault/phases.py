"""Project phase state machine.

Phases are a map keyed by slug with an explicit order. Each phase moves
pending -> active -> completed; moving the current pointer back to a
lower order is a rollback and needs explicit confirmation. Every status
transition appends a PhaseHistory entry. The "at most one active phase"
rule is enforced by store validation at commit time.
"""

import re
from dataclasses import dataclass

from taskvault.errors import (
    AlreadyExists,
    ErrorCategory,
    InvalidTransition,
    NotFound,
    StoreError,
    ValidationFailed,
    Violation,
)
from taskvault.models import (
    LiveStore,
    Phase,
    PhaseHistoryEntry,
    PhaseStatus,
    PhaseTransition,
    TaskPriority,
    TaskStatus,
    utc_now,
)
from taskvault.policy import PhasePolicy

SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$")


@dataclass
class PhaseProgress:
    """Completion figures for the tasks labelled with one phase."""

    phase: str
    total: int
    done: int
    incomplete: list[str]
    incomplete_critical: list[str]

    @property
    def percent(self) -> float:
        if self.total == 0:
            return 100.0
        return self.done * 100.0 / self.total

    def to_dict(self) -> dict:
        return {
            "phase": self.phase,
            "total": self.total,
            "done": self.done,
            "percent": round(self.percent, 1),
            "incomplete": list(self.incomplete),
            "incompleteCritical": list(self.incomplete_critical),
        }


def require_phase(store: LiveStore, slug: str) -> Phase:
    phase = store.phases.get(slug)
    if phase is None:
        raise NotFound(
            f"Phase '{slug}' not found",
            remedy="Define the phase first",
            details={"phase": slug, "known": sorted(store.phases)},
        )
    return phase


def progress(store: LiveStore, slug: str) -> PhaseProgress:
    """Done fraction of a phase's tasks; cancelled tasks do not count."""
    tasks = [t for t in store.tasks if t.phase == slug and t.status != TaskStatus.CANCELLED]
    open_tasks = [t for t in tasks if t.status != TaskStatus.DONE]
    return PhaseProgress(
        phase=slug,
        total=len(tasks),
        done=len(tasks) - len(open_tasks),
        incomplete=[t.id for t in open_tasks],
        incomplete_critical=[t.id for t in open_tasks if t.priority == TaskPriority.CRITICAL],
    )


def _record(
    store: LiveStore,
    slug: str,
    transition: PhaseTransition,
    now: str,
    from_phase: str | None = None,
) -> None:
    store.phase_history.append(
        PhaseHistoryEntry(
            phase=slug,
            transition=transition,
            timestamp=now,
            task_count=progress(store, slug).total,
            from_phase=from_phase,
        )
    )


def _set_current(store: LiveStore, slug: str | None) -> None:
    store.current_phase = slug
    store.focus.current_phase = slug


def define_phase(store: LiveStore, slug: str, name: str | None = None, order: int | None = None) -> Phase:
    """Add a phase; redefining it identically is a no-op."""
    if not SLUG_PATTERN.match(slug or ""):
        raise ValidationFailed(
            [Violation(ErrorCategory.PHASE_INVALID, f"Invalid phase slug '{slug}'", path=(slug,))]
        )
    if order is None:
        order = max((p.order for p in store.phases.values()), default=0) + 1
    name = name or slug.replace("-", " ").title()
    existing = store.phases.get(slug)
    if existing is not None:
        if existing.name == name and existing.order == order:
            return existing
        raise AlreadyExists(
            f"Phase '{slug}' is already defined differently",
            details={"phase": slug, "existing": existing.to_dict()},
        )
    phase = Phase(slug=slug, name=name, order=order)
    store.phases[slug] = phase
    return phase


def start_phase(store: LiveStore, slug: str, now: str | None = None) -> Phase:
    now = now or utc_now()
    phase = require_phase(store, slug)
    if phase.status == PhaseStatus.ACTIVE:
        _set_current(store, slug)
        return phase
    if phase.status != PhaseStatus.PENDING:
        raise InvalidTransition(f"Phase '{slug}' is {phase.status.value}; only pending phases can start")
    active = [p.slug for p in store.phases.values() if p.status == PhaseStatus.ACTIVE]
    if active:
        raise InvalidTransition(
            f"Phase '{active[0]}' is active; complete it before starting '{slug}'",
            remedy="Use advance to complete the current phase and start the next",
        )
    phase.status = PhaseStatus.ACTIVE
    phase.started_at = now
    phase.completed_at = None
    _set_current(store, slug)
    _record(store, slug, PhaseTransition.STARTED, now)
    return phase


def check_completable(store: LiveStore, slug: str, policy: PhasePolicy, force: bool = False) -> PhaseProgress:
    """Raise incomplete-tasks if a phase may not complete yet.

    Open critical tasks block even a forced completion while
    ``critical_blocking`` is on; ``force`` only waives the threshold.
    """
    stats = progress(store, slug)
    if policy.critical_blocking and stats.incomplete_critical:
        raise StoreError(
            f"Phase '{slug}' has incomplete tasks: critical tasks still open "
            f"({', '.join(stats.incomplete_critical)})",
            category=ErrorCategory.INCOMPLETE_TASKS,
            remedy="Complete or cancel the critical tasks; force does not override them",
            details=stats.to_dict(),
        )
    if stats.percent < policy.completion_threshold and not force:
        raise StoreError(
            f"Phase '{slug}' has incomplete tasks: {stats.done}/{stats.total} done "
            f"({stats.percent:.0f}% < {policy.completion_threshold}%)",
            category=ErrorCategory.INCOMPLETE_TASKS,
            remedy="Finish the remaining tasks or pass force",
            details=stats.to_dict(),
        )
    return stats


def complete_phase(
    store: LiveStore,
    policy: PhasePolicy,
    slug: str | None = None,
    *,
    force: bool = False,
    now: str | None = None,
) -> Phase:
    now = now or utc_now()
    slug = slug or store.current_phase
    if slug is None:
        raise NotFound("No current phase to complete")
    phase = require_phase(store, slug)
    if phase.status == PhaseStatus.COMPLETED:
        return phase
    if phase.status != PhaseStatus.ACTIVE:
        raise InvalidTransition(f"Phase '{slug}' is {phase.status.value}; only active phases can complete")
    check_completable(store, slug, policy, force)
    phase.status = PhaseStatus.COMPLETED
    phase.completed_at = now
    _record(store, slug, PhaseTransition.COMPLETED, now)
    return phase


def next_phase(store: LiveStore, after: str | None) -> Phase | None:
    """First phase ordered after ``after``; order gaps are skipped."""
    ordered = store.phases_by_order()
    if after is None:
        return ordered[0] if ordered else None
    current = require_phase(store, after)
    for phase in ordered:
        if phase.order > current.order:
            return phase
    return None


def advance_phase(
    store: LiveStore,
    policy: PhasePolicy,
    *,
    force: bool = False,
    now: str | None = None,
) -> Phase:
    """Complete the current phase (if active) and start the next one."""
    now = now or utc_now()
    current = store.current_phase
    target = next_phase(store, current)
    if target is None:
        raise NotFound(
            f"No phase after '{current}'" if current else "No phases are defined",
            remedy="Define another phase first",
        )
    if current is not None and store.phases[current].status == PhaseStatus.ACTIVE:
        complete_phase(store, policy, current, force=force, now=now)
    return start_phase(store, target.slug, now)


def set_phase(store: LiveStore, slug: str, *, confirm: bool = False, now: str | None = None) -> Phase:
    """Move the current-phase pointer.

    Moving forward changes no statuses. Moving to a lower order is a
    rollback: it needs ``confirm``, makes the target active again and
    returns the previous current phase to pending.
    """
    now = now or utc_now()
    target = require_phase(store, slug)
    previous = store.phases.get(store.current_phase) if store.current_phase else None
    if previous is not None and previous.slug == slug:
        return target
    if previous is None or target.order > previous.order:
        _set_current(store, slug)
        return target

    if not confirm:
        raise StoreError(
            f"Moving from '{previous.slug}' back to '{slug}' is a rollback",
            category=ErrorCategory.CONFIRMATION_REQUIRED,
            remedy="Repeat with confirm to roll back",
            details={"from": previous.slug, "to": slug},
        )
    for phase in store.phases.values():
        if phase.status == PhaseStatus.ACTIVE and phase.slug != slug:
            phase.status = PhaseStatus.PENDING
            phase.started_at = None
    previous.status = PhaseStatus.PENDING
    previous.started_at = None
    previous.completed_at = None
    target.status = PhaseStatus.ACTIVE
    target.started_at = now
    target.completed_at = None
    _set_current(store, slug)
    _record(store, slug, PhaseTransition.ROLLBACK, now, from_phase=previous.slug)
    return target
