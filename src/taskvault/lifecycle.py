"""Task lifecycle state machine.

Every function here mutates a candidate LiveStore in place and raises a
StoreError when the transition is not allowed. They are meant to run as
(part of) a write pipeline mutator, so all side effects of a transition
commit together with the status change. A call that leaves the store
unchanged is reported by the pipeline as no-change.

Transitions:
    pending            -> active     start
    pending/active     -> blocked    block
    blocked            -> pending    unblock
    non-terminal       -> done       complete
    non-terminal       -> cancelled  cancel
    done               -> pending    reopen
    cancelled          -> pending    uncancel
"""

from dataclasses import dataclass, field
from typing import Iterable, Literal

from taskvault.errors import (
    AlreadyExists,
    ErrorCategory,
    InvalidTransition,
    NotFound,
    StoreError,
    ValidationFailed,
    Violation,
)
from taskvault.hierarchy import check_parent, infer_type
from taskvault.models import (
    ArchiveStore,
    LiveStore,
    Task,
    TaskPriority,
    TaskSize,
    TaskStatus,
    TaskType,
    format_task_id,
    task_id_number,
    utc_now,
)
from taskvault.policy import ProjectConfig

ChildStrategy = Literal["block", "orphan", "cascade"]


def require_task(store: LiveStore, task_id: str) -> Task:
    task = store.get(task_id)
    if task is None:
        raise NotFound(f"Task {task_id} not found", details={"taskId": task_id})
    return task


def _require_text(value: str | None, message: str, task_id: str | None = None) -> str:
    if value is None or not value.strip():
        raise ValidationFailed([Violation(ErrorCategory.VALIDATION_FAILED, message, task_id)])
    return value.strip()


def _clear_focus(store: LiveStore, task_id: str) -> None:
    if store.focus.current_task == task_id:
        store.focus.current_task = None


def next_task_id(store: LiveStore, archive: ArchiveStore | None = None) -> str:
    """Allocate the next id; ids of archived tasks are never reused."""
    highest = store.meta.last_id
    archived = [entry.task for entry in archive.archived_tasks] if archive else []
    for task in [*store.tasks, *archived]:
        number = task_id_number(task.id)
        if number is not None and number > highest:
            highest = number
    store.meta.last_id = highest + 1
    return format_task_id(store.meta.last_id)


@dataclass
class NewTask:
    """Fields accepted when creating a task."""

    title: str
    description: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    type: TaskType | None = None
    parent_id: str | None = None
    size: TaskSize | None = None
    phase: str | None = None
    labels: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)


def add_task(
    store: LiveStore,
    config: ProjectConfig,
    spec: NewTask,
    archive: ArchiveStore | None = None,
    now: str | None = None,
) -> Task:
    """Create a task, inferring its type from the parent when omitted.

    Raises:
        AlreadyExists: An open task already has the same title.
        ValidationFailed: Empty title, or the parent placement is invalid.
        InvalidTransition: Asked to create a task directly as done/cancelled.
    """
    now = now or utc_now()
    title = _require_text(spec.title, "A task title is required")
    for task in store.tasks:
        if not task.status.is_terminal and task.title.strip().lower() == title.lower():
            raise AlreadyExists(
                f"An open task with title '{title}' already exists ({task.id})",
                details={"taskId": task.id},
            )
    if spec.status.is_terminal:
        raise InvalidTransition(f"New tasks cannot start as {spec.status.value}")
    if spec.status == TaskStatus.BLOCKED:
        raise InvalidTransition("New tasks cannot start blocked; add then block with a reason")

    parent = store.get(spec.parent_id) if spec.parent_id else None
    task_type = spec.type or infer_type(parent)
    violations = check_parent(store, spec.parent_id, None, task_type, config.hierarchy)
    if violations:
        raise ValidationFailed(violations)

    task = Task(
        id=next_task_id(store, archive),
        title=title,
        created_at=now,
        status=spec.status,
        priority=spec.priority,
        type=task_type,
        description=spec.description,
        parent_id=spec.parent_id,
        size=spec.size,
        phase=spec.phase,
        labels=_unique(spec.labels),
        depends_on=_unique(spec.depends_on),
        files=list(spec.files),
        acceptance_criteria=list(spec.acceptance_criteria),
    )
    for note in spec.notes:
        task.add_note(note, now)
    if task.status == TaskStatus.ACTIVE:
        _check_can_start(store, task, archive)
        store.focus.current_task = task.id
    store.tasks.append(task)
    return task


def _unique(values: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def update_task(
    store: LiveStore,
    task_id: str,
    *,
    title: str | None = None,
    description: str | None = None,
    priority: TaskPriority | None = None,
    size: TaskSize | None = None,
    phase: str | None = None,
    labels: list[str] | None = None,
    add_labels: Iterable[str] = (),
    remove_labels: Iterable[str] = (),
    depends_on: list[str] | None = None,
    add_depends: Iterable[str] = (),
    remove_depends: Iterable[str] = (),
    files: list[str] | None = None,
    acceptance_criteria: list[str] | None = None,
    note: str | None = None,
    now: str | None = None,
) -> Task:
    """Edit non-status fields. Done and cancelled tasks are read-only."""
    task = require_task(store, task_id)
    if task.status.is_terminal:
        raise InvalidTransition(
            f"Task {task_id} is {task.status.value}; reopen it before editing",
            remedy="Use reopen or uncancel first",
        )
    if title is not None:
        task.title = _require_text(title, "A task title cannot be empty", task_id)
    if description is not None:
        task.description = description or None
    if priority is not None:
        task.priority = priority
    if size is not None:
        task.size = size
    if phase is not None:
        task.phase = phase or None
    if labels is not None:
        task.labels = _unique(labels)
    task.labels = _unique([*task.labels, *add_labels])
    task.labels = [label for label in task.labels if label not in set(remove_labels)]
    if depends_on is not None:
        task.depends_on = _unique(depends_on)
    task.depends_on = _unique([*task.depends_on, *add_depends])
    task.depends_on = [d for d in task.depends_on if d not in set(remove_depends)]
    if files is not None:
        task.files = list(files)
    if acceptance_criteria is not None:
        task.acceptance_criteria = list(acceptance_criteria)
    if note:
        task.add_note(note, now)
    return task


def _dependency_done(dep_id: str, store: LiveStore, archive: ArchiveStore | None) -> bool | None:
    live = store.get(dep_id)
    if live is not None:
        return live.status == TaskStatus.DONE
    archived = archive.get(dep_id) if archive else None
    if archived is not None:
        return archived.task.status == TaskStatus.DONE
    return None


def _check_can_start(store: LiveStore, task: Task, archive: ArchiveStore | None) -> None:
    others = [t.id for t in store.active_tasks() if t.id != task.id]
    if others:
        raise ValidationFailed(
            [
                Violation(
                    ErrorCategory.SINGLE_ACTIVE,
                    f"Task {others[0]} is already active; only one task may be active",
                    task.id,
                )
            ]
        )
    missing = []
    pending = []
    for dep_id in task.depends_on:
        done = _dependency_done(dep_id, store, archive)
        if done is None:
            missing.append(dep_id)
        elif not done:
            pending.append(dep_id)
    if missing:
        raise ValidationFailed(
            [
                Violation(
                    ErrorCategory.DEPENDENCY_NOT_FOUND,
                    f"Task {task.id} depends on unknown task {dep_id}",
                    task.id,
                    path=(dep_id,),
                )
                for dep_id in missing
            ]
        )
    if pending:
        raise InvalidTransition(
            f"Task {task.id} has unfinished dependencies: {', '.join(pending)}",
            remedy="Complete the dependencies first",
            details={"dependsOn": pending},
        )


def start_task(store: LiveStore, task_id: str, archive: ArchiveStore | None = None) -> Task:
    task = require_task(store, task_id)
    if task.status == TaskStatus.ACTIVE:
        store.focus.current_task = task.id
        return task
    if task.status != TaskStatus.PENDING:
        remedy = "Unblock the task first" if task.status == TaskStatus.BLOCKED else None
        raise InvalidTransition(
            f"Task {task_id} is {task.status.value}; only pending tasks can start",
            remedy=remedy,
        )
    _check_can_start(store, task, archive)
    task.status = TaskStatus.ACTIVE
    store.focus.current_task = task.id
    return task


def block_task(store: LiveStore, task_id: str, reason: str | None) -> Task:
    task = require_task(store, task_id)
    if task.status.is_terminal:
        raise InvalidTransition(f"Task {task_id} is {task.status.value} and cannot be blocked")
    task.blocked_by = _require_text(reason, "A reason is required to block a task", task_id)
    task.status = TaskStatus.BLOCKED
    _clear_focus(store, task_id)
    return task


def unblock_task(store: LiveStore, task_id: str) -> Task:
    task = require_task(store, task_id)
    if task.status == TaskStatus.PENDING:
        return task
    if task.status != TaskStatus.BLOCKED:
        raise InvalidTransition(f"Task {task_id} is {task.status.value}, not blocked")
    task.status = TaskStatus.PENDING
    task.blocked_by = None
    return task


def auto_complete_ancestors(store: LiveStore, task: Task, now: str | None = None) -> list[Task]:
    """Complete each ancestor whose children have all finished.

    A parent completes when every child is done or cancelled and at
    least one is done. Walks up the chain until a parent stays open.
    """
    now = now or utc_now()
    completed: list[Task] = []
    seen = {task.id}
    current = task
    while current.parent_id is not None and current.parent_id not in seen:
        parent = store.get(current.parent_id)
        if parent is None or parent.status.is_terminal:
            break
        children = store.children_of(parent.id)
        if not all(c.status.is_terminal for c in children):
            break
        if not any(c.status == TaskStatus.DONE for c in children):
            break
        parent.status = TaskStatus.DONE
        parent.completed_at = now
        parent.completion_note = "Auto-completed: all children finished"
        parent.auto_completed = True
        parent.blocked_by = None
        _clear_focus(store, parent.id)
        completed.append(parent)
        seen.add(parent.id)
        current = parent
    return completed


def complete_task(
    store: LiveStore,
    config: ProjectConfig,
    task_id: str,
    note: str | None = None,
    *,
    skip_note: bool = False,
    now: str | None = None,
) -> list[Task]:
    """Complete a task.

    Returns:
        The ancestors that were auto-completed as a consequence.

    Raises:
        InvalidTransition: The task is cancelled, or already done with a
            different note.
        ValidationFailed: A completion note is required but missing.
    """
    now = now or utc_now()
    task = require_task(store, task_id)
    note = note.strip() if note else None
    if task.status == TaskStatus.DONE:
        if note is None or note == task.completion_note:
            return []
        raise InvalidTransition(
            f"Task {task_id} is already done with a different completion note",
            remedy="Reopen the task to change its completion note",
        )
    if task.status == TaskStatus.CANCELLED:
        raise InvalidTransition(
            f"Task {task_id} is cancelled and cannot be completed",
            remedy="Uncancel the task first",
        )
    if note is None and config.lifecycle.require_completion_notes and not skip_note:
        raise ValidationFailed(
            [Violation(ErrorCategory.VALIDATION_FAILED, "A completion note is required", task_id)]
        )
    task.status = TaskStatus.DONE
    task.completed_at = now
    task.completion_note = note
    task.blocked_by = None
    _clear_focus(store, task_id)
    if config.lifecycle.auto_complete_parents:
        return auto_complete_ancestors(store, task, now)
    return []


def _detach(task: Task) -> None:
    task.parent_id = None
    if task.type != TaskType.EPIC:
        task.type = infer_type(None)


def cancel_task(
    store: LiveStore,
    config: ProjectConfig,
    task_id: str,
    reason: str | None,
    *,
    children: ChildStrategy | None = None,
    force: bool = False,
    now: str | None = None,
) -> list[Task]:
    """Cancel a task, handling its open children per ``children``.

    Modes:
        block: refuse while the task has open children
        orphan: detach the children and cancel only this task
        cascade: cancel every open descendant too (bounded unless forced)

    Returns:
        Every task cancelled by this call, the target first.
    """
    now = now or utc_now()
    task = require_task(store, task_id)
    if task.status == TaskStatus.CANCELLED:
        return []
    if task.status == TaskStatus.DONE:
        raise InvalidTransition(
            f"Task {task_id} is done and cannot be cancelled",
            remedy="Reopen the task first",
        )
    policy = config.cancellation
    if policy.require_reason:
        reason = _require_text(reason, "A reason is required to cancel a task", task_id)
    mode = children or policy.default_child_strategy

    open_children = [c for c in store.children_of(task_id) if not c.status.is_terminal]
    targets = [task]
    if open_children:
        if mode == "block":
            raise StoreError(
                f"Task {task_id} has {len(open_children)} open children",
                category=ErrorCategory.HAS_CHILDREN,
                remedy="Choose a child-handling mode: orphan or cascade",
                details={"children": [c.id for c in open_children]},
            )
        if mode == "orphan":
            for child in store.children_of(task_id):
                _detach(child)
        else:
            descendants = [d for d in store.descendants_of(task_id) if not d.status.is_terminal]
            if len(descendants) > policy.cascade_limit and not force:
                raise StoreError(
                    f"Cascade would cancel {len(descendants)} tasks; limit is {policy.cascade_limit}",
                    category=ErrorCategory.HAS_CHILDREN,
                    remedy="Pass force to lift the cascade limit",
                    details={"descendants": [d.id for d in descendants]},
                )
            targets.extend(descendants)

    for target in targets:
        target.status = TaskStatus.CANCELLED
        target.cancelled_at = now
        target.cancel_reason = reason or None
        target.blocked_by = None
        _clear_focus(store, target.id)
    return targets


def reopen_task(
    store: LiveStore,
    config: ProjectConfig,
    task_id: str,
    reason: str | None = None,
    now: str | None = None,
) -> list[str]:
    """Move a done task back to pending.

    The prior completion note is kept in the task's notes.

    Returns:
        Warnings for the caller.
    """
    now = now or utc_now()
    task = require_task(store, task_id)
    if task.status == TaskStatus.PENDING:
        return []
    if task.status != TaskStatus.DONE:
        raise InvalidTransition(f"Task {task_id} is {task.status.value}; only done tasks can be reopened")
    history = f"Reopened (was completed {task.completed_at}"
    if task.completion_note:
        history += f": {task.completion_note}"
    history += ")"
    if reason:
        history += f" - {reason}"
    task.add_note(history, now)
    task.status = TaskStatus.PENDING
    task.completed_at = None
    task.completion_note = None
    task.auto_completed = False

    warnings = []
    children = store.children_of(task_id)
    if children and all(c.status == TaskStatus.DONE for c in children):
        if config.lifecycle.auto_complete_parents:
            warnings.append(
                f"All children of {task_id} are done; it will auto-complete again when a child completes"
            )
        else:
            warnings.append(f"All children of {task_id} are done")
    parent = store.get(task.parent_id) if task.parent_id else None
    if parent is not None and parent.status == TaskStatus.DONE:
        warnings.append(f"Parent {parent.id} is still done; reopen it if work continues there")
    return warnings


def uncancel_task(store: LiveStore, task_id: str, now: str | None = None) -> Task:
    now = now or utc_now()
    task = require_task(store, task_id)
    if task.status == TaskStatus.PENDING:
        return task
    if task.status != TaskStatus.CANCELLED:
        raise InvalidTransition(f"Task {task_id} is {task.status.value}, not cancelled")
    note = f"Uncancelled (was cancelled {task.cancelled_at}"
    if task.cancel_reason:
        note += f": {task.cancel_reason}"
    task.add_note(note + ")", now)
    task.status = TaskStatus.PENDING
    task.cancelled_at = None
    task.cancel_reason = None
    return task


def reparent_task(
    store: LiveStore,
    config: ProjectConfig,
    task_id: str,
    parent_id: str | None,
) -> Task:
    """Move a task under a new parent (None promotes it to the root).

    Non-epic tasks get their type re-inferred from the new parent.
    """
    task = require_task(store, task_id)
    if task.parent_id == parent_id:
        return task
    violations = check_parent(store, parent_id, task_id, task.type, config.hierarchy)
    if violations:
        raise ValidationFailed(violations)
    task.parent_id = parent_id
    if task.type != TaskType.EPIC:
        task.type = infer_type(store.get(parent_id) if parent_id else None)
    return task


def set_focus(
    store: LiveStore,
    *,
    task_id: str | None = None,
    session_note: str | None = None,
    clear: bool = False,
) -> None:
    """Update the session note, or clear the focus record.

    Pointing focus at a task is done by start; here a task id is only
    accepted if it is the active task.
    """
    if clear:
        store.focus.current_task = None
        store.focus.session_note = None
        return
    if task_id is not None:
        task = require_task(store, task_id)
        if task.status != TaskStatus.ACTIVE:
            raise InvalidTransition(
                f"Task {task_id} is {task.status.value}; start it to focus on it",
                category=ErrorCategory.FOCUS_INVALID,
            )
        store.focus.current_task = task_id
    if session_note is not None:
        store.focus.session_note = session_note or None
