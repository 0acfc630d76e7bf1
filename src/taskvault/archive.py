"""Retention policy engine: moves finished tasks between live and archive.

Selection rules, applied to done (and, by policy, cancelled) tasks
sorted newest-finished first:

- tasks carrying an exempt label are never selected
- the ``preserveRecentCount`` most recent are kept (mode ``all`` bypasses)
- tasks finished less than ``daysUntilArchive`` days ago are kept
  (modes ``force`` and ``all`` bypass, as do archive-now labels)
- a task with a live child or dependent outside the batch is kept,
  unless ``cascade`` pulls finished blockers into the batch

Relocation itself is one pipeline commit over both documents.
"""

from dataclasses import dataclass, field
from typing import Iterable, Literal

from taskvault.errors import ErrorCategory, InvalidTransition, NotFound, StoreError
from taskvault.logging import Loggers
from taskvault.models import (
    ArchivedTask,
    ArchiveInfo,
    ArchiveStore,
    LiveStore,
    Task,
    TaskStatus,
    parse_timestamp,
    utc_now,
)
from taskvault.policy import ArchivePolicy

logger = Loggers.archive()

ArchiveMode = Literal["auto", "force", "all"]


@dataclass
class Selection:
    """Outcome of a retention pass: what to move and why the rest stays."""

    candidates: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"candidates": list(self.candidates), "skipped": dict(self.skipped)}


def _age_days(task: Task, now: str) -> float | None:
    finished = task.finished_at
    if not finished:
        return None
    return (parse_timestamp(now) - parse_timestamp(finished)).total_seconds() / 86400


def _blockers(store: LiveStore, task_id: str, batch: set[str]) -> list[Task]:
    return [
        t
        for t in store.tasks
        if t.id not in batch and (t.parent_id == task_id or task_id in t.depends_on)
    ]


def _close_batch(
    store: LiveStore,
    batch: set[str],
    cascade: bool,
    exempt: set[str],
) -> dict[str, str]:
    """Drop batch members that would leave live tasks dangling.

    With ``cascade``, finished blockers are pulled into the batch instead.
    Repeats until stable, since each change can affect other members.
    """
    skipped: dict[str, str] = {}
    changed = True
    while changed:
        changed = False
        for task_id in sorted(batch):
            blockers = _blockers(store, task_id, batch)
            if not blockers:
                continue
            pullable = cascade and all(
                b.status.is_terminal and b.id not in skipped and not exempt.intersection(b.labels)
                for b in blockers
            )
            if pullable:
                batch.update(b.id for b in blockers)
            else:
                batch.discard(task_id)
                skipped[task_id] = "has live children or dependents: " + ", ".join(b.id for b in blockers)
            changed = True
            break
    return skipped


def select_for_archive(
    store: LiveStore,
    policy: ArchivePolicy,
    mode: ArchiveMode = "auto",
    *,
    cascade: bool = False,
    now: str | None = None,
) -> Selection:
    now = now or utc_now()
    exempt = set(policy.exempt_labels)
    archive_now = set(policy.archive_now_labels)
    finished = [
        t
        for t in store.tasks
        if t.status == TaskStatus.DONE or (t.status == TaskStatus.CANCELLED and policy.include_cancelled)
    ]
    finished.sort(key=lambda t: t.finished_at or "", reverse=True)

    selection = Selection()
    batch: set[str] = set()
    kept_recent = 0
    for task in finished:
        if exempt.intersection(task.labels):
            selection.skipped[task.id] = "exempt label"
            continue
        if mode != "all" and kept_recent < policy.preserve_recent_count:
            kept_recent += 1
            selection.skipped[task.id] = "preserved as recent"
            continue
        if mode == "auto" and not archive_now.intersection(task.labels):
            age = _age_days(task, now)
            if age is None or age < policy.days_until_archive:
                selection.skipped[task.id] = f"finished less than {policy.days_until_archive} days ago"
                continue
        batch.add(task.id)

    selection.skipped.update(_close_batch(store, batch, cascade, exempt))
    for task_id in batch:
        selection.skipped.pop(task_id, None)
    selection.candidates = [t.id for t in store.tasks if t.id in batch]
    return selection


def resolve_explicit(
    store: LiveStore,
    archive: ArchiveStore,
    task_ids: Iterable[str],
    *,
    cascade: bool = False,
) -> list[str]:
    """Validate explicitly requested ids for archiving.

    Already archived ids are dropped silently so repeating a request is a
    no-op.

    Raises:
        NotFound: An id is in neither document.
        InvalidTransition: A task is not done or cancelled.
        StoreError: has-children, if a task would leave live tasks dangling.
    """
    batch: set[str] = set()
    for task_id in task_ids:
        task = store.get(task_id)
        if task is None:
            if archive.get(task_id) is not None:
                continue
            raise NotFound(f"Task {task_id} not found", details={"taskId": task_id})
        if not task.status.is_terminal:
            raise InvalidTransition(
                f"Task {task_id} is {task.status.value}; only done or cancelled tasks can be archived",
            )
        batch.add(task_id)
    requested = set(batch)
    skipped = _close_batch(store, batch, cascade, set())
    refused = {tid: why for tid, why in skipped.items() if tid in requested}
    if refused:
        task_id, why = next(iter(refused.items()))
        raise StoreError(
            f"Task {task_id} {why}",
            category=ErrorCategory.HAS_CHILDREN,
            remedy="Archive the blockers too, or request cascade",
            details={"refused": refused},
        )
    return [t.id for t in store.tasks if t.id in batch]


def _relationships(store: LiveStore, task: Task) -> dict:
    return {
        "parentId": task.parent_id,
        "children": [c.id for c in store.children_of(task.id)],
        "dependents": [d.id for d in store.dependents_of(task.id)],
        "dependsOn": list(task.depends_on),
    }


def _cycle_time_days(task: Task) -> int | None:
    if not task.finished_at:
        return None
    return (parse_timestamp(task.finished_at) - parse_timestamp(task.created_at)).days


def refresh_meta(archive: ArchiveStore) -> None:
    entries = archive.archived_tasks
    archive.meta.total_archived = len(entries)
    archive.meta.oldest_task = entries[0].id if entries else None
    archive.meta.newest_task = entries[-1].id if entries else None


def archive_tasks(
    store: LiveStore,
    archive: ArchiveStore,
    task_ids: list[str],
    *,
    reason: str = "auto",
    session_id: str | None = None,
    now: str | None = None,
) -> list[ArchivedTask]:
    """Move tasks from the live store into the archive.

    Relationships are snapshotted before removal so a later restore can
    report what the task was attached to.
    """
    now = now or utc_now()
    moved = []
    for task_id in task_ids:
        task = store.get(task_id)
        if task is None:
            continue
        info = ArchiveInfo(
            archived_at=now,
            reason=reason,
            session_id=session_id,
            cycle_time_days=_cycle_time_days(task),
            relationships=_relationships(store, task),
        )
        moved.append(ArchivedTask(task=task, archive=info))
    store.remove({entry.id for entry in moved})
    for entry in moved:
        if store.focus.current_task == entry.id:
            store.focus.current_task = None
    archive.archived_tasks.extend(moved)
    if moved:
        archive.meta.last_archived = now
    refresh_meta(archive)
    logger.debug("tasks_relocated", direction="archive", tasks=[e.id for e in moved])
    return moved


def unarchive_tasks(
    store: LiveStore,
    archive: ArchiveStore,
    task_ids: Iterable[str],
    *,
    preserve_status: bool = True,
    now: str | None = None,
) -> list[Task]:
    """Move archived tasks back to the live store.

    With ``preserve_status`` the restored task is field-for-field the
    archived task plus a ``_restore`` record; otherwise it returns as
    pending with its completion and cancellation fields cleared. Ids
    already live are skipped.
    """
    now = now or utc_now()
    restored = []
    for task_id in task_ids:
        if store.get(task_id) is not None:
            continue
        entry = archive.get(task_id)
        if entry is None:
            raise NotFound(f"Task {task_id} is not archived", details={"taskId": task_id})
        if not entry.archive.restorable:
            raise InvalidTransition(f"Archived task {task_id} is marked not restorable")
        task = entry.task
        if not preserve_status:
            task.status = TaskStatus.PENDING
            task.completed_at = None
            task.completion_note = None
            task.auto_completed = False
            task.cancelled_at = None
            task.cancel_reason = None
        task.restore = {
            "restoredAt": now,
            "archivedAt": entry.archive.archived_at,
            "archiveReason": entry.archive.reason,
            "preservedStatus": preserve_status,
        }
        restored.append(task)
    ids = {t.id for t in restored}
    archive.archived_tasks = [e for e in archive.archived_tasks if e.id not in ids]
    store.tasks.extend(restored)
    refresh_meta(archive)
    logger.debug("tasks_relocated", direction="restore", tasks=sorted(ids))
    return restored
