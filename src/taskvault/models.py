"""Domain models for the task store documents.

Each model converts to and from the camelCase dict layout used on disk.
Optional scalar fields are omitted from the dict when unset so that a
task survives a to_dict/from_dict round trip unchanged.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
TASK_ID_PATTERN = re.compile(r"^T(\d{3,})$")


def utc_now() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp into an aware datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_task_id(number: int) -> str:
    return f"T{number:03d}"


def task_id_number(task_id: str) -> int | None:
    match = TASK_ID_PATTERN.match(task_id)
    return int(match.group(1)) if match else None


class TaskStatus(str, Enum):
    """Valid task statuses."""

    PENDING = "pending"
    ACTIVE = "active"
    BLOCKED = "blocked"
    DONE = "done"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.CANCELLED)


class TaskPriority(str, Enum):
    """Valid task priorities, highest first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskType(str, Enum):
    """Hierarchy classification."""

    EPIC = "epic"
    TASK = "task"
    SUBTASK = "subtask"


class TaskSize(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"


class PhaseTransition(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    ROLLBACK = "rollback"


@dataclass
class Task:
    """A single work item in the live store.

    Attributes:
        id: Stable identifier (T001, T002, ...), never reused.
        title: Short human-readable title.
        status: Lifecycle status.
        priority: Priority class.
        type: Position in the epic/task/subtask lattice.
        created_at: Creation timestamp.
        parent_id: Parent task id, if any.
        depends_on: Ids of tasks that must be done before this one starts.
        notes: Append-only list of timestamped notes.
        completion_note: Note recorded when the task was completed.
        auto_completed: True when completed because all children finished.
        restore: Metadata recorded when the task came back from the archive.
    """

    id: str
    title: str
    created_at: str
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    type: TaskType = TaskType.TASK
    description: str | None = None
    parent_id: str | None = None
    size: TaskSize | None = None
    phase: str | None = None
    labels: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    completed_at: str | None = None
    completion_note: str | None = None
    auto_completed: bool = False
    cancelled_at: str | None = None
    cancel_reason: str | None = None
    blocked_by: str | None = None
    restore: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "priority": self.priority.value,
            "type": self.type.value,
        }
        optional = {
            "description": self.description,
            "parentId": self.parent_id,
            "size": self.size.value if self.size else None,
            "phase": self.phase,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        data["labels"] = list(self.labels)
        data["dependsOn"] = list(self.depends_on)
        data["files"] = list(self.files)
        data["acceptanceCriteria"] = list(self.acceptance_criteria)
        data["notes"] = list(self.notes)
        data["createdAt"] = self.created_at
        trailing = {
            "completedAt": self.completed_at,
            "completionNote": self.completion_note,
            "autoCompleted": True if self.auto_completed else None,
            "cancelledAt": self.cancelled_at,
            "cancelReason": self.cancel_reason,
            "blockedBy": self.blocked_by,
            "_restore": dict(self.restore) if self.restore else None,
        }
        data.update({k: v for k, v in trailing.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            title=data["title"],
            created_at=data["createdAt"],
            status=TaskStatus(data.get("status", "pending")),
            priority=TaskPriority(data.get("priority", "medium")),
            type=TaskType(data.get("type", "task")),
            description=data.get("description"),
            parent_id=data.get("parentId"),
            size=TaskSize(data["size"]) if data.get("size") else None,
            phase=data.get("phase"),
            labels=list(data.get("labels", [])),
            depends_on=list(data.get("dependsOn", [])),
            files=list(data.get("files", [])),
            acceptance_criteria=list(data.get("acceptanceCriteria", [])),
            notes=list(data.get("notes", [])),
            completed_at=data.get("completedAt"),
            completion_note=data.get("completionNote"),
            auto_completed=bool(data.get("autoCompleted", False)),
            cancelled_at=data.get("cancelledAt"),
            cancel_reason=data.get("cancelReason"),
            blocked_by=data.get("blockedBy"),
            restore=dict(data["_restore"]) if data.get("_restore") else None,
        )

    @property
    def finished_at(self) -> str | None:
        """Timestamp at which the task reached a terminal status."""
        if self.status == TaskStatus.DONE:
            return self.completed_at
        if self.status == TaskStatus.CANCELLED:
            return self.cancelled_at
        return None

    def add_note(self, text: str, timestamp: str | None = None) -> None:
        self.notes.append(f"{timestamp or utc_now()}: {text}")


@dataclass
class Phase:
    """A project-level lifecycle stage."""

    slug: str
    name: str
    order: int
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "order": self.order,
            "status": self.status.value,
        }
        if self.started_at:
            data["startedAt"] = self.started_at
        if self.completed_at:
            data["completedAt"] = self.completed_at
        return data

    @classmethod
    def from_dict(cls, slug: str, data: dict[str, Any]) -> "Phase":
        return cls(
            slug=slug,
            name=data.get("name", slug),
            order=int(data["order"]),
            status=PhaseStatus(data.get("status", "pending")),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
        )


@dataclass
class PhaseHistoryEntry:
    """One append-only record of a phase transition."""

    phase: str
    transition: PhaseTransition
    timestamp: str
    task_count: int
    from_phase: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "phase": self.phase,
            "transitionType": self.transition.value,
            "timestamp": self.timestamp,
            "taskCount": self.task_count,
        }
        if self.from_phase is not None:
            data["fromPhase"] = self.from_phase
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhaseHistoryEntry":
        return cls(
            phase=data["phase"],
            transition=PhaseTransition(data["transitionType"]),
            timestamp=data["timestamp"],
            task_count=int(data.get("taskCount", 0)),
            from_phase=data.get("fromPhase"),
        )


@dataclass
class Focus:
    """Tracks the single active task and session context."""

    current_task: str | None = None
    current_phase: str | None = None
    session_note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentTask": self.current_task,
            "currentPhase": self.current_phase,
            "sessionNote": self.session_note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Focus":
        return cls(
            current_task=data.get("currentTask"),
            current_phase=data.get("currentPhase"),
            session_note=data.get("sessionNote"),
        )


@dataclass
class StoreMeta:
    checksum: str = ""
    active_session: str | None = None
    last_id: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "checksum": self.checksum,
            "activeSession": self.active_session,
            "lastId": self.last_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoreMeta":
        return cls(
            checksum=data.get("checksum", ""),
            active_session=data.get("activeSession"),
            last_id=int(data.get("lastId", 0)),
        )


@dataclass
class LiveStore:
    """The primary mutable document: tasks, phases and focus."""

    version: str
    project: str
    tasks: list[Task] = field(default_factory=list)
    phases: dict[str, Phase] = field(default_factory=dict)
    current_phase: str | None = None
    phase_history: list[PhaseHistoryEntry] = field(default_factory=list)
    focus: Focus = field(default_factory=Focus)
    meta: StoreMeta = field(default_factory=StoreMeta)
    last_updated: str | None = None

    def to_dict(self) -> dict[str, Any]:
        phases = sorted(self.phases.values(), key=lambda p: (p.order, p.slug))
        return {
            "version": self.version,
            "project": {
                "name": self.project,
                "currentPhase": self.current_phase,
                "phases": {p.slug: p.to_dict() for p in phases},
                "phaseHistory": [entry.to_dict() for entry in self.phase_history],
            },
            "lastUpdated": self.last_updated,
            "_meta": self.meta.to_dict(),
            "focus": self.focus.to_dict(),
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LiveStore":
        project = data.get("project", {})
        return cls(
            version=data["version"],
            project=project.get("name", ""),
            tasks=[Task.from_dict(t) for t in data.get("tasks", [])],
            phases={
                slug: Phase.from_dict(slug, phase)
                for slug, phase in project.get("phases", {}).items()
            },
            current_phase=project.get("currentPhase"),
            phase_history=[
                PhaseHistoryEntry.from_dict(e) for e in project.get("phaseHistory", [])
            ],
            focus=Focus.from_dict(data.get("focus", {})),
            meta=StoreMeta.from_dict(data.get("_meta", {})),
            last_updated=data.get("lastUpdated"),
        )

    def get(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def index(self) -> dict[str, Task]:
        return {task.id: task for task in self.tasks}

    def children_of(self, task_id: str | None) -> list[Task]:
        return [task for task in self.tasks if task.parent_id == task_id]

    def descendants_of(self, task_id: str) -> list[Task]:
        """All descendants, breadth first. Tolerates cycles."""
        result: list[Task] = []
        seen = {task_id}
        frontier = [task_id]
        while frontier:
            current = frontier.pop(0)
            for child in self.children_of(current):
                if child.id not in seen:
                    seen.add(child.id)
                    result.append(child)
                    frontier.append(child.id)
        return result

    def dependents_of(self, task_id: str) -> list[Task]:
        return [task for task in self.tasks if task_id in task.depends_on]

    def active_tasks(self) -> list[Task]:
        return [task for task in self.tasks if task.status == TaskStatus.ACTIVE]

    def phases_by_order(self) -> list[Phase]:
        return sorted(self.phases.values(), key=lambda p: (p.order, p.slug))

    def remove(self, task_ids: set[str]) -> list[Task]:
        removed = [task for task in self.tasks if task.id in task_ids]
        self.tasks = [task for task in self.tasks if task.id not in task_ids]
        return removed


@dataclass
class ArchiveInfo:
    """Metadata attached to a task when it is archived."""

    archived_at: str
    reason: str
    session_id: str | None = None
    cycle_time_days: int | None = None
    relationships: dict[str, Any] = field(default_factory=dict)
    restorable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "archivedAt": self.archived_at,
            "reason": self.reason,
            "sessionId": self.session_id,
            "cycleTimeDays": self.cycle_time_days,
            "relationships": dict(self.relationships),
            "restorable": self.restorable,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchiveInfo":
        return cls(
            archived_at=data["archivedAt"],
            reason=data.get("reason", "auto"),
            session_id=data.get("sessionId"),
            cycle_time_days=data.get("cycleTimeDays"),
            relationships=dict(data.get("relationships", {})),
            restorable=bool(data.get("restorable", True)),
        )


@dataclass
class ArchivedTask:
    task: Task
    archive: ArchiveInfo

    @property
    def id(self) -> str:
        return self.task.id

    def to_dict(self) -> dict[str, Any]:
        data = self.task.to_dict()
        data["_archive"] = self.archive.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchivedTask":
        task_data = {k: v for k, v in data.items() if k != "_archive"}
        return cls(
            task=Task.from_dict(task_data),
            archive=ArchiveInfo.from_dict(data["_archive"]),
        )


@dataclass
class ArchiveMeta:
    total_archived: int = 0
    last_archived: str | None = None
    oldest_task: str | None = None
    newest_task: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalArchived": self.total_archived,
            "lastArchived": self.last_archived,
            "oldestTask": self.oldest_task,
            "newestTask": self.newest_task,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchiveMeta":
        return cls(
            total_archived=int(data.get("totalArchived", 0)),
            last_archived=data.get("lastArchived"),
            oldest_task=data.get("oldestTask"),
            newest_task=data.get("newestTask"),
        )


@dataclass
class ArchiveStore:
    """Relocated, logically immutable tasks."""

    version: str
    project: str
    archived_tasks: list[ArchivedTask] = field(default_factory=list)
    meta: ArchiveMeta = field(default_factory=ArchiveMeta)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "project": self.project,
            "_meta": self.meta.to_dict(),
            "archivedTasks": [entry.to_dict() for entry in self.archived_tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchiveStore":
        return cls(
            version=data["version"],
            project=data.get("project", ""),
            archived_tasks=[ArchivedTask.from_dict(t) for t in data.get("archivedTasks", [])],
            meta=ArchiveMeta.from_dict(data.get("_meta", {})),
        )

    def get(self, task_id: str) -> ArchivedTask | None:
        for entry in self.archived_tasks:
            if entry.id == task_id:
                return entry
        return None

    def ids(self) -> set[str]:
        return {entry.id for entry in self.archived_tasks}


@dataclass
class LogEntry:
    """One audit record. Never mutated once written."""

    id: str
    timestamp: str
    action: str
    actor: str = "system"
    session_id: str | None = None
    task_id: str | None = None
    before: Any = None
    after: Any = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "sessionId": self.session_id,
            "action": self.action,
            "actor": self.actor,
            "taskId": self.task_id,
            "before": self.before,
            "after": self.after,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogEntry":
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            action=data["action"],
            actor=data.get("actor", "system"),
            session_id=data.get("sessionId"),
            task_id=data.get("taskId"),
            before=data.get("before"),
            after=data.get("after"),
            details=dict(data.get("details") or {}),
        )


@dataclass
class LogMeta:
    total_entries: int = 0
    first_entry: str | None = None
    last_entry: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalEntries": self.total_entries,
            "firstEntry": self.first_entry,
            "lastEntry": self.last_entry,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogMeta":
        return cls(
            total_entries=int(data.get("totalEntries", 0)),
            first_entry=data.get("firstEntry"),
            last_entry=data.get("lastEntry"),
        )


@dataclass
class LogStore:
    version: str
    project: str
    entries: list[LogEntry] = field(default_factory=list)
    meta: LogMeta = field(default_factory=LogMeta)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "project": self.project,
            "_meta": self.meta.to_dict(),
            "entries": [entry.to_dict() for entry in self.entries],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogStore":
        return cls(
            version=data["version"],
            project=data.get("project", ""),
            entries=[LogEntry.from_dict(e) for e in data.get("entries", [])],
            meta=LogMeta.from_dict(data.get("_meta", {})),
        )
