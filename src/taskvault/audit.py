"""Append-only operation log.

The log is an audit sink, never replayed to rebuild state. Entries are
appended through the write pipeline in their own commit after the
mutation they describe, and pruned from the head once the log exceeds
its configured size or age.
"""

import uuid
from datetime import timedelta
from enum import Enum
from typing import Any

from taskvault.codec import DocumentKind
from taskvault.errors import StoreError
from taskvault.logging import Loggers
from taskvault.models import LogEntry, LogStore, parse_timestamp, utc_now
from taskvault.policy import LogPolicy

logger = Loggers.engine()


class LogAction(str, Enum):
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    TASK_CREATED = "task_created"
    TASK_UPDATED = "task_updated"
    STATUS_CHANGED = "status_changed"
    TASK_ARCHIVED = "task_archived"
    TASK_RESTORED = "task_restored"
    FOCUS_CHANGED = "focus_changed"
    PHASE_CHANGED = "phase_changed"
    CONFIG_CHANGED = "config_changed"
    VALIDATION_RUN = "validation_run"
    BACKUP_CREATED = "backup_created"
    BACKUP_RESTORED = "backup_restored"
    MIGRATION_RUN = "migration_run"


def new_entry_id() -> str:
    return f"log_{uuid.uuid4().hex[:12]}"


def make_entry(
    action: LogAction | str,
    *,
    actor: str = "system",
    session_id: str | None = None,
    task_id: str | None = None,
    before: Any = None,
    after: Any = None,
    details: dict[str, Any] | None = None,
    timestamp: str | None = None,
) -> LogEntry:
    return LogEntry(
        id=new_entry_id(),
        timestamp=timestamp or utc_now(),
        action=action.value if isinstance(action, LogAction) else action,
        actor=actor,
        session_id=session_id,
        task_id=task_id,
        before=before,
        after=after,
        details=dict(details or {}),
    )


def refresh_meta(log: LogStore) -> None:
    log.meta.total_entries = len(log.entries)
    log.meta.first_entry = log.entries[0].timestamp if log.entries else None
    log.meta.last_entry = log.entries[-1].timestamp if log.entries else None


def prune(log: LogStore, policy: LogPolicy, now: str | None = None) -> list[LogEntry]:
    """Drop entries from the head beyond the age and size limits.

    Returns:
        The removed entries, oldest first.
    """
    removed: list[LogEntry] = []
    if policy.retention_days:
        cutoff = parse_timestamp(now or utc_now()) - timedelta(days=policy.retention_days)
        while log.entries and parse_timestamp(log.entries[0].timestamp) < cutoff:
            removed.append(log.entries.pop(0))
    if policy.max_entries and len(log.entries) > policy.max_entries:
        excess = len(log.entries) - policy.max_entries
        removed.extend(log.entries[:excess])
        del log.entries[:excess]
    return removed


def append(log: LogStore, entries: list[LogEntry], policy: LogPolicy, now: str | None = None) -> list[LogEntry]:
    """Append entries, prune the head, and refresh the log metadata."""
    log.entries.extend(entries)
    removed = prune(log, policy, now)
    refresh_meta(log)
    return removed


class AuditLog:
    """Writes and reads the operation log through the write pipeline.

    Args:
        pipeline: WritePipeline for the store.
        actor: Actor recorded on every entry.
        session_id: Session recorded on every entry.
    """

    def __init__(self, pipeline, actor: str = "system", session_id: str | None = None):
        self.pipeline = pipeline
        self.actor = actor
        self.session_id = session_id

    def entry(self, action: LogAction | str, **kwargs: Any) -> LogEntry:
        kwargs.setdefault("actor", self.actor)
        kwargs.setdefault("session_id", self.session_id)
        return make_entry(action, **kwargs)

    def record(self, entries: list[LogEntry]) -> bool:
        """Append entries in their own commit.

        A failure here never undoes the mutation being recorded; it is
        logged and reported as False.
        """
        if not entries:
            return True

        def mutate(candidate) -> int:
            if not candidate.config.log.enabled:
                return 0
            return len(append(candidate.log, entries, candidate.config.log))

        try:
            result = self.pipeline.commit(
                [DocumentKind.LOG], mutate, operation="log", backup_type=None
            )
        except StoreError as e:
            logger.warning("log_append_failed", category=e.category, error=e.message, entries=len(entries))
            return False
        if result.value:
            logger.debug("log_pruned", removed=result.value)
        return True

    def read(
        self,
        limit: int | None = None,
        task_id: str | None = None,
        action: str | None = None,
    ) -> list[LogEntry]:
        """Entries newest first, optionally filtered."""
        log: LogStore = self.pipeline.read(DocumentKind.LOG)
        entries = [
            e
            for e in reversed(log.entries)
            if (task_id is None or e.task_id == task_id) and (action is None or e.action == action)
        ]
        return entries[:limit] if limit else entries
