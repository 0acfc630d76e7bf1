"""Task store engine: one method per verb, each returning an Outcome.

Every mutating method builds a mutator from the lifecycle, phase and
archive functions and runs it through the write pipeline, retrying
recoverable errors with class-specific backoff. A successful commit is
followed by an audit log append in its own commit.

Example:
    >>> engine = TaskEngine(TaskvaultSettings(store_dir=Path(".claude")))
    >>> engine.init("demo")
    >>> outcome = engine.add("Write parser", priority="high")
    >>> outcome.data["task"]["id"]
    'T001'
"""

import inspect
import time
from typing import Any, Callable, Iterable

from taskvault import archive as retention
from taskvault import checksum as fingerprint
from taskvault import codec, lifecycle, phases, sessions
from taskvault.audit import AuditLog, LogAction
from taskvault.backups import BackupType
from taskvault.codec import DocumentKind
from taskvault.config import TaskvaultSettings, get_settings
from taskvault.constants import APP_VERSION, DEFAULT_PROJECT_NAME, truncate
from taskvault.errors import (
    ErrorCategory,
    NotFound,
    Outcome,
    SchemaError,
    StoreError,
)
from taskvault.lifecycle import NewTask
from taskvault.logging import Loggers, bind_context, clear_context, configure_logging
from taskvault.migrations import Compatibility, MigrationEngine
from taskvault.models import (
    LiveStore,
    LogEntry,
    TaskPriority,
    TaskSize,
    TaskStatus,
    TaskType,
    utc_now,
)
from taskvault.pipeline import Candidate, WritePipeline
from taskvault.policy import ProjectConfig
from taskvault.retry import budgets_from_policy, call_with_retry
from taskvault.validation import StoreValidator, repair

logger = Loggers.engine()

Change = Callable[[Candidate, list[LogEntry]], Any]


def _enum(enum_cls, value):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = ", ".join(m.value for m in enum_cls)
        raise StoreError(
            f"Invalid {enum_cls.__name__} '{value}' (expected one of: {allowed})",
            category=ErrorCategory.SCHEMA_INVALID,
        ) from e


def _schema_error(message: str) -> StoreError:
    return StoreError(message, category=ErrorCategory.SCHEMA_INVALID)


def _strings(name: str, value: Any) -> list[str] | None:
    """Accept a list of strings; a bare string is not split into characters."""
    if value is None:
        return None
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise _schema_error(f"'{name}' must be a list of strings, got {value!r}")
    return list(value)


def _text(name: str, value: Any) -> str | None:
    if value is not None and not isinstance(value, str):
        raise _schema_error(f"'{name}' must be a string, got {value!r}")
    return value


_UPDATE_PARAMS = inspect.signature(lifecycle.update_task).parameters
UPDATE_FIELDS = frozenset(
    name for name, p in _UPDATE_PARAMS.items()
    if p.kind == inspect.Parameter.KEYWORD_ONLY and name != "now"
)
_UPDATE_LIST_FIELDS = frozenset(
    {"labels", "add_labels", "remove_labels", "depends_on", "add_depends", "remove_depends",
     "files", "acceptance_criteria"}
)
_UPDATE_TEXT_FIELDS = frozenset({"title", "description", "phase", "note"})


def _update_kwargs(changes: dict[str, Any]) -> dict[str, Any]:
    """Check update keywords against update_task and coerce their values."""
    unknown = sorted(set(changes) - UPDATE_FIELDS)
    if unknown:
        raise StoreError(
            f"Unknown update field(s): {', '.join(unknown)}",
            category=ErrorCategory.SCHEMA_INVALID,
            remedy=f"Updatable fields: {', '.join(sorted(UPDATE_FIELDS))}",
            details={"unknown": unknown},
        )
    kwargs = {}
    for name, value in changes.items():
        if name in _UPDATE_LIST_FIELDS:
            value = _strings(name, value)
            if value is None and name.startswith(("add_", "remove_")):
                continue
        elif name in _UPDATE_TEXT_FIELDS:
            value = _text(name, value)
        elif name == "priority":
            value = _enum(TaskPriority, value)
        elif name == "size":
            value = _enum(TaskSize, value)
        kwargs[name] = value
    return kwargs


def _status_change(task_id: str, before: TaskStatus, after: TaskStatus) -> dict[str, Any]:
    return {
        "task_id": task_id,
        "before": {"status": before.value},
        "after": {"status": after.value},
    }


class TaskEngine:
    """Facade over the store for a single store directory.

    Args:
        settings: Runtime settings; defaults to get_settings().
        sleep: Sleep function used between retries.
    """

    def __init__(
        self,
        settings: TaskvaultSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or get_settings()
        configure_logging(self.settings)
        self.pipeline = WritePipeline(self.settings, version=APP_VERSION)
        self.audit = AuditLog(self.pipeline, actor=self.settings.actor, session_id=self.settings.session_id)
        self.migrations = MigrationEngine(self.pipeline)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _entry(self, action: LogAction, **kwargs: Any) -> LogEntry:
        return self.audit.entry(action, **kwargs)

    def _config(self) -> ProjectConfig:
        return self.pipeline.load_config()

    def _run(
        self,
        operation: str,
        documents: Iterable[DocumentKind],
        change: Change,
        *,
        expected_checksum: str | None = None,
        backup_type: BackupType | None = BackupType.SAFETY,
        verify_checksum: bool = True,
    ) -> Outcome:
        """Commit ``change`` with retry and record its log entries."""
        documents = list(documents)
        entries: list[LogEntry] = []

        def mutator(candidate: Candidate) -> Any:
            entries.clear()
            return change(candidate, entries)

        bind_context(operation=operation, actor=self.settings.actor)
        try:
            try:
                budgets = budgets_from_policy(self._config().retry)
                result = call_with_retry(
                    lambda: self.pipeline.commit(
                        documents,
                        mutator,
                        operation=operation,
                        backup_type=backup_type,
                        verify_checksum=verify_checksum,
                        expected_checksum=expected_checksum,
                    ),
                    budgets,
                    pinned_checksum=expected_checksum is not None,
                    sleep=self._sleep,
                )
            except StoreError as e:
                logger.info("operation_failed", category=e.category, error=e.message)
                return Outcome.fail(e)
            except (TypeError, ValueError) as e:
                logger.warning("operation_rejected", error=str(e))
                return Outcome.fail(_schema_error(f"Invalid arguments for {operation}: {e}"))

            data = result.value if isinstance(result.value, dict) else {"result": result.value}
            if result.checksum:
                data.setdefault("checksum", result.checksum)
            if not result.changed:
                return Outcome.no_change(data, result.warnings)
            if not self.audit.record(entries):
                result.warnings.append("The operation succeeded but could not be written to the log")
            logger.info("operation_succeeded")
            return Outcome.success(data, result.warnings)
        finally:
            clear_context()

    def _query(self, fn: Callable[[], Any]) -> Outcome:
        try:
            return Outcome.success(fn())
        except StoreError as e:
            return Outcome.fail(e)
        except (TypeError, ValueError) as e:
            return Outcome.fail(_schema_error(f"Invalid query arguments: {e}"))

    # ------------------------------------------------------------------
    # store
    # ------------------------------------------------------------------

    def init(self, project: str | None = None) -> Outcome:
        """Create any missing store documents."""
        name = project or DEFAULT_PROJECT_NAME
        try:
            self.settings.ensure_store_dir()
            created = self.pipeline.initialize(
                {kind: codec.empty_document(kind, name) for kind in DocumentKind}
            )
        except StoreError as e:
            return Outcome.fail(e)
        except OSError as e:
            return Outcome.fail(StoreError(f"Cannot create {self.settings.store_dir}: {e}", ErrorCategory.IO_ERROR))
        data = {"storeDir": str(self.settings.store_dir), "created": [k.value for k in created]}
        if not created:
            return Outcome.no_change(data)
        self.audit.record(
            [self._entry(LogAction.CONFIG_CHANGED, details={"initialized": data["created"], "project": name})]
        )
        return Outcome.success(data)

    def checksum(self) -> Outcome:
        """Current task fingerprint, for pinning with expected_checksum."""
        return self._query(lambda: {"checksum": fingerprint.checksum(self._read_tasks().tasks)})

    def _read_tasks(self) -> LiveStore:
        return self.pipeline.read(DocumentKind.TASKS)

    # ------------------------------------------------------------------
    # tasks
    # ------------------------------------------------------------------

    def add(
        self,
        title: str,
        *,
        description: str | None = None,
        status: str = "pending",
        priority: str = "medium",
        type: str | None = None,
        parent_id: str | None = None,
        size: str | None = None,
        phase: str | None = None,
        labels: list[str] | None = None,
        depends_on: list[str] | None = None,
        files: list[str] | None = None,
        acceptance_criteria: list[str] | None = None,
        notes: list[str] | None = None,
        expected_checksum: str | None = None,
    ) -> Outcome:
        def change(candidate: Candidate, entries: list[LogEntry]) -> dict:
            spec = NewTask(
                title=_text("title", title),
                description=_text("description", description),
                status=_enum(TaskStatus, status),
                priority=_enum(TaskPriority, priority),
                type=_enum(TaskType, type),
                parent_id=_text("parent_id", parent_id),
                size=_enum(TaskSize, size),
                phase=_text("phase", phase),
                labels=_strings("labels", labels) or [],
                depends_on=_strings("depends_on", depends_on) or [],
                files=_strings("files", files) or [],
                acceptance_criteria=_strings("acceptance_criteria", acceptance_criteria) or [],
                notes=_strings("notes", notes) or [],
            )
            task = lifecycle.add_task(candidate.tasks, candidate.config, spec, candidate.archive)
            entries.append(self._entry(LogAction.TASK_CREATED, task_id=task.id, after=task.to_dict()))
            return {"task": task.to_dict()}

        return self._run(
            "add", [DocumentKind.TASKS, DocumentKind.ARCHIVE], change, expected_checksum=expected_checksum
        )

    def update(self, task_id: str, *, expected_checksum: str | None = None, **changes: Any) -> Outcome:
        """Edit non-status fields; see lifecycle.update_task for the accepted keys."""

        def change(candidate: Candidate, entries: list[LogEntry]) -> dict:
            kwargs = _update_kwargs(changes)
            before = lifecycle.require_task(candidate.tasks, task_id).to_dict()
            task = lifecycle.update_task(candidate.tasks, task_id, **kwargs)
            after = task.to_dict()
            if after != before:
                entries.append(self._entry(LogAction.TASK_UPDATED, task_id=task_id, before=before, after=after))
            return {"task": after}

        return self._run("update", [DocumentKind.TASKS], change, expected_checksum=expected_checksum)

    def _transition(
        self,
        operation: str,
        task_id: str,
        apply: Callable[[Candidate], Any],
        *,
        documents: Iterable[DocumentKind] = (DocumentKind.TASKS,),
        expected_checksum: str | None = None,
    ) -> Outcome:
        """Run a status transition and log every status it changed."""

        def change(candidate: Candidate, entries: list[LogEntry]) -> dict:
            before = {t.id: t.status for t in candidate.tasks.tasks}
            extra = apply(candidate)
            current = list(candidate.tasks.tasks)
            if DocumentKind.ARCHIVE in candidate.documents:
                # tasks archived in the same commit
                current.extend(e.task for e in candidate.archive.archived_tasks if e.id in before)
            changed = []
            for task in current:
                if task.id in before and before[task.id] != task.status:
                    changed.append(task.id)
                    entries.append(
                        self._entry(
                            LogAction.STATUS_CHANGED,
                            details={"operation": operation},
                            **_status_change(task.id, before[task.id], task.status),
                        )
                    )
            task = next((t for t in current if t.id == task_id), None)
            data: dict[str, Any] = {"task": task.to_dict() if task else None, "changed": changed}
            if isinstance(extra, dict):
                data.update(extra)
            return data

        return self._run(operation, documents, change, expected_checksum=expected_checksum)

    def start(self, task_id: str, *, expected_checksum: str | None = None) -> Outcome:
        return self._transition(
            "start",
            task_id,
            lambda c: lifecycle.start_task(c.tasks, task_id, c.archive),
            documents=(DocumentKind.TASKS, DocumentKind.ARCHIVE),
            expected_checksum=expected_checksum,
        )

    def block(self, task_id: str, reason: str, *, expected_checksum: str | None = None) -> Outcome:
        return self._transition(
            "block",
            task_id,
            lambda c: lifecycle.block_task(c.tasks, task_id, reason),
            expected_checksum=expected_checksum,
        )

    def unblock(self, task_id: str, *, expected_checksum: str | None = None) -> Outcome:
        return self._transition(
            "unblock",
            task_id,
            lambda c: lifecycle.unblock_task(c.tasks, task_id),
            expected_checksum=expected_checksum,
        )

    def complete(
        self,
        task_id: str,
        note: str | None = None,
        *,
        skip_note: bool = False,
        expected_checksum: str | None = None,
    ) -> Outcome:
        """Complete a task, auto-completing finished ancestors.

        With ``lifecycle.autoArchiveOnComplete`` the retention policy runs
        in the same commit.
        """
        try:
            auto_archive = self._config().lifecycle.auto_archive_on_complete
        except StoreError as e:
            return Outcome.fail(e)

        def apply(candidate: Candidate) -> dict:
            now = utc_now()
            auto = lifecycle.complete_task(
                candidate.tasks, candidate.config, task_id, note, skip_note=skip_note, now=now
            )
            result: dict[str, Any] = {"autoCompleted": [t.id for t in auto]}
            if auto:
                candidate.warnings.append(
                    "Auto-completed: " + ", ".join(t.id for t in auto)
                )
            if auto_archive and (auto or candidate.tasks.get(task_id).completed_at == now):
                selection = retention.select_for_archive(
                    candidate.tasks, candidate.config.archive, "auto", now=now
                )
                moved = retention.archive_tasks(
                    candidate.tasks,
                    candidate.archive,
                    selection.candidates,
                    reason="auto",
                    session_id=self.settings.session_id,
                    now=now,
                )
                result["archived"] = [e.id for e in moved]
            return result

        documents = [DocumentKind.TASKS]
        if auto_archive:
            documents.append(DocumentKind.ARCHIVE)
        return self._transition(
            "complete", task_id, apply, documents=documents, expected_checksum=expected_checksum
        )

    def delete(
        self,
        task_id: str,
        reason: str | None = None,
        *,
        children: str | None = None,
        force: bool = False,
        expected_checksum: str | None = None,
    ) -> Outcome:
        """Cancel a task. There is no hard delete."""
        if children not in (None, "block", "orphan", "cascade"):
            return Outcome.fail(
                StoreError(
                    f"Unknown child-handling mode '{children}'",
                    category=ErrorCategory.SCHEMA_INVALID,
                    remedy="Use block, orphan or cascade",
                )
            )

        def apply(candidate: Candidate) -> dict:
            parents_before = {t.id: t.parent_id for t in candidate.tasks.tasks}
            cancelled = lifecycle.cancel_task(
                candidate.tasks, candidate.config, task_id, reason, children=children, force=force
            )
            orphaned = [
                t.id
                for t in candidate.tasks.tasks
                if parents_before.get(t.id) == task_id and t.parent_id is None
            ]
            dependents = [
                t.id
                for t in candidate.tasks.dependents_of(task_id)
                if not t.status.is_terminal
            ]
            if dependents:
                candidate.warnings.append(
                    f"Open tasks still depend on {task_id}: {', '.join(dependents)}"
                )
            return {"cancelled": [t.id for t in cancelled], "orphaned": orphaned}

        return self._transition("delete", task_id, apply, expected_checksum=expected_checksum)

    def reopen(self, task_id: str, reason: str | None = None, *, expected_checksum: str | None = None) -> Outcome:
        def apply(candidate: Candidate) -> None:
            candidate.warnings.extend(
                lifecycle.reopen_task(candidate.tasks, candidate.config, task_id, reason)
            )

        return self._transition("reopen", task_id, apply, expected_checksum=expected_checksum)

    def uncancel(self, task_id: str, *, expected_checksum: str | None = None) -> Outcome:
        return self._transition(
            "uncancel",
            task_id,
            lambda c: lifecycle.uncancel_task(c.tasks, task_id),
            expected_checksum=expected_checksum,
        )

    def reparent(self, task_id: str, parent_id: str | None, *, expected_checksum: str | None = None) -> Outcome:
        def change(candidate: Candidate, entries: list[LogEntry]) -> dict:
            before = lifecycle.require_task(candidate.tasks, task_id).to_dict()
            task = lifecycle.reparent_task(candidate.tasks, candidate.config, task_id, parent_id)
            after = task.to_dict()
            if after != before:
                entries.append(
                    self._entry(
                        LogAction.TASK_UPDATED,
                        task_id=task_id,
                        before={"parentId": before.get("parentId"), "type": before["type"]},
                        after={"parentId": after.get("parentId"), "type": after["type"]},
                    )
                )
            return {"task": after}

        return self._run("reparent", [DocumentKind.TASKS], change, expected_checksum=expected_checksum)

    def promote(self, task_id: str, *, expected_checksum: str | None = None) -> Outcome:
        """Detach a task from its parent."""
        return self.reparent(task_id, None, expected_checksum=expected_checksum)

    def focus(
        self,
        task_id: str | None = None,
        *,
        note: str | None = None,
        clear: bool = False,
    ) -> Outcome:
        def change(candidate: Candidate, entries: list[LogEntry]) -> dict:
            store = candidate.tasks
            before = store.focus.to_dict()
            lifecycle.set_focus(store, task_id=task_id, session_note=note, clear=clear)
            after = store.focus.to_dict()
            if after != before:
                entries.append(
                    self._entry(
                        LogAction.FOCUS_CHANGED,
                        task_id=store.focus.current_task,
                        before=before,
                        after=after,
                    )
                )
            return {"focus": after}

        return self._run("focus", [DocumentKind.TASKS], change)

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    def session_start(self) -> Outcome:
        """Open a work session; fails if one is already open."""

        def change(candidate: Candidate, entries: list[LogEntry]) -> dict:
            store = candidate.tasks
            session_id = sessions.start_session(store)
            entries.append(
                self._entry(LogAction.SESSION_START, session_id=session_id, details={"focus": store.focus.to_dict()})
            )
            return {"sessionId": session_id, "focus": store.focus.to_dict()}

        return self._run("session-start", [DocumentKind.TASKS], change)

    def session_end(self, note: str | None = None) -> Outcome:
        """Close the open session, optionally leaving a note for the next one."""

        def change(candidate: Candidate, entries: list[LogEntry]) -> dict:
            store = candidate.tasks
            ended = sessions.end_session(store, _text("note", note))
            if ended is None:
                candidate.warnings.append("No active session to end")
            else:
                entries.append(
                    self._entry(
                        LogAction.SESSION_END,
                        session_id=ended,
                        details={"note": note} if note else {},
                    )
                )
            return {"sessionId": ended, "counts": sessions.task_counts(store)}

        return self._run("session-end", [DocumentKind.TASKS], change)

    def session_status(self) -> Outcome:
        def collect() -> dict:
            store = self._read_tasks()
            return {
                "activeSession": store.meta.active_session,
                "focus": store.focus.to_dict(),
                "counts": sessions.task_counts(store),
            }

        return self._query(collect)

    def session(self, action: str, **kwargs: Any) -> Outcome:
        """Route a session sub-command to its method."""
        handlers: dict[str, Callable[..., Outcome]] = {
            "start": self.session_start,
            "end": lambda: self.session_end(kwargs.get("note")),
            "status": self.session_status,
        }
        handler = handlers.get(action)
        if handler is None:
            return Outcome.fail(
                StoreError(
                    f"Unknown session action '{action}'",
                    category=ErrorCategory.SCHEMA_INVALID,
                    remedy="Use one of: " + ", ".join(handlers),
                )
            )
        return handler()

    def show(self, task_id: str) -> Outcome:
        """A live or archived task."""

        def find() -> dict:
            task = self._read_tasks().get(task_id)
            if task is not None:
                return {"task": task.to_dict(), "archived": False}
            try:
                archived = self.pipeline.read(DocumentKind.ARCHIVE).get(task_id)
            except NotFound:
                archived = None
            if archived is None:
                raise NotFound(f"Task {task_id} not found", details={"taskId": task_id})
            return {"task": archived.to_dict(), "archived": True}

        return self._query(find)

    def list_tasks(
        self,
        *,
        status: str | None = None,
        priority: str | None = None,
        parent_id: str | None = None,
        phase: str | None = None,
        label: str | None = None,
    ) -> Outcome:
        def collect() -> dict:
            tasks = self._read_tasks().tasks
            if status:
                tasks = [t for t in tasks if t.status.value == status]
            if priority:
                tasks = [t for t in tasks if t.priority.value == priority]
            if parent_id:
                tasks = [t for t in tasks if t.parent_id == parent_id]
            if phase:
                tasks = [t for t in tasks if t.phase == phase]
            if label:
                tasks = [t for t in tasks if label in t.labels]
            return {"tasks": [t.to_dict() for t in tasks], "count": len(tasks)}

        return self._query(collect)

    # ------------------------------------------------------------------
    # phases
    # ------------------------------------------------------------------

    def _phase_change(self, operation: str, apply: Callable[[Candidate], Any]) -> Outcome:
        def change(candidate: Candidate, entries: list[LogEntry]) -> dict:
            store = candidate.tasks
            history_before = len(store.phase_history)
            pointer_before = store.current_phase
            phase = apply(candidate)
            for item in store.phase_history[history_before:]:
                entries.append(self._entry(LogAction.PHASE_CHANGED, after=item.to_dict()))
            if store.current_phase != pointer_before and len(store.phase_history) == history_before:
                entries.append(
                    self._entry(
                        LogAction.PHASE_CHANGED,
                        before={"currentPhase": pointer_before},
                        after={"currentPhase": store.current_phase},
                    )
                )
            return {
                "phase": {"slug": phase.slug, **phase.to_dict()} if phase else None,
                "currentPhase": store.current_phase,
            }

        return self._run(operation, [DocumentKind.TASKS], change)

    def phase_define(self, slug: str, name: str | None = None, order: int | None = None) -> Outcome:
        return self._phase_change("phase-define", lambda c: phases.define_phase(c.tasks, slug, name, order))

    def phase_start(self, slug: str) -> Outcome:
        return self._phase_change("phase-start", lambda c: phases.start_phase(c.tasks, slug))

    def phase_complete(self, slug: str | None = None, *, force: bool = False) -> Outcome:
        return self._phase_change(
            "phase-complete",
            lambda c: phases.complete_phase(c.tasks, c.config.phases, slug, force=force),
        )

    def phase_advance(self, *, force: bool = False) -> Outcome:
        return self._phase_change(
            "phase-advance", lambda c: phases.advance_phase(c.tasks, c.config.phases, force=force)
        )

    def phase_set(self, slug: str, *, confirm: bool = False) -> Outcome:
        return self._phase_change("phase-set", lambda c: phases.set_phase(c.tasks, slug, confirm=confirm))

    def phase_list(self) -> Outcome:
        def collect() -> dict:
            store = self._read_tasks()
            return {
                "currentPhase": store.current_phase,
                "phases": [
                    {"slug": p.slug, **p.to_dict(), "progress": phases.progress(store, p.slug).to_dict()}
                    for p in store.phases_by_order()
                ],
            }

        return self._query(collect)

    def phase_show(self, slug: str | None = None) -> Outcome:
        def collect() -> dict:
            store = self._read_tasks()
            target = slug or store.current_phase
            if target is None:
                raise NotFound("No current phase")
            phase = phases.require_phase(store, target)
            return {
                "phase": {"slug": phase.slug, **phase.to_dict()},
                "progress": phases.progress(store, target).to_dict(),
                "history": [e.to_dict() for e in store.phase_history if e.phase == target],
            }

        return self._query(collect)

    def phase(self, action: str, slug: str | None = None, **kwargs: Any) -> Outcome:
        """Route a phase sub-command to its method."""
        handlers: dict[str, Callable[..., Outcome]] = {
            "define": lambda: self.phase_define(slug, kwargs.get("name"), kwargs.get("order")),
            "start": lambda: self.phase_start(slug),
            "complete": lambda: self.phase_complete(slug, force=kwargs.get("force", False)),
            "advance": lambda: self.phase_advance(force=kwargs.get("force", False)),
            "set": lambda: self.phase_set(slug, confirm=kwargs.get("confirm", False)),
            "show": lambda: self.phase_show(slug),
            "list": self.phase_list,
        }
        handler = handlers.get(action)
        if handler is None:
            return Outcome.fail(
                StoreError(
                    f"Unknown phase action '{action}'",
                    category=ErrorCategory.SCHEMA_INVALID,
                    remedy="Use one of: " + ", ".join(handlers),
                )
            )
        if action in ("define", "start", "set") and not slug:
            return Outcome.fail(StoreError(f"phase {action} needs a slug", category=ErrorCategory.SCHEMA_INVALID))
        return handler()

    # ------------------------------------------------------------------
    # archive
    # ------------------------------------------------------------------

    def archive(
        self,
        task_ids: list[str] | None = None,
        *,
        mode: str = "auto",
        cascade: bool = False,
        dry_run: bool = False,
        reason: str | None = None,
    ) -> Outcome:
        """Move finished tasks to the archive.

        With ``task_ids`` the given tasks are archived explicitly;
        otherwise the retention policy selects them. ``dry_run`` reports
        the selection without writing.
        """
        if mode not in ("auto", "force", "all"):
            return Outcome.fail(
                StoreError(f"Unknown archive mode '{mode}'", category=ErrorCategory.SCHEMA_INVALID)
            )
        try:
            task_ids = _strings("task_ids", task_ids)
        except StoreError as e:
            return Outcome.fail(e)

        if dry_run:
            def preview() -> dict:
                store = self._read_tasks()
                selection = retention.select_for_archive(store, self._config().archive, mode, cascade=cascade)
                return selection.to_dict()

            return self._query(preview)

        def change(candidate: Candidate, entries: list[LogEntry]) -> dict:
            now = utc_now()
            if task_ids:
                ids = retention.resolve_explicit(candidate.tasks, candidate.archive, task_ids, cascade=cascade)
                skipped: dict[str, str] = {}
            else:
                selection = retention.select_for_archive(
                    candidate.tasks, candidate.config.archive, mode, cascade=cascade, now=now
                )
                ids, skipped = selection.candidates, selection.skipped
            moved = retention.archive_tasks(
                candidate.tasks,
                candidate.archive,
                ids,
                reason=reason or ("manual" if task_ids else mode),
                session_id=self.settings.session_id,
                now=now,
            )
            for entry in moved:
                entries.append(
                    self._entry(
                        LogAction.TASK_ARCHIVED,
                        task_id=entry.id,
                        before={"status": entry.task.status.value},
                        details={"reason": entry.archive.reason},
                    )
                )
            return {"archived": [e.id for e in moved], "skipped": skipped}

        return self._run(
            "archive",
            [DocumentKind.TASKS, DocumentKind.ARCHIVE],
            change,
            backup_type=BackupType.ARCHIVE,
        )

    def unarchive(self, task_ids: list[str], *, preserve_status: bool = True) -> Outcome:
        try:
            task_ids = _strings("task_ids", task_ids) or []
        except StoreError as e:
            return Outcome.fail(e)

        def change(candidate: Candidate, entries: list[LogEntry]) -> dict:
            restored = retention.unarchive_tasks(
                candidate.tasks, candidate.archive, task_ids, preserve_status=preserve_status
            )
            for task in restored:
                entries.append(
                    self._entry(
                        LogAction.TASK_RESTORED,
                        task_id=task.id,
                        after={"status": task.status.value},
                        details={"preserveStatus": preserve_status},
                    )
                )
            return {"restored": [t.id for t in restored]}

        return self._run(
            "unarchive",
            [DocumentKind.TASKS, DocumentKind.ARCHIVE],
            change,
            backup_type=BackupType.ARCHIVE,
        )

    # ------------------------------------------------------------------
    # maintenance
    # ------------------------------------------------------------------

    def migrate(self, *, check_only: bool = False) -> Outcome:
        try:
            statuses = self.migrations.status()
            data: dict[str, Any] = {"documents": [s.to_dict() for s in statuses]}
            if check_only:
                return Outcome.success(data)
            result = self.migrations.run()
        except StoreError as e:
            return Outcome.fail(e)
        if result is None:
            return Outcome.no_change(data)
        data["migrated"] = result.value
        data["backup"] = result.backup.backup_id if result.backup else None
        self.audit.record(
            [
                self._entry(
                    LogAction.MIGRATION_RUN,
                    before={s.kind.value: s.version for s in statuses if s.compatibility == Compatibility.NEEDS_MIGRATION},
                    details={"migrated": result.value},
                )
            ]
        )
        return Outcome.success(data, result.warnings)

    def validate(self, *, fix: bool = False) -> Outcome:
        """Report every finding in the store, pre-existing ones included.

        With ``fix`` the safely repairable findings are fixed first in one
        commit that skips the checksum check, so a store whose fingerprint
        drifted after a hand edit becomes writable again.
        """
        fixed: list[str] = []
        if fix:
            repaired = self._repair()
            if not repaired.ok:
                return repaired
            fixed = repaired.data["fixed"]

        def run() -> dict:
            violations: list[dict] = []
            documents: dict[str, Any] = {}
            for kind in DocumentKind:
                path = self.pipeline.path_for(kind)
                if not path.exists():
                    if kind == DocumentKind.TASKS:
                        raise NotFound(f"No store at {self.settings.store_dir}", remedy="Run init first")
                    continue
                try:
                    documents[kind.value] = codec.load(path, kind)
                except SchemaError as e:
                    violations.append({"code": e.category, "message": e.message, "document": kind.value})
            store = documents.get(DocumentKind.TASKS.value)
            archive = documents.get(DocumentKind.ARCHIVE.value)
            config = documents.get(DocumentKind.CONFIG.value) or ProjectConfig()
            if store is not None:
                try:
                    fingerprint.verify(store)
                except StoreError as e:
                    violations.append({"code": e.category, "message": e.message, **e.details})
                violations.extend(v.to_dict() for v in StoreValidator(config).validate(store, archive))
            return {"valid": not violations, "violations": violations}

        outcome = self._query(run)
        if outcome.ok:
            if fix:
                outcome.data["fixed"] = fixed
            self.audit.record(
                [self._entry(LogAction.VALIDATION_RUN, details={"violations": len(outcome.data["violations"])})]
            )
        return outcome

    def _repair(self) -> Outcome:
        def change(candidate: Candidate, entries: list[LogEntry]) -> dict:
            fixed = repair(candidate.tasks, candidate.archive)
            if fixed:
                if candidate.archive is not None:
                    retention.refresh_meta(candidate.archive)
                entries.append(self._entry(LogAction.VALIDATION_RUN, details={"fixed": fixed}))
            return {"fixed": fixed}

        return self._run(
            "validate-fix",
            [DocumentKind.TASKS, DocumentKind.ARCHIVE],
            change,
            verify_checksum=False,
        )

    def backup(self, *, backup_type: str = "snapshot", label: str | None = None) -> Outcome:
        """Back up every store document under the locks.

        An ``incremental`` backup versions each document on its own and
        skips the ones unchanged since their last incremental copy.
        """
        try:
            kind = _enum(BackupType, backup_type)
            config = self._config()
            if not config.backup.enabled and kind != BackupType.MIGRATION:
                return Outcome.no_change({"backup": None}, ["Backups are disabled in the project config"])
            manager = self.pipeline.backup_manager(config)
            paths = [self.pipeline.path_for(k) for k in DocumentKind]
            with self.pipeline.locks.hold(*DocumentKind):
                if kind == BackupType.INCREMENTAL:
                    records = [manager.incremental(path) for path in paths if path.exists()]
                else:
                    records = [manager.snapshot(paths, backup_type=kind, trigger="manual", label=label)]
        except StoreError as e:
            return Outcome.fail(e)
        records = [r for r in records if r is not None]
        if not records:
            return Outcome.no_change({"backups": []}, ["No document changed since its last incremental backup"])
        self.audit.record(
            [
                self._entry(LogAction.BACKUP_CREATED, details={"backupId": r.backup_id, "type": kind.value})
                for r in records
            ]
        )
        if kind == BackupType.INCREMENTAL:
            return Outcome.success({"backups": [r.to_dict() for r in records]})
        return Outcome.success({"backup": records[0].to_dict()})

    def list_backups(self, backup_type: str | None = None) -> Outcome:
        def collect() -> dict:
            records = self.pipeline.backup_manager().list_backups(_enum(BackupType, backup_type))
            return {"backups": [r.to_dict() for r in records]}

        return self._query(collect)

    def restore(self, backup_id: str) -> Outcome:
        """Restore the documents in a backup after checking its integrity.

        The current content is saved as a safety backup first.
        """
        try:
            manager = self.pipeline.backup_manager()
            record = manager.find(backup_id)
            errors = manager.validate(record)
            if errors:
                raise StoreError(
                    f"Backup {backup_id} failed validation: {errors[0]}",
                    category=ErrorCategory.SCHEMA_INVALID,
                    remedy="Choose another backup",
                    details={"errors": errors},
                )
            files = manager.read_files(record)
        except StoreError as e:
            return Outcome.fail(e)

        contents = {}
        for name, raw in files.items():
            kind = self.pipeline.kind_for_name(name)
            if kind is not None:
                contents[kind] = raw

        def change(candidate: Candidate, entries: list[LogEntry]) -> dict:
            for kind, raw in contents.items():
                candidate.documents[kind] = codec.parse(kind, raw)
            entries.append(
                self._entry(
                    LogAction.BACKUP_RESTORED,
                    details={"backupId": backup_id, "documents": sorted(k.value for k in contents)},
                )
            )
            return {"restored": sorted(k.value for k in contents), "backupId": backup_id}

        return self._run("restore", contents, change, verify_checksum=False)

    def log(self, *, limit: int | None = None, task_id: str | None = None, action: str | None = None) -> Outcome:
        def collect() -> dict:
            entries = self.audit.read(limit=limit, task_id=task_id, action=action)
            return {
                "entries": [
                    {**e.to_dict(), "details": {k: truncate(v) if isinstance(v, str) else v for k, v in e.details.items()}}
                    for e in entries
                ]
            }

        return self._query(collect)
