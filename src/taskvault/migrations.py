"""Schema migration chain for the store documents.

Each document kind has an ordered chain of pure version-to-version
functions over raw dicts. Running a migration routes every affected
document through one write pipeline commit with a migration backup, so
a failing step leaves the store exactly as it was.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Iterable

from taskvault.backups import BackupType
from taskvault.codec import SCHEMA_VERSIONS, DocumentKind, decode, read_bytes
from taskvault.errors import MigrationError, NotFound, SchemaError, StoreError
from taskvault.logging import Loggers
from taskvault.models import TASK_ID_PATTERN

logger = Loggers.migration()

Transform = Callable[[dict[str, Any]], dict[str, Any]]


class Compatibility(IntEnum):
    CURRENT = 0
    NEEDS_MIGRATION = 1
    INCOMPATIBLE = 2


@dataclass(frozen=True)
class Step:
    from_version: str
    to_version: str
    apply: Transform
    description: str


def _tasks_2_0_to_2_1(data: dict[str, Any]) -> dict[str, Any]:
    """Nest phases under an object-valued project and seed _meta."""
    project = data.get("project")
    if not isinstance(project, dict):
        project = {"name": project or ""}
    project.setdefault("phases", data.pop("phases", {}))
    project.setdefault("currentPhase", data.pop("currentPhase", None))
    data["project"] = project

    highest = 0
    for task in data.get("tasks", []):
        match = TASK_ID_PATTERN.match(str(task.get("id", "")))
        if match:
            highest = max(highest, int(match.group(1)))
    meta = data.setdefault("_meta", {})
    meta.setdefault("checksum", "")
    meta.setdefault("activeSession", None)
    meta["lastId"] = max(int(meta.get("lastId", 0)), highest)
    data.setdefault("focus", {"currentTask": None, "currentPhase": project["currentPhase"], "sessionNote": None})
    data["version"] = "2.1.0"
    return data


def _tasks_2_1_to_2_2(data: dict[str, Any]) -> dict[str, Any]:
    """Add task types, phase statuses and phase history."""
    project = data["project"]
    project.setdefault("phaseHistory", [])
    for slug, phase in project.get("phases", {}).items():
        phase.setdefault("name", slug)
        if "status" not in phase:
            phase["status"] = "active" if slug == project.get("currentPhase") else "pending"

    tasks = data.get("tasks", [])
    by_id = {t.get("id"): t for t in tasks}
    for task in tasks:
        for key in ("labels", "dependsOn", "files", "acceptanceCriteria"):
            task.setdefault(key, [])
        notes = task.get("notes", [])
        task["notes"] = [notes] if isinstance(notes, str) else notes
        if "type" not in task:
            parent = by_id.get(task.get("parentId"))
            if parent is None or parent.get("type") == "epic":
                task["type"] = "task"
            else:
                task["type"] = "subtask"
        task.setdefault("priority", "medium")
    data.setdefault("lastUpdated", None)
    data["version"] = "2.2.0"
    return data


def _archive_2_0_to_2_1(data: dict[str, Any]) -> dict[str, Any]:
    """Move flat archive fields into the _archive record."""
    for task in data.get("archivedTasks", []):
        if "_archive" not in task:
            task["_archive"] = {
                "archivedAt": task.pop("archivedAt", None) or task.get("completedAt") or task["createdAt"],
                "reason": task.pop("archiveReason", "legacy"),
                "sessionId": None,
                "cycleTimeDays": None,
                "relationships": {},
                "restorable": True,
            }
        for key in ("labels", "dependsOn", "files", "acceptanceCriteria", "notes"):
            task.setdefault(key, [])
        task.setdefault("type", "task")
        task.setdefault("priority", "medium")
    data.setdefault("project", "")
    meta = data.setdefault("_meta", {})
    meta["totalArchived"] = len(data.get("archivedTasks", []))
    data["version"] = "2.1.0"
    return data


def _log_2_0_to_2_1(data: dict[str, Any]) -> dict[str, Any]:
    """Rename operation to action and give every entry an id."""
    for i, entry in enumerate(data.get("entries", [])):
        if "action" not in entry and "operation" in entry:
            entry["action"] = entry.pop("operation")
        entry.setdefault("id", f"log_{i:012x}")
        entry.setdefault("actor", "system")
        entry.setdefault("details", {})
    entries = data.get("entries", [])
    data.setdefault("project", "")
    data["_meta"] = {
        "totalEntries": len(entries),
        "firstEntry": entries[0].get("timestamp") if entries else None,
        "lastEntry": entries[-1].get("timestamp") if entries else None,
    }
    data["version"] = "2.1.0"
    return data


def _config_2_0_to_2_1(data: dict[str, Any]) -> dict[str, Any]:
    """Rename hierarchy.maxChildren to maxSiblings."""
    hierarchy = data.get("hierarchy", {})
    if "maxChildren" in hierarchy and "maxSiblings" not in hierarchy:
        hierarchy["maxSiblings"] = hierarchy.pop("maxChildren")
    data["version"] = "2.1.0"
    return data


CHAINS: dict[DocumentKind, list[Step]] = {
    DocumentKind.TASKS: [
        Step("2.0.0", "2.1.0", _tasks_2_0_to_2_1, "nest phases under project; seed _meta"),
        Step("2.1.0", "2.2.0", _tasks_2_1_to_2_2, "task types, phase statuses, phase history"),
    ],
    DocumentKind.ARCHIVE: [
        Step("2.0.0", "2.1.0", _archive_2_0_to_2_1, "_archive record per task"),
    ],
    DocumentKind.LOG: [
        Step("2.0.0", "2.1.0", _log_2_0_to_2_1, "action field and entry ids"),
    ],
    DocumentKind.CONFIG: [
        Step("2.0.0", "2.1.0", _config_2_0_to_2_1, "maxSiblings"),
    ],
}


def path_from(kind: DocumentKind, version: str) -> list[Step] | None:
    """Steps leading from ``version`` to the current version, or None."""
    steps = []
    current = version
    for step in CHAINS[kind]:
        if step.from_version == current:
            steps.append(step)
            current = step.to_version
    return steps if current == SCHEMA_VERSIONS[kind] else None


def compatibility(kind: DocumentKind, version: str | None) -> Compatibility:
    if version == SCHEMA_VERSIONS[kind]:
        return Compatibility.CURRENT
    if version is None or path_from(kind, version) is None:
        return Compatibility.INCOMPATIBLE
    return Compatibility.NEEDS_MIGRATION


def migrate_document(kind: DocumentKind, data: dict[str, Any]) -> dict[str, Any]:
    """Run the chain on one raw document.

    Raises:
        MigrationError: If the version has no path or a step fails.
    """
    version = data.get("version")
    steps = path_from(kind, version) if isinstance(version, str) else None
    if steps is None:
        raise MigrationError(
            f"No migration path for {kind.value} document version {version!r}",
            remedy="Restore from a backup made by a compatible release",
            details={"document": kind.value, "version": version},
        )
    for step in steps:
        try:
            data = step.apply(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise MigrationError(
                f"Migrating {kind.value} from {step.from_version} to {step.to_version} failed: {e}",
                details={"document": kind.value, "step": step.description},
            ) from e
        logger.debug("migration_step", document=kind.value, to_version=step.to_version)
    return data


@dataclass
class DocumentStatus:
    kind: DocumentKind
    version: str | None
    expected: str
    compatibility: Compatibility

    def to_dict(self) -> dict[str, Any]:
        return {
            "document": self.kind.value,
            "version": self.version,
            "expected": self.expected,
            "status": self.compatibility.name.lower(),
        }


class MigrationEngine:
    """Checks document versions and upgrades them through the pipeline."""

    def __init__(self, pipeline):
        self.pipeline = pipeline

    def status(self, kinds: Iterable[DocumentKind] = tuple(DocumentKind)) -> list[DocumentStatus]:
        result = []
        for kind in kinds:
            try:
                raw = read_bytes(self.pipeline.path_for(kind), kind)
            except NotFound:
                continue
            version = decode(kind, raw).get("version")
            version = version if isinstance(version, str) else None
            result.append(DocumentStatus(kind, version, SCHEMA_VERSIONS[kind], compatibility(kind, version)))
        return result

    def run(self):
        """Upgrade every document that needs it in one commit.

        Returns:
            The CommitResult, or None if every document is current.

        Raises:
            MigrationError: An incompatible document, or any failure during
                the commit; the store is left unchanged.
        """
        statuses = self.status()
        incompatible = [s for s in statuses if s.compatibility == Compatibility.INCOMPATIBLE]
        if incompatible:
            raise MigrationError(
                "Incompatible document versions: "
                + ", ".join(f"{s.kind.value} {s.version}" for s in incompatible),
                remedy="Manual intervention required",
                details={"documents": [s.to_dict() for s in incompatible]},
            )
        pending = [s.kind for s in statuses if s.compatibility == Compatibility.NEEDS_MIGRATION]
        if not pending:
            return None

        def mutate(candidate) -> list[str]:
            for kind in pending:
                candidate.documents[kind] = migrate_document(kind, candidate.documents[kind])
            return [kind.value for kind in pending]

        logger.info("migration_started", documents=[k.value for k in pending])
        try:
            result = self.pipeline.commit(
                pending,
                mutate,
                operation="migrate",
                backup_type=BackupType.MIGRATION,
                migrate=True,
            )
        except MigrationError:
            logger.warning("migration_failed", documents=[k.value for k in pending])
            raise
        except SchemaError as e:
            logger.warning("migration_failed", documents=[k.value for k in pending], error=e.message)
            raise MigrationError(str(e), details=e.details) from e
        except StoreError as e:
            if e.recoverable:
                raise
            logger.warning("migration_failed", documents=[k.value for k in pending], error=e.message)
            raise MigrationError(f"Migration failed: {e.message}", details=e.to_dict()) from e
        logger.info("migration_completed", documents=result.value)
        return result
