"""Parse, serialize and structurally check the four store documents.

Documents:
- tasks (todo.json): the live store
- archive (todo-archive.json): relocated tasks
- config (todo-config.json): read-only project policy
- log (todo-log.json): append-only operation log

Serialization is deterministic (two-space indent, trailing newline) so a
scratch file can be compared byte-for-byte with the bytes that produced it.
"""

import json
from enum import Enum
from importlib import resources
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError as JsonSchemaError
from pydantic import ValidationError
from referencing import Registry, Resource

from taskvault.errors import ErrorCategory, NotFound, SchemaError, StorageIOError, Violation
from taskvault.models import (
    ArchiveStore,
    LiveStore,
    LogStore,
    TASK_ID_PATTERN,
    utc_now,
)
from taskvault.policy import ProjectConfig


class DocumentKind(str, Enum):
    """Document types, in global lock order."""

    TASKS = "tasks"
    ARCHIVE = "archive"
    LOG = "log"
    CONFIG = "config"

    @property
    def lock_rank(self) -> int:
        return list(DocumentKind).index(self)


SCHEMA_VERSIONS: dict[DocumentKind, str] = {
    DocumentKind.TASKS: "2.2.0",
    DocumentKind.ARCHIVE: "2.1.0",
    DocumentKind.LOG: "2.1.0",
    DocumentKind.CONFIG: "2.1.0",
}

Document = LiveStore | ArchiveStore | LogStore | ProjectConfig


SCHEMA_FILES: dict[DocumentKind, str] = {
    DocumentKind.TASKS: "todo.schema.json",
    DocumentKind.ARCHIVE: "archive.schema.json",
    DocumentKind.LOG: "log.schema.json",
}

_validators: dict[DocumentKind, Draft202012Validator] = {}


def _load_schema(name: str) -> dict[str, Any]:
    source = resources.files("taskvault") / "schemas" / name
    return json.loads(source.read_text(encoding="utf-8"))


def schema_validator(kind: DocumentKind) -> Draft202012Validator:
    """JSON Schema validator for a task, archive or log document."""
    if kind not in _validators:
        task_schema = Resource.from_contents(_load_schema("task.schema.json"))
        registry = Registry().with_resource("task.schema.json", task_schema)
        _validators[kind] = Draft202012Validator(_load_schema(SCHEMA_FILES[kind]), registry=registry)
    return _validators[kind]


def _task_id_at(data: dict[str, Any], error: JsonSchemaError) -> str | None:
    """Id of the task an error points into, when it has a usable one."""
    path = list(error.absolute_path)
    if len(path) < 2 or path[0] not in ("tasks", "archivedTasks") or not isinstance(path[1], int):
        return None
    task = data[path[0]][path[1]]
    task_id = task.get("id") if isinstance(task, dict) else None
    if isinstance(task_id, str) and TASK_ID_PATTERN.match(task_id):
        return task_id
    return None


def _duplicate_ids(tasks: Any, where: str) -> list[Violation]:
    if not isinstance(tasks, list):
        return []
    seen: set[str] = set()
    violations = []
    for task in tasks:
        task_id = task.get("id") if isinstance(task, dict) else None
        if not isinstance(task_id, str):
            continue
        if task_id in seen:
            violations.append(
                Violation(ErrorCategory.SCHEMA_INVALID, f"Duplicate task id {task_id} in {where}", task_id)
            )
        seen.add(task_id)
    return violations


def _check_config_document(data: dict[str, Any]) -> list[Violation]:
    violations = []
    if not isinstance(data.get("version"), str):
        violations.append(Violation(ErrorCategory.SCHEMA_INVALID, "$: 'version' is a required string"))
    try:
        ProjectConfig.model_validate(data)
    except ValidationError as e:
        for err in e.errors():
            location = ".".join(str(part) for part in err["loc"])
            violations.append(Violation(ErrorCategory.SCHEMA_INVALID, f"config {location}: {err['msg']}"))
    return violations


def check_structure(kind: DocumentKind, data: Any) -> list[Violation]:
    """Check a raw document for structural conformance.

    Task, archive and log documents are checked against the bundled JSON
    schemas; the config document against the ProjectConfig model.

    Args:
        kind: Which document the data claims to be.
        data: Decoded JSON value.

    Returns:
        List of schema-invalid violations; empty if the document conforms.
    """
    if not isinstance(data, dict):
        return [Violation(ErrorCategory.SCHEMA_INVALID, f"{kind.value} document must be an object")]
    if kind == DocumentKind.CONFIG:
        return _check_config_document(data)

    errors = sorted(schema_validator(kind).iter_errors(data), key=lambda e: e.json_path)
    violations = [
        Violation(ErrorCategory.SCHEMA_INVALID, f"{e.json_path}: {e.message}", _task_id_at(data, e))
        for e in errors
    ]
    if kind == DocumentKind.TASKS:
        violations.extend(_duplicate_ids(data.get("tasks"), "tasks"))
    elif kind == DocumentKind.ARCHIVE:
        violations.extend(_duplicate_ids(data.get("archivedTasks"), "archivedTasks"))
    return violations


def decode(kind: DocumentKind, raw: bytes) -> dict[str, Any]:
    """Decode JSON bytes into a raw dict without schema checks."""
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SchemaError(
            f"{kind.value} document is not valid JSON: {e}",
            details={"document": kind.value},
        ) from e
    if not isinstance(data, dict):
        raise SchemaError(f"{kind.value} document must be a JSON object")
    return data


def parse(kind: DocumentKind, raw: bytes) -> Document:
    """Decode, check and build the model for a current-version document.

    Raises:
        SchemaError: If the bytes are not valid JSON, do not conform, or
            carry a schema version other than the current one.
    """
    data = decode(kind, raw)
    violations = check_structure(kind, data)
    if violations:
        raise SchemaError(
            f"{kind.value} document failed schema check: {violations[0].message}",
            details={"document": kind.value, "violations": [v.to_dict() for v in violations]},
        )
    expected = SCHEMA_VERSIONS[kind]
    if data["version"] != expected:
        raise SchemaError(
            f"{kind.value} document is version {data['version']}, expected {expected}",
            remedy="Run migrate to upgrade the store",
            details={"document": kind.value, "version": data["version"], "expected": expected},
        )
    return from_dict(kind, data)


def from_dict(kind: DocumentKind, data: dict[str, Any]) -> Document:
    if kind == DocumentKind.TASKS:
        return LiveStore.from_dict(data)
    if kind == DocumentKind.ARCHIVE:
        return ArchiveStore.from_dict(data)
    if kind == DocumentKind.LOG:
        return LogStore.from_dict(data)
    return ProjectConfig.model_validate(data)


def encode(data: dict[str, Any]) -> bytes:
    """Deterministic on-disk encoding of a raw document dict."""
    return (json.dumps(data, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


def serialize(document: Document) -> bytes:
    return encode(document.to_dict())


def read_bytes(path: Path, kind: DocumentKind) -> bytes:
    """Read a document's bytes, mapping a missing file to NotFound."""
    try:
        return path.read_bytes()
    except FileNotFoundError as e:
        raise NotFound(
            f"{kind.value} document not found at {path}",
            remedy="Initialize the store first",
            details={"document": kind.value, "path": str(path)},
        ) from e
    except OSError as e:
        raise StorageIOError(f"Cannot read {path}: {e}") from e


def load(path: Path, kind: DocumentKind) -> Document:
    return parse(kind, read_bytes(path, kind))


def empty_document(kind: DocumentKind, project: str) -> Document:
    """A fresh, current-version document of the given kind."""
    version = SCHEMA_VERSIONS[kind]
    if kind == DocumentKind.TASKS:
        store = LiveStore(version=version, project=project)
        store.last_updated = utc_now()
        return store
    if kind == DocumentKind.ARCHIVE:
        return ArchiveStore(version=version, project=project)
    if kind == DocumentKind.LOG:
        return LogStore(version=version, project=project)
    return ProjectConfig(version=version)
