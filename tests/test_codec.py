"""Tests for document parsing, serialization and structural checks."""

import json

import pytest

from taskvault.codec import (
    SCHEMA_VERSIONS,
    DocumentKind,
    check_structure,
    decode,
    empty_document,
    parse,
    read_bytes,
    serialize,
)
from taskvault.errors import ErrorCategory, NotFound, SchemaError
from taskvault.models import ArchiveStore, LiveStore, LogStore, Task, TaskType
from taskvault.policy import ProjectConfig


def tasks_document(**overrides) -> dict:
    data = empty_document(DocumentKind.TASKS, "demo").to_dict()
    data.update(overrides)
    return data


class TestDocumentKind:
    """Tests for DocumentKind ordering."""

    def test_lock_order(self):
        """Test the global lock order."""
        ordered = sorted(DocumentKind, key=lambda k: k.lock_rank)

        assert ordered == [
            DocumentKind.TASKS,
            DocumentKind.ARCHIVE,
            DocumentKind.LOG,
            DocumentKind.CONFIG,
        ]


class TestEmptyDocument:
    """Tests for empty_document."""

    def test_types_and_versions(self):
        """Test that each kind gets its current-version model."""
        assert isinstance(empty_document(DocumentKind.TASKS, "p"), LiveStore)
        assert isinstance(empty_document(DocumentKind.ARCHIVE, "p"), ArchiveStore)
        assert isinstance(empty_document(DocumentKind.LOG, "p"), LogStore)
        assert isinstance(empty_document(DocumentKind.CONFIG, "p"), ProjectConfig)
        for kind in DocumentKind:
            assert empty_document(kind, "p").version == SCHEMA_VERSIONS[kind]

    def test_empty_documents_conform(self):
        """Test that fresh documents pass the structural check."""
        for kind in DocumentKind:
            assert check_structure(kind, empty_document(kind, "p").to_dict()) == []


class TestParse:
    """Tests for parse and serialize."""

    def test_roundtrip_preserves_bytes(self):
        """Test that parse then serialize reproduces the bytes."""
        store = empty_document(DocumentKind.TASKS, "demo")
        store.tasks.append(
            Task(id="T001", title="Epic", created_at="2025-01-01T00:00:00Z", type=TaskType.EPIC)
        )
        raw = serialize(store)

        assert serialize(parse(DocumentKind.TASKS, raw)) == raw

    def test_serialization_is_deterministic(self):
        """Test two-space indent and trailing newline."""
        raw = serialize(empty_document(DocumentKind.LOG, "demo"))

        assert raw.endswith(b"\n")
        assert raw.decode("utf-8").startswith('{\n  "')

    def test_invalid_json(self):
        """Test that garbage bytes raise SchemaError."""
        with pytest.raises(SchemaError):
            parse(DocumentKind.TASKS, b"{not json")

    def test_non_object(self):
        """Test that a JSON array is not a document."""
        with pytest.raises(SchemaError):
            decode(DocumentKind.TASKS, b"[]")

    def test_old_version_needs_migration(self):
        """Test that an older version is rejected with a migrate remedy."""
        raw = json.dumps(tasks_document(version="2.1.0")).encode()

        with pytest.raises(SchemaError) as exc_info:
            parse(DocumentKind.TASKS, raw)

        assert "migrate" in exc_info.value.remedy

    def test_missing_file(self, tmp_path):
        """Test that a missing document maps to NotFound."""
        with pytest.raises(NotFound):
            read_bytes(tmp_path / "todo.json", DocumentKind.TASKS)


class TestCheckStructure:
    """Tests for structural checks."""

    def test_bad_task_fields(self):
        """Test that invalid task fields are reported against the task schema."""
        data = tasks_document(
            tasks=[
                {"id": "X1", "title": "", "status": "finished", "priority": "medium",
                 "type": "task", "createdAt": "2025-01-01T00:00:00Z"},
            ]
        )

        violations = check_structure(DocumentKind.TASKS, data)
        messages = " ".join(v.message for v in violations)

        assert all(v.code == ErrorCategory.SCHEMA_INVALID for v in violations)
        assert "$.tasks[0].id" in messages
        assert "$.tasks[0].title" in messages
        assert "$.tasks[0].status" in messages

    def test_violation_names_task(self):
        """Test that a finding inside a task with a valid id carries that id."""
        data = tasks_document(
            tasks=[
                {"id": "T001", "title": "A", "status": "pending", "priority": "urgent",
                 "type": "task", "createdAt": "2025-01-01T00:00:00Z"},
            ]
        )

        violations = check_structure(DocumentKind.TASKS, data)

        assert [v.task_id for v in violations] == ["T001"]
        assert "$.tasks[0].priority" in violations[0].message

    def test_list_field_must_be_strings(self):
        data = tasks_document(
            tasks=[
                {"id": "T001", "title": "A", "status": "pending", "priority": "medium",
                 "type": "task", "createdAt": "2025-01-01T00:00:00Z", "labels": "urgent"},
            ]
        )

        violations = check_structure(DocumentKind.TASKS, data)

        assert any("$.tasks[0].labels" in v.message for v in violations)

    def test_duplicate_ids(self):
        """Test that duplicate task ids are reported."""
        task = {"id": "T001", "title": "A", "status": "pending", "priority": "medium",
                "type": "task", "createdAt": "2025-01-01T00:00:00Z"}
        data = tasks_document(tasks=[task, dict(task)])

        violations = check_structure(DocumentKind.TASKS, data)

        assert any("Duplicate task id T001" in v.message for v in violations)

    def test_missing_version(self):
        """Test that a document without a version is reported."""
        data = tasks_document()
        del data["version"]

        violations = check_structure(DocumentKind.TASKS, data)

        assert any("'version' is a required property" in v.message for v in violations)

    def test_non_object_document(self):
        assert check_structure(DocumentKind.LOG, ["not", "a", "document"])

    def test_archive_requires_archive_record(self):
        """Test that archived tasks carry an _archive record."""
        data = empty_document(DocumentKind.ARCHIVE, "p").to_dict()
        data["archivedTasks"] = [
            {"id": "T001", "title": "A", "status": "done", "priority": "medium",
             "type": "task", "createdAt": "2025-01-01T00:00:00Z"},
        ]

        violations = check_structure(DocumentKind.ARCHIVE, data)

        assert any("'_archive' is a required property" in v.message for v in violations)

    def test_log_entry_requires_action(self):
        data = empty_document(DocumentKind.LOG, "p").to_dict()
        data["entries"] = [{"id": "log_1", "timestamp": "2025-01-01T00:00:00Z"}]

        violations = check_structure(DocumentKind.LOG, data)

        assert any("$.entries[0]" in v.message and "action" in v.message for v in violations)

    def test_config_out_of_range(self):
        """Test that policy values are range-checked."""
        data = ProjectConfig().to_dict()
        data["phases"]["completionThreshold"] = 150

        violations = check_structure(DocumentKind.CONFIG, data)

        assert violations
        assert "completionThreshold" in violations[0].message
