"""Tests for the schema migration chain."""

import json
from unittest.mock import patch

import pytest

from taskvault.codec import SCHEMA_VERSIONS, DocumentKind
from taskvault.errors import ErrorCategory, MigrationError, OutcomeStatus, StorageIOError
from taskvault.migrations import (
    CHAINS,
    Compatibility,
    Step,
    compatibility,
    migrate_document,
    path_from,
)
from taskvault.models import PhaseStatus, TaskType
from taskvault.pipeline import WritePipeline

from tests.conftest import read_tasks, snapshot_bytes


def legacy_tasks() -> dict:
    return {
        "version": "2.0.0",
        "project": "legacy",
        "phases": {"core": {"order": 1}, "polish": {"order": 2, "name": "Polish"}},
        "currentPhase": "core",
        "tasks": [
            {
                "id": "T001",
                "title": "Parent",
                "status": "pending",
                "createdAt": "2024-05-01T00:00:00Z",
            },
            {
                "id": "T002",
                "title": "Child",
                "status": "done",
                "parentId": "T001",
                "createdAt": "2024-05-02T00:00:00Z",
                "completedAt": "2024-05-03T00:00:00Z",
                "notes": "kept from the old format",
            },
        ],
    }


@pytest.fixture
def legacy(engine, settings):
    """Store whose task document is still at version 2.0.0."""
    settings.tasks_path.write_text(json.dumps(legacy_tasks(), indent=2))
    return engine


class TestChain:
    """Tests for the pure migration functions."""

    def test_path_from_legacy(self):
        steps = path_from(DocumentKind.TASKS, "2.0.0")

        assert [s.to_version for s in steps] == ["2.1.0", "2.2.0"]

    @pytest.mark.parametrize(
        "version, expected",
        [
            ("2.2.0", Compatibility.CURRENT),
            ("2.1.0", Compatibility.NEEDS_MIGRATION),
            ("2.0.0", Compatibility.NEEDS_MIGRATION),
            ("1.0.0", Compatibility.INCOMPATIBLE),
            ("3.0.0", Compatibility.INCOMPATIBLE),
            (None, Compatibility.INCOMPATIBLE),
        ],
    )
    def test_compatibility(self, version, expected):
        assert compatibility(DocumentKind.TASKS, version) == expected

    def test_every_chain_reaches_current(self):
        for kind in DocumentKind:
            assert path_from(kind, "2.0.0") is not None
            assert CHAINS[kind][-1].to_version == SCHEMA_VERSIONS[kind]

    def test_tasks_upgrade(self):
        data = migrate_document(DocumentKind.TASKS, legacy_tasks())

        assert data["version"] == "2.2.0"
        assert data["project"]["name"] == "legacy"
        assert data["project"]["phases"]["core"]["status"] == "active"
        assert data["project"]["phases"]["polish"]["status"] == "pending"
        assert data["_meta"]["lastId"] == 2
        types = {t["id"]: t["type"] for t in data["tasks"]}
        assert types == {"T001": "task", "T002": "subtask"}
        assert data["tasks"][1]["notes"] == ["kept from the old format"]

    def test_log_upgrade(self):
        data = migrate_document(
            DocumentKind.LOG,
            {"version": "2.0.0", "entries": [{"timestamp": "2024-05-01T00:00:00Z", "operation": "create"}]},
        )

        assert data["entries"][0]["action"] == "create"
        assert data["entries"][0]["id"].startswith("log_")
        assert data["_meta"]["totalEntries"] == 1

    def test_config_upgrade(self):
        data = migrate_document(DocumentKind.CONFIG, {"version": "2.0.0", "hierarchy": {"maxChildren": 4}})

        assert data["hierarchy"] == {"maxSiblings": 4}

    def test_no_path(self):
        with pytest.raises(MigrationError):
            migrate_document(DocumentKind.TASKS, {"version": "1.0.0"})

    def test_failing_step_wrapped(self):
        with pytest.raises(MigrationError) as exc_info:
            migrate_document(DocumentKind.TASKS, {"version": "2.1.0"})

        assert "2.1.0 to 2.2.0" in exc_info.value.message


class TestMigrateCommand:
    """Tests for migrate through the engine."""

    def test_legacy_store_needs_migration(self, legacy):
        outcome = legacy.add("Blocked by version")

        assert outcome.error.category == ErrorCategory.SCHEMA_INVALID
        assert "migrate" in outcome.error.remedy

    def test_check_only(self, legacy, settings):
        before = snapshot_bytes(settings)

        outcome = legacy.migrate(check_only=True)

        statuses = {d["document"]: d["status"] for d in outcome.data["documents"]}
        assert statuses["tasks"] == "needs_migration"
        assert statuses["config"] == "current"
        assert snapshot_bytes(settings) == before

    def test_migrate_upgrades_store(self, legacy, settings):
        """Test that a legacy store becomes fully usable after migrate."""
        outcome = legacy.migrate()

        assert outcome.changed
        assert outcome.data["migrated"] == ["tasks"]
        assert outcome.data["backup"].startswith("migration_")
        store = read_tasks(settings)
        assert store.version == "2.2.0"
        assert store.get("T002").type == TaskType.SUBTASK
        assert store.phases["core"].status == PhaseStatus.ACTIVE
        assert legacy.validate().data["valid"]
        assert legacy.add("After migration").data["task"]["id"] == "T003"

    def test_migration_backup_holds_legacy_bytes(self, legacy, settings):
        raw = settings.tasks_path.read_bytes()

        outcome = legacy.migrate()

        manager = legacy.pipeline.backup_manager()
        record = manager.find(outcome.data["backup"])
        assert record.never_delete
        assert manager.read_files(record)["todo.json"] == raw

    def test_current_store_is_no_change(self, engine):
        assert engine.migrate().status == OutcomeStatus.NO_CHANGE

    def test_failing_step_rolls_back(self, legacy, settings):
        before = snapshot_bytes(settings)

        def explode(data):
            raise ValueError("unexpected shape")

        broken = [Step("2.0.0", "2.1.0", explode, "explode"), *CHAINS[DocumentKind.TASKS][1:]]
        with patch.dict(CHAINS, {DocumentKind.TASKS: broken}):
            outcome = legacy.migrate()

        assert outcome.error.category == ErrorCategory.MIGRATION_FAILED
        assert snapshot_bytes(settings) == before
        assert legacy.list_backups("migration").data["backups"] == []

    def test_write_failure_rolls_back(self, legacy, settings):
        before = snapshot_bytes(settings)
        error = StorageIOError("Scratch file does not match the candidate")

        with patch.object(WritePipeline, "_verify_scratch", side_effect=error):
            outcome = legacy.migrate()

        assert outcome.error.category == ErrorCategory.MIGRATION_FAILED
        assert snapshot_bytes(settings) == before
        assert list(settings.store_dir.glob("*.tmp")) == []

    def test_incompatible_version(self, engine, settings):
        data = legacy_tasks()
        data["version"] = "1.0.0"
        settings.tasks_path.write_text(json.dumps(data))

        outcome = engine.migrate()

        assert outcome.error.category == ErrorCategory.MIGRATION_FAILED
        assert "Incompatible" in outcome.error.message
