"""Tests for task lifecycle transitions through the engine."""

from unittest.mock import patch

import pytest

from taskvault.errors import ErrorCategory, OutcomeStatus
from taskvault.models import TaskStatus

from tests.conftest import add, read_tasks, snapshot_bytes, write_config


def status_of(engine, task_id: str) -> str:
    return engine.show(task_id).data["task"]["status"]


class TestAdd:
    """Tests for adding tasks."""

    def test_ids_are_sequential(self, engine):
        assert add(engine, "One") == "T001"
        assert add(engine, "Two") == "T002"

    def test_fields_recorded(self, engine):
        outcome = engine.add(
            "Parser",
            description="Tokenize then parse",
            priority="high",
            size="large",
            labels=["core", "core"],
            notes=["first idea"],
        )

        task = outcome.data["task"]
        assert task["priority"] == "high"
        assert task["size"] == "large"
        assert task["labels"] == ["core"]
        assert task["notes"][0].endswith(": first idea")
        assert task["status"] == "pending"

    def test_duplicate_open_title(self, engine):
        add(engine, "Write docs")

        outcome = engine.add("write DOCS")

        assert outcome.error.category == ErrorCategory.ALREADY_EXISTS

    def test_empty_title(self, engine):
        outcome = engine.add("   ")

        assert outcome.error.category == ErrorCategory.VALIDATION_FAILED

    def test_invalid_enum_value(self, engine):
        outcome = engine.add("Bad priority", priority="urgent")

        assert outcome.error.category == ErrorCategory.SCHEMA_INVALID
        assert "critical" in outcome.error.message

    def test_cannot_add_as_done(self, engine):
        outcome = engine.add("Already done", status="done")

        assert outcome.error.category == ErrorCategory.INVALID_TRANSITION

    def test_add_active_takes_focus(self, engine, settings):
        task_id = add(engine, "Now", status="active")

        assert read_tasks(settings).focus.current_task == task_id

    def test_ids_not_reused_after_archive(self, engine, settings):
        write_config(settings, archive={"daysUntilArchive": 0, "preserveRecentCount": 0})
        add(engine, "One")
        engine.complete("T001", note="ok")
        assert engine.archive().data["archived"] == ["T001"]

        assert add(engine, "Two") == "T002"

    def test_logged(self, engine):
        task_id = add(engine, "Logged")

        entries = engine.log(task_id=task_id).data["entries"]

        assert entries[0]["action"] == "task_created"


class TestStartAndBlock:
    """Tests for start, block and unblock."""

    def test_start_sets_focus(self, engine, settings):
        task_id = add(engine, "Work")

        outcome = engine.start(task_id)

        assert outcome.changed
        assert outcome.data["changed"] == [task_id]
        assert read_tasks(settings).focus.current_task == task_id

    def test_single_active(self, engine):
        first = add(engine, "First")
        second = add(engine, "Second")
        engine.start(first)

        outcome = engine.start(second)

        assert outcome.error.category == ErrorCategory.SINGLE_ACTIVE

    def test_start_twice_is_no_change(self, engine):
        task_id = add(engine, "Work")
        engine.start(task_id)

        assert engine.start(task_id).status == OutcomeStatus.NO_CHANGE

    def test_block_needs_reason(self, engine):
        task_id = add(engine, "Work")

        outcome = engine.block(task_id, "")

        assert outcome.error.category == ErrorCategory.VALIDATION_FAILED

    def test_block_clears_focus(self, engine, settings):
        task_id = add(engine, "Work")
        engine.start(task_id)

        engine.block(task_id, "waiting on review")

        store = read_tasks(settings)
        assert store.get(task_id).status == TaskStatus.BLOCKED
        assert store.get(task_id).blocked_by == "waiting on review"
        assert store.focus.current_task is None

    def test_blocked_cannot_start(self, engine):
        task_id = add(engine, "Work")
        engine.block(task_id, "waiting")

        outcome = engine.start(task_id)

        assert outcome.error.category == ErrorCategory.INVALID_TRANSITION
        assert "Unblock" in outcome.error.remedy

    def test_unblock(self, engine):
        task_id = add(engine, "Work")
        engine.block(task_id, "waiting")

        assert engine.unblock(task_id).changed
        assert status_of(engine, task_id) == "pending"
        assert engine.unblock(task_id).status == OutcomeStatus.NO_CHANGE


class TestComplete:
    """Tests for complete and auto-completion."""

    def test_complete_requires_note(self, engine):
        task_id = add(engine, "Work")

        outcome = engine.complete(task_id)

        assert outcome.error.category == ErrorCategory.VALIDATION_FAILED

    def test_skip_note(self, engine):
        task_id = add(engine, "Work")

        assert engine.complete(task_id, skip_note=True).changed

    def test_complete_twice_same_note_is_no_op(self, engine, settings):
        """Test that repeating a completion changes nothing on disk."""
        task_id = add(engine, "Work")
        engine.complete(task_id, note="shipped")
        before = snapshot_bytes(settings)

        outcome = engine.complete(task_id, note="shipped")

        assert outcome.status == OutcomeStatus.NO_CHANGE
        assert snapshot_bytes(settings) == before

    def test_complete_twice_without_note_is_no_op(self, engine):
        task_id = add(engine, "Work")
        engine.complete(task_id, note="shipped")

        assert engine.complete(task_id).status == OutcomeStatus.NO_CHANGE

    def test_complete_twice_different_note(self, engine):
        task_id = add(engine, "Work")
        engine.complete(task_id, note="shipped")

        outcome = engine.complete(task_id, note="something else")

        assert outcome.error.category == ErrorCategory.INVALID_TRANSITION

    def test_auto_complete_parent(self, engine, settings):
        """Test that the parent completes once every child has finished."""
        epic = add(engine, "Epic", type="epic")
        child_a = add(engine, "A", parent_id=epic)
        child_b = add(engine, "B", parent_id=epic)
        engine.delete(child_b, "not needed")

        outcome = engine.complete(child_a, note="done")

        assert outcome.data["autoCompleted"] == [epic]
        assert any("Auto-completed" in w for w in outcome.warnings)
        parent = read_tasks(settings).get(epic)
        assert parent.status == TaskStatus.DONE
        assert parent.auto_completed

    def test_auto_complete_chain(self, engine):
        epic = add(engine, "Epic", type="epic")
        parent = add(engine, "Task", parent_id=epic)
        sub = add(engine, "Sub", parent_id=parent)

        outcome = engine.complete(sub, note="done")

        assert outcome.data["autoCompleted"] == [parent, epic]

    def test_all_cancelled_children_do_not_complete_parent(self, engine):
        epic = add(engine, "Epic", type="epic")
        child = add(engine, "A", parent_id=epic)

        engine.delete(child, "dropped")

        assert status_of(engine, epic) == "pending"

    def test_auto_complete_disabled(self, engine, settings):
        write_config(settings, lifecycle={"autoCompleteParents": False})
        epic = add(engine, "Epic", type="epic")
        child = add(engine, "A", parent_id=epic)

        outcome = engine.complete(child, note="done")

        assert outcome.data["autoCompleted"] == []
        assert status_of(engine, epic) == "pending"

    def test_cancelled_cannot_complete(self, engine):
        task_id = add(engine, "Work")
        engine.delete(task_id, "dropped")

        outcome = engine.complete(task_id, note="done")

        assert outcome.error.category == ErrorCategory.INVALID_TRANSITION


class TestCancel:
    """Tests for delete (cancel) and its child-handling modes."""

    def test_cancel_requires_reason(self, engine):
        task_id = add(engine, "Work")

        assert engine.delete(task_id).error.category == ErrorCategory.VALIDATION_FAILED

    def test_block_mode_refuses(self, engine):
        parent = add(engine, "Parent")
        add(engine, "Child", parent_id=parent)

        outcome = engine.delete(parent, "obsolete")

        assert outcome.error.category == ErrorCategory.HAS_CHILDREN

    def test_orphan_mode(self, engine):
        parent = add(engine, "Parent")
        child = add(engine, "Child", parent_id=parent)

        outcome = engine.delete(parent, "obsolete", children="orphan")

        assert outcome.data["cancelled"] == [parent]
        assert outcome.data["orphaned"] == [child]
        detached = engine.show(child).data["task"]
        assert "parentId" not in detached
        assert detached["type"] == "task"

    def test_cascade_mode(self, engine):
        epic = add(engine, "Epic", type="epic")
        task_id = add(engine, "Task", parent_id=epic)
        sub = add(engine, "Sub", parent_id=task_id)

        outcome = engine.delete(epic, "obsolete", children="cascade")

        assert outcome.data["cancelled"] == [epic, task_id, sub]
        assert status_of(engine, sub) == "cancelled"

    def test_cascade_limit(self, engine, settings):
        write_config(settings, cancellation={"cascadeLimit": 1})
        parent = add(engine, "Parent")
        add(engine, "A", parent_id=parent)
        add(engine, "B", parent_id=parent)

        refused = engine.delete(parent, "obsolete", children="cascade")
        forced = engine.delete(parent, "obsolete", children="cascade", force=True)

        assert refused.error.category == ErrorCategory.HAS_CHILDREN
        assert forced.changed

    def test_unknown_mode(self, engine):
        task_id = add(engine, "Work")

        assert engine.delete(task_id, "x", children="explode").error.category == ErrorCategory.SCHEMA_INVALID

    def test_dependents_warned(self, engine):
        a = add(engine, "A")
        add(engine, "B", depends_on=[a])

        outcome = engine.delete(a, "obsolete")

        assert outcome.changed
        assert any("depend on" in w for w in outcome.warnings)

    def test_cancel_twice_is_no_change(self, engine):
        task_id = add(engine, "Work")
        engine.delete(task_id, "dropped")

        assert engine.delete(task_id, "dropped").status == OutcomeStatus.NO_CHANGE


class TestReopenAndUncancel:
    """Tests for reopen and uncancel."""

    def test_reopen_keeps_history(self, engine, settings):
        task_id = add(engine, "Work")
        engine.complete(task_id, note="shipped")

        outcome = engine.reopen(task_id, "regression")

        task = read_tasks(settings).get(task_id)
        assert outcome.changed
        assert task.status == TaskStatus.PENDING
        assert task.completed_at is None
        assert "shipped" in task.notes[-1]
        assert "regression" in task.notes[-1]

    def test_reopen_pending_is_no_change(self, engine):
        task_id = add(engine, "Work")

        assert engine.reopen(task_id).status == OutcomeStatus.NO_CHANGE

    def test_reopen_warns_about_done_parent(self, engine):
        epic = add(engine, "Epic", type="epic")
        child = add(engine, "A", parent_id=epic)
        engine.complete(child, note="done")

        outcome = engine.reopen(child)

        assert any(epic in w for w in outcome.warnings)

    def test_uncancel(self, engine):
        task_id = add(engine, "Work")
        engine.delete(task_id, "dropped")

        outcome = engine.uncancel(task_id)

        assert outcome.changed
        assert status_of(engine, task_id) == "pending"

    def test_uncancel_done_task(self, engine):
        task_id = add(engine, "Work")
        engine.complete(task_id, note="ok")

        assert engine.uncancel(task_id).error.category == ErrorCategory.INVALID_TRANSITION


class TestUpdateAndReparent:
    """Tests for update, reparent, promote and focus."""

    def test_update_fields(self, engine):
        task_id = add(engine, "Work", labels=["a"])

        outcome = engine.update(task_id, title="Better", add_labels=["b"], remove_labels=["a"], note="renamed")

        task = outcome.data["task"]
        assert task["title"] == "Better"
        assert task["labels"] == ["b"]
        assert task["notes"][-1].endswith(": renamed")

    def test_update_done_task_refused(self, engine):
        task_id = add(engine, "Work")
        engine.complete(task_id, note="ok")

        assert engine.update(task_id, title="Edit").error.category == ErrorCategory.INVALID_TRANSITION

    def test_update_unknown_task(self, engine):
        assert engine.update("T404", title="Edit").error.category == ErrorCategory.NOT_FOUND

    def test_update_same_values_is_no_change(self, engine):
        task_id = add(engine, "Work", priority="low")

        assert engine.update(task_id, priority="low").status == OutcomeStatus.NO_CHANGE

    def test_reparent_reinfers_type(self, engine):
        parent = add(engine, "Parent")
        child = add(engine, "Child")

        outcome = engine.reparent(child, parent)

        assert outcome.data["task"]["type"] == "subtask"
        assert engine.promote(child).data["task"]["type"] == "task"

    def test_epic_cannot_move_under_child(self, engine):
        parent = add(engine, "Parent", type="epic")
        child = add(engine, "Child", parent_id=parent)

        outcome = engine.reparent(parent, child)

        assert not outcome.ok
        assert outcome.error.category in (ErrorCategory.INVALID_PARENT_TYPE, ErrorCategory.HIERARCHY_CYCLE)
        assert engine.show(parent).data["task"].get("parentId") is None

    def test_reparent_under_descendant(self, engine):
        top = add(engine, "Top")
        mid = add(engine, "Mid", parent_id=top)

        outcome = engine.reparent(top, mid)

        assert not outcome.ok
        assert outcome.error.category in (ErrorCategory.INVALID_PARENT_TYPE, ErrorCategory.HIERARCHY_CYCLE)

    def test_focus_note(self, engine, settings):
        task_id = add(engine, "Work")
        engine.start(task_id)

        assert engine.focus(note="halfway").changed
        assert read_tasks(settings).focus.session_note == "halfway"
        assert engine.focus(clear=True).changed
        assert read_tasks(settings).focus.current_task is None

    def test_focus_on_inactive_task(self, engine):
        task_id = add(engine, "Work")

        outcome = engine.focus(task_id)

        assert outcome.error.category == ErrorCategory.FOCUS_INVALID


@pytest.mark.parametrize("verb", ["start", "unblock", "uncancel", "reopen", "show"])
def test_unknown_task_not_found(engine, verb):
    outcome = getattr(engine, verb)("T999")

    assert outcome.error.category == ErrorCategory.NOT_FOUND


class TestArgumentChecks:
    """Tests for rejecting malformed arguments as error outcomes."""

    def test_string_for_list_field_rejected(self, engine, settings):
        """Test that a bare string is not split into one label per character."""
        before = snapshot_bytes(settings)

        outcome = engine.add("Work", labels="urgent")

        assert outcome.error.category == ErrorCategory.SCHEMA_INVALID
        assert "labels" in outcome.error.message
        assert snapshot_bytes(settings) == before

    def test_tuple_accepted_for_list_field(self, engine):
        task_id = add(engine, "Work", labels=("a", "b"))

        assert engine.show(task_id).data["task"]["labels"] == ["a", "b"]

    def test_non_string_title_rejected(self, engine):
        assert engine.add(5).error.category == ErrorCategory.SCHEMA_INVALID

    def test_update_string_for_list_field_rejected(self, engine):
        task_id = add(engine, "Work")

        assert engine.update(task_id, labels="x").error.category == ErrorCategory.SCHEMA_INVALID
        assert engine.update(task_id, add_depends="T001").error.category == ErrorCategory.SCHEMA_INVALID

    def test_update_non_string_title_rejected(self, engine):
        task_id = add(engine, "Work")

        assert engine.update(task_id, title=5).error.category == ErrorCategory.SCHEMA_INVALID

    def test_update_unknown_field(self, engine):
        task_id = add(engine, "Work")

        outcome = engine.update(task_id, colour="red")

        assert outcome.error.category == ErrorCategory.SCHEMA_INVALID
        assert "title" in outcome.error.remedy

    def test_unexpected_value_error_becomes_outcome(self, engine):
        """Test that a ValueError raised inside a change is reported, not raised."""
        task_id = add(engine, "Work")
        engine.complete(task_id, note="ok")

        with patch("taskvault.lifecycle.reopen_task", side_effect=ValueError("bad")):
            outcome = engine.reopen(task_id)

        assert outcome.status == OutcomeStatus.ERROR
        assert outcome.error.category == ErrorCategory.SCHEMA_INVALID
        assert "bad" in outcome.error.message
