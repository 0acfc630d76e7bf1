"""Tests for hierarchy validation and parent placement checks."""

import pytest

from taskvault.errors import ErrorCategory
from taskvault.hierarchy import (
    HierarchyValidator,
    check_parent,
    infer_type,
    rotate_cycle,
    task_depth,
)
from taskvault.models import LiveStore, Task, TaskStatus, TaskType
from taskvault.policy import HierarchyPolicy

from tests.conftest import add, write_config


def task(task_id: str, parent_id: str | None = None, type: TaskType = TaskType.TASK, **kwargs) -> Task:
    return Task(
        id=task_id,
        title=f"Task {task_id}",
        created_at="2025-01-01T00:00:00Z",
        parent_id=parent_id,
        type=type,
        **kwargs,
    )


def store_of(*tasks: Task) -> LiveStore:
    return LiveStore(version="2.2.0", project="p", tasks=list(tasks))


def codes(violations) -> list[str]:
    return [v.code for v in violations]


class TestInferType:
    """Tests for infer_type."""

    def test_root(self):
        assert infer_type(None) == TaskType.TASK

    def test_under_epic(self):
        assert infer_type(task("T001", type=TaskType.EPIC)) == TaskType.TASK

    def test_under_task(self):
        assert infer_type(task("T001")) == TaskType.SUBTASK


class TestHierarchyValidator:
    """Tests for HierarchyValidator."""

    def test_valid_three_levels(self):
        """Test that epic -> task -> subtask is accepted."""
        store = store_of(
            task("T001", type=TaskType.EPIC),
            task("T002", "T001"),
            task("T003", "T002", TaskType.SUBTASK),
        )

        assert HierarchyValidator().validate(store) == []

    def test_parent_not_found(self):
        """Test that a dangling parentId is an orphan."""
        store = store_of(task("T002", "T009"))

        assert codes(HierarchyValidator().validate(store)) == [ErrorCategory.PARENT_NOT_FOUND]

    def test_epic_with_parent(self):
        """Test that epics cannot have a parent."""
        store = store_of(task("T001"), task("T002", "T001", TaskType.EPIC))

        assert codes(HierarchyValidator().validate(store)) == [ErrorCategory.INVALID_PARENT_TYPE]

    def test_subtask_with_children(self):
        """Test that subtasks cannot have children."""
        store = store_of(
            task("T001"),
            task("T002", "T001", TaskType.SUBTASK),
            task("T003", "T002", TaskType.SUBTASK),
        )

        violations = HierarchyValidator().validate(store)

        assert codes(violations) == [ErrorCategory.INVALID_PARENT_TYPE]
        assert "cannot have children" in violations[0].message

    def test_depth_exceeded(self):
        """Test that a fourth level is rejected."""
        store = store_of(
            task("T001", type=TaskType.EPIC),
            task("T002", "T001"),
            task("T003", "T002"),
            task("T004", "T003"),
        )

        violations = HierarchyValidator().validate(store)

        assert codes(violations) == [ErrorCategory.DEPTH_EXCEEDED]
        assert violations[0].task_id == "T004"

    def test_sibling_limit(self):
        """Test that open children beyond the limit are rejected."""
        children = [task(f"T{i:03d}", "T001") for i in range(2, 5)]
        store = store_of(task("T001", type=TaskType.EPIC), *children)

        violations = HierarchyValidator(HierarchyPolicy(max_siblings=2)).validate(store)

        assert codes(violations) == [ErrorCategory.SIBLING_LIMIT]
        assert violations[0].measure == 3

    def test_finished_children_not_counted(self):
        """Test that done children do not count by default."""
        children = [task(f"T{i:03d}", "T001") for i in range(2, 5)]
        children[0].status = TaskStatus.DONE
        children[0].completed_at = "2025-01-02T00:00:00Z"
        store = store_of(task("T001", type=TaskType.EPIC), *children)

        assert HierarchyValidator(HierarchyPolicy(max_siblings=2)).validate(store) == []
        counted = HierarchyValidator(HierarchyPolicy(max_siblings=2, count_done_in_limit=True))
        assert codes(counted.validate(store)) == [ErrorCategory.SIBLING_LIMIT]

    def test_zero_limit_disables_check(self):
        children = [task(f"T{i:03d}", "T001") for i in range(2, 12)]
        store = store_of(task("T001", type=TaskType.EPIC), *children)

        assert HierarchyValidator(HierarchyPolicy(max_siblings=0)).validate(store) == []

    def test_cycle(self):
        """Test that a parent cycle is reported once with its path."""
        store = store_of(task("T002", "T001"), task("T001", "T002"))

        violations = HierarchyValidator().validate(store)

        assert codes(violations) == [ErrorCategory.HIERARCHY_CYCLE]
        assert violations[0].path == ("T001", "T002")

    def test_each_class_reported_distinctly(self):
        """Test that several violation classes come out separately."""
        children = [task(f"T{i:03d}", "T001") for i in range(2, 5)]
        store = store_of(
            task("T001", type=TaskType.EPIC),
            *children,
            task("T010", "T099"),
            task("T011", "T010", TaskType.SUBTASK),
            task("T012", "T011"),
        )

        found = set(codes(HierarchyValidator(HierarchyPolicy(max_siblings=2)).validate(store)))

        assert found == {
            ErrorCategory.SIBLING_LIMIT,
            ErrorCategory.PARENT_NOT_FOUND,
            ErrorCategory.INVALID_PARENT_TYPE,
        }


class TestHelpers:
    """Tests for depth and cycle helpers."""

    def test_task_depth(self):
        store = store_of(task("T001"), task("T002", "T001"), task("T003", "T002"))

        assert task_depth(store.get("T003"), store.index()) == 2

    def test_task_depth_in_cycle(self):
        store = store_of(task("T001", "T002"), task("T002", "T001"))

        assert task_depth(store.get("T001"), store.index()) is None

    def test_rotate_cycle(self):
        assert rotate_cycle(["T003", "T001", "T002"]) == ("T001", "T002", "T003")
        assert rotate_cycle([]) == ()


class TestCheckParent:
    """Tests for check_parent pre-flight checks."""

    def test_no_parent(self):
        assert check_parent(store_of(), None) == []

    def test_missing_parent(self):
        assert codes(check_parent(store_of(), "T009")) == [ErrorCategory.PARENT_NOT_FOUND]

    def test_move_under_own_descendant(self):
        """Test that reparenting under a descendant is a cycle."""
        store = store_of(task("T001"), task("T002", "T001", TaskType.SUBTASK))

        violations = check_parent(store, "T002", "T001", TaskType.TASK)

        assert ErrorCategory.HIERARCHY_CYCLE in codes(violations)

    def test_move_under_self(self):
        store = store_of(task("T001"))

        assert codes(check_parent(store, "T001", "T001", TaskType.TASK)) == [ErrorCategory.HIERARCHY_CYCLE]


class TestHierarchyScenario:
    """Scenario tests through the engine."""

    def test_subtask_cannot_have_children(self, engine):
        """Test epic -> task -> subtask, then a child of the subtask fails."""
        epic = add(engine, "Epic", type="epic")
        parent = add(engine, "Task", parent_id=epic)
        subtask = add(engine, "Subtask", parent_id=parent)

        assert engine.show(parent).data["task"]["type"] == "task"
        assert engine.show(subtask).data["task"]["type"] == "subtask"

        outcome = engine.add("Too deep", parent_id=subtask)

        assert not outcome.ok
        assert outcome.error.category == ErrorCategory.INVALID_PARENT_TYPE
        assert "cannot have children" in outcome.error.message

    def test_sibling_limit_through_engine(self, engine, settings):
        """Test that the sibling limit blocks the add that would exceed it."""
        write_config(settings, hierarchy={"maxSiblings": 2})
        epic = add(engine, "Epic", type="epic")
        add(engine, "One", parent_id=epic)
        add(engine, "Two", parent_id=epic)

        outcome = engine.add("Three", parent_id=epic)

        assert outcome.error.category == ErrorCategory.SIBLING_LIMIT

    @pytest.mark.parametrize("parent_type", ["epic", "task"])
    def test_epic_cannot_have_parent(self, engine, parent_type):
        parent = add(engine, "Parent", type=parent_type)

        outcome = engine.add("Nested epic", type="epic", parent_id=parent)

        assert outcome.error.category == ErrorCategory.INVALID_PARENT_TYPE

    def test_tightened_policy_keeps_store_writable(self, engine, settings):
        """Test that a pre-existing violation blocks only mutations that worsen it."""
        epic = add(engine, "Epic", type="epic")
        first = add(engine, "One", parent_id=epic)
        add(engine, "Two", parent_id=epic)
        add(engine, "Three", parent_id=epic)
        write_config(settings, hierarchy={"maxSiblings": 2})

        assert engine.update(first, title="One, renamed").changed
        assert engine.add("Four", parent_id=epic).error.category == ErrorCategory.SIBLING_LIMIT

        report = engine.validate().data
        assert not report["valid"]
        assert [v["code"] for v in report["violations"]] == [ErrorCategory.SIBLING_LIMIT]
