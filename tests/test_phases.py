"""Tests for the project phase state machine."""

import pytest

from taskvault.errors import ErrorCategory, OutcomeStatus
from taskvault.models import LiveStore, PhaseStatus, PhaseTransition, Task, TaskStatus
from taskvault.phases import define_phase, next_phase, progress

from tests.conftest import add, read_tasks, write_config


@pytest.fixture
def phased(engine):
    """Engine with phases core then polish, core active."""
    assert engine.phase_define("core").ok
    assert engine.phase_define("polish").ok
    assert engine.phase_start("core").ok
    return engine


def add_core_tasks(engine, count: int, done: int, **kwargs) -> list[str]:
    ids = [add(engine, f"Core {n}", phase="core", **kwargs) for n in range(count)]
    for task_id in ids[:done]:
        assert engine.complete(task_id, note="done").ok
    return ids


class TestProgress:
    """Tests for phase progress figures."""

    def test_cancelled_tasks_not_counted(self):
        store = LiveStore(
            version="2.2.0",
            project="p",
            tasks=[
                Task(id="T001", title="A", created_at="t", phase="core", status=TaskStatus.DONE, completed_at="t"),
                Task(id="T002", title="B", created_at="t", phase="core", status=TaskStatus.CANCELLED, cancelled_at="t"),
                Task(id="T003", title="C", created_at="t", phase="other"),
            ],
        )

        stats = progress(store, "core")

        assert stats.total == 1
        assert stats.percent == 100.0

    def test_empty_phase_is_complete(self):
        store = LiveStore(version="2.2.0", project="p")

        assert progress(store, "core").percent == 100.0

    def test_next_phase_skips_order_gaps(self):
        store = LiveStore(version="2.2.0", project="p")
        define_phase(store, "setup", order=1)
        define_phase(store, "ship", order=5)

        assert next_phase(store, "setup").slug == "ship"
        assert next_phase(store, "ship") is None
        assert next_phase(store, None).slug == "setup"


class TestDefineAndStart:
    """Tests for define and start."""

    def test_define_assigns_order_and_name(self, engine):
        engine.phase_define("setup")

        outcome = engine.phase_define("code-review")

        assert outcome.data["phase"]["order"] == 2
        assert outcome.data["phase"]["name"] == "Code Review"

    def test_redefine_identically_is_no_change(self, engine):
        engine.phase_define("setup", "Setup", 1)

        assert engine.phase_define("setup", "Setup", 1).status == OutcomeStatus.NO_CHANGE

    def test_redefine_differently(self, engine):
        engine.phase_define("setup", "Setup", 1)

        assert engine.phase_define("setup", "Other", 1).error.category == ErrorCategory.ALREADY_EXISTS

    def test_invalid_slug(self, engine):
        assert engine.phase_define("Not A Slug").error.category == ErrorCategory.PHASE_INVALID

    def test_start_records_history(self, phased, settings):
        store = read_tasks(settings)

        assert store.current_phase == "core"
        assert store.phases["core"].status == PhaseStatus.ACTIVE
        assert store.phase_history[-1].transition == PhaseTransition.STARTED

    def test_only_one_active(self, phased):
        outcome = phased.phase_start("polish")

        assert outcome.error.category == ErrorCategory.INVALID_TRANSITION

    def test_unknown_phase(self, engine):
        assert engine.phase_start("missing").error.category == ErrorCategory.NOT_FOUND


class TestCompletionThreshold:
    """Tests for the completion threshold and critical-task blocking."""

    def test_below_threshold_refused(self, phased, settings):
        """Test that 2 of 3 done (67% < 90%) refuses to advance."""
        add_core_tasks(phased, 3, done=2)

        outcome = phased.phase_advance()

        assert outcome.error.category == ErrorCategory.INCOMPLETE_TASKS
        assert outcome.error.details["done"] == 2
        assert read_tasks(settings).current_phase == "core"

    def test_force_waives_threshold(self, phased, settings):
        add_core_tasks(phased, 3, done=2)

        outcome = phased.phase_advance(force=True)

        store = read_tasks(settings)
        assert outcome.changed
        assert outcome.data["currentPhase"] == "polish"
        assert store.phases["core"].status == PhaseStatus.COMPLETED
        assert store.phases["polish"].status == PhaseStatus.ACTIVE
        transitions = [(e.phase, e.transition) for e in store.phase_history]
        assert transitions[-2:] == [
            ("core", PhaseTransition.COMPLETED),
            ("polish", PhaseTransition.STARTED),
        ]

    def test_critical_task_blocks_even_when_forced(self, phased):
        add_core_tasks(phased, 3, done=2)
        add(phased, "Release blocker", phase="core", priority="critical")

        outcome = phased.phase_advance(force=True)

        assert outcome.error.category == ErrorCategory.INCOMPLETE_TASKS
        assert "critical" in outcome.error.message

    def test_critical_blocking_disabled(self, phased, settings):
        write_config(settings, phases={"criticalBlocking": False})
        add(phased, "Release blocker", phase="core", priority="critical")

        assert phased.phase_advance(force=True).changed

    def test_lower_threshold(self, phased, settings):
        write_config(settings, phases={"completionThreshold": 60})
        add_core_tasks(phased, 3, done=2)

        assert phased.phase_complete().changed

    def test_complete_twice_is_no_change(self, phased):
        phased.phase_complete()

        assert phased.phase_complete("core").status == OutcomeStatus.NO_CHANGE

    def test_advance_past_last_phase(self, phased):
        phased.phase_advance()

        assert phased.phase_advance().error.category == ErrorCategory.NOT_FOUND


class TestSetPhase:
    """Tests for moving the current-phase pointer."""

    def test_forward_moves_pointer_only(self, phased, settings):
        phased.phase_set("polish")

        store = read_tasks(settings)
        assert store.current_phase == "polish"
        assert store.phases["core"].status == PhaseStatus.ACTIVE
        assert store.phases["polish"].status == PhaseStatus.PENDING

    def test_rollback_needs_confirmation(self, phased, settings):
        phased.phase_advance()

        outcome = phased.phase_set("core")

        assert outcome.error.category == ErrorCategory.CONFIRMATION_REQUIRED
        assert read_tasks(settings).current_phase == "polish"

    def test_confirmed_rollback(self, phased, settings):
        phased.phase_advance()

        outcome = phased.phase_set("core", confirm=True)

        store = read_tasks(settings)
        assert outcome.changed
        assert store.phases["core"].status == PhaseStatus.ACTIVE
        assert store.phases["polish"].status == PhaseStatus.PENDING
        last = store.phase_history[-1]
        assert last.transition == PhaseTransition.ROLLBACK
        assert last.from_phase == "polish"


class TestPhaseQueries:
    """Tests for phase list, show and the router."""

    def test_list_reports_progress(self, phased):
        add_core_tasks(phased, 2, done=1)

        phases = phased.phase_list().data["phases"]

        assert [p["slug"] for p in phases] == ["core", "polish"]
        assert phases[0]["progress"]["percent"] == 50.0

    def test_show_defaults_to_current(self, phased):
        outcome = phased.phase_show()

        assert outcome.data["phase"]["slug"] == "core"
        assert len(outcome.data["history"]) == 1

    def test_router(self, engine):
        assert engine.phase("define", "setup").ok
        assert engine.phase("start", "setup").data["currentPhase"] == "setup"

    def test_router_unknown_action(self, engine):
        assert engine.phase("explode").error.category == ErrorCategory.SCHEMA_INVALID

    def test_router_needs_slug(self, engine):
        assert engine.phase("start").error.category == ErrorCategory.SCHEMA_INVALID
