"""Shared test fixtures and utilities for taskvault tests.

Provides:
- MockContext for isolating tests from global state
- Temporary store fixtures
- Engine fixtures with retries that never sleep
"""

import os
import tempfile
from pathlib import Path

import pytest

from taskvault.codec import DocumentKind, encode, load
from taskvault.config import (
    TaskvaultSettings,
    reload_settings,
    set_context_settings,
    set_settings,
)
from taskvault.engine import TaskEngine
from taskvault.policy import ProjectConfig


class MockContext:
    """Context manager for isolating tests from global state.

    Handles:
    - Resetting global settings singleton
    - Providing a temporary store directory
    - Cleaning up after tests

    Usage:
        with MockContext() as ctx:
            settings = ctx.settings
            store = ctx.store_dir
    """

    ENV_VARS = [
        "TASKVAULT_STORE_DIR",
        "TASKVAULT_ACTOR",
        "TASKVAULT_SESSION_ID",
        "TASKVAULT_LOCK_TIMEOUT",
    ]

    def __init__(self, **settings_kwargs):
        self._settings_kwargs = settings_kwargs
        self._temp_dir: tempfile.TemporaryDirectory | None = None
        self._settings: TaskvaultSettings | None = None
        self._original_env: dict[str, str | None] = {}

    def __enter__(self) -> "MockContext":
        self._temp_dir = tempfile.TemporaryDirectory()
        store_dir = Path(self._temp_dir.name) / ".claude"

        # Preserve and clear relevant environment variables
        for var in self.ENV_VARS:
            self._original_env[var] = os.environ.get(var)
            os.environ.pop(var, None)

        self._settings = TaskvaultSettings(store_dir=store_dir, **self._settings_kwargs)
        set_settings(self._settings)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        set_context_settings(None)

        for var, value in self._original_env.items():
            if value is None:
                os.environ.pop(var, None)
            else:
                os.environ[var] = value

        reload_settings()

        if self._temp_dir:
            self._temp_dir.cleanup()

    @property
    def settings(self) -> TaskvaultSettings:
        if self._settings is None:
            raise RuntimeError("MockContext not entered")
        return self._settings

    @property
    def store_dir(self) -> Path:
        return self.settings.store_dir


def write_config(settings: TaskvaultSettings, **sections) -> ProjectConfig:
    """Write a project config document with the given section overrides.

    Example:
        write_config(settings, archive={"daysUntilArchive": 0})
    """
    config = ProjectConfig.model_validate(sections)
    settings.store_dir.mkdir(parents=True, exist_ok=True)
    settings.config_path.write_bytes(encode(config.to_dict()))
    return config


def snapshot_bytes(settings: TaskvaultSettings) -> dict[str, bytes | None]:
    """Current bytes of every store document (None if missing)."""
    result = {}
    for path in (settings.tasks_path, settings.archive_path, settings.log_path, settings.config_path):
        result[path.name] = path.read_bytes() if path.exists() else None
    return result


class Sleeper:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def mock_context():
    with MockContext() as ctx:
        yield ctx


@pytest.fixture
def settings(mock_context) -> TaskvaultSettings:
    return mock_context.settings


@pytest.fixture
def sleeper() -> Sleeper:
    return Sleeper()


@pytest.fixture
def engine(settings, sleeper) -> TaskEngine:
    """An engine over a freshly initialized store."""
    engine = TaskEngine(settings, sleep=sleeper)
    outcome = engine.init("test-project")
    assert outcome.ok, outcome.to_dict()
    return engine


@pytest.fixture
def make_engine(settings, sleeper):
    """Factory for additional engines over the same store."""

    def factory() -> TaskEngine:
        return TaskEngine(settings, sleep=sleeper)

    return factory


def add(engine: TaskEngine, title: str, **kwargs) -> str:
    """Add a task and return its id, failing the test on error."""
    outcome = engine.add(title, **kwargs)
    assert outcome.ok, outcome.to_dict()
    return outcome.data["task"]["id"]


def read_tasks(settings: TaskvaultSettings):
    return load(settings.tasks_path, DocumentKind.TASKS)
