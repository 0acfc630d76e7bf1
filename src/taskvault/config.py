"""Runtime settings for taskvault.

Provides the TaskvaultSettings class plus a global singleton and a
context-based override, following the same resolution rules:

    1. Global singleton (simple cases):
        set_settings(my_settings)
        settings = get_settings()

    2. Context-based (isolated contexts, tests):
        with SettingsContext(my_settings):
            settings = get_settings()  # Returns my_settings

Settings Loading Priority (highest to lowest):
    1. Constructor arguments
    2. Environment variables (TASKVAULT_* prefix)
    3. Project config (./.taskvault/settings.json)
    4. User config (~/.taskvault/settings.json)
    5. .env file
    6. Default values

Project policy (hierarchy limits, retention, phases) lives in the
store's own config document; see taskvault.policy.
"""

from contextlib import contextmanager
from contextvars import ContextVar, Token
from pathlib import Path
from typing import Generator, Literal, Tuple, Type

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings as PydanticBaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

__all__ = [
    "TaskvaultSettings",
    "SettingsContext",
    "get_settings",
    "set_settings",
    "set_context_settings",
    "reload_settings",
]

APP_NAME = "taskvault"


class TaskvaultSettings(PydanticBaseSettings):
    """Settings for a taskvault store.

    Attributes map to the store directory layout and to runtime
    behavior that is not part of the project policy document.
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKVAULT_",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = Field(
        default=APP_NAME,
        title="App Name",
        description="Application name used for settings directories",
    )
    store_dir: Path = Field(
        default_factory=lambda: Path.cwd() / ".claude",
        title="Store Directory",
        description="Directory holding the task, archive, config and log documents",
    )
    lock_timeout: float = Field(
        default=10.0,
        ge=0,
        title="Lock Timeout",
        description="Seconds to wait for a store lock before failing",
    )
    actor: Literal["human", "claude", "agent", "system"] = Field(
        default="system",
        title="Actor",
        description="Actor recorded in log entries",
    )
    session_id: str | None = Field(
        default=None,
        title="Session ID",
        description="Session recorded in log and archive entries",
    )
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="warning",
        title="Log Level",
        description="Logging verbosity level",
    )
    log_format: Literal["console", "json"] = Field(
        default="console",
        title="Log Format",
        description="Log output format (console for humans, json for agents)",
    )

    @field_validator("store_dir", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        """Expand ~ in paths."""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[PydanticBaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """Layer project and user JSON settings between env and dotenv.

        JSON sources are only included if the files exist.
        """
        sources: list[PydanticBaseSettingsSource] = [init_settings, env_settings]
        for json_file in (
            Path.cwd() / f".{APP_NAME}" / "settings.json",
            Path.home() / f".{APP_NAME}" / "settings.json",
        ):
            if json_file.exists():
                sources.append(JsonConfigSettingsSource(settings_cls, json_file=json_file))
        sources.append(dotenv_settings)
        return tuple(sources)

    def ensure_store_dir(self) -> None:
        """Create the store directory if it doesn't exist."""
        self.store_dir.mkdir(parents=True, exist_ok=True)

    @property
    def tasks_path(self) -> Path:
        """Live store document."""
        return self.store_dir / "todo.json"

    @property
    def archive_path(self) -> Path:
        """Archive store document."""
        return self.store_dir / "todo-archive.json"

    @property
    def config_path(self) -> Path:
        """Project policy document."""
        return self.store_dir / "todo-config.json"

    @property
    def log_path(self) -> Path:
        """Append-only operation log document."""
        return self.store_dir / "todo-log.json"

    @property
    def backups_dir(self) -> Path:
        """Root of the typed backup tree."""
        return self.store_dir / "backups"


_settings_context: ContextVar[TaskvaultSettings | None] = ContextVar(
    "taskvault_settings_context", default=None
)

_settings_instance: TaskvaultSettings | None = None


def get_settings() -> TaskvaultSettings:
    """Get the current settings instance.

    Settings resolution order:
    1. Context variable (set via SettingsContext or set_context_settings)
    2. Global singleton (set via set_settings)
    3. Fresh TaskvaultSettings instance (created on first access)
    """
    context_settings = _settings_context.get()
    if context_settings is not None:
        return context_settings

    global _settings_instance
    if _settings_instance is None:
        _settings_instance = TaskvaultSettings()
    return _settings_instance


def set_settings(settings: TaskvaultSettings) -> None:
    """Set the global settings instance."""
    global _settings_instance
    _settings_instance = settings


def set_context_settings(settings: TaskvaultSettings | None) -> Token:
    """Set settings for the current context.

    Returns:
        Token that can be used to reset the context variable.
    """
    return _settings_context.set(settings)


@contextmanager
def SettingsContext(settings: TaskvaultSettings) -> Generator[TaskvaultSettings, None, None]:
    """Context manager for isolated settings.

    Example:
        with SettingsContext(test_settings) as s:
            engine = TaskEngine()  # uses test_settings
    """
    token = _settings_context.set(settings)
    try:
        yield settings
    finally:
        _settings_context.reset(token)


def reload_settings() -> TaskvaultSettings:
    """Reload settings (clears global singleton and context)."""
    global _settings_instance
    _settings_instance = None
    _settings_context.set(None)
    return get_settings()
