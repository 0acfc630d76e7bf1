"""taskvault - a crash-consistent task store for humans and agents.

The store is four JSON documents (live tasks, archive, project config and
operation log) that only ever change through one atomic write pipeline:

- optimistic concurrency via a task-list checksum plus per-document locks
- structural validation of the hierarchy and dependency graphs
- task and phase lifecycle state machines
- a retention engine moving tasks between live and archive
- typed backups and a schema migration chain

Most callers want TaskEngine, or ``dispatch`` for a verb-based surface.
"""

from taskvault.commands import COMMANDS, dispatch
from taskvault.config import (
    SettingsContext,
    TaskvaultSettings,
    get_settings,
    reload_settings,
    set_context_settings,
    set_settings,
)
from taskvault.constants import APP_VERSION
from taskvault.engine import TaskEngine
from taskvault.errors import (
    ErrorCategory,
    Outcome,
    OutcomeStatus,
    StoreError,
    ValidationFailed,
    Violation,
)
from taskvault.logging import configure_logging
from taskvault.policy import ProjectConfig

__version__ = APP_VERSION

__all__ = [
    # Engine
    "TaskEngine",
    "COMMANDS",
    "dispatch",
    # Results
    "Outcome",
    "OutcomeStatus",
    "StoreError",
    "ValidationFailed",
    "Violation",
    "ErrorCategory",
    # Settings
    "TaskvaultSettings",
    "ProjectConfig",
    "SettingsContext",
    "get_settings",
    "set_settings",
    "set_context_settings",
    "reload_settings",
    "configure_logging",
    "__version__",
]
