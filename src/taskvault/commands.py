"""Command surface: maps verbs to engine operations.

Each verb is a Command bound to one TaskEngine method. ``dispatch``
returns the outcome contract as a plain dict, so callers never see an
exception for an expected failure.

Example:
    >>> engine = TaskEngine()
    >>> dispatch(engine, "add", title="Write parser")["status"]
    'success'
    >>> dispatch(engine, "complete", task_id="T001", note="done")["data"]["changed"]
    ['T001']
"""

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from taskvault.errors import ErrorCategory, NotFound, Outcome, StoreError
from taskvault.logging import Loggers

if TYPE_CHECKING:
    from taskvault.engine import TaskEngine

logger = Loggers.engine()


class CommandCategory(Enum):
    """Categories for organizing commands."""

    TASK = "task"
    PHASE = "phase"
    SESSION = "session"
    ARCHIVE = "archive"
    MAINTENANCE = "maintenance"


@dataclass
class Command:
    """A verb bound to an engine method.

    ``method`` names the TaskEngine attribute called with the dispatch
    keyword arguments.
    """

    name: str
    method: str
    description: str
    category: CommandCategory = CommandCategory.TASK
    aliases: list[str] = field(default_factory=list)

    def execute(self, engine: "TaskEngine", **kwargs: Any) -> Outcome:
        handler: Callable[..., Outcome] = getattr(engine, self.method)
        return handler(**kwargs)


class CommandRegistry:
    """Registry for managing commands by name or alias."""

    def __init__(self) -> None:
        self._commands: dict[str, Command] = {}

    def register(self, command: Command) -> None:
        self._commands[command.name] = command
        for alias in command.aliases:
            self._commands[alias] = command

    def get(self, name: str) -> Command | None:
        return self._commands.get(name)

    def all_commands(self) -> list[Command]:
        """Unique commands, aliases excluded."""
        seen: set[str] = set()
        commands: list[Command] = []
        for cmd in self._commands.values():
            if cmd.name not in seen:
                seen.add(cmd.name)
                commands.append(cmd)
        return commands

    def by_category(self, category: CommandCategory) -> list[Command]:
        return [c for c in self.all_commands() if c.category == category]

    def get_completions(self) -> list[str]:
        return list(self._commands.keys())


def _default_registry() -> CommandRegistry:
    registry = CommandRegistry()
    for command in (
        Command("add", "add", "Create a task"),
        Command("update", "update", "Edit non-status fields of a task"),
        Command("start", "start", "Make a pending task the active one"),
        Command("block", "block", "Block a task with a reason"),
        Command("unblock", "unblock", "Return a blocked task to pending"),
        Command("complete", "complete", "Complete a task", aliases=["done"]),
        Command("delete", "delete", "Cancel a task", aliases=["cancel"]),
        Command("reopen", "reopen", "Return a done task to pending"),
        Command("uncancel", "uncancel", "Return a cancelled task to pending"),
        Command("reparent", "reparent", "Move a task under another parent"),
        Command("promote", "promote", "Detach a task from its parent"),
        Command("focus", "focus", "Set the session note or clear focus"),
        Command("show", "show", "Show a live or archived task"),
        Command("list", "list_tasks", "List live tasks"),
        Command("phase", "phase", "Phase define/start/complete/advance/set/show/list", CommandCategory.PHASE),
        Command("session", "session", "Session start/end/status", CommandCategory.SESSION),
        Command("session-start", "session_start", "Open a work session", CommandCategory.SESSION),
        Command("session-end", "session_end", "Close the work session", CommandCategory.SESSION),
        Command("session-status", "session_status", "Active session and task counts", CommandCategory.SESSION),
        Command("archive", "archive", "Move finished tasks to the archive", CommandCategory.ARCHIVE),
        Command("unarchive", "unarchive", "Restore archived tasks", CommandCategory.ARCHIVE),
        Command("init", "init", "Create the store documents", CommandCategory.MAINTENANCE),
        Command("migrate", "migrate", "Upgrade documents to the current schema", CommandCategory.MAINTENANCE),
        Command("validate", "validate", "Report every finding in the store", CommandCategory.MAINTENANCE),
        Command("backup", "backup", "Snapshot the store documents", CommandCategory.MAINTENANCE),
        Command("backups", "list_backups", "List backups", CommandCategory.MAINTENANCE),
        Command("restore", "restore", "Restore documents from a backup", CommandCategory.MAINTENANCE),
        Command("log", "log", "Read the operation log", CommandCategory.MAINTENANCE),
        Command("checksum", "checksum", "Current task fingerprint", CommandCategory.MAINTENANCE),
    ):
        registry.register(command)
    return registry


COMMANDS = _default_registry()


def dispatch(engine: "TaskEngine", verb: str, **kwargs: Any) -> dict[str, Any]:
    """Run one verb and return its outcome as a dict."""
    command = COMMANDS.get(verb)
    if command is None:
        outcome = Outcome.fail(
            NotFound(
                f"Unknown command '{verb}'",
                remedy="Use one of: " + ", ".join(c.name for c in COMMANDS.all_commands()),
            )
        )
        return outcome.to_dict()
    try:
        inspect.signature(getattr(engine, command.method)).bind(**kwargs)
    except TypeError as e:
        logger.info("command_rejected", command=verb, error=str(e))
        return Outcome.fail(
            StoreError(f"Invalid arguments for '{verb}': {e}", category=ErrorCategory.SCHEMA_INVALID)
        ).to_dict()
    return command.execute(engine, **kwargs).to_dict()
