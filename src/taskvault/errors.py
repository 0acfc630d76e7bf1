"""Error taxonomy and outcome contract.

Provides:
- ErrorCategory: Machine-readable error categories
- StoreError: Base error carrying category, recoverability and a remedy
- Violation: A single tagged validation finding
- Outcome: Closed result contract returned to callers
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory:
    """Machine-readable error categories."""

    # Structural validation
    PARENT_NOT_FOUND = "parent-not-found"
    DEPTH_EXCEEDED = "depth-exceeded"
    SIBLING_LIMIT = "sibling-limit"
    INVALID_PARENT_TYPE = "invalid-parent-type"
    HIERARCHY_CYCLE = "hierarchy-cycle"
    DEPENDENCY_NOT_FOUND = "dependency-not-found"
    SELF_DEPENDENCY = "self-dependency"
    DEPENDENCY_CYCLE = "dependency-cycle"
    SINGLE_ACTIVE = "single-active"
    FOCUS_INVALID = "focus-invalid"
    PHASE_INVALID = "phase-invalid"
    SCHEMA_INVALID = "schema-invalid"
    VALIDATION_FAILED = "validation-failed"

    # Lifecycle
    INVALID_TRANSITION = "invalid-transition"
    HAS_CHILDREN = "has-children"
    INCOMPLETE_TASKS = "incomplete-tasks"
    CONFIRMATION_REQUIRED = "confirmation-required"

    # Concurrency
    LOCK_TIMEOUT = "lock-timeout"
    CHECKSUM_MISMATCH = "checksum-mismatch"

    # Caller correction
    NOT_FOUND = "not-found"
    ALREADY_EXISTS = "already-exists"

    # Storage
    MIGRATION_FAILED = "migration-failed"
    IO_ERROR = "io-error"


class StoreError(Exception):
    """Base error for every engine failure.

    Attributes:
        message: Human-readable error message
        category: Machine-readable category (see ErrorCategory)
        recoverable: Whether an automated caller may retry as-is
        remedy: Suggested corrective action
        details: Additional structured details
    """

    category = ErrorCategory.VALIDATION_FAILED
    recoverable = False
    remedy: str | None = None

    def __init__(
        self,
        message: str,
        category: str | None = None,
        recoverable: bool | None = None,
        remedy: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category
        if recoverable is not None:
            self.recoverable = recoverable
        if remedy is not None:
            self.remedy = remedy
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "category": self.category,
            "message": self.message,
            "recoverable": self.recoverable,
            "remedy": self.remedy,
            "details": self.details,
        }


@dataclass(frozen=True)
class Violation:
    """A single validation finding, tagged with its category."""

    code: str
    message: str
    task_id: str | None = None
    path: tuple[str, ...] = ()
    measure: int | None = None

    @property
    def key(self) -> tuple[str, str | None, tuple[str, ...]]:
        """Identity used to tell pre-existing findings from new ones."""
        return (self.code, self.task_id, self.path)

    def worsens(self, baseline: "Violation") -> bool:
        """True if this finding is worse than the same finding in a baseline."""
        if self.measure is None or baseline.measure is None:
            return False
        return self.measure > baseline.measure

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.task_id is not None:
            data["taskId"] = self.task_id
        if self.path:
            data["path"] = list(self.path)
        return data


class ValidationFailed(StoreError):
    """Candidate state violates a structural rule. Nothing was written."""

    remedy = "Correct the request; the store was not modified"

    def __init__(self, violations: list[Violation], message: str | None = None):
        self.violations = list(violations)
        first = self.violations[0] if self.violations else None
        super().__init__(
            message or (first.message if first else "Validation failed"),
            category=first.code if first else ErrorCategory.VALIDATION_FAILED,
            details={"violations": [v.to_dict() for v in self.violations]},
        )


class LockTimeout(StoreError):
    category = ErrorCategory.LOCK_TIMEOUT
    recoverable = True
    remedy = "Retry with backoff; another writer holds the lock"


class ChecksumMismatch(StoreError):
    category = ErrorCategory.CHECKSUM_MISMATCH
    recoverable = True
    remedy = "Re-read the store and retry the operation"


class NotFound(StoreError):
    category = ErrorCategory.NOT_FOUND
    remedy = "Check the identifier; list the store to find valid ids"


class AlreadyExists(StoreError):
    category = ErrorCategory.ALREADY_EXISTS
    remedy = "Use the existing item or choose a different name"


class InvalidTransition(StoreError):
    category = ErrorCategory.INVALID_TRANSITION


class SchemaError(StoreError):
    category = ErrorCategory.SCHEMA_INVALID
    remedy = "Run validate, then restore from a backup or migrate"


class MigrationError(StoreError):
    category = ErrorCategory.MIGRATION_FAILED
    remedy = "Restore from the migration backup"


class StorageIOError(StoreError):
    category = ErrorCategory.IO_ERROR
    remedy = "Check disk space and permissions; the store was not modified"


class OutcomeStatus(str, Enum):
    """Result classes of an engine call."""

    SUCCESS = "success"
    NO_CHANGE = "no-change"
    ERROR = "error"


@dataclass
class Outcome:
    """Standard result wrapper for engine operations.

    Mirrors the closed outcome contract: success, idempotent no-change,
    or a categorized error tagged recoverable or terminal.
    """

    status: OutcomeStatus
    data: Any = None
    warnings: list[str] = field(default_factory=list)
    error: StoreError | None = None

    @property
    def ok(self) -> bool:
        return self.status != OutcomeStatus.ERROR

    @property
    def changed(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        result: dict[str, Any] = {"status": self.status.value, "success": self.ok}
        if self.ok:
            result["data"] = self.data
        else:
            result["error"] = self.error.to_dict() if self.error else None
        if self.warnings:
            result["warnings"] = list(self.warnings)
        return result

    @classmethod
    def success(cls, data: Any = None, warnings: list[str] | None = None) -> "Outcome":
        """Create a successful result."""
        return cls(status=OutcomeStatus.SUCCESS, data=data, warnings=warnings or [])

    @classmethod
    def no_change(cls, data: Any = None, warnings: list[str] | None = None) -> "Outcome":
        """Create an idempotent no-change result."""
        return cls(status=OutcomeStatus.NO_CHANGE, data=data, warnings=warnings or [])

    @classmethod
    def fail(cls, error: StoreError) -> "Outcome":
        """Create a failed result."""
        return cls(status=OutcomeStatus.ERROR, error=error)
