"""Project policy read from the store's config document.

The config document (todo-config.json) is read-only input to the
engine. Each section is a pydantic model with camelCase aliases so the
on-disk keys match the other store documents. Missing sections and
keys fall back to their defaults.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Section(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class HierarchyPolicy(_Section):
    """Structural limits for the epic/task/subtask lattice."""

    max_depth: int = Field(default=3, ge=1, description="Maximum hierarchy levels")
    max_siblings: int = Field(
        default=7, ge=0, description="Maximum children per parent (0 disables the check)"
    )
    count_done_in_limit: bool = Field(
        default=False, description="Count done/cancelled children toward the sibling limit"
    )


class LifecyclePolicy(_Section):
    """Task state machine switches."""

    require_completion_notes: bool = Field(default=True)
    auto_complete_parents: bool = Field(
        default=True, description="Complete a parent once all of its children finish"
    )
    auto_archive_on_complete: bool = Field(
        default=False, description="Run the retention policy in the same commit as complete"
    )


class PhasePolicy(_Section):
    """Project phase completion rules."""

    completion_threshold: int = Field(
        default=90, ge=0, le=100, description="Percent of phase tasks that must be done"
    )
    critical_blocking: bool = Field(
        default=True, description="Incomplete critical tasks block completion even when forced"
    )


class ArchivePolicy(_Section):
    """Retention policy for moving finished tasks to the archive."""

    days_until_archive: int = Field(default=7, ge=0)
    preserve_recent_count: int = Field(default=3, ge=0)
    exempt_labels: list[str] = Field(default_factory=list)
    archive_now_labels: list[str] = Field(default_factory=list)
    include_cancelled: bool = Field(default=True)


class CancellationPolicy(_Section):
    """Rules for cancelling (deleting) tasks."""

    require_reason: bool = Field(default=True)
    default_child_strategy: Literal["block", "orphan", "cascade"] = Field(default="block")
    cascade_limit: int = Field(default=10, ge=1)


class BackupPolicy(_Section):
    """Backup taxonomy retention limits."""

    enabled: bool = Field(default=True)
    max_snapshots: int = Field(default=10, ge=0)
    max_safety_backups: int = Field(default=5, ge=0)
    max_incremental: int = Field(default=10, ge=0)
    max_archive_backups: int = Field(default=3, ge=0)


class LogPolicy(_Section):
    """Operation log retention."""

    enabled: bool = Field(default=True)
    max_entries: int = Field(default=1000, ge=0, description="0 keeps every entry")
    retention_days: int = Field(default=0, ge=0, description="Drop entries older than this (0 disables)")


class RetryPolicy(_Section):
    """Backoff budgets per recoverable error class."""

    lock_attempts: int = Field(default=3, ge=1)
    lock_base_delay: float = Field(default=0.5, ge=0)
    checksum_attempts: int = Field(default=5, ge=1)
    checksum_base_delay: float = Field(default=0.05, ge=0)
    max_delay: float = Field(default=5.0, ge=0)


class ProjectConfig(_Section):
    """The complete config document."""

    version: str = Field(default="2.1.0")
    hierarchy: HierarchyPolicy = Field(default_factory=HierarchyPolicy)
    lifecycle: LifecyclePolicy = Field(default_factory=LifecyclePolicy)
    phases: PhasePolicy = Field(default_factory=PhasePolicy)
    archive: ArchivePolicy = Field(default_factory=ArchivePolicy)
    cancellation: CancellationPolicy = Field(default_factory=CancellationPolicy)
    backup: BackupPolicy = Field(default_factory=BackupPolicy)
    log: LogPolicy = Field(default_factory=LogPolicy)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)
