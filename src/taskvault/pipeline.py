"""Atomic write pipeline: the single choke point for every mutation.

A commit runs, in order:

1. acquire the document locks (global order)
2. read each document and verify the task checksum
3. apply the mutator to deep copies of the documents
4. validate the candidates (schema and structural rules)
5. write each candidate to ``<path>.tmp`` and fsync
6. re-read each scratch file and compare it byte for byte
7. back up the prior content
8. rename every scratch file over its live path
9. release the locks

Any failure from step 4 on removes the scratch files and leaves every
live path byte-identical to its pre-commit content. If a rename fails
after others succeeded, the renamed documents are restored from their
prior bytes before the error surfaces.
"""

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from taskvault import checksum, codec
from taskvault.backups import BackupManager, BackupRecord, BackupType
from taskvault.codec import Document, DocumentKind
from taskvault.config import TaskvaultSettings
from taskvault.errors import (
    NotFound,
    SchemaError,
    StorageIOError,
    StoreError,
    ValidationFailed,
    Violation,
)
from taskvault.locking import LockManager
from taskvault.logging import Loggers
from taskvault.models import ArchiveStore, LiveStore, LogStore, utc_now
from taskvault.policy import ProjectConfig
from taskvault.validation import StoreValidator

logger = Loggers.pipeline()


@dataclass
class Candidate:
    """Mutable copies of the documents a mutator may change.

    ``config`` is the project policy in effect for this commit. Mutators
    append human-readable warnings to ``warnings``.
    """

    documents: dict[DocumentKind, Any]
    config: ProjectConfig
    warnings: list[str] = field(default_factory=list)

    @property
    def tasks(self) -> LiveStore:
        return self.documents[DocumentKind.TASKS]

    @property
    def archive(self) -> ArchiveStore:
        return self.documents[DocumentKind.ARCHIVE]

    @property
    def log(self) -> LogStore:
        return self.documents[DocumentKind.LOG]


Mutator = Callable[[Candidate], Any]


@dataclass
class CommitResult:
    """What a commit did.

    Attributes:
        operation: Name of the operation, as recorded in backups and logs.
        changed: False when the mutator produced no difference.
        value: Whatever the mutator returned.
        documents: The committed (or unchanged) documents.
        checksum: Task fingerprint after the commit, if tasks were involved.
        backup: Backup of the prior content, if one was taken.
        preexisting: Violations present before the commit and tolerated.
    """

    operation: str
    changed: bool
    value: Any = None
    documents: dict[DocumentKind, Document] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    checksum: str | None = None
    backup: BackupRecord | None = None
    preexisting: list[Violation] = field(default_factory=list)


class WritePipeline:
    """Commits mutations to the store documents atomically.

    Example:
        >>> pipeline = WritePipeline(settings)
        >>> def rename(candidate):
        ...     candidate.tasks.get("T001").title = "New title"
        >>> result = pipeline.commit([DocumentKind.TASKS], rename, operation="update")
        >>> result.changed
        True
    """

    def __init__(
        self,
        settings: TaskvaultSettings,
        locks: LockManager | None = None,
        version: str = "",
    ):
        self.settings = settings
        self.locks = locks or LockManager(self.path_for, timeout=settings.lock_timeout)
        self.version = version

    def path_for(self, kind: DocumentKind) -> Path:
        return {
            DocumentKind.TASKS: self.settings.tasks_path,
            DocumentKind.ARCHIVE: self.settings.archive_path,
            DocumentKind.LOG: self.settings.log_path,
            DocumentKind.CONFIG: self.settings.config_path,
        }[kind]

    def kind_for_name(self, name: str) -> DocumentKind | None:
        for kind in DocumentKind:
            if self.path_for(kind).name == name:
                return kind
        return None

    def scratch_path(self, kind: DocumentKind) -> Path:
        path = self.path_for(kind)
        return path.with_suffix(path.suffix + ".tmp")

    def load_config(self) -> ProjectConfig:
        """Project policy, or defaults if the store has no config document."""
        path = self.path_for(DocumentKind.CONFIG)
        if not path.exists():
            return ProjectConfig()
        return codec.load(path, DocumentKind.CONFIG)

    def backup_manager(self, config: ProjectConfig | None = None) -> BackupManager:
        config = config or self.load_config()
        return BackupManager(self.settings.backups_dir, config.backup, version=self.version)

    def read(self, kind: DocumentKind) -> Document:
        """Unlocked read of a current-version document."""
        return codec.load(self.path_for(kind), kind)

    def _peek_archive(self) -> ArchiveStore | None:
        try:
            return self.read(DocumentKind.ARCHIVE)
        except NotFound:
            return None

    def commit(
        self,
        documents: Iterable[DocumentKind],
        mutator: Mutator,
        *,
        operation: str,
        backup_type: BackupType | None = BackupType.SAFETY,
        verify_checksum: bool = True,
        expected_checksum: str | None = None,
        migrate: bool = False,
    ) -> CommitResult:
        """Apply ``mutator`` to the given documents as one atomic commit.

        Args:
            documents: Documents the mutation may touch; all are locked.
            mutator: Mutates a Candidate in place; its return value is
                passed through as ``CommitResult.value``. Raising a
                StoreError aborts the commit with nothing written.
            operation: Name recorded in the backup metadata and logs.
            backup_type: Type of the pre-commit backup, or None for none.
            verify_checksum: Verify the stored task fingerprint on read.
            expected_checksum: Fingerprint from the caller's earlier read.
            migrate: Read documents as raw dicts regardless of version.
                The mutator must turn them into current-version dicts.

        Raises:
            StoreError: Any categorized failure; the store is unchanged.
        """
        kinds = sorted(set(documents), key=lambda k: k.lock_rank)
        logger.debug("commit_started", operation=operation, documents=[k.value for k in kinds])

        with self.locks.hold(*kinds):
            config = self.load_config() if not migrate else ProjectConfig()
            prior = {kind: self._read_prior(kind) for kind in kinds}
            baseline = {
                kind: codec.decode(kind, raw) if migrate else codec.parse(kind, raw)
                for kind, raw in prior.items()
            }

            fingerprint = None
            if DocumentKind.TASKS in baseline and not migrate:
                if verify_checksum:
                    fingerprint = checksum.verify(baseline[DocumentKind.TASKS], expected_checksum)
                else:
                    fingerprint = checksum.checksum(baseline[DocumentKind.TASKS].tasks)

            candidate = Candidate(documents=copy.deepcopy(baseline), config=config)
            value = mutator(candidate)

            if migrate:
                candidate.documents = {
                    kind: self._promote(kind, data) for kind, data in candidate.documents.items()
                }
            elif all(
                codec.serialize(candidate.documents[kind]) == codec.serialize(baseline[kind])
                for kind in kinds
            ):
                logger.info("commit_no_change", operation=operation)
                return CommitResult(
                    operation=operation,
                    changed=False,
                    value=value,
                    documents=baseline,
                    warnings=candidate.warnings,
                    checksum=fingerprint,
                )

            new_fingerprint = self._stamp(candidate)
            preexisting = self._validate(candidate, None if migrate else baseline)
            encoded = {kind: codec.serialize(candidate.documents[kind]) for kind in kinds}

            scratch: dict[DocumentKind, Path] = {}
            try:
                self._write_scratch(encoded, scratch)
                self._verify_scratch(encoded, scratch)
                backup = self._backup(backup_type, prior, operation, config)
                self._rename(scratch, prior)
            except StoreError as e:
                self._discard(scratch)
                logger.warning("commit_failed", operation=operation, category=e.category, error=e.message)
                raise
            except OSError as e:
                self._discard(scratch)
                logger.warning("commit_failed", operation=operation, error=str(e))
                raise StorageIOError(f"{operation} failed while writing: {e}") from e

        logger.info(
            "commit_succeeded",
            operation=operation,
            documents=[k.value for k in kinds],
            checksum=new_fingerprint,
            backup=backup.backup_id if backup else None,
        )
        return CommitResult(
            operation=operation,
            changed=True,
            value=value,
            documents=candidate.documents,
            warnings=candidate.warnings,
            checksum=new_fingerprint,
            backup=backup,
            preexisting=preexisting,
        )

    def initialize(self, documents: dict[DocumentKind, Document]) -> list[DocumentKind]:
        """Write documents that do not exist yet; existing ones are left alone.

        Returns:
            The documents that were created.
        """
        kinds = sorted(documents, key=lambda k: k.lock_rank)
        with self.locks.hold(*kinds):
            missing = [kind for kind in kinds if not self.path_for(kind).exists()]
            if not missing:
                return []
            for kind in missing:
                if kind == DocumentKind.TASKS:
                    checksum.stamp(documents[kind])
            encoded = {kind: codec.serialize(documents[kind]) for kind in missing}
            scratch: dict[DocumentKind, Path] = {}
            try:
                self._write_scratch(encoded, scratch)
                self._verify_scratch(encoded, scratch)
                self._rename(scratch, {kind: None for kind in missing})
            except StoreError:
                self._discard(scratch)
                raise
            except OSError as e:
                self._discard(scratch)
                raise StorageIOError(f"init failed while writing: {e}") from e
        logger.info("store_initialized", documents=[k.value for k in missing])
        return missing

    def _read_prior(self, kind: DocumentKind) -> bytes:
        return codec.read_bytes(self.path_for(kind), kind)

    def _promote(self, kind: DocumentKind, data: dict[str, Any]) -> Document:
        """Turn a migrated raw dict into a current-version model."""
        violations = codec.check_structure(kind, data)
        if violations or data.get("version") != codec.SCHEMA_VERSIONS[kind]:
            raise SchemaError(
                f"Migrated {kind.value} document does not conform to version "
                f"{codec.SCHEMA_VERSIONS[kind]}",
                details={"document": kind.value, "violations": [v.to_dict() for v in violations]},
            )
        return codec.from_dict(kind, data)

    def _stamp(self, candidate: Candidate) -> str | None:
        if DocumentKind.TASKS not in candidate.documents:
            return None
        candidate.tasks.last_updated = utc_now()
        return checksum.stamp(candidate.tasks)

    def _validate(
        self, candidate: Candidate, baseline: dict[DocumentKind, Document] | None
    ) -> list[Violation]:
        """Block on schema violations and on structural violations the mutation introduced."""
        violations: list[Violation] = []
        for kind, document in candidate.documents.items():
            violations.extend(codec.check_structure(kind, document.to_dict()))
        if violations:
            raise ValidationFailed(violations)

        if DocumentKind.TASKS not in candidate.documents:
            return []
        validator = StoreValidator(candidate.config)
        if DocumentKind.ARCHIVE in candidate.documents:
            archive = candidate.archive
            baseline_archive = baseline[DocumentKind.ARCHIVE] if baseline else archive
        else:
            archive = baseline_archive = self._peek_archive()
        if baseline is None:
            # migrated stores carry their structural findings forward
            findings = validator.validate(candidate.tasks, archive)
            if findings:
                logger.warning("preexisting_violations", count=len(findings))
            return findings
        report = validator.compare(
            candidate.tasks,
            baseline[DocumentKind.TASKS],
            archive,
            baseline_archive,
        )
        if not report.valid:
            raise ValidationFailed(report.violations)
        if report.preexisting:
            logger.warning("preexisting_violations", count=len(report.preexisting))
        return report.preexisting

    def _write_scratch(self, encoded: dict[DocumentKind, bytes], scratch: dict[DocumentKind, Path]) -> None:
        for kind, data in encoded.items():
            path = self.scratch_path(kind)
            path.parent.mkdir(parents=True, exist_ok=True)
            scratch[kind] = path
            with open(path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

    def _verify_scratch(self, encoded: dict[DocumentKind, bytes], scratch: dict[DocumentKind, Path]) -> None:
        for kind, path in scratch.items():
            written = path.read_bytes()
            if written != encoded[kind]:
                raise StorageIOError(
                    f"Scratch file for {kind.value} does not match the candidate",
                    details={"document": kind.value, "path": str(path)},
                )
            parsed = codec.parse(kind, written)
            if kind == DocumentKind.TASKS:
                checksum.verify(parsed)

    def _backup(
        self,
        backup_type: BackupType | None,
        prior: dict[DocumentKind, bytes],
        operation: str,
        config: ProjectConfig,
    ) -> BackupRecord | None:
        if backup_type is None:
            return None
        sources = {self.path_for(kind).name: raw for kind, raw in prior.items()}
        return self.backup_manager(config).create(backup_type, sources, operation=operation)

    def _rename(self, scratch: dict[DocumentKind, Path], prior: dict[DocumentKind, bytes | None]) -> None:
        renamed: list[DocumentKind] = []
        try:
            for kind, path in scratch.items():
                os.replace(path, self.path_for(kind))
                renamed.append(kind)
        except OSError:
            for kind in reversed(renamed):
                self._restore_prior(kind, prior[kind])
            logger.warning("commit_rolled_back", restored=[k.value for k in renamed])
            raise

    def _restore_prior(self, kind: DocumentKind, raw: bytes | None) -> None:
        path = self.path_for(kind)
        if raw is None:
            path.unlink(missing_ok=True)
        else:
            path.write_bytes(raw)

    def _discard(self, scratch: dict[DocumentKind, Path]) -> None:
        for path in scratch.values():
            path.unlink(missing_ok=True)
