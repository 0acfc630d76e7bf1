"""Typed backup tree for the store documents.

Layout::

    <store_dir>/backups/<type>/<backupId>/
        todo.json            # copied document bytes
        todo-archive.json
        metadata.json        # BackupRecord

Types differ only in trigger and retention: ``snapshot`` is taken on
request, ``safety`` before every committed mutation, ``incremental``
holds one document and is written only when that document changed since
its previous incremental backup, ``archive`` precedes archive moves and
``migration`` precedes schema migrations. Migration backups are never
rotated and are written even when backups are disabled.
"""

import hashlib
import json
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from taskvault.codec import encode
from taskvault.errors import NotFound, StorageIOError
from taskvault.logging import Loggers
from taskvault.models import utc_now
from taskvault.policy import BackupPolicy

logger = Loggers.backup()

METADATA_FILE = "metadata.json"


class BackupType(str, Enum):
    SNAPSHOT = "snapshot"
    SAFETY = "safety"
    INCREMENTAL = "incremental"
    ARCHIVE = "archive"
    MIGRATION = "migration"


def _file_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _json_errors(data: bytes) -> list[str]:
    try:
        json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        return [f"Invalid JSON: {e}"]
    return []


@dataclass
class BackupFile:
    """One copied document inside a backup."""

    source: str
    backup: str
    size: int
    checksum: str
    valid: bool = True
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "backup": self.backup,
            "size": self.size,
            "checksum": self.checksum,
            "valid": self.valid,
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupFile":
        return cls(
            source=data["source"],
            backup=data.get("backup", data["source"]),
            size=int(data.get("size", 0)),
            checksum=data.get("checksum", ""),
            valid=bool(data.get("valid", True)),
            errors=list(data.get("errors", [])),
        )


@dataclass
class BackupRecord:
    """Write-once metadata describing a backup directory."""

    backup_id: str
    backup_type: BackupType
    timestamp: str
    version: str
    trigger: str
    operation: str
    files: list[BackupFile] = field(default_factory=list)
    total_size: int = 0
    never_delete: bool = False
    path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "backupId": self.backup_id,
            "backupType": self.backup_type.value,
            "timestamp": self.timestamp,
            "version": self.version,
            "trigger": self.trigger,
            "operation": self.operation,
            "files": [f.to_dict() for f in self.files],
            "totalSize": self.total_size,
        }
        if self.never_delete:
            data["neverDelete"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Path | None = None) -> "BackupRecord":
        return cls(
            backup_id=data.get("backupId") or (path.name if path else ""),
            backup_type=BackupType(data["backupType"]),
            timestamp=data["timestamp"],
            version=data.get("version", ""),
            trigger=data.get("trigger", "auto"),
            operation=data.get("operation", "backup"),
            files=[BackupFile.from_dict(f) for f in data.get("files", [])],
            total_size=int(data.get("totalSize", 0)),
            never_delete=bool(data.get("neverDelete", False)),
            path=path,
        )


class BackupManager:
    """Creates, rotates, lists, validates and reads typed backups.

    Example:
        >>> manager = BackupManager(settings.backups_dir, config.backup)
        >>> record = manager.create(BackupType.SAFETY, {"todo.json": raw}, operation="complete")
        >>> manager.validate(record)
        []
    """

    def __init__(self, backups_dir: Path, policy: BackupPolicy | None = None, version: str = ""):
        self.backups_dir = backups_dir
        self.policy = policy or BackupPolicy()
        self.version = version

    def _limit(self, backup_type: BackupType) -> int:
        return {
            BackupType.SNAPSHOT: self.policy.max_snapshots,
            BackupType.SAFETY: self.policy.max_safety_backups,
            BackupType.INCREMENTAL: self.policy.max_incremental,
            BackupType.ARCHIVE: self.policy.max_archive_backups,
            BackupType.MIGRATION: 0,
        }[backup_type]

    def _new_backup_dir(self, backup_type: BackupType, label: str | None) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        backup_id = f"{backup_type.value}_{stamp}"
        if label:
            safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in label)
            backup_id = f"{backup_id}_{safe}"
        type_dir = self.backups_dir / backup_type.value
        candidate = type_dir / backup_id
        counter = 1
        while candidate.exists():
            candidate = type_dir / f"{backup_id}-{counter}"
            counter += 1
        candidate.mkdir(parents=True)
        return candidate

    def create(
        self,
        backup_type: BackupType,
        sources: dict[str, bytes],
        *,
        trigger: str = "auto",
        operation: str = "backup",
        label: str | None = None,
    ) -> BackupRecord | None:
        """Write a backup of the given document bytes.

        Args:
            backup_type: Which retention class the backup belongs to.
            sources: Document file name to its bytes.
            trigger: ``manual`` or ``auto``.
            operation: Name of the operation that caused the backup.
            label: Optional suffix for the backup id.

        Returns:
            The written record, or None if backups are disabled.

        Raises:
            StorageIOError: If the backup could not be written.
        """
        if not self.policy.enabled and backup_type != BackupType.MIGRATION:
            return None
        try:
            backup_dir = self._new_backup_dir(backup_type, label)
            files = []
            for name, data in sources.items():
                (backup_dir / name).write_bytes(data)
                errors = _json_errors(data)
                files.append(
                    BackupFile(
                        source=name,
                        backup=name,
                        size=len(data),
                        checksum=_file_checksum(data),
                        valid=not errors,
                        errors=errors,
                    )
                )
            record = BackupRecord(
                backup_id=backup_dir.name,
                backup_type=backup_type,
                timestamp=utc_now(),
                version=self.version,
                trigger=trigger,
                operation=operation,
                files=files,
                total_size=sum(f.size for f in files),
                never_delete=backup_type == BackupType.MIGRATION,
                path=backup_dir,
            )
            (backup_dir / METADATA_FILE).write_bytes(encode(record.to_dict()))
        except OSError as e:
            raise StorageIOError(f"Failed to write {backup_type.value} backup: {e}") from e

        logger.info(
            "backup_created",
            backup_id=record.backup_id,
            backup_type=backup_type.value,
            operation=operation,
            files=len(files),
        )
        self.rotate(backup_type)
        return record

    def snapshot(
        self,
        paths: list[Path],
        *,
        backup_type: BackupType = BackupType.SNAPSHOT,
        trigger: str = "manual",
        operation: str = "backup",
        label: str | None = None,
    ) -> BackupRecord | None:
        """Back up whichever of the given document files exist."""
        sources = {}
        for path in paths:
            try:
                sources[path.name] = path.read_bytes()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StorageIOError(f"Cannot read {path}: {e}") from e
        return self.create(
            backup_type, sources, trigger=trigger, operation=operation, label=label
        )

    def latest_version(self, name: str) -> BackupFile | None:
        """The newest incremental copy of document ``name``, if any."""
        for record in reversed(self.list_backups(BackupType.INCREMENTAL)):
            for entry in record.files:
                if entry.source == name:
                    return entry
        return None

    def incremental(
        self, path: Path, *, trigger: str = "manual", operation: str = "backup"
    ) -> BackupRecord | None:
        """Version one document if it changed since its last incremental backup.

        Returns:
            The written record, or None if backups are disabled or the
            document is unchanged.

        Raises:
            StorageIOError: If the document cannot be read.
        """
        try:
            data = path.read_bytes()
        except OSError as e:
            raise StorageIOError(f"Cannot read {path}: {e}") from e
        latest = self.latest_version(path.name)
        if latest is not None and latest.checksum == _file_checksum(data):
            logger.debug("incremental_unchanged", file=path.name)
            return None
        return self.create(
            BackupType.INCREMENTAL, {path.name: data}, trigger=trigger, operation=operation, label=path.name
        )

    def rotate(self, backup_type: BackupType) -> list[str]:
        """Delete the oldest backups of a type beyond its limit.

        Returns:
            Ids of the deleted backups.
        """
        limit = self._limit(backup_type)
        if backup_type == BackupType.MIGRATION or limit == 0:
            return []
        records = self.list_backups(backup_type)
        excess = len(records) - limit
        if excess <= 0:
            return []
        deleted = []
        for record in records[:excess]:
            if record.never_delete or record.path is None:
                continue
            shutil.rmtree(record.path, ignore_errors=True)
            deleted.append(record.backup_id)
        if deleted:
            logger.debug("backups_rotated", backup_type=backup_type.value, deleted=deleted)
        return deleted

    def _load_record(self, backup_dir: Path) -> BackupRecord | None:
        try:
            data = json.loads((backup_dir / METADATA_FILE).read_text(encoding="utf-8"))
            return BackupRecord.from_dict(data, path=backup_dir)
        except (OSError, ValueError, KeyError) as e:
            logger.warning("backup_metadata_unreadable", path=str(backup_dir), error=str(e))
            return None

    def list_backups(self, backup_type: BackupType | None = None) -> list[BackupRecord]:
        """Backups oldest first, optionally of one type."""
        types = [backup_type] if backup_type else list(BackupType)
        records = []
        for kind in types:
            type_dir = self.backups_dir / kind.value
            if not type_dir.is_dir():
                continue
            for backup_dir in sorted(type_dir.iterdir()):
                if not backup_dir.is_dir():
                    continue
                record = self._load_record(backup_dir)
                if record is not None:
                    records.append(record)
        return records

    def find(self, backup_id: str) -> BackupRecord:
        for record in self.list_backups():
            if record.backup_id == backup_id:
                return record
        raise NotFound(
            f"Backup '{backup_id}' not found",
            remedy="List backups to find a valid id",
            details={"backupId": backup_id},
        )

    def validate(self, record: BackupRecord) -> list[str]:
        """Check a backup against its metadata.

        Returns:
            Error messages; empty if every file is present, unchanged and
            valid JSON.
        """
        if record.path is None:
            return ["Backup has no location"]
        errors = []
        for entry in record.files:
            try:
                data = (record.path / entry.backup).read_bytes()
            except OSError:
                errors.append(f"{entry.backup}: missing")
                continue
            if len(data) != entry.size:
                errors.append(f"{entry.backup}: size {len(data)} != {entry.size}")
            if _file_checksum(data) != entry.checksum:
                errors.append(f"{entry.backup}: checksum mismatch")
            errors.extend(f"{entry.backup}: {err}" for err in _json_errors(data))
        return errors

    def read_files(self, record: BackupRecord) -> dict[str, bytes]:
        if record.path is None:
            return {}
        try:
            return {entry.source: (record.path / entry.backup).read_bytes() for entry in record.files}
        except OSError as e:
            raise StorageIOError(f"Cannot read backup {record.backup_id}: {e}") from e
