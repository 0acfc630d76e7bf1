"""Content fingerprint of the task collection.

The fingerprint is the first 16 hex characters of a SHA-256 digest over
a canonical encoding of the task list: tasks in document order, each as
its on-disk dict, dumped with sorted keys, compact separators and UTF-8
text. Changing this encoding invalidates every stored fingerprint.
"""

import hashlib
import json
from typing import Any, Iterable

from taskvault.errors import ChecksumMismatch
from taskvault.models import LiveStore, Task

CHECKSUM_LENGTH = 16


def canonical_encoding(tasks: Iterable[Task | dict[str, Any]]) -> bytes:
    payload = [task.to_dict() if isinstance(task, Task) else task for task in tasks]
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def checksum(tasks: Iterable[Task | dict[str, Any]]) -> str:
    """Deterministic fingerprint of a task collection."""
    return hashlib.sha256(canonical_encoding(tasks)).hexdigest()[:CHECKSUM_LENGTH]


def verify(store: LiveStore, expected: str | None = None) -> str:
    """Check a freshly read store against its stored fingerprint.

    Args:
        store: Live store as just read from disk.
        expected: Fingerprint the caller observed on an earlier read, if any.

    Returns:
        The verified fingerprint.

    Raises:
        ChecksumMismatch: If the stored fingerprint disagrees with the
            content (terminal: re-reading cannot help), or with the
            caller's earlier read (recoverable).
    """
    actual = checksum(store.tasks)
    if store.meta.checksum != actual:
        raise ChecksumMismatch(
            "Checksum mismatch: the task list was modified outside the engine",
            recoverable=False,
            remedy="Run validate with fix=True to recompute the checksum, or restore a backup",
            details={"stored": store.meta.checksum, "computed": actual},
        )
    if expected is not None and expected != actual:
        raise ChecksumMismatch(
            "Checksum mismatch: the store changed since it was last read",
            details={"expected": expected, "computed": actual},
        )
    return actual


def stamp(store: LiveStore) -> str:
    """Recompute and store the fingerprint on a candidate before writing."""
    store.meta.checksum = checksum(store.tasks)
    return store.meta.checksum
