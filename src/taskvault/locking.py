"""Advisory, bounded-wait exclusive locks per store document.

Each document gets a sibling ``.lock`` file guarded by filelock. Locks
over several documents are always taken in the global order defined by
DocumentKind and released in reverse.
"""

from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Callable, Iterator

from filelock import FileLock, Timeout

from taskvault.codec import DocumentKind
from taskvault.errors import LockTimeout
from taskvault.logging import Loggers

logger = Loggers.pipeline()


def lock_path_for(path: Path) -> Path:
    return path.with_suffix(path.suffix + ".lock")


class LockManager:
    """Hands out scoped exclusive locks for store documents.

    Example:
        >>> locks = LockManager(pipeline.path_for, timeout=10)
        >>> with locks.hold(DocumentKind.TASKS, DocumentKind.ARCHIVE):
        ...     ...  # both documents are exclusively ours
    """

    def __init__(self, path_for: Callable[[DocumentKind], Path], timeout: float = 10.0):
        self._path_for = path_for
        self.timeout = timeout
        self._locks: dict[DocumentKind, FileLock] = {}

    def _lock(self, kind: DocumentKind) -> FileLock:
        lock = self._locks.get(kind)
        if lock is None:
            lock_path = lock_path_for(self._path_for(kind))
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock = FileLock(lock_path)
            self._locks[kind] = lock
        return lock

    @contextmanager
    def hold(self, *kinds: DocumentKind, timeout: float | None = None) -> Iterator[None]:
        """Acquire exclusive locks on the given documents.

        Args:
            *kinds: Documents to lock; duplicates are ignored.
            timeout: Seconds to wait per lock (defaults to the manager's).

        Raises:
            LockTimeout: If any lock could not be acquired in time. Locks
                already taken are released before raising.
        """
        wait = self.timeout if timeout is None else timeout
        ordered = sorted(set(kinds), key=lambda k: k.lock_rank)
        with ExitStack() as stack:
            for kind in ordered:
                lock = self._lock(kind)
                try:
                    lock.acquire(timeout=wait)
                except Timeout as e:
                    logger.warning("lock_timeout", document=kind.value, timeout=wait)
                    raise LockTimeout(
                        f"Timed out after {wait}s waiting for the {kind.value} lock",
                        details={"document": kind.value, "lock": str(lock.lock_file)},
                    ) from e
                stack.callback(lock.release)
            yield
