"""Work sessions recorded on the live store.

A session brackets a stretch of work: ``start`` records a fresh id in
``_meta.activeSession``, ``end`` clears it and may leave a note on the
focus for the next session to pick up. At most one session is open.
"""

import secrets
from collections import Counter
from datetime import datetime, timezone

from taskvault.errors import AlreadyExists
from taskvault.models import LiveStore, TaskStatus


def new_session_id(now: datetime | None = None) -> str:
    """session_YYYYMMDD_HHMMSS_<6 hex>"""
    now = now or datetime.now(timezone.utc)
    return f"session_{now.strftime('%Y%m%d_%H%M%S')}_{secrets.token_hex(3)}"


def start_session(store: LiveStore, session_id: str | None = None) -> str:
    """Open a session and return its id.

    Raises:
        AlreadyExists: A session is already open.
    """
    current = store.meta.active_session
    if current:
        raise AlreadyExists(
            f"Session already active: {current}",
            remedy="End the current session first, or keep working in it",
            details={"sessionId": current},
        )
    store.meta.active_session = session_id or new_session_id()
    return store.meta.active_session


def end_session(store: LiveStore, note: str | None = None) -> str | None:
    """Close the open session, returning its id, or None if none was open."""
    current = store.meta.active_session
    if not current:
        return None
    store.meta.active_session = None
    if note:
        store.focus.session_note = note
    return current


def task_counts(store: LiveStore) -> dict[str, int]:
    counts = Counter(task.status.value for task in store.tasks)
    return {"total": len(store.tasks), **{status.value: counts[status.value] for status in TaskStatus}}
