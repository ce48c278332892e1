"""
Session Lock Manager — forced-completion (Launchpad) guard

A single global lock: while one session holds it, no other session may
start the forced-completion workflow.  State machine:

    Unlocked --acquire--> Locked(session) --release | force_clear--> Unlocked

The lock is persisted as a singleton row, so it survives restarts and is
shared by every process on the same database.  Transitions are
read-modify-write cycles under an exclusive store transaction.  There is no
implicit expiry: an optional staleness timeout, when configured, is
executed as an audited force_clear, never as a silent transition.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from attnctl.store import AttentionStore, LockRow
from attnctl.types import AttentionError, Lock, _now_iso, _parse_iso

logger = logging.getLogger(__name__)


class AlreadyLocked(AttentionError):
    """The lock is held by a different session."""

    def __init__(self, holder: str):
        super().__init__(
            f"Already locked by session {holder}. Release or force-clear first."
        )
        self.holder = holder


class NotHeld(AttentionError):
    """Release requested by a session that does not hold the lock."""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockManager:
    """Owner of the singleton session lock.

    The persisted row is the authority: every transition re-reads it inside
    an exclusive store transaction, so managers in other processes sharing
    the database file observe each other's locks.
    """

    def __init__(
        self,
        store: AttentionStore,
        stale_after_hours: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._mutex = threading.Lock()
        self._stale_after = (
            timedelta(hours=stale_after_hours) if stale_after_hours else None
        )
        self._clock = clock
        restored = store.read_lock()
        if restored is not None and restored.held:
            logger.info(
                f"Restored session lock held by {restored.session_id} "
                f"since {restored.locked_at}"
            )

    # -- Queries ---------------------------------------------------------------

    def status(self) -> Optional[Lock]:
        """The held lock as currently persisted, or None when unlocked."""
        with self._mutex:
            lock = self._store.read_lock()
        if lock is None or not lock.held:
            return None
        return lock

    # -- Transitions -----------------------------------------------------------

    def acquire(
        self,
        session_id: str,
        resume_state: Optional[Dict[str, Any]] = None,
        items_remaining: int = 0,
    ) -> Lock:
        """Take the lock for session_id.

        Re-acquiring for the holder returns the existing lock unchanged
        (``locked_at`` is preserved).

        Raises:
            AlreadyLocked: If another session holds the lock.
            PersistenceError: If the lock row cannot be written.
        """
        if not session_id:
            raise ValueError("session_id is required")
        with self._mutex, self._store.lock_transaction() as row:
            current = row.current
            if current.held and current.session_id == session_id:
                return copy.deepcopy(current)
            if current.held and self._is_stale(current):
                self._clear(row, "stale", "lock-manager")
            if row.current.held:
                raise AlreadyLocked(row.current.session_id)
            now = _now_iso()
            new_lock = Lock(
                held=True,
                session_id=session_id,
                locked_at=now,
                resume_state=dict(resume_state or {}),
                items_remaining=items_remaining,
                last_activity=now,
            )
            row.write(new_lock)
            logger.info(f"Session lock acquired: {session_id}")
            return copy.deepcopy(new_lock)

    def release(self, session_id: str) -> None:
        """Release the lock held by session_id.

        Raises:
            NotHeld: If no lock is held or another session holds it.
        """
        with self._mutex, self._store.lock_transaction() as row:
            current = row.current
            if not current.held:
                raise NotHeld("No session lock is held")
            if current.session_id != session_id:
                raise NotHeld(
                    f"Lock held by session {current.session_id}, "
                    f"not {session_id}"
                )
            row.write(Lock())
            logger.info(f"Session lock released: {session_id}")

    def force_clear(self, reason: str = "", actor: str = "operator") -> Optional[str]:
        """Unconditionally clear the lock (recovery path, audited).

        Returns the session id that held the lock, or None if it was free.
        An audit event is written even when nothing was held.
        """
        with self._mutex, self._store.lock_transaction() as row:
            return self._clear(row, reason, actor)

    def _clear(self, row: LockRow, reason: str, actor: str) -> Optional[str]:
        """Clear and audit within an open lock transaction."""
        current = row.current
        holder = current.session_id if current.held else None
        details = {
            "holder": holder,
            "locked_at": current.locked_at if holder else None,
            "items_remaining": current.items_remaining if holder else 0,
            "reason": reason,
            "actor": actor,
        }
        if holder:
            row.write(Lock())
        row.log_event("lock_force_clear", holder, details)
        logger.warning(
            f"Session lock force-cleared (holder={holder}, reason={reason!r}, "
            f"actor={actor})"
        )
        return holder

    def _is_stale(self, lock: Lock) -> bool:
        if self._stale_after is None or not lock.last_activity:
            return False
        return self._clock() - _parse_iso(lock.last_activity) > self._stale_after

    # -- Resume state ----------------------------------------------------------

    def update_resume_state(self, session_id: str, patch: Dict[str, Any]) -> Lock:
        """Merge patch into the holder's resume state and stamp activity.

        Raises:
            NotHeld: If session_id does not hold the lock.
        """
        with self._mutex, self._store.lock_transaction() as row:
            updated = self._holder_copy(row, session_id)
            updated.resume_state.update(patch)
            updated.last_activity = _now_iso()
            row.write(updated)
            return copy.deepcopy(updated)

    def update_items_remaining(self, session_id: str, items_remaining: int) -> Lock:
        with self._mutex, self._store.lock_transaction() as row:
            updated = self._holder_copy(row, session_id)
            updated.items_remaining = max(0, int(items_remaining))
            updated.last_activity = _now_iso()
            row.write(updated)
            return copy.deepcopy(updated)

    @staticmethod
    def _holder_copy(row: LockRow, session_id: str) -> Lock:
        if not row.current.held or row.current.session_id != session_id:
            raise NotHeld(f"Session {session_id} does not hold the lock")
        return copy.deepcopy(row.current)
