"""
Disposition Ledger — append-only log with a derived status index

The ledger is the sole source of "resolved" status for tab identities.
Entries are never edited or deleted.  The derived index (identity -> most
recent disposition, ordered by timestamp then insertion sequence) is loaded
once from the store and then caught up incrementally: every read and append
first indexes the entries past its cursor, so appends made by other
processes on the same database are seen without re-scanning the log.

Retried appends carrying an idempotency key already seen return the
original entries instead of appending again.  Store failures propagate as
PersistenceError; the in-memory index is only updated after the durable
write succeeded.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence

from attnctl.store import AttentionStore
from attnctl.types import (
    TERMINAL_ACTIONS,
    UNRESOLVED,
    Disposition,
    _parse_iso,
)

logger = logging.getLogger(__name__)


def _annotation_active(d: Disposition, now: datetime) -> bool:
    """An annotation without ``until`` never expires."""
    until = d.payload.get("until")
    if not until:
        return True
    return _parse_iso(until) > now


@dataclass(frozen=True)
class LedgerSnapshot:
    """Immutable view of the ledger index at one point of the append cursor."""

    cursor: int
    latest: Mapping[str, Disposition]
    annotations: Mapping[tuple, Disposition]

    def current_status(self, identity: str) -> str:
        d = self.latest.get(identity)
        return d.action if d is not None else UNRESOLVED

    def is_terminal(self, identity: str) -> bool:
        return self.current_status(identity) in TERMINAL_ACTIONS

    def active_annotation(
        self, identity: str, kind: str, now: Optional[datetime] = None,
    ) -> Optional[Disposition]:
        d = self.annotations.get((identity, kind))
        if d is None:
            return None
        now = now or datetime.now(timezone.utc)
        return d if _annotation_active(d, now) else None

    def summary(self) -> Dict[str, Any]:
        """Counts of current statuses at the snapshot cursor."""
        by_status: Dict[str, int] = defaultdict(int)
        for d in self.latest.values():
            by_status[d.action] += 1
        return {
            "entries": self.cursor,
            "identities": len(self.latest),
            "by_status": dict(sorted(by_status.items())),
        }


class DispositionLedger:
    """
    Append-only disposition log backed by an AttentionStore.

    Appends are sequential under a mutex; reads go through the derived
    index after fetching only the entries past the cursor.
    """

    def __init__(self, store: AttentionStore):
        self._store = store
        self._mutex = threading.Lock()
        self._latest: Dict[str, Disposition] = {}
        self._annotations: Dict[tuple, Disposition] = {}
        self._by_key: Dict[str, List[Disposition]] = {}
        self._session_counts: Dict[str, Dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._cursor = 0
        self._catch_up()
        logger.info(f"DispositionLedger loaded: {self._cursor} entries")

    # -- Index maintenance (call within mutex) --------------------------------

    def _catch_up(self, own: Sequence[Disposition] = ()) -> None:
        """Index entries past the cursor, including other writers' appends.

        ``own`` are entries this ledger just wrote; they are indexed as the
        caller's objects rather than re-read copies.
        """
        mine = {d.seq: d for d in own}
        for d in self._store.read_dispositions(after_seq=self._cursor):
            self._index(mine.get(d.seq, d))

    def _index(self, d: Disposition) -> None:
        prev = self._latest.get(d.tab_identity)
        if prev is None or d.order_key() > prev.order_key():
            self._latest[d.tab_identity] = d
        if d.action == "annotate":
            key = (d.tab_identity, d.payload.get("kind"))
            prev_ann = self._annotations.get(key)
            if prev_ann is None or d.order_key() > prev_ann.order_key():
                self._annotations[key] = d
        if d.idempotency_key:
            self._by_key[d.idempotency_key] = [d]
        elif d.batch_id:
            self._by_key.setdefault(d.batch_id, []).append(d)
        self._session_counts[d.session_id][d.action] += 1
        self._cursor = max(self._cursor, d.seq)

    # -- Writes ----------------------------------------------------------------

    def append(
        self, disposition: Disposition, idempotency_key: Optional[str] = None,
    ) -> Disposition:
        """Durably append one disposition and update the index.

        Raises:
            PersistenceError: If the store write fails (nothing is indexed).
        """
        key = idempotency_key or disposition.idempotency_key
        with self._mutex:
            self._catch_up()
            if key and key in self._by_key:
                logger.info(f"Idempotent replay of disposition key={key}")
                return self._by_key[key][0]
            disposition.idempotency_key = key
            self._store.append_dispositions([disposition])
            self._catch_up([disposition])
        logger.debug(
            f"Disposition #{disposition.seq}: {disposition.action} "
            f"{disposition.tab_identity}"
        )
        return disposition

    def append_batch(
        self, dispositions: List[Disposition], idempotency_key: Optional[str] = None,
    ) -> List[Disposition]:
        """Append several dispositions as one logical, atomic action.

        All entries share a ``batch_id`` (the idempotency key when given);
        either all are durably written or none are.
        """
        if not dispositions:
            return []
        with self._mutex:
            self._catch_up()
            if idempotency_key and idempotency_key in self._by_key:
                logger.info(f"Idempotent replay of batch key={idempotency_key}")
                return list(self._by_key[idempotency_key])
            batch_id = idempotency_key or f"batch-{self._cursor + 1}-{len(dispositions)}"
            for d in dispositions:
                d.batch_id = batch_id
                d.idempotency_key = None
            self._store.append_dispositions(dispositions)
            self._catch_up(dispositions)
        logger.info(f"Disposition batch {batch_id}: {len(dispositions)} entries")
        return dispositions

    # -- Reads -----------------------------------------------------------------

    def current_status(self, identity: str) -> str:
        """Action of the most recent disposition for identity, or 'unresolved'."""
        with self._mutex:
            self._catch_up()
            d = self._latest.get(identity)
        return d.action if d is not None else UNRESOLVED

    def latest(self, identity: str) -> Optional[Disposition]:
        with self._mutex:
            self._catch_up()
            return self._latest.get(identity)

    def replay(self, idempotency_key: str) -> List[Disposition]:
        """Entries first written under idempotency_key (empty if unseen)."""
        with self._mutex:
            self._catch_up()
            return list(self._by_key.get(idempotency_key, []))

    def active_annotation(
        self, identity: str, kind: str, now: Optional[datetime] = None,
    ) -> Optional[Disposition]:
        """Most recent unexpired annotation of a kind (defer, pause, ...)."""
        return self.snapshot().active_annotation(identity, kind, now)

    def stats_for_session(self, session_id: str) -> Dict[str, int]:
        """Counts of dispositions recorded against one session."""
        with self._mutex:
            self._catch_up()
            counts = dict(self._session_counts.get(session_id, {}))
        return {
            "trashed_count": counts.get("trash", 0),
            "completed_count": counts.get("complete", 0),
            "regrouped_count": counts.get("regroup", 0),
            "annotated_count": counts.get("annotate", 0),
        }

    def snapshot(self) -> LedgerSnapshot:
        """Copy of the index, consistent with the current append cursor."""
        with self._mutex:
            self._catch_up()
            return LedgerSnapshot(
                cursor=self._cursor,
                latest=MappingProxyType(dict(self._latest)),
                annotations=MappingProxyType(dict(self._annotations)),
            )

    def summary(self) -> Dict[str, Any]:
        """Aggregate counts of current statuses."""
        with self._mutex:
            self._catch_up()
            by_status: Dict[str, int] = defaultdict(int)
            for d in self._latest.values():
                by_status[d.action] += 1
            return {
                "entries": self._cursor,
                "identities": len(self._latest),
                "by_status": dict(sorted(by_status.items())),
            }

    @property
    def cursor(self) -> int:
        with self._mutex:
            self._catch_up()
            return self._cursor
