"""
Attention Store — SQLite Persistent Backend

Tables:
    sessions          - Captured session snapshots (append-only)
    dispositions      - User actions on tab identities (append-only ledger)
    corrections       - Classification overrides (append-only)
    intent_feedback   - Resolving feedback on proposals (append-only)
    preference_rules  - Learned rules (upsert by id)
    theme_states      - Theme status/label history (upsert by theme id)
    lock_state        - Singleton session lock (upsert, one row)
    events            - Audit log (append-only)

Thread safety: uses sqlite3 check_same_thread=False with explicit serialization.
Every write commits before returning; any sqlite failure on a write surfaces
as PersistenceError (no retries, no partial success).

The store doubles as the session source of the engine: anything exposing
``list_sessions()`` (newest first) and ``get_session(id)`` can replace it.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from attnctl.types import (
    AttentionError,
    CorrectionRecord,
    Disposition,
    IntentFeedback,
    Lock,
    PreferenceRule,
    Session,
    _generate_id,
    _now_iso,
    _parse_iso,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class PersistenceError(AttentionError):
    """A durable write failed; the action was not recorded."""

    pass


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id           TEXT PRIMARY KEY,
    timestamp    TEXT NOT NULL,
    ts_utc       TEXT NOT NULL,                   -- normalized for ordering
    snapshot     TEXT NOT NULL,                   -- full JSON of the session
    captured_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS dispositions (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    tab_identity    TEXT NOT NULL,
    session_id      TEXT NOT NULL DEFAULT '',
    action          TEXT NOT NULL CHECK(action IN ('trash','complete','regroup','annotate')),
    payload_json    TEXT NOT NULL DEFAULT '{}',
    timestamp       TEXT NOT NULL,
    idempotency_key TEXT UNIQUE,
    batch_id        TEXT
);

CREATE TABLE IF NOT EXISTS corrections (
    seq           INTEGER PRIMARY KEY AUTOINCREMENT,
    domain        TEXT NOT NULL,
    url           TEXT NOT NULL DEFAULT '',
    from_category TEXT NOT NULL DEFAULT '',
    to_category   TEXT NOT NULL,
    timestamp     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS intent_feedback (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id      TEXT NOT NULL,
    occurrence      TEXT NOT NULL DEFAULT '',
    action          TEXT NOT NULL,
    corrected_value TEXT,
    timestamp       TEXT NOT NULL,
    UNIQUE (subject_id, occurrence)
);

CREATE TABLE IF NOT EXISTS preference_rules (
    id          TEXT PRIMARY KEY,
    domain      TEXT NOT NULL,
    state       TEXT NOT NULL CHECK(state IN ('pending','approved','rejected')),
    rule_json   TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS theme_states (
    theme_id     TEXT PRIMARY KEY,
    label        TEXT NOT NULL DEFAULT '',
    status       TEXT NOT NULL CHECK(status IN ('open','saved','archived','watching')),
    members_json TEXT NOT NULL DEFAULT '[]',
    updated_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS lock_state (
    id          INTEGER PRIMARY KEY CHECK(id = 1),
    lock_json   TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
    id            TEXT PRIMARY KEY,
    action        TEXT NOT NULL,
    subject_id    TEXT,
    details_json  TEXT NOT NULL DEFAULT '{}',
    timestamp     TEXT NOT NULL
);

-- Schema metadata for forward compatibility
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_ts ON sessions(ts_utc);
CREATE INDEX IF NOT EXISTS idx_disp_identity ON dispositions(tab_identity);
CREATE INDEX IF NOT EXISTS idx_disp_session ON dispositions(session_id);
CREATE INDEX IF NOT EXISTS idx_corr_domain ON corrections(domain);
CREATE INDEX IF NOT EXISTS idx_rules_domain ON preference_rules(domain);
CREATE INDEX IF NOT EXISTS idx_events_action ON events(action);
"""


class LockRow:
    """The lock row inside an open lock_transaction (connection already held)."""

    def __init__(self, store: AttentionStore):
        self._store = store
        row = store._conn.execute(
            "SELECT lock_json FROM lock_state WHERE id=1"
        ).fetchone()
        self.current = Lock.from_dict(json.loads(row["lock_json"])) if row else Lock()

    def write(self, lock: Lock) -> None:
        self._store._conn.execute(
            """INSERT OR REPLACE INTO lock_state (id, lock_json, updated_at)
               VALUES (1, ?, ?)""",
            (json.dumps(lock.to_dict()), _now_iso()),
        )
        self.current = lock

    def log_event(
        self, action: str, subject_id: Optional[str], details: Dict[str, Any],
    ) -> None:
        self._store._log_event(action, subject_id, details)


class AttentionStore:
    """
    SQLite-backed persistent store for sessions and the attention ledgers.

    Thread-safe via explicit lock. Append-only tables expose no update or
    delete path.
    """

    def __init__(self, db_path: str = ":memory:", wal_mode: bool = True):
        """Initialize the store and create the schema if needed.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'attnctl')",
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_at', datetime('now'))",
        )
        self._conn.commit()
        logger.info(f"AttentionStore initialized: {db_path}")

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    @contextmanager
    def _writing(self, op: str) -> Iterator[sqlite3.Connection]:
        """Serialize a write, commit on success, rollback + PersistenceError on failure."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as e:
                try:
                    self._conn.rollback()
                except sqlite3.Error:
                    logger.error(f"{op}: rollback failed after {e}")
                logger.error(f"{op} failed: {e}")
                raise PersistenceError(f"{op} failed: {e}") from e
            except Exception:
                self._conn.rollback()
                raise

    # -- Sessions ------------------------------------------------------------

    def add_session(self, session: Session) -> bool:
        """Record a captured session. Returns False if the id already exists."""
        with self._writing("add_session") as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO sessions
                   (id, timestamp, ts_utc, snapshot, captured_at)
                   VALUES (?,?,?,?,?)""",
                (
                    session.id, session.timestamp,
                    _parse_iso(session.timestamp).isoformat(),
                    session.to_json(), _now_iso(),
                ),
            )
            inserted = cur.rowcount == 1
            if inserted:
                self._log_event("capture", session.id, {"tabs": len(session.tabs)})
        return inserted

    def list_sessions(self, limit: Optional[int] = None) -> List[Session]:
        """Sessions ordered newest-first (ties by id, descending)."""
        with self._lock:
            sql = "SELECT snapshot FROM sessions ORDER BY ts_utc DESC, id DESC"
            params: list = []
            if limit is not None:
                sql += " LIMIT ?"
                params.append(limit)
            rows = self._conn.execute(sql, params).fetchall()
        return [Session.from_dict(json.loads(r["snapshot"])) for r in rows]

    def get_session(self, session_id: str) -> Optional[Session]:
        """Read a single session by ID."""
        with self._lock:
            row = self._conn.execute(
                "SELECT snapshot FROM sessions WHERE id=?", (session_id,)
            ).fetchone()
        if row is None:
            return None
        return Session.from_dict(json.loads(row["snapshot"]))

    # -- Dispositions (append-only) ------------------------------------------

    def append_dispositions(self, dispositions: List[Disposition]) -> List[Disposition]:
        """Durably append dispositions in one transaction; assigns ``seq``."""
        with self._writing("append_dispositions") as conn:
            for d in dispositions:
                cur = conn.execute(
                    """INSERT INTO dispositions
                       (tab_identity, session_id, action, payload_json,
                        timestamp, idempotency_key, batch_id)
                       VALUES (?,?,?,?,?,?,?)""",
                    (
                        d.tab_identity, d.session_id, d.action,
                        json.dumps(d.payload), d.timestamp,
                        d.idempotency_key, d.batch_id,
                    ),
                )
                d.seq = cur.lastrowid
        return dispositions

    def read_dispositions(self, after_seq: int = 0) -> List[Disposition]:
        """Dispositions with seq > after_seq, in insertion order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM dispositions WHERE seq > ? ORDER BY seq", (after_seq,)
            ).fetchall()
        return [
            Disposition(
                tab_identity=r["tab_identity"], session_id=r["session_id"],
                action=r["action"], payload=json.loads(r["payload_json"]),
                timestamp=r["timestamp"], seq=r["seq"],
                idempotency_key=r["idempotency_key"], batch_id=r["batch_id"],
            )
            for r in rows
        ]

    # -- Corrections (append-only) -------------------------------------------

    def append_correction(self, record: CorrectionRecord) -> CorrectionRecord:
        """Durably append a classification correction."""
        with self._writing("append_correction") as conn:
            conn.execute(
                """INSERT INTO corrections
                   (domain, url, from_category, to_category, timestamp)
                   VALUES (?,?,?,?,?)""",
                (
                    record.domain, record.url, record.from_category,
                    record.to_category, record.timestamp,
                ),
            )
        return record

    def read_corrections(self, domain: Optional[str] = None) -> List[CorrectionRecord]:
        """Corrections in insertion order, optionally for one domain."""
        with self._lock:
            if domain:
                rows = self._conn.execute(
                    "SELECT * FROM corrections WHERE domain=? ORDER BY seq", (domain,)
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM corrections ORDER BY seq"
                ).fetchall()
        return [
            CorrectionRecord(
                domain=r["domain"], url=r["url"],
                from_category=r["from_category"], to_category=r["to_category"],
                timestamp=r["timestamp"],
            )
            for r in rows
        ]

    # -- Intent feedback (append-only) ---------------------------------------

    def append_feedback(self, fb: IntentFeedback) -> bool:
        """Append feedback. Returns False if (subject, occurrence) already exists."""
        with self._writing("append_feedback") as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO intent_feedback
                   (subject_id, occurrence, action, corrected_value, timestamp)
                   VALUES (?,?,?,?,?)""",
                (
                    fb.subject_id, fb.occurrence, fb.action,
                    fb.corrected_value, fb.timestamp,
                ),
            )
            return cur.rowcount == 1

    def read_feedback(self) -> List[IntentFeedback]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM intent_feedback ORDER BY seq"
            ).fetchall()
        return [
            IntentFeedback(
                subject_id=r["subject_id"], occurrence=r["occurrence"],
                action=r["action"], corrected_value=r["corrected_value"],
                timestamp=r["timestamp"],
            )
            for r in rows
        ]

    # -- Preference rules (upsert) -------------------------------------------

    def upsert_rule(self, rule: PreferenceRule) -> PreferenceRule:
        """Insert or replace a preference rule by id."""
        with self._writing("upsert_rule") as conn:
            conn.execute(
                """INSERT OR REPLACE INTO preference_rules
                   (id, domain, state, rule_json, updated_at)
                   VALUES (?,?,?,?,?)""",
                (
                    rule.id, rule.domain, rule.state,
                    json.dumps(rule.to_dict()), _now_iso(),
                ),
            )
        return rule

    def read_rule(self, rule_id: str) -> Optional[PreferenceRule]:
        with self._lock:
            row = self._conn.execute(
                "SELECT rule_json FROM preference_rules WHERE id=?", (rule_id,)
            ).fetchone()
        if row is None:
            return None
        return PreferenceRule.from_dict(json.loads(row["rule_json"]))

    def list_rules(self, state: Optional[str] = None) -> List[PreferenceRule]:
        """Rules ordered by domain, then id."""
        with self._lock:
            if state:
                rows = self._conn.execute(
                    "SELECT rule_json FROM preference_rules WHERE state=? "
                    "ORDER BY domain, id", (state,)
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT rule_json FROM preference_rules ORDER BY domain, id"
                ).fetchall()
        return [PreferenceRule.from_dict(json.loads(r["rule_json"])) for r in rows]

    # -- Theme states (upsert) -----------------------------------------------

    def upsert_theme_state(
        self, theme_id: str, status: str, label: str = "",
        members: Optional[List[str]] = None,
    ) -> None:
        """Insert or replace the user-facing state of a theme."""
        with self._writing("upsert_theme_state") as conn:
            conn.execute(
                """INSERT OR REPLACE INTO theme_states
                   (theme_id, label, status, members_json, updated_at)
                   VALUES (?,?,?,?,?)""",
                (theme_id, label, status, json.dumps(sorted(members or [])), _now_iso()),
            )

    def record_theme_detection(
        self, theme_id: str, label: str, members: List[str],
    ) -> None:
        """Register a detected theme; an existing row keeps its status and label."""
        with self._writing("record_theme_detection") as conn:
            conn.execute(
                """INSERT INTO theme_states
                   (theme_id, label, status, members_json, updated_at)
                   VALUES (?,?,'open',?,?)
                   ON CONFLICT(theme_id) DO UPDATE SET
                       members_json=excluded.members_json,
                       updated_at=excluded.updated_at""",
                (theme_id, label, json.dumps(sorted(members)), _now_iso()),
            )

    def read_theme_state(self, theme_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM theme_states WHERE theme_id=?", (theme_id,)
            ).fetchone()
        return self._theme_row(row) if row is not None else None

    def list_theme_states(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Stored theme states, including themes no longer detected."""
        with self._lock:
            if status:
                rows = self._conn.execute(
                    "SELECT * FROM theme_states WHERE status=? ORDER BY theme_id",
                    (status,),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM theme_states ORDER BY theme_id"
                ).fetchall()
        return [self._theme_row(r) for r in rows]

    @staticmethod
    def _theme_row(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "theme_id": row["theme_id"],
            "label": row["label"],
            "status": row["status"],
            "member_identities": json.loads(row["members_json"]),
            "updated_at": row["updated_at"],
        }

    # -- Lock (singleton) ----------------------------------------------------

    def read_lock(self) -> Optional[Lock]:
        with self._lock:
            row = self._conn.execute(
                "SELECT lock_json FROM lock_state WHERE id=1"
            ).fetchone()
        if row is None:
            return None
        return Lock.from_dict(json.loads(row["lock_json"]))

    def write_lock(self, lock: Lock) -> None:
        """Persist the singleton lock row (held or cleared)."""
        with self._writing("write_lock") as conn:
            conn.execute(
                """INSERT OR REPLACE INTO lock_state (id, lock_json, updated_at)
                   VALUES (1, ?, ?)""",
                (json.dumps(lock.to_dict()), _now_iso()),
            )

    @contextmanager
    def lock_transaction(self) -> Iterator[LockRow]:
        """Exclusive read-modify-write of the lock row.

        Runs under ``BEGIN IMMEDIATE``: other connections on the same file
        (other processes included) wait for the commit, so the row read at
        entry is still current when it is written.  Any exception rolls the
        transaction back and propagates.
        """
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                yield LockRow(self)
                self._conn.commit()
            except sqlite3.Error as e:
                if self._conn.in_transaction:
                    self._conn.rollback()
                logger.error(f"lock_transaction failed: {e}")
                raise PersistenceError(f"lock_transaction failed: {e}") from e
            except Exception:
                if self._conn.in_transaction:
                    self._conn.rollback()
                raise

    # -- Events (audit log) --------------------------------------------------

    def log_event(
        self, action: str, subject_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Write a standalone audit event."""
        with self._writing("log_event"):
            self._log_event(action, subject_id, details or {})

    def read_events(
        self, action: Optional[str] = None, limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Query audit events, newest first."""
        with self._lock:
            if action:
                rows = self._conn.execute(
                    "SELECT * FROM events WHERE action=? "
                    "ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                    (action, limit),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM events ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        return [
            {
                "id": r["id"], "action": r["action"], "subject_id": r["subject_id"],
                "details": json.loads(r["details_json"]), "timestamp": r["timestamp"],
            }
            for r in rows
        ]

    def _log_event(
        self, action: str, subject_id: Optional[str], details: Dict[str, Any],
    ) -> None:
        """Write an audit event (must be called within lock)."""
        self._conn.execute(
            """INSERT INTO events (id, action, subject_id, details_json, timestamp)
               VALUES (?,?,?,?,?)""",
            (_generate_id("EVT"), action, subject_id, json.dumps(details), _now_iso()),
        )

    # -- Stats ---------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Row counts per table plus rule states."""
        with self._lock:
            out: Dict[str, Any] = {}
            for table in (
                "sessions", "dispositions", "corrections", "intent_feedback",
                "preference_rules", "theme_states", "events",
            ):
                out[table] = self._conn.execute(
                    f"SELECT COUNT(*) AS n FROM {table}"
                ).fetchone()["n"]
            out["rules_by_state"] = {
                r["state"]: r["n"]
                for r in self._conn.execute(
                    "SELECT state, COUNT(*) AS n FROM preference_rules GROUP BY state"
                ).fetchall()
            }
            out["db_path"] = self._db_path
        return out
