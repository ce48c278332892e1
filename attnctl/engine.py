"""
Attention Engine — orchestration of passes and user actions

Wires the store, ledger, lock, learner and feedback tracker together and
runs the aggregation pipeline:

    snapshot (sessions + ledger index + theme states)
        -> scan -> generate tasks / cluster themes -> publish

Consistency rules:
- A pass computes on an immutable snapshot taken when it starts; user
  writes landing during the pass are seen by the next pass only.
- Each pass gets a start sequence number; a finished pass is published
  only if no later-started pass was published before it (last-writer-wins
  by start time).  Stale results are returned but never adopted.
- Every task action produces exactly one logical ledger append (a batch
  for release_all); an idempotency key makes retries safe.
- The published result is reused until the ledger moves past the cursor
  it was built from, including appends made by other processes.

Intent proposals and theme intents are derived from the published pass,
leaving out subjects the user already answered.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from attnctl.aggregate import recent_sessions, scan
from attnctl.config import AttentionConfig
from attnctl.enrich import CommandEnricher, Enricher, EnrichmentResult, enrich_candidate
from attnctl.feedback import IntentFeedbackTracker
from attnctl.intents import IntentProposer
from attnctl.interests import load_interests
from attnctl.ledger import DispositionLedger, LedgerSnapshot
from attnctl.lock import LockManager
from attnctl.preferences import PreferenceLearner
from attnctl.similarity import is_web_url, normalize_url
from attnctl.store import AttentionStore
from attnctl.tasks import TaskCandidateGenerator, attention_stats, one_thing
from attnctl.types import (
    AttentionError,
    CorrectionRecord,
    Disposition,
    IntentProposal,
    RecurrenceSignal,
    Session,
    TaskCandidate,
    ThemeProposal,
    _now_iso,
)
from attnctl.themes import ThemeClusterer, theme_intent

logger = logging.getLogger(__name__)

TASK_ACTIONS: Dict[str, set] = {
    "ghost_tab": {"engage", "release", "defer"},
    "project_revival": {"engage", "pause", "defer"},
    "tab_bankruptcy": {"release_all", "defer"},
}


def _task_type(task_id: str) -> str:
    """Candidate type from its id prefix (ghost-tab-, project-revival-, tab-bankruptcy-)."""
    for task_type in TASK_ACTIONS:
        if task_id.startswith(task_type.replace("_", "-") + "-"):
            return task_type
    return "unknown"


class UnknownSubject(AttentionError):
    """No task or theme with this id in the current results."""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Pass data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PassSnapshot:
    """Inputs of one aggregation pass, frozen at its start."""

    seq: int
    started_at: datetime
    sessions: Tuple[Session, ...]
    ledger: LedgerSnapshot
    theme_states: Tuple[Dict[str, Any], ...]


@dataclass
class PassResult:
    """Outputs of one aggregation pass."""

    seq: int
    started_at: str
    ledger_cursor: int
    signals: List[RecurrenceSignal] = field(default_factory=list)
    candidates: List[TaskCandidate] = field(default_factory=list)
    themes: List[ThemeProposal] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)
    published: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "started_at": self.started_at,
            "ledger_cursor": self.ledger_cursor,
            "signals": [s.to_dict() for s in self.signals],
            "candidates": [c.to_dict() for c in self.candidates],
            "themes": [t.to_dict() for t in self.themes],
            "stats": self.stats,
            "published": self.published,
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class AttentionEngine:
    """Request-driven service facade over the attention components."""

    def __init__(
        self,
        store: AttentionStore,
        config: Optional[AttentionConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.config = config or AttentionConfig()
        self._clock = clock
        self.ledger = DispositionLedger(store)
        self.locks = LockManager(store, self.config.lock.stale_after_hours, clock=clock)
        self.learner = PreferenceLearner(store, self.config.preferences)
        self.feedback = IntentFeedbackTracker(store)
        self.clusterer = ThemeClusterer(self.config.themes)
        self.generator = TaskCandidateGenerator(self.config.tasks)
        self.intents = IntentProposer(self.config.intents)
        self._seq = itertools.count(1)
        self._pass_mutex = threading.Lock()
        self._published: Optional[PassResult] = None

    @classmethod
    def open(cls, config: AttentionConfig, db_path: Optional[str] = None) -> AttentionEngine:
        """Open the engine on the configured (or given) SQLite database."""
        store = AttentionStore(db_path or config.store.db_path, wal_mode=config.store.wal_mode)
        return cls(store, config)

    def close(self) -> None:
        self.store.close()

    # -- Capture ---------------------------------------------------------------

    def capture(self, session: Session) -> bool:
        """Record a session snapshot. Returns False if already captured."""
        return self.store.add_session(session)

    # -- Passes ----------------------------------------------------------------

    def start_pass(self) -> PassSnapshot:
        """Assign a start sequence and freeze the inputs of a new pass."""
        with self._pass_mutex:
            seq = next(self._seq)
        return PassSnapshot(
            seq=seq,
            started_at=self._clock(),
            sessions=tuple(self.store.list_sessions()),
            ledger=self.ledger.snapshot(),
            theme_states=tuple(self.store.list_theme_states()),
        )

    def compute(self, snap: PassSnapshot) -> PassResult:
        """Pure computation over a snapshot (no store access except interests)."""
        cfg = self.config
        signals = scan(
            snap.sessions,
            snap.ledger,
            cfg.aggregate.window_size,
            co_occurring_cap=cfg.aggregate.co_occurring_cap,
            min_sessions=cfg.aggregate.min_sessions,
            ignored_domains=cfg.aggregate.ignored_domains,
            distinguishing_keys=cfg.aggregate.distinguishing_query_keys,
        )
        candidates = self.generator.generate(
            signals, snap.sessions, snap.ledger, now=snap.started_at,
        )
        themes = self.clusterer.cluster(
            signals,
            prior=snap.theme_states,
            interests=load_interests(cfg.themes.interests_dir),
        )
        stats = attention_stats(signals, snap.sessions, snap.ledger, now=snap.started_at)
        return PassResult(
            seq=snap.seq,
            started_at=snap.started_at.isoformat(),
            ledger_cursor=snap.ledger.cursor,
            signals=signals,
            candidates=candidates,
            themes=themes,
            stats=stats,
        )

    def complete_pass(self, snap: PassSnapshot) -> PassResult:
        """Compute and publish unless a later-started pass already published."""
        result = self.compute(snap)
        with self._pass_mutex:
            if self._published is not None and self._published.seq > result.seq:
                logger.info(
                    f"Discarding stale pass #{result.seq} "
                    f"(pass #{self._published.seq} already published)"
                )
                return result
            result.published = True
            self._published = result
        for theme in result.themes:
            self.store.record_theme_detection(
                theme.theme_id, theme.label, theme.member_identities,
            )
        logger.info(
            f"Pass #{result.seq}: {len(result.signals)} signals, "
            f"{len(result.candidates)} candidates, {len(result.themes)} themes"
        )
        return result

    def run_pass(self) -> PassResult:
        return self.complete_pass(self.start_pass())

    def latest(self, refresh: bool = False) -> PassResult:
        """Most recently published result.

        A new pass runs when none was published yet, on refresh, or when
        the ledger has advanced past the published result's cursor.
        """
        with self._pass_mutex:
            current = self._published
        if current is None or refresh or current.ledger_cursor != self.ledger.cursor:
            return self.run_pass()
        return current

    # -- Tasks -----------------------------------------------------------------

    def candidates(self, refresh: bool = False) -> List[TaskCandidate]:
        return list(self.latest(refresh).candidates)

    def top_task(self, refresh: bool = False) -> Optional[TaskCandidate]:
        return one_thing(self.latest(refresh).candidates)

    def _find_task(self, task_id: str) -> TaskCandidate:
        # Ids from the last published result stay actionable after a write
        with self._pass_mutex:
            shown = self._published
        pools = [shown.candidates] if shown is not None else []
        pools.append(self.latest().candidates)
        for pool in pools:
            for c in pool:
                if c.id == task_id:
                    return c
        raise UnknownSubject(f"Unknown task: {task_id}")

    def task_action(
        self,
        task_id: str,
        action: str,
        idempotency_key: Optional[str] = None,
        hours: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Apply an action to a task candidate as one logical ledger append.

        ghost_tab:        engage -> complete, release -> trash, defer
        project_revival:  engage (hides it for a day), pause, defer
        tab_bankruptcy:   release_all -> one batch of trash, defer
        """
        if idempotency_key:
            replayed = self.ledger.replay(idempotency_key)
            # The task may have left the candidate list after the first append
            if replayed and replayed[0].payload.get("task_id") == task_id:
                logger.info(f"Task {task_id}: replay of key={idempotency_key}")
                return {
                    "task_id": task_id,
                    "type": _task_type(task_id),
                    "action": action,
                    "dispositions": [d.to_dict() for d in replayed],
                }
        task = self._find_task(task_id)
        allowed = TASK_ACTIONS[task.type]
        if action not in allowed:
            raise ValueError(
                f"Action {action!r} not valid for {task.type} "
                f"(expected one of {sorted(allowed)})"
            )
        now = self._clock()
        tcfg = self.config.tasks
        base = {"via": "task", "task_id": task.id}

        def annotate(kind: str, delta: timedelta) -> Disposition:
            return Disposition(
                tab_identity=task.subject_identity,
                session_id=task.source_session_id,
                action="annotate",
                payload={**base, "kind": kind, "until": (now + delta).isoformat()},
                timestamp=now.isoformat(),
            )

        terminal = {"engage": "complete", "release": "trash"}.get(action)
        current = self.ledger.latest(task.subject_identity)
        if (
            task.type == "ghost_tab" and terminal and idempotency_key is None
            and current is not None and current.action == terminal
        ):
            # Retried without a key after the first append landed
            written = [current]
        elif action == "release_all":
            batch = [
                Disposition(
                    tab_identity=ident, session_id=task.source_session_id,
                    action="trash", payload=dict(base), timestamp=now.isoformat(),
                )
                for ident in task.members
            ]
            written = self.ledger.append_batch(batch, idempotency_key)
        else:
            if action == "engage" and task.type == "ghost_tab":
                d = Disposition(
                    tab_identity=task.subject_identity,
                    session_id=task.source_session_id,
                    action="complete", payload=dict(base), timestamp=now.isoformat(),
                )
            elif action == "release":
                d = Disposition(
                    tab_identity=task.subject_identity,
                    session_id=task.source_session_id,
                    action="trash", payload=dict(base), timestamp=now.isoformat(),
                )
            elif action == "engage":
                d = annotate("engage", timedelta(hours=tcfg.default_defer_hours))
            elif action == "pause":
                d = annotate("pause", timedelta(days=tcfg.pause_days))
            else:
                d = annotate("defer", timedelta(hours=hours or tcfg.default_defer_hours))
            written = [self.ledger.append(d, idempotency_key)]
        logger.info(f"Task {task.id}: {action} ({len(written)} dispositions)")
        return {
            "task_id": task.id,
            "type": task.type,
            "action": action,
            "dispositions": [d.to_dict() for d in written],
        }

    # -- Dispositions and corrections -------------------------------------------

    def dispose(
        self,
        target: str,
        action: str,
        session_id: str = "",
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Disposition:
        """Append a disposition for a URL (normalized) or raw identity.

        A regroup carrying ``{"from", "to"}`` also records a correction.
        """
        payload = dict(payload or {})
        identity = normalize_url(target) if is_web_url(target) else target
        new = Disposition(
            tab_identity=identity, session_id=session_id,
            action=action, payload=payload,
        )
        d = self.ledger.append(new, idempotency_key)
        # A replayed key returns the original entry; record the correction once
        if action == "regroup" and payload.get("to") and d is new:
            self.store.append_correction(CorrectionRecord(
                url=target,
                from_category=str(payload.get("from") or ""),
                to_category=str(payload["to"]),
                timestamp=d.timestamp,
            ))
        return d

    def record_correction(self, record: CorrectionRecord) -> CorrectionRecord:
        return self.store.append_correction(record)

    def propose_preferences(self):
        """Run the learner over every recorded correction."""
        return self.learner.propose(self.store.read_corrections())

    # -- Themes ----------------------------------------------------------------

    def themes(self, refresh: bool = False) -> List[ThemeProposal]:
        """Published themes with their current stored status and label.

        Corrections the user gave on member tabs are attached as
        ``user_corrections``.
        """
        states = {s["theme_id"]: s for s in self.store.list_theme_states()}
        corrections = self._corrected_intents()
        out = []
        for theme in self.latest(refresh).themes:
            state = states.get(theme.theme_id)
            view = ThemeProposal(**theme.to_dict())
            if state is not None:
                view.status = state["status"]
                view.label = state["label"] or view.label
            view.candidate_intent = theme_intent(view)
            view.user_corrections = [
                c for ident in view.member_identities for c in corrections.get(ident, [])
            ]
            out.append(view)
        return out

    def _corrected_intents(self) -> Dict[str, List[str]]:
        """Corrected values of 'correct' feedback, per subject."""
        out: Dict[str, List[str]] = {}
        for subject, entries in self.feedback.resolved().items():
            values = [
                e["corrected_value"] for e in entries
                if e["action"] == "correct" and e.get("corrected_value")
            ]
            if values:
                out[subject] = values
        return out

    # -- Intents ---------------------------------------------------------------

    def intent_proposals(
        self, limit: Optional[int] = None, refresh: bool = False,
    ) -> List[IntentProposal]:
        """Hypotheses for recurring tabs that have no feedback yet."""
        result = self.latest(refresh)
        window = recent_sessions(
            self.store.list_sessions(), self.config.aggregate.window_size,
        )
        return self.intents.propose(
            result.signals,
            window,
            answered=set(self.feedback.resolved()),
            distinguishing_keys=self.config.aggregate.distinguishing_query_keys,
            limit=limit,
        )

    def theme_history(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Stored theme states, including themes no longer detected."""
        return self.store.list_theme_states(status)

    def theme_feedback(
        self, theme_id: str, action: str, value: Optional[str] = None,
        occurrence: str = "",
    ) -> ThemeProposal:
        theme = next((t for t in self.themes() if t.theme_id == theme_id), None)
        if theme is None:
            state = self.store.read_theme_state(theme_id)
            if state is None:
                raise UnknownSubject(f"Unknown theme: {theme_id}")
            theme = ThemeProposal(
                theme_id=theme_id, label=state["label"], status=state["status"],
                member_identities=state["member_identities"],
            )
        return self.feedback.theme_action(theme, action, value, occurrence)

    # -- Enrichment ------------------------------------------------------------

    def default_enricher(self) -> Optional[Enricher]:
        cmd = self.config.enrich.llm_cmd
        return CommandEnricher(cmd) if cmd else None

    async def enrich_top(self, enricher: Optional[Enricher] = None) -> Optional[EnrichmentResult]:
        """Enrich the One Thing candidate (fallback text on failure or timeout)."""
        top = self.top_task()
        if top is None:
            return None
        return await enrich_candidate(
            enricher or self.default_enricher(), top, timeout=self.config.enrich.timeout_s,
        )

    # -- Stats -----------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        lock = self.locks.status()
        return {
            "attention": self.latest().stats,
            "feedback": self.feedback.stats(),
            "lock": lock.to_dict() if lock else None,
            "rules": {
                "pending": len(self.learner.list_rules("pending")),
                "approved": len(self.learner.approved_rules()),
                "rejected": len(self.learner.list_rules("rejected")),
            },
            "store": self.store.stats(),
            "generated_at": _now_iso(),
        }
