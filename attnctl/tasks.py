"""
Task Candidate Generator — ranked attention tasks ("One Thing")

Converts recurrence signals and project activity into typed candidates:

    ghost_tab        score = recurrence_count * ln(1 + distinct_days)
    project_revival  score = days_since_active * ln(1 + total_tabs)
                     (projects idle for more than dormancy_days)
    tab_bankruptcy   score = affected_count
                     (unresolved recurring tabs above bankruptcy_ceiling)

Candidates are ranked by score desc, then last_seen desc, then id.
Subjects carrying an active ``defer`` annotation are skipped, as are
projects with an active ``pause`` or a recent ``engage``.  Identities
with a terminal disposition never reach the generator (the aggregator
already drops them).

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from attnctl.aggregate import project_activity, project_status
from attnctl.config import TaskConfig
from attnctl.types import (
    TERMINAL_ACTIONS,
    RecurrenceSignal,
    Session,
    TaskCandidate,
    _parse_iso,
    short_hash,
)

logger = logging.getLogger(__name__)

BANKRUPTCY_SUBJECT = "tab-bankruptcy"


def project_subject(name: str) -> str:
    """Ledger identity used for project-level dispositions."""
    slug = re.sub(r"\s+", "-", name.strip().lower())
    return f"project:{slug}"


def rank(candidates: Sequence[TaskCandidate]) -> List[TaskCandidate]:
    """Order by score desc, last_seen desc (most recent first), id asc."""
    def key(c: TaskCandidate):
        seen = _parse_iso(c.last_seen).timestamp() if c.last_seen else 0.0
        return (-c.score, -seen, c.id)
    return sorted(candidates, key=key)


def one_thing(candidates: Sequence[TaskCandidate]) -> Optional[TaskCandidate]:
    """The single top-ranked candidate, or None."""
    ranked = rank(candidates)
    return ranked[0] if ranked else None


class TaskCandidateGenerator:
    """Builds ranked task candidates from one aggregation snapshot."""

    def __init__(self, config: Optional[TaskConfig] = None):
        self.config = config or TaskConfig()

    def generate(
        self,
        signals: Sequence[RecurrenceSignal],
        sessions: Sequence[Session],
        ledger,
        now: Optional[datetime] = None,
    ) -> List[TaskCandidate]:
        """Generate and rank candidates.

        Args:
            signals: Output of aggregate.scan() over the same snapshot.
            sessions: Sessions of the snapshot (for project activity).
            ledger: DispositionLedger or LedgerSnapshot.
            now: Reference time (defaults to current UTC time).
        """
        now = now or datetime.now(timezone.utc)
        candidates: List[TaskCandidate] = []
        candidates.extend(self.ghost_tabs(signals, ledger, now))
        candidates.extend(self.project_revivals(sessions, ledger, now))
        bankruptcy = self.tab_bankruptcy(signals, ledger, now)
        if bankruptcy is not None:
            candidates.append(bankruptcy)
        ranked = rank(candidates)[:self.config.max_candidates]
        logger.debug(
            f"generate: {len(signals)} signals -> {len(candidates)} candidates"
        )
        return ranked

    # -- ghost_tab -------------------------------------------------------------

    def ghost_tabs(
        self, signals: Sequence[RecurrenceSignal], ledger, now: datetime,
    ) -> List[TaskCandidate]:
        out: List[TaskCandidate] = []
        for s in signals:
            if s.recurrence_count < self.config.ghost_min_occurrences:
                continue
            if ledger.current_status(s.tab_identity) in TERMINAL_ACTIONS:
                continue
            if ledger.active_annotation(s.tab_identity, "defer", now) is not None:
                continue
            out.append(TaskCandidate(
                id=f"ghost-tab-{short_hash(s.tab_identity)}",
                type="ghost_tab",
                subject_identity=s.tab_identity,
                recurrence_count=s.recurrence_count,
                distinct_days=s.distinct_days,
                affected_count=1,
                days_since_active=_days_between(s.last_seen, now),
                score=round(s.recurrence_count * math.log(1 + s.distinct_days), 6),
                source_session_id=s.last_session_id,
                last_seen=s.last_seen,
                title=s.title or s.tab_identity,
                members=[s.tab_identity],
            ))
        return out

    # -- project_revival -------------------------------------------------------

    def project_revivals(
        self, sessions: Sequence[Session], ledger, now: datetime,
    ) -> List[TaskCandidate]:
        out: List[TaskCandidate] = []
        for name, info in project_activity(sessions).items():
            days = _days_between(info["last_active"], now)
            if days <= self.config.dormancy_days:
                continue
            subject = project_subject(name)
            if ledger.current_status(subject) in TERMINAL_ACTIONS:
                continue
            if any(
                ledger.active_annotation(subject, kind, now) is not None
                for kind in ("pause", "defer", "engage")
            ):
                continue
            size_factor = math.log(1 + info["total_tabs"])
            out.append(TaskCandidate(
                id=f"project-revival-{subject.split(':', 1)[1]}",
                type="project_revival",
                subject_identity=subject,
                recurrence_count=info["total_sessions"],
                affected_count=info["total_tabs"],
                days_since_active=days,
                score=round(days * size_factor, 6),
                source_session_id=info["last_session_id"],
                last_seen=info["last_active"],
                title=name,
                members=list(info["members"]),
            ))
        return out

    # -- tab_bankruptcy --------------------------------------------------------

    def tab_bankruptcy(
        self, signals: Sequence[RecurrenceSignal], ledger, now: datetime,
    ) -> Optional[TaskCandidate]:
        """One candidate for the whole backlog when it exceeds the ceiling."""
        affected = sorted(s.tab_identity for s in signals)
        if len(affected) <= self.config.bankruptcy_ceiling:
            return None
        if ledger.active_annotation(BANKRUPTCY_SUBJECT, "defer", now) is not None:
            return None
        last_seen = max(signals, key=lambda s: _parse_iso(s.last_seen)).last_seen
        oldest = min(signals, key=lambda s: _parse_iso(s.first_seen or s.last_seen))
        stale_days = [
            _days_between(s.first_seen or s.last_seen, now) for s in signals
        ]
        return TaskCandidate(
            id=f"{BANKRUPTCY_SUBJECT}-{short_hash('|'.join(affected))}",
            type="tab_bankruptcy",
            subject_identity=BANKRUPTCY_SUBJECT,
            affected_count=len(affected),
            days_since_active=round(sum(stale_days) / len(stale_days)),
            score=float(len(affected)),
            source_session_id=oldest.last_session_id,
            last_seen=last_seen,
            title=f"{len(affected)} recurring tabs left unresolved",
            members=affected,
        )


def _days_between(ts: str, now: datetime) -> int:
    """Whole days from ts to now (never negative)."""
    if not ts:
        return 0
    return max(0, (now - _parse_iso(ts)).days)


def attention_stats(
    signals: Sequence[RecurrenceSignal],
    sessions: Sequence[Session],
    ledger,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Aggregate view of attention patterns for one snapshot."""
    now = now or datetime.now(timezone.utc)
    identities = {t.identity for s in sessions for t in s.tabs}
    timestamps = sorted(_parse_iso(s.timestamp) for s in sessions)
    projects = project_activity(sessions)
    neglected = [
        name for name, info in projects.items()
        if project_status(_days_between(info["last_active"], now))
        in ("neglected", "abandoned")
    ]
    top = signals[0] if signals else None
    return {
        "total_sessions": len(sessions),
        "total_tabs": sum(len(s.tabs) for s in sessions),
        "unique_identities": len(identities),
        "date_range": (
            {"first": timestamps[0].isoformat(), "last": timestamps[-1].isoformat()}
            if timestamps else None
        ),
        "ghost_tab_count": len(signals),
        "top_ghost_tab": top.to_dict() if top else None,
        "neglected_project_count": len(neglected),
        "neglected_projects": neglected,
        "dispositions": ledger.summary(),
    }
