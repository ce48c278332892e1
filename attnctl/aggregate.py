"""
Signal Aggregator — cross-session recurrence statistics

scan() groups the tabs of the most recent sessions by identity (normalized
URL), drops identities whose ledger status is terminal (trash/complete),
and emits one RecurrenceSignal per identity seen in at least two distinct
sessions.

The scan is a pure function of (sessions, ledger state, parameters): no
randomness, no wall-clock reads, and every ordering has an explicit
tie-break, so two runs over the same state produce identical output.

Ordering:
    recurrence_count desc, last_seen desc, tab_identity asc
Co-occurring identities:
    shared-session count desc, identity asc, capped (default 5)

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Sequence

from attnctl.similarity import is_web_url, normalize_url, url_domain, url_host
from attnctl.types import TERMINAL_ACTIONS, RecurrenceSignal, Session, _parse_iso

logger = logging.getLogger(__name__)


def recent_sessions(sessions: Iterable[Session], window_size: int) -> List[Session]:
    """The window_size most recent sessions, newest first (ties by id desc)."""
    ordered = sorted(
        sessions,
        key=lambda s: (_parse_iso(s.timestamp), s.id),
        reverse=True,
    )
    return ordered[:max(0, window_size)]


def scan(
    sessions: Sequence[Session],
    ledger,
    window_size: int = 50,
    *,
    co_occurring_cap: int = 5,
    min_sessions: int = 2,
    ignored_domains: Optional[Iterable[str]] = None,
    distinguishing_keys: Optional[Iterable[str]] = None,
) -> List[RecurrenceSignal]:
    """Compute recurrence signals over the most recent sessions.

    Args:
        sessions: Session snapshots, any order.
        ledger: Anything with ``current_status(identity)`` (ledger or snapshot).
        window_size: Number of most recent sessions considered.
        co_occurring_cap: Max co-occurring identities per signal.
        min_sessions: Minimum distinct sessions for a signal (>= 2).
        ignored_domains: Hosts never considered (local pages, new-tab pages),
            matched with or without the port (``localhost:3000``).
        distinguishing_keys: Query keys kept in identities.

    Returns:
        Ordered list of RecurrenceSignal (empty on degenerate input).
    """
    window = recent_sessions(sessions, window_size)
    if not window:
        return []
    ignored = {d.lower() for d in (ignored_domains or ())}
    min_sessions = max(2, min_sessions)

    # Newest first: the first sighting recorded per identity is the latest one
    occurrences: Dict[str, Dict[str, Any]] = {}
    per_session: List[tuple] = []
    status_cache: Dict[str, bool] = {}

    for session in window:
        seen_here: set = set()
        for tab in session.tabs:
            if not is_web_url(tab.url):
                continue
            identity = normalize_url(tab.url, distinguishing_keys)
            if identity in seen_here:
                continue
            domain = tab.domain or url_domain(tab.url)
            if domain in ignored or url_host(tab.url) in ignored:
                continue
            if identity not in status_cache:
                status_cache[identity] = ledger.current_status(identity) in TERMINAL_ACTIONS
            if status_cache[identity]:
                continue
            seen_here.add(identity)
            occ = occurrences.get(identity)
            if occ is None:
                occ = occurrences[identity] = {
                    "title": tab.title,
                    "url": tab.url,
                    "domain": domain,
                    "last_seen": session.timestamp,
                    "last_session_id": session.id,
                    "first_seen": session.timestamp,
                    "sessions": [],
                    "days": set(),
                    "categories": set(),
                }
            occ["first_seen"] = session.timestamp
            occ["sessions"].append(session.id)
            occ["days"].add(_parse_iso(session.timestamp).date())
            category = session.category_of(identity, distinguishing_keys)
            if category:
                occ["categories"].add(category)
        per_session.append(seen_here)

    recurring = {
        ident for ident, occ in occurrences.items()
        if len(occ["sessions"]) >= min_sessions
    }
    if not recurring:
        logger.debug(f"scan: {len(window)} sessions, no recurring identities")
        return []

    co_counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for seen_here in per_session:
        present = recurring & seen_here
        for ident in present:
            for other in seen_here:
                if other != ident:
                    co_counts[ident][other] += 1

    signals: List[RecurrenceSignal] = []
    for ident in recurring:
        occ = occurrences[ident]
        ranked = sorted(co_counts[ident].items(), key=lambda kv: (-kv[1], kv[0]))
        signals.append(RecurrenceSignal(
            tab_identity=ident,
            title=occ["title"],
            url=occ["url"],
            recurrence_count=len(occ["sessions"]),
            distinct_days=len(occ["days"]),
            co_occurring=[other for other, _ in ranked[:co_occurring_cap]],
            last_seen=occ["last_seen"],
            first_seen=occ["first_seen"],
            domain=occ["domain"],
            session_ids=list(occ["sessions"]),
            categories=sorted(occ["categories"]),
            last_session_id=occ["last_session_id"],
        ))

    signals.sort(key=lambda s: (
        -s.recurrence_count,
        -_parse_iso(s.last_seen).timestamp(),
        s.tab_identity,
    ))
    logger.debug(
        f"scan: {len(window)} sessions, {len(occurrences)} identities, "
        f"{len(signals)} recurring"
    )
    return signals


def project_activity(sessions: Iterable[Session]) -> Dict[str, Dict[str, Any]]:
    """Per-project activity summary across all sessions.

    A project is active in a session when the session lists it in
    ``projects`` with at least one supporting tab.

    Returns:
        {project: {first_seen, last_active, last_session_id,
                   total_sessions, total_tabs}} keyed in name order.
    """
    summary: Dict[str, Dict[str, Any]] = {}
    ordered = sorted(sessions, key=lambda s: (_parse_iso(s.timestamp), s.id))
    for session in ordered:
        for name, identities in session.projects.items():
            if not identities:
                continue
            entry = summary.setdefault(name, {
                "first_seen": session.timestamp,
                "last_active": session.timestamp,
                "last_session_id": session.id,
                "total_sessions": 0,
                "tabs": set(),
            })
            entry["last_active"] = session.timestamp
            entry["last_session_id"] = session.id
            entry["total_sessions"] += 1
            entry["tabs"].update(identities)
    out: Dict[str, Dict[str, Any]] = {}
    for name in sorted(summary):
        entry = summary[name]
        tabs = entry.pop("tabs")
        entry["total_tabs"] = len(tabs)
        entry["members"] = sorted(tabs)
        out[name] = entry
    return out


def project_status(days_since_active: int) -> str:
    """Activity bucket of a project: active, cooling, neglected or abandoned."""
    if days_since_active <= 3:
        return "active"
    if days_since_active <= 14:
        return "cooling"
    if days_since_active <= 30:
        return "neglected"
    return "abandoned"
