"""
Intent Proposals — plain-language hypotheses for recurring tabs

For each recurring tab without feedback yet, proposes why it keeps coming
back, phrased from the context it appears in:

    candidate  "You may want to <verb> <domain>: it keeps appearing
                alongside your <category> tabs"
    verb       picked from the dominant category of co-occurring tabs
               (falling back to the tab's own first category)
    score      10 * recurrence_count + 15 * distinct_days
               + 20 * len(categories)      (unstable category = worth asking)

Up to two alternatives are offered when the guess is ambiguous (a tab
filed under several categories, or one open so often it looks habitual).
The user answers through the feedback tracker (confirm, correct,
dismiss); answered tabs are not proposed again.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Container, Dict, Iterable, List, Optional, Sequence

from attnctl.config import IntentConfig
from attnctl.similarity import normalize_url
from attnctl.types import IntentProposal, RecurrenceSignal, Session

logger = logging.getLogger(__name__)

# Matched as case-insensitive substrings of the category, first hit wins
CATEGORY_VERBS: Dict[str, str] = {
    "research": "deep-dive into",
    "development": "integrate or apply",
    "financial": "review or act on",
    "academic (synthesis)": "synthesize notes on",
    "academic": "study",
    "entertainment": "make time for",
    "shopping": "decide on purchasing",
    "communication": "follow up on",
    "social media": "engage with",
    "news": "process or respond to",
    "reference": "reference while working on",
    "ai & machine learning": "experiment with",
    "ai tools": "experiment with",
    "cloud & infrastructure": "set up or configure",
}

DEFAULT_VERB = "follow up on"


def verb_for(category: Optional[str]) -> str:
    if not category:
        return DEFAULT_VERB
    lowered = category.lower()
    for key, verb in CATEGORY_VERBS.items():
        if key in lowered:
            return verb
    return DEFAULT_VERB


def candidate_intent(
    signal: RecurrenceSignal, co_categories: Dict[str, int],
) -> str:
    """One-sentence hypothesis built from the dominant co-occurring category."""
    dominant = _dominant(co_categories)
    own = signal.categories[0] if signal.categories else None
    verb = verb_for(dominant or own)
    where = signal.domain or "this page"
    context = (
        f"alongside your {dominant} tabs" if dominant else "across multiple sessions"
    )
    return f"You may want to {verb} {where}: it keeps appearing {context}"


def alternative_intents(signal: RecurrenceSignal, habitual_after: int = 10) -> List[str]:
    alts = []
    if len(signal.categories) > 1:
        alts.append(
            f"This might be a reference resource you return to for "
            f"{signal.categories[0]} work"
        )
    if signal.recurrence_count > habitual_after:
        alts.append("This could be a pinned or habitual tab rather than an unresolved intention")
    return alts[:2]


def _dominant(counts: Dict[str, int]) -> Optional[str]:
    if not counts:
        return None
    return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]


def co_categories(
    signal: RecurrenceSignal,
    sessions: Sequence[Session],
    distinguishing_keys: Optional[Iterable[str]] = None,
) -> Dict[str, int]:
    """Categories of the co-occurring tabs, counted once per shared session."""
    keys = list(distinguishing_keys) if distinguishing_keys is not None else None
    wanted = set(signal.co_occurring)
    shared = set(signal.session_ids)
    counts: Counter = Counter()
    for session in sessions:
        if session.id not in shared:
            continue
        present = {normalize_url(t.url, keys) for t in session.tabs} & wanted
        for identity in present:
            category = session.category_of(identity, keys)
            if category:
                counts[category] += 1
    return dict(sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])))


class IntentProposer:
    """Builds ranked intent proposals from one aggregation snapshot."""

    def __init__(self, config: Optional[IntentConfig] = None):
        self.config = config or IntentConfig()

    def propose(
        self,
        signals: Sequence[RecurrenceSignal],
        sessions: Sequence[Session],
        answered: Container[str] = (),
        distinguishing_keys: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> List[IntentProposal]:
        """Rank proposals by score desc, then subject id.

        Args:
            signals: Output of aggregate.scan() (terminal tabs already gone).
            sessions: Sessions the signals were computed from.
            answered: Subjects that already received feedback (skipped).
            distinguishing_keys: Query keys used to build the identities.
            limit: Maximum proposals (defaults to config.max_proposals).
        """
        cfg = self.config
        out: List[IntentProposal] = []
        for s in signals:
            if s.recurrence_count < cfg.min_occurrences:
                continue
            if s.distinct_days < cfg.min_distinct_days:
                continue
            if s.tab_identity in answered:
                continue
            cats = co_categories(s, sessions, distinguishing_keys)
            out.append(IntentProposal(
                subject_id=s.tab_identity,
                url=s.url,
                title=s.title,
                recurrence_count=s.recurrence_count,
                distinct_days=s.distinct_days,
                first_seen=s.first_seen,
                last_seen=s.last_seen,
                categories=list(s.categories),
                co_occurring=list(s.co_occurring),
                co_categories=cats,
                candidate_intent=candidate_intent(s, cats),
                alternative_intents=alternative_intents(s, cfg.habitual_after),
                signal_score=float(
                    10 * s.recurrence_count + 15 * s.distinct_days + 20 * len(s.categories)
                ),
            ))
        out.sort(key=lambda p: (-p.signal_score, p.subject_id))
        logger.debug(f"propose: {len(signals)} signals -> {len(out)} intent proposals")
        return out[:limit or cfg.max_proposals]
