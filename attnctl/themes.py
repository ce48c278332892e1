"""
Theme Clusterer — recurring tabs grouped into threads of attention

Builds a similarity graph over recurrence signals and proposes each
connected component as a theme.

Edges (either condition connects two signals):
    keyword Jaccard      >= keyword_threshold       (title keywords + domain stem)
    co-occurrence Jaccard >= cooccurrence_threshold (self + co-occurring identities)

Filtering:
    component size >= min_size and signal_score >= min_signal_score
    signal_score = recurrence_weight * sum(recurrence_count)
                 + days_weight * sum(distinct_days)

Identity:
    theme_id = short SHA-1 of the sorted member identities at first
    detection.  A new component whose membership has Jaccard >=
    carry_forward_jaccard with a prior theme reuses that theme's id, label
    and status, so user decisions survive membership drift.

Each theme carries a one-sentence candidate intent (theme_intent) phrased
from its memory connections, day span and size.

Clustering is a pure function of (signals, prior, interests).

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from attnctl.config import ThemeConfig
from attnctl.interests import Interest, match_interests
from attnctl.similarity import STOP_WORDS, domain_stem, extract_keywords, jaccard
from attnctl.types import RecurrenceSignal, ThemeProposal, short_hash

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Union-find
# ---------------------------------------------------------------------------

class _UnionFind:
    """Disjoint sets over indices; the smaller root wins for determinism."""

    def __init__(self, n: int):
        self.parent = list(range(n))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if ra < rb:
            self.parent[rb] = ra
        else:
            self.parent[ra] = rb


def signal_keywords(signal: RecurrenceSignal) -> set:
    """Title keywords plus the registrable domain label."""
    words = set(extract_keywords(signal.title))
    stem = domain_stem(signal.domain)
    if len(stem) > 2 and stem not in STOP_WORDS:
        words.add(stem)
    return words


def theme_intent(theme: ThemeProposal) -> str:
    """Question-style hypothesis about what a theme is for."""
    label = theme.label
    count = len(theme.member_identities)
    if theme.memory_connections:
        return (
            f"These {count} tabs suggest ongoing research into {label}, "
            f'connected to your "{theme.memory_connections[0]}" notes'
        )
    if theme.distinct_days > 5:
        return (
            f"This cluster of {count} tabs across {theme.distinct_days} days looks "
            f"like sustained {label.lower()} activity. What's the goal?"
        )
    if count > 5:
        return f"{count} tabs converging on {label.lower()}: this looks like an active investigation"
    return f"These tabs suggest a thread around {label.lower()}. Is this an active pursuit?"


def theme_id_for(members: Sequence[str]) -> str:
    return "THM-" + short_hash("|".join(sorted(members)))


# ---------------------------------------------------------------------------
# Clusterer
# ---------------------------------------------------------------------------

class ThemeClusterer:
    """Deterministic clustering of recurrence signals into theme proposals."""

    def __init__(self, config: Optional[ThemeConfig] = None):
        self.config = config or ThemeConfig()

    def cluster(
        self,
        signals: Sequence[RecurrenceSignal],
        prior: Optional[Sequence[Any]] = None,
        interests: Optional[List[Interest]] = None,
    ) -> List[ThemeProposal]:
        """Group signals into themes.

        Args:
            signals: Output of aggregate.scan().
            prior: Previously detected themes (ThemeProposal or stored
                theme-state dicts with theme_id/status/label/member_identities).
            interests: Research interests for memory connections.

        Returns:
            Themes ordered by signal_score desc, then theme_id.
        """
        cfg = self.config
        if not signals:
            return []
        ordered = sorted(signals, key=lambda s: s.tab_identity)
        keywords = [signal_keywords(s) for s in ordered]
        neighbourhoods = [{s.tab_identity, *s.co_occurring} for s in ordered]

        uf = _UnionFind(len(ordered))
        for i in range(len(ordered)):
            for j in range(i + 1, len(ordered)):
                if (
                    jaccard(keywords[i], keywords[j]) >= cfg.keyword_threshold
                    or jaccard(neighbourhoods[i], neighbourhoods[j]) >= cfg.cooccurrence_threshold
                ):
                    uf.union(i, j)

        components: Dict[int, List[int]] = {}
        for i in range(len(ordered)):
            components.setdefault(uf.find(i), []).append(i)

        themes: List[ThemeProposal] = []
        for indices in components.values():
            if len(indices) < cfg.min_size:
                continue
            members = [ordered[i] for i in indices]
            score = (
                cfg.recurrence_weight * sum(m.recurrence_count for m in members)
                + cfg.days_weight * sum(m.distinct_days for m in members)
            )
            if score < cfg.min_signal_score:
                continue
            top_keywords = self._shared_keywords([keywords[i] for i in indices])
            identities = sorted(m.tab_identity for m in members)
            theme_text = " ".join(
                [*top_keywords, *(f"{m.title} {m.url}" for m in members)]
            )
            themes.append(ThemeProposal(
                theme_id=theme_id_for(identities),
                label=self._label(top_keywords, members),
                member_identities=identities,
                signal_score=round(score, 3),
                memory_connections=match_interests(theme_text, interests or []),
                status="open",
                keywords=top_keywords,
                description=self._describe(members),
                distinct_days=max(m.distinct_days for m in members),
            ))

        if prior:
            self._carry_forward(themes, prior)
        for theme in themes:
            theme.candidate_intent = theme_intent(theme)
        themes.sort(key=lambda t: (-t.signal_score, t.theme_id))
        logger.debug(
            f"cluster: {len(signals)} signals -> {len(components)} components, "
            f"{len(themes)} themes"
        )
        return themes

    # -- Labels ----------------------------------------------------------------

    def _shared_keywords(self, keyword_sets: List[set]) -> List[str]:
        """Keywords shared by at least two members, most frequent first."""
        counts = Counter(w for ks in keyword_sets for w in ks)
        shared = [(w, c) for w, c in counts.items() if c >= 2]
        shared.sort(key=lambda wc: (-wc[1], wc[0]))
        return [w for w, _ in shared[:self.config.max_label_keywords]]

    @staticmethod
    def _label(top_keywords: List[str], members: List[RecurrenceSignal]) -> str:
        if top_keywords:
            return " / ".join(w.capitalize() for w in top_keywords)
        domains = Counter(m.domain for m in members if m.domain)
        if domains:
            domain = sorted(domains.items(), key=lambda dc: (-dc[1], dc[0]))[0][0]
            return f"{domain} cluster"
        return "Unnamed theme"

    @staticmethod
    def _describe(members: List[RecurrenceSignal]) -> str:
        days = max(m.distinct_days for m in members)
        ranked = sorted(members, key=lambda m: (-m.recurrence_count, m.tab_identity))
        titles = ", ".join(f'"{m.title or m.tab_identity}"' for m in ranked[:3])
        return (
            f"{len(members)} recurring tabs seen on up to {days} distinct days, "
            f"including: {titles}"
        )

    # -- Carry-forward ---------------------------------------------------------

    def _carry_forward(self, themes: List[ThemeProposal], prior: Sequence[Any]) -> None:
        """Reuse id/label/status of the best-matching prior theme (one-to-one)."""
        prior_dicts = [p.to_dict() if isinstance(p, ThemeProposal) else dict(p) for p in prior]
        pairs = []
        for ti, theme in enumerate(themes):
            for pi, p in enumerate(prior_dicts):
                j = jaccard(theme.member_identities, p.get("member_identities", []))
                if j >= self.config.carry_forward_jaccard:
                    pairs.append((-j, theme.theme_id, p.get("theme_id", ""), ti, pi))
        pairs.sort()
        used_themes: set = set()
        used_prior: set = set()
        for _, _, _, ti, pi in pairs:
            if ti in used_themes or pi in used_prior:
                continue
            used_themes.add(ti)
            used_prior.add(pi)
            p = prior_dicts[pi]
            theme = themes[ti]
            theme.theme_id = p.get("theme_id") or theme.theme_id
            theme.status = p.get("status") or "open"
            if p.get("label"):
                theme.label = p["label"]
