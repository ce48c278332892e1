"""
Preference Learner — per-domain category rules from user corrections

propose() groups correction records by domain and, for every domain with
enough corrections (min_corrections) agreeing on one target category
(agreement >= min_agreement), emits a pending rule:

    confidence = agreement_ratio = top_target_count / total_corrections

Lifecycle (user-driven, one-way):

    pending --approve--> approved --forget--> (tombstone, inactive)
    pending --reject---> rejected

Re-proposing never touches approved rules; it only adds pending rules or
raises the confidence of a still-pending one.  When the domain majority
moves to another category, the older pending rule is rejected as
superseded; no rule is approved while another is active for its domain.
After a user rejection or a forget, only corrections newer than that
decision count as fresh evidence for the domain.  Transitions are
serialized per rule id.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, defaultdict
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from attnctl.config import PreferenceConfig
from attnctl.similarity import url_domain
from attnctl.store import AttentionStore
from attnctl.types import (
    AttentionError,
    CorrectionRecord,
    PreferenceRule,
    _now_iso,
    _parse_iso,
)

logger = logging.getLogger(__name__)


class RuleNotFound(AttentionError):
    """No preference rule with this id."""

    pass


class InvalidTransition(AttentionError):
    """The requested lifecycle transition is not allowed from the rule's state."""

    pass


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def _ranked(counts: Dict[str, int]) -> List[tuple]:
    return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))


def detect_path_exceptions(
    corrections: List[CorrectionRecord], majority: str, limit: int = 3,
) -> List[Dict[str, Any]]:
    """Path segments whose corrections mostly go to another category.

    Looks at the first three path segments (longer than two characters);
    a segment is an exception when its own top target differs from the
    domain majority and is backed by at least two corrections.
    """
    by_segment: Dict[str, Counter] = defaultdict(Counter)
    for c in corrections:
        try:
            path = urlsplit(c.url).path
        except ValueError:
            continue
        parts = [p for p in path.split("/") if len(p) > 2]
        for part in parts[:3]:
            by_segment[part][c.to_category] += 1
    exceptions = []
    for segment in sorted(by_segment):
        top, count = _ranked(by_segment[segment])[0]
        if top != majority and count >= 2:
            exceptions.append({"segment": f"/{segment}/", "category": top})
    return exceptions[:limit]


def rule_text_for(
    domain: str, category: str, from_counts: Dict[str, int],
    exceptions: List[Dict[str, Any]],
) -> str:
    text = f'URLs from {domain} should be classified as "{category}"'
    froms = [c for c, _ in _ranked(from_counts) if c and c != category]
    if len(froms) == 1:
        text += f' (not "{froms[0]}")'
    elif froms:
        text += f" (often misclassified as {', '.join(froms[:3])})"
    if exceptions:
        segments = " or ".join(e["segment"] for e in exceptions)
        text += f". Exception: paths containing {segments} may be other categories."
    return text


# ---------------------------------------------------------------------------
# Learner
# ---------------------------------------------------------------------------


class PreferenceLearner:
    """Proposes and manages preference rules persisted in an AttentionStore."""

    def __init__(self, store: AttentionStore, config: Optional[PreferenceConfig] = None):
        self._store = store
        self.config = config or PreferenceConfig()
        self._propose_mutex = threading.Lock()
        self._guard = threading.Lock()
        self._rule_mutexes: Dict[str, threading.Lock] = {}

    def _mutex(self, rule_id: str) -> threading.Lock:
        with self._guard:
            m = self._rule_mutexes.get(rule_id)
            if m is None:
                m = self._rule_mutexes[rule_id] = threading.Lock()
            return m

    def _read(self, rule_id: str) -> PreferenceRule:
        rule = self._store.read_rule(rule_id)
        if rule is None:
            raise RuleNotFound(f"Unknown preference rule: {rule_id}")
        return rule

    # -- Proposal --------------------------------------------------------------

    def propose(self, corrections: Iterable[CorrectionRecord]) -> List[PreferenceRule]:
        """Evaluate corrections and return the pending rules they support.

        Returns one pending rule per qualifying domain (new, raised, or
        unchanged), ordered by domain.
        """
        by_domain: Dict[str, List[CorrectionRecord]] = defaultdict(list)
        for c in corrections:
            domain = c.domain or url_domain(c.url)
            if domain and c.to_category:
                by_domain[domain].append(c)

        out: List[PreferenceRule] = []
        with self._propose_mutex:
            for domain in sorted(by_domain):
                rule = self._propose_domain(domain, by_domain[domain])
                if rule is not None:
                    out.append(rule)
        logger.info(
            f"propose: {sum(len(v) for v in by_domain.values())} corrections, "
            f"{len(by_domain)} domains -> {len(out)} pending rules"
        )
        return out

    def _propose_domain(
        self, domain: str, records: List[CorrectionRecord],
    ) -> Optional[PreferenceRule]:
        cfg = self.config
        existing = [r for r in self._store.list_rules() if r.domain == domain]
        if any(r.active for r in existing):
            return None

        # User rejections and forgets reset the evidence window for the domain
        cutoffs = [
            _parse_iso(ts) for r in existing
            for ts in (
                r.decided_at if r.state == "rejected" and not r.superseded_by else None,
                r.forgotten_at,
            )
            if ts
        ]
        if cutoffs:
            cutoff = max(cutoffs)
            records = [c for c in records if _parse_iso(c.timestamp) > cutoff]
        if len(records) < cfg.min_corrections:
            return None

        to_counts = Counter(c.to_category for c in records)
        from_counts = Counter(c.from_category for c in records if c.from_category)
        category, top = _ranked(to_counts)[0]
        ratio = top / len(records)
        if ratio < cfg.min_agreement:
            return None

        exceptions = detect_path_exceptions(records, category, cfg.max_path_exceptions)
        stats = {
            "total_corrections": len(records),
            "from_categories": dict(_ranked(from_counts)),
            "to_categories": dict(_ranked(to_counts)),
            "agreement_ratio": round(ratio, 6),
        }
        sources = [c.to_dict() for c in records[:cfg.max_source_corrections]]
        text = rule_text_for(domain, category, from_counts, exceptions)

        pending = next(
            (r for r in existing if r.state == "pending" and r.category == category),
            None,
        )
        if pending is not None:
            with self._mutex(pending.id):
                current = self._read(pending.id)
                if current.state != "pending":
                    return None
                if round(ratio, 6) <= current.confidence:
                    return current
                current.confidence = round(ratio, 6)
                current.stats = stats
                current.rule_text = text
                current.source_corrections = sources
                current.path_exceptions = exceptions
                self._store.upsert_rule(current)
                logger.info(f"Raised confidence of {current.id} ({domain}) to {ratio:.2f}")
                return current

        rule = PreferenceRule(
            domain=domain,
            category=category,
            rule_text=text,
            confidence=round(ratio, 6),
            stats=stats,
            state="pending",
            source_corrections=sources,
            path_exceptions=exceptions,
        )
        self._store.upsert_rule(rule)
        logger.info(f"Proposed {rule.id}: {text}")
        for old in existing:
            if old.state == "pending" and old.category != category:
                self._supersede(old.id, rule)
        return rule

    def _supersede(self, rule_id: str, by: PreferenceRule) -> None:
        """Reject a pending rule whose category lost the domain majority."""
        with self._mutex(rule_id):
            old = self._read(rule_id)
            if old.state != "pending":
                return
            old.state = "rejected"
            old.decided_at = _now_iso()
            old.superseded_by = by.id
            self._store.upsert_rule(old)
            self._store.log_event(
                "rule_supersede", rule_id,
                {"domain": old.domain, "superseded_by": by.id, "category": by.category},
            )
        logger.info(f"Superseded {rule_id} ({old.domain}) by {by.id} ({by.category})")

    # -- Lifecycle -------------------------------------------------------------

    def approve(self, rule_id: str) -> PreferenceRule:
        """pending -> approved. Idempotent on an already approved rule.

        Raises:
            RuleNotFound, InvalidTransition (rejected or forgotten rule).
        """
        with self._mutex(rule_id):
            rule = self._read(rule_id)
            if rule.active:
                return rule
            if rule.state != "pending":
                raise InvalidTransition(
                    f"Cannot approve {rule_id}: state={rule.state}"
                    f"{' (forgotten)' if rule.forgotten_at else ''}"
                )
            rival = next(
                (r for r in self.approved_rules() if r.domain == rule.domain), None,
            )
            if rival is not None:
                raise InvalidTransition(
                    f"Cannot approve {rule_id}: {rival.id} is already active "
                    f"for {rule.domain}"
                )
            rule.state = "approved"
            rule.decided_at = _now_iso()
            self._store.upsert_rule(rule)
            self._store.log_event("rule_approve", rule_id, {"domain": rule.domain})
        logger.info(f"Approved preference rule {rule_id} ({rule.domain})")
        return rule

    def reject(self, rule_id: str) -> PreferenceRule:
        """pending -> rejected (terminal). Idempotent on a rejected rule."""
        with self._mutex(rule_id):
            rule = self._read(rule_id)
            if rule.state == "rejected":
                return rule
            if rule.state != "pending":
                raise InvalidTransition(f"Cannot reject {rule_id}: state={rule.state}")
            rule.state = "rejected"
            rule.decided_at = _now_iso()
            self._store.upsert_rule(rule)
            self._store.log_event("rule_reject", rule_id, {"domain": rule.domain})
        logger.info(f"Rejected preference rule {rule_id} ({rule.domain})")
        return rule

    def forget(self, rule_id: str) -> PreferenceRule:
        """Remove an approved rule from the active set (never back to pending)."""
        with self._mutex(rule_id):
            rule = self._read(rule_id)
            if rule.state == "approved" and rule.forgotten_at:
                return rule
            if rule.state != "approved":
                raise InvalidTransition(f"Cannot forget {rule_id}: state={rule.state}")
            rule.forgotten_at = _now_iso()
            self._store.upsert_rule(rule)
            self._store.log_event("rule_forget", rule_id, {"domain": rule.domain})
        logger.info(f"Forgot preference rule {rule_id} ({rule.domain})")
        return rule

    def record_applications(self, rule_ids: Iterable[str]) -> int:
        """Count one application for each active rule; returns rules updated."""
        updated = 0
        for rule_id in sorted(set(rule_ids)):
            with self._mutex(rule_id):
                rule = self._store.read_rule(rule_id)
                if rule is None or not rule.active:
                    continue
                rule.application_count += 1
                self._store.upsert_rule(rule)
                updated += 1
        return updated

    # -- Queries ---------------------------------------------------------------

    def get(self, rule_id: str) -> PreferenceRule:
        return self._read(rule_id)

    def list_rules(
        self, state: Optional[str] = None, include_forgotten: bool = False,
    ) -> List[PreferenceRule]:
        rules = self._store.list_rules(state)
        if not include_forgotten:
            rules = [r for r in rules if not r.forgotten_at]
        return rules

    def approved_rules(self) -> List[PreferenceRule]:
        return [r for r in self._store.list_rules("approved") if r.active]

    def suggest_category(self, url: str) -> Optional[PreferenceRule]:
        """Active rule applying to a URL, unless one of its path exceptions matches."""
        domain = url_domain(url)
        try:
            path = urlsplit(url).path + "/"
        except ValueError:
            path = ""
        for rule in self.approved_rules():
            if rule.domain != domain:
                continue
            if any(e["segment"] in path for e in rule.path_exceptions):
                return None
            return rule
        return None
