"""
Attention Data Model — Sessions, Dispositions, Signals, Proposals

Defines captured sessions and tabs, the append-only disposition and
correction records, the singleton lock, and the derived candidates
(recurrence signals, tasks, themes, preference rules).
Sessions and ledger records are immutable once written; derived objects are
recomputed on every aggregation pass.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Literal, Optional

from attnctl.similarity import normalize_url, url_domain

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

DispositionAction = Literal["trash", "complete", "regroup", "annotate"]
TaskType = Literal["ghost_tab", "project_revival", "tab_bankruptcy"]
ThemeStatus = Literal["open", "saved", "archived", "watching"]
RuleState = Literal["pending", "approved", "rejected"]
FeedbackAction = Literal["confirm", "correct", "dismiss"]

# Valid values for runtime checks
VALID_ACTIONS: set = {"trash", "complete", "regroup", "annotate"}
TERMINAL_ACTIONS: set = {"trash", "complete"}
VALID_TASK_TYPES: set = {"ghost_tab", "project_revival", "tab_bankruptcy"}
VALID_THEME_STATUSES: set = {"open", "saved", "archived", "watching"}
VALID_RULE_STATES: set = {"pending", "approved", "rejected"}
VALID_FEEDBACK_ACTIONS: set = {"confirm", "correct", "dismiss"}

# Annotation kinds carried in Disposition.payload["kind"]
ANNOTATION_KINDS: set = {"defer", "pause", "engage", "note"}

UNRESOLVED = "unresolved"


class AttentionError(Exception):
    """Base class for engine errors surfaced to callers."""

    pass


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _generate_id(prefix: str = "ATT") -> str:
    """Generate a unique ID with prefix."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}"


def _parse_iso(ts: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    text = ts.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_day(ts: str) -> str:
    """UTC calendar day (YYYY-MM-DD) of an ISO timestamp."""
    return _parse_iso(ts).date().isoformat()


def short_hash(text: str, length: int = 12) -> str:
    """Truncated SHA-1 hex digest, used for stable derived identifiers."""
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:length]


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@dataclass
class Tab:
    """One open tab at capture time."""

    url: str = ""
    title: str = ""
    tab_index: int = 0
    domain: str = ""

    def __post_init__(self):
        if not self.domain:
            self.domain = url_domain(self.url)

    @property
    def identity(self) -> str:
        """Normalized URL used to match the same page across sessions."""
        return normalize_url(self.url)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Tab:
        data = dict(d)
        # Capture payloads use camelCase for the index
        if "tabIndex" in data and "tab_index" not in data:
            data["tab_index"] = data.pop("tabIndex")
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class Session:
    """
    Immutable snapshot of the open tabs at one capture.

    ``groups`` maps a category to its tabs; ``projects`` maps a project name
    to the tab identities supporting it in this session.  When only
    ``groups`` is supplied, ``tabs`` is their concatenation.
    """

    id: str = field(default_factory=lambda: _generate_id("SES"))
    timestamp: str = field(default_factory=_now_iso)
    tabs: List[Tab] = field(default_factory=list)
    groups: Dict[str, List[Tab]] = field(default_factory=dict)
    projects: Dict[str, List[str]] = field(default_factory=dict)

    def __post_init__(self):
        self.tabs = [Tab.from_dict(t) if isinstance(t, dict) else t for t in self.tabs]
        self.groups = {
            cat: [Tab.from_dict(t) if isinstance(t, dict) else t for t in tabs]
            for cat, tabs in self.groups.items()
        }
        if not self.tabs and self.groups:
            self.tabs = [t for tabs in self.groups.values() for t in tabs]
        self.projects = {
            name: sorted({normalize_url(u) for u in urls})
            for name, urls in self.projects.items()
        }
        # Validates the timestamp early
        _parse_iso(self.timestamp)

    @property
    def day(self) -> str:
        return utc_day(self.timestamp)

    def category_of(
        self, identity: str, distinguishing_keys: Optional[Iterable[str]] = None,
    ) -> Optional[str]:
        """Category a tab identity was grouped under, if any.

        ``distinguishing_keys`` must be the ones the identity was built with.
        """
        for cat, tabs in self.groups.items():
            if any(normalize_url(t.url, distinguishing_keys) == identity for t in tabs):
                return cat
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Session:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


# ---------------------------------------------------------------------------
# Ledger records (append-only)
# ---------------------------------------------------------------------------

@dataclass
class Disposition:
    """
    A recorded user action against a tab identity.

    Ordering is total: ``(timestamp, seq)``, where ``seq`` is the ledger's
    insertion sequence assigned on append.
    Payload conventions by action:
    - regroup: ``{"from": category, "to": category}``
    - annotate: ``{"kind": "defer"|"pause"|"engage"|"note", "until": iso?}``
    """

    tab_identity: str = ""
    session_id: str = ""
    action: DispositionAction = "annotate"
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_iso)
    seq: int = 0
    idempotency_key: Optional[str] = None
    batch_id: Optional[str] = None

    def __post_init__(self):
        if self.action not in VALID_ACTIONS:
            raise ValueError(f"Invalid disposition action: {self.action!r}")
        if not self.tab_identity:
            raise ValueError("Disposition requires a tab identity")
        if self.action == "annotate" and self.payload.get("kind") not in ANNOTATION_KINDS:
            raise ValueError(
                f"Invalid annotation kind: {self.payload.get('kind')!r}"
            )
        _parse_iso(self.timestamp)

    @property
    def is_terminal(self) -> bool:
        return self.action in TERMINAL_ACTIONS

    def order_key(self) -> tuple:
        return (_parse_iso(self.timestamp), self.seq)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Disposition:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class CorrectionRecord:
    """A user override of a tab's classification (immutable)."""

    domain: str = ""
    url: str = ""
    from_category: str = ""
    to_category: str = ""
    timestamp: str = field(default_factory=_now_iso)

    def __post_init__(self):
        if not self.domain and self.url:
            self.domain = url_domain(self.url)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> CorrectionRecord:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class IntentFeedback:
    """One resolving feedback event on a task or theme proposal."""

    subject_id: str = ""
    action: str = "confirm"
    corrected_value: Optional[str] = None
    occurrence: str = ""
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> IntentFeedback:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


# ---------------------------------------------------------------------------
# Lock
# ---------------------------------------------------------------------------

@dataclass
class Lock:
    """Singleton guard of the forced-completion workflow."""

    held: bool = False
    session_id: Optional[str] = None
    locked_at: Optional[str] = None
    resume_state: Dict[str, Any] = field(default_factory=dict)
    items_remaining: int = 0
    last_activity: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Lock:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


# ---------------------------------------------------------------------------
# Derived objects (recomputed each pass)
# ---------------------------------------------------------------------------

@dataclass
class RecurrenceSignal:
    """Cross-session statistics for one unresolved tab identity."""

    tab_identity: str
    title: str = ""
    url: str = ""
    recurrence_count: int = 0
    distinct_days: int = 0
    co_occurring: List[str] = field(default_factory=list)
    last_seen: str = ""
    first_seen: str = ""
    domain: str = ""
    session_ids: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    last_session_id: str = ""

    @property
    def avg_days_between(self) -> Optional[float]:
        """Mean gap between first and last sighting, None below two sightings."""
        if self.recurrence_count < 2 or not self.first_seen or not self.last_seen:
            return None
        span = _parse_iso(self.last_seen) - _parse_iso(self.first_seen)
        return round(span.total_seconds() / 86400 / (self.recurrence_count - 1), 1)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["avg_days_between"] = self.avg_days_between
        return d


@dataclass
class TaskCandidate:
    """A ranked attention task, discriminated by ``type``."""

    id: str
    type: TaskType
    subject_identity: str = ""
    recurrence_count: int = 0
    distinct_days: int = 0
    affected_count: int = 0
    days_since_active: int = 0
    score: float = 0.0
    source_session_id: str = ""
    last_seen: str = ""
    title: str = ""
    members: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.type not in VALID_TASK_TYPES:
            raise ValueError(f"Invalid task type: {self.type!r}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IntentProposal:
    """
    Plain-language hypothesis about why a tab keeps coming back.

    ``subject_id`` is the tab identity, which is also the subject of the
    resolving feedback.  ``co_categories`` weights the categories of the
    tabs seen alongside it by the number of shared sessions.
    """

    subject_id: str
    url: str = ""
    title: str = ""
    recurrence_count: int = 0
    distinct_days: int = 0
    first_seen: str = ""
    last_seen: str = ""
    categories: List[str] = field(default_factory=list)
    co_occurring: List[str] = field(default_factory=list)
    co_categories: Dict[str, int] = field(default_factory=dict)
    candidate_intent: str = ""
    alternative_intents: List[str] = field(default_factory=list)
    signal_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ThemeProposal:
    """A cluster of recurring tabs proposed as one thread of attention."""

    theme_id: str
    label: str = ""
    member_identities: List[str] = field(default_factory=list)
    signal_score: float = 0.0
    memory_connections: List[str] = field(default_factory=list)
    status: ThemeStatus = "open"
    keywords: List[str] = field(default_factory=list)
    description: str = ""
    distinct_days: int = 0
    candidate_intent: str = ""
    user_corrections: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.status not in VALID_THEME_STATUSES:
            raise ValueError(f"Invalid theme status: {self.status!r}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PreferenceRule:
    """
    Learned mapping from a domain to a preferred category.

    ``stats`` holds ``total_corrections``, ``from_categories``,
    ``to_categories`` and ``agreement_ratio``.  ``forgotten_at`` marks a
    tombstone: the rule is no longer active and never returns to pending.
    ``superseded_by`` is set on a pending rule rejected because the domain's
    majority moved to another category.
    """

    id: str = field(default_factory=lambda: _generate_id("RULE"))
    domain: str = ""
    category: str = ""
    rule_text: str = ""
    confidence: float = 0.0
    stats: Dict[str, Any] = field(default_factory=dict)
    state: RuleState = "pending"
    application_count: int = 0
    source_corrections: List[Dict[str, Any]] = field(default_factory=list)
    path_exceptions: List[Dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    decided_at: Optional[str] = None
    forgotten_at: Optional[str] = None
    superseded_by: Optional[str] = None

    def __post_init__(self):
        if self.state not in VALID_RULE_STATES:
            raise ValueError(f"Invalid rule state: {self.state!r}")

    @property
    def active(self) -> bool:
        return self.state == "approved" and self.forgotten_at is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> PreferenceRule:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})
