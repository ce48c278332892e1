"""
attnctl — Attention & Consistency Engine for browsing sessions.

Turns repeated tab snapshots into a small number of decisions: recurring
"ghost" tabs, dormant projects, tab bankruptcy, and themes, on top of an
append-only disposition ledger, a global session lock, and user-approved
preference rules.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

__version__ = "0.1.0"

from attnctl.types import (
    Session,
    Tab,
    Disposition,
    CorrectionRecord,
    IntentFeedback,
    IntentProposal,
    RecurrenceSignal,
    TaskCandidate,
    ThemeProposal,
    PreferenceRule,
    Lock,
)
from attnctl.store import AttentionStore, SCHEMA_VERSION
from attnctl.config import AttentionConfig
from attnctl.engine import AttentionEngine

__all__ = [
    "__version__",
    "Session",
    "Tab",
    "Disposition",
    "CorrectionRecord",
    "IntentFeedback",
    "IntentProposal",
    "RecurrenceSignal",
    "TaskCandidate",
    "ThemeProposal",
    "PreferenceRule",
    "Lock",
    "AttentionStore",
    "SCHEMA_VERSION",
    "AttentionConfig",
    "AttentionEngine",
]
