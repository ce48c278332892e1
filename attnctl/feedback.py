"""
Intent Feedback Tracker — resolving feedback and running accuracy

Each proposal occurrence accepts exactly one resolving feedback event
(confirm, correct or dismiss).  A second event for the same
(subject, occurrence) raises AlreadyResolved instead of overwriting.

    accuracy = confirmed / total      (0.0 when total == 0)

Theme proposals additionally accept curation actions that only change
their stored status or label:

    save -> saved      archive -> archived      keep-watching -> watching
    rename -> label only
    confirm -> saved   dismiss -> archived      correct -> label only

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional

from attnctl.store import AttentionStore
from attnctl.types import (
    VALID_FEEDBACK_ACTIONS,
    AttentionError,
    IntentFeedback,
    ThemeProposal,
)

logger = logging.getLogger(__name__)

THEME_ACTIONS: set = {
    "confirm", "correct", "dismiss", "save", "archive", "keep-watching", "rename",
}

# None = status unchanged
_THEME_STATUS = {
    "confirm": "saved",
    "dismiss": "archived",
    "save": "saved",
    "archive": "archived",
    "keep-watching": "watching",
    "correct": None,
    "rename": None,
}


class AlreadyResolved(AttentionError):
    """Feedback already recorded for this (subject, occurrence)."""

    def __init__(self, subject_id: str, occurrence: str = ""):
        where = f" (occurrence {occurrence})" if occurrence else ""
        super().__init__(f"Feedback already recorded for {subject_id}{where}")
        self.subject_id = subject_id
        self.occurrence = occurrence


class IntentFeedbackTracker:
    """Append-only feedback log with an in-memory resolution index."""

    def __init__(self, store: AttentionStore):
        self._store = store
        self._mutex = threading.Lock()
        self._resolved: set = set()
        self._counts: Counter = Counter()
        for fb in store.read_feedback():
            self._resolved.add((fb.subject_id, fb.occurrence))
            self._counts[fb.action] += 1

    def record(
        self,
        subject_id: str,
        action: str,
        corrected_value: Optional[str] = None,
        occurrence: str = "",
    ) -> IntentFeedback:
        """Record the resolving feedback for one proposal occurrence.

        Raises:
            ValueError: Unknown action, or 'correct' without a value.
            AlreadyResolved: The occurrence already has feedback.
            PersistenceError: The store write failed.
        """
        if action not in VALID_FEEDBACK_ACTIONS:
            raise ValueError(f"Invalid feedback action: {action!r}")
        if action == "correct" and not corrected_value:
            raise ValueError("'correct' feedback requires a corrected value")
        fb = IntentFeedback(
            subject_id=subject_id,
            action=action,
            corrected_value=corrected_value,
            occurrence=occurrence or "",
        )
        key = (subject_id, fb.occurrence)
        with self._mutex:
            if key in self._resolved:
                raise AlreadyResolved(subject_id, fb.occurrence)
            if not self._store.append_feedback(fb):
                # Written by another tracker on the same database
                self._resolved.add(key)
                raise AlreadyResolved(subject_id, fb.occurrence)
            self._resolved.add(key)
            self._counts[action] += 1
        logger.info(f"Feedback {action} on {subject_id}")
        return fb

    def is_resolved(self, subject_id: str, occurrence: str = "") -> bool:
        with self._mutex:
            return (subject_id, occurrence) in self._resolved

    def stats(self) -> Dict[str, Any]:
        """Totals per action and accuracy = confirmed / total."""
        with self._mutex:
            confirmed = self._counts["confirm"]
            corrected = self._counts["correct"]
            dismissed = self._counts["dismiss"]
        total = confirmed + corrected + dismissed
        return {
            "total": total,
            "confirmed": confirmed,
            "corrected": corrected,
            "dismissed": dismissed,
            "accuracy": confirmed / total if total else 0.0,
        }

    def resolved(self) -> Dict[str, List[Dict[str, Any]]]:
        """All feedback grouped by subject, in recording order."""
        grouped: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for fb in self._store.read_feedback():
            grouped[fb.subject_id].append(fb.to_dict())
        return dict(grouped)

    # -- Themes ----------------------------------------------------------------

    def theme_action(
        self,
        theme: ThemeProposal,
        action: str,
        value: Optional[str] = None,
        occurrence: str = "",
    ) -> ThemeProposal:
        """Apply a feedback or curation action to a theme and persist its state.

        confirm/correct/dismiss are also recorded as resolving feedback
        (and may raise AlreadyResolved); the other actions can be repeated.
        """
        if action not in THEME_ACTIONS:
            raise ValueError(f"Invalid theme action: {action!r}")
        if action == "rename" and not value:
            raise ValueError("'rename' requires a new label")
        if action in VALID_FEEDBACK_ACTIONS:
            self.record(theme.theme_id, action, corrected_value=value, occurrence=occurrence)
        status = _THEME_STATUS[action] or theme.status
        label = value if action in ("rename", "correct") and value else theme.label
        self._store.upsert_theme_state(
            theme.theme_id, status, label=label, members=theme.member_identities,
        )
        theme.status = status
        theme.label = label
        logger.info(f"Theme {theme.theme_id}: {action} -> status={status}")
        return theme
