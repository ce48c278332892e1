"""
Tests for attnctl.intents — intent hypotheses for recurring tabs.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import pytest

from attnctl.config import IntentConfig
from attnctl.intents import (
    IntentProposer,
    alternative_intents,
    candidate_intent,
    co_categories,
    verb_for,
)
from attnctl.types import RecurrenceSignal, Session

TOOL = "https://tool.com/x"
PAPER_A = "https://arxiv.org/abs/1"
PAPER_B = "https://arxiv.org/abs/2"
SHOP = "https://shop.com/cart"


def _sessions():
    return [
        Session(
            id=f"S{day}", timestamp=f"2025-03-0{day}T10:00:00Z",
            groups={
                "Research": [{"url": PAPER_A}, {"url": PAPER_B}],
                "Misc": [{"url": TOOL}],
                **({"Shopping": [{"url": SHOP}]} if day == 1 else {}),
            },
        )
        for day in (1, 2, 3)
    ]


def _sig(identity=TOOL, rc=3, dd=3, categories=("Misc",), co=(PAPER_A, PAPER_B, SHOP)):
    return RecurrenceSignal(
        tab_identity=identity, url=identity, title="Tool",
        recurrence_count=rc, distinct_days=dd,
        co_occurring=list(co), categories=list(categories),
        domain=identity.split("/")[2],
        session_ids=["S3", "S2", "S1"],
        first_seen="2025-03-01T10:00:00Z", last_seen="2025-03-03T10:00:00Z",
    )


@pytest.fixture
def proposer():
    return IntentProposer()


class TestVerbs:
    def test_substring_match(self):
        assert verb_for("Deep Research") == "deep-dive into"
        assert verb_for("Development & Tools") == "integrate or apply"

    def test_synthesis_before_academic(self):
        assert verb_for("Academic (Synthesis)") == "synthesize notes on"
        assert verb_for("Academic") == "study"

    def test_default(self):
        assert verb_for(None) == "follow up on"
        assert verb_for("Gardening") == "follow up on"


class TestCoCategories:
    def test_weighted_by_shared_sessions(self):
        assert co_categories(_sig(), _sessions()) == {"Research": 6, "Shopping": 1}

    def test_only_shared_sessions_count(self):
        sig = _sig()
        sig.session_ids = ["S1"]
        assert co_categories(sig, _sessions()) == {"Research": 2, "Shopping": 1}

    def test_no_co_occurring(self):
        assert co_categories(_sig(co=()), _sessions()) == {}


class TestCandidateIntent:
    def test_dominant_context(self):
        text = candidate_intent(_sig(), {"Research": 6, "Shopping": 1})
        assert text == (
            "You may want to deep-dive into tool.com: "
            "it keeps appearing alongside your Research tabs"
        )

    def test_falls_back_to_own_category(self):
        text = candidate_intent(_sig(categories=["Shopping"]), {})
        assert text == (
            "You may want to decide on purchasing tool.com: "
            "it keeps appearing across multiple sessions"
        )

    def test_ties_broken_by_name(self):
        text = candidate_intent(_sig(), {"News": 2, "Academic": 2})
        assert "study tool.com" in text
        assert "your Academic tabs" in text


class TestAlternatives:
    def test_unambiguous(self):
        assert alternative_intents(_sig()) == []

    def test_several_categories(self):
        [alt] = alternative_intents(_sig(categories=["Misc", "Research"]))
        assert alt == "This might be a reference resource you return to for Misc work"

    def test_habitual(self):
        alts = alternative_intents(_sig(rc=12, categories=["Misc", "Research"]))
        assert len(alts) == 2
        assert "habitual" in alts[1]

    def test_habitual_threshold(self):
        assert alternative_intents(_sig(rc=12), habitual_after=20) == []


class TestPropose:
    def test_proposal_shape(self, proposer):
        [p] = proposer.propose([_sig()], _sessions())
        assert p.subject_id == TOOL
        assert p.co_categories == {"Research": 6, "Shopping": 1}
        # 10 * 3 + 15 * 3 + 20 * 1
        assert p.signal_score == 95.0
        assert p.candidate_intent.startswith("You may want to deep-dive into tool.com")
        assert p.to_dict()["alternative_intents"] == []

    def test_thresholds(self, proposer):
        assert proposer.propose([_sig(rc=2)], _sessions()) == []
        assert proposer.propose([_sig(dd=1)], _sessions()) == []
        relaxed = IntentProposer(IntentConfig(min_occurrences=2, min_distinct_days=1))
        assert len(relaxed.propose([_sig(rc=2, dd=1)], _sessions())) == 1

    def test_answered_subjects_skipped(self, proposer):
        signals = [_sig(), _sig(identity=PAPER_A, co=(TOOL,))]
        out = proposer.propose(signals, _sessions(), answered={TOOL})
        assert [p.subject_id for p in out] == [PAPER_A]

    def test_ranked_and_limited(self, proposer):
        signals = [
            _sig(identity=PAPER_A, rc=3, dd=2, co=()),
            _sig(identity=TOOL, rc=5, dd=3),
            _sig(identity=PAPER_B, rc=3, dd=2, co=()),
        ]
        out = proposer.propose(signals, _sessions())
        assert [p.subject_id for p in out] == [TOOL, PAPER_A, PAPER_B]
        assert len(proposer.propose(signals, _sessions(), limit=2)) == 2
        capped = IntentProposer(IntentConfig(max_proposals=1))
        assert [p.subject_id for p in capped.propose(signals, _sessions())] == [TOOL]
