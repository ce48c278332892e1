"""
Tests for attnctl.preferences — rule proposal and lifecycle.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import pytest

from attnctl.config import PreferenceConfig
from attnctl.preferences import (
    InvalidTransition,
    PreferenceLearner,
    RuleNotFound,
    detect_path_exceptions,
    rule_text_for,
)
from attnctl.store import AttentionStore
from attnctl.types import CorrectionRecord, PreferenceRule


@pytest.fixture
def store():
    s = AttentionStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def learner(store):
    return PreferenceLearner(store)


def _corr(url, to, frm="Misc", ts="2025-03-01T10:00:00Z"):
    return CorrectionRecord(url=url, from_category=frm, to_category=to, timestamp=ts)


def _news(reading=4, work=1):
    return (
        [_corr(f"https://news.example.com/a{i}", "Reading") for i in range(reading)]
        + [_corr("https://news.example.com/w", "Work")] * work
    )


class TestPropose:
    def test_four_of_five_agree(self, learner):
        [rule] = learner.propose(_news())
        assert rule.state == "pending"
        assert rule.domain == "news.example.com"
        assert rule.category == "Reading"
        assert rule.confidence == pytest.approx(0.8)
        assert rule.stats["to_categories"] == {"Reading": 4, "Work": 1}
        assert rule.stats["total_corrections"] == 5

    def test_too_few_corrections(self, learner):
        assert learner.propose(_news(reading=2, work=0)) == []

    def test_low_agreement(self, learner):
        assert learner.propose(_news(reading=2, work=2)) == []

    def test_custom_thresholds(self, store):
        learner = PreferenceLearner(store, PreferenceConfig(min_corrections=2, min_agreement=0.5))
        assert len(learner.propose(_news(reading=2, work=2))) == 1

    def test_not_applied_before_approval(self, learner):
        learner.propose(_news())
        assert learner.approved_rules() == []
        assert learner.suggest_category("https://news.example.com/z") is None

    def test_source_corrections_capped(self, learner):
        [rule] = learner.propose(_news(reading=8, work=0))
        assert len(rule.source_corrections) == 5

    def test_rule_text(self, learner):
        [rule] = learner.propose(_news())
        assert rule.rule_text == (
            'URLs from news.example.com should be classified as "Reading" (not "Misc")'
        )


class TestMonotonicConfidence:
    def test_raise_keeps_id(self, learner):
        [first] = learner.propose(_news(reading=3, work=1))
        assert first.confidence == pytest.approx(0.75)
        [raised] = learner.propose(_news(reading=5, work=1))
        assert raised.id == first.id
        assert raised.confidence == pytest.approx(5 / 6, rel=1e-5)
        [again] = learner.propose(_news(reading=3, work=1))
        assert again.id == first.id
        assert again.confidence == pytest.approx(5 / 6, rel=1e-5)

    def test_one_rule_per_domain(self, learner):
        learner.propose(_news())
        learner.propose(_news())
        assert len(learner.list_rules()) == 1


class TestMajorityShift:
    def test_new_majority_supersedes_pending(self, learner, store):
        [reading] = learner.propose(_news(reading=3, work=0))
        [work] = learner.propose(_news(reading=3, work=7))
        assert work.category == "Work"
        assert work.id != reading.id
        old = learner.get(reading.id)
        assert old.state == "rejected"
        assert old.superseded_by == work.id
        assert [r.id for r in learner.list_rules("pending")] == [work.id]
        [ev] = store.read_events(action="rule_supersede")
        assert ev["details"]["superseded_by"] == work.id

    def test_approving_all_leaves_one_active(self, learner):
        learner.propose(_news(reading=3, work=0))
        learner.propose(_news(reading=3, work=7))
        for rule in learner.list_rules():
            try:
                learner.approve(rule.id)
            except InvalidTransition:
                pass
        [active] = learner.approved_rules()
        assert active.category == "Work"
        assert learner.suggest_category("https://news.example.com/x").id == active.id

    def test_supersession_keeps_evidence(self, learner):
        learner.propose(_news(reading=3, work=0))
        [work] = learner.propose(_news(reading=3, work=7))
        [again] = learner.propose(_news(reading=3, work=7))
        assert again.id == work.id

    def test_second_rule_for_domain_not_approvable(self, learner, store):
        first = PreferenceRule(domain="news.example.com", category="Reading")
        second = PreferenceRule(domain="news.example.com", category="Work")
        store.upsert_rule(first)
        store.upsert_rule(second)
        learner.approve(first.id)
        with pytest.raises(InvalidTransition):
            learner.approve(second.id)
        assert learner.get(second.id).state == "pending"
        assert [r.id for r in learner.approved_rules()] == [first.id]


class TestLifecycle:
    def test_approve_idempotent(self, learner, store):
        [rule] = learner.propose(_news())
        a = learner.approve(rule.id)
        b = learner.approve(rule.id)
        assert a.state == b.state == "approved"
        assert a.decided_at == b.decided_at
        assert len(store.read_events(action="rule_approve")) == 1

    def test_approved_rule_applies(self, learner):
        [rule] = learner.propose(_news())
        learner.approve(rule.id)
        assert learner.suggest_category("https://news.example.com/z").category == "Reading"
        assert learner.suggest_category("https://other.com/z") is None

    def test_propose_ignores_domain_with_active_rule(self, learner):
        [rule] = learner.propose(_news())
        learner.approve(rule.id)
        assert learner.propose(_news(reading=9, work=0)) == []
        assert learner.get(rule.id).confidence == pytest.approx(0.8)

    def test_reject_is_terminal(self, learner):
        [rule] = learner.propose(_news())
        learner.reject(rule.id)
        assert learner.reject(rule.id).state == "rejected"
        with pytest.raises(InvalidTransition):
            learner.approve(rule.id)

    def test_reject_resets_evidence(self, learner):
        [rule] = learner.propose(_news())
        learner.reject(rule.id)
        # Same old corrections are not fresh evidence
        assert learner.propose(_news()) == []
        fresh = [
            _corr(f"https://news.example.com/n{i}", "Reading", ts="2099-01-01T00:00:00Z")
            for i in range(3)
        ]
        [again] = learner.propose(_news() + fresh)
        assert again.id != rule.id
        assert again.stats["total_corrections"] == 3

    def test_forget_tombstone(self, learner):
        [rule] = learner.propose(_news())
        learner.approve(rule.id)
        forgotten = learner.forget(rule.id)
        assert forgotten.forgotten_at is not None
        assert not forgotten.active
        assert learner.forget(rule.id).forgotten_at == forgotten.forgotten_at
        with pytest.raises(InvalidTransition):
            learner.approve(rule.id)
        assert learner.list_rules() == []
        assert len(learner.list_rules(include_forgotten=True)) == 1

    def test_forget_pending_rejected(self, learner):
        [rule] = learner.propose(_news())
        with pytest.raises(InvalidTransition):
            learner.forget(rule.id)

    def test_unknown_rule(self, learner):
        with pytest.raises(RuleNotFound):
            learner.approve("RULE-missing")

    def test_record_applications(self, learner):
        [rule] = learner.propose(_news())
        assert learner.record_applications([rule.id]) == 0
        learner.approve(rule.id)
        assert learner.record_applications([rule.id, rule.id]) == 1
        assert learner.get(rule.id).application_count == 1


class TestPathExceptions:
    def test_detected(self):
        corrections = [
            _corr("https://x.com/read/1", "Reading"),
            _corr("https://x.com/read/2", "Reading"),
            _corr("https://x.com/videos/1", "Video"),
            _corr("https://x.com/videos/2", "Video"),
        ]
        assert detect_path_exceptions(corrections, "Reading") == [
            {"segment": "/videos/", "category": "Video"},
        ]

    def test_single_correction_not_an_exception(self):
        corrections = [_corr("https://x.com/videos/1", "Video")]
        assert detect_path_exceptions(corrections, "Reading") == []

    def test_exception_blocks_suggestion(self, learner):
        corrections = [
            _corr(f"https://x.com/read/{i}", "Reading") for i in range(6)
        ] + [
            _corr("https://x.com/videos/a", "Video"),
            _corr("https://x.com/videos/b", "Video"),
        ]
        [rule] = learner.propose(corrections)
        learner.approve(rule.id)
        assert learner.suggest_category("https://x.com/videos/c") is None
        assert learner.suggest_category("https://x.com/read/9").id == rule.id

    def test_rule_text_mentions_exception(self):
        text = rule_text_for(
            "x.com", "Reading", {"Misc": 2, "Work": 1},
            [{"segment": "/videos/", "category": "Video"}],
        )
        assert "often misclassified as Misc, Work" in text
        assert "/videos/" in text
