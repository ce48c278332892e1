"""
Tests for attnctl.themes — similarity graph clustering and carry-forward.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import pytest

from attnctl.config import ThemeConfig
from attnctl.interests import Interest
from attnctl.themes import ThemeClusterer, signal_keywords, theme_id_for, theme_intent
from attnctl.types import RecurrenceSignal, ThemeProposal


def _sig(identity, title, rc=3, dd=2, co=()):
    return RecurrenceSignal(
        tab_identity=identity, title=title, url=identity,
        recurrence_count=rc, distinct_days=dd, co_occurring=list(co),
        domain=identity.split("/")[2],
    )


RUST_A = "https://a.com/rust-kernel"
RUST_B = "https://b.com/rust"
PASTA = "https://c.com/cooking"


@pytest.fixture
def signals():
    return [
        _sig(RUST_A, "Rust kernel modules", rc=3, dd=3),
        _sig(RUST_B, "Rust kernel drivers", rc=3, dd=2),
        _sig(PASTA, "Pasta recipes", rc=2, dd=2),
    ]


@pytest.fixture
def clusterer():
    return ThemeClusterer()


class TestKeywords:
    def test_domain_stem_added(self):
        s = _sig("https://arxiv.org/x", "Operators explained")
        assert signal_keywords(s) == {"operators", "explained", "arxiv"}

    def test_noise_stem_skipped(self):
        s = _sig("https://github.com/x", "Operators explained")
        assert signal_keywords(s) == {"operators", "explained"}

    def test_theme_id_order_independent(self):
        assert theme_id_for(["b", "a"]) == theme_id_for(["a", "b"])
        assert theme_id_for(["a"]).startswith("THM-")


class TestCluster:
    def test_keyword_component(self, clusterer, signals):
        themes = clusterer.cluster(signals)
        assert len(themes) == 1
        t = themes[0]
        assert t.member_identities == sorted([RUST_A, RUST_B])
        assert t.keywords == ["kernel", "rust"]
        assert t.label == "Kernel / Rust"
        # 1.0 * (3 + 3) + 2.0 * (3 + 2)
        assert t.signal_score == 16.0
        assert t.status == "open"
        assert t.theme_id == theme_id_for([RUST_A, RUST_B])

    def test_singletons_dropped(self, clusterer, signals):
        themes = clusterer.cluster(signals)
        assert all(PASTA not in t.member_identities for t in themes)

    def test_low_score_filtered(self, signals):
        c = ThemeClusterer(ThemeConfig(min_signal_score=100.0))
        assert c.cluster(signals) == []

    def test_co_occurrence_edge(self, clusterer):
        x, y = "https://x.com/1", "https://y.com/2"
        themes = clusterer.cluster([
            _sig(x, "Alpha", co=[y]),
            _sig(y, "Beta", co=[x]),
        ])
        assert len(themes) == 1
        assert themes[0].label == "x.com cluster"
        assert themes[0].keywords == []

    def test_transitive_membership(self, clusterer):
        themes = clusterer.cluster([
            _sig("https://a.com/1", "Rust kernel modules"),
            _sig("https://b.com/2", "Kernel modules loading"),
            _sig("https://c.com/3", "Modules loading order"),
        ])
        assert len(themes) == 1
        assert len(themes[0].member_identities) == 3

    def test_description_mentions_titles(self, clusterer, signals):
        t = clusterer.cluster(signals)[0]
        assert "2 recurring tabs" in t.description
        assert '"Rust kernel drivers"' in t.description

    def test_deterministic(self, clusterer, signals):
        a = [t.to_dict() for t in clusterer.cluster(signals)]
        b = [t.to_dict() for t in clusterer.cluster(list(reversed(signals)))]
        assert a == b

    def test_empty(self, clusterer):
        assert clusterer.cluster([]) == []

    def test_memory_connections(self, clusterer, signals):
        interests = [
            Interest(name="Systems programming", keywords=["rust", "kernel"]),
            Interest(name="Cooking", keywords=["pasta"]),
        ]
        t = clusterer.cluster(signals, interests=interests)[0]
        assert t.memory_connections == ["Systems programming"]


class TestCarryForward:
    def test_prior_id_status_label_kept(self, clusterer, signals):
        prior = [{
            "theme_id": "THM-previous",
            "status": "saved",
            "label": "My Rust reading",
            "member_identities": [RUST_A, RUST_B, "https://gone.com"],
        }]
        t = clusterer.cluster(signals, prior=prior)[0]
        assert t.theme_id == "THM-previous"
        assert t.status == "saved"
        assert t.label == "My Rust reading"

    def test_low_overlap_gets_new_id(self, clusterer, signals):
        prior = [{
            "theme_id": "THM-previous",
            "status": "archived",
            "member_identities": [RUST_A, "https://x.com", "https://y.com"],
        }]
        t = clusterer.cluster(signals, prior=prior)[0]
        assert t.theme_id == theme_id_for([RUST_A, RUST_B])
        assert t.status == "open"

    def test_prior_used_once(self, clusterer):
        # Two themes, one prior: only the best match inherits
        signals = [
            _sig("https://a.com/1", "Rust kernel modules"),
            _sig("https://b.com/2", "Rust kernel drivers"),
            _sig("https://c.com/3", "Pasta recipes sauce"),
            _sig("https://d.com/4", "Pasta recipes italian"),
        ]
        prior = [{
            "theme_id": "THM-previous", "status": "watching",
            "member_identities": ["https://a.com/1", "https://b.com/2"],
        }]
        themes = clusterer.cluster(signals, prior=prior)
        assert sum(t.theme_id == "THM-previous" for t in themes) == 1


class TestThemeIntent:
    def test_short_thread_asks(self, clusterer, signals):
        t = clusterer.cluster(signals)[0]
        assert t.distinct_days == 3
        assert t.candidate_intent == (
            "These tabs suggest a thread around kernel / rust. Is this an active pursuit?"
        )

    def test_memory_connection_named(self, clusterer, signals):
        interests = [Interest(name="Systems programming", keywords=["rust", "kernel"])]
        t = clusterer.cluster(signals, interests=interests)[0]
        assert t.candidate_intent == (
            "These 2 tabs suggest ongoing research into Kernel / Rust, "
            'connected to your "Systems programming" notes'
        )

    def test_sustained_activity(self):
        theme = ThemeProposal(
            theme_id="THM-x", label="Rust", member_identities=["a", "b"], distinct_days=7,
        )
        assert theme_intent(theme) == (
            "This cluster of 2 tabs across 7 days looks like sustained rust activity. "
            "What's the goal?"
        )

    def test_many_tabs(self):
        theme = ThemeProposal(
            theme_id="THM-x", label="Rust", member_identities=list("abcdef"), distinct_days=2,
        )
        assert theme_intent(theme) == (
            "6 tabs converging on rust: this looks like an active investigation"
        )

    def test_uses_carried_label(self, clusterer, signals):
        prior = [{
            "theme_id": "THM-previous", "status": "saved", "label": "My Rust reading",
            "member_identities": [RUST_A, RUST_B],
        }]
        t = clusterer.cluster(signals, prior=prior)[0]
        assert "my rust reading" in t.candidate_intent
