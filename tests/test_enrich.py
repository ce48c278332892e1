"""
Tests for attnctl.enrich — bounded enrichment with explicit result types.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import asyncio
import shlex
import sys

import pytest

from attnctl.enrich import (
    CommandEnricher,
    Enriched,
    Enricher,
    Enrichment,
    EnrichmentUnavailable,
    Fallback,
    TimedOut,
    build_prompt,
    enrich_candidate,
    fallback_enrichment,
    parse_enrichment_response,
)
from attnctl.types import TaskCandidate


def _ghost():
    return TaskCandidate(
        id="ghost-tab-abc", type="ghost_tab", subject_identity="https://a.com/x",
        recurrence_count=4, distinct_days=3, score=5.5, title="Rust kernel modules",
        last_seen="2025-03-09T10:00:00Z", members=["https://a.com/x"],
    )


class _Fixed(Enricher):
    name = "fixed"

    async def enrich(self, candidate):
        return Enrichment(insight=f"about {candidate.title}")


class _Slow(Enricher):
    name = "slow"

    async def enrich(self, candidate):
        await asyncio.sleep(5)
        return Enrichment(insight="too late")


class _Broken(Enricher):
    name = "broken"

    async def enrich(self, candidate):
        raise RuntimeError("model crashed")


class _Unavailable(Enricher):
    name = "unavailable"

    async def enrich(self, candidate):
        raise EnrichmentUnavailable("quota exceeded")


class _Mutating(Enricher):
    name = "mutating"

    async def enrich(self, candidate):
        candidate.score = -1.0
        candidate.id = "hijacked"
        return Enrichment(insight="ok")


class TestEnrichCandidate:
    def test_enriched(self):
        result = asyncio.run(enrich_candidate(_Fixed(), _ghost()))
        assert isinstance(result, Enriched)
        assert result.enrichment.insight == "about Rust kernel modules"
        assert result.to_dict()["kind"] == "enriched"

    def test_no_enricher_falls_back(self):
        result = asyncio.run(enrich_candidate(None, _ghost()))
        assert isinstance(result, Fallback)
        assert result.reason == "no enricher"
        assert result.enrichment.source == "fallback"

    def test_timeout(self):
        result = asyncio.run(enrich_candidate(_Slow(), _ghost(), timeout=0.05))
        assert isinstance(result, TimedOut)
        assert result.timeout_s == 0.05
        assert result.enrichment.insight.startswith("You've opened this 4 times")

    def test_failure_falls_back(self):
        result = asyncio.run(enrich_candidate(_Broken(), _ghost()))
        assert isinstance(result, Fallback)
        assert "model crashed" in result.reason

    def test_unavailable_falls_back(self):
        result = asyncio.run(enrich_candidate(_Unavailable(), _ghost()))
        assert isinstance(result, Fallback)
        assert result.reason == "quota exceeded"

    def test_candidate_never_modified(self):
        cand = _ghost()
        result = asyncio.run(enrich_candidate(_Mutating(), cand))
        assert cand.id == "ghost-tab-abc"
        assert cand.score == 5.5
        assert result.candidate.id == "ghost-tab-abc"


class TestFallbackText:
    def test_ghost(self):
        e = fallback_enrichment(_ghost())
        assert [a["type"] for a in e.actions] == ["engage", "release", "defer"]

    def test_project(self):
        cand = TaskCandidate(id="project-revival-thesis", type="project_revival",
                             title="Thesis", days_since_active=21)
        e = fallback_enrichment(cand)
        assert e.insight == "Thesis hasn't been touched in 21 days."
        assert [a["type"] for a in e.actions] == ["engage", "pause", "defer"]

    def test_bankruptcy(self):
        cand = TaskCandidate(id="tab-bankruptcy-x", type="tab_bankruptcy", affected_count=42)
        e = fallback_enrichment(cand)
        assert e.insight.startswith("42 tabs")
        assert e.actions[0]["type"] == "release_all"

    def test_deterministic(self):
        a = fallback_enrichment(_ghost()).to_dict()
        b = fallback_enrichment(_ghost()).to_dict()
        a.pop("enriched_at")
        b.pop("enriched_at")
        assert a == b


class TestPrompt:
    def test_ghost_prompt(self):
        prompt = build_prompt(_ghost())
        assert "Seen in 4 sessions over 3 distinct days" in prompt
        assert "engage|release|defer" in prompt

    def test_bankruptcy_sample(self):
        cand = TaskCandidate(id="tab-bankruptcy-x", type="tab_bankruptcy", affected_count=7,
                             members=[f"https://a.com/{i}" for i in range(7)])
        prompt = build_prompt(cand)
        assert '"https://a.com/4"' in prompt
        assert '"https://a.com/5"' not in prompt


class TestParseResponse:
    def test_camel_case(self):
        e = parse_enrichment_response(
            '{"insight": "I", "whyThisMatters": "W", "theQuestion": "Q", '
            '"actions": [{"label": "Go", "type": "engage"}], "conversationPrompts": ["p"]}'
        )
        assert e.insight == "I"
        assert e.why_this_matters == "W"
        assert e.the_question == "Q"
        assert e.actions == [{"label": "Go", "type": "engage"}]
        assert e.conversation_prompts == ["p"]

    def test_fenced_and_ansi(self):
        e = parse_enrichment_response(
            "\x1b[1mHere you go\x1b[0m\n```json\n{\"insight\": \"fenced\"}\n```"
        )
        assert e.insight == "fenced"

    def test_surrounding_prose(self):
        assert parse_enrichment_response('Sure! {"insight": "x"} Hope it helps').insight == "x"

    def test_garbage(self):
        with pytest.raises(EnrichmentUnavailable):
            parse_enrichment_response("no json here")

    def test_not_an_object(self):
        with pytest.raises(EnrichmentUnavailable):
            parse_enrichment_response("[1, 2]")


_ECHO_SCRIPT = (
    "import sys; sys.stdin.read(); "
    "print('{\"insight\": \"from command\", \"actions\": []}')"
)


class TestCommandEnricher:
    def test_empty_command(self):
        with pytest.raises(ValueError):
            CommandEnricher("  ")

    def test_runs_command(self):
        cmd = f"{shlex.quote(sys.executable)} -c {shlex.quote(_ECHO_SCRIPT)}"
        result = asyncio.run(enrich_candidate(CommandEnricher(cmd), _ghost(), timeout=30))
        assert isinstance(result, Enriched)
        assert result.enrichment.insight == "from command"

    def test_failing_command(self):
        cmd = f"{shlex.quote(sys.executable)} -c {shlex.quote('import sys; sys.exit(3)')}"
        result = asyncio.run(enrich_candidate(CommandEnricher(cmd), _ghost(), timeout=30))
        assert isinstance(result, Fallback)
        assert "exit 3" in result.reason

    def test_missing_command(self):
        enricher = CommandEnricher("attnctl-no-such-llm-binary -p")
        result = asyncio.run(enrich_candidate(enricher, _ghost(), timeout=30))
        assert isinstance(result, Fallback)
        assert "not found" in result.reason
