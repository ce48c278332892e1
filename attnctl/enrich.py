"""
Enrichment — optional natural-language framing of task candidates

An Enricher turns a TaskCandidate into display text (insight, why it
matters, the question to answer, suggested actions).  The engine works
without it: enrich_candidate() bounds every call with a timeout and
returns an explicit result type

    Enriched   - the enricher answered in time
    Fallback   - no enricher, or it failed (EnrichmentUnavailable)
    TimedOut   - no answer within the timeout (default 60 s)

and Fallback/TimedOut carry deterministic text built from the candidate.
Enrichers receive a copy of the candidate: identity and score are never
changed by enrichment.

CommandEnricher runs any LLM CLI (e.g. "claude -p", "ollama run mistral")
as an asyncio subprocess with the prompt on stdin and parses a JSON answer.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import re
import shlex
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union

from attnctl.types import AttentionError, TaskCandidate, _now_iso

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 60.0


class EnrichmentUnavailable(AttentionError):
    """The enrichment collaborator failed; fallback text is used instead."""

    pass


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class Enrichment:
    """Display annotations for one candidate."""

    insight: str = ""
    why_this_matters: str = ""
    the_question: str = ""
    actions: List[Dict[str, str]] = field(default_factory=list)
    conversation_prompts: List[str] = field(default_factory=list)
    source: str = "llm"
    enriched_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Enriched:
    candidate: TaskCandidate
    enrichment: Enrichment
    kind: str = "enriched"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "candidate": self.candidate.to_dict(),
                "enrichment": self.enrichment.to_dict()}


@dataclass
class Fallback:
    candidate: TaskCandidate
    enrichment: Enrichment
    reason: str = ""
    kind: str = "fallback"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "candidate": self.candidate.to_dict(),
                "enrichment": self.enrichment.to_dict(), "reason": self.reason}


@dataclass
class TimedOut:
    candidate: TaskCandidate
    enrichment: Enrichment
    timeout_s: float = DEFAULT_TIMEOUT_S
    kind: str = "timed_out"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "candidate": self.candidate.to_dict(),
                "enrichment": self.enrichment.to_dict(), "timeout_s": self.timeout_s}


EnrichmentResult = Union[Enriched, Fallback, TimedOut]


# ---------------------------------------------------------------------------
# Deterministic fallback
# ---------------------------------------------------------------------------

_FALLBACK_ACTIONS = {
    "ghost_tab": [
        {"label": "Deal with it now", "type": "engage"},
        {"label": "Let it go", "type": "release"},
        {"label": "Come back later", "type": "defer"},
    ],
    "project_revival": [
        {"label": "Touch it briefly", "type": "engage"},
        {"label": "Put on hold", "type": "pause"},
        {"label": "Come back later", "type": "defer"},
    ],
    "tab_bankruptcy": [
        {"label": "Release all", "type": "release_all"},
        {"label": "Come back later", "type": "defer"},
    ],
}


def fallback_enrichment(candidate: TaskCandidate) -> Enrichment:
    """Display text computed from the candidate alone."""
    if candidate.type == "ghost_tab":
        insight = (
            f"You've opened this {candidate.recurrence_count} times. "
            f"It keeps coming back."
        )
    elif candidate.type == "project_revival":
        insight = (
            f"{candidate.title} hasn't been touched in "
            f"{candidate.days_since_active} days."
        )
    else:
        insight = (
            f"{candidate.affected_count} tabs keep coming back without "
            f"being resolved."
        )
    return Enrichment(
        insight=insight,
        why_this_matters=(
            "This pattern in your browsing suggests an open loop that may be "
            "worth addressing."
        ),
        the_question="What do you want to do about this?",
        actions=[dict(a) for a in _FALLBACK_ACTIONS[candidate.type]],
        conversation_prompts=[
            "Why does this keep appearing?",
            "Is this still relevant?",
            "What would help?",
        ],
        source="fallback",
    )


# ---------------------------------------------------------------------------
# Prompt building and response parsing
# ---------------------------------------------------------------------------

_RESPONSE_FORMAT = """\
RESPOND WITH ONLY THIS JSON (no markdown, no explanation):
{
  "insight": "<one direct sentence>",
  "whyThisMatters": "<two or three sentences>",
  "theQuestion": "<one sentence>",
  "actions": [{"label": "<specific action>", "type": "<%s>"}],
  "conversationPrompts": ["<question>", "<question>"]
}"""

_ACTION_TYPES = {
    "ghost_tab": "engage|release|defer",
    "project_revival": "engage|pause|defer",
    "tab_bankruptcy": "release_all|defer",
}


def build_prompt(candidate: TaskCandidate) -> str:
    """Prompt for one candidate, specialised by task type."""
    if candidate.type == "ghost_tab":
        intro = "You are analyzing a user's attention pattern to help them make a decision."
        data = (
            f'- Item: "{candidate.title}" ({candidate.subject_identity})\n'
            f"- Seen in {candidate.recurrence_count} sessions over "
            f"{candidate.distinct_days} distinct days\n"
            f"- Last seen: {candidate.last_seen}"
        )
        rules = "Be direct. The insight should provoke reflection, not describe data."
    elif candidate.type == "project_revival":
        intro = "You are helping a user reconnect with a neglected project."
        data = (
            f'- Project: "{candidate.title}"\n'
            f"- Days since last activity: {candidate.days_since_active}\n"
            f"- Sessions with this project: {candidate.recurrence_count}\n"
            f"- Tabs related to project: {candidate.affected_count}"
        )
        rules = "Offer both revival and a conscious pause; pausing is sometimes right."
    else:
        intro = "You are helping a user clear their attention debt."
        sample = "\n".join(f'- "{m}"' for m in candidate.members[:5])
        data = (
            f"- Unresolved recurring tabs: {candidate.affected_count}\n"
            f"- Average days stale: {candidate.days_since_active}\n"
            f"- Sample:\n{sample}"
        )
        rules = "Make releasing everything feel acceptable, not shameful."
    return (
        f"{intro}\n\nBEHAVIORAL DATA:\n{data}\n\n"
        f"{_RESPONSE_FORMAT % _ACTION_TYPES[candidate.type]}\n\nRULES:\n- {rules}"
    )


_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def parse_enrichment_response(text: str) -> Enrichment:
    """Extract the JSON answer of an LLM (ANSI codes and fences tolerated).

    Raises:
        EnrichmentUnavailable: If no JSON object can be decoded.
    """
    cleaned = _ANSI_RE.sub("", text or "").strip()
    m = _FENCE_RE.search(cleaned)
    if m:
        cleaned = m.group(1).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start:end + 1]
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise EnrichmentUnavailable(f"Unparseable enrichment response: {e}") from e
    if not isinstance(data, dict):
        raise EnrichmentUnavailable("Enrichment response is not a JSON object")

    def pick(*keys: str, default: Any = "") -> Any:
        for k in keys:
            if k in data:
                return data[k]
        return default

    actions = pick("actions", default=[])
    prompts = pick("conversationPrompts", "conversation_prompts", default=[])
    return Enrichment(
        insight=str(pick("insight")),
        why_this_matters=str(pick("whyThisMatters", "why_this_matters")),
        the_question=str(pick("theQuestion", "the_question")),
        actions=[
            {"label": str(a.get("label", "")), "type": str(a.get("type", ""))}
            for a in actions if isinstance(a, dict)
        ] if isinstance(actions, list) else [],
        conversation_prompts=[str(p) for p in prompts] if isinstance(prompts, list) else [],
        source="llm",
    )


# ---------------------------------------------------------------------------
# Enrichers
# ---------------------------------------------------------------------------

class Enricher:
    """Interface: ``async enrich(candidate) -> Enrichment``."""

    name = "enricher"

    async def enrich(self, candidate: TaskCandidate) -> Enrichment:
        raise NotImplementedError


class CommandEnricher(Enricher):
    """Enrich through an LLM command-line tool (prompt on stdin, JSON on stdout)."""

    name = "command"

    def __init__(self, cmd: str):
        if not cmd.strip():
            raise ValueError("CommandEnricher requires a command")
        self.cmd = cmd
        self.args = shlex.split(cmd)

    async def enrich(self, candidate: TaskCandidate) -> Enrichment:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise EnrichmentUnavailable(f"LLM command not found: {self.args[0]!r}") from e
        try:
            stdout, stderr = await proc.communicate(build_prompt(candidate).encode("utf-8"))
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            preview = stderr.decode("utf-8", errors="replace").strip()[:200]
            raise EnrichmentUnavailable(
                f"LLM command failed (exit {proc.returncode}): {preview}"
            )
        return parse_enrichment_response(stdout.decode("utf-8", errors="replace"))


async def enrich_candidate(
    enricher: Optional[Enricher],
    candidate: TaskCandidate,
    timeout: float = DEFAULT_TIMEOUT_S,
) -> EnrichmentResult:
    """Enrich one candidate within a timeout; never raises for enricher faults."""
    if enricher is None:
        return Fallback(candidate, fallback_enrichment(candidate), reason="no enricher")
    try:
        enrichment = await asyncio.wait_for(
            enricher.enrich(copy.deepcopy(candidate)), timeout,
        )
    except asyncio.TimeoutError:
        logger.warning(
            f"Enrichment of {candidate.id} timed out after {timeout}s; using fallback"
        )
        return TimedOut(candidate, fallback_enrichment(candidate), timeout_s=timeout)
    except EnrichmentUnavailable as e:
        logger.warning(f"Enrichment unavailable for {candidate.id}: {e}")
        return Fallback(candidate, fallback_enrichment(candidate), reason=str(e))
    except Exception as e:
        logger.warning(f"Enricher {enricher.name} failed on {candidate.id}: {e}")
        return Fallback(candidate, fallback_enrichment(candidate), reason=str(e))
    return Enriched(candidate, enrichment)
