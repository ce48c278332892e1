"""
MCP Rate Limiter — Token-bucket throttling for attention tool calls.

Prevents volume abuse through the MCP interface (runaway agents flooding
the disposition ledger, tight polling of candidate lists).

No threading locks — FastMCP is async single-threaded.

Accounting definitions (tests enforce these):
    write:   session_capture, disposition_append, task_action,
             theme_feedback, intent_feedback, lock_acquire, lock_release,
             lock_force_clear, preferences_propose, preference_approve,
             preference_reject, preference_forget
    read:    task_candidates, task_top, theme_proposals, intent_proposals,
             preferences_list, lock_status
    exempt:  task_stats

A release_all task action consumes one write token per released tab.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, Set

WRITE_TOOLS: Set[str] = {
    "session_capture", "disposition_append", "task_action",
    "theme_feedback", "intent_feedback",
    "lock_acquire", "lock_release", "lock_force_clear",
    "preferences_propose", "preference_approve",
    "preference_reject", "preference_forget",
}
READ_TOOLS: Set[str] = {
    "task_candidates", "task_top", "theme_proposals", "intent_proposals",
    "preferences_list", "lock_status",
}
EXEMPT_TOOLS: Set[str] = {
    "task_stats",
}


class RateLimitExceeded(Exception):
    """Raised when a rate limit is exceeded."""

    def __init__(self, retry_after_ms: int, message: str):
        self.retry_after_ms = retry_after_ms
        super().__init__(message)


@dataclass
class _Bucket:
    """Token bucket for rate limiting."""
    capacity: float
    tokens: float
    last_refill: float = field(default_factory=time.monotonic)
    refill_rate: float = 0.0  # tokens per second

    def refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
            self.last_refill = now

    def try_consume(self, n: int = 1) -> int:
        """
        Try to consume n tokens. Returns 0 on success,
        or milliseconds to wait if insufficient tokens.
        """
        self.refill()
        if self.tokens >= n:
            self.tokens -= n
            return 0
        deficit = n - self.tokens
        return int((deficit / self.refill_rate) * 1000) if self.refill_rate > 0 else 60_000


@dataclass
class _SessionBuckets:
    read: _Bucket
    write: _Bucket


class RateLimiter:
    """Per-session read and write token buckets."""

    def __init__(
        self,
        writes_per_minute: int = 30,
        reads_per_minute: int = 120,
        burst_factor: float = 2.0,
    ):
        self._writes_per_minute = writes_per_minute
        self._reads_per_minute = reads_per_minute
        self._burst_factor = burst_factor
        self._sessions: Dict[str, _SessionBuckets] = {}

    def _get_buckets(self, session_id: str) -> _SessionBuckets:
        if session_id not in self._sessions:
            write_cap = self._writes_per_minute * self._burst_factor
            read_cap = self._reads_per_minute * self._burst_factor
            self._sessions[session_id] = _SessionBuckets(
                read=_Bucket(
                    capacity=read_cap,
                    tokens=read_cap,
                    refill_rate=self._reads_per_minute / 60.0,
                ),
                write=_Bucket(
                    capacity=write_cap,
                    tokens=write_cap,
                    refill_rate=self._writes_per_minute / 60.0,
                ),
            )
        return self._sessions[session_id]

    def check_read(self, session_id: str) -> None:
        """Consume a read token. Raise RateLimitExceeded if empty."""
        wait = self._get_buckets(session_id).read.try_consume(1)
        if wait > 0:
            raise RateLimitExceeded(
                wait,
                f"Read rate limit exceeded ({self._reads_per_minute}/min). "
                f"Retry after {wait}ms.",
            )

    def check_write(self, session_id: str) -> None:
        """Consume a write token. Raise RateLimitExceeded if empty."""
        wait = self._get_buckets(session_id).write.try_consume(1)
        if wait > 0:
            raise RateLimitExceeded(
                wait,
                f"Write rate limit exceeded ({self._writes_per_minute}/min). "
                f"Retry after {wait}ms.",
            )

    def check_write_n(self, session_id: str, n: int) -> None:
        """Consume n write tokens (batch dispositions). Raise if exceeded."""
        wait = self._get_buckets(session_id).write.try_consume(n)
        if wait > 0:
            raise RateLimitExceeded(
                wait,
                f"Write rate limit exceeded: {n} dispositions would exceed "
                f"{self._writes_per_minute}/min. Retry after {wait}ms.",
            )

    def classify_tool(self, tool_name: str) -> str:
        """Return 'write', 'read', or 'exempt' for a tool name."""
        if tool_name in WRITE_TOOLS:
            return "write"
        if tool_name in READ_TOOLS:
            return "read"
        return "exempt"
