"""
Tests for attnctl.mcp.rate_limiter — Token-bucket throttling for MCP tool calls.

Invariants tested:
    R1: Rate limiter blocks runaway writes
    R2: Read and write budgets are independent
    R3: Per-session isolation
    R4: Every registered tool is classified exactly once
    R5: Batch writes consume one token per item
    R6: Token bucket refills after time passes

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import pytest

from attnctl.mcp.rate_limiter import (
    EXEMPT_TOOLS,
    READ_TOOLS,
    WRITE_TOOLS,
    RateLimitExceeded,
    RateLimiter,
    _Bucket,
)


@pytest.fixture
def strict_limiter():
    """Strict limiter: 5 writes/min, 10 reads/min, burst x1 (no burst)."""
    return RateLimiter(writes_per_minute=5, reads_per_minute=10, burst_factor=1.0)


class TestToolClassification:
    def test_no_overlap_between_sets(self):
        assert not (WRITE_TOOLS & READ_TOOLS)
        assert not (WRITE_TOOLS & EXEMPT_TOOLS)
        assert not (READ_TOOLS & EXEMPT_TOOLS)

    def test_nineteen_tools_classified(self):
        assert len(WRITE_TOOLS | READ_TOOLS | EXEMPT_TOOLS) == 19

    def test_classify(self):
        limiter = RateLimiter()
        assert limiter.classify_tool("task_action") == "write"
        assert limiter.classify_tool("lock_status") == "read"
        assert limiter.classify_tool("task_stats") == "exempt"
        assert limiter.classify_tool("unknown_tool") == "exempt"


class TestWriteBudget:
    def test_blocks_runaway_writes(self, strict_limiter):
        for _ in range(5):
            strict_limiter.check_write("s1")
        with pytest.raises(RateLimitExceeded) as exc:
            strict_limiter.check_write("s1")
        assert exc.value.retry_after_ms > 0
        assert "5/min" in str(exc.value)

    def test_burst_capacity(self):
        limiter = RateLimiter(writes_per_minute=5, burst_factor=2.0)
        for _ in range(10):
            limiter.check_write("s1")
        with pytest.raises(RateLimitExceeded):
            limiter.check_write("s1")

    def test_batch_consumes_n(self, strict_limiter):
        strict_limiter.check_write_n("s1", 4)
        strict_limiter.check_write("s1")
        with pytest.raises(RateLimitExceeded):
            strict_limiter.check_write("s1")

    def test_oversized_batch_rejected_without_consuming(self, strict_limiter):
        with pytest.raises(RateLimitExceeded, match="6 dispositions"):
            strict_limiter.check_write_n("s1", 6)
        for _ in range(5):
            strict_limiter.check_write("s1")


class TestIsolation:
    def test_reads_independent_of_writes(self, strict_limiter):
        for _ in range(5):
            strict_limiter.check_write("s1")
        for _ in range(10):
            strict_limiter.check_read("s1")
        with pytest.raises(RateLimitExceeded, match="Read rate limit"):
            strict_limiter.check_read("s1")

    def test_sessions_independent(self, strict_limiter):
        for _ in range(5):
            strict_limiter.check_write("s1")
        strict_limiter.check_write("s2")


class TestBucket:
    def test_refill(self):
        bucket = _Bucket(capacity=2, tokens=0, refill_rate=10.0)
        bucket.last_refill -= 1.0
        assert bucket.try_consume(1) == 0

    def test_refill_capped(self):
        bucket = _Bucket(capacity=2, tokens=2, refill_rate=10.0)
        bucket.last_refill -= 100.0
        bucket.refill()
        assert bucket.tokens == 2

    def test_wait_estimate(self):
        bucket = _Bucket(capacity=1, tokens=0, refill_rate=1.0)
        wait = bucket.try_consume(1)
        assert 0 < wait <= 1000

    def test_zero_rate(self):
        bucket = _Bucket(capacity=1, tokens=0, refill_rate=0.0)
        assert bucket.try_consume(1) == 60_000
