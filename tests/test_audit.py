"""
Tests for attnctl.mcp.audit — MCP structured audit logging.

Invariants tested:
- A1: Audit record includes all required v1 fields (v, ts, rid, tool, sid, db, outcome, ms)
- A2: rid is unique per call
- A3: Session detail carries size, SHA-256 and tab count, never URLs
- A4: log() never raises (fire-and-forget, even with broken output)

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import hashlib
import io
import json

import pytest

from attnctl.mcp.audit import AUDIT_SCHEMA_VERSION, AuditLogger


@pytest.fixture
def buf():
    return io.StringIO()


@pytest.fixture
def logger(buf):
    return AuditLogger(output=buf)


def _parse_record(buf: io.StringIO) -> dict:
    buf.seek(0)
    lines = [ln for ln in buf.read().strip().splitlines() if ln]
    assert len(lines) == 1, f"Expected 1 line, got {len(lines)}"
    return json.loads(lines[0])


class TestRecordSchema:
    def test_required_fields(self, logger, buf):
        logger.log("task_action", "r1", "default", "attention.db", "ok",
                   {"task_id": "ghost-tab-abc"}, 12.345)
        rec = _parse_record(buf)
        assert rec["v"] == AUDIT_SCHEMA_VERSION
        assert rec["tool"] == "task_action"
        assert rec["rid"] == "r1"
        assert rec["sid"] == "default"
        assert rec["db"] == "attention.db"
        assert rec["outcome"] == "ok"
        assert rec["d"] == {"task_id": "ghost-tab-abc"}
        assert rec["ms"] == 12.3
        assert rec["ts"].endswith("Z")

    def test_empty_detail_omitted(self, logger, buf):
        logger.log("lock_status", "r1", "default", ":memory:", "ok")
        assert "d" not in _parse_record(buf)

    def test_rid_unique(self, logger):
        assert len({logger.new_rid() for _ in range(100)}) == 100


class TestSessionDetail:
    def test_hash_and_size(self):
        payload = json.dumps({"id": "S1", "tabs": [{"url": "https://secret.example"}]})
        d = AuditLogger.make_session_detail(payload, 1)
        assert d["bytes"] == len(payload.encode("utf-8"))
        assert d["hash"] == hashlib.sha256(payload.encode("utf-8")).hexdigest()
        assert d["tabs"] == 1
        assert "secret" not in json.dumps(d)


class _Broken(io.StringIO):
    def write(self, s):
        raise OSError("disk gone")


class TestFireAndForget:
    def test_broken_output_does_not_raise(self):
        AuditLogger(output=_Broken()).log("task_top", "r1", "default", "db", "ok")

    def test_closed_output_does_not_raise(self):
        out = io.StringIO()
        out.close()
        AuditLogger(output=out).log("task_top", "r1", "default", "db", "ok")
