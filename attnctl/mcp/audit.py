"""
MCP Audit Logger — Structured JSONL logging for attention tool calls.

Every tool call emits one schema-versioned record (request id, tool,
session, outcome, latency), including calls that failed or were
rate-limited.  Records never carry tab URLs or titles: session payloads
are summarized by size, SHA-256 hash and tab count.

The log() method is fire-and-forget: a broken audit sink never disrupts
tool execution.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import hashlib
import json
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

AUDIT_SCHEMA_VERSION = 1


class AuditLogger:
    """Structured JSONL audit logger for MCP tool calls."""

    def __init__(self, output: Optional[TextIO] = None):
        """
        Args:
            output: File handle for audit output. None → stderr.
        """
        self._output = output if output is not None else sys.stderr

    def new_rid(self) -> str:
        """Generate a new request ID (UUID4 hex string)."""
        return uuid.uuid4().hex

    def log(
        self,
        tool: str,
        rid: str,
        session_id: str,
        db_path: str,
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """
        Write one JSONL audit record. Fire-and-forget — never raises.

        Args:
            tool: MCP tool name (e.g. "task_action").
            rid: Request ID (from new_rid()).
            session_id: MCP client session or "default".
            db_path: DB path (root-relative via guard).
            outcome: "ok", "error", "conflict", "rejected" or "rate_limited".
            detail: Tool-specific fields.
            latency_ms: Wall-clock latency in milliseconds.
        """
        try:
            now = datetime.now(timezone.utc)
            record = {
                "v": AUDIT_SCHEMA_VERSION,
                "ts": now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z",
                "rid": rid,
                "tool": tool,
                "sid": session_id,
                "db": db_path,
                "outcome": outcome,
            }
            if detail:
                record["d"] = detail
            record["ms"] = round(latency_ms, 1)

            line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
            self._output.write(line + "\n")
            self._output.flush()
        except Exception:
            # Audit failures must never disrupt tool execution
            pass

    @staticmethod
    def make_session_detail(payload: str, tab_count: int) -> Dict[str, Any]:
        """Safe audit fields for a captured session: bytes, hash, tab count."""
        raw = payload.encode("utf-8")
        return {
            "bytes": len(raw),
            "hash": hashlib.sha256(raw).hexdigest(),
            "tabs": tab_count,
        }
