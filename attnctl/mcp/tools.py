"""
attnctl MCP Tools — attention operations exposed over MCP.

Thin wrappers around AttentionEngine.  Each tool follows the same
middleware order as the rest of the MCP layer:

    ① Path guard       — db path validated once at registration
    ② Rate limiter     — read/write budget for the client session
    ③ Tool execution   — guard payload caps → engine call
    ④ Audit log        — always, including on failure (finally block)

Tool groups:
    LOCK:        lock_status, lock_acquire, lock_release, lock_force_clear
    TASKS:       task_candidates, task_top, task_stats, task_action
    THEMES:      theme_proposals, theme_feedback
    FEEDBACK:    intent_proposals, intent_feedback
    PREFERENCES: preferences_list, preferences_propose,
                 preference_approve, preference_reject, preference_forget
    CAPTURE:     session_capture, disposition_append

Every tool returns a dict with a "status" key:
    ok | conflict | not_found | rejected | rate_limited | error

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

from attnctl.engine import AttentionEngine, UnknownSubject
from attnctl.feedback import AlreadyResolved
from attnctl.lock import AlreadyLocked, NotHeld
from attnctl.preferences import InvalidTransition, RuleNotFound
from attnctl.types import Session

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"

# Lifecycle conflicts: the request was valid but the current state forbids it
_CONFLICTS = (AlreadyLocked, NotHeld, InvalidTransition)
_NOT_FOUND = (UnknownSubject, RuleNotFound)


def register_attention_tools(
    mcp,
    engine: AttentionEngine,
    *,
    guard=None,
    rate_limiter=None,
    audit=None,
) -> None:
    """
    Register the attention MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        engine: Fully initialized AttentionEngine.
        guard: ServerGuard for path/payload validation.
        rate_limiter: RateLimiter for throttling (None = unlimited).
        audit: AuditLogger for structured logging.
    """
    from attnctl.mcp.audit import AuditLogger
    from attnctl.mcp.guard import GuardError, ServerGuard
    from attnctl.mcp.rate_limiter import RateLimitExceeded

    if guard is None:
        guard = ServerGuard()
    if audit is None:
        audit = AuditLogger()

    db_path = engine.store.db_path
    _audit_db = db_path if db_path == ":memory:" else guard.relative_db_path(Path(db_path).resolve())

    def _sid() -> str:
        return DEFAULT_SESSION_ID

    def _failure(e: Exception) -> Dict[str, Any]:
        """Map an exception to a status response."""
        if isinstance(e, RateLimitExceeded):
            return {"status": "rate_limited", "retry_after_ms": e.retry_after_ms,
                    "message": str(e)}
        if isinstance(e, GuardError):
            return {"status": "rejected", "message": str(e)}
        if isinstance(e, _CONFLICTS):
            resp: Dict[str, Any] = {"status": "conflict", "message": str(e)}
            if isinstance(e, AlreadyLocked):
                resp["holder"] = e.holder
            return resp
        if isinstance(e, _NOT_FOUND):
            return {"status": "not_found", "message": str(e)}
        return {"status": "error", "message": str(e)}

    # =====================================================================
    # LOCK
    # =====================================================================

    @mcp.tool()
    def lock_status() -> Dict[str, Any]:
        """Current session lock (no side effects).

        Returns:
            locked: Whether a session holds the lock.
            lock: Holder, locked_at, resume_state, items_remaining (or None).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        try:
            if rate_limiter:
                rate_limiter.check_read(session_id)
            lock = engine.locks.status()
            return {"status": "ok", "locked": lock is not None,
                    "lock": lock.to_dict() if lock else None}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("lock_status", rid, session_id, _audit_db,
                      outcome, {}, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def lock_acquire(
        session_id: str,
        resume_state: Optional[Dict[str, Any]] = None,
        items_remaining: int = 0,
    ) -> Dict[str, Any]:
        """Take the global session lock for a triage session.

        Re-acquiring with the holder's own session_id is a no-op success.
        Returns status "conflict" with the current holder otherwise.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        client_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {"session": session_id}
        try:
            if rate_limiter:
                rate_limiter.check_write(client_id)
            lock = engine.locks.acquire(session_id, resume_state, items_remaining)
            return {"status": "ok", "lock": lock.to_dict()}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("lock_acquire", rid, client_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def lock_release(session_id: str) -> Dict[str, Any]:
        """Release the lock held by session_id ("conflict" if not the holder)."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        client_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {"session": session_id}
        try:
            if rate_limiter:
                rate_limiter.check_write(client_id)
            engine.locks.release(session_id)
            return {"status": "ok", "released": session_id}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("lock_release", rid, client_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def lock_force_clear(reason: str = "", actor: str = "mcp") -> Dict[str, Any]:
        """Unconditionally clear the session lock (recovery path, audited).

        Args:
            reason: Why the lock is being cleared.
            actor: Who clears it.

        Returns:
            cleared_holder: Session that held the lock, or None.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        client_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {"reason": reason, "actor": actor}
        try:
            if rate_limiter:
                rate_limiter.check_write(client_id)
            holder = engine.locks.force_clear(reason, actor)
            detail["holder"] = holder
            return {"status": "ok", "cleared_holder": holder}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("lock_force_clear", rid, client_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    # =====================================================================
    # TASKS
    # =====================================================================

    @mcp.tool()
    def task_candidates(refresh: bool = False, limit: int = 20) -> Dict[str, Any]:
        """Ranked task candidates from the latest published pass.

        Args:
            refresh: Run a new aggregation pass first.
            limit: Max candidates returned (default 20).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {"refresh": refresh}
        try:
            if rate_limiter:
                rate_limiter.check_read(session_id)
            result = engine.latest(refresh)
            candidates = [c.to_dict() for c in result.candidates[:limit]]
            detail["count"] = len(candidates)
            return {
                "status": "ok",
                "pass_seq": result.seq,
                "count": len(candidates),
                "total": len(result.candidates),
                "candidates": candidates,
            }
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("task_candidates", rid, session_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    async def task_top(enrich: bool = True) -> Dict[str, Any]:
        """The One Thing: highest-ranked candidate, with display text.

        With enrich=True the configured LLM command frames the candidate;
        on failure or timeout, deterministic fallback text is returned
        (kind = "fallback" or "timed_out").
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            if rate_limiter:
                rate_limiter.check_read(session_id)
            if enrich:
                result = await engine.enrich_top()
                if result is None:
                    return {"status": "ok", "task": None}
                detail["kind"] = result.kind
                return {"status": "ok", "task": result.to_dict()}
            top = engine.top_task()
            return {"status": "ok", "task": {"kind": "plain",
                                             "candidate": top.to_dict()} if top else None}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("task_top", rid, session_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def task_stats() -> Dict[str, Any]:
        """Attention stats, feedback accuracy, lock and rule counts."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        try:
            return {"status": "ok", **engine.stats()}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("task_stats", rid, session_id, _audit_db,
                      outcome, {}, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def task_action(
        task_id: str,
        action: str,
        idempotency_key: Optional[str] = None,
        hours: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Act on a task candidate (one logical ledger append).

        Args:
            task_id: Candidate id from task_candidates.
            action: ghost_tab: engage|release|defer;
                    project_revival: engage|pause|defer;
                    tab_bankruptcy: release_all|defer.
            idempotency_key: Retry-safe key; a replay returns the first result.
            hours: Defer duration (default from config).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {"task_id": task_id, "action": action}
        try:
            task = next((c for c in engine.candidates() if c.id == task_id), None)
            if task is not None and action == "release_all":
                guard.check_batch(len(task.members))
                if rate_limiter:
                    rate_limiter.check_write_n(session_id, max(1, len(task.members)))
            elif rate_limiter:
                rate_limiter.check_write(session_id)
            result = engine.task_action(task_id, action, idempotency_key, hours)
            detail["dispositions"] = len(result["dispositions"])
            return {"status": "ok", **result}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("task_action", rid, session_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    # =====================================================================
    # THEMES AND FEEDBACK
    # =====================================================================

    @mcp.tool()
    def theme_proposals(refresh: bool = False, status: Optional[str] = None) -> Dict[str, Any]:
        """Detected themes with their stored status and label.

        Args:
            refresh: Run a new aggregation pass first.
            status: Filter (open|saved|watching|archived).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {"refresh": refresh}
        try:
            if rate_limiter:
                rate_limiter.check_read(session_id)
            themes = engine.themes(refresh)
            if status:
                themes = [t for t in themes if t.status == status]
            detail["count"] = len(themes)
            return {"status": "ok", "count": len(themes),
                    "themes": [t.to_dict() for t in themes]}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("theme_proposals", rid, session_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def theme_feedback(
        theme_id: str,
        action: str,
        value: Optional[str] = None,
        occurrence: str = "",
    ) -> Dict[str, Any]:
        """Feedback or curation on a theme.

        Args:
            theme_id: THM-... id from theme_proposals.
            action: confirm|correct|dismiss|save|archive|keep-watching|rename.
            value: New label for correct/rename.
            occurrence: Proposal occurrence (one resolving feedback each).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {"theme_id": theme_id, "action": action}
        try:
            if rate_limiter:
                rate_limiter.check_write(session_id)
            theme = engine.theme_feedback(theme_id, action, value, occurrence)
            return {"status": "ok", "theme": theme.to_dict()}
        except AlreadyResolved as e:
            logger.info(f"theme_feedback: {e}")
            detail["already_resolved"] = True
            return {"status": "ok", "already_resolved": True, "message": str(e)}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("theme_feedback", rid, session_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def intent_proposals(limit: Optional[int] = None, refresh: bool = False) -> Dict[str, Any]:
        """Hypotheses about why recurring tabs keep coming back.

        Tabs that already received feedback are left out; answer a proposal
        with intent_feedback using its subject_id.

        Args:
            limit: Maximum proposals (default from config).
            refresh: Run a new aggregation pass first.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {"refresh": refresh}
        try:
            if rate_limiter:
                rate_limiter.check_read(session_id)
            proposals = engine.intent_proposals(limit=limit, refresh=refresh)
            detail["count"] = len(proposals)
            return {"status": "ok", "count": len(proposals),
                    "proposals": [p.to_dict() for p in proposals],
                    "stats": engine.feedback.stats()}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("intent_proposals", rid, session_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def intent_feedback(
        subject_id: str,
        action: str,
        corrected_value: Optional[str] = None,
        occurrence: str = "",
    ) -> Dict[str, Any]:
        """Record the resolving feedback (confirm|correct|dismiss) for a proposal.

        A second feedback for the same (subject, occurrence) is a no-op
        success flagged with already_resolved.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {"subject_id": subject_id, "action": action}
        try:
            if rate_limiter:
                rate_limiter.check_write(session_id)
            fb = engine.feedback.record(subject_id, action, corrected_value, occurrence)
            return {"status": "ok", "feedback": fb.to_dict(),
                    "stats": engine.feedback.stats()}
        except AlreadyResolved as e:
            logger.info(f"intent_feedback: {e}")
            detail["already_resolved"] = True
            return {"status": "ok", "already_resolved": True, "message": str(e)}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("intent_feedback", rid, session_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    # =====================================================================
    # PREFERENCES
    # =====================================================================

    @mcp.tool()
    def preferences_list(
        state: Optional[str] = None, include_forgotten: bool = False,
    ) -> Dict[str, Any]:
        """Preference rules, optionally filtered by state (pending|approved|rejected)."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {"state": state}
        try:
            if rate_limiter:
                rate_limiter.check_read(session_id)
            rules = engine.learner.list_rules(state, include_forgotten)
            detail["count"] = len(rules)
            return {"status": "ok", "count": len(rules),
                    "rules": [r.to_dict() for r in rules]}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("preferences_list", rid, session_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def preferences_propose() -> Dict[str, Any]:
        """Evaluate recorded corrections and return the pending rules they support."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            if rate_limiter:
                rate_limiter.check_write(session_id)
            rules = engine.propose_preferences()
            detail["pending"] = len(rules)
            return {"status": "ok", "count": len(rules),
                    "rules": [r.to_dict() for r in rules]}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("preferences_propose", rid, session_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    def _transition(tool: str, rule_id: str, fn) -> Dict[str, Any]:
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {"rule_id": rule_id}
        try:
            if rate_limiter:
                rate_limiter.check_write(session_id)
            rule = fn(rule_id)
            detail["state"] = rule.state
            return {"status": "ok", "rule": rule.to_dict()}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log(tool, rid, session_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def preference_approve(rule_id: str) -> Dict[str, Any]:
        """Approve a pending rule (idempotent on an approved rule)."""
        return _transition("preference_approve", rule_id, engine.learner.approve)

    @mcp.tool()
    def preference_reject(rule_id: str) -> Dict[str, Any]:
        """Reject a pending rule (terminal)."""
        return _transition("preference_reject", rule_id, engine.learner.reject)

    @mcp.tool()
    def preference_forget(rule_id: str) -> Dict[str, Any]:
        """Remove an approved rule from the active set."""
        return _transition("preference_forget", rule_id, engine.learner.forget)

    # =====================================================================
    # CAPTURE
    # =====================================================================

    @mcp.tool()
    def session_capture(session_json: str) -> Dict[str, Any]:
        """Import one session snapshot (JSON: id, timestamp, tabs|groups, projects).

        Capturing the same session id twice is a no-op (captured=False).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            guard.check_payload_size(session_json)
            if rate_limiter:
                rate_limiter.check_write(session_id)
            session = Session.from_dict(json.loads(session_json))
            guard.check_session_tabs(len(session.tabs))
            detail = audit.make_session_detail(session_json, len(session.tabs))
            captured = engine.capture(session)
            detail["captured"] = captured
            return {"status": "ok", "session_id": session.id, "captured": captured,
                    "tabs": len(session.tabs)}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("session_capture", rid, session_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def disposition_append(
        target: str,
        action: str,
        session_id: str = "",
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append a disposition for a URL or tab identity.

        Args:
            target: Tab URL (normalized) or identity.
            action: trash|complete|regroup|annotate.
            session_id: Session the action was taken in.
            payload: regroup {"from","to"}; annotate {"kind","until"}.
            idempotency_key: Retry-safe key; a replay returns the first entry.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        client_id = _sid()
        outcome = "ok"
        detail: Dict[str, Any] = {"action": action}
        try:
            if payload:
                guard.check_payload_size(json.dumps(payload))
            if rate_limiter:
                rate_limiter.check_write(client_id)
            d = engine.dispose(target, action, session_id, payload, idempotency_key)
            detail["seq"] = d.seq
            return {"status": "ok", "disposition": d.to_dict()}
        except Exception as e:
            resp = _failure(e)
            outcome = resp["status"]
            return resp
        finally:
            audit.log("disposition_append", rid, client_id, _audit_db,
                      outcome, detail, (time.monotonic() - t0) * 1000)
