"""
attnctl MCP Server — Attention & Consistency Engine over MCP

Standalone MCP server exposing attnctl operations (session lock, task
candidates, themes, preference rules, intent feedback) via the Model
Context Protocol.

Architecture: thin MCP layer delegating to AttentionEngine.
No business logic in this module; it lives in attnctl/*.

Middleware:
    ServerGuard   — path validation, payload caps
    RateLimiter   — token-bucket throttling
    AuditLogger   — structured JSONL audit trail

Usage:
    attnctl-mcp --db .attention/attention.db
    attnctl-mcp --config attnctl.json --llm-cmd "claude -p"
    attnctl-mcp --db-root ~/.local/share/attnctl/db

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

_MCP_INSTRUCTIONS = (
    "Attention & consistency engine over browsing sessions (19 tools).\n"
    "\n"
    "TASKS:   task_top gives the One Thing to address; task_candidates the\n"
    "         ranked list; act on one with task_action (one ledger append).\n"
    "THEMES:  theme_proposals lists recurring clusters; theme_feedback curates.\n"
    "INTENTS: intent_proposals guesses why a tab keeps coming back; answer\n"
    "         with intent_feedback (confirm|correct|dismiss).\n"
    "LOCK:    lock_acquire before a triage session, lock_release after.\n"
    "         lock_force_clear is the audited recovery path.\n"
    "PREFS:   preferences_propose learns rules from corrections; a rule is\n"
    "         never applied before preference_approve.\n"
    "CAPTURE: session_capture imports a tab snapshot; disposition_append\n"
    "         records trash|complete|regroup|annotate.\n"
    "\n"
    "Rules:\n"
    "- Pass an idempotency_key when retrying a mutating call\n"
    "- Never approve a preference rule on the user's behalf\n"
    "- Rate limits apply: 30 writes/min, 120 reads/min\n"
)

_DEFAULT_MCP_DB_ROOT = (
    Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    / "attnctl" / "db"
)


def _env_int(name: str, default: int) -> int:
    """Read an integer from environment, with fallback."""
    val = os.environ.get(name)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            logger.warning(f"Ignoring non-integer ${name}={val!r}")
    return default


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the attention MCP server."""
    p = argparse.ArgumentParser(
        prog="attnctl-mcp",
        description="attnctl MCP Server — attention & consistency engine",
    )
    p.add_argument(
        "--db",
        default=os.environ.get("ATTNCTL_DB", ".attention/attention.db"),
        help="SQLite database path (default: .attention/attention.db or $ATTNCTL_DB)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("ATTNCTL_CONFIG"),
        help="JSON config file (default: compiled defaults or $ATTNCTL_CONFIG)",
    )
    p.add_argument(
        "--llm-cmd",
        default=os.environ.get("ATTNCTL_LLM_CMD"),
        help="LLM command used to enrich task_top (e.g. 'claude -p'); "
             "default: config value or $ATTNCTL_LLM_CMD",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    g = p.add_argument_group("path & payload guardrails")
    g.add_argument(
        "--db-root",
        default=os.environ.get("ATTNCTL_DB_ROOT"),
        help=(
            "Constrain DB paths to this directory tree. "
            "Default: ~/.local/share/attnctl/db or $ATTNCTL_DB_ROOT"
        ),
    )
    g.add_argument(
        "--secure",
        action="store_true",
        help="Enable secure defaults (db-root=CWD if not explicitly set)",
    )
    g.add_argument(
        "--max-payload-bytes",
        type=int,
        default=_env_int("ATTNCTL_MAX_PAYLOAD_BYTES", 262_144),
        help="Per-call payload cap in bytes (default: 262144)",
    )
    g.add_argument(
        "--max-tabs",
        type=int,
        default=_env_int("ATTNCTL_MAX_TABS", 500),
        help="Max tabs per captured session (default: 500)",
    )

    r = p.add_argument_group("rate limiting")
    r.add_argument(
        "--rate-limit",
        action="store_true",
        dest="rate_limit",
        default=True,
        help="Enable rate limiting (default: enabled)",
    )
    r.add_argument(
        "--no-rate-limit",
        action="store_false",
        dest="rate_limit",
        help="Disable rate limiting",
    )
    r.add_argument(
        "--writes-per-minute",
        type=int,
        default=_env_int("ATTNCTL_WRITES_PER_MINUTE", 30),
        help="Write operations cap per minute (default: 30)",
    )
    r.add_argument(
        "--reads-per-minute",
        type=int,
        default=_env_int("ATTNCTL_READS_PER_MINUTE", 120),
        help="Read operations cap per minute (default: 120)",
    )
    r.add_argument(
        "--burst-factor",
        type=float,
        default=2.0,
        help="Burst multiplier for rate limiter (default: 2.0)",
    )

    a = p.add_argument_group("audit")
    a.add_argument(
        "--audit-log",
        default=None,
        help="Audit log file path (default: stderr)",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with attention tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, engine) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from attnctl.config import load_config
    from attnctl.engine import AttentionEngine
    from attnctl.mcp.audit import AuditLogger
    from attnctl.mcp.guard import ServerGuard
    from attnctl.mcp.rate_limiter import RateLimiter
    from attnctl.mcp.tools import register_attention_tools

    if args is None:
        args = build_parser().parse_args()

    if args.db_root:
        db_root = Path(args.db_root)
    elif getattr(args, "secure", False):
        db_root = Path.cwd()
    else:
        db_root = _DEFAULT_MCP_DB_ROOT

    guard = ServerGuard(
        db_root=db_root,
        max_payload_bytes=args.max_payload_bytes,
        max_tabs_per_session=args.max_tabs,
    )
    db_path_resolved = guard.validate_db_path(args.db)
    db_path_resolved.parent.mkdir(parents=True, exist_ok=True)

    config = load_config(args.config, strict=True)
    config.store.db_path = str(db_path_resolved)
    if args.llm_cmd:
        config.enrich.llm_cmd = args.llm_cmd

    engine = AttentionEngine.open(config)
    guard.check_db_size(db_path_resolved)

    rate_limiter = None
    if args.rate_limit:
        rate_limiter = RateLimiter(
            writes_per_minute=args.writes_per_minute,
            reads_per_minute=args.reads_per_minute,
            burst_factor=args.burst_factor,
        )

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = AuditLogger(output=audit_output)

    mcp = FastMCP(
        name="attnctl Attention",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_attention_tools(
        mcp, engine,
        guard=guard,
        rate_limiter=rate_limiter,
        audit=audit,
    )

    logger.info(
        "attnctl MCP server ready: db=%s, db_root=%s, rate_limit=%s, llm=%s",
        args.db, db_root,
        "on" if rate_limiter else "off",
        config.enrich.llm_cmd or "(fallback)",
    )
    return mcp, engine


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, engine = create_server(args)
    try:
        mcp.run()
    finally:
        engine.close()


if __name__ == "__main__":
    main()
