"""
attnctl CLI — Attention & Consistency Engine Commands

Commands:
    attnctl init    [PATH]                        — scaffold store + config
    attnctl capture FILE|-                        — import session snapshot(s)
    attnctl scan                                  — recurring tab signals
    attnctl tasks   [--top] [--enrich] [-k N]     — ranked task candidates
    attnctl act     TASK_ID ACTION [--key K]      — act on a task candidate
    attnctl themes  [--status S] [--history]      — theme proposals
    attnctl theme   THEME_ID ACTION [--value V]   — theme feedback/curation
    attnctl dispose TARGET ACTION [--payload J]   — append a disposition
    attnctl lock    status|acquire|release|force-clear
    attnctl prefs   list|propose|approve|reject|forget
    attnctl intents [-k N] [--resolved]           — intent proposals
    attnctl feedback SUBJECT ACTION [--value V]   — intent feedback
    attnctl stats                                 — engine statistics
    attnctl serve                                 — start MCP server

Environment variables:
    ATTNCTL_DB       Path to SQLite database (default: .attention/attention.db)
    ATTNCTL_CONFIG   JSON config file (default: compiled defaults)
    ATTNCTL_LLM_CMD  LLM command for enrichment (e.g. "claude -p")

Precedence (invariant):
    CLI --flag  >  ATTNCTL_* env var  >  compiled default

Exit codes:
    0  Success (including idempotent no-op and already-resolved feedback)
    1  Operational error (bad args, lock conflict, unknown id, invalid transition)
    2  Internal failure (unexpected exception, I/O error)

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

_DEFAULT_DB = ".attention/attention.db"


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    return os.environ.get(name, default)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_db(args: Optional[argparse.Namespace] = None) -> str:
    """Resolve database path: CLI --db > ATTNCTL_DB > .attention/attention.db."""
    if args and getattr(args, "db", None):
        return args.db
    return _env_str("ATTNCTL_DB", _DEFAULT_DB)


def _resolve_config(args: Optional[argparse.Namespace] = None):
    """Load config: CLI --config > ATTNCTL_CONFIG > defaults; --llm-cmd overrides."""
    from attnctl.config import ValidationError, load_config

    path = getattr(args, "config", None) or _env_str("ATTNCTL_CONFIG", None)
    try:
        cfg = load_config(path, strict=path is not None)
    except ValidationError as e:
        _fail(str(e))
    llm_cmd = getattr(args, "llm_cmd", None) or _env_str("ATTNCTL_LLM_CMD", None)
    if llm_cmd:
        cfg.enrich.llm_cmd = llm_cmd
    return cfg


def _open_engine(args: argparse.Namespace):
    """Open an AttentionEngine on the resolved database. Creates it if needed."""
    from attnctl.engine import AttentionEngine
    return AttentionEngine.open(_resolve_config(args), _resolve_db(args))


# ---------------------------------------------------------------------------
# Output helpers (respect --quiet / --json)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _json_out(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _fail(msg: str, code: int = 1) -> None:
    _warn(msg)
    sys.exit(code)


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Initialize an attention workspace (database, config.json, .gitignore)."""
    from attnctl.config import AttentionConfig
    from attnctl.store import AttentionStore

    target = Path(args.path).resolve()
    db_path = Path(args.db).resolve() if getattr(args, "db", None) else target / "attention.db"

    if db_path.exists() and not args.force:
        _info(f"Workspace exists: {target}")
        _info(f"  Database:  {db_path}")
        print(f'export ATTNCTL_DB="{db_path}"')
        return

    if args.force and db_path.exists():
        db_path.unlink()
        for suffix in ("-wal", "-shm"):
            p = db_path.parent / (db_path.name + suffix)
            if p.exists():
                p.unlink()

    target.mkdir(parents=True, exist_ok=True)
    AttentionStore(str(db_path)).close()

    config_path = target / "config.json"
    if not config_path.exists():
        cfg = asdict(AttentionConfig())
        cfg["store"]["db_path"] = str(db_path)
        config_path.write_text(json.dumps(cfg, indent=2) + "\n", encoding="utf-8")

    gitignore_path = target / ".gitignore"
    if not gitignore_path.exists():
        gitignore_path.write_text("*.db\n*.db-wal\n*.db-shm\n", encoding="utf-8")

    _info(f"Attention workspace initialized: {target}")
    _info(f"  Database:  {db_path}")
    _info(f"  Config:    {config_path}")
    print(f'export ATTNCTL_DB="{db_path}"')


# ===========================================================================
# Command: capture
# ===========================================================================


def cmd_capture(args: argparse.Namespace) -> None:
    """Import session snapshots from a JSON file (object, list, or JSONL)."""
    from attnctl.types import Session

    if args.file == "-":
        text = sys.stdin.read()
    else:
        try:
            text = Path(args.file).read_text(encoding="utf-8")
        except OSError as e:
            _fail(f"Cannot read {args.file}: {e}")
    if not text.strip():
        _fail("No session data on input")

    try:
        data = json.loads(text)
        records = data if isinstance(data, list) else [data]
    except json.JSONDecodeError:
        try:
            records = [json.loads(line) for line in text.splitlines() if line.strip()]
        except json.JSONDecodeError as e:
            _fail(f"Invalid session JSON: {e}")

    try:
        sessions = [Session.from_dict(r) for r in records]
    except (TypeError, ValueError) as e:
        _fail(f"Invalid session record: {e}")

    engine = _open_engine(args)
    try:
        captured = sum(1 for s in sessions if engine.capture(s))
    finally:
        engine.close()

    result = {"sessions": len(sessions), "captured": captured,
              "skipped": len(sessions) - captured}
    if getattr(args, "json", False):
        _json_out({"status": "ok", **result})
    else:
        print(f"Captured {captured} session(s), {result['skipped']} already known")


# ===========================================================================
# Command: scan
# ===========================================================================


def cmd_scan(args: argparse.Namespace) -> None:
    """Print recurring unresolved tabs across the session window."""
    engine = _open_engine(args)
    try:
        signals = engine.latest().signals[:args.k]
    finally:
        engine.close()

    if getattr(args, "json", False):
        _json_out({"status": "ok", "count": len(signals),
                   "signals": [s.to_dict() for s in signals]})
        return
    if not signals:
        _info("No recurring tabs.")
        return
    for s in signals:
        print(f"{s.recurrence_count:3d}x {s.distinct_days:3d}d  {s.title or s.tab_identity}")
        print(f"          {s.url}")


# ===========================================================================
# Command: tasks / act
# ===========================================================================


def cmd_tasks(args: argparse.Namespace) -> None:
    """Print ranked task candidates (or the One Thing with --top)."""
    engine = _open_engine(args)
    try:
        if args.top:
            if args.enrich:
                result = asyncio.run(engine.enrich_top())
                payload = result.to_dict() if result else None
            else:
                top = engine.top_task()
                payload = {"kind": "plain", "candidate": top.to_dict()} if top else None
            if getattr(args, "json", False):
                _json_out({"status": "ok", "task": payload})
            elif payload is None:
                _info("Nothing needs your attention.")
            else:
                c = payload["candidate"]
                print(f"[{c['type']}] {c['title'] or c['subject_identity']}  ({c['id']})")
                if "enrichment" in payload:
                    e = payload["enrichment"]
                    print(f"  {e['insight']}")
                    print(f"  {e['the_question']}")
                    for a in e["actions"]:
                        print(f"    - {a['label']} ({a['type']})")
            return

        candidates = engine.candidates()[:args.k]
    finally:
        engine.close()

    if getattr(args, "json", False):
        _json_out({"status": "ok", "count": len(candidates),
                   "candidates": [c.to_dict() for c in candidates]})
        return
    if not candidates:
        _info("No task candidates.")
        return
    for c in candidates:
        print(f"{c.score:8.2f}  {c.type:16s} {c.id}")
        print(f"          {c.title or c.subject_identity}")


def cmd_act(args: argparse.Namespace) -> None:
    """Apply engage|release|defer|pause|release_all to a task candidate."""
    from attnctl.engine import UnknownSubject

    engine = _open_engine(args)
    try:
        result = engine.task_action(args.task_id, args.action, args.key, args.hours)
    except (UnknownSubject, ValueError) as e:
        _fail(str(e))
    finally:
        engine.close()

    if getattr(args, "json", False):
        _json_out({"status": "ok", **result})
    else:
        print(f"{result['action']} {result['task_id']}: "
              f"{len(result['dispositions'])} disposition(s) recorded")


# ===========================================================================
# Command: themes / theme
# ===========================================================================


def cmd_themes(args: argparse.Namespace) -> None:
    """Print detected themes, or stored theme history with --history."""
    engine = _open_engine(args)
    try:
        if args.history:
            rows = engine.theme_history(args.status)
        else:
            rows = [t.to_dict() for t in engine.themes()
                    if not args.status or t.status == args.status]
    finally:
        engine.close()

    if getattr(args, "json", False):
        _json_out({"status": "ok", "count": len(rows), "themes": rows})
        return
    if not rows:
        _info("No themes.")
        return
    for t in rows:
        score = f"{t['signal_score']:7.1f}  " if "signal_score" in t else ""
        print(f"{score}{t['theme_id']}  [{t['status']}]  {t['label']}")
        print(f"          {len(t['member_identities'])} tabs")


def cmd_theme(args: argparse.Namespace) -> None:
    """Record feedback or a curation action on a theme."""
    from attnctl.engine import UnknownSubject
    from attnctl.feedback import AlreadyResolved

    engine = _open_engine(args)
    try:
        theme = engine.theme_feedback(args.theme_id, args.action, args.value, args.occurrence)
    except AlreadyResolved as e:
        _info(str(e))
        return
    except (UnknownSubject, ValueError) as e:
        _fail(str(e))
    finally:
        engine.close()

    if getattr(args, "json", False):
        _json_out({"status": "ok", "theme": theme.to_dict()})
    else:
        print(f"{theme.theme_id}: {theme.status} ({theme.label})")


# ===========================================================================
# Command: dispose
# ===========================================================================


def cmd_dispose(args: argparse.Namespace) -> None:
    """Append one disposition for a URL or tab identity."""
    payload = {}
    if args.payload:
        try:
            payload = json.loads(args.payload)
        except json.JSONDecodeError as e:
            _fail(f"Invalid --payload JSON: {e}")
        if not isinstance(payload, dict):
            _fail("--payload must be a JSON object")

    engine = _open_engine(args)
    try:
        d = engine.dispose(args.target, args.action, args.session or "", payload, args.key)
    except ValueError as e:
        _fail(str(e))
    finally:
        engine.close()

    if getattr(args, "json", False):
        _json_out({"status": "ok", "disposition": d.to_dict()})
    else:
        print(f"#{d.seq} {d.action} {d.tab_identity}")


# ===========================================================================
# Command: lock
# ===========================================================================


def cmd_lock(args: argparse.Namespace) -> None:
    """Session lock: status, acquire, release, force-clear."""
    from attnctl.lock import AlreadyLocked, NotHeld

    engine = _open_engine(args)
    try:
        if args.lock_cmd == "status":
            lock = engine.locks.status()
            result = {"locked": lock is not None, "lock": lock.to_dict() if lock else None}
        elif args.lock_cmd == "acquire":
            lock = engine.locks.acquire(args.session_id)
            result = {"lock": lock.to_dict()}
        elif args.lock_cmd == "release":
            engine.locks.release(args.session_id)
            result = {"released": args.session_id}
        else:
            holder = engine.locks.force_clear(args.reason, args.actor)
            result = {"cleared_holder": holder}
    except AlreadyLocked as e:
        _fail(f"Lock conflict: {e}")
    except NotHeld as e:
        _fail(f"Lock not held: {e}")
    finally:
        engine.close()

    if getattr(args, "json", False):
        _json_out({"status": "ok", **result})
    elif args.lock_cmd == "status":
        lock = result["lock"]
        if lock is None:
            print("unlocked")
        else:
            print(f"locked by {lock['session_id']} since {lock['locked_at']} "
                  f"({lock['items_remaining']} items remaining)")
    elif args.lock_cmd == "force-clear":
        print(f"cleared (holder: {result['cleared_holder'] or 'none'})")
    else:
        print(f"{args.lock_cmd}d {args.session_id}")


# ===========================================================================
# Command: prefs
# ===========================================================================


def cmd_prefs(args: argparse.Namespace) -> None:
    """Preference rules: list, propose, approve, reject, forget."""
    from attnctl.preferences import InvalidTransition, RuleNotFound

    engine = _open_engine(args)
    try:
        if args.prefs_cmd == "list":
            rules = engine.learner.list_rules(args.state, args.all)
        elif args.prefs_cmd == "propose":
            rules = engine.propose_preferences()
        else:
            fn = getattr(engine.learner, args.prefs_cmd)
            rules = [fn(args.rule_id)]
    except (RuleNotFound, InvalidTransition) as e:
        _fail(str(e))
    finally:
        engine.close()

    if getattr(args, "json", False):
        _json_out({"status": "ok", "count": len(rules), "rules": [r.to_dict() for r in rules]})
        return
    if not rules:
        _info("No preference rules.")
        return
    for r in rules:
        state = r.state + (" (forgotten)" if r.forgotten_at else "")
        print(f"{r.id}  [{state}]  {r.confidence:.2f}  {r.rule_text}")


# ===========================================================================
# Command: feedback
# ===========================================================================


def cmd_feedback(args: argparse.Namespace) -> None:
    """Record confirm|correct|dismiss on a proposal; prints running accuracy."""
    from attnctl.feedback import AlreadyResolved

    engine = _open_engine(args)
    try:
        engine.feedback.record(args.subject_id, args.action, args.value, args.occurrence)
    except AlreadyResolved as e:
        _info(str(e))
    except ValueError as e:
        _fail(str(e))
    finally:
        stats = engine.feedback.stats()
        engine.close()

    if getattr(args, "json", False):
        _json_out({"status": "ok", **stats})
    else:
        print(f"accuracy {stats['accuracy']:.2f} "
              f"({stats['confirmed']}/{stats['total']} confirmed)")


# ===========================================================================
# Command: intents
# ===========================================================================


def cmd_intents(args: argparse.Namespace) -> None:
    """Print intent proposals, or the answered ones with --resolved."""
    engine = _open_engine(args)
    try:
        if args.resolved:
            resolved = engine.feedback.resolved()
        else:
            rows = [p.to_dict() for p in engine.intent_proposals(limit=args.k)]
    finally:
        engine.close()

    as_json = getattr(args, "json", False)
    if args.resolved:
        if as_json:
            _json_out({"status": "ok", "count": len(resolved), "resolved": resolved})
            return
        for subject, entries in sorted(resolved.items()):
            last = entries[-1]
            value = f" -> {last['corrected_value']}" if last.get("corrected_value") else ""
            print(f"{last['action']:8s}  {subject}{value}")
        return
    if as_json:
        _json_out({"status": "ok", "count": len(rows), "proposals": rows})
        return
    if not rows:
        _info("No intent proposals.")
        return
    for p in rows:
        print(f"{p['signal_score']:6.0f}  {p['subject_id']}")
        print(f"        {p['candidate_intent']}")
        for alt in p["alternative_intents"]:
            print(f"        or: {alt}")


# ===========================================================================
# Command: stats
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show attention, feedback, lock and store statistics."""
    engine = _open_engine(args)
    try:
        stats = engine.stats()
    finally:
        engine.close()

    if getattr(args, "json", False):
        _json_out({"status": "ok", **stats})
        return
    att = stats["attention"]
    print("Attention Statistics")
    print("=" * 40)
    print(f"  Sessions:          {att['total_sessions']}")
    print(f"  Tabs captured:     {att['total_tabs']}")
    print(f"  Unique tabs:       {att['unique_identities']}")
    print(f"  Ghost tabs:        {att['ghost_tab_count']}")
    print(f"  Neglected projects:{att['neglected_project_count']:>3d}")
    print(f"  Dispositions:      {att['dispositions']['entries']}")
    print(f"  Feedback accuracy: {stats['feedback']['accuracy']:.2f}")
    rules = stats["rules"]
    print(f"  Rules:             {rules['approved']} approved, "
          f"{rules['pending']} pending, {rules['rejected']} rejected")
    lock = stats["lock"]
    print(f"  Lock:              {lock['session_id'] if lock else 'free'}")


# ===========================================================================
# Command: serve
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the attnctl MCP server in foreground."""
    try:
        from attnctl.mcp.server import build_parser as mcp_parser, create_server
    except ImportError:
        _fail("MCP dependencies not installed. Run: pip install attnctl[mcp]")

    server_argv = ["--db", _resolve_db(args)]
    if getattr(args, "config", None):
        server_argv.extend(["--config", args.config])
    if getattr(args, "llm_cmd", None):
        server_argv.extend(["--llm-cmd", args.llm_cmd])
    if getattr(args, "db_root", None):
        server_argv.extend(["--db-root", args.db_root])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")
    server_args = mcp_parser().parse_args(server_argv)

    try:
        mcp, engine = create_server(server_args)
    except ImportError:
        _fail("MCP dependencies not installed. Run: pip install attnctl[mcp]")

    _info(f"attnctl MCP server (db={server_args.db})")
    _info("Press Ctrl+C to stop.")
    try:
        mcp.run()
    finally:
        engine.close()


# ===========================================================================
# Entry point
# ===========================================================================


def main() -> None:
    """CLI entry point: attnctl <command> [args]."""
    global _quiet

    # SUPPRESS defaults keep subparser defaults from overriding main-level flags
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite database (default: $ATTNCTL_DB or {_DEFAULT_DB})",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: $ATTNCTL_CONFIG or compiled defaults)",
    )
    _common.add_argument(
        "--llm-cmd", default=argparse.SUPPRESS,
        help="LLM command for enrichment (default: $ATTNCTL_LLM_CMD)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="attnctl",
        description="attnctl — attention & consistency engine for browsing sessions",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- init --------------------------------------------------------------
    p_init = sub.add_parser("init", parents=[_common], help="Initialize an attention workspace")
    p_init.add_argument("path", nargs="?", default=".attention",
                        help="Workspace directory (default: .attention)")
    p_init.add_argument("--force", action="store_true", help="Reinitialize existing workspace")
    p_init.set_defaults(func=cmd_init)

    # -- capture -----------------------------------------------------------
    p_cap = sub.add_parser("capture", parents=[_common], help="Import session snapshot(s)")
    p_cap.add_argument("file", help="Session JSON file (object, list or JSONL), '-' for stdin")
    p_cap.set_defaults(func=cmd_capture)

    # -- scan --------------------------------------------------------------
    p_scan = sub.add_parser("scan", parents=[_common], help="Recurring unresolved tabs")
    p_scan.add_argument("-k", type=int, default=20, help="Max signals (default: 20)")
    p_scan.set_defaults(func=cmd_scan)

    # -- tasks / act -------------------------------------------------------
    p_tasks = sub.add_parser("tasks", parents=[_common], help="Ranked task candidates")
    p_tasks.add_argument("--top", action="store_true", help="Only the One Thing")
    p_tasks.add_argument("--enrich", action="store_true",
                         help="Frame the top task with the LLM command (fallback text otherwise)")
    p_tasks.add_argument("-k", type=int, default=20, help="Max candidates (default: 20)")
    p_tasks.set_defaults(func=cmd_tasks)

    p_act = sub.add_parser("act", parents=[_common], help="Act on a task candidate")
    p_act.add_argument("task_id", help="Task candidate id")
    p_act.add_argument("action", choices=["engage", "release", "defer", "pause", "release_all"])
    p_act.add_argument("--key", default=None, help="Idempotency key (safe retries)")
    p_act.add_argument("--hours", type=float, default=None, help="Defer duration in hours")
    p_act.set_defaults(func=cmd_act)

    # -- themes / theme ----------------------------------------------------
    p_themes = sub.add_parser("themes", parents=[_common], help="Theme proposals")
    p_themes.add_argument("--status", default=None,
                          help="Filter by status (open|saved|watching|archived)")
    p_themes.add_argument("--history", action="store_true",
                          help="Stored theme states, including undetected ones")
    p_themes.set_defaults(func=cmd_themes)

    p_theme = sub.add_parser("theme", parents=[_common], help="Theme feedback or curation")
    p_theme.add_argument("theme_id", help="Theme id (THM-...)")
    p_theme.add_argument("action", choices=sorted(
        ["confirm", "correct", "dismiss", "save", "archive", "keep-watching", "rename"]))
    p_theme.add_argument("--value", default=None, help="New label (correct/rename)")
    p_theme.add_argument("--occurrence", default="", help="Proposal occurrence")
    p_theme.set_defaults(func=cmd_theme)

    # -- dispose -----------------------------------------------------------
    p_disp = sub.add_parser("dispose", parents=[_common], help="Append a disposition")
    p_disp.add_argument("target", help="Tab URL or identity")
    p_disp.add_argument("action", choices=["trash", "complete", "regroup", "annotate"])
    p_disp.add_argument("--session", default=None, help="Session id the action belongs to")
    p_disp.add_argument("--payload", default=None,
                        help='JSON payload, e.g. \'{"from": "Misc", "to": "Research"}\'')
    p_disp.add_argument("--key", default=None, help="Idempotency key (safe retries)")
    p_disp.set_defaults(func=cmd_dispose)

    # -- lock --------------------------------------------------------------
    p_lock = sub.add_parser("lock", parents=[_common], help="Session lock")
    lock_sub = p_lock.add_subparsers(dest="lock_cmd", required=True)
    lock_sub.add_parser("status", parents=[_common], help="Show the lock")
    for name in ("acquire", "release"):
        lp = lock_sub.add_parser(name, parents=[_common], help=f"{name.capitalize()} the lock")
        lp.add_argument("session_id", help="Triage session id")
    lp = lock_sub.add_parser("force-clear", parents=[_common], help="Clear the lock (audited)")
    lp.add_argument("--reason", default="", help="Why the lock is cleared")
    lp.add_argument("--actor", default="cli", help="Who clears it (default: cli)")
    p_lock.set_defaults(func=cmd_lock)

    # -- prefs -------------------------------------------------------------
    p_prefs = sub.add_parser("prefs", parents=[_common], help="Preference rules")
    prefs_sub = p_prefs.add_subparsers(dest="prefs_cmd", required=True)
    pl = prefs_sub.add_parser("list", parents=[_common], help="List rules")
    pl.add_argument("--state", default=None, help="pending|approved|rejected")
    pl.add_argument("--all", action="store_true", help="Include forgotten rules")
    prefs_sub.add_parser("propose", parents=[_common], help="Learn rules from corrections")
    for name in ("approve", "reject", "forget"):
        pp = prefs_sub.add_parser(name, parents=[_common], help=f"{name.capitalize()} a rule")
        pp.add_argument("rule_id", help="Rule id (RULE-...)")
    p_prefs.set_defaults(func=cmd_prefs)

    # -- feedback ----------------------------------------------------------
    p_fb = sub.add_parser("feedback", parents=[_common], help="Intent feedback on a proposal")
    p_fb.add_argument("subject_id", help="Proposal id")
    p_fb.add_argument("action", choices=["confirm", "correct", "dismiss"])
    p_fb.add_argument("--value", default=None, help="Corrected value (required for correct)")
    p_fb.add_argument("--occurrence", default="", help="Proposal occurrence")
    p_fb.set_defaults(func=cmd_feedback)

    # -- intents -----------------------------------------------------------
    p_int = sub.add_parser("intents", parents=[_common], help="Intent proposals for recurring tabs")
    p_int.add_argument("-k", type=int, default=None, help="Maximum proposals")
    p_int.add_argument("--resolved", action="store_true",
                       help="Feedback already given, grouped by subject")
    p_int.set_defaults(func=cmd_intents)

    # -- stats -------------------------------------------------------------
    p_stats = sub.add_parser("stats", parents=[_common], help="Engine statistics")
    p_stats.set_defaults(func=cmd_stats)

    # -- serve -------------------------------------------------------------
    p_serve = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p_serve.add_argument("--db-root", default=None, help="Constrain DB paths to this tree")
    p_serve.set_defaults(func=cmd_serve)

    # -- Parse and dispatch ------------------------------------------------
    args = parser.parse_args()

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
