from __future__ import annotations

import argparse
import json
import logging
import os
import sys

from .models import CRASH_EXIT_CODE, DecisionKind

LOG_LEVEL_ENV = "REFLECTION_GATE_LOG_LEVEL"


def _configure_logging():
    level = os.environ.get(LOG_LEVEL_ENV, "WARNING").upper()
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, level, logging.WARNING),
        format="reflection-gate %(levelname)s %(name)s: %(message)s",
    )


def main():
    """Entry point for reflection-gate CLI."""
    _configure_logging()
    if len(sys.argv) > 1:
        sys.exit(_run_cli(sys.argv[1:]))

    # Default: run MCP server
    from .server import main as server_main
    server_main()


def _session_default() -> str | None:
    return os.environ.get("CLAUDE_SESSION_ID") or os.environ.get("REFLECTION_GATE_SESSION_ID")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reflection-gate")
    parser.add_argument("--cwd", help="Project directory (default: current directory)")
    sub = parser.add_subparsers(dest="command", required=True)

    # hook
    hook_p = sub.add_parser("hook", help="Handle a lifecycle hook; payload JSON on stdin")
    hook_p.add_argument("event", help="session-start, ticket-detected, pre-tool-use, post-tool-use, stop, session-end")

    # reflect
    reflect_p = sub.add_parser("reflect", help="Submit candidate learnings")
    reflect_p.add_argument("--session-id", default=_session_default())
    reflect_p.add_argument("--file", help="JSON payload file (default: stdin)")

    # skip
    skip_p = sub.add_parser("skip", help="Skip reflection for the current work unit")
    skip_p.add_argument("reason", nargs="+")
    skip_p.add_argument("--session-id", default=_session_default())
    skip_p.add_argument("--decider", default="agent", choices=["agent", "user"])
    skip_p.add_argument("--files", default="", help="Comma-separated touched paths")

    # observe
    observe_p = sub.add_parser("observe", help="Attach a subagent note to the session")
    observe_p.add_argument("text", nargs="+")
    observe_p.add_argument("--session-id", default=_session_default())
    observe_p.add_argument("--agent", default="")

    # stats
    stats_p = sub.add_parser("stats", help="Show aggregate statistics")
    stats_p.add_argument("--insights", action="store_true", help="Show tuning insights instead")

    # maintain
    maintain_p = sub.add_parser("maintain", help="Run decay and log rotation")
    maintain_p.add_argument("--force-decay", action="store_true", help="Ignore the decay check interval")
    maintain_p.add_argument("--rotate-days", type=int, default=None, help="Fold stats older than N days")

    # archive / restore
    archive_p = sub.add_parser("archive", help="Archive a learning")
    archive_p.add_argument("learning_id")
    restore_p = sub.add_parser("restore", help="Restore an archived learning")
    restore_p.add_argument("learning_id")

    # list
    list_p = sub.add_parser("list", help="List stored learnings")
    list_p.add_argument("--status", default="active", choices=["active", "archived", "superseded", "all"])
    list_p.add_argument("--stale", action="store_true", help="Only learnings about to decay")
    list_p.add_argument("--limit", type=int, default=50)

    # trace
    trace_p = sub.add_parser("trace", help="Show the recorded trace for a session")
    trace_p.add_argument("--session-id", default=_session_default())

    return parser


def _run_cli(argv: list[str]) -> int:
    args = _build_parser().parse_args(argv)
    try:
        if args.command == "hook":
            return _cmd_hook(args)
        return _dispatch(args)
    except Exception as e:
        logging.getLogger(__name__).exception("reflection-gate %s crashed", args.command)
        print(f"reflection-gate: {e}", file=sys.stderr)
        return CRASH_EXIT_CODE


def _cmd_hook(args) -> int:
    from .server import create_app

    raw = sys.stdin.read()
    try:
        cwd = json.loads(raw).get("cwd") or args.cwd
    except (ValueError, AttributeError):
        cwd = args.cwd
    app = create_app(cwd=cwd)
    decision = app.hooks.run(args.event, raw)
    print(decision.model_dump_json(exclude_none=True))
    if decision.kind == DecisionKind.BLOCK:
        print(json.dumps({"decision": "block", "reason": decision.message}), file=sys.stderr)
    elif decision.kind == DecisionKind.APPROVE_FORCED:
        print(decision.message, file=sys.stderr)
    return decision.exit_code


def _emit(text: str) -> int:
    print(text)
    try:
        parsed = json.loads(text)
    except ValueError:
        return 0
    if isinstance(parsed, dict) and parsed.get("success") is False:
        return 1
    return 0


def _require_session(args) -> str:
    if not args.session_id:
        print("No session id. Pass --session-id or set CLAUDE_SESSION_ID.", file=sys.stderr)
        raise SystemExit(1)
    return args.session_id


def _dispatch(args) -> int:
    from .server import create_app

    app = create_app(cwd=args.cwd)

    if args.command == "reflect":
        session_id = _require_session(args)
        if args.file:
            with open(args.file, encoding="utf-8") as f:
                payload = f.read()
        else:
            payload = sys.stdin.read()
        return _emit(app.reflect(session_id, payload))
    if args.command == "skip":
        session_id = _require_session(args)
        return _emit(app.skip(session_id, " ".join(args.reason), decider=args.decider, files=args.files))
    if args.command == "observe":
        session_id = _require_session(args)
        return _emit(app.observe(session_id, " ".join(args.text), agent=args.agent))
    if args.command == "stats":
        return _emit(app.insights() if args.insights else app.stats())
    if args.command == "maintain":
        return _emit(app.maintain(force_decay=args.force_decay, rotate_days=args.rotate_days))
    if args.command == "archive":
        return _emit(app.archive(args.learning_id))
    if args.command == "restore":
        return _emit(app.restore(args.learning_id))
    if args.command == "list":
        return _emit(app.list_learnings(status=args.status, stale=args.stale, limit=args.limit))
    if args.command == "trace":
        return _emit(app.trace(_require_session(args)))
    return 1


if __name__ == "__main__":
    main()
