from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError

from codex_session import (
    InvocationOutcome,
    clear_session,
    mark_session_active,
    mark_session_expired,
    record_invocation,
    session_status,
)
from config import ProjectPaths, Settings, load_settings
from findings_merge import write_merged_findings
from hook_runtime import HOOKS, run_hook
from logger import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audit-gatekeeper",
        description="Gate validators and helpers for the multi-agent smart-contract audit pipeline.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
examples:
  # SubagentStop hook: descriptor on stdin, decision JSON on stdout
  audit-gatekeeper hook blind-audit-gates < hook-input.json

  # Codex session bookkeeping
  audit-gatekeeper session status --type requirements
  audit-gatekeeper session record --type design --outcome timeout

  # Stage 3.5C merge
  audit-gatekeeper merge-findings --run-id blind-audit-1700000000
""",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    hook = commands.add_parser("hook", help="Run one validator hook against stdin")
    hook.add_argument("name", choices=sorted(HOOKS), help="Validator to run")

    session = commands.add_parser("session", help="Inspect or update Codex session state")
    session.add_argument("action", choices=("status", "start", "expire", "clear", "record"))
    session.add_argument("--type", dest="review_type", required=True, metavar="REVIEW",
                         help="Review type the session belongs to, e.g. requirements or design")
    session.add_argument("--outcome", choices=[outcome.value for outcome in InvocationOutcome],
                         help="How the Codex invocation ended (record only)")

    merge = commands.add_parser("merge-findings", help="Merge Opus and Codex detect findings")
    merge.add_argument("--run-id", required=True, help="Run ID for this pipeline execution")
    merge.add_argument("--opus-findings", type=Path, default=None, metavar="PATH",
                       help="Opus findings JSON (auto-detected if omitted)")
    merge.add_argument("--codex-findings", type=Path, default=None, metavar="PATH",
                       help="Codex findings JSON (auto-detected if omitted)")
    merge.add_argument("--no-report", action="store_true",
                       help="Skip docs/reviews/merged-detect-findings.md")
    return parser


def _session_command(args: argparse.Namespace, settings: Settings) -> int:
    paths = ProjectPaths.from_settings(settings)
    ttl = settings.codex_session_ttl_seconds
    if args.action == "record":
        outcome = InvocationOutcome(args.outcome)
        record = record_invocation(paths, args.review_type, outcome, ttl_seconds=ttl)
    elif args.action == "start":
        record = mark_session_active(paths, args.review_type)
    elif args.action == "expire":
        record = mark_session_expired(paths, args.review_type)
    elif args.action == "clear":
        clear_session(paths, args.review_type)
        record = session_status(paths, args.review_type)
    else:
        record = session_status(paths, args.review_type, ttl_seconds=ttl)
    print(json.dumps({"review_type": args.review_type, **record.model_dump(mode="json")}))
    return 0


def _merge_command(args: argparse.Namespace, settings: Settings) -> int:
    result = write_merged_findings(
        ProjectPaths.from_settings(settings),
        args.run_id,
        opus_findings_path=args.opus_findings,
        codex_findings_path=args.codex_findings,
        write_report=not args.no_report,
    )
    print(json.dumps({"success": True, "run_id": result.run_id, **result.summary}))
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "session" and (args.action == "record") != (args.outcome is not None):
        parser.error("--outcome is required with, and only valid for, session record")

    try:
        settings = load_settings()
    except ValidationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        # a broken environment must never stall the pipeline
        return 0 if args.command == "hook" else 2

    setup_logging(settings.log_level, settings.log_json)

    if args.command == "hook":
        return run_hook(args.name, sys.stdin.read(), settings)
    if args.command == "session":
        return _session_command(args, settings)
    return _merge_command(args, settings)


if __name__ == "__main__":
    sys.exit(main())
