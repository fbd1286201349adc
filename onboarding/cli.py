"""
Onboarding Saga — CLI

Operate sagas against a local SQLite store.

Usage:
    # Start an onboarding saga (applicant attributes from JSON)
    python -m onboarding.cli start app_42 --applicant applicant.json

    # Deliver a signal
    python -m onboarding.cli signal wf_abc123 quote/approved \\
        --payload '{"approved_by": "mgr_1"}'

    # Inspect
    python -m onboarding.cli status wf_abc123
    python -m onboarding.cli events wf_abc123 --verify

    # Timer sweep (run from cron)
    python -m onboarding.cli tick

    # Manual kill switch
    python -m onboarding.cli kill wf_abc123 --by ops_lead --notes "Duplicate application"

    # Record a human decision against the AI snapshot
    python -m onboarding.cli feedback wf_abc123 APPROVE --category FALSE_POSITIVE_FLAG \\
        --subcategory name_collision --by risk_7
"""

import argparse
import json
import os
import sys
import time
from pathlib import Path

from onboarding.runtime import SagaOrchestrator
from saga.config import get_config_value, load_config
from saga.errors import SagaError
from saga.logging import configure_logging


def _load_json_arg(raw: str | None, path: str | None) -> dict:
    if path:
        p = Path(path)
        if not p.exists():
            print(f"Error: file not found: {path}", file=sys.stderr)
            sys.exit(1)
        with open(p) as f:
            return json.load(f)
    if raw:
        return json.loads(raw)
    return {}


def cmd_start(args, orch: SagaOrchestrator):
    """Start an onboarding saga."""
    applicant = _load_json_arg(args.applicant_json, args.applicant)
    wf_id = orch.start_workflow(args.applicant_id, applicant or None)
    status = orch.get_status(wf_id)
    print(f"Started: {wf_id}")
    print(f"  stage:  {status['stage']} ({status['stage_name']})")
    print(f"  status: {status['status']}")
    if status["waiting_on"]:
        print(f"  waiting on: {', '.join(status['waiting_on'])}")


def cmd_signal(args, orch: SagaOrchestrator):
    """Deliver a signal to a saga."""
    payload = _load_json_arg(args.payload, args.file)
    status = orch.signal(args.workflow_id, args.event, payload)
    print(json.dumps(status, indent=2, default=str))


def cmd_status(args, orch: SagaOrchestrator):
    print(json.dumps(orch.get_status(args.workflow_id), indent=2, default=str))


def cmd_events(args, orch: SagaOrchestrator):
    """Show the audit event log."""
    events = orch.get_events(args.workflow_id, args.type)
    print(f"\nEvents for {args.workflow_id} ({len(events)})")
    print(f"{'─' * 70}")
    for e in events:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(e["timestamp"]))
        print(f"  #{e['sequence']:<4d} [{ts}] {e['event_type']:28s} {e['actor_type']}:{e['actor_id']}")
        if args.verbose:
            for k, v in e["payload"].items():
                print(f"           {k}: {str(v)[:60]}")

    if args.verify:
        result = orch.verify_audit_chain(args.workflow_id)
        marker = "✓" if result["valid"] else "✗"
        print(f"\n  {marker} {result['message']}")
        if not result["valid"]:
            sys.exit(2)


def cmd_tick(args, orch: SagaOrchestrator):
    due = orch.tick()
    print(f"Drove {len(due)} workflow(s)")
    for wf_id in due:
        s = orch.get_status(wf_id)
        print(f"  {wf_id}  stage {s['stage']}  {s['status']}")


def cmd_resume(args, orch: SagaOrchestrator):
    if args.workflow_id:
        outcome = orch.resume(args.workflow_id)
        print(json.dumps(outcome.to_dict(), indent=2, default=str))
    else:
        resumed = orch.resume_all()
        print(f"Resumed {len(resumed)} workflow(s)")


def cmd_kill(args, orch: SagaOrchestrator):
    """Execute the kill switch."""
    record = orch.kill(args.workflow_id, args.reason, args.by, args.notes)
    print(f"\n{'═' * 70}")
    print(f"  TERMINATED: {record['workflow_id']}")
    print(f"  reason:     {record['reason']}")
    print(f"  decided by: {record['decided_by']}")
    print(f"{'═' * 70}\n")


def cmd_feedback(args, orch: SagaOrchestrator):
    result = orch.record_feedback(
        args.workflow_id,
        human_outcome=args.outcome,
        override_category=args.category,
        decided_by=args.by,
        override_subcategory=args.subcategory,
        override_details=args.details,
    )
    print(json.dumps(result, indent=2))


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Onboarding Saga",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", default=os.environ.get("SAGA_CONFIG", "saga_config.yaml"),
        help="Base config YAML (default: saga_config.yaml)",
    )
    parser.add_argument(
        "--db", default=os.environ.get("SAGA_DB_PATH", "onboarding.db"),
        help="SQLite database path (default: onboarding.db)",
    )
    parser.add_argument("--log-level", help="Overrides logging.level from config")

    subs = parser.add_subparsers(dest="command", help="Command")

    start_p = subs.add_parser("start", help="Start an onboarding saga")
    start_p.add_argument("applicant_id")
    start_p.add_argument("--applicant", "-a", help="Applicant attributes JSON file")
    start_p.add_argument("--applicant-json", help="Applicant attributes as a JSON string")

    signal_p = subs.add_parser("signal", help="Deliver a signal")
    signal_p.add_argument("workflow_id")
    signal_p.add_argument("event", help="Event name, e.g. quote/approved")
    signal_p.add_argument("--payload", "-p", help="JSON payload string")
    signal_p.add_argument("--file", "-f", help="JSON payload file")

    status_p = subs.add_parser("status", help="Show saga status")
    status_p.add_argument("workflow_id")

    events_p = subs.add_parser("events", help="Show the audit event log")
    events_p.add_argument("workflow_id")
    events_p.add_argument("--type", help="Filter by event type")
    events_p.add_argument("--verify", action="store_true", help="Verify the hash chain")
    events_p.add_argument("--verbose", "-v", action="store_true")

    subs.add_parser("tick", help="Drive every saga with an overdue wait")

    resume_p = subs.add_parser("resume", help="Replay sagas from the journal")
    resume_p.add_argument("workflow_id", nargs="?")

    kill_p = subs.add_parser("kill", help="Execute the kill switch")
    kill_p.add_argument("workflow_id")
    kill_p.add_argument("--reason", default="manual_termination")
    kill_p.add_argument("--by", required=True, help="Who decided")
    kill_p.add_argument("--notes", default="")

    fb_p = subs.add_parser("feedback", help="Record a human decision")
    fb_p.add_argument("workflow_id")
    fb_p.add_argument("outcome", help="Human outcome, e.g. APPROVE or REJECT")
    fb_p.add_argument("--category", required=True)
    fb_p.add_argument("--subcategory")
    fb_p.add_argument("--details")
    fb_p.add_argument("--by", required=True)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = load_config(base_path=args.config)
    configure_logging(level=args.log_level or get_config_value("logging.level", config, "WARNING"))
    orch = SagaOrchestrator(db_path=args.db, config=config)

    commands = {
        "start": cmd_start,
        "signal": cmd_signal,
        "status": cmd_status,
        "events": cmd_events,
        "tick": cmd_tick,
        "resume": cmd_resume,
        "kill": cmd_kill,
        "feedback": cmd_feedback,
    }
    try:
        commands[args.command](args, orch)
    except SagaError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        orch.close()


if __name__ == "__main__":
    main()
