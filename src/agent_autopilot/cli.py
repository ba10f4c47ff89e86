"""
Command-line interface for Agent Autopilot.

Runs against the local state file with simulated wallet and execution
collaborators, which makes it handy for trying out permissions,
intents and schedules without a chain.
"""

import argparse
import json
import sys
import threading
from datetime import datetime, timedelta
from typing import List, Optional

from .collaborators import RandomMarketData, SimulatedExecutor, SimulatedGrantCollaborator
from .config import AutopilotSettings, configure_logging
from .errors import AutopilotError
from .orchestrator import ExecutionOrchestrator
from .types import utc_now


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_time(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid ISO-8601 timestamp: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-autopilot",
        description="Agent Autopilot - bounded spending permissions for autonomous agents",
    )
    parser.add_argument("--state", help="Path of the state file (overrides AUTOPILOT_STORAGE_PATH)")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="command", required=True)

    grant = sub.add_parser("grant", help="Grant a new spending permission")
    grant.add_argument("--token", required=True, help="Token address")
    grant.add_argument("--max", required=True, dest="max_spend", help="Maximum total spend")
    grant.add_argument("--contract", required=True, action="append", dest="contracts",
                       help="Allowed contract address (repeatable)")
    grant.add_argument("--start", type=_parse_time, help="Window start (default: now)")
    grant.add_argument("--end", type=_parse_time, help="Window end (default: start + --hours)")
    grant.add_argument("--hours", type=float, default=24.0, help="Window length when --end is omitted")

    permissions = sub.add_parser("permissions", help="List permissions")
    permissions.add_argument("--status", choices=["pending", "active", "expired", "revoked"])

    revoke = sub.add_parser("revoke", help="Revoke an active permission")
    revoke.add_argument("permission_id")

    spend = sub.add_parser("spend", help="Show the spend ledger of a permission")
    spend.add_argument("permission_id")

    submit = sub.add_parser("submit", help="Submit an intent")
    submit.add_argument("description", help='Free text, e.g. "swap 5 USDC every 2 hours"')
    submit.add_argument("--permission", required=True, dest="permission_id")
    submit.add_argument("--token", required=True)
    submit.add_argument("--amount", required=True)
    submit.add_argument("--contract", required=True)

    executions = sub.add_parser("executions", help="List executions, newest first")
    executions.add_argument("--status", choices=["pending", "executed", "failed", "blocked"])
    executions.add_argument("--limit", type=int)

    sub.add_parser("schedules", help="Show registered schedules")

    stop = sub.add_parser("stop", help="Stop a schedule")
    stop.add_argument("schedule_id")

    sub.add_parser("run", help="Run the scheduler loop until interrupted")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    overrides = {}
    if args.state:
        overrides["storage_path"] = args.state
    if args.log_level:
        overrides["log_level"] = args.log_level
    settings = AutopilotSettings(**overrides)
    configure_logging(settings.log_level)

    orchestrator = ExecutionOrchestrator.from_settings(
        settings,
        grants=SimulatedGrantCollaborator(strict=False),
        executor=SimulatedExecutor(),
        market_data=RandomMarketData(),
    )

    try:
        return _dispatch(args, orchestrator, settings)
    except AutopilotError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _dispatch(args, orchestrator: ExecutionOrchestrator, settings: AutopilotSettings) -> int:
    permissions = orchestrator.permissions
    schedules = orchestrator.schedules

    if args.command == "grant":
        start = args.start or utc_now()
        end = args.end or start + timedelta(hours=args.hours)
        permission = permissions.create_permission({
            "token_address": args.token,
            "max_spend_amount": args.max_spend,
            "start_time": start,
            "end_time": end,
            "allowed_contracts": args.contracts,
        })
        _print_json(permission.model_dump(mode="json"))

    elif args.command == "permissions":
        _print_json([p.model_dump(mode="json") for p in permissions.get_permissions(args.status)])

    elif args.command == "revoke":
        permission = permissions.revoke_permission(args.permission_id)
        _print_json(permission.model_dump(mode="json"))

    elif args.command == "spend":
        tracking = permissions.get_spend_tracking(args.permission_id)
        if tracking is None:
            print(f"No spend ledger for {args.permission_id}", file=sys.stderr)
            return 1
        _print_json(tracking.model_dump(mode="json"))

    elif args.command == "submit":
        execution = orchestrator.submit_intent({
            "description": args.description,
            "token_address": args.token,
            "amount": args.amount,
            "contract_address": args.contract,
            "permission_id": args.permission_id,
        })
        _print_json(execution.model_dump(mode="json"))

    elif args.command == "executions":
        executions = orchestrator.get_executions(args.status)
        if args.limit:
            executions = executions[:args.limit]
        _print_json([e.model_dump(mode="json") for e in executions])

    elif args.command == "schedules":
        _print_json(schedules.debug_info())

    elif args.command == "stop":
        if not schedules.stop_schedule(args.schedule_id):
            print(f"Schedule not found: {args.schedule_id}", file=sys.stderr)
            return 1
        print(f"Stopped {args.schedule_id}")

    elif args.command == "run":
        schedules.cleanup_invalid_schedules(permissions)
        armed = schedules.resume_all()
        print(f"Running {armed} schedules, press Ctrl+C to stop")
        stop_event = threading.Event()
        try:
            schedules.run_forever(stop_event, poll_interval=settings.scheduler_poll_seconds)
        except KeyboardInterrupt:
            stop_event.set()
            print("\nScheduler stopped")

    return 0


if __name__ == "__main__":
    sys.exit(main())
