"""fundx-daemon command line entry point."""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone

from core.config import load_fund_config, load_global_config
from core.exceptions import FundConfigError

logger = logging.getLogger(__name__)


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_start(args) -> int:
    from runner.daemon import DaemonAlreadyRunning, start_daemon
    try:
        start_daemon()
    except DaemonAlreadyRunning as e:
        print(str(e), file=sys.stderr)
        return 1
    return 0


def cmd_stop(args) -> int:
    from runner.daemon import stop_daemon
    result = stop_daemon()
    _print(result)
    return 0 if result["stopped"] else 1


def cmd_status(args) -> int:
    from runner.daemon import daemon_status
    _print(daemon_status())
    return 0


def cmd_tick(args) -> int:
    from runner.daemon import build_scheduler
    global_config = load_global_config()
    scheduler = build_scheduler(global_config)
    now = datetime.fromisoformat(args.at) if args.at else datetime.now(timezone.utc)
    tasks = scheduler.tick(now)
    scheduler.dispatcher.shutdown(wait=True)
    _print([str(t.name) for t in tasks])
    return 0


def cmd_session(args) -> int:
    from runner.daemon import build_agent_backend
    from ai.invoker import BoundedAgentInvoker
    from runner.session_runner import SessionRunner
    load_fund_config(args.fund)
    global_config = load_global_config()
    runner = SessionRunner(BoundedAgentInvoker(build_agent_backend(global_config), global_config))
    run = runner.run_with_subagents if args.parallel else runner.run
    log = run(args.fund, args.session_type, focus=args.focus)
    if log is None:
        return 1
    _print(log.model_dump())
    return 0 if log.status == "success" else 1


def cmd_agents(args) -> int:
    from ai.invoker import BoundedAgentInvoker
    from ai.subagents import run_subagents, save_subagent_analysis
    from runner.daemon import build_agent_backend
    load_fund_config(args.fund)
    global_config = load_global_config()
    invoker = BoundedAgentInvoker(build_agent_backend(global_config), global_config)
    results = run_subagents(invoker, args.fund, model=args.model)
    path = save_subagent_analysis(args.fund, results, "manual")
    _print({
        "analysts": {r.name: r.status for r in results},
        "succeeded": sum(1 for r in results if r.status == "success"),
        "analysis_file": str(path),
    })
    return 0 if all(r.status == "success" for r in results) else 1


def cmd_stoploss(args) -> int:
    from core.stoploss import check_stop_losses, execute_stop_losses
    events = check_stop_losses(args.fund)
    if not events:
        _print({"triggered": []})
        return 0
    if args.dry_run:
        _print({"triggered": [e.reasoning() for e in events]})
        return 0
    result = execute_stop_losses(args.fund, events)
    _print({
        "triggered": [e.symbol for e in events],
        "succeeded": result.succeeded,
        "failed": result.failed,
        "proceeds": result.proceeds,
    })
    return 0 if result.all_succeeded else 1


def cmd_apply_stops(args) -> int:
    from core.stoploss import apply_default_stop_losses
    _print({"updated": apply_default_stop_losses(args.fund)})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fundx-daemon", description="FundX scheduling daemon")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("start", help="Run the daemon in the foreground").set_defaults(func=cmd_start)
    sub.add_parser("stop", help="Signal the running daemon to stop").set_defaults(func=cmd_stop)
    sub.add_parser("status", help="Show whether the daemon is running").set_defaults(func=cmd_status)

    tick = sub.add_parser("tick", help="Evaluate one scheduler tick and wait for its tasks")
    tick.add_argument("--at", help="ISO timestamp to evaluate instead of now")
    tick.set_defaults(func=cmd_tick)

    session = sub.add_parser("session", help="Run one session now")
    session.add_argument("fund")
    session.add_argument("session_type")
    session.add_argument("--focus", help="Override the configured focus")
    session.add_argument("--parallel", action="store_true",
                         help="Run the analyst sub-agents first and feed their findings to the session")
    session.set_defaults(func=cmd_session)

    agents = sub.add_parser("agents", help="Run only the analyst sub-agents (no trading)")
    agents.add_argument("fund")
    agents.add_argument("--model", help="Model for every analyst (defaults to haiku)")
    agents.set_defaults(func=cmd_agents)

    stoploss = sub.add_parser("stoploss", help="Check (and execute) stop-losses for a fund")
    stoploss.add_argument("fund")
    stoploss.add_argument("--dry-run", action="store_true", help="Report breaches without selling")
    stoploss.set_defaults(func=cmd_stoploss)

    apply_stops = sub.add_parser("apply-stops", help="Set default stops on positions without one")
    apply_stops.add_argument("fund")
    apply_stops.set_defaults(func=cmd_apply_stops)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.command != "start":
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        return args.func(args)
    except FundConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
