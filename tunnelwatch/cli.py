"""
Command line interface for tunnelwatch.

    tunnelwatch check [--name N]      one cycle per tunnel, exit code reflects outcome
    tunnelwatch watch [--interval S]  supervise continuously until SIGINT/SIGTERM
    tunnelwatch serve                 REST API plus continuous supervision
    tunnelwatch status|stop|restart   process lifecycle for a tunnel
    tunnelwatch list                  registered tunnels
"""

import argparse
import asyncio
import json
import logging
import signal
import sys

from .config import config
from .logging_config import setup_logging
from .models import CycleRecord, Tunnel, enabled_specs, initialize_db, record_report, register_env_tunnel
from .supervisor import tunnel_supervisor
from .tunnels import ConfigError, RecoveryOutcome, TunnelSpec
from .watcher import TunnelWatcher

logger = logging.getLogger(__name__)

EXIT_CODES = {
    RecoveryOutcome.HEALTHY: 0,
    RecoveryOutcome.RECOVERED: 0,
    RecoveryOutcome.STILL_DOWN: 1,
    RecoveryOutcome.REAP_FAILED: 2,
    RecoveryOutcome.LAUNCH_FAILED: 3,
    RecoveryOutcome.ABORTED: 4,
}
EXIT_CONFIG_ERROR = 4


def exit_code_for(outcomes: list[RecoveryOutcome]) -> int:
    """The worst exit code among the outcomes; 0 if there are none."""
    return max((EXIT_CODES[o] for o in outcomes), default=0)


def _bootstrap():
    initialize_db()
    register_env_tunnel()
    tunnel_supervisor.set_report_callback(record_report)


def _select_specs(name: str | None, include_disabled: bool = False) -> list[TunnelSpec]:
    if name:
        tunnel = Tunnel.get_or_none(Tunnel.name == name)
        if not tunnel:
            raise ConfigError(f"Tunnel '{name}' not found")
        return [tunnel.to_spec()]
    if include_disabled:
        specs = [t.to_spec() for t in Tunnel.select()]
    else:
        specs = enabled_specs()
    if not specs:
        raise ConfigError("No tunnels configured (set SERVER_IP etc. in .env or register one via the API)")
    return specs


def cmd_check(args) -> int:
    outcomes = []
    for spec in _select_specs(args.name):
        report = tunnel_supervisor.run_cycle(spec, wait=args.wait)
        if report is None:
            print(json.dumps({"tunnel": spec.name, "skipped": "cycle already in flight"}))
            continue
        print(report.to_json())
        outcomes.append(report.outcome)
    return exit_code_for(outcomes)


async def _watch(specs: list[TunnelSpec], interval: float):
    watcher = TunnelWatcher(tunnel_supervisor, interval=interval, housekeeping=CycleRecord.prune)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(watcher.stop()))

    await watcher.start(specs)
    await watcher.wait()


def cmd_watch(args) -> int:
    specs = _select_specs(args.name)
    asyncio.run(_watch(specs, args.interval or config.check_interval))
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    uvicorn.run(
        "tunnelwatch.main:app",
        host=args.host or config.host,
        port=args.port or config.port,
        reload=False,
    )
    return 0


def cmd_status(args) -> int:
    code = 0
    for spec in _select_specs(args.name):
        result = tunnel_supervisor.probe.probe(spec)
        last = (
            CycleRecord.select()
            .where(CycleRecord.tunnel_name == spec.name)
            .order_by(CycleRecord.timestamp.desc())
            .first()
        )
        print(f"{spec.name}: {result}")
        print(f"  {spec.forward_flag} {spec.forward_spec} via {spec.destination}:{spec.ssh_port}")
        if last:
            print(f"  last cycle: {last.outcome} at {last.timestamp.isoformat()}")
        if not result.is_established:
            code = 1
    return code


def cmd_stop(args) -> int:
    for spec in _select_specs(args.name):
        stopped = tunnel_supervisor.stop_tunnel(spec)
        Tunnel.update(enabled=False).where(Tunnel.name == spec.name).execute()
        print(f"{spec.name}: stopped {stopped} session(s)")
    return 0


def cmd_restart(args) -> int:
    outcomes = []
    for spec in _select_specs(args.name, include_disabled=True):
        tunnel_supervisor.stop_tunnel(spec)
        Tunnel.update(enabled=True).where(Tunnel.name == spec.name).execute()
        report = tunnel_supervisor.run_cycle(spec, wait=True)
        print(report.to_json())
        outcomes.append(report.outcome)
    return exit_code_for(outcomes)


def cmd_list(args) -> int:
    for tunnel in Tunnel.select():
        state = "enabled" if tunnel.enabled else "disabled"
        ports = ",".join(str(p) for p in tunnel.get_remote_ports())
        print(
            f"{tunnel.name}  {tunnel.direction}  local {tunnel.local_port}  "
            f"{tunnel.remote_user}@{tunnel.remote_host} ports {ports}  ({state})"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tunnelwatch", description="SSH tunnel health supervisor")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="run one supervision cycle")
    check.add_argument("--name", help="tunnel name (default: all enabled tunnels)")
    check.add_argument("--wait", action="store_true", help="wait for an in-flight cycle instead of skipping")
    check.set_defaults(func=cmd_check)

    watch = sub.add_parser("watch", help="supervise continuously")
    watch.add_argument("--name", help="tunnel name (default: all enabled tunnels)")
    watch.add_argument("--interval", type=float, help="seconds between cycles")
    watch.set_defaults(func=cmd_watch)

    serve = sub.add_parser("serve", help="run the REST API with continuous supervision")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=cmd_serve)

    for command, func, help_text in (
        ("status", cmd_status, "probe tunnels without intervening"),
        ("stop", cmd_stop, "terminate tunnel sessions and disable supervision"),
        ("restart", cmd_restart, "terminate and re-establish tunnels"),
    ):
        p = sub.add_parser(command, help=help_text)
        p.add_argument("--name", help="tunnel name (default: all enabled tunnels)")
        p.set_defaults(func=func)

    lst = sub.add_parser("list", help="list registered tunnels")
    lst.set_defaults(func=cmd_list)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, console=args.command != "check")

    if args.command == "serve":
        return args.func(args)

    try:
        _bootstrap()
        return args.func(args)
    except ConfigError as e:
        logger.error(str(e))
        print(f"error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
