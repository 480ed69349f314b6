"""
Liveness probe for supervised tunnels.

Reads the local process and connection tables only; no network round trip.
A tunnel counts as established when an ssh session carrying its port mapping
holds an established connection to the remote SSH port (and, for forward
tunnels, is listening on the local port).
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import NamedTuple, Optional

import psutil

from .config import config
from .tunnels import Direction, ProbeResult, TunnelSpec

logger = logging.getLogger(__name__)

SSH_PROCESS_NAMES = ("ssh", "autossh")

# ssh options that take a value, either attached (-R9090:...) or as the next argument
SSH_VALUE_OPTIONS = set("BbcDEeFIiJLlmOoPpQRSWw")


class SessionArgs(NamedTuple):
    forwards: list[tuple[str, str]]
    user: Optional[str]
    host: Optional[str]


def parse_session_args(cmdline: list[str]) -> SessionArgs:
    """Pull the port forwards and the destination out of an ssh/autossh argv."""
    value_options = set(SSH_VALUE_OPTIONS)
    if cmdline and cmdline[0].rsplit("/", 1)[-1] == "autossh":
        value_options.add("M")

    forwards = []
    login = None
    i = 1
    while i < len(cmdline):
        arg = cmdline[i]
        if arg == "--":
            i += 1
            break
        if not arg.startswith("-") or arg == "-":
            break
        for pos in range(1, len(arg)):
            letter = arg[pos]
            if letter not in value_options:
                continue
            value = arg[pos + 1:]
            if not value and i + 1 < len(cmdline):
                i += 1
                value = cmdline[i]
            if letter in ("R", "L"):
                forwards.append((f"-{letter}", value))
            elif letter == "l":
                login = value
            break
        i += 1

    if i >= len(cmdline):
        return SessionArgs(forwards, login, None)
    destination = cmdline[i]
    if "@" in destination:
        user, host = destination.rsplit("@", 1)
        return SessionArgs(forwards, user, host)
    return SessionArgs(forwards, login, destination)


def carries_tunnel(cmdline: list[str], spec: TunnelSpec) -> bool:
    """Whether an ssh argv is a session for exactly this tunnel."""
    args = parse_session_args(cmdline)
    if (spec.forward_flag, spec.forward_spec) not in args.forwards:
        return False
    if args.host != spec.remote_host:
        return False
    return args.user is None or args.user == spec.remote_user


def find_session_processes(spec: TunnelSpec) -> list[psutil.Process]:
    """Find ssh/autossh processes whose command line carries this tunnel's mapping."""
    matches = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        name = proc.info.get("name") or ""
        cmdline = proc.info.get("cmdline") or []
        if name not in SSH_PROCESS_NAMES:
            continue
        if carries_tunnel(cmdline, spec):
            matches.append(proc)
    return matches


def session_is_established(proc: psutil.Process, spec: TunnelSpec) -> bool:
    """Check a single session process for a live connection (and listener if forward)."""
    connections = proc.net_connections(kind="tcp")
    connected = any(
        c.status == psutil.CONN_ESTABLISHED and c.raddr and c.raddr.port == spec.ssh_port
        for c in connections
    )
    if not connected:
        return False
    if spec.direction == Direction.FORWARD:
        return any(
            c.status == psutil.CONN_LISTEN and c.laddr and c.laddr.port == spec.local_port
            for c in connections
        )
    return True


class ConnectionProbe:
    """Determines whether a tunnel is currently established."""

    def __init__(self, timeout: float = None):
        self.timeout = timeout if timeout is not None else config.probe_timeout
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="probe")

    def probe(self, spec: TunnelSpec) -> ProbeResult:
        """Inspect local state for the tunnel. Never raises; never blocks past timeout."""
        future = self._executor.submit(self._inspect, spec)
        try:
            result = future.result(timeout=self.timeout)
        except FutureTimeout:
            logger.warning(f"Probe for {spec.name} timed out after {self.timeout}s")
            return ProbeResult.unknown(f"inspection timed out after {self.timeout}s")
        except psutil.AccessDenied as e:
            return ProbeResult.unknown(f"access denied reading connections: {e}")
        except (psutil.Error, OSError) as e:
            return ProbeResult.unknown(f"connection table read failed: {e}")

        logger.debug(f"Probe for {spec.name}: {result}")
        return result

    def _inspect(self, spec: TunnelSpec) -> ProbeResult:
        sessions = find_session_processes(spec)
        if not sessions:
            return ProbeResult.absent(f"no ssh session carrying {spec.forward_flag} {spec.forward_spec}")

        for proc in sessions:
            try:
                if session_is_established(proc, spec):
                    return ProbeResult.established()
            except psutil.NoSuchProcess:
                continue

        return ProbeResult.absent(f"{len(sessions)} session(s) found but none established")

    def shutdown(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
