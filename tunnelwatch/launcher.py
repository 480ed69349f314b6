"""
Tunnel session launcher.

Starts backgrounded `ssh -N` sessions with keepalives and
ExitOnForwardFailure, waits a bounded time for the session to authenticate
and set up its forward, and classifies early exits from the session log.
Sessions it started are kept in a registry so they can be stopped and their
exit status collected.
"""

import logging
import os
import re
import signal
import subprocess
import threading
import time
from pathlib import Path

import psutil

from .config import config
from .probe import find_session_processes
from .transport import SSHTransport
from .tunnels import Direction, LaunchError, LaunchErrorKind, SessionHandle, TunnelSpec

logger = logging.getLogger(__name__)

BIND_CONFLICT_PATTERNS = re.compile(
    r"remote port forwarding failed|address already in use|cannot listen to port"
    r"|could not request local forwarding",
    re.IGNORECASE,
)
AUTH_FAILURE_PATTERNS = re.compile(
    r"permission denied|host key verification failed|remote host identification has changed"
    r"|too many authentication failures|no such identity|load key",
    re.IGNORECASE,
)
AUTHENTICATED_PATTERN = re.compile(r"Authenticated to ")
REMOTE_FORWARD_OK_PATTERN = re.compile(r"remote forward success for: listen (?:[^\s,]*:)?(\d+)")


def classify_exit(output: str) -> LaunchErrorKind:
    """Map the output of an ssh session that exited early to a failure kind."""
    if BIND_CONFLICT_PATTERNS.search(output):
        return LaunchErrorKind.BIND_CONFLICT
    if AUTH_FAILURE_PATTERNS.search(output):
        return LaunchErrorKind.AUTH_FAILURE
    return LaunchErrorKind.EXITED


def local_listener_pids(port: int) -> set[int]:
    """PIDs listening on a local TCP port (empty if the table cannot be read)."""
    try:
        connections = psutil.net_connections(kind="tcp")
    except psutil.AccessDenied:
        return set()
    return {
        c.pid or 0
        for c in connections
        if c.status == psutil.CONN_LISTEN and c.laddr and c.laddr.port == port
    }


def _terminate(process: subprocess.Popen, timeout: float = 5):
    """SIGTERM the session's process group, SIGKILL if it lingers."""
    try:
        os.killpg(os.getpgid(process.pid), signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except ProcessLookupError:
            return
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.error(f"Session {process.pid} still running after SIGKILL")


class TunnelLauncher:
    """Starts and tracks tunnel sessions."""

    def __init__(
        self,
        transport: SSHTransport = None,
        timeout: float = None,
        keepalive_interval: int = None,
        keepalive_count_max: int = None,
        poll_interval: float = 0.25,
        logs_dir: Path = None,
    ):
        self.transport = transport or SSHTransport()
        self.timeout = timeout or config.launch_timeout
        self.keepalive_interval = keepalive_interval or config.keepalive_interval
        self.keepalive_count_max = keepalive_count_max or config.keepalive_count_max
        self.poll_interval = poll_interval
        self.logs_dir = logs_dir or config.logs_dir
        self._sessions: dict[str, tuple[SessionHandle, subprocess.Popen]] = {}
        self._lock = threading.Lock()

    def log_path(self, spec: TunnelSpec) -> Path:
        return self.logs_dir / spec.name / "ssh.log"

    def launch(self, spec: TunnelSpec) -> SessionHandle:
        """
        Start a session for the tunnel and wait until ssh confirms it.

        Raises LaunchError with kind BIND_CONFLICT, AUTH_FAILURE, TIMEOUT or
        EXITED. On success the session keeps running in the background.
        """
        self._discard_previous(spec)

        if spec.direction == Direction.FORWARD:
            holders = local_listener_pids(spec.local_port)
            if holders:
                raise LaunchError(
                    LaunchErrorKind.BIND_CONFLICT,
                    f"local port {spec.local_port} is already in use (pid {sorted(holders)})",
                )

        log_path = self.log_path(spec)
        self._rotate_log(log_path)
        offset = log_path.stat().st_size if log_path.exists() else 0
        argv = self.transport.session_args(
            spec,
            keepalive_interval=self.keepalive_interval,
            keepalive_count_max=self.keepalive_count_max,
            connect_timeout=max(1, int(self.timeout)),
        )

        try:
            process = self.transport.spawn(argv, log_path)
        except OSError as e:
            raise LaunchError(LaunchErrorKind.EXITED, f"could not start ssh: {e}")

        logger.info(f"Started ssh session for {spec.name} with PID {process.pid}")
        self._wait_for_established(spec, process, log_path, offset)

        handle = SessionHandle(
            tunnel_name=spec.name,
            pid=process.pid,
            argv=argv,
            log_path=log_path,
        )
        with self._lock:
            self._sessions[spec.name] = (handle, process)
        return handle

    def _wait_for_established(self, spec, process, log_path: Path, offset: int):
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if process.poll() is not None:
                output = self._read_log(log_path, offset)
                kind = classify_exit(output)
                last_line = output.strip().splitlines()[-1] if output.strip() else "no output"
                raise LaunchError(
                    kind,
                    f"ssh exited with code {process.returncode}: {last_line}",
                )
            if self._session_ready(spec, process.pid, self._read_log(log_path, offset)):
                return
            time.sleep(self.poll_interval)

        logger.warning(f"Session for {spec.name} not established after {self.timeout}s, terminating")
        _terminate(process)
        raise LaunchError(
            LaunchErrorKind.TIMEOUT,
            f"session not confirmed within {self.timeout}s",
        )

    def _session_ready(self, spec: TunnelSpec, pid: int, output: str) -> bool:
        """
        Whether ssh has authenticated and set up the forward.

        A reverse forward is confirmed by the server's reply in the session
        log; a forward one by the session process listening on the local port.
        """
        if not AUTHENTICATED_PATTERN.search(output):
            return False
        if spec.direction == Direction.REVERSE:
            return any(int(port) == spec.remote_port for port in REMOTE_FORWARD_OK_PATTERN.findall(output))
        try:
            connections = psutil.Process(pid).net_connections(kind="tcp")
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False
        return any(
            c.status == psutil.CONN_LISTEN and c.laddr and c.laddr.port == spec.local_port
            for c in connections
        )

    def _rotate_log(self, log_path: Path):
        if log_path.exists() and log_path.stat().st_size > config.log_max_bytes:
            log_path.replace(log_path.with_name(log_path.name + ".1"))

    def _read_log(self, log_path: Path, offset: int) -> str:
        try:
            with open(log_path, "r", errors="replace") as f:
                f.seek(offset)
                return f.read()
        except OSError:
            return ""

    def _discard_previous(self, spec: TunnelSpec):
        """Terminate and forget a session this launcher started earlier for the tunnel."""
        with self._lock:
            entry = self._sessions.pop(spec.name, None)
        if not entry:
            return
        handle, process = entry
        if process.poll() is None:
            logger.info(f"Terminating previous session {handle.pid} for {spec.name}")
            _terminate(process)
        else:
            logger.info(f"Previous session {handle.pid} for {spec.name} exited with code {process.returncode}")

    def get_session(self, name: str) -> SessionHandle | None:
        """Get the running session for a tunnel, if this launcher started one."""
        with self._lock:
            entry = self._sessions.get(name)
        if not entry:
            return None
        handle, process = entry
        if process.poll() is None:
            return handle
        return None

    def stop(self, spec: TunnelSpec) -> int:
        """
        Stop the tunnel's sessions: the one this launcher tracks plus any
        other ssh process carrying the same mapping. Returns how many were stopped.
        """
        stopped = 0
        with self._lock:
            entry = self._sessions.pop(spec.name, None)
        if entry and entry[1].poll() is None:
            _terminate(entry[1])
            stopped += 1

        for proc in find_session_processes(spec):
            try:
                proc.terminate()
                proc.wait(timeout=5)
                stopped += 1
            except psutil.TimeoutExpired:
                proc.kill()
                stopped += 1
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied:
                logger.warning(f"Access denied stopping session {proc.pid} for {spec.name}")

        logger.info(f"Stopped {stopped} session(s) for {spec.name}")
        return stopped
