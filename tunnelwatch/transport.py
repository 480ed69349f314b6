"""
SSH transport for tunnelwatch.

Wraps the system ssh client: key-based, non-interactive (BatchMode) sessions
with bounded connection timeouts. Used by the reaper to run one remote
command and by the launcher to spawn long-lived port forwarding sessions.
"""

import logging
import subprocess
from pathlib import Path

from .config import config
from .tunnels import TunnelSpec

logger = logging.getLogger(__name__)

# ssh exits with 255 when the connection itself fails
SSH_CONNECTION_ERROR = 255

# Remote forward confirmations are only logged from DEBUG1 up
SESSION_LOG_LEVEL = "DEBUG1"


class SSHTransport:
    """Builds and runs ssh commands for a tunnel."""

    def __init__(
        self,
        ssh_binary: str = None,
        strict_host_key_checking: str = None,
    ):
        self.ssh_binary = ssh_binary or config.ssh_binary
        self.strict_host_key_checking = strict_host_key_checking or config.strict_host_key_checking

    def base_args(self, spec: TunnelSpec, connect_timeout: int = None) -> list[str]:
        """Common ssh arguments: identity, port and non-interactive options."""
        args = [
            self.ssh_binary,
            "-i", spec.credential_reference,
            "-p", str(spec.ssh_port),
            "-o", "BatchMode=yes",
            "-o", f"StrictHostKeyChecking={self.strict_host_key_checking}",
        ]
        if connect_timeout:
            args.extend(["-o", f"ConnectTimeout={connect_timeout}"])
        return args

    def run(
        self,
        spec: TunnelSpec,
        remote_command: str,
        connect_timeout: int,
        timeout: float,
    ) -> subprocess.CompletedProcess:
        """
        Run a command on the remote host and wait for it.

        Raises subprocess.TimeoutExpired if the whole exchange exceeds timeout;
        the ssh process is killed before the exception propagates.
        """
        cmd = self.base_args(spec, connect_timeout) + [spec.destination, remote_command]
        logger.debug(f"Running remote command on {spec.destination}: {remote_command}")
        return subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
            text=True,
        )

    def session_args(
        self,
        spec: TunnelSpec,
        keepalive_interval: int,
        keepalive_count_max: int,
        connect_timeout: int = None,
    ) -> list[str]:
        """Arguments for a backgrounded port forwarding session."""
        return self.base_args(spec, connect_timeout) + [
            "-N",
            "-o", f"LogLevel={SESSION_LOG_LEVEL}",
            "-o", "ExitOnForwardFailure=yes",
            "-o", f"ServerAliveInterval={keepalive_interval}",
            "-o", f"ServerAliveCountMax={keepalive_count_max}",
            spec.forward_flag, spec.forward_spec,
            spec.destination,
        ]

    def spawn(self, argv: list[str], log_path: Path) -> subprocess.Popen:
        """Start a session in its own process group, output appended to log_path."""
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as log_file:
            return subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
