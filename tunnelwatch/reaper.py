"""
Remote listener cleanup.

Before a tunnel is re-established, any process still listening on the
guarded remote ports (typically the sshd child of a crashed or half-closed
session) has to go, otherwise the new forward cannot bind. All ports are
handled in one ssh connection; each port is attempted even if another fails.
"""

import logging
import shlex
import subprocess

from .config import config
from .transport import SSH_CONNECTION_ERROR, SSHTransport
from .tunnels import ReapError, ReapErrorKind, TunnelSpec

logger = logging.getLogger(__name__)

# POSIX sh run on the remote host. Prints "CLEAR <port> <killed>" or
# "BUSY <port>" per guarded port.
REAP_SCRIPT = """
listeners() {
    if command -v lsof >/dev/null 2>&1; then
        lsof -t -iTCP:"$1" -sTCP:LISTEN 2>/dev/null
    else
        fuser -n tcp "$1" 2>/dev/null
    fi
}
for port in %(ports)s; do
    pids=$(listeners "$port")
    killed=0
    for pid in $pids; do
        kill "$pid" 2>/dev/null && killed=$((killed + 1))
    done
    [ -n "$pids" ] && sleep 1
    left=$(listeners "$port")
    if [ -n "$left" ]; then
        for pid in $left; do kill -9 "$pid" 2>/dev/null; done
        sleep 1
        left=$(listeners "$port")
    fi
    if [ -n "$left" ]; then
        echo "BUSY $port"
    else
        echo "CLEAR $port $killed"
    fi
done
"""


def build_reap_command(ports) -> str:
    script = REAP_SCRIPT % {"ports": " ".join(str(int(p)) for p in ports)}
    return f"sh -c {shlex.quote(script)}"


def parse_reap_output(output: str, ports) -> tuple[dict[int, int], list[int]]:
    """
    Parse the remote script output.

    Returns (killed count per cleared port, ports not cleared). A port the
    script never reported on counts as not cleared.
    """
    cleared: dict[int, int] = {}
    busy: set[int] = set()
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] in ("CLEAR", "BUSY") and parts[1].isdigit():
            port = int(parts[1])
            if parts[0] == "CLEAR":
                cleared[port] = int(parts[2]) if len(parts) > 2 and parts[2].isdigit() else 0
            else:
                busy.add(port)

    not_cleared = [p for p in ports if p in busy or p not in cleared]
    return cleared, not_cleared


class RemoteReaper:
    """Terminates processes occupying a tunnel's remote ports."""

    def __init__(
        self,
        transport: SSHTransport = None,
        connect_timeout: int = None,
        timeout: float = None,
    ):
        self.transport = transport or SSHTransport()
        self.connect_timeout = connect_timeout or config.reap_connect_timeout
        self.timeout = timeout or config.reap_timeout

    def reap(self, spec: TunnelSpec) -> None:
        """
        Clear every guarded remote port of the tunnel.

        Nothing listening (or nothing guarded) is a success. Raises ReapError(UNREACHABLE) when the
        remote host cannot be reached within the timeouts, and
        ReapError(PARTIAL_CLEAR) when some ports are still occupied.
        """
        ports = list(spec.guarded_ports)
        if not ports:
            logger.debug(f"No guarded remote ports for {spec.name}, nothing to clear")
            return

        logger.info(f"Clearing remote ports {ports} on {spec.destination} for {spec.name}")

        try:
            result = self.transport.run(
                spec,
                build_reap_command(ports),
                connect_timeout=self.connect_timeout,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise ReapError(
                ReapErrorKind.UNREACHABLE,
                f"{spec.destination} did not answer within {self.timeout}s",
            )
        except OSError as e:
            raise ReapError(ReapErrorKind.UNREACHABLE, f"could not run ssh: {e}")

        if result.returncode == SSH_CONNECTION_ERROR:
            stderr = (result.stderr or "").strip()
            raise ReapError(
                ReapErrorKind.UNREACHABLE,
                f"ssh to {spec.destination} failed: {stderr or 'exit 255'}",
            )

        cleared, not_cleared = parse_reap_output(result.stdout or "", ports)
        for port, killed in cleared.items():
            if killed:
                logger.info(f"Killed {killed} process(es) on {spec.remote_host}:{port}")

        if not_cleared:
            logger.warning(f"Remote ports not cleared for {spec.name}: {not_cleared}")
            raise ReapError(
                ReapErrorKind.PARTIAL_CLEAR,
                f"ports still occupied on {spec.remote_host}: {not_cleared}",
                ports=tuple(not_cleared),
            )
