"""
Tunnel definitions and the values passed between supervision steps.

A TunnelSpec is built once from configuration and handed unchanged to the
probe, reaper and launcher. Each step reports back with a plain value
(ProbeResult, SessionHandle) or raises ReapError / LaunchError, which the
supervisor folds into a single CycleReport.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


class ConfigError(ValueError):
    """Raised when a tunnel configuration mapping is invalid."""


class Direction(Enum):
    FORWARD = "forward"
    REVERSE = "reverse"


@dataclass(frozen=True)
class TunnelSpec:
    """One supervised tunnel. Immutable for the lifetime of the process."""

    local_port: int
    remote_host: str
    remote_user: str
    remote_ports: tuple[int, ...]
    credential_reference: str
    direction: Direction = Direction.REVERSE
    name: str = ""
    ssh_port: int = 22

    def __post_init__(self):
        if not self.remote_ports:
            raise ConfigError("at least one remote port is required")
        if not self.name:
            clean_host = self.remote_host.replace(".", "_")
            object.__setattr__(
                self, "name", f"ssh_tunnel_{self.local_port}_to_{clean_host}_{self.remote_ports[0]}"
            )

    @property
    def remote_port(self) -> int:
        """The remote port bound by the forward itself."""
        return self.remote_ports[0]

    @property
    def guarded_ports(self) -> tuple[int, ...]:
        """
        Remote ports the reaper clears before a launch.

        A forward tunnel's first remote port is the destination service, not
        a listener left behind by a dead session, so only its extra ports are
        guarded.
        """
        if self.direction == Direction.FORWARD:
            return self.remote_ports[1:]
        return self.remote_ports

    @property
    def destination(self) -> str:
        return f"{self.remote_user}@{self.remote_host}"

    @property
    def forward_flag(self) -> str:
        return "-R" if self.direction == Direction.REVERSE else "-L"

    @property
    def forward_spec(self) -> str:
        """The port mapping argument passed to ssh."""
        if self.direction == Direction.REVERSE:
            return f"{self.remote_port}:localhost:{self.local_port}"
        return f"{self.local_port}:localhost:{self.remote_port}"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "local_port": self.local_port,
            "remote_host": self.remote_host,
            "remote_user": self.remote_user,
            "remote_ports": list(self.remote_ports),
            "credential_reference": self.credential_reference,
            "direction": self.direction.value,
            "ssh_port": self.ssh_port,
        }


def _port(value, key: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a port number, got {value!r}")
    if not 0 < port < 65536:
        raise ConfigError(f"{key} out of range: {port}")
    return port


def spec_from_mapping(data: dict) -> TunnelSpec:
    """
    Build a TunnelSpec from a configuration mapping.

    Accepts either `remote_port` or `remote_ports` (a list, or a comma
    separated string). Everything except `name` and `ssh_port` is required.
    """
    required = ("local_port", "remote_host", "remote_user", "credential_reference", "direction")
    missing = [key for key in required if not data.get(key)]
    if not data.get("remote_ports") and not data.get("remote_port"):
        missing.append("remote_port(s)")
    if missing:
        raise ConfigError(f"Missing required tunnel settings: {', '.join(missing)}")

    raw_ports = data.get("remote_ports") or [data.get("remote_port")]
    if isinstance(raw_ports, str):
        raw_ports = [p for p in raw_ports.split(",") if p.strip()]
    elif isinstance(raw_ports, int):
        raw_ports = [raw_ports]
    remote_ports = tuple(dict.fromkeys(_port(p, "remote_port") for p in raw_ports))

    try:
        direction = Direction(str(data["direction"]).lower())
    except ValueError:
        raise ConfigError(f"direction must be 'forward' or 'reverse', got {data['direction']!r}")

    return TunnelSpec(
        local_port=_port(data["local_port"], "local_port"),
        remote_host=str(data["remote_host"]),
        remote_user=str(data["remote_user"]),
        remote_ports=remote_ports,
        credential_reference=str(Path(str(data["credential_reference"])).expanduser()),
        direction=direction,
        name=data.get("name") or "",
        ssh_port=_port(data.get("ssh_port") or 22, "ssh_port"),
    )


class ProbeState(Enum):
    ESTABLISHED = "established"
    ABSENT = "absent"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProbeResult:
    state: ProbeState
    reason: Optional[str] = None

    @classmethod
    def established(cls) -> "ProbeResult":
        return cls(ProbeState.ESTABLISHED)

    @classmethod
    def absent(cls, reason: str = None) -> "ProbeResult":
        return cls(ProbeState.ABSENT, reason)

    @classmethod
    def unknown(cls, reason: str) -> "ProbeResult":
        return cls(ProbeState.UNKNOWN, reason)

    @property
    def is_established(self) -> bool:
        return self.state == ProbeState.ESTABLISHED

    def __str__(self) -> str:
        if self.reason:
            return f"{self.state.value} ({self.reason})"
        return self.state.value


class RecoveryOutcome(Enum):
    """Result of one supervision cycle."""

    HEALTHY = "healthy"
    RECOVERED = "recovered"
    STILL_DOWN = "still_down"
    REAP_FAILED = "reap_failed"
    LAUNCH_FAILED = "launch_failed"
    ABORTED = "aborted"

    @property
    def ok(self) -> bool:
        return self in (RecoveryOutcome.HEALTHY, RecoveryOutcome.RECOVERED)


class ErrorKind(Enum):
    PROBE_UNKNOWN = "probe_unknown"
    REAP_UNREACHABLE = "reap_unreachable"
    REAP_PARTIAL = "reap_partial"
    LAUNCH_BIND_CONFLICT = "launch_bind_conflict"
    LAUNCH_AUTH_FAILURE = "launch_auth_failure"
    LAUNCH_TIMEOUT = "launch_timeout"
    LAUNCH_EXITED = "launch_exited"
    VERIFY_MISMATCH = "verify_mismatch"

    @property
    def retriable(self) -> bool:
        """Whether the next cycle can be expected to fix this without an operator."""
        return self not in (
            ErrorKind.LAUNCH_BIND_CONFLICT,
            ErrorKind.LAUNCH_AUTH_FAILURE,
            ErrorKind.VERIFY_MISMATCH,
        )


class ReapErrorKind(Enum):
    UNREACHABLE = "unreachable"
    PARTIAL_CLEAR = "partial_clear"


class ReapError(Exception):
    """Remote listeners could not be (fully) cleared."""

    def __init__(self, kind: ReapErrorKind, message: str, ports: tuple[int, ...] = ()):
        super().__init__(message)
        self.kind = kind
        self.ports = tuple(ports)

    @property
    def error_kind(self) -> ErrorKind:
        if self.kind == ReapErrorKind.UNREACHABLE:
            return ErrorKind.REAP_UNREACHABLE
        return ErrorKind.REAP_PARTIAL


class LaunchErrorKind(Enum):
    BIND_CONFLICT = "bind_conflict"
    AUTH_FAILURE = "auth_failure"
    TIMEOUT = "timeout"
    EXITED = "exited"


class LaunchError(Exception):
    """A tunnel session could not be established."""

    def __init__(self, kind: LaunchErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    @property
    def error_kind(self) -> ErrorKind:
        return {
            LaunchErrorKind.BIND_CONFLICT: ErrorKind.LAUNCH_BIND_CONFLICT,
            LaunchErrorKind.AUTH_FAILURE: ErrorKind.LAUNCH_AUTH_FAILURE,
            LaunchErrorKind.TIMEOUT: ErrorKind.LAUNCH_TIMEOUT,
            LaunchErrorKind.EXITED: ErrorKind.LAUNCH_EXITED,
        }[self.kind]


@dataclass
class SessionHandle:
    """A backgrounded ssh session started by the launcher."""

    tunnel_name: str
    pid: int
    argv: list[str]
    log_path: Optional[Path] = None
    started_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "tunnel_name": self.tunnel_name,
            "pid": self.pid,
            "argv": self.argv,
            "log_path": str(self.log_path) if self.log_path else None,
            "started_at": self.started_at.isoformat(),
        }


@dataclass
class CycleReport:
    """One structured record per supervision cycle."""

    tunnel_name: str
    probe_before: ProbeResult
    outcome: RecoveryOutcome
    error_kind: Optional[ErrorKind] = None
    detail: Optional[str] = None
    ports_not_cleared: tuple[int, ...] = ()
    session_pid: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)
    duration_seconds: float = 0.0

    @property
    def retriable(self) -> bool:
        return self.error_kind is None or self.error_kind.retriable

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "tunnel": self.tunnel_name,
            "probe_before": self.probe_before.state.value,
            "probe_reason": self.probe_before.reason,
            "outcome": self.outcome.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "retriable": self.retriable,
            "detail": self.detail,
            "ports_not_cleared": list(self.ports_not_cleared),
            "session_pid": self.session_pid,
            "duration_seconds": round(self.duration_seconds, 3),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)
