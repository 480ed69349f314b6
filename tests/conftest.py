"""Shared test fixtures and fakes."""

from __future__ import annotations

import os
import tempfile
import threading
import time

import pytest

os.environ["TUNNELWATCH_DATA_DIR"] = tempfile.mkdtemp(prefix="tunnelwatch_test_")
for key in ("SERVER_IP", "SERVER_PORT", "CLIENT_PORT", "SERVER_USER", "SSH_KEY_PATH", "SERVICE_NAME"):
    os.environ.pop(key, None)

from tunnelwatch.models import initialize_db
from tunnelwatch.supervisor import TunnelSupervisor
from tunnelwatch.tunnels import Direction, ProbeResult, SessionHandle, TunnelSpec


def wait_until(condition, timeout: float = 5) -> bool:
    """Poll condition until it holds or timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


class FakeProbe:
    """Returns the queued results in order, repeating the last one."""

    def __init__(self, *results: ProbeResult) -> None:
        self.results = list(results)
        self.calls = 0

    def probe(self, spec: TunnelSpec) -> ProbeResult:
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class FakeReaper:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0
        self.started = threading.Event()
        self.release: threading.Event | None = None

    def reap(self, spec: TunnelSpec) -> None:
        self.calls += 1
        self.started.set()
        if self.release is not None:
            self.release.wait(5)
        if self.error:
            raise self.error


class FakeLauncher:
    def __init__(self, error: Exception | None = None, pid: int = 4242) -> None:
        self.error = error
        self.pid = pid
        self.calls = 0
        self.stopped: list[str] = []

    def launch(self, spec: TunnelSpec) -> SessionHandle:
        self.calls += 1
        if self.error:
            raise self.error
        return SessionHandle(tunnel_name=spec.name, pid=self.pid, argv=["ssh", "-N"])

    def get_session(self, name: str) -> SessionHandle | None:
        return None

    def stop(self, spec: TunnelSpec) -> int:
        self.stopped.append(spec.name)
        return 1


@pytest.fixture
def spec() -> TunnelSpec:
    return TunnelSpec(
        local_port=8080,
        remote_host="203.0.113.10",
        remote_user="tunnel",
        remote_ports=(9090,),
        credential_reference="/home/tunnel/.ssh/id_ed25519",
        direction=Direction.REVERSE,
    )


@pytest.fixture
def make_supervisor():
    """Build a supervisor from fakes: make_supervisor(probe, reaper, launcher)."""

    def factory(probe=None, reaper=None, launcher=None) -> TunnelSupervisor:
        return TunnelSupervisor(
            probe=probe or FakeProbe(ProbeResult.established()),
            reaper=reaper or FakeReaper(),
            launcher=launcher or FakeLauncher(),
            settle_delay=0,
        )

    return factory


@pytest.fixture
def db(tmp_path):
    """A fresh SQLite database per test."""
    initialize_db(str(tmp_path / "tunnelwatch.db"))
    yield
