"""
Tunnel supervision cycle.

One cycle: probe the tunnel; if it is not established, clear stale remote
listeners, launch a new session, wait for it to settle and probe again.
Every step error is folded into a single CycleReport, so nothing escapes a
cycle. Cycles for the same tunnel never overlap; different tunnels run
independently.
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable

from .config import config
from .launcher import TunnelLauncher
from .probe import ConnectionProbe
from .reaper import RemoteReaper
from .tunnels import (
    CycleReport,
    ErrorKind,
    LaunchError,
    ProbeResult,
    ProbeState,
    ReapError,
    ReapErrorKind,
    RecoveryOutcome,
    TunnelSpec,
)

logger = logging.getLogger(__name__)
report_logger = logging.getLogger("tunnelwatch.report")


class CycleState(Enum):
    IDLE = "idle"
    PROBING = "probing"
    HEALTHY = "healthy"
    REAPING = "reaping"
    LAUNCHING = "launching"
    VERIFYING = "verifying"
    RECOVERED = "recovered"
    FAILED = "failed"


class CycleAborted(Exception):
    """Raised between steps when shutdown was requested."""


# Outcome when an unexpected exception escapes a step
_UNEXPECTED_OUTCOME = {
    CycleState.REAPING: RecoveryOutcome.REAP_FAILED,
    CycleState.LAUNCHING: RecoveryOutcome.LAUNCH_FAILED,
}


class TunnelSupervisor:
    """Runs supervision cycles with at most one cycle in flight per tunnel."""

    def __init__(
        self,
        probe: ConnectionProbe = None,
        reaper: RemoteReaper = None,
        launcher: TunnelLauncher = None,
        settle_delay: float = None,
    ):
        self.probe = probe or ConnectionProbe()
        self.reaper = reaper or RemoteReaper()
        self.launcher = launcher or TunnelLauncher()
        self.settle_delay = settle_delay if settle_delay is not None else config.settle_delay
        self._locks: dict[str, threading.Lock] = {}
        self._states: dict[str, CycleState] = {}
        self._guard = threading.Lock()
        self._abort = threading.Event()
        self._stopping: set[str] = set()
        self._on_report: Callable[[CycleReport], None] = None

    def set_report_callback(self, callback: Callable[[CycleReport], None]):
        """Set callback invoked with every finished cycle report."""
        self._on_report = callback

    def _lock_for(self, spec: TunnelSpec) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(spec.name, threading.Lock())

    def get_state(self, name: str) -> CycleState:
        with self._guard:
            return self._states.get(name, CycleState.IDLE)

    def _set_state(self, spec: TunnelSpec, state: CycleState):
        with self._guard:
            self._states[spec.name] = state
        logger.debug(f"{spec.name}: {state.value}")

    def is_in_flight(self, name: str) -> bool:
        with self._guard:
            lock = self._locks.get(name)
        return bool(lock and lock.locked())

    def abort(self):
        """Request in-flight cycles to stop at the next step boundary."""
        self._abort.set()

    def reset(self):
        self._abort.clear()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def is_stopping(self, name: str) -> bool:
        with self._guard:
            return name in self._stopping

    def stop_tunnel(self, spec: TunnelSpec) -> int:
        """
        Terminate the tunnel's sessions without racing an in-flight cycle.

        An in-flight cycle is told to abort at its next step boundary, and
        the sessions are stopped only once it has released the tunnel's lock,
        so it cannot launch a session after the stop. Returns how many
        sessions were stopped.
        """
        with self._guard:
            self._stopping.add(spec.name)
        lock = self._lock_for(spec)
        try:
            with lock:
                return self.launcher.stop(spec)
        finally:
            with self._guard:
                self._stopping.discard(spec.name)

    def run_cycle(self, spec: TunnelSpec, wait: bool = False) -> CycleReport | None:
        """
        Run one supervision cycle for a tunnel.

        If a cycle for the same tunnel is already in flight, returns None
        immediately, or with wait=True blocks until it finishes and then runs.
        """
        lock = self._lock_for(spec)
        if not lock.acquire(blocking=wait):
            logger.info(f"Cycle for {spec.name} already in flight, skipping")
            return None

        started = time.monotonic()
        try:
            report = self._run(spec)
        finally:
            with self._guard:
                self._states[spec.name] = CycleState.IDLE
            lock.release()

        report.duration_seconds = time.monotonic() - started
        self._emit(report)
        return report

    def _checkpoint(self, spec: TunnelSpec):
        if self._abort.is_set():
            raise CycleAborted("shutdown requested")
        with self._guard:
            stopping = spec.name in self._stopping
        if stopping:
            raise CycleAborted("stop requested")

    def _run(self, spec: TunnelSpec) -> CycleReport:
        probe_before = ProbeResult.unknown("not probed")
        try:
            self._checkpoint(spec)
            self._set_state(spec, CycleState.PROBING)
            probe_before = self.probe.probe(spec)

            if probe_before.is_established:
                self._set_state(spec, CycleState.HEALTHY)
                return CycleReport(spec.name, probe_before, RecoveryOutcome.HEALTHY)

            logger.warning(f"Tunnel {spec.name} is down: {probe_before}")
            return self._recover(spec, probe_before)

        except CycleAborted as e:
            logger.info(f"Cycle for {spec.name} aborted: {e}")
            return CycleReport(
                spec.name, probe_before, RecoveryOutcome.ABORTED, detail=str(e) or "shutdown requested"
            )
        except Exception as e:
            state = self.get_state(spec.name)
            logger.exception(f"Unexpected error in cycle for {spec.name} while {state.value}: {e}")
            self._set_state(spec, CycleState.FAILED)
            return CycleReport(
                spec.name,
                probe_before,
                _UNEXPECTED_OUTCOME.get(state, RecoveryOutcome.STILL_DOWN),
                detail=f"unexpected error while {state.value}: {e}",
            )

    def _recover(self, spec: TunnelSpec, probe_before: ProbeResult) -> CycleReport:
        ports_not_cleared: tuple[int, ...] = ()
        notes = []
        if probe_before.state == ProbeState.UNKNOWN:
            notes.append(f"{ErrorKind.PROBE_UNKNOWN.value}: {probe_before.reason}")

        self._checkpoint(spec)
        self._set_state(spec, CycleState.REAPING)
        try:
            self.reaper.reap(spec)
        except ReapError as e:
            if e.kind == ReapErrorKind.UNREACHABLE:
                logger.error(f"Remote for {spec.name} unreachable, not launching: {e}")
                self._set_state(spec, CycleState.FAILED)
                return CycleReport(
                    spec.name,
                    probe_before,
                    RecoveryOutcome.REAP_FAILED,
                    error_kind=e.error_kind,
                    detail=str(e),
                    ports_not_cleared=tuple(spec.guarded_ports),
                )
            logger.warning(f"Partial clear for {spec.name}, launching anyway: {e}")
            ports_not_cleared = e.ports
            notes.append(f"{e.error_kind.value}: {e}")

        self._checkpoint(spec)
        self._set_state(spec, CycleState.LAUNCHING)
        try:
            handle = self.launcher.launch(spec)
        except LaunchError as e:
            if e.error_kind.retriable:
                logger.warning(f"Launch failed for {spec.name}: {e}")
            else:
                logger.error(
                    f"Launch failed for {spec.name} ({e.error_kind.value}): {e}. "
                    f"This will repeat until the configuration or credentials are fixed."
                )
            self._set_state(spec, CycleState.FAILED)
            return CycleReport(
                spec.name,
                probe_before,
                RecoveryOutcome.LAUNCH_FAILED,
                error_kind=e.error_kind,
                detail="; ".join(notes + [str(e)]),
                ports_not_cleared=ports_not_cleared,
            )

        self._set_state(spec, CycleState.VERIFYING)
        if self._abort.wait(self.settle_delay):
            raise CycleAborted("shutdown requested")
        self._checkpoint(spec)
        probe_after = self.probe.probe(spec)

        if probe_after.is_established:
            logger.info(f"Tunnel {spec.name} recovered (session PID {handle.pid})")
            self._set_state(spec, CycleState.RECOVERED)
            return CycleReport(
                spec.name,
                probe_before,
                RecoveryOutcome.RECOVERED,
                error_kind=ErrorKind.REAP_PARTIAL if ports_not_cleared else None,
                detail="; ".join(notes) or None,
                ports_not_cleared=ports_not_cleared,
                session_pid=handle.pid,
            )

        detail = (
            f"launch reported session PID {handle.pid} ({' '.join(handle.argv)}) "
            f"but re-probe after {self.settle_delay}s returned {probe_after}; "
            f"see {handle.log_path}"
        )
        logger.error(f"Tunnel {spec.name} did not come up: {detail}")
        self._set_state(spec, CycleState.FAILED)
        return CycleReport(
            spec.name,
            probe_before,
            RecoveryOutcome.STILL_DOWN,
            error_kind=ErrorKind.VERIFY_MISMATCH,
            detail="; ".join(notes + [detail]),
            ports_not_cleared=ports_not_cleared,
            session_pid=handle.pid,
        )

    def _emit(self, report: CycleReport):
        level = logging.INFO if report.outcome.ok or report.outcome == RecoveryOutcome.ABORTED else logging.ERROR
        report_logger.log(level, report.to_json())
        if self._on_report:
            try:
                self._on_report(report)
            except Exception as e:
                logger.error(f"Error in report callback for {report.tunnel_name}: {e}")


# Global supervisor instance
tunnel_supervisor = TunnelSupervisor()
