"""Tests for the supervision cycle."""

from __future__ import annotations

import threading

from conftest import FakeLauncher, FakeProbe, FakeReaper, wait_until

from tunnelwatch.supervisor import CycleState
from tunnelwatch.tunnels import (
    Direction,
    ErrorKind,
    LaunchError,
    LaunchErrorKind,
    ProbeResult,
    ProbeState,
    ReapError,
    ReapErrorKind,
    RecoveryOutcome,
    TunnelSpec,
)


class TestHealthy:
    def test_established_is_noop(self, spec, make_supervisor) -> None:
        reaper, launcher = FakeReaper(), FakeLauncher()
        sup = make_supervisor(FakeProbe(ProbeResult.established()), reaper, launcher)

        report = sup.run_cycle(spec)

        assert report.outcome == RecoveryOutcome.HEALTHY
        assert report.probe_before.is_established
        assert reaper.calls == 0
        assert launcher.calls == 0
        assert sup.get_state(spec.name) == CycleState.IDLE


class TestRecovery:
    def test_scenario_a_recovered(self, spec, make_supervisor) -> None:
        probe = FakeProbe(ProbeResult.absent(), ProbeResult.established())
        reaper, launcher = FakeReaper(), FakeLauncher(pid=777)
        sup = make_supervisor(probe, reaper, launcher)

        report = sup.run_cycle(spec)

        assert report.outcome == RecoveryOutcome.RECOVERED
        assert report.probe_before.state == ProbeState.ABSENT
        assert report.session_pid == 777
        assert report.ports_not_cleared == ()
        assert report.error_kind is None
        assert (probe.calls, reaper.calls, launcher.calls) == (2, 1, 1)

    def test_unknown_probe_triggers_recovery(self, spec, make_supervisor) -> None:
        probe = FakeProbe(ProbeResult.unknown("timed out"), ProbeResult.established())
        sup = make_supervisor(probe)

        report = sup.run_cycle(spec)

        assert report.outcome == RecoveryOutcome.RECOVERED
        assert report.probe_before.state == ProbeState.UNKNOWN
        assert "probe_unknown" in report.detail

    def test_scenario_b_unreachable_skips_launch(self, spec, make_supervisor) -> None:
        reaper = FakeReaper(ReapError(ReapErrorKind.UNREACHABLE, "connection refused"))
        launcher = FakeLauncher()
        sup = make_supervisor(FakeProbe(ProbeResult.absent()), reaper, launcher)

        report = sup.run_cycle(spec)

        assert report.outcome == RecoveryOutcome.REAP_FAILED
        assert report.error_kind == ErrorKind.REAP_UNREACHABLE
        assert report.retriable
        assert report.ports_not_cleared == (9090,)
        assert launcher.calls == 0

    def test_partial_clear_still_launches(self, make_supervisor) -> None:
        spec = TunnelSpec(8080, "example.net", "u", (9090, 9091), "/k")
        reaper = FakeReaper(ReapError(ReapErrorKind.PARTIAL_CLEAR, "busy", ports=(9091,)))
        launcher = FakeLauncher()
        probe = FakeProbe(ProbeResult.absent(), ProbeResult.established())
        sup = make_supervisor(probe, reaper, launcher)

        report = sup.run_cycle(spec)

        assert launcher.calls == 1
        assert report.outcome == RecoveryOutcome.RECOVERED
        assert report.ports_not_cleared == (9091,)
        assert report.to_dict()["ports_not_cleared"] == [9091]

    def test_scenario_c_bind_conflict(self, spec, make_supervisor) -> None:
        launcher = FakeLauncher(LaunchError(LaunchErrorKind.BIND_CONFLICT, "port 9090 in use"))
        sup = make_supervisor(FakeProbe(ProbeResult.absent()), FakeReaper(), launcher)

        report = sup.run_cycle(spec)

        assert report.outcome == RecoveryOutcome.LAUNCH_FAILED
        assert report.error_kind == ErrorKind.LAUNCH_BIND_CONFLICT
        assert report.retriable is False
        assert report.to_dict()["retriable"] is False
        assert "port 9090 in use" in report.detail

    def test_auth_failure_not_retriable(self, spec, make_supervisor) -> None:
        launcher = FakeLauncher(LaunchError(LaunchErrorKind.AUTH_FAILURE, "Permission denied"))
        sup = make_supervisor(FakeProbe(ProbeResult.absent()), FakeReaper(), launcher)

        report = sup.run_cycle(spec)

        assert report.outcome == RecoveryOutcome.LAUNCH_FAILED
        assert not report.retriable

    def test_launch_timeout_retriable(self, spec, make_supervisor) -> None:
        launcher = FakeLauncher(LaunchError(LaunchErrorKind.TIMEOUT, "no confirmation"))
        sup = make_supervisor(FakeProbe(ProbeResult.absent()), FakeReaper(), launcher)

        report = sup.run_cycle(spec)

        assert report.error_kind == ErrorKind.LAUNCH_TIMEOUT
        assert report.retriable

    def test_scenario_d_verify_mismatch(self, spec, make_supervisor) -> None:
        probe = FakeProbe(ProbeResult.absent(), ProbeResult.absent("forward rejected"))
        launcher = FakeLauncher(pid=31337)
        sup = make_supervisor(probe, FakeReaper(), launcher)

        report = sup.run_cycle(spec)

        assert report.outcome == RecoveryOutcome.STILL_DOWN
        assert report.error_kind == ErrorKind.VERIFY_MISMATCH
        assert report.session_pid == 31337
        assert "31337" in report.detail
        assert "forward rejected" in report.detail
        assert not report.outcome.ok

    def test_unexpected_exception_is_contained(self, spec, make_supervisor) -> None:
        class ExplodingLauncher(FakeLauncher):
            def launch(self, spec):
                raise RuntimeError("boom")

        sup = make_supervisor(FakeProbe(ProbeResult.absent()), FakeReaper(), ExplodingLauncher())

        report = sup.run_cycle(spec)

        assert report.outcome == RecoveryOutcome.LAUNCH_FAILED
        assert "boom" in report.detail


class TestMutualExclusion:
    def test_second_trigger_is_skipped(self, spec, make_supervisor) -> None:
        reaper = FakeReaper()
        reaper.release = threading.Event()
        launcher = FakeLauncher()
        probe = FakeProbe(ProbeResult.absent())
        sup = make_supervisor(probe, reaper, launcher)

        results = []
        first = threading.Thread(target=lambda: results.append(sup.run_cycle(spec)))
        first.start()
        assert reaper.started.wait(5)

        assert sup.is_in_flight(spec.name)
        assert sup.get_state(spec.name) == CycleState.REAPING
        second = sup.run_cycle(spec)

        reaper.release.set()
        first.join(5)

        assert second is None
        assert reaper.calls == 1
        assert launcher.calls == 1
        assert len(results) == 1
        assert not sup.is_in_flight(spec.name)

    def test_waiting_trigger_runs_after_first(self, spec, make_supervisor) -> None:
        reaper = FakeReaper()
        reaper.release = threading.Event()
        probe = FakeProbe(ProbeResult.absent(), ProbeResult.established())
        sup = make_supervisor(probe, reaper)

        first = threading.Thread(target=sup.run_cycle, args=(spec,))
        first.start()
        assert reaper.started.wait(5)

        results = []
        second = threading.Thread(target=lambda: results.append(sup.run_cycle(spec, wait=True)))
        second.start()
        second.join(0.2)
        assert second.is_alive()

        reaper.release.set()
        first.join(5)
        second.join(5)

        assert reaper.calls == 1
        assert results[0].outcome == RecoveryOutcome.HEALTHY

    def test_independent_tunnels_do_not_block(self, spec, make_supervisor) -> None:
        other = TunnelSpec(8081, "198.51.100.7", "u", (9191,), "/k", Direction.FORWARD)
        reaper = FakeReaper()
        reaper.release = threading.Event()
        sup = make_supervisor(FakeProbe(ProbeResult.absent()), reaper)

        first = threading.Thread(target=sup.run_cycle, args=(spec,))
        first.start()
        assert reaper.started.wait(5)

        # A different tunnel is not held back by the in-flight cycle
        sup.reaper = FakeReaper()
        report = sup.run_cycle(other)

        reaper.release.set()
        first.join(5)

        assert report is not None
        assert report.tunnel_name == other.name


class TestAbort:
    def test_abort_before_cycle(self, spec, make_supervisor) -> None:
        probe = FakeProbe(ProbeResult.absent())
        sup = make_supervisor(probe)
        sup.abort()

        report = sup.run_cycle(spec)

        assert report.outcome == RecoveryOutcome.ABORTED
        assert probe.calls == 0

    def test_abort_between_steps(self, spec, make_supervisor) -> None:
        reaper = FakeReaper()
        reaper.release = threading.Event()
        launcher = FakeLauncher()
        sup = make_supervisor(FakeProbe(ProbeResult.absent()), reaper, launcher)

        results = []
        worker = threading.Thread(target=lambda: results.append(sup.run_cycle(spec)))
        worker.start()
        assert reaper.started.wait(5)

        sup.abort()
        reaper.release.set()
        worker.join(5)

        # The reap in flight ran to completion; the launch never started
        assert reaper.calls == 1
        assert launcher.calls == 0
        assert results[0].outcome == RecoveryOutcome.ABORTED

    def test_reset_clears_abort(self, spec, make_supervisor) -> None:
        sup = make_supervisor()
        sup.abort()
        sup.reset()
        assert sup.run_cycle(spec).outcome == RecoveryOutcome.HEALTHY


class TestStopTunnel:
    def test_stop_idle_tunnel(self, spec, make_supervisor) -> None:
        launcher = FakeLauncher()
        sup = make_supervisor(launcher=launcher)

        assert sup.stop_tunnel(spec) == 1
        assert launcher.stopped == [spec.name]
        assert not sup.is_stopping(spec.name)
        assert sup.run_cycle(spec).outcome == RecoveryOutcome.HEALTHY

    def test_stop_during_reap_prevents_launch(self, spec, make_supervisor) -> None:
        reaper = FakeReaper()
        reaper.release = threading.Event()
        launcher = FakeLauncher()
        sup = make_supervisor(FakeProbe(ProbeResult.absent()), reaper, launcher)

        results = []
        cycle = threading.Thread(target=lambda: results.append(sup.run_cycle(spec)))
        cycle.start()
        assert reaper.started.wait(5)

        stopper = threading.Thread(target=sup.stop_tunnel, args=(spec,))
        stopper.start()
        assert wait_until(lambda: sup.is_stopping(spec.name))
        # Sessions are only stopped once the cycle lets go of the tunnel
        assert launcher.stopped == []

        reaper.release.set()
        cycle.join(5)
        stopper.join(5)

        assert launcher.calls == 0
        assert launcher.stopped == [spec.name]
        assert results[0].outcome == RecoveryOutcome.ABORTED
        assert results[0].detail == "stop requested"
        assert not sup.is_stopping(spec.name)

    def test_other_tunnels_keep_launching(self, spec, make_supervisor) -> None:
        other = TunnelSpec(8081, "198.51.100.7", "tunnel", (9091,), "/k")
        launcher = FakeLauncher()
        sup = make_supervisor(FakeProbe(ProbeResult.absent(), ProbeResult.established()), launcher=launcher)

        sup.stop_tunnel(spec)

        assert sup.run_cycle(other).outcome == RecoveryOutcome.RECOVERED
        assert launcher.calls == 1

class TestReporting:
    def test_report_callback_receives_every_cycle(self, spec, make_supervisor) -> None:
        sup = make_supervisor()
        received = []
        sup.set_report_callback(received.append)

        sup.run_cycle(spec)
        sup.run_cycle(spec)

        assert [r.outcome for r in received] == [RecoveryOutcome.HEALTHY] * 2

    def test_callback_error_does_not_escape(self, spec, make_supervisor) -> None:
        sup = make_supervisor()

        def broken(report):
            raise ValueError("db down")

        sup.set_report_callback(broken)
        assert sup.run_cycle(spec).outcome == RecoveryOutcome.HEALTHY

    def test_report_record_shape(self, spec, make_supervisor) -> None:
        sup = make_supervisor(FakeProbe(ProbeResult.absent(), ProbeResult.established()))
        data = sup.run_cycle(spec).to_dict()

        assert data["tunnel"] == spec.name
        assert data["probe_before"] == "absent"
        assert data["outcome"] == "recovered"
        assert data["ports_not_cleared"] == []
        assert "timestamp" in data
        assert data["duration_seconds"] >= 0
