"""Tests for persistence of tunnels and cycle records."""

from __future__ import annotations

from datetime import datetime, timedelta

from tunnelwatch.models import CycleRecord, Tunnel, enabled_specs, record_report, register_env_tunnel
from tunnelwatch.tunnels import CycleReport, ErrorKind, ProbeResult, RecoveryOutcome


class TestTunnel:
    def test_upsert_round_trip(self, db, spec) -> None:
        Tunnel.upsert_spec(spec)
        Tunnel.upsert_spec(spec)

        assert Tunnel.select().count() == 1
        assert Tunnel.get(Tunnel.name == spec.name).to_spec() == spec

    def test_enabled_specs_skips_disabled(self, db, spec) -> None:
        tunnel = Tunnel.upsert_spec(spec)
        assert enabled_specs() == [spec]

        tunnel.enabled = False
        tunnel.save()
        assert enabled_specs() == []

    def test_register_env_tunnel(self, db) -> None:
        env = {
            "CLIENT_PORT": "22222",
            "SERVER_IP": "192.0.2.9",
            "SERVER_PORT": "2222",
            "SERVER_USER": "relay",
            "SSH_KEY_PATH": "/keys/relay",
            "SERVICE_NAME": "home-ssh",
        }
        tunnel = register_env_tunnel(env)
        assert tunnel.name == "home-ssh"
        assert tunnel.get_remote_ports() == [2222]

    def test_register_env_tunnel_unconfigured(self, db) -> None:
        assert register_env_tunnel({}) is None


class TestCycleRecord:
    def test_record_report(self, db, spec) -> None:
        Tunnel.upsert_spec(spec)
        report = CycleReport(
            spec.name,
            ProbeResult.absent(),
            RecoveryOutcome.LAUNCH_FAILED,
            error_kind=ErrorKind.LAUNCH_BIND_CONFLICT,
            detail="port in use",
            ports_not_cleared=(9090,),
        )
        record_report(report)

        record = CycleRecord.get()
        data = record.to_dict()
        assert record.tunnel.name == spec.name
        assert data["outcome"] == "launch_failed"
        assert data["error_kind"] == "launch_bind_conflict"
        assert data["retriable"] is False
        assert data["ports_not_cleared"] == [9090]

    def test_prune_old_records(self, db, spec) -> None:
        old = CycleReport(spec.name, ProbeResult.established(), RecoveryOutcome.HEALTHY)
        old.timestamp = datetime.now() - timedelta(days=30)
        record_report(old)
        record_report(CycleReport(spec.name, ProbeResult.established(), RecoveryOutcome.HEALTHY))

        assert CycleRecord.prune(days=7) == 1
        assert CycleRecord.select().count() == 1
