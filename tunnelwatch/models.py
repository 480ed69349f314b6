"""
Database models for tunnelwatch.

Uses Peewee ORM with SQLite. Stores registered tunnel definitions and one
record per supervision cycle.
"""

import json
import os
from datetime import datetime, timedelta

from peewee import (
    AutoField,
    BooleanField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    FloatField,
    ForeignKeyField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

from .config import config, tunnel_settings_from_env
from .tunnels import CycleReport, TunnelSpec, spec_from_mapping

database = DatabaseProxy()


def initialize_db(path: str = None):
    """Initialize database connection and create tables."""
    path = path or str(config.db_path)
    if path != ":memory:":
        os.makedirs(os.path.dirname(path), exist_ok=True)
    db = SqliteDatabase(
        path,
        pragmas={
            "journal_mode": "wal",
            "cache_size": -64 * 1000,
            "foreign_keys": 1,
            "busy_timeout": 5000,
        },
    )
    database.initialize(db)
    database.create_tables([Tunnel, CycleRecord], safe=True)


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class Tunnel(BaseModel):
    """A supervised tunnel definition."""

    id = AutoField()
    name = CharField(unique=True, index=True)
    local_port = IntegerField()
    remote_host = CharField()
    remote_user = CharField()
    remote_ports = TextField()  # JSON list, first entry is the forwarded port
    credential_reference = CharField()
    direction = CharField(default="reverse")
    ssh_port = IntegerField(default=22)
    enabled = BooleanField(default=True)
    created_at = DateTimeField(default=datetime.now)
    updated_at = DateTimeField(default=datetime.now)

    class Meta:
        table_name = "tunnels"

    def save(self, *args, **kwargs):
        self.updated_at = datetime.now()
        return super().save(*args, **kwargs)

    def get_remote_ports(self) -> list[int]:
        try:
            return [int(p) for p in json.loads(self.remote_ports)]
        except (json.JSONDecodeError, TypeError, ValueError):
            return []

    def to_spec(self) -> TunnelSpec:
        return spec_from_mapping(
            {
                "name": self.name,
                "local_port": self.local_port,
                "remote_host": self.remote_host,
                "remote_user": self.remote_user,
                "remote_ports": self.get_remote_ports(),
                "credential_reference": self.credential_reference,
                "direction": self.direction,
                "ssh_port": self.ssh_port,
            }
        )

    @classmethod
    def upsert_spec(cls, spec: TunnelSpec) -> "Tunnel":
        """Create or update the row for a spec, keyed by name."""
        tunnel = cls.get_or_none(cls.name == spec.name) or cls(name=spec.name)
        tunnel.local_port = spec.local_port
        tunnel.remote_host = spec.remote_host
        tunnel.remote_user = spec.remote_user
        tunnel.remote_ports = json.dumps(list(spec.remote_ports))
        tunnel.credential_reference = spec.credential_reference
        tunnel.direction = spec.direction.value
        tunnel.ssh_port = spec.ssh_port
        tunnel.save()
        return tunnel

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "local_port": self.local_port,
            "remote_host": self.remote_host,
            "remote_user": self.remote_user,
            "remote_ports": self.get_remote_ports(),
            "credential_reference": self.credential_reference,
            "direction": self.direction,
            "ssh_port": self.ssh_port,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class CycleRecord(BaseModel):
    """Report of one supervision cycle."""

    id = AutoField()
    tunnel = ForeignKeyField(Tunnel, backref="cycles", on_delete="CASCADE", null=True)
    tunnel_name = CharField(index=True)
    probe_before = CharField()
    probe_reason = TextField(null=True)
    outcome = CharField(index=True)
    error_kind = CharField(null=True)
    retriable = BooleanField(default=True)
    detail = TextField(null=True)
    ports_not_cleared = TextField(null=True)  # JSON list
    session_pid = IntegerField(null=True)
    duration_seconds = FloatField(null=True)
    timestamp = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "cycle_records"

    @classmethod
    def from_report(cls, report: CycleReport) -> "CycleRecord":
        data = report.to_dict()
        return cls.create(
            tunnel=Tunnel.get_or_none(Tunnel.name == report.tunnel_name),
            tunnel_name=report.tunnel_name,
            probe_before=data["probe_before"],
            probe_reason=data["probe_reason"],
            outcome=data["outcome"],
            error_kind=data["error_kind"],
            retriable=data["retriable"],
            detail=data["detail"],
            ports_not_cleared=json.dumps(data["ports_not_cleared"]) if report.ports_not_cleared else None,
            session_pid=report.session_pid,
            duration_seconds=report.duration_seconds,
            timestamp=report.timestamp,
        )

    @classmethod
    def prune(cls, days: int = None) -> int:
        """Delete records older than the retention window."""
        cutoff = datetime.now() - timedelta(days=days or config.report_retention_days)
        return cls.delete().where(cls.timestamp < cutoff).execute()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tunnel": self.tunnel_name,
            "probe_before": self.probe_before,
            "probe_reason": self.probe_reason,
            "outcome": self.outcome,
            "error_kind": self.error_kind,
            "retriable": self.retriable,
            "detail": self.detail,
            "ports_not_cleared": json.loads(self.ports_not_cleared) if self.ports_not_cleared else [],
            "session_pid": self.session_pid,
            "duration_seconds": self.duration_seconds,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


def register_env_tunnel(environ=None) -> Tunnel | None:
    """Upsert the tunnel configured through .env keys, if any."""
    settings = tunnel_settings_from_env(environ)
    if settings is None:
        return None
    return Tunnel.upsert_spec(spec_from_mapping(settings))


def enabled_specs() -> list[TunnelSpec]:
    """Specs for all enabled tunnels."""
    return [t.to_spec() for t in Tunnel.select().where(Tunnel.enabled == True)]


def record_report(report: CycleReport):
    """Report callback for the supervisor: persist one cycle."""
    CycleRecord.from_report(report)
