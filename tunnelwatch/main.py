"""
Tunnelwatch FastAPI application.

Provides a REST API for registering tunnels, inspecting their status and
cycle history, and triggering, stopping or restarting them. Tunnels are
supervised continuously by the watcher while the app runs; /api/tick lets an
external cron trigger a cycle for every tunnel instead.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from .config import config
from .models import CycleRecord, Tunnel, enabled_specs, initialize_db, record_report, register_env_tunnel
from .supervisor import tunnel_supervisor
from .tunnels import ConfigError, TunnelSpec, spec_from_mapping
from .watcher import TunnelWatcher

logger = logging.getLogger(__name__)

watcher = TunnelWatcher(tunnel_supervisor, housekeeping=CycleRecord.prune)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info("Starting tunnelwatch...")
    initialize_db()

    try:
        tunnel = register_env_tunnel()
        if tunnel:
            logger.info(f"Registered tunnel from environment: {tunnel.name}")
    except ConfigError as e:
        logger.error(f"Ignoring tunnel settings from environment: {e}")

    tunnel_supervisor.set_report_callback(record_report)
    await watcher.start(enabled_specs())

    yield

    # Shutdown
    logger.info("Shutting down tunnelwatch...")
    await watcher.stop()


app = FastAPI(
    title="Tunnelwatch",
    description="Health supervision for SSH tunnels",
    version="0.1.0",
    lifespan=lifespan,
)


# Pydantic models for API
class TunnelCreate(BaseModel):
    name: Optional[str] = Field(None, description="Unique tunnel identifier (generated if omitted)")
    local_port: int = Field(..., description="Local port of the tunnel")
    remote_host: str = Field(..., description="SSH server host")
    remote_user: str = Field(..., description="SSH user on the remote host")
    remote_ports: list[int] = Field(..., min_length=1, description="Remote ports; the first is forwarded")
    credential_reference: str = Field(..., description="Path to the SSH identity file")
    direction: str = Field("reverse", description="'reverse' (-R) or 'forward' (-L)")
    ssh_port: int = Field(22, description="SSH server port")


class TunnelResponse(BaseModel):
    id: int
    name: str
    local_port: int
    remote_host: str
    remote_user: str
    remote_ports: list[int]
    credential_reference: str
    direction: str
    ssh_port: int
    enabled: bool
    created_at: str
    updated_at: str
    state: str = "idle"
    session_pid: Optional[int] = None
    last_outcome: Optional[str] = None


def _get_tunnel(name: str) -> Tunnel:
    tunnel = Tunnel.get_or_none(Tunnel.name == name)
    if not tunnel:
        raise HTTPException(status_code=404, detail=f"Tunnel '{name}' not found")
    return tunnel


def _last_record(name: str) -> CycleRecord | None:
    return (
        CycleRecord.select()
        .where(CycleRecord.tunnel_name == name)
        .order_by(CycleRecord.timestamp.desc())
        .first()
    )


def _tunnel_response(tunnel: Tunnel) -> dict:
    data = tunnel.to_dict()
    session = tunnel_supervisor.launcher.get_session(tunnel.name)
    last = _last_record(tunnel.name)
    data["state"] = tunnel_supervisor.get_state(tunnel.name).value
    data["session_pid"] = session.pid if session else None
    data["last_outcome"] = last.outcome if last else None
    return data


async def _run_blocking(func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


# Tunnel CRUD
@app.post("/api/tunnels", response_model=TunnelResponse)
async def create_tunnel(data: TunnelCreate):
    """Register a new tunnel and start watching it."""
    try:
        spec = spec_from_mapping(data.model_dump())
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if Tunnel.get_or_none(Tunnel.name == spec.name):
        raise HTTPException(status_code=409, detail=f"Tunnel '{spec.name}' already exists")

    tunnel = Tunnel.upsert_spec(spec)
    watcher.add(spec)
    return _tunnel_response(tunnel)


@app.get("/api/tunnels")
async def list_tunnels():
    """List all registered tunnels."""
    return [_tunnel_response(tunnel) for tunnel in Tunnel.select()]


@app.get("/api/tunnels/{name}", response_model=TunnelResponse)
async def get_tunnel(name: str):
    """Get a specific tunnel."""
    return _tunnel_response(_get_tunnel(name))


@app.delete("/api/tunnels/{name}")
async def delete_tunnel(name: str, stop_session: bool = True):
    """Stop watching a tunnel and remove it."""
    tunnel = _get_tunnel(name)
    spec = tunnel.to_spec()
    await watcher.remove(name)
    if stop_session:
        await _run_blocking(tunnel_supervisor.stop_tunnel, spec)
    tunnel.delete_instance()
    return {"status": "deleted", "name": name}


# Lifecycle
@app.get("/api/tunnels/{name}/status")
async def get_tunnel_status(name: str):
    """Probe a tunnel now, without intervening."""
    spec = _get_tunnel(name).to_spec()
    result = await _run_blocking(tunnel_supervisor.probe.probe, spec)
    session = tunnel_supervisor.launcher.get_session(name)
    return {
        "name": name,
        "probe": result.state.value,
        "reason": result.reason,
        "state": tunnel_supervisor.get_state(name).value,
        "in_flight": tunnel_supervisor.is_in_flight(name),
        "stopping": tunnel_supervisor.is_stopping(name),
        "session": session.to_dict() if session else None,
        "watched": name in watcher.watched(),
    }


@app.post("/api/tunnels/{name}/check")
async def check_tunnel(name: str):
    """Run one supervision cycle now."""
    spec = _get_tunnel(name).to_spec()
    report = await _run_blocking(tunnel_supervisor.run_cycle, spec)
    if report is None:
        raise HTTPException(status_code=409, detail=f"A cycle for '{name}' is already in flight")
    return report.to_dict()


@app.post("/api/tunnels/{name}/stop")
async def stop_tunnel(name: str):
    """Stop supervising a tunnel and terminate its sessions."""
    tunnel = _get_tunnel(name)
    spec = tunnel.to_spec()
    await watcher.remove(name)
    tunnel.enabled = False
    tunnel.save()
    stopped = await _run_blocking(tunnel_supervisor.stop_tunnel, spec)
    return {"status": "stopped", "name": name, "sessions_stopped": stopped}


@app.post("/api/tunnels/{name}/restart")
async def restart_tunnel(name: str):
    """Terminate the tunnel's sessions, re-establish it and resume supervision."""
    tunnel = _get_tunnel(name)
    spec = tunnel.to_spec()
    await _run_blocking(tunnel_supervisor.stop_tunnel, spec)
    report = await _run_blocking(tunnel_supervisor.run_cycle, spec, True)

    tunnel.enabled = True
    tunnel.save()
    watcher.add(spec)
    return report.to_dict()


# History
@app.get("/api/tunnels/{name}/cycles")
async def get_tunnel_cycles(name: str, limit: int = Query(50, ge=1, le=500), failed_only: bool = False):
    """Get recent cycle reports for a tunnel."""
    _get_tunnel(name)
    query = CycleRecord.select().where(CycleRecord.tunnel_name == name)
    if failed_only:
        query = query.where(CycleRecord.outcome.not_in(["healthy", "recovered"]))
    records = query.order_by(CycleRecord.timestamp.desc()).limit(limit)
    return [record.to_dict() for record in records]


# Cron trigger
@app.post("/api/tick")
async def tick():
    """
    Run one cycle for every enabled tunnel.

    For use without the built-in watcher, e.g. from crontab:
    */5 * * * * curl -s -X POST http://localhost:9911/api/tick
    """
    specs: list[TunnelSpec] = enabled_specs()
    reports = await asyncio.gather(*(_run_blocking(tunnel_supervisor.run_cycle, spec) for spec in specs))
    return {
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "reports": [r.to_dict() for r in reports if r is not None],
        "skipped": [spec.name for spec, r in zip(specs, reports) if r is None],
    }


# Status overview
@app.get("/api/status")
async def get_status():
    """Get overview of all tunnels."""
    tunnels = [_tunnel_response(tunnel) for tunnel in Tunnel.select()]
    return {
        "tunnels": tunnels,
        "total": len(tunnels),
        "enabled": sum(1 for t in tunnels if t["enabled"]),
        "healthy": sum(1 for t in tunnels if t["last_outcome"] in ("healthy", "recovered")),
        "watcher_running": watcher.running,
        "check_interval": watcher.interval,
    }


@app.get("/api/logs")
async def get_service_logs(lines: int = Query(100, ge=1, le=1000)):
    """Get recent lines from the tunnelwatch log."""
    if not config.service_log.exists():
        return {"lines": []}
    with open(config.service_log, errors="replace") as f:
        all_lines = f.readlines()
    return {"lines": [line.rstrip() for line in all_lines[-lines:]]}
