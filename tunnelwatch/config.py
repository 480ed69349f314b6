"""
Configuration for the tunnelwatch service.

Loads settings from environment variables with sensible defaults.
All persistent data is stored in ~/.tunnelwatch/
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


@dataclass
class Config:
    """Tunnelwatch configuration."""

    # Paths
    data_dir: Path = Path(os.environ.get("TUNNELWATCH_DATA_DIR", str(Path.home() / ".tunnelwatch")))
    db_path: Path = None
    logs_dir: Path = None
    service_log: Path = None

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Server
    host: str = os.environ.get("TUNNELWATCH_HOST", "127.0.0.1")
    port: int = int(os.environ.get("TUNNELWATCH_PORT", "9911"))

    # Supervision loop
    check_interval: int = int(os.environ.get("CHECK_INTERVAL", "60"))
    report_retention_days: int = int(os.environ.get("REPORT_RETENTION_DAYS", "7"))

    # Step timeouts (seconds)
    probe_timeout: float = float(os.environ.get("PROBE_TIMEOUT", "5"))
    reap_connect_timeout: int = int(os.environ.get("REAP_CONNECT_TIMEOUT", "10"))
    reap_timeout: float = float(os.environ.get("REAP_TIMEOUT", "30"))
    launch_timeout: float = float(os.environ.get("LAUNCH_TIMEOUT", "15"))
    settle_delay: float = float(os.environ.get("SETTLE_DELAY", "3"))

    # SSH session options
    ssh_binary: str = os.environ.get("SSH_BINARY", "ssh")
    keepalive_interval: int = int(os.environ.get("KEEPALIVE_INTERVAL", "30"))
    keepalive_count_max: int = int(os.environ.get("KEEPALIVE_COUNT_MAX", "3"))
    strict_host_key_checking: str = os.environ.get("STRICT_HOST_KEY_CHECKING", "accept-new")

    def __post_init__(self):
        """Initialize derived paths and create directories."""
        self.db_path = self.data_dir / "tunnelwatch.db"
        self.logs_dir = self.data_dir / "logs"
        self.service_log = self.data_dir / "tunnelwatch.log"

        # Create directories
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)


def tunnel_settings_from_env(environ=None) -> dict | None:
    """
    Build a tunnel configuration mapping from the .env keys.

    Returns None when no tunnel is configured in the environment.
    """
    env = os.environ if environ is None else environ
    if not env.get("SERVER_IP"):
        return None

    remote_ports = [env.get("SERVER_PORT", "")]
    extra = env.get("TUNNEL_EXTRA_REMOTE_PORTS", "")
    remote_ports.extend(p.strip() for p in extra.split(",") if p.strip())

    return {
        "name": env.get("SERVICE_NAME") or None,
        "local_port": env.get("CLIENT_PORT"),
        "remote_host": env.get("SERVER_IP"),
        "remote_user": env.get("SERVER_USER"),
        "remote_ports": remote_ports,
        "credential_reference": env.get("SSH_KEY_PATH"),
        "direction": env.get("TUNNEL_DIRECTION", "reverse"),
        "ssh_port": env.get("SERVER_SSH_PORT", "22"),
    }


config = Config()
