"""Configuration for the relay server."""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG_FILE = Path.home() / ".termrelay" / "server.yaml"

# Environment variable -> config attribute
ENV_OVERRIDES = {
    "TERMRELAY_HOST": "host",
    "TERMRELAY_PORT": "port",
    "TERMRELAY_API_KEY": "api_key",
    "TERMRELAY_IDLE_TIMEOUT": "idle_timeout",
    "TERMRELAY_RENEW_IDLE_ON_ACTIVITY": "renew_idle_on_activity",
    "TERMRELAY_CONNECT_TIMEOUT": "connect_timeout",
    "TERMRELAY_OUTBOUND_QUEUE_SIZE": "outbound_queue_size",
    "TERMRELAY_STALL_TIMEOUT": "stall_timeout",
    "TERMRELAY_LOG_LEVEL": "log_level",
    "TERMRELAY_LOG_FILE": "log_file",
}


@dataclass
class ServerConfig:
    """Relay server configuration."""

    # HTTP listener
    host: str = "127.0.0.1"
    port: int = 7879
    api_key: Optional[str] = None

    # Session lifecycle
    idle_timeout: float = 600.0  # Seconds before an idle session is cleaned up
    renew_idle_on_activity: bool = False  # False = deadline fixed from creation

    # SSH bridge
    connect_timeout: float = 30.0
    outbound_queue_size: int = 256  # Output messages buffered per session
    stall_timeout: float = 30.0  # Seconds a full queue may block before disconnect

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ServerConfig":
        """Load configuration from a YAML file, then apply environment overrides."""
        path = path or DEFAULT_CONFIG_FILE
        data = {}

        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

        known = {f.name for f in fields(cls)}
        config = cls(**{k: v for k, v in data.items() if k in known})
        config.apply_env()
        return config

    def apply_env(self, environ: Optional[dict] = None) -> None:
        """Override fields from TERMRELAY_* environment variables."""
        environ = os.environ if environ is None else environ
        for var, attr in ENV_OVERRIDES.items():
            if var in environ:
                setattr(self, attr, _coerce(attr, environ[var]))

    def save(self, path: Optional[Path] = None) -> None:
        """Save configuration to a YAML file."""
        path = path or DEFAULT_CONFIG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {f.name: getattr(self, f.name) for f in fields(self)}
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False)


def _coerce(attr: str, value: str):
    """Convert an environment string to the type of the config attribute."""
    default = getattr(ServerConfig, attr)
    if isinstance(default, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value or None
