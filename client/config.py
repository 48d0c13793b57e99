"""Configuration management for the termrelay client.

Settings live in ~/.termrelay/config.yaml. TERMRELAY_TOKEN, when set, takes
precedence over the file's api_token so tokens can stay out of the file.
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG_DIR = Path.home() / ".termrelay"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
TOKEN_ENV_VAR = "TERMRELAY_TOKEN"


@dataclass
class Config:
    server_url: str = "http://localhost:7879"
    api_token: Optional[str] = None  # Bearer token for /ssh/connect
    request_timeout: float = 60.0  # Covers the relay's SSH dial too
    log_level: str = "WARNING"

    @classmethod
    def load(cls, path: Optional[Path] = None, apply_env: bool = True) -> "Config":
        path = path or DEFAULT_CONFIG_FILE
        raw = {}
        if path.exists():
            raw = yaml.safe_load(path.read_text()) or {}

        known = {f.name for f in fields(cls)}
        config = cls(**{key: value for key, value in raw.items() if key in known})
        config.request_timeout = float(config.request_timeout)

        if apply_env and os.environ.get(TOKEN_ENV_VAR):
            config.api_token = os.environ[TOKEN_ENV_VAR]
        return config

    def save(self, path: Optional[Path] = None) -> None:
        path = path or DEFAULT_CONFIG_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(asdict(self), default_flow_style=False))

