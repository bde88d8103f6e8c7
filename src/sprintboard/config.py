"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".sprintboard" / "sb.db")
    slug_prefix: str = "TK"
    db_timeout: float = 5.0
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8787

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("SB_DB_PATH"):
            config.db_path = Path(db)

        if prefix := os.environ.get("SB_SLUG_PREFIX"):
            config.slug_prefix = prefix

        if timeout := os.environ.get("SB_DB_TIMEOUT"):
            config.db_timeout = float(timeout)

        if level := os.environ.get("SB_LOG_LEVEL"):
            config.log_level = level.upper()

        if host := os.environ.get("SB_HOST"):
            config.host = host

        if port := os.environ.get("SB_PORT"):
            config.port = int(port)

        return config


def get_config() -> Config:
    return Config.from_env()
