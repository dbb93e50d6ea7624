"""Persisted settings for rosfox, stored as JSON in the user config dir."""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, TypeVar

CONFIG_FILE = "config.json"

_T = TypeVar("_T")


def _default_config_dir() -> Path:
    return Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config") / "rosfox"


def _section(cls: type[_T], data: dict[str, Any]) -> _T:
    # Keys written by other versions are dropped
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ConnectionConfig:
    url: str = "ws://localhost:8765"
    max_size: int = 16 * 1024 * 1024  # bytes
    ping_interval: float | None = 30
    ping_timeout: float | None = 10

    def client_options(self) -> dict[str, Any]:
        """Keyword arguments for FoxgloveClient."""
        return {
            "max_size": self.max_size,
            "ping_interval": self.ping_interval,
            "ping_timeout": self.ping_timeout,
        }


@dataclass
class SessionConfig:
    # False selects ROS 1 serialization
    ros2: bool = True
    # Seconds to wait for a service or parameter response; None waits forever
    call_timeout: float | None = None


@dataclass
class Config:
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    @classmethod
    def load(cls, config_dir: Path | None = None) -> "Config":
        """Read config.json from `config_dir`; defaults if there is none."""
        path = cls.config_dir(config_dir) / CONFIG_FILE
        if not path.exists():
            return cls()
        raw = json.loads(path.read_text())
        return cls(
            connection=_section(ConnectionConfig, raw.get("connection", {})),
            session=_section(SessionConfig, raw.get("session", {})),
        )

    def save(self, config_dir: Path | None = None) -> Path:
        """Write config.json, creating the directory. Returns the file path."""
        directory = self.config_dir(config_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / CONFIG_FILE
        path.write_text(json.dumps(asdict(self), indent=2) + "\n")
        return path

    @staticmethod
    def config_dir(override: Path | None = None) -> Path:
        return override or _default_config_dir()
