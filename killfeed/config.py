"""Application configuration management."""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"

DEFAULT_SERVER_URL = "wss://api.voidlog.gg"

# Standard Star Citizen install locations
_GAME_PATHS = [
    Path("C:/Program Files/Roberts Space Industries/StarCitizen"),
    Path("D:/Roberts Space Industries/StarCitizen"),
    Path("D:/Games/Roberts Space Industries/StarCitizen"),
]

# Game.log relative path inside the game install
_GAMELOG_RELATIVE = "LIVE/Game.log"

# Environment variable -> AppConfig field
_ENV_OVERRIDES = {
    "KILLFEED_LOG_PATH": "log_path",
    "KILLFEED_SERVER_URL": "server_url",
    "KILLFEED_ACCESS_TOKEN": "access_token",
}


@dataclass
class AppConfig:
    """Application settings."""

    # Paths
    log_path: str = ""
    game_path: str = ""
    csv_path: str = "kill_log.csv"
    db_path: str = "events.db"

    # Remote service
    server_url: str = DEFAULT_SERVER_URL
    client_id: str = ""
    access_token: str = ""
    guest_token: str = ""

    # Processing
    correlation_window: float = 5.0
    enrichment_timeout: float = 5.0
    fetch_profiles: bool = True
    max_events: int = 100
    poll_interval: float = 0.5

    # Debug
    show_debug_console: bool = False

    def save(self, path: str = CONFIG_FILE) -> None:
        """Save config to JSON file."""
        Path(path).write_text(
            json.dumps(asdict(self), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )

    @classmethod
    def load(cls, path: str = CONFIG_FILE) -> AppConfig:
        """Load config from JSON file, using defaults for missing fields."""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))
        defaults = asdict(cls())
        defaults.update({k: v for k, v in data.items() if k in known})
        return cls(**defaults)

    def apply_env(self, environ: dict[str, str] | None = None) -> AppConfig:
        """Override fields from KILLFEED_* environment variables (e.g. from .env)."""
        environ = dict(os.environ) if environ is None else environ
        for var, name in _ENV_OVERRIDES.items():
            value = environ.get(var)
            if value:
                logger.debug("Config %s overridden by %s", name, var)
                setattr(self, name, value)
        return self


class SettingsStore:
    """Named get/set access to an AppConfig, persisted on every change."""

    def __init__(self, config: AppConfig, path: str = CONFIG_FILE) -> None:
        self._config = config
        self._path = path

    @property
    def config(self) -> AppConfig:
        return self._config

    def get(self, name: str, default: Any = None) -> Any:
        return getattr(self._config, name, default)

    def set(self, name: str, value: Any) -> None:
        if not hasattr(self._config, name):
            raise KeyError(name)
        setattr(self._config, name, value)
        self._config.save(self._path)


def ensure_client_id(config: AppConfig, path: str | None = CONFIG_FILE) -> str:
    """Return the persistent client id, generating and saving it on first use."""
    if not config.client_id:
        config.client_id = str(uuid.uuid4())
        logger.info("Generated new client id %s", config.client_id)
        if path is not None:
            config.save(path)
    return config.client_id


def detect_game_path() -> str:
    """Try to find the Star Citizen installation path."""
    for p in _GAME_PATHS:
        if p.exists():
            return str(p)
    return ""


def resolve_log_path(config: AppConfig) -> Path:
    """Resolve the Game.log file path from config."""
    if config.log_path:
        return Path(config.log_path)

    game_path = config.game_path or detect_game_path()
    if game_path:
        return Path(game_path) / _GAMELOG_RELATIVE

    return Path("Game.log")
