"""Configuration loading utilities for the chat relay.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_RELAY_CONFIG
3. Fallback to "config/default.yaml"

File values are merged over built-in defaults, then overridden by
environment variables with prefix ``CHAT_RELAY__``
(e.g., CHAT_RELAY__DATABASE__HOST=db.internal).
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger("chat_relay.config")

ENV_PREFIX = "CHAT_RELAY__"

DEFAULTS: Dict[str, Any] = {
    "server": {"host": "127.0.0.1", "port": 3000, "cors_origins": ["*"]},
    "database": {
        "enabled": True,
        "host": "localhost",
        "port": 5432,
        "name": "chat_relay",
        "user": "postgres",
        "password": "",
        "pool_size": 20,
        "idle_timeout": 30.0,
        "connect_timeout": 2.0,
        "command_timeout": None,
    },
    "fallback": {"path": "db.json"},
    "history": {"limit": 100},
    "logging": {"level": "INFO"},
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def _env_value(raw: str) -> Any:
    # YAML scalars: "6543" -> 6543, "false" -> False, "null" -> None, "[a, b]" -> list
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay ``CHAT_RELAY__SECTION__KEY`` variables onto ``cfg`` in place."""
    for key in sorted(k for k in os.environ if k.startswith(ENV_PREFIX)):
        *sections, leaf = key[len(ENV_PREFIX):].lower().split("__")
        target = cfg
        for name in sections:
            if not isinstance(target.get(name), dict):
                target[name] = {}
            target = target[name]
        target[leaf] = _env_value(os.environ[key])
        logger.debug("Config override from %s", key)
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat relay.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_RELAY_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the file contents, environment overrides applied.
    """
    if path is None:
        path = os.environ.get("CHAT_RELAY_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_deep_merge(DEFAULTS, loaded))


# -----------------------------
# Typed sections
# -----------------------------
def _opt_float(value: Any) -> Optional[float]:
    return None if value is None or value == "" else float(value)


def _origins(value: Any) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    origins = [str(v).strip() for v in value or [] if str(v).strip()]
    return origins or ["*"]


@dataclass
class DatabaseSettings:
    """Connection settings for the PostgreSQL backend."""
    enabled: bool = True
    host: str = "localhost"
    port: int = 5432
    name: str = "chat_relay"
    user: str = "postgres"
    password: str = ""
    pool_size: int = 20
    idle_timeout: float = 30.0          # seconds an idle pooled connection is kept
    connect_timeout: float = 2.0
    command_timeout: Optional[float] = None

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "DatabaseSettings":
        db = {**DEFAULTS["database"], **(cfg.get("database") or {})}
        return cls(
            enabled=bool(db["enabled"]),
            host=str(db["host"]),
            port=int(db["port"]),
            name=str(db["name"]),
            user=str(db["user"]),
            # env overrides may have parsed a numeric password
            password="" if db["password"] is None else str(db["password"]),
            pool_size=max(1, int(db["pool_size"])),
            idle_timeout=float(db["idle_timeout"]),
            connect_timeout=float(db["connect_timeout"]),
            command_timeout=_opt_float(db["command_timeout"]),
        )


@dataclass
class FallbackSettings:
    path: Path = Path("db.json")

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "FallbackSettings":
        fb = cfg.get("fallback") or {}
        return cls(path=Path(str(fb.get("path") or DEFAULTS["fallback"]["path"])))


@dataclass
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 3000
    cors_origins: List[str] | None = None
    history_limit: int = 100
    log_level: str = "INFO"

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "ServerSettings":
        srv = {**DEFAULTS["server"], **(cfg.get("server") or {})}
        history = {**DEFAULTS["history"], **(cfg.get("history") or {})}
        log = {**DEFAULTS["logging"], **(cfg.get("logging") or {})}
        return cls(
            host=str(srv["host"]),
            port=int(srv["port"]),
            cors_origins=_origins(srv.get("cors_origins")),
            history_limit=max(1, int(history["limit"])),
            log_level=str(log["level"]).upper(),
        )
