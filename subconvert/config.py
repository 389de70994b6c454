"""Service configuration loaded from service-config.yaml."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .fetcher import DEFAULT_TIMEOUT_SEC, DEFAULT_USER_AGENT
from .sandbox import DEFAULT_TIME_BUDGET_MS

DEFAULT_CONFIG_FILE = "service-config.yaml"

# Keys as written by the original service configuration file.
_CAMEL_KEYS = {
    "scriptPath": "script_path",
    "useCache": "use_cache",
    "cacheDir": "cache_dir",
    "scriptTimeoutMs": "script_timeout_ms",
    "fetchTimeoutSec": "fetch_timeout_sec",
    "userAgent": "user_agent",
    "clientMarker": "client_marker",
}


@dataclass(slots=True)
class ServiceConfig:
    """Runtime configuration for the conversion service."""

    script_path: str = "./rules-script.py"
    host: str = "0.0.0.0"
    port: int = 3000
    use_cache: bool = True
    cache_dir: str = "cache"
    script_timeout_ms: int = DEFAULT_TIME_BUDGET_MS
    fetch_timeout_sec: float = DEFAULT_TIMEOUT_SEC
    user_agent: str = DEFAULT_USER_AGENT
    client_marker: str = "clash"


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def write_default_config(config_path: Path) -> None:
    logging.info("Config file not found, writing defaults to %s", config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(yaml.safe_dump(asdict(ServiceConfig()), sort_keys=False), encoding="utf-8")


def load_config(config_path: Path) -> ServiceConfig:
    """Load the service YAML and apply defaults for missing keys."""
    if not config_path.exists():
        write_default_config(config_path)

    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{config_path} must be a mapping")
    data = {_CAMEL_KEYS.get(str(k), str(k)): v for k, v in data.items()}

    defaults = ServiceConfig()
    for f in fields(ServiceConfig):
        if data.get(f.name) is None:
            logging.warning("%s not set in %s, using default %r", f.name, config_path, getattr(defaults, f.name))

    def pick(name: str) -> Any:
        value = data.get(name)
        return getattr(defaults, name) if value is None else value

    port = os.environ.get("PORT") or pick("port")
    return ServiceConfig(
        script_path=str(pick("script_path")),
        host=str(pick("host")),
        port=int(port),
        use_cache=_as_bool(pick("use_cache")),
        cache_dir=str(pick("cache_dir")),
        script_timeout_ms=int(pick("script_timeout_ms")),
        fetch_timeout_sec=float(pick("fetch_timeout_sec")),
        user_agent=str(pick("user_agent")),
        client_marker=str(pick("client_marker")),
    )
