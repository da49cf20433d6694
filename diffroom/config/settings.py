from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from platformdirs import user_log_path

LOGGER = logging.getLogger(__name__)

CONFIG_PATH = Path("config/diffroom.json")
CONFIG_CANDIDATES: tuple[Path, ...] = (CONFIG_PATH, Path("diffroom.json"))
APP_NAME = "diffroom"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
DEFAULT_SERVER_URL = f"http://{DEFAULT_HOST}:{DEFAULT_PORT}"
DEFAULT_LOG_LEVEL = "INFO"

ENV_HOST = "DIFFROOM_HOST"
ENV_PORT = "DIFFROOM_PORT"
ENV_MEMBER_TIMEOUT = "DIFFROOM_MEMBER_TIMEOUT"
ENV_SERVER = "DIFFROOM_SERVER"
ENV_LOG_LEVEL = "DIFFROOM_LOG_LEVEL"
ENV_LOG_DIR = "DIFFROOM_LOG_DIR"


def default_log_dir() -> Path:
    return Path(user_log_path(APP_NAME, appauthor=False))


@dataclass(frozen=True)
class Settings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    member_timeout: Optional[float] = None
    server_url: str = DEFAULT_SERVER_URL
    log_level: str = DEFAULT_LOG_LEVEL
    log_dir: Optional[Path] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "member_timeout": self.member_timeout,
            "server_url": self.server_url,
            "log_level": self.log_level,
            "log_dir": str(self.log_dir) if self.log_dir else None,
        }

    def resolved_log_dir(self) -> Path:
        return self.log_dir or default_log_dir()


def _load_raw_config() -> dict:
    for path in CONFIG_CANDIDATES:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            continue
        except json.JSONDecodeError:
            LOGGER.warning("ignoring malformed config file %s", path)
            continue
        if isinstance(payload, dict):
            return payload
    return {}


def _config_section(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    server = payload.get("server")
    if isinstance(server, Mapping):
        return server
    return payload


def _coerce_port(value: Any) -> Optional[int]:
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    if port <= 0 or port > 65535:
        return None
    return port


def _coerce_timeout(value: Any) -> Optional[float]:
    """Return the timeout in seconds; zero or negative disables it.

    Raises ``ValueError`` for values that are not numbers.
    """
    timeout = float(str(value).strip())
    return timeout if timeout > 0 else None


def _coerce_level(value: Any) -> Optional[str]:
    text = str(value or "").strip().upper()
    if text in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
        return text
    return None


def _apply(settings: Settings, source: Mapping[str, Any]) -> Settings:
    changes: dict[str, Any] = {}
    host = str(source.get("host") or "").strip()
    if host:
        changes["host"] = host
    if source.get("port") is not None:
        port = _coerce_port(source.get("port"))
        if port is not None:
            changes["port"] = port
    if source.get("member_timeout") is not None:
        try:
            changes["member_timeout"] = _coerce_timeout(source.get("member_timeout"))
        except ValueError:
            LOGGER.warning("ignoring invalid member_timeout %r", source.get("member_timeout"))
    server_url = str(source.get("server_url") or "").strip()
    if server_url:
        changes["server_url"] = server_url
    level = _coerce_level(source.get("log_level"))
    if level:
        changes["log_level"] = level
    log_dir = str(source.get("log_dir") or "").strip()
    if log_dir:
        changes["log_dir"] = Path(log_dir).expanduser()
    return replace(settings, **changes) if changes else settings


def _env_section() -> dict[str, Any]:
    mapping = {
        ENV_HOST: "host",
        ENV_PORT: "port",
        ENV_MEMBER_TIMEOUT: "member_timeout",
        ENV_SERVER: "server_url",
        ENV_LOG_LEVEL: "log_level",
        ENV_LOG_DIR: "log_dir",
    }
    section: dict[str, Any] = {}
    for env_name, key in mapping.items():
        value = os.getenv(env_name)
        if value:
            section[key] = value
    return section


def load_settings(**overrides: Any) -> Settings:
    """
    Resolve settings from defaults, the JSON config file, the environment and
    finally explicit ``overrides`` (``None`` values are skipped).
    """
    settings = Settings()
    settings = _apply(settings, _config_section(_load_raw_config()))
    settings = _apply(settings, _env_section())
    explicit = {key: value for key, value in overrides.items() if value is not None}
    return _apply(settings, explicit)


__all__ = [
    "CONFIG_CANDIDATES",
    "DEFAULT_SERVER_URL",
    "Settings",
    "default_log_dir",
    "load_settings",
]
