from __future__ import annotations

import json
import logging
import os
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List

from diffroom.config.settings import default_log_dir

DEFAULT_LOG_FILE = "server.log"
_CONNECTION_ID_VAR: ContextVar[str | None] = ContextVar(
    "diffroom_connection_id", default=None
)


class StructuredJsonFormatter(logging.Formatter):
    """Render log records as structured JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        connection_id = getattr(record, "connection_id", None)
        if connection_id:
            payload["connection_id"] = connection_id
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


class ConnectionContextFilter(logging.Filter):
    """Inject the connection currently being served into each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "connection_id", None):
            record.connection_id = get_connection_id()
        return True


def set_connection_id(value: str | None) -> Token:
    return _CONNECTION_ID_VAR.set(value)


def get_connection_id() -> str | None:
    return _CONNECTION_ID_VAR.get()


def reset_connection_id(token: Token) -> None:
    _CONNECTION_ID_VAR.reset(token)


def _coerce_level(level: str) -> int:
    value = getattr(logging, str(level).upper(), None)
    return value if isinstance(value, int) else logging.INFO


def init_logging(
    log_dir: str | os.PathLike[str] | None = None,
    *,
    level: str = "INFO",
    filename: str = DEFAULT_LOG_FILE,
    console: bool = True,
) -> Path:
    """Initialise root logging with structured JSON output.

    Returns the path of the log file. ``console=False`` keeps the terminal
    free for the ``run`` command's own rendering.
    """

    base = Path(log_dir).expanduser() if log_dir else default_log_dir()
    base.mkdir(parents=True, exist_ok=True)
    log_path = base / filename

    root_logger = logging.getLogger()
    root_logger.setLevel(_coerce_level(level))

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = StructuredJsonFormatter()
    context = ConnectionContextFilter()
    handlers: List[logging.Handler] = [
        RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context)
        root_logger.addHandler(handler)

    logging.getLogger(__name__).debug("logging initialised at %s", log_path)
    return log_path


__all__ = [
    "ConnectionContextFilter",
    "StructuredJsonFormatter",
    "get_connection_id",
    "init_logging",
    "reset_connection_id",
    "set_connection_id",
]
