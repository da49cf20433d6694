from __future__ import annotations

from .settings import DEFAULT_SERVER_URL, Settings, load_settings

__all__ = ["DEFAULT_SERVER_URL", "Settings", "load_settings"]
