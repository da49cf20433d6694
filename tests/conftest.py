from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import List

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from diffroom.session.protocol import EventKind, Message  # noqa: E402


class Recorder:
    """Collects the messages the coordinator sends to one connection."""

    def __init__(self) -> None:
        self.messages: List[Message] = []

    async def __call__(self, msg: Message) -> None:
        self.messages.append(msg)

    def kinds(self) -> List[EventKind]:
        return [msg.kind for msg in self.messages]

    def last(self) -> Message:
        return self.messages[-1]

    def of(self, kind: EventKind) -> List[Message]:
        return [msg for msg in self.messages if msg.kind == kind]

    def clear(self) -> None:
        self.messages.clear()


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    for name in (
        "DIFFROOM_HOST",
        "DIFFROOM_PORT",
        "DIFFROOM_MEMBER_TIMEOUT",
        "DIFFROOM_SERVER",
        "DIFFROOM_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DIFFROOM_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    try:
        yield root
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            if handler not in handlers:
                handler.close()
        for handler in handlers:
            root.addHandler(handler)
        root.setLevel(level)
