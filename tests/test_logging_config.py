from __future__ import annotations

import json
import logging
from pathlib import Path

from diffroom.logging_config import (
    get_connection_id,
    init_logging,
    reset_connection_id,
    set_connection_id,
)


def test_init_logging_writes_json_lines(tmp_path: Path, restore_root_logging) -> None:
    log_path = init_logging(tmp_path, level="debug", filename="test.log", console=False)
    assert log_path == tmp_path / "test.log"

    token = set_connection_id("abcd1234")
    try:
        assert get_connection_id() == "abcd1234"
        logging.getLogger("diffroom.test").info("room %s ready", "r1")
    finally:
        reset_connection_id(token)
    assert get_connection_id() is None

    for handler in logging.getLogger().handlers:
        handler.flush()
    records = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    entry = next(r for r in records if r["logger"] == "diffroom.test")
    assert entry["message"] == "room r1 ready"
    assert entry["level"] == "INFO"
    assert entry["connection_id"] == "abcd1234"
    assert set(entry) == {"timestamp", "level", "logger", "message", "connection_id"}

    logging.getLogger("diffroom.test").warning("outside any connection")
    for handler in logging.getLogger().handlers:
        handler.flush()
    last = json.loads(log_path.read_text(encoding="utf-8").splitlines()[-1])
    assert last["message"] == "outside any connection"
    assert "connection_id" not in last
