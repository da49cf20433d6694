from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, Optional

LOGGER = logging.getLogger(__name__)


class Role(str, Enum):
    HOST = "host"
    PARTICIPANT = "participant"


@dataclass
class Connection:
    connection_id: str
    room_id: Optional[str] = None
    role: Role = Role.PARTICIPANT
    wants_host_role: bool = False
    alive: bool = True
    connected_at: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, object]:
        return {
            "connection_id": self.connection_id,
            "room_id": self.room_id,
            "role": self.role.value,
            "wants_host_role": self.wants_host_role,
            "alive": self.alive,
        }


class ConnectionRegistry:
    """
    Maps connection ids to their current room and role.

    A connection belongs to at most one room; unknown ids are treated as
    no-ops everywhere so late events from a closed socket are harmless.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}

    def register(self, connection_id: Optional[str] = None) -> str:
        cid = connection_id or secrets.token_hex(8)
        self._connections[cid] = Connection(connection_id=cid)
        return cid

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def room_of(self, connection_id: str) -> Optional[str]:
        conn = self._connections.get(connection_id)
        return conn.room_id if conn else None

    def attach_to_room(
        self, connection_id: str, room_id: str, wants_host_role: bool
    ) -> Optional[str]:
        """Bind ``connection_id`` to ``room_id``.

        Returns the room the connection was bound to before, if it differs,
        so the caller can drop it from that room.
        """
        conn = self._connections.get(connection_id)
        if conn is None:
            return None
        if conn.room_id == room_id:
            return None
        previous = conn.room_id
        conn.room_id = room_id
        conn.role = Role.PARTICIPANT
        conn.wants_host_role = bool(wants_host_role)
        return previous

    def promote(self, connection_id: str) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.role = Role.HOST

    def release(self, connection_id: str) -> None:
        conn = self._connections.get(connection_id)
        if conn is None:
            return
        conn.room_id = None
        conn.role = Role.PARTICIPANT

    def detach(self, connection_id: str) -> Optional[str]:
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return None
        conn.alive = False
        LOGGER.debug("connection %s detached (room=%s)", connection_id, conn.room_id)
        return conn.room_id

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))


__all__ = ["Role", "Connection", "ConnectionRegistry"]
