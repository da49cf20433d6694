"""
Coordination core for distributed differential stress-testing.

Rooms, rounds, the diff engine and the protocol router live here so both the
FastAPI backend and the client runtime share one set of data contracts.
"""

from __future__ import annotations

from .coordinator import SessionCoordinator
from .diff import apply_patch, diff
from .registry import Connection, ConnectionRegistry, Role
from .room import Diff, Room, RoomState, Round, RoundResult

__all__ = [
    "Connection",
    "ConnectionRegistry",
    "Diff",
    "Role",
    "Room",
    "RoomState",
    "Round",
    "RoundResult",
    "SessionCoordinator",
    "apply_patch",
    "diff",
]
