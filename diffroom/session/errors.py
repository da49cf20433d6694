from __future__ import annotations

"""
Error kinds shared by the coordinator and the client runtime.

Every error carries a short ``code`` so HTTP handlers and log lines can refer
to it without string matching on messages.
"""

from typing import Optional


class SessionError(Exception):
    code = "session_error"

    def __init__(self, message: str, *, room_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.room_id = room_id


class GenerationFailure(SessionError):
    """The host's generator could not be run or exited abnormally."""

    code = "generation_failure"


class ExecutionStartFailure(SessionError):
    """The program under test could not be launched."""

    code = "execution_start_failure"


class UnknownRoom(SessionError):
    code = "unknown_room"

    def __init__(self, room_id: str) -> None:
        super().__init__(f"unknown room: {room_id}", room_id=room_id)


class HostDisconnected(SessionError):
    code = "host_disconnected"


class MemberTimeout(SessionError):
    code = "member_timeout"


class InvalidTransition(SessionError):
    code = "invalid_transition"


class ProtocolError(SessionError, ValueError):
    code = "protocol_error"


class PatchError(SessionError, ValueError):
    code = "patch_error"


__all__ = [
    "SessionError",
    "GenerationFailure",
    "ExecutionStartFailure",
    "UnknownRoom",
    "HostDisconnected",
    "MemberTimeout",
    "InvalidTransition",
    "ProtocolError",
    "PatchError",
]
