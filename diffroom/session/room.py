from __future__ import annotations

"""
Room and round bookkeeping for stress-testing sessions.

A room owns its member list, the host, the remaining-matches counter and at
most one round in flight. Everything here is synchronous; the coordinator
performs the I/O around each transition while holding ``Room.lock``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations
from typing import Any, Dict, List, Optional, Set, Tuple

from .diff import diff
from .errors import InvalidTransition

LOGGER = logging.getLogger(__name__)

DEFAULT_TARGET_MATCHES = 10


class RoomState(str, Enum):
    FORMING = "forming"
    READY = "ready"
    RUNNING = "running"
    COMPARING = "comparing"
    MISMATCHED = "mismatched"
    ERRORED = "errored"
    COMPLETED = "completed"


TERMINAL_STATES = frozenset(
    {RoomState.MISMATCHED, RoomState.ERRORED, RoomState.COMPLETED}
)


@dataclass
class Round:
    number: int
    test_case: Optional[bytes] = None
    outputs: Dict[str, bytes] = field(default_factory=dict)
    pending: Set[str] = field(default_factory=set)
    started_at: float = field(default_factory=time.time)

    @property
    def awaiting_input(self) -> bool:
        return self.test_case is None

    @property
    def complete(self) -> bool:
        return self.test_case is not None and not self.pending

    def drop(self, member_id: str) -> None:
        self.pending.discard(member_id)
        self.outputs.pop(member_id, None)


@dataclass
class Diff:
    users: Tuple[str, str]
    patch: str


@dataclass
class RoundResult:
    round_number: int
    test_case: bytes
    matched: bool
    remaining: int
    diffs: List[Diff] = field(default_factory=list)


class Room:
    def __init__(
        self, room_id: str, *, target_matches: int = DEFAULT_TARGET_MATCHES
    ) -> None:
        self.room_id = room_id
        self.members: List[str] = []
        self.host_id: Optional[str] = None
        self.state = RoomState.FORMING
        self.target_matches = int(target_matches)
        self.remaining = int(target_matches)
        self.round_counter = 0
        self.current_round: Optional[Round] = None
        self.error: Optional[str] = None
        self.lock = asyncio.Lock()
        self.created_at = time.time()

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    # Membership ---------------------------------------------------------------
    def add_member(
        self,
        member_id: str,
        *,
        wants_host_role: bool = False,
        target_matches: Optional[int] = None,
    ) -> bool:
        """Add a member and return whether it became the host."""
        if self.terminal:
            raise InvalidTransition(
                f"room {self.room_id} is {self.state.value}", room_id=self.room_id
            )
        if member_id not in self.members:
            self.members.append(member_id)
        if member_id == self.host_id:
            return True
        if wants_host_role and self.host_id is None:
            self.host_id = member_id
            if target_matches is not None and target_matches > 0:
                self.target_matches = int(target_matches)
                self.remaining = int(target_matches)
            if self.state == RoomState.FORMING:
                self.state = RoomState.READY
            LOGGER.info("room %s: %s is host", self.room_id, member_id)
            return True
        return False

    def remove_member(self, member_id: str) -> bool:
        """Remove a member and return whether it was the host."""
        if member_id in self.members:
            self.members.remove(member_id)
        if self.current_round is not None:
            self.current_round.drop(member_id)
        return member_id == self.host_id

    def is_member(self, member_id: str) -> bool:
        return member_id in self.members

    # Rounds -------------------------------------------------------------------
    def start(self, member_id: str) -> Round:
        if member_id != self.host_id:
            raise InvalidTransition("only the host can start testing", room_id=self.room_id)
        if self.state != RoomState.READY:
            raise InvalidTransition(
                f"cannot start from {self.state.value}", room_id=self.room_id
            )
        return self._next_round()

    def _next_round(self) -> Round:
        self.round_counter += 1
        self.current_round = Round(number=self.round_counter)
        self.state = RoomState.RUNNING
        return self.current_round

    def receive_test_case(self, member_id: str, test_case: bytes) -> Optional[List[str]]:
        """Record the host's test case; return the members it goes to.

        ``None`` means the submission was not expected and is discarded.
        """
        rnd = self.current_round
        if (
            self.state != RoomState.RUNNING
            or member_id != self.host_id
            or rnd is None
            or not rnd.awaiting_input
        ):
            return None
        rnd.test_case = bytes(test_case)
        rnd.pending = set(self.members)
        return list(self.members)

    def receive_output(self, member_id: str, output: bytes) -> bool:
        """Record one member's output; return ``True`` once nobody is pending."""
        rnd = self.current_round
        if self.state != RoomState.RUNNING or rnd is None or rnd.awaiting_input:
            return False
        if member_id not in rnd.pending:
            LOGGER.debug(
                "room %s: discarding output from %s (not pending)",
                self.room_id,
                member_id,
            )
            return False
        rnd.pending.discard(member_id)
        rnd.outputs[member_id] = bytes(output)
        return rnd.complete

    def ready_to_compare(self) -> bool:
        rnd = self.current_round
        return self.state == RoomState.RUNNING and rnd is not None and rnd.complete

    def compare(self) -> RoundResult:
        rnd = self.current_round
        if not self.ready_to_compare() or rnd is None or rnd.test_case is None:
            raise InvalidTransition("round is not ready to compare", room_id=self.room_id)
        self.state = RoomState.COMPARING
        order = [m for m in self.members if m in rnd.outputs]
        order.extend(m for m in rnd.outputs if m not in order)
        diffs: List[Diff] = []
        for left, right in combinations(order, 2):
            a, b = rnd.outputs[left], rnd.outputs[right]
            if a != b:
                diffs.append(Diff(users=(left, right), patch=diff(a, b, labels=(left, right))))
        matched = not diffs
        if matched:
            self.remaining -= 1
            if self.remaining <= 0:
                self.remaining = 0
                self.state = RoomState.COMPLETED
                self.current_round = None
            else:
                self._next_round()
        else:
            self.state = RoomState.MISMATCHED
            self.current_round = None
        return RoundResult(
            round_number=rnd.number,
            test_case=rnd.test_case,
            matched=matched,
            remaining=self.remaining,
            diffs=diffs,
        )

    def fail(self, message: str) -> None:
        self.state = RoomState.ERRORED
        self.error = message
        self.current_round = None

    def stalled_members(self) -> List[str]:
        rnd = self.current_round
        if rnd is None or self.state != RoomState.RUNNING:
            return []
        if rnd.awaiting_input:
            return [self.host_id] if self.host_id else []
        return [m for m in self.members if m in rnd.pending]

    def summary(self) -> Dict[str, Any]:
        rnd = self.current_round
        return {
            "room_id": self.room_id,
            "state": self.state.value,
            "host": self.host_id,
            "members": list(self.members),
            "round": self.round_counter,
            "remaining": self.remaining,
            "target": self.target_matches,
            "pending": sorted(rnd.pending) if rnd else [],
        }


__all__ = [
    "DEFAULT_TARGET_MATCHES",
    "Diff",
    "Room",
    "RoomState",
    "Round",
    "RoundResult",
    "TERMINAL_STATES",
]
