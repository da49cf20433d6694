from __future__ import annotations

"""
Session coordinator: routes protocol events to rooms and drives rounds.

The coordinator owns the room table, the connection registry and one
outbound sender per connection. Handlers for a room run under that room's
lock, so a room sees its events strictly in arrival order while other rooms
keep going on the same event loop.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import (
    HostDisconnected,
    InvalidTransition,
    MemberTimeout,
    SessionError,
    UnknownRoom,
)
from .protocol import (
    INBOUND_KINDS,
    DiffEntry,
    ErrorOccurred,
    EventKind,
    Message,
    SetupRoom,
    StartTesting,
    SubmitInput,
    SubmitOutput,
    message,
)
from .registry import ConnectionRegistry
from .room import DEFAULT_TARGET_MATCHES, Room, RoomState, RoundResult

LOGGER = logging.getLogger(__name__)

Sender = Callable[[Message], Awaitable[None]]
Handler = Callable[[str, Any], Awaitable[None]]

HOST_DISCONNECTED_MESSAGE = "Host disconnected."


class SessionCoordinator:
    def __init__(
        self,
        *,
        member_timeout: Optional[float] = None,
        default_target: int = DEFAULT_TARGET_MATCHES,
    ) -> None:
        self.connections = ConnectionRegistry()
        self.member_timeout = member_timeout if member_timeout and member_timeout > 0 else None
        self.default_target = int(default_target)
        self._rooms: Dict[str, Room] = {}
        self._senders: Dict[str, Sender] = {}
        self._watchdogs: Dict[str, asyncio.Task] = {}
        self._handlers: Dict[EventKind, Handler] = {
            EventKind.SETUP_ROOM: self._on_setup_room,
            EventKind.START_TESTING: self._on_start_testing,
            EventKind.SUBMIT_INPUT: self._on_submit_input,
            EventKind.SUBMIT_OUTPUT: self._on_submit_output,
            EventKind.ERROR_OCCURRED: self._on_error_occurred,
        }
        missing = INBOUND_KINDS - set(self._handlers)
        if missing:
            raise RuntimeError(
                "unhandled inbound events: "
                + ", ".join(sorted(kind.value for kind in missing))
            )

    # Connections --------------------------------------------------------------
    def connect(self, send: Sender, *, connection_id: Optional[str] = None) -> str:
        cid = self.connections.register(connection_id)
        self._senders[cid] = send
        LOGGER.info("connection %s opened", cid)
        return cid

    async def disconnect(self, connection_id: str) -> None:
        room_id = self.connections.detach(connection_id)
        self._senders.pop(connection_id, None)
        LOGGER.info("connection %s closed (room=%s)", connection_id, room_id)
        if room_id is None:
            return
        room = self._rooms.get(room_id)
        if room is None:
            return
        async with room.lock:
            await self._leave(room, connection_id)

    def _live(self, room: Room) -> bool:
        return self._rooms.get(room.room_id) is room and not room.terminal

    async def _leave(self, room: Room, connection_id: str) -> None:
        if not self._live(room):
            room.remove_member(connection_id)
            return
        was_host = room.remove_member(connection_id)
        if was_host and not room.terminal:
            LOGGER.warning("room %s: host %s disconnected", room.room_id, connection_id)
            await self._abort(room, HostDisconnected(HOST_DISCONNECTED_MESSAGE, room_id=room.room_id))
            return
        if not room.members:
            LOGGER.info("room %s is empty; discarding", room.room_id)
            self._teardown(room)
            return
        await self._broadcast(room, message(EventKind.USER_UPDATE, members=len(room.members)))
        if room.ready_to_compare():
            await self._finish_round(room)

    # Dispatch -----------------------------------------------------------------
    async def dispatch(self, connection_id: str, msg: Message) -> None:
        if connection_id not in self.connections:
            LOGGER.debug("dropping %s from unknown connection %s", msg.kind.value, connection_id)
            return
        handler = self._handlers.get(msg.kind)
        if handler is None:
            LOGGER.warning("dropping non-inbound event %s from %s", msg.kind.value, connection_id)
            return
        try:
            await handler(connection_id, msg.payload)
        except UnknownRoom as exc:
            LOGGER.warning("%s from %s ignored: %s", msg.kind.value, connection_id, exc)
        except InvalidTransition as exc:
            LOGGER.warning("%s from %s rejected: %s", msg.kind.value, connection_id, exc)

    def room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise UnknownRoom(room_id)
        return room

    def rooms(self) -> List[Room]:
        return list(self._rooms.values())

    def _member_room(self, connection_id: str, room_id: str) -> Room:
        room = self.room(room_id)
        if not room.is_member(connection_id):
            raise InvalidTransition(
                f"{connection_id} is not a member of {room_id}", room_id=room_id
            )
        return room

    # Handlers -----------------------------------------------------------------
    async def _on_setup_room(self, connection_id: str, payload: SetupRoom) -> None:
        previous = self.connections.attach_to_room(
            connection_id, payload.room_id, payload.has_script
        )
        if previous is not None and previous in self._rooms:
            old_room = self._rooms[previous]
            async with old_room.lock:
                await self._leave(old_room, connection_id)

        while True:
            room = self._rooms.get(payload.room_id)
            if room is None:
                room = Room(payload.room_id, target_matches=self.default_target)
                self._rooms[payload.room_id] = room
                LOGGER.info("room %s created", payload.room_id)
            async with room.lock:
                # The room may have emptied while we waited for its lock.
                if self._live(room):
                    await self._join(room, connection_id, payload)
                    return

    async def _join(self, room: Room, connection_id: str, payload: SetupRoom) -> None:
        is_host = room.add_member(
            connection_id,
            wants_host_role=payload.has_script,
            target_matches=payload.count,
        )
        if is_host:
            self.connections.promote(connection_id)
        LOGGER.info(
            "room %s: %s joined as %s (%d members)",
            room.room_id,
            connection_id,
            "host" if is_host else "participant",
            len(room.members),
        )
        await self._send(
            connection_id,
            message(EventKind.SETUP_SUCCESS, is_host=is_host, member_id=connection_id),
        )
        await self._broadcast(room, message(EventKind.USER_UPDATE, members=len(room.members)))

    async def _on_start_testing(self, connection_id: str, payload: StartTesting) -> None:
        room = self._member_room(connection_id, payload.room_id)
        async with room.lock:
            if not self._live(room):
                return
            rnd = room.start(connection_id)
            LOGGER.info("room %s: testing started (target=%d)", room.room_id, room.remaining)
            await self._request_test_case(room, rnd.number)

    async def _on_submit_input(self, connection_id: str, payload: SubmitInput) -> None:
        room = self._member_room(connection_id, payload.room_id)
        async with room.lock:
            if not self._live(room):
                return
            recipients = room.receive_test_case(connection_id, payload.input)
            if recipients is None:
                LOGGER.debug("room %s: unexpected test case from %s", room.room_id, connection_id)
                return
            rnd = room.current_round
            number = rnd.number if rnd else 0
            LOGGER.info(
                "room %s: round %d dispatched to %d members (%d bytes)",
                room.room_id,
                number,
                len(recipients),
                len(payload.input),
            )
            run = message(EventKind.RUN_PROGRAM, input=payload.input, round=number)
            for member_id in recipients:
                await self._send(member_id, run)
            self._arm_watchdog(room)

    async def _on_submit_output(self, connection_id: str, payload: SubmitOutput) -> None:
        room = self._member_room(connection_id, payload.room_id)
        async with room.lock:
            if not self._live(room):
                return
            if room.receive_output(connection_id, payload.output):
                await self._finish_round(room)

    async def _on_error_occurred(self, connection_id: str, payload: ErrorOccurred) -> None:
        room_id = payload.room_id or self.connections.room_of(connection_id)
        if room_id is None:
            LOGGER.warning("error from %s outside any room: %s", connection_id, payload.message)
            return
        room = self._member_room(connection_id, room_id)
        async with room.lock:
            if not self._live(room):
                return
            LOGGER.error("room %s: %s reported: %s", room.room_id, connection_id, payload.message)
            await self._abort(room, SessionError(payload.message, room_id=room.room_id))

    # Rounds -------------------------------------------------------------------
    async def _request_test_case(self, room: Room, round_number: int) -> None:
        if room.host_id is None:
            return
        await self._send(room.host_id, message(EventKind.GENERATE_TEST_CASE, round=round_number))
        self._arm_watchdog(room)

    async def _finish_round(self, room: Room) -> None:
        result = room.compare()
        if result.matched:
            await self._on_match(room, result)
        else:
            await self._on_mismatch(room, result)

    async def _on_match(self, room: Room, result: RoundResult) -> None:
        LOGGER.info(
            "room %s: round %d matched (%d remaining)",
            room.room_id,
            result.round_number,
            result.remaining,
        )
        await self._broadcast(
            room,
            message(EventKind.ALL_MATCH, round=result.round_number, remaining=result.remaining),
        )
        if room.state == RoomState.COMPLETED:
            LOGGER.info("room %s: session completed", room.room_id)
            self._teardown(room)
            return
        if room.current_round is not None:
            await self._request_test_case(room, room.current_round.number)

    async def _on_mismatch(self, room: Room, result: RoundResult) -> None:
        LOGGER.warning(
            "room %s: round %d mismatched (%d differing pairs)",
            room.room_id,
            result.round_number,
            len(result.diffs),
        )
        diffs = [DiffEntry(users=list(d.users), patch=d.patch) for d in result.diffs]
        await self._broadcast(
            room, message(EventKind.DIFF_FOUND, input=result.test_case, diffs=diffs)
        )
        self._teardown(room)

    async def _abort(self, room: Room, error: SessionError) -> None:
        room.fail(error.message)
        await self._broadcast(room, message(EventKind.ERROR_OCCURRED, message=error.message))
        self._teardown(room)

    # Liveness -----------------------------------------------------------------
    def _arm_watchdog(self, room: Room) -> None:
        if self.member_timeout is None or room.current_round is None:
            return
        self._cancel_watchdog(room.room_id)
        rnd = room.current_round
        phase = "input" if rnd.awaiting_input else "outputs"
        self._watchdogs[room.room_id] = asyncio.create_task(
            self._watch(room, rnd.number, phase)
        )

    def _cancel_watchdog(self, room_id: str) -> None:
        task = self._watchdogs.pop(room_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _watch(self, room: Room, round_number: int, phase: str) -> None:
        await asyncio.sleep(self.member_timeout or 0)
        async with room.lock:
            rnd = room.current_round
            if self._rooms.get(room.room_id) is not room or rnd is None:
                return
            current_phase = "input" if rnd.awaiting_input else "outputs"
            if rnd.number != round_number or current_phase != phase:
                return
            stalled = room.stalled_members()
            if not stalled:
                return
            error = MemberTimeout(
                "User(s) {} did not respond within {:g} seconds.".format(
                    ", ".join(member[:4] for member in stalled), self.member_timeout
                ),
                room_id=room.room_id,
            )
            LOGGER.warning("room %s: %s", room.room_id, error.message)
            await self._abort(room, error)

    # Output -------------------------------------------------------------------
    async def _send(self, connection_id: str, msg: Message) -> None:
        sender = self._senders.get(connection_id)
        if sender is None:
            return
        try:
            await sender(msg)
        except Exception as exc:  # network path; the socket's own loop handles the close
            LOGGER.warning("send of %s to %s failed: %s", msg.kind.value, connection_id, exc)

    async def _broadcast(self, room: Room, msg: Message) -> None:
        for member_id in list(room.members):
            await self._send(member_id, msg)

    def _teardown(self, room: Room) -> None:
        self._cancel_watchdog(room.room_id)
        if self._rooms.get(room.room_id) is room:
            self._rooms.pop(room.room_id, None)
        for member_id in list(room.members):
            if self.connections.room_of(member_id) == room.room_id:
                self.connections.release(member_id)
        LOGGER.debug("room %s torn down (%s)", room.room_id, room.state.value)

    # Introspection ------------------------------------------------------------
    def stats(self) -> Dict[str, object]:
        rooms = list(self._rooms.values())
        return {
            "rooms": len(rooms),
            "connections": len(self.connections),
            "states": {room.room_id: room.state.value for room in rooms},
        }


__all__ = ["HOST_DISCONNECTED_MESSAGE", "Sender", "SessionCoordinator"]
