from __future__ import annotations

import asyncio

from conftest import Recorder

from diffroom.session.coordinator import HOST_DISCONNECTED_MESSAGE, SessionCoordinator
from diffroom.session.diff import diff
from diffroom.session.protocol import EventKind, message
from diffroom.session.room import RoomState


async def _join(coordinator: SessionCoordinator, room_id: str, *, host: bool = False, count=None):
    rec = Recorder()
    cid = coordinator.connect(rec)
    await coordinator.dispatch(
        cid, message(EventKind.SETUP_ROOM, room_id=room_id, has_script=host, count=count)
    )
    return cid, rec


async def _submit_input(coordinator, cid, room_id, data: bytes) -> None:
    await coordinator.dispatch(cid, message(EventKind.SUBMIT_INPUT, room_id=room_id, input=data))


async def _submit_output(coordinator, cid, room_id, data: bytes) -> None:
    await coordinator.dispatch(cid, message(EventKind.SUBMIT_OUTPUT, room_id=room_id, output=data))


def test_join_sends_setup_success_and_member_counts() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, host_rec = await _join(coordinator, "r1", host=True)
        assert host_rec.kinds() == [EventKind.SETUP_SUCCESS, EventKind.USER_UPDATE]
        assert host_rec.messages[0].payload.is_host is True
        assert host_rec.messages[0].payload.member_id == host
        assert host_rec.last().payload.members == 1

        guest, guest_rec = await _join(coordinator, "r1", host=True)
        assert guest_rec.messages[0].payload.is_host is False
        assert guest_rec.last().payload.members == 2
        assert host_rec.last().payload.members == 2
        assert coordinator.room("r1").host_id == host
        assert coordinator.connections.room_of(guest) == "r1"

    asyncio.run(scenario())


def test_matching_round_broadcasts_all_match_and_requests_next_case() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, host_rec = await _join(coordinator, "r1", host=True)
        guest, guest_rec = await _join(coordinator, "r1")

        await coordinator.dispatch(host, message(EventKind.START_TESTING, room_id="r1"))
        assert host_rec.last().kind is EventKind.GENERATE_TEST_CASE
        assert host_rec.last().payload.round == 1
        assert EventKind.GENERATE_TEST_CASE not in guest_rec.kinds()

        await _submit_input(coordinator, host, "r1", b"5\n3\n")
        for rec in (host_rec, guest_rec):
            assert rec.last().kind is EventKind.RUN_PROGRAM
            assert rec.last().payload.input == b"5\n3\n"

        await _submit_output(coordinator, host, "r1", b"8\n")
        assert guest_rec.last().kind is EventKind.RUN_PROGRAM
        await _submit_output(coordinator, guest, "r1", b"8\n")

        for rec in (host_rec, guest_rec):
            (match,) = rec.of(EventKind.ALL_MATCH)
            assert match.payload.remaining == 9
            assert match.payload.round == 1
        assert guest_rec.last().kind is EventKind.ALL_MATCH
        assert host_rec.last().kind is EventKind.GENERATE_TEST_CASE
        assert host_rec.last().payload.round == 2
        assert coordinator.room("r1").remaining == 9

    asyncio.run(scenario())


def test_mismatch_broadcasts_diffs_and_discards_room() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, host_rec = await _join(coordinator, "r1", host=True)
        guest, guest_rec = await _join(coordinator, "r1")
        await coordinator.dispatch(host, message(EventKind.START_TESTING, room_id="r1"))
        await _submit_input(coordinator, host, "r1", b"5\n3\n")
        await _submit_output(coordinator, guest, "r1", b"8\n")
        await _submit_output(coordinator, host, "r1", b"5\n3\n")

        for rec in (host_rec, guest_rec):
            found = rec.last()
            assert found.kind is EventKind.DIFF_FOUND
            assert found.payload.input == b"5\n3\n"
            (entry,) = found.payload.diffs
            assert entry.users == [host, guest]
            assert entry.patch == diff(b"5\n3\n", b"8\n", labels=(host, guest))

        assert coordinator.stats()["rooms"] == 0
        assert coordinator.connections.room_of(host) is None

        # Late traffic for the discarded room is dropped quietly.
        host_rec.clear()
        await _submit_output(coordinator, guest, "r1", b"8\n")
        await coordinator.dispatch(host, message(EventKind.START_TESTING, room_id="r1"))
        assert host_rec.messages == []

    asyncio.run(scenario())


def test_session_completes_after_target_matches() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, host_rec = await _join(coordinator, "r1", host=True, count=2)
        guest, guest_rec = await _join(coordinator, "r1")
        await coordinator.dispatch(host, message(EventKind.START_TESTING, room_id="r1"))
        for _ in range(2):
            await _submit_input(coordinator, host, "r1", b"case")
            await _submit_output(coordinator, host, "r1", b"same")
            await _submit_output(coordinator, guest, "r1", b"same")

        remaining = [m.payload.remaining for m in guest_rec.of(EventKind.ALL_MATCH)]
        assert remaining == [1, 0]
        assert len(host_rec.of(EventKind.GENERATE_TEST_CASE)) == 2
        assert host_rec.last().kind is EventKind.ALL_MATCH
        assert coordinator.stats()["rooms"] == 0

    asyncio.run(scenario())


def test_error_report_is_broadcast_to_every_member() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, host_rec = await _join(coordinator, "r1", host=True)
        guest, guest_rec = await _join(coordinator, "r1")
        await coordinator.dispatch(host, message(EventKind.START_TESTING, room_id="r1"))
        await coordinator.dispatch(
            host, message(EventKind.ERROR_OCCURRED, message="Host failed to generate a test case.")
        )
        for rec in (host_rec, guest_rec):
            assert rec.last().kind is EventKind.ERROR_OCCURRED
            assert rec.last().payload.message == "Host failed to generate a test case."
        assert coordinator.stats()["rooms"] == 0

    asyncio.run(scenario())


def test_participant_program_failure_ends_the_session() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, host_rec = await _join(coordinator, "r1", host=True)
        guest, guest_rec = await _join(coordinator, "r1")
        await coordinator.dispatch(host, message(EventKind.START_TESTING, room_id="r1"))
        await _submit_input(coordinator, host, "r1", b"case")
        await coordinator.dispatch(
            guest,
            message(EventKind.ERROR_OCCURRED, message=f"User {guest[:4]}'s program failed.", room_id="r1"),
        )
        assert host_rec.last().payload.message == f"User {guest[:4]}'s program failed."
        assert guest_rec.last().kind is EventKind.ERROR_OCCURRED

    asyncio.run(scenario())


def test_host_disconnect_aborts_room() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, _ = await _join(coordinator, "r1", host=True)
        guest, guest_rec = await _join(coordinator, "r1")
        await coordinator.disconnect(host)
        assert guest_rec.last().kind is EventKind.ERROR_OCCURRED
        assert guest_rec.last().payload.message == HOST_DISCONNECTED_MESSAGE
        assert coordinator.stats() == {"rooms": 0, "connections": 1, "states": {}}

    asyncio.run(scenario())


def test_participant_disconnect_mid_round_completes_round() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, host_rec = await _join(coordinator, "r1", host=True)
        stay, stay_rec = await _join(coordinator, "r1")
        leave, _ = await _join(coordinator, "r1")
        await coordinator.dispatch(host, message(EventKind.START_TESTING, room_id="r1"))
        await _submit_input(coordinator, host, "r1", b"case")
        await _submit_output(coordinator, host, "r1", b"out")
        await _submit_output(coordinator, stay, "r1", b"out")
        assert EventKind.ALL_MATCH not in stay_rec.kinds()

        await coordinator.disconnect(leave)
        assert stay_rec.messages[-2].kind is EventKind.USER_UPDATE
        assert stay_rec.messages[-2].payload.members == 2
        assert stay_rec.last().kind is EventKind.ALL_MATCH
        assert host_rec.last().kind is EventKind.GENERATE_TEST_CASE

    asyncio.run(scenario())


def test_late_joiner_waits_for_next_round() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, host_rec = await _join(coordinator, "r1", host=True)
        await coordinator.dispatch(host, message(EventKind.START_TESTING, room_id="r1"))
        await _submit_input(coordinator, host, "r1", b"first")
        late, late_rec = await _join(coordinator, "r1")
        assert EventKind.RUN_PROGRAM not in late_rec.kinds()

        await _submit_output(coordinator, host, "r1", b"out")
        assert late_rec.last().kind is EventKind.ALL_MATCH

        await _submit_input(coordinator, host, "r1", b"second")
        assert late_rec.last().kind is EventKind.RUN_PROGRAM
        assert late_rec.last().payload.input == b"second"

    asyncio.run(scenario())


def test_events_for_unknown_rooms_or_non_members_are_ignored() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, host_rec = await _join(coordinator, "r1", host=True)
        stranger = coordinator.connect(Recorder())
        host_rec.clear()

        await coordinator.dispatch(host, message(EventKind.START_TESTING, room_id="nope"))
        await coordinator.dispatch(stranger, message(EventKind.START_TESTING, room_id="r1"))
        await coordinator.dispatch("ghost", message(EventKind.START_TESTING, room_id="r1"))
        assert host_rec.messages == []
        assert coordinator.room("r1").state is RoomState.READY

    asyncio.run(scenario())


def test_rooms_progress_independently() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        a_host, a_rec = await _join(coordinator, "a", host=True)
        b_host, b_rec = await _join(coordinator, "b", host=True)
        await coordinator.dispatch(a_host, message(EventKind.START_TESTING, room_id="a"))
        await _submit_input(coordinator, a_host, "a", b"case")
        await _submit_output(coordinator, a_host, "a", b"out")

        assert a_rec.of(EventKind.ALL_MATCH)
        assert b_rec.kinds() == [EventKind.SETUP_SUCCESS, EventKind.USER_UPDATE]
        assert coordinator.room("b").state is RoomState.READY

    asyncio.run(scenario())


def test_concurrent_outputs_produce_one_result() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, host_rec = await _join(coordinator, "r1", host=True)
        members = [await _join(coordinator, "r1") for _ in range(4)]
        await coordinator.dispatch(host, message(EventKind.START_TESTING, room_id="r1"))
        await _submit_input(coordinator, host, "r1", b"case")

        await asyncio.gather(
            _submit_output(coordinator, host, "r1", b"out"),
            *(_submit_output(coordinator, cid, "r1", b"out") for cid, _ in members),
        )
        assert len(host_rec.of(EventKind.ALL_MATCH)) == 1
        for _, rec in members:
            assert len(rec.of(EventKind.ALL_MATCH)) == 1

    asyncio.run(scenario())


def test_switching_rooms_leaves_the_previous_one() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, host_rec = await _join(coordinator, "r1", host=True)
        guest, guest_rec = await _join(coordinator, "r1")
        await coordinator.dispatch(guest, message(EventKind.SETUP_ROOM, room_id="r2"))
        assert host_rec.last().payload.members == 1
        assert coordinator.room("r2").members == [guest]
        assert coordinator.room("r1").members == [host]

    asyncio.run(scenario())


def test_silent_member_times_out() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator(member_timeout=0.05)
        host, host_rec = await _join(coordinator, "r1", host=True)
        guest, guest_rec = await _join(coordinator, "r1")
        await coordinator.dispatch(host, message(EventKind.START_TESTING, room_id="r1"))
        await _submit_input(coordinator, host, "r1", b"case")
        await _submit_output(coordinator, host, "r1", b"out")
        await asyncio.sleep(0.3)

        for rec in (host_rec, guest_rec):
            assert rec.last().kind is EventKind.ERROR_OCCURRED
            assert "did not respond" in rec.last().payload.message
            assert guest[:4] in rec.last().payload.message
        assert coordinator.stats()["rooms"] == 0

    asyncio.run(scenario())


def test_timeout_disabled_by_default() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()
        host, host_rec = await _join(coordinator, "r1", host=True)
        await coordinator.dispatch(host, message(EventKind.START_TESTING, room_id="r1"))
        await asyncio.sleep(0.05)
        assert host_rec.last().kind is EventKind.GENERATE_TEST_CASE
        assert coordinator.room("r1").state is RoomState.RUNNING

    asyncio.run(scenario())


def test_failing_sender_does_not_break_broadcast() -> None:
    async def scenario() -> None:
        coordinator = SessionCoordinator()

        async def broken(msg) -> None:
            raise ConnectionResetError("gone")

        host, host_rec = await _join(coordinator, "r1", host=True)
        dead = coordinator.connect(broken)
        await coordinator.dispatch(dead, message(EventKind.SETUP_ROOM, room_id="r1"))
        assert host_rec.last().payload.members == 2

    asyncio.run(scenario())
