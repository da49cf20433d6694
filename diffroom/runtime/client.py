from __future__ import annotations

"""
Participant-side protocol loop.

``SessionClient`` joins a room over the coordinator's WebSocket, runs the
generator when it is the host, runs the program under test for every round,
and turns the terminal events into a process exit code.
"""

import asyncio
import logging
import sys
import threading
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from diffroom.runtime.console import ConsoleReporter
from diffroom.runtime.executor import generate_test_case, run_program
from diffroom.session.errors import (
    ExecutionStartFailure,
    GenerationFailure,
    ProtocolError,
)
from diffroom.session.protocol import (
    OUTBOUND_KINDS,
    AllMatch,
    DiffFound,
    ErrorOccurred,
    EventKind,
    GenerateTestCase,
    Message,
    RunProgram,
    SetupSuccess,
    UserUpdate,
    decode_outbound,
    message,
)

LOGGER = logging.getLogger(__name__)

SESSION_WS_PATH = "/api/session/ws"
GENERATION_FAILED_MESSAGE = "Host failed to generate a test case."

Send = Callable[[Message], Awaitable[None]]
Handler = Callable[[Any, Send], Awaitable[Optional[int]]]


def build_ws_url(base: str, path: str = SESSION_WS_PATH) -> str:
    base = base.rstrip("/")
    if base.startswith("https://"):
        scheme = "wss://"
        rest = base[len("https://") :]
    elif base.startswith("http://"):
        scheme = "ws://"
        rest = base[len("http://") :]
    elif base.startswith(("ws://", "wss://")):
        scheme, rest = base.split("://", 1)
        scheme += "://"
    else:
        scheme = "ws://"
        rest = base
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{scheme}{rest}{path}"


async def wait_for_enter() -> None:
    """Wait for a line on stdin without pinning the event loop on exit.

    The read happens on a daemon thread rather than the default executor, so
    cancelling the wait lets ``asyncio.run`` return even while the read is
    still blocked.
    """
    loop = asyncio.get_running_loop()
    entered = loop.create_future()

    def _resolve() -> None:
        if not entered.done():
            entered.set_result(None)

    def _read() -> None:
        sys.stdin.readline()
        try:
            loop.call_soon_threadsafe(_resolve)
        except RuntimeError:
            pass  # loop already closed

    threading.Thread(target=_read, name="diffroom-stdin", daemon=True).start()
    await entered


class SessionClient:
    def __init__(
        self,
        *,
        room: str,
        program: str,
        script: Optional[str] = None,
        count: int = 10,
        reporter: Optional[ConsoleReporter] = None,
        wait_for_start: Callable[[], Awaitable[None]] = wait_for_enter,
        workdir: Optional[str] = None,
        generate: Callable[..., Awaitable[bytes]] = generate_test_case,
        execute: Callable[..., Awaitable[bytes]] = run_program,
    ) -> None:
        self.room = room
        self.program = program
        self.script = script
        self.count = count
        self.reporter = reporter or ConsoleReporter()
        self.workdir = workdir
        self.member_id: Optional[str] = None
        self.is_host = False
        self._wait_for_start = wait_for_start
        self._generate = generate
        self._execute = execute
        self._start_task: Optional[asyncio.Task] = None
        self._handlers: Dict[EventKind, Handler] = {
            EventKind.SETUP_SUCCESS: self._on_setup_success,
            EventKind.USER_UPDATE: self._on_user_update,
            EventKind.GENERATE_TEST_CASE: self._on_generate_test_case,
            EventKind.RUN_PROGRAM: self._on_run_program,
            EventKind.ALL_MATCH: self._on_all_match,
            EventKind.DIFF_FOUND: self._on_diff_found,
            EventKind.ERROR_OCCURRED: self._on_error_occurred,
        }
        missing = OUTBOUND_KINDS - set(self._handlers)
        if missing:
            raise RuntimeError(
                "unhandled outbound events: "
                + ", ".join(sorted(kind.value for kind in missing))
            )

    def hello(self) -> Message:
        return message(
            EventKind.SETUP_ROOM,
            room_id=self.room,
            has_script=bool(self.script),
            count=self.count,
        )

    async def handle(self, msg: Message, send: Send) -> Optional[int]:
        """Process one coordinator event; return an exit code when the session ends."""
        handler = self._handlers.get(msg.kind)
        if handler is None:
            LOGGER.warning("ignoring unexpected event %s", msg.kind.value)
            return None
        code = await handler(msg.payload, send)
        if code is not None:
            self._cancel_start()
        return code

    async def run(self, server_url: str) -> int:
        url = build_ws_url(server_url)
        self.reporter.info(f"Attempting to connect to server at {server_url}...")
        try:
            async with websockets.connect(url) as ws:

                async def send(msg: Message) -> None:
                    await ws.send(msg.dumps())

                self.reporter.success("Connected to server.")
                await send(self.hello())
                async for raw in ws:
                    try:
                        msg = decode_outbound(raw)
                    except ProtocolError as exc:
                        LOGGER.warning("dropping malformed frame: %s", exc)
                        continue
                    code = await self.handle(msg, send)
                    if code is not None:
                        return code
        except ConnectionClosed as exc:
            LOGGER.warning("connection closed: %s", exc)
        except (OSError, WebSocketException) as exc:
            self.reporter.error(f"Could not reach server at {server_url}: {exc}")
            return 1
        finally:
            self._cancel_start()
            self.reporter.note("Disconnected from server.")
        self.reporter.error("Connection to the server was lost.")
        return 1

    # Handlers -----------------------------------------------------------------
    async def _on_setup_success(self, payload: SetupSuccess, send: Send) -> Optional[int]:
        self.member_id = payload.member_id
        self.is_host = payload.is_host
        self.reporter.success(f"Successfully joined room '{self.room}'.", bold=True)
        if self.is_host:
            self.reporter.highlight("You are the host.")
            self.reporter.prompt("Press ENTER to start the test run when all users have joined.")
            self._cancel_start()
            self._start_task = asyncio.create_task(self._start_when_ready(send))
        else:
            if self.script:
                self.reporter.highlight("The room already has a host; your script will not be used.")
            self.reporter.highlight(
                "You are a participant. Waiting for the host to start the test run..."
            )
        return None

    async def _start_when_ready(self, send: Send) -> None:
        await self._wait_for_start()
        await send(message(EventKind.START_TESTING, room_id=self.room))
        self.reporter.info("Test run started. Generating first test case...")

    def _cancel_start(self) -> None:
        if self._start_task is not None and not self._start_task.done():
            self._start_task.cancel()
        self._start_task = None

    async def _on_user_update(self, payload: UserUpdate, send: Send) -> Optional[int]:
        self.reporter.note(f"There are now {payload.members} user(s) in the room.")
        return None

    async def _on_generate_test_case(
        self, payload: GenerateTestCase, send: Send
    ) -> Optional[int]:
        if not self.script:
            LOGGER.warning("asked to generate a test case without a generator script")
            await send(message(EventKind.ERROR_OCCURRED, message=GENERATION_FAILED_MESSAGE))
            return None
        try:
            test_case = await self._generate(self.script)
        except GenerationFailure as exc:
            self.reporter.error(f"Failed to generate test case: {exc.message}")
            await send(message(EventKind.ERROR_OCCURRED, message=GENERATION_FAILED_MESSAGE))
            return None
        await send(message(EventKind.SUBMIT_INPUT, room_id=self.room, input=test_case))
        return None

    async def _on_run_program(self, payload: RunProgram, send: Send) -> Optional[int]:
        self.reporter.info("Received new test case. Running program...")
        try:
            output = await self._execute(self.program, payload.input, workdir=self.workdir)
        except ExecutionStartFailure as exc:
            self.reporter.error(f"Failed to run program: {exc.message}")
            short_id = (self.member_id or "????")[:4]
            await send(
                message(EventKind.ERROR_OCCURRED, message=f"User {short_id}'s program failed.")
            )
            return None
        await send(message(EventKind.SUBMIT_OUTPUT, room_id=self.room, output=output))
        self.reporter.success("Program finished. Sent output to server.")
        return None

    async def _on_all_match(self, payload: AllMatch, send: Send) -> Optional[int]:
        self.reporter.match(payload.round, payload.remaining)
        if payload.remaining == 0:
            self.reporter.success("Target number of matching rounds reached.", bold=True)
            return 0
        self.reporter.info("Waiting for next test case from host...")
        return None

    async def _on_diff_found(self, payload: DiffFound, send: Send) -> Optional[int]:
        self.reporter.mismatch(payload.input, payload.diffs)
        return 0

    async def _on_error_occurred(self, payload: ErrorOccurred, send: Send) -> Optional[int]:
        self.reporter.error(f"\nAn error occurred: {payload.message}")
        return 1


__all__ = [
    "GENERATION_FAILED_MESSAGE",
    "SESSION_WS_PATH",
    "SessionClient",
    "build_ws_url",
    "wait_for_enter",
]
