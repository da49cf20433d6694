from __future__ import annotations

"""
Wire protocol shared by the coordinator and the client runtime.

Every frame is a JSON object ``{"event": <kind>, "data": {...}}``. Event kinds
form a closed enumeration and each kind has exactly one payload model. Byte
payloads travel as base64 strings.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Optional, Type

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    PlainValidator,
    ValidationError,
)

from .errors import ProtocolError


class EventKind(str, Enum):
    SETUP_ROOM = "setup_room"
    SETUP_SUCCESS = "setup_success"
    USER_UPDATE = "user_update"
    START_TESTING = "start_testing"
    GENERATE_TEST_CASE = "generate_test_case"
    SUBMIT_INPUT = "submit_input"
    RUN_PROGRAM = "run_program"
    SUBMIT_OUTPUT = "submit_output"
    ALL_MATCH = "all_match"
    DIFF_FOUND = "diff_found"
    ERROR_OCCURRED = "error_occurred"


INBOUND_KINDS: FrozenSet[EventKind] = frozenset(
    {
        EventKind.SETUP_ROOM,
        EventKind.START_TESTING,
        EventKind.SUBMIT_INPUT,
        EventKind.SUBMIT_OUTPUT,
        EventKind.ERROR_OCCURRED,
    }
)
OUTBOUND_KINDS: FrozenSet[EventKind] = frozenset(
    {
        EventKind.SETUP_SUCCESS,
        EventKind.USER_UPDATE,
        EventKind.GENERATE_TEST_CASE,
        EventKind.RUN_PROGRAM,
        EventKind.ALL_MATCH,
        EventKind.DIFF_FOUND,
        EventKind.ERROR_OCCURRED,
    }
)


def _decode_bytes(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return base64.b64decode(value.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise ValueError("expected base64 encoded bytes") from exc
    return value


def _encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


WireBytes = Annotated[
    bytes,
    BeforeValidator(_decode_bytes),
    PlainSerializer(_encode_bytes, return_type=str),
]


def _check_text(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("expected a string")
    return value


def _keep_text(value):
    return value


# Patch text may hold lone surrogates standing for undecodable output bytes.
# They pass through untouched and leave as \udcXX escapes in the JSON frame.
PatchText = Annotated[str, PlainValidator(_check_text), PlainSerializer(_keep_text)]


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SetupRoom(_Payload):
    room_id: str = Field(..., alias="roomId", min_length=1, max_length=256)
    has_script: bool = Field(default=False, alias="hasScript")
    count: Optional[int] = Field(default=None, ge=1)


class SetupSuccess(_Payload):
    is_host: bool = Field(..., alias="isHost")
    member_id: str = Field(..., alias="memberId")


class UserUpdate(_Payload):
    members: int = Field(..., ge=0)


class StartTesting(_Payload):
    room_id: str = Field(..., alias="roomId", min_length=1)


class GenerateTestCase(_Payload):
    round: int = Field(default=0, ge=0)


class SubmitInput(_Payload):
    room_id: str = Field(..., alias="roomId", min_length=1)
    input: WireBytes


class RunProgram(_Payload):
    input: WireBytes
    round: int = Field(default=0, ge=0)


class SubmitOutput(_Payload):
    room_id: str = Field(..., alias="roomId", min_length=1)
    output: WireBytes


class AllMatch(_Payload):
    round: int = Field(default=0, ge=0)
    remaining: int = Field(default=0, ge=0)


class DiffEntry(_Payload):
    users: List[str] = Field(..., min_length=2, max_length=2)
    patch: PatchText


class DiffFound(_Payload):
    input: WireBytes
    diffs: List[DiffEntry] = Field(default_factory=list)


class ErrorOccurred(_Payload):
    message: str
    room_id: Optional[str] = Field(default=None, alias="roomId")


PAYLOAD_MODELS: Dict[EventKind, Type[_Payload]] = {
    EventKind.SETUP_ROOM: SetupRoom,
    EventKind.SETUP_SUCCESS: SetupSuccess,
    EventKind.USER_UPDATE: UserUpdate,
    EventKind.START_TESTING: StartTesting,
    EventKind.GENERATE_TEST_CASE: GenerateTestCase,
    EventKind.SUBMIT_INPUT: SubmitInput,
    EventKind.RUN_PROGRAM: RunProgram,
    EventKind.SUBMIT_OUTPUT: SubmitOutput,
    EventKind.ALL_MATCH: AllMatch,
    EventKind.DIFF_FOUND: DiffFound,
    EventKind.ERROR_OCCURRED: ErrorOccurred,
}


@dataclass(frozen=True)
class Message:
    kind: EventKind
    payload: _Payload

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event": self.kind.value,
            "data": self.payload.model_dump(by_alias=True, exclude_none=True),
        }

    def dumps(self) -> str:
        return json.dumps(self.as_dict(), separators=(",", ":"), ensure_ascii=True)


def message(kind: EventKind, **fields: Any) -> Message:
    model = PAYLOAD_MODELS[kind]
    try:
        return Message(kind, model(**fields))
    except ValidationError as exc:
        raise ProtocolError(f"invalid {kind.value} payload: {exc}") from exc


def decode(raw: str | bytes, *, allowed: FrozenSet[EventKind]) -> Message:
    """Parse one frame, accepting only the given event kinds."""
    try:
        body = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError("frame is not valid JSON") from exc
    if not isinstance(body, dict):
        raise ProtocolError("frame must be a JSON object")
    name = str(body.get("event") or "").strip().lower()
    try:
        kind = EventKind(name)
    except ValueError as exc:
        raise ProtocolError(f"unknown event: {name or '<missing>'}") from exc
    if kind not in allowed:
        raise ProtocolError(f"unexpected event: {kind.value}")
    data = body.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ProtocolError(f"{kind.value} payload must be an object")
    try:
        payload = PAYLOAD_MODELS[kind].model_validate(data)
    except ValidationError as exc:
        raise ProtocolError(f"invalid {kind.value} payload: {exc}") from exc
    return Message(kind, payload)


def decode_inbound(raw: str | bytes) -> Message:
    return decode(raw, allowed=INBOUND_KINDS)


def decode_outbound(raw: str | bytes) -> Message:
    return decode(raw, allowed=OUTBOUND_KINDS)


__all__ = [
    "AllMatch",
    "DiffEntry",
    "DiffFound",
    "ErrorOccurred",
    "EventKind",
    "GenerateTestCase",
    "INBOUND_KINDS",
    "Message",
    "OUTBOUND_KINDS",
    "PAYLOAD_MODELS",
    "RunProgram",
    "SetupRoom",
    "SetupSuccess",
    "StartTesting",
    "SubmitInput",
    "SubmitOutput",
    "UserUpdate",
    "decode",
    "decode_inbound",
    "decode_outbound",
    "message",
]
