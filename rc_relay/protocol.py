"""Command/response messages exchanged between operators, relay and vehicle.

Messages travel as compact JSON text frames using an externally tagged layout:
unit variants are bare strings (``"Stop"``, ``"Ping"``, ``"Pong"``) and
variants carrying data are single-key objects keyed by the tag, e.g.
``{"Move": {"direction": "Forward", "speed": 50}}`` or ``{"Error": "..."}``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union, assert_never

from . import constants

SPEED_MAX = 100
_U8_MAX = 255


class DecodeError(ValueError):
    """Raised when text is not a valid encoding of a protocol message."""

    def __init__(self, message: str, *, text: str) -> None:
        super().__init__(message)
        self.text = text


class ValidationError(DecodeError):
    """Raised when a well-formed message carries an out-of-range field."""


class Direction(str, Enum):
    FORWARD = "Forward"
    BACKWARD = "Backward"
    LEFT = "Left"
    RIGHT = "Right"
    STOP = "Stop"


@dataclass(frozen=True, slots=True)
class MotorCommand:
    direction: Direction
    speed: int  # percentage, 0-100


@dataclass(frozen=True, slots=True)
class MoveCommand:
    motor: MotorCommand


@dataclass(frozen=True, slots=True)
class StopCommand:
    pass


@dataclass(frozen=True, slots=True)
class PingCommand:
    pass


@dataclass(frozen=True, slots=True)
class StatusResponse:
    battery_level: int
    connected: bool
    current_speed: int
    current_direction: Direction


@dataclass(frozen=True, slots=True)
class PongResponse:
    pass


@dataclass(frozen=True, slots=True)
class ErrorResponse:
    message: str


RcCommand = Union[MoveCommand, StopCommand, PingCommand]
RcResponse = Union[StatusResponse, PongResponse, ErrorResponse]
Message = Union[RcCommand, RcResponse]

_UNIT_TAGS: dict[str, Message] = {
    "Stop": StopCommand(),
    "Ping": PingCommand(),
    "Pong": PongResponse(),
}
_COMMAND_TAGS = frozenset({"Move", "Stop", "Ping"})
_RESPONSE_TAGS = frozenset({"Status", "Pong", "Error"})

_MOVE_FIELDS = frozenset({"direction", "speed"})
_STATUS_FIELDS = frozenset(
    {"battery_level", "connected", "current_speed", "current_direction"}
)


def move(direction: Direction, speed: int) -> MoveCommand:
    """Shorthand for building a ``Move`` command."""

    return MoveCommand(MotorCommand(direction=direction, speed=speed))


def status_for(direction: Direction, speed: int) -> StatusResponse:
    """Build a ``Status`` reply for the given motor state."""

    return StatusResponse(
        battery_level=constants.PLACEHOLDER_BATTERY_LEVEL,
        connected=True,
        current_speed=speed,
        current_direction=direction,
    )


# ----------------------------------------------------------------------
# Encoding
# ----------------------------------------------------------------------
def to_wire(message: Message) -> Any:
    """Return the JSON-compatible representation of ``message``."""

    if isinstance(message, MoveCommand):
        return {
            "Move": {
                "direction": message.motor.direction.value,
                "speed": message.motor.speed,
            }
        }
    if isinstance(message, StopCommand):
        return "Stop"
    if isinstance(message, PingCommand):
        return "Ping"
    if isinstance(message, StatusResponse):
        return {
            "Status": {
                "battery_level": message.battery_level,
                "connected": message.connected,
                "current_speed": message.current_speed,
                "current_direction": message.current_direction.value,
            }
        }
    if isinstance(message, PongResponse):
        return "Pong"
    if isinstance(message, ErrorResponse):
        return {"Error": message.message}
    assert_never(message)


def encode(message: Message) -> str:
    """Encode a command or response as a text frame."""

    return json.dumps(to_wire(message), separators=(",", ":"))


# ----------------------------------------------------------------------
# Decoding
# ----------------------------------------------------------------------
def decode(text: str) -> Message:
    """Decode a text frame into a command or response.

    Raises:
        DecodeError: If the text is not valid JSON (including input nested
            too deeply or numbers too long to convert), carries an unknown tag,
            unknown or missing fields, or fields of the wrong type.
        ValidationError: If a field is outside its allowed range.
    """

    try:
        payload = json.loads(text)
    except (TypeError, ValueError, RecursionError) as exc:
        raise DecodeError(f"malformed JSON: {exc}", text=text) from exc

    tag, body = _split_tag(payload, text)

    if tag in _UNIT_TAGS:
        if body is not None:
            raise DecodeError(f"variant {tag!r} does not carry data", text=text)
        return _UNIT_TAGS[tag]
    if tag == "Move":
        return MoveCommand(_decode_motor_command(body, text))
    if tag == "Status":
        return _decode_status(body, text)
    if tag == "Error":
        if not isinstance(body, str):
            raise DecodeError("variant 'Error' expects a string", text=text)
        return ErrorResponse(body)

    raise DecodeError(f"unknown variant {tag!r}", text=text)


def decode_command(text: str) -> RcCommand:
    """Decode a text frame that must be an operator command."""

    message = decode(text)
    if isinstance(message, (MoveCommand, StopCommand, PingCommand)):
        return message
    raise DecodeError(
        f"expected one of {sorted(_COMMAND_TAGS)}, got a response", text=text
    )


def decode_response(text: str) -> RcResponse:
    """Decode a text frame that must be a device/relay response."""

    message = decode(text)
    if isinstance(message, (StatusResponse, PongResponse, ErrorResponse)):
        return message
    raise DecodeError(
        f"expected one of {sorted(_RESPONSE_TAGS)}, got a command", text=text
    )


def _split_tag(payload: Any, text: str) -> tuple[str, Any]:
    if isinstance(payload, str):
        return payload, None
    if isinstance(payload, dict):
        if len(payload) != 1:
            raise DecodeError(
                "expected an object with exactly one variant tag", text=text
            )
        ((tag, body),) = payload.items()
        return tag, body
    raise DecodeError(
        f"expected a string or object, got {type(payload).__name__}", text=text
    )


def _check_fields(body: Any, expected: frozenset[str], tag: str, text: str) -> dict:
    if not isinstance(body, dict):
        raise DecodeError(f"variant {tag!r} expects an object", text=text)
    unknown = set(body) - expected
    if unknown:
        raise DecodeError(
            f"unknown field(s) for {tag!r}: {', '.join(sorted(unknown))}", text=text
        )
    missing = expected - set(body)
    if missing:
        raise DecodeError(
            f"missing field(s) for {tag!r}: {', '.join(sorted(missing))}", text=text
        )
    return body


def _decode_direction(value: Any, field: str, text: str) -> Direction:
    if isinstance(value, str):
        try:
            return Direction(value)
        except ValueError:
            pass
    raise DecodeError(
        f"field {field!r} must be one of {[d.value for d in Direction]}, got {value!r}",
        text=text,
    )


def _decode_int(value: Any, field: str, upper: int, text: str) -> int:
    # bool is an int subclass; JSON true/false are not numbers here.
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"field {field!r} must be an integer", text=text)
    if not 0 <= value <= upper:
        raise ValidationError(
            f"field {field!r} must be between 0 and {upper}, got {value}", text=text
        )
    return value


def _decode_motor_command(body: Any, text: str) -> MotorCommand:
    fields = _check_fields(body, _MOVE_FIELDS, "Move", text)
    direction = _decode_direction(fields["direction"], "direction", text)
    speed = _decode_int(fields["speed"], "speed", SPEED_MAX, text)
    return MotorCommand(direction=direction, speed=speed)


def _decode_status(body: Any, text: str) -> StatusResponse:
    fields = _check_fields(body, _STATUS_FIELDS, "Status", text)
    connected = fields["connected"]
    if not isinstance(connected, bool):
        raise DecodeError("field 'connected' must be a boolean", text=text)
    return StatusResponse(
        battery_level=_decode_int(fields["battery_level"], "battery_level", _U8_MAX, text),
        connected=connected,
        current_speed=_decode_int(fields["current_speed"], "current_speed", _U8_MAX, text),
        current_direction=_decode_direction(
            fields["current_direction"], "current_direction", text
        ),
    )
