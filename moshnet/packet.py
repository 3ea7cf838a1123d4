"""Datagram packets, protocol timestamps and port-range parsing."""

import itertools
import os
import struct
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional, Tuple

__all__ = [
    "MOSH_PROTOCOL_VERSION",
    "DIRECTION_MASK",
    "SEQUENCE_MASK",
    "NetworkException",
    "Direction",
    "Message",
    "Packet",
    "timestamp",
    "freeze_timestamp",
    "timestamp16",
    "timestamp_diff",
    "parse_portrange",
]

MOSH_PROTOCOL_VERSION = 2
"""Protocol version carried in every instruction (bumped for echo-ack)."""

DIRECTION_MASK = 1 << 63
SEQUENCE_MASK = ((1 << 64) - 1) ^ DIRECTION_MASK

_U16 = 0xFFFF
_TIMESTAMPS = struct.Struct(">HH")

_sequence = itertools.count()
_frozen: Optional[int] = None


class NetworkException(Exception):
    """A failure in the network layer, naming the failed call and its errno."""

    def __init__(self, function: str = "<none>", the_errno: int = 0) -> None:
        self.function = function
        self.the_errno = the_errno
        super().__init__(f"{function}: {os.strerror(the_errno)}")


class Direction(IntEnum):
    """Which way a packet travels."""

    TO_SERVER = 0
    TO_CLIENT = 1


@dataclass
class Message:
    """A plaintext message with its 64-bit nonce value."""

    nonce: int
    text: bytes


def _unique() -> int:
    return next(_sequence)


@dataclass
class Packet:
    """A datagram: direction, sequence number, two 16-bit timestamps and payload."""

    direction: Direction
    timestamp: int
    timestamp_reply: int
    payload: bytes
    seq: int = field(default_factory=_unique)

    @classmethod
    def from_message(cls, message: Message) -> "Packet":
        """Decode a packet from a decrypted message."""
        text = bytes(message.text)
        if len(text) < _TIMESTAMPS.size:
            raise ValueError("Illegal counterparty input (possible denial of service)")
        ts, ts_reply = _TIMESTAMPS.unpack_from(text)
        direction = Direction.TO_CLIENT if message.nonce & DIRECTION_MASK else Direction.TO_SERVER
        return cls(
            direction=direction,
            timestamp=ts,
            timestamp_reply=ts_reply,
            payload=text[_TIMESTAMPS.size:],
            seq=message.nonce & SEQUENCE_MASK,
        )

    def to_message(self) -> Message:
        """Encode as a message: direction bit and sequence in the nonce."""
        direction_seq = (int(self.direction == Direction.TO_CLIENT) << 63) | (
            self.seq & SEQUENCE_MASK
        )
        text = _TIMESTAMPS.pack(self.timestamp & _U16, self.timestamp_reply & _U16)
        return Message(direction_seq, text + bytes(self.payload))


def freeze_timestamp() -> int:
    """Record the current monotonic time in ms and return it."""
    global _frozen
    _frozen = int(time.monotonic() * 1000)
    return _frozen


def timestamp() -> int:
    """The most recently frozen time in ms, freezing it on first use."""
    if _frozen is None:
        return freeze_timestamp()
    return _frozen


def timestamp16() -> int:
    """The current time modulo 65536, never equal to 0xFFFF (reserved)."""
    ts = timestamp() % 65536
    if ts == _U16:
        ts = 0
    return ts


def timestamp_diff(tsnew: int, tsold: int) -> int:
    """Difference of two 16-bit timestamps, allowing for wraparound."""
    return (tsnew - tsold) % 65536


_C_SPACE = " \t\n\v\f\r"


def _strtol(text: str) -> Tuple[int, str, bool]:
    """Parse a base-10 integer the way strtol does.

    Returns the value, the unparsed remainder and whether it overflowed.
    """
    stripped = text.lstrip(_C_SPACE)
    pos = 0
    negative = False
    if stripped[:1] in ("+", "-"):
        negative = stripped[0] == "-"
        pos = 1
    start = pos
    while pos < len(stripped) and stripped[pos] in "0123456789":
        pos += 1
    if pos == start:
        return 0, text, False
    value = int(stripped[start:pos])
    if negative:
        value = -value
    overflow = not (-(1 << 63) <= value <= (1 << 63) - 1)
    return value, stripped[pos:], overflow


def parse_portrange(desired_port: str) -> Tuple[int, int]:
    """Parse ``"port"`` or ``"low:high"`` into a (low, high) pair.

    Raises ValueError describing what is wrong with the specification.
    """
    value, rest, overflow = _strtol(desired_port)
    if overflow or (rest and not rest.startswith(":")):
        raise ValueError(f"Invalid (low) port number ({desired_port})")
    if not 0 <= value <= 65535:
        raise ValueError(f"(Low) port number {value} outside valid range [0..65535]")
    low = value
    if not rest:
        return low, low

    high_text = rest[1:]
    value, rest, overflow = _strtol(high_text)
    if overflow or rest:
        raise ValueError(f"Invalid high port number ({high_text})")
    if not 0 <= value <= 65535:
        raise ValueError(f"High port number {value} outside valid range [0..65535]")
    high = value
    if low > high:
        raise ValueError(f"Low port {low} greater than high port {high}")
    if low == 0:
        raise ValueError("Low port 0 incompatible with port ranges")
    return low, high