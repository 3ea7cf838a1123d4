"""Transport instructions and their splitting into datagram-sized fragments."""

import dataclasses
import struct
from dataclasses import dataclass, field
from typing import List

from .compressor import compress, uncompress

__all__ = [
    "FRAG_HEADER_LEN",
    "Instruction",
    "Fragment",
    "FragmentAssembly",
    "Fragmenter",
]

_U64 = (1 << 64) - 1
_U32 = (1 << 32) - 1
_U16 = (1 << 16) - 1

FRAG_HEADER_LEN = 8 + 2
_HEADER = struct.Struct(">QH")

_VARINT = 0
_FIXED64 = 1
_LENGTH = 2
_FIXED32 = 5

# field number -> (attribute, wire type, mask)
_FIELDS = {
    1: ("protocol_version", _VARINT, _U32),
    2: ("old_num", _VARINT, _U64),
    3: ("new_num", _VARINT, _U64),
    4: ("ack_num", _VARINT, _U64),
    5: ("throwaway_num", _VARINT, _U64),
    6: ("diff", _LENGTH, None),
    7: ("chaff", _LENGTH, None),
}


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_varint(data: bytes, pos: int):
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        if shift >= 70:
            raise ValueError("varint too long")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        shift += 7
        if not byte & 0x80:
            return result, pos


@dataclass
class Instruction:
    """One transport instruction: a diff between two numbered states."""

    protocol_version: int = 0
    old_num: int = 0
    new_num: int = 0
    ack_num: int = 0
    throwaway_num: int = 0
    diff: bytes = b""
    chaff: bytes = b""

    def serialize(self) -> bytes:
        """Encode in protocol-buffer wire format."""
        out = bytearray()
        for number, (name, wire, mask) in _FIELDS.items():
            value = getattr(self, name)
            out += _encode_varint((number << 3) | wire)
            if wire == _VARINT:
                out += _encode_varint(value & mask)
            else:
                value = bytes(value)
                out += _encode_varint(len(value))
                out += value
        return bytes(out)

    @classmethod
    def parse(cls, data: bytes) -> "Instruction":
        """Decode from protocol-buffer wire format; raise ValueError if malformed."""
        data = bytes(data)
        inst = cls()
        pos = 0
        while pos < len(data):
            key, pos = _decode_varint(data, pos)
            number, wire = key >> 3, key & 7
            if wire == _VARINT:
                value, pos = _decode_varint(data, pos)
            elif wire == _LENGTH:
                length, pos = _decode_varint(data, pos)
                if pos + length > len(data):
                    raise ValueError("truncated length-delimited field")
                value = data[pos:pos + length]
                pos += length
            elif wire == _FIXED64:
                if pos + 8 > len(data):
                    raise ValueError("truncated fixed64 field")
                value = None
                pos += 8
            elif wire == _FIXED32:
                if pos + 4 > len(data):
                    raise ValueError("truncated fixed32 field")
                value = None
                pos += 4
            else:
                raise ValueError(f"unsupported wire type {wire}")
            spec = _FIELDS.get(number)
            if spec is None:
                continue
            name, expected_wire, mask = spec
            if wire != expected_wire:
                raise ValueError(f"field {number} has wrong wire type {wire}")
            setattr(inst, name, value & mask if mask is not None else value)
        return inst


@dataclass
class Fragment:
    """A piece of a compressed instruction, with its id and position."""

    id: int = _U64
    fragment_num: int = _U16
    final: bool = False
    contents: bytes = b""
    initialized: bool = True

    @classmethod
    def blank(cls) -> "Fragment":
        """An uninitialized placeholder fragment."""
        return cls(initialized=False)

    def to_bytes(self) -> bytes:
        """Encode as 8-byte id, 2-byte final flag and number, then contents."""
        if not self.initialized:
            raise ValueError("cannot encode an uninitialized fragment")
        if self.fragment_num & 0x8000:
            raise ValueError("fragment number too large")
        combined = (int(self.final) << 15) | self.fragment_num
        return _HEADER.pack(self.id & _U64, combined) + bytes(self.contents)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Fragment":
        """Decode a fragment; raise ValueError if shorter than the header."""
        data = bytes(data)
        if len(data) < FRAG_HEADER_LEN:
            raise ValueError("fragment shorter than header")
        frag_id, combined = _HEADER.unpack_from(data)
        return cls(
            id=frag_id,
            fragment_num=combined & 0x7FFF,
            final=bool(combined & 0x8000),
            contents=data[FRAG_HEADER_LEN:],
        )


class FragmentAssembly:
    """Collects fragments of one instruction until all have arrived."""

    def __init__(self) -> None:
        self._fragments: List[Fragment] = []
        self._current_id = _U64
        self._arrived = 0
        self._total = -1

    def _grow_to(self, size: int) -> None:
        while len(self._fragments) < size:
            self._fragments.append(Fragment.blank())

    def add_fragment(self, frag: Fragment) -> bool:
        """Add a fragment; return True once the instruction is complete."""
        num = frag.fragment_num
        if self._current_id != frag.id:
            self._fragments = [Fragment.blank() for _ in range(num + 1)]
            self._fragments[num] = frag
            self._arrived = 1
            self._total = -1
            self._current_id = frag.id
        elif len(self._fragments) > num and self._fragments[num].initialized:
            if self._fragments[num] != frag:
                raise ValueError("conflicting duplicate fragment")
        else:
            self._grow_to(num + 1)
            self._fragments[num] = frag
            self._arrived += 1

        if frag.final:
            self._total = num + 1
            if len(self._fragments) > self._total:
                raise ValueError("fragment beyond final fragment")
            self._grow_to(self._total)

        if self._total != -1 and self._arrived > self._total:
            raise ValueError("more fragments than the total")

        return self._arrived == self._total

    def get_assembly(self) -> Instruction:
        """Reassemble, inflate and parse the complete instruction."""
        if self._arrived != self._total:
            raise ValueError("instruction is not complete")
        if not all(f.initialized for f in self._fragments):
            raise ValueError("missing fragment")
        encoded = b"".join(f.contents for f in self._fragments)
        inst = Instruction.parse(uncompress(encoded))
        self._fragments = []
        self._arrived = 0
        self._total = -1
        return inst


class Fragmenter:
    """Splits instructions into fragments, assigning instruction ids."""

    def __init__(self) -> None:
        self._next_instruction_id = 0
        self._last_instruction = Instruction(old_num=_U64, new_num=_U64)
        self._last_mtu = -1

    def make_fragments(self, inst: Instruction, mtu: int) -> List[Fragment]:
        """Compress ``inst`` and cut it into fragments of at most ``mtu`` bytes."""
        mtu -= FRAG_HEADER_LEN
        if mtu <= 0:
            raise ValueError("MTU too small for fragment header")
        last = self._last_instruction
        if (
            inst.old_num != last.old_num
            or inst.new_num != last.new_num
            or inst.ack_num != last.ack_num
            or inst.throwaway_num != last.throwaway_num
            or inst.chaff != last.chaff
            or inst.protocol_version != last.protocol_version
            or self._last_mtu != mtu
        ):
            self._next_instruction_id += 1

        if inst.old_num == last.old_num and inst.new_num == last.new_num:
            if inst.diff != last.diff:
                raise ValueError("same state numbers with a different diff")

        self._last_instruction = dataclasses.replace(inst)
        self._last_mtu = mtu

        payload = compress(inst.serialize())
        chunks = [payload[i:i + mtu] for i in range(0, len(payload), mtu)]
        return [
            Fragment(
                id=self._next_instruction_id,
                fragment_num=num,
                final=num == len(chunks) - 1,
                contents=chunk,
            )
            for num, chunk in enumerate(chunks)
        ]

    def last_ack_sent(self) -> int:
        """The ack number of the most recently fragmented instruction."""
        return self._last_instruction.ack_num