"""Order-preserving encoding of typed column values into keys."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, List

from pagedb.btree_iter import Cmp

_U32BE = struct.Struct(">I")
_U64BE = struct.Struct(">Q")

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1


class ValueType(IntEnum):
    """Column types; the value is also the encoded type tag."""

    ERROR = 0
    BYTES = 1
    INT64 = 2
    INF = 0xFF  # reserved: sorts after every encoded value


@dataclass
class Value:
    """A typed table cell."""

    type: ValueType
    i64: int = 0
    str: bytes = b""

    @classmethod
    def of_bytes(cls, data: bytes) -> "Value":
        return cls(ValueType.BYTES, str=bytes(data))

    @classmethod
    def of_int64(cls, num: int) -> "Value":
        return cls(ValueType.INT64, i64=num)


def escape_string(data: bytes) -> bytes:
    """Escape 0x00 and 0x01 so the result holds no null byte."""
    data = bytes(data)
    if b"\x00" not in data and b"\x01" not in data:
        return data
    return data.replace(b"\x01", b"\x01\x02").replace(b"\x00", b"\x01\x01")


def unescape_string(data: bytes) -> bytes:
    """Reverse `escape_string`."""
    data = bytes(data)
    if b"\x01" not in data:
        return data
    out = bytearray()
    it = iter(data)
    for ch in it:
        if ch == 0x01:
            nxt = next(it, None)
            if nxt not in (1, 2):
                raise ValueError("bad escape sequence")
            out.append(nxt - 1)
        else:
            out.append(ch)
    return bytes(out)


def encode_values(vals: Iterable[Value]) -> bytes:
    """Encode values so that byte order matches value order."""
    out = bytearray()
    for v in vals:
        out.append(int(v.type))
        if v.type == ValueType.INT64:
            if not _INT64_MIN <= v.i64 <= _INT64_MAX:
                raise ValueError(f"integer out of int64 range: {v.i64}")
            out += _U64BE.pack(v.i64 + (1 << 63))  # flip the sign bit
        elif v.type == ValueType.BYTES:
            out += escape_string(v.str)
            out.append(0)  # null-terminated
        else:
            raise ValueError(f"bad value type: {v.type}")
    return bytes(out)


def encode_key(prefix: int, vals: Iterable[Value]) -> bytes:
    """A 4-byte table prefix followed by the encoded values."""
    return _U32BE.pack(prefix) + encode_values(vals)


def encode_key_partial(prefix: int, vals: Iterable[Value], cmp: int) -> bytes:
    """Encode a key prefix for a range bound; missing columns are +/- infinity."""
    out = encode_key(prefix, vals)
    if cmp in (Cmp.GT, Cmp.LE):
        out += bytes([ValueType.INF])  # unreachable +infinity
    return out


def decode_values(data: bytes, types: Iterable[int]) -> List[Value]:
    """Decode values of the given types; the input must be consumed exactly."""
    data = bytes(data)
    pos = 0
    out = []
    for tp in types:
        if pos >= len(data) or data[pos] != tp:
            raise ValueError("type tag mismatch")
        pos += 1
        if tp == ValueType.INT64:
            if pos + 8 > len(data):
                raise ValueError("truncated integer")
            (u,) = _U64BE.unpack_from(data, pos)
            out.append(Value.of_int64(u - (1 << 63)))
            pos += 8
        elif tp == ValueType.BYTES:
            end = data.find(b"\x00", pos)
            if end < 0:
                raise ValueError("unterminated string")
            out.append(Value.of_bytes(unescape_string(data[pos:end])))
            pos = end + 1
        else:
            raise ValueError(f"bad value type: {tp}")
    if pos != len(data):
        raise ValueError("trailing data after values")
    return out


def decode_key(data: bytes, types: Iterable[int]) -> List[Value]:
    """Decode a key produced by `encode_key`, skipping its prefix."""
    return decode_values(bytes(data)[4:], types)