# SPDX-License-Identifier: MIT
"""
jelly: wire codec for typed register and memory values

All values travel as exactly `width` little-endian bytes. Integers use
two's complement, floats IEEE-754 binary32/binary64.
"""
import operator, struct
from enum import Enum, IntEnum
from typing import NamedTuple

__all__ = []

WIDTHS = (1, 2, 4, 8)

class ClientError(ValueError):
    pass

class InvalidWidth(ClientError):
    pass

class ValueRangeError(ClientError):
    pass

class DecodeError(RuntimeError):
    pass

class LengthMismatch(DecodeError):
    def __init__(self, expected, got, what="buffer"):
        super().__init__(f"{what}: expected {expected} bytes, got {got}")
        self.expected = expected
        self.got = got

class Kind(IntEnum):
    UNSIGNED = 0
    SIGNED = 1
    FLOAT = 2

class VT(Enum):
    U8  = (Kind.UNSIGNED, 1, "<B")
    U16 = (Kind.UNSIGNED, 2, "<H")
    U32 = (Kind.UNSIGNED, 4, "<I")
    U64 = (Kind.UNSIGNED, 8, "<Q")
    I8  = (Kind.SIGNED,   1, "<b")
    I16 = (Kind.SIGNED,   2, "<h")
    I32 = (Kind.SIGNED,   4, "<i")
    I64 = (Kind.SIGNED,   8, "<q")
    F32 = (Kind.FLOAT,    4, "<f")
    F64 = (Kind.FLOAT,    8, "<d")

    def __init__(self, kind, width, fmt):
        self.kind = kind
        self.width = width
        self.fmt = fmt

    @property
    def limits(self):
        bits = self.width * 8
        if self.kind == Kind.SIGNED:
            return -(1 << (bits - 1)), (1 << (bits - 1)) - 1
        elif self.kind == Kind.UNSIGNED:
            return 0, (1 << bits) - 1
        raise TypeError(f"{self.name} has no integer limits")

_BY_KIND = {(vt.kind, vt.width): vt for vt in VT}

def check_width(width):
    if width not in WIDTHS:
        raise InvalidWidth(f"Unsupported width {width!r} (must be one of {WIDTHS})")
    return width

def vtype_for(kind, width):
    '''return the value type for a kind and a byte width'''
    try:
        return _BY_KIND[(Kind(kind), width)]
    except KeyError:
        raise InvalidWidth(f"Unsupported width {width!r} for {Kind(kind).name}") from None

def encode(vtype, value):
    if vtype.kind == Kind.FLOAT:
        try:
            return struct.pack(vtype.fmt, value)
        except OverflowError as e:
            raise ValueRangeError(f"{value!r} does not fit in {vtype.name}") from e

    value = operator.index(value)
    lo, hi = vtype.limits
    if not lo <= value <= hi:
        raise ValueRangeError(f"{value:#x} does not fit in {vtype.name} [{lo:#x}, {hi:#x}]")
    return struct.pack(vtype.fmt, value)

def decode(vtype, data):
    if len(data) != vtype.width:
        raise LengthMismatch(vtype.width, len(data), vtype.name)
    return struct.unpack(vtype.fmt, data)[0]

class TypedValue(NamedTuple):
    vtype: VT
    value: object

    def encode(self):
        return encode(self.vtype, self.value)

    @classmethod
    def decode(cls, vtype, data):
        return cls(vtype, decode(vtype, data))

    def __str__(self):
        if self.vtype.kind == Kind.FLOAT:
            return f"{self.vtype.name.lower()}:{self.value!r}"
        return f"{self.vtype.name.lower()}:{self.value:#x}"

__all__.extend(k for k, v in globals().items()
               if (callable(v) or isinstance(v, type)) and v.__module__ == __name__)
__all__.append("WIDTHS")
