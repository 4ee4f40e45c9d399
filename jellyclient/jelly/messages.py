# SPDX-License-Identifier: MIT
from construct import *

_construct_names = set(globals())

__all__ = []

# Request and reply bodies carried inside CALL/CHUNK/reply frames.
# Every length on the wire is explicit; reply bodies must be consumed
# exactly, trailing garbage is a malformed reply.

String = PascalString(Int16ul, "utf8")
LongString = PascalString(Int32ul, "utf8")
Blob = Prefixed(Int32ul, GreedyBytes)
Value = Prefixed(Int8ul, GreedyBytes)

def Reply(*subcons):
    return Struct(*subcons, Terminated)

Empty = Struct()

NameRequest = Struct(
    "name" / String,
)

SlotRequest = Struct(
    "slot" / Int32sl,
)

IdRequest = Struct(
    "id" / Int32ul,
)

OpenMmapRequest = Struct(
    "path" / String,
    "offset" / Int64ul,
    "size" / Int64ul,
    "unit" / Int64ul,
)

OpenUioRequest = Struct(
    "name" / String,
    "unit" / Int64ul,
)

OpenUdmabufRequest = Struct(
    "name" / String,
    "cache_enable" / Flag,
    "unit" / Int64ul,
)

SubcloneRequest = Struct(
    "id" / Int32ul,
    "offset" / Int64ul,
    "size" / Int64ul,
    "unit" / Int64ul,
)

# addr is a memory offset or a register number depending on the opcode
WriteRequest = Struct(
    "id" / Int32ul,
    "addr" / Int64ul,
    "size" / Int64ul,
    "data" / Bytes(this.size),
)

WriteF32Request = Struct(
    "id" / Int32ul,
    "addr" / Int64ul,
    "data" / Bytes(4),
)

WriteF64Request = Struct(
    "id" / Int32ul,
    "addr" / Int64ul,
    "data" / Bytes(8),
)

ReadRequest = Struct(
    "id" / Int32ul,
    "addr" / Int64ul,
    "size" / Int64ul,
)

# float reads carry no width, the opcode implies it
ReadFloatRequest = Struct(
    "id" / Int32ul,
    "addr" / Int64ul,
)

MemCopyToRequest = Struct(
    "id" / Int32ul,
    "offset" / Int64ul,
    "data" / Blob,
)

MemCopyFromRequest = Struct(
    "id" / Int32ul,
    "offset" / Int64ul,
    "size" / Int64ul,
)

UploadChunk = Struct(
    "name" / String,
    "data" / Blob,
)

DtsToDtbRequest = Struct(
    "dts" / LongString,
)

BitstreamToBinRequest = Struct(
    "bitstream_name" / String,
    "bin_name" / String,
    "arch" / String,
)

RegisterAccelRequest = Struct(
    "accel_name" / String,
    "bin_file" / String,
    "dtbo_file" / String,
    "json_file" / String,
    "overwrite" / Flag,
)

Result = Reply(
    "result" / Flag,
)

IdReply = Reply(
    "result" / Flag,
    "id" / Int32ul,
)

SlotReply = Reply(
    "result" / Flag,
    "slot" / Int32sl,
)

QueryReply = Reply(
    "result" / Flag,
    "value" / Int64ul,
)

ReadReply = Reply(
    "result" / Flag,
    "data" / Value,
)

DataReply = Reply(
    "result" / Flag,
    "data" / Blob,
)

UploadReply = Reply(
    "result" / Flag,
    "error" / String,
)

__all__.extend(k for k, v in list(globals().items())
               if k[0].isupper() and k not in _construct_names)
