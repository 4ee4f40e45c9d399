# SPDX-License-Identifier: MIT
"""jelly tests common fixtures"""

import struct, zlib

import pytest

from jellyclient.jelly.client import JellyFpgaClient
from jellyclient.jelly.messages import *
from jellyclient.jelly.transport import StreamInterface

I = StreamInterface
C = JellyFpgaClient

UIO_DEVICES = {
    "led0": 0x1000,
    "uio_pl_peri": 0x10000,
}

UDMABUF_DEVICES = {
    "udmabuf-jelly-sample": (0x100000, 0x0f000000),
}

VIRT_BASE = 0x7f0000000000

FLOAT_WIDTHS = {
    C.P_READ_MEM_F32: 4,
    C.P_READ_MEM_F64: 8,
    C.P_READ_REG_F32: 4,
    C.P_READ_REG_F64: 8,
}


def frame(req, opcode, status=0, payload=b""):
    """Build a reply frame the way the server does"""
    data = struct.pack("<IIiI", req, opcode, status, len(payload)) + payload
    return data + struct.pack("<I", zlib.crc32(data) & 0xFFFFFFFF)


class FakeServer:
    """In-process Jelly FPGA server speaking the framed protocol

    Memory is a bytearray per opened device; subclones share their parent's
    backing store. Register `n` lives at byte offset `n * unit`.
    """

    def __init__(self):
        self.next_id = 1
        self.next_slot = 1
        self.handles = {}
        self.backing = {}
        self.firmware = {}
        self.loaded = set()
        self.fail_unload = set()
        self.reject_uploads = set()
        self.accels = {}
        self.calls = []
        self.frames = []
        self.session = None
        self.aborted = 0
        self.resets = 0

        self.ops = {
            C.P_RESET: (Empty, "reset"),
            C.P_LOAD: (NameRequest, "load"),
            C.P_UNLOAD: (SlotRequest, "unload"),
            C.P_REMOVE_FIRMWARE: (NameRequest, "remove_firmware"),
            C.P_LOAD_BITSTREAM: (NameRequest, "load_named"),
            C.P_LOAD_DTBO: (NameRequest, "load_named"),
            C.P_DTS_TO_DTB: (DtsToDtbRequest, "dts_to_dtb"),
            C.P_BITSTREAM_TO_BIN: (BitstreamToBinRequest, "bitstream_to_bin"),
            C.P_REGISTER_ACCEL: (RegisterAccelRequest, "register_accel"),
            C.P_UNREGISTER_ACCEL: (NameRequest, "unregister_accel"),
            C.P_OPEN_MMAP: (OpenMmapRequest, "open_mmap"),
            C.P_OPEN_UIO: (OpenUioRequest, "open_uio"),
            C.P_OPEN_UDMABUF: (OpenUdmabufRequest, "open_udmabuf"),
            C.P_SUBCLONE: (SubcloneRequest, "subclone"),
            C.P_CLOSE: (IdRequest, "close"),
            C.P_GET_ADDR: (IdRequest, "get_addr"),
            C.P_GET_SIZE: (IdRequest, "get_size"),
            C.P_GET_PHYS_ADDR: (IdRequest, "get_phys_addr"),
            C.P_MEM_COPY_TO: (MemCopyToRequest, "mem_copy_to"),
            C.P_MEM_COPY_FROM: (MemCopyFromRequest, "mem_copy_from"),
        }
        for op in (C.P_WRITE_MEM_U, C.P_WRITE_MEM_I):
            self.ops[op] = (WriteRequest, "write_mem")
        for op in (C.P_WRITE_REG_U, C.P_WRITE_REG_I):
            self.ops[op] = (WriteRequest, "write_reg")
        self.ops[C.P_WRITE_MEM_F32] = (WriteF32Request, "write_mem")
        self.ops[C.P_WRITE_MEM_F64] = (WriteF64Request, "write_mem")
        self.ops[C.P_WRITE_REG_F32] = (WriteF32Request, "write_reg")
        self.ops[C.P_WRITE_REG_F64] = (WriteF64Request, "write_reg")
        for op in (C.P_READ_MEM_U, C.P_READ_MEM_I):
            self.ops[op] = (ReadRequest, "read_mem")
        for op in (C.P_READ_REG_U, C.P_READ_REG_I):
            self.ops[op] = (ReadRequest, "read_reg")
        for op in (C.P_READ_MEM_F32, C.P_READ_MEM_F64):
            self.ops[op] = (ReadFloatRequest, "read_mem")
        for op in (C.P_READ_REG_F32, C.P_READ_REG_F64):
            self.ops[op] = (ReadFloatRequest, "read_reg")

    def opcodes(self):
        return [op for op, _ in self.calls]

    # framing

    def handle_frame(self, req, opcode, payload):
        self.frames.append((req, opcode))
        if req == I.REQ_NOP:
            return frame(req, 0)
        if req == I.REQ_CALL:
            if opcode not in self.ops:
                return frame(req, opcode, I.ST_BADCMD)
            request, handler = self.ops[opcode]
            args = request.parse(payload)
            self.calls.append((opcode, args))
            return frame(req, opcode, 0, getattr(self, handler)(opcode, args))
        if req == I.REQ_STREAM:
            self.session = (opcode, [])
            return b""
        if req == I.REQ_CHUNK:
            self.session[1].append(UploadChunk.parse(payload))
            return b""
        if req == I.REQ_ABORT:
            self.session = None
            self.aborted += 1
            return b""
        if req == I.REQ_END:
            _, chunks = self.session
            self.session = None
            self.calls.append((opcode, chunks))
            return frame(req, opcode, 0, self.finish_upload(chunks))
        return frame(req, opcode, I.ST_BADCMD)

    # system control

    def ok(self, result=True):
        return Result.build(dict(result=result))

    def reset(self, op, args):
        self.resets += 1
        self.loaded.clear()
        return self.ok()

    def load(self, op, args):
        if args.name not in self.firmware:
            return SlotReply.build(dict(result=False, slot=-1))
        slot = self.next_slot
        self.next_slot += 1
        self.loaded.add(slot)
        return SlotReply.build(dict(result=True, slot=slot))

    def unload(self, op, args):
        if args.slot in self.fail_unload:
            return self.ok(False)
        if args.slot == 0:
            return self.ok()
        if args.slot not in self.loaded:
            return self.ok(False)
        self.loaded.discard(args.slot)
        return self.ok()

    def remove_firmware(self, op, args):
        return self.ok(self.firmware.pop(args.name, None) is not None)

    def load_named(self, op, args):
        return self.ok(args.name in self.firmware)

    def dts_to_dtb(self, op, args):
        if "/dts-v1/;" not in args.dts:
            return DataReply.build(dict(result=False, data=b""))
        return DataReply.build(dict(result=True, data=b"\xd0\x0d\xfe\xed" + args.dts.encode()))

    def bitstream_to_bin(self, op, args):
        if args.bitstream_name not in self.firmware:
            return self.ok(False)
        self.firmware[args.bin_name] = self.firmware[args.bitstream_name]
        return self.ok()

    def register_accel(self, op, args):
        if args.accel_name in self.accels and not args.overwrite:
            return self.ok(False)
        for name in (args.bin_file, args.dtbo_file):
            if name not in self.firmware:
                return self.ok(False)
        self.accels[args.accel_name] = (args.bin_file, args.dtbo_file, args.json_file)
        return self.ok()

    def unregister_accel(self, op, args):
        return self.ok(self.accels.pop(args.name, None) is not None)

    def finish_upload(self, chunks):
        if not chunks:
            return UploadReply.build(dict(result=False, error="no data"))
        name = chunks[0].name
        if any(c.name != name for c in chunks):
            return UploadReply.build(dict(result=False, error="firmware name changed"))
        if name in self.reject_uploads:
            return UploadReply.build(dict(result=False, error="write failed"))
        self.firmware[name] = b"".join(c.data for c in chunks)
        return UploadReply.build(dict(result=True, error=""))

    # handles

    def new_handle(self, store, base, size, unit, phys=None):
        id = self.next_id
        self.next_id += 1
        self.handles[id] = dict(store=store, base=base, size=size, unit=unit, phys=phys)
        return IdReply.build(dict(result=True, id=id))

    def no_handle(self):
        return IdReply.build(dict(result=False, id=0))

    def open_mmap(self, op, args):
        if args.size == 0:
            return self.no_handle()
        store = self.backing.setdefault((args.path, args.offset), bytearray(args.size))
        if len(store) < args.size:
            store.extend(bytes(args.size - len(store)))
        return self.new_handle(store, 0, args.size, args.unit)

    def open_uio(self, op, args):
        if args.name not in UIO_DEVICES:
            return self.no_handle()
        size = UIO_DEVICES[args.name]
        store = self.backing.setdefault(args.name, bytearray(size))
        return self.new_handle(store, 0, size, args.unit)

    def open_udmabuf(self, op, args):
        if args.name not in UDMABUF_DEVICES:
            return self.no_handle()
        size, phys = UDMABUF_DEVICES[args.name]
        store = self.backing.setdefault(args.name, bytearray(size))
        return self.new_handle(store, 0, size, args.unit, phys)

    def subclone(self, op, args):
        parent = self.handles.get(args.id)
        if parent is None or args.offset + args.size > parent["size"]:
            return self.no_handle()
        phys = parent["phys"] + args.offset if parent["phys"] is not None else None
        return self.new_handle(parent["store"], parent["base"] + args.offset,
                               args.size, args.unit, phys)

    def close(self, op, args):
        return self.ok(self.handles.pop(args.id, None) is not None)

    def query(self, args, fn):
        h = self.handles.get(args.id)
        value = fn(h) if h is not None else None
        if value is None:
            return QueryReply.build(dict(result=False, value=0))
        return QueryReply.build(dict(result=True, value=value))

    def get_addr(self, op, args):
        return self.query(args, lambda h: VIRT_BASE + h["base"])

    def get_size(self, op, args):
        return self.query(args, lambda h: h["size"])

    def get_phys_addr(self, op, args):
        return self.query(args, lambda h: h["phys"])

    # memory

    def window(self, id, offset, size):
        h = self.handles.get(id)
        if h is None or offset + size > h["size"]:
            return None, None
        return h["store"], h["base"] + offset

    def store_bytes(self, id, offset, data):
        store, start = self.window(id, offset, len(data))
        if store is None:
            return self.ok(False)
        store[start:start + len(data)] = data
        return self.ok()

    def load_bytes(self, reply, id, offset, size):
        store, start = self.window(id, offset, size)
        if store is None:
            return reply.build(dict(result=False, data=b""))
        return reply.build(dict(result=True, data=bytes(store[start:start + size])))

    def reg_offset(self, id, reg):
        h = self.handles.get(id)
        return reg * h["unit"] if h is not None else 0

    def write_mem(self, op, args):
        return self.store_bytes(args.id, args.addr, args.data)

    def write_reg(self, op, args):
        return self.store_bytes(args.id, self.reg_offset(args.id, args.addr), args.data)

    def read_size(self, op, args):
        return FLOAT_WIDTHS.get(op) or args.size

    def read_mem(self, op, args):
        return self.load_bytes(ReadReply, args.id, args.addr, self.read_size(op, args))

    def read_reg(self, op, args):
        return self.load_bytes(ReadReply, args.id, self.reg_offset(args.id, args.addr),
                               self.read_size(op, args))

    def mem_copy_to(self, op, args):
        return self.store_bytes(args.id, args.offset, args.data)

    def mem_copy_from(self, op, args):
        return self.load_bytes(DataReply, args.id, args.offset, args.size)


class FakeLink:
    """pyserial-like endpoint feeding written frames to a FakeServer"""

    def __init__(self, server):
        self.server = server
        self.timeout = None
        self.closed = False
        self.inbuf = b""
        self.outbuf = b""
        self.writes = []
        self.noise = b""
        self.corrupt = False
        self.fail_after = None

    def write(self, data):
        if self.fail_after is not None and len(self.writes) >= self.fail_after:
            raise OSError("connection reset by peer")
        self.writes.append(len(data))
        self.inbuf += bytes(data)
        while len(self.inbuf) >= 12:
            req, opcode, size = struct.unpack("<III", self.inbuf[:12])
            if len(self.inbuf) < 12 + size + 4:
                break
            body = self.inbuf[:12 + size]
            csum, = struct.unpack("<I", self.inbuf[12 + size:16 + size])
            self.inbuf = self.inbuf[16 + size:]
            assert csum == zlib.crc32(body) & 0xFFFFFFFF
            reply = self.server.handle_frame(req, opcode, body[12:])
            if reply and self.corrupt:
                reply = reply[:-1] + bytes([reply[-1] ^ 0xff])
            self.outbuf += self.noise + reply
        return len(data)

    def read(self, size):
        data, self.outbuf = self.outbuf[:size], self.outbuf[size:]
        return data

    def close(self):
        self.closed = True


@pytest.fixture
def fx_server():
    """Return a fresh fake Jelly server"""
    return FakeServer()


@pytest.fixture
def fx_link(fx_server):
    """Return a fake link attached to the fake server"""
    return FakeLink(fx_server)


@pytest.fixture
def fx_iface(fx_link):
    """Return a StreamInterface over the fake link"""
    return StreamInterface(fx_link, timeout=0.1)


@pytest.fixture
def fx_client(fx_iface):
    """Return a JellyFpgaClient with a small firmware chunk size"""
    return JellyFpgaClient(fx_iface, chunk_size=16)
