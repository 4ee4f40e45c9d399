# SPDX-License-Identifier: MIT
from construct import ConstructError

from .codec import *
from .device import *
from .firmware import *
from .messages import *
from .transport import *
from .utils import *

__all__ = ["JellyFpgaClient", "MEM", "REG"]

MEM = "mem"
REG = "reg"

# Uses StreamInterface.call() to send requests to the Jelly FPGA server and
# parse the replies. Every operation returns the server's result flag:
# False is a reported domain failure, transport problems raise.
class JellyFpgaClient:
    P_RESET = 0x001
    P_LOAD = 0x002
    P_UNLOAD = 0x003
    P_UPLOAD_FIRMWARE = 0x004
    P_REMOVE_FIRMWARE = 0x005
    P_LOAD_BITSTREAM = 0x006
    P_LOAD_DTBO = 0x007
    P_DTS_TO_DTB = 0x008
    P_BITSTREAM_TO_BIN = 0x009
    P_REGISTER_ACCEL = 0x00a
    P_UNREGISTER_ACCEL = 0x00b

    P_OPEN_MMAP = 0x100
    P_OPEN_UIO = 0x101
    P_OPEN_UDMABUF = 0x102
    P_SUBCLONE = 0x103
    P_CLOSE = 0x104
    P_GET_ADDR = 0x105
    P_GET_SIZE = 0x106
    P_GET_PHYS_ADDR = 0x107

    P_WRITE_MEM_U = 0x200
    P_WRITE_MEM_I = 0x201
    P_READ_MEM_U = 0x202
    P_READ_MEM_I = 0x203
    P_WRITE_REG_U = 0x204
    P_WRITE_REG_I = 0x205
    P_READ_REG_U = 0x206
    P_READ_REG_I = 0x207
    P_WRITE_MEM_F32 = 0x210
    P_WRITE_MEM_F64 = 0x211
    P_READ_MEM_F32 = 0x212
    P_READ_MEM_F64 = 0x213
    P_WRITE_REG_F32 = 0x214
    P_WRITE_REG_F64 = 0x215
    P_READ_REG_F32 = 0x216
    P_READ_REG_F64 = 0x217

    P_MEM_COPY_TO = 0x300
    P_MEM_COPY_FROM = 0x301

    WRITE_OPS = {
        (MEM, Kind.UNSIGNED): P_WRITE_MEM_U,
        (MEM, Kind.SIGNED): P_WRITE_MEM_I,
        (MEM, VT.F32): P_WRITE_MEM_F32,
        (MEM, VT.F64): P_WRITE_MEM_F64,
        (REG, Kind.UNSIGNED): P_WRITE_REG_U,
        (REG, Kind.SIGNED): P_WRITE_REG_I,
        (REG, VT.F32): P_WRITE_REG_F32,
        (REG, VT.F64): P_WRITE_REG_F64,
    }
    READ_OPS = {
        (MEM, Kind.UNSIGNED): P_READ_MEM_U,
        (MEM, Kind.SIGNED): P_READ_MEM_I,
        (MEM, VT.F32): P_READ_MEM_F32,
        (MEM, VT.F64): P_READ_MEM_F64,
        (REG, Kind.UNSIGNED): P_READ_REG_U,
        (REG, Kind.SIGNED): P_READ_REG_I,
        (REG, VT.F32): P_READ_REG_F32,
        (REG, VT.F64): P_READ_REG_F64,
    }

    def __init__(self, iface, debug=False, chunk_size=None):
        self.debug = debug
        self.iface = iface
        if chunk_size is None:
            chunk_size = env_int("JELLYCHUNKSIZE", DEFAULT_CHUNK_SIZE)
        self.chunk_size = chunk_size
        self.handles = HandleRegistry()
        self.slots = []
        self.last_error = None

    @classmethod
    def connect(cls, device=None, timeout=None, debug=False, **kwargs):
        return cls(StreamInterface(device, timeout=timeout, debug=debug), debug=debug, **kwargs)

    def close_link(self):
        self.iface.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close_link()

    @staticmethod
    def _fmt_args(args):
        return ", ".join(f"{k}=<{len(v)} bytes>" if isinstance(v, (bytes, bytearray)) else f"{k}={v!r}"
                         for k, v in args.items())

    def request(self, opcode, req=Empty, reply=Result, **args):
        try:
            payload = req.build(args)
        except ConstructError as e:
            raise ClientError(f"Bad arguments for 0x{opcode:03x}: {e}") from e
        if self.debug:
            print("<<<< %03x: %s" % (opcode, self._fmt_args(args)))
        data = self.iface.call(opcode, payload)
        try:
            ret = reply.parse(data)
        except ConstructError as e:
            raise ReplyError(f"Malformed reply to 0x{opcode:03x}: {e}") from e
        if self.debug:
            print(">>>> %03x: %s" % (opcode, self._fmt_args({k: v for k, v in ret.items()
                                                              if not k.startswith("_")})))
        return ret

    def nop(self):
        self.iface.nop()

    # System control

    def reset(self):
        ok = self.request(self.P_RESET).result
        if ok:
            # the server unloads every slot on reset
            self.slots.clear()
        return ok

    def load(self, name):
        ret = self.request(self.P_LOAD, NameRequest, SlotReply, name=name)
        if not ret.result:
            return False, None
        if ret.slot not in self.slots:
            self.slots.append(ret.slot)
        return True, ret.slot

    def unload(self, slot):
        ok = self.request(self.P_UNLOAD, SlotRequest, slot=slot).result
        if ok and slot in self.slots:
            self.slots.remove(slot)
        return ok

    def unload_all(self, slots=None):
        '''unload every known slot, newest first; returns (ok, failed slots)

        Every slot is attempted even if an earlier one fails. With no slots
        loaded through this client, slot 0 (the boot-time slot) is unloaded.'''
        if slots is None:
            slots = self.slots[::-1] or [0]
        failed = []
        for slot in slots:
            if not self.unload(slot):
                if self.debug:
                    print(f"unload_all: slot {slot} failed")
                failed.append(slot)
        return not failed, failed

    def remove_firmware(self, name):
        return self.request(self.P_REMOVE_FIRMWARE, NameRequest, name=name).result
    def load_bitstream(self, name):
        return self.request(self.P_LOAD_BITSTREAM, NameRequest, name=name).result
    def load_dtbo(self, name):
        return self.request(self.P_LOAD_DTBO, NameRequest, name=name).result

    def dts_to_dtb(self, dts):
        ret = self.request(self.P_DTS_TO_DTB, DtsToDtbRequest, DataReply, dts=dts)
        return ret.result, (ret.data if ret.result else None)

    def bitstream_to_bin(self, bitstream_name, bin_name, arch):
        return self.request(self.P_BITSTREAM_TO_BIN, BitstreamToBinRequest,
                            bitstream_name=bitstream_name, bin_name=bin_name, arch=arch).result

    def register_accel(self, accel_name, bin_file, dtbo_file, json_file=None, overwrite=False):
        return self.request(self.P_REGISTER_ACCEL, RegisterAccelRequest,
                            accel_name=accel_name, bin_file=bin_file, dtbo_file=dtbo_file,
                            json_file=json_file or "", overwrite=overwrite).result

    def unregister_accel(self, accel_name):
        return self.request(self.P_UNREGISTER_ACCEL, NameRequest, name=accel_name).result

    # Firmware upload

    def _upload(self, name, chunks):
        upload = FirmwareUpload(self.iface, self.P_UPLOAD_FIRMWARE, name, chunks, debug=self.debug)
        self.last_error = None
        ok = upload.run()
        self.last_error = upload.error
        return ok

    def upload_firmware(self, name, data):
        '''upload an image in chunks; the server only keeps it if every chunk arrived'''
        return self._upload(name, iter_chunks(data, self.chunk_size))

    def upload_firmware_file(self, name, path):
        return self._upload(name, iter_file_chunks(path, self.chunk_size))

    # Handles

    def _opened(self, ret, region):
        if not ret.result:
            return False, None
        self.handles.add(ret.id, region)
        return True, ret.id

    def open_mmap(self, path, offset, size, unit):
        check_width(unit)
        ret = self.request(self.P_OPEN_MMAP, OpenMmapRequest, IdReply,
                           path=path, offset=offset, size=size, unit=unit)
        return self._opened(ret, MemoryRegion("mmap", unit, offset=offset, size=size, name=path))

    def open_uio(self, name, unit):
        check_width(unit)
        ret = self.request(self.P_OPEN_UIO, OpenUioRequest, IdReply, name=name, unit=unit)
        return self._opened(ret, MemoryRegion("uio", unit, name=name))

    def open_udmabuf(self, name, cache_enable, unit):
        check_width(unit)
        ret = self.request(self.P_OPEN_UDMABUF, OpenUdmabufRequest, IdReply,
                           name=name, cache_enable=cache_enable, unit=unit)
        return self._opened(ret, MemoryRegion("udmabuf", unit, name=name))

    def subclone(self, id, offset, size, unit):
        '''open a window onto a handle this client opened, or pass it to the server

        Windows outside a known parent raise InvalidRange before the subclone
        request. The first subclone of a uio/udmabuf parent issues one
        get_size call to learn its size; that call precedes the check.'''
        check_width(unit)
        parent = self.handles.get(id)
        if parent is not None:
            if parent.size is None:
                ok, parent_size = self.get_size(id)
                if ok:
                    parent = self.handles.learn_size(id, parent_size)
            if parent.size is not None:
                parent.check_window(offset, size)
        ret = self.request(self.P_SUBCLONE, SubcloneRequest, IdReply,
                           id=id, offset=offset, size=size, unit=unit)
        return self._opened(ret, MemoryRegion("subclone", unit, offset=offset, size=size, parent=id))

    def close(self, id):
        ok = self.request(self.P_CLOSE, IdRequest, id=id).result
        if ok:
            children = self.handles.children(id)
            if children and self.debug:
                print(f"close: handle {id} leaves subclones {children} open")
            self.handles.discard(id)
        return ok

    def _query(self, opcode, id):
        ret = self.request(opcode, IdRequest, QueryReply, id=id)
        return ret.result, (ret.value if ret.result else None)

    def get_addr(self, id):
        return self._query(self.P_GET_ADDR, id)
    def get_size(self, id):
        return self._query(self.P_GET_SIZE, id)
    def get_phys_addr(self, id):
        return self._query(self.P_GET_PHYS_ADDR, id)

    def handle(self, id):
        return DeviceHandle(self, id)

    # Typed access

    @staticmethod
    def _opkey(space, vtype):
        if vtype.kind == Kind.FLOAT:
            return (space, vtype)
        return (space, vtype.kind)

    def write(self, space, id, addr, value, vtype):
        opcode = self.WRITE_OPS[self._opkey(space, vtype)]
        data = encode(vtype, value)
        if vtype == VT.F32:
            ret = self.request(opcode, WriteF32Request, id=id, addr=addr, data=data)
        elif vtype == VT.F64:
            ret = self.request(opcode, WriteF64Request, id=id, addr=addr, data=data)
        else:
            ret = self.request(opcode, WriteRequest, id=id, addr=addr, size=vtype.width, data=data)
        return ret.result

    def read(self, space, id, addr, vtype):
        opcode = self.READ_OPS[self._opkey(space, vtype)]
        if vtype.kind == Kind.FLOAT:
            ret = self.request(opcode, ReadFloatRequest, ReadReply, id=id, addr=addr)
        else:
            ret = self.request(opcode, ReadRequest, ReadReply, id=id, addr=addr, size=vtype.width)
        if not ret.result:
            return False, None
        return True, decode(vtype, ret.data)

    def write_mem(self, id, offset, value, vtype):
        return self.write(MEM, id, offset, value, vtype)
    def read_mem(self, id, offset, vtype):
        return self.read(MEM, id, offset, vtype)
    def write_reg(self, id, reg, value, vtype):
        return self.write(REG, id, reg, value, vtype)
    def read_reg(self, id, reg, vtype):
        return self.read(REG, id, reg, vtype)

    def write_mem_u(self, id, offset, data, size):
        '''write size byte unsigned value to offset'''
        return self.write_mem(id, offset, data, vtype_for(Kind.UNSIGNED, size))
    def write_mem_i(self, id, offset, data, size):
        '''write size byte signed value to offset'''
        return self.write_mem(id, offset, data, vtype_for(Kind.SIGNED, size))
    def read_mem_u(self, id, offset, size):
        '''return (ok, size byte unsigned value) from offset'''
        return self.read_mem(id, offset, vtype_for(Kind.UNSIGNED, size))
    def read_mem_i(self, id, offset, size):
        '''return (ok, size byte signed value) from offset'''
        return self.read_mem(id, offset, vtype_for(Kind.SIGNED, size))

    def write_reg_u(self, id, reg, data, size):
        '''write size byte unsigned value to register reg'''
        return self.write_reg(id, reg, data, vtype_for(Kind.UNSIGNED, size))
    def write_reg_i(self, id, reg, data, size):
        '''write size byte signed value to register reg'''
        return self.write_reg(id, reg, data, vtype_for(Kind.SIGNED, size))
    def read_reg_u(self, id, reg, size):
        '''return (ok, size byte unsigned value) from register reg'''
        return self.read_reg(id, reg, vtype_for(Kind.UNSIGNED, size))
    def read_reg_i(self, id, reg, size):
        '''return (ok, size byte signed value) from register reg'''
        return self.read_reg(id, reg, vtype_for(Kind.SIGNED, size))

    def write_mem_u8(self, id, offset, data):
        return self.write_mem(id, offset, data, VT.U8)
    def write_mem_u16(self, id, offset, data):
        return self.write_mem(id, offset, data, VT.U16)
    def write_mem_u32(self, id, offset, data):
        return self.write_mem(id, offset, data, VT.U32)
    def write_mem_u64(self, id, offset, data):
        return self.write_mem(id, offset, data, VT.U64)
    def write_mem_i8(self, id, offset, data):
        return self.write_mem(id, offset, data, VT.I8)
    def write_mem_i16(self, id, offset, data):
        return self.write_mem(id, offset, data, VT.I16)
    def write_mem_i32(self, id, offset, data):
        return self.write_mem(id, offset, data, VT.I32)
    def write_mem_i64(self, id, offset, data):
        return self.write_mem(id, offset, data, VT.I64)
    def write_mem_f32(self, id, offset, data):
        return self.write_mem(id, offset, data, VT.F32)
    def write_mem_f64(self, id, offset, data):
        return self.write_mem(id, offset, data, VT.F64)

    def read_mem_u8(self, id, offset):
        return self.read_mem(id, offset, VT.U8)
    def read_mem_u16(self, id, offset):
        return self.read_mem(id, offset, VT.U16)
    def read_mem_u32(self, id, offset):
        return self.read_mem(id, offset, VT.U32)
    def read_mem_u64(self, id, offset):
        return self.read_mem(id, offset, VT.U64)
    def read_mem_i8(self, id, offset):
        return self.read_mem(id, offset, VT.I8)
    def read_mem_i16(self, id, offset):
        return self.read_mem(id, offset, VT.I16)
    def read_mem_i32(self, id, offset):
        return self.read_mem(id, offset, VT.I32)
    def read_mem_i64(self, id, offset):
        return self.read_mem(id, offset, VT.I64)
    def read_mem_f32(self, id, offset):
        return self.read_mem(id, offset, VT.F32)
    def read_mem_f64(self, id, offset):
        return self.read_mem(id, offset, VT.F64)

    def write_reg_u8(self, id, reg, data):
        return self.write_reg(id, reg, data, VT.U8)
    def write_reg_u16(self, id, reg, data):
        return self.write_reg(id, reg, data, VT.U16)
    def write_reg_u32(self, id, reg, data):
        return self.write_reg(id, reg, data, VT.U32)
    def write_reg_u64(self, id, reg, data):
        return self.write_reg(id, reg, data, VT.U64)
    def write_reg_i8(self, id, reg, data):
        return self.write_reg(id, reg, data, VT.I8)
    def write_reg_i16(self, id, reg, data):
        return self.write_reg(id, reg, data, VT.I16)
    def write_reg_i32(self, id, reg, data):
        return self.write_reg(id, reg, data, VT.I32)
    def write_reg_i64(self, id, reg, data):
        return self.write_reg(id, reg, data, VT.I64)
    def write_reg_f32(self, id, reg, data):
        return self.write_reg(id, reg, data, VT.F32)
    def write_reg_f64(self, id, reg, data):
        return self.write_reg(id, reg, data, VT.F64)

    def read_reg_u8(self, id, reg):
        return self.read_reg(id, reg, VT.U8)
    def read_reg_u16(self, id, reg):
        return self.read_reg(id, reg, VT.U16)
    def read_reg_u32(self, id, reg):
        return self.read_reg(id, reg, VT.U32)
    def read_reg_u64(self, id, reg):
        return self.read_reg(id, reg, VT.U64)
    def read_reg_i8(self, id, reg):
        return self.read_reg(id, reg, VT.I8)
    def read_reg_i16(self, id, reg):
        return self.read_reg(id, reg, VT.I16)
    def read_reg_i32(self, id, reg):
        return self.read_reg(id, reg, VT.I32)
    def read_reg_i64(self, id, reg):
        return self.read_reg(id, reg, VT.I64)
    def read_reg_f32(self, id, reg):
        return self.read_reg(id, reg, VT.F32)
    def read_reg_f64(self, id, reg):
        return self.read_reg(id, reg, VT.F64)

    # Bulk transfer

    def mem_copy_to(self, id, offset, data):
        return self.request(self.P_MEM_COPY_TO, MemCopyToRequest,
                            id=id, offset=offset, data=bytes(data)).result

    def mem_copy_from(self, id, offset, size):
        ret = self.request(self.P_MEM_COPY_FROM, MemCopyFromRequest, DataReply,
                           id=id, offset=offset, size=size)
        if not ret.result:
            return False, None
        if len(ret.data) != size:
            raise LengthMismatch(size, len(ret.data), "mem_copy_from")
        return True, ret.data
