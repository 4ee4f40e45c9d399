# SPDX-License-Identifier: MIT
import os, struct, zlib
import serial

from .utils import *

__all__ = []

DEFAULT_DEVICE = "socket://localhost:8051"
DEFAULT_TIMEOUT = 3

class TransportError(RuntimeError):
    pass

class TransportTimeout(TransportError):
    pass

class TransportCMDError(TransportError):
    pass

class TransportChecksumError(TransportError):
    pass

class TransportRemoteError(TransportError):
    def __init__(self, msg, status=None):
        super().__init__(msg)
        self.status = status

class ReplyError(TransportError):
    pass

def device_url(device):
    '''normalize a device string into a pyserial URL'''
    if "://" in device or ":" not in device:
        return device
    # host:port shorthand
    return "socket://" + device

# Sends framed commands and expects framed replies.
# Commands are <III: frame type, opcode, payload length,
#   then the payload and a 4 byte CRC-32 over header + payload.
# Replies are <IIiI: frame type, opcode, status, payload length,
#   then the payload and a 4 byte CRC-32.
# Frame types all start with 0xff55aa; the reader resynchronises on that
# prefix and passes any other bytes to unkhandler().
#
# CALL is one request, one reply. STREAM opens an upload session, CHUNK
# frames carry data with no reply, END closes the session and is answered
# by the single final reply. ABORT drops the session without a reply.

class StreamInterface:
    REQ_NOP = 0x00AA55FF
    REQ_CALL = 0x01AA55FF
    REQ_STREAM = 0x02AA55FF
    REQ_CHUNK = 0x03AA55FF
    REQ_END = 0x04AA55FF
    REQ_ABORT = 0x05AA55FF

    ST_OK = 0
    ST_BADCMD = -1
    ST_INVAL = -2
    ST_XFERERR = -3
    ST_CSUMERR = -4

    HDR_LEN = 12
    REPLY_HDR_LEN = 16
    MAX_PAYLOAD = 0xffffffff
    WRITE_BLOCK = 8192

    def __init__(self, device=None, timeout=None, debug=False):
        self.debug = debug
        self.devpath = None
        if device is None:
            device = os.environ.get("JELLYDEVICE", DEFAULT_DEVICE)
        if timeout is None:
            timeout = float(os.environ.get("JELLYTIMEOUT", DEFAULT_TIMEOUT))
        if isinstance(device, str):
            self.devpath = device_url(device)
            try:
                device = serial.serial_for_url(self.devpath, timeout=timeout)
            except (serial.SerialException, ValueError) as e:
                raise TransportError(f"Cannot open {self.devpath}: {e}") from e

        self.dev = device
        self.dev.timeout = timeout
        self.in_stream = None

    def close(self):
        self.dev.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def checksum(self, data):
        return zlib.crc32(data) & 0xFFFFFFFF

    def readfull(self, size):
        d = b''
        while len(d) < size:
            try:
                block = self.dev.read(size - len(d))
            except (serial.SerialException, OSError) as e:
                raise TransportError(f"Link read failed: {e}") from e
            if not block:
                raise TransportTimeout("Expected %d bytes, got %d bytes"%(size,len(d)))
            d += block
        return d

    def write(self, data):
        try:
            for i in range(0, len(data), self.WRITE_BLOCK):
                self.dev.write(data[i:i + self.WRITE_BLOCK])
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Link write failed: {e}") from e

    def cmd(self, req, opcode=0, payload=b""):
        if len(payload) > self.MAX_PAYLOAD:
            raise ValueError("Incorrect payload size %d"%len(payload))

        frame = struct.pack("<III", req, opcode, len(payload)) + payload
        frame += struct.pack("<I", self.checksum(frame))
        if self.debug:
            print("<< %08x op=%04x len=%d" % (req, opcode, len(payload)))
            chexdump(payload[:256])
        self.write(frame)

    def unkhandler(self, s):
        if self.debug:
            print("?? discarding", hexdump(s))

    def reply(self, req, opcode):
        reply = b''
        while True:
            if not reply or reply[-1] != 255:
                reply = b''
                reply += self.readfull(1)
                if reply != b"\xff":
                    self.unkhandler(reply)
                    continue
            else:
                reply = b'\xff'
            reply += self.readfull(1)
            if reply != b"\xff\x55":
                self.unkhandler(reply)
                continue
            reply += self.readfull(1)
            if reply != b"\xff\x55\xaa":
                self.unkhandler(reply)
                continue
            reply += self.readfull(self.REPLY_HDR_LEN - 3)
            reqin, opin, status, size = struct.unpack("<IIiI", reply)
            reply += self.readfull(size + 4)
            if self.debug:
                print(">> %08x op=%04x status=%d len=%d" % (reqin, opin, status, size))
                chexdump(reply[self.REPLY_HDR_LEN:-4][:256])

            checksum = struct.unpack("<I", reply[-4:])[0]
            ccsum = self.checksum(reply[:-4])
            if checksum != ccsum:
                raise TransportChecksumError("Reply checksum error: Expected 0x%08x, got 0x%08x"%(ccsum, checksum))

            if reqin != req:
                raise TransportCMDError("Reply type mismatch: Expected 0x%08x, got 0x%08x"%(req, reqin))
            if opin != opcode:
                raise TransportCMDError("Reply opcode mismatch: Expected 0x%04x, got 0x%04x"%(opcode, opin))
            if status != self.ST_OK:
                if status == self.ST_BADCMD:
                    raise TransportRemoteError("Reply error: Bad Command", status)
                elif status == self.ST_INVAL:
                    raise TransportRemoteError("Reply error: Invalid argument", status)
                elif status == self.ST_XFERERR:
                    raise TransportRemoteError("Reply error: Data transfer failed", status)
                elif status == self.ST_CSUMERR:
                    raise TransportRemoteError("Reply error: Data checksum failed", status)
                else:
                    raise TransportRemoteError("Reply error: Unknown error (%d)"%status, status)
            return reply[self.REPLY_HDR_LEN:-4]

    def nop(self):
        self.cmd(self.REQ_NOP)
        self.reply(self.REQ_NOP, 0)

    def call(self, opcode, payload=b""):
        if self.in_stream is not None:
            raise TransportError(f"Upload session 0x{self.in_stream:04x} still open")
        self.cmd(self.REQ_CALL, opcode, payload)
        return self.reply(self.REQ_CALL, opcode)

    def stream(self, opcode, payloads):
        '''client-streaming call: send every payload, return the final reply'''
        if self.in_stream is not None:
            raise TransportError(f"Upload session 0x{self.in_stream:04x} still open")
        self.cmd(self.REQ_STREAM, opcode)
        self.in_stream = opcode
        try:
            for payload in payloads:
                self.cmd(self.REQ_CHUNK, opcode, payload)
        except TransportError:
            # link is gone, the server drops the session when it notices
            self.in_stream = None
            raise
        except BaseException:
            self.in_stream = None
            self.cmd(self.REQ_ABORT, opcode)
            raise

        self.in_stream = None
        self.cmd(self.REQ_END, opcode)
        return self.reply(self.REQ_END, opcode)

__all__.extend(k for k, v in globals().items()
               if (callable(v) or isinstance(v, type)) and v.__module__ == __name__)
__all__.extend(["DEFAULT_DEVICE", "DEFAULT_TIMEOUT"])
