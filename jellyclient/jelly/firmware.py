# SPDX-License-Identifier: MIT
"""
jelly: chunked firmware upload

An upload is a bounded producer (the chunk iterator) feeding a single
client-streaming session that ends in exactly one acknowledgement.
"""
import functools, os

from construct import ConstructError

from .codec import ClientError
from .messages import UploadChunk, UploadReply
from .transport import ReplyError

__all__ = ["DEFAULT_CHUNK_SIZE", "iter_chunks", "iter_file_chunks", "FirmwareUpload"]

DEFAULT_CHUNK_SIZE = 2 * 1024 * 1024

def _check_chunk_size(chunk_size):
    if chunk_size <= 0:
        raise ClientError(f"Bad chunk size {chunk_size}")

# Both producers check their arguments (and that the file exists) eagerly,
# so bad input fails before an upload session is opened. The file itself is
# only opened once the first chunk is wanted.

def iter_chunks(data, chunk_size=DEFAULT_CHUNK_SIZE):
    _check_chunk_size(chunk_size)
    view = memoryview(data)
    return (bytes(view[i:i + chunk_size]) for i in range(0, len(view), chunk_size))

def iter_file_chunks(path, chunk_size=DEFAULT_CHUNK_SIZE):
    _check_chunk_size(chunk_size)
    os.stat(path)
    def chunks():
        with open(path, "rb") as f:
            yield from iter(functools.partial(f.read, chunk_size), b"")
    return chunks()

class FirmwareUpload:
    def __init__(self, iface, opcode, name, chunks, debug=False):
        self.iface = iface
        self.opcode = opcode
        self.name = name
        self.chunks = chunks
        self.debug = debug
        self.sent = 0
        self.count = 0
        self.error = None

    def payloads(self):
        for chunk in self.chunks:
            self.sent += len(chunk)
            self.count += 1
            if self.debug:
                print(f"upload {self.name}: chunk {self.count} ({len(chunk)} bytes, {self.sent} total)")
            yield UploadChunk.build(dict(name=self.name, data=chunk))

    def run(self):
        payloads = self.payloads()
        try:
            data = self.iface.stream(self.opcode, payloads)
        finally:
            payloads.close()
            close = getattr(self.chunks, "close", None)
            if close is not None:
                close()
        try:
            reply = UploadReply.parse(data)
        except ConstructError as e:
            raise ReplyError(f"Malformed upload reply: {e}") from e
        if not reply.result:
            self.error = reply.error or "unknown error"
            if self.debug:
                print(f"upload {self.name} rejected: {self.error}")
        return reply.result
