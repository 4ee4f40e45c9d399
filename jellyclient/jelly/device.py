# SPDX-License-Identifier: MIT
from dataclasses import dataclass, replace
from typing import Optional

from .codec import *

__all__ = ["InvalidRange", "MemoryRegion", "HandleRegistry", "DeviceHandle"]

class InvalidRange(ClientError):
    pass

@dataclass(frozen=True)
class MemoryRegion:
    """Client-side view of a region the server opened for us.

    The server owns the mapping; this only records what was asked for so
    obviously bad subclone windows can be refused locally. `size` is None
    for uio/udmabuf devices until it has been queried.
    """
    kind: str
    unit: int
    offset: int = 0
    size: Optional[int] = None
    name: Optional[str] = None
    parent: Optional[int] = None
    phys_addr: Optional[int] = None

    def check_window(self, offset, size):
        if self.size is None:
            raise ValueError("region size unknown")
        if offset < 0 or size < 0 or offset + size > self.size:
            raise InvalidRange(f"window [{offset:#x}, {offset + size:#x}) outside "
                               f"{self.kind} region of size {self.size:#x}")

class HandleRegistry:
    """Mirror of the server's handle table, keyed by handle id."""

    def __init__(self):
        self.regions = {}

    def add(self, id, region):
        self.regions[id] = region

    def get(self, id):
        return self.regions.get(id)

    def learn_size(self, id, size):
        region = self.regions[id]
        if region.size is None:
            region = self.regions[id] = replace(region, size=size)
        return region

    def discard(self, id):
        self.regions.pop(id, None)

    def children(self, id):
        return [i for i, r in self.regions.items() if r.parent == id]

    def __contains__(self, id):
        return id in self.regions

    def __iter__(self):
        return iter(list(self.regions))

    def __len__(self):
        return len(self.regions)

class DeviceHandle:
    """Convenience wrapper binding a client and an open handle id.

    Results are passed through unchanged, so domain failures still come back
    as (False, ...) rather than exceptions.
    """

    def __init__(self, client, id):
        self.client = client
        self.id = id

    @property
    def region(self):
        return self.client.handles.get(self.id)

    def read(self, offset, vtype=VT.U32):
        return self.client.read_mem(self.id, offset, vtype)

    def write(self, offset, value, vtype=VT.U32):
        return self.client.write_mem(self.id, offset, value, vtype)

    def read_reg(self, reg, vtype=VT.U32):
        return self.client.read_reg(self.id, reg, vtype)

    def write_reg(self, reg, value, vtype=VT.U32):
        return self.client.write_reg(self.id, reg, value, vtype)

    def copy_to(self, offset, data):
        return self.client.mem_copy_to(self.id, offset, data)

    def copy_from(self, offset, size):
        return self.client.mem_copy_from(self.id, offset, size)

    def subclone(self, offset, size, unit=None):
        if unit is None:
            region = self.region
            unit = region.unit if region else 1
        ok, id = self.client.subclone(self.id, offset, size, unit)
        return ok, (DeviceHandle(self.client, id) if ok else None)

    def addr(self):
        return self.client.get_addr(self.id)

    def size(self):
        return self.client.get_size(self.id)

    def phys_addr(self):
        return self.client.get_phys_addr(self.id)

    def close(self):
        return self.client.close(self.id)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self):
        region = self.region
        if region is None:
            return f"DeviceHandle({self.id})"
        return f"DeviceHandle({self.id}, {region.kind}, unit={region.unit})"
