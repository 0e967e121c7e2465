"""
Views over the module's linear memory and string marshalling across the boundary.
"""

import logging
import struct
from typing import Callable, Optional, Tuple

from wasmtime import Memory, Store

from app.exceptions import AllocationError, DecodeError

logger = logging.getLogger(__name__)


def _u32(value: int) -> int:
    return value & 0xFFFFFFFF


class MemoryBridge:
    """
    Byte-level access to a wasmtime ``Memory``.

    The cached view is keyed on the memory's byte length; linear memory only
    moves when it grows, so the next access after growth rebuilds it.
    """

    def __init__(self, store: Store, memory: Memory, malloc: Optional[Callable[..., int]] = None):
        self.store = store
        self.memory = memory
        self.malloc = malloc
        self._view: Optional[memoryview] = None
        self._view_len = -1
        self.rebuilds = 0

    def size(self) -> int:
        return self.memory.data_len(self.store)

    def bytes(self) -> memoryview:
        """Live, writable view over the whole linear memory."""
        length = self.size()
        if self._view is None or length != self._view_len:
            self._view = memoryview(self.memory.get_buffer_ptr(self.store)).cast("B")
            self._view_len = length
            self.rebuilds += 1
            logger.debug(f"Linear memory view rebuilt ({length} bytes)")
        return self._view

    def read_bytes(self, ptr: int, length: int) -> bytes:
        ptr = _u32(ptr)
        size = len(self.bytes())
        if ptr + length > size:
            raise DecodeError(f"read of {length} bytes at {ptr} past end of memory ({size})")
        if not length:
            return b""
        return bytes(self.memory.read(self.store, ptr, ptr + length))

    def read_string(self, ptr: int, length: int) -> str:
        raw = self.read_bytes(ptr, _u32(length))
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"invalid UTF-8 at {_u32(ptr)}+{_u32(length)}: {e}") from e

    def write_bytes(self, ptr: int, data: bytes) -> None:
        ptr = _u32(ptr)
        size = len(self.bytes())
        if ptr + len(data) > size:
            raise AllocationError(f"write of {len(data)} bytes at {ptr} past end of memory ({size})")
        if data:
            self.memory.write(self.store, data, ptr)

    def write_string(self, value: str) -> Tuple[int, int]:
        """Copy ``value`` into module memory via its allocator. Returns ``(ptr, len)``."""
        if self.malloc is None:
            raise AllocationError("module allocator export is not available")
        data = value.encode("utf-8")
        try:
            ptr = _u32(self.malloc(len(data), 1))
        except Exception as e:
            raise AllocationError(f"allocation of {len(data)} bytes failed: {e}") from e
        if ptr == 0 and data:
            raise AllocationError(f"allocator returned null for {len(data)} bytes")
        # malloc may have grown memory; write_bytes re-checks the bound
        self.write_bytes(ptr, data)
        return ptr, len(data)

    def read_i32(self, ptr: int) -> int:
        return struct.unpack_from("<i", self.bytes(), _u32(ptr))[0]

    def write_i32(self, ptr: int, value: int) -> None:
        struct.pack_into("<i", self.bytes(), _u32(ptr), value)

    def write_f64(self, ptr: int, value: float) -> None:
        struct.pack_into("<d", self.bytes(), _u32(ptr), value)

    def write_ret_string(self, retptr: int, value: Optional[str]) -> None:
        """Store ``(ptr, len)`` of ``value`` into a two-word return slot; ``None`` stores zeros."""
        if value is None:
            ptr, length = 0, 0
        else:
            ptr, length = self.write_string(value)
        self.write_i32(retptr + 4, length)
        self.write_i32(retptr, ptr)
