"""
Boundary Buffers
================

ctypes structures shared with the native scaffolding, the big-endian
value serialization, and the allocators that own buffer memory.

Buffer Ownership
----------------
| Buffer                  | Allocated by | Freed by                      |
|-------------------------|--------------|-------------------------------|
| argument                | caller       | caller, after the call        |
| return value            | callee       | receiver, when lifting        |
| error payload           | callee       | receiver, when lifting        |

Every buffer has exactly one owner at any time. BufferScope tracks the
argument buffers of one call and frees them on exit, including when the
call raises.

Wire Layout
-----------
    ints/floats   big-endian at their width
    boolean       i8 (0 or 1)
    string/bytes  i32 length + bytes (strings UTF-8)
    timestamp     i64 seconds since the epoch + u32 nanoseconds
    duration      u64 seconds + u32 nanoseconds
    optional      i8 flag + value
    sequence      i32 count + elements
    map           i32 count + key/value pairs
    record        fields in declaration order
    enum          i32 1-based variant index + variant fields
    object        u64 handle
"""

import ctypes
import logging
import struct
import threading
from typing import Callable, Optional

from ffibridge.runtime.errors import BufferFormatError, BufferOwnershipError, InternalError

logger = logging.getLogger(__name__)


# =============================================================================
# Shared Structures
# =============================================================================

class ForeignBuffer(ctypes.Structure):
    """A byte buffer owned by one side of the boundary."""

    _fields_ = [
        ("capacity", ctypes.c_uint64),
        ("len", ctypes.c_uint64),
        ("data", ctypes.POINTER(ctypes.c_uint8)),
    ]

    @staticmethod
    def empty() -> "ForeignBuffer":
        return ForeignBuffer(0, 0, None)

    def to_bytes(self) -> bytes:
        if self.len == 0 or not self.data:
            return b""
        return ctypes.string_at(self.data, self.len)


class ForeignBytes(ctypes.Structure):
    """Borrowed bytes handed to the native allocator for copying."""

    _fields_ = [
        ("len", ctypes.c_int32),
        ("data", ctypes.POINTER(ctypes.c_uint8)),
    ]


class CallStatus(ctypes.Structure):
    """Out parameter of every synchronous ABI call."""

    _fields_ = [
        ("code", ctypes.c_int8),
        ("error_buf", ForeignBuffer),
    ]


CALL_SUCCESS = 0
CALL_ERROR = 1
CALL_UNEXPECTED_ERROR = 2
CALL_CANCELLED = 3


# =============================================================================
# Serialization
# =============================================================================

class BufferReader:
    """Sequential big-endian reader over serialized bytes."""

    def __init__(self, data: bytes):
        self._data = bytes(data)
        self._offset = 0

    def _unpack(self, fmt: str):
        size = struct.calcsize(fmt)
        if self._offset + size > len(self._data):
            raise BufferFormatError(
                f"buffer underflow: need {size} byte(s) at offset {self._offset}, "
                f"{len(self._data) - self._offset} left"
            )
        (value,) = struct.unpack_from(fmt, self._data, self._offset)
        self._offset += size
        return value

    def read_i8(self) -> int:
        return self._unpack(">b")

    def read_u8(self) -> int:
        return self._unpack(">B")

    def read_i16(self) -> int:
        return self._unpack(">h")

    def read_u16(self) -> int:
        return self._unpack(">H")

    def read_i32(self) -> int:
        return self._unpack(">i")

    def read_u32(self) -> int:
        return self._unpack(">I")

    def read_i64(self) -> int:
        return self._unpack(">q")

    def read_u64(self) -> int:
        return self._unpack(">Q")

    def read_f32(self) -> float:
        return self._unpack(">f")

    def read_f64(self) -> float:
        return self._unpack(">d")

    def read_bytes(self, size: int) -> bytes:
        if size < 0 or self._offset + size > len(self._data):
            raise BufferFormatError(f"buffer underflow: cannot read {size} byte(s) at offset {self._offset}")
        data = self._data[self._offset:self._offset + size]
        self._offset += size
        return data

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def finish(self) -> None:
        """Check that every byte was consumed."""
        if self.remaining:
            raise BufferFormatError(f"{self.remaining} unread byte(s) after value")


class BufferWriter:
    """Big-endian writer producing serialized bytes."""

    def __init__(self):
        self._data = bytearray()

    def _pack(self, fmt: str, value) -> None:
        self._data += struct.pack(fmt, value)

    def write_i8(self, value: int) -> None:
        self._pack(">b", value)

    def write_u8(self, value: int) -> None:
        self._pack(">B", value)

    def write_i16(self, value: int) -> None:
        self._pack(">h", value)

    def write_u16(self, value: int) -> None:
        self._pack(">H", value)

    def write_i32(self, value: int) -> None:
        self._pack(">i", value)

    def write_u32(self, value: int) -> None:
        self._pack(">I", value)

    def write_i64(self, value: int) -> None:
        self._pack(">q", value)

    def write_u64(self, value: int) -> None:
        self._pack(">Q", value)

    def write_f32(self, value: float) -> None:
        self._pack(">f", value)

    def write_f64(self, value: float) -> None:
        self._pack(">d", value)

    def write_bytes(self, data: bytes) -> None:
        self._data += data

    def getvalue(self) -> bytes:
        return bytes(self._data)


# =============================================================================
# Allocators
# =============================================================================

def _status_message(status: CallStatus) -> str:
    raw = status.error_buf.to_bytes()
    if len(raw) >= 4:
        return raw[4:].decode("utf-8", errors="replace")
    return "unknown native failure"


class LibraryAllocator:
    """
    Allocates and frees buffers through the native library.

    Args:
        lib: Loaded native library
        prefix: Symbol prefix, e.g. "ffibridge_arithmetic_"
    """

    def __init__(self, lib, prefix: str):
        self._from_bytes = getattr(lib, f"{prefix}buffer_from_bytes")
        self._from_bytes.argtypes = [ForeignBytes, ctypes.POINTER(CallStatus)]
        self._from_bytes.restype = ForeignBuffer
        self._free = getattr(lib, f"{prefix}buffer_free")
        self._free.argtypes = [ForeignBuffer, ctypes.POINTER(CallStatus)]
        self._free.restype = None

    def alloc(self, data: bytes) -> ForeignBuffer:
        storage = (ctypes.c_uint8 * len(data)).from_buffer_copy(data) if data else None
        pointer = ctypes.cast(storage, ctypes.POINTER(ctypes.c_uint8)) if storage is not None else None
        status = CallStatus()
        buf = self._from_bytes(ForeignBytes(len(data), pointer), ctypes.pointer(status))
        if status.code != CALL_SUCCESS:
            raise InternalError(f"buffer allocation failed: {_status_message(status)}")
        return buf

    def free(self, buf: ForeignBuffer) -> None:
        status = CallStatus()
        self._free(buf, ctypes.pointer(status))
        if status.code != CALL_SUCCESS:
            raise InternalError(f"buffer free failed: {_status_message(status)}")


class PythonAllocator:
    """
    Allocator backed by ctypes memory owned by this process.

    Tracks every live allocation, so a test harness can assert that each
    buffer is freed exactly once.

    Attributes:
        allocations: Number of buffers ever allocated
        frees: Number of buffers freed
    """

    def __init__(self):
        self._live: dict[int, ctypes.Array] = {}
        self._lock = threading.Lock()
        self.allocations = 0
        self.frees = 0

    def alloc(self, data: bytes) -> ForeignBuffer:
        size = len(data)
        storage = (ctypes.c_uint8 * max(size, 1)).from_buffer_copy(data or b"\0")
        address = ctypes.addressof(storage)
        with self._lock:
            self._live[address] = storage
            self.allocations += 1
        return ForeignBuffer(size, size, ctypes.cast(storage, ctypes.POINTER(ctypes.c_uint8)))

    def free(self, buf: ForeignBuffer) -> None:
        address = ctypes.cast(buf.data, ctypes.c_void_p).value
        with self._lock:
            if address is None or address not in self._live:
                raise BufferOwnershipError(
                    f"buffer at {address!r} is not live in this allocator (double free?)"
                )
            del self._live[address]
            self.frees += 1

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    def owns(self, buf: ForeignBuffer) -> bool:
        address = ctypes.cast(buf.data, ctypes.c_void_p).value
        with self._lock:
            return address in self._live


class BufferScope:
    """
    Owns the argument buffers of one call.

    Acts as an allocator for lowering; every buffer it hands out is freed
    when the scope exits. Handles cloned for the callee are released only
    if the scope exits with an error before commit(); once the native
    function has been entered it owns them.

    Example:
        with BufferScope(allocator) as scope:
            result = call_with_status(allocator, None, fn, STRING.lower(text, scope), scope=scope)
    """

    def __init__(self, allocator):
        self.allocator = allocator
        self._owned: list[ForeignBuffer] = []
        self._on_abort: list[Callable[[], None]] = []

    def alloc(self, data: bytes) -> ForeignBuffer:
        buf = self.allocator.alloc(data)
        self._owned.append(buf)
        return buf

    def free(self, buf: ForeignBuffer) -> None:
        self.allocator.free(buf)

    def on_abort(self, cleanup: Callable[[], None]) -> None:
        """Register cleanup for a value handed out during lowering."""
        self._on_abort.append(cleanup)

    def commit(self) -> None:
        """Lowering is complete; the callee now owns what was handed out."""
        self._on_abort.clear()

    def call(self, fn: Callable, *args):
        """Commit, then call fn with already lowered arguments."""
        self.commit()
        return fn(*args)

    def abort(self) -> None:
        pending, self._on_abort = self._on_abort, []
        for cleanup in reversed(pending):
            try:
                cleanup()
            except Exception as e:
                logger.warning(f"Cleanup after failed lowering raised {type(e).__name__}: {e}")

    def release(self) -> None:
        owned, self._owned = self._owned, []
        for buf in reversed(owned):
            self.allocator.free(buf)

    def __enter__(self) -> "BufferScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        if exc_type is not None:
            self.abort()
        self.release()
        return None
