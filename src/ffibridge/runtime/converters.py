"""
Value Converters
================

Lift and lower Python values across the boundary.

Every converter offers four operations:

| Operation          | Direction                      | Buffer ownership          |
|--------------------|--------------------------------|---------------------------|
| lower(v, alloc)    | Python -> ABI value            | alloc (usually a scope)   |
| lift(v, alloc)     | ABI value -> Python            | frees the buffer          |
| lift_argument(v)   | ABI argument -> Python         | borrowed, not freed       |
| read / write       | inside a serialized buffer     | n/a                       |

Primitive numbers cross as themselves, handle types as u64 handles, and
everything else as a buffer holding the serialized value.
"""

import datetime
from typing import Any

from ffibridge.runtime.buffers import BufferReader, BufferWriter, ForeignBuffer
from ffibridge.runtime.handles import HandleTable


class Converter:
    """Base of all converters."""

    is_handle = False

    def lift(self, value, allocator=None):
        raise NotImplementedError

    def lower(self, value, allocator=None):
        raise NotImplementedError

    def lift_argument(self, value):
        return self.lift(value)

    def read(self, reader: BufferReader):
        raise NotImplementedError

    def write(self, value, writer: BufferWriter) -> None:
        raise NotImplementedError


# =============================================================================
# Primitives Passed by Value
# =============================================================================

class IntegerConverter(Converter):
    """Fixed-width integer; out-of-range values are rejected, never wrapped."""

    def __init__(self, bits: int, signed: bool):
        self.bits = bits
        self.signed = signed
        if signed:
            self.min, self.max = -(1 << (bits - 1)), (1 << (bits - 1)) - 1
        else:
            self.min, self.max = 0, (1 << bits) - 1
        suffix = f"{'i' if signed else 'u'}{bits}"
        self._read = getattr(BufferReader, f"read_{suffix}")
        self._write = getattr(BufferWriter, f"write_{suffix}")
        self.name = suffix

    def check(self, value) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"{self.name} expects an int, got {type(value).__name__}")
        if not self.min <= value <= self.max:
            raise ValueError(f"{value} is out of range for {self.name}")
        return value

    def lift(self, value, allocator=None) -> int:
        return value

    def lower(self, value, allocator=None) -> int:
        return self.check(value)

    def read(self, reader):
        return self._read(reader)

    def write(self, value, writer) -> None:
        self._write(writer, self.check(value))


class FloatConverter(Converter):
    def __init__(self, bits: int):
        self.bits = bits
        self._read = BufferReader.read_f32 if bits == 32 else BufferReader.read_f64
        self._write = BufferWriter.write_f32 if bits == 32 else BufferWriter.write_f64

    def lift(self, value, allocator=None) -> float:
        return value

    def lower(self, value, allocator=None) -> float:
        return float(value)

    def read(self, reader):
        return self._read(reader)

    def write(self, value, writer) -> None:
        self._write(writer, float(value))


class BooleanConverter(Converter):
    def lift(self, value, allocator=None) -> bool:
        return value != 0

    def lower(self, value, allocator=None) -> int:
        return 1 if value else 0

    def read(self, reader) -> bool:
        return reader.read_i8() != 0

    def write(self, value, writer) -> None:
        writer.write_i8(1 if value else 0)


# =============================================================================
# Buffer-Serialized Types
# =============================================================================

class BufferConverter(Converter):
    """
    Base for types that cross as a serialized buffer.

    Subclasses implement read() and write(); generated record, enum and
    error converters derive from this class.
    """

    def lift(self, buf: ForeignBuffer, allocator=None):
        try:
            data = buf.to_bytes()
        finally:
            allocator.free(buf)
        return self.lift_bytes(data)

    def lift_argument(self, buf: ForeignBuffer):
        return self.lift_bytes(buf.to_bytes())

    def lower(self, value, allocator=None) -> ForeignBuffer:
        return allocator.alloc(self.lower_bytes(value))

    def lift_bytes(self, data: bytes):
        reader = BufferReader(data)
        value = self.read(reader)
        reader.finish()
        return value

    def lower_bytes(self, value) -> bytes:
        writer = BufferWriter()
        self.write(value, writer)
        return writer.getvalue()


class StringConverter(BufferConverter):
    def read(self, reader) -> str:
        size = reader.read_i32()
        return reader.read_bytes(size).decode("utf-8")

    def write(self, value, writer) -> None:
        if not isinstance(value, str):
            raise TypeError(f"string expects a str, got {type(value).__name__}")
        data = value.encode("utf-8")
        writer.write_i32(len(data))
        writer.write_bytes(data)


class BytesConverter(BufferConverter):
    def read(self, reader) -> bytes:
        size = reader.read_i32()
        return reader.read_bytes(size)

    def write(self, value, writer) -> None:
        data = bytes(value)
        writer.write_i32(len(data))
        writer.write_bytes(data)


_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


class TimestampConverter(BufferConverter):
    """UTC datetimes; naive datetimes are taken to be UTC."""

    def read(self, reader) -> datetime.datetime:
        seconds = reader.read_i64()
        nanos = reader.read_u32()
        return _EPOCH + datetime.timedelta(seconds=seconds, microseconds=nanos // 1000)

    def write(self, value, writer) -> None:
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        delta = value - _EPOCH
        total_micros = (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds
        seconds, micros = divmod(total_micros, 1_000_000)
        writer.write_i64(seconds)
        writer.write_u32(micros * 1000)


class DurationConverter(BufferConverter):
    def read(self, reader) -> datetime.timedelta:
        seconds = reader.read_u64()
        nanos = reader.read_u32()
        return datetime.timedelta(seconds=seconds, microseconds=nanos // 1000)

    def write(self, value, writer) -> None:
        if value < datetime.timedelta(0):
            raise ValueError("durations cannot be negative")
        seconds = value.days * 86400 + value.seconds
        writer.write_u64(seconds)
        writer.write_u32(value.microseconds * 1000)


# =============================================================================
# Compound Types
# =============================================================================

class OptionalConverter(BufferConverter):
    """
    Optional value.

    An optional handle type crosses as a bare handle with 0 for None;
    any other optional crosses as a flag-prefixed buffer.
    """

    def __init__(self, inner: Converter):
        self.inner = inner

    @property
    def is_handle(self) -> bool:
        return self.inner.is_handle

    def lift(self, value, allocator=None):
        if self.inner.is_handle:
            return None if value == 0 else self.inner.lift(value, allocator)
        return super().lift(value, allocator)

    def lift_argument(self, value):
        if self.inner.is_handle:
            return None if value == 0 else self.inner.lift_argument(value)
        return super().lift_argument(value)

    def lower(self, value, allocator=None):
        if self.inner.is_handle:
            return 0 if value is None else self.inner.lower(value, allocator)
        return super().lower(value, allocator)

    def read(self, reader):
        if reader.read_i8() == 0:
            return None
        return self.inner.read(reader)

    def write(self, value, writer) -> None:
        if value is None:
            writer.write_i8(0)
        else:
            writer.write_i8(1)
            self.inner.write(value, writer)


class SequenceConverter(BufferConverter):
    def __init__(self, inner: Converter):
        self.inner = inner

    def read(self, reader) -> list:
        count = reader.read_i32()
        return [self.inner.read(reader) for _ in range(count)]

    def write(self, value, writer) -> None:
        items = list(value)
        writer.write_i32(len(items))
        for item in items:
            self.inner.write(item, writer)


class MapConverter(BufferConverter):
    def __init__(self, key: Converter, value: Converter):
        self.key = key
        self.value = value

    def read(self, reader) -> dict:
        count = reader.read_i32()
        result = {}
        for _ in range(count):
            key = self.key.read(reader)
            result[key] = self.value.read(reader)
        return result

    def write(self, value, writer) -> None:
        writer.write_i32(len(value))
        for key, item in value.items():
            self.key.write(key, writer)
            self.value.write(item, writer)


# =============================================================================
# Handle Types
# =============================================================================

class ObjectConverter(Converter):
    """
    Native object wrapper classes.

    The class must provide ``_make_instance(handle)`` (take ownership of
    a handle), ``_clone_handle()`` (a new strong reference for the callee
    to own) and ``_release_handle(handle)`` (drop such a reference).
    Lowering into a BufferScope releases the clone again if the call is
    abandoned before it reaches native code.
    """

    is_handle = True

    def __init__(self, cls: type):
        self.cls = cls

    def lift(self, value, allocator=None):
        return self.cls._make_instance(value)

    def lower(self, value, allocator=None) -> int:
        if not isinstance(value, self.cls):
            raise TypeError(f"expected {self.cls.__name__}, got {type(value).__name__}")
        handle = value._clone_handle()
        on_abort = getattr(allocator, "on_abort", None)
        if on_abort is not None:
            on_abort(lambda: self.cls._release_handle(handle))
        return handle

    def read(self, reader):
        return self.lift(reader.read_u64())

    def write(self, value, writer) -> None:
        writer.write_u64(self.lower(value))


class CallbackInterfaceConverter(Converter):
    """
    Python implementations of a callback interface.

    Lowering registers the implementation in the handle table; native
    code owns the resulting handle and releases it through the vtable's
    free entry.
    """

    is_handle = True

    def __init__(self, protocol: type):
        self.protocol = protocol
        self.handle_table = HandleTable()

    def lift(self, value, allocator=None) -> Any:
        obj = self.handle_table.get(value)
        self.handle_table.release(value)
        return obj

    def lower(self, value, allocator=None) -> int:
        if not isinstance(value, self.protocol):
            raise TypeError(f"expected an implementation of {self.protocol.__name__}")
        return self.handle_table.insert(value)

    def read(self, reader):
        return self.lift(reader.read_u64())

    def write(self, value, writer) -> None:
        writer.write_u64(self.lower(value))


# =============================================================================
# Shared Instances
# =============================================================================

INT8 = IntegerConverter(8, True)
UINT8 = IntegerConverter(8, False)
INT16 = IntegerConverter(16, True)
UINT16 = IntegerConverter(16, False)
INT32 = IntegerConverter(32, True)
UINT32 = IntegerConverter(32, False)
INT64 = IntegerConverter(64, True)
UINT64 = IntegerConverter(64, False)
FLOAT32 = FloatConverter(32)
FLOAT64 = FloatConverter(64)
BOOLEAN = BooleanConverter()
STRING = StringConverter()
BYTES = BytesConverter()
TIMESTAMP = TimestampConverter()
DURATION = DurationConverter()


class ErrorConverter(BufferConverter):
    """
    Declared error whose values are handled by another converter.

    Used when an object type is declared as an error: the error payload
    is a buffer holding the object's handle.
    """

    def __init__(self, inner: Converter, error_type: type):
        self.inner = inner
        self.error_type = error_type

    def read(self, reader):
        return self.inner.read(reader)

    def write(self, value, writer) -> None:
        self.inner.write(value, writer)
