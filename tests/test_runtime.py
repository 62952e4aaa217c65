"""
Tests for the Bindings Runtime
==============================

Buffers, allocators, converters, handle tables, call status handling and
library verification used by generated Python bindings.
"""

import ctypes
import datetime
from types import SimpleNamespace

import pytest

from ffibridge.runtime import (
    BOOLEAN,
    BYTES,
    CALL_CANCELLED,
    CALL_ERROR,
    CALL_SUCCESS,
    CALL_UNEXPECTED_ERROR,
    DURATION,
    FLOAT32,
    INT8,
    INT32,
    STRING,
    TIMESTAMP,
    UINT8,
    UINT64,
    BufferConverter,
    BufferFormatError,
    BufferOwnershipError,
    BufferReader,
    BufferScope,
    BufferWriter,
    CallbackInterfaceConverter,
    CallCancelled,
    CallStatus,
    ContractMismatchError,
    ForeignBuffer,
    HandleError,
    HandleTable,
    InternalError,
    LibraryLoadError,
    MapConverter,
    ObjectConverter,
    OptionalConverter,
    PythonAllocator,
    SequenceConverter,
    call_with_status,
    check_status,
    invoke_callback,
    library_filename,
    load_library,
    register_library,
    unregister_library,
    verify_checksums,
    verify_contract_version,
)


@pytest.fixture
def allocator():
    return PythonAllocator()


class _MessageError(Exception):
    pass


class _MessageErrorConverter(BufferConverter):
    """Declared error carrying only a message."""

    error_type = _MessageError

    def read(self, reader):
        return _MessageError(STRING.read(reader))

    def write(self, value, writer):
        STRING.write(str(value), writer)


# =============================================================================
# Buffers and Allocators
# =============================================================================

class TestBufferSerialization:
    def test_big_endian(self):
        writer = BufferWriter()
        writer.write_i32(1)
        writer.write_u16(0xABCD)
        assert writer.getvalue() == b"\x00\x00\x00\x01\xab\xcd"

    def test_reader_underflow(self):
        reader = BufferReader(b"\x00\x01")
        with pytest.raises(BufferFormatError, match="buffer underflow"):
            reader.read_i32()

    def test_finish_rejects_trailing_bytes(self):
        reader = BufferReader(b"\x01\x02")
        reader.read_u8()
        with pytest.raises(BufferFormatError, match="1 unread byte"):
            reader.finish()

    def test_buffer_bytes(self, allocator):
        buf = allocator.alloc(b"abc")
        assert buf.len == 3
        assert buf.to_bytes() == b"abc"
        assert ForeignBuffer.empty().to_bytes() == b""


class TestPythonAllocator:
    """Tests for allocation tracking."""

    def test_counts(self, allocator):
        first = allocator.alloc(b"x")
        allocator.alloc(b"")
        assert allocator.live_count == 2
        allocator.free(first)
        assert allocator.live_count == 1
        assert (allocator.allocations, allocator.frees) == (2, 1)

    def test_double_free(self, allocator):
        buf = allocator.alloc(b"x")
        allocator.free(buf)
        with pytest.raises(BufferOwnershipError, match="double free"):
            allocator.free(buf)

    def test_foreign_buffer(self, allocator):
        other = PythonAllocator().alloc(b"x")
        assert not allocator.owns(other)
        with pytest.raises(BufferOwnershipError):
            allocator.free(other)

    def test_scope_releases_on_exit(self, allocator):
        with BufferScope(allocator) as scope:
            STRING.lower("one", scope)
            STRING.lower("two", scope)
            assert allocator.live_count == 2
        assert allocator.live_count == 0

    def test_scope_releases_on_error(self, allocator):
        with pytest.raises(RuntimeError):
            with BufferScope(allocator) as scope:
                STRING.lower("one", scope)
                raise RuntimeError("call failed")
        assert allocator.live_count == 0

    def test_abort_cleanup_runs_on_error_before_commit(self, allocator):
        released = []
        with pytest.raises(ValueError):
            with BufferScope(allocator) as scope:
                scope.on_abort(lambda: released.append(1))
                scope.on_abort(lambda: released.append(2))
                UINT8.lower(256, scope)
        assert released == [2, 1]

    def test_commit_hands_ownership_to_callee(self, allocator):
        released = []

        def native(*args):
            raise RuntimeError("crashed after entry")

        with pytest.raises(RuntimeError):
            with BufferScope(allocator) as scope:
                scope.on_abort(lambda: released.append(1))
                scope.call(native, 7)
        assert released == []

    def test_abort_cleanup_skipped_on_success(self, allocator):
        released = []
        with BufferScope(allocator) as scope:
            scope.on_abort(lambda: released.append(1))
        assert released == []


# =============================================================================
# Converters
# =============================================================================

class TestPrimitiveConverters:
    def test_integer_range(self):
        assert INT8.lower(-128) == -128
        with pytest.raises(ValueError, match="out of range for u8"):
            UINT8.lower(256)
        with pytest.raises(ValueError):
            UINT64.lower(-1)

    def test_integer_type(self):
        with pytest.raises(TypeError):
            INT32.lower(True)
        with pytest.raises(TypeError):
            INT32.lower(1.5)

    def test_boolean(self):
        assert BOOLEAN.lower(True) == 1
        assert BOOLEAN.lift(0) is False
        assert BOOLEAN.read(BufferReader(b"\x01")) is True

    def test_float32_width(self):
        writer = BufferWriter()
        FLOAT32.write(0.5, writer)
        assert len(writer.getvalue()) == 4
        assert FLOAT32.read(BufferReader(writer.getvalue())) == 0.5


class TestBufferConverters:
    """Tests for values serialized into buffers."""

    def test_string_wire_format(self):
        assert STRING.lower_bytes("hé") == b"\x00\x00\x00\x03h\xc3\xa9"

    def test_string_rejects_other_types(self):
        with pytest.raises(TypeError):
            STRING.lower_bytes(b"bytes")

    def test_lift_frees_buffer(self, allocator):
        buf = allocator.alloc(STRING.lower_bytes("hello"))
        assert STRING.lift(buf, allocator) == "hello"
        assert allocator.live_count == 0

    def test_lift_argument_borrows(self, allocator):
        buf = allocator.alloc(BYTES.lower_bytes(b"\x00\x01"))
        assert BYTES.lift_argument(buf) == b"\x00\x01"
        assert allocator.owns(buf)

    def test_trailing_bytes_rejected(self):
        with pytest.raises(BufferFormatError):
            STRING.lift_bytes(STRING.lower_bytes("a") + b"\x00")

    def test_timestamp_naive_is_utc(self):
        naive = datetime.datetime(2024, 5, 1, 12, 30, 0, 250)
        lifted = TIMESTAMP.lift_bytes(TIMESTAMP.lower_bytes(naive))
        assert lifted == naive.replace(tzinfo=datetime.timezone.utc)

    def test_timestamp_before_epoch(self):
        early = datetime.datetime(1960, 1, 1, tzinfo=datetime.timezone.utc)
        assert TIMESTAMP.lift_bytes(TIMESTAMP.lower_bytes(early)) == early

    def test_negative_duration(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            DURATION.lower_bytes(datetime.timedelta(seconds=-1))

    def test_compound(self):
        converter = MapConverter(STRING, SequenceConverter(OptionalConverter(INT32)))
        value = {"a": [1, None, -3], "b": []}
        assert converter.lift_bytes(converter.lower_bytes(value)) == value

    def test_optional_flag(self):
        assert OptionalConverter(INT32).lower_bytes(None) == b"\x00"


class TestCallbackConverter:
    class Greeter:
        pass

    def test_lower_registers(self):
        converter = CallbackInterfaceConverter(self.Greeter)
        impl = self.Greeter()
        handle = converter.lower(impl)
        assert handle in converter.handle_table
        assert converter.lift(handle) is impl
        assert handle not in converter.handle_table

    def test_wrong_type(self):
        with pytest.raises(TypeError):
            CallbackInterfaceConverter(self.Greeter).lower(object())

    def test_optional_handle_none_is_zero(self):
        converter = OptionalConverter(CallbackInterfaceConverter(self.Greeter))
        assert converter.lower(None) == 0
        assert converter.lift(0) is None


# =============================================================================
# Handle Table
# =============================================================================

class TestHandleTable:
    def test_handles_start_at_one(self):
        table = HandleTable()
        assert table.insert("a") == 1
        assert table.insert("b") == 2

    def test_clone_and_release(self):
        destroyed = []
        table = HandleTable(on_destroy=destroyed.append)
        handle = table.insert("obj")
        assert table.clone(handle) == handle
        assert table.count(handle) == 2
        assert table.release(handle) is False
        assert destroyed == []
        assert table.release(handle) is True
        assert destroyed == ["obj"]
        assert len(table) == 0

    def test_handles_never_reused(self):
        table = HandleTable()
        first = table.insert("a")
        table.release(first)
        assert table.insert("b") != first

    def test_unknown_handle(self):
        table = HandleTable()
        with pytest.raises(HandleError, match="unknown handle 7"):
            table.get(7)
        with pytest.raises(HandleError):
            table.release(7)
        with pytest.raises(HandleError):
            table.clone(7)

    def test_pop_skips_destroy(self):
        destroyed = []
        table = HandleTable(on_destroy=destroyed.append)
        handle = table.insert("obj")
        assert table.pop(handle) == "obj"
        assert table.pop(handle, "gone") == "gone"
        assert destroyed == []


# =============================================================================
# Call Status
# =============================================================================

def _status(code: int, payload: bytes = b"", allocator=None) -> CallStatus:
    status = CallStatus()
    status.code = code
    if payload:
        status.error_buf = allocator.alloc(payload)
    return status


class TestCheckStatus:
    """Tests for turning call statuses into exceptions."""

    def test_success(self, allocator):
        check_status(_status(CALL_SUCCESS), allocator)

    def test_declared_error(self, allocator):
        status = _status(CALL_ERROR, STRING.lower_bytes("bad input"), allocator)
        with pytest.raises(_MessageError, match="bad input"):
            check_status(status, allocator, _MessageErrorConverter())
        assert allocator.live_count == 0

    def test_declared_error_without_converter(self, allocator):
        status = _status(CALL_ERROR, b"\x00", allocator)
        with pytest.raises(InternalError, match="declares none"):
            check_status(status, allocator)
        assert allocator.live_count == 0

    def test_unexpected_error_message(self, allocator):
        status = _status(CALL_UNEXPECTED_ERROR, STRING.lower_bytes("panicked: boom"), allocator)
        with pytest.raises(InternalError, match="panicked: boom"):
            check_status(status, allocator)
        assert allocator.live_count == 0

    def test_unexpected_error_without_message(self, allocator):
        with pytest.raises(InternalError, match="without a message"):
            check_status(_status(CALL_UNEXPECTED_ERROR), allocator)

    def test_cancelled(self, allocator):
        with pytest.raises(CallCancelled):
            check_status(_status(CALL_CANCELLED), allocator)

    def test_invalid_code(self, allocator):
        with pytest.raises(InternalError, match="invalid call status code 9"):
            check_status(_status(9), allocator)

    def test_call_with_status_appends_pointer(self, allocator):
        seen = []

        def native(a, b, status_ptr):
            seen.append(status_ptr.contents.code)
            return a + b

        assert call_with_status(allocator, None, native, 2, 3) == 5
        assert seen == [CALL_SUCCESS]

    def test_object_clone_released_only_before_entry(self, allocator):
        class Handle:
            released = []

            def _clone_handle(self):
                return 11

            @classmethod
            def _release_handle(cls, handle):
                cls.released.append(handle)

        converter = ObjectConverter(Handle)
        with pytest.raises(ValueError):
            with BufferScope(allocator) as scope:
                call_with_status(allocator, None, lambda *a: 0, converter.lower(Handle(), scope), UINT8.lower(-1, scope))
        assert Handle.released == [11]

        with BufferScope(allocator) as scope:
            call_with_status(allocator, None, lambda *a: 0, converter.lower(Handle(), scope), scope=scope)
        assert Handle.released == [11]


class TestInvokeCallback:
    """Outcomes of Python callbacks reported back to native callers."""

    def test_success_writes_return(self, allocator):
        status = CallStatus()
        written = []
        invoke_callback(ctypes.pointer(status), allocator, lambda: 42, written.append)
        assert status.code == CALL_SUCCESS
        assert written == [42]

    def test_declared_error(self, allocator):
        status = CallStatus()

        def fail():
            raise _MessageError("busy")

        invoke_callback(ctypes.pointer(status), allocator, fail, None, _MessageErrorConverter())
        assert status.code == CALL_ERROR
        assert STRING.lift(status.error_buf, allocator) == "busy"

    def test_unexpected_exception(self, allocator):
        status = CallStatus()

        def fail():
            raise KeyError("missing")

        invoke_callback(ctypes.pointer(status), allocator, fail, None, _MessageErrorConverter())
        assert status.code == CALL_UNEXPECTED_ERROR
        assert STRING.lift(status.error_buf, allocator) == "KeyError: 'missing'"

    def test_result_that_cannot_be_lowered(self, allocator):
        """A u8 callback returning 300 fails while writing the out parameter."""
        status = CallStatus()
        out = ctypes.c_uint8()

        def write_return(value):
            out.value = UINT8.lower(value)

        invoke_callback(ctypes.pointer(status), allocator, lambda: 300, write_return)
        assert status.code == CALL_UNEXPECTED_ERROR
        assert STRING.lift(status.error_buf, allocator) == "ValueError: 300 is out of range for u8"
        assert out.value == 0


# =============================================================================
# Library Loading
# =============================================================================

def _fake_lib(**symbols):
    def constant(value):
        def fn():
            return value
        return fn

    return SimpleNamespace(**{name: constant(value) for name, value in symbols.items()})


class TestLoader:
    def test_registered_library_wins(self):
        lib = object()
        register_library("loader_test", lib)
        try:
            assert load_library("loader_test") is lib
        finally:
            unregister_library("loader_test")

    def test_missing_library(self, tmp_path):
        with pytest.raises(LibraryLoadError, match="cannot find native library"):
            load_library("ffibridge_no_such_namespace", search_dir=str(tmp_path))

    def test_library_filename(self, monkeypatch):
        monkeypatch.setattr("sys.platform", "linux")
        assert library_filename("arith") == "libarith.so"
        monkeypatch.setattr("sys.platform", "win32")
        assert library_filename("arith") == "arith.dll"

    def test_contract_version(self):
        verify_contract_version(_fake_lib(p_contract_version=1), "p_", 1)
        with pytest.raises(ContractMismatchError, match="library speaks contract version 2, bindings expect 1"):
            verify_contract_version(_fake_lib(p_contract_version=2), "p_", 1)

    def test_checksums(self):
        lib = _fake_lib(p_checksum_func_a=10, p_checksum_func_b=20)
        verify_checksums(lib, {"p_checksum_func_a": 10, "p_checksum_func_b": 20})
        with pytest.raises(ContractMismatchError, match="checksum mismatch for p_checksum_func_b$"):
            verify_checksums(lib, {"p_checksum_func_a": 10, "p_checksum_func_b": 21})
