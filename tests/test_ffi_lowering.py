"""
Tests for ABI Lowering
======================

Symbol naming, signatures, checksum functions, vtables and future
families produced by FfiLowering.
"""

import pytest

from ffibridge.errors import DuplicateDefinition
from ffibridge.ffi import (
    CONTRACT_VERSION,
    FfiType,
    lower_interface,
    lower_type,
    symbol_prefix,
)
from ffibridge.idl import load_idl
from ffibridge.ir.builder import build_interface
from ffibridge.ir.types import (
    ObjectType,
    OptionalType,
    PrimitiveKind,
    PrimitiveType,
    RecordType,
    SequenceType,
)

from conftest import ARITHMETIC_IDL, CALLBACK_IDL


def lowered(source: str):
    return lower_interface(build_interface([load_idl(source)]))


@pytest.fixture
def ffi():
    return lowered(ARITHMETIC_IDL)


# =============================================================================
# Type Lowering
# =============================================================================

class TestLowerType:
    def test_numbers_keep_width(self):
        assert lower_type(PrimitiveType(PrimitiveKind.U32)) == FfiType.UINT32
        assert lower_type(PrimitiveType(PrimitiveKind.I64)) == FfiType.INT64
        assert lower_type(PrimitiveType(PrimitiveKind.F32)) == FfiType.FLOAT32

    def test_boolean_is_int8(self):
        assert lower_type(PrimitiveType(PrimitiveKind.BOOLEAN)) == FfiType.INT8

    def test_handles(self):
        assert lower_type(ObjectType("Counter")) == FfiType.HANDLE
        assert lower_type(OptionalType(ObjectType("Counter"))) == FfiType.HANDLE

    def test_everything_else_is_a_buffer(self):
        assert lower_type(PrimitiveType(PrimitiveKind.STRING)) == FfiType.BUFFER
        assert lower_type(RecordType("Point")) == FfiType.BUFFER
        assert lower_type(OptionalType(PrimitiveType(PrimitiveKind.U8))) == FfiType.BUFFER
        assert lower_type(SequenceType(PrimitiveType(PrimitiveKind.I64))) == FfiType.BUFFER


# =============================================================================
# Symbols
# =============================================================================

class TestSymbols:
    """Every export uses the namespace prefix and lower-cased names."""

    def test_prefix(self, ffi):
        assert symbol_prefix("Arithmetic") == "ffibridge_arithmetic_"
        assert all(fn.name.startswith("ffibridge_arithmetic_") for fn in ffi.functions)

    def test_builtins_first(self, ffi):
        names = [fn.name for fn in ffi.functions[:4]]
        assert names == [
            "ffibridge_arithmetic_contract_version",
            "ffibridge_arithmetic_buffer_alloc",
            "ffibridge_arithmetic_buffer_from_bytes",
            "ffibridge_arithmetic_buffer_free",
        ]
        assert ffi.contract_version == CONTRACT_VERSION == 1

    def test_function(self, ffi):
        fn = ffi.function_for("", "divide")
        assert fn.name == "ffibridge_arithmetic_fn_func_divide"
        assert [a.type for a in fn.arguments] == [FfiType.INT32, FfiType.INT32]
        assert fn.return_type == FfiType.INT32
        assert fn.has_call_status

    def test_buffer_arguments(self, ffi):
        fn = ffi.function_for("", "greet")
        assert [a.type for a in fn.arguments] == [FfiType.BUFFER, FfiType.BUFFER]
        assert fn.return_type == FfiType.BUFFER

    def test_object_symbols(self, ffi):
        assert ffi.objects["Counter"].clone.name == "ffibridge_arithmetic_fn_clone_counter"
        assert ffi.objects["Counter"].free.name == "ffibridge_arithmetic_fn_free_counter"
        ctor = ffi.function_for("Counter", "zero")
        assert ctor.name == "ffibridge_arithmetic_fn_constructor_counter_zero"
        assert ctor.return_type == FfiType.HANDLE

    def test_method_receiver(self, ffi):
        increment = ffi.function_for("Counter", "increment")
        assert increment.name == "ffibridge_arithmetic_fn_method_counter_increment"
        assert increment.arguments[0].name == "self"
        assert ffi.function_for("Counter", "finish").arguments[0].name == "self_owned"

    def test_signature_text(self, ffi):
        assert ffi.function_for("", "add").signature() == (
            "ffibridge_arithmetic_fn_func_add(a: u32, b: u32, &status) -> u32"
        )

    def test_symbol_collision(self):
        with pytest.raises(DuplicateDefinition):
            lowered("namespace m { void Reset(); void reset(); };")


# =============================================================================
# Checksums
# =============================================================================

class TestChecksumFunctions:
    def test_one_per_callable(self, ffi):
        assert "ffibridge_arithmetic_checksum_func_add" in ffi.checksums
        assert "ffibridge_arithmetic_checksum_constructor_counter_new" in ffi.checksums
        assert "ffibridge_arithmetic_checksum_method_counter_finish" in ffi.checksums
        assert len(ffi.checksums) == len(ffi.callables)

    def test_values_fit_sixteen_bits(self, ffi):
        assert all(0 <= value <= 0xFFFF for value in ffi.checksums.values())

    def test_checksum_symbol_lookup(self, ffi):
        assert ffi.checksum_symbol("Counter", "increment") == (
            "ffibridge_arithmetic_checksum_method_counter_increment"
        )

    def test_signature_change_changes_value(self, ffi):
        changed = lowered(ARITHMETIC_IDL.replace("u32 add(u32 a, u32 b)", "u32 add(u32 a, u32 c)"))
        symbol = "ffibridge_arithmetic_checksum_func_add"
        assert changed.checksums[symbol] != ffi.checksums[symbol]
        other = "ffibridge_arithmetic_checksum_func_divide"
        assert changed.checksums[other] == ffi.checksums[other]


# =============================================================================
# Async and Callbacks
# =============================================================================

class TestAsync:
    """Async callables return a future handle without a call status."""

    def test_async_signature(self, ffi):
        fn = ffi.function_for("", "slow_add")
        assert fn.is_async
        assert fn.return_type == FfiType.HANDLE
        assert not fn.has_call_status

    def test_future_family(self, ffi):
        family = ffi.future_family(FfiType.UINT64)
        assert family.poll.name == "ffibridge_arithmetic_future_poll_u64"
        assert family.complete.return_type == FfiType.UINT64
        assert family.complete.has_call_status
        assert not family.cancel.has_call_status
        assert list(ffi.futures) == ["u64"]

    def test_void_family(self):
        ffi = lowered("namespace m { [Async] void wait(); [Async] void sleep(u32 ms); };")
        family = ffi.future_family(None)
        assert family.free.name == "ffibridge_m_future_free_void"
        assert list(ffi.futures) == ["void"]


class TestCallbacks:
    def test_vtable(self):
        ffi = lowered(CALLBACK_IDL)
        vtable = ffi.vtables["Listener"]
        assert vtable.init_function.name == "ffibridge_events_fn_init_callback_vtable_listener"
        assert [m.name for m in vtable.methods] == ["on_event", "count"]

    def test_method_slots(self):
        vtable = lowered(CALLBACK_IDL).vtables["Listener"]
        on_event, count = vtable.methods
        assert [a.type for a in on_event.arguments] == [FfiType.HANDLE, FfiType.BUFFER]
        assert on_event.return_type is None
        assert count.arguments[-1].out
        assert count.arguments[-1].type == FfiType.UINT32

    def test_callback_argument_is_a_handle(self):
        fn = lowered(CALLBACK_IDL).function_for("", "subscribe")
        assert fn.arguments[0].type == FfiType.HANDLE
