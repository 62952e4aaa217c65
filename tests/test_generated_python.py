"""
Tests for Generated Python Bindings
===================================

End-to-end checks: generate a Python module, import it against a
FakeNativeLibrary registered for its namespace, and call through the
ABI exactly as a compiled library would be called.
"""

import ctypes

import pytest

from ffibridge.config import ConfigOverlay
from ffibridge.pipeline import BindingsGenerator, GenerationOptions
from ffibridge.runtime import (
    CALL_ERROR,
    CALL_SUCCESS,
    CALL_UNEXPECTED_ERROR,
    INT64,
    STRING,
    CallStatus,
    ContractMismatchError,
    HandleError,
    InternalError,
    SequenceConverter,
)

from conftest import NativeError


I64_SEQUENCE = SequenceConverter(INT64)


def generate(tmp_path, idl_path):
    """Generate Python bindings; returns (module path, ComponentFfi)."""
    options = GenerationOptions(languages=("python",), out_dir=tmp_path / "out", format_output=False)
    report = BindingsGenerator(options, ConfigOverlay()).generate(idl_path)
    outcome = report.outcomes[0]
    assert outcome.ok, outcome.errors
    return outcome.files[0], report.interface.ffi


@pytest.fixture
def arithmetic(tmp_path, arithmetic_idl, fake_library, import_generated):
    """Generated arithmetic module plus the fake library behind it."""
    path, ffi = generate(tmp_path, arithmetic_idl)
    lib = fake_library(ffi)
    module = import_generated(path)
    return module, lib


# =============================================================================
# Loading
# =============================================================================

class TestLoading:
    def test_import_verifies_contract(self, arithmetic):
        module, lib = arithmetic
        assert module._CONTRACT_VERSION == lib.ffi.contract_version
        assert lib.calls == []

    def test_contract_version_mismatch(self, tmp_path, arithmetic_idl, fake_library, import_generated):
        path, ffi = generate(tmp_path, arithmetic_idl)
        fake_library(ffi, contract_version=ffi.contract_version + 1)
        with pytest.raises(ContractMismatchError, match="contract version"):
            import_generated(path)

    def test_checksum_mismatch(self, tmp_path, arithmetic_idl, fake_library, import_generated):
        path, ffi = generate(tmp_path, arithmetic_idl)
        lib = fake_library(ffi)
        symbol = ffi.checksum_symbol("", "divide")
        lib._define(symbol, lambda: (ffi.checksums[symbol] + 1) & 0xFFFF)
        with pytest.raises(ContractMismatchError, match=symbol):
            import_generated(path)


# =============================================================================
# Functions
# =============================================================================

class TestFunctions:
    """Top-level functions lower their arguments and lift their results."""

    def test_add(self, arithmetic):
        module, lib = arithmetic
        lib.export("", "add", lambda a, b: a + b)
        assert module.add(2, 3) == 5
        assert lib.calls == ["add"]

    def test_argument_checked_before_call(self, arithmetic):
        module, lib = arithmetic
        lib.export("", "add", lambda a, b: a + b)
        with pytest.raises(ValueError):
            module.add(-1, 3)
        assert lib.calls == []

    def test_string_default(self, arithmetic):
        module, lib = arithmetic

        def greet(name, greeting):
            text = f"{STRING.lift_argument(greeting)}, {STRING.lift_argument(name)}!"
            return lib.buffer(STRING.lower_bytes(text))

        lib.export("", "greet", greet)
        assert module.greet("Ada") == "Hello, Ada!"
        assert module.greet("Ada", greeting="Hi") == "Hi, Ada!"
        assert lib.allocator.live_count == 0

    def test_sequence_round_trip(self, arithmetic):
        module, lib = arithmetic

        def doubled(values):
            result = [v * 2 for v in I64_SEQUENCE.lift_argument(values)]
            return lib.buffer(I64_SEQUENCE.lower_bytes(result))

        lib.export("", "doubled", doubled)
        assert module.doubled([1, -2, 3]) == [2, -4, 6]
        assert lib.allocator.live_count == 0

    def test_records_and_optional(self, arithmetic):
        module, lib = arithmetic

        def midpoint(a, b):
            pa = module._FfiConverterTypePoint.lift_argument(a)
            pb = module._FfiConverterTypePoint.lift_argument(b)
            if pa == pb:
                return lib.buffer(module._FfiConverterOptionalTypePoint.lower_bytes(None))
            middle = module.Point(x=(pa.x + pb.x) / 2, y=(pa.y + pb.y) / 2)
            return lib.buffer(module._FfiConverterOptionalTypePoint.lower_bytes(middle))

        lib.export("", "midpoint", midpoint)
        assert module.midpoint(module.Point(x=0.0), module.Point(x=2.0, y=4.0)) == module.Point(x=1.0, y=2.0)
        assert module.midpoint(module.Point(x=1.0), module.Point(x=1.0)) is None
        assert lib.allocator.live_count == 0


# =============================================================================
# Errors
# =============================================================================

class TestErrors:
    def test_declared_error(self, arithmetic):
        module, lib = arithmetic

        def divide(dividend, divisor):
            if divisor == 0:
                raise NativeError(b"\x00\x00\x00\x01")
            return dividend // divisor

        lib.export("", "divide", divide)
        assert module.divide(7, 2) == 3
        with pytest.raises(module.MathError.DivideByZero) as exc_info:
            module.divide(1, 0)
        assert isinstance(exc_info.value, module.MathError)
        assert str(exc_info.value) == "MathError.DivideByZero"
        assert lib.allocator.live_count == 0

    def test_unexpected_failure(self, arithmetic):
        module, lib = arithmetic

        def add(a, b):
            raise RuntimeError("overflow")

        lib.export("", "add", add)
        with pytest.raises(InternalError, match="panicked: overflow"):
            module.add(1, 2)
        assert lib.allocator.live_count == 0


# =============================================================================
# Objects
# =============================================================================

class TestObjects:
    """Objects own a handle until closed or consumed."""

    @pytest.fixture
    def counters(self, arithmetic):
        module, lib = arithmetic

        def increment(handle):
            state = lib.objects.get(handle)
            state["value"] += 1
            return state["value"]

        def finish(handle):
            value = lib.objects.get(handle)["value"]
            lib.objects.release(handle)
            return value

        lib.export("Counter", "new", lambda start: lib.objects.insert({"value": start}))
        lib.export("Counter", "zero", lambda: lib.objects.insert({"value": 0}))
        lib.export("Counter", "increment", increment)
        lib.export("Counter", "finish", finish)
        return module, lib

    def test_constructor_and_methods(self, counters):
        module, lib = counters
        with module.Counter(10) as counter:
            assert counter.increment() == 11
            assert counter.increment() == 12
        assert len(lib.objects) == 0

    def test_named_constructor(self, counters):
        module, lib = counters
        counter = module.Counter.zero()
        assert isinstance(counter, module.Counter)
        assert counter.increment() == 1
        counter.close()

    def test_consuming_method(self, counters):
        module, lib = counters
        counter = module.Counter(4)
        assert counter.finish() == 4
        assert len(lib.objects) == 0
        with pytest.raises(HandleError, match="Counter has been closed"):
            counter.increment()
        counter.close()

    def test_close_is_idempotent(self, counters):
        module, lib = counters
        counter = module.Counter(1)
        counter.close()
        counter.close()
        assert len(lib.objects) == 0


HANDOFF_IDL = """\
namespace handoff {
    u32 weigh(Crate crate, u8 scale);
};

interface Crate {
    constructor(u32 weight);
    [Self=Consume]
    u32 ship(u8 priority);
};
"""


class TestAbandonedCalls:
    """A call that fails while lowering arguments gives every handle back."""

    @pytest.fixture
    def crates(self, tmp_path, fake_library, import_generated):
        idl = tmp_path / "handoff.idl"
        idl.write_text(HANDOFF_IDL, encoding="utf-8")
        path, ffi = generate(tmp_path, idl)
        lib = fake_library(ffi)
        module = import_generated(path)
        lib.export("Crate", "new", lambda weight: lib.objects.insert({"weight": weight}))
        lib.export("", "weigh", lambda handle, scale: lib.objects.get(handle)["weight"] * scale)
        return module, lib

    def test_clone_released_when_later_argument_fails(self, crates):
        module, lib = crates
        crate = module.Crate(5)
        with pytest.raises(ValueError, match="out of range for u8"):
            module.weigh(crate, 300)
        assert "weigh" not in lib.calls
        assert lib.objects.count(crate._handle) == 1
        crate.close()
        assert len(lib.objects) == 0

    def test_callee_keeps_clone_after_entry(self, crates):
        module, lib = crates
        with module.Crate(5) as crate:
            assert module.weigh(crate, 3) == 15
            # The fake callee never releases the clone it was given
            assert lib.objects.count(crate._handle) == 2

    def test_consumed_receiver_restored(self, crates):
        module, lib = crates
        crate = module.Crate(5)
        handle = crate._handle
        with pytest.raises(ValueError):
            crate.ship(256)
        assert crate._handle == handle
        crate.close()
        assert len(lib.objects) == 0


# =============================================================================
# Async
# =============================================================================

class TestAsync:
    @pytest.mark.asyncio
    async def test_slow_add(self, arithmetic):
        module, lib = arithmetic
        lib.export("", "slow_add", lambda a, b: a + b)
        assert await module.slow_add(40, 2) == 42
        assert lib.calls == ["slow_add"]
        future = lib.futures.get(1)
        assert future.freed

    @pytest.mark.asyncio
    async def test_error_on_completion(self, arithmetic):
        module, lib = arithmetic

        def slow_add(a, b):
            raise RuntimeError("worker died")

        lib.export("", "slow_add", slow_add)
        with pytest.raises(InternalError, match="panicked: worker died"):
            await module.slow_add(1, 2)
        assert lib.allocator.live_count == 0


# =============================================================================
# Callback Interfaces
# =============================================================================

class Tally:
    """Listener implementation used through the vtable."""

    def __init__(self, module, busy=False):
        self.module = module
        self.busy = busy

    def on_event(self, name):
        pass

    def count(self):
        if self.busy:
            raise self.module.ListenerError.Busy()
        return 7


class TestCallbacks:
    @pytest.fixture
    def events(self, tmp_path, callback_idl, fake_library, import_generated):
        path, ffi = generate(tmp_path, callback_idl)
        lib = fake_library(ffi)
        tables = []
        lib._define(ffi.vtables["Listener"].init_function.name, tables.append)
        module = import_generated(path)
        assert len(tables) == 1
        return module, lib, tables[0].contents

    def call_count(self, vtable, handle):
        out = ctypes.c_uint32()
        status = CallStatus()
        vtable.count(handle, ctypes.pointer(out), ctypes.pointer(status))
        return out.value, status

    def test_native_calls_foreign_method(self, events):
        module, lib, vtable = events
        listener = type("Listener", (Tally, module.Listener), {})(module)
        handles = []
        lib.export("", "subscribe", handles.append)
        module.subscribe(listener)

        value, status = self.call_count(vtable, handles[0])
        assert status.code == CALL_SUCCESS
        assert value == 7
        vtable.free(handles[0])
        assert len(module._FfiConverterTypeListener.handle_table) == 0

    def test_declared_error_from_foreign_method(self, events):
        module, lib, vtable = events
        listener = type("Listener", (Tally, module.Listener), {})(module, busy=True)
        handles = []
        lib.export("", "subscribe", handles.append)
        module.subscribe(listener)

        _, status = self.call_count(vtable, handles[0])
        assert status.code == CALL_ERROR
        assert status.error_buf.to_bytes() == b"\x00\x00\x00\x01"
        lib.allocator.free(status.error_buf)
        vtable.free(handles[0])

    def test_unknown_handle_is_unexpected(self, events):
        module, lib, vtable = events
        _, status = self.call_count(vtable, 999)
        assert status.code == CALL_UNEXPECTED_ERROR
        lib.allocator.free(status.error_buf)

    def test_rejects_non_implementation(self, events):
        module, lib, _ = events
        with pytest.raises(TypeError, match="Listener"):
            module.subscribe(object())
