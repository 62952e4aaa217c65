"""
ffibridge Test Configuration
============================

Shared fixtures for the test suite:

- Interface definitions used across test modules
- FakeNativeLibrary: a stand-in for a compiled library, built from a
  ComponentFfi and plain Python callables, registered through
  ``ffibridge.runtime.register_library`` so generated Python bindings
  can be imported and called without a native toolchain
"""

import ctypes
import importlib.util
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from ffibridge.ffi.types import ComponentFfi, FfiFunction, FfiType
from ffibridge.runtime import (
    CALL_ERROR,
    CALL_SUCCESS,
    CALL_UNEXPECTED_ERROR,
    POLL_READY,
    STRING,
    ForeignBuffer,
    HandleTable,
    PythonAllocator,
    register_library,
    unregister_library,
)


# =============================================================================
# Interface Definitions
# =============================================================================

ARITHMETIC_IDL = """\
/// Integer arithmetic exposed to every language.
namespace arithmetic {
    /// Add two numbers.
    u32 add(u32 a, u32 b);

    [Throws=MathError]
    i32 divide(i32 dividend, i32 divisor);

    string greet(string name, string greeting = "Hello");

    sequence<i64> doubled(sequence<i64> values);

    Point? midpoint(Point a, Point b);

    [Async]
    u64 slow_add(u64 a, u64 b);
};

/// A point on the plane.
dictionary Point {
    f64 x;
    f64 y = 0.0;
};

[Error]
enum MathError {
    "DivideByZero",
    "Overflow",
};

enum Direction {
    "North",
    "South",
};

/// A running tally.
interface Counter {
    constructor(u32 start);
    [Name=zero]
    constructor();
    u32 increment();
    [Self=Consume]
    u32 finish();
};
"""

CALLBACK_IDL = """\
namespace events {
    void subscribe(Listener listener);
};

callback interface Listener {
    void on_event(string name);
    [Throws=ListenerError]
    u32 count();
};

[Error]
enum ListenerError {
    "Busy",
};
"""


@pytest.fixture
def arithmetic_idl(tmp_path: Path) -> Path:
    """The arithmetic interface written to a .idl file."""
    path = tmp_path / "arithmetic.idl"
    path.write_text(ARITHMETIC_IDL, encoding="utf-8")
    return path


@pytest.fixture
def callback_idl(tmp_path: Path) -> Path:
    path = tmp_path / "events.idl"
    path.write_text(CALLBACK_IDL, encoding="utf-8")
    return path


# =============================================================================
# Fake Native Library
# =============================================================================

class NativeError(Exception):
    """Raised by a fake implementation to report a declared error payload."""

    def __init__(self, payload: bytes):
        super().__init__(payload)
        self.payload = payload


class FakeFuture:
    """Native future state: a result producer plus waiting continuations."""

    def __init__(self, produce: Callable[[], Any], ready: bool = True):
        self.produce = produce
        self.ready = ready
        self.waiters: list[tuple[Any, int]] = []
        self.cancelled = False
        self.freed = False
        self.polls = 0


class FakeNativeLibrary:
    """
    A compiled library simulated in Python.

    Every symbol of the ComponentFfi exists as an attribute. Built-in
    symbols (contract version, checksums, buffer functions, object
    clone/free, future families) behave like real scaffolding; exported
    callables must be given an implementation with ``export``.

    Attributes:
        allocator: Owns every buffer the "native" side allocates
        objects: Handle table for native objects
        futures: Handle table for native futures
        calls: Names of exported callables invoked, in order
    """

    def __init__(self, ffi: ComponentFfi, contract_version: Optional[int] = None):
        self.ffi = ffi
        self.allocator = PythonAllocator()
        self.objects = HandleTable()
        self.futures = HandleTable()
        self.calls: list[str] = []

        for fn in ffi.functions:
            self._define(fn.name, self._unimplemented(fn))

        version = ffi.contract_version if contract_version is None else contract_version
        self._define(ffi.contract_version_symbol, lambda: version)
        for symbol, value in ffi.checksums.items():
            self._define(symbol, lambda value=value: value)
        self._define(ffi.buffer_from_bytes.name, self._buffer_from_bytes)
        self._define(ffi.buffer_alloc.name, self._buffer_alloc)
        self._define(ffi.buffer_free.name, self._buffer_free)
        for functions in ffi.objects.values():
            self._define(functions.clone.name, self._status_call(functions.clone, self.objects.clone))
            self._define(functions.free.name, self._status_call(functions.free, self.objects.release))
        for family in ffi.futures.values():
            self._define(family.poll.name, self._future_poll)
            self._define(family.complete.name, self._status_call(family.complete, self._future_complete))
            self._define(family.cancel.name, self._future_cancel)
            self._define(family.free.name, self._future_free)

    def _define(self, symbol: str, fn: Callable) -> None:
        # Each symbol needs its own function object: bindings set argtypes on it
        def entry(*args):
            return fn(*args)
        entry.__name__ = symbol
        setattr(self, symbol, entry)

    @staticmethod
    def _unimplemented(fn: FfiFunction) -> Callable:
        def missing(*args):
            raise AssertionError(f"{fn.name} was called but has no fake implementation")
        return missing

    # -------------------------------------------------------------------------
    # Buffers
    # -------------------------------------------------------------------------

    def buffer(self, data: bytes) -> ForeignBuffer:
        return self.allocator.alloc(data)

    def _buffer_from_bytes(self, foreign_bytes, status_ptr) -> ForeignBuffer:
        data = ctypes.string_at(foreign_bytes.data, foreign_bytes.len) if foreign_bytes.len else b""
        return self.allocator.alloc(data)

    def _buffer_alloc(self, size, status_ptr) -> ForeignBuffer:
        return self.allocator.alloc(bytes(size))

    def _buffer_free(self, buf, status_ptr) -> None:
        self.allocator.free(buf)

    # -------------------------------------------------------------------------
    # Exported Callables
    # -------------------------------------------------------------------------

    def _zero(self, fn: FfiFunction) -> Any:
        if fn.return_type is None:
            return None
        if fn.return_type == FfiType.BUFFER:
            return ForeignBuffer.empty()
        return 0

    def _status_call(self, fn: FfiFunction, body: Callable) -> Callable:
        def call(*args):
            *values, status_ptr = args
            status = status_ptr.contents
            status.code = CALL_SUCCESS
            try:
                return body(*values)
            except NativeError as e:
                status.code = CALL_ERROR
                status.error_buf = self.buffer(e.payload)
            except Exception as e:
                status.code = CALL_UNEXPECTED_ERROR
                status.error_buf = self.buffer(STRING.lower_bytes(f"panicked: {e}"))
            return self._zero(fn)
        return call

    def export(self, owner: str, name: str, body: Callable) -> None:
        """
        Implement an exported callable.

        body receives the raw ABI arguments (ints, floats, handles and
        borrowed ForeignBuffers) and returns the raw ABI result. Raising
        NativeError reports a declared error; any other exception is
        reported as an unexpected failure.
        """
        fn = self.ffi.function_for(owner, name)

        def traced(*values):
            self.calls.append(f"{owner}.{name}" if owner else name)
            return body(*values)

        if fn.is_async:
            def start(*values):
                self.calls.append(f"{owner}.{name}" if owner else name)
                return self.futures.insert(FakeFuture(lambda: body(*values)))
            self._define(fn.name, start)
        else:
            self._define(fn.name, self._status_call(fn, traced))

    # -------------------------------------------------------------------------
    # Futures
    # -------------------------------------------------------------------------

    def _future_poll(self, handle, continuation, data) -> None:
        future = self.futures.get(handle)
        future.polls += 1
        if future.ready:
            continuation(data, POLL_READY)
        else:
            future.waiters.append((continuation, data))

    def _future_complete(self, handle) -> Any:
        return self.futures.get(handle).produce()

    def _future_cancel(self, handle) -> None:
        self.futures.get(handle).cancelled = True

    def _future_free(self, handle) -> None:
        future = self.futures.get(handle)
        future.freed = True

    def resolve(self, handle: int) -> None:
        """Mark a pending future ready and fire its continuations."""
        future = self.futures.get(handle)
        future.ready = True
        waiters, future.waiters = future.waiters, []
        for continuation, data in waiters:
            continuation(data, POLL_READY)


@pytest.fixture
def fake_library():
    """
    Factory registering a FakeNativeLibrary for a namespace.

    Registrations are removed after the test.
    """
    registered = []

    def make(ffi: ComponentFfi, **kwargs) -> FakeNativeLibrary:
        lib = FakeNativeLibrary(ffi, **kwargs)
        register_library(ffi.namespace, lib)
        registered.append(ffi.namespace)
        return lib

    yield make
    for namespace in registered:
        unregister_library(namespace)


@pytest.fixture
def import_generated(monkeypatch):
    """Import a generated Python module from a file under a unique name."""
    counter = {"n": 0}

    def load(path: Path):
        counter["n"] += 1
        name = f"_generated_{path.stem}_{counter['n']}"
        spec = importlib.util.spec_from_file_location(name, path)
        module = importlib.util.module_from_spec(spec)
        monkeypatch.setitem(sys.modules, name, module)
        spec.loader.exec_module(module)
        return module

    return load
