# =============================================================================
# test_backends.py - Language Backend Tests
# =============================================================================
# Tests for the per-language emitters and emit_bindings().
#
# Test coverage includes:
#   - Backend registry and type mapping
#   - Python, Kotlin, Swift and Ruby output files and key declarations
#   - Per-item failure collection (Ruby callbacks and async)
#   - Deterministic output
# =============================================================================

import pytest

from ffibridge.backends import (
    BackendContext,
    PythonBackend,
    available_languages,
    create_backend,
    emit_bindings,
    map_type,
)
from ffibridge.config import LanguageConfig
from ffibridge.errors import UnsupportedTypeForAbi
from ffibridge.ffi import FfiType, lower_interface
from ffibridge.idl import load_idl
from ffibridge.ir.builder import build_interface
from ffibridge.ir.types import OptionalType, PrimitiveKind, PrimitiveType, RecordType, SequenceType

from conftest import ARITHMETIC_IDL, CALLBACK_IDL


SYNC_ARITHMETIC_IDL = ARITHMETIC_IDL.replace("[Async]\n    u64 slow_add(u64 a, u64 b);", "")


def context(source: str = ARITHMETIC_IDL, **options) -> BackendContext:
    ir = build_interface([load_idl(source)])
    return BackendContext(ir, lower_interface(ir), LanguageConfig(options=options))


def emit(language: str, source: str = ARITHMETIC_IDL, **options):
    ctx = context(source, **options)
    return emit_bindings(create_backend(language, ctx), ctx.ir)


def only_file(result) -> str:
    assert result.ok, result.errors
    assert len(result.files) == 1
    return next(iter(result.files.values()))


# =============================================================================
# Registry
# =============================================================================

class TestRegistry:
    def test_available_languages(self):
        assert available_languages() == ["kotlin", "python", "ruby", "swift"]

    def test_unknown_language(self):
        with pytest.raises(ValueError, match="unknown language 'cobol'"):
            create_backend("cobol", context())

    def test_map_type_entry_point(self):
        mapping = map_type("python", OptionalType(RecordType("Point")), context())
        assert mapping.surface == "typing.Optional[Point]"
        assert mapping.ffi_type == FfiType.BUFFER
        assert mapping.lift_expr("raw") == "_FfiConverterOptionalTypePoint.lift(raw, _ALLOCATOR)"

    def test_surface_names_per_language(self):
        ref = SequenceType(PrimitiveType(PrimitiveKind.I32))
        assert map_type("python", ref, context()).surface == "list[int]"
        assert map_type("kotlin", ref, context()).surface == "List<Int>"
        assert map_type("swift", ref, context()).surface == "[Int32]"


# =============================================================================
# Python
# =============================================================================

class TestPythonBackend:
    """Python bindings are a single module on top of ffibridge.runtime."""

    def test_single_module(self):
        result = emit("python")
        assert list(result.files) == ["arithmetic.py"]

    def test_declarations(self):
        text = only_file(emit("python"))
        assert "def add(a: int, b: int) -> int:" in text
        assert 'def greet(name: str, greeting: str = "Hello") -> str:' in text
        assert "async def slow_add(a: int, b: int) -> int:" in text
        assert "class MathError(Exception):" in text
        assert "class Direction(enum.Enum):" in text
        assert "class Counter:" in text

    def test_load_sequence(self):
        text = only_file(emit("python"))
        load = text.index('_lib = _runtime.load_library("arithmetic", "arithmetic"')
        verify = text.index("_runtime.verify_contract_version(_lib, _PREFIX, _CONTRACT_VERSION)")
        assert load < verify
        assert '"ffibridge_arithmetic_checksum_func_add":' in text

    def test_cdylib_name_option(self):
        text = only_file(emit("python", cdylib_name="arith_native"))
        assert '_runtime.load_library("arithmetic", "arith_native"' in text

    def test_all_lists_public_names(self):
        text = only_file(emit("python"))
        exports = text[text.index("__all__ = ["):]
        for name in ("add", "Counter", "MathError", "Point", "slow_add"):
            assert f'"{name}",' in exports

    def test_callbacks(self):
        text = only_file(emit("python", CALLBACK_IDL))
        assert "class Listener(abc.ABC):" in text
        assert "def subscribe(listener: Listener) -> None:" in text

    def test_converter_names_tracked(self):
        backend = PythonBackend(context())
        assert backend.converter(SequenceType(PrimitiveType(PrimitiveKind.I64))) == "_FfiConverterSequenceI64"


# =============================================================================
# Kotlin
# =============================================================================

class TestKotlinBackend:
    def test_path_follows_package(self):
        result = emit("kotlin")
        assert list(result.files) == ["ffibridge/arithmetic/arithmetic.kt"]

    def test_package_name_option(self):
        result = emit("kotlin", package_name="org.example.math")
        assert list(result.files) == ["org/example/math/arithmetic.kt"]
        assert "package org.example.math" in only_file(result)

    def test_declarations(self):
        text = only_file(emit("kotlin"))
        assert "fun divide(dividend: Int, divisor: Int): Int {" in text
        assert "suspend fun slowAdd(" in text
        assert "data class Point(" in text
        assert "sealed class MathError : Exception() {" in text
        assert ": AutoCloseable {" in text


# =============================================================================
# Swift
# =============================================================================

class TestSwiftBackend:
    """Swift output is a source file plus a C header and module map."""

    def test_files(self):
        result = emit("swift")
        assert sorted(result.files) == ["arithmetic.swift", "arithmeticFFI.h", "arithmeticFFI.modulemap"]

    def test_every_wrapper_throws(self):
        text = emit("swift").files["arithmetic.swift"]
        assert "public func divide(dividend: Int32, divisor: Int32) throws -> Int32 {" in text
        assert "public func add(a: UInt32, b: UInt32) throws -> UInt32 {" in text
        assert "async throws -> UInt64" in text

    def test_declarations(self):
        text = emit("swift").files["arithmetic.swift"]
        assert "public struct Point {" in text
        assert "public final class Counter {" in text
        assert "public enum MathError" in text

    def test_header_and_modulemap(self):
        files = emit("swift").files
        assert "ffibridge_arithmetic_fn_func_divide" in files["arithmeticFFI.h"]
        assert 'header "arithmeticFFI.h"' in files["arithmeticFFI.modulemap"]
        assert "module arithmeticFFI {" in files["arithmeticFFI.modulemap"]


# =============================================================================
# Ruby
# =============================================================================

class TestRubyBackend:
    """Ruby covers synchronous, callback-free interfaces."""

    def test_module(self):
        result = emit("ruby", SYNC_ARITHMETIC_IDL)
        assert list(result.files) == ["arithmetic.rb"]
        text = only_file(result)
        assert "module Arithmetic" in text
        assert "def self.divide(dividend, divisor)" in text
        assert "attach_function :ffibridge_arithmetic_fn_func_divide" in text

    def test_default_arguments(self):
        text = only_file(emit("ruby", SYNC_ARITHMETIC_IDL))
        assert 'def self.greet(name, greeting = "Hello")' in text

    def test_async_rejected(self):
        result = emit("ruby")
        assert not result.ok
        assert result.files == {}
        assert [e.item for e in result.errors] == ["slow_add"]
        assert "cannot await native futures" in str(result.errors[0])

    def test_callbacks_rejected(self):
        result = emit("ruby", CALLBACK_IDL)
        assert result.files == {}
        messages = [str(e) for e in result.errors]
        assert any("callback interface 'Listener' is not supported by the Ruby bindings" in m for m in messages)
        assert all(isinstance(e, UnsupportedTypeForAbi) for e in result.errors)
        assert all(e.language == "ruby" for e in result.errors)


# =============================================================================
# Determinism
# =============================================================================

@pytest.mark.parametrize("language", ["python", "kotlin", "swift"])
def test_output_is_deterministic(language):
    assert emit(language).files == emit(language).files
