"""
Tests for the Scaffolding Emitter
=================================

The Rust side of the boundary must export exactly the symbols the
bindings import.
"""

import re

import pytest

from ffibridge.ffi import lower_interface
from ffibridge.idl import load_idl
from ffibridge.ir.builder import build_interface
from ffibridge.scaffolding import ScaffoldingEmitter, emit_scaffolding

from conftest import ARITHMETIC_IDL, CALLBACK_IDL


def render(source: str):
    ir = build_interface([load_idl(source)])
    ffi = lower_interface(ir)
    return ir, ffi, emit_scaffolding(ir, ffi)


@pytest.fixture
def arithmetic():
    return render(ARITHMETIC_IDL)


class TestFileLayout:
    def test_single_file(self, arithmetic):
        _, _, files = arithmetic
        assert list(files) == ["arithmetic_scaffolding.rs"]

    def test_header(self, arithmetic):
        ir, _, files = arithmetic
        lines = files["arithmetic_scaffolding.rs"].splitlines()
        assert lines[0] == "// Generated by ffibridge from the 'arithmetic' interface. Do not edit."
        assert lines[1] == f"// Interface checksum: 0x{ir.checksum:04X}"

    def test_single_module(self, arithmetic):
        text = arithmetic[2]["arithmetic_scaffolding.rs"]
        assert "pub mod ffibridge_scaffolding {" in text
        assert text.rstrip().endswith("}")

    def test_emitter_filename(self, arithmetic):
        ir, ffi, _ = arithmetic
        assert ScaffoldingEmitter(ir, ffi).filename == "arithmetic_scaffolding.rs"


class TestExports:
    """Every ComponentFfi symbol is exported unmangled."""

    @pytest.mark.parametrize("source", [ARITHMETIC_IDL, CALLBACK_IDL])
    def test_every_symbol_exported(self, source):
        ir, ffi, files = render(source)
        text = next(iter(files.values()))
        for fn in ffi.functions:
            assert f"fn {fn.name}(" in text, fn.name

    def test_no_mangle_on_exports(self, arithmetic):
        _, ffi, files = arithmetic
        text = files["arithmetic_scaffolding.rs"]
        exported = re.findall(r'#\[no_mangle\]\s*\n\s*pub extern "C" fn (\w+)', text)
        assert set(exported) == {fn.name for fn in ffi.functions}

    def test_contract_version_body(self, arithmetic):
        text = arithmetic[2]["arithmetic_scaffolding.rs"]
        assert 'pub extern "C" fn ffibridge_arithmetic_contract_version() -> u32 {' in text

    def test_checksum_values(self, arithmetic):
        _, ffi, files = arithmetic
        text = files["arithmetic_scaffolding.rs"]
        symbol = "ffibridge_arithmetic_checksum_func_add"
        assert f'pub extern "C" fn {symbol}() -> u16 {{\n' in text
        assert f"    {ffi.checksums[symbol]}\n" in text


class TestCalls:
    def test_function_calls_implementation(self, arithmetic):
        text = arithmetic[2]["arithmetic_scaffolding.rs"]
        assert "crate::divide(dividend, divisor)" in text

    def test_calls_are_contained(self, arithmetic):
        text = arithmetic[2]["arithmetic_scaffolding.rs"]
        assert "catch_unwind" in text

    def test_single_threaded_object_behind_mutex(self, arithmetic):
        text = arithmetic[2]["arithmetic_scaffolding.rs"]
        assert "HandleTable<Mutex<crate::Counter>>" in text
        assert "crate::Counter::zero()" in text

    def test_threadsafe_object_shared_directly(self):
        _, _, files = render("namespace shop {}; [Threadsafe] interface Store { constructor(); };")
        text = files["shop_scaffolding.rs"]
        assert "HandleTable<crate::Store>" in text
        assert "Mutex<crate::Store>" not in text

    def test_consuming_method_takes_handle(self, arithmetic):
        text = arithmetic[2]["arithmetic_scaffolding.rs"]
        assert ".take(self_owned)?;" in text

    def test_callback_vtable_registration(self):
        _, _, files = render(CALLBACK_IDL)
        text = files["events_scaffolding.rs"]
        assert "VTableListener" in text
        assert "ForeignListener" in text

    def test_deterministic(self):
        assert render(ARITHMETIC_IDL)[2] == render(ARITHMETIC_IDL)[2]
