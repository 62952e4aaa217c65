"""
Tests for JSON IR Serialization
===============================

The versioned JSON rendering used by ``ffibridge print-json``.
"""

import json

import pytest

from ffibridge.idl import load_idl
from ffibridge.ir.builder import build_interface
from ffibridge.ir.model import IR_VERSION
from ffibridge.ir.serialize import (
    FORMAT_NAME,
    IrFormatError,
    from_dict,
    from_json,
    to_dict,
    to_json,
    type_from_json,
    type_to_json,
)
from ffibridge.ir.types import (
    ExternalType,
    MappingType,
    OptionalType,
    PrimitiveKind,
    PrimitiveType,
    RecordType,
    SequenceType,
)

from conftest import ARITHMETIC_IDL, CALLBACK_IDL


@pytest.fixture
def ir():
    return build_interface([load_idl(ARITHMETIC_IDL, "arithmetic.idl")])


class TestDocument:
    """Shape of the rendered document."""

    def test_envelope(self, ir):
        data = json.loads(to_json(ir))
        assert data["format"] == FORMAT_NAME
        assert data["version"] == IR_VERSION
        assert data["namespace"] == "arithmetic"
        assert data["checksum"] == ir.checksum

    def test_items_in_declaration_order(self, ir):
        data = to_dict(ir)
        assert [i["name"] for i in data["items"]] == [i.name for i in ir.items]

    def test_function_rendering(self, ir):
        add = to_dict(ir)["items"][0]
        assert add["kind"] == "function"
        assert add["return_type"] == "u32"
        assert add["arguments"][0] == {"name": "a", "type": "u32", "default": None}
        assert add["docstring"] == "Add two numbers."

    def test_deterministic(self, ir):
        """Equal interfaces render to byte-identical text."""
        again = build_interface([load_idl(ARITHMETIC_IDL, "arithmetic.idl")])
        assert to_json(ir) == to_json(again)

    def test_type_encoding(self):
        point = OptionalType(RecordType("Point"))
        assert type_to_json(point) == {"optional": {"record": "Point"}}
        mapping = MappingType(PrimitiveType(PrimitiveKind.STRING), SequenceType(PrimitiveType(PrimitiveKind.U8)))
        assert type_to_json(mapping) == {"map": ["string", {"sequence": "u8"}]}
        external = ExternalType("geo", "Point", "record")
        assert type_from_json(type_to_json(external)) == external


class TestDecoding:
    """Decoding yields an equal InterfaceDescription."""

    def test_arithmetic(self, ir):
        assert from_json(to_json(ir)) == ir

    def test_callbacks(self):
        ir = build_interface([load_idl(CALLBACK_IDL)])
        assert from_json(to_json(ir)) == ir

    def test_wrong_format(self, ir):
        data = to_dict(ir)
        data["format"] = "something-else"
        with pytest.raises(IrFormatError, match="not an ffibridge IR document"):
            from_dict(data)

    def test_future_version(self, ir):
        data = to_dict(ir)
        data["version"] = IR_VERSION + 1
        with pytest.raises(IrFormatError, match="unsupported IR version"):
            from_dict(data)

    def test_invalid_json(self):
        with pytest.raises(IrFormatError, match="invalid JSON"):
            from_json("{not json")

    @pytest.mark.parametrize("text", ["[1, 2]", "null", '"ffibridge-ir"', "42"])
    def test_document_not_an_object(self, text):
        with pytest.raises(IrFormatError, match="must be a JSON object"):
            from_json(text)

    def test_item_not_an_object(self, ir):
        data = to_dict(ir)
        data["items"][0] = ["function", "add"]
        with pytest.raises(IrFormatError, match="malformed IR document: AttributeError"):
            from_dict(data)

    def test_missing_key(self, ir):
        data = to_dict(ir)
        del data["items"][0]["name"]
        with pytest.raises(IrFormatError):
            from_dict(data)

    def test_unknown_type_tag(self):
        with pytest.raises(IrFormatError, match="unknown type tag"):
            type_from_json({"tuple": ["u8"]})
