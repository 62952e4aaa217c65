"""
Tests for the Metadata Extractor
================================

Textual definitions, compiled libraries, and both together.
"""

import pytest

from ffibridge.diagnostics import DiagnosticCode, Severity
from ffibridge.errors import ExtractionError, IdlSyntaxError, MetadataNotFound
from ffibridge.extractor import extract, is_idl_path, read_idl_file
from ffibridge.idl import load_idl
from ffibridge.metadata import encode_section

from conftest import ARITHMETIC_IDL, CALLBACK_IDL


@pytest.fixture
def library(tmp_path):
    """A fake compiled library carrying the arithmetic and events sections."""
    path = tmp_path / "libarithmetic.so"
    path.write_bytes(
        b"\x7fELF" + b"\0" * 200
        + encode_section(load_idl(ARITHMETIC_IDL))
        + b"\0" * 50
        + encode_section(load_idl(CALLBACK_IDL))
    )
    return path


class TestSourceDetection:
    def test_idl_suffix(self):
        assert is_idl_path("arithmetic.idl")
        assert is_idl_path("ARITHMETIC.IDL")

    def test_library_suffixes(self):
        assert not is_idl_path("libarithmetic.so")
        assert not is_idl_path("arithmetic.dll")


class TestReadIdlFile:
    """Tests for read_idl_file()."""

    def test_origin_is_path(self, arithmetic_idl):
        batch = read_idl_file(arithmetic_idl)
        assert batch.namespace == "arithmetic"
        assert batch.origin == str(arithmetic_idl)

    def test_syntax_error_names_file(self, tmp_path):
        path = tmp_path / "broken.idl"
        path.write_text("namespace broken {\n  u32 f(;\n};\n", encoding="utf-8")
        with pytest.raises(IdlSyntaxError) as exc_info:
            read_idl_file(path)
        assert str(path) in str(exc_info.value)
        assert exc_info.value.line == 2

    def test_binary_file_rejected(self, tmp_path):
        path = tmp_path / "binary.idl"
        path.write_bytes(b"\xff\xfe\x00namespace")
        with pytest.raises(ExtractionError, match="not UTF-8"):
            read_idl_file(path)


class TestExtract:
    """Tests for extract()."""

    def test_needs_a_source(self):
        with pytest.raises(ValueError):
            extract()

    def test_idl_only(self, arithmetic_idl):
        result = extract(idl_path=arithmetic_idl)
        assert len(result.batches) == 1
        assert result.namespace == "arithmetic"
        assert result.diagnostics == []

    def test_library_only(self, library):
        """Every section is returned, and the mix of namespaces is noted."""
        result = extract(library_path=library)
        assert [b.namespace for b in result.batches] == ["arithmetic", "events"]
        assert result.namespace == "arithmetic"
        assert len(result.diagnostics) == 1
        note = result.diagnostics[0]
        assert note.code == DiagnosticCode.EXTRACTION
        assert note.severity == Severity.NOTE

    def test_library_as_primary_source(self, library):
        """A non-.idl source is treated as a compiled library."""
        result = extract(idl_path=library, crate="events")
        assert [b.namespace for b in result.batches] == ["events"]
        assert result.diagnostics == []

    def test_crate_selects_namespace(self, library):
        result = extract(library_path=library, crate="arithmetic")
        assert [b.namespace for b in result.batches] == ["arithmetic"]

    def test_crate_not_found(self, library):
        with pytest.raises(MetadataNotFound):
            extract(library_path=library, crate="missing")

    def test_text_first_then_library(self, arithmetic_idl, library):
        result = extract(idl_path=arithmetic_idl, library_path=library, crate="arithmetic")
        assert len(result.batches) == 2
        assert result.batches[0].origin == str(arithmetic_idl)
        assert result.batches[1].origin == str(library)
