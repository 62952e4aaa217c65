"""
Tests for Binary Metadata
=========================

Encoding, decoding and scanning of the metadata sections a native build
embeds in its compiled library.
"""

import pytest

from ffibridge.errors import MetadataFormatError, MetadataNotFound, UnsupportedMetadataVersion
from ffibridge.idl import load_idl
from ffibridge.metadata import (
    FORMAT_VERSION,
    MAGIC,
    decode_section,
    encode_section,
    scan_bytes,
    scan_library,
)
from ffibridge.metadata.crc import crc16_ccitt, crc_to_bytes

from conftest import ARITHMETIC_IDL, CALLBACK_IDL


@pytest.fixture
def batch():
    return load_idl(ARITHMETIC_IDL, "arithmetic.idl")


# =============================================================================
# CRC
# =============================================================================

class TestCrc:
    """Tests for the section checksum."""

    def test_check_value(self):
        """CRC-16/CCITT-FALSE standard check value."""
        assert crc16_ccitt(b"123456789") == 0x29B1

    def test_empty_input(self):
        assert crc16_ccitt(b"") == 0xFFFF

    def test_incremental(self):
        """Chunked calculation matches a single pass."""
        whole = crc16_ccitt(b"hello world")
        assert crc16_ccitt(b" world", crc16_ccitt(b"hello")) == whole

    def test_big_endian_bytes(self):
        assert crc_to_bytes(0x29B1) == b"\x29\xb1"

    def test_single_zero_byte(self):
        assert crc16_ccitt(b"\x00") == 0xE1F0

    def test_bytes_like_input(self):
        """Section payloads arrive as bytes, bytearray or memoryview slices."""
        payload = b"ffibridge metadata"
        assert crc16_ccitt(bytearray(payload)) == crc16_ccitt(payload)
        assert crc16_ccitt(memoryview(payload)[4:]) == crc16_ccitt(payload[4:])


# =============================================================================
# Section Codec
# =============================================================================

class TestSectionCodec:
    """Tests for encode_section() and decode_section()."""

    def test_header_layout(self, batch):
        blob = encode_section(batch)
        assert blob[:8] == MAGIC
        assert blob[8:10] == FORMAT_VERSION.to_bytes(2, "big")
        assert blob[10:12] == len("arithmetic").to_bytes(2, "big")
        assert blob[12:22] == b"arithmetic"

    def test_items_survive(self, batch):
        blob = encode_section(batch)
        decoded, end = decode_section(blob, origin="libarithmetic.so")
        assert decoded.namespace == "arithmetic"
        assert decoded.origin == "libarithmetic.so"
        assert decoded.items == batch.items
        assert end == len(blob)

    def test_docstrings_survive(self, batch):
        decoded, _ = decode_section(encode_section(batch))
        add = next(i for i in decoded.items if i.name == "add")
        assert add.docstring == "Add two numbers."

    def test_callback_items(self):
        batch = load_idl(CALLBACK_IDL)
        decoded, _ = decode_section(encode_section(batch))
        assert decoded.items == batch.items

    def test_decode_at_offset(self, batch):
        """A section embedded in other bytes decodes from its offset."""
        blob = encode_section(batch)
        data = b"\x7fELF" + b"\0" * 60 + blob + b"\0" * 16
        decoded, end = decode_section(data, offset=64)
        assert decoded.namespace == "arithmetic"
        assert end == 64 + len(blob)

    def test_unsupported_version(self, batch):
        blob = encode_section(batch, version=FORMAT_VERSION + 1)
        with pytest.raises(UnsupportedMetadataVersion) as exc_info:
            decode_section(blob)
        assert exc_info.value.version == FORMAT_VERSION + 1
        assert FORMAT_VERSION in exc_info.value.supported

    def test_crc_mismatch(self, batch):
        blob = bytearray(encode_section(batch))
        blob[30] ^= 0xFF
        with pytest.raises(MetadataFormatError, match="checksum mismatch"):
            decode_section(bytes(blob))

    def test_truncated_section(self, batch):
        blob = encode_section(batch)
        with pytest.raises(MetadataFormatError, match="truncated"):
            decode_section(blob[:-10])

    def test_missing_magic(self):
        with pytest.raises(MetadataFormatError, match="missing metadata magic"):
            decode_section(b"NOTMAGIC" + b"\0" * 16)

    def test_error_reports_offset(self, batch):
        blob = bytearray(encode_section(batch))
        blob[-1] ^= 0x01
        with pytest.raises(MetadataFormatError) as exc_info:
            decode_section(bytes(blob))
        assert exc_info.value.offset == len(blob) - 2


# =============================================================================
# Library Scanner
# =============================================================================

class TestScanner:
    """Tests for scan_bytes() and scan_library()."""

    def test_finds_every_section(self, batch):
        other = load_idl(CALLBACK_IDL)
        data = b"\0" * 32 + encode_section(batch) + b"\xff" * 7 + encode_section(other)
        batches = scan_bytes(data)
        assert [b.namespace for b in batches] == ["arithmetic", "events"]

    def test_namespace_filter(self, batch):
        other = load_idl(CALLBACK_IDL)
        data = encode_section(batch) + encode_section(other)
        batches = scan_bytes(data, namespace="events")
        assert [b.namespace for b in batches] == ["events"]

    def test_same_namespace_sections_kept_apart(self, batch):
        """Two sections of one namespace are returned separately, in order."""
        data = encode_section(batch) + encode_section(batch)
        assert len(scan_bytes(data)) == 2

    def test_no_sections(self):
        with pytest.raises(MetadataNotFound, match="no interface metadata found"):
            scan_bytes(b"\0" * 128, origin="libempty.so")

    def test_namespace_not_present(self, batch):
        with pytest.raises(MetadataNotFound, match="namespace 'other'"):
            scan_bytes(encode_section(batch), namespace="other")

    def test_version_error_names_library(self, batch):
        data = encode_section(batch, version=99)
        with pytest.raises(UnsupportedMetadataVersion, match="libnew.so"):
            scan_bytes(data, origin="libnew.so")

    def test_scan_library_file(self, tmp_path, batch):
        library = tmp_path / "libarithmetic.so"
        library.write_bytes(b"\x7fELF" + b"\0" * 100 + encode_section(batch))
        batches = scan_library(library)
        assert batches[0].origin == str(library)
        assert batches[0].items == batch.items
