"""
Binary Interface Metadata
=========================

Encoding of interface items into sections a native build embeds in the
compiled library, and the scanner that recovers them.

- **codec**: section encoder and decoder
- **scanner**: locates sections inside library bytes
- **crc**: CRC-16/CCITT integrity check
"""

from ffibridge.metadata.codec import (
    FORMAT_VERSION,
    MAGIC,
    SUPPORTED_VERSIONS,
    decode_section,
    encode_section,
)
from ffibridge.metadata.scanner import scan_bytes, scan_library

__all__ = [
    "FORMAT_VERSION",
    "MAGIC",
    "SUPPORTED_VERSIONS",
    "decode_section",
    "encode_section",
    "scan_bytes",
    "scan_library",
]
