"""
CRC-16/CCITT for Metadata Sections
==================================

Integrity check appended to every embedded metadata blob.

Technical Details
-----------------
- Polynomial: x^16 + x^12 + x^5 + 1 (0x1021), MSB first
- Initial value: 0xFFFF
- No final XOR, no reflection (the "CCITT-FALSE" variant)
- Check value: CRC("123456789") = 0x29B1

Usage
-----
    from ffibridge.metadata.crc import crc16_ccitt

    checksum = crc16_ccitt(payload)
    blob = payload + crc_to_bytes(checksum)
"""

import binascii
from typing import Final

# =============================================================================
# CRC Constants
# =============================================================================

CRC_INITIAL: Final[int] = 0xFFFF
CRC_MASK: Final[int] = 0xFFFF


def crc16_ccitt(data: bytes, initial: int = CRC_INITIAL) -> int:
    """
    Calculate CRC-16/CCITT-FALSE over data.

    Args:
        data: Input bytes
        initial: Starting value, for incremental calculation over chunks

    Returns:
        16-bit CRC value

    Example:
        >>> hex(crc16_ccitt(b"123456789"))
        '0x29b1'
    """
    # crc_hqx is this exact variant (0x1021, MSB first, no final XOR)
    return binascii.crc_hqx(data, initial & CRC_MASK)


def crc_to_bytes(crc: int) -> bytes:
    """Big-endian two-byte encoding of a CRC value."""
    return bytes([(crc >> 8) & 0xFF, crc & 0xFF])
