"""
Library Metadata Scanner
========================

Finds every embedded metadata section in a compiled library. The
scanner is format-agnostic: it searches the raw bytes for the section
magic instead of parsing ELF, Mach-O or PE headers, so any linker
section placement works.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from ffibridge.errors import MetadataNotFound, UnsupportedMetadataVersion
from ffibridge.ir.model import SourceBatch
from ffibridge.metadata.codec import MAGIC, decode_section

logger = logging.getLogger(__name__)


def scan_bytes(
    data: bytes,
    origin: str = "<bytes>",
    namespace: Optional[str] = None,
) -> list[SourceBatch]:
    """
    Decode all metadata sections in a byte buffer.

    Sections of the same namespace are returned separately, in file
    order; the IR Builder merges them.

    Args:
        data: Library contents
        origin: Name used in diagnostics
        namespace: Only return sections for this namespace

    Returns:
        Decoded batches, in file order

    Raises:
        MetadataNotFound: No section (for the namespace) exists
        UnsupportedMetadataVersion: A section has an unsupported version
        MetadataFormatError: A section is truncated or corrupt
    """
    batches = []
    offset = data.find(MAGIC)
    while offset != -1:
        try:
            batch, end = decode_section(data, offset, origin)
        except UnsupportedMetadataVersion as e:
            raise UnsupportedMetadataVersion(e.version, e.supported, origin) from None
        logger.debug(f"Found metadata for '{batch.namespace}' at offset {offset} in {origin}")
        if namespace is None or batch.namespace == namespace:
            batches.append(batch)
        offset = data.find(MAGIC, end)

    if not batches:
        raise MetadataNotFound(origin, namespace)
    return batches


def scan_library(path: Union[str, Path], namespace: Optional[str] = None) -> list[SourceBatch]:
    """Read a compiled library from disk and decode its metadata sections."""
    path = Path(path)
    data = path.read_bytes()
    logger.debug(f"Scanning {path} ({len(data)} bytes) for interface metadata")
    return scan_bytes(data, str(path), namespace)
