"""
Metadata Extractor
==================

Front door for interface sources. Given a textual definition file, a
compiled library, or both, it returns raw item batches in the shape the
IR Builder consumes, regardless of where the items came from.

Usage
-----
    result = extract(idl_path=Path("arithmetic.idl"))
    result = extract(library_path=Path("libarithmetic.so"), crate="arithmetic")
    result = extract(idl_path=..., library_path=...)   # text first, then library
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from ffibridge.diagnostics import Diagnostic, DiagnosticCode, Severity
from ffibridge.errors import ExtractionError
from ffibridge.idl.lowering import load_idl
from ffibridge.ir.model import SourceBatch
from ffibridge.metadata.scanner import scan_library

logger = logging.getLogger(__name__)

IDL_SUFFIXES = (".idl",)


@dataclass
class ExtractionResult:
    """
    Raw batches plus what the extractor noticed along the way.

    Attributes:
        batches: Source batches in priority order
        diagnostics: Notes about the extraction (never fatal)
    """
    batches: list[SourceBatch] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def namespace(self) -> Optional[str]:
        """Namespace of the highest-priority batch."""
        return self.batches[0].namespace if self.batches else None


def is_idl_path(path: Union[str, Path]) -> bool:
    return Path(path).suffix.lower() in IDL_SUFFIXES


def read_idl_file(path: Union[str, Path]) -> SourceBatch:
    """
    Parse and lower one textual definition file.

    Raises:
        IdlSyntaxError: If the text is malformed
        ExtractionError: If the file cannot be decoded as UTF-8
    """
    path = Path(path)
    logger.debug(f"Reading interface definition {path}")
    try:
        source = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ExtractionError(
            f"{path} is not UTF-8 text",
            hint="pass compiled libraries with --lib-file",
        ) from e
    return load_idl(source, str(path))


def extract(
    idl_path: Optional[Union[str, Path]] = None,
    library_path: Optional[Union[str, Path]] = None,
    crate: Optional[str] = None,
) -> ExtractionResult:
    """
    Extract raw batches from the given sources.

    Args:
        idl_path: Textual definition file (or a library, detected by suffix)
        library_path: Compiled library with embedded metadata
        crate: Namespace to select inside the library; when omitted every
               section found is returned

    Returns:
        ExtractionResult with the textual batch first, then library batches

    Raises:
        IdlSyntaxError: Malformed textual definition
        MetadataNotFound: Library without (matching) metadata
        UnsupportedMetadataVersion: Metadata from an unsupported encoder
        ValueError: If no source is given
    """
    if idl_path is None and library_path is None:
        raise ValueError("extract() needs an interface definition or a library path")

    result = ExtractionResult()

    if idl_path is not None and not is_idl_path(idl_path) and library_path is None:
        # A library passed as the only source
        idl_path, library_path = None, idl_path

    if idl_path is not None:
        result.batches.append(read_idl_file(idl_path))

    if library_path is not None:
        batches = scan_library(library_path, crate)
        if crate is None:
            namespaces = sorted({b.namespace for b in batches})
            if len(namespaces) > 1:
                result.diagnostics.append(
                    Diagnostic(
                        DiagnosticCode.EXTRACTION,
                        Severity.NOTE,
                        f"{library_path} contains metadata for {', '.join(namespaces)}; "
                        f"'{batches[0].namespace}' is treated as the primary namespace",
                    )
                )
        result.batches.extend(batches)

    logger.debug(
        f"Extracted {sum(len(b.items) for b in result.batches)} items "
        f"from {len(result.batches)} source(s)"
    )
    return result
