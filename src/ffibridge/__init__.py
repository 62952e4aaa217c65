"""
ffibridge - Multi-Language FFI Bindings Generator
=================================================

This package generates foreign-language bindings and native-side
scaffolding from a single description of a native library's public
interface. The description is either a textual interface-definition
file (``.idl``) or metadata sections embedded in the compiled library.

One resolved interface feeds every target, so the Python, Kotlin, Swift
and Ruby bindings all agree with the Rust scaffolding on symbol names,
argument order, serialization and ownership.

Main Components
---------------
- **idl**: textual interface-definition language
    Lexer, parser and lowering to raw interface items

- **metadata**: binary metadata sections
    Encoder, decoder and the scanner for compiled libraries

- **ir**: canonical interface model
    IR Builder, Validator, checksums and JSON serialization

- **ffi**: ABI lowering
    The closed FFI type set and the exported symbol table

- **backends**: language emitters
    python, kotlin, swift and ruby

- **scaffolding**: native-side Rust glue

- **runtime**: support library imported by generated Python bindings

Quick Start
-----------
Generate bindings from Python:
    >>> from pathlib import Path
    >>> from ffibridge import BindingsGenerator, GenerationOptions
    >>> options = GenerationOptions(languages=("python",), out_dir=Path("out"))
    >>> report = BindingsGenerator(options).generate("arithmetic.idl")

Or use the command-line tool:
    $ ffibridge generate arithmetic.idl -l python -l kotlin -o out
    $ ffibridge scaffolding arithmetic.idl -o src/
    $ ffibridge print-json arithmetic.idl

Version History
---------------
1.0.0 - Initial release with python, kotlin, swift and ruby backends
"""

__version__ = "1.0.0"

# =============================================================================
# Public API Exports
# =============================================================================

from ffibridge.errors import (
    FfiBridgeError,
    ExtractionError,
    IdlSyntaxError,
    MetadataError,
    MetadataNotFound,
    UnsupportedMetadataVersion,
    MetadataFormatError,
    InterfaceError,
    DuplicateDefinition,
    UnresolvedTypeReference,
    ConfigError,
    ConfigConflict,
    ValidationFailed,
    EmissionError,
    UnsupportedTypeForAbi,
    EmissionIoError,
    GenerationFailed,
    SourceLocation,
)
from ffibridge.config import ConfigOverlay
from ffibridge.extractor import extract
from ffibridge.ir.builder import InterfaceBuilder
from ffibridge.ir.validator import validate
from ffibridge.pipeline import BindingsGenerator, GenerationOptions, GenerationReport

__all__ = [
    "__version__",
    # Errors
    "FfiBridgeError",
    "ExtractionError",
    "IdlSyntaxError",
    "MetadataError",
    "MetadataNotFound",
    "UnsupportedMetadataVersion",
    "MetadataFormatError",
    "InterfaceError",
    "DuplicateDefinition",
    "UnresolvedTypeReference",
    "ConfigError",
    "ConfigConflict",
    "ValidationFailed",
    "EmissionError",
    "UnsupportedTypeForAbi",
    "EmissionIoError",
    "GenerationFailed",
    "SourceLocation",
    # Pipeline
    "BindingsGenerator",
    "ConfigOverlay",
    "GenerationOptions",
    "GenerationReport",
    "InterfaceBuilder",
    "extract",
    "validate",
]
