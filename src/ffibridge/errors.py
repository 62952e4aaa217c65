"""
ffibridge Error Hierarchy
=========================

This module defines the exception hierarchy for the whole generator.
All exceptions inherit from FfiBridgeError, allowing callers to catch
every generator-related failure with a single except clause.

Exception Hierarchy
-------------------
FfiBridgeError (base)
├── ExtractionError - reading interface descriptions
│   ├── IdlSyntaxError - malformed textual definition
│   └── MetadataError - binary metadata sections
│       ├── MetadataNotFound - no section in the library
│       ├── UnsupportedMetadataVersion - section from a newer encoder
│       └── MetadataFormatError - truncated or corrupt section
├── InterfaceError - building the canonical IR
│   ├── DuplicateDefinition - one name declared twice
│   └── UnresolvedTypeReference - dangling named type
├── ConfigError - malformed configuration overlay
│   └── ConfigConflict - overlay contradicts the declared interface
├── ValidationFailed - aggregate of fatal validator diagnostics
├── EmissionError - producing output for one language
│   ├── UnsupportedTypeForAbi - type or item cannot be lowered
│   └── EmissionIoError - write failure
└── GenerationFailed - aggregate of per-language failures

Error Message Format
--------------------
Errors that know where they came from follow the compiler convention:

    arithmetic.idl:5:12: error: unknown attribute 'Thredsafe'
        [Thredsafe]
         ^
    hint: did you mean 'Threadsafe'?

Errors about IR items without a source position name the item instead:

    error: [Counter] type 'Widget' does not resolve to any declared item
"""

from dataclasses import dataclass
from typing import Optional, Sequence


# =============================================================================
# Source Location Tracking
# =============================================================================

@dataclass(frozen=True)
class SourceLocation:
    """
    A position in an interface source for error reporting.

    For textual definitions this is a real file position. For items read
    from binary metadata the filename is the library path and line and
    column are zero.

    Attributes:
        filename: Name of the source file (or "<input>" for string input)
        line: Line number (1-indexed, 0 when unknown)
        column: Column number (1-indexed, 0 when unknown)
    """
    filename: str
    line: int = 0
    column: int = 0

    def __str__(self) -> str:
        """Format as 'filename:line:column', or just the filename when unknown."""
        if self.line <= 0:
            return self.filename
        return f"{self.filename}:{self.line}:{self.column}"


# =============================================================================
# Base Exception Class
# =============================================================================

class FfiBridgeError(Exception):
    """
    Base exception for all ffibridge errors.

    Provides the common message layout: location or item prefix, the
    offending source line with a caret, and an optional hint.

    Attributes:
        message: The error description
        location: Where in the source the error occurred (optional)
        item: Name of the IR item the error concerns (optional)
        hint: A suggestion for fixing the error (optional)
        source_line: The source text at the error location (optional)
    """

    def __init__(
        self,
        message: str,
        location: Optional[SourceLocation] = None,
        item: Optional[str] = None,
        hint: Optional[str] = None,
        source_line: Optional[str] = None,
    ):
        self.message = message
        self.location = location
        self.item = item
        self.hint = hint
        self.source_line = source_line
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = []

        prefix = f"[{self.item}] " if self.item else ""
        if self.location:
            parts.append(f"{self.location}: error: {prefix}{self.message}")
        else:
            parts.append(f"error: {prefix}{self.message}")

        if self.source_line is not None and self.location is not None:
            parts.append(f"    {self.source_line}")
            if self.location.column > 0:
                padding = " " * (4 + self.location.column - 1)
                parts.append(f"{padding}^")

        if self.hint:
            parts.append(f"hint: {self.hint}")

        return "\n".join(parts)


# =============================================================================
# Extraction Errors
# =============================================================================

class ExtractionError(FfiBridgeError):
    """Base for failures while reading an interface source."""
    pass


class IdlSyntaxError(ExtractionError):
    """
    Malformed textual interface definition.

    Raised by the lexer and parser, and by semantic lowering for
    attributes that are misplaced or unknown. Always carries a location,
    so ``line`` and ``column`` are available directly.
    """

    @property
    def line(self) -> int:
        return self.location.line if self.location else 0

    @property
    def column(self) -> int:
        return self.location.column if self.location else 0


class MetadataError(ExtractionError):
    """Base for binary metadata section failures."""
    pass


class MetadataNotFound(MetadataError):
    """
    A compiled library carries no metadata section.

    Also raised when a namespace was requested and no section for it
    exists in the library.
    """

    def __init__(self, path: str, namespace: Optional[str] = None):
        self.path = path
        self.namespace = namespace
        if namespace:
            message = f"no interface metadata for namespace '{namespace}' in {path}"
        else:
            message = f"no interface metadata found in {path}"
        super().__init__(
            message,
            hint="was the library built with the generated scaffolding?",
        )


class UnsupportedMetadataVersion(MetadataError):
    """A metadata section was written by an encoder version we cannot read."""

    def __init__(self, version: int, supported: Sequence[int], path: Optional[str] = None):
        self.version = version
        self.supported = tuple(supported)
        where = f" in {path}" if path else ""
        supported_text = ", ".join(str(v) for v in self.supported)
        super().__init__(
            f"unsupported metadata version {version}{where} (supported: {supported_text})",
        )


class MetadataFormatError(MetadataError):
    """
    A metadata section is truncated or corrupt.

    Attributes:
        offset: Byte offset into the section where decoding failed
    """

    def __init__(self, message: str, offset: Optional[int] = None):
        self.offset = offset
        if offset is not None:
            message = f"{message} (at offset {offset})"
        super().__init__(message)


# =============================================================================
# IR Construction Errors
# =============================================================================

class InterfaceError(FfiBridgeError):
    """Base for failures while building the canonical interface model."""
    pass


class DuplicateDefinition(InterfaceError):
    """
    One name declared twice.

    Raised by the IR Builder when two source batches declare the same
    top-level item without an override policy, and by the ABI lowering
    when two callables would export the same symbol.
    """

    def __init__(
        self,
        name: str,
        first: Optional[str] = None,
        second: Optional[str] = None,
        location: Optional[SourceLocation] = None,
    ):
        self.name = name
        self.first = first
        self.second = second
        message = f"'{name}' is defined more than once"
        if first and second:
            message += f" (in {first} and {second})"
        super().__init__(
            message,
            location=location,
            hint="rename one of them, or set a duplicates policy in the configuration",
        )


class UnresolvedTypeReference(InterfaceError):
    """A named type reference does not resolve to any declared item."""

    def __init__(
        self,
        type_name: str,
        item: Optional[str] = None,
        location: Optional[SourceLocation] = None,
    ):
        self.type_name = type_name
        super().__init__(
            f"type '{type_name}' does not resolve to any declared item",
            location=location,
            item=item,
        )


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigError(FfiBridgeError):
    """Configuration overlay is malformed (bad YAML or wrong shape)."""
    pass


class ConfigConflict(ConfigError):
    """The configuration overlay contradicts the declared interface."""
    pass


# =============================================================================
# Validation
# =============================================================================

class ValidationFailed(FfiBridgeError):
    """
    Aggregate of fatal validator diagnostics.

    Attributes:
        diagnostics: Every diagnostic the validator produced
        errors: Typed exceptions for the fatal diagnostics, in order
    """

    def __init__(self, diagnostics: Sequence, errors: Sequence[FfiBridgeError]):
        self.diagnostics = list(diagnostics)
        self.errors = list(errors)
        super().__init__(self._report())

    def _report(self) -> str:
        lines = [f"interface validation failed with {len(self.errors)} error(s)"]
        lines.extend(str(d) for d in self.diagnostics)
        return "\n".join(lines)

    def _format_message(self) -> str:
        return self.message


# =============================================================================
# Emission Errors
# =============================================================================

class EmissionError(FfiBridgeError):
    """
    Base for failures scoped to one target language.

    Attributes:
        language: The target language the failure belongs to
    """

    def __init__(self, message: str, language: Optional[str] = None, **kwargs):
        self.language = language
        super().__init__(message, **kwargs)

    def _format_message(self) -> str:
        text = super()._format_message()
        if self.language:
            return f"{self.language}: {text}"
        return text


class UnsupportedTypeForAbi(EmissionError):
    """A declared type or item cannot be lowered for a given language."""
    pass


class EmissionIoError(EmissionError):
    """Writing a generated file failed."""

    def __init__(self, path: str, reason: str, language: Optional[str] = None):
        self.path = path
        self.reason = reason
        super().__init__(f"cannot write {path}: {reason}", language=language)


class GenerationFailed(FfiBridgeError):
    """
    One or more target languages failed to emit.

    Languages that succeeded have already written their files; this
    aggregate lists the failures of the rest.

    Attributes:
        outcomes: All per-language outcomes of the run
    """

    def __init__(self, outcomes: Sequence):
        self.outcomes = list(outcomes)
        failed = [o for o in self.outcomes if not o.ok]
        lines = [f"generation failed for {len(failed)} language(s)"]
        for outcome in failed:
            lines.extend(str(err) for err in outcome.errors)
        super().__init__("\n".join(lines))

    def _format_message(self) -> str:
        return self.message
