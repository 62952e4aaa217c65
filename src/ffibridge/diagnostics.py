"""
Diagnostics
===========

Typed, non-raising findings produced by extraction and validation.
Unlike exceptions, diagnostics are collected so a single run reports
every problem it can find.

Message Format
--------------
    arithmetic.idl:12:5: warning: [Counter] concurrent object method 'attach'
        takes non-thread-safe type 'Widget' (thread-safety)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ffibridge.errors import SourceLocation


class Severity(Enum):
    NOTE = "note"
    WARNING = "warning"
    ERROR = "error"


class DiagnosticCode(Enum):
    """Stable identifiers; the warning codes are what validation policies name."""
    UNRESOLVED_TYPE = "unresolved-type"
    DUPLICATE_NAME = "duplicate-name"
    THREAD_SAFETY = "thread-safety"
    ERROR_TYPE = "error-type"
    ABI_RECURSION = "abi-recursion"
    SKIPPED_DEPENDENCY = "skipped-dependency"
    EXTRACTION = "extraction"


@dataclass(frozen=True)
class Diagnostic:
    """
    One finding about the interface.

    Attributes:
        code: What kind of problem this is
        severity: NOTE, WARNING or ERROR
        message: Human-readable description
        item: Top-level item the finding is attached to
        location: Source position, when known
        subject: Name the finding is about (the unresolved type name, the
                 duplicated name, ...), used to build typed errors
    """
    code: DiagnosticCode
    severity: Severity
    message: str
    item: Optional[str] = None
    location: Optional[SourceLocation] = None
    subject: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def promoted(self) -> "Diagnostic":
        """The same finding at ERROR severity."""
        return Diagnostic(self.code, Severity.ERROR, self.message, self.item, self.location, self.subject)

    def __str__(self) -> str:
        prefix = f"{self.location}: " if self.location else ""
        item = f"[{self.item}] " if self.item else ""
        return f"{prefix}{self.severity.value}: {item}{self.message} ({self.code.value})"

