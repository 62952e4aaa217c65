"""
Language Backend Protocol
=========================

Every target language is one backend object satisfying LanguageBackend.
Backends do not share a base class; they share the CodeWriter, the
naming helpers and the ComponentFfi they all read.

Capabilities
------------
| Method          | Produces                                           |
|-----------------|----------------------------------------------------|
| map_type        | TypeMapping: surface type, FFI type, lift, lower   |
| emit_function   | wrapper for a free function                        |
| emit_object     | lifetime-managing wrapper class for an object      |
| emit_callback   | protocol plus vtable registration for a callback   |
| emit_record     | value type declaration and converter               |
| emit_enum       | enum / sum type / error declaration and converter  |
| render          | assembles item fragments into output files         |

Each emit_* call returns an EmittedItem: text fragments keyed by the
section of the output file they belong to. A backend raises
UnsupportedTypeForAbi when an item cannot be expressed; ``emit_bindings``
collects those per item, and a language with any error produces no files.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from ffibridge.config import LanguageConfig
from ffibridge.errors import EmissionError, UnsupportedTypeForAbi
from ffibridge.ffi.types import ComponentFfi, FfiType
from ffibridge.ir.model import (
    CallbackInterface,
    Enum,
    Function,
    InterfaceDescription,
    Item,
    Object,
    Record,
)
from ffibridge.ir.types import TypeRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TypeMapping:
    """
    How one interface type appears in one target language.

    ``lift`` and ``lower`` are expression templates in which ``{}``
    stands for the value being converted.

    Attributes:
        surface: Target-language type name
        ffi_type: ABI-level type the value crosses as
        lift: ABI value -> surface value
        lower: surface value -> ABI value
    """
    surface: str
    ffi_type: FfiType
    lift: str
    lower: str

    def lift_expr(self, value: str) -> str:
        return self.lift.replace("{}", value)

    def lower_expr(self, value: str) -> str:
        return self.lower.replace("{}", value)


@dataclass
class BackendContext:
    """What a backend emits from."""
    ir: InterfaceDescription
    ffi: ComponentFfi
    config: LanguageConfig = field(default_factory=LanguageConfig)


@dataclass
class EmittedItem:
    """Generated fragments for one item, keyed by output section."""
    name: str
    sections: dict[str, str] = field(default_factory=dict)

    def add(self, section: str, text: str) -> None:
        if text:
            self.sections[section] = self.sections.get(section, "") + text


class LanguageBackend(Protocol):
    name: str
    formatter: tuple[str, ...]

    def map_type(self, ref: TypeRef) -> TypeMapping: ...

    def emit_function(self, function: Function) -> EmittedItem: ...

    def emit_object(self, obj: Object) -> EmittedItem: ...

    def emit_callback(self, callback: CallbackInterface) -> EmittedItem: ...

    def emit_record(self, record: Record) -> EmittedItem: ...

    def emit_enum(self, enum: Enum) -> EmittedItem: ...

    def render(self, items: list[EmittedItem]) -> dict[str, str]: ...


@dataclass
class EmissionResult:
    """
    Outcome of emitting one language.

    Attributes:
        language: Backend name
        files: Relative path -> content; empty when errors is not
        errors: Every item-level failure of this language
    """
    language: str
    files: dict[str, str] = field(default_factory=dict)
    errors: list[EmissionError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _emit_item(backend: LanguageBackend, item: Item) -> EmittedItem:
    if isinstance(item, Function):
        return backend.emit_function(item)
    if isinstance(item, Object):
        return backend.emit_object(item)
    if isinstance(item, CallbackInterface):
        return backend.emit_callback(item)
    if isinstance(item, Record):
        return backend.emit_record(item)
    if isinstance(item, Enum):
        return backend.emit_enum(item)
    raise TypeError(f"unknown item {item!r}")


def emit_bindings(backend: LanguageBackend, ir: InterfaceDescription) -> EmissionResult:
    """
    Emit every item of ir with one backend.

    Item failures are collected rather than raised, so one run reports
    every item a language cannot express.
    """
    result = EmissionResult(backend.name)
    emitted = []
    for item in ir.items:
        try:
            emitted.append(_emit_item(backend, item))
        except UnsupportedTypeForAbi as e:
            if e.item is None:
                e = UnsupportedTypeForAbi(e.message, language=backend.name, item=item.name, hint=e.hint)
            result.errors.append(e)
    if result.errors:
        logger.debug(f"{backend.name}: {len(result.errors)} item(s) cannot be emitted")
        return result

    result.files = backend.render(emitted)
    logger.debug(f"{backend.name}: rendered {', '.join(sorted(result.files))}")
    return result


def unsupported(language: str, message: str, item: Optional[str] = None) -> UnsupportedTypeForAbi:
    return UnsupportedTypeForAbi(message, language=language, item=item)
