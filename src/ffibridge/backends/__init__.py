"""
Language Backends
=================

One concrete backend per target language, selected by name at dispatch
time. They share no base class; see ``base.LanguageBackend`` for the
capability set every backend provides.

| Language | Backend        | Output                                   |
|----------|----------------|------------------------------------------|
| python   | PythonBackend  | <ns>.py (ctypes + ffibridge.runtime)     |
| kotlin   | KotlinBackend  | <package path>/<ns>.kt (JNA)             |
| swift    | SwiftBackend   | <ns>.swift, <ns>FFI.h, <ns>FFI.modulemap |
| ruby     | RubyBackend    | <ns>.rb (ffi gem)                        |
"""

from ffibridge.backends.base import (
    BackendContext,
    EmissionResult,
    EmittedItem,
    LanguageBackend,
    TypeMapping,
    emit_bindings,
)
from ffibridge.backends.kotlin import KotlinBackend
from ffibridge.backends.python import PythonBackend
from ffibridge.backends.ruby import RubyBackend
from ffibridge.backends.swift import SwiftBackend
from ffibridge.ir.types import TypeRef

BACKENDS: dict[str, type] = {
    "python": PythonBackend,
    "kotlin": KotlinBackend,
    "swift": SwiftBackend,
    "ruby": RubyBackend,
}


def available_languages() -> list[str]:
    return sorted(BACKENDS)


def create_backend(language: str, context: BackendContext) -> LanguageBackend:
    """
    Instantiate the backend for a language.

    Raises:
        ValueError: If no backend is registered under that name
    """
    try:
        backend_cls = BACKENDS[language]
    except KeyError:
        raise ValueError(
            f"unknown language '{language}' (available: {', '.join(available_languages())})"
        ) from None
    return backend_cls(context)


def map_type(language: str, ref: TypeRef, context: BackendContext) -> TypeMapping:
    """Type Mapper entry point: how ref appears in one language."""
    return create_backend(language, context).map_type(ref)


__all__ = [
    "BACKENDS",
    "BackendContext",
    "EmissionResult",
    "EmittedItem",
    "KotlinBackend",
    "LanguageBackend",
    "PythonBackend",
    "RubyBackend",
    "SwiftBackend",
    "TypeMapping",
    "available_languages",
    "create_backend",
    "emit_bindings",
    "map_type",
]
