"""
Interface Intermediate Representation
=====================================

The canonical model every emitter consumes.

- **types**: type references (primitives, compounds, named items)
- **model**: items and the InterfaceDescription container
- **builder**: merges raw source batches into one resolved description
- **validator**: well-formedness checks returning diagnostics
- **serialize**: stable JSON rendering
- **checksum**: 16-bit interface checksums
"""

from ffibridge.ir.model import (
    IR_VERSION,
    Argument,
    CallbackInterface,
    Constructor,
    Enum,
    ExternalDeclaration,
    Field,
    Function,
    InterfaceDescription,
    Literal,
    LiteralKind,
    Method,
    Object,
    Record,
    SelfMode,
    SourceBatch,
    ThreadingPolicy,
    Variant,
)
from ffibridge.ir.types import (
    CallbackInterfaceType,
    EnumType,
    ExternalType,
    MappingType,
    NamedType,
    ObjectType,
    OptionalType,
    PrimitiveKind,
    PrimitiveType,
    RecordType,
    SequenceType,
    TypeRef,
)

__all__ = [
    "IR_VERSION",
    "Argument",
    "CallbackInterface",
    "CallbackInterfaceType",
    "Constructor",
    "Enum",
    "EnumType",
    "ExternalDeclaration",
    "ExternalType",
    "Field",
    "Function",
    "InterfaceDescription",
    "Literal",
    "LiteralKind",
    "MappingType",
    "Method",
    "NamedType",
    "Object",
    "ObjectType",
    "OptionalType",
    "PrimitiveKind",
    "PrimitiveType",
    "Record",
    "RecordType",
    "SelfMode",
    "SequenceType",
    "SourceBatch",
    "ThreadingPolicy",
    "TypeRef",
    "Variant",
]
