"""
ABI Lowering
============

The C-compatible surface shared by scaffolding and bindings.

- **types**: FfiType set and function, vtable and future records
- **lowering**: InterfaceDescription -> ComponentFfi
"""

from ffibridge.ffi.lowering import (
    CONTRACT_VERSION,
    FfiLowering,
    lower_interface,
    lower_return,
    lower_type,
    symbol_prefix,
)
from ffibridge.ffi.types import (
    CallbackVTable,
    ComponentFfi,
    FfiArgument,
    FfiFunction,
    FfiType,
    FutureFamily,
    ObjectFunctions,
    VTableMethod,
)

__all__ = [
    "CONTRACT_VERSION",
    "CallbackVTable",
    "ComponentFfi",
    "FfiArgument",
    "FfiFunction",
    "FfiLowering",
    "FfiType",
    "FutureFamily",
    "ObjectFunctions",
    "VTableMethod",
    "lower_interface",
    "lower_return",
    "lower_type",
    "symbol_prefix",
]
