"""
ABI Types and Functions
=======================

The closed set of types that may appear in an exported C-compatible
signature, and the function records the scaffolding exports and the
bindings import.

FFI Types
---------
| FfiType        | C type                     | Used for                      |
|----------------|----------------------------|-------------------------------|
| INT8..UINT64   | int8_t..uint64_t           | integers, booleans (INT8)     |
| FLOAT32/64     | float, double              | floats                        |
| HANDLE         | uint64_t                   | objects, callbacks, futures   |
| BUFFER         | ForeignBuffer (by value)   | every serialized value        |
| FOREIGN_BYTES  | ForeignBytes (by value)    | bytes to copy into a buffer   |
| CALL_STATUS    | CallStatus*                | status out parameter          |
| CONTINUATION   | void (*)(uint64_t, int8_t) | async poll continuation       |
| VTABLE         | const struct vtable*       | callback registration         |
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class FfiType(Enum):
    INT8 = "i8"
    UINT8 = "u8"
    INT16 = "i16"
    UINT16 = "u16"
    INT32 = "i32"
    UINT32 = "u32"
    INT64 = "i64"
    UINT64 = "u64"
    FLOAT32 = "f32"
    FLOAT64 = "f64"
    HANDLE = "handle"
    BUFFER = "buffer"
    FOREIGN_BYTES = "foreign_bytes"
    CALL_STATUS = "call_status"
    CONTINUATION = "continuation"
    VTABLE = "vtable"

    @property
    def suffix(self) -> str:
        """Name fragment used in future family symbols."""
        return self.value

    @property
    def is_numeric(self) -> bool:
        return self.value[0] in "uif" and self.value[1:].isdigit()


VOID_SUFFIX = "void"


@dataclass(frozen=True)
class FfiArgument:
    """
    One parameter of an exported function.

    Attributes:
        name: Parameter name
        type: Its FFI type
        out: True for an out parameter passed by pointer
    """
    name: str
    type: FfiType
    out: bool = False


@dataclass(frozen=True)
class FfiFunction:
    """
    One exported ABI symbol.

    Attributes:
        name: Full symbol name
        arguments: Parameters, excluding the trailing CallStatus pointer
        return_type: FFI return type, None for void
        has_call_status: Whether a CallStatus* follows the arguments
        is_async: The function returns a future handle
    """
    name: str
    arguments: tuple[FfiArgument, ...] = ()
    return_type: Optional[FfiType] = None
    has_call_status: bool = True
    is_async: bool = False

    def signature(self) -> str:
        """Readable signature, e.g. 'f(a: i32, &status) -> buffer'."""
        params = [f"{a.name}: {'*' if a.out else ''}{a.type.value}" for a in self.arguments]
        if self.has_call_status:
            params.append("&status")
        ret = self.return_type.value if self.return_type else "void"
        return f"{self.name}({', '.join(params)}) -> {ret}"


@dataclass(frozen=True)
class VTableMethod:
    """
    One method slot of a callback vtable.

    The foreign implementation is called as
    ``(handle, arguments..., out_return*, CallStatus*)``; ``out_return``
    is omitted for void methods.
    """
    name: str
    arguments: tuple[FfiArgument, ...] = ()
    return_type: Optional[FfiType] = None


@dataclass(frozen=True)
class CallbackVTable:
    """
    Vtable layout for one callback interface: free, clone, then methods.

    Attributes:
        interface: Callback interface name
        init_function: Registration symbol taking the vtable pointer
        methods: Method slots in declaration order
    """
    interface: str
    init_function: FfiFunction
    methods: tuple[VTableMethod, ...] = ()


@dataclass(frozen=True)
class FutureFamily:
    """The poll/complete/cancel/free functions for one result FFI type."""
    suffix: str
    return_type: Optional[FfiType]
    poll: FfiFunction
    complete: FfiFunction
    cancel: FfiFunction
    free: FfiFunction

    @property
    def functions(self) -> tuple[FfiFunction, ...]:
        return (self.poll, self.complete, self.cancel, self.free)


@dataclass(frozen=True)
class ObjectFunctions:
    clone: FfiFunction
    free: FfiFunction


@dataclass
class ComponentFfi:
    """
    The complete ABI surface of one namespace.

    Attributes:
        namespace: Interface namespace
        prefix: Symbol prefix shared by every export
        contract_version: Version of these conventions
        checksum: Interface checksum
        functions: Every exported symbol, in emission order
        callables: (owner, callable name) -> function; owner is "" for
                   free functions
        checksums: checksum symbol -> expected value
        objects: object name -> clone/free functions
        vtables: callback interface name -> vtable layout
        futures: future family suffix -> family
    """
    namespace: str
    prefix: str
    contract_version: int
    checksum: int
    functions: list[FfiFunction] = field(default_factory=list)
    callables: dict[tuple[str, str], FfiFunction] = field(default_factory=dict)
    checksums: dict[str, int] = field(default_factory=dict)
    checksum_symbols: dict[tuple[str, str], str] = field(default_factory=dict)
    objects: dict[str, ObjectFunctions] = field(default_factory=dict)
    vtables: dict[str, CallbackVTable] = field(default_factory=dict)
    futures: dict[str, FutureFamily] = field(default_factory=dict)

    def function_for(self, owner: str, name: str) -> FfiFunction:
        return self.callables[(owner, name)]

    def checksum_symbol(self, owner: str, name: str) -> str:
        return self.checksum_symbols[(owner, name)]

    def future_family(self, return_type: Optional[FfiType]) -> FutureFamily:
        return self.futures[return_type.suffix if return_type else VOID_SUFFIX]

    def symbol(self, name: str) -> str:
        return f"{self.prefix}{name}"

    @property
    def contract_version_symbol(self) -> str:
        return self.symbol("contract_version")

    @property
    def buffer_alloc(self) -> FfiFunction:
        return self._builtin("buffer_alloc")

    @property
    def buffer_from_bytes(self) -> FfiFunction:
        return self._builtin("buffer_from_bytes")

    @property
    def buffer_free(self) -> FfiFunction:
        return self._builtin("buffer_free")

    def _builtin(self, name: str) -> FfiFunction:
        symbol = self.symbol(name)
        for fn in self.functions:
            if fn.name == symbol:
                return fn
        raise KeyError(symbol)
