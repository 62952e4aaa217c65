"""
Interface Model
===============

The canonical, language-agnostic model of a component's exported
interface. Instances are frozen dataclasses: the IR Builder produces an
InterfaceDescription once per run and every downstream stage shares it
read-only.

Item Kinds
----------
- Function: free function of the namespace
- Object: reference type with constructors and methods, crosses as a handle
- Record: value type with ordered fields
- Enum: value type with ordered variants, variants may carry fields
- CallbackInterface: method set implemented on the foreign side

Raw extraction output uses the same classes. Until the builder resolves
them, type references may be NamedType placeholders; SourceBatch is the
container the extractors hand to the builder.
"""

from dataclasses import dataclass, field, replace
from enum import Enum as _Enum
from typing import Callable, Iterator, Optional, Union

from ffibridge.errors import SourceLocation
from ffibridge.ir.types import TypeRef


IR_VERSION = 1


# =============================================================================
# Enumerations
# =============================================================================

class SelfMode(_Enum):
    """How a method receives its object."""
    SHARED_REF = "shared_ref"
    BY_VALUE = "by_value"
    CONSUMING = "consuming"


class ThreadingPolicy(_Enum):
    """Whether an object's instances may be used from several threads at once."""
    SINGLE_THREADED = "single_threaded"
    CONCURRENT = "concurrent"


class LiteralKind(_Enum):
    NULL = "null"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    EMPTY_SEQUENCE = "empty_sequence"
    EMPTY_MAP = "empty_map"
    ENUM = "enum"


@dataclass(frozen=True)
class Literal:
    """A default value for an argument or field."""
    kind: LiteralKind
    value: Union[None, bool, int, float, str] = None

    def __str__(self) -> str:
        if self.kind == LiteralKind.NULL:
            return "null"
        if self.kind == LiteralKind.EMPTY_SEQUENCE:
            return "[]"
        if self.kind == LiteralKind.EMPTY_MAP:
            return "{}"
        if self.kind == LiteralKind.STRING:
            return repr(self.value)
        if self.kind == LiteralKind.BOOLEAN:
            return "true" if self.value else "false"
        return str(self.value)


# =============================================================================
# Callables
# =============================================================================

@dataclass(frozen=True)
class Argument:
    name: str
    type: TypeRef
    default: Optional[Literal] = None

    def map_types(self, fn: Callable[[TypeRef], TypeRef]) -> "Argument":
        return replace(self, type=self.type.transform(fn))


def _map_optional(ref: Optional[TypeRef], fn) -> Optional[TypeRef]:
    return ref.transform(fn) if ref is not None else None


@dataclass(frozen=True)
class Function:
    """A free function exported by the namespace."""
    name: str
    arguments: tuple[Argument, ...] = ()
    return_type: Optional[TypeRef] = None
    throws: Optional[TypeRef] = None
    is_async: bool = False
    docstring: Optional[str] = None
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)

    kind = "function"

    def types(self) -> Iterator[TypeRef]:
        for arg in self.arguments:
            yield arg.type
        if self.return_type is not None:
            yield self.return_type
        if self.throws is not None:
            yield self.throws

    def map_types(self, fn):
        return replace(
            self,
            arguments=tuple(a.map_types(fn) for a in self.arguments),
            return_type=_map_optional(self.return_type, fn),
            throws=_map_optional(self.throws, fn),
        )


@dataclass(frozen=True)
class Constructor:
    """
    An object constructor.

    The primary constructor is named ``new``; other names are secondary
    (named) constructors.
    """
    name: str = "new"
    arguments: tuple[Argument, ...] = ()
    throws: Optional[TypeRef] = None
    is_async: bool = False
    docstring: Optional[str] = None

    @property
    def is_primary(self) -> bool:
        return self.name == "new"

    def types(self) -> Iterator[TypeRef]:
        for arg in self.arguments:
            yield arg.type
        if self.throws is not None:
            yield self.throws

    def map_types(self, fn):
        return replace(
            self,
            arguments=tuple(a.map_types(fn) for a in self.arguments),
            throws=_map_optional(self.throws, fn),
        )


@dataclass(frozen=True)
class Method:
    """A method of an Object or a CallbackInterface."""
    name: str
    arguments: tuple[Argument, ...] = ()
    return_type: Optional[TypeRef] = None
    throws: Optional[TypeRef] = None
    is_async: bool = False
    self_mode: SelfMode = SelfMode.SHARED_REF
    docstring: Optional[str] = None

    def types(self) -> Iterator[TypeRef]:
        for arg in self.arguments:
            yield arg.type
        if self.return_type is not None:
            yield self.return_type
        if self.throws is not None:
            yield self.throws

    def map_types(self, fn):
        return replace(
            self,
            arguments=tuple(a.map_types(fn) for a in self.arguments),
            return_type=_map_optional(self.return_type, fn),
            throws=_map_optional(self.throws, fn),
        )


# =============================================================================
# Type Declarations
# =============================================================================

@dataclass(frozen=True)
class Object:
    name: str
    constructors: tuple[Constructor, ...] = ()
    methods: tuple[Method, ...] = ()
    threading: ThreadingPolicy = ThreadingPolicy.SINGLE_THREADED
    docstring: Optional[str] = None
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)

    kind = "object"

    @property
    def primary_constructor(self) -> Optional[Constructor]:
        for ctor in self.constructors:
            if ctor.is_primary:
                return ctor
        return None

    def types(self) -> Iterator[TypeRef]:
        for member in (*self.constructors, *self.methods):
            yield from member.types()

    def map_types(self, fn):
        return replace(
            self,
            constructors=tuple(c.map_types(fn) for c in self.constructors),
            methods=tuple(m.map_types(fn) for m in self.methods),
        )


@dataclass(frozen=True)
class Field:
    name: str
    type: TypeRef
    default: Optional[Literal] = None
    docstring: Optional[str] = None

    def map_types(self, fn) -> "Field":
        return replace(self, type=self.type.transform(fn))


@dataclass(frozen=True)
class Record:
    name: str
    fields: tuple[Field, ...] = ()
    docstring: Optional[str] = None
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)

    kind = "record"

    def types(self) -> Iterator[TypeRef]:
        for f in self.fields:
            yield f.type

    def map_types(self, fn):
        return replace(self, fields=tuple(f.map_types(fn) for f in self.fields))


@dataclass(frozen=True)
class Variant:
    name: str
    fields: tuple[Field, ...] = ()
    docstring: Optional[str] = None

    def map_types(self, fn) -> "Variant":
        return replace(self, fields=tuple(f.map_types(fn) for f in self.fields))


@dataclass(frozen=True)
class Enum:
    name: str
    variants: tuple[Variant, ...] = ()
    is_error: bool = False
    docstring: Optional[str] = None
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)

    kind = "enum"

    @property
    def is_flat(self) -> bool:
        """True when no variant carries fields."""
        return all(not v.fields for v in self.variants)

    def types(self) -> Iterator[TypeRef]:
        for variant in self.variants:
            for f in variant.fields:
                yield f.type

    def map_types(self, fn):
        return replace(self, variants=tuple(v.map_types(fn) for v in self.variants))


@dataclass(frozen=True)
class CallbackInterface:
    name: str
    methods: tuple[Method, ...] = ()
    docstring: Optional[str] = None
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)

    kind = "callback_interface"

    def types(self) -> Iterator[TypeRef]:
        for method in self.methods:
            yield from method.types()

    def map_types(self, fn):
        return replace(self, methods=tuple(m.map_types(fn) for m in self.methods))


Item = Union[Function, Object, Record, Enum, CallbackInterface]

ITEM_CLASSES: dict[str, type] = {
    "function": Function,
    "object": Object,
    "record": Record,
    "enum": Enum,
    "callback_interface": CallbackInterface,
}


# =============================================================================
# Containers
# =============================================================================

@dataclass(frozen=True)
class ExternalDeclaration:
    """
    An item another namespace declares that this one may reference.

    ``kind`` is None for a textual alias whose kind is resolved later.
    """
    namespace: str
    name: str
    kind: Optional[str] = None


@dataclass(frozen=True)
class SourceBatch:
    """
    Raw items extracted from one source.

    Attributes:
        namespace: Namespace the source declares
        items: Items in declaration order, references unresolved
        origin: Human-readable source name (file or library path)
        externals: External aliases the source declares, by local name
        docstring: Namespace documentation, if any
    """
    namespace: str
    items: tuple[Item, ...]
    origin: str = "<input>"
    externals: tuple[ExternalDeclaration, ...] = ()
    docstring: Optional[str] = None


@dataclass(frozen=True)
class InterfaceDescription:
    """
    The resolved interface of one namespace.

    Attributes:
        namespace: Namespace identifier (after any configured rename)
        items: Declared items, in first-seen source order
        imports: Items of other namespaces referenced through External types
        checksum: 16-bit checksum over the items
        version: IR format version
        docstring: Namespace documentation
    """
    namespace: str
    items: tuple[Item, ...] = ()
    imports: tuple[ExternalDeclaration, ...] = ()
    checksum: int = 0
    version: int = IR_VERSION
    docstring: Optional[str] = None

    def get(self, name: str) -> Optional[Item]:
        for item in self.items:
            if item.name == name:
                return item
        return None

    def _of_kind(self, cls) -> list:
        return [item for item in self.items if isinstance(item, cls)]

    @property
    def functions(self) -> list[Function]:
        return self._of_kind(Function)

    @property
    def objects(self) -> list[Object]:
        return self._of_kind(Object)

    @property
    def records(self) -> list[Record]:
        return self._of_kind(Record)

    @property
    def enums(self) -> list[Enum]:
        return self._of_kind(Enum)

    @property
    def callback_interfaces(self) -> list[CallbackInterface]:
        return self._of_kind(CallbackInterface)

    def all_types(self) -> Iterator[TypeRef]:
        """Yield every type reference, nested ones included."""
        for item in self.items:
            for ref in item.types():
                yield from ref.walk()

    def error_type_names(self) -> set[str]:
        """Names of items used as the error type of any callable."""
        names = set()
        for item in self.items:
            for callable_ in iter_callables(item):
                if callable_.throws is not None and hasattr(callable_.throws, "name"):
                    names.add(callable_.throws.name)
        return names

    def without(self, names: set[str]) -> "InterfaceDescription":
        return replace(self, items=tuple(i for i in self.items if i.name not in names))


def iter_callables(item: Item) -> Iterator[Union[Function, Constructor, Method]]:
    """Yield every callable an item exposes."""
    if isinstance(item, Function):
        yield item
    elif isinstance(item, Object):
        yield from item.constructors
        yield from item.methods
    elif isinstance(item, CallbackInterface):
        yield from item.methods
