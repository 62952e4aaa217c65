"""
Interface Type References
=========================

Type references used throughout the interface model. A reference is an
immutable value; compound references nest other references.

Reference Kinds
---------------
| Kind              | Example IDL             | Notes                          |
|-------------------|-------------------------|--------------------------------|
| Primitive         | u32, string, timestamp  | fixed set, see PrimitiveKind   |
| Optional          | string?                 | heap-indirect                  |
| Sequence          | sequence<u8>            | heap-indirect                  |
| Mapping           | record<string, i64>     | heap-indirect                  |
| Record            | Point                   | value type                     |
| Enum              | Shape                   | value type, may carry fields   |
| Object            | Counter                 | handle                         |
| CallbackInterface | Logger                  | handle, implemented foreign    |
| External          | Other namespace item    | resolved against imports       |
| Named             | (unresolved)            | only before resolution         |

Canonical Names
---------------
Every reference has a ``canonical_name`` used to derive converter and
helper identifiers in generated code, for example
``sequence<record<string, Point>>`` becomes ``SequenceMapStringTypePoint``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Optional


# =============================================================================
# Primitive Kinds
# =============================================================================

class PrimitiveKind(Enum):
    """The closed set of primitive interface types."""

    U8 = "u8"
    I8 = "i8"
    U16 = "u16"
    I16 = "i16"
    U32 = "u32"
    I32 = "i32"
    U64 = "u64"
    I64 = "i64"
    F32 = "f32"
    F64 = "f64"
    BOOLEAN = "boolean"
    STRING = "string"
    BYTES = "bytes"
    TIMESTAMP = "timestamp"
    DURATION = "duration"

    @property
    def is_integer(self) -> bool:
        return self.value[0] in "ui" and self.value[1:].isdigit()

    @property
    def is_signed(self) -> bool:
        return self.value.startswith("i") or self.is_float

    @property
    def is_float(self) -> bool:
        return self in (PrimitiveKind.F32, PrimitiveKind.F64)

    @property
    def bit_width(self) -> Optional[int]:
        """Width in bits for numeric kinds, None otherwise."""
        if self.is_integer or self.is_float:
            return int(self.value[1:])
        return None

    @property
    def integer_range(self) -> tuple[int, int]:
        """Inclusive (min, max) for integer kinds."""
        if not self.is_integer:
            raise ValueError(f"{self.value} is not an integer kind")
        width = self.bit_width
        if self.is_signed:
            return -(1 << (width - 1)), (1 << (width - 1)) - 1
        return 0, (1 << width) - 1


PRIMITIVE_NAMES: dict[str, PrimitiveKind] = {kind.value: kind for kind in PrimitiveKind}


# =============================================================================
# Type Reference Classes
# =============================================================================

class TypeRef:
    """Base class for all type references."""

    def children(self) -> tuple["TypeRef", ...]:
        """Directly nested references."""
        return ()

    def walk(self) -> Iterator["TypeRef"]:
        """Yield this reference and every nested reference, depth first."""
        yield self
        for child in self.children():
            yield from child.walk()

    def transform(self, fn: Callable[["TypeRef"], "TypeRef"]) -> "TypeRef":
        """Rebuild bottom-up, applying fn to every node."""
        return fn(self)

    @property
    def canonical_name(self) -> str:
        raise NotImplementedError

    @property
    def is_heap_indirect(self) -> bool:
        """True if the value is stored behind an indirection in every target."""
        return False


@dataclass(frozen=True)
class PrimitiveType(TypeRef):
    kind: PrimitiveKind

    def __str__(self) -> str:
        return self.kind.value

    @property
    def canonical_name(self) -> str:
        return self.kind.value.capitalize()


@dataclass(frozen=True)
class OptionalType(TypeRef):
    inner: TypeRef

    def __str__(self) -> str:
        return f"{self.inner}?"

    def children(self) -> tuple[TypeRef, ...]:
        return (self.inner,)

    def transform(self, fn):
        return fn(OptionalType(self.inner.transform(fn)))

    @property
    def canonical_name(self) -> str:
        return f"Optional{self.inner.canonical_name}"

    @property
    def is_heap_indirect(self) -> bool:
        return True


@dataclass(frozen=True)
class SequenceType(TypeRef):
    inner: TypeRef

    def __str__(self) -> str:
        return f"sequence<{self.inner}>"

    def children(self) -> tuple[TypeRef, ...]:
        return (self.inner,)

    def transform(self, fn):
        return fn(SequenceType(self.inner.transform(fn)))

    @property
    def canonical_name(self) -> str:
        return f"Sequence{self.inner.canonical_name}"

    @property
    def is_heap_indirect(self) -> bool:
        return True


@dataclass(frozen=True)
class MappingType(TypeRef):
    key: TypeRef
    value: TypeRef

    def __str__(self) -> str:
        return f"record<{self.key}, {self.value}>"

    def children(self) -> tuple[TypeRef, ...]:
        return (self.key, self.value)

    def transform(self, fn):
        return fn(MappingType(self.key.transform(fn), self.value.transform(fn)))

    @property
    def canonical_name(self) -> str:
        return f"Map{self.key.canonical_name}{self.value.canonical_name}"

    @property
    def is_heap_indirect(self) -> bool:
        return True


@dataclass(frozen=True)
class ItemRef(TypeRef):
    name: str

    def __str__(self) -> str:
        return self.name

    @property
    def canonical_name(self) -> str:
        return f"Type{self.name}"


@dataclass(frozen=True)
class RecordType(ItemRef):
    pass


@dataclass(frozen=True)
class EnumType(ItemRef):
    pass


@dataclass(frozen=True)
class ObjectType(ItemRef):
    pass


@dataclass(frozen=True)
class CallbackInterfaceType(ItemRef):
    pass


@dataclass(frozen=True)
class NamedType(ItemRef):
    """A reference by name that has not been resolved yet."""
    pass


@dataclass(frozen=True)
class ExternalType(TypeRef):
    """
    A reference to an item declared in another namespace.

    ``kind`` is one of "record", "enum", "object", "callback_interface",
    or None while the kind is still unknown.
    """
    namespace: str
    name: str
    kind: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.namespace}::{self.name}"

    @property
    def canonical_name(self) -> str:
        return f"Type{self.name}"


EXTERNAL_KINDS = ("record", "enum", "object", "callback_interface")

# Named reference class for each item kind string
NAMED_TYPE_CLASSES: dict[str, type] = {
    "record": RecordType,
    "enum": EnumType,
    "object": ObjectType,
    "callback_interface": CallbackInterfaceType,
}


def is_handle_type(ref: TypeRef) -> bool:
    """True for references that cross the boundary as a handle."""
    if isinstance(ref, (ObjectType, CallbackInterfaceType)):
        return True
    return isinstance(ref, ExternalType) and ref.kind in ("object", "callback_interface")


def named_references(ref: TypeRef) -> Iterator[TypeRef]:
    """Yield every nested reference that names an item."""
    for node in ref.walk():
        if isinstance(node, (ItemRef, ExternalType)):
            yield node
