"""
IDL Syntax Tree
===============

Node classes produced by the parser. The tree mirrors the text closely:
attributes are kept as written and type names are not looked up yet.
Semantic lowering (``ffibridge.idl.lowering``) turns it into raw IR
items.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

from ffibridge.errors import SourceLocation


@dataclass
class Attribute:
    """One ``Name`` or ``Name=value`` entry of an attribute list."""
    name: str
    value: Optional[str]
    location: SourceLocation


@dataclass
class AttributeList:
    entries: list[Attribute] = field(default_factory=list)

    def get(self, name: str) -> Optional[Attribute]:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def __iter__(self):
        return iter(self.entries)


# =============================================================================
# Type Expressions
# =============================================================================

@dataclass
class TypeExpr:
    """
    A written type.

    Exactly one of the shapes is used:
        name            - primitive or item name
        sequence_of     - sequence<T>
        map_of          - record<K, V>
    and ``optional`` wraps whichever shape with ``?``.
    """
    location: SourceLocation
    name: Optional[str] = None
    sequence_of: Optional["TypeExpr"] = None
    map_of: Optional[tuple["TypeExpr", "TypeExpr"]] = None
    optional: bool = False

    def __str__(self) -> str:
        if self.sequence_of is not None:
            text = f"sequence<{self.sequence_of}>"
        elif self.map_of is not None:
            text = f"record<{self.map_of[0]}, {self.map_of[1]}>"
        else:
            text = self.name or "?"
        return text + ("?" if self.optional else "")


@dataclass
class LiteralExpr:
    """A default value as written: kind is one of null, boolean, integer,
    float, string, empty_sequence, empty_map, identifier."""
    kind: str
    value: Union[None, bool, int, float, str]
    location: SourceLocation


# =============================================================================
# Declarations
# =============================================================================

@dataclass
class ParamDecl:
    name: str
    type: TypeExpr
    default: Optional[LiteralExpr]
    attributes: AttributeList
    location: SourceLocation


@dataclass
class OperationDecl:
    """A function, method, callback method or enum variant: ``T name(params);``."""
    name: str
    return_type: Optional[TypeExpr]
    params: list[ParamDecl]
    attributes: AttributeList
    location: SourceLocation
    docstring: Optional[str] = None
    returns_void: bool = False


@dataclass
class ConstructorDecl:
    params: list[ParamDecl]
    attributes: AttributeList
    location: SourceLocation
    docstring: Optional[str] = None


@dataclass
class FieldDecl:
    name: str
    type: TypeExpr
    default: Optional[LiteralExpr]
    attributes: AttributeList
    location: SourceLocation
    docstring: Optional[str] = None


@dataclass
class NamespaceDecl:
    name: str
    functions: list[OperationDecl]
    attributes: AttributeList
    location: SourceLocation
    docstring: Optional[str] = None


@dataclass
class DictionaryDecl:
    name: str
    fields: list[FieldDecl]
    attributes: AttributeList
    location: SourceLocation
    docstring: Optional[str] = None


@dataclass
class EnumDecl:
    """A flat enum: ``enum Name { "A", "B" };``."""
    name: str
    variants: list[tuple[str, SourceLocation]]
    attributes: AttributeList
    location: SourceLocation
    docstring: Optional[str] = None


@dataclass
class InterfaceDecl:
    """
    ``interface Name { ... };``

    Depending on attributes this is an object ([Threadsafe] or none) or an
    enum with fields ([Enum] / [Error]), in which case ``operations`` are
    its variants.
    """
    name: str
    constructors: list[ConstructorDecl]
    operations: list[OperationDecl]
    attributes: AttributeList
    location: SourceLocation
    docstring: Optional[str] = None


@dataclass
class CallbackDecl:
    name: str
    operations: list[OperationDecl]
    attributes: AttributeList
    location: SourceLocation
    docstring: Optional[str] = None


@dataclass
class TypedefDecl:
    """``[External="ns"] typedef <kind> Name;``"""
    name: str
    kind: str
    attributes: AttributeList
    location: SourceLocation


Definition = Union[
    NamespaceDecl, DictionaryDecl, EnumDecl, InterfaceDecl, CallbackDecl, TypedefDecl
]


@dataclass
class IdlFile:
    filename: str
    definitions: list[Definition] = field(default_factory=list)

    @property
    def namespaces(self) -> list[NamespaceDecl]:
        return [d for d in self.definitions if isinstance(d, NamespaceDecl)]
