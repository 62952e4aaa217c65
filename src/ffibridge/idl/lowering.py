"""
IDL Semantic Lowering
=====================

Turns a parsed ``IdlFile`` into a ``SourceBatch`` of raw IR items, the
same shape the binary metadata decoder produces. After this step nothing
downstream knows whether an item came from text or from a library.

What happens here:
- attributes are interpreted (Throws, Async, Name, Self, Threadsafe,
  Enum, Error, External) and rejected where they do not belong
- written types become type references; primitive names map to
  PrimitiveType, ``[External]`` typedef names to ExternalType, and
  everything else to an unresolved NamedType
- default values become Literals

Unknown type names are deliberately left unresolved. Multi-file builds
only resolve names after every source has been merged.
"""

import difflib
import logging
from typing import Optional

from ffibridge.errors import IdlSyntaxError, SourceLocation
from ffibridge.idl.parser import parse_idl
from ffibridge.idl.syntax import (
    AttributeList,
    CallbackDecl,
    DictionaryDecl,
    EnumDecl,
    IdlFile,
    InterfaceDecl,
    LiteralExpr,
    NamespaceDecl,
    OperationDecl,
    ParamDecl,
    TypedefDecl,
    TypeExpr,
)
from ffibridge.ir.model import (
    Argument,
    CallbackInterface,
    Constructor,
    Enum,
    ExternalDeclaration,
    Field,
    Function,
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
    PRIMITIVE_NAMES,
    ExternalType,
    MappingType,
    NamedType,
    OptionalType,
    PrimitiveType,
    SequenceType,
    TypeRef,
)

logger = logging.getLogger(__name__)


# Which attributes each declaration accepts
ALLOWED_ATTRIBUTES: dict[str, frozenset] = {
    "namespace": frozenset(),
    "function": frozenset({"Throws", "Async"}),
    "dictionary": frozenset(),
    "field": frozenset(),
    "enum": frozenset({"Error"}),
    "enum_interface": frozenset({"Enum", "Error"}),
    "object": frozenset({"Threadsafe"}),
    "constructor": frozenset({"Name", "Throws", "Async"}),
    "method": frozenset({"Throws", "Async", "Self"}),
    "variant": frozenset(),
    "callback": frozenset(),
    "callback_method": frozenset({"Throws"}),
    "typedef": frozenset({"External"}),
    "param": frozenset({"ByRef"}),
}

KNOWN_ATTRIBUTES = sorted(set().union(*ALLOWED_ATTRIBUTES.values()))

SELF_MODES = {
    "ByArc": SelfMode.BY_VALUE,
    "Consume": SelfMode.CONSUMING,
}

TYPEDEF_ITEM_KINDS = {
    "extern": None,
    "dictionary": "record",
    "enum": "enum",
    "interface": "object",
    "callback": "callback_interface",
}

LITERAL_KINDS = {
    "null": LiteralKind.NULL,
    "boolean": LiteralKind.BOOLEAN,
    "integer": LiteralKind.INTEGER,
    "float": LiteralKind.FLOAT,
    "string": LiteralKind.STRING,
    "empty_sequence": LiteralKind.EMPTY_SEQUENCE,
    "empty_map": LiteralKind.EMPTY_MAP,
    "identifier": LiteralKind.ENUM,
}


class IdlLowering:
    """
    Lowers one parsed file to a SourceBatch.

    Usage:
        batch = IdlLowering(tree, source_text).lower()
    """

    def __init__(self, tree: IdlFile, source: str = ""):
        self.tree = tree
        self._source_lines = source.splitlines()
        self._aliases: dict[str, ExternalDeclaration] = {}

    def lower(self) -> SourceBatch:
        """
        Produce the raw items of the file.

        Raises:
            IdlSyntaxError: For a missing or repeated namespace block and
                            for misplaced or unknown attributes
        """
        namespace = self._namespace()

        # Aliases first, so any definition may use them
        for definition in self.tree.definitions:
            if isinstance(definition, TypedefDecl):
                self._register_typedef(definition)

        items = []
        for definition in self.tree.definitions:
            if isinstance(definition, NamespaceDecl):
                items.extend(self._lower_function(op) for op in definition.functions)
            elif isinstance(definition, DictionaryDecl):
                items.append(self._lower_dictionary(definition))
            elif isinstance(definition, EnumDecl):
                items.append(self._lower_flat_enum(definition))
            elif isinstance(definition, InterfaceDecl):
                items.append(self._lower_interface(definition))
            elif isinstance(definition, CallbackDecl):
                items.append(self._lower_callback(definition))

        logger.debug(f"Lowered {len(items)} items for namespace '{namespace.name}'")
        return SourceBatch(
            namespace=namespace.name,
            items=tuple(items),
            origin=self.tree.filename,
            externals=tuple(self._aliases.values()),
            docstring=namespace.docstring,
        )

    # =========================================================================
    # Error Helpers
    # =========================================================================

    def _error(self, message: str, location: SourceLocation, hint: Optional[str] = None) -> IdlSyntaxError:
        source_line = None
        if 0 < location.line <= len(self._source_lines):
            source_line = self._source_lines[location.line - 1]
        return IdlSyntaxError(message, location=location, hint=hint, source_line=source_line)

    def _check_attributes(self, attributes: AttributeList, context: str) -> None:
        allowed = ALLOWED_ATTRIBUTES[context]
        seen = set()
        for attr in attributes:
            if attr.name in seen:
                raise self._error(f"attribute '{attr.name}' given twice", attr.location)
            seen.add(attr.name)
            if attr.name in allowed:
                continue
            if attr.name in KNOWN_ATTRIBUTES:
                raise self._error(
                    f"attribute '{attr.name}' is not allowed on {context.replace('_', ' ')}",
                    attr.location,
                )
            close = difflib.get_close_matches(attr.name, KNOWN_ATTRIBUTES, n=1)
            raise self._error(
                f"unknown attribute '{attr.name}'",
                attr.location,
                hint=f"did you mean '{close[0]}'?" if close else None,
            )

    def _attribute_value(self, attributes: AttributeList, name: str) -> Optional[str]:
        attr = attributes.get(name)
        if attr is None:
            return None
        if not attr.value:
            raise self._error(f"attribute '{name}' needs a value", attr.location)
        return attr.value

    def _flag(self, attributes: AttributeList, name: str) -> bool:
        attr = attributes.get(name)
        if attr is not None and attr.value is not None:
            raise self._error(f"attribute '{name}' takes no value", attr.location)
        return attr is not None

    # =========================================================================
    # Namespace and Typedefs
    # =========================================================================

    def _namespace(self) -> NamespaceDecl:
        namespaces = self.tree.namespaces
        if not namespaces:
            raise self._error(
                "missing namespace declaration",
                SourceLocation(self.tree.filename, 1, 1),
                hint="add 'namespace <name> {};'",
            )
        if len(namespaces) > 1:
            raise self._error("only one namespace block is allowed per file", namespaces[1].location)
        self._check_attributes(namespaces[0].attributes, "namespace")
        return namespaces[0]

    def _register_typedef(self, decl: TypedefDecl) -> None:
        self._check_attributes(decl.attributes, "typedef")
        namespace = self._attribute_value(decl.attributes, "External")
        if namespace is None:
            raise self._error(
                f"typedef '{decl.name}' must name its namespace",
                decl.location,
                hint=f'write [External="other_namespace"] typedef {decl.kind} {decl.name};',
            )
        self._aliases[decl.name] = ExternalDeclaration(namespace, decl.name, TYPEDEF_ITEM_KINDS[decl.kind])

    # =========================================================================
    # Types and Literals
    # =========================================================================

    def _lower_type(self, expr: TypeExpr) -> TypeRef:
        if expr.sequence_of is not None:
            ref: TypeRef = SequenceType(self._lower_type(expr.sequence_of))
        elif expr.map_of is not None:
            ref = MappingType(self._lower_type(expr.map_of[0]), self._lower_type(expr.map_of[1]))
        elif expr.name in PRIMITIVE_NAMES:
            ref = PrimitiveType(PRIMITIVE_NAMES[expr.name])
        elif expr.name in self._aliases:
            alias = self._aliases[expr.name]
            ref = ExternalType(alias.namespace, alias.name, alias.kind)
        else:
            ref = NamedType(expr.name)
        return OptionalType(ref) if expr.optional else ref

    def _lower_literal(self, literal: Optional[LiteralExpr]) -> Optional[Literal]:
        if literal is None:
            return None
        return Literal(LITERAL_KINDS[literal.kind], literal.value)

    def _lower_params(self, params: list[ParamDecl]) -> tuple[Argument, ...]:
        arguments = []
        for param in params:
            self._check_attributes(param.attributes, "param")
            arguments.append(
                Argument(param.name, self._lower_type(param.type), self._lower_literal(param.default))
            )
        return tuple(arguments)

    def _throws(self, attributes: AttributeList) -> Optional[TypeRef]:
        name = self._attribute_value(attributes, "Throws")
        if name is None:
            return None
        if name in self._aliases:
            alias = self._aliases[name]
            return ExternalType(alias.namespace, alias.name, alias.kind)
        return NamedType(name)

    def _return_type(self, op: OperationDecl) -> Optional[TypeRef]:
        if op.return_type is None:
            if not op.returns_void:
                raise self._error(
                    f"'{op.name}' has no return type",
                    op.location,
                    hint="write 'void' for operations that return nothing",
                )
            return None
        return self._lower_type(op.return_type)

    # =========================================================================
    # Definitions
    # =========================================================================

    def _lower_function(self, op: OperationDecl) -> Function:
        self._check_attributes(op.attributes, "function")
        return Function(
            name=op.name,
            arguments=self._lower_params(op.params),
            return_type=self._return_type(op),
            throws=self._throws(op.attributes),
            is_async=self._flag(op.attributes, "Async"),
            docstring=op.docstring,
            location=op.location,
        )

    def _lower_dictionary(self, decl: DictionaryDecl) -> Record:
        self._check_attributes(decl.attributes, "dictionary")
        fields = []
        for f in decl.fields:
            self._check_attributes(f.attributes, "field")
            fields.append(Field(f.name, self._lower_type(f.type), self._lower_literal(f.default), f.docstring))
        return Record(decl.name, tuple(fields), decl.docstring, decl.location)

    def _lower_flat_enum(self, decl: EnumDecl) -> Enum:
        self._check_attributes(decl.attributes, "enum")
        return Enum(
            name=decl.name,
            variants=tuple(Variant(name) for name, _ in decl.variants),
            is_error=self._flag(decl.attributes, "Error"),
            docstring=decl.docstring,
            location=decl.location,
        )

    def _lower_interface(self, decl: InterfaceDecl):
        if decl.attributes.has("Enum") or decl.attributes.has("Error"):
            return self._lower_enum_interface(decl)
        return self._lower_object(decl)

    def _lower_enum_interface(self, decl: InterfaceDecl) -> Enum:
        self._check_attributes(decl.attributes, "enum_interface")
        if decl.constructors:
            raise self._error(
                f"enum '{decl.name}' cannot have constructors",
                decl.constructors[0].location,
            )
        variants = []
        for op in decl.operations:
            self._check_attributes(op.attributes, "variant")
            if op.return_type is not None or op.returns_void:
                raise self._error(
                    f"variant '{op.name}' of enum '{decl.name}' cannot have a return type",
                    op.location,
                    hint=f"write '{op.name}(...);'",
                )
            fields = tuple(
                Field(p.name, self._lower_type(p.type), self._lower_literal(p.default))
                for p in op.params
            )
            variants.append(Variant(op.name, fields, op.docstring))
        return Enum(
            name=decl.name,
            variants=tuple(variants),
            is_error=self._flag(decl.attributes, "Error"),
            docstring=decl.docstring,
            location=decl.location,
        )

    def _lower_object(self, decl: InterfaceDecl) -> Object:
        self._check_attributes(decl.attributes, "object")
        constructors = []
        for ctor in decl.constructors:
            self._check_attributes(ctor.attributes, "constructor")
            constructors.append(
                Constructor(
                    name=self._attribute_value(ctor.attributes, "Name") or "new",
                    arguments=self._lower_params(ctor.params),
                    throws=self._throws(ctor.attributes),
                    is_async=self._flag(ctor.attributes, "Async"),
                    docstring=ctor.docstring,
                )
            )

        methods = []
        for op in decl.operations:
            self._check_attributes(op.attributes, "method")
            self_mode = SelfMode.SHARED_REF
            mode = self._attribute_value(op.attributes, "Self")
            if mode is not None:
                if mode not in SELF_MODES:
                    raise self._error(
                        f"unknown self mode '{mode}'",
                        op.attributes.get("Self").location,
                        hint=f"use one of: {', '.join(SELF_MODES)}",
                    )
                self_mode = SELF_MODES[mode]
            methods.append(
                Method(
                    name=op.name,
                    arguments=self._lower_params(op.params),
                    return_type=self._return_type(op),
                    throws=self._throws(op.attributes),
                    is_async=self._flag(op.attributes, "Async"),
                    self_mode=self_mode,
                    docstring=op.docstring,
                )
            )

        threading = ThreadingPolicy.SINGLE_THREADED
        if self._flag(decl.attributes, "Threadsafe"):
            threading = ThreadingPolicy.CONCURRENT
        return Object(decl.name, tuple(constructors), tuple(methods), threading, decl.docstring, decl.location)

    def _lower_callback(self, decl: CallbackDecl) -> CallbackInterface:
        self._check_attributes(decl.attributes, "callback")
        methods = []
        for op in decl.operations:
            if op.attributes.has("Async"):
                raise self._error(
                    f"callback method '{op.name}' cannot be async",
                    op.attributes.get("Async").location,
                )
            self._check_attributes(op.attributes, "callback_method")
            methods.append(
                Method(
                    name=op.name,
                    arguments=self._lower_params(op.params),
                    return_type=self._return_type(op),
                    throws=self._throws(op.attributes),
                    docstring=op.docstring,
                )
            )
        return CallbackInterface(decl.name, tuple(methods), decl.docstring, decl.location)


def load_idl(source: str, filename: str = "<input>") -> SourceBatch:
    """Parse and lower interface-definition text in one step."""
    tree = parse_idl(source, filename)
    return IdlLowering(tree, source).lower()
