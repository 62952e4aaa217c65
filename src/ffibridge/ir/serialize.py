"""
JSON IR Serialization
=====================

Stable, versioned JSON rendering of an InterfaceDescription for external
tooling (``ffibridge print-json``). Decoding a rendering yields an equal
InterfaceDescription.

Document Layout
---------------
    {
      "format": "ffibridge-ir",
      "version": 1,
      "namespace": "arithmetic",
      "docstring": null,
      "checksum": 40153,
      "imports": [{"namespace": "geo", "name": "Point", "kind": "record"}],
      "items": [{"kind": "function", "name": "add", ...}]
    }

Types are primitive names ("u32") or single-key objects:
{"optional": T}, {"sequence": T}, {"map": [K, V]}, {"record": "Name"},
{"enum": "Name"}, {"object": "Name"}, {"callback_interface": "Name"},
{"named": "Name"}, {"external": {"namespace", "name", "kind"}}.

Source locations are not serialized.
"""

import json
import logging
from typing import Any, Optional, Union

from ffibridge.errors import FfiBridgeError
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
    Item,
    Literal,
    LiteralKind,
    Method,
    Object,
    Record,
    SelfMode,
    ThreadingPolicy,
    Variant,
)
from ffibridge.ir.types import (
    NAMED_TYPE_CLASSES,
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

FORMAT_NAME = "ffibridge-ir"


class IrFormatError(FfiBridgeError):
    """A JSON document is not a valid IR rendering."""
    pass


# =============================================================================
# Encoding
# =============================================================================

def type_to_json(ref: TypeRef) -> Any:
    if isinstance(ref, PrimitiveType):
        return ref.kind.value
    if isinstance(ref, OptionalType):
        return {"optional": type_to_json(ref.inner)}
    if isinstance(ref, SequenceType):
        return {"sequence": type_to_json(ref.inner)}
    if isinstance(ref, MappingType):
        return {"map": [type_to_json(ref.key), type_to_json(ref.value)]}
    if isinstance(ref, ExternalType):
        return {"external": {"namespace": ref.namespace, "name": ref.name, "kind": ref.kind}}
    if isinstance(ref, NamedType):
        return {"named": ref.name}
    for kind, cls in NAMED_TYPE_CLASSES.items():
        if type(ref) is cls:
            return {kind: ref.name}
    raise TypeError(f"cannot serialize type reference {ref!r}")


def _optional_type(ref: Optional[TypeRef]) -> Any:
    return type_to_json(ref) if ref is not None else None


def _literal_to_json(lit: Optional[Literal]) -> Any:
    if lit is None:
        return None
    return {"kind": lit.kind.value, "value": lit.value}


def _args_to_json(args) -> list:
    return [
        {"name": a.name, "type": type_to_json(a.type), "default": _literal_to_json(a.default)}
        for a in args
    ]


def _fields_to_json(fields) -> list:
    return [
        {
            "name": f.name,
            "type": type_to_json(f.type),
            "default": _literal_to_json(f.default),
            "docstring": f.docstring,
        }
        for f in fields
    ]


def _method_to_json(m: Method) -> dict:
    return {
        "name": m.name,
        "arguments": _args_to_json(m.arguments),
        "return_type": _optional_type(m.return_type),
        "throws": _optional_type(m.throws),
        "is_async": m.is_async,
        "self_mode": m.self_mode.value,
        "docstring": m.docstring,
    }


def _constructor_to_json(c: Constructor) -> dict:
    return {
        "name": c.name,
        "arguments": _args_to_json(c.arguments),
        "throws": _optional_type(c.throws),
        "is_async": c.is_async,
        "docstring": c.docstring,
    }


def callable_to_json(callable_: Union[Function, Constructor, Method]) -> dict:
    """Render a function, constructor or method on its own."""
    if isinstance(callable_, Constructor):
        return _constructor_to_json(callable_)
    if isinstance(callable_, Method):
        return _method_to_json(callable_)
    return item_to_json(callable_)


def item_to_json(item: Item) -> dict:
    """Render one item as a JSON-compatible dict."""
    data: dict[str, Any] = {"kind": item.kind, "name": item.name}
    if isinstance(item, Function):
        data.update(
            arguments=_args_to_json(item.arguments),
            return_type=_optional_type(item.return_type),
            throws=_optional_type(item.throws),
            is_async=item.is_async,
        )
    elif isinstance(item, Object):
        data.update(
            threading=item.threading.value,
            constructors=[_constructor_to_json(c) for c in item.constructors],
            methods=[_method_to_json(m) for m in item.methods],
        )
    elif isinstance(item, Record):
        data.update(fields=_fields_to_json(item.fields))
    elif isinstance(item, Enum):
        data.update(
            is_error=item.is_error,
            variants=[
                {"name": v.name, "fields": _fields_to_json(v.fields), "docstring": v.docstring}
                for v in item.variants
            ],
        )
    elif isinstance(item, CallbackInterface):
        data.update(methods=[_method_to_json(m) for m in item.methods])
    else:
        raise TypeError(f"cannot serialize item {item!r}")
    data["docstring"] = item.docstring
    return data


def to_dict(ir: InterfaceDescription) -> dict:
    return {
        "format": FORMAT_NAME,
        "version": ir.version,
        "namespace": ir.namespace,
        "docstring": ir.docstring,
        "checksum": ir.checksum,
        "imports": [
            {"namespace": d.namespace, "name": d.name, "kind": d.kind} for d in ir.imports
        ],
        "items": [item_to_json(item) for item in ir.items],
    }


def to_json(ir: InterfaceDescription, indent: Optional[int] = 2) -> str:
    """Serialize an InterfaceDescription to its JSON rendering."""
    return json.dumps(to_dict(ir), indent=indent, sort_keys=True, ensure_ascii=False)


def canonical_json(data: Any) -> str:
    """Compact, key-sorted rendering used as checksum input."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


# =============================================================================
# Decoding
# =============================================================================

def type_from_json(data: Any) -> TypeRef:
    if isinstance(data, str):
        if data not in PRIMITIVE_NAMES:
            raise IrFormatError(f"unknown primitive type '{data}'")
        return PrimitiveType(PRIMITIVE_NAMES[data])
    if not isinstance(data, dict) or len(data) != 1:
        raise IrFormatError(f"malformed type reference {data!r}")

    (tag, body), = data.items()
    if tag == "optional":
        return OptionalType(type_from_json(body))
    if tag == "sequence":
        return SequenceType(type_from_json(body))
    if tag == "map":
        key, value = body
        return MappingType(type_from_json(key), type_from_json(value))
    if tag == "external":
        return ExternalType(body["namespace"], body["name"], body.get("kind"))
    if tag == "named":
        return NamedType(body)
    if tag in NAMED_TYPE_CLASSES:
        return NAMED_TYPE_CLASSES[tag](body)
    raise IrFormatError(f"unknown type tag '{tag}'")


def _optional_type_from(data: Any) -> Optional[TypeRef]:
    return type_from_json(data) if data is not None else None


def _literal_from_json(data: Any) -> Optional[Literal]:
    if data is None:
        return None
    return Literal(LiteralKind(data["kind"]), data.get("value"))


def _args_from_json(data: list) -> tuple[Argument, ...]:
    return tuple(
        Argument(a["name"], type_from_json(a["type"]), _literal_from_json(a.get("default")))
        for a in data
    )


def _fields_from_json(data: list) -> tuple[Field, ...]:
    return tuple(
        Field(
            f["name"],
            type_from_json(f["type"]),
            _literal_from_json(f.get("default")),
            f.get("docstring"),
        )
        for f in data
    )


def _method_from_json(m: dict) -> Method:
    return Method(
        name=m["name"],
        arguments=_args_from_json(m["arguments"]),
        return_type=_optional_type_from(m.get("return_type")),
        throws=_optional_type_from(m.get("throws")),
        is_async=m.get("is_async", False),
        self_mode=SelfMode(m.get("self_mode", SelfMode.SHARED_REF.value)),
        docstring=m.get("docstring"),
    )


def item_from_json(data: dict) -> Item:
    kind = data.get("kind")
    name = data["name"]
    doc = data.get("docstring")
    if kind == "function":
        return Function(
            name=name,
            arguments=_args_from_json(data["arguments"]),
            return_type=_optional_type_from(data.get("return_type")),
            throws=_optional_type_from(data.get("throws")),
            is_async=data.get("is_async", False),
            docstring=doc,
        )
    if kind == "object":
        return Object(
            name=name,
            constructors=tuple(
                Constructor(
                    name=c["name"],
                    arguments=_args_from_json(c["arguments"]),
                    throws=_optional_type_from(c.get("throws")),
                    is_async=c.get("is_async", False),
                    docstring=c.get("docstring"),
                )
                for c in data["constructors"]
            ),
            methods=tuple(_method_from_json(m) for m in data["methods"]),
            threading=ThreadingPolicy(data["threading"]),
            docstring=doc,
        )
    if kind == "record":
        return Record(name=name, fields=_fields_from_json(data["fields"]), docstring=doc)
    if kind == "enum":
        return Enum(
            name=name,
            variants=tuple(
                Variant(v["name"], _fields_from_json(v["fields"]), v.get("docstring"))
                for v in data["variants"]
            ),
            is_error=data.get("is_error", False),
            docstring=doc,
        )
    if kind == "callback_interface":
        return CallbackInterface(
            name=name,
            methods=tuple(_method_from_json(m) for m in data["methods"]),
            docstring=doc,
        )
    raise IrFormatError(f"unknown item kind '{kind}'", item=name)


def from_dict(data: dict) -> InterfaceDescription:
    if not isinstance(data, dict):
        raise IrFormatError(f"IR document must be a JSON object, got {type(data).__name__}")
    if data.get("format") != FORMAT_NAME:
        raise IrFormatError(f"not an ffibridge IR document (format={data.get('format')!r})")
    version = data.get("version")
    if version != IR_VERSION:
        raise IrFormatError(f"unsupported IR version {version!r} (supported: {IR_VERSION})")

    try:
        return InterfaceDescription(
            namespace=data["namespace"],
            items=tuple(item_from_json(i) for i in data["items"]),
            imports=tuple(
                ExternalDeclaration(d["namespace"], d["name"], d["kind"])
                for d in data.get("imports", [])
            ),
            checksum=data.get("checksum", 0),
            version=version,
            docstring=data.get("docstring"),
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise IrFormatError(f"malformed IR document: {type(e).__name__}: {e}") from e


def from_json(text: str) -> InterfaceDescription:
    """Parse a JSON rendering back into an InterfaceDescription."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise IrFormatError(f"invalid JSON: {e}") from e
    logger.debug(f"Decoding IR document of {len(text)} characters")
    return from_dict(data)
