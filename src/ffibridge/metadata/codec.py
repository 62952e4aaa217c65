"""
Binary Metadata Codec
=====================

Self-describing, versioned encoding of interface items, embedded by the
native build into the compiled library so bindings can be generated
from the library alone.

Section Layout (big-endian)
---------------------------
| Offset  | Size     | Field                                  |
|---------|----------|----------------------------------------|
| 0       | 8        | Magic "FFIBMETA"                       |
| 8       | 2        | Format version (currently 1)           |
| 10      | 2 + n    | Namespace (u16 length + UTF-8)         |
| ...     | 4        | Payload length                         |
| ...     | len      | Payload                                |
| ...     | 2        | CRC-16/CCITT-FALSE of the payload      |

Payload
-------
    u16 item_count
    item_count x (u8 kind, u32 body_length, body)

Item kinds: 1 function, 2 object, 3 record, 4 enum, 5 callback
interface. Strings are u32 length + UTF-8. Optional values carry a u8
presence flag. Type references and default literals are tagged.

Usage
-----
    blob = encode_section(batch)
    batch = decode_section(blob)
"""

import logging
import struct
from typing import Final, Optional

from ffibridge.errors import MetadataFormatError, UnsupportedMetadataVersion
from ffibridge.ir.model import (
    Argument,
    CallbackInterface,
    Constructor,
    Enum,
    Field,
    Function,
    Item,
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
from ffibridge.metadata.crc import crc16_ccitt, crc_to_bytes

logger = logging.getLogger(__name__)


# =============================================================================
# Format Constants
# =============================================================================

MAGIC: Final[bytes] = b"FFIBMETA"
FORMAT_VERSION: Final[int] = 1
SUPPORTED_VERSIONS: Final[tuple[int, ...]] = (1,)

ITEM_FUNCTION: Final[int] = 1
ITEM_OBJECT: Final[int] = 2
ITEM_RECORD: Final[int] = 3
ITEM_ENUM: Final[int] = 4
ITEM_CALLBACK_INTERFACE: Final[int] = 5

TYPE_PRIMITIVE: Final[int] = 0x01
TYPE_OPTIONAL: Final[int] = 0x02
TYPE_SEQUENCE: Final[int] = 0x03
TYPE_MAP: Final[int] = 0x04
TYPE_NAMED: Final[int] = 0x05
TYPE_EXTERNAL: Final[int] = 0x06
TYPE_RECORD: Final[int] = 0x07
TYPE_ENUM: Final[int] = 0x08
TYPE_OBJECT: Final[int] = 0x09
TYPE_CALLBACK: Final[int] = 0x0A

# Primitive codes follow declaration order of PrimitiveKind
PRIMITIVE_CODES: Final[dict[PrimitiveKind, int]] = {kind: i for i, kind in enumerate(PrimitiveKind)}
PRIMITIVE_BY_CODE: Final[dict[int, PrimitiveKind]] = {i: kind for kind, i in PRIMITIVE_CODES.items()}

NAMED_TAGS: Final[dict[type, int]] = {
    RecordType: TYPE_RECORD,
    EnumType: TYPE_ENUM,
    ObjectType: TYPE_OBJECT,
    CallbackInterfaceType: TYPE_CALLBACK,
    NamedType: TYPE_NAMED,
}
NAMED_BY_TAG: Final[dict[int, type]] = {tag: cls for cls, tag in NAMED_TAGS.items()}

EXTERNAL_KIND_CODES: Final[dict[Optional[str], int]] = {
    None: 0,
    "record": 1,
    "enum": 2,
    "object": 3,
    "callback_interface": 4,
}
EXTERNAL_KIND_BY_CODE: Final[dict[int, Optional[str]]] = {
    code: kind for kind, code in EXTERNAL_KIND_CODES.items()
}

LITERAL_CODES: Final[dict[LiteralKind, int]] = {kind: i + 1 for i, kind in enumerate(LiteralKind)}
LITERAL_BY_CODE: Final[dict[int, LiteralKind]] = {code: kind for kind, code in LITERAL_CODES.items()}

SELF_MODE_CODES: Final[dict[SelfMode, int]] = {mode: i for i, mode in enumerate(SelfMode)}
SELF_MODE_BY_CODE: Final[dict[int, SelfMode]] = {i: mode for mode, i in SELF_MODE_CODES.items()}

FLAG_ASYNC: Final[int] = 0x01


# =============================================================================
# Encoder
# =============================================================================

class MetadataWriter:
    """Accumulates big-endian fields into a byte buffer."""

    def __init__(self):
        self._buf = bytearray()

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def u8(self, value: int) -> None:
        self._buf += struct.pack(">B", value)

    def u16(self, value: int) -> None:
        self._buf += struct.pack(">H", value)

    def u32(self, value: int) -> None:
        self._buf += struct.pack(">I", value)

    def u64(self, value: int) -> None:
        self._buf += struct.pack(">Q", value)

    def f64(self, value: float) -> None:
        self._buf += struct.pack(">d", value)

    def raw(self, data: bytes) -> None:
        self._buf += data

    def string(self, value: str) -> None:
        data = value.encode("utf-8")
        self.u32(len(data))
        self._buf += data

    def optional_string(self, value: Optional[str]) -> None:
        self.u8(0 if value is None else 1)
        if value is not None:
            self.string(value)

    # -------------------------------------------------------------------------

    def type_ref(self, ref: TypeRef) -> None:
        if isinstance(ref, PrimitiveType):
            self.u8(TYPE_PRIMITIVE)
            self.u8(PRIMITIVE_CODES[ref.kind])
        elif isinstance(ref, OptionalType):
            self.u8(TYPE_OPTIONAL)
            self.type_ref(ref.inner)
        elif isinstance(ref, SequenceType):
            self.u8(TYPE_SEQUENCE)
            self.type_ref(ref.inner)
        elif isinstance(ref, MappingType):
            self.u8(TYPE_MAP)
            self.type_ref(ref.key)
            self.type_ref(ref.value)
        elif isinstance(ref, ExternalType):
            self.u8(TYPE_EXTERNAL)
            self.string(ref.namespace)
            self.string(ref.name)
            self.u8(EXTERNAL_KIND_CODES[ref.kind])
        elif type(ref) in NAMED_TAGS:
            self.u8(NAMED_TAGS[type(ref)])
            self.string(ref.name)
        else:
            raise TypeError(f"cannot encode type reference {ref!r}")

    def optional_type(self, ref: Optional[TypeRef]) -> None:
        self.u8(0 if ref is None else 1)
        if ref is not None:
            self.type_ref(ref)

    def literal(self, lit: Optional[Literal]) -> None:
        if lit is None:
            self.u8(0)
            return
        self.u8(LITERAL_CODES[lit.kind])
        if lit.kind == LiteralKind.BOOLEAN:
            self.u8(1 if lit.value else 0)
        elif lit.kind == LiteralKind.INTEGER:
            self.u8(1 if lit.value < 0 else 0)
            self.u64(abs(lit.value))
        elif lit.kind == LiteralKind.FLOAT:
            self.f64(lit.value)
        elif lit.kind in (LiteralKind.STRING, LiteralKind.ENUM):
            self.string(lit.value)

    def arguments(self, args) -> None:
        self.u16(len(args))
        for arg in args:
            self.string(arg.name)
            self.type_ref(arg.type)
            self.literal(arg.default)

    def fields(self, fields) -> None:
        self.u16(len(fields))
        for f in fields:
            self.string(f.name)
            self.type_ref(f.type)
            self.literal(f.default)
            self.optional_string(f.docstring)

    def method(self, m: Method) -> None:
        self.string(m.name)
        self.optional_string(m.docstring)
        self.u8(FLAG_ASYNC if m.is_async else 0)
        self.u8(SELF_MODE_CODES[m.self_mode])
        self.arguments(m.arguments)
        self.optional_type(m.return_type)
        self.optional_type(m.throws)


def _encode_item(item: Item) -> tuple[int, bytes]:
    w = MetadataWriter()
    w.string(item.name)
    w.optional_string(item.docstring)

    if isinstance(item, Function):
        w.u8(FLAG_ASYNC if item.is_async else 0)
        w.arguments(item.arguments)
        w.optional_type(item.return_type)
        w.optional_type(item.throws)
        return ITEM_FUNCTION, w.getvalue()

    if isinstance(item, Object):
        w.u8(1 if item.threading == ThreadingPolicy.CONCURRENT else 0)
        w.u16(len(item.constructors))
        for ctor in item.constructors:
            w.string(ctor.name)
            w.optional_string(ctor.docstring)
            w.u8(FLAG_ASYNC if ctor.is_async else 0)
            w.arguments(ctor.arguments)
            w.optional_type(ctor.throws)
        w.u16(len(item.methods))
        for method in item.methods:
            w.method(method)
        return ITEM_OBJECT, w.getvalue()

    if isinstance(item, Record):
        w.fields(item.fields)
        return ITEM_RECORD, w.getvalue()

    if isinstance(item, Enum):
        w.u8(1 if item.is_error else 0)
        w.u16(len(item.variants))
        for variant in item.variants:
            w.string(variant.name)
            w.optional_string(variant.docstring)
            w.fields(variant.fields)
        return ITEM_ENUM, w.getvalue()

    if isinstance(item, CallbackInterface):
        w.u16(len(item.methods))
        for method in item.methods:
            w.method(method)
        return ITEM_CALLBACK_INTERFACE, w.getvalue()

    raise TypeError(f"cannot encode item {item!r}")


def encode_section(batch: SourceBatch, version: int = FORMAT_VERSION) -> bytes:
    """
    Encode a batch of items as one embeddable metadata section.

    Args:
        batch: Items of one namespace
        version: Format version to stamp (tests use this to produce
                 sections from a future encoder)

    Returns:
        The complete section, magic through CRC
    """
    payload = MetadataWriter()
    payload.u16(len(batch.items))
    for item in batch.items:
        kind, body = _encode_item(item)
        payload.u8(kind)
        payload.u32(len(body))
        payload.raw(body)
    payload_bytes = payload.getvalue()

    section = MetadataWriter()
    section.raw(MAGIC)
    section.u16(version)
    ns = batch.namespace.encode("utf-8")
    section.u16(len(ns))
    section.raw(ns)
    section.u32(len(payload_bytes))
    section.raw(payload_bytes)
    section.raw(crc_to_bytes(crc16_ccitt(payload_bytes)))

    logger.debug(f"Encoded {len(batch.items)} items for '{batch.namespace}' ({len(payload_bytes)} bytes)")
    return section.getvalue()


# =============================================================================
# Decoder
# =============================================================================

class MetadataReader:
    """
    Reads big-endian fields, failing with MetadataFormatError on truncation.

    Attributes:
        data: Bytes being decoded
        offset: Absolute offset of data[0], used in error messages
    """

    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.offset = offset
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self._pos

    @property
    def position(self) -> int:
        return self.offset + self._pos

    def _take(self, size: int) -> bytes:
        if self._pos + size > len(self.data):
            raise MetadataFormatError(
                f"truncated metadata: need {size} bytes, have {self.remaining}",
                offset=self.position,
            )
        chunk = self.data[self._pos:self._pos + size]
        self._pos += size
        return chunk

    def u8(self) -> int:
        return self._take(1)[0]

    def u16(self) -> int:
        return struct.unpack(">H", self._take(2))[0]

    def u32(self) -> int:
        return struct.unpack(">I", self._take(4))[0]

    def u64(self) -> int:
        return struct.unpack(">Q", self._take(8))[0]

    def f64(self) -> float:
        return struct.unpack(">d", self._take(8))[0]

    def raw(self, size: int) -> bytes:
        return self._take(size)

    def string(self) -> str:
        size = self.u32()
        start = self.position
        try:
            return self._take(size).decode("utf-8")
        except UnicodeDecodeError:
            raise MetadataFormatError("invalid UTF-8 in string", offset=start) from None

    def optional_string(self) -> Optional[str]:
        return self.string() if self._flag() else None

    def _flag(self) -> bool:
        start = self.position
        value = self.u8()
        if value not in (0, 1):
            raise MetadataFormatError(f"invalid presence flag {value}", offset=start)
        return value == 1

    # -------------------------------------------------------------------------

    def type_ref(self) -> TypeRef:
        start = self.position
        tag = self.u8()
        if tag == TYPE_PRIMITIVE:
            code = self.u8()
            if code not in PRIMITIVE_BY_CODE:
                raise MetadataFormatError(f"unknown primitive code {code}", offset=start + 1)
            return PrimitiveType(PRIMITIVE_BY_CODE[code])
        if tag == TYPE_OPTIONAL:
            return OptionalType(self.type_ref())
        if tag == TYPE_SEQUENCE:
            return SequenceType(self.type_ref())
        if tag == TYPE_MAP:
            key = self.type_ref()
            return MappingType(key, self.type_ref())
        if tag == TYPE_EXTERNAL:
            namespace = self.string()
            name = self.string()
            code = self.u8()
            if code not in EXTERNAL_KIND_BY_CODE:
                raise MetadataFormatError(f"unknown external kind {code}", offset=self.position - 1)
            return ExternalType(namespace, name, EXTERNAL_KIND_BY_CODE[code])
        if tag in NAMED_BY_TAG:
            return NAMED_BY_TAG[tag](self.string())
        raise MetadataFormatError(f"unknown type tag 0x{tag:02X}", offset=start)

    def optional_type(self) -> Optional[TypeRef]:
        return self.type_ref() if self._flag() else None

    def literal(self) -> Optional[Literal]:
        start = self.position
        code = self.u8()
        if code == 0:
            return None
        if code not in LITERAL_BY_CODE:
            raise MetadataFormatError(f"unknown literal code {code}", offset=start)
        kind = LITERAL_BY_CODE[code]
        if kind == LiteralKind.BOOLEAN:
            return Literal(kind, self.u8() != 0)
        if kind == LiteralKind.INTEGER:
            negative = self.u8() != 0
            magnitude = self.u64()
            return Literal(kind, -magnitude if negative else magnitude)
        if kind == LiteralKind.FLOAT:
            return Literal(kind, self.f64())
        if kind in (LiteralKind.STRING, LiteralKind.ENUM):
            return Literal(kind, self.string())
        return Literal(kind)

    def arguments(self) -> tuple[Argument, ...]:
        count = self.u16()
        return tuple(Argument(self.string(), self.type_ref(), self.literal()) for _ in range(count))

    def fields(self) -> tuple[Field, ...]:
        count = self.u16()
        result = []
        for _ in range(count):
            name = self.string()
            ref = self.type_ref()
            default = self.literal()
            result.append(Field(name, ref, default, self.optional_string()))
        return tuple(result)

    def method(self) -> Method:
        name = self.string()
        doc = self.optional_string()
        flags = self.u8()
        start = self.position
        mode_code = self.u8()
        if mode_code not in SELF_MODE_BY_CODE:
            raise MetadataFormatError(f"unknown self mode {mode_code}", offset=start)
        arguments = self.arguments()
        return_type = self.optional_type()
        throws = self.optional_type()
        return Method(
            name=name,
            arguments=arguments,
            return_type=return_type,
            throws=throws,
            is_async=bool(flags & FLAG_ASYNC),
            self_mode=SELF_MODE_BY_CODE[mode_code],
            docstring=doc,
        )


def _decode_item(kind: int, r: MetadataReader) -> Item:
    name = r.string()
    doc = r.optional_string()

    if kind == ITEM_FUNCTION:
        flags = r.u8()
        arguments = r.arguments()
        return_type = r.optional_type()
        throws = r.optional_type()
        return Function(name, arguments, return_type, throws, bool(flags & FLAG_ASYNC), doc)

    if kind == ITEM_OBJECT:
        threading = ThreadingPolicy.CONCURRENT if r.u8() else ThreadingPolicy.SINGLE_THREADED
        constructors = []
        for _ in range(r.u16()):
            ctor_name = r.string()
            ctor_doc = r.optional_string()
            flags = r.u8()
            arguments = r.arguments()
            throws = r.optional_type()
            constructors.append(Constructor(ctor_name, arguments, throws, bool(flags & FLAG_ASYNC), ctor_doc))
        methods = tuple(r.method() for _ in range(r.u16()))
        return Object(name, tuple(constructors), methods, threading, doc)

    if kind == ITEM_RECORD:
        return Record(name, r.fields(), doc)

    if kind == ITEM_ENUM:
        is_error = r.u8() != 0
        variants = []
        for _ in range(r.u16()):
            variant_name = r.string()
            variant_doc = r.optional_string()
            variants.append(Variant(variant_name, r.fields(), variant_doc))
        return Enum(name, tuple(variants), is_error, doc)

    if kind == ITEM_CALLBACK_INTERFACE:
        methods = tuple(r.method() for _ in range(r.u16()))
        return CallbackInterface(name, methods, doc)

    raise MetadataFormatError(f"unknown item kind {kind}", offset=r.offset)


def read_section_header(data: bytes, offset: int = 0) -> tuple[int, str, int, int]:
    """
    Decode the fixed header of the section starting at ``offset``.

    Returns:
        (version, namespace, payload_offset, payload_length)

    Raises:
        MetadataFormatError: If the magic is missing or the header is truncated
        UnsupportedMetadataVersion: If the version is not supported
    """
    r = MetadataReader(data[offset:], offset)
    if r.raw(len(MAGIC)) != MAGIC:
        raise MetadataFormatError("missing metadata magic", offset=offset)
    version = r.u16()
    if version not in SUPPORTED_VERSIONS:
        raise UnsupportedMetadataVersion(version, SUPPORTED_VERSIONS)
    ns_size = r.u16()
    try:
        namespace = r.raw(ns_size).decode("utf-8")
    except UnicodeDecodeError:
        raise MetadataFormatError("invalid UTF-8 in namespace", offset=offset + 12) from None
    length = r.u32()
    return version, namespace, r.position, length


def decode_section(data: bytes, offset: int = 0, origin: str = "<bytes>") -> tuple[SourceBatch, int]:
    """
    Decode one section.

    Args:
        data: Buffer containing the section (possibly a whole library)
        offset: Where the section's magic starts
        origin: Source name recorded on the batch

    Returns:
        (batch, end_offset) where end_offset is just past the CRC

    Raises:
        MetadataFormatError: Truncation, CRC mismatch or unknown tags
        UnsupportedMetadataVersion: Section from an unsupported encoder
    """
    _, namespace, payload_offset, length = read_section_header(data, offset)
    end = payload_offset + length
    if end + 2 > len(data):
        raise MetadataFormatError(
            f"truncated metadata section for '{namespace}': payload declares {length} bytes",
            offset=payload_offset,
        )

    payload = data[payload_offset:end]
    expected_crc = (data[end] << 8) | data[end + 1]
    actual_crc = crc16_ccitt(payload)
    if expected_crc != actual_crc:
        raise MetadataFormatError(
            f"metadata checksum mismatch for '{namespace}' "
            f"(stored 0x{expected_crc:04X}, computed 0x{actual_crc:04X})",
            offset=end,
        )

    r = MetadataReader(payload, payload_offset)
    items = []
    for _ in range(r.u16()):
        kind = r.u8()
        size = r.u32()
        body_offset = r.position
        body = MetadataReader(r.raw(size), body_offset)
        items.append(_decode_item(kind, body))
        if body.remaining:
            raise MetadataFormatError(
                f"{body.remaining} trailing bytes in item '{items[-1].name}'",
                offset=body.position,
            )
    if r.remaining:
        raise MetadataFormatError(f"{r.remaining} trailing bytes in payload", offset=r.position)

    logger.debug(f"Decoded {len(items)} items for '{namespace}' at offset {offset}")
    return SourceBatch(namespace=namespace, items=tuple(items), origin=origin), end + 2
