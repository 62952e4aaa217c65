"""
Python Backend
==============

Emits one module, ``<namespace>.py``, that talks to the native library
through ctypes and the ``ffibridge.runtime`` support package.

Generated Module Layout
-----------------------
1. Library loading, allocator, ABI argtypes/restype declarations
2. Contract version and checksum verification
3. Type declarations: enums, records (dataclasses), error hierarchies,
   object wrappers, callback interface ABCs
4. Converters: one per named type, then composite converters
5. Callback vtables and their registration
6. Function wrappers

Type Mapping
------------
| Interface type     | Python surface             | Converter               |
|--------------------|----------------------------|-------------------------|
| u8 .. i64          | int                        | _runtime.UINT8 ...      |
| f32, f64           | float                      | _runtime.FLOAT32/64     |
| boolean            | bool                       | _runtime.BOOLEAN        |
| string, bytes      | str, bytes                 | _runtime.STRING/BYTES   |
| timestamp          | datetime.datetime (UTC)    | _runtime.TIMESTAMP      |
| duration           | datetime.timedelta         | _runtime.DURATION       |
| T?                 | typing.Optional[T]         | _FfiConverterOptional*  |
| sequence<T>        | list[T]                    | _FfiConverterSequence*  |
| record<K, V>       | dict[K, V]                 | _FfiConverterMap*       |
| named item         | generated class            | _FfiConverterType<Name> |
"""

import json
import keyword
import logging
from typing import Optional

from ffibridge.backends.base import (
    BackendContext,
    EmittedItem,
    TypeMapping,
    unsupported,
)
from ffibridge.codegen import CodeWriter
from ffibridge.ffi.lowering import lower_type
from ffibridge.ffi.types import FfiFunction, FfiType
from ffibridge.ir.model import (
    Argument,
    CallbackInterface,
    Enum,
    Field,
    Function,
    Literal,
    LiteralKind,
    Method,
    Object,
    Record,
    SelfMode,
)
from ffibridge.ir.types import (
    EnumType,
    ExternalType,
    ItemRef,
    MappingType,
    NamedType,
    ObjectType,
    OptionalType,
    PrimitiveKind,
    PrimitiveType,
    SequenceType,
    TypeRef,
)
from ffibridge.naming import escape_keyword, pascal_case, shouty_case, snake_case

logger = logging.getLogger(__name__)

PYTHON_KEYWORDS = frozenset(keyword.kwlist) | frozenset({"self", "cls"})

CTYPES: dict[FfiType, str] = {
    FfiType.INT8: "ctypes.c_int8",
    FfiType.UINT8: "ctypes.c_uint8",
    FfiType.INT16: "ctypes.c_int16",
    FfiType.UINT16: "ctypes.c_uint16",
    FfiType.INT32: "ctypes.c_int32",
    FfiType.UINT32: "ctypes.c_uint32",
    FfiType.INT64: "ctypes.c_int64",
    FfiType.UINT64: "ctypes.c_uint64",
    FfiType.FLOAT32: "ctypes.c_float",
    FfiType.FLOAT64: "ctypes.c_double",
    FfiType.HANDLE: "ctypes.c_uint64",
    FfiType.BUFFER: "_runtime.ForeignBuffer",
    FfiType.FOREIGN_BYTES: "_runtime.ForeignBytes",
    FfiType.CONTINUATION: "_runtime.CONTINUATION_CALLBACK_T",
    FfiType.CALL_STATUS: "ctypes.POINTER(_runtime.CallStatus)",
}

PRIMITIVE_CONVERTERS: dict[PrimitiveKind, str] = {
    PrimitiveKind.I8: "_runtime.INT8",
    PrimitiveKind.U8: "_runtime.UINT8",
    PrimitiveKind.I16: "_runtime.INT16",
    PrimitiveKind.U16: "_runtime.UINT16",
    PrimitiveKind.I32: "_runtime.INT32",
    PrimitiveKind.U32: "_runtime.UINT32",
    PrimitiveKind.I64: "_runtime.INT64",
    PrimitiveKind.U64: "_runtime.UINT64",
    PrimitiveKind.F32: "_runtime.FLOAT32",
    PrimitiveKind.F64: "_runtime.FLOAT64",
    PrimitiveKind.BOOLEAN: "_runtime.BOOLEAN",
    PrimitiveKind.STRING: "_runtime.STRING",
    PrimitiveKind.BYTES: "_runtime.BYTES",
    PrimitiveKind.TIMESTAMP: "_runtime.TIMESTAMP",
    PrimitiveKind.DURATION: "_runtime.DURATION",
}

PRIMITIVE_SURFACE: dict[PrimitiveKind, str] = {
    PrimitiveKind.F32: "float",
    PrimitiveKind.F64: "float",
    PrimitiveKind.BOOLEAN: "bool",
    PrimitiveKind.STRING: "str",
    PrimitiveKind.BYTES: "bytes",
    PrimitiveKind.TIMESTAMP: "datetime.datetime",
    PrimitiveKind.DURATION: "datetime.timedelta",
}

# Output sections, in file order
SECTIONS = ("enum", "declaration", "converter", "vtable", "function")


def _docstring(w: CodeWriter, text: Optional[str]) -> None:
    if not text:
        return
    body = text.strip().replace("\\", "\\\\").replace('"""', '\\"\\"\\"')
    lines = body.splitlines()
    if len(lines) == 1:
        w.emit(f'"""{lines[0]}"""')
        return
    w.emit(f'"""{lines[0]}')
    for line in lines[1:]:
        w.emit(line)
    w.emit('"""')


class PythonBackend:
    """
    Emitter for Python bindings.

    Options:
        cdylib_name: Base name of the native library (default: namespace)
    """

    name = "python"
    formatter = ("black", "--quiet")

    def __init__(self, context: BackendContext):
        self.context = context
        self.ir = context.ir
        self.ffi = context.ffi
        self.cdylib_name = context.config.option("cdylib_name", self.ir.namespace)
        self._composites: dict[str, TypeRef] = {}
        self._external_namespaces: set[str] = set()
        self._error_types = self.ir.error_type_names()
        self._object_errors: set[str] = set()

    # =========================================================================
    # Naming
    # =========================================================================

    @staticmethod
    def ident(name: str) -> str:
        return escape_keyword(snake_case(name), PYTHON_KEYWORDS)

    @staticmethod
    def class_name(name: str) -> str:
        return pascal_case(name)

    def _flat_enum(self, name: str) -> bool:
        item = self.ir.get(name)
        return isinstance(item, Enum) and item.is_flat and not item.is_error

    # =========================================================================
    # Type Mapping
    # =========================================================================

    def converter(self, ref: TypeRef) -> str:
        """Expression naming the converter for ref."""
        if isinstance(ref, PrimitiveType):
            return PRIMITIVE_CONVERTERS[ref.kind]
        if isinstance(ref, NamedType):
            raise unsupported(self.name, f"type '{ref.name}' is unresolved")
        if isinstance(ref, ItemRef):
            return f"_FfiConverterType{self.class_name(ref.name)}"
        if isinstance(ref, ExternalType):
            self._external_namespaces.add(ref.namespace)
            return f"_ext_{ref.namespace}._FfiConverterType{self.class_name(ref.name)}"
        if isinstance(ref, (OptionalType, SequenceType, MappingType)):
            for child in ref.children():
                self.converter(child)
            self._composites.setdefault(ref.canonical_name, ref)
            return f"_FfiConverter{ref.canonical_name}"
        raise unsupported(self.name, f"cannot map type {ref}")

    def surface(self, ref: TypeRef) -> str:
        if isinstance(ref, PrimitiveType):
            return PRIMITIVE_SURFACE.get(ref.kind, "int")
        if isinstance(ref, OptionalType):
            return f"typing.Optional[{self.surface(ref.inner)}]"
        if isinstance(ref, SequenceType):
            return f"list[{self.surface(ref.inner)}]"
        if isinstance(ref, MappingType):
            return f"dict[{self.surface(ref.key)}, {self.surface(ref.value)}]"
        if isinstance(ref, ExternalType):
            return f"_ext_{ref.namespace}.{self.class_name(ref.name)}"
        if isinstance(ref, ItemRef):
            return self.class_name(ref.name)
        raise unsupported(self.name, f"cannot map type {ref}")

    def map_type(self, ref: TypeRef) -> TypeMapping:
        conv = self.converter(ref)
        return TypeMapping(
            surface=self.surface(ref),
            ffi_type=lower_type(ref),
            lift=f"{conv}.lift({{}}, _ALLOCATOR)",
            lower=f"{conv}.lower({{}}, _scope)",
        )

    def error_converter(self, throws: Optional[TypeRef]) -> str:
        if throws is None:
            return "None"
        if isinstance(throws, ObjectType):
            self._object_errors.add(throws.name)
            return f"_ErrorConverterType{self.class_name(throws.name)}"
        return self.converter(throws)

    def literal(self, lit: Literal, ref: TypeRef) -> str:
        if lit.kind == LiteralKind.NULL:
            return "None"
        if lit.kind == LiteralKind.BOOLEAN:
            return "True" if lit.value else "False"
        if lit.kind == LiteralKind.INTEGER:
            return str(int(lit.value))
        if lit.kind == LiteralKind.FLOAT:
            return repr(float(lit.value))
        if lit.kind == LiteralKind.STRING:
            return json.dumps(lit.value)
        if lit.kind in (LiteralKind.EMPTY_SEQUENCE, LiteralKind.EMPTY_MAP):
            return "None"
        if lit.kind == LiteralKind.ENUM and isinstance(ref, EnumType) and self._flat_enum(ref.name):
            return f"{self.class_name(ref.name)}.{shouty_case(str(lit.value))}"
        raise unsupported(self.name, f"default value {lit} does not fit type {ref}")

    # =========================================================================
    # Callables
    # =========================================================================

    def _parameters(self, arguments: tuple[Argument, ...], leading: tuple[str, ...] = ()) -> str:
        params = list(leading)
        keyword_only = False
        seen_default = False
        for arg in arguments:
            text = f"{self.ident(arg.name)}: {self.surface(arg.type)}"
            if arg.default is not None:
                text += f" = {self.literal(arg.default, arg.type)}"
                seen_default = True
            elif seen_default and not keyword_only:
                params.append("*")
                keyword_only = True
            params.append(text)
        return ", ".join(params)

    def _empty_defaults(self, w: CodeWriter, arguments: tuple[Argument, ...]) -> None:
        for arg in arguments:
            if arg.default is not None and arg.default.kind in (LiteralKind.EMPTY_SEQUENCE, LiteralKind.EMPTY_MAP):
                empty = "[]" if arg.default.kind == LiteralKind.EMPTY_SEQUENCE else "{}"
                with w.block(f"if {self.ident(arg.name)} is None:"):
                    w.emit(f"{self.ident(arg.name)} = {empty}")

    def _call_body(
        self,
        w: CodeWriter,
        fn: FfiFunction,
        arguments: tuple[Argument, ...],
        throws: Optional[TypeRef],
        receiver: Optional[str],
        result: Optional[str],
        returns: str,
        async_return: Optional[FfiType] = None,
    ) -> None:
        """
        Emit a call through the ABI.

        Args:
            receiver: Expression for the object handle, if any
            result: Template for what to do with the lifted result
                    ("return {}", "self._handle = {}"), None for void
            returns: Lift template applied to the raw result
            async_return: ABI type an async call completes with
        """
        lowered = [receiver] if receiver else []
        lowered.extend(self.map_type(a.type).lower_expr(self.ident(a.name)) for a in arguments)
        error_conv = self.error_converter(throws)
        self._empty_defaults(w, arguments)

        if fn.is_async:
            with w.block("with _runtime.BufferScope(_ALLOCATOR) as _scope:"):
                w.emit(f"_future = _scope.call({', '.join([f'_lib.{fn.name}', *lowered])})")
            family = self.ffi.future_family(async_return)
            lift = returns.replace("{}", "_value") if returns != "{}" else "_value"
            w.emit("_result = await _runtime.call_async(")
            with w.indented():
                w.emit("_ALLOCATOR,")
                w.emit("_future,")
                w.emit(f"_lib.{family.poll.name},")
                w.emit(f"_lib.{family.complete.name},")
                w.emit(f"_lib.{family.free.name},")
                w.emit(f"_lib.{family.cancel.name},")
                w.emit(f"lambda _value: {lift},")
                w.emit(f"{error_conv},")
            w.emit(")")
            if result:
                w.emit(result.replace("{}", "_result"))
            return

        with w.block("with _runtime.BufferScope(_ALLOCATOR) as _scope:"):
            w.emit("_result = _runtime.call_with_status(")
            with w.indented():
                w.emit("_ALLOCATOR,")
                w.emit(f"{error_conv},")
                w.emit(f"_lib.{fn.name},")
                for expr in lowered:
                    w.emit(f"{expr},")
                w.emit("scope=_scope,")
            w.emit(")")
        if result:
            w.emit(result.replace("{}", returns.replace("{}", "_result")))

    def _emit_callable(
        self,
        w: CodeWriter,
        header: str,
        docstring: Optional[str],
        fn: FfiFunction,
        arguments: tuple[Argument, ...],
        throws: Optional[TypeRef],
        receiver: Optional[str],
        return_type: Optional[TypeRef],
        result: Optional[str] = None,
    ) -> None:
        with w.block(header):
            _docstring(w, docstring)
            if return_type is not None:
                returns = self.map_type(return_type).lift
                result = result or "return {}"
            else:
                returns = "{}"
            async_return = lower_type(return_type) if return_type is not None else None
            self._call_body(w, fn, arguments, throws, receiver, result, returns, async_return)

    # =========================================================================
    # Items
    # =========================================================================

    def emit_function(self, function: Function) -> EmittedItem:
        fn = self.ffi.function_for("", function.name)
        w = CodeWriter()
        ret = f" -> {self.surface(function.return_type)}" if function.return_type else " -> None"
        prefix = "async def" if function.is_async else "def"
        header = f"{prefix} {self.ident(function.name)}({self._parameters(function.arguments)}){ret}:"
        self._emit_callable(
            w, header, function.docstring, fn, function.arguments,
            function.throws, None, function.return_type,
        )
        out = EmittedItem(function.name)
        out.add("function", w.render())
        return out

    def emit_record(self, record: Record) -> EmittedItem:
        cls = self.class_name(record.name)
        w = CodeWriter()
        needs_kw_only = self._defaults_out_of_order(record.fields)
        w.emit("@dataclasses.dataclass(kw_only=True)" if needs_kw_only else "@dataclasses.dataclass")
        with w.block(f"class {cls}:"):
            _docstring(w, record.docstring)
            self._dataclass_fields(w, record.fields)
            if not record.fields and not record.docstring:
                w.emit("pass")

        c = CodeWriter()
        with c.block(f"class _ConverterType{cls}(_runtime.BufferConverter):"):
            with c.block("def read(self, reader):"):
                self._construct_from_reader(c, cls, record.fields)
            c.blank()
            with c.block("def write(self, value, writer):"):
                self._write_fields(c, record.fields)
        c.blank()
        c.blank()
        c.emit(f"_FfiConverterType{cls} = _ConverterType{cls}()")

        out = EmittedItem(record.name)
        out.add("declaration", w.render())
        out.add("converter", c.render())
        return out

    def _defaults_out_of_order(self, fields: tuple[Field, ...]) -> bool:
        seen_default = False
        for f in fields:
            if f.default is not None:
                seen_default = True
            elif seen_default:
                return True
        return False

    def _dataclass_fields(self, w: CodeWriter, fields: tuple[Field, ...]) -> None:
        for f in fields:
            line = f"{self.ident(f.name)}: {self.surface(f.type)}"
            if f.default is not None:
                if f.default.kind == LiteralKind.EMPTY_SEQUENCE:
                    line += " = dataclasses.field(default_factory=list)"
                elif f.default.kind == LiteralKind.EMPTY_MAP:
                    line += " = dataclasses.field(default_factory=dict)"
                else:
                    line += f" = {self.literal(f.default, f.type)}"
            w.emit(line)
            if f.docstring:
                _docstring(w, f.docstring)

    def _construct_from_reader(self, w: CodeWriter, cls: str, fields: tuple[Field, ...]) -> None:
        if not fields:
            w.emit(f"return {cls}()")
            return
        w.emit(f"return {cls}(")
        with w.indented():
            for f in fields:
                w.emit(f"{self.ident(f.name)}={self.converter(f.type)}.read(reader),")
        w.emit(")")

    def _write_fields(self, w: CodeWriter, fields: tuple[Field, ...], value: str = "value") -> None:
        if not fields:
            w.emit("pass")
        for f in fields:
            w.emit(f"{self.converter(f.type)}.write({value}.{self.ident(f.name)}, writer)")

    def emit_enum(self, enum: Enum) -> EmittedItem:
        out = EmittedItem(enum.name)
        if enum.is_error:
            self._error_enum(enum, out)
        elif enum.is_flat:
            self._flat_enum_decl(enum, out)
        else:
            self._sum_enum(enum, out)
        return out

    def _flat_enum_decl(self, enum: Enum, out: EmittedItem) -> None:
        cls = self.class_name(enum.name)
        w = CodeWriter()
        with w.block(f"class {cls}(enum.Enum):"):
            _docstring(w, enum.docstring)
            for index, variant in enumerate(enum.variants, start=1):
                w.emit(f"{shouty_case(variant.name)} = {index}")
            if not enum.variants and not enum.docstring:
                w.emit("pass")

        c = CodeWriter()
        with c.block(f"class _ConverterType{cls}(_runtime.BufferConverter):"):
            with c.block("def read(self, reader):"):
                c.emit("index = reader.read_i32()")
                with c.block("try:"):
                    c.emit(f"return {cls}(index)")
                with c.block("except ValueError:"):
                    c.emit(f'raise _runtime.BufferFormatError(f"invalid {cls} variant {{index}}") from None')
            c.blank()
            with c.block("def write(self, value, writer):"):
                c.emit("writer.write_i32(value.value)")
        c.blank()
        c.blank()
        c.emit(f"_FfiConverterType{cls} = _ConverterType{cls}()")
        out.add("enum", w.render())
        out.add("converter", c.render())

    def _variant_class(self, cls: str, variant_name: str) -> str:
        return f"_{cls}{self.class_name(variant_name)}"

    def _sum_enum(self, enum: Enum, out: EmittedItem) -> None:
        cls = self.class_name(enum.name)
        w = CodeWriter()
        with w.block(f"class {cls}:"):
            _docstring(w, enum.docstring or f"Base of the {cls} variants.")
        for variant in enum.variants:
            vcls = self._variant_class(cls, variant.name)
            w.blank()
            w.blank()
            kw_only = self._defaults_out_of_order(variant.fields)
            w.emit("@dataclasses.dataclass(kw_only=True)" if kw_only else "@dataclasses.dataclass")
            with w.block(f"class {vcls}({cls}):"):
                _docstring(w, variant.docstring)
                self._dataclass_fields(w, variant.fields)
                if not variant.fields and not variant.docstring:
                    w.emit("pass")
            w.blank()
            w.blank()
            w.emit(f"{vcls}.__name__ = {json.dumps(self.class_name(variant.name))}")
            w.emit(f"{vcls}.__qualname__ = {json.dumps(cls + '.' + self.class_name(variant.name))}")
            w.emit(f"{cls}.{self.class_name(variant.name)} = {vcls}")

        out.add("declaration", w.render())
        out.add("converter", self._variant_converter(enum, cls, error=False))

    def _error_enum(self, enum: Enum, out: EmittedItem) -> None:
        cls = self.class_name(enum.name)
        w = CodeWriter()
        with w.block(f"class {cls}(Exception):"):
            _docstring(w, enum.docstring or f"Errors raised as {cls}.")
        for variant in enum.variants:
            vcls = self._variant_class(cls, variant.name)
            vname = self.class_name(variant.name)
            w.blank()
            w.blank()
            with w.block(f"class {vcls}({cls}):"):
                _docstring(w, variant.docstring)
                if variant.fields:
                    params = ", ".join(
                        f"{self.ident(f.name)}: {self.surface(f.type)}" for f in variant.fields
                    )
                    with w.block(f"def __init__(self, {params}):"):
                        for f in variant.fields:
                            w.emit(f"self.{self.ident(f.name)} = {self.ident(f.name)}")
                        w.emit(f"super().__init__({', '.join(self.ident(f.name) for f in variant.fields)})")
                    w.blank()
                    with w.block("def __str__(self) -> str:"):
                        shown = ", ".join(f"{self.ident(f.name)}={{self.{self.ident(f.name)}!r}}" for f in variant.fields)
                        w.emit(f'return f"{cls}.{vname}({shown})"')
                else:
                    with w.block("def __str__(self) -> str:"):
                        w.emit(f'return "{cls}.{vname}"')
            w.blank()
            w.blank()
            w.emit(f"{vcls}.__name__ = {json.dumps(vname)}")
            w.emit(f"{vcls}.__qualname__ = {json.dumps(cls + '.' + vname)}")
            w.emit(f"{cls}.{vname} = {vcls}")

        out.add("declaration", w.render())
        out.add("converter", self._variant_converter(enum, cls, error=True))

    def _variant_converter(self, enum: Enum, cls: str, error: bool) -> str:
        c = CodeWriter()
        with c.block(f"class _ConverterType{cls}(_runtime.BufferConverter):"):
            if error:
                c.emit(f"error_type = {cls}")
                c.blank()
            with c.block("def read(self, reader):"):
                c.emit("index = reader.read_i32()")
                for index, variant in enumerate(enum.variants, start=1):
                    with c.block(f"if index == {index}:"):
                        self._construct_from_reader(c, self._variant_class(cls, variant.name), variant.fields)
                c.emit(f'raise _runtime.BufferFormatError(f"invalid {cls} variant {{index}}")')
            c.blank()
            with c.block("def write(self, value, writer):"):
                for index, variant in enumerate(enum.variants, start=1):
                    with c.block(f"if isinstance(value, {self._variant_class(cls, variant.name)}):"):
                        c.emit(f"writer.write_i32({index})")
                        for f in variant.fields:
                            c.emit(f"{self.converter(f.type)}.write(value.{self.ident(f.name)}, writer)")
                        c.emit("return")
                c.emit(f'raise TypeError(f"not a {cls} variant: {{value!r}}")')
        c.blank()
        c.blank()
        c.emit(f"_FfiConverterType{cls} = _ConverterType{cls}()")
        return c.render()

    def emit_object(self, obj: Object) -> EmittedItem:
        cls = self.class_name(obj.name)
        functions = self.ffi.objects[obj.name]
        base = "(Exception)" if obj.name in self._error_types else ""
        w = CodeWriter()
        with w.block(f"class {cls}{base}:"):
            _docstring(w, obj.docstring)
            w.emit("_handle: int = 0")
            w.blank()

            primary = obj.primary_constructor
            if primary is not None and not primary.is_async:
                header = f"def __init__({self._parameters(primary.arguments, ('self',))}):"
                self._emit_callable(
                    w, header, primary.docstring, self.ffi.function_for(obj.name, primary.name),
                    primary.arguments, primary.throws, None, ObjectType(obj.name),
                    result="self._handle = _result",
                )
            else:
                with w.block("def __init__(self, *args, **kwargs):"):
                    hint = "use 'await {0}.new(...)'" if primary is not None else "use a named constructor"
                    w.emit(f'raise TypeError("{cls} cannot be constructed directly; {hint.format(cls)}")')

            for ctor in obj.constructors:
                if ctor.is_primary and not ctor.is_async:
                    continue
                w.blank()
                w.emit("@classmethod")
                prefix = "async def" if ctor.is_async else "def"
                header = f"{prefix} {self.ident(ctor.name)}({self._parameters(ctor.arguments, ('cls',))}) -> {cls}:"
                self._emit_callable(
                    w, header, ctor.docstring, self.ffi.function_for(obj.name, ctor.name),
                    ctor.arguments, ctor.throws, None, ObjectType(obj.name),
                )

            w.blank()
            w.emit("@classmethod")
            with w.block(f"def _make_instance(cls, handle: int) -> {cls}:"):
                w.emit("instance = cls.__new__(cls)")
                w.emit("instance._handle = handle")
                w.emit("return instance")
            w.blank()
            with w.block("def _live_handle(self) -> int:"):
                with w.block("if not self._handle:"):
                    w.emit(f'raise _runtime.HandleError("{cls} has been closed")')
                w.emit("return self._handle")
            w.blank()
            with w.block("def _clone_handle(self) -> int:"):
                w.emit(f"return _runtime.call_with_status(_ALLOCATOR, None, _lib.{functions.clone.name}, self._live_handle())")
            w.blank()
            w.emit("@classmethod")
            with w.block("def _release_handle(cls, handle: int) -> None:"):
                w.emit(f"_runtime.call_with_status(_ALLOCATOR, None, _lib.{functions.free.name}, handle)")
            w.blank()
            with w.block("def _take_handle(self, scope: _runtime.BufferScope) -> int:"):
                w.emit("handle = self._live_handle()")
                w.emit("self._handle = 0")
                w.emit("scope.on_abort(lambda: setattr(self, \"_handle\", handle))")
                w.emit("return handle")
            w.blank()
            with w.block("def close(self) -> None:"):
                w.emit('"""Release the native object. Later calls raise HandleError."""')
                w.emit("handle, self._handle = self._handle, 0")
                with w.block("if handle:"):
                    w.emit("self._release_handle(handle)")
            w.blank()
            with w.block(f"def __enter__(self) -> {cls}:"):
                w.emit("return self")
            w.blank()
            with w.block("def __exit__(self, *exc_info) -> None:"):
                w.emit("self.close()")
            w.blank()
            with w.block("def __del__(self) -> None:"):
                with w.block("if self._handle:"):
                    w.emit("self.close()")

            for method in obj.methods:
                w.blank()
                self._emit_method(w, obj, method)

        c = CodeWriter()
        c.emit(f"_FfiConverterType{cls} = _runtime.ObjectConverter({cls})")
        if obj.name in self._error_types:
            c.emit(f"_ErrorConverterType{cls} = _runtime.ErrorConverter(_FfiConverterType{cls}, {cls})")

        out = EmittedItem(obj.name)
        out.add("declaration", w.render())
        out.add("converter", c.render())
        return out

    def _emit_method(self, w: CodeWriter, obj: Object, method: Method) -> None:
        fn = self.ffi.function_for(obj.name, method.name)
        ret = f" -> {self.surface(method.return_type)}" if method.return_type else " -> None"
        prefix = "async def" if method.is_async else "def"
        header = f"{prefix} {self.ident(method.name)}({self._parameters(method.arguments, ('self',))}){ret}:"
        receiver = "self._take_handle(_scope)" if method.self_mode == SelfMode.CONSUMING else "self._live_handle()"
        self._emit_callable(
            w, header, method.docstring, fn, method.arguments,
            method.throws, receiver, method.return_type,
        )

    def emit_callback(self, callback: CallbackInterface) -> EmittedItem:
        cls = self.class_name(callback.name)
        vtable = self.ffi.vtables[callback.name]
        conv = f"_FfiConverterType{cls}"

        w = CodeWriter()
        with w.block(f"class {cls}(abc.ABC):"):
            _docstring(w, callback.docstring)
            if not callback.methods and not callback.docstring:
                w.emit("pass")
            for i, method in enumerate(callback.methods):
                if i or callback.docstring:
                    w.blank()
                ret = f" -> {self.surface(method.return_type)}" if method.return_type else " -> None"
                w.emit("@abc.abstractmethod")
                with w.block(f"def {self.ident(method.name)}({self._parameters(method.arguments, ('self',))}){ret}:"):
                    _docstring(w, method.docstring)
                    w.emit("raise NotImplementedError")

        c = CodeWriter()
        c.emit(f"{conv} = _runtime.CallbackInterfaceConverter({cls})")

        v = CodeWriter()
        slot_types = []
        for method, slot in zip(callback.methods, vtable.methods):
            fn_type = f"_{cls}{self.class_name(method.name)}Fn"
            slot_types.append((method, slot, fn_type))
            params = ["ctypes.c_uint64"]
            for arg in slot.arguments[1:]:
                ctype = CTYPES[arg.type]
                params.append(f"ctypes.POINTER({ctype})" if arg.out else ctype)
            params.append("ctypes.POINTER(_runtime.CallStatus)")
            v.emit(f"{fn_type} = ctypes.CFUNCTYPE(None, {', '.join(params)})")
        if slot_types:
            v.blank()
            v.blank()

        with v.block(f"class _VTable{cls}(ctypes.Structure):"):
            v.emit("_fields_ = [")
            with v.indented():
                v.emit('("free", _runtime.CALLBACK_FREE_T),')
                v.emit('("clone", _runtime.CALLBACK_CLONE_T),')
                for method, slot, fn_type in slot_types:
                    v.emit(f'("{snake_case(method.name)}", {fn_type}),')
            v.emit("]")
        v.blank()
        v.blank()
        stem = f"_{snake_case(callback.name)}"
        with v.block(f"def {stem}_free(handle):"):
            v.emit(f"{conv}.handle_table.release(handle)")
        v.blank()
        v.blank()
        with v.block(f"def {stem}_clone(handle):"):
            v.emit(f"return {conv}.handle_table.clone(handle)")

        for method, slot, fn_type in slot_types:
            v.blank()
            v.blank()
            arg_names = [f"_arg_{self.ident(a.name)}" for a in method.arguments]
            params = ["_handle", *arg_names]
            if method.return_type is not None:
                params.append("_out_return")
            params.append("_status")
            with v.block(f"def {stem}_{snake_case(method.name)}({', '.join(params)}):"):
                with v.block("def make_call():"):
                    v.emit(f"implementation = {conv}.handle_table.get(_handle)")
                    v.emit(f"return implementation.{self.ident(method.name)}(")
                    with v.indented():
                        for arg, name in zip(method.arguments, arg_names):
                            v.emit(f"{self.converter(arg.type)}.lift_argument({name}),")
                    v.emit(")")
                write_return = "None"
                if method.return_type is not None:
                    v.blank()
                    with v.block("def write_return(value):"):
                        v.emit(f"_out_return[0] = {self.converter(method.return_type)}.lower(value, _ALLOCATOR)")
                    write_return = "write_return"
                v.blank()
                v.emit(
                    f"_runtime.invoke_callback(_status, _ALLOCATOR, make_call, {write_return}, "
                    f"{self.error_converter(method.throws)})"
                )

        v.blank()
        v.blank()
        table = f"_VTABLE_{shouty_case(callback.name)}"
        v.emit(f"{table} = _VTable{cls}(")
        with v.indented():
            v.emit(f"_runtime.CALLBACK_FREE_T({stem}_free),")
            v.emit(f"_runtime.CALLBACK_CLONE_T({stem}_clone),")
            for method, slot, fn_type in slot_types:
                v.emit(f"{fn_type}({stem}_{snake_case(method.name)}),")
        v.emit(")")
        init = vtable.init_function.name
        v.emit(f"_lib.{init}.argtypes = [ctypes.POINTER(_VTable{cls})]")
        v.emit(f"_lib.{init}.restype = None")
        v.emit(f"_lib.{init}(ctypes.pointer({table}))")

        out = EmittedItem(callback.name)
        out.add("declaration", w.render())
        out.add("converter", c.render())
        out.add("vtable", v.render())
        return out

    # =========================================================================
    # Module Assembly
    # =========================================================================

    def _runtime_symbols(self) -> set[str]:
        """Symbols declared by the runtime or the vtable sections rather than here."""
        symbols = {
            self.ffi.contract_version_symbol,
            self.ffi.buffer_alloc.name,
            self.ffi.buffer_from_bytes.name,
            self.ffi.buffer_free.name,
        }
        symbols.update(self.ffi.checksums)
        symbols.update(v.init_function.name for v in self.ffi.vtables.values())
        return symbols

    def _argtypes(self, fn: FfiFunction) -> str:
        types = []
        for arg in fn.arguments:
            ctype = CTYPES[arg.type]
            types.append(f"ctypes.POINTER({ctype})" if arg.out else ctype)
        if fn.has_call_status:
            types.append(CTYPES[FfiType.CALL_STATUS])
        return f"[{', '.join(types)}]"

    def _emit_abi_declarations(self, w: CodeWriter) -> None:
        skip = self._runtime_symbols()
        for fn in self.ffi.functions:
            if fn.name in skip:
                continue
            w.emit(f"_lib.{fn.name}.argtypes = {self._argtypes(fn)}")
            restype = CTYPES[fn.return_type] if fn.return_type else "None"
            w.emit(f"_lib.{fn.name}.restype = {restype}")

    def _composite_order(self) -> list[TypeRef]:
        def depth(ref: TypeRef) -> int:
            return 1 + max((depth(c) for c in ref.children()), default=0)

        return sorted(self._composites.values(), key=lambda r: (depth(r), r.canonical_name))

    def _composite_line(self, ref: TypeRef) -> str:
        name = f"_FfiConverter{ref.canonical_name}"
        if isinstance(ref, OptionalType):
            return f"{name} = _runtime.OptionalConverter({self.converter(ref.inner)})"
        if isinstance(ref, SequenceType):
            return f"{name} = _runtime.SequenceConverter({self.converter(ref.inner)})"
        return f"{name} = _runtime.MapConverter({self.converter(ref.key)}, {self.converter(ref.value)})"

    def render(self, items: list[EmittedItem]) -> dict[str, str]:
        ns = self.ir.namespace
        logger.debug(f"Rendering {ns}.py from {len(items)} item(s)")
        w = CodeWriter()
        w.emit(f"# Generated by ffibridge from the '{ns}' interface. Do not edit.")
        _docstring(w, self.ir.docstring or f"Python bindings for the '{ns}' interface.")
        w.blank()
        w.emit("from __future__ import annotations")
        w.blank()
        for module in ("abc", "ctypes", "dataclasses", "datetime", "enum", "os", "typing"):
            w.emit(f"import {module}")
        w.blank()
        w.emit("from ffibridge import runtime as _runtime")
        for namespace in sorted(self._external_namespaces):
            w.emit(f"import {namespace} as _ext_{namespace}")
        w.blank()
        w.emit(f'_PREFIX = "{self.ffi.prefix}"')
        w.emit(f"_CONTRACT_VERSION = {self.ffi.contract_version}")
        w.emit(f"_INTERFACE_CHECKSUM = {self.ffi.checksum}")
        w.blank()
        w.emit(
            f'_lib = _runtime.load_library("{ns}", "{self.cdylib_name}", '
            "os.path.dirname(os.path.abspath(__file__)))"
        )
        w.emit("_ALLOCATOR = _runtime.LibraryAllocator(_lib, _PREFIX)")
        w.blank()
        self._emit_abi_declarations(w)
        w.blank()
        w.emit("_runtime.verify_contract_version(_lib, _PREFIX, _CONTRACT_VERSION)")
        if self.ffi.checksums:
            w.emit("_runtime.verify_checksums(_lib, {")
            with w.indented():
                for symbol, value in self.ffi.checksums.items():
                    w.emit(f'"{symbol}": {value},')
            w.emit("})")
        else:
            w.emit("_runtime.verify_checksums(_lib, {})")

        for section in SECTIONS:
            for item in items:
                text = item.sections.get(section)
                if text:
                    w.blank()
                    w.blank()
                    w.emit_raw(text)
            if section == "converter" and self._composites:
                w.blank()
                w.blank()
                for ref in self._composite_order():
                    w.emit(self._composite_line(ref))

        public = sorted(
            self.class_name(i.name) if not isinstance(i, Function) else self.ident(i.name)
            for i in self.ir.items
        )
        w.blank()
        w.blank()
        w.emit("__all__ = [")
        with w.indented():
            for name in public:
                w.emit(f'"{name}",')
        w.emit("]")
        return {f"{ns}.py": w.render()}
