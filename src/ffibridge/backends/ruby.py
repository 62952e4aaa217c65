"""
Ruby Backend
============

Emits ``<namespace>.rb`` using the ``ffi`` gem. Ruby has no way here to
hand native code a thread-safe function pointer or to await a native
future, so callback interfaces and async callables are rejected with
UnsupportedTypeForAbi for the items that use them.

Options
-------
| Option      | Default                 |
|-------------|-------------------------|
| module_name | PascalCase of namespace |
| cdylib_name | <namespace>             |
"""

import json
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
    CallbackInterfaceType,
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
    is_handle_type,
)
from ffibridge.naming import escape_keyword, pascal_case, shouty_case, snake_case

logger = logging.getLogger(__name__)

RUBY_KEYWORDS = frozenset({
    "BEGIN", "END", "alias", "and", "begin", "break", "case", "class", "def",
    "defined?", "do", "else", "elsif", "end", "ensure", "false", "for", "if",
    "in", "module", "next", "nil", "not", "or", "redo", "rescue", "retry",
    "return", "self", "super", "then", "true", "undef", "unless", "until",
    "when", "while", "yield",
})

FFI_TYPES: dict[FfiType, str] = {
    FfiType.INT8: ":int8",
    FfiType.UINT8: ":uint8",
    FfiType.INT16: ":int16",
    FfiType.UINT16: ":uint16",
    FfiType.INT32: ":int32",
    FfiType.UINT32: ":uint32",
    FfiType.INT64: ":int64",
    FfiType.UINT64: ":uint64",
    FfiType.FLOAT32: ":float",
    FfiType.FLOAT64: ":double",
    FfiType.HANDLE: ":uint64",
    FfiType.BUFFER: "ForeignBuffer.by_value",
    FfiType.FOREIGN_BYTES: "ForeignBytes.by_value",
    FfiType.CALL_STATUS: "CallStatus.by_ref",
}

PRIMITIVE_CONVERTERS: dict[PrimitiveKind, str] = {
    PrimitiveKind.I8: "FfiConverterInt8",
    PrimitiveKind.U8: "FfiConverterUInt8",
    PrimitiveKind.I16: "FfiConverterInt16",
    PrimitiveKind.U16: "FfiConverterUInt16",
    PrimitiveKind.I32: "FfiConverterInt32",
    PrimitiveKind.U32: "FfiConverterUInt32",
    PrimitiveKind.I64: "FfiConverterInt64",
    PrimitiveKind.U64: "FfiConverterUInt64",
    PrimitiveKind.F32: "FfiConverterFloat32",
    PrimitiveKind.F64: "FfiConverterFloat64",
    PrimitiveKind.BOOLEAN: "FfiConverterBoolean",
    PrimitiveKind.STRING: "FfiConverterString",
    PrimitiveKind.BYTES: "FfiConverterBytes",
    PrimitiveKind.TIMESTAMP: "FfiConverterTimestamp",
    PrimitiveKind.DURATION: "FfiConverterDuration",
}

PRIMITIVE_SURFACE: dict[PrimitiveKind, str] = {
    PrimitiveKind.F32: "Float",
    PrimitiveKind.F64: "Float",
    PrimitiveKind.BOOLEAN: "Boolean",
    PrimitiveKind.STRING: "String",
    PrimitiveKind.BYTES: "String",
    PrimitiveKind.TIMESTAMP: "Time",
    PrimitiveKind.DURATION: "Float",
}

PRELUDE = """\
  class InternalError < StandardError; end
  class BufferFormatError < InternalError; end
  class ContractMismatchError < InternalError; end

  CALL_SUCCESS = 0
  CALL_ERROR = 1
  CALL_UNEXPECTED_ERROR = 2
  CALL_CANCELLED = 3

  class ForeignBuffer < FFI::Struct
    layout :capacity, :uint64,
           :len, :uint64,
           :data, :pointer

    def to_bytes
      self[:data].null? ? ''.b : self[:data].read_bytes(self[:len])
    end
  end

  class ForeignBytes < FFI::Struct
    layout :len, :int32,
           :data, :pointer
  end

  class CallStatus < FFI::Struct
    layout :code, :int8,
           :error_buf, ForeignBuffer
  end

  class Reader
    def initialize(data)
      @data = data
      @offset = 0
    end

    def read(size, format = nil)
      raise BufferFormatError, 'buffer ends inside a value' if @offset + size > @data.bytesize

      chunk = @data.byteslice(@offset, size)
      @offset += size
      format ? chunk.unpack1(format) : chunk
    end

    def finish
      remaining = @data.bytesize - @offset
      raise BufferFormatError, "#{remaining} unread bytes after value" unless remaining.zero?
    end
  end

  class Writer
    attr_reader :data

    def initialize
      @data = ''.b
    end

    def write(value, format)
      @data << [value].pack(format)
    end

    def write_bytes(bytes)
      @data << bytes.b
    end
  end

  module BufferConverter
    def lift(buf)
      lift_argument(buf)
    ensure
      FfiBridge.free_buffer(buf)
    end

    def lift_argument(buf)
      reader = Reader.new(buf.to_bytes)
      value = read(reader)
      reader.finish
      value
    end

    def lower(value)
      writer = Writer.new
      write(value, writer)
      FfiBridge.alloc_buffer(writer.data)
    end
  end

  class IntegerConverter
    def initialize(format, min, max)
      @format = format
      @min = min
      @max = max
    end

    def check(value)
      raise TypeError, "expected an Integer, got #{value.class}" unless value.is_a?(Integer)
      raise RangeError, "#{value} is out of range" unless value.between?(@min, @max)

      value
    end

    def lift(value) = value
    def lift_argument(value) = value
    def lower(value) = check(value)
    def read(reader) = reader.read([0].pack(@format).bytesize, @format)
    def write(value, writer) = writer.write(check(value), @format)
  end

  class FloatConverter
    def initialize(format)
      @format = format
    end

    def lift(value) = value
    def lift_argument(value) = value
    def lower(value) = Float(value)
    def read(reader) = reader.read([0.0].pack(@format).bytesize, @format)
    def write(value, writer) = writer.write(Float(value), @format)
  end

  FfiConverterInt8 = IntegerConverter.new('c', -2**7, 2**7 - 1)
  FfiConverterUInt8 = IntegerConverter.new('C', 0, 2**8 - 1)
  FfiConverterInt16 = IntegerConverter.new('s>', -2**15, 2**15 - 1)
  FfiConverterUInt16 = IntegerConverter.new('S>', 0, 2**16 - 1)
  FfiConverterInt32 = IntegerConverter.new('l>', -2**31, 2**31 - 1)
  FfiConverterUInt32 = IntegerConverter.new('L>', 0, 2**32 - 1)
  FfiConverterInt64 = IntegerConverter.new('q>', -2**63, 2**63 - 1)
  FfiConverterUInt64 = IntegerConverter.new('Q>', 0, 2**64 - 1)
  FfiConverterFloat32 = FloatConverter.new('g')
  FfiConverterFloat64 = FloatConverter.new('G')

  module FfiConverterBoolean
    def self.lift(value) = value != 0
    def self.lift_argument(value) = value != 0
    def self.lower(value) = value ? 1 : 0
    def self.read(reader) = reader.read(1, 'c') != 0
    def self.write(value, writer) = writer.write(value ? 1 : 0, 'c')
  end

  module FfiConverterString
    extend BufferConverter

    def self.read(reader)
      size = reader.read(4, 'l>')
      reader.read(size).force_encoding(Encoding::UTF_8)
    end

    def self.write(value, writer)
      raise TypeError, "expected a String, got #{value.class}" unless value.is_a?(String)

      bytes = value.encode(Encoding::UTF_8).b
      writer.write(bytes.bytesize, 'l>')
      writer.write_bytes(bytes)
    end
  end

  module FfiConverterBytes
    extend BufferConverter

    def self.read(reader)
      size = reader.read(4, 'l>')
      reader.read(size)
    end

    def self.write(value, writer)
      writer.write(value.bytesize, 'l>')
      writer.write_bytes(value)
    end
  end

  module FfiConverterTimestamp
    extend BufferConverter

    def self.read(reader)
      seconds = reader.read(8, 'q>')
      nanos = reader.read(4, 'L>')
      Time.at(seconds, nanos, :nsec).utc
    end

    def self.write(value, writer)
      writer.write(value.to_i, 'q>')
      writer.write(value.nsec, 'L>')
    end
  end

  module FfiConverterDuration
    extend BufferConverter

    def self.read(reader)
      seconds = reader.read(8, 'Q>')
      nanos = reader.read(4, 'L>')
      seconds + nanos / 1e9
    end

    def self.write(value, writer)
      raise ArgumentError, 'durations cannot be negative' if value.negative?

      seconds = value.floor
      writer.write(seconds, 'Q>')
      writer.write(((value - seconds) * 1e9).round, 'L>')
    end
  end

  class OptionalConverter
    include BufferConverter

    def initialize(inner)
      @inner = inner
    end

    def read(reader)
      reader.read(1, 'c').zero? ? nil : @inner.read(reader)
    end

    def write(value, writer)
      if value.nil?
        writer.write(0, 'c')
      else
        writer.write(1, 'c')
        @inner.write(value, writer)
      end
    end
  end

  class OptionalHandleConverter
    def initialize(inner)
      @inner = inner
    end

    def lift(value) = value.zero? ? nil : @inner.lift(value)
    def lift_argument(value) = lift(value)
    def lower(value) = value.nil? ? 0 : @inner.lower(value)
    def read(reader) = lift(reader.read(8, 'Q>'))
    def write(value, writer) = writer.write(lower(value), 'Q>')
  end

  class SequenceConverter
    include BufferConverter

    def initialize(inner)
      @inner = inner
    end

    def read(reader)
      Array.new(reader.read(4, 'l>')) { @inner.read(reader) }
    end

    def write(value, writer)
      writer.write(value.length, 'l>')
      value.each { |item| @inner.write(item, writer) }
    end
  end

  class MapConverter
    include BufferConverter

    def initialize(key, value)
      @key = key
      @value = value
    end

    def read(reader)
      count = reader.read(4, 'l>')
      count.times.to_h { [@key.read(reader), @value.read(reader)] }
    end

    def write(value, writer)
      writer.write(value.length, 'l>')
      value.each do |k, v|
        @key.write(k, writer)
        @value.write(v, writer)
      end
    end
  end

  class ObjectConverter
    def initialize(cls)
      @cls = cls
    end

    def lift(value) = @cls._make_instance(value)
    def lift_argument(value) = lift(value)

    def lower(value)
      raise TypeError, "expected #{@cls}, got #{value.class}" unless value.is_a?(@cls)

      value._clone_handle
    end

    def read(reader) = lift(reader.read(8, 'Q>'))
    def write(value, writer) = writer.write(lower(value), 'Q>')
  end

  class ErrorConverter
    include BufferConverter

    def initialize(inner)
      @inner = inner
    end

    def read(reader) = @inner.read(reader)
    def write(value, writer) = @inner.write(value, writer)
  end

  class ArgumentScope
    def initialize
      @buffers = []
    end

    def lower(converter, value)
      lowered = converter.lower(value)
      @buffers << lowered if lowered.is_a?(ForeignBuffer)
      lowered
    end

    def release
      @buffers.each { |buf| FfiBridge.free_buffer(buf) }
      @buffers.clear
    end
  end

  module FfiBridge
    def self.with_scope
      scope = ArgumentScope.new
      yield scope
    ensure
      scope.release
    end

    def self.call_with_status(error_converter)
      status = CallStatus.new
      result = yield status
      check_status(status, error_converter)
      result
    end

    def self.check_status(status, error_converter)
      case status[:code]
      when CALL_SUCCESS
        nil
      when CALL_ERROR
        raise error_converter.lift(status[:error_buf]) if error_converter

        free_buffer(status[:error_buf])
        raise InternalError, 'native code returned a declared error for a call that declares none'
      when CALL_UNEXPECTED_ERROR
        raise InternalError, 'native code failed without a message' if status[:error_buf][:len].zero?

        raise InternalError, FfiConverterString.lift(status[:error_buf])
      when CALL_CANCELLED
        raise InternalError, 'the native call was cancelled'
      else
        raise InternalError, "invalid call status code #{status[:code]}"
      end
    end
  end
"""


def _doc(w: CodeWriter, text: Optional[str]) -> None:
    w.emit_doc(text, "# ")


def _string_literal(value: str) -> str:
    return json.dumps(value).replace("#{", "\\#{")


class RubyBackend:
    """Emitter for Ruby bindings using the ffi gem."""

    name = "ruby"
    formatter = ("rubocop", "-a")

    def __init__(self, context: BackendContext):
        self.context = context
        self.ir = context.ir
        self.ffi = context.ffi
        self.module_name = context.config.option("module_name", pascal_case(self.ir.namespace))
        self.cdylib_name = context.config.option("cdylib_name", self.ir.namespace)
        self._composites: dict[str, TypeRef] = {}
        self._error_types = self.ir.error_type_names()

    @staticmethod
    def ident(name: str) -> str:
        return escape_keyword(snake_case(name), RUBY_KEYWORDS)

    @staticmethod
    def class_name(name: str) -> str:
        return pascal_case(name)

    # =========================================================================
    # Type Mapping
    # =========================================================================

    def converter(self, ref: TypeRef) -> str:
        if isinstance(ref, PrimitiveType):
            return PRIMITIVE_CONVERTERS[ref.kind]
        if isinstance(ref, CallbackInterfaceType):
            raise unsupported(self.name, f"callback interface '{ref.name}' cannot be passed to Ruby")
        if isinstance(ref, NamedType):
            raise unsupported(self.name, f"type '{ref.name}' is unresolved")
        if isinstance(ref, ItemRef):
            return f"FfiConverterType{self.class_name(ref.name)}"
        if isinstance(ref, ExternalType):
            return f"::{pascal_case(ref.namespace)}::FfiConverterType{self.class_name(ref.name)}"
        if isinstance(ref, (OptionalType, SequenceType, MappingType)):
            for child in ref.children():
                self.converter(child)
            self._composites.setdefault(ref.canonical_name, ref)
            return f"FfiConverter{ref.canonical_name}"
        raise unsupported(self.name, f"cannot map type {ref}")

    def surface(self, ref: TypeRef) -> str:
        """Type name used in documentation comments."""
        if isinstance(ref, PrimitiveType):
            return PRIMITIVE_SURFACE.get(ref.kind, "Integer")
        if isinstance(ref, OptionalType):
            return f"{self.surface(ref.inner)}, nil"
        if isinstance(ref, SequenceType):
            return f"Array<{self.surface(ref.inner)}>"
        if isinstance(ref, MappingType):
            return f"Hash{{{self.surface(ref.key)} => {self.surface(ref.value)}}}"
        if isinstance(ref, ExternalType):
            return f"::{pascal_case(ref.namespace)}::{self.class_name(ref.name)}"
        if isinstance(ref, ItemRef):
            return self.class_name(ref.name)
        raise unsupported(self.name, f"cannot map type {ref}")

    def map_type(self, ref: TypeRef) -> TypeMapping:
        conv = self.converter(ref)
        return TypeMapping(
            surface=self.surface(ref),
            ffi_type=lower_type(ref),
            lift=f"{conv}.lift({{}})",
            lower=f"scope.lower({conv}, {{}})",
        )

    def error_converter(self, throws: Optional[TypeRef]) -> str:
        if throws is None:
            return "nil"
        if isinstance(throws, ObjectType):
            return f"ErrorConverterType{self.class_name(throws.name)}"
        return self.converter(throws)

    def literal(self, lit: Literal, ref: TypeRef) -> str:
        if lit.kind == LiteralKind.NULL:
            return "nil"
        if lit.kind == LiteralKind.BOOLEAN:
            return "true" if lit.value else "false"
        if lit.kind == LiteralKind.INTEGER:
            return str(int(lit.value))
        if lit.kind == LiteralKind.FLOAT:
            return repr(float(lit.value))
        if lit.kind == LiteralKind.STRING:
            return _string_literal(str(lit.value))
        if lit.kind == LiteralKind.EMPTY_SEQUENCE:
            return "[]"
        if lit.kind == LiteralKind.EMPTY_MAP:
            return "{}"
        if lit.kind == LiteralKind.ENUM and isinstance(ref, EnumType):
            item = self.ir.get(ref.name)
            if isinstance(item, Enum) and item.is_flat and not item.is_error:
                return f"{self.class_name(ref.name)}::{shouty_case(str(lit.value))}"
        raise unsupported(self.name, f"default value {lit} does not fit type {ref}")

    # =========================================================================
    # Callables
    # =========================================================================

    def _parameters(self, arguments: tuple[Argument, ...]) -> str:
        params = []
        for arg in arguments:
            if arg.default is not None:
                params.append(f"{self.ident(arg.name)} = {self.literal(arg.default, arg.type)}")
            else:
                params.append(self.ident(arg.name))
        return ", ".join(params)

    def _signature(self, name: str, arguments: tuple[Argument, ...]) -> str:
        params = self._parameters(arguments)
        return f"def {name}({params})" if params else f"def {name}"

    def _reject_async(self, is_async: bool, what: str) -> None:
        if is_async:
            raise unsupported(self.name, f"{what} is async; Ruby bindings cannot await native futures")

    def _emit_body(
        self,
        w: CodeWriter,
        fn: FfiFunction,
        arguments: tuple[Argument, ...],
        throws: Optional[TypeRef],
        receiver: Optional[str],
        lift: Optional[str],
    ) -> None:
        lowered = [receiver] if receiver else []
        lowered.extend(self.map_type(a.type).lower_expr(self.ident(a.name)) for a in arguments)
        with w.block("FfiBridge.with_scope do |scope|", "end"):
            call = f"NativeLib.{fn.name}({', '.join(lowered + ['status'])})"
            with w.block(f"result = FfiBridge.call_with_status({self.error_converter(throws)}) do |status|", "end"):
                w.emit(call)
            if lift:
                w.emit(lift.replace("{}", "result"))
            else:
                w.emit("nil")

    # =========================================================================
    # Items
    # =========================================================================

    def emit_function(self, function: Function) -> EmittedItem:
        self._reject_async(function.is_async, f"function '{function.name}'")
        fn = self.ffi.function_for("", function.name)
        w = CodeWriter(indent_unit="  ")
        _doc(w, function.docstring)
        lift = self.map_type(function.return_type).lift if function.return_type else None
        with w.block(self._signature(f"self.{self.ident(function.name)}", function.arguments), "end"):
            self._emit_body(w, fn, function.arguments, function.throws, None, lift)
        out = EmittedItem(function.name)
        out.add("function", w.render())
        return out

    def _emit_value_class(self, w: CodeWriter, cls: str, fields: tuple[Field, ...], base: str = "") -> None:
        header = f"class {cls} < {base}" if base else f"class {cls}"
        with w.block(header, "end"):
            if fields:
                w.emit(f"attr_accessor {', '.join(':' + self.ident(f.name) for f in fields)}")
                w.blank()
                params = []
                for f in fields:
                    if f.default is not None:
                        params.append(f"{self.ident(f.name)}: {self.literal(f.default, f.type)}")
                    else:
                        params.append(f"{self.ident(f.name)}:")
                with w.block(f"def initialize({', '.join(params)})", "end"):
                    if base and self._is_exception(base):
                        w.emit("super()")
                    for f in fields:
                        w.emit(f"@{self.ident(f.name)} = {self.ident(f.name)}")
                w.blank()
                with w.block("def ==(other)", "end"):
                    checks = " && ".join(f"@{self.ident(f.name)} == other.{self.ident(f.name)}" for f in fields)
                    w.emit(f"other.class == self.class && {checks}")
            else:
                with w.block("def ==(other)", "end"):
                    w.emit("other.class == self.class")

    def _is_exception(self, base: str) -> bool:
        return base in {self.class_name(n) for n in self._error_types} or base == "StandardError"

    def _read_fields(self, cls: str, fields: tuple[Field, ...]) -> str:
        if not fields:
            return f"{cls}.new"
        args = ", ".join(f"{self.ident(f.name)}: {self.converter(f.type)}.read(reader)" for f in fields)
        return f"{cls}.new({args})"

    def emit_record(self, record: Record) -> EmittedItem:
        cls = self.class_name(record.name)
        w = CodeWriter(indent_unit="  ")
        _doc(w, record.docstring)
        self._emit_value_class(w, cls, record.fields)
        w.blank()
        with w.block(f"module FfiConverterType{cls}", "end"):
            w.emit("extend BufferConverter")
            w.blank()
            with w.block("def self.read(reader)", "end"):
                w.emit(self._read_fields(cls, record.fields))
            w.blank()
            with w.block("def self.write(value, writer)", "end"):
                for f in record.fields:
                    w.emit(f"{self.converter(f.type)}.write(value.{self.ident(f.name)}, writer)")
        out = EmittedItem(record.name)
        out.add("declaration", w.render())
        return out

    def emit_enum(self, enum: Enum) -> EmittedItem:
        cls = self.class_name(enum.name)
        w = CodeWriter(indent_unit="  ")
        _doc(w, enum.docstring)
        if enum.is_flat and not enum.is_error:
            with w.block(f"module {cls}", "end"):
                for index, variant in enumerate(enum.variants, start=1):
                    w.emit(f"{shouty_case(variant.name)} = {index}")
                w.emit(f"ALL = [{', '.join(shouty_case(v.name) for v in enum.variants)}].freeze")
            w.blank()
            with w.block(f"module FfiConverterType{cls}", "end"):
                w.emit("extend BufferConverter")
                w.blank()
                with w.block("def self.read(reader)", "end"):
                    w.emit("index = reader.read(4, 'l>')")
                    w.emit(f"raise BufferFormatError, \"invalid {cls} variant #{{index}}\" unless {cls}::ALL.include?(index)")
                    w.blank()
                    w.emit("index")
                w.blank()
                with w.block("def self.write(value, writer)", "end"):
                    w.emit("writer.write(value, 'l>')")
        else:
            base = "StandardError" if enum.is_error else ""
            with w.block(f"class {cls} < {base}" if base else f"class {cls}", "end"):
                for i, variant in enumerate(enum.variants):
                    if i:
                        w.blank()
                    _doc(w, variant.docstring)
                    self._emit_value_class(w, self.class_name(variant.name), variant.fields, cls)
            w.blank()
            with w.block(f"module FfiConverterType{cls}", "end"):
                w.emit("extend BufferConverter")
                w.blank()
                with w.block("def self.read(reader)", "end"):
                    with w.block("case reader.read(4, 'l>')", "end"):
                        for index, variant in enumerate(enum.variants, start=1):
                            w.emit(f"when {index}")
                            with w.indented():
                                w.emit(self._read_fields(f"{cls}::{self.class_name(variant.name)}", variant.fields))
                        w.emit("else")
                        with w.indented():
                            w.emit(f"raise BufferFormatError, 'invalid {cls} variant'")
                w.blank()
                with w.block("def self.write(value, writer)", "end"):
                    with w.block("case value", "end"):
                        for index, variant in enumerate(enum.variants, start=1):
                            w.emit(f"when {cls}::{self.class_name(variant.name)}")
                            with w.indented():
                                w.emit(f"writer.write({index}, 'l>')")
                                for f in variant.fields:
                                    w.emit(f"{self.converter(f.type)}.write(value.{self.ident(f.name)}, writer)")
                        w.emit("else")
                        with w.indented():
                            w.emit(f"raise TypeError, \"not a {cls} variant: #{{value.inspect}}\"")
        out = EmittedItem(enum.name)
        out.add("declaration", w.render())
        return out

    def emit_object(self, obj: Object) -> EmittedItem:
        cls = self.class_name(obj.name)
        functions = self.ffi.objects[obj.name]
        base = " < StandardError" if obj.name in self._error_types else ""
        for ctor in obj.constructors:
            self._reject_async(ctor.is_async, f"constructor '{obj.name}.{ctor.name}'")
        for method in obj.methods:
            self._reject_async(method.is_async, f"method '{obj.name}.{method.name}'")

        w = CodeWriter(indent_unit="  ")
        _doc(w, obj.docstring)
        with w.block(f"class {cls}{base}", "end"):
            with w.block("def self._make_instance(handle)", "end"):
                w.emit("instance = allocate")
                w.emit("instance.send(:_adopt, handle)")
                w.emit("instance")
            w.blank()
            with w.block("def self._destroyer(handle)", "end"):
                with w.block("proc do", "end"):
                    w.emit(f"FfiBridge.call_with_status(nil) {{ |status| NativeLib.{functions.free.name}(handle, status) }}")

            for ctor in obj.constructors:
                fn = self.ffi.function_for(obj.name, ctor.name)
                w.blank()
                _doc(w, ctor.docstring)
                if ctor.is_primary:
                    with w.block(self._signature("initialize", ctor.arguments), "end"):
                        w.emit("handle = " + self._inline_call(fn, ctor.arguments, ctor.throws))
                        w.emit("_adopt(handle)")
                else:
                    with w.block(self._signature(f"self.{self.ident(ctor.name)}", ctor.arguments), "end"):
                        self._emit_body(w, fn, ctor.arguments, ctor.throws, None, "_make_instance({})")
            if obj.primary_constructor is None:
                w.blank()
                with w.block("def initialize(*)", "end"):
                    w.emit(f"raise NoMethodError, '{cls} has no primary constructor; use a named constructor'")

            w.blank()
            with w.block("def _live_handle", "end"):
                w.emit(f"raise InternalError, '{cls} has been closed' if @handle.nil?")
                w.blank()
                w.emit("@handle")
            w.blank()
            with w.block("def _clone_handle", "end"):
                w.emit(f"FfiBridge.call_with_status(nil) {{ |status| NativeLib.{functions.clone.name}(_live_handle, status) }}")
            w.blank()
            with w.block("def _take_handle", "end"):
                w.emit("handle = _live_handle")
                w.emit("@handle = nil")
                w.emit("ObjectSpace.undefine_finalizer(self)")
                w.emit("handle")
            w.blank()
            with w.block("def close", "end"):
                w.emit("return if @handle.nil?")
                w.blank()
                w.emit("self.class._destroyer(_take_handle).call")
            for method in obj.methods:
                w.blank()
                self._emit_method(w, obj, method)
            w.blank()
            w.emit("private")
            w.blank()
            with w.block("def _adopt(handle)", "end"):
                w.emit("@handle = handle")
                w.emit("ObjectSpace.define_finalizer(self, self.class._destroyer(handle))")

        w.blank()
        w.emit(f"FfiConverterType{cls} = ObjectConverter.new({cls})")
        if obj.name in self._error_types:
            w.emit(f"ErrorConverterType{cls} = ErrorConverter.new(FfiConverterType{cls})")
        out = EmittedItem(obj.name)
        out.add("declaration", w.render())
        return out

    def _inline_call(self, fn: FfiFunction, arguments: tuple[Argument, ...], throws: Optional[TypeRef]) -> str:
        lowered = [self.map_type(a.type).lower_expr(self.ident(a.name)) for a in arguments]
        call = f"NativeLib.{fn.name}({', '.join(lowered + ['status'])})"
        return (
            "FfiBridge.with_scope { |scope| "
            f"FfiBridge.call_with_status({self.error_converter(throws)}) {{ |status| {call} }} }}"
        )

    def _emit_method(self, w: CodeWriter, obj: Object, method: Method) -> None:
        fn = self.ffi.function_for(obj.name, method.name)
        _doc(w, method.docstring)
        receiver = "_take_handle" if method.self_mode == SelfMode.CONSUMING else "_live_handle"
        lift = self.map_type(method.return_type).lift if method.return_type else None
        with w.block(self._signature(self.ident(method.name), method.arguments), "end"):
            self._emit_body(w, fn, method.arguments, method.throws, receiver, lift)

    def emit_callback(self, callback: CallbackInterface) -> EmittedItem:
        raise unsupported(
            self.name,
            f"callback interface '{callback.name}' is not supported by the Ruby bindings",
            item=callback.name,
        )

    # =========================================================================
    # File Assembly
    # =========================================================================

    def _composite_line(self, ref: TypeRef) -> str:
        name = f"FfiConverter{ref.canonical_name}"
        if isinstance(ref, OptionalType):
            kind = "OptionalHandleConverter" if is_handle_type(ref.inner) else "OptionalConverter"
            return f"{name} = {kind}.new({self.converter(ref.inner)})"
        if isinstance(ref, SequenceType):
            return f"{name} = SequenceConverter.new({self.converter(ref.inner)})"
        return f"{name} = MapConverter.new({self.converter(ref.key)}, {self.converter(ref.value)})"

    def _emit_library(self, w: CodeWriter) -> None:
        prefix = self.ffi.prefix
        with w.block("module NativeLib", "end"):
            w.emit("extend FFI::Library")
            w.emit(f"ffi_lib '{self.cdylib_name}'")
            w.blank()
            for fn in self.ffi.functions:
                if any(a.type in (FfiType.VTABLE, FfiType.CONTINUATION) for a in fn.arguments):
                    continue
                args = [FFI_TYPES[a.type] for a in fn.arguments]
                if fn.has_call_status:
                    args.append(FFI_TYPES[FfiType.CALL_STATUS])
                ret = FFI_TYPES[fn.return_type] if fn.return_type else ":void"
                w.emit(f"attach_function :{fn.name}, [{', '.join(args)}], {ret}")
        w.blank()
        with w.block("module FfiBridge", "end"):
            with w.block("def self.alloc_buffer(bytes)", "end"):
                w.emit("data = FFI::MemoryPointer.new(:uint8, [bytes.bytesize, 1].max)")
                w.emit("data.put_bytes(0, bytes)")
                w.emit("arg = ForeignBytes.new")
                w.emit("arg[:len] = bytes.bytesize")
                w.emit("arg[:data] = data")
                w.emit(f"call_with_status(nil) {{ |status| NativeLib.{prefix}buffer_from_bytes(arg, status) }}")
            w.blank()
            with w.block("def self.free_buffer(buf)", "end"):
                w.emit("return if buf[:data].null?")
                w.blank()
                w.emit(f"call_with_status(nil) {{ |status| NativeLib.{prefix}buffer_free(buf, status) }}")
        w.blank()
        version = self.ffi.contract_version
        w.emit(f"version = NativeLib.{self.ffi.contract_version_symbol}")
        w.emit(
            f"raise ContractMismatchError, \"library speaks contract version #{{version}}, "
            f"bindings expect {version}\" unless version == {version}"
        )
        if self.ffi.checksums:
            w.blank()
            w.emit("{")
            with w.indented():
                for symbol, expected in self.ffi.checksums.items():
                    w.emit(f"{symbol}: {expected},")
            with w.block("}.each do |symbol, expected|", "end"):
                w.emit("raise ContractMismatchError, \"checksum mismatch for #{symbol}\" unless NativeLib.send(symbol) == expected")

    def render(self, items: list[EmittedItem]) -> dict[str, str]:
        ns = self.ir.namespace
        logger.debug(f"Rendering Ruby module {self.module_name}")
        w = CodeWriter(indent_unit="  ")
        w.emit(f"# Generated by ffibridge from the '{ns}' interface. Do not edit.")
        w.emit("# frozen_string_literal: true")
        w.blank()
        w.emit("require 'ffi'")
        w.blank()
        with w.block(f"module {self.module_name}", "end"):
            w.emit_raw(PRELUDE.replace("\n  ", "\n").removeprefix("  "))
            w.blank()
            self._emit_library(w)
            for item in items:
                text = item.sections.get("declaration")
                if text:
                    w.blank()
                    w.emit_raw(text)
            if self._composites:
                w.blank()
                for ref in sorted(self._composites.values(), key=lambda r: (len(list(r.walk())), r.canonical_name)):
                    w.emit(self._composite_line(ref))
            for item in items:
                text = item.sections.get("function")
                if text:
                    w.blank()
                    w.emit_raw(text)
        return {f"{ns}.rb": w.render()}
