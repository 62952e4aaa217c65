"""
Swift Backend
=============

Emits three files per namespace:

| File                | Contents                                          |
|---------------------|---------------------------------------------------|
| <ns>.swift          | the Swift API and its converters                  |
| <ns>FFI.h           | C declarations of every ABI symbol and structure  |
| <ns>FFI.modulemap   | clang module exposing the header to Swift         |

Every wrapper is ``throws``: besides declared errors, a native fault
surfaces as ``FfiBridgeInternalError``. Async callables are
``async throws`` and bridge through checked continuations.

Options
-------
| Option          | Default        |
|-----------------|----------------|
| module_name     | <namespace>    |
| ffi_module_name | <namespace>FFI |
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
from ffibridge.naming import camel_case, escape_keyword, pascal_case

logger = logging.getLogger(__name__)

SWIFT_KEYWORDS = frozenset({
    "associatedtype", "class", "deinit", "enum", "extension", "func", "import",
    "init", "inout", "internal", "let", "operator", "private", "protocol",
    "public", "static", "struct", "subscript", "typealias", "var", "break",
    "case", "continue", "default", "defer", "do", "else", "fallthrough", "for",
    "guard", "if", "in", "repeat", "return", "switch", "where", "while", "as",
    "catch", "false", "is", "nil", "self", "super", "throw", "throws", "true",
    "try", "Type", "Self", "Any",
})

C_TYPES: dict[FfiType, str] = {
    FfiType.INT8: "int8_t",
    FfiType.UINT8: "uint8_t",
    FfiType.INT16: "int16_t",
    FfiType.UINT16: "uint16_t",
    FfiType.INT32: "int32_t",
    FfiType.UINT32: "uint32_t",
    FfiType.INT64: "int64_t",
    FfiType.UINT64: "uint64_t",
    FfiType.FLOAT32: "float",
    FfiType.FLOAT64: "double",
    FfiType.HANDLE: "uint64_t",
    FfiType.BUFFER: "ForeignBuffer",
    FfiType.FOREIGN_BYTES: "ForeignBytes",
    FfiType.CALL_STATUS: "CallStatus *_Nonnull",
    FfiType.CONTINUATION: "FfiContinuationCallback _Nonnull",
}

PRIMITIVES: dict[PrimitiveKind, tuple[str, str]] = {
    PrimitiveKind.I8: ("Int8", "FfiConverterInt8"),
    PrimitiveKind.U8: ("UInt8", "FfiConverterUInt8"),
    PrimitiveKind.I16: ("Int16", "FfiConverterInt16"),
    PrimitiveKind.U16: ("UInt16", "FfiConverterUInt16"),
    PrimitiveKind.I32: ("Int32", "FfiConverterInt32"),
    PrimitiveKind.U32: ("UInt32", "FfiConverterUInt32"),
    PrimitiveKind.I64: ("Int64", "FfiConverterInt64"),
    PrimitiveKind.U64: ("UInt64", "FfiConverterUInt64"),
    PrimitiveKind.F32: ("Float", "FfiConverterFloat"),
    PrimitiveKind.F64: ("Double", "FfiConverterDouble"),
    PrimitiveKind.BOOLEAN: ("Bool", "FfiConverterBool"),
    PrimitiveKind.STRING: ("String", "FfiConverterString"),
    PrimitiveKind.BYTES: ("Data", "FfiConverterData"),
    PrimitiveKind.TIMESTAMP: ("Date", "FfiConverterTimestamp"),
    PrimitiveKind.DURATION: ("TimeInterval", "FfiConverterDuration"),
}

HEADER_PRELUDE = """\
#pragma once

#include <stdbool.h>
#include <stdint.h>

#ifndef FFIBRIDGE_SHARED_TYPES
#define FFIBRIDGE_SHARED_TYPES

typedef struct ForeignBuffer {
    uint64_t capacity;
    uint64_t len;
    uint8_t *_Nullable data;
} ForeignBuffer;

typedef struct ForeignBytes {
    int32_t len;
    const uint8_t *_Nullable data;
} ForeignBytes;

typedef struct CallStatus {
    int8_t code;
    ForeignBuffer errorBuf;
} CallStatus;

typedef void (*FfiContinuationCallback)(uint64_t data, int8_t code);
typedef void (*FfiCallbackFree)(uint64_t handle);
typedef uint64_t (*FfiCallbackClone)(uint64_t handle);

#endif
"""

PRELUDE = """\
// MARK: - Boundary Support

private let CALL_SUCCESS: Int8 = 0
private let CALL_ERROR: Int8 = 1
private let CALL_UNEXPECTED_ERROR: Int8 = 2
private let CALL_CANCELLED: Int8 = 3
private let POLL_READY: Int8 = 0

public enum FfiBridgeInternalError: Error, Equatable {
    case unexpected(String)
    case cancelled
    case bufferFormat(String)
    case contractMismatch(String)
}

typealias Reader = (data: Data, offset: Data.Index)

func readInt<T: FixedWidthInteger>(_ reader: inout Reader) throws -> T {
    let end = reader.offset + MemoryLayout<T>.size
    guard reader.data.count >= end else {
        throw FfiBridgeInternalError.bufferFormat("buffer ends inside a value")
    }
    var value: T = 0
    _ = withUnsafeMutableBytes(of: &value) { reader.data.copyBytes(to: $0, from: reader.offset..<end) }
    reader.offset = end
    return T(bigEndian: value)
}

func readBytes(_ reader: inout Reader, count: Int) throws -> Data {
    let end = reader.offset + count
    guard count >= 0, reader.data.count >= end else {
        throw FfiBridgeInternalError.bufferFormat("buffer ends inside a value")
    }
    let value = reader.data.subdata(in: reader.offset..<end)
    reader.offset = end
    return value
}

func writeInt<T: FixedWidthInteger>(_ writer: inout [UInt8], _ value: T) {
    withUnsafeBytes(of: value.bigEndian) { writer.append(contentsOf: $0) }
}

extension ForeignBuffer {
    init(bytes: [UInt8]) {
        self = try! callWithStatus(nil) { status in
            bytes.withUnsafeBufferPointer { ptr in
                ffibridgeBufferFromBytes(ForeignBytes(len: Int32(ptr.count), data: ptr.baseAddress), status)
            }
        }
    }

    func deallocate() {
        if data != nil {
            try! callWithStatus(nil) { status in ffibridgeBufferFree(self, status) }
        }
    }
}

func checkStatus(_ status: CallStatus, _ errorHandler: ((ForeignBuffer) throws -> Error)?) throws {
    switch status.code {
    case CALL_SUCCESS:
        return
    case CALL_ERROR:
        guard let errorHandler = errorHandler else {
            status.errorBuf.deallocate()
            throw FfiBridgeInternalError.unexpected("native code returned a declared error for a call that declares none")
        }
        throw try errorHandler(status.errorBuf)
    case CALL_UNEXPECTED_ERROR:
        if status.errorBuf.len > 0 {
            throw FfiBridgeInternalError.unexpected(try FfiConverterString.lift(status.errorBuf))
        }
        throw FfiBridgeInternalError.unexpected("native code failed without a message")
    case CALL_CANCELLED:
        throw FfiBridgeInternalError.cancelled
    default:
        throw FfiBridgeInternalError.unexpected("invalid call status code \\(status.code)")
    }
}

func callWithStatus<T>(
    _ errorHandler: ((ForeignBuffer) throws -> Error)?,
    _ call: (UnsafeMutablePointer<CallStatus>) -> T
) throws -> T {
    var status = CallStatus(code: CALL_SUCCESS, errorBuf: ForeignBuffer(capacity: 0, len: 0, data: nil))
    let result = call(&status)
    try checkStatus(status, errorHandler)
    return result
}

func invokeCallback<T>(
    _ status: UnsafeMutablePointer<CallStatus>?,
    makeCall: () throws -> T,
    writeReturn: (T) -> Void,
    lowerError: (Error) -> ForeignBuffer?
) {
    do {
        let result = try makeCall()
        status?.pointee.code = CALL_SUCCESS
        writeReturn(result)
    } catch {
        if let payload = lowerError(error) {
            status?.pointee.code = CALL_ERROR
            status?.pointee.errorBuf = payload
        } else {
            status?.pointee.code = CALL_UNEXPECTED_ERROR
            status?.pointee.errorBuf = FfiConverterString.lower(String(describing: error))
        }
    }
}

final class ArgumentScope {
    private var buffers: [ForeignBuffer] = []

    init() {
        ensureInitialized()
    }

    func keep<T>(_ value: T) -> T {
        if let buffer = value as? ForeignBuffer {
            buffers.append(buffer)
        }
        return value
    }

    func release() {
        buffers.forEach { $0.deallocate() }
        buffers.removeAll()
    }
}

final class HandleMap<T> {
    private let lock = NSLock()
    private var entries: [UInt64: T] = [:]
    private var counts: [UInt64: UInt64] = [:]
    private var next: UInt64 = 1

    func insert(_ obj: T) -> UInt64 {
        lock.lock()
        defer { lock.unlock() }
        let handle = next
        next += 1
        entries[handle] = obj
        counts[handle] = 1
        return handle
    }

    func get(_ handle: UInt64) throws -> T {
        lock.lock()
        defer { lock.unlock() }
        guard let obj = entries[handle] else {
            throw FfiBridgeInternalError.unexpected("unknown handle \\(handle)")
        }
        return obj
    }

    func clone(_ handle: UInt64) -> UInt64 {
        lock.lock()
        defer { lock.unlock() }
        counts[handle, default: 0] += 1
        return handle
    }

    func release(_ handle: UInt64) {
        lock.lock()
        defer { lock.unlock() }
        guard let count = counts[handle] else { return }
        if count == 1 {
            counts.removeValue(forKey: handle)
            entries.removeValue(forKey: handle)
        } else {
            counts[handle] = count - 1
        }
    }

    func take(_ handle: UInt64) -> T? {
        lock.lock()
        defer { lock.unlock() }
        counts.removeValue(forKey: handle)
        return entries.removeValue(forKey: handle)
    }
}

private let continuations = HandleMap<CheckedContinuation<Int8, Never>>()

private func continuationCallback(data: UInt64, code: Int8) {
    continuations.take(data)?.resume(returning: code)
}

func callAsync<F, T>(
    future: UInt64,
    poll: (UInt64, @escaping FfiContinuationCallback, UInt64) -> Void,
    complete: (UInt64, UnsafeMutablePointer<CallStatus>) -> F,
    free: (UInt64) -> Void,
    cancel: @escaping (UInt64) -> Void,
    lift: (F) throws -> T,
    errorHandler: ((ForeignBuffer) throws -> Error)?
) async throws -> T {
    defer { free(future) }
    try await withTaskCancellationHandler {
        var code: Int8
        repeat {
            code = await withCheckedContinuation { continuation in
                poll(future, continuationCallback, continuations.insert(continuation))
            }
        } while code != POLL_READY
        try Task.checkCancellation()
    } onCancel: {
        cancel(future)
    }
    return try lift(try callWithStatus(errorHandler) { complete(future, $0) })
}

// MARK: - Converters

protocol FfiConverter {
    associatedtype SwiftType
    associatedtype FfiType
    static func lift(_ value: FfiType) throws -> SwiftType
    static func lower(_ value: SwiftType) -> FfiType
    static func read(from buf: inout Reader) throws -> SwiftType
    static func write(_ value: SwiftType, into buf: inout [UInt8])
}

extension FfiConverter {
    static func liftArgument(_ value: FfiType) throws -> SwiftType {
        try lift(value)
    }
}

protocol FfiConverterPrimitive: FfiConverter where FfiType == SwiftType {}

extension FfiConverterPrimitive {
    static func lift(_ value: FfiType) throws -> SwiftType { value }
    static func lower(_ value: SwiftType) -> FfiType { value }
}

protocol FfiConverterForeignBuffer: FfiConverter where FfiType == ForeignBuffer {}

extension FfiConverterForeignBuffer {
    static func lift(_ buf: ForeignBuffer) throws -> SwiftType {
        defer { buf.deallocate() }
        return try liftArgument(buf)
    }

    static func liftArgument(_ buf: ForeignBuffer) throws -> SwiftType {
        let data = buf.data.map { Data(bytes: $0, count: Int(buf.len)) } ?? Data()
        var reader: Reader = (data: data, offset: 0)
        let value = try read(from: &reader)
        guard reader.offset == data.count else {
            throw FfiBridgeInternalError.bufferFormat("\\(data.count - reader.offset) unread bytes after value")
        }
        return value
    }

    static func lower(_ value: SwiftType) -> ForeignBuffer {
        var writer: [UInt8] = []
        write(value, into: &writer)
        return ForeignBuffer(bytes: writer)
    }
}

struct FfiConverterInt8: FfiConverterPrimitive {
    typealias SwiftType = Int8
    static func read(from buf: inout Reader) throws -> Int8 { try readInt(&buf) }
    static func write(_ value: Int8, into buf: inout [UInt8]) { writeInt(&buf, value) }
}

struct FfiConverterUInt8: FfiConverterPrimitive {
    typealias SwiftType = UInt8
    static func read(from buf: inout Reader) throws -> UInt8 { try readInt(&buf) }
    static func write(_ value: UInt8, into buf: inout [UInt8]) { writeInt(&buf, value) }
}

struct FfiConverterInt16: FfiConverterPrimitive {
    typealias SwiftType = Int16
    static func read(from buf: inout Reader) throws -> Int16 { try readInt(&buf) }
    static func write(_ value: Int16, into buf: inout [UInt8]) { writeInt(&buf, value) }
}

struct FfiConverterUInt16: FfiConverterPrimitive {
    typealias SwiftType = UInt16
    static func read(from buf: inout Reader) throws -> UInt16 { try readInt(&buf) }
    static func write(_ value: UInt16, into buf: inout [UInt8]) { writeInt(&buf, value) }
}

struct FfiConverterInt32: FfiConverterPrimitive {
    typealias SwiftType = Int32
    static func read(from buf: inout Reader) throws -> Int32 { try readInt(&buf) }
    static func write(_ value: Int32, into buf: inout [UInt8]) { writeInt(&buf, value) }
}

struct FfiConverterUInt32: FfiConverterPrimitive {
    typealias SwiftType = UInt32
    static func read(from buf: inout Reader) throws -> UInt32 { try readInt(&buf) }
    static func write(_ value: UInt32, into buf: inout [UInt8]) { writeInt(&buf, value) }
}

struct FfiConverterInt64: FfiConverterPrimitive {
    typealias SwiftType = Int64
    static func read(from buf: inout Reader) throws -> Int64 { try readInt(&buf) }
    static func write(_ value: Int64, into buf: inout [UInt8]) { writeInt(&buf, value) }
}

struct FfiConverterUInt64: FfiConverterPrimitive {
    typealias SwiftType = UInt64
    static func read(from buf: inout Reader) throws -> UInt64 { try readInt(&buf) }
    static func write(_ value: UInt64, into buf: inout [UInt8]) { writeInt(&buf, value) }
}

struct FfiConverterFloat: FfiConverterPrimitive {
    typealias SwiftType = Float
    static func read(from buf: inout Reader) throws -> Float { Float(bitPattern: try readInt(&buf)) }
    static func write(_ value: Float, into buf: inout [UInt8]) { writeInt(&buf, value.bitPattern) }
}

struct FfiConverterDouble: FfiConverterPrimitive {
    typealias SwiftType = Double
    static func read(from buf: inout Reader) throws -> Double { Double(bitPattern: try readInt(&buf)) }
    static func write(_ value: Double, into buf: inout [UInt8]) { writeInt(&buf, value.bitPattern) }
}

struct FfiConverterBool: FfiConverter {
    typealias SwiftType = Bool
    typealias FfiType = Int8
    static func lift(_ value: Int8) throws -> Bool { value != 0 }
    static func lower(_ value: Bool) -> Int8 { value ? 1 : 0 }
    static func read(from buf: inout Reader) throws -> Bool { try lift(readInt(&buf)) }
    static func write(_ value: Bool, into buf: inout [UInt8]) { writeInt(&buf, lower(value)) }
}

struct FfiConverterString: FfiConverterForeignBuffer {
    typealias SwiftType = String

    static func read(from buf: inout Reader) throws -> String {
        let count: Int32 = try readInt(&buf)
        guard let value = String(data: try readBytes(&buf, count: Int(count)), encoding: .utf8) else {
            throw FfiBridgeInternalError.bufferFormat("string is not valid UTF-8")
        }
        return value
    }

    static func write(_ value: String, into buf: inout [UInt8]) {
        let bytes = Array(value.utf8)
        writeInt(&buf, Int32(bytes.count))
        buf.append(contentsOf: bytes)
    }
}

struct FfiConverterData: FfiConverterForeignBuffer {
    typealias SwiftType = Data

    static func read(from buf: inout Reader) throws -> Data {
        let count: Int32 = try readInt(&buf)
        return try readBytes(&buf, count: Int(count))
    }

    static func write(_ value: Data, into buf: inout [UInt8]) {
        writeInt(&buf, Int32(value.count))
        buf.append(contentsOf: value)
    }
}

struct FfiConverterTimestamp: FfiConverterForeignBuffer {
    typealias SwiftType = Date

    static func read(from buf: inout Reader) throws -> Date {
        let seconds: Int64 = try readInt(&buf)
        let nanos: UInt32 = try readInt(&buf)
        return Date(timeIntervalSince1970: Double(seconds) + Double(nanos) / 1.0e9)
    }

    static func write(_ value: Date, into buf: inout [UInt8]) {
        let interval = value.timeIntervalSince1970
        let seconds = interval.rounded(.down)
        writeInt(&buf, Int64(seconds))
        writeInt(&buf, UInt32(((interval - seconds) * 1.0e9).rounded()))
    }
}

struct FfiConverterDuration: FfiConverterForeignBuffer {
    typealias SwiftType = TimeInterval

    static func read(from buf: inout Reader) throws -> TimeInterval {
        let seconds: UInt64 = try readInt(&buf)
        let nanos: UInt32 = try readInt(&buf)
        return Double(seconds) + Double(nanos) / 1.0e9
    }

    static func write(_ value: TimeInterval, into buf: inout [UInt8]) {
        precondition(value >= 0, "durations cannot be negative")
        let seconds = value.rounded(.down)
        writeInt(&buf, UInt64(seconds))
        writeInt(&buf, UInt32(((value - seconds) * 1.0e9).rounded()))
    }
}
"""


def _doc(w: CodeWriter, text: Optional[str]) -> None:
    w.emit_doc(text, "/// ")


class SwiftBackend:
    """Emitter for Swift bindings with a C header and clang module map."""

    name = "swift"
    formatter = ("swiftformat",)

    def __init__(self, context: BackendContext):
        self.context = context
        self.ir = context.ir
        self.ffi = context.ffi
        namespace = self.ir.namespace
        self.module_name = context.config.option("module_name", namespace)
        self.ffi_module_name = context.config.option("ffi_module_name", f"{namespace}FFI")
        self._composites: dict[str, TypeRef] = {}
        self._error_types = self.ir.error_type_names()

    # =========================================================================
    # Naming
    # =========================================================================

    @staticmethod
    def ident(name: str) -> str:
        return escape_keyword(camel_case(name), SWIFT_KEYWORDS, style="backtick")

    @staticmethod
    def class_name(name: str) -> str:
        return pascal_case(name)

    # =========================================================================
    # Type Mapping
    # =========================================================================

    def converter(self, ref: TypeRef) -> str:
        if isinstance(ref, PrimitiveType):
            return PRIMITIVES[ref.kind][1]
        if isinstance(ref, NamedType):
            raise unsupported(self.name, f"type '{ref.name}' is unresolved")
        if isinstance(ref, (ItemRef, ExternalType)):
            return f"FfiConverterType{self.class_name(ref.name)}"
        if isinstance(ref, (OptionalType, SequenceType, MappingType)):
            for child in ref.children():
                self.converter(child)
            self._composites.setdefault(ref.canonical_name, ref)
            return f"FfiConverter{ref.canonical_name}"
        raise unsupported(self.name, f"cannot map type {ref}")

    def surface(self, ref: TypeRef) -> str:
        if isinstance(ref, PrimitiveType):
            return PRIMITIVES[ref.kind][0]
        if isinstance(ref, OptionalType):
            return f"{self.surface(ref.inner)}?"
        if isinstance(ref, SequenceType):
            return f"[{self.surface(ref.inner)}]"
        if isinstance(ref, MappingType):
            return f"[{self.surface(ref.key)}: {self.surface(ref.value)}]"
        if isinstance(ref, (ItemRef, ExternalType)):
            return self.class_name(ref.name)
        raise unsupported(self.name, f"cannot map type {ref}")

    def map_type(self, ref: TypeRef) -> TypeMapping:
        conv = self.converter(ref)
        return TypeMapping(
            surface=self.surface(ref),
            ffi_type=lower_type(ref),
            lift=f"try {conv}.lift({{}})",
            lower=f"scope.keep({conv}.lower({{}}))",
        )

    def error_handler(self, throws: Optional[TypeRef]) -> str:
        if throws is None:
            return "nil"
        if isinstance(throws, ObjectType):
            return f"{{ try FfiConverterErrorType{self.class_name(throws.name)}.lift($0) }}"
        return f"{{ try {self.converter(throws)}.lift($0) }}"

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
            return json.dumps(lit.value)
        if lit.kind == LiteralKind.EMPTY_SEQUENCE:
            return "[]"
        if lit.kind == LiteralKind.EMPTY_MAP:
            return "[:]"
        if lit.kind == LiteralKind.ENUM and isinstance(ref, EnumType):
            item = self.ir.get(ref.name)
            if isinstance(item, Enum) and item.is_flat and not item.is_error:
                return f".{self.ident(str(lit.value))}"
        raise unsupported(self.name, f"default value {lit} does not fit type {ref}")

    # =========================================================================
    # Callables
    # =========================================================================

    def _parameters(self, arguments: tuple[Argument, ...]) -> str:
        params = []
        for arg in arguments:
            text = f"{self.ident(arg.name)}: {self.surface(arg.type)}"
            if arg.default is not None:
                text += f" = {self.literal(arg.default, arg.type)}"
            params.append(text)
        return ", ".join(params)

    def _emit_ffi_call(self, w: CodeWriter, fn: FfiFunction, lowered: list[str], status: Optional[str]) -> None:
        args = lowered + ([status] if status else [])
        w.emit(f"{fn.name}({', '.join(args)})")

    def _emit_body(
        self,
        w: CodeWriter,
        fn: FfiFunction,
        arguments: tuple[Argument, ...],
        throws: Optional[TypeRef],
        receiver: Optional[str],
        return_type: Optional[TypeRef],
        lift: Optional[str] = None,
    ) -> None:
        lowered = [receiver] if receiver else []
        lowered.extend(self.map_type(a.type).lower_expr(self.ident(a.name)) for a in arguments)
        handler = self.error_handler(throws)
        if lift is None and return_type is not None:
            lift = self.map_type(return_type).lift

        w.emit("let scope = ArgumentScope()")
        if fn.is_async:
            w.emit(f"let future = {fn.name}({', '.join(lowered)})")
            w.emit("scope.release()")
            family = self.ffi.future_family(lower_type(return_type) if return_type is not None else None)
            w.emit("return try await callAsync(")
            with w.indented():
                w.emit("future: future,")
                w.emit(f"poll: {family.poll.name},")
                w.emit(f"complete: {family.complete.name},")
                w.emit(f"free: {family.free.name},")
                w.emit(f"cancel: {family.cancel.name},")
                w.emit(f"lift: {{ {lift.replace('{}', '$0')} }}," if lift else "lift: { _ in },")
                w.emit(f"errorHandler: {handler}")
            w.emit(")")
            return

        w.emit("defer { scope.release() }")
        call = f"try callWithStatus({handler}) {{ {fn.name}({', '.join(lowered + ['$0'])}) }}"
        if lift:
            w.emit(f"return {lift.replace('{}', call)}")
        else:
            w.emit(call)

    def _signature_tail(self, is_async: bool, return_type: Optional[TypeRef]) -> str:
        tail = " async throws" if is_async else " throws"
        if return_type is not None:
            tail += f" -> {self.surface(return_type)}"
        return tail

    # =========================================================================
    # Items
    # =========================================================================

    def emit_function(self, function: Function) -> EmittedItem:
        fn = self.ffi.function_for("", function.name)
        w = CodeWriter()
        _doc(w, function.docstring)
        tail = self._signature_tail(function.is_async, function.return_type)
        with w.block(f"public func {self.ident(function.name)}({self._parameters(function.arguments)}){tail} {{", "}"):
            self._emit_body(w, fn, function.arguments, function.throws, None, function.return_type)
        out = EmittedItem(function.name)
        out.add("function", w.render())
        return out

    def _emit_fields(self, w: CodeWriter, fields: tuple[Field, ...]) -> None:
        for f in fields:
            _doc(w, f.docstring)
            w.emit(f"public var {self.ident(f.name)}: {self.surface(f.type)}")

    def _read_call(self, fields: tuple[Field, ...]) -> str:
        return ", ".join(
            f"{self.ident(f.name).strip('`')}: try {self.converter(f.type)}.read(from: &buf)" for f in fields
        )

    def emit_record(self, record: Record) -> EmittedItem:
        cls = self.class_name(record.name)
        w = CodeWriter()
        _doc(w, record.docstring)
        with w.block(f"public struct {cls} {{", "}"):
            self._emit_fields(w, record.fields)
            w.blank()
            with w.block(f"public init({self._parameters(tuple(Argument(f.name, f.type, f.default) for f in record.fields))}) {{", "}"):
                for f in record.fields:
                    name = self.ident(f.name)
                    w.emit(f"self.{name} = {name}")
        w.blank()
        with w.block(f"struct FfiConverterType{cls}: FfiConverterForeignBuffer {{", "}"):
            w.emit(f"typealias SwiftType = {cls}")
            w.blank()
            with w.block(f"static func read(from buf: inout Reader) throws -> {cls} {{", "}"):
                w.emit(f"return {cls}({self._read_call(record.fields)})")
            w.blank()
            with w.block(f"static func write(_ value: {cls}, into buf: inout [UInt8]) {{", "}"):
                for f in record.fields:
                    w.emit(f"{self.converter(f.type)}.write(value.{self.ident(f.name)}, into: &buf)")
        out = EmittedItem(record.name)
        out.add("declaration", w.render())
        return out

    def emit_enum(self, enum: Enum) -> EmittedItem:
        cls = self.class_name(enum.name)
        w = CodeWriter()
        _doc(w, enum.docstring)
        conformances = "Error" if enum.is_error else ("Equatable, Hashable" if enum.is_flat else "")
        header = f"public enum {cls}: {conformances} {{" if conformances else f"public enum {cls} {{"
        with w.block(header, "}"):
            for variant in enum.variants:
                _doc(w, variant.docstring)
                case = self.ident(variant.name)
                if variant.fields:
                    params = ", ".join(f"{self.ident(f.name).strip('`')}: {self.surface(f.type)}" for f in variant.fields)
                    w.emit(f"case {case}({params})")
                else:
                    w.emit(f"case {case}")
        w.blank()
        with w.block(f"struct FfiConverterType{cls}: FfiConverterForeignBuffer {{", "}"):
            w.emit(f"typealias SwiftType = {cls}")
            w.blank()
            with w.block(f"static func read(from buf: inout Reader) throws -> {cls} {{", "}"):
                w.emit("let index: Int32 = try readInt(&buf)")
                w.emit("switch index {")
                for index, variant in enumerate(enum.variants, start=1):
                    w.emit(f"case {index}:")
                    with w.indented():
                        case = self.ident(variant.name)
                        if variant.fields:
                            w.emit(f"return .{case}({self._read_call(variant.fields)})")
                        else:
                            w.emit(f"return .{case}")
                w.emit("default:")
                with w.indented():
                    w.emit(f'throw FfiBridgeInternalError.bufferFormat("invalid {cls} variant \\(index)")')
                w.emit("}")
            w.blank()
            with w.block(f"static func write(_ value: {cls}, into buf: inout [UInt8]) {{", "}"):
                w.emit("switch value {")
                for index, variant in enumerate(enum.variants, start=1):
                    case = self.ident(variant.name)
                    names = [f"v{i}" for i in range(len(variant.fields))]
                    if variant.fields:
                        w.emit(f"case let .{case}({', '.join(names)}):")
                    else:
                        w.emit(f"case .{case}:")
                    with w.indented():
                        w.emit(f"writeInt(&buf, Int32({index}))")
                        for name, f in zip(names, variant.fields):
                            w.emit(f"{self.converter(f.type)}.write({name}, into: &buf)")
                w.emit("}")
        out = EmittedItem(enum.name)
        out.add("declaration", w.render())
        return out

    def emit_object(self, obj: Object) -> EmittedItem:
        cls = self.class_name(obj.name)
        functions = self.ffi.objects[obj.name]
        conformance = ": Error" if obj.name in self._error_types else ""
        w = CodeWriter()
        _doc(w, obj.docstring)
        with w.block(f"public final class {cls}{conformance} {{", "}"):
            w.emit("fileprivate let handle: UInt64")
            w.blank()
            with w.block("fileprivate init(handle: UInt64) {", "}"):
                w.emit("self.handle = handle")
            for ctor in obj.constructors:
                fn = self.ffi.function_for(obj.name, ctor.name)
                w.blank()
                _doc(w, ctor.docstring)
                params = self._parameters(ctor.arguments)
                if ctor.is_primary and not ctor.is_async:
                    with w.block(f"public convenience init({params}) throws {{", "}"):
                        w.emit("let handle: UInt64 = try {")
                        with w.indented():
                            self._emit_body(w, fn, ctor.arguments, ctor.throws, None, ObjectType(obj.name), "{}")
                        w.emit("}()")
                        w.emit("self.init(handle: handle)")
                else:
                    name = "create" if ctor.is_primary else self.ident(ctor.name)
                    tail = self._signature_tail(ctor.is_async, ObjectType(obj.name))
                    with w.block(f"public static func {name}({params}){tail} {{", "}"):
                        self._emit_body(w, fn, ctor.arguments, ctor.throws, None, ObjectType(obj.name), f"{cls}(handle: {{}})")
            w.blank()
            with w.block("deinit {", "}"):
                w.emit(f"try? callWithStatus(nil) {{ {functions.free.name}(handle, $0) }}")
            w.blank()
            with w.block("fileprivate func cloneHandle() -> UInt64 {", "}"):
                w.emit(f"return try! callWithStatus(nil) {{ {functions.clone.name}(handle, $0) }}")
            for method in obj.methods:
                w.blank()
                self._emit_method(w, obj, method)

        w.blank()
        with w.block(f"struct FfiConverterType{cls}: FfiConverter {{", "}"):
            w.emit(f"typealias SwiftType = {cls}")
            w.emit("typealias FfiType = UInt64")
            w.emit(f"static func lift(_ value: UInt64) throws -> {cls} {{ {cls}(handle: value) }}")
            w.emit(f"static func lower(_ value: {cls}) -> UInt64 {{ value.cloneHandle() }}")
            w.emit(f"static func read(from buf: inout Reader) throws -> {cls} {{ try lift(readInt(&buf)) }}")
            w.emit(f"static func write(_ value: {cls}, into buf: inout [UInt8]) {{ writeInt(&buf, lower(value)) }}")
        if obj.name in self._error_types:
            w.blank()
            with w.block(f"struct FfiConverterErrorType{cls}: FfiConverterForeignBuffer {{", "}"):
                w.emit(f"typealias SwiftType = {cls}")
                w.emit(f"static func read(from buf: inout Reader) throws -> {cls} {{ try FfiConverterType{cls}.read(from: &buf) }}")
                w.emit(f"static func write(_ value: {cls}, into buf: inout [UInt8]) {{ FfiConverterType{cls}.write(value, into: &buf) }}")

        out = EmittedItem(obj.name)
        out.add("declaration", w.render())
        return out

    def _emit_method(self, w: CodeWriter, obj: Object, method: Method) -> None:
        fn = self.ffi.function_for(obj.name, method.name)
        _doc(w, method.docstring)
        tail = self._signature_tail(method.is_async, method.return_type)
        # A consuming call takes ownership of a fresh reference
        receiver = "cloneHandle()" if method.self_mode == SelfMode.CONSUMING else "handle"
        with w.block(f"public func {self.ident(method.name)}({self._parameters(method.arguments)}){tail} {{", "}"):
            self._emit_body(w, fn, method.arguments, method.throws, receiver, method.return_type)

    def emit_callback(self, callback: CallbackInterface) -> EmittedItem:
        cls = self.class_name(callback.name)
        vtable = self.ffi.vtables[callback.name]
        conv = f"FfiConverterType{cls}"
        w = CodeWriter()
        _doc(w, callback.docstring)
        with w.block(f"public protocol {cls}: AnyObject {{", "}"):
            for method in callback.methods:
                _doc(w, method.docstring)
                tail = self._signature_tail(False, method.return_type)
                w.emit(f"func {self.ident(method.name)}({self._parameters(method.arguments)}){tail}")

        w.blank()
        with w.block(f"struct {conv}: FfiConverter {{", "}"):
            w.emit(f"typealias SwiftType = {cls}")
            w.emit("typealias FfiType = UInt64")
            w.blank()
            w.emit(f"static let handles = HandleMap<{cls}>()")
            w.blank()
            w.emit(f"private static let vtable: UnsafeMutablePointer<VTable{cls}> = {{")
            with w.indented():
                w.emit(f"let table = UnsafeMutablePointer<VTable{cls}>.allocate(capacity: 1)")
                w.emit(f"table.initialize(to: VTable{cls}(")
                with w.indented():
                    w.emit(f"free: {{ handle in {conv}.handles.release(handle) }},")
                    w.emit(f"clone: {{ handle in {conv}.handles.clone(handle) }}" + ("," if callback.methods else ""))
                    for i, (method, slot) in enumerate(zip(callback.methods, vtable.methods)):
                        self._emit_vtable_slot(w, conv, method, slot, last=i == len(callback.methods) - 1)
                w.emit("))")
                w.emit(f"{vtable.init_function.name}(table)")
                w.emit("return table")
            w.emit("}()")
            w.blank()
            w.emit(f"static func lift(_ value: UInt64) throws -> {cls} {{")
            with w.indented():
                w.emit("defer { handles.release(value) }")
                w.emit("return try handles.get(value)")
            w.emit("}")
            w.blank()
            with w.block(f"static func lower(_ value: {cls}) -> UInt64 {{", "}"):
                w.emit("_ = vtable")
                w.emit("return handles.insert(value)")
            w.blank()
            w.emit(f"static func read(from buf: inout Reader) throws -> {cls} {{ try lift(readInt(&buf)) }}")
            w.emit(f"static func write(_ value: {cls}, into buf: inout [UInt8]) {{ writeInt(&buf, lower(value)) }}")

        out = EmittedItem(callback.name)
        out.add("declaration", w.render())
        return out

    def _emit_vtable_slot(self, w: CodeWriter, conv: str, method: Method, slot, last: bool) -> None:
        names = ["handle"] + [self.ident(a.name).strip("`") for a in method.arguments]
        if method.return_type is not None:
            names.append("outReturn")
        names.append("status")
        w.emit(f"{self.ident(method.name).strip('`')}: {{ {', '.join(names)} in")
        with w.indented():
            w.emit("invokeCallback(")
            with w.indented():
                w.emit("status,")
                args = ", ".join(
                    f"{self.ident(a.name).strip('`')}: try {self.converter(a.type)}.liftArgument({self.ident(a.name).strip('`')})"
                    for a in method.arguments
                )
                w.emit(f"makeCall: {{ try {conv}.handles.get(handle).{self.ident(method.name)}({args}) }},")
                if method.return_type is not None:
                    w.emit(f"writeReturn: {{ outReturn?.pointee = {self.converter(method.return_type)}.lower($0) }},")
                else:
                    w.emit("writeReturn: { _ in },")
                if method.throws is not None:
                    error = self.surface(method.throws)
                    error_conv = (
                        f"FfiConverterErrorType{self.class_name(method.throws.name)}"
                        if isinstance(method.throws, ObjectType) else self.converter(method.throws)
                    )
                    w.emit(f"lowerError: {{ ($0 as? {error}).map {{ {error_conv}.lower($0) }} }}")
                else:
                    w.emit("lowerError: { _ in nil }")
            w.emit(")")
        w.emit("}" + ("" if last else ","))

    # =========================================================================
    # File Assembly
    # =========================================================================

    def _c_argument(self, arg) -> str:
        if arg.type == FfiType.VTABLE:
            return "void *_Nonnull vtable"
        ctype = C_TYPES[arg.type]
        if arg.out:
            return f"{ctype} *_Nullable {arg.name}"
        return f"{ctype} {arg.name}"

    def _render_header(self) -> str:
        w = CodeWriter()
        w.emit(f"// Generated by ffibridge from the '{self.ir.namespace}' interface. Do not edit.")
        w.blank()
        w.emit_raw(HEADER_PRELUDE)
        w.blank()
        vtable_inits = {}
        for name, vtable in self.ffi.vtables.items():
            cls = self.class_name(name)
            vtable_inits[vtable.init_function.name] = cls
            for method in vtable.methods:
                params = [self._c_argument(a) for a in method.arguments] + ["CallStatus *_Nullable status"]
                w.emit(f"typedef void (*{cls}{pascal_case(method.name)}Fn)({', '.join(params)});")
            w.blank()
            w.emit(f"typedef struct VTable{cls} {{")
            with w.indented():
                w.emit("FfiCallbackFree _Nonnull free;")
                w.emit("FfiCallbackClone _Nonnull clone;")
                for method in vtable.methods:
                    w.emit(f"{cls}{pascal_case(method.name)}Fn _Nonnull {camel_case(method.name)};")
            w.emit(f"}} VTable{cls};")
            w.blank()
        for fn in self.ffi.functions:
            if fn.name in vtable_inits:
                params = [f"VTable{vtable_inits[fn.name]} *_Nonnull vtable"]
            else:
                params = [self._c_argument(a) for a in fn.arguments]
            if fn.has_call_status:
                params.append("CallStatus *_Nonnull status")
            ret = C_TYPES[fn.return_type] if fn.return_type else "void"
            w.emit(f"{ret} {fn.name}({', '.join(params) or 'void'});")
        return w.render()

    def _render_modulemap(self) -> str:
        w = CodeWriter()
        with w.block(f"module {self.ffi_module_name} {{", "}"):
            w.emit(f'header "{self.ir.namespace}FFI.h"')
            w.emit("export *")
        return w.render()

    def _composite_order(self) -> list[TypeRef]:
        def depth(ref: TypeRef) -> int:
            return 1 + max((depth(c) for c in ref.children()), default=0)

        return sorted(self._composites.values(), key=lambda r: (depth(r), r.canonical_name))

    def _emit_composite(self, w: CodeWriter, ref: TypeRef) -> None:
        name = f"FfiConverter{ref.canonical_name}"
        swift_type = self.surface(ref)
        if isinstance(ref, OptionalType) and is_handle_type(ref.inner):
            inner = self.converter(ref.inner)
            with w.block(f"struct {name}: FfiConverter {{", "}"):
                w.emit(f"typealias SwiftType = {swift_type}")
                w.emit("typealias FfiType = UInt64")
                w.emit(f"static func lift(_ value: UInt64) throws -> {swift_type} {{ value == 0 ? nil : try {inner}.lift(value) }}")
                w.emit(f"static func lower(_ value: {swift_type}) -> UInt64 {{ value.map {{ {inner}.lower($0) }} ?? 0 }}")
                w.emit(f"static func read(from buf: inout Reader) throws -> {swift_type} {{ try lift(readInt(&buf)) }}")
                w.emit(f"static func write(_ value: {swift_type}, into buf: inout [UInt8]) {{ writeInt(&buf, lower(value)) }}")
            return

        with w.block(f"struct {name}: FfiConverterForeignBuffer {{", "}"):
            w.emit(f"typealias SwiftType = {swift_type}")
            w.blank()
            with w.block(f"static func read(from buf: inout Reader) throws -> {swift_type} {{", "}"):
                if isinstance(ref, OptionalType):
                    w.emit("let flag: Int8 = try readInt(&buf)")
                    w.emit(f"return flag == 0 ? nil : try {self.converter(ref.inner)}.read(from: &buf)")
                elif isinstance(ref, SequenceType):
                    w.emit("let count: Int32 = try readInt(&buf)")
                    w.emit(f"return try (0..<count).map {{ _ in try {self.converter(ref.inner)}.read(from: &buf) }}")
                else:
                    w.emit("let count: Int32 = try readInt(&buf)")
                    w.emit(f"var result: {swift_type} = [:]")
                    with w.block("for _ in 0..<count {", "}"):
                        w.emit(f"let key = try {self.converter(ref.key)}.read(from: &buf)")
                        w.emit(f"result[key] = try {self.converter(ref.value)}.read(from: &buf)")
                    w.emit("return result")
            w.blank()
            with w.block(f"static func write(_ value: {swift_type}, into buf: inout [UInt8]) {{", "}"):
                if isinstance(ref, OptionalType):
                    with w.block("guard let value = value else {", "}"):
                        w.emit("writeInt(&buf, Int8(0))")
                        w.emit("return")
                    w.emit("writeInt(&buf, Int8(1))")
                    w.emit(f"{self.converter(ref.inner)}.write(value, into: &buf)")
                elif isinstance(ref, SequenceType):
                    w.emit("writeInt(&buf, Int32(value.count))")
                    w.emit(f"value.forEach {{ {self.converter(ref.inner)}.write($0, into: &buf) }}")
                else:
                    w.emit("writeInt(&buf, Int32(value.count))")
                    with w.block("for (key, item) in value {", "}"):
                        w.emit(f"{self.converter(ref.key)}.write(key, into: &buf)")
                        w.emit(f"{self.converter(ref.value)}.write(item, into: &buf)")

    def render(self, items: list[EmittedItem]) -> dict[str, str]:
        ns = self.ir.namespace
        prefix = self.ffi.prefix
        logger.debug(f"Rendering Swift module {self.module_name}")
        w = CodeWriter()
        w.emit(f"// Generated by ffibridge from the '{ns}' interface. Do not edit.")
        w.blank()
        w.emit("import Foundation")
        w.emit(f"#if canImport({self.ffi_module_name})")
        w.emit(f"import {self.ffi_module_name}")
        w.emit("#endif")
        w.blank()
        w.emit_raw(PRELUDE)
        w.blank()
        w.emit("// MARK: - Library")
        w.blank()
        w.emit(f"private let ffibridgeBufferFromBytes = {prefix}buffer_from_bytes")
        w.emit(f"private let ffibridgeBufferFree = {prefix}buffer_free")
        w.blank()
        with w.block("private let initializationResult: Result<Void, FfiBridgeInternalError> = {", "}()"):
            w.emit(f"let version = {self.ffi.contract_version_symbol}()")
            with w.block(f"if version != {self.ffi.contract_version} {{", "}"):
                w.emit(
                    "return .failure(.contractMismatch(\"library speaks contract version \\(version), "
                    f"bindings expect {self.ffi.contract_version}\"))"
                )
            for symbol, expected in self.ffi.checksums.items():
                with w.block(f"if {symbol}() != {expected} {{", "}"):
                    w.emit(f'return .failure(.contractMismatch("checksum mismatch for {symbol}"))')
            w.emit("return .success(())")
        w.blank()
        with w.block("func ensureInitialized() {", "}"):
            with w.block("if case let .failure(error) = initializationResult {", "}"):
                w.emit('fatalError("\\(error)")')

        w.blank()
        w.emit("// MARK: - Declarations")
        for item in items:
            text = item.sections.get("declaration")
            if text:
                w.blank()
                w.emit_raw(text)
        for ref in self._composite_order():
            w.blank()
            self._emit_composite(w, ref)
        w.blank()
        w.emit("// MARK: - Functions")
        for item in items:
            text = item.sections.get("function")
            if text:
                w.blank()
                w.emit_raw(text)

        return {
            f"{ns}.swift": w.render(),
            f"{ns}FFI.h": self._render_header(),
            f"{ns}FFI.modulemap": self._render_modulemap(),
        }
