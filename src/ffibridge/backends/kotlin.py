"""
Kotlin Backend
==============

Emits ``<package path>/<namespace>.kt`` for the JVM, calling the native
library through JNA. Async callables become ``suspend`` functions built on
kotlinx.coroutines.

Options
-------
| Option       | Default               |
|--------------|-----------------------|
| package_name | ffibridge.<namespace> |
| cdylib_name  | <namespace>           |

Generated File Layout
---------------------
1. Boundary support: buffer structures, call status, converters for
   primitives and composites, handle map, async bridge
2. The JNA library interface with every ABI symbol, contract checks
3. Declarations and converters, per item
4. Top-level functions
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
from ffibridge.naming import camel_case, escape_keyword, pascal_case, shouty_case

logger = logging.getLogger(__name__)

KOTLIN_KEYWORDS = frozenset({
    "as", "break", "class", "continue", "do", "else", "false", "for", "fun",
    "if", "in", "interface", "is", "null", "object", "package", "return",
    "super", "this", "throw", "true", "try", "typealias", "typeof", "val",
    "var", "when", "while",
})

JNA_TYPES: dict[FfiType, str] = {
    FfiType.INT8: "Byte",
    FfiType.UINT8: "Byte",
    FfiType.INT16: "Short",
    FfiType.UINT16: "Short",
    FfiType.INT32: "Int",
    FfiType.UINT32: "Int",
    FfiType.INT64: "Long",
    FfiType.UINT64: "Long",
    FfiType.FLOAT32: "Float",
    FfiType.FLOAT64: "Double",
    FfiType.HANDLE: "Long",
    FfiType.BUFFER: "ForeignBuffer.ByValue",
    FfiType.FOREIGN_BYTES: "ForeignBytes.ByValue",
    FfiType.CALL_STATUS: "CallStatus",
    FfiType.CONTINUATION: "ContinuationCallback",
}

# Kotlin type and converter object per primitive
PRIMITIVES: dict[PrimitiveKind, tuple[str, str]] = {
    PrimitiveKind.I8: ("Byte", "FfiConverterByte"),
    PrimitiveKind.U8: ("UByte", "FfiConverterUByte"),
    PrimitiveKind.I16: ("Short", "FfiConverterShort"),
    PrimitiveKind.U16: ("UShort", "FfiConverterUShort"),
    PrimitiveKind.I32: ("Int", "FfiConverterInt"),
    PrimitiveKind.U32: ("UInt", "FfiConverterUInt"),
    PrimitiveKind.I64: ("Long", "FfiConverterLong"),
    PrimitiveKind.U64: ("ULong", "FfiConverterULong"),
    PrimitiveKind.F32: ("Float", "FfiConverterFloat"),
    PrimitiveKind.F64: ("Double", "FfiConverterDouble"),
    PrimitiveKind.BOOLEAN: ("Boolean", "FfiConverterBoolean"),
    PrimitiveKind.STRING: ("String", "FfiConverterString"),
    PrimitiveKind.BYTES: ("ByteArray", "FfiConverterByteArray"),
    PrimitiveKind.TIMESTAMP: ("java.time.Instant", "FfiConverterTimestamp"),
    PrimitiveKind.DURATION: ("java.time.Duration", "FfiConverterDuration"),
}

# Writes a lowered callback return value through the out pointer
OUT_SETTERS: dict[FfiType, str] = {
    FfiType.INT8: "outReturn.setByte(0, {})",
    FfiType.UINT8: "outReturn.setByte(0, {})",
    FfiType.INT16: "outReturn.setShort(0, {})",
    FfiType.UINT16: "outReturn.setShort(0, {})",
    FfiType.INT32: "outReturn.setInt(0, {})",
    FfiType.UINT32: "outReturn.setInt(0, {})",
    FfiType.INT64: "outReturn.setLong(0, {})",
    FfiType.UINT64: "outReturn.setLong(0, {})",
    FfiType.HANDLE: "outReturn.setLong(0, {})",
    FfiType.FLOAT32: "outReturn.setFloat(0, {})",
    FfiType.FLOAT64: "outReturn.setDouble(0, {})",
    FfiType.BUFFER: "writeBuffer(outReturn, {})",
}

PRELUDE = """\
// =============================================================================
// Boundary Support
// =============================================================================

internal const val CALL_SUCCESS: Byte = 0
internal const val CALL_ERROR: Byte = 1
internal const val CALL_UNEXPECTED_ERROR: Byte = 2
internal const val CALL_CANCELLED: Byte = 3
internal const val POLL_READY: Byte = 0

class InternalException(message: String) : Exception(message)

private val CLEANER: Cleaner = Cleaner.create()

@Structure.FieldOrder("capacity", "len", "data")
open class ForeignBuffer(pointer: Pointer? = null) : Structure(pointer) {
    @JvmField var capacity: Long = 0
    @JvmField var len: Long = 0
    @JvmField var data: Pointer? = null

    class ByValue : ForeignBuffer(), Structure.ByValue

    internal fun asByteBuffer(): ByteBuffer {
        val source = data ?: return ByteBuffer.allocate(0)
        return source.getByteBuffer(0, len).order(ByteOrder.BIG_ENDIAN)
    }
}

internal fun writeBuffer(target: Pointer, value: ForeignBuffer.ByValue) {
    val out = ForeignBuffer(target)
    out.capacity = value.capacity
    out.len = value.len
    out.data = value.data
    out.write()
}

@Structure.FieldOrder("len", "data")
open class ForeignBytes : Structure() {
    @JvmField var len: Int = 0
    @JvmField var data: Pointer? = null

    class ByValue : ForeignBytes(), Structure.ByValue

    companion object {
        internal fun of(bytes: ByteArray): ByValue {
            val memory = Memory(maxOf(bytes.size, 1).toLong())
            memory.write(0, bytes, 0, bytes.size)
            return ByValue().apply {
                len = bytes.size
                data = memory
            }
        }
    }
}

@Structure.FieldOrder("code", "errorBuf")
open class CallStatus : Structure() {
    @JvmField var code: Byte = 0
    @JvmField var errorBuf: ForeignBuffer.ByValue = ForeignBuffer.ByValue()
}

interface ErrorHandler<E : Exception> {
    fun lift(value: ForeignBuffer.ByValue): E
}

internal object NoErrorHandler : ErrorHandler<InternalException> {
    override fun lift(value: ForeignBuffer.ByValue): InternalException {
        freeBuffer(value)
        return InternalException("native code returned a declared error for a call that declares none")
    }
}

internal fun <E : Exception> checkStatus(status: CallStatus, errorHandler: ErrorHandler<E>) {
    when (status.code) {
        CALL_SUCCESS -> return
        CALL_ERROR -> throw errorHandler.lift(status.errorBuf)
        CALL_UNEXPECTED_ERROR -> {
            if (status.errorBuf.len > 0) {
                throw InternalException(FfiConverterString.lift(status.errorBuf))
            }
            throw InternalException("native code failed without a message")
        }
        CALL_CANCELLED -> throw CancellationException("the native call was cancelled")
        else -> throw InternalException("invalid call status code ${status.code}")
    }
}

internal fun <T, E : Exception> callWithStatus(errorHandler: ErrorHandler<E>, call: (CallStatus) -> T): T {
    val status = CallStatus()
    val result = call(status)
    checkStatus(status, errorHandler)
    return result
}

internal fun <T> callWithStatus(call: (CallStatus) -> T): T = callWithStatus(NoErrorHandler, call)

internal inline fun <T> invokeCallback(
    status: CallStatus,
    makeCall: () -> T,
    writeReturn: (T) -> Unit,
    lowerError: (Exception) -> ForeignBuffer.ByValue?,
) {
    try {
        val result = makeCall()
        status.code = CALL_SUCCESS
        writeReturn(result)
    } catch (e: Exception) {
        val payload = lowerError(e)
        if (payload != null) {
            status.code = CALL_ERROR
            status.errorBuf = payload
        } else {
            status.code = CALL_UNEXPECTED_ERROR
            status.errorBuf = FfiConverterString.lower(e.toString())
        }
    }
    status.write()
}

internal class ArgumentScope : AutoCloseable {
    private val buffers = mutableListOf<ForeignBuffer.ByValue>()

    fun <K, F> lower(converter: FfiConverter<K, F>, value: K): F {
        val lowered = converter.lower(value)
        if (lowered is ForeignBuffer.ByValue) {
            buffers.add(lowered)
        }
        return lowered
    }

    override fun close() {
        buffers.forEach { freeBuffer(it) }
        buffers.clear()
    }
}

internal class HandleMap<T : Any> {
    private val lock = Any()
    private val entries = HashMap<Long, T>()
    private val counts = HashMap<Long, Long>()
    private var next = 1L

    fun insert(obj: T): Long = synchronized(lock) {
        val handle = next++
        entries[handle] = obj
        counts[handle] = 1
        handle
    }

    fun get(handle: Long): T = synchronized(lock) {
        entries[handle] ?: throw InternalException("unknown handle $handle")
    }

    fun clone(handle: Long): Long = synchronized(lock) {
        val count = counts[handle] ?: throw InternalException("unknown handle $handle")
        counts[handle] = count + 1
        handle
    }

    fun release(handle: Long) = synchronized(lock) {
        val count = counts[handle] ?: throw InternalException("unknown handle $handle")
        if (count == 1L) {
            counts.remove(handle)
            entries.remove(handle)
        } else {
            counts[handle] = count - 1
        }
    }

    fun take(handle: Long): T = synchronized(lock) {
        counts.remove(handle)
        entries.remove(handle) ?: throw InternalException("unknown handle $handle")
    }
}

internal interface CallbackFree : Callback {
    fun callback(handle: Long)
}

internal interface CallbackClone : Callback {
    fun callback(handle: Long): Long
}

interface ContinuationCallback : Callback {
    fun callback(data: Long, code: Byte)
}

internal val continuations = HandleMap<CancellableContinuation<Byte>>()

internal object ContinuationHandler : ContinuationCallback {
    override fun callback(data: Long, code: Byte) {
        continuations.take(data).resume(code)
    }
}

internal suspend fun <F, T, E : Exception> callAsync(
    future: Long,
    poll: (Long, ContinuationCallback, Long) -> Unit,
    complete: (Long, CallStatus) -> F,
    free: (Long) -> Unit,
    cancel: (Long) -> Unit,
    lift: (F) -> T,
    errorHandler: ErrorHandler<E>,
): T {
    try {
        do {
            val code = suspendCancellableCoroutine<Byte> { continuation ->
                poll(future, ContinuationHandler, continuations.insert(continuation))
            }
        } while (code != POLL_READY)
        return lift(callWithStatus(errorHandler) { status -> complete(future, status) })
    } catch (e: CancellationException) {
        cancel(future)
        throw e
    } finally {
        free(future)
    }
}

// =============================================================================
// Converters
// =============================================================================

interface FfiConverter<K, F> {
    fun lift(value: F): K
    fun lower(value: K): F
    fun read(buf: ByteBuffer): K
    fun write(value: K, out: DataOutputStream)
    fun liftArgument(value: F): K = lift(value)
}

abstract class FfiConverterBuffer<K> : FfiConverter<K, ForeignBuffer.ByValue> {
    override fun lift(value: ForeignBuffer.ByValue): K {
        try {
            return liftArgument(value)
        } finally {
            freeBuffer(value)
        }
    }

    override fun liftArgument(value: ForeignBuffer.ByValue): K {
        val buf = value.asByteBuffer()
        val item = read(buf)
        if (buf.hasRemaining()) {
            throw InternalException("${buf.remaining()} unread bytes after value")
        }
        return item
    }

    override fun lower(value: K): ForeignBuffer.ByValue {
        val bytes = ByteArrayOutputStream()
        write(value, DataOutputStream(bytes))
        return allocBuffer(bytes.toByteArray())
    }
}

object FfiConverterByte : FfiConverter<Byte, Byte> {
    override fun lift(value: Byte) = value
    override fun lower(value: Byte) = value
    override fun read(buf: ByteBuffer) = buf.get()
    override fun write(value: Byte, out: DataOutputStream) = out.writeByte(value.toInt())
}

object FfiConverterUByte : FfiConverter<UByte, Byte> {
    override fun lift(value: Byte) = value.toUByte()
    override fun lower(value: UByte) = value.toByte()
    override fun read(buf: ByteBuffer) = buf.get().toUByte()
    override fun write(value: UByte, out: DataOutputStream) = out.writeByte(value.toInt())
}

object FfiConverterShort : FfiConverter<Short, Short> {
    override fun lift(value: Short) = value
    override fun lower(value: Short) = value
    override fun read(buf: ByteBuffer) = buf.getShort()
    override fun write(value: Short, out: DataOutputStream) = out.writeShort(value.toInt())
}

object FfiConverterUShort : FfiConverter<UShort, Short> {
    override fun lift(value: Short) = value.toUShort()
    override fun lower(value: UShort) = value.toShort()
    override fun read(buf: ByteBuffer) = buf.getShort().toUShort()
    override fun write(value: UShort, out: DataOutputStream) = out.writeShort(value.toInt())
}

object FfiConverterInt : FfiConverter<Int, Int> {
    override fun lift(value: Int) = value
    override fun lower(value: Int) = value
    override fun read(buf: ByteBuffer) = buf.getInt()
    override fun write(value: Int, out: DataOutputStream) = out.writeInt(value)
}

object FfiConverterUInt : FfiConverter<UInt, Int> {
    override fun lift(value: Int) = value.toUInt()
    override fun lower(value: UInt) = value.toInt()
    override fun read(buf: ByteBuffer) = buf.getInt().toUInt()
    override fun write(value: UInt, out: DataOutputStream) = out.writeInt(value.toInt())
}

object FfiConverterLong : FfiConverter<Long, Long> {
    override fun lift(value: Long) = value
    override fun lower(value: Long) = value
    override fun read(buf: ByteBuffer) = buf.getLong()
    override fun write(value: Long, out: DataOutputStream) = out.writeLong(value)
}

object FfiConverterULong : FfiConverter<ULong, Long> {
    override fun lift(value: Long) = value.toULong()
    override fun lower(value: ULong) = value.toLong()
    override fun read(buf: ByteBuffer) = buf.getLong().toULong()
    override fun write(value: ULong, out: DataOutputStream) = out.writeLong(value.toLong())
}

object FfiConverterFloat : FfiConverter<Float, Float> {
    override fun lift(value: Float) = value
    override fun lower(value: Float) = value
    override fun read(buf: ByteBuffer) = buf.getFloat()
    override fun write(value: Float, out: DataOutputStream) = out.writeFloat(value)
}

object FfiConverterDouble : FfiConverter<Double, Double> {
    override fun lift(value: Double) = value
    override fun lower(value: Double) = value
    override fun read(buf: ByteBuffer) = buf.getDouble()
    override fun write(value: Double, out: DataOutputStream) = out.writeDouble(value)
}

object FfiConverterBoolean : FfiConverter<Boolean, Byte> {
    override fun lift(value: Byte) = value.toInt() != 0
    override fun lower(value: Boolean): Byte = if (value) 1 else 0
    override fun read(buf: ByteBuffer) = buf.get().toInt() != 0
    override fun write(value: Boolean, out: DataOutputStream) = out.writeByte(if (value) 1 else 0)
}

object FfiConverterString : FfiConverterBuffer<String>() {
    override fun read(buf: ByteBuffer): String {
        val bytes = ByteArray(buf.getInt())
        buf.get(bytes)
        return bytes.toString(Charsets.UTF_8)
    }

    override fun write(value: String, out: DataOutputStream) {
        val bytes = value.toByteArray(Charsets.UTF_8)
        out.writeInt(bytes.size)
        out.write(bytes)
    }
}

object FfiConverterByteArray : FfiConverterBuffer<ByteArray>() {
    override fun read(buf: ByteBuffer): ByteArray {
        val bytes = ByteArray(buf.getInt())
        buf.get(bytes)
        return bytes
    }

    override fun write(value: ByteArray, out: DataOutputStream) {
        out.writeInt(value.size)
        out.write(value)
    }
}

object FfiConverterTimestamp : FfiConverterBuffer<java.time.Instant>() {
    override fun read(buf: ByteBuffer): java.time.Instant {
        val seconds = buf.getLong()
        val nanos = buf.getInt().toUInt().toLong()
        return java.time.Instant.ofEpochSecond(seconds, nanos)
    }

    override fun write(value: java.time.Instant, out: DataOutputStream) {
        out.writeLong(value.epochSecond)
        out.writeInt(value.nano)
    }
}

object FfiConverterDuration : FfiConverterBuffer<java.time.Duration>() {
    override fun read(buf: ByteBuffer): java.time.Duration {
        val seconds = buf.getLong()
        val nanos = buf.getInt().toUInt().toLong()
        return java.time.Duration.ofSeconds(seconds, nanos)
    }

    override fun write(value: java.time.Duration, out: DataOutputStream) {
        require(!value.isNegative) { "durations cannot be negative" }
        out.writeLong(value.seconds)
        out.writeInt(value.nano)
    }
}

class FfiConverterOptional<K>(private val inner: FfiConverter<K, *>) : FfiConverterBuffer<K?>() {
    override fun read(buf: ByteBuffer): K? = if (buf.get().toInt() == 0) null else inner.read(buf)

    override fun write(value: K?, out: DataOutputStream) {
        if (value == null) {
            out.writeByte(0)
        } else {
            out.writeByte(1)
            inner.write(value, out)
        }
    }
}

class FfiConverterOptionalHandle<K>(private val inner: FfiConverter<K, Long>) : FfiConverter<K?, Long> {
    override fun lift(value: Long): K? = if (value == 0L) null else inner.lift(value)
    override fun lower(value: K?): Long = if (value == null) 0L else inner.lower(value)
    override fun read(buf: ByteBuffer): K? = lift(buf.getLong())
    override fun write(value: K?, out: DataOutputStream) = out.writeLong(lower(value))
}

class FfiConverterSequence<K>(private val inner: FfiConverter<K, *>) : FfiConverterBuffer<List<K>>() {
    override fun read(buf: ByteBuffer): List<K> = List(buf.getInt()) { inner.read(buf) }

    override fun write(value: List<K>, out: DataOutputStream) {
        out.writeInt(value.size)
        value.forEach { inner.write(it, out) }
    }
}

class FfiConverterMap<K, V>(
    private val key: FfiConverter<K, *>,
    private val value: FfiConverter<V, *>,
) : FfiConverterBuffer<Map<K, V>>() {
    override fun read(buf: ByteBuffer): Map<K, V> {
        val count = buf.getInt()
        val result = LinkedHashMap<K, V>(count)
        repeat(count) {
            val k = key.read(buf)
            result[k] = value.read(buf)
        }
        return result
    }

    override fun write(value: Map<K, V>, out: DataOutputStream) {
        out.writeInt(value.size)
        value.forEach { (k, v) ->
            key.write(k, out)
            this.value.write(v, out)
        }
    }
}

class BufferedErrorHandler<E : Exception>(private val inner: FfiConverter<E, *>) :
    FfiConverterBuffer<E>(), ErrorHandler<E> {
    override fun read(buf: ByteBuffer): E = inner.read(buf)
    override fun write(value: E, out: DataOutputStream) = inner.write(value, out)
}
"""

IMPORTS = (
    "com.sun.jna.Callback",
    "com.sun.jna.Library",
    "com.sun.jna.Memory",
    "com.sun.jna.Native",
    "com.sun.jna.Pointer",
    "com.sun.jna.Structure",
    "java.io.ByteArrayOutputStream",
    "java.io.DataOutputStream",
    "java.lang.ref.Cleaner",
    "java.nio.ByteBuffer",
    "java.nio.ByteOrder",
    "java.util.concurrent.atomic.AtomicLong",
    "kotlin.coroutines.resume",
    "kotlinx.coroutines.CancellableContinuation",
    "kotlinx.coroutines.CancellationException",
    "kotlinx.coroutines.suspendCancellableCoroutine",
)


def _kdoc(w: CodeWriter, text: Optional[str]) -> None:
    if not text:
        return
    w.emit("/**")
    w.emit_doc(text.replace("*/", "* /"), " * ")
    w.emit(" */")


def _string_literal(value: str) -> str:
    return json.dumps(value).replace("$", "\\$")


class KotlinBackend:
    """Emitter for Kotlin/JVM bindings using JNA."""

    name = "kotlin"
    formatter = ("ktlint", "-F")

    def __init__(self, context: BackendContext):
        self.context = context
        self.ir = context.ir
        self.ffi = context.ffi
        namespace = self.ir.namespace
        self.package = context.config.option("package_name", f"ffibridge.{namespace.lower()}")
        self.cdylib_name = context.config.option("cdylib_name", namespace)
        self._composites: dict[str, TypeRef] = {}
        self._error_types = self.ir.error_type_names()

    # =========================================================================
    # Naming
    # =========================================================================

    @staticmethod
    def ident(name: str) -> str:
        return escape_keyword(camel_case(name), KOTLIN_KEYWORDS, style="backtick")

    @staticmethod
    def class_name(name: str) -> str:
        return pascal_case(name)

    def _external_package(self, namespace: str) -> str:
        return f"ffibridge.{namespace.lower()}"

    # =========================================================================
    # Type Mapping
    # =========================================================================

    def converter(self, ref: TypeRef) -> str:
        if isinstance(ref, PrimitiveType):
            return PRIMITIVES[ref.kind][1]
        if isinstance(ref, NamedType):
            raise unsupported(self.name, f"type '{ref.name}' is unresolved")
        if isinstance(ref, ItemRef):
            return f"FfiConverterType{self.class_name(ref.name)}"
        if isinstance(ref, ExternalType):
            return f"{self._external_package(ref.namespace)}.FfiConverterType{self.class_name(ref.name)}"
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
            return f"List<{self.surface(ref.inner)}>"
        if isinstance(ref, MappingType):
            return f"Map<{self.surface(ref.key)}, {self.surface(ref.value)}>"
        if isinstance(ref, ExternalType):
            return f"{self._external_package(ref.namespace)}.{self.class_name(ref.name)}"
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

    def error_handler(self, throws: Optional[TypeRef]) -> str:
        if throws is None:
            return "NoErrorHandler"
        if isinstance(throws, ObjectType):
            return f"ErrorHandlerType{self.class_name(throws.name)}"
        return self.converter(throws)

    def literal(self, lit: Literal, ref: TypeRef) -> str:
        if lit.kind == LiteralKind.NULL:
            return "null"
        if lit.kind == LiteralKind.BOOLEAN:
            return "true" if lit.value else "false"
        if lit.kind == LiteralKind.INTEGER and isinstance(ref, PrimitiveType):
            value = int(lit.value)
            suffix = {
                PrimitiveKind.I64: "L", PrimitiveKind.U8: "u", PrimitiveKind.U16: "u",
                PrimitiveKind.U32: "u", PrimitiveKind.U64: "uL",
            }.get(ref.kind, "")
            if ref.kind == PrimitiveKind.I8:
                return f"{value}.toByte()"
            if ref.kind == PrimitiveKind.I16:
                return f"{value}.toShort()"
            if ref.kind == PrimitiveKind.F32:
                return f"{float(value)}f"
            if ref.kind == PrimitiveKind.F64:
                return f"{float(value)}"
            return f"{value}{suffix}"
        if lit.kind == LiteralKind.FLOAT:
            f = repr(float(lit.value))
            if isinstance(ref, PrimitiveType) and ref.kind == PrimitiveKind.F32:
                return f"{f}f"
            return f
        if lit.kind == LiteralKind.STRING:
            return _string_literal(str(lit.value))
        if lit.kind == LiteralKind.EMPTY_SEQUENCE:
            return "listOf()"
        if lit.kind == LiteralKind.EMPTY_MAP:
            return "mapOf()"
        if lit.kind == LiteralKind.ENUM and isinstance(ref, EnumType):
            item = self.ir.get(ref.name)
            if isinstance(item, Enum) and item.is_flat and not item.is_error:
                return f"{self.class_name(ref.name)}.{shouty_case(str(lit.value))}"
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

    def _lowered_args(self, arguments: tuple[Argument, ...], receiver: Optional[str]) -> list[str]:
        lowered = [receiver] if receiver else []
        lowered.extend(self.map_type(a.type).lower_expr(self.ident(a.name)) for a in arguments)
        return lowered

    def _emit_ffi_call(self, w: CodeWriter, fn: FfiFunction, lowered: list[str], status: bool) -> None:
        args = lowered + (["status"] if status else [])
        if not args:
            w.emit(f"_NativeLib.INSTANCE.{fn.name}()")
            return
        w.emit(f"_NativeLib.INSTANCE.{fn.name}(")
        with w.indented():
            for expr in args:
                w.emit(f"{expr},")
        w.emit(")")

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
        """
        Emit the statements of a wrapper.

        Args:
            lift: Expression template for the result; defaults to the
                  return type's converter. None return_type means void.
        """
        lowered = self._lowered_args(arguments, receiver)
        handler = self.error_handler(throws)
        if lift is None and return_type is not None:
            lift = self.map_type(return_type).lift

        if fn.is_async:
            with w.block("val future = ArgumentScope().use { scope ->", "}"):
                self._emit_ffi_call(w, fn, lowered, status=False)
            async_return = lower_type(return_type) if return_type is not None else None
            family = self.ffi.future_family(async_return)
            w.emit("return callAsync(")
            with w.indented():
                w.emit("future,")
                w.emit(f"{{ handle, continuation, data -> _NativeLib.INSTANCE.{family.poll.name}(handle, continuation, data) }},")
                w.emit(f"{{ handle, status -> _NativeLib.INSTANCE.{family.complete.name}(handle, status) }},")
                w.emit(f"{{ handle -> _NativeLib.INSTANCE.{family.free.name}(handle) }},")
                w.emit(f"{{ handle -> _NativeLib.INSTANCE.{family.cancel.name}(handle) }},")
                w.emit(f"{{ value -> {lift.replace('{}', 'value')} }}," if lift else "{ },")
                w.emit(f"{handler},")
            w.emit(")")
            return

        opener = "return ArgumentScope().use { scope ->" if lift else "ArgumentScope().use { scope ->"
        with w.block(opener, "}"):
            call_open = f"callWithStatus({handler}) {{ status ->"
            if lift:
                call_open = "val result = " + call_open
            with w.block(call_open, "}"):
                self._emit_ffi_call(w, fn, lowered, status=True)
            if lift:
                w.emit(lift.replace("{}", "result"))

    # =========================================================================
    # Items
    # =========================================================================

    def emit_function(self, function: Function) -> EmittedItem:
        fn = self.ffi.function_for("", function.name)
        w = CodeWriter()
        _kdoc(w, function.docstring)
        modifier = "suspend fun" if function.is_async else "fun"
        ret = f": {self.surface(function.return_type)}" if function.return_type else ""
        with w.block(f"{modifier} {self.ident(function.name)}({self._parameters(function.arguments)}){ret} {{", "}"):
            self._emit_body(w, fn, function.arguments, function.throws, None, function.return_type)
        out = EmittedItem(function.name)
        out.add("function", w.render())
        return out

    def _record_fields(self, fields: tuple[Field, ...], mutable: bool = True) -> list[str]:
        keyword = "var" if mutable else "val"
        lines = []
        for f in fields:
            text = f"{keyword} {self.ident(f.name)}: {self.surface(f.type)}"
            if f.default is not None:
                text += f" = {self.literal(f.default, f.type)}"
            lines.append(text + ",")
        return lines

    def _read_fields(self, w: CodeWriter, cls: str, fields: tuple[Field, ...]) -> None:
        if not fields:
            w.emit(f"return {cls}()")
            return
        w.emit(f"return {cls}(")
        with w.indented():
            for f in fields:
                w.emit(f"{self.converter(f.type)}.read(buf),")
        w.emit(")")

    def _write_fields(self, w: CodeWriter, fields: tuple[Field, ...]) -> None:
        for f in fields:
            w.emit(f"{self.converter(f.type)}.write(value.{self.ident(f.name)}, out)")

    def emit_record(self, record: Record) -> EmittedItem:
        cls = self.class_name(record.name)
        w = CodeWriter()
        _kdoc(w, record.docstring)
        if record.fields:
            w.emit(f"data class {cls}(")
            with w.indented():
                w.emit_lines(self._record_fields(record.fields))
            w.emit(")")
        else:
            w.emit(f"class {cls}")
        w.blank()
        with w.block(f"object FfiConverterType{cls} : FfiConverterBuffer<{cls}>() {{", "}"):
            with w.block(f"override fun read(buf: ByteBuffer): {cls} {{", "}"):
                self._read_fields(w, cls, record.fields)
            w.blank()
            with w.block(f"override fun write(value: {cls}, out: DataOutputStream) {{", "}"):
                self._write_fields(w, record.fields)
        out = EmittedItem(record.name)
        out.add("declaration", w.render())
        return out

    def emit_enum(self, enum: Enum) -> EmittedItem:
        cls = self.class_name(enum.name)
        w = CodeWriter()
        _kdoc(w, enum.docstring)
        if enum.is_flat and not enum.is_error:
            with w.block(f"enum class {cls} {{", "}"):
                names = [shouty_case(v.name) for v in enum.variants]
                for i, variant in enumerate(enum.variants):
                    _kdoc(w, variant.docstring)
                    w.emit(names[i] + ("," if i < len(names) - 1 else ";"))
            w.blank()
            with w.block(f"object FfiConverterType{cls} : FfiConverterBuffer<{cls}>() {{", "}"):
                with w.block(f"override fun read(buf: ByteBuffer): {cls} {{", "}"):
                    w.emit("val index = buf.getInt()")
                    w.emit(f"return {cls}.values().getOrNull(index - 1)")
                    with w.indented():
                        w.emit(f'?: throw InternalException("invalid {cls} variant $index")')
                w.blank()
                with w.block(f"override fun write(value: {cls}, out: DataOutputStream) {{", "}"):
                    w.emit("out.writeInt(value.ordinal + 1)")
        else:
            base = ": Exception()" if enum.is_error else ""
            with w.block(f"sealed class {cls}{base} {{", "}"):
                for i, variant in enumerate(enum.variants):
                    if i:
                        w.blank()
                    self._emit_variant(w, cls, enum, variant)
            w.blank()
            supertypes = f"FfiConverterBuffer<{cls}>()"
            if enum.is_error:
                supertypes += f", ErrorHandler<{cls}>"
            with w.block(f"object FfiConverterType{cls} : {supertypes} {{", "}"):
                with w.block(f"override fun read(buf: ByteBuffer): {cls} {{", "}"):
                    with w.block("return when (val index = buf.getInt()) {", "}"):
                        for index, variant in enumerate(enum.variants, start=1):
                            vcls = f"{cls}.{self.class_name(variant.name)}"
                            if variant.fields:
                                args = ", ".join(f"{self.converter(f.type)}.read(buf)" for f in variant.fields)
                                w.emit(f"{index} -> {vcls}({args})")
                            elif enum.is_error:
                                w.emit(f"{index} -> {vcls}()")
                            else:
                                w.emit(f"{index} -> {vcls}")
                        w.emit(f'else -> throw InternalException("invalid {cls} variant $index")')
                w.blank()
                with w.block(f"override fun write(value: {cls}, out: DataOutputStream) {{", "}"):
                    if not enum.variants:
                        w.emit(f'throw InternalException("{cls} has no variants")')
                    else:
                        with w.block("when (value) {", "}"):
                            for index, variant in enumerate(enum.variants, start=1):
                                vcls = f"{cls}.{self.class_name(variant.name)}"
                                check = f"is {vcls}" if variant.fields or enum.is_error else vcls
                                with w.block(f"{check} -> {{", "}"):
                                    w.emit(f"out.writeInt({index})")
                                    self._write_fields(w, variant.fields)
        out = EmittedItem(enum.name)
        out.add("declaration", w.render())
        return out

    def _emit_variant(self, w: CodeWriter, cls: str, enum: Enum, variant) -> None:
        vname = self.class_name(variant.name)
        _kdoc(w, variant.docstring)
        if enum.is_error:
            params = ", ".join(f"val {self.ident(f.name)}: {self.surface(f.type)}" for f in variant.fields)
            with w.block(f"class {vname}({params}) : {cls}() {{", "}"):
                if variant.fields:
                    shown = ", ".join(f"{self.ident(f.name)}=${{{self.ident(f.name)}}}" for f in variant.fields)
                    w.emit(f'override val message: String get() = "{vname}({shown})"')
                else:
                    w.emit(f'override val message: String get() = "{vname}"')
        elif variant.fields:
            w.emit(f"data class {vname}(")
            with w.indented():
                w.emit_lines(self._record_fields(variant.fields, mutable=False))
            w.emit(f") : {cls}()")
        else:
            w.emit(f"object {vname} : {cls}()")

    def emit_object(self, obj: Object) -> EmittedItem:
        cls = self.class_name(obj.name)
        functions = self.ffi.objects[obj.name]
        supertypes = "Exception(), AutoCloseable" if obj.name in self._error_types else "AutoCloseable"
        w = CodeWriter()
        _kdoc(w, obj.docstring)
        with w.block(f"open class {cls} internal constructor(handle: Long) : {supertypes} {{", "}"):
            w.emit("private val destroyer = Destroyer(handle)")
            w.emit("private val cleanable = CLEANER.register(this, destroyer)")

            primary = obj.primary_constructor
            if primary is not None and not primary.is_async:
                w.blank()
                _kdoc(w, primary.docstring)
                w.emit(f"constructor({self._parameters(primary.arguments)}) : this(create{cls}({self._forward(primary.arguments)}))")

            w.blank()
            w.emit(f'internal fun liveHandle(): Long = destroyer.live("{cls}")')
            w.blank()
            w.emit(f'internal fun takeHandle(): Long = destroyer.take("{cls}")')
            w.blank()
            with w.block("internal fun cloneHandle(): Long = callWithStatus { status ->", "}"):
                w.emit(f"_NativeLib.INSTANCE.{functions.clone.name}(liveHandle(), status)")
            w.blank()
            w.emit("override fun close() = cleanable.clean()")

            for method in obj.methods:
                w.blank()
                self._emit_method(w, obj, method)

            statics = [c for c in obj.constructors if not (c.is_primary and not c.is_async)]
            w.blank()
            with w.block("companion object {", "}"):
                for i, ctor in enumerate(statics):
                    if i:
                        w.blank()
                    _kdoc(w, ctor.docstring)
                    fn = self.ffi.function_for(obj.name, ctor.name)
                    modifier = "suspend fun" if ctor.is_async else "fun"
                    name = "create" if ctor.is_primary else self.ident(ctor.name)
                    with w.block(f"{modifier} {name}({self._parameters(ctor.arguments)}): {cls} {{", "}"):
                        self._emit_body(w, fn, ctor.arguments, ctor.throws, None, ObjectType(obj.name), f"{cls}({{}})")
                if primary is not None and not primary.is_async:
                    if statics:
                        w.blank()
                    fn = self.ffi.function_for(obj.name, primary.name)
                    with w.block(f"private fun create{cls}({self._parameters(primary.arguments)}): Long {{", "}"):
                        self._emit_body(w, fn, primary.arguments, primary.throws, None, ObjectType(obj.name), "{}")

            w.blank()
            with w.block("private class Destroyer(handle: Long) : Runnable {", "}"):
                w.emit("private val handle = AtomicLong(handle)")
                w.blank()
                w.emit('fun live(name: String): Long = handle.get().also { check(it != 0L) { "$name has been closed" } }')
                w.blank()
                w.emit('fun take(name: String): Long = handle.getAndSet(0).also { check(it != 0L) { "$name has been closed" } }')
                w.blank()
                with w.block("override fun run() {", "}"):
                    w.emit("val released = handle.getAndSet(0)")
                    with w.block("if (released != 0L) {", "}"):
                        w.emit(f"callWithStatus {{ status -> _NativeLib.INSTANCE.{functions.free.name}(released, status) }}")

        w.blank()
        with w.block(f"object FfiConverterType{cls} : FfiConverter<{cls}, Long> {{", "}"):
            w.emit(f"override fun lift(value: Long): {cls} = {cls}(value)")
            w.emit(f"override fun lower(value: {cls}): Long = value.cloneHandle()")
            w.emit(f"override fun read(buf: ByteBuffer): {cls} = lift(buf.getLong())")
            w.emit(f"override fun write(value: {cls}, out: DataOutputStream) = out.writeLong(lower(value))")
        if obj.name in self._error_types:
            w.blank()
            w.emit(f"val ErrorHandlerType{cls} = BufferedErrorHandler(FfiConverterType{cls})")

        out = EmittedItem(obj.name)
        out.add("declaration", w.render())
        return out

    def _forward(self, arguments: tuple[Argument, ...]) -> str:
        return ", ".join(self.ident(a.name) for a in arguments)

    def _emit_method(self, w: CodeWriter, obj: Object, method: Method) -> None:
        fn = self.ffi.function_for(obj.name, method.name)
        _kdoc(w, method.docstring)
        modifier = "suspend fun" if method.is_async else "fun"
        ret = f": {self.surface(method.return_type)}" if method.return_type else ""
        receiver = "takeHandle()" if method.self_mode == SelfMode.CONSUMING else "liveHandle()"
        with w.block(f"{modifier} {self.ident(method.name)}({self._parameters(method.arguments)}){ret} {{", "}"):
            self._emit_body(w, fn, method.arguments, method.throws, receiver, method.return_type)

    def emit_callback(self, callback: CallbackInterface) -> EmittedItem:
        cls = self.class_name(callback.name)
        vtable = self.ffi.vtables[callback.name]
        conv = f"FfiConverterType{cls}"
        w = CodeWriter()
        _kdoc(w, callback.docstring)
        with w.block(f"interface {cls} {{", "}"):
            for method in callback.methods:
                _kdoc(w, method.docstring)
                ret = f": {self.surface(method.return_type)}" if method.return_type else ""
                w.emit(f"fun {self.ident(method.name)}({self._parameters(method.arguments)}){ret}")

        for method, slot in zip(callback.methods, vtable.methods):
            iface = f"{cls}{self.class_name(method.name)}Callback"
            params = ["handle: Long"]
            for arg in slot.arguments[1:]:
                params.append("outReturn: Pointer" if arg.out else f"{self.ident(arg.name)}: {JNA_TYPES[arg.type]}")
            params.append("status: CallStatus")
            w.blank()
            with w.block(f"internal interface {iface} : Callback {{", "}"):
                w.emit(f"fun callback({', '.join(params)})")
            w.blank()
            with w.block(f"internal object {iface}Impl : {iface} {{", "}"):
                with w.block(f"override fun callback({', '.join(params)}) {{", "}"):
                    w.emit("invokeCallback(")
                    with w.indented():
                        w.emit("status,")
                        args = ", ".join(
                            f"{self.converter(a.type)}.liftArgument({self.ident(a.name)})" for a in method.arguments
                        )
                        w.emit(f"{{ {conv}.handles.get(handle).{self.ident(method.name)}({args}) }},")
                        if method.return_type is not None:
                            setter = OUT_SETTERS[lower_type(method.return_type)]
                            lowered = f"{self.converter(method.return_type)}.lower(value)"
                            w.emit(f"{{ value -> {setter.replace('{}', lowered)} }},")
                        else:
                            w.emit("{ },")
                        if method.throws is not None:
                            error_cls = self.surface(method.throws)
                            w.emit(f"{{ e -> if (e is {error_cls}) {self.error_handler(method.throws)}.lower(e) else null }},")
                        else:
                            w.emit("{ null },")
                    w.emit(")")

        w.blank()
        fields = ["free", "clone"] + [self.ident(m.name) for m in callback.methods]
        w.emit(f"@Structure.FieldOrder({', '.join(json.dumps(f.strip('`')) for f in fields)})")
        with w.block(f"internal class VTable{cls} : Structure() {{", "}"):
            with w.block("@JvmField var free: CallbackFree = object : CallbackFree {", "}"):
                w.emit(f"override fun callback(handle: Long) = {conv}.handles.release(handle)")
            with w.block("@JvmField var clone: CallbackClone = object : CallbackClone {", "}"):
                w.emit(f"override fun callback(handle: Long): Long = {conv}.handles.clone(handle)")
            for method in callback.methods:
                iface = f"{cls}{self.class_name(method.name)}Callback"
                w.emit(f"@JvmField var {self.ident(method.name)}: {iface} = {iface}Impl")

        w.blank()
        with w.block(f"object {conv} : FfiConverter<{cls}, Long> {{", "}"):
            w.emit(f"internal val handles = HandleMap<{cls}>()")
            w.emit(f"private val vtable = VTable{cls}()")
            w.blank()
            with w.block("init {", "}"):
                w.emit(f"_NativeLib.INSTANCE.{vtable.init_function.name}(vtable)")
            w.blank()
            with w.block(f"override fun lift(value: Long): {cls} {{", "}"):
                w.emit("val implementation = handles.get(value)")
                w.emit("handles.release(value)")
                w.emit("return implementation")
            w.emit(f"override fun lower(value: {cls}): Long = handles.insert(value)")
            w.emit(f"override fun read(buf: ByteBuffer): {cls} = lift(buf.getLong())")
            w.emit(f"override fun write(value: {cls}, out: DataOutputStream) = out.writeLong(lower(value))")

        out = EmittedItem(callback.name)
        out.add("declaration", w.render())
        return out

    # =========================================================================
    # File Assembly
    # =========================================================================

    def _jna_argument(self, fn: FfiFunction, arg) -> str:
        if arg.type == FfiType.VTABLE:
            interface = next(v.interface for v in self.ffi.vtables.values() if v.init_function is fn)
            return f"{arg.name}: VTable{self.class_name(interface)}"
        return f"`{arg.name}`: {JNA_TYPES[arg.type]}"

    def _emit_library(self, w: CodeWriter) -> None:
        prefix = self.ffi.prefix
        with w.block("internal interface _NativeLib : Library {", "}"):
            with w.block("companion object {", "}"):
                with w.block("internal val INSTANCE: _NativeLib by lazy {", "}"):
                    with w.block(f'Native.load("{self.cdylib_name}", _NativeLib::class.java).also {{ lib ->', "}"):
                        w.emit(f"val version = lib.{self.ffi.contract_version_symbol}()")
                        with w.block(f"if (version != {self.ffi.contract_version}) {{", "}"):
                            w.emit(
                                f'throw InternalException("library speaks contract version $version, '
                                f'bindings expect {self.ffi.contract_version}")'
                            )
                        for symbol, expected in self.ffi.checksums.items():
                            with w.block(f"if (lib.{symbol}().toUShort().toInt() != {expected}) {{", "}"):
                                w.emit(f'throw InternalException("checksum mismatch for {symbol}")')
            w.blank()
            for fn in self.ffi.functions:
                params = [self._jna_argument(fn, a) for a in fn.arguments]
                if fn.has_call_status:
                    params.append("status: CallStatus")
                ret = f": {JNA_TYPES[fn.return_type]}" if fn.return_type else ""
                w.emit(f"fun {fn.name}({', '.join(params)}){ret}")
        w.blank()
        with w.block("internal fun allocBuffer(bytes: ByteArray): ForeignBuffer.ByValue = callWithStatus { status ->", "}"):
            w.emit(f"_NativeLib.INSTANCE.{prefix}buffer_from_bytes(ForeignBytes.of(bytes), status)")
        w.blank()
        with w.block("internal fun freeBuffer(buf: ForeignBuffer.ByValue) {", "}"):
            with w.block("if (buf.data != null) {", "}"):
                w.emit(f"callWithStatus {{ status -> _NativeLib.INSTANCE.{prefix}buffer_free(buf, status) }}")

    def _composite_order(self) -> list[TypeRef]:
        def depth(ref: TypeRef) -> int:
            return 1 + max((depth(c) for c in ref.children()), default=0)

        return sorted(self._composites.values(), key=lambda r: (depth(r), r.canonical_name))

    def _composite_line(self, ref: TypeRef) -> str:
        name = f"FfiConverter{ref.canonical_name}"
        if isinstance(ref, OptionalType):
            kind = "FfiConverterOptionalHandle" if is_handle_type(ref.inner) else "FfiConverterOptional"
            return f"val {name} = {kind}({self.converter(ref.inner)})"
        if isinstance(ref, SequenceType):
            return f"val {name} = FfiConverterSequence({self.converter(ref.inner)})"
        return f"val {name} = FfiConverterMap({self.converter(ref.key)}, {self.converter(ref.value)})"

    def render(self, items: list[EmittedItem]) -> dict[str, str]:
        ns = self.ir.namespace
        logger.debug(f"Rendering Kotlin package {self.package}")
        w = CodeWriter()
        w.emit(f"// Generated by ffibridge from the '{ns}' interface. Do not edit.")
        w.emit('@file:Suppress("NAME_SHADOWING", "unused", "ClassName", "FunctionName")')
        w.blank()
        w.emit(f"package {self.package}")
        w.blank()
        for name in IMPORTS:
            w.emit(f"import {name}")
        w.blank()
        w.emit_raw(PRELUDE)
        w.blank()
        w.emit("// " + "=" * 77)
        w.emit("// Native Library")
        w.emit("// " + "=" * 77)
        w.blank()
        self._emit_library(w)
        for section in ("declaration", "function"):
            for item in items:
                text = item.sections.get(section)
                if text:
                    w.blank()
                    w.emit_raw(text)
            if section == "declaration" and self._composites:
                w.blank()
                for ref in self._composite_order():
                    w.emit(self._composite_line(ref))
        path = "/".join(self.package.split(".") + [f"{ns}.kt"])
        return {path: w.render()}
