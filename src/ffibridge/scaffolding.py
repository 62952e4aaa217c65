"""
Scaffolding Emitter
===================

Generates the native (Rust) side of the boundary: one ``extern "C"``
function per symbol of the ComponentFfi, wrapping the component's real
implementation.

Every generated file is a single ``ffibridge_scaffolding`` module meant to
be included at the crate root:

    include!(concat!(env!("OUT_DIR"), "/arithmetic_scaffolding.rs"));

What the Implementation Provides
--------------------------------
| Interface item                | Expected Rust item                          |
|-------------------------------|---------------------------------------------|
| function f                    | ``crate::f(args) -> T`` (``async fn`` ok)   |
| record R                      | ``crate::R { field, ... }``                 |
| enum E                        | ``crate::E::Variant { field, ... }``        |
| object O (concurrent)         | ``crate::O: Send + Sync``, shared as Arc<O> |
| object O (single-threaded)    | ``crate::O: Send``, shared as Arc<Mutex<O>> |
| constructor ``new`` / ``c``   | ``crate::O::new(args)`` / ``crate::O::c``   |
| callback interface C          | ``trait crate::C``; foreign side is ForeignC|

Fallible callables return ``Result<T, E>``. Consuming and by-value
methods are called as ``crate::O::m(this, args)`` with the Arc.

Containment
-----------
Each exported call runs inside ``catch_unwind``. A declared error sets
status code 1 with the serialized error, a panic or malformed argument
sets code 2 with the message. Nothing unwinds into foreign code.
"""

import logging
from typing import Optional

from ffibridge.codegen import CodeWriter
from ffibridge.config import LanguageConfig
from ffibridge.ffi.lowering import lower_type
from ffibridge.ffi.types import ComponentFfi, FfiFunction, FfiType, FutureFamily
from ffibridge.ir.model import (
    CallbackInterface,
    Enum,
    Function,
    InterfaceDescription,
    Method,
    Object,
    Record,
    SelfMode,
    ThreadingPolicy,
)
from ffibridge.ir.types import (
    CallbackInterfaceType,
    EnumType,
    ExternalType,
    MappingType,
    ObjectType,
    OptionalType,
    PrimitiveKind,
    PrimitiveType,
    RecordType,
    SequenceType,
    TypeRef,
)
from ffibridge.naming import escape_keyword, pascal_case, snake_case

logger = logging.getLogger(__name__)

RUST_KEYWORDS = frozenset({
    "as", "async", "await", "break", "const", "continue", "crate", "dyn", "else",
    "enum", "extern", "false", "fn", "for", "if", "impl", "in", "let", "loop",
    "match", "mod", "move", "mut", "pub", "ref", "return", "self", "Self",
    "static", "struct", "super", "trait", "true", "type", "unsafe", "use",
    "where", "while", "abstract", "become", "box", "do", "final", "macro",
    "override", "priv", "try", "typeof", "unsized", "virtual", "yield",
})

RUST_FFI_TYPES: dict[FfiType, str] = {
    FfiType.INT8: "i8",
    FfiType.UINT8: "u8",
    FfiType.INT16: "i16",
    FfiType.UINT16: "u16",
    FfiType.INT32: "i32",
    FfiType.UINT32: "u32",
    FfiType.INT64: "i64",
    FfiType.UINT64: "u64",
    FfiType.FLOAT32: "f32",
    FfiType.FLOAT64: "f64",
    FfiType.HANDLE: "u64",
    FfiType.BUFFER: "ForeignBuffer",
    FfiType.FOREIGN_BYTES: "ForeignBytes",
    FfiType.CALL_STATUS: "&mut CallStatus",
    FfiType.CONTINUATION: "ContinuationCallback",
}

RUST_PRIMITIVES: dict[PrimitiveKind, str] = {
    PrimitiveKind.I8: "i8",
    PrimitiveKind.U8: "u8",
    PrimitiveKind.I16: "i16",
    PrimitiveKind.U16: "u16",
    PrimitiveKind.I32: "i32",
    PrimitiveKind.U32: "u32",
    PrimitiveKind.I64: "i64",
    PrimitiveKind.U64: "u64",
    PrimitiveKind.F32: "f32",
    PrimitiveKind.F64: "f64",
    PrimitiveKind.BOOLEAN: "bool",
    PrimitiveKind.STRING: "String",
    PrimitiveKind.BYTES: "Vec<u8>",
    PrimitiveKind.TIMESTAMP: "SystemTime",
    PrimitiveKind.DURATION: "Duration",
}

SUPPORT = """\
use std::collections::HashMap;
use std::future::Future;
use std::panic::{self, AssertUnwindSafe};
use std::sync::atomic::{AtomicU64, Ordering};
use std::sync::{Arc, Mutex, OnceLock};
use std::task::{Context, Poll, Wake, Waker};
use std::time::{Duration, SystemTime, UNIX_EPOCH};

pub const CALL_SUCCESS: i8 = 0;
pub const CALL_ERROR: i8 = 1;
pub const CALL_UNEXPECTED_ERROR: i8 = 2;
pub const CALL_CANCELLED: i8 = 3;

pub const POLL_READY: i8 = 0;
pub const POLL_WAKE: i8 = 1;

pub type ContinuationCallback = extern "C" fn(u64, i8);

// ---------------------------------------------------------------------------
// Buffers
// ---------------------------------------------------------------------------

#[repr(C)]
pub struct ForeignBuffer {
    pub capacity: u64,
    pub len: u64,
    pub data: *mut u8,
}

unsafe impl Send for ForeignBuffer {}

impl Default for ForeignBuffer {
    fn default() -> Self {
        ForeignBuffer { capacity: 0, len: 0, data: std::ptr::null_mut() }
    }
}

impl ForeignBuffer {
    pub fn from_vec(v: Vec<u8>) -> Self {
        let mut v = std::mem::ManuallyDrop::new(v);
        ForeignBuffer { capacity: v.capacity() as u64, len: v.len() as u64, data: v.as_mut_ptr() }
    }

    pub fn as_slice(&self) -> &[u8] {
        if self.data.is_null() {
            &[]
        } else {
            unsafe { std::slice::from_raw_parts(self.data, self.len as usize) }
        }
    }

    /// A second view of the same allocation, for lending to foreign code.
    pub fn share(&self) -> ForeignBuffer {
        ForeignBuffer { capacity: self.capacity, len: self.len, data: self.data }
    }

    pub fn destroy(self) {
        if !self.data.is_null() {
            drop(unsafe { Vec::from_raw_parts(self.data, self.len as usize, self.capacity as usize) });
        }
    }
}

#[repr(C)]
pub struct ForeignBytes {
    pub len: i32,
    pub data: *const u8,
}

#[repr(C)]
#[derive(Default)]
pub struct CallStatus {
    pub code: i8,
    pub error_buf: ForeignBuffer,
}

// ---------------------------------------------------------------------------
// Call containment
// ---------------------------------------------------------------------------

pub enum CallError {
    Declared(ForeignBuffer),
    Unexpected(String),
}

impl From<String> for CallError {
    fn from(message: String) -> Self {
        CallError::Unexpected(message)
    }
}

fn panic_message(payload: Box<dyn std::any::Any + Send>) -> String {
    if let Some(s) = payload.downcast_ref::<&str>() {
        s.to_string()
    } else if let Some(s) = payload.downcast_ref::<String>() {
        s.clone()
    } else {
        "native code panicked".to_string()
    }
}

fn message_buffer(message: &str) -> ForeignBuffer {
    lower_buffer(&message.to_string(), write_string)
}

fn report<R: Default>(outcome: Result<R, CallError>, status: &mut CallStatus) -> R {
    match outcome {
        Ok(value) => {
            status.code = CALL_SUCCESS;
            value
        }
        Err(CallError::Declared(buf)) => {
            status.code = CALL_ERROR;
            status.error_buf = buf;
            R::default()
        }
        Err(CallError::Unexpected(message)) => {
            status.code = CALL_UNEXPECTED_ERROR;
            status.error_buf = message_buffer(&message);
            R::default()
        }
    }
}

pub fn call_with_status<R, F>(status: &mut CallStatus, f: F) -> R
where
    R: Default,
    F: FnOnce() -> Result<R, CallError>,
{
    let outcome = panic::catch_unwind(AssertUnwindSafe(f))
        .unwrap_or_else(|payload| Err(CallError::Unexpected(panic_message(payload))));
    report(outcome, status)
}

/// Runs f for a symbol without a status parameter; a panic yields R::default().
pub fn contain<R: Default, F: FnOnce() -> R>(f: F) -> R {
    panic::catch_unwind(AssertUnwindSafe(f)).unwrap_or_default()
}

// ---------------------------------------------------------------------------
// Serialization (big-endian)
// ---------------------------------------------------------------------------

pub struct Reader<'a> {
    data: &'a [u8],
    offset: usize,
}

impl<'a> Reader<'a> {
    pub fn new(data: &'a [u8]) -> Self {
        Reader { data, offset: 0 }
    }

    pub fn take(&mut self, size: usize) -> Result<&'a [u8], String> {
        if self.offset + size > self.data.len() {
            return Err("buffer ends inside a value".to_string());
        }
        let chunk = &self.data[self.offset..self.offset + size];
        self.offset += size;
        Ok(chunk)
    }

    pub fn finish(&self) -> Result<(), String> {
        let remaining = self.data.len() - self.offset;
        if remaining == 0 {
            Ok(())
        } else {
            Err(format!("{} unread bytes after value", remaining))
        }
    }

    /// Lets another crate's codec read from the current position.
    pub fn delegate<T>(&mut self, f: impl FnOnce(&[u8], &mut usize) -> Result<T, String>) -> Result<T, String> {
        let mut offset = self.offset;
        let value = f(self.data, &mut offset)?;
        self.offset = offset;
        Ok(value)
    }
}

pub fn read_at<T>(data: &[u8], offset: &mut usize, read: fn(&mut Reader) -> Result<T, String>) -> Result<T, String> {
    let mut reader = Reader { data, offset: *offset };
    let value = read(&mut reader)?;
    *offset = reader.offset;
    Ok(value)
}

macro_rules! fixed_codec {
    ($read:ident, $write:ident, $t:ty, $size:expr) => {
        pub fn $read(r: &mut Reader) -> Result<$t, String> {
            let mut bytes = [0u8; $size];
            bytes.copy_from_slice(r.take($size)?);
            Ok(<$t>::from_be_bytes(bytes))
        }

        pub fn $write(buf: &mut Vec<u8>, v: &$t) {
            buf.extend_from_slice(&v.to_be_bytes());
        }
    };
}

fixed_codec!(read_i8, write_i8, i8, 1);
fixed_codec!(read_u8, write_u8, u8, 1);
fixed_codec!(read_i16, write_i16, i16, 2);
fixed_codec!(read_u16, write_u16, u16, 2);
fixed_codec!(read_i32, write_i32, i32, 4);
fixed_codec!(read_u32, write_u32, u32, 4);
fixed_codec!(read_i64, write_i64, i64, 8);
fixed_codec!(read_u64, write_u64, u64, 8);
fixed_codec!(read_f32, write_f32, f32, 4);
fixed_codec!(read_f64, write_f64, f64, 8);

pub fn read_boolean(r: &mut Reader) -> Result<bool, String> {
    Ok(read_i8(r)? != 0)
}

pub fn write_boolean(buf: &mut Vec<u8>, v: &bool) {
    write_i8(buf, &(*v as i8));
}

fn read_length(r: &mut Reader) -> Result<usize, String> {
    let len = read_i32(r)?;
    if len < 0 {
        return Err(format!("negative length {}", len));
    }
    Ok(len as usize)
}

pub fn read_string(r: &mut Reader) -> Result<String, String> {
    let len = read_length(r)?;
    String::from_utf8(r.take(len)?.to_vec()).map_err(|e| e.to_string())
}

pub fn write_string(buf: &mut Vec<u8>, v: &String) {
    write_i32(buf, &(v.len() as i32));
    buf.extend_from_slice(v.as_bytes());
}

pub fn read_bytes(r: &mut Reader) -> Result<Vec<u8>, String> {
    let len = read_length(r)?;
    Ok(r.take(len)?.to_vec())
}

pub fn write_bytes(buf: &mut Vec<u8>, v: &Vec<u8>) {
    write_i32(buf, &(v.len() as i32));
    buf.extend_from_slice(v);
}

pub fn read_timestamp(r: &mut Reader) -> Result<SystemTime, String> {
    let seconds = read_i64(r)?;
    let nanos = read_u32(r)?;
    let whole = Duration::from_secs(seconds.unsigned_abs());
    let base = if seconds >= 0 { UNIX_EPOCH + whole } else { UNIX_EPOCH - whole };
    Ok(base + Duration::from_nanos(nanos as u64))
}

pub fn write_timestamp(buf: &mut Vec<u8>, v: &SystemTime) {
    let (seconds, nanos) = match v.duration_since(UNIX_EPOCH) {
        Ok(d) => (d.as_secs() as i64, d.subsec_nanos()),
        Err(e) => {
            let d = e.duration();
            if d.subsec_nanos() == 0 {
                (-(d.as_secs() as i64), 0)
            } else {
                (-(d.as_secs() as i64) - 1, 1_000_000_000 - d.subsec_nanos())
            }
        }
    };
    write_i64(buf, &seconds);
    write_u32(buf, &nanos);
}

pub fn read_duration(r: &mut Reader) -> Result<Duration, String> {
    let seconds = read_u64(r)?;
    let nanos = read_u32(r)?;
    Ok(Duration::new(seconds, nanos))
}

pub fn write_duration(buf: &mut Vec<u8>, v: &Duration) {
    write_u64(buf, &v.as_secs());
    write_u32(buf, &v.subsec_nanos());
}

/// Reads a borrowed buffer; the caller keeps ownership.
pub fn lift_buffer<T>(buf: &ForeignBuffer, read: fn(&mut Reader) -> Result<T, String>) -> Result<T, String> {
    let mut reader = Reader::new(buf.as_slice());
    let value = read(&mut reader)?;
    reader.finish()?;
    Ok(value)
}

/// Reads a buffer handed over to us and frees it.
pub fn lift_owned<T>(buf: ForeignBuffer, read: fn(&mut Reader) -> Result<T, String>) -> Result<T, String> {
    let value = lift_buffer(&buf, read);
    buf.destroy();
    value
}

pub fn lower_buffer<T>(v: &T, write: fn(&mut Vec<u8>, &T)) -> ForeignBuffer {
    let mut buf = Vec::new();
    write(&mut buf, v);
    ForeignBuffer::from_vec(buf)
}

pub fn lower_error<E>(e: &E, write: fn(&mut Vec<u8>, &E)) -> CallError {
    CallError::Declared(lower_buffer(e, write))
}

// ---------------------------------------------------------------------------
// Handle tables
// ---------------------------------------------------------------------------

static NEXT_HANDLE: AtomicU64 = AtomicU64::new(1);

/// Handle -> (reference count, instance). Handles are never 0 and never reused.
pub struct HandleTable<T> {
    entries: Mutex<HashMap<u64, (u64, Arc<T>)>>,
}

impl<T> HandleTable<T> {
    pub fn new() -> Self {
        HandleTable { entries: Mutex::new(HashMap::new()) }
    }

    fn lock(&self) -> std::sync::MutexGuard<'_, HashMap<u64, (u64, Arc<T>)>> {
        self.entries.lock().unwrap_or_else(|e| e.into_inner())
    }

    pub fn insert(&self, value: Arc<T>) -> u64 {
        let handle = NEXT_HANDLE.fetch_add(1, Ordering::Relaxed);
        self.lock().insert(handle, (1, value));
        handle
    }

    pub fn get(&self, handle: u64) -> Result<Arc<T>, String> {
        self.lock()
            .get(&handle)
            .map(|(_, value)| Arc::clone(value))
            .ok_or_else(|| format!("unknown handle {}", handle))
    }

    pub fn clone_handle(&self, handle: u64) -> Result<u64, String> {
        let mut entries = self.lock();
        let entry = entries.get_mut(&handle).ok_or_else(|| format!("unknown handle {}", handle))?;
        entry.0 += 1;
        Ok(handle)
    }

    /// Gives up one reference; the entry is removed when the count reaches zero.
    pub fn take(&self, handle: u64) -> Result<Arc<T>, String> {
        let mut entries = self.lock();
        let entry = entries.get_mut(&handle).ok_or_else(|| format!("unknown handle {}", handle))?;
        entry.0 -= 1;
        let value = Arc::clone(&entry.1);
        if entry.0 == 0 {
            entries.remove(&handle);
        }
        Ok(value)
    }

    pub fn release(&self, handle: u64) -> Result<(), String> {
        self.take(handle).map(drop)
    }
}

// ---------------------------------------------------------------------------
// Futures
// ---------------------------------------------------------------------------

struct FutureState<T> {
    result: Option<Result<T, CallError>>,
    continuation: Option<(ContinuationCallback, u64)>,
    cancelled: bool,
}

pub struct ForeignFuture<T> {
    state: Mutex<FutureState<T>>,
}

impl<T> ForeignFuture<T> {
    fn lock(&self) -> std::sync::MutexGuard<'_, FutureState<T>> {
        self.state.lock().unwrap_or_else(|e| e.into_inner())
    }

    fn resolve(&self, outcome: Result<T, CallError>) {
        let continuation = {
            let mut state = self.lock();
            if !state.cancelled {
                state.result = Some(outcome);
            }
            state.continuation.take()
        };
        if let Some((callback, data)) = continuation {
            callback(data, POLL_READY);
        }
    }
}

struct ThreadWaker(std::thread::Thread);

impl Wake for ThreadWaker {
    fn wake(self: Arc<Self>) {
        self.0.unpark();
    }
}

fn block_on<F: Future>(fut: F) -> F::Output {
    let mut fut = std::pin::pin!(fut);
    let waker = Waker::from(Arc::new(ThreadWaker(std::thread::current())));
    let mut cx = Context::from_waker(&waker);
    loop {
        match fut.as_mut().poll(&mut cx) {
            Poll::Ready(value) => return value,
            Poll::Pending => std::thread::park(),
        }
    }
}

/// Builds and runs a future on its own thread; returns the handle foreign code polls.
pub fn spawn_future<T, F, M>(make: M) -> u64
where
    T: Send + 'static,
    F: Future<Output = Result<T, CallError>>,
    M: FnOnce() -> F + Send + 'static,
{
    let shared = Arc::new(ForeignFuture {
        state: Mutex::new(FutureState { result: None, continuation: None, cancelled: false }),
    });
    let worker = Arc::clone(&shared);
    std::thread::spawn(move || {
        let outcome = panic::catch_unwind(AssertUnwindSafe(|| block_on(make())))
            .unwrap_or_else(|payload| Err(CallError::Unexpected(panic_message(payload))));
        worker.resolve(outcome);
    });
    Arc::into_raw(shared) as u64
}

unsafe fn future_ref<'a, T>(handle: u64) -> &'a ForeignFuture<T> {
    &*(handle as *const ForeignFuture<T>)
}

pub fn future_poll<T>(handle: u64, continuation: ContinuationCallback, data: u64) {
    let future = unsafe { future_ref::<T>(handle) };
    let ready = {
        let mut state = future.lock();
        if state.result.is_some() || state.cancelled {
            true
        } else {
            state.continuation = Some((continuation, data));
            false
        }
    };
    if ready {
        continuation(data, POLL_READY);
    }
}

pub fn future_complete<T: Default>(handle: u64, status: &mut CallStatus) -> T {
    let future = unsafe { future_ref::<T>(handle) };
    let mut state = future.lock();
    if state.cancelled {
        status.code = CALL_CANCELLED;
        return T::default();
    }
    let outcome = state
        .result
        .take()
        .unwrap_or_else(|| Err(CallError::Unexpected("future completed before it was ready".to_string())));
    report(outcome, status)
}

pub fn future_cancel<T>(handle: u64) {
    let future = unsafe { future_ref::<T>(handle) };
    let continuation = {
        let mut state = future.lock();
        state.cancelled = true;
        state.result = None;
        state.continuation.take()
    };
    if let Some((callback, data)) = continuation {
        callback(data, POLL_READY);
    }
}

pub fn future_free<T>(handle: u64) {
    drop(unsafe { Arc::from_raw(handle as *const ForeignFuture<T>) });
}
"""


class ScaffoldingEmitter:
    """
    Emits the Rust scaffolding for one interface.

    Example:
        files = ScaffoldingEmitter(ir, lower_interface(ir)).render()
        # {'arithmetic_scaffolding.rs': '...'}
    """

    name = "scaffolding"
    formatter = ("rustfmt", "--edition", "2021")

    def __init__(self, ir: InterfaceDescription, ffi: ComponentFfi, config: Optional[LanguageConfig] = None):
        self.ir = ir
        self.ffi = ffi
        self.config = config or LanguageConfig()
        self._codecs: dict[str, TypeRef] = {}

    @staticmethod
    def ident(name: str) -> str:
        return escape_keyword(snake_case(name), RUST_KEYWORDS)

    @staticmethod
    def type_name(name: str) -> str:
        return pascal_case(name)

    @property
    def filename(self) -> str:
        return f"{self.ir.namespace}_scaffolding.rs"

    # =========================================================================
    # Types
    # =========================================================================

    def _is_concurrent(self, name: str) -> bool:
        obj = self.ir.get(name)
        return isinstance(obj, Object) and obj.threading == ThreadingPolicy.CONCURRENT

    def _object_inner(self, name: str) -> str:
        path = f"crate::{self.type_name(name)}"
        return path if self._is_concurrent(name) else f"Mutex<{path}>"

    def rust_type(self, ref: TypeRef) -> str:
        if isinstance(ref, PrimitiveType):
            return RUST_PRIMITIVES[ref.kind]
        if isinstance(ref, OptionalType):
            return f"Option<{self.rust_type(ref.inner)}>"
        if isinstance(ref, SequenceType):
            return f"Vec<{self.rust_type(ref.inner)}>"
        if isinstance(ref, MappingType):
            return f"HashMap<{self.rust_type(ref.key)}, {self.rust_type(ref.value)}>"
        if isinstance(ref, ObjectType):
            return f"Arc<{self._object_inner(ref.name)}>"
        if isinstance(ref, CallbackInterfaceType):
            return f"Foreign{self.type_name(ref.name)}"
        if isinstance(ref, (RecordType, EnumType)):
            return f"crate::{self.type_name(ref.name)}"
        if isinstance(ref, ExternalType):
            return f"::{ref.namespace}::ffibridge_scaffolding::FfiType{self.type_name(ref.name)}"
        raise TypeError(f"cannot map {ref} to Rust")

    def codec(self, ref: TypeRef) -> str:
        """Suffix of the read_/write_ pair for ref, registering composites."""
        if isinstance(ref, PrimitiveType):
            return ref.kind.value
        if isinstance(ref, OptionalType):
            key = f"optional_{self.codec(ref.inner)}"
        elif isinstance(ref, SequenceType):
            key = f"sequence_{self.codec(ref.inner)}"
        elif isinstance(ref, MappingType):
            key = f"map_{self.codec(ref.key)}_{self.codec(ref.value)}"
        elif isinstance(ref, ExternalType):
            key = f"external_{ref.namespace}_{snake_case(ref.name)}"
        else:
            return f"type_{snake_case(ref.name)}"
        self._codecs.setdefault(key, ref)
        return key

    def _handles(self, name: str) -> str:
        return f"{snake_case(name)}_handles()"

    def lift_arg(self, ref: TypeRef, value: str) -> str:
        """Expression turning an ABI argument into a Rust value; may use ?."""
        ffi_type = lower_type(ref)
        if ffi_type == FfiType.BUFFER:
            return f"lift_buffer(&{value}, read_{self.codec(ref)})?"
        if ffi_type == FfiType.HANDLE:
            if isinstance(ref, OptionalType):
                return f"if {value} == 0 {{ None }} else {{ Some({self.lift_arg(ref.inner, value)}) }}"
            if isinstance(ref, ObjectType):
                return f"{self._handles(ref.name)}.take({value})?"
            return f"Foreign{self.type_name(ref.name)}::from_handle({value})"
        if isinstance(ref, PrimitiveType) and ref.kind == PrimitiveKind.BOOLEAN:
            return f"{value} != 0"
        return value

    def lower_value(self, ref: TypeRef, value: str) -> str:
        """Expression turning a Rust value into its ABI form."""
        ffi_type = lower_type(ref)
        if ffi_type == FfiType.BUFFER:
            return f"lower_buffer(&{value}, write_{self.codec(ref)})"
        if ffi_type == FfiType.HANDLE:
            if isinstance(ref, OptionalType):
                inner = self.lower_value(ref.inner, "v")
                return f"match {value} {{ Some(v) => {inner}, None => 0 }}"
            if isinstance(ref, ObjectType):
                return f"{self._handles(ref.name)}.insert({value})"
            return f"{value}.into_handle()"
        if isinstance(ref, PrimitiveType) and ref.kind == PrimitiveKind.BOOLEAN:
            return f"{value} as i8"
        return value

    def lift_owned(self, ref: TypeRef, value: str) -> str:
        """Like lift_arg, for a value handed over by a callback; returns Result."""
        ffi_type = lower_type(ref)
        if ffi_type == FfiType.BUFFER:
            return f"lift_owned({value}, read_{self.codec(ref)})"
        return f"(|| -> Result<_, String> {{ Ok({self.lift_arg(ref, value)}) }})()"

    # =========================================================================
    # Exported Callables
    # =========================================================================

    def _params(self, fn: FfiFunction) -> str:
        params = [f"{self.ident(a.name)}: {RUST_FFI_TYPES[a.type]}" for a in fn.arguments]
        if fn.has_call_status:
            params.append("call_status: &mut CallStatus")
        return ", ".join(params)

    def _header(self, w: CodeWriter, fn: FfiFunction) -> str:
        w.emit("#[no_mangle]")
        ret = f" -> {RUST_FFI_TYPES[fn.return_type]}" if fn.return_type else ""
        return f'pub extern "C" fn {fn.name}({self._params(fn)}){ret} {{'

    def _error_map(self, throws: Optional[TypeRef]) -> str:
        if throws is None:
            return ""
        return f".map_err(|e| lower_error(&e, write_{self.codec(throws)}))?"

    def _emit_exported(
        self,
        w: CodeWriter,
        fn: FfiFunction,
        callable_,
        lifts: list[str],
        invocation: str,
        result_ref: Optional[TypeRef],
        lowered: Optional[str] = None,
        bound: Optional[list[str]] = None,
    ) -> None:
        """
        Emit one exported function.

        Args:
            lifts: Statements lifting the receiver and arguments
            invocation: The call into the implementation
            result_ref: Return type, None for void
            lowered: ABI form of `result`, when not derived from result_ref
            bound: Names an async call carries into its future (the
                   arguments, by default)
        """
        error_map = self._error_map(callable_.throws)
        if lowered is None:
            lowered = self.lower_value(result_ref, "result") if result_ref is not None else "()"
        with w.block(self._header(w, fn), "}"):
            if fn.is_async:
                names = bound if bound is not None else [self.ident(a.name) for a in callable_.arguments]
                pattern = f"({names[0]},)" if len(names) == 1 else f"({', '.join(names)})"
                w.emit("let lifted = (|| -> Result<_, CallError> {")
                with w.indented():
                    w.emit_lines(lifts)
                    w.emit(f"Ok({pattern})")
                w.emit("})();")
                with w.block("spawn_future(move || async move {", "})"):
                    w.emit(f"let {pattern} = lifted?;")
                    w.emit(f"let result = {invocation}.await{error_map};")
                    w.emit(f"Ok::<_, CallError>({lowered})")
            else:
                with w.block("call_with_status(call_status, || {", "})"):
                    w.emit_lines(lifts)
                    w.emit(f"let result = {invocation}{error_map};")
                    w.emit(f"Ok({lowered})")

    def _arg_lifts(self, arguments) -> list[str]:
        return [f"let {self.ident(a.name)} = {self.lift_arg(a.type, self.ident(a.name))};" for a in arguments]

    def emit_function(self, w: CodeWriter, function: Function) -> None:
        fn = self.ffi.function_for("", function.name)
        args = ", ".join(self.ident(a.name) for a in function.arguments)
        self._emit_exported(
            w, fn, function,
            self._arg_lifts(function.arguments),
            f"crate::{self.ident(function.name)}({args})",
            function.return_type,
        )

    def emit_object(self, w: CodeWriter, obj: Object) -> None:
        cls = self.type_name(obj.name)
        inner = self._object_inner(obj.name)
        functions = self.ffi.objects[obj.name]
        w.emit(f"fn {self._handles(obj.name)} -> &'static HandleTable<{inner}> {{")
        with w.indented():
            w.emit(f"static TABLE: OnceLock<HandleTable<{inner}>> = OnceLock::new();")
            w.emit("TABLE.get_or_init(HandleTable::new)")
        w.emit("}")
        w.blank()
        with w.block(self._header(w, functions.clone), "}"):
            w.emit(f"call_with_status(call_status, || Ok({self._handles(obj.name)}.clone_handle(handle)?))")
        w.blank()
        with w.block(self._header(w, functions.free), "}"):
            w.emit(f"call_with_status(call_status, || Ok({self._handles(obj.name)}.release(handle)?))")

        instance = "Arc::new(result)" if self._is_concurrent(obj.name) else "Arc::new(Mutex::new(result))"
        for ctor in obj.constructors:
            w.blank()
            fn = self.ffi.function_for(obj.name, ctor.name)
            args = ", ".join(self.ident(a.name) for a in ctor.arguments)
            self._emit_exported(
                w, fn, ctor,
                self._arg_lifts(ctor.arguments),
                f"crate::{cls}::{self.ident(ctor.name)}({args})",
                None,
                lowered=f"{self._handles(obj.name)}.insert({instance})",
            )

        for method in obj.methods:
            w.blank()
            self._emit_method(w, obj, method)

    def _emit_method(self, w: CodeWriter, obj: Object, method: Method) -> None:
        cls = self.type_name(obj.name)
        fn = self.ffi.function_for(obj.name, method.name)
        receiver = self.ident(fn.arguments[0].name)
        args = [self.ident(a.name) for a in method.arguments]
        if method.self_mode == SelfMode.CONSUMING:
            lifts = [f"let this = {self._handles(obj.name)}.take({receiver})?;"]
        else:
            lifts = [f"let this = {self._handles(obj.name)}.get({receiver})?;"]
        lifts.extend(self._arg_lifts(method.arguments))
        if method.self_mode == SelfMode.SHARED_REF:
            target = "this" if self._is_concurrent(obj.name) else "this.lock().unwrap_or_else(|e| e.into_inner())"
            invocation = f"{target}.{self.ident(method.name)}({', '.join(args)})"
        else:
            invocation = f"crate::{cls}::{self.ident(method.name)}({', '.join(['this'] + args)})"
        self._emit_exported(
            w, fn, method, lifts, invocation, method.return_type,
            bound=["this"] + args,
        )

    # =========================================================================
    # Callback Interfaces
    # =========================================================================

    def emit_callback(self, w: CodeWriter, callback: CallbackInterface) -> None:
        cls = self.type_name(callback.name)
        vtable = self.ffi.vtables[callback.name]
        shouty = snake_case(callback.name).upper()

        w.emit("#[repr(C)]")
        w.emit("#[derive(Clone, Copy)]")
        with w.block(f"pub struct VTable{cls} {{", "}"):
            w.emit('pub free: extern "C" fn(u64),')
            w.emit('pub clone: extern "C" fn(u64) -> u64,')
            for slot in vtable.methods:
                params = []
                for arg in slot.arguments:
                    rust = RUST_FFI_TYPES[arg.type]
                    params.append(f"*mut {rust}" if arg.out else rust)
                params.append("&mut CallStatus")
                w.emit(f'pub {self.ident(slot.name)}: extern "C" fn({", ".join(params)}),')
        w.blank()
        w.emit(f"static VTABLE_{shouty}: OnceLock<VTable{cls}> = OnceLock::new();")
        w.blank()
        w.emit("#[no_mangle]")
        with w.block(f'pub extern "C" fn {vtable.init_function.name}(vtable: *const VTable{cls}) {{', "}"):
            with w.block("if !vtable.is_null() {", "}"):
                w.emit(f"let _ = VTABLE_{shouty}.set(unsafe {{ *vtable }});")
        w.blank()
        with w.block(f"fn vtable_{snake_case(callback.name)}() -> &'static VTable{cls} {{", "}"):
            w.emit(f'VTABLE_{shouty}.get().expect("no vtable registered for callback interface {cls}")')
        w.blank()
        w.emit("/// A foreign implementation of the callback interface, owning one foreign handle.")
        with w.block(f"pub struct Foreign{cls} {{", "}"):
            w.emit("handle: u64,")
        w.blank()
        with w.block(f"impl Foreign{cls} {{", "}"):
            with w.block("pub fn from_handle(handle: u64) -> Self {", "}"):
                w.emit(f"Foreign{cls} {{ handle }}")
            w.blank()
            with w.block("pub fn clone_handle(&self) -> u64 {", "}"):
                w.emit(f"(vtable_{snake_case(callback.name)}().clone)(self.handle)")
            w.blank()
            with w.block("pub fn into_handle(self) -> u64 {", "}"):
                w.emit("let handle = self.handle;")
                w.emit("std::mem::forget(self);")
                w.emit("handle")
        w.blank()
        with w.block(f"impl Clone for Foreign{cls} {{", "}"):
            with w.block("fn clone(&self) -> Self {", "}"):
                w.emit(f"Foreign{cls} {{ handle: self.clone_handle() }}")
        w.blank()
        with w.block(f"impl Drop for Foreign{cls} {{", "}"):
            with w.block("fn drop(&mut self) {", "}"):
                w.emit(f"(vtable_{snake_case(callback.name)}().free)(self.handle);")
        w.blank()
        with w.block(f"impl crate::{cls} for Foreign{cls} {{", "}"):
            for i, method in enumerate(callback.methods):
                if i:
                    w.blank()
                self._emit_callback_method(w, callback, method)

    def _emit_callback_method(self, w: CodeWriter, callback: CallbackInterface, method: Method) -> None:
        params = ["&self"] + [f"{self.ident(a.name)}: {self.rust_type(a.type)}" for a in method.arguments]
        value_type = self.rust_type(method.return_type) if method.return_type else "()"
        if method.throws is not None:
            ret = f" -> Result<{value_type}, {self.rust_type(method.throws)}>"
        else:
            ret = "" if method.return_type is None else f" -> {value_type}"
        where = f"{callback.name}.{method.name}"

        with w.block(f"fn {self.ident(method.name)}({', '.join(params)}){ret} {{", "}"):
            w.emit(f"let vtable = vtable_{snake_case(callback.name)}();")
            lowered = ["self.handle"]
            borrowed = []
            for arg in method.arguments:
                name = self.ident(arg.name)
                if lower_type(arg.type) == FfiType.BUFFER:
                    w.emit(f"let {name} = {self.lower_value(arg.type, name)};")
                    lowered.append(f"{name}.share()")
                    borrowed.append(name)
                else:
                    lowered.append(self.lower_value(arg.type, name))
            if method.return_type is not None:
                w.emit("let mut out_return = Default::default();")
                lowered.append("&mut out_return")
            w.emit("let mut status = CallStatus::default();")
            w.emit(f"(vtable.{self.ident(method.name)})({', '.join(lowered + ['&mut status'])});")
            for name in borrowed:
                w.emit(f"{name}.destroy();")

            if method.return_type is not None:
                success = (
                    f"{self.lift_owned(method.return_type, 'out_return')}"
                    f'.unwrap_or_else(|e| panic!("{where} returned an invalid value: {{}}", e))'
                )
            else:
                success = "()"
            with w.block("match status.code {", "}"):
                if method.throws is not None:
                    w.emit(f"CALL_SUCCESS => Ok({success}),")
                    w.emit(
                        f"CALL_ERROR => Err(lift_owned(status.error_buf, read_{self.codec(method.throws)})"
                        f'.unwrap_or_else(|e| panic!("{where} raised an invalid error: {{}}", e))),'
                    )
                else:
                    w.emit(f"CALL_SUCCESS => {success},")
                with w.block("_ => {", "}"):
                    w.emit("let message = lift_owned(status.error_buf, read_string).unwrap_or_default();")
                    w.emit(f'panic!("callback {where} failed: {{}}", message)')

    # =========================================================================
    # Codecs
    # =========================================================================

    def _emit_codec_pair(self, w: CodeWriter, key: str, rust: str, read_body: list[str], write_body: list[str]) -> None:
        with w.block(f"pub fn read_{key}(r: &mut Reader) -> Result<{rust}, String> {{", "}"):
            w.emit_lines(read_body)
        w.blank()
        with w.block(f"pub fn write_{key}(buf: &mut Vec<u8>, v: &{rust}) {{", "}"):
            w.emit_lines(write_body)

    def _emit_item_codec(self, w: CodeWriter, name: str, rust: str, read_body: list[str], write_body: list[str]) -> None:
        key = f"type_{snake_case(name)}"
        w.emit(f"pub type FfiType{self.type_name(name)} = {rust};")
        w.blank()
        self._emit_codec_pair(w, key, rust, read_body, write_body)
        w.blank()
        w.emit(f"pub fn read_{key}_at(data: &[u8], offset: &mut usize) -> Result<{rust}, String> {{")
        with w.indented():
            w.emit(f"read_at(data, offset, read_{key})")
        w.emit("}")

    def _field_reads(self, fields) -> str:
        return ", ".join(f"{self.ident(f.name)}: read_{self.codec(f.type)}(r)?" for f in fields)

    def emit_record_codec(self, w: CodeWriter, record: Record) -> None:
        rust = f"crate::{self.type_name(record.name)}"
        fields = self._field_reads(record.fields)
        self._emit_item_codec(
            w, record.name, rust,
            [f"Ok({rust} {{ {fields} }})" if fields else f"Ok({rust} {{}})"],
            [f"write_{self.codec(f.type)}(buf, &v.{self.ident(f.name)});" for f in record.fields],
        )

    def emit_enum_codec(self, w: CodeWriter, enum: Enum) -> None:
        rust = f"crate::{self.type_name(enum.name)}"
        read = ["match read_i32(r)? {"]
        write = ["match v {"]
        for index, variant in enumerate(enum.variants, start=1):
            path = f"{rust}::{self.type_name(variant.name)}"
            if variant.fields:
                read.append(f"    {index} => Ok({path} {{ {self._field_reads(variant.fields)} }}),")
                names = ", ".join(self.ident(f.name) for f in variant.fields)
                write.append(f"    {path} {{ {names} }} => {{")
                write.append(f"        write_i32(buf, &{index});")
                write.extend(f"        write_{self.codec(f.type)}(buf, {self.ident(f.name)});" for f in variant.fields)
                write.append("    }")
            else:
                read.append(f"    {index} => Ok({path}),")
                write.append(f"    {path} => write_i32(buf, &{index}),")
        read.append(f'    other => Err(format!("invalid {enum.name} variant {{}}", other)),')
        read.append("}")
        write.append("}")
        self._emit_item_codec(w, enum.name, rust, read, write)

    def emit_object_codec(self, w: CodeWriter, obj: Object) -> None:
        handles = self._handles(obj.name)
        self._emit_item_codec(
            w, obj.name, f"Arc<{self._object_inner(obj.name)}>",
            [f"{handles}.take(read_u64(r)?)"],
            [f"write_u64(buf, &{handles}.insert(Arc::clone(v)));"],
        )

    def emit_callback_codec(self, w: CodeWriter, callback: CallbackInterface) -> None:
        cls = f"Foreign{self.type_name(callback.name)}"
        self._emit_item_codec(
            w, callback.name, cls,
            [f"Ok({cls}::from_handle(read_u64(r)?))"],
            ["write_u64(buf, &v.clone_handle());"],
        )

    def _emit_composite_codec(self, w: CodeWriter, key: str, ref: TypeRef) -> None:
        rust = self.rust_type(ref)
        if isinstance(ref, OptionalType):
            inner = self.codec(ref.inner)
            read = [f"Ok(if read_i8(r)? == 0 {{ None }} else {{ Some(read_{inner}(r)?) }})"]
            write = [
                "match v {",
                "    None => write_i8(buf, &0),",
                "    Some(inner) => {",
                "        write_i8(buf, &1);",
                f"        write_{inner}(buf, inner);",
                "    }",
                "}",
            ]
        elif isinstance(ref, SequenceType):
            inner = self.codec(ref.inner)
            read = [f"(0..read_length(r)?).map(|_| read_{inner}(r)).collect()"]
            write = [
                "write_i32(buf, &(v.len() as i32));",
                f"v.iter().for_each(|item| write_{inner}(buf, item));",
            ]
        elif isinstance(ref, MappingType):
            key_codec, value_codec = self.codec(ref.key), self.codec(ref.value)
            read = [f"(0..read_length(r)?).map(|_| -> Result<_, String> {{ Ok((read_{key_codec}(r)?, read_{value_codec}(r)?)) }}).collect()"]
            write = [
                "write_i32(buf, &(v.len() as i32));",
                "for (key, value) in v {",
                f"    write_{key_codec}(buf, key);",
                f"    write_{value_codec}(buf, value);",
                "}",
            ]
        else:
            target = f"::{ref.namespace}::ffibridge_scaffolding"
            item = f"type_{snake_case(ref.name)}"
            read = [f"r.delegate({target}::read_{item}_at)"]
            write = [f"{target}::write_{item}(buf, v);"]
        self._emit_codec_pair(w, key, rust, read, write)

    # =========================================================================
    # Runtime Symbols
    # =========================================================================

    def _emit_builtins(self, w: CodeWriter) -> None:
        w.emit("#[no_mangle]")
        with w.block(f'pub extern "C" fn {self.ffi.contract_version_symbol}() -> u32 {{', "}"):
            w.emit(str(self.ffi.contract_version))
        w.blank()
        with w.block(self._header(w, self.ffi.buffer_alloc), "}"):
            w.emit("call_with_status(call_status, || Ok(ForeignBuffer::from_vec(Vec::with_capacity(size as usize))))")
        w.blank()
        with w.block(self._header(w, self.ffi.buffer_from_bytes), "}"):
            with w.block("call_with_status(call_status, || {", "})"):
                w.emit("if bytes.len < 0 {")
                w.emit('    return Err(CallError::Unexpected("negative byte count".to_string()));')
                w.emit("}")
                w.emit("if bytes.len == 0 || bytes.data.is_null() {")
                w.emit("    return Ok(ForeignBuffer::from_vec(Vec::new()));")
                w.emit("}")
                w.emit("let slice = unsafe { std::slice::from_raw_parts(bytes.data, bytes.len as usize) };")
                w.emit("Ok(ForeignBuffer::from_vec(slice.to_vec()))")
        w.blank()
        with w.block(self._header(w, self.ffi.buffer_free), "}"):
            w.emit("call_with_status(call_status, || Ok(buf.destroy()))")
        for symbol, value in self.ffi.checksums.items():
            w.blank()
            w.emit("#[no_mangle]")
            w.emit(f'pub extern "C" fn {symbol}() -> u16 {{')
            w.emit(f"    {value}")
            w.emit("}")

    def _emit_future_family(self, w: CodeWriter, family: FutureFamily) -> None:
        value = RUST_FFI_TYPES[family.return_type] if family.return_type else "()"
        w.emit("#[no_mangle]")
        with w.block(f'pub extern "C" fn {family.poll.name}(handle: u64, continuation: ContinuationCallback, data: u64) {{', "}"):
            w.emit(f"contain(|| future_poll::<{value}>(handle, continuation, data))")
        w.blank()
        with w.block(self._header(w, family.complete), "}"):
            w.emit(f"future_complete::<{value}>(handle, call_status)")
        w.blank()
        w.emit("#[no_mangle]")
        with w.block(f'pub extern "C" fn {family.cancel.name}(handle: u64) {{', "}"):
            w.emit(f"contain(|| future_cancel::<{value}>(handle))")
        w.blank()
        w.emit("#[no_mangle]")
        with w.block(f'pub extern "C" fn {family.free.name}(handle: u64) {{', "}"):
            w.emit(f"contain(|| future_free::<{value}>(handle))")

    # =========================================================================
    # Assembly
    # =========================================================================

    def render(self) -> dict[str, str]:
        logger.debug(f"Rendering scaffolding for '{self.ir.namespace}'")
        body = CodeWriter()
        for item in self.ir.items:
            body.blank()
            if isinstance(item, Function):
                self.emit_function(body, item)
            elif isinstance(item, Object):
                self.emit_object_codec(body, item)
                body.blank()
                self.emit_object(body, item)
            elif isinstance(item, CallbackInterface):
                self.emit_callback(body, item)
                body.blank()
                self.emit_callback_codec(body, item)
            elif isinstance(item, Record):
                self.emit_record_codec(body, item)
            elif isinstance(item, Enum):
                self.emit_enum_codec(body, item)
        for family in self.ffi.futures.values():
            body.blank()
            self._emit_future_family(body, family)

        # Composite codecs may register further composites while emitting
        composites = CodeWriter()
        emitted: set[str] = set()
        while len(emitted) < len(self._codecs):
            for key in sorted(set(self._codecs) - emitted):
                composites.blank()
                self._emit_composite_codec(composites, key, self._codecs[key])
                emitted.add(key)

        w = CodeWriter()
        w.emit(f"// Generated by ffibridge from the '{self.ir.namespace}' interface. Do not edit.")
        w.emit(f"// Interface checksum: 0x{self.ir.checksum:04X}")
        w.blank()
        w.emit("#[allow(dead_code, unused_imports, unused_variables, clippy::all)]")
        with w.block("pub mod ffibridge_scaffolding {", "}"):
            w.emit_raw(SUPPORT)
            w.blank()
            self._emit_builtins(w)
            w.emit_raw(body.render())
            w.emit_raw(composites.render())
        return {self.filename: w.render()}


def emit_scaffolding(
    ir: InterfaceDescription,
    ffi: ComponentFfi,
    config: Optional[LanguageConfig] = None,
) -> dict[str, str]:
    """Render the scaffolding files for ir: relative path -> content."""
    return ScaffoldingEmitter(ir, ffi, config).render()
