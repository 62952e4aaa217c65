"""
ffibridge Runtime
=================

Support library imported by generated Python bindings:

- **buffers**: shared ctypes structures, serialization, allocators
- **converters**: lift/lower for every interface type
- **calls**: call status handling in both directions
- **handles**: reference-counted handle table
- **futures**: asyncio bridge for native futures
- **loader**: library loading and contract verification
"""

from ffibridge.runtime.buffers import (
    CALL_CANCELLED,
    CALL_ERROR,
    CALL_SUCCESS,
    CALL_UNEXPECTED_ERROR,
    BufferReader,
    BufferScope,
    BufferWriter,
    CallStatus,
    ForeignBuffer,
    ForeignBytes,
    LibraryAllocator,
    PythonAllocator,
)
from ffibridge.runtime.calls import (
    CALLBACK_CLONE_T,
    CALLBACK_FREE_T,
    call_with_status,
    check_status,
    invoke_callback,
)
from ffibridge.runtime.converters import (
    BOOLEAN,
    BYTES,
    DURATION,
    FLOAT32,
    FLOAT64,
    INT8,
    INT16,
    INT32,
    INT64,
    STRING,
    TIMESTAMP,
    UINT8,
    UINT16,
    UINT32,
    UINT64,
    BufferConverter,
    CallbackInterfaceConverter,
    Converter,
    ErrorConverter,
    MapConverter,
    ObjectConverter,
    OptionalConverter,
    SequenceConverter,
)
from ffibridge.runtime.errors import (
    BoundaryError,
    BufferFormatError,
    BufferOwnershipError,
    CallCancelled,
    ContractMismatchError,
    HandleError,
    InternalError,
    LibraryLoadError,
)
from ffibridge.runtime.futures import (
    CONTINUATION_CALLBACK_T,
    POLL_READY,
    POLL_WAKE,
    call_async,
    pending_continuations,
)
from ffibridge.runtime.handles import HandleTable
from ffibridge.runtime.loader import (
    library_filename,
    load_library,
    register_library,
    unregister_library,
    verify_checksums,
    verify_contract_version,
)

__all__ = [
    "BOOLEAN",
    "BYTES",
    "CALL_CANCELLED",
    "CALL_ERROR",
    "CALL_SUCCESS",
    "CALL_UNEXPECTED_ERROR",
    "CALLBACK_CLONE_T",
    "CALLBACK_FREE_T",
    "CONTINUATION_CALLBACK_T",
    "DURATION",
    "FLOAT32",
    "FLOAT64",
    "INT8",
    "INT16",
    "INT32",
    "INT64",
    "POLL_READY",
    "POLL_WAKE",
    "STRING",
    "TIMESTAMP",
    "UINT8",
    "UINT16",
    "UINT32",
    "UINT64",
    "BoundaryError",
    "BufferConverter",
    "BufferFormatError",
    "BufferOwnershipError",
    "BufferReader",
    "BufferScope",
    "BufferWriter",
    "CallCancelled",
    "CallStatus",
    "CallbackInterfaceConverter",
    "ContractMismatchError",
    "Converter",
    "ErrorConverter",
    "ForeignBuffer",
    "ForeignBytes",
    "HandleError",
    "HandleTable",
    "InternalError",
    "LibraryAllocator",
    "LibraryLoadError",
    "MapConverter",
    "ObjectConverter",
    "OptionalConverter",
    "PythonAllocator",
    "SequenceConverter",
    "call_async",
    "call_with_status",
    "check_status",
    "invoke_callback",
    "library_filename",
    "load_library",
    "pending_continuations",
    "register_library",
    "unregister_library",
    "verify_checksums",
    "verify_contract_version",
]
