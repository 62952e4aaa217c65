"""
Call Status Handling
====================

Synchronous calls in both directions.

``call_with_status`` calls a native ABI function with a trailing
CallStatus pointer and turns a non-success status into a Python
exception. ``invoke_callback`` runs a Python callback-interface method
on behalf of native code and reports its outcome through the status the
native caller passed in.

Status Codes
------------
| Code | Meaning           | error_buf holds           | Raised as            |
|------|-------------------|---------------------------|----------------------|
| 0    | success           | nothing                   |                      |
| 1    | declared error    | serialized error value    | the declared error   |
| 2    | unexpected error  | message string            | InternalError        |
| 3    | cancelled         | nothing                   | CallCancelled        |
"""

import ctypes
import logging
from typing import Any, Callable, Optional

from ffibridge.runtime.buffers import (
    CALL_CANCELLED,
    CALL_ERROR,
    CALL_SUCCESS,
    CALL_UNEXPECTED_ERROR,
    CallStatus,
)
from ffibridge.runtime.converters import STRING
from ffibridge.runtime.errors import CallCancelled, InternalError

logger = logging.getLogger(__name__)

# Vtable slots every callback interface starts with
CALLBACK_FREE_T = ctypes.CFUNCTYPE(None, ctypes.c_uint64)
CALLBACK_CLONE_T = ctypes.CFUNCTYPE(ctypes.c_uint64, ctypes.c_uint64)


def check_status(status: CallStatus, allocator, error_converter=None) -> None:
    """
    Raise the exception a call status describes.

    Error payload buffers are freed here, as part of lifting them.
    """
    code = status.code
    if code == CALL_SUCCESS:
        return

    if code == CALL_ERROR:
        if error_converter is None:
            if status.error_buf.data:
                allocator.free(status.error_buf)
            raise InternalError("native code returned a declared error for a call that declares none")
        raise error_converter.lift(status.error_buf, allocator)

    if code == CALL_UNEXPECTED_ERROR:
        if status.error_buf.data:
            message = STRING.lift(status.error_buf, allocator)
        else:
            message = "native code failed without a message"
        raise InternalError(message)

    if code == CALL_CANCELLED:
        raise CallCancelled("the native call was cancelled")

    raise InternalError(f"invalid call status code {code}")


def call_with_status(allocator, error_converter, fn: Callable, *args, scope=None) -> Any:
    """
    Call an ABI function with a trailing CallStatus pointer.

    Args:
        allocator: Allocator that frees buffers the callee returns
        error_converter: Converter of the declared error, or None
        fn: The ABI function
        *args: Already lowered arguments
        scope: BufferScope the arguments were lowered into; committed
               before the native function is entered

    Returns:
        The raw ABI return value, still to be lifted

    Raises:
        The declared error, InternalError or CallCancelled
    """
    status = CallStatus()
    if scope is not None:
        scope.commit()
    result = fn(*args, ctypes.pointer(status))
    check_status(status, allocator, error_converter)
    return result


def invoke_callback(
    status_ptr,
    allocator,
    make_call: Callable[[], Any],
    write_return: Optional[Callable[[Any], None]] = None,
    error_converter=None,
) -> None:
    """
    Run a callback-interface method for native code.

    Args:
        status_ptr: Pointer to the CallStatus the native caller owns
        allocator: Native allocator for error payloads handed back
        make_call: Performs the Python call with lifted arguments
        write_return: Stores the lowered result in the out parameter
        error_converter: Converter of the declared error; its
                         ``error_type`` selects which exceptions count as
                         declared errors
    """
    status = status_ptr.contents
    try:
        result = make_call()
    except Exception as e:
        error_type = getattr(error_converter, "error_type", None)
        if error_type is not None and isinstance(e, error_type):
            status.code = CALL_ERROR
            status.error_buf = error_converter.lower(e, allocator)
        else:
            logger.debug(f"Callback raised unexpected {type(e).__name__}: {e}")
            status.code = CALL_UNEXPECTED_ERROR
            status.error_buf = STRING.lower(f"{type(e).__name__}: {e}", allocator)
        return

    # Lowering the result can fail as well; nothing may unwind into native code
    try:
        if write_return is not None:
            write_return(result)
    except Exception as e:
        logger.debug(f"Callback result could not be returned: {type(e).__name__}: {e}")
        status.code = CALL_UNEXPECTED_ERROR
        status.error_buf = STRING.lower(f"{type(e).__name__}: {e}", allocator)
        return
    status.code = CALL_SUCCESS
