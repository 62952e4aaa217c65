"""
Async Bridge
============

Drives a native future from asyncio.

Protocol
--------
1. The async ABI call returns a future handle.
2. ``poll(handle, continuation, token)`` asks native code to make
   progress; native code later invokes ``continuation(token, code)``
   from any thread, with 0 (READY) or 1 (WAKE: poll again).
3. On READY, ``complete(handle, status)`` returns the result or reports
   the error through the status.
4. ``free(handle)`` always follows.

Cancelling the awaiting task calls ``cancel(handle)`` and then
``free(handle)`` without waiting; native code may finish in the
background and its result is discarded.

The continuation only schedules delivery on the event loop, so a result
is never delivered before the binding call has returned control to the
loop, and each poll's continuation is delivered at most once.
"""

import asyncio
import ctypes
import logging
from typing import Any, Callable

from ffibridge.runtime.calls import call_with_status
from ffibridge.runtime.handles import HandleTable

logger = logging.getLogger(__name__)

POLL_READY = 0
POLL_WAKE = 1

CONTINUATION_CALLBACK_T = ctypes.CFUNCTYPE(None, ctypes.c_uint64, ctypes.c_int8)

# token -> (loop, waiter) for every outstanding poll
_continuations = HandleTable()


def _deliver(waiter: asyncio.Future, code: int) -> None:
    if not waiter.done():
        waiter.set_result(code)


def _on_continuation(token: int, code: int) -> None:
    entry = _continuations.pop(token)
    if entry is None:
        # Already delivered, or the awaiting task was cancelled
        return
    loop, waiter = entry
    try:
        loop.call_soon_threadsafe(_deliver, waiter, code)
    except RuntimeError:
        logger.debug(f"Dropping continuation {token}: event loop is closed")


continuation_callback = CONTINUATION_CALLBACK_T(_on_continuation)


def pending_continuations() -> int:
    """Number of polls still waiting for their continuation."""
    return len(_continuations)


async def call_async(
    allocator,
    future: int,
    poll: Callable,
    complete: Callable,
    free: Callable,
    cancel: Callable,
    lift: Callable[[Any], Any],
    error_converter=None,
) -> Any:
    """
    Await a native future.

    Args:
        allocator: Allocator that frees buffers the native side returns
        future: Handle returned by the async ABI call
        poll, complete, free, cancel: The future family functions
        lift: Converts the raw result of complete()
        error_converter: Converter of the declared error, or None

    Returns:
        The lifted result
    """
    loop = asyncio.get_running_loop()
    try:
        while True:
            waiter = loop.create_future()
            token = _continuations.insert((loop, waiter))
            try:
                poll(future, continuation_callback, token)
                code = await waiter
            finally:
                _continuations.pop(token)
            if code == POLL_READY:
                break
        return lift(call_with_status(allocator, error_converter, complete, future))
    except asyncio.CancelledError:
        logger.debug(f"Cancelling native future {future}")
        cancel(future)
        raise
    finally:
        free(future)
