# =============================================================================
# test_runtime_futures.py - Async Bridge Tests
# =============================================================================
# Tests for call_async(): driving a native future from asyncio.
#
# Test coverage includes:
#   - Futures ready on first poll
#   - WAKE followed by another poll
#   - Continuations fired from another thread
#   - Cancellation (cancel, then free, late continuation ignored)
#   - Errors reported by complete()
# =============================================================================

import asyncio
import threading

import pytest

from ffibridge.runtime import (
    CALL_UNEXPECTED_ERROR,
    POLL_READY,
    POLL_WAKE,
    STRING,
    InternalError,
    PythonAllocator,
    call_async,
    pending_continuations,
)


class ScriptedFuture:
    """
    A native future family in plain Python.

    Args:
        codes: Poll results to report, in order; None leaves the poll
               pending until ``fire`` is called
        result: Value complete() returns
    """

    def __init__(self, codes, result=0):
        self.codes = list(codes)
        self.result = result
        self.events: list[str] = []
        self.pending = None
        self.allocator = PythonAllocator()
        self.fail_with = None

    def poll(self, handle, continuation, token):
        self.events.append("poll")
        code = self.codes.pop(0)
        if code is None:
            self.pending = (continuation, token)
        else:
            continuation(token, code)

    def fire(self, code=POLL_READY):
        continuation, token = self.pending
        continuation(token, code)

    def complete(self, handle, status_ptr):
        self.events.append("complete")
        if self.fail_with is not None:
            status = status_ptr.contents
            status.code = CALL_UNEXPECTED_ERROR
            status.error_buf = self.allocator.alloc(STRING.lower_bytes(self.fail_with))
            return 0
        return self.result

    def cancel(self, handle):
        self.events.append("cancel")

    def free(self, handle):
        self.events.append("free")

    def call(self, lift=lambda value: value):
        return call_async(
            self.allocator, 1, self.poll, self.complete, self.free, self.cancel, lift,
        )


class TestCompletion:
    """Futures that run to completion."""

    @pytest.mark.asyncio
    async def test_ready_on_first_poll(self):
        future = ScriptedFuture([POLL_READY], result=21)
        assert await future.call(lambda value: value * 2) == 42
        assert future.events == ["poll", "complete", "free"]

    @pytest.mark.asyncio
    async def test_wake_polls_again(self):
        future = ScriptedFuture([POLL_WAKE, POLL_WAKE, POLL_READY], result=5)
        assert await future.call() == 5
        assert future.events == ["poll", "poll", "poll", "complete", "free"]

    @pytest.mark.asyncio
    async def test_continuation_from_another_thread(self):
        future = ScriptedFuture([None], result=9)
        baseline = pending_continuations()
        task = asyncio.create_task(future.call())
        await asyncio.sleep(0)
        assert pending_continuations() == baseline + 1

        thread = threading.Thread(target=future.fire)
        thread.start()
        thread.join()

        assert await task == 9
        assert pending_continuations() == baseline

    @pytest.mark.asyncio
    async def test_error_from_complete(self):
        future = ScriptedFuture([POLL_READY])
        future.fail_with = "panicked: overflow"
        with pytest.raises(InternalError, match="panicked: overflow"):
            await future.call()
        assert future.events[-1] == "free"
        assert future.allocator.live_count == 0


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_then_free(self):
        future = ScriptedFuture([None])
        baseline = pending_continuations()
        task = asyncio.create_task(future.call())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert future.events == ["poll", "cancel", "free"]
        assert pending_continuations() == baseline

    @pytest.mark.asyncio
    async def test_late_continuation_ignored(self):
        future = ScriptedFuture([None])
        task = asyncio.create_task(future.call())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        future.fire()
        await asyncio.sleep(0)
        assert "complete" not in future.events
