"""
Handle Table
============

Process-wide registry mapping opaque integer handles to live objects
with a strong reference count.

Objects implemented on the Python side (callback interfaces) are handed
to native code as handles from one of these tables. Cloning a handle
increments its count, releasing decrements it, and the destroy callback
fires exactly once when the count reaches zero.

Handles start at 1; 0 is never issued and means "absent".
"""

import logging
import threading
from typing import Any, Callable, Optional

from ffibridge.runtime.errors import HandleError

logger = logging.getLogger(__name__)


class HandleTable:
    """
    Thread-safe reference-counted handle registry.

    Args:
        on_destroy: Called with the object when its last reference is
                    released, outside the table lock
    """

    def __init__(self, on_destroy: Optional[Callable[[Any], None]] = None):
        self._entries: dict[int, list] = {}   # handle -> [object, count]
        self._next_handle = 1
        self._lock = threading.Lock()
        self._on_destroy = on_destroy

    def insert(self, obj: Any) -> int:
        """Register an object with a count of one and return its handle."""
        with self._lock:
            handle = self._next_handle
            self._next_handle += 1
            self._entries[handle] = [obj, 1]
        return handle

    def get(self, handle: int) -> Any:
        with self._lock:
            entry = self._entries.get(handle)
            if entry is None:
                raise HandleError(f"unknown handle {handle}")
            return entry[0]

    def clone(self, handle: int) -> int:
        """Add a strong reference; the handle value itself is shared."""
        with self._lock:
            entry = self._entries.get(handle)
            if entry is None:
                raise HandleError(f"cannot clone unknown handle {handle}")
            entry[1] += 1
        return handle

    def release(self, handle: int) -> bool:
        """
        Drop one strong reference.

        Returns:
            True if this release destroyed the object

        Raises:
            HandleError: If the handle is unknown or already destroyed
        """
        with self._lock:
            entry = self._entries.get(handle)
            if entry is None:
                raise HandleError(f"cannot release unknown handle {handle}")
            entry[1] -= 1
            if entry[1] > 0:
                return False
            del self._entries[handle]
            obj = entry[0]

        if self._on_destroy is not None:
            self._on_destroy(obj)
        return True

    def pop(self, handle: int, default: Any = None) -> Any:
        """Remove a handle regardless of its count, without the destroy callback."""
        with self._lock:
            entry = self._entries.pop(handle, None)
        return default if entry is None else entry[0]

    def count(self, handle: int) -> int:
        """Current strong count, 0 when the handle is not live."""
        with self._lock:
            entry = self._entries.get(handle)
            return entry[1] if entry else 0

    def __contains__(self, handle: int) -> bool:
        with self._lock:
            return handle in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
