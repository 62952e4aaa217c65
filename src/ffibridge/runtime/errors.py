"""
Runtime Errors
==============

Failures raised by generated Python bindings at the boundary, as opposed
to the generator's own FfiBridgeError hierarchy.

BoundaryError (base)
├── InternalError - the native side faulted or reported an unexpected error
├── CallCancelled - the native side reported a cancelled call
├── HandleError - unknown or already released handle
├── BufferOwnershipError - double free or foreign buffer
├── BufferFormatError - serialized value is truncated or has trailing bytes
├── ContractMismatchError - library built from a different interface
└── LibraryLoadError - native library cannot be found
"""


class BoundaryError(Exception):
    """Base for every runtime failure at the native boundary."""
    pass


class InternalError(BoundaryError):
    """
    The native side failed in a way the interface does not declare.

    Raised for native panics and faults the scaffolding contained, with
    the native message when one was provided.
    """
    pass


class CallCancelled(BoundaryError):
    pass


class HandleError(BoundaryError):
    pass


class BufferOwnershipError(BoundaryError):
    """A buffer was freed twice, or freed by an allocator that never owned it."""
    pass


class BufferFormatError(BoundaryError):
    pass


class ContractMismatchError(BoundaryError):
    """The loaded library does not match the bindings' contract version or checksums."""
    pass


class LibraryLoadError(BoundaryError):
    pass
