"""
Library Loading
===============

Locates the native library generated bindings talk to and checks that it
was built from the same interface.

A library object registered with ``register_library`` takes precedence
over the file system, which lets tests and embedders supply their own.
"""

import ctypes
import ctypes.util
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from ffibridge.runtime.errors import ContractMismatchError, LibraryLoadError

logger = logging.getLogger(__name__)

_registry: dict[str, Any] = {}


def register_library(namespace: str, lib: Any) -> None:
    """Use lib for every binding module of namespace loaded afterwards."""
    _registry[namespace] = lib


def unregister_library(namespace: str) -> None:
    _registry.pop(namespace, None)


def library_filename(name: str) -> str:
    """Platform file name of a shared library."""
    if sys.platform == "win32":
        return f"{name}.dll"
    if sys.platform == "darwin":
        return f"lib{name}.dylib"
    return f"lib{name}.so"


def load_library(
    namespace: str,
    cdylib_name: Optional[str] = None,
    search_dir: Optional[str] = None,
) -> Any:
    """
    Load the native library for a namespace.

    Args:
        namespace: Interface namespace
        cdylib_name: Library base name (default: the namespace)
        search_dir: Directory checked before the system search path,
                    normally the directory of the bindings module

    Raises:
        LibraryLoadError: If the library cannot be found
    """
    if namespace in _registry:
        return _registry[namespace]

    name = cdylib_name or namespace
    if search_dir is not None:
        candidate = Path(search_dir) / library_filename(name)
        if candidate.is_file():
            logger.debug(f"Loading {candidate}")
            return ctypes.CDLL(str(candidate))

    found = ctypes.util.find_library(name)
    if found is None:
        raise LibraryLoadError(
            f"cannot find native library '{library_filename(name)}' for namespace '{namespace}'"
        )
    logger.debug(f"Loading {found}")
    return ctypes.CDLL(found)


def verify_contract_version(lib: Any, prefix: str, expected: int) -> None:
    fn = getattr(lib, f"{prefix}contract_version")
    fn.argtypes = []
    fn.restype = ctypes.c_uint32
    actual = fn()
    if actual != expected:
        raise ContractMismatchError(
            f"library speaks contract version {actual}, bindings expect {expected}"
        )


def verify_checksums(lib: Any, checksums: dict[str, int]) -> None:
    """
    Compare each exported callable's checksum with the bindings' value.

    Raises:
        ContractMismatchError: Listing every mismatching symbol
    """
    mismatched = []
    for symbol, expected in checksums.items():
        fn = getattr(lib, symbol)
        fn.argtypes = []
        fn.restype = ctypes.c_uint16
        if fn() != expected:
            mismatched.append(symbol)
    if mismatched:
        raise ContractMismatchError(
            "library was built from a different interface; checksum mismatch for "
            + ", ".join(mismatched)
        )
