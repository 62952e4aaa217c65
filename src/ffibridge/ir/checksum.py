"""
Interface Checksums
===================

16-bit checksums that let generated bindings detect scaffolding built
from a different interface. Both sides compute them from the same
InterfaceDescription, so equal inputs always give equal checksums.

Algorithm
---------
64-bit FNV-1a over the canonical (compact, key-sorted) JSON rendering,
folded to 16 bits by XOR-ing its four 16-bit lanes.
"""

from typing import Final, Iterable

from ffibridge.ir.model import Item
from ffibridge.ir.serialize import canonical_json, item_to_json


FNV_OFFSET_BASIS: Final[int] = 0xCBF29CE484222325
FNV_PRIME: Final[int] = 0x100000001B3
MASK_64: Final[int] = 0xFFFFFFFFFFFFFFFF


def fnv1a_64(data: bytes) -> int:
    """Compute 64-bit FNV-1a."""
    value = FNV_OFFSET_BASIS
    for byte in data:
        value ^= byte
        value = (value * FNV_PRIME) & MASK_64
    return value


def fold16(value: int) -> int:
    """Fold a 64-bit value to 16 bits."""
    result = 0
    while value:
        result ^= value & 0xFFFF
        value >>= 16
    return result


def checksum_of(data) -> int:
    """Checksum of any JSON-compatible value."""
    return fold16(fnv1a_64(canonical_json(data).encode("utf-8")))


def interface_checksum(namespace: str, items: Iterable[Item]) -> int:
    """Checksum over the namespace and all of its items, in order, docstrings excluded."""
    return checksum_of({"namespace": namespace, "items": [_without_docs(item_to_json(i)) for i in items]})


def _without_docs(data):
    if isinstance(data, dict):
        return {k: _without_docs(v) for k, v in data.items() if k != "docstring"}
    if isinstance(data, list):
        return [_without_docs(v) for v in data]
    return data


def callable_checksum(namespace: str, owner: str, callable_json: dict) -> int:
    """
    Checksum of one exported callable, keyed by its owner item.

    Docstrings are excluded.
    """
    payload = {"namespace": namespace, "owner": owner, "callable": _without_docs(callable_json)}
    return checksum_of(payload)
