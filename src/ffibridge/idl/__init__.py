"""
Interface-Definition Language
=============================

Textual front end: ``.idl`` files are tokenized, parsed into a syntax
tree, then lowered to the raw items the IR Builder merges.

    >>> from ffibridge.idl import load_idl
    >>> batch = load_idl('namespace math { i32 add(i32 a, i32 b); };')
    >>> batch.namespace, [item.name for item in batch.items]
    ('math', ['add'])
"""

from ffibridge.idl.lexer import IdlLexer, IdlToken, IdlTokenType
from ffibridge.idl.lowering import IdlLowering, load_idl
from ffibridge.idl.parser import IdlParser, parse_idl

__all__ = [
    "IdlLexer",
    "IdlLowering",
    "IdlParser",
    "IdlToken",
    "IdlTokenType",
    "load_idl",
    "parse_idl",
]
