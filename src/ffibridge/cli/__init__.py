"""
ffibridge Command-Line Interface
================================

The ``ffibridge`` command is a Click group with the subcommands
``generate``, ``scaffolding``, ``print-json`` and ``metadata``.
"""

__all__ = ["main"]
