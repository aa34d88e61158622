"""
Crusty Command-Line Interface
=============================

This package provides the command-line tool for the Crusty toolchain:

- **crustyc**: Crusty to Rust (and Crusty to canonical Crusty) transpiler

The tool is implemented as a Click-based CLI application with
comprehensive help and error reporting.
"""

__all__ = ["crustyc"]
