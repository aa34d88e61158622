"""
Crusty Error Base and Source Positions
======================================

This module defines the root of the exception hierarchy for the Crusty
transpiler together with the immutable source-position model that every
phase uses to point at code.

Exception Hierarchy
-------------------
CrustyError (base)
└── TranspileError (see crusty.transpiler.errors)
    ├── LexError
    ├── ParseError
    │   └── UnsupportedFeatureError
    ├── ResolutionError
    │   └── ImportCycleError
    ├── SemanticError
    ├── CodeGenError
    ├── SourceIOError
    ├── BackendInvocationError
    └── CompilationFailed (aggregate report)

Positions
---------
Lines and columns are 1-indexed. A Span runs from the position of its
first character to the position just past its last character, so a
one-character token at 3:7 has the span 3:7-3:8.

Error messages follow this format:
    filename:line:column: error[phase]: description
        source_line_text
        ^ (pointer to error location)
    hint: suggestion for fixing (when available)
"""

from dataclasses import dataclass


# =============================================================================
# Base Exception Class
# =============================================================================

class CrustyError(Exception):
    """
    Base exception for all Crusty errors.

    Callers can catch everything the toolchain raises with one clause:

        try:
            transpile_source(text)
        except CrustyError as e:
            print(f"Error: {e}")
    """
    pass


# =============================================================================
# Source Location Tracking
# =============================================================================

@dataclass(frozen=True, order=True)
class Position:
    """
    A 1-indexed line/column pair.

    Attributes:
        line: Line number (1-indexed)
        column: Column number (1-indexed)
    """
    line: int = 1
    column: int = 1

    def __str__(self) -> str:
        return f"{self.line}:{self.column}"


@dataclass(frozen=True)
class Span:
    """
    The region of a source file covered by a token or AST node.

    Spans are assigned when a token or node is built and never change
    afterwards (the dataclass is frozen).

    Attributes:
        start: Position of the first character
        end: Position just past the last character
        filename: Source file name ("<input>" for string input)
    """
    start: Position = Position()
    end: Position = Position()
    filename: str = "<input>"

    @property
    def line(self) -> int:
        return self.start.line

    @property
    def column(self) -> int:
        return self.start.column

    def to(self, other: "Span") -> "Span":
        """Return a span from the start of this one to the end of `other`."""
        return Span(self.start, other.end, self.filename)

    def __str__(self) -> str:
        return f"{self.filename}:{self.start.line}:{self.start.column}"


NO_SPAN = Span()
