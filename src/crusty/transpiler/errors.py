"""
Transpiler Diagnostics and Error Hierarchy
==========================================

Every fault the pipeline reports is a `Diagnostic`: a small immutable
record tagged with the phase that produced it, a kind, a message written
in a fixed phrasing and the span it points at. The phase entry points
return diagnostics inside explicit result objects; the exception classes
below exist for callers that prefer to raise (the convenience wrappers and
the CLI).

Phases and Policies
-------------------
| Phase    | Policy                                         |
|----------|------------------------------------------------|
| lex      | fail-fast, one diagnostic per file             |
| parse    | fail-fast, one diagnostic per file             |
| resolve  | fail-fast per import graph (cycles, missing)   |
| semantic | collect every independent fault in one pass    |
| codegen  | internal errors only, never user-caused        |
| io       | fatal for the affected module                  |
| backend  | downstream compiler failure, reported verbatim |

Message Conventions
-------------------
- parse faults:      "expected X, found Y"
- undefined names:   "`name` not found in this scope"
- unsupported:       "`union` is not supported; use `struct` or `enum` instead"

Exception Hierarchy
-------------------
TranspileError (CrustyError)
├── LexError
├── ParseError
│   └── UnsupportedFeatureError
├── ResolutionError
│   └── ImportCycleError
├── SemanticError - carries the whole diagnostic list
├── CodeGenError
├── SourceIOError
├── BackendInvocationError
└── CompilationFailed - aggregate report, passed through unchanged
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from crusty.errors import CrustyError, Span


# =============================================================================
# Phase and Kind Tags
# =============================================================================

class Phase(Enum):
    """Pipeline phase that produced a diagnostic."""
    LEX = "lex"
    PARSE = "parse"
    RESOLVE = "resolve"
    SEMANTIC = "semantic"
    CODEGEN = "codegen"
    IO = "io"
    BACKEND = "backend"


class ErrorKind(Enum):
    """Fine-grained fault kind within a phase."""

    # === Lexical ===
    UNEXPECTED_CHARACTER = "UnexpectedCharacter"
    UNTERMINATED_STRING = "UnterminatedString"
    UNTERMINATED_COMMENT = "UnterminatedComment"
    INVALID_NUMBER = "InvalidNumber"

    # === Syntactic ===
    UNEXPECTED_TOKEN = "UnexpectedToken"
    EXPECTED_EXPRESSION = "ExpectedExpression"
    EXPECTED_TYPE = "ExpectedType"
    UNSUPPORTED_FEATURE = "UnsupportedFeature"

    # === Module resolution ===
    IMPORT_CYCLE = "ImportCycle"
    UNRESOLVED_IMPORT = "UnresolvedImport"

    # === Semantic ===
    UNDEFINED_VARIABLE = "UndefinedVariable"
    TYPE_MISMATCH = "TypeMismatch"
    DUPLICATE_DEFINITION = "DuplicateDefinition"
    INVALID_OPERATION = "InvalidOperation"

    # === Everything else ===
    CODEGEN = "CodeGen"
    IO = "Io"
    BACKEND_INVOCATION = "BackendInvocation"


# =============================================================================
# Diagnostic Record
# =============================================================================

@dataclass(frozen=True)
class Diagnostic:
    """
    One reported fault.

    Attributes:
        phase: Phase that produced the fault
        kind: Fault kind
        message: Human-readable message in the fixed phrasing
        span: Source region the fault points at
        hint: Optional suggestion for fixing the fault
        source_line: Text of the offending line, for the caret display
    """
    phase: Phase
    kind: ErrorKind
    message: str
    span: Span
    hint: Optional[str] = None
    source_line: Optional[str] = None

    @property
    def filename(self) -> str:
        return self.span.filename

    def with_source(self, source_lines: Sequence[str]) -> "Diagnostic":
        """Return a copy carrying the text of the line the span starts on."""
        index = self.span.start.line - 1
        if self.source_line is not None or not 0 <= index < len(source_lines):
            return self
        return replace(self, source_line=source_lines[index])

    def format(self) -> str:
        """
        Render the diagnostic for display.

            util.crst:5:12: error[semantic]: `printt` not found in this scope
                printt("Hello");
                ^
            hint: did you mean `print`?
        """
        parts = [f"{self.span}: error[{self.phase.value}]: {self.message}"]

        if self.source_line is not None:
            parts.append(f"    {self.source_line}")
            padding = " " * (4 + max(self.span.start.column - 1, 0))
            parts.append(f"{padding}^")

        if self.hint:
            parts.append(f"hint: {self.hint}")

        return "\n".join(parts)

    def __str__(self) -> str:
        return self.format()


# =============================================================================
# Fixed-Phrasing Constructors
# =============================================================================

def expected_found(
    expected: str,
    found: str,
    span: Span,
    kind: ErrorKind = ErrorKind.UNEXPECTED_TOKEN,
) -> Diagnostic:
    """Parse fault in the "expected X, found Y" phrasing."""
    return Diagnostic(Phase.PARSE, kind, f"expected {expected}, found {found}", span)


def unsupported_feature(feature: str, alternative: Optional[str], span: Span) -> Diagnostic:
    """Parse fault rejecting a construct and naming the supported alternative."""
    message = f"`{feature}` is not supported"
    if alternative:
        message += f"; use {alternative} instead"
    return Diagnostic(Phase.PARSE, ErrorKind.UNSUPPORTED_FEATURE, message, span)


def not_found(name: str, span: Span, hint: Optional[str] = None) -> Diagnostic:
    """Semantic fault for an undefined name."""
    return Diagnostic(
        Phase.SEMANTIC,
        ErrorKind.UNDEFINED_VARIABLE,
        f"`{name}` not found in this scope",
        span,
        hint=hint,
    )


def type_mismatch(expected: str, found: str, span: Span, hint: Optional[str] = None) -> Diagnostic:
    """Semantic fault for two types that must be equal."""
    return Diagnostic(
        Phase.SEMANTIC,
        ErrorKind.TYPE_MISMATCH,
        f"mismatched types: expected `{expected}`, found `{found}`",
        span,
        hint=hint,
    )


def duplicate_definition(name: str, span: Span, first: Span) -> Diagnostic:
    """Semantic fault for a name declared twice in one scope."""
    return Diagnostic(
        Phase.SEMANTIC,
        ErrorKind.DUPLICATE_DEFINITION,
        f"`{name}` is defined multiple times",
        span,
        hint=f"`{name}` was first defined at {first}",
    )


def invalid_operation(message: str, span: Span, hint: Optional[str] = None) -> Diagnostic:
    """Semantic fault for an operation the operand types or bindings forbid."""
    return Diagnostic(Phase.SEMANTIC, ErrorKind.INVALID_OPERATION, message, span, hint=hint)


# =============================================================================
# Exception Classes
# =============================================================================

class TranspileError(CrustyError):
    """
    Base exception for pipeline faults.

    Wraps one or more diagnostics; `str()` renders them all.

    Attributes:
        diagnostics: The wrapped diagnostics, in report order
    """

    def __init__(self, diagnostics: Iterable[Diagnostic]):
        self.diagnostics: List[Diagnostic] = list(diagnostics)
        super().__init__(self._format_message())

    @property
    def diagnostic(self) -> Optional[Diagnostic]:
        return self.diagnostics[0] if self.diagnostics else None

    def _format_message(self) -> str:
        return "\n\n".join(d.format() for d in self.diagnostics)


class LexError(TranspileError):
    """First lexical fault of a file (unterminated literal, bad character...)."""
    pass


class ParseError(TranspileError):
    """First syntactic fault of a file."""
    pass


class UnsupportedFeatureError(ParseError):
    """A construct the language rejects on purpose (union, goto, #include)."""
    pass


class ResolutionError(TranspileError):
    """An import could not be mapped to a module."""
    pass


class ImportCycleError(ResolutionError):
    """
    The import graph contains a cycle.

    Attributes:
        participants: Module names of the full cycle, in import order
    """

    def __init__(self, participants: Sequence[str], span: Span):
        self.participants = list(participants)
        chain = " -> ".join(self.participants + self.participants[:1])
        super().__init__([
            Diagnostic(
                Phase.RESOLVE,
                ErrorKind.IMPORT_CYCLE,
                f"import cycle detected: {chain}",
                span,
                hint="break the cycle by moving shared declarations into a separate module",
            )
        ])


class SemanticError(TranspileError):
    """Every semantic fault found in one module."""
    pass


class CodeGenError(TranspileError):
    """
    Generation refused or failed.

    On valid, clean input the generators never raise this; it signals an
    internal problem or a caller handing over a module that still carries
    semantic errors.
    """

    def __init__(self, message: str, span: Optional[Span] = None):
        self.message = message
        super().__init__([
            Diagnostic(Phase.CODEGEN, ErrorKind.CODEGEN, message, span or Span())
        ])


class SourceIOError(TranspileError):
    """A module's file could not be read or an output could not be written."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__([
            Diagnostic(Phase.IO, ErrorKind.IO, f"cannot access `{path}`: {reason}", Span(filename=path))
        ])


class BackendInvocationError(TranspileError):
    """
    A downstream compiler run failed.

    The downstream tool's output is reported verbatim together with its
    exit status. Reserved for invoking a Rust backend (rustc or cargo) on
    generated output; the transpiler itself never runs one, so nothing in
    this package raises it.
    """

    def __init__(self, command: str, exit_status: int, output: str):
        self.command = command
        self.exit_status = exit_status
        self.output = output
        super().__init__([
            Diagnostic(
                Phase.BACKEND,
                ErrorKind.BACKEND_INVOCATION,
                f"`{command}` exited with status {exit_status}\n{output}",
                Span(filename=command),
            )
        ])


class CompilationFailed(TranspileError):
    """
    Aggregate error carrying a pre-formatted report.

    Raised once after a batch, so the message is the collector's report
    and is not reformatted.
    """

    def __init__(self, report: str, diagnostics: Iterable[Diagnostic] = ()):
        self.report = report
        super().__init__(diagnostics)

    def _format_message(self) -> str:
        return self.report


# =============================================================================
# Diagnostic Collector
# =============================================================================

class DiagnosticCollector:
    """
    Collects diagnostics for batch reporting.

    Example:
        collector = DiagnosticCollector(max_errors=100)
        collector.extend(result.diagnostics)
        if collector.has_errors():
            print(collector.report())
    """

    def __init__(self, max_errors: int = 100):
        """
        Initialize the collector.

        Args:
            max_errors: Number of errors after which should_stop() is True
        """
        self.errors: List[Diagnostic] = []
        self.max_errors = max_errors

    def add(self, diagnostic: Diagnostic) -> None:
        """Add one diagnostic."""
        self.errors.append(diagnostic)

    def extend(self, diagnostics: Iterable[Diagnostic]) -> None:
        """Add several diagnostics, keeping their order."""
        self.errors.extend(diagnostics)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def should_stop(self) -> bool:
        return len(self.errors) >= self.max_errors

    def error_count(self) -> int:
        return len(self.errors)

    def report(self) -> str:
        """Format every collected diagnostic followed by a summary line."""
        lines = []
        for diagnostic in self.errors:
            lines.append(diagnostic.format())
            lines.append("")

        word = "error" if len(self.errors) == 1 else "errors"
        lines.append(f"{len(self.errors)} {word}")
        return "\n".join(lines)

    def clear(self) -> None:
        self.errors.clear()

    def raise_if_errors(self) -> None:
        """Raise CompilationFailed if anything was collected."""
        if self.has_errors():
            raise CompilationFailed(self.report(), self.errors)
