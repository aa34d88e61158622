"""
Crusty Transpiler Pipeline
==========================

Pipeline
--------
    Source -> Lexer -> Parser -> Resolver -> Semantic Analyzer -> Code Generator

- lexer: tokens with exact 1-indexed spans, fail-fast
- parser: memoized packrat parser producing the neutral AST, fail-fast
- resolver: maps `#import` paths to files, orders modules, finds cycles
- semantic: scopes, nominal types and mutability, collects every fault
- codegen: Rust and Crusty serializers over the same AST
- compiler: single-module and parallel project drivers

Usage
-----
>>> from crusty.transpiler import parse_source, analyze, generate, Target
>>> tree = parse_source("static int twice(int x) { return x * 2; }").ast
>>> print(generate(analyze(tree).module, Target.RUST).text)
fn twice(x: i32) -> i32 {
    x * 2
}
"""

# =============================================================================
# Public API Imports
# =============================================================================

from crusty.transpiler.codegen import (
    CrustyGenerator,
    GenerateResult,
    RustGenerator,
    Target,
    generate,
)
from crusty.transpiler.compiler import (
    CompileResult,
    CompilerOptions,
    ProjectCompiler,
    compile_module,
    transpile_source,
)
from crusty.transpiler.errors import (
    BackendInvocationError,
    CodeGenError,
    CompilationFailed,
    Diagnostic,
    DiagnosticCollector,
    ErrorKind,
    ImportCycleError,
    LexError,
    ParseError,
    Phase,
    ResolutionError,
    SemanticError,
    SourceIOError,
    TranspileError,
    UnsupportedFeatureError,
)
from crusty.transpiler.lexer import LexResult, tokenize
from crusty.transpiler.parser import ParseResult, parse, parse_source
from crusty.transpiler.pretty import format_source
from crusty.transpiler.resolver import ModuleResolver, ResolutionResult
from crusty.transpiler.semantic import AnnotatedModule, SemanticResult, analyze

__all__ = [
    # Phases
    "tokenize",
    "parse",
    "parse_source",
    "analyze",
    "generate",
    "format_source",
    # Results
    "LexResult",
    "ParseResult",
    "SemanticResult",
    "AnnotatedModule",
    "GenerateResult",
    "CompileResult",
    "ResolutionResult",
    # Drivers
    "CompilerOptions",
    "ProjectCompiler",
    "ModuleResolver",
    "compile_module",
    "transpile_source",
    # Generators
    "Target",
    "RustGenerator",
    "CrustyGenerator",
    # Diagnostics and errors
    "Diagnostic",
    "DiagnosticCollector",
    "Phase",
    "ErrorKind",
    "TranspileError",
    "LexError",
    "ParseError",
    "UnsupportedFeatureError",
    "ResolutionError",
    "ImportCycleError",
    "SemanticError",
    "CodeGenError",
    "SourceIOError",
    "BackendInvocationError",
    "CompilationFailed",
]
