"""
Crusty - A C-Surface Language Transpiled to Rust
================================================

This package implements the Crusty toolchain: a lexer, a packrat parser,
a module resolver, a semantic analyzer and two code generators, one
emitting Rust and one emitting canonical Crusty.

Main Components
---------------
- **transpiler**: The pipeline
    Source text -> tokens -> AST -> annotated module -> output text

- **cli**: Command-line front end (crustyc)
    Compiles files and directories, mirroring the source tree in the
    output directory

Quick Start
-----------
Translate a module held in a string:
    >>> from crusty import transpile_source
    >>> print(transpile_source("int add(int a, int b) { return a + b; }"))
    pub fn add(a: i32, b: i32) -> i32 {
        a + b
    }

Compile a project:
    >>> from crusty import CompilerOptions, ProjectCompiler
    >>> compiler = ProjectCompiler(CompilerOptions(source_root="src"))
    >>> compiler.build(["src"], output_dir="out")
    >>> compiler.raise_if_failed()

Or use the command-line tool:
    $ crustyc src -o out
"""

__version__ = "1.0.0"

# =============================================================================
# Public API Exports
# =============================================================================

from crusty.errors import CrustyError, Position, Span
from crusty.transpiler import (
    CompileResult,
    CompilerOptions,
    Diagnostic,
    Phase,
    ProjectCompiler,
    Target,
    TranspileError,
    compile_module,
    generate,
    transpile_source,
)

__all__ = [
    "__version__",
    "CrustyError",
    "Position",
    "Span",
    "CompileResult",
    "CompilerOptions",
    "Diagnostic",
    "Phase",
    "ProjectCompiler",
    "Target",
    "TranspileError",
    "compile_module",
    "generate",
    "transpile_source",
]
