"""
Compilation Driver
==================

Runs the pipeline over a single module or a whole project.

Single Module
-------------
`compile_module(path, import_table)` reads, lexes, parses and analyzes one
file against already-sealed export tables and returns a CompileResult with
either the annotated module or the diagnostics.

Project
-------
`ProjectCompiler` compiles a batch:

1. Read and parse every entry file in parallel (pure per file).
2. Resolve imports, loading imported files the batch does not name, and
   order the modules. A cycle stops the batch with no output.
3. Analyze the modules on a thread pool sized to the widest dependency
   level. Tasks are submitted in topological order; each waits for the
   export tables of its imports to be sealed, runs, then seals its own.
   Modules that import a failed module are skipped; independent modules
   still run so every fault is reported in one invocation.
4. Generate output only if every module is clean. Output files mirror the
   source tree beneath the output directory.

Example Usage
-------------
>>> options = CompilerOptions(source_root="src", target=Target.RUST)
>>> compiler = ProjectCompiler(options)
>>> compiler.build(["src"], output_dir="out")
>>> compiler.raise_if_failed()
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Union
import logging
import os

from crusty.transpiler.ast import SourceFile
from crusty.transpiler.codegen import Target, generate
from crusty.transpiler.errors import (
    CodeGenError, Diagnostic, DiagnosticCollector, ErrorKind, LexError,
    ParseError, Phase, SemanticError, SourceIOError, UnsupportedFeatureError,
)
from crusty.transpiler.parser import parse_source
from crusty.transpiler.resolver import (
    CompilationUnit, ModuleResolver, ResolutionResult, load_unit,
)
from crusty.transpiler.semantic import AnnotatedModule, analyze
from crusty.transpiler.symbols import Symbol


logger = logging.getLogger(__name__)


# =============================================================================
# Options
# =============================================================================

@dataclass
class CompilerOptions:
    """
    Settings for one compiler run.

    Attributes:
        source_root: Directory import paths are resolved against
        extension: Source file extension
        target: Output direction
        tab_width: Columns a tab advances in diagnostics
        max_errors: Diagnostic count after which the collector reports full
        jobs: Upper bound on worker threads (defaults to the CPU count)
        indent: Spaces per nesting level in generated text
    """
    source_root: Union[str, Path] = "."
    extension: str = ".crst"
    target: Target = Target.RUST
    tab_width: int = 1
    max_errors: int = 100
    jobs: Optional[int] = None
    indent: int = 4

    def __post_init__(self):
        self.source_root = Path(self.source_root)
        if isinstance(self.target, str):
            self.target = Target(self.target.lower())
        if not self.extension.startswith(".") or len(self.extension) < 2:
            raise ValueError(f"extension must look like '.crst', got {self.extension!r}")
        if self.tab_width < 1:
            raise ValueError(f"tab_width must be at least 1, got {self.tab_width}")
        if self.max_errors < 1:
            raise ValueError(f"max_errors must be at least 1, got {self.max_errors}")
        if self.jobs is None:
            self.jobs = os.cpu_count() or 1
        if self.jobs < 1:
            raise ValueError(f"jobs must be at least 1, got {self.jobs}")
        if self.indent < 0:
            raise ValueError(f"indent must not be negative, got {self.indent}")


# =============================================================================
# Results
# =============================================================================

@dataclass
class CompileResult:
    """
    Outcome of compiling one module.

    Attributes:
        name: Dotted module name
        path: Source file
        annotated: The analyzed module, when it is clean
        diagnostics: Every fault of this module
        output: Generated text, once generated
        skipped: True when analysis did not run because an import failed
    """
    name: str
    path: Path
    annotated: Optional[AnnotatedModule] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)
    output: Optional[str] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.diagnostics and not self.skipped and self.annotated is not None


def compile_module(
    path: Union[str, Path],
    import_table: Optional[Mapping[str, Mapping[str, Symbol]]] = None,
    name: Optional[str] = None,
    tab_width: int = 1,
) -> CompileResult:
    """
    Read, parse and analyze one module.

    Args:
        path: Source file
        import_table: Module name -> sealed export table of each import
        name: Dotted module name (defaults to the file stem)
        tab_width: Columns a tab advances

    Returns:
        CompileResult with the annotated module or the diagnostics
    """
    path = Path(path)
    name = name or path.stem
    unit = load_unit(name, path, tab_width)
    if unit.tree is None:
        return CompileResult(name, path, diagnostics=list(unit.diagnostics))

    result = analyze(unit.tree, name, import_table or {}, unit.source_lines)
    return CompileResult(name, path, annotated=result.annotated, diagnostics=list(result.diagnostics))


# =============================================================================
# Project Compiler
# =============================================================================

class ProjectCompiler:
    """
    Compiles a batch of modules with one shared diagnostic collector.

    Attributes:
        options: Run settings
        collector: Every diagnostic of the batch, in report order
        results: Per-module results, in topological order
        resolution: The resolved import graph of the last run
    """

    def __init__(self, options: Optional[CompilerOptions] = None):
        self.options = options or CompilerOptions()
        self.resolver = ModuleResolver(self.options.source_root, self.options.extension, loader=self._load)
        self.collector = DiagnosticCollector(self.options.max_errors)
        self.results: Dict[str, CompileResult] = {}
        self.resolution: Optional[ResolutionResult] = None

    def _load(self, name: str, path: Path) -> CompilationUnit:
        return load_unit(name, path, self.options.tab_width)

    # =========================================================================
    # Discovery
    # =========================================================================

    def discover(self, inputs: Iterable[Union[str, Path]]) -> List[Path]:
        """
        Expand the inputs into source files.

        Directories are searched recursively for the source extension;
        files are taken as given. The result is sorted and free of duplicates.
        """
        found = set()
        for item in inputs:
            item = Path(item)
            if item.is_dir():
                found.update(item.rglob(f"*{self.options.extension}"))
            else:
                found.add(item)
        return sorted(found)

    # =========================================================================
    # Compilation
    # =========================================================================

    def compile(self, inputs: Iterable[Union[str, Path]], emit: bool = True) -> Dict[str, CompileResult]:
        """
        Compile every module reachable from `inputs`.

        Args:
            inputs: Files and directories
            emit: Generate output text when the batch is clean

        Returns:
            Module name -> CompileResult
        """
        self.results = {}
        paths = self.discover(inputs)
        names = [self.resolver.module_name_for(p) for p in paths]
        logger.debug(f"Compiling {len(paths)} files from {self.options.source_root}")

        workers = max(1, min(self.options.jobs, len(paths) or 1))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            units = list(pool.map(self._load, names, paths))

        self.resolution = resolution = self.resolver.resolve(units)
        if resolution.cycle is not None:
            self.collector.extend(resolution.diagnostics)
            for name, unit in resolution.units.items():
                self.results[name] = CompileResult(name, unit.path, diagnostics=list(unit.diagnostics))
                self.collector.extend(unit.diagnostics)
            logger.warning(f"Import cycle, nothing compiled: {' -> '.join(resolution.cycle)}")
            return self.results

        self._analyze_all(resolution)

        if emit:
            if self.collector.has_errors():
                logger.info("Errors found; code generation withheld for the whole batch")
            else:
                self._generate_all()
        return self.results

    def _analyze_all(self, resolution: ResolutionResult) -> None:
        units = resolution.units
        width = max(1, min(self.options.jobs, resolution.frontier_width))
        logger.debug(f"Analyzing {len(resolution.order)} modules on {width} workers "
                     f"({len(resolution.levels)} levels)")

        with ThreadPoolExecutor(max_workers=width) as pool:
            futures = {
                name: pool.submit(self._analyze_unit, units[name], units)
                for name in resolution.order
            }
            for name in resolution.order:
                result = futures[name].result()
                self.results[name] = result
                self.collector.extend(result.diagnostics)

    def _analyze_unit(self, unit: CompilationUnit, units: Mapping[str, CompilationUnit]) -> CompileResult:
        """Analyze one module once its imports are sealed; always seals it."""
        exports: Dict[str, Symbol] = {}
        failed = True
        try:
            if unit.tree is None:
                return CompileResult(unit.name, unit.path, diagnostics=list(unit.diagnostics))

            for dependency in unit.module.imports:
                units[dependency].module.wait_sealed()

            blocked = [d for d in unit.module.imports if units[d].module.failed]
            if blocked:
                logger.info(f"Skipping {unit.name}: imports failed module(s) {', '.join(blocked)}")
                return CompileResult(unit.name, unit.path, diagnostics=list(unit.diagnostics), skipped=True)

            import_table = {d: units[d].module.exports for d in unit.module.imports}
            result = analyze(unit.tree, unit.name, import_table, unit.source_lines)

            # unresolved imports were already reported by the resolver
            diagnostics = list(unit.diagnostics)
            if unit.diagnostics:
                diagnostics.extend(d for d in result.diagnostics if d.kind != ErrorKind.UNRESOLVED_IMPORT)
            else:
                diagnostics.extend(result.diagnostics)

            exports = result.exports
            failed = bool(diagnostics)
            logger.debug(f"Analyzed {unit.name}: {len(diagnostics)} diagnostics")
            return CompileResult(
                unit.name,
                unit.path,
                annotated=result.module if not failed else None,
                diagnostics=diagnostics,
            )
        finally:
            unit.module.seal(exports, failed)

    def _generate_all(self) -> None:
        for name, result in self.results.items():
            if result.annotated is None:
                continue
            generated = generate(result.annotated, self.options.target, self.options.indent)
            if generated.error is not None:
                result.diagnostics.append(generated.error)
                self.collector.add(generated.error)
            else:
                result.output = generated.text

    # =========================================================================
    # Output
    # =========================================================================

    def output_path(self, name: str, output_dir: Union[str, Path]) -> Path:
        """Output file for a module, mirroring its place under the source root."""
        parts = name.split(".")
        return Path(output_dir).joinpath(*parts).with_suffix(self.options.target.extension)

    def write_outputs(self, output_dir: Union[str, Path]) -> List[Path]:
        """Write every generated module beneath `output_dir`."""
        written = []
        for name, result in self.results.items():
            if result.output is None:
                continue
            path = self.output_path(name, output_dir)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(result.output, encoding="utf-8")
            except OSError as e:
                self.collector.extend(SourceIOError(str(path), e.strerror or str(e)).diagnostics)
                continue
            written.append(path)
            logger.debug(f"Wrote {path}")
        return written

    def build(self, inputs: Iterable[Union[str, Path]], output_dir: Optional[Union[str, Path]] = None) -> Dict[str, CompileResult]:
        """Compile, then write the outputs if `output_dir` is given."""
        results = self.compile(inputs)
        if output_dir is not None and not self.collector.has_errors():
            self.write_outputs(output_dir)
        return results

    @property
    def failed(self) -> bool:
        return self.collector.has_errors()

    def raise_if_failed(self) -> None:
        """Raise CompilationFailed with the full report if anything failed."""
        self.collector.raise_if_errors()


# =============================================================================
# Convenience Function
# =============================================================================

def transpile_source(
    source: str,
    target: Target = Target.RUST,
    filename: str = "<input>",
    module_name: str = "main",
    indent: int = 4,
) -> str:
    """
    Translate one self-contained module held in a string.

    The Rust direction analyzes the module first; the Crusty direction only
    needs a parse.

    Raises:
        LexError, ParseError, UnsupportedFeatureError: The source is malformed
        SemanticError: The module has semantic faults (all of them attached)
        CodeGenError: Generation was refused
    """
    parsed = parse_source(source, filename)
    if parsed.error is not None:
        if parsed.error.phase == Phase.LEX:
            raise LexError([parsed.error])
        if parsed.error.kind == ErrorKind.UNSUPPORTED_FEATURE:
            raise UnsupportedFeatureError([parsed.error])
        raise ParseError([parsed.error])

    module: Union[AnnotatedModule, SourceFile] = parsed.ast
    if target == Target.RUST:
        analyzed = analyze(parsed.ast, module_name, {}, source.split("\n"))
        if not analyzed.ok:
            raise SemanticError(analyzed.diagnostics)
        module = analyzed.module

    generated = generate(module, target, indent)
    if generated.error is not None:
        raise CodeGenError(generated.error.message, generated.error.span)
    return generated.text
