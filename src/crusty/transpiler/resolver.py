"""
Module Resolver
===============

Maps `#import` directives to source files, loads the files the entry set
does not already contain and orders every module so that each one comes
after everything it imports.

Import Paths
------------
A dotted path names a file beneath the source root; the leading `crate`
segment is optional. There is no search path beyond the root.

    #import crate.utils.math     ->  <root>/utils/math.crst
    #import helpers              ->  <root>/helpers.crst

Module names are the same dotted form without `crate` ("utils.math").

Ordering
--------
The import graph is checked for cycles first. A cycle fails the whole
resolution with the complete chain of participants, for example
`import cycle detected: a -> b -> a`, and no module is ordered. Otherwise
the modules are grouped into topological levels: level 0 imports nothing,
level N imports only modules from lower levels. Modules within one level
are independent and may be analyzed in parallel.

Example Usage
-------------
>>> resolver = ModuleResolver("project/src")
>>> result = resolver.resolve([load_unit("main", Path("project/src/main.crst"))])
>>> result.order
['utils.math', 'main']
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union
import logging

from crusty.errors import Span
from crusty.transpiler.ast import SourceFile, Use
from crusty.transpiler.errors import (
    Diagnostic, ErrorKind, ImportCycleError, Phase, SourceIOError,
)
from crusty.transpiler.parser import parse_source
from crusty.transpiler.semantic import module_for_path
from crusty.transpiler.symbols import Module


logger = logging.getLogger(__name__)


# =============================================================================
# Compilation Unit
# =============================================================================

@dataclass
class CompilationUnit:
    """
    One source file on its way through the pipeline.

    Attributes:
        name: Dotted module name
        path: File the module is read from
        source: Source text, once read
        tree: Parsed tree, or None after a fault
        diagnostics: Faults of this module (io, lex, parse, resolve)
        module: Import-graph node with the sealed export table
    """
    name: str
    path: Path
    source: Optional[str] = None
    tree: Optional[SourceFile] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)
    module: Module = field(init=False, repr=False)

    def __post_init__(self):
        self.path = Path(self.path)
        self.module = Module(self.name, self.path)

    @property
    def ok(self) -> bool:
        return not self.diagnostics and self.tree is not None

    @property
    def source_lines(self) -> List[str]:
        return self.source.split("\n") if self.source is not None else []

    def uses(self) -> List[Use]:
        """The `#import` items of the module, in source order."""
        if self.tree is None:
            return []
        return [item for item in self.tree.items if isinstance(item, Use)]


def load_unit(name: str, path: Union[str, Path], tab_width: int = 1) -> CompilationUnit:
    """
    Read and parse one source file.

    I/O, lexical and syntactic faults are recorded on the unit rather than
    raised.
    """
    unit = CompilationUnit(name, path)
    try:
        unit.source = unit.path.read_text(encoding="utf-8").replace("\r\n", "\n")
    except (OSError, UnicodeDecodeError) as e:
        reason = e.strerror if isinstance(e, OSError) and e.strerror else str(e)
        unit.diagnostics.extend(SourceIOError(str(unit.path), reason).diagnostics)
        return unit

    result = parse_source(unit.source, str(unit.path), tab_width)
    if result.error is not None:
        unit.diagnostics.append(result.error)
    else:
        unit.tree = result.ast
        logger.debug(f"Parsed {unit.path}: {len(unit.tree.items)} items")
    return unit


# =============================================================================
# Graph Algorithms
# =============================================================================

def find_cycle(graph: Mapping[str, Sequence[str]]) -> Optional[List[str]]:
    """
    Return the modules of one import cycle, in import order, or None.

    The search is depth first over the names in sorted order, so the same
    graph always reports the same cycle.
    """
    visiting: List[str] = []
    done = set()

    def visit(name: str) -> Optional[List[str]]:
        visiting.append(name)
        for dependency in graph.get(name, ()):
            if dependency in visiting:
                return visiting[visiting.index(dependency):]
            if dependency not in done:
                cycle = visit(dependency)
                if cycle is not None:
                    return cycle
        visiting.pop()
        done.add(name)
        return None

    for name in sorted(graph):
        if name not in done:
            cycle = visit(name)
            if cycle is not None:
                return list(cycle)
    return None


def topological_levels(graph: Mapping[str, Sequence[str]]) -> List[List[str]]:
    """
    Group an acyclic graph into dependency levels.

    Level 0 holds modules with no imports; a module's level is one more
    than the highest level among its imports. Names are sorted within a
    level.
    """
    levels: Dict[str, int] = {}

    def level_of(name: str) -> int:
        if name not in levels:
            deps = [d for d in graph.get(name, ()) if d in graph]
            levels[name] = 1 + max((level_of(d) for d in deps), default=-1)
        return levels[name]

    for name in graph:
        level_of(name)

    grouped: List[List[str]] = [[] for _ in range(max(levels.values(), default=-1) + 1)]
    for name, level in levels.items():
        grouped[level].append(name)
    return [sorted(names) for names in grouped]


# =============================================================================
# Resolution Result
# =============================================================================

@dataclass
class ResolutionResult:
    """
    Outcome of resolving a batch.

    Attributes:
        units: Every module, by name (entries plus loaded imports)
        order: Module names, each after all of its imports; empty on a cycle
        levels: The same names grouped by dependency level
        diagnostics: Resolution faults (unresolved imports, the cycle)
        cycle: Participants of the import cycle, if there is one
    """
    units: Dict[str, CompilationUnit] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)
    levels: List[List[str]] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    cycle: Optional[List[str]] = None

    @property
    def ok(self) -> bool:
        return self.cycle is None and not self.diagnostics

    @property
    def frontier_width(self) -> int:
        """Largest number of modules that can be analyzed at once."""
        return max((len(level) for level in self.levels), default=0)


# =============================================================================
# Module Resolver
# =============================================================================

class ModuleResolver:
    """
    Builds and orders the import graph of a batch.

    Attributes:
        source_root: Directory import paths are relative to
        extension: Source file extension, with the dot
    """

    def __init__(
        self,
        source_root: Union[str, Path],
        extension: str = ".crst",
        loader: Optional[Callable[[str, Path], CompilationUnit]] = None,
    ):
        self.source_root = Path(source_root)
        self.extension = extension
        self.loader = loader or load_unit

    def module_name_for(self, path: Union[str, Path]) -> str:
        """Dotted module name of a file beneath the source root."""
        path = Path(path)
        try:
            relative = path.resolve().relative_to(self.source_root.resolve())
        except ValueError:
            relative = Path(path.name)
        return ".".join(relative.with_suffix("").parts)

    def path_for_import(self, import_path: Union[str, Sequence[str]]) -> Path:
        """File named by a dotted import path (`crate.a.b` -> `<root>/a/b.crst`)."""
        segments = import_path.split(".") if isinstance(import_path, str) else list(import_path)
        name = module_for_path(segments)
        return self.source_root.joinpath(*name.split(".")).with_suffix(self.extension)

    def resolve(self, entries: Iterable[CompilationUnit]) -> ResolutionResult:
        """
        Resolve every import reachable from `entries`.

        Imported modules that are not among the entries are loaded with the
        resolver's loader. An import naming no file is reported on the
        importing module.
        """
        result = ResolutionResult()
        for unit in entries:
            result.units[unit.name] = unit

        pending = list(result.units.values())
        while pending:
            unit = pending.pop(0)
            for use in unit.uses():
                name = module_for_path(use.path)
                if name not in result.units:
                    path = self.path_for_import(use.path)
                    if not path.is_file():
                        diagnostic = Diagnostic(
                            Phase.RESOLVE,
                            ErrorKind.UNRESOLVED_IMPORT,
                            f"unresolved import `{use.dotted}`",
                            use.span,
                            hint=f"expected a file at `{path}`",
                        ).with_source(unit.source_lines)
                        unit.diagnostics.append(diagnostic)
                        result.diagnostics.append(diagnostic)
                        continue
                    logger.debug(f"Loading imported module {name} from {path}")
                    loaded = self.loader(name, path)
                    result.units[name] = loaded
                    pending.append(loaded)
                unit.module.add_import(name)

        graph = {name: list(unit.module.imports) for name, unit in result.units.items()}
        cycle = find_cycle(graph)
        if cycle is not None:
            span = self._import_span(result.units[cycle[0]], cycle[1 % len(cycle)])
            error = ImportCycleError(cycle, span)
            result.cycle = error.participants
            result.diagnostics.extend(error.diagnostics)
            logger.debug(f"Import cycle: {' -> '.join(cycle)}")
            return result

        result.levels = topological_levels(graph)
        result.order = [name for level in result.levels for name in level]
        logger.debug(f"Module order: {result.order} ({len(result.levels)} levels)")
        return result

    def _import_span(self, unit: CompilationUnit, target: str) -> Span:
        for use in unit.uses():
            if module_for_path(use.path) == target:
                return use.span
        return Span(filename=str(unit.path))
