"""
Symbols, Scopes and Modules
===========================

Symbol
------
A named declaration: `{name, kind, type, mutable, decl_span}`. Kinds are
var, const, func, struct, enum and typedef. Enum tags are const symbols
whose type is the enum.

Scope Arena
-----------
Scopes live in one flat list. Each scope refers to its parent by index,
never by an owning reference. Entering a block pushes a scope; leaving it
truncates the arena back to that index, which discards every child scope
in one step.

    arena = ScopeArena()
    module = arena.push(None, "module")
    block = arena.push(module, "block")
    arena.declare(block, symbol)
    arena.lookup(block, "x")    # searches block, then module
    arena.pop(block)            # block and its children are gone

Module
------
One source file in the dependency graph. Its export table is sealed
exactly once, after semantic analysis, with a one-shot `threading.Event`
that importers wait on.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Dict, List, Optional
import threading

from crusty.errors import Span, NO_SPAN
from crusty.transpiler.types import Type


# =============================================================================
# Symbol
# =============================================================================

class SymbolKind(Enum):
    VAR = auto()
    CONST = auto()
    FUNC = auto()
    STRUCT = auto()
    ENUM = auto()
    TYPEDEF = auto()


@dataclass(frozen=True)
class Symbol:
    """
    A declared name.

    Attributes:
        name: Declared name
        kind: What the name denotes
        type: Semantic type (for typedefs, the aliased type)
        mutable: True for `var` bindings and `&var self`
        decl_span: Where the declaration is
        module: Name of the declaring module
        exported: True for module-level names visible to importers
        is_extern: True for functions declared in an `extern` block
    """
    name: str
    kind: SymbolKind
    type: Type
    mutable: bool = False
    decl_span: Span = NO_SPAN
    module: str = ""
    exported: bool = False
    is_extern: bool = False

    @property
    def is_enum_tag(self) -> bool:
        return self.kind == SymbolKind.CONST and self.type.is_enum and self.name in self.type.tags

    @property
    def is_type(self) -> bool:
        return self.kind in (SymbolKind.STRUCT, SymbolKind.ENUM, SymbolKind.TYPEDEF)


# =============================================================================
# Scope Arena
# =============================================================================

@dataclass
class Scope:
    """
    One scope level.

    Attributes:
        parent: Index of the enclosing scope, or None at the root
        kind: "import", "module", "function" or "block"
        symbols: Names declared directly in this scope
    """
    parent: Optional[int]
    kind: str
    symbols: Dict[str, Symbol] = field(default_factory=dict)


class ScopeArena:
    """Flat store of scopes addressed by index."""

    def __init__(self):
        self._scopes: List[Scope] = []

    def __len__(self) -> int:
        return len(self._scopes)

    def push(self, parent: Optional[int], kind: str = "block") -> int:
        """Create a child scope of `parent` and return its index."""
        self._scopes.append(Scope(parent, kind))
        return len(self._scopes) - 1

    def pop(self, index: int) -> None:
        """Discard scope `index` and every scope created after it."""
        del self._scopes[index:]

    def scope(self, index: int) -> Scope:
        return self._scopes[index]

    def declare(self, index: int, symbol: Symbol) -> Optional[Symbol]:
        """
        Add `symbol` to scope `index`.

        Returns:
            The symbol already holding that name in the same scope (the
            new one is not added), or None on success
        """
        symbols = self._scopes[index].symbols
        existing = symbols.get(symbol.name)
        if existing is not None:
            return existing
        symbols[symbol.name] = symbol
        return None

    def lookup_local(self, index: int, name: str) -> Optional[Symbol]:
        return self._scopes[index].symbols.get(name)

    def lookup(self, index: Optional[int], name: str) -> Optional[Symbol]:
        """Find `name` in scope `index` or any ancestor."""
        while index is not None:
            scope = self._scopes[index]
            symbol = scope.symbols.get(name)
            if symbol is not None:
                return symbol
            index = scope.parent
        return None

    def visible_names(self, index: Optional[int]) -> List[str]:
        """Every name visible from scope `index`, innermost first."""
        names: List[str] = []
        while index is not None:
            scope = self._scopes[index]
            names.extend(n for n in scope.symbols if n not in names)
            index = scope.parent
        return names


# =============================================================================
# Module
# =============================================================================

@dataclass
class Module:
    """
    A source file in the import graph.

    Attributes:
        name: Dotted module name relative to the source root ("utils.math")
        path: File the module was loaded from
        imports: Names of directly imported modules, in first-import order
        exports: Sealed export table (name -> Symbol)
        failed: True when the module, or one it depends on, has errors
    """
    name: str
    path: Path
    imports: List[str] = field(default_factory=list)
    exports: Dict[str, Symbol] = field(default_factory=dict)
    failed: bool = False
    _sealed: threading.Event = field(default_factory=threading.Event, init=False, repr=False, compare=False)

    def add_import(self, name: str) -> None:
        if name not in self.imports:
            self.imports.append(name)

    @property
    def is_sealed(self) -> bool:
        return self._sealed.is_set()

    def seal(self, exports: Optional[Dict[str, Symbol]] = None, failed: bool = False) -> None:
        """
        Finalize the export table and release every waiting importer.

        Sealing happens once; later calls are ignored.
        """
        if self._sealed.is_set():
            return
        if exports is not None:
            self.exports = dict(exports)
        self.failed = failed
        self._sealed.set()

    def wait_sealed(self, timeout: Optional[float] = None) -> bool:
        """Block until the export table is sealed; False on timeout."""
        return self._sealed.wait(timeout)
