"""
Crusty Semantic Analyzer
========================

Checks one parsed module against the export tables of its imports and
produces an annotated module: every expression gets a semantic type and
every name reference gets the Symbol it resolves to. Unlike the lexer and
parser, the analyzer does not stop at the first fault. An ill-typed
expression is given the ERROR type, which matches every other type, so
the enclosing expressions are not reported again and one run surfaces
every independent fault.

Passes
------
1. Register every top-level declaration in the module scope
   (DuplicateDefinition on collisions).
2. Merge the export tables of the imported modules into a read-only
   import scope, the parent of the module scope.
3. Resolve declared types: typedef targets, struct fields and methods,
   function signatures and constant types.
4. Walk constant initializers and every function body with a scope
   stack: a Block pushes a scope, leaving it pops.

Rules
-----
- `let` and `const` bindings are immutable, `var` and C-style
  declarations are mutable, parameters are immutable unless written
  `var Type name`.
- Binary operators need operands of exactly the same type. Integer and
  float literals adapt to the integer or float type expected of them.
- Conditions must be `bool`. Comparisons yield `bool`.
- Calls check the argument count and each argument's type.
- Assigning through an immutable binding (or `&self`) is an
  InvalidOperation, as is calling a `&var self` method on one.
- `&x` borrows shared, `&var x` mutably; a mutable borrow needs a
  mutable place. `*p` needs a reference. Field access, indexing and
  method calls see through references, and writing through a `&T` is an
  InvalidOperation. Struct fields cannot hold references.
- `break`/`continue` must be inside a loop; a label must name an
  enclosing labeled loop.
- A non-void function must end in a statement that returns.

Annotations
-----------
Results are kept out of the tree, in dictionaries keyed by `node_id`:

    result = analyze(tree, "main", import_table)
    t = result.module.annotations.type_of(expr)
    sym = result.module.annotations.symbol_of(identifier)
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence
import difflib
import logging

from crusty.errors import Span
from crusty.transpiler import types as T
from crusty.transpiler.ast import (
    ArrayLiteral, ArrayTypeRef, Binary, BinaryOp, Block, Break, Call, Cast,
    Const, ConstDecl, Continue, Enum, ExprStmt, Expression, Extern,
    FieldAccess, For, Function, Grouped, Identifier, If, Index, LetDecl,
    Literal, LiteralKind, MacroDefinition, MacroInvocation, MethodCall,
    Node, Receiver, ReferenceTypeRef, Return, Sizeof, SourceFile,
    Statement, Struct, StructInit, Ternary, TypeDef, TypeRef, Unary,
    UnaryOp, Use, VarDecl, While, strip_groups,
)
from crusty.transpiler.errors import (
    Diagnostic, ErrorKind, Phase, duplicate_definition, invalid_operation,
    not_found, type_mismatch,
)
from crusty.transpiler.macros import is_builtin_macro, is_diverging_macro
from crusty.transpiler.symbols import Scope, ScopeArena, Symbol, SymbolKind
from crusty.transpiler.types import Type


logger = logging.getLogger(__name__)


# =============================================================================
# Annotated Output
# =============================================================================

@dataclass
class Annotations:
    """
    Side tables attached to a tree by node id.

    Attributes:
        types: Semantic type of each expression and declaration node
        symbols: Symbol each identifier, call and declaration resolves to
    """
    types: Dict[int, Type] = field(default_factory=dict)
    symbols: Dict[int, Symbol] = field(default_factory=dict)

    def set_type(self, node: Node, node_type: Type) -> Type:
        self.types[node.node_id] = node_type
        return node_type

    def type_of(self, node: Node) -> Optional[Type]:
        return self.types.get(node.node_id)

    def set_symbol(self, node: Node, symbol: Symbol) -> None:
        self.symbols[node.node_id] = symbol

    def symbol_of(self, node: Node) -> Optional[Symbol]:
        return self.symbols.get(node.node_id)

    def has_error_types(self) -> bool:
        """True if any node was typed as ERROR."""
        return any(t.is_error for t in self.types.values())


@dataclass
class AnnotatedModule:
    """
    A module's tree with its semantic results.

    Attributes:
        tree: The parsed SourceFile
        name: Dotted module name
        annotations: Types and symbols keyed by node id
        exports: Names visible to importers
        diagnostics: Faults found while analyzing (empty when clean)
    """
    tree: SourceFile
    name: str
    annotations: Annotations
    exports: Dict[str, Symbol] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.diagnostics and not self.annotations.has_error_types()


@dataclass
class SemanticResult:
    """
    Outcome of analyzing one module.

    `annotated` is set only when the module is clean; `module` always holds
    what was computed, so a caller can still seal a failed module's exports.
    """
    module: AnnotatedModule
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.diagnostics

    @property
    def annotated(self) -> Optional[AnnotatedModule]:
        return self.module if self.ok else None

    @property
    def exports(self) -> Dict[str, Symbol]:
        return self.module.exports


def module_for_path(path: Sequence[str]) -> str:
    """Module name named by an import path (`crate.a.b` -> `a.b`)."""
    segments = list(path)
    if segments and segments[0] == "crate":
        segments = segments[1:]
    return ".".join(segments)


# =============================================================================
# Semantic Analyzer
# =============================================================================

class SemanticAnalyzer:
    """
    Type and binding checker for one module.

    Usage:
        analyzer = SemanticAnalyzer("main", import_table)
        result = analyzer.analyze(tree)
        for diagnostic in result.diagnostics:
            print(diagnostic)

    Attributes:
        module_name: Dotted name of the module being checked
        import_table: Module name -> sealed export table, for every import
        diagnostics: Faults found so far, in discovery order
    """

    def __init__(
        self,
        module_name: str = "main",
        import_table: Optional[Mapping[str, Mapping[str, Symbol]]] = None,
        source_lines: Optional[List[str]] = None,
    ):
        self.module_name = module_name
        self.import_table = import_table or {}
        self.source_lines = source_lines or []
        self.diagnostics: List[Diagnostic] = []
        self.annotations = Annotations()

        self.arena = ScopeArena()
        self.import_scope = self.arena.push(None, "import")
        self.module_scope = self.arena.push(self.import_scope, "module")

        self._macros: Dict[str, MacroDefinition] = {}
        self._named_types: Dict[tuple, Type] = {}
        self._pending_aliases: Dict[str, TypeDef] = {}
        self._pending_structs: Dict[str, Struct] = {}
        self._signatures: Dict[int, Type] = {}
        self._resolving_aliases: List[str] = []
        self._loops: List[Optional[str]] = []
        self._return_type: Type = T.VOID

    # =========================================================================
    # Entry Point
    # =========================================================================

    def analyze(self, tree: SourceFile) -> SemanticResult:
        """Run every pass over `tree` and collect the results."""
        logger.debug(f"Analyzing module {self.module_name}: {len(tree.items)} items")

        self._register_items(tree)
        self._merge_imports(tree)
        self._resolve_declarations(tree)

        for item in tree.items:
            if isinstance(item, Function):
                self._check_function(item, None)
            elif isinstance(item, Struct):
                self_type = self._lookup_type(item.name)
                for method in item.methods:
                    self._check_function(method, self_type)
            elif isinstance(item, Const):
                self._check_const_item(item)

        exports = self._collect_exports()
        diagnostics = [d.with_source(self.source_lines) for d in self.diagnostics]
        module = AnnotatedModule(tree, self.module_name, self.annotations, exports, diagnostics)

        logger.debug(
            f"Module {self.module_name}: {len(exports)} exports, {len(diagnostics)} diagnostics"
        )
        return SemanticResult(module, diagnostics)

    # =========================================================================
    # Diagnostics and Scope Helpers
    # =========================================================================

    def _report(self, diagnostic: Diagnostic) -> Type:
        self.diagnostics.append(diagnostic)
        return T.ERROR

    def _declare(self, scope: int, symbol: Symbol, span: Span) -> bool:
        existing = self.arena.declare(scope, symbol)
        if existing is not None:
            self._report(duplicate_definition(symbol.name, span, existing.decl_span))
            return False
        return True

    def _replace_symbol(self, name: str, **changes) -> Symbol:
        symbols = self.arena.scope(self.module_scope).symbols
        symbols[name] = replace(symbols[name], **changes)
        return symbols[name]

    def _lookup_type(self, name: str) -> Type:
        symbol = self.arena.lookup(self.module_scope, name)
        return symbol.type if symbol is not None else T.ERROR

    def _full(self, t: Type) -> Type:
        """The complete struct type for a (possibly early) reference to it."""
        if t.is_struct or t.is_enum:
            return self._named_types.get((t.module, t.name), t)
        return t

    def _suggest(self, scope: int, name: str) -> Optional[str]:
        matches = difflib.get_close_matches(name, self.arena.visible_names(scope), n=1)
        return f"did you mean `{matches[0]}`?" if matches else None

    # =========================================================================
    # Pass 1: Registration
    # =========================================================================

    def _register_items(self, tree: SourceFile) -> None:
        scope = self.module_scope
        module = self.module_name

        for item in tree.items:
            if isinstance(item, Function):
                self._declare(scope, Symbol(
                    item.name, SymbolKind.FUNC, T.ERROR,
                    decl_span=item.span, module=module, exported=not item.is_static,
                ), item.span)

            elif isinstance(item, Struct):
                struct = T.struct_type(item.name, module)
                self._named_types[(module, item.name)] = struct
                self._pending_structs.setdefault(item.name, item)
                self._declare(scope, Symbol(
                    item.name, SymbolKind.STRUCT, struct,
                    decl_span=item.span, module=module, exported=not item.is_static,
                ), item.span)

            elif isinstance(item, Enum):
                tags = tuple(v.name for v in item.variants)
                enum = T.enum_type(item.name, module, tags)
                self._named_types[(module, item.name)] = enum
                self._declare(scope, Symbol(
                    item.name, SymbolKind.ENUM, enum,
                    decl_span=item.span, module=module, exported=not item.is_static,
                ), item.span)
                for variant in item.variants:
                    self._declare(scope, Symbol(
                        variant.name, SymbolKind.CONST, enum,
                        decl_span=variant.span, module=module, exported=not item.is_static,
                    ), variant.span)

            elif isinstance(item, TypeDef):
                self._pending_aliases[item.name] = item
                self._declare(scope, Symbol(
                    item.name, SymbolKind.TYPEDEF, T.ERROR,
                    decl_span=item.span, module=module, exported=not item.is_static,
                ), item.span)

            elif isinstance(item, Const):
                self._declare(scope, Symbol(
                    item.name, SymbolKind.CONST, T.ERROR,
                    decl_span=item.span, module=module, exported=not item.is_static,
                ), item.span)

            elif isinstance(item, Extern):
                for proto in item.functions:
                    self._declare(scope, Symbol(
                        proto.name, SymbolKind.FUNC, T.ERROR,
                        decl_span=proto.span, module=module, is_extern=True,
                    ), proto.span)

            elif isinstance(item, MacroDefinition):
                first = self._macros.get(item.name)
                if first is not None:
                    self._report(duplicate_definition(item.name, item.span, first.span))
                else:
                    self._macros[item.name] = item

            elif not isinstance(item, Use):
                raise TypeError(f"unexpected item {item.__class__.__name__}")

    # =========================================================================
    # Pass 2: Imports
    # =========================================================================

    def _merge_imports(self, tree: SourceFile) -> None:
        seen: Dict[str, Use] = {}
        for item in tree.items:
            if not isinstance(item, Use):
                continue
            name = module_for_path(item.path)
            if name in seen:
                continue
            seen[name] = item

            exports = self.import_table.get(name)
            if exports is None:
                self._report(Diagnostic(
                    Phase.RESOLVE,
                    ErrorKind.UNRESOLVED_IMPORT,
                    f"unresolved import `{item.dotted}`",
                    item.span,
                    hint=f"no module `{name}` under the source root",
                ))
                continue

            for symbol in exports.values():
                if symbol.kind in (SymbolKind.STRUCT, SymbolKind.ENUM):
                    self._named_types[(symbol.type.module, symbol.type.name)] = symbol.type
                existing = self.arena.lookup_local(self.import_scope, symbol.name)
                if existing is not None and existing != symbol:
                    self._report(duplicate_definition(symbol.name, item.span, existing.decl_span))
                elif existing is None:
                    self.arena.declare(self.import_scope, symbol)

        logger.debug(f"Module {self.module_name}: imported {len(seen)} modules")

    # =========================================================================
    # Pass 3: Declared Types
    # =========================================================================

    def resolve_type(self, ref: TypeRef, scope: Optional[int] = None) -> Type:
        """Map a written type to its semantic type; ERROR (reported) if unknown."""
        scope = self.module_scope if scope is None else scope

        if isinstance(ref, ArrayTypeRef):
            element = self.resolve_type(ref.element, scope)
            if element.is_error:
                return T.ERROR
            return T.array_type(element, ref.size)

        if isinstance(ref, ReferenceTypeRef):
            element = self.resolve_type(ref.element, scope)
            if element.is_error:
                return T.ERROR
            return T.reference_type(element, ref.mutable)

        if ref.primitive:
            return T.PRIMITIVES[ref.name]

        symbol = self.arena.lookup(scope, ref.name)
        if symbol is None:
            return self._report(not_found(ref.name, ref.span, self._suggest(scope, ref.name)))
        if symbol.kind == SymbolKind.TYPEDEF:
            return self._resolve_alias(symbol)
        if symbol.kind == SymbolKind.STRUCT and symbol.module == self.module_name \
                and symbol.name in self._pending_structs:
            self._resolve_struct(self._pending_structs[symbol.name])
        if symbol.kind in (SymbolKind.STRUCT, SymbolKind.ENUM):
            return self._full(symbol.type)
        return self._report(invalid_operation(
            f"expected type, found {symbol.kind.name.lower()} `{ref.name}`", ref.span
        ))

    def _resolve_alias(self, symbol: Symbol) -> Type:
        item = self._pending_aliases.get(symbol.name)
        if item is None or symbol.module != self.module_name:
            return symbol.type
        if symbol.name in self._resolving_aliases:
            return self._report(invalid_operation(
                f"type alias `{symbol.name}` refers to itself", item.span
            ))

        self._resolving_aliases.append(symbol.name)
        target = self.resolve_type(item.target)
        self._resolving_aliases.pop()

        del self._pending_aliases[symbol.name]
        self._replace_symbol(symbol.name, type=target)
        return target

    def _resolve_declarations(self, tree: SourceFile) -> None:
        for item in tree.items:
            if isinstance(item, TypeDef):
                symbol = self.arena.lookup_local(self.module_scope, item.name)
                if symbol is not None and symbol.decl_span == item.span:
                    self._resolve_alias(symbol)

        for item in tree.items:
            if isinstance(item, Struct):
                self._resolve_struct(item)

        for item in tree.items:
            if isinstance(item, Function):
                self._replace_if_owner(item.name, item.span, type=self._signature(item))
            elif isinstance(item, Extern):
                for proto in item.functions:
                    self._replace_if_owner(proto.name, proto.span, type=self._signature(proto))
            elif isinstance(item, Const):
                const_type = self.resolve_type(item.type)
                self.annotations.set_type(item, const_type)
                self._replace_if_owner(item.name, item.span, type=const_type)

    def _replace_if_owner(self, name: str, span: Span, **changes) -> None:
        symbol = self.arena.lookup_local(self.module_scope, name)
        if symbol is not None and symbol.decl_span == span:
            self._replace_symbol(name, **changes)

    def _signature(self, func) -> Type:
        """Function type of a function, method or extern prototype, resolved once."""
        signature = self._signatures.get(func.node_id)
        if signature is None:
            param_types = tuple(self.resolve_type(p.type) for p in func.params)
            signature = T.function_type(param_types, self.resolve_type(func.return_type))
            self._signatures[func.node_id] = signature
        return signature

    def _resolve_struct(self, item: Struct) -> None:
        """Fill in a struct's fields and methods, resolving field structs first."""
        if self._pending_structs.get(item.name) is not item:
            return
        del self._pending_structs[item.name]

        fields = []
        seen: Dict[str, Span] = {}
        for struct_field in item.fields:
            if struct_field.name in seen:
                self._report(duplicate_definition(struct_field.name, struct_field.span, seen[struct_field.name]))
                continue
            seen[struct_field.name] = struct_field.span
            field_type = self.resolve_type(struct_field.type)
            if field_type.is_reference:
                self._report(invalid_operation(
                    f"field `{struct_field.name}` cannot hold a reference",
                    struct_field.span,
                    hint=f"store the `{field_type.element}` value itself",
                ))
                field_type = T.ERROR
            fields.append((struct_field.name, field_type))

        methods = []
        for method in item.methods:
            if method.name in seen:
                self._report(duplicate_definition(method.name, method.span, seen[method.name]))
                continue
            seen[method.name] = method.span
            receiver = None
            if method.receiver is not None:
                receiver = method.receiver == Receiver.MUTABLE
            methods.append((method.name, self._signature(method), receiver))

        full = T.struct_type(item.name, self.module_name, tuple(fields), tuple(methods))
        self._named_types[(self.module_name, item.name)] = full
        self._replace_if_owner(item.name, item.span, type=full)

    def _collect_exports(self) -> Dict[str, Symbol]:
        scope: Scope = self.arena.scope(self.module_scope)
        return {name: symbol for name, symbol in scope.symbols.items() if symbol.exported}

    # =========================================================================
    # Pass 4: Bodies
    # =========================================================================

    def _check_const_item(self, item: Const) -> None:
        const_type = self.annotations.type_of(item) or T.ERROR
        value_type = self.check_expr(item.value, self.module_scope, const_type)
        if not T.types_match(const_type, value_type):
            self._report(type_mismatch(str(const_type), str(value_type), item.value.span))

    def _check_function(self, func: Function, self_type: Optional[Type]) -> None:
        scope = self.arena.push(self.module_scope, "function")
        signature = self._signature(func)
        self.annotations.set_type(func, signature)

        if func.receiver is not None and self_type is not None:
            self.arena.declare(scope, Symbol(
                "self", SymbolKind.VAR, self._full(self_type),
                mutable=func.receiver == Receiver.MUTABLE,
                decl_span=func.span, module=self.module_name,
            ))

        for param, param_type in zip(func.params, signature.params):
            symbol = Symbol(
                param.name, SymbolKind.VAR, param_type,
                mutable=param.mutable, decl_span=param.span, module=self.module_name,
            )
            self.annotations.set_type(param, param_type)
            self.annotations.set_symbol(param, symbol)
            self._declare(scope, symbol, param.span)

        self._return_type = signature.result
        self._loops = []
        for statement in func.body.statements:
            self.check_statement(statement, scope)

        if not signature.result.is_void and not signature.result.is_error \
                and not self._returns(func.body):
            self._report(type_mismatch(
                str(signature.result), "void", func.span,
                hint=f"function `{func.name}` must end with a `return` of a value",
            ))

        self.arena.pop(scope)

    def _returns(self, statement: Statement) -> bool:
        """True if control cannot fall off the end of `statement`."""
        if isinstance(statement, Return):
            return True
        if isinstance(statement, Block):
            return bool(statement.statements) and self._returns(statement.statements[-1])
        if isinstance(statement, If):
            return statement.otherwise is not None and self._returns(statement.then) \
                and self._returns(statement.otherwise)
        if isinstance(statement, ExprStmt):
            expr = strip_groups(statement.expression)
            return isinstance(expr, MacroInvocation) and is_diverging_macro(expr.name)
        return False

    # =========================================================================
    # Statements
    # =========================================================================

    def check_statement(self, statement: Statement, scope: int) -> None:
        method = getattr(self, f"_check_{statement.__class__.__name__}", None)
        if method is None:
            raise TypeError(f"unexpected statement {statement.__class__.__name__}")
        method(statement, scope)

    def _check_Block(self, block: Block, scope: int) -> None:
        inner = self.arena.push(scope, "block")
        for statement in block.statements:
            self.check_statement(statement, inner)
        self.arena.pop(inner)

    def _check_binding(self, decl, scope: int, kind: SymbolKind, mutable: bool) -> None:
        declared = self.resolve_type(decl.type, scope) if decl.type is not None else None

        init_type = None
        if decl.init is not None:
            init_type = self.check_expr(decl.init, scope, declared)
            if declared is not None and not T.types_match(declared, init_type):
                self._report(type_mismatch(str(declared), str(init_type), decl.init.span))

        if declared is not None:
            binding_type = declared
        elif init_type is not None:
            binding_type = init_type
        else:
            binding_type = self._report(invalid_operation(
                f"type annotations needed for `{decl.name}`",
                decl.span,
                hint="give the binding a type or an initializer",
            ))

        symbol = Symbol(
            decl.name, kind, binding_type,
            mutable=mutable, decl_span=decl.span, module=self.module_name,
        )
        self.annotations.set_type(decl, binding_type)
        self.annotations.set_symbol(decl, symbol)
        self._declare(scope, symbol, decl.span)

    def _check_LetDecl(self, decl: LetDecl, scope: int) -> None:
        self._check_binding(decl, scope, SymbolKind.VAR, mutable=False)

    def _check_VarDecl(self, decl: VarDecl, scope: int) -> None:
        self._check_binding(decl, scope, SymbolKind.VAR, mutable=True)

    def _check_ConstDecl(self, decl: ConstDecl, scope: int) -> None:
        self._check_binding(decl, scope, SymbolKind.CONST, mutable=False)

    def _check_condition(self, condition: Expression, scope: int) -> None:
        condition_type = self.check_expr(condition, scope, T.BOOL)
        if not T.types_match(T.BOOL, condition_type):
            self._report(type_mismatch("bool", str(condition_type), condition.span))

    def _check_If(self, statement: If, scope: int) -> None:
        self._check_condition(statement.condition, scope)
        self._check_Block(statement.then, scope)
        if statement.otherwise is not None:
            self.check_statement(statement.otherwise, scope)

    def _check_While(self, statement: While, scope: int) -> None:
        self._check_condition(statement.condition, scope)
        self._loops.append(statement.label)
        self._check_Block(statement.body, scope)
        self._loops.pop()

    def _check_For(self, statement: For, scope: int) -> None:
        header = self.arena.push(scope, "block")
        if statement.init is not None:
            self.check_statement(statement.init, header)
        if statement.condition is not None:
            self._check_condition(statement.condition, header)
        if statement.step is not None:
            self.check_expr(statement.step, header)

        self._loops.append(statement.label)
        self._check_Block(statement.body, header)
        self._loops.pop()
        self.arena.pop(header)

    def _check_Return(self, statement: Return, scope: int) -> None:
        expected = self._return_type
        if statement.value is None:
            if not expected.is_void and not expected.is_error:
                self._report(type_mismatch(str(expected), "void", statement.span))
            return

        value_type = self.check_expr(statement.value, scope, expected)
        if expected.is_void:
            if not value_type.is_wildcard:
                self._report(type_mismatch("void", str(value_type), statement.value.span))
        elif not T.types_match(expected, value_type):
            self._report(type_mismatch(str(expected), str(value_type), statement.value.span))

    def _check_jump(self, statement, keyword: str) -> None:
        if not self._loops:
            self._report(invalid_operation(f"`{keyword}` outside of a loop", statement.span))
        elif statement.label is not None and statement.label not in self._loops:
            self._report(not_found(statement.label, statement.span))

    def _check_Break(self, statement: Break, scope: int) -> None:
        self._check_jump(statement, "break")

    def _check_Continue(self, statement: Continue, scope: int) -> None:
        self._check_jump(statement, "continue")

    def _check_ExprStmt(self, statement: ExprStmt, scope: int) -> None:
        self.check_expr(statement.expression, scope)

    # =========================================================================
    # Expressions
    # =========================================================================

    def check_expr(self, expr: Expression, scope: int, expected: Optional[Type] = None) -> Type:
        """
        Type `expr` bottom-up and record the result.

        Args:
            expr: Expression to check
            scope: Scope index the expression is evaluated in
            expected: Type the context wants, used to type bare literals

        Returns:
            The expression's type (ERROR after a reported fault)
        """
        method = getattr(self, f"_type_{expr.__class__.__name__}", None)
        if method is None:
            raise TypeError(f"unexpected expression {expr.__class__.__name__}")
        result = method(expr, scope, expected)
        return self.annotations.set_type(expr, result)

    def _type_Literal(self, expr: Literal, scope: int, expected: Optional[Type]) -> Type:
        kind = expr.kind
        if kind == LiteralKind.INTEGER:
            return expected if expected is not None and expected.is_integer else T.I32
        if kind == LiteralKind.FLOAT:
            return expected if expected is not None and expected.is_float else T.F64
        if kind == LiteralKind.STRING:
            return T.STRING
        if kind == LiteralKind.CHAR:
            return T.CHAR
        if kind == LiteralKind.BOOL:
            return T.BOOL
        return T.OPAQUE

    def _type_Identifier(self, expr: Identifier, scope: int, expected: Optional[Type]) -> Type:
        symbol = self.arena.lookup(scope, expr.name)
        if symbol is None:
            return self._report(not_found(expr.name, expr.span, self._suggest(scope, expr.name)))
        self.annotations.set_symbol(expr, symbol)
        if symbol.is_type:
            return self._report(invalid_operation(
                f"expected value, found type `{expr.name}`", expr.span
            ))
        return self._full(symbol.type)

    def _type_Grouped(self, expr: Grouped, scope: int, expected: Optional[Type]) -> Type:
        return self.check_expr(expr.inner, scope, expected)

    def _type_Binary(self, expr: Binary, scope: int, expected: Optional[Type]) -> Type:
        op = expr.op
        if op.is_assignment:
            return self._type_assignment(expr, scope)

        if op.is_logical:
            for operand in (expr.left, expr.right):
                operand_type = self.check_expr(operand, scope, T.BOOL)
                if not T.types_match(T.BOOL, operand_type):
                    self._report(type_mismatch("bool", str(operand_type), operand.span))
            return T.BOOL

        hint = None if op.is_comparison else expected
        if op in (BinaryOp.SHL, BinaryOp.SHR):
            left = self.check_expr(expr.left, scope, hint)
            right = self.check_expr(expr.right, scope, left)
            return self._shift_result(expr, left, right)

        left, right = self._operand_types(expr.left, expr.right, scope, hint)
        if not T.types_match(left, right):
            self._report(type_mismatch(str(left), str(right), expr.right.span))
            return T.ERROR

        if op.is_comparison:
            operand = right if left.is_wildcard else left
            if not operand.is_wildcard and not _supports(op, operand):
                self._report(_bad_operator(op.value, operand, expr.span))
            return T.BOOL

        if left.is_error or right.is_error:
            return T.ERROR
        operand = right if left.is_wildcard else left
        if operand.is_wildcard:
            return operand
        if not _supports(op, operand):
            return self._report(_bad_operator(op.value, operand, expr.span))
        return operand

    def _operand_types(self, left: Expression, right: Expression, scope: int, hint: Optional[Type]) -> tuple:
        """
        Type both operands, letting a bare literal take the other side's type.
        """
        if _is_literal(left) and not _is_literal(right):
            right_type = self.check_expr(right, scope, hint)
            left_type = self.check_expr(left, scope, right_type)
        else:
            left_type = self.check_expr(left, scope, hint)
            right_type = self.check_expr(right, scope, left_type)
        return left_type, right_type

    def _shift_result(self, expr: Binary, left: Type, right: Type) -> Type:
        for operand_type in (left, right):
            if not operand_type.is_wildcard and not operand_type.is_integer:
                return self._report(_bad_operator(expr.op.value, operand_type, expr.span))
        if left.is_error or right.is_error:
            return T.ERROR
        return left

    def _type_assignment(self, expr: Binary, scope: int) -> Type:
        target_type = self.check_expr(expr.left, scope)
        value_type = self.check_expr(expr.right, scope, target_type)
        self._check_assignable(expr.left, scope, "assign to")

        base = expr.op.compound_base
        if base in (BinaryOp.SHL, BinaryOp.SHR):
            return self._shift_result(expr, target_type, value_type)
        if not T.types_match(target_type, value_type):
            self._report(type_mismatch(str(target_type), str(value_type), expr.right.span))
            return T.ERROR
        if base is not None and not target_type.is_wildcard and not _supports(base, target_type):
            return self._report(_bad_operator(expr.op.value, target_type, expr.span))
        return target_type

    def _root_symbol(self, expr: Expression, scope: int) -> Optional[Symbol]:
        """The binding an lvalue path (`a.b[i].c`) starts from."""
        expr = strip_groups(expr)
        while isinstance(expr, (FieldAccess, Index)):
            expr = strip_groups(expr.receiver)
        if isinstance(expr, Identifier):
            return self.arena.lookup(scope, expr.name)
        return None

    def _through_reference(self, place: Expression) -> Optional[Type]:
        """The reference a place expression is reached through, if any."""
        place = strip_groups(place)
        while True:
            if _is_deref(place):
                pointer = self.annotations.type_of(place.operand)
                return pointer if pointer is not None and pointer.is_reference else None
            if not isinstance(place, (FieldAccess, Index)):
                return None
            place = strip_groups(place.receiver)
            receiver_type = self.annotations.type_of(place)
            if receiver_type is not None and receiver_type.is_reference:
                return receiver_type

    def _check_assignable(self, target: Expression, scope: int, action: str) -> None:
        """Report an InvalidOperation unless `target` is a mutable place."""
        stripped = strip_groups(target)
        if not isinstance(stripped, (Identifier, FieldAccess, Index)) and not _is_deref(stripped):
            self._report(invalid_operation(f"cannot {action} this expression", target.span,
                                           hint="only variables, fields and array elements can be modified"))
            return

        reference = self._through_reference(stripped)
        if reference is not None:
            if not reference.mutable:
                self._report(invalid_operation(
                    f"cannot {action} data behind a `&` reference",
                    target.span,
                    hint="borrow it with `&var` instead",
                ))
            return

        root = self._root_symbol(stripped, scope)
        if root is None:
            base = stripped
            while isinstance(base, (FieldAccess, Index)):
                base = strip_groups(base.receiver)
            if not isinstance(base, Identifier) and not _is_deref(base):
                self._report(invalid_operation(f"cannot {action} a temporary value", target.span))
            return
        if root.kind == SymbolKind.VAR and root.mutable:
            return

        if root.name == "self":
            self._report(invalid_operation(
                f"cannot {action} `self`, as it is a `&self` reference",
                target.span,
                hint="declare the method with `&var self`",
            ))
        elif root.kind == SymbolKind.CONST:
            self._report(invalid_operation(f"cannot {action} constant `{root.name}`", target.span))
        elif root.kind != SymbolKind.VAR:
            self._report(invalid_operation(f"cannot {action} `{root.name}`", target.span))
        else:
            self._report(invalid_operation(
                f"cannot {action} immutable binding `{root.name}`",
                target.span,
                hint=f"declare `{root.name}` with `var` to make it mutable",
            ))

    def _type_Unary(self, expr: Unary, scope: int, expected: Optional[Type]) -> Type:
        op = expr.op
        if op.is_increment:
            increment = op in (UnaryOp.PRE_INC, UnaryOp.POST_INC)
            operand = self.check_expr(expr.operand, scope)
            self._check_assignable(expr.operand, scope, "increment" if increment else "decrement")
            if not operand.is_wildcard and not operand.is_integer:
                return self._report(_bad_operator("++" if increment else "--", operand, expr.span))
            return operand

        if op == UnaryOp.NOT:
            operand = self.check_expr(expr.operand, scope, T.BOOL)
            if not operand.is_wildcard and not operand.is_bool:
                return self._report(invalid_operation(
                    f"cannot apply unary operator `!` to type `{operand}`",
                    expr.span,
                    hint="compare with zero for a C-style logical not",
                ))
            return T.BOOL if not operand.is_error else T.ERROR

        if op.is_borrow:
            hint = expected.element if expected is not None and expected.is_reference else None
            operand = self.check_expr(expr.operand, scope, hint)
            if op == UnaryOp.REF_MUT:
                self._check_assignable(expr.operand, scope, "mutably borrow")
            if operand.is_error:
                return T.ERROR
            return T.reference_type(operand, op == UnaryOp.REF_MUT)

        if op == UnaryOp.DEREF:
            operand = self.check_expr(expr.operand, scope)
            if operand.is_wildcard:
                return operand
            if not operand.is_reference:
                return self._report(invalid_operation(
                    f"type `{operand}` cannot be dereferenced", expr.span
                ))
            return self._full(operand.element)

        operand = self.check_expr(expr.operand, scope, expected)
        if operand.is_wildcard:
            return operand
        if op == UnaryOp.NEG and not operand.is_signed:
            return self._report(_bad_operator("-", operand, expr.span))
        if op == UnaryOp.BIT_NOT and not operand.is_integer:
            return self._report(_bad_operator("~", operand, expr.span))
        return operand

    def _check_arguments(self, name: str, params: tuple, args: tuple, scope: int, span: Span) -> None:
        if len(params) != len(args):
            self._report(invalid_operation(
                f"this function takes {_count(len(params), 'argument')} but "
                f"{_count(len(args), 'argument')} {'was' if len(args) == 1 else 'were'} supplied",
                span,
                hint=f"`{name}` is declared with {len(params)} parameter(s)",
            ))
            for arg in args:
                self.check_expr(arg, scope)
            return

        for arg, param_type in zip(args, params):
            arg_type = self.check_expr(arg, scope, param_type)
            if not T.types_match(param_type, arg_type):
                self._report(type_mismatch(str(param_type), str(arg_type), arg.span))

    def _type_Call(self, expr: Call, scope: int, expected: Optional[Type]) -> Type:
        callee = strip_groups(expr.callee)
        name = callee.name if isinstance(callee, Identifier) else "function"

        callee_type = self.check_expr(expr.callee, scope)
        if isinstance(callee, Identifier):
            symbol = self.annotations.symbol_of(callee)
            if symbol is not None:
                self.annotations.set_symbol(expr, symbol)

        if callee_type.is_wildcard:
            for arg in expr.args:
                self.check_expr(arg, scope)
            return callee_type
        if not callee_type.is_function:
            for arg in expr.args:
                self.check_expr(arg, scope)
            return self._report(invalid_operation(
                f"`{name}` is not a function; it has type `{callee_type}`", expr.callee.span
            ))

        self._check_arguments(name, callee_type.params, expr.args, scope, expr.span)
        return callee_type.result

    def _type_MethodCall(self, expr: MethodCall, scope: int, expected: Optional[Type]) -> Type:
        receiver = strip_groups(expr.receiver)
        static_call = False
        if isinstance(receiver, Identifier):
            symbol = self.arena.lookup(scope, receiver.name)
            if symbol is not None and symbol.kind == SymbolKind.STRUCT:
                static_call = True
                self.annotations.set_symbol(receiver, symbol)
                receiver_type = self.annotations.set_type(expr.receiver, self._full(symbol.type))
                self.annotations.set_type(receiver, receiver_type)

        borrowed = None
        if not static_call:
            receiver_type = self.check_expr(expr.receiver, scope)
            if receiver_type.is_reference:
                borrowed = receiver_type
            else:
                borrowed = self._through_reference(expr.receiver)
        receiver_type = self._full(receiver_type.dereferenced())

        if receiver_type.is_wildcard:
            for arg in expr.args:
                self.check_expr(arg, scope)
            return receiver_type

        found = receiver_type.method(expr.method) if receiver_type.is_struct else None
        if found is None:
            for arg in expr.args:
                self.check_expr(arg, scope)
            return self._report(Diagnostic(
                Phase.SEMANTIC,
                ErrorKind.UNDEFINED_VARIABLE,
                f"no method named `{expr.method}` found for `{receiver_type}`",
                expr.span,
            ))

        method_type, mutable_receiver = found
        if static_call and mutable_receiver is not None:
            self._report(invalid_operation(
                f"method `{expr.method}` takes `self`; call it on a `{receiver_type}` value",
                expr.span,
            ))
        elif not static_call and mutable_receiver is None:
            self._report(invalid_operation(
                f"`{expr.method}` is an associated function, not a method",
                expr.span,
                hint=f"call it as `{receiver_type}.{expr.method}(...)`",
            ))
        elif mutable_receiver and borrowed is not None:
            if not borrowed.mutable:
                self._report(invalid_operation(
                    f"cannot call `&var self` method `{expr.method}` through a `&` reference",
                    expr.span,
                    hint="borrow it with `&var` instead",
                ))
        elif mutable_receiver:
            root = self._root_symbol(expr.receiver, scope)
            if root is not None and not (root.kind == SymbolKind.VAR and root.mutable):
                self._report(invalid_operation(
                    f"cannot call `&var self` method `{expr.method}` on immutable binding `{root.name}`",
                    expr.span,
                    hint=f"declare `{root.name}` with `var` to make it mutable",
                ))

        self._check_arguments(expr.method, method_type.params, expr.args, scope, expr.span)
        return method_type.result

    def _type_FieldAccess(self, expr: FieldAccess, scope: int, expected: Optional[Type]) -> Type:
        receiver = self._full(self.check_expr(expr.receiver, scope).dereferenced())
        if receiver.is_wildcard:
            return receiver
        field_type = receiver.field_type(expr.field_name) if receiver.is_struct else None
        if field_type is None:
            return self._report(Diagnostic(
                Phase.SEMANTIC,
                ErrorKind.UNDEFINED_VARIABLE,
                f"no field `{expr.field_name}` on type `{receiver}`",
                expr.span,
            ))
        return self._full(field_type)

    def _type_Index(self, expr: Index, scope: int, expected: Optional[Type]) -> Type:
        receiver = self.check_expr(expr.receiver, scope).dereferenced()
        index = self.check_expr(expr.index, scope, T.USIZE)
        if not index.is_wildcard and not index.is_integer:
            self._report(type_mismatch("usize", str(index), expr.index.span))
        if receiver.is_wildcard:
            return receiver
        if not receiver.is_array:
            return self._report(invalid_operation(
                f"cannot index into a value of type `{receiver}`", expr.span
            ))
        return self._full(receiver.element)

    def _type_Cast(self, expr: Cast, scope: int, expected: Optional[Type]) -> Type:
        target = self.resolve_type(expr.type, scope)
        source = self.check_expr(expr.operand, scope)
        if not T.can_cast(source, target):
            return self._report(invalid_operation(
                f"non-primitive cast: `{source}` as `{target}`", expr.span
            ))
        return target

    def _type_Ternary(self, expr: Ternary, scope: int, expected: Optional[Type]) -> Type:
        self._check_condition(expr.condition, scope)
        then = self.check_expr(expr.then, scope, expected)
        otherwise = self.check_expr(expr.otherwise, scope, then if not then.is_wildcard else expected)
        if not T.types_match(then, otherwise):
            return self._report(type_mismatch(str(then), str(otherwise), expr.otherwise.span))
        if then.is_error or otherwise.is_error:
            return T.ERROR
        return otherwise if then.is_wildcard else then

    def _type_Sizeof(self, expr: Sizeof, scope: int, expected: Optional[Type]) -> Type:
        self.resolve_type(expr.type, scope)
        return T.USIZE

    def _type_StructInit(self, expr: StructInit, scope: int, expected: Optional[Type]) -> Type:
        struct = self.resolve_type(expr.type, scope)
        if struct.is_error:
            for init in expr.fields:
                self.check_expr(init.value, scope)
            return T.ERROR
        if not struct.is_struct:
            for init in expr.fields:
                self.check_expr(init.value, scope)
            return self._report(invalid_operation(f"`{struct}` is not a struct", expr.span))

        named: Dict[str, Span] = {}
        failed = False
        for init in expr.fields:
            field_type = struct.field_type(init.name)
            value_type = self.check_expr(init.value, scope, field_type)
            if field_type is None:
                self._report(Diagnostic(
                    Phase.SEMANTIC,
                    ErrorKind.UNDEFINED_VARIABLE,
                    f"no field `{init.name}` on type `{struct}`",
                    init.span,
                ))
                failed = True
            elif init.name in named:
                self._report(invalid_operation(
                    f"field `{init.name}` specified more than once", init.span
                ))
                failed = True
            elif not T.types_match(field_type, value_type):
                self._report(type_mismatch(str(field_type), str(value_type), init.value.span))
            named.setdefault(init.name, init.span)

        missing = [name for name, _ in struct.fields if name not in named]
        if missing:
            listed = ", ".join(f"`{name}`" for name in missing)
            self._report(invalid_operation(
                f"missing field{'s' if len(missing) > 1 else ''} {listed} in initializer of `{struct}`",
                expr.span,
            ))
            failed = True
        return T.ERROR if failed else struct

    def _type_ArrayLiteral(self, expr: ArrayLiteral, scope: int, expected: Optional[Type]) -> Type:
        element_hint = expected.element if expected is not None and expected.is_array else None
        if not expr.elements:
            if element_hint is None:
                return self._report(invalid_operation(
                    "cannot infer the element type of an empty array", expr.span
                ))
            return T.array_type(element_hint, 0)

        first = self.check_expr(expr.elements[0], scope, element_hint)
        element = first
        for item in expr.elements[1:]:
            item_type = self.check_expr(item, scope, element if not element.is_wildcard else element_hint)
            if not T.types_match(element, item_type):
                self._report(type_mismatch(str(element), str(item_type), item.span))
                element = T.ERROR
            elif element.is_wildcard and not item_type.is_wildcard:
                element = item_type

        if element.is_error:
            return T.ERROR
        return T.array_type(element, len(expr.elements))

    def _type_MacroInvocation(self, expr: MacroInvocation, scope: int, expected: Optional[Type]) -> Type:
        for arg in expr.args or ():
            self.check_expr(arg, scope)
        if expr.name not in self._macros and not is_builtin_macro(expr.name):
            return self._report(not_found(expr.name, expr.span, hint="define it with `#define`"))
        return T.OPAQUE


# =============================================================================
# Operator Applicability
# =============================================================================

def _is_literal(expr: Expression) -> bool:
    """True for a numeric literal, possibly negated or parenthesized."""
    expr = strip_groups(expr)
    if isinstance(expr, Unary) and expr.op == UnaryOp.NEG:
        expr = strip_groups(expr.operand)
    return isinstance(expr, Literal) and expr.kind in (LiteralKind.INTEGER, LiteralKind.FLOAT)


def _is_deref(expr: Expression) -> bool:
    return isinstance(expr, Unary) and expr.op == UnaryOp.DEREF


def _supports(op: BinaryOp, operand: Type) -> bool:
    """True if `op` applies to two operands of type `operand`."""
    if op in (BinaryOp.ADD, BinaryOp.SUB, BinaryOp.MUL, BinaryOp.DIV, BinaryOp.MOD):
        return operand.is_numeric
    if op in (BinaryOp.BIT_AND, BinaryOp.BIT_OR, BinaryOp.BIT_XOR):
        return operand.is_integer or operand.is_bool
    if op in (BinaryOp.SHL, BinaryOp.SHR):
        return operand.is_integer
    if op in (BinaryOp.EQ, BinaryOp.NE):
        return not operand.is_function and not operand.is_void
    if op in (BinaryOp.LT, BinaryOp.GT, BinaryOp.LE, BinaryOp.GE):
        return operand.is_numeric or operand.is_string or operand == T.CHAR
    return False


def _bad_operator(spelling: str, operand: Type, span: Span) -> Diagnostic:
    return invalid_operation(f"cannot apply operator `{spelling}` to type `{operand}`", span)


def _count(n: int, noun: str) -> str:
    return f"{n} {noun}" if n == 1 else f"{n} {noun}s"


# =============================================================================
# Convenience Function
# =============================================================================

def analyze(
    tree: SourceFile,
    module_name: str = "main",
    import_table: Optional[Mapping[str, Mapping[str, Symbol]]] = None,
    source_lines: Optional[List[str]] = None,
) -> SemanticResult:
    """
    Analyze one module.

    Args:
        tree: Parsed module
        module_name: Dotted module name (used for type identity)
        import_table: Module name -> export table of each imported module
        source_lines: Source text lines, for the caret display

    Returns:
        SemanticResult with the annotated module and every diagnostic found
    """
    return SemanticAnalyzer(module_name, import_table, source_lines).analyze(tree)
