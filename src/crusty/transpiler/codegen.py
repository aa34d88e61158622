"""
Code Generation
===============

Two serializers share one neutral AST and differ only in their syntax
table and in how they lay out items and statements:

- RustGenerator emits Rust source from an analyzed Crusty module.
- CrustyGenerator emits canonical Crusty, used by the formatter and for
  round-trip checks.

Both pass their text through `pretty.format_source`, so the same tree
always yields byte-identical output.

Rust Translation
----------------
| Crusty                          | Rust                                 |
|---------------------------------|--------------------------------------|
| int f(int a) { return a; }      | pub fn f(a: i32) -> i32 { a }        |
| static void g() {}              | fn g() {}                            |
| let x = 1; / var int y = 2;     | let x = 1; / let mut y: i32 = 2;     |
| .outer: while (c) ...           | 'outer: while c ...                  |
| break .outer;                   | break 'outer;                        |
| for (init; c; step) body        | { init; while c { body; step; } }    |
| (int)x                          | x as i32                             |
| sizeof(T)                       | std::mem::size_of::<T>()             |
| NULL                            | Option::None                         |
| a ? b : c                       | if a { b } else { c }                |
| x++;                            | x += 1;                              |
| ~x                              | !x                                   |
| Red (tag of enum Color)         | Color::Red                           |
| (Point){ .x = 1 }               | Point { x: 1 }                       |
| Point.new(1)                    | Point::new(1)                        |
| __NAME__(a)                     | name!(a)                             |
| #import crate.a.b               | use crate::a::b::*;                  |
| #define __ADD__(a, b) ((a)+(b)) | macro_rules! add { ($a:expr, ...) }  |
| char* / T[N]                    | &'static str / [T; N]                |
| &T / &var T                     | &T / &mut T                          |
| &x / &var x / *p                | &x / &mut x / *p                     |
| #[derive(Debug)] struct S       | #[derive(Debug)] pub struct S        |

Structs and enums get a default `#[derive(...)]` line unless they carry
their own `derive` attribute; other attributes are passed through.

Calls to `extern` functions are wrapped in `unsafe { }` and array indices
that are not `usize` are cast with `as usize`. A C `for` whose body
`continue`s the loop uses a first-iteration flag so the step still runs.

Parentheses
-----------
Expression text is built from the tree, not from the source, so each
generator inserts parentheses according to its own precedence table. For
a tree parsed from Crusty this adds nothing in the Crusty direction; in
the Rust direction it covers the places where Rust binds differently
(bitwise operators against comparisons, chained comparisons, `as` before
`<`).

Example Usage
-------------
>>> result = generate(analyzed_module, Target.RUST)
>>> print(result.text)
pub fn add(a: i32, b: i32) -> i32 {
    a + b
}
"""

from dataclasses import dataclass, field
import enum
from typing import Dict, List, Optional, Union
import logging

from crusty.transpiler.ast import (
    ArrayLiteral, ArrayTypeRef, Attribute, Binary, BinaryOp, Block, Break,
    Call, Cast, Const, ConstDecl, Continue, Enum, ExprStmt, Expression,
    Extern, FieldAccess, For, Function, Grouped, Identifier, If, Index,
    LetDecl, Literal, LiteralKind, MacroDefinition, MacroInvocation,
    MethodCall, Node, Param, Receiver, ReferenceTypeRef, Return, Sizeof,
    SourceFile, Statement, Struct, StructInit, Ternary, TypeDef, TypeName,
    TypeRef, Unary, UnaryOp, Use, VarDecl, While, children, strip_groups,
)
from crusty.transpiler.errors import CodeGenError, Diagnostic
from crusty.transpiler.macros import rust_macro_name
from crusty.transpiler.pretty import format_source
from crusty.transpiler.semantic import AnnotatedModule, Annotations
from crusty.transpiler.symbols import SymbolKind
from crusty.transpiler import types as T


logger = logging.getLogger(__name__)


# =============================================================================
# Targets and Syntax Tables
# =============================================================================

class Target(enum.Enum):
    """Output direction."""
    RUST = "rust"
    CRUSTY = "crusty"

    @property
    def extension(self) -> str:
        return ".rs" if self == Target.RUST else ".crst"


@dataclass(frozen=True)
class SyntaxTable:
    """
    Concrete spellings of one output syntax.

    Attributes:
        name: Syntax name used in messages
        type_names: Primitive type spellings (Crusty name -> output name)
        prefix_ops: Prefix operator spellings
        precedence: Binding strength by BinaryOp or by the keys
            "assignment", "ternary", "cast", "prefix" and "postfix"
        non_associative: Operators that may not be chained without parentheses
        null_literal: Spelling of the NULL literal
        label_prefix: Marker written before a loop label
    """
    name: str
    type_names: Dict[str, str] = field(default_factory=dict)
    prefix_ops: Dict[UnaryOp, str] = field(default_factory=dict)
    precedence: Dict[object, int] = field(default_factory=dict)
    non_associative: frozenset = frozenset()
    null_literal: str = "NULL"
    label_prefix: str = "."


def _precedence_table(levels: List[tuple], **named: int) -> Dict[object, int]:
    """Build a precedence map from binary levels (lowest first) plus named keys."""
    table: Dict[object, int] = dict(named)
    base = max(named.get("assignment", 1), named.get("ternary", 1))
    for ops in levels:
        base += 1
        for op in ops:
            table[op] = base
    for op in BinaryOp:
        if op.is_assignment:
            table[op] = named["assignment"]
    return table


_COMPARISONS = (BinaryOp.EQ, BinaryOp.NE, BinaryOp.LT, BinaryOp.GT, BinaryOp.LE, BinaryOp.GE)

# C binding strength: ternary sits just above assignment
CRUSTY_TABLE = SyntaxTable(
    name="crusty",
    prefix_ops={
        UnaryOp.NEG: "-", UnaryOp.NOT: "!", UnaryOp.BIT_NOT: "~",
        UnaryOp.PRE_INC: "++", UnaryOp.PRE_DEC: "--",
        UnaryOp.REF: "&", UnaryOp.REF_MUT: "&var ", UnaryOp.DEREF: "*",
    },
    precedence=_precedence_table(
        [
            (BinaryOp.OR,), (BinaryOp.AND,), (BinaryOp.BIT_OR,), (BinaryOp.BIT_XOR,),
            (BinaryOp.BIT_AND,), (BinaryOp.EQ, BinaryOp.NE),
            (BinaryOp.LT, BinaryOp.GT, BinaryOp.LE, BinaryOp.GE),
            (BinaryOp.SHL, BinaryOp.SHR), (BinaryOp.ADD, BinaryOp.SUB),
            (BinaryOp.MUL, BinaryOp.DIV, BinaryOp.MOD),
        ],
        assignment=1, ternary=2, cast=20, prefix=20, postfix=21,
    ),
)

# Rust binding strength: bitwise above comparisons, `as` above `*`
RUST_TABLE = SyntaxTable(
    name="rust",
    type_names={"int": "i32", "float": "f64", "char*": "&'static str", "void": "()"},
    prefix_ops={
        UnaryOp.NEG: "-", UnaryOp.NOT: "!", UnaryOp.BIT_NOT: "!",
        UnaryOp.REF: "&", UnaryOp.REF_MUT: "&mut ", UnaryOp.DEREF: "*",
    },
    precedence=_precedence_table(
        [
            (BinaryOp.OR,), (BinaryOp.AND,), _COMPARISONS, (BinaryOp.BIT_OR,),
            (BinaryOp.BIT_XOR,), (BinaryOp.BIT_AND,), (BinaryOp.SHL, BinaryOp.SHR),
            (BinaryOp.ADD, BinaryOp.SUB), (BinaryOp.MUL, BinaryOp.DIV, BinaryOp.MOD),
        ],
        assignment=1, ternary=1, cast=19, prefix=20, postfix=21,
    ),
    non_associative=frozenset(_COMPARISONS),
    null_literal="Option::None",
    label_prefix="'",
)


# =============================================================================
# Generation Result
# =============================================================================

@dataclass
class GenerateResult:
    """
    Outcome of generating one module.

    Attributes:
        text: Generated source text, or None on failure
        error: The CodeGenError diagnostic, if generation was refused
    """
    text: Optional[str] = None
    error: Optional[Diagnostic] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# =============================================================================
# Shared Generator
# =============================================================================

class SourceGenerator:
    """
    Base serializer: output buffer, dispatch and the expression forms both
    syntaxes write the same way.

    Subclasses provide `_item_<Class>` and `_stmt_<Class>` methods and any
    `_expr_<Class>` whose spelling differs. A node without a method is an
    internal error (CodeGenError).
    """

    table: SyntaxTable = CRUSTY_TABLE

    def __init__(self, indent: int = 4, annotations: Optional[Annotations] = None):
        self.indent = indent
        self.annotations = annotations
        self._output: list[str] = []
        self._level = 0
        self._name_counter = 0

    def generate(self, tree: SourceFile) -> str:
        """Serialize a whole file."""
        self._output = []
        self._level = 0
        self._name_counter = 0
        self._prepare(tree)

        previous = None
        for item in tree.items:
            if previous is not None and not (isinstance(previous, Use) and isinstance(item, Use)):
                self._emit()
            self.item(item)
            previous = item

        return format_source("\n".join(self._output), self.indent)

    def _prepare(self, tree: SourceFile) -> None:
        """Hook for a pre-scan of the tree before emission."""
        pass

    # =========================================================================
    # Output Methods
    # =========================================================================

    def _emit(self, line: str = "") -> None:
        self._output.append(" " * (self.indent * self._level) + line if line else "")

    def _open(self, line: str) -> None:
        """Emit a line ending in `{` and indent."""
        self._emit(line)
        self._level += 1

    def _reopen(self, line: str) -> None:
        """Emit a `} ... {` line at the enclosing level."""
        self._level -= 1
        self._emit(line)
        self._level += 1

    def _close(self, line: str = "}") -> None:
        self._level -= 1
        self._emit(line)

    def _attribute(self, attribute: Attribute) -> None:
        if attribute.args is None:
            self._emit(f"#[{attribute.name}]")
        else:
            self._emit(f"#[{attribute.name}({', '.join(attribute.args)})]")

    def _new_name(self, stem: str) -> str:
        self._name_counter += 1
        return f"_{stem}_{self._name_counter}"

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _dispatch(self, prefix: str, node: Node):
        method = getattr(self, f"{prefix}{node.__class__.__name__}", None)
        if method is None:
            raise CodeGenError(
                f"{self.table.name} generator cannot emit {node.__class__.__name__}", node.span
            )
        return method(node)

    def item(self, item: Node) -> None:
        self._dispatch("_item_", item)

    def statement(self, statement: Statement) -> None:
        self._dispatch("_stmt_", statement)

    def expr(self, expr: Expression) -> str:
        """Return the text of an expression."""
        return self._dispatch("_expr_", expr)

    def _statements(self, body: Statement) -> None:
        """Emit the statements of a block body without its braces."""
        if isinstance(body, Block):
            for statement in body.statements:
                self.statement(statement)
        else:
            self.statement(body)

    def _label(self, label: Optional[str]) -> str:
        return f"{self.table.label_prefix}{label}: " if label else ""

    def _jump(self, keyword: str, label: Optional[str]) -> None:
        target = f" {self.table.label_prefix}{label}" if label else ""
        self._emit(f"{keyword}{target};")

    # =========================================================================
    # Precedence
    # =========================================================================

    def precedence(self, expr: Expression) -> int:
        table = self.table.precedence
        if isinstance(expr, Binary):
            return table[expr.op]
        if isinstance(expr, Unary):
            return table["postfix"] if expr.op.is_postfix else table["prefix"]
        if isinstance(expr, Cast):
            return table["cast"]
        if isinstance(expr, Ternary):
            return table["ternary"]
        return table["postfix"]

    def _operand(self, expr: Expression, minimum: int, strict: bool = False) -> str:
        """
        Text of `expr`, parenthesized if it binds looser than `minimum`
        (or equally, when `strict`).
        """
        text = self.expr(expr)
        level = self.precedence(expr)
        if level < minimum or (strict and level == minimum):
            return f"({text})"
        return text

    def _postfix_operand(self, expr: Expression) -> str:
        return self._operand(expr, self.table.precedence["postfix"])

    def _arguments(self, args) -> str:
        return ", ".join(self.expr(arg) for arg in args)

    # =========================================================================
    # Shared Expression Forms
    # =========================================================================

    def _expr_Literal(self, expr: Literal) -> str:
        if expr.kind == LiteralKind.NULL:
            return self.table.null_literal
        if expr.text:
            return expr.text
        if expr.kind == LiteralKind.BOOL:
            return "true" if expr.value else "false"
        return str(expr.value)

    def _expr_Identifier(self, expr: Identifier) -> str:
        return expr.name

    def _expr_Grouped(self, expr: Grouped) -> str:
        return f"({self.expr(expr.inner)})"

    def _expr_Binary(self, expr: Binary) -> str:
        level = self.table.precedence[expr.op]
        non_associative = expr.op in self.table.non_associative
        right_associative = expr.op.is_assignment
        left = self._operand(expr.left, level, strict=right_associative or non_associative)
        right = self._operand(expr.right, level, strict=not right_associative or non_associative)
        return f"{left} {expr.op.value} {right}"

    def _expr_Call(self, expr: Call) -> str:
        return f"{self._postfix_operand(expr.callee)}({self._arguments(expr.args)})"

    def _expr_FieldAccess(self, expr: FieldAccess) -> str:
        return f"{self._postfix_operand(expr.receiver)}.{expr.field_name}"

    def _expr_MethodCall(self, expr: MethodCall) -> str:
        return f"{self._postfix_operand(expr.receiver)}.{expr.method}({self._arguments(expr.args)})"

    def _expr_Index(self, expr: Index) -> str:
        return f"{self._postfix_operand(expr.receiver)}[{self.expr(expr.index)}]"

    def _expr_ArrayLiteral(self, expr: ArrayLiteral) -> str:
        return f"[{self._arguments(expr.elements)}]"


# =============================================================================
# Crusty Generator
# =============================================================================

class CrustyGenerator(SourceGenerator):
    """
    Serializes a tree back to canonical Crusty.

    Bodies are always braced, C-style declarations become `var`, and items
    are separated by one blank line. Re-parsing the output gives a tree that
    serializes to the same text.
    """

    table = CRUSTY_TABLE

    def type_text(self, ref: TypeRef) -> str:
        if isinstance(ref, ArrayTypeRef):
            return f"{self.type_text(ref.element)}[{ref.size}]"
        if isinstance(ref, ReferenceTypeRef):
            return f"&var {self.type_text(ref.element)}" if ref.mutable else f"&{self.type_text(ref.element)}"
        return ref.name

    # =========================================================================
    # Items
    # =========================================================================

    def _item_Use(self, item: Use) -> None:
        self._emit(f"#import {item.dotted}")

    def _item_MacroDefinition(self, item: MacroDefinition) -> None:
        line = f"#define {item.name}"
        if item.params is not None:
            line += f"({', '.join(item.params)})"
        if item.body is not None:
            line += f" {self.expr(item.body)}"
        self._emit(line)

    def _param(self, param: Param) -> str:
        prefix = "var " if param.mutable else ""
        return f"{prefix}{self.type_text(param.type)} {param.name}"

    def _item_Function(self, func: Function) -> None:
        params = [self._param(p) for p in func.params]
        if func.receiver is not None:
            params.insert(0, func.receiver.value)
        static = "static " if func.is_static else ""
        self._open(f"{static}{self.type_text(func.return_type)} {func.name}({', '.join(params)}) {{")
        self._statements(func.body)
        self._close()

    def _item_Struct(self, item: Struct) -> None:
        static = "static " if item.is_static else ""
        for attribute in item.attributes:
            self._attribute(attribute)
        self._open(f"{static}struct {item.name} {{")
        for struct_field in item.fields:
            self._emit(f"{self.type_text(struct_field.type)} {struct_field.name};")
        for i, method in enumerate(item.methods):
            if i > 0 or item.fields:
                self._emit()
            self._item_Function(method)
        self._close()

    def _item_Enum(self, item: Enum) -> None:
        static = "static " if item.is_static else ""
        for attribute in item.attributes:
            self._attribute(attribute)
        self._open(f"{static}enum {item.name} {{")
        for variant in item.variants:
            value = f" = {variant.value_text}" if variant.value_text is not None else ""
            self._emit(f"{variant.name}{value},")
        self._close()

    def _item_TypeDef(self, item: TypeDef) -> None:
        static = "static " if item.is_static else ""
        self._emit(f"{static}typedef {self.type_text(item.target)} {item.name};")

    def _item_Const(self, item: Const) -> None:
        static = "static " if item.is_static else ""
        self._emit(f"{static}const {self.type_text(item.type)} {item.name} = {self.expr(item.value)};")

    def _item_Extern(self, item: Extern) -> None:
        self._open(f'extern "{item.abi}" {{')
        for proto in item.functions:
            params = ", ".join(self._param(p) for p in proto.params)
            self._emit(f"{self.type_text(proto.return_type)} {proto.name}({params});")
        self._close()

    # =========================================================================
    # Statements
    # =========================================================================

    def _binding_text(self, keyword: str, decl) -> str:
        declared = f"{self.type_text(decl.type)} " if decl.type is not None else ""
        init = f" = {self.expr(decl.init)}" if decl.init is not None else ""
        return f"{keyword} {declared}{decl.name}{init};"

    def _simple_text(self, statement: Statement) -> str:
        """One-line text of a declaration or expression statement."""
        if isinstance(statement, LetDecl):
            return self._binding_text("let", statement)
        if isinstance(statement, VarDecl):
            return self._binding_text("var", statement)
        if isinstance(statement, ConstDecl):
            return self._binding_text("const", statement)
        if isinstance(statement, ExprStmt):
            return f"{self.expr(statement.expression)};"
        raise CodeGenError(f"crusty generator cannot emit {statement.__class__.__name__} here", statement.span)

    def _stmt_LetDecl(self, statement: LetDecl) -> None:
        self._emit(self._simple_text(statement))

    def _stmt_VarDecl(self, statement: VarDecl) -> None:
        self._emit(self._simple_text(statement))

    def _stmt_ConstDecl(self, statement: ConstDecl) -> None:
        self._emit(self._simple_text(statement))

    def _stmt_ExprStmt(self, statement: ExprStmt) -> None:
        self._emit(self._simple_text(statement))

    def _stmt_Block(self, block: Block) -> None:
        self._open("{")
        self._statements(block)
        self._close()

    def _stmt_If(self, statement: If) -> None:
        self._open(f"if ({self.expr(statement.condition)}) {{")
        self._statements(statement.then)
        otherwise = statement.otherwise
        while isinstance(otherwise, If):
            self._reopen(f"}} else if ({self.expr(otherwise.condition)}) {{")
            self._statements(otherwise.then)
            otherwise = otherwise.otherwise
        if otherwise is not None:
            self._reopen("} else {")
            self._statements(otherwise)
        self._close()

    def _stmt_While(self, statement: While) -> None:
        self._open(f"{self._label(statement.label)}while ({self.expr(statement.condition)}) {{")
        self._statements(statement.body)
        self._close()

    def _stmt_For(self, statement: For) -> None:
        init = self._simple_text(statement.init) if statement.init is not None else ";"
        condition = f" {self.expr(statement.condition)}" if statement.condition is not None else ""
        step = f" {self.expr(statement.step)}" if statement.step is not None else ""
        self._open(f"{self._label(statement.label)}for ({init}{condition};{step}) {{")
        self._statements(statement.body)
        self._close()

    def _stmt_Return(self, statement: Return) -> None:
        if statement.value is None:
            self._emit("return;")
        else:
            self._emit(f"return {self.expr(statement.value)};")

    def _stmt_Break(self, statement: Break) -> None:
        self._jump("break", statement.label)

    def _stmt_Continue(self, statement: Continue) -> None:
        self._jump("continue", statement.label)

    # =========================================================================
    # Expressions
    # =========================================================================

    def _expr_Unary(self, expr: Unary) -> str:
        if expr.op.is_postfix:
            spelling = "++" if expr.op == UnaryOp.POST_INC else "--"
            return f"{self._postfix_operand(expr.operand)}{spelling}"
        spelling = self.table.prefix_ops[expr.op]
        operand = self._operand(expr.operand, self.table.precedence["prefix"])
        if operand[:1] in ("-", "+", "&") and spelling[-1] == operand[0]:
            return f"{spelling} {operand}"
        return f"{spelling}{operand}"

    def _expr_Cast(self, expr: Cast) -> str:
        operand = self._operand(expr.operand, self.table.precedence["prefix"])
        return f"({self.type_text(expr.type)}){operand}"

    def _expr_Ternary(self, expr: Ternary) -> str:
        level = self.table.precedence["ternary"]
        condition = self._operand(expr.condition, level, strict=True)
        otherwise = self._operand(expr.otherwise, level)
        return f"{condition} ? {self.expr(expr.then)} : {otherwise}"

    def _expr_Sizeof(self, expr: Sizeof) -> str:
        return f"sizeof({self.type_text(expr.type)})"

    def _expr_StructInit(self, expr: StructInit) -> str:
        if not expr.fields:
            return f"({self.type_text(expr.type)}){{}}"
        inits = ", ".join(f".{init.name} = {self.expr(init.value)}" for init in expr.fields)
        return f"({self.type_text(expr.type)}){{ {inits} }}"

    def _expr_MacroInvocation(self, expr: MacroInvocation) -> str:
        if expr.args is None:
            return expr.name
        return f"{expr.name}({self._arguments(expr.args)})"


# =============================================================================
# Rust Generator
# =============================================================================

class RustGenerator(SourceGenerator):
    """
    Serializes an analyzed Crusty module as Rust.

    Annotations, when given, decide enum tags, extern calls, associated
    function calls and index casts. Without them (a bare tree) the same
    facts come from a pre-scan of the module's own declarations.
    """

    table = RUST_TABLE

    def __init__(self, indent: int = 4, annotations: Optional[Annotations] = None):
        super().__init__(indent, annotations)
        self._enum_tags: Dict[str, str] = {}
        self._externs: set[str] = set()
        self._structs: set[str] = set()
        self._macro_params: tuple = ()

    def _prepare(self, tree: SourceFile) -> None:
        self._enum_tags = {}
        self._externs = set()
        self._structs = set()
        for item in tree.items:
            if isinstance(item, Enum):
                for variant in item.variants:
                    self._enum_tags[variant.name] = item.name
            elif isinstance(item, Extern):
                self._externs.update(proto.name for proto in item.functions)
            elif isinstance(item, Struct):
                self._structs.add(item.name)

    def type_text(self, ref: TypeRef) -> str:
        if isinstance(ref, ArrayTypeRef):
            return f"[{self.type_text(ref.element)}; {ref.size}]"
        if isinstance(ref, ReferenceTypeRef):
            return f"&mut {self.type_text(ref.element)}" if ref.mutable else f"&{self.type_text(ref.element)}"
        if ref.primitive:
            return self.table.type_names.get(ref.name, ref.name)
        return ref.name

    def _symbol(self, node: Node):
        return self.annotations.symbol_of(node) if self.annotations is not None else None

    # =========================================================================
    # Items
    # =========================================================================

    def _item_Use(self, item: Use) -> None:
        segments = list(item.path)
        if segments[0] != "crate":
            segments.insert(0, "crate")
        self._emit(f"use {'::'.join(segments)}::*;")

    def _item_MacroDefinition(self, item: MacroDefinition) -> None:
        params = item.params or ()
        pattern = ", ".join(f"${name}:expr" for name in params)
        self._open(f"macro_rules! {rust_macro_name(item.name)} {{")
        if item.body is None:
            self._emit(f"({pattern}) => {{}};")
        else:
            self._macro_params = params
            try:
                body = self.expr(item.body)
            finally:
                self._macro_params = ()
            self._open(f"({pattern}) => {{")
            self._emit(body)
            self._close("};")
        self._close()

    def _param(self, param: Param) -> str:
        prefix = "mut " if param.mutable else ""
        return f"{prefix}{param.name}: {self.type_text(param.type)}"

    def _signature(self, name: str, params: List[str], return_type: TypeRef, self_type: Optional[str] = None) -> str:
        result = ""
        if not (isinstance(return_type, TypeName) and return_type.name == "void"):
            returned = self.type_text(return_type)
            if self_type is not None and isinstance(return_type, TypeName) and return_type.name == self_type:
                returned = "Self"
            result = f" -> {returned}"
        return f"fn {name}({', '.join(params)}){result}"

    def _function(self, func: Function, public: bool, self_type: Optional[str] = None) -> None:
        params = [self._param(p) for p in func.params]
        if func.receiver == Receiver.SHARED:
            params.insert(0, "&self")
        elif func.receiver == Receiver.MUTABLE:
            params.insert(0, "&mut self")
        visibility = "pub " if public else ""
        self._open(f"{visibility}{self._signature(func.name, params, func.return_type, self_type)} {{")
        self._function_body(func.body)
        self._close()

    def _function_body(self, body: Block) -> None:
        """Emit a body, turning a final `return e;` into the tail expression `e`."""
        statements = list(body.statements)
        tail = statements.pop() if statements and isinstance(statements[-1], Return) else None
        for statement in statements:
            self.statement(statement)
        if tail is not None and tail.value is not None:
            self._emit(self.expr(tail.value))

    def _item_Function(self, func: Function) -> None:
        self._function(func, public=not func.is_static)

    def _attributes(self, attributes: tuple, default_derive: str) -> None:
        """Emit item attributes; a `derive` of the item's own replaces the default."""
        if not any(a.name == "derive" for a in attributes):
            self._emit(default_derive)
        for attribute in attributes:
            self._attribute(attribute)

    def _item_Struct(self, item: Struct) -> None:
        visibility = "" if item.is_static else "pub "
        self._attributes(item.attributes, "#[derive(Debug, Clone, Copy, PartialEq)]")
        if not item.fields:
            self._emit(f"{visibility}struct {item.name} {{}}")
        else:
            self._open(f"{visibility}struct {item.name} {{")
            for struct_field in item.fields:
                self._emit(f"{visibility}{struct_field.name}: {self.type_text(struct_field.type)},")
            self._close()

        if item.methods:
            self._emit()
            self._open(f"impl {item.name} {{")
            for i, method in enumerate(item.methods):
                if i > 0:
                    self._emit()
                self._function(method, public=not (item.is_static or method.is_static), self_type=item.name)
            self._close()

    def _item_Enum(self, item: Enum) -> None:
        visibility = "" if item.is_static else "pub "
        self._attributes(item.attributes, "#[derive(Debug, Clone, Copy, PartialEq, Eq)]")
        self._open(f"{visibility}enum {item.name} {{")
        for variant in item.variants:
            value = f" = {variant.value_text}" if variant.value_text is not None else ""
            self._emit(f"{variant.name}{value},")
        self._close()

    def _item_TypeDef(self, item: TypeDef) -> None:
        visibility = "" if item.is_static else "pub "
        self._emit(f"{visibility}type {item.name} = {self.type_text(item.target)};")

    def _item_Const(self, item: Const) -> None:
        visibility = "" if item.is_static else "pub "
        self._emit(f"{visibility}const {item.name}: {self.type_text(item.type)} = {self.expr(item.value)};")

    def _item_Extern(self, item: Extern) -> None:
        self._open(f'extern "{item.abi}" {{')
        for proto in item.functions:
            params = [self._param(p) for p in proto.params]
            self._emit(f"{self._signature(proto.name, params, proto.return_type)};")
        self._close()

    # =========================================================================
    # Statements
    # =========================================================================

    def _binding(self, keyword: str, decl) -> None:
        declared = f": {self.type_text(decl.type)}" if decl.type is not None else ""
        init = f" = {self.expr(decl.init)}" if decl.init is not None else ""
        self._emit(f"{keyword} {decl.name}{declared}{init};")

    def _stmt_LetDecl(self, statement: LetDecl) -> None:
        self._binding("let", statement)

    def _stmt_VarDecl(self, statement: VarDecl) -> None:
        self._binding("let mut", statement)

    def _stmt_ConstDecl(self, statement: ConstDecl) -> None:
        self._binding("const", statement)

    def _effect_text(self, expr: Expression) -> str:
        """Text of an expression evaluated only for its effect (`x++` -> `x += 1`)."""
        inner = strip_groups(expr)
        if isinstance(inner, Unary) and inner.op.is_increment:
            spelling = "+=" if inner.op in (UnaryOp.PRE_INC, UnaryOp.POST_INC) else "-="
            return f"{self.expr(inner.operand)} {spelling} 1"
        return self.expr(expr)

    def _stmt_ExprStmt(self, statement: ExprStmt) -> None:
        self._emit(f"{self._effect_text(statement.expression)};")

    def _stmt_Block(self, block: Block) -> None:
        self._open("{")
        self._statements(block)
        self._close()

    def _stmt_If(self, statement: If) -> None:
        self._open(f"if {self.expr(statement.condition)} {{")
        self._statements(statement.then)
        otherwise = statement.otherwise
        while isinstance(otherwise, If):
            self._reopen(f"}} else if {self.expr(otherwise.condition)} {{")
            self._statements(otherwise.then)
            otherwise = otherwise.otherwise
        if otherwise is not None:
            self._reopen("} else {")
            self._statements(otherwise)
        self._close()

    def _stmt_While(self, statement: While) -> None:
        self._open(f"{self._label(statement.label)}while {self.expr(statement.condition)} {{")
        self._statements(statement.body)
        self._close()

    def _stmt_For(self, statement: For) -> None:
        label = self._label(statement.label)
        if statement.init is not None:
            self._open("{")
            self.statement(statement.init)

        if statement.step is not None and _continues_loop(statement.body, statement.label):
            flag = self._new_name("first")
            self._emit(f"let mut {flag} = true;")
            self._open(f"{label}loop {{")
            self._open(f"if !{flag} {{")
            self._emit(f"{self._effect_text(statement.step)};")
            self._close()
            self._emit(f"{flag} = false;")
            if statement.condition is not None:
                condition = self._operand(statement.condition, self.table.precedence["prefix"])
                self._open(f"if !{condition} {{")
                self._emit("break;")
                self._close()
            self._statements(statement.body)
            self._close()
        else:
            head = f"while {self.expr(statement.condition)}" if statement.condition is not None else "loop"
            self._open(f"{label}{head} {{")
            self._statements(statement.body)
            if statement.step is not None:
                self._emit(f"{self._effect_text(statement.step)};")
            self._close()

        if statement.init is not None:
            self._close()

    def _stmt_Return(self, statement: Return) -> None:
        if statement.value is None:
            self._emit("return;")
        else:
            self._emit(f"return {self.expr(statement.value)};")

    def _stmt_Break(self, statement: Break) -> None:
        self._jump("break", statement.label)

    def _stmt_Continue(self, statement: Continue) -> None:
        self._jump("continue", statement.label)

    # =========================================================================
    # Expressions
    # =========================================================================

    def _expr_Identifier(self, expr: Identifier) -> str:
        if expr.name in self._macro_params:
            return f"${expr.name}"
        symbol = self._symbol(expr)
        if symbol is not None:
            if symbol.is_enum_tag:
                return f"{symbol.type.name}::{expr.name}"
            return expr.name
        enum_name = self._enum_tags.get(expr.name)
        return f"{enum_name}::{expr.name}" if enum_name else expr.name

    def _expr_Unary(self, expr: Unary) -> str:
        if expr.op.is_increment:
            target = self.expr(expr.operand)
            spelling = "+=" if expr.op in (UnaryOp.PRE_INC, UnaryOp.POST_INC) else "-="
            if expr.op.is_postfix:
                old = self._new_name("old")
                return f"{{ let {old} = {target}; {target} {spelling} 1; {old} }}"
            return f"{{ {target} {spelling} 1; {target} }}"
        operand = self._operand(expr.operand, self.table.precedence["prefix"])
        return f"{self.table.prefix_ops[expr.op]}{operand}"

    def _expr_Binary(self, expr: Binary) -> str:
        text = super()._expr_Binary(expr)
        if expr.op in (BinaryOp.LT, BinaryOp.SHL) and isinstance(expr.left, Cast):
            # `x as T < y` reads as a generic argument list
            left = self.expr(expr.left)
            return f"({left}){text[len(left):]}"
        return text

    def _is_extern_call(self, expr: Call) -> bool:
        symbol = self._symbol(expr)
        if symbol is not None:
            return symbol.is_extern
        callee = strip_groups(expr.callee)
        return isinstance(callee, Identifier) and callee.name in self._externs

    def _expr_Call(self, expr: Call) -> str:
        text = super()._expr_Call(expr)
        if self._is_extern_call(expr):
            return f"unsafe {{ {text} }}"
        return text

    def _expr_MethodCall(self, expr: MethodCall) -> str:
        receiver = strip_groups(expr.receiver)
        if isinstance(receiver, Identifier):
            symbol = self._symbol(receiver)
            if symbol is not None:
                associated = symbol.kind == SymbolKind.STRUCT
            else:
                associated = receiver.name in self._structs
            if associated:
                return f"{receiver.name}::{expr.method}({self._arguments(expr.args)})"
        return super()._expr_MethodCall(expr)

    def _needs_index_cast(self, index: Expression) -> bool:
        if self.annotations is not None:
            index_type = self.annotations.type_of(index)
            if index_type is not None:
                return index_type != T.USIZE
        literal = strip_groups(index)
        return not (isinstance(literal, Literal) and literal.kind == LiteralKind.INTEGER)

    def _expr_Index(self, expr: Index) -> str:
        index = self.expr(expr.index)
        if self._needs_index_cast(expr.index):
            index = f"{self._operand(expr.index, self.table.precedence['cast'])} as usize"
        return f"{self._postfix_operand(expr.receiver)}[{index}]"

    def _expr_Cast(self, expr: Cast) -> str:
        operand = self._operand(expr.operand, self.table.precedence["cast"])
        return f"{operand} as {self.type_text(expr.type)}"

    def _expr_Ternary(self, expr: Ternary) -> str:
        return f"if {self.expr(expr.condition)} {{ {self.expr(expr.then)} }} else {{ {self.expr(expr.otherwise)} }}"

    def _expr_Sizeof(self, expr: Sizeof) -> str:
        return f"std::mem::size_of::<{self.type_text(expr.type)}>()"

    def _expr_StructInit(self, expr: StructInit) -> str:
        if not expr.fields:
            return f"{self.type_text(expr.type)} {{}}"
        inits = ", ".join(f"{init.name}: {self.expr(init.value)}" for init in expr.fields)
        return f"{self.type_text(expr.type)} {{ {inits} }}"

    def _expr_MacroInvocation(self, expr: MacroInvocation) -> str:
        return f"{rust_macro_name(expr.name)}!({self._arguments(expr.args or ())})"


def _continues_loop(body: Block, label: Optional[str]) -> bool:
    """True if `body` holds a `continue` aimed at the loop that owns it."""

    def visit(node: Node, nested: bool) -> bool:
        if isinstance(node, Continue):
            if node.label is None:
                return not nested
            return node.label == label
        nested = nested or isinstance(node, (While, For))
        return any(visit(child, nested) for child in children(node) if isinstance(child, Statement))

    return any(visit(statement, False) for statement in body.statements)


# =============================================================================
# Entry Point
# =============================================================================

GENERATORS = {
    Target.RUST: RustGenerator,
    Target.CRUSTY: CrustyGenerator,
}


def generate(
    module: Union[AnnotatedModule, SourceFile],
    target: Target = Target.RUST,
    indent: int = 4,
) -> GenerateResult:
    """
    Serialize a module in the target syntax.

    Args:
        module: An analyzed module, or a bare parsed tree
        target: Output direction
        indent: Spaces per nesting level

    Returns:
        GenerateResult with the text, or with a CodeGenError diagnostic when
        the module still carries semantic errors or holds a node the target
        cannot express
    """
    if isinstance(module, AnnotatedModule):
        if not module.is_clean:
            count = len(module.diagnostics)
            error = CodeGenError(
                f"refusing to generate `{module.name}`: the module has "
                f"{count} unresolved semantic error{'s' if count != 1 else ''}",
                module.tree.span,
            )
            return GenerateResult(error=error.diagnostic)
        tree, annotations = module.tree, module.annotations
    else:
        tree, annotations = module, None

    generator = GENERATORS[target](indent=indent, annotations=annotations)
    try:
        text = generator.generate(tree)
    except CodeGenError as e:
        logger.debug(f"Generation failed for {tree.filename}: {e.message}")
        return GenerateResult(error=e.diagnostic)

    logger.debug(f"Generated {target.value} for {tree.filename}: {text.count(chr(10))} lines")
    return GenerateResult(text=text)
