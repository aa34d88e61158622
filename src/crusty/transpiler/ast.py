"""
Crusty Abstract Syntax Tree
===========================

The AST is the neutral data model shared by both translation directions.
It holds no target-specific shape: the Rust and Crusty serializers each
map the same nodes through their own syntax tables.

Node Families
-------------
The three families are closed sets; every consumer handles each member
explicitly and treats anything else as an internal error.

Item (top-level declaration):
    Function, Struct, Enum, TypeDef, Const, Use, Extern, MacroDefinition

Statement:
    LetDecl, VarDecl, ConstDecl, If, While, For, Return, Break, Continue,
    ExprStmt, Block

Expression:
    Literal, Identifier, Binary, Unary, Call, Cast, Ternary, FieldAccess,
    Index, MethodCall, MacroInvocation, Sizeof, StructInit, ArrayLiteral,
    Grouped

Type references (syntax only; semantic types live in types.py):
    TypeName, ArrayTypeRef, ReferenceTypeRef

Structs and enums carry their `#[...]` attributes as Attribute nodes.

Immutability
------------
Every node is a frozen dataclass whose children are tuples, so a parsed
tree cannot change shape. Semantic results are stored out-of-band in an
`Annotations` table keyed by `node_id`, which each node receives from a
process-wide counter at construction.
"""

from dataclasses import dataclass, field, fields
import enum
from enum import auto
from typing import Optional, Union
import itertools

from crusty.errors import Span, NO_SPAN


_node_ids = itertools.count(1)


def _next_node_id() -> int:
    return next(_node_ids)


# =============================================================================
# AST Node Base Classes
# =============================================================================

@dataclass(frozen=True)
class Node:
    """
    Base class for all AST nodes.

    Attributes:
        span: Source region covered by the node
        node_id: Unique id used as the key for semantic annotations
    """
    span: Span = NO_SPAN
    node_id: int = field(default_factory=_next_node_id, init=False, compare=False, repr=False)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}@{self.span.start}"


@dataclass(frozen=True)
class Item(Node):
    """Base class for top-level declarations."""
    pass


@dataclass(frozen=True)
class Statement(Node):
    """Base class for statements."""
    pass


@dataclass(frozen=True)
class Expression(Node):
    """Base class for expressions."""
    pass


# =============================================================================
# Type References
# =============================================================================

@dataclass(frozen=True)
class TypeName(Node):
    """
    A named type as written in source.

    Attributes:
        name: Spelling ("int", "u64", "char*", "Point", ...)
        primitive: True for built-in type keywords
    """
    name: str = ""
    primitive: bool = False


@dataclass(frozen=True)
class ArrayTypeRef(Node):
    """A fixed-size array type, written `T[N]`."""
    element: "TypeRef" = None
    size: int = 0


@dataclass(frozen=True)
class ReferenceTypeRef(Node):
    """A borrowed type, written `&T` or `&var T`."""
    element: "TypeRef" = None
    mutable: bool = False


TypeRef = Union[TypeName, ArrayTypeRef, ReferenceTypeRef]


# =============================================================================
# Operators
# =============================================================================

class BinaryOp(enum.Enum):
    """Binary operators, valued by their Crusty spelling."""
    # Arithmetic
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    MOD = "%"

    # Comparison
    EQ = "=="
    NE = "!="
    LT = "<"
    GT = ">"
    LE = "<="
    GE = ">="

    # Logical
    AND = "&&"
    OR = "||"

    # Bitwise
    BIT_AND = "&"
    BIT_OR = "|"
    BIT_XOR = "^"
    SHL = "<<"
    SHR = ">>"

    # Assignment
    ASSIGN = "="
    ADD_ASSIGN = "+="
    SUB_ASSIGN = "-="
    MUL_ASSIGN = "*="
    DIV_ASSIGN = "/="
    MOD_ASSIGN = "%="
    AND_ASSIGN = "&="
    OR_ASSIGN = "|="
    XOR_ASSIGN = "^="
    SHL_ASSIGN = "<<="
    SHR_ASSIGN = ">>="

    @property
    def is_assignment(self) -> bool:
        return self in ASSIGNMENT_OPS

    @property
    def is_comparison(self) -> bool:
        return self in (BinaryOp.EQ, BinaryOp.NE, BinaryOp.LT, BinaryOp.GT, BinaryOp.LE, BinaryOp.GE)

    @property
    def is_logical(self) -> bool:
        return self in (BinaryOp.AND, BinaryOp.OR)

    @property
    def compound_base(self) -> Optional["BinaryOp"]:
        """The arithmetic operator behind a compound assignment (`+=` -> `+`)."""
        if self in ASSIGNMENT_OPS and self != BinaryOp.ASSIGN:
            return BinaryOp(self.value[:-1])
        return None


ASSIGNMENT_OPS = frozenset({
    BinaryOp.ASSIGN, BinaryOp.ADD_ASSIGN, BinaryOp.SUB_ASSIGN,
    BinaryOp.MUL_ASSIGN, BinaryOp.DIV_ASSIGN, BinaryOp.MOD_ASSIGN,
    BinaryOp.AND_ASSIGN, BinaryOp.OR_ASSIGN, BinaryOp.XOR_ASSIGN,
    BinaryOp.SHL_ASSIGN, BinaryOp.SHR_ASSIGN,
})


class UnaryOp(enum.Enum):
    """Unary operators."""
    NEG = auto()        # -x
    NOT = auto()        # !x
    BIT_NOT = auto()    # ~x
    PRE_INC = auto()    # ++x
    PRE_DEC = auto()    # --x
    POST_INC = auto()   # x++
    POST_DEC = auto()   # x--
    REF = auto()        # &x
    REF_MUT = auto()    # &var x
    DEREF = auto()      # *p

    @property
    def is_increment(self) -> bool:
        return self in (UnaryOp.PRE_INC, UnaryOp.PRE_DEC, UnaryOp.POST_INC, UnaryOp.POST_DEC)

    @property
    def is_postfix(self) -> bool:
        return self in (UnaryOp.POST_INC, UnaryOp.POST_DEC)

    @property
    def is_borrow(self) -> bool:
        return self in (UnaryOp.REF, UnaryOp.REF_MUT)


class LiteralKind(enum.Enum):
    INTEGER = auto()
    FLOAT = auto()
    STRING = auto()
    CHAR = auto()
    BOOL = auto()
    NULL = auto()


# =============================================================================
# Expression Nodes
# =============================================================================

@dataclass(frozen=True)
class Literal(Expression):
    """
    A literal value.

    Attributes:
        kind: Literal category
        value: Decoded value (int, float, str, bool or None)
        text: Exact source spelling, reused verbatim by the serializers
    """
    kind: LiteralKind = LiteralKind.INTEGER
    value: object = None
    text: str = ""


@dataclass(frozen=True)
class Identifier(Expression):
    name: str = ""


@dataclass(frozen=True)
class Binary(Expression):
    """Binary operation, including assignments (`op.is_assignment`)."""
    op: BinaryOp = BinaryOp.ADD
    left: Expression = None
    right: Expression = None


@dataclass(frozen=True)
class Unary(Expression):
    op: UnaryOp = UnaryOp.NEG
    operand: Expression = None


@dataclass(frozen=True)
class Call(Expression):
    callee: Expression = None
    args: tuple = ()


@dataclass(frozen=True)
class Cast(Expression):
    """C-style cast `(Type)operand`."""
    type: TypeRef = None
    operand: Expression = None


@dataclass(frozen=True)
class Ternary(Expression):
    condition: Expression = None
    then: Expression = None
    otherwise: Expression = None


@dataclass(frozen=True)
class FieldAccess(Expression):
    receiver: Expression = None
    field_name: str = ""


@dataclass(frozen=True)
class Index(Expression):
    receiver: Expression = None
    index: Expression = None


@dataclass(frozen=True)
class MethodCall(Expression):
    receiver: Expression = None
    method: str = ""
    args: tuple = ()


@dataclass(frozen=True)
class MacroInvocation(Expression):
    """
    Invocation of a `__NAME__` macro.

    Attributes:
        name: Macro name as written, underscores included
        args: Argument expressions, or None when written without parentheses
    """
    name: str = ""
    args: Optional[tuple] = None


@dataclass(frozen=True)
class Sizeof(Expression):
    type: TypeRef = None


@dataclass(frozen=True)
class FieldInit(Node):
    """One `.name = value` entry of a struct initializer."""
    name: str = ""
    value: Expression = None


@dataclass(frozen=True)
class StructInit(Expression):
    """Struct initializer `(Type){ .a = 1, .b = 2 }`."""
    type: TypeRef = None
    fields: tuple = ()


@dataclass(frozen=True)
class ArrayLiteral(Expression):
    elements: tuple = ()


@dataclass(frozen=True)
class Grouped(Expression):
    """Parenthesized expression, kept so source parentheses survive."""
    inner: Expression = None


# =============================================================================
# Statement Nodes
# =============================================================================

@dataclass(frozen=True)
class Block(Statement):
    statements: tuple = ()


@dataclass(frozen=True)
class LetDecl(Statement):
    """Immutable binding: `let [Type] name = init;`."""
    name: str = ""
    type: Optional[TypeRef] = None
    init: Optional[Expression] = None


@dataclass(frozen=True)
class VarDecl(Statement):
    """Mutable binding: `var [Type] name = init;` or C-style `Type name = init;`."""
    name: str = ""
    type: Optional[TypeRef] = None
    init: Optional[Expression] = None


@dataclass(frozen=True)
class ConstDecl(Statement):
    name: str = ""
    type: TypeRef = None
    init: Expression = None


@dataclass(frozen=True)
class If(Statement):
    """
    Conditional statement.

    Attributes:
        otherwise: None, a Block, or another If for `else if` chains
    """
    condition: Expression = None
    then: Block = None
    otherwise: Optional[Statement] = None


@dataclass(frozen=True)
class While(Statement):
    condition: Expression = None
    body: Block = None
    label: Optional[str] = None


@dataclass(frozen=True)
class For(Statement):
    """C-style `for (init; condition; step) body`; every header part is optional."""
    init: Optional[Statement] = None
    condition: Optional[Expression] = None
    step: Optional[Expression] = None
    body: Block = None
    label: Optional[str] = None


@dataclass(frozen=True)
class Return(Statement):
    value: Optional[Expression] = None


@dataclass(frozen=True)
class Break(Statement):
    label: Optional[str] = None


@dataclass(frozen=True)
class Continue(Statement):
    label: Optional[str] = None


@dataclass(frozen=True)
class ExprStmt(Statement):
    expression: Expression = None


# =============================================================================
# Item Nodes
# =============================================================================

class Receiver(enum.Enum):
    """How a method takes `self`."""
    SHARED = "&self"
    MUTABLE = "&var self"


@dataclass(frozen=True)
class Param(Node):
    name: str = ""
    type: TypeRef = None
    mutable: bool = False


@dataclass(frozen=True)
class Function(Item):
    """
    Function or method definition.

    Attributes:
        name: Function name
        params: Parameters (excluding the receiver)
        return_type: Declared return type (`void` for none)
        body: Function body
        is_static: True for `static` (module-private) functions
        receiver: For methods, how `self` is taken; None for free functions
    """
    name: str = ""
    params: tuple = ()
    return_type: TypeRef = None
    body: Block = None
    is_static: bool = False
    receiver: Optional[Receiver] = None


@dataclass(frozen=True)
class StructField(Node):
    name: str = ""
    type: TypeRef = None


@dataclass(frozen=True)
class Attribute(Node):
    """
    An outer attribute, `#[name]` or `#[name(arg, key = value)]`.

    Attributes:
        name: Attribute name
        args: Argument texts as written, or None without parentheses
    """
    name: str = ""
    args: Optional[tuple] = None


@dataclass(frozen=True)
class Struct(Item):
    name: str = ""
    fields: tuple = ()
    methods: tuple = ()
    is_static: bool = False
    attributes: tuple = ()


@dataclass(frozen=True)
class EnumVariant(Node):
    """A tag; `value` is the explicit discriminant, if written."""
    name: str = ""
    value: Optional[int] = None
    value_text: Optional[str] = None


@dataclass(frozen=True)
class Enum(Item):
    name: str = ""
    variants: tuple = ()
    is_static: bool = False
    attributes: tuple = ()


@dataclass(frozen=True)
class TypeDef(Item):
    name: str = ""
    target: TypeRef = None
    is_static: bool = False


@dataclass(frozen=True)
class Const(Item):
    name: str = ""
    type: TypeRef = None
    value: Expression = None
    is_static: bool = False


@dataclass(frozen=True)
class Use(Item):
    """`#import crate.a.b`; `path` holds the dotted segments."""
    path: tuple = ()

    @property
    def dotted(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True)
class ExternFunction(Node):
    name: str = ""
    params: tuple = ()
    return_type: TypeRef = None


@dataclass(frozen=True)
class Extern(Item):
    abi: str = "C"
    functions: tuple = ()


@dataclass(frozen=True)
class MacroDefinition(Item):
    """
    `#define __NAME__(params) body`.

    Attributes:
        name: Macro name with its double underscores
        params: Parameter names, or None for an object-like macro
        body: Body expression, or None for an empty body
    """
    name: str = ""
    params: Optional[tuple] = None
    body: Optional[Expression] = None


@dataclass(frozen=True)
class SourceFile(Node):
    """Root of one parsed file."""
    items: tuple = ()
    filename: str = "<input>"


# Closed variant sets, for exhaustive dispatch checks
ITEM_TYPES = (Function, Struct, Enum, TypeDef, Const, Use, Extern, MacroDefinition)
STATEMENT_TYPES = (LetDecl, VarDecl, ConstDecl, If, While, For, Return, Break, Continue, ExprStmt, Block)
EXPRESSION_TYPES = (
    Literal, Identifier, Binary, Unary, Call, Cast, Ternary, FieldAccess,
    Index, MethodCall, MacroInvocation, Sizeof, StructInit, ArrayLiteral, Grouped,
)


def strip_groups(expr: Expression) -> Expression:
    """Return the expression inside any number of grouping parentheses."""
    while isinstance(expr, Grouped):
        expr = expr.inner
    return expr


def children(node: Node):
    """Yield the direct child nodes of `node`, in field order."""
    for f in fields(node):
        value = getattr(node, f.name)
        if isinstance(value, Node):
            yield value
        elif isinstance(value, tuple):
            for item in value:
                if isinstance(item, Node):
                    yield item


def walk(node: Node):
    """Yield `node` and every descendant, depth first."""
    yield node
    for child in children(node):
        yield from walk(child)


# =============================================================================
# AST Visitor Pattern
# =============================================================================

class ASTVisitor:
    """
    Base class for AST visitors.

    Dispatches to `visit_<ClassName>`; unhandled nodes visit their children.

    Usage:
        class FunctionCounter(ASTVisitor):
            def __init__(self):
                self.count = 0

            def visit_Function(self, node):
                self.count += 1
    """

    def visit(self, node: Node):
        method_name = f"visit_{node.__class__.__name__}"
        visitor = getattr(self, method_name, self.generic_visit)
        return visitor(node)

    def generic_visit(self, node: Node) -> None:
        for child in children(node):
            self.visit(child)


# =============================================================================
# AST Pretty Printer
# =============================================================================

class ASTPrinter(ASTVisitor):
    """
    Indented dump of a tree, for `crustyc --ast`.

    Usage:
        print(ASTPrinter().print(tree))
    """

    def __init__(self):
        self.output: list[str] = []
        self.indent_level = 0

    def print(self, node: Node) -> str:
        self.output = []
        self.indent_level = 0
        self.visit(node)
        return "\n".join(self.output)

    def generic_visit(self, node: Node) -> None:
        attrs = []
        for f in fields(node):
            if f.name in ("span", "node_id"):
                continue
            value = getattr(node, f.name)
            if isinstance(value, (str, int, float, bool, enum.Enum)) and value not in ("", None):
                shown = value.name if isinstance(value, enum.Enum) else repr(value)
                attrs.append(f"{f.name}={shown}")

        suffix = f" {' '.join(attrs)}" if attrs else ""
        self.output.append(f"{'  ' * self.indent_level}{node.__class__.__name__}{suffix}")

        self.indent_level += 1
        for child in children(node):
            self.visit(child)
        self.indent_level -= 1
