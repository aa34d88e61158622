# =============================================================================
# test_parser.py - Parser Unit Tests
# =============================================================================
# Tests for the Crusty packrat parser.
#
# Test coverage includes:
#   - Items: functions, structs with methods, enums, typedefs, constants,
#     extern blocks, #import and #define directives
#   - `#[...]` attributes, reference types, borrows and dereferences
#   - Statements: bindings, C declarations, if chains, loops, labels
#   - Expression precedence and associativity
#   - Cast / grouping disambiguation and struct initializers
#   - Rejected constructs and "expected X, found Y" diagnostics
#   - Linear memo growth on long chains and deep nesting
# =============================================================================

import pytest

from crusty.errors import Position
from crusty.transpiler.ast import (
    ArrayLiteral, Binary, BinaryOp, Block, Break, Call, Cast, Const,
    ConstDecl, Continue, Enum, ExprStmt, Extern, FieldAccess, For, Function,
    Grouped, Identifier, If, Index, LetDecl, Literal, LiteralKind,
    MacroDefinition, MacroInvocation, MethodCall, Receiver, ReferenceTypeRef,
    Return, Sizeof, Struct, StructInit, Ternary, TypeDef, Unary, UnaryOp,
    Use, VarDecl, While, ASTPrinter,
)
from crusty.transpiler.errors import ErrorKind, Phase
from crusty.transpiler.lexer import tokenize
from crusty.transpiler.parser import Parser, collect_type_names, parse_source


# =============================================================================
# Helper Functions
# =============================================================================

def parse_ok(source: str):
    """Parse a module that must be valid and return its items."""
    result = parse_source(source, "<test>")
    assert result.error is None, result.error.format()
    return result.ast.items


def parse_error(source: str):
    """Parse a module that must fail and return the diagnostic."""
    result = parse_source(source, "<test>")
    assert result.ast is None
    assert result.error is not None
    return result.error


def expr(source: str, known_types=()):
    """Parse a lone expression."""
    tokens = tokenize(source, "<test>").tokens
    parsed, fault = Parser(tokens, "<test>", known_types=set(known_types)).parse_expression_only()
    assert fault is None, fault.format()
    return parsed


def body_of(source: str):
    """Statements of the first function in `source`."""
    function = parse_ok(source)[0]
    assert isinstance(function, Function)
    return function.body.statements


def stmt(source: str):
    """Parse one statement inside a void function."""
    statements = body_of("void f() { " + source + " }")
    assert len(statements) == 1
    return statements[0]


def name(node) -> str:
    assert isinstance(node, Identifier)
    return node.name


# =============================================================================
# Items
# =============================================================================

class TestFunctions:
    """Function definitions."""

    def test_simple_function(self):
        """Return type, name, parameters and body are captured."""
        items = parse_ok("int add(int a, int b) { return a + b; }")
        function = items[0]
        assert function.name == "add"
        assert function.return_type.name == "int"
        assert function.return_type.primitive
        assert [p.name for p in function.params] == ["a", "b"]
        assert not function.is_static
        assert function.receiver is None
        ret = function.body.statements[0]
        assert isinstance(ret, Return)
        assert ret.value.op == BinaryOp.ADD

    def test_static_function(self):
        """`static` marks a module-private function."""
        function = parse_ok("static void helper() { }")[0]
        assert function.is_static
        assert function.return_type.name == "void"

    def test_void_parameter_list(self):
        """`(void)` means no parameters."""
        function = parse_ok("int main(void) { return 0; }")[0]
        assert function.params == ()

    def test_mutable_parameter(self):
        """`var Type name` declares a mutable parameter."""
        function = parse_ok("void f(var int n, int m) { }")[0]
        assert [p.mutable for p in function.params] == [True, False]

    def test_string_and_array_types(self):
        """`char*` and `T[N]` are types."""
        function = parse_ok("void f(char* s, int[4] xs) { }")[0]
        assert function.params[0].type.name == "char*"
        assert function.params[1].type.size == 4
        assert function.params[1].type.element.name == "int"

    def test_spans_cover_the_item(self):
        """An item's span runs from its first to its last token."""
        function = parse_ok("\nint one() {\n    return 1;\n}\n")[0]
        assert function.span.start == Position(2, 1)
        assert function.span.end == Position(4, 2)


class TestStructs:
    """Struct declarations with fields and methods."""

    SOURCE = """
struct Point {
    int x;
    int y;

    int sum(&self) { return self.x + self.y; }
    void move_by(&var self, int dx) { self.x += dx; }
    static Point new(int x, int y) { return (Point){ .x = x, .y = y }; }
}
"""

    def test_fields(self):
        """Fields keep their order and types."""
        struct = parse_ok(self.SOURCE)[0]
        assert isinstance(struct, Struct)
        assert [(f.name, f.type.name) for f in struct.fields] == [("x", "int"), ("y", "int")]

    def test_method_receivers(self):
        """`&self`, `&var self` and associated functions are told apart."""
        struct = parse_ok(self.SOURCE)[0]
        receivers = {m.name: m.receiver for m in struct.methods}
        assert receivers == {
            "sum": Receiver.SHARED,
            "move_by": Receiver.MUTABLE,
            "new": None,
        }
        new = struct.methods[2]
        assert new.is_static
        assert [p.name for p in new.params] == ["x", "y"]

    def test_receiver_is_not_a_parameter(self):
        """The receiver is not listed among the parameters."""
        struct = parse_ok(self.SOURCE)[0]
        move_by = struct.methods[1]
        assert [p.name for p in move_by.params] == ["dx"]

    def test_trailing_semicolon_allowed(self):
        """C-style `};` after a struct is accepted."""
        struct = parse_ok("struct Empty { };")[0]
        assert struct.fields == () and struct.methods == ()


class TestOtherItems:
    """Enums, typedefs, constants, externs and directives."""

    def test_enum_discriminants(self):
        """Explicit discriminants keep their value and spelling."""
        enum = parse_ok("enum Color { Red, Green = 5, Blue = -1, }")[0]
        assert isinstance(enum, Enum)
        assert [v.name for v in enum.variants] == ["Red", "Green", "Blue"]
        assert [v.value for v in enum.variants] == [None, 5, -1]
        assert [v.value_text for v in enum.variants] == [None, "5", "-1"]

    def test_typedef(self):
        """typedef names a type alias."""
        typedef = parse_ok("typedef int Meters;")[0]
        assert isinstance(typedef, TypeDef)
        assert typedef.name == "Meters"
        assert typedef.target.name == "int"

    def test_const_item(self):
        """A module constant has a type and a value."""
        const = parse_ok("const int MAX = 10 * 2;")[0]
        assert isinstance(const, Const)
        assert const.name == "MAX"
        assert const.value.op == BinaryOp.MUL

    def test_extern_block(self):
        """extern "C" holds prototypes."""
        extern = parse_ok('extern "C" { int abs(int x); void exit(int code); }')[0]
        assert isinstance(extern, Extern)
        assert extern.abi == "C"
        assert [f.name for f in extern.functions] == ["abs", "exit"]
        assert extern.functions[0].return_type.name == "int"

    @pytest.mark.parametrize("source", [
        "#import crate.utils.math",
        "#import crate.utils.math;",
    ])
    def test_import(self, source):
        """#import takes a dotted path; the semicolon is optional."""
        use = parse_ok(source)[0]
        assert isinstance(use, Use)
        assert use.path == ("crate", "utils", "math")
        assert use.dotted == "crate.utils.math"

    def test_function_like_macro(self):
        """The body of #define is the rest of the line, parsed as an expression."""
        items = parse_ok("#define __MAX__(a, b) ((a) > (b) ? (a) : (b))\nint f() { return 1; }")
        macro = items[0]
        assert isinstance(macro, MacroDefinition)
        assert macro.name == "__MAX__"
        assert macro.params == ("a", "b")
        assert isinstance(macro.body, Grouped)
        assert isinstance(macro.body.inner, Ternary)
        assert isinstance(items[1], Function)

    def test_object_like_macro(self):
        """Without parentheses right after the name there are no parameters."""
        macro = parse_ok("#define __PI__ 3.14")[0]
        assert macro.params is None
        assert macro.body.kind == LiteralKind.FLOAT

    def test_macro_invocation(self):
        """`__NAME__(args)` is a macro invocation, not a call."""
        node = expr('__println__("{}", x)')
        assert isinstance(node, MacroInvocation)
        assert node.name == "__println__"
        assert len(node.args) == 2

class TestAttributes:
    """`#[...]` attributes on structs and enums."""

    def test_derive_on_struct(self):
        """Arguments are kept as written."""
        struct = parse_ok("#[derive(Debug, Clone)]\nstruct Point { int x; }")[0]
        assert isinstance(struct, Struct)
        assert [(a.name, a.args) for a in struct.attributes] == [("derive", ("Debug", "Clone"))]

    def test_several_attributes_on_static_enum(self):
        """Attributes stack and come before `static`."""
        enum = parse_ok("#[repr(u8)]\n#[allow(dead_code)]\n#[non_exhaustive]\nstatic enum Color { Red }")[0]
        assert isinstance(enum, Enum)
        assert enum.is_static
        assert [(a.name, a.args) for a in enum.attributes] == [
            ("repr", ("u8",)),
            ("allow", ("dead_code",)),
            ("non_exhaustive", None),
        ]

    def test_name_value_argument(self):
        """`key = literal` inside the parentheses."""
        struct = parse_ok('#[cfg_attr(feature = "serde", derive)]\nstruct S { }')[0]
        assert struct.attributes[0].args == ('feature = "serde"', "derive")

    def test_span_starts_at_attribute(self):
        """The item's span includes its attributes."""
        struct = parse_ok("#[derive(Debug)]\nstruct S { }")[0]
        assert struct.span.start == Position(1, 1)

    def test_attribute_needs_struct_or_enum(self):
        """Functions cannot carry attributes."""
        error = parse_error("#[inline]\nint f() { return 1; }")
        assert error.message == "expected `struct` or `enum`, found `int`"

    def test_unclosed_attribute(self):
        error = parse_error("#[derive(Debug)\nstruct S { }")
        assert error.message == "expected `]`, found `struct`"


# =============================================================================
# Statements
# =============================================================================

class TestStatements:
    """Statement forms."""

    def test_let_without_type(self):
        """`let x = e;` is an immutable binding with an inferred type."""
        node = stmt("let x = 5;")
        assert isinstance(node, LetDecl)
        assert node.name == "x"
        assert node.type is None
        assert node.init.value == 5

    def test_let_with_type(self):
        """`let Type x = e;` carries the written type."""
        node = stmt("let int x = 5;")
        assert node.type.name == "int"

    def test_var_binding(self):
        """`var` makes a mutable binding."""
        assert isinstance(stmt("var total = 0;"), VarDecl)

    def test_c_style_declaration(self):
        """`Type name = e;` is a mutable binding."""
        node = stmt("int count = 0;")
        assert isinstance(node, VarDecl)
        assert node.type.name == "int"

    def test_c_style_declaration_user_type(self):
        """A declaration may name a user type and omit the initializer."""
        node = stmt("Point p;")
        assert isinstance(node, VarDecl)
        assert node.type.name == "Point"
        assert node.init is None

    def test_const_statement(self):
        """Local constants need a type and a value."""
        node = stmt("const int K = 3;")
        assert isinstance(node, ConstDecl)
        assert node.type.name == "int"

    def test_assignment_statement(self):
        """An identifier followed by `=` is an assignment, not a declaration."""
        node = stmt("x = 3;")
        assert isinstance(node, ExprStmt)
        assert node.expression.op == BinaryOp.ASSIGN

    def test_if_else_chain(self):
        """`else if` nests an If in the else branch."""
        node = stmt("if (a) { x = 1; } else if (b) { x = 2; } else { x = 3; }")
        assert isinstance(node, If)
        assert isinstance(node.otherwise, If)
        assert isinstance(node.otherwise.otherwise, Block)

    def test_if_body_without_braces(self):
        """A lone statement body is wrapped in a Block."""
        node = stmt("if (a) x = 1;")
        assert isinstance(node.then, Block)
        assert len(node.then.statements) == 1

    def test_while(self):
        """while takes a condition and a body."""
        node = stmt("while (i < 10) { i++; }")
        assert isinstance(node, While)
        assert node.label is None
        assert node.condition.op == BinaryOp.LT

    def test_for(self):
        """C-style for keeps its three header parts."""
        node = stmt("for (int i = 0; i < 10; i++) { }")
        assert isinstance(node, For)
        assert isinstance(node.init, VarDecl)
        assert node.condition.op == BinaryOp.LT
        assert node.step.op == UnaryOp.POST_INC

    def test_for_with_assignment_init(self):
        """The init clause may be an expression statement."""
        node = stmt("for (i = 0; i < n; i += 1) { }")
        assert isinstance(node.init, ExprStmt)
        assert node.step.op == BinaryOp.ADD_ASSIGN

    def test_empty_for(self):
        """Every header part of for is optional."""
        node = stmt("for (;;) { break; }")
        assert node.init is None and node.condition is None and node.step is None

    def test_labeled_loop(self):
        """`.label:` names a loop; break/continue may target it."""
        node = stmt(".outer: while (true) { for (;;) { break .outer; } continue .outer; }")
        assert isinstance(node, While)
        assert node.label == "outer"
        inner = node.body.statements[0]
        assert isinstance(inner.body.statements[0], Break)
        assert inner.body.statements[0].label == "outer"
        assert isinstance(node.body.statements[1], Continue)
        assert node.body.statements[1].label == "outer"

    def test_labeled_for(self):
        """A for loop can carry a label too."""
        node = stmt(".rows: for (;;) { break .rows; }")
        assert isinstance(node, For)
        assert node.label == "rows"

    def test_bare_return(self):
        """return without a value."""
        node = stmt("return;")
        assert isinstance(node, Return)
        assert node.value is None

    def test_nested_block(self):
        """A brace block is a statement."""
        node = stmt("{ let a = 1; }")
        assert isinstance(node, Block)


# =============================================================================
# Expressions
# =============================================================================

class TestPrecedence:
    """Operator precedence and associativity."""

    def test_multiplication_binds_tighter(self):
        """1 + 2 * 3 groups as 1 + (2 * 3)."""
        node = expr("1 + 2 * 3")
        assert node.op == BinaryOp.ADD
        assert node.right.op == BinaryOp.MUL

    def test_left_associative(self):
        """a - b - c groups as (a - b) - c."""
        node = expr("a - b - c")
        assert node.op == BinaryOp.SUB
        assert node.left.op == BinaryOp.SUB
        assert name(node.right) == "c"

    def test_assignment_right_associative(self):
        """a = b = c groups as a = (b = c)."""
        node = expr("a = b = c")
        assert name(node.left) == "a"
        assert node.right.op == BinaryOp.ASSIGN

    def test_ternary_right_associative(self):
        """a ? b : c ? d : e nests in the else branch."""
        node = expr("a ? b : c ? d : e")
        assert isinstance(node, Ternary)
        assert isinstance(node.otherwise, Ternary)

    @pytest.mark.parametrize("source,outer,inner_side,inner", [
        ("a || b && c", BinaryOp.OR, "right", BinaryOp.AND),
        ("a | b ^ c", BinaryOp.BIT_OR, "right", BinaryOp.BIT_XOR),
        ("a ^ b & c", BinaryOp.BIT_XOR, "right", BinaryOp.BIT_AND),
        ("a & b == c", BinaryOp.BIT_AND, "right", BinaryOp.EQ),
        ("a == b < c", BinaryOp.EQ, "right", BinaryOp.LT),
        ("a < b << c", BinaryOp.LT, "right", BinaryOp.SHL),
        ("a << 1 + 2", BinaryOp.SHL, "right", BinaryOp.ADD),
        ("a * b + c", BinaryOp.ADD, "left", BinaryOp.MUL),
    ])
    def test_level_ordering(self, source, outer, inner_side, inner):
        """Each level binds looser than the next."""
        node = expr(source)
        assert node.op == outer
        assert getattr(node, inner_side).op == inner

    def test_prefix_binds_tighter_than_binary(self):
        """-x * y groups as (-x) * y."""
        node = expr("-x * y")
        assert node.op == BinaryOp.MUL
        assert node.left.op == UnaryOp.NEG

    def test_postfix_chain(self):
        """Calls, fields, methods and indexing chain left to right."""
        node = expr("a.b.c(1)[2]")
        assert isinstance(node, Index)
        assert isinstance(node.receiver, MethodCall)
        assert node.receiver.method == "c"
        assert isinstance(node.receiver.receiver, FieldAccess)

    def test_call_of_call(self):
        """f(1)(2) is a call of the result of f(1)."""
        node = expr("f(1)(2)")
        assert isinstance(node, Call)
        assert isinstance(node.callee, Call)

    def test_postfix_increment(self):
        """x++ + 1 adds to the incremented expression."""
        node = expr("x++ + 1")
        assert node.op == BinaryOp.ADD
        assert node.left.op == UnaryOp.POST_INC

    def test_parentheses_are_kept(self):
        """(a + b) * c keeps the Grouped node."""
        node = expr("(a + b) * c")
        assert isinstance(node.left, Grouped)
        assert node.left.inner.op == BinaryOp.ADD

    def test_literals(self):
        """Literal kinds and exact spellings."""
        nodes = [expr(t) for t in ("0x1F", "2.5", '"s"', "'c'", "true", "NULL")]
        assert [n.kind for n in nodes] == [
            LiteralKind.INTEGER, LiteralKind.FLOAT, LiteralKind.STRING,
            LiteralKind.CHAR, LiteralKind.BOOL, LiteralKind.NULL,
        ]
        assert nodes[0].text == "0x1F"
        assert nodes[0].value == 31

    def test_array_literal(self):
        """[1, 2, 3] with an optional trailing comma."""
        node = expr("[1, 2, 3,]")
        assert isinstance(node, ArrayLiteral)
        assert len(node.elements) == 3

    def test_sizeof(self):
        """sizeof takes a type."""
        node = expr("sizeof(int)")
        assert isinstance(node, Sizeof)
        assert node.type.name == "int"


class TestReferences:
    """`&T` types, borrows and dereferences."""

    def test_reference_parameters(self):
        """`&T` and `&var T` parameters, told apart from a receiver."""
        function = parse_ok("void f(&int a, &var Point b, &char* s) { }")[0]
        a, b, s = function.params
        assert isinstance(a.type, ReferenceTypeRef)
        assert not a.type.mutable
        assert a.type.element.name == "int"
        assert b.type.mutable
        assert b.type.element.name == "Point"
        assert s.type.element.name == "char*"
        assert function.receiver is None

    def test_method_with_reference_parameter(self):
        """`&self` is the receiver; a later `&T` is an ordinary parameter."""
        struct = parse_ok("struct P { int x; void copy_from(&var self, &P other) { } }")[0]
        method = struct.methods[0]
        assert method.receiver == Receiver.MUTABLE
        assert [p.name for p in method.params] == ["other"]
        assert isinstance(method.params[0].type, ReferenceTypeRef)

    def test_reference_to_array(self):
        """`&int[3]` borrows the whole array."""
        function = parse_ok("void f(&int[3] xs) { }")[0]
        ref = function.params[0].type
        assert isinstance(ref, ReferenceTypeRef)
        assert ref.element.size == 3

    def test_reference_binding(self):
        """A typed `let` with a reference type."""
        decl = stmt("let &var int r = &var x;")
        assert isinstance(decl, LetDecl)
        assert decl.type.mutable
        assert decl.init.op == UnaryOp.REF_MUT
        assert name(decl.init.operand) == "x"

    def test_borrow_and_deref(self):
        """Prefix `&` borrows and prefix `*` dereferences."""
        node = expr("&x")
        assert isinstance(node, Unary) and node.op == UnaryOp.REF
        node = expr("*p")
        assert isinstance(node, Unary) and node.op == UnaryOp.DEREF

    def test_deref_assignment(self):
        """`*p = 1` assigns through the reference."""
        node = stmt("*p = 1;").expression
        assert node.op == BinaryOp.ASSIGN
        assert node.left.op == UnaryOp.DEREF

    def test_prefix_binds_looser_than_postfix(self):
        """*p.x dereferences the field, &a[0] borrows the element."""
        node = expr("*p.x")
        assert node.op == UnaryOp.DEREF
        assert isinstance(node.operand, FieldAccess)
        node = expr("&a[0]")
        assert node.op == UnaryOp.REF
        assert isinstance(node.operand, Index)

    def test_binary_forms_are_unchanged(self):
        """Infix `&` and `*` are still bitwise and and multiplication."""
        node = expr("a & *b")
        assert node.op == BinaryOp.BIT_AND
        assert node.right.op == UnaryOp.DEREF
        node = expr("a * &b")
        assert node.op == BinaryOp.MUL
        assert node.right.op == UnaryOp.REF

    def test_cast_of_deref(self):
        """(int)*p casts the dereferenced value."""
        node = expr("(int)*p")
        assert isinstance(node, Cast)
        assert node.operand.op == UnaryOp.DEREF


class TestCastDisambiguation:
    """`(` followed by a known type commits to a cast."""

    def test_primitive_cast(self):
        """(int)x is a cast."""
        node = expr("(int)x")
        assert isinstance(node, Cast)
        assert node.type.name == "int"
        assert name(node.operand) == "x"

    def test_known_type_with_parenthesized_operand(self):
        """(Foo)(x) is a cast of a grouped expression when Foo is a type."""
        node = expr("(Foo)(x)", known_types={"Foo"})
        assert isinstance(node, Cast)
        assert node.type.name == "Foo"
        assert isinstance(node.operand, Grouped)

    def test_unknown_name_is_grouping(self):
        """(a) + b groups when `a` is not a type."""
        node = expr("(a) + b")
        assert node.op == BinaryOp.ADD
        assert isinstance(node.left, Grouped)

    def test_unknown_name_before_paren_is_call(self):
        """(f)(x) calls a grouped callee when `f` is not a type."""
        node = expr("(f)(x)")
        assert isinstance(node, Call)
        assert isinstance(node.callee, Grouped)

    def test_type_followed_by_operator_is_grouping(self):
        """(Foo) + b cannot be a cast: `+` does not begin an operand."""
        node = expr("(Foo) + b", known_types={"Foo"})
        assert node.op == BinaryOp.ADD
        assert isinstance(node.left, Grouped)

    def test_cast_of_negation(self):
        """(int)-x casts the negation."""
        node = expr("(int)-x")
        assert isinstance(node, Cast)
        assert node.operand.op == UnaryOp.NEG

    def test_cast_binds_tighter_than_binary(self):
        """(int)x + 1 adds to the cast."""
        node = expr("(int)x + 1")
        assert node.op == BinaryOp.ADD
        assert isinstance(node.left, Cast)

    def test_struct_initializer(self):
        """(Point){ .x = 1, .y = 2 } builds a struct."""
        node = expr("(Point){ .x = 1, .y = 2 }", known_types={"Point"})
        assert isinstance(node, StructInit)
        assert node.type.name == "Point"
        assert [f.name for f in node.fields] == ["x", "y"]

    def test_type_declared_after_use(self):
        """The pre-scan makes types declared later in the file castable."""
        items = parse_ok("int f() { return (Foo)(1); }\ntypedef int Foo;")
        ret = items[0].body.statements[0]
        assert isinstance(ret.value, Cast)

    def test_collect_type_names(self):
        """Struct, enum and typedef names are pre-scanned."""
        tokens = tokenize("struct A { } enum B { X } typedef int C;").tokens
        assert collect_type_names(tokens) == {"A", "B", "C"}


# =============================================================================
# Rejected Constructs
# =============================================================================

class TestUnsupportedFeatures:
    """Constructs the language rejects name their alternative."""

    @pytest.mark.parametrize("source,message", [
        ("union U { int a; };", "`union` is not supported; use `struct` or `enum` instead"),
        ("void f() { goto end; }", "`goto` is not supported; use labeled `break`/`continue` instead"),
        ("#include <stdio.h>", "`#include` is not supported; use `#import` instead"),
        ("int counter = 0;", "`mutable global variable` is not supported; use `const` instead"),
        ("enum Shape { Circle(int) }", "`enum variant payload` is not supported; use a struct with a tag field instead"),
    ])
    def test_rejected(self, source, message):
        """Each rejection is an UnsupportedFeature parse fault."""
        error = parse_error(source)
        assert error.phase == Phase.PARSE
        assert error.kind == ErrorKind.UNSUPPORTED_FEATURE
        assert error.message == message

    def test_non_macro_define(self):
        """#define names must look like `__NAME__`."""
        error = parse_error("#define MAX(a) a")
        assert error.kind == ErrorKind.UNSUPPORTED_FEATURE
        assert "`__NAME__`" in error.message


# =============================================================================
# Syntax Errors
# =============================================================================

class TestSyntaxErrors:
    """Fail-fast "expected X, found Y" diagnostics."""

    def test_missing_semicolon(self):
        """The fault points at the token where `;` was expected."""
        error = parse_error("int main() { return 1 }")
        assert error.kind == ErrorKind.UNEXPECTED_TOKEN
        assert error.message == "expected `;`, found `}`"
        assert error.span.start == Position(1, 23)
        assert error.source_line == "int main() { return 1 }"

    def test_missing_expression(self):
        """A missing operand is ExpectedExpression."""
        error = parse_error("int main() { let x = ; }")
        assert error.kind == ErrorKind.EXPECTED_EXPRESSION
        assert error.message == "expected expression, found `;`"

    def test_missing_struct_name(self):
        """struct needs a name."""
        error = parse_error("struct { }")
        assert error.message == "expected identifier, found `{`"

    def test_unclosed_block(self):
        """Running out of input reports end of input."""
        error = parse_error("void f() { let x = 1;")
        assert error.message.endswith("found end of input")

    def test_lexical_error_surfaces(self):
        """A lexer fault is the parse result's error."""
        error = parse_error("int f() { return 1 $ 2; }")
        assert error.phase == Phase.LEX

    def test_format_includes_caret(self):
        """The rendered diagnostic shows the line and a caret."""
        error = parse_error("int main() { return 1 }")
        lines = error.format().split("\n")
        assert lines[0] == "<test>:1:23: error[parse]: expected `;`, found `}`"
        assert lines[1] == "    int main() { return 1 }"
        assert lines[2] == " " * 26 + "^"


# =============================================================================
# Linear Time
# =============================================================================

def parse_counting(source: str):
    """Parse `source` and return (result, memo entries, token count)."""
    tokens = tokenize(source, "<test>").tokens
    parser = Parser(tokens, "<test>")
    result = parser.parse()
    return result, len(parser._memo), len(tokens)


# At most one entry per memoized rule and binary level at each position
MEMO_PER_TOKEN = 30


class TestLinearTime:
    """Memoization keeps large inputs linear in the token count."""

    def test_long_binary_chain(self):
        """5000 operands joined by `+`."""
        operands = " + ".join(str(i) for i in range(5000))
        result, memo, tokens = parse_counting(f"int f() {{ return {operands}; }}")
        assert result.ok
        assert memo <= MEMO_PER_TOKEN * tokens

    def test_chain_memo_grows_linearly(self):
        """Doubling the chain at most doubles the memo, plus a constant."""
        sizes = []
        for count in (1000, 2000):
            operands = " * ".join("x" for _ in range(count))
            result, memo, _ = parse_counting(f"int f(int x) {{ return {operands}; }}")
            assert result.ok
            sizes.append(memo)
        assert sizes[1] <= 2 * sizes[0] + 100

    def test_deep_parentheses(self):
        """50 levels of grouping."""
        source = "int f() { return " + "(" * 50 + "1" + ")" * 50 + "; }"
        result, memo, tokens = parse_counting(source)
        assert result.ok
        assert memo <= MEMO_PER_TOKEN * tokens

    def test_deep_casts(self):
        """50 stacked casts, each one a committed cast prefix."""
        source = "int f(int x) { return " + "(int)" * 50 + "x; }"
        result, memo, tokens = parse_counting(source)
        assert result.ok
        ret = result.ast.items[0].body.statements[0]
        depth = 0
        node = ret.value
        while isinstance(node, Cast):
            depth += 1
            node = node.operand
        assert depth == 50
        assert memo <= MEMO_PER_TOKEN * tokens

    def test_long_else_if_chain(self):
        """200 `else if` branches."""
        branches = " else ".join(f"if (x == {i}) {{ return {i}; }}" for i in range(200))
        source = f"int f(int x) {{ {branches} return -1; }}"
        result, memo, tokens = parse_counting(source)
        assert result.ok
        assert memo <= MEMO_PER_TOKEN * tokens


# =============================================================================
# AST Printer
# =============================================================================

class TestASTPrinter:
    """Debug dump used by `crustyc --ast`."""

    def test_dump(self):
        """Node classes are indented by depth with their scalar fields."""
        items = parse_ok("int one() { return 1; }")
        text = ASTPrinter().print(items[0])
        lines = text.split("\n")
        assert lines[0].startswith("Function name='one'")
        assert any(line.strip().startswith("Return") for line in lines)
        assert any("Literal kind=INTEGER value=1" in line for line in lines)
