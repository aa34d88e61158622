"""
Crusty Packrat Parser
=====================

This module turns the token stream from the lexer into an AST. It is a
memoizing (packrat) recursive descent parser: every rule is a method,
ordered choice is expressed with mark/reset, and each rule's result is
cached per token position so backtracking never re-parses the same
region twice. Left-recursive rules (the binary precedence levels and the
postfix chain) grow their result from a seed in a loop, which gives
left-associative trees without hand-written iteration.

Grammar (Simplified PEG)
------------------------
source_file     <- item* EOF
item            <- directive / attributed / struct / enum / typedef / const
                 / extern / function
directive       <- '#' ('import' path ';'? / 'define' MACRO params? body)
attributed      <- attribute+ (struct / enum)
attribute       <- '#' '[' IDENT ('(' attr_arg (',' attr_arg)* ')')? ']'
attr_arg        <- literal / WORD ('=' literal)?
struct          <- 'static'? 'struct' IDENT '{' (field / method)* '}'
enum            <- 'static'? 'enum' IDENT '{' variant (',' variant)* ','? '}'
function        <- 'static'? type IDENT '(' params ')' block
type            <- '&' 'var'? type / (PRIMITIVE / IDENT) ('[' INT ']')*

statement       <- block / let / var / const / if / labeled_loop / while
                 / for / return / break / continue / c_declaration
                 / expression ';'

expression      <- assignment
assignment      <- unary ASSIGN_OP assignment / ternary
ternary         <- logical_or ('?' expression ':' ternary)?
logical_or ... multiplicative   (left recursive, one rule per level)
unary           <- cast / struct_init / PREFIX_OP unary
                 / 'sizeof' '(' type ')' / postfix
postfix         <- postfix ('(' args ')' / '[' expression ']'
                 / '.' IDENT ('(' args ')')? / '++' / '--') / primary
primary         <- literal / MACRO ('(' args ')')? / IDENT / 'self'
                 / '(' expression ')' / '[' elements ']'

Expression Precedence (lowest to highest)
-----------------------------------------
1.  assignment     = += -= *= /= %= &= |= ^= <<= >>=   (right)
2.  ternary        ?:                                  (right)
3.  logical_or     ||
4.  logical_and    &&
5.  bitwise_or     |
6.  bitwise_xor    ^
7.  bitwise_and    &
8.  equality       == !=
9.  relational     < > <= >=
10. shift          << >>
11. additive       + -
12. multiplicative * / %
13. unary          - ! ~ ++ -- & &var * (cast) sizeof
14. postfix        () [] . ++ --

Casts and Grouping
------------------
`(` followed by a known type name, `)` and a token that can begin an
operand commits to a cast; there is no fallback to grouping once that
prefix is seen. `(Name){` starts a struct initializer for any type name,
imported ones included. Everything else in parentheses is a grouped
expression. The known-type set is collected by a pre-scan of the file
(struct, enum and typedef names) plus the primitive keywords, so a name
declared after its first use still counts.

Fault Handling
--------------
The parser is fail-fast. A rule that does not match returns None and
restores the position; the furthest position any rule failed at, with
the set of things expected there, becomes the single diagnostic
"expected X, found Y". Constructs the language rejects (`union`,
`goto`, `#include`, mutable globals, enum payloads) stop the parse at
once with an UnsupportedFeature diagnostic naming the alternative.

Example Usage
-------------
>>> from crusty.transpiler.parser import parse_source
>>> result = parse_source('int main() { return 42; }', "main.crst")
>>> result.ast.items[0].name
'main'
"""

from dataclasses import dataclass
from functools import wraps
from typing import Dict, List, Optional, Set
import logging

from crusty.errors import Span
from crusty.transpiler.ast import (
    ArrayLiteral, ArrayTypeRef, Attribute, Binary, BinaryOp, Block, Break,
    Call, Cast, Const, ConstDecl, Continue, Enum, EnumVariant, ExprStmt,
    Expression, Extern, ExternFunction, FieldAccess, FieldInit, For,
    Function, Grouped, Identifier, If, Index, Item, LetDecl, Literal,
    LiteralKind, MacroDefinition, MacroInvocation, MethodCall, Param,
    Receiver, ReferenceTypeRef, Return, Sizeof, SourceFile, Statement,
    Struct, StructField, StructInit, Ternary, TypeDef, TypeName, TypeRef,
    Unary, UnaryOp, Use, VarDecl, While,
)
from crusty.transpiler.errors import (
    Diagnostic, ErrorKind, expected_found, unsupported_feature,
)
from crusty.transpiler.lexer import (
    KEYWORDS, OPERATORS, PRIMITIVE_TYPE_TOKENS, Token, TokenType, tokenize,
)
from crusty.transpiler.macros import is_macro_name


logger = logging.getLogger(__name__)


# =============================================================================
# Operator Tables
# =============================================================================

# One entry per binary precedence level, lowest first
BINARY_LEVELS: tuple = (
    {TokenType.OR: BinaryOp.OR},
    {TokenType.AND: BinaryOp.AND},
    {TokenType.PIPE: BinaryOp.BIT_OR},
    {TokenType.CARET: BinaryOp.BIT_XOR},
    {TokenType.AMPERSAND: BinaryOp.BIT_AND},
    {TokenType.EQ: BinaryOp.EQ, TokenType.NE: BinaryOp.NE},
    {
        TokenType.LT: BinaryOp.LT, TokenType.GT: BinaryOp.GT,
        TokenType.LE: BinaryOp.LE, TokenType.GE: BinaryOp.GE,
    },
    {TokenType.LSHIFT: BinaryOp.SHL, TokenType.RSHIFT: BinaryOp.SHR},
    {TokenType.PLUS: BinaryOp.ADD, TokenType.MINUS: BinaryOp.SUB},
    {TokenType.STAR: BinaryOp.MUL, TokenType.SLASH: BinaryOp.DIV, TokenType.PERCENT: BinaryOp.MOD},
)

ASSIGNMENT_TOKENS: Dict[TokenType, BinaryOp] = {
    TokenType.ASSIGN: BinaryOp.ASSIGN,
    TokenType.PLUS_ASSIGN: BinaryOp.ADD_ASSIGN,
    TokenType.MINUS_ASSIGN: BinaryOp.SUB_ASSIGN,
    TokenType.STAR_ASSIGN: BinaryOp.MUL_ASSIGN,
    TokenType.SLASH_ASSIGN: BinaryOp.DIV_ASSIGN,
    TokenType.PERCENT_ASSIGN: BinaryOp.MOD_ASSIGN,
    TokenType.AND_ASSIGN: BinaryOp.AND_ASSIGN,
    TokenType.OR_ASSIGN: BinaryOp.OR_ASSIGN,
    TokenType.XOR_ASSIGN: BinaryOp.XOR_ASSIGN,
    TokenType.LSHIFT_ASSIGN: BinaryOp.SHL_ASSIGN,
    TokenType.RSHIFT_ASSIGN: BinaryOp.SHR_ASSIGN,
}

PREFIX_TOKENS: Dict[TokenType, UnaryOp] = {
    TokenType.MINUS: UnaryOp.NEG,
    TokenType.NOT: UnaryOp.NOT,
    TokenType.TILDE: UnaryOp.BIT_NOT,
    TokenType.INCREMENT: UnaryOp.PRE_INC,
    TokenType.DECREMENT: UnaryOp.PRE_DEC,
    TokenType.AMPERSAND: UnaryOp.REF,
    TokenType.STAR: UnaryOp.DEREF,
}

# Tokens that can begin the operand of a cast
OPERAND_START = frozenset({
    TokenType.IDENTIFIER, TokenType.INTEGER, TokenType.FLOAT,
    TokenType.STRING, TokenType.CHAR_LITERAL, TokenType.TRUE,
    TokenType.FALSE, TokenType.NULL, TokenType.SELF, TokenType.LPAREN,
    TokenType.LBRACKET, TokenType.MINUS, TokenType.NOT, TokenType.TILDE,
    TokenType.INCREMENT, TokenType.DECREMENT, TokenType.SIZEOF,
    TokenType.AMPERSAND, TokenType.STAR,
})

LITERAL_TOKENS: Dict[TokenType, LiteralKind] = {
    TokenType.INTEGER: LiteralKind.INTEGER,
    TokenType.FLOAT: LiteralKind.FLOAT,
    TokenType.STRING: LiteralKind.STRING,
    TokenType.CHAR_LITERAL: LiteralKind.CHAR,
    TokenType.TRUE: LiteralKind.BOOL,
    TokenType.FALSE: LiteralKind.BOOL,
    TokenType.NULL: LiteralKind.NULL,
}

# Spellings used in "expected X" messages
_SPELLINGS: Dict[TokenType, str] = {t: f"`{text}`" for text, t in OPERATORS}
_SPELLINGS.update({t: f"`{text}`" for text, t in KEYWORDS.items()})
_SPELLINGS.update({
    TokenType.IDENTIFIER: "identifier",
    TokenType.INTEGER: "integer literal",
    TokenType.FLOAT: "float literal",
    TokenType.STRING: "string literal",
    TokenType.CHAR_LITERAL: "character literal",
    TokenType.EOF: "end of input",
})


def collect_type_names(tokens: List[Token]) -> Set[str]:
    """
    Pre-scan a token list for user-defined type names.

    Picks up `struct NAME`, `enum NAME` and the name declared by each
    `typedef ... NAME;`.
    """
    names: Set[str] = set()
    for i, token in enumerate(tokens):
        if token.type in (TokenType.STRUCT, TokenType.ENUM):
            if i + 1 < len(tokens) and tokens[i + 1].type == TokenType.IDENTIFIER:
                names.add(tokens[i + 1].lexeme)
        elif token.type == TokenType.TYPEDEF:
            j = i + 1
            while j < len(tokens) and tokens[j].type not in (TokenType.SEMICOLON, TokenType.EOF):
                j += 1
            if tokens[j - 1].type == TokenType.IDENTIFIER and j - 1 > i:
                names.add(tokens[j - 1].lexeme)
    return names


# =============================================================================
# Memoization Decorators
# =============================================================================

def memoize(method):
    """
    Cache a rule's result per (rule, position, arguments).

    A failed rule leaves the position where it started.
    """
    name = method.__name__

    @wraps(method)
    def wrapper(self, *args):
        if self._fault is not None:
            return None
        start = self._pos
        key = (name, start, args)
        cached = self._memo.get(key)
        if cached is not None:
            result, end = cached
            self._pos = end
            return result
        result = method(self, *args)
        if result is None:
            self._pos = start
        self._memo[key] = (result, self._pos)
        return result

    return wrapper


def memoize_left_rec(method):
    """
    Memoize a directly left-recursive rule by growing a seed.

    The cache entry for the current position is first seeded with a
    failure, then the rule is re-run as long as each run consumes more
    tokens than the last; the longest parse wins.
    """
    name = method.__name__

    @wraps(method)
    def wrapper(self, *args):
        if self._fault is not None:
            return None
        start = self._pos
        key = (name, start, args)
        cached = self._memo.get(key)
        if cached is not None:
            result, end = cached
            self._pos = end
            return result

        self._memo[key] = (None, start)
        best, best_end = None, start
        while True:
            self._pos = start
            result = method(self, *args)
            end = self._pos
            if self._fault is not None or result is None or end <= best_end:
                break
            best, best_end = result, end
            self._memo[key] = (best, best_end)

        self._pos = best_end
        return best

    return wrapper


# =============================================================================
# Parse Result
# =============================================================================

@dataclass
class ParseResult:
    """
    Outcome of parsing one file.

    Attributes:
        ast: The SourceFile, or None when parsing failed
        error: The single fault that stopped parsing (lexical or syntactic)
    """
    ast: Optional[SourceFile] = None
    error: Optional[Diagnostic] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# =============================================================================
# Parser Implementation
# =============================================================================

class Parser:
    """
    Packrat parser for Crusty.

    Usage:
        parser = Parser(tokens, filename, source_lines)
        result = parser.parse()
        if result.error:
            report(result.error)

    Attributes:
        tokens: Token list, ending in EOF
        filename: Name of the source file (for spans)
        source_lines: Source text lines, for the caret display
        known_types: Type names eligible as cast targets
    """

    def __init__(
        self,
        tokens: List[Token],
        filename: str = "<input>",
        source_lines: Optional[List[str]] = None,
        known_types: Optional[Set[str]] = None,
    ):
        if not tokens or tokens[-1].type != TokenType.EOF:
            end = tokens[-1].span if tokens else Span(filename=filename)
            tokens = list(tokens) + [Token(TokenType.EOF, "", Span(end.end, end.end, filename))]
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines or []
        self.known_types = collect_type_names(tokens) if known_types is None else set(known_types)

        self._pos = 0
        self._memo: Dict[tuple, tuple] = {}
        self._fault: Optional[Diagnostic] = None
        self._furthest = -1
        self._expected: List[str] = []

    def parse(self) -> ParseResult:
        """Parse the whole token list into a SourceFile."""
        items = []
        while self._fault is None and not self._check(TokenType.EOF):
            item = self.item()
            if item is None:
                break
            items.append(item)

        if self._fault is None and not self._check(TokenType.EOF):
            self._fault = self._furthest_failure()
        if self._fault is not None:
            return ParseResult(error=self._fault.with_source(self.source_lines))

        return ParseResult(ast=SourceFile(span=self._span(0), items=tuple(items), filename=self.filename))

    def parse_expression_only(self) -> tuple:
        """Parse the tokens as one expression; returns (expression, fault)."""
        expr = self.expression()
        if expr is not None and self._check(TokenType.EOF):
            return expr, None
        if self._fault is None:
            if expr is not None:
                self._record("end of expression")
            self._fault = self._furthest_failure()
        return None, self._fault

    # =========================================================================
    # Token Access Methods
    # =========================================================================

    def _peek(self, offset: int = 0) -> Token:
        index = min(self._pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def _check(self, *types: TokenType) -> bool:
        return self._peek().type in types

    def _advance(self) -> Token:
        token = self.tokens[self._pos]
        if token.type != TokenType.EOF:
            self._pos += 1
        return token

    def _expect(self, token_type: TokenType) -> Optional[Token]:
        """Consume a token of `token_type`, or record it as expected."""
        if self._check(token_type):
            return self._advance()
        self._record(_SPELLINGS.get(token_type, token_type.name.lower()))
        return None

    def _span(self, start: int) -> Span:
        """Span from token `start` through the last consumed token."""
        first = self.tokens[start].span
        last = self.tokens[max(self._pos - 1, start)].span
        return Span(first.start, last.end, self.filename)

    # =========================================================================
    # Fault Recording
    # =========================================================================

    def _record(self, expected: str) -> None:
        """Note that `expected` was wanted at the current position."""
        if self._pos > self._furthest:
            self._furthest = self._pos
            self._expected = [expected]
        elif self._pos == self._furthest and expected not in self._expected:
            self._expected.append(expected)

    def _furthest_failure(self) -> Diagnostic:
        position = max(self._furthest, self._pos)
        token = self.tokens[min(position, len(self.tokens) - 1)]
        expected = self._expected if position == self._furthest else []
        if not expected:
            expected = ["item"]

        if len(expected) == 1:
            text = expected[0]
        else:
            text = ", ".join(expected[:-1]) + " or " + expected[-1]

        kind = ErrorKind.UNEXPECTED_TOKEN
        if expected == ["expression"]:
            kind = ErrorKind.EXPECTED_EXPRESSION
        elif expected == ["type"]:
            kind = ErrorKind.EXPECTED_TYPE
        return expected_found(text, token.describe(), token.span, kind)

    def _unsupported(self, feature: str, alternative: str, token: Token) -> None:
        """Stop the parse at a construct the language rejects."""
        self._fault = unsupported_feature(feature, alternative, token.span)

    # =========================================================================
    # Items
    # =========================================================================

    @memoize
    def item(self) -> Optional[Item]:
        token = self._peek()

        if token.type == TokenType.HASH and self._peek(1).type == TokenType.LBRACKET:
            return self.attributed_item()
        if token.type == TokenType.HASH:
            return self.directive()
        if token.type == TokenType.UNION:
            self._unsupported("union", "`struct` or `enum`", token)
            return None
        if token.type == TokenType.EXTERN:
            return self.extern_block()

        start = self._pos
        is_static = False
        if token.type == TokenType.STATIC:
            self._advance()
            is_static = True

        lead = self._peek()
        if lead.type == TokenType.UNION:
            self._unsupported("union", "`struct` or `enum`", lead)
            return None
        if lead.type == TokenType.STRUCT:
            return self.struct_def(start, is_static)
        if lead.type == TokenType.ENUM:
            return self.enum_def(start, is_static)
        if lead.type == TokenType.TYPEDEF:
            return self.typedef(start, is_static)
        if lead.type == TokenType.CONST:
            return self.const_item(start, is_static)
        return self.function(start, is_static)

    def attributed_item(self) -> Optional[Item]:
        """`#[...]` attributes followed by the struct or enum they decorate."""
        start = self._pos
        attributes = []
        while self._check(TokenType.HASH) and self._peek(1).type == TokenType.LBRACKET:
            attribute = self.attribute()
            if attribute is None:
                return None
            attributes.append(attribute)

        is_static = False
        if self._check(TokenType.STATIC):
            self._advance()
            is_static = True
        if self._check(TokenType.STRUCT):
            return self.struct_def(start, is_static, tuple(attributes))
        if self._check(TokenType.ENUM):
            return self.enum_def(start, is_static, tuple(attributes))
        self._record("`struct` or `enum`")
        return None

    def attribute(self) -> Optional[Attribute]:
        start = self._pos
        self._advance()
        self._advance()
        name = self._expect(TokenType.IDENTIFIER)
        if name is None:
            return None

        args = None
        if self._check(TokenType.LPAREN):
            self._advance()
            args = []
            while not self._check(TokenType.RPAREN):
                arg = self.attribute_arg()
                if arg is None:
                    return None
                args.append(arg)
                if self._check(TokenType.COMMA):
                    self._advance()
                elif not self._check(TokenType.RPAREN):
                    self._record("`,`")
                    self._record("`)`")
                    return None
            self._advance()
            args = tuple(args)

        if self._expect(TokenType.RBRACKET) is None:
            return None
        return Attribute(span=self._span(start), name=name.lexeme, args=args)

    def attribute_arg(self) -> Optional[str]:
        """An attribute argument, kept as its source text."""
        token = self._peek()
        if token.type in LITERAL_TOKENS:
            self._advance()
            return token.lexeme
        if token.lexeme.isidentifier():
            # keywords too, as in `#[repr(u8)]`
            self._advance()
            if not self._check(TokenType.ASSIGN):
                return token.lexeme
            self._advance()
            value = self._peek()
            if value.type not in LITERAL_TOKENS:
                self._record("literal")
                return None
            self._advance()
            return f"{token.lexeme} = {value.lexeme}"
        self._record("attribute argument")
        return None

    def directive(self) -> Optional[Item]:
        start = self._pos
        hash_token = self._advance()
        word = self._peek()

        if word.type == TokenType.IDENTIFIER and word.lexeme == "import":
            self._advance()
            return self.import_path(start)
        if word.type == TokenType.IDENTIFIER and word.lexeme == "define":
            self._advance()
            return self.define(start, hash_token)
        if word.type == TokenType.IDENTIFIER and word.lexeme == "include":
            self._unsupported("#include", "`#import`", hash_token)
            return None

        self._record("`import` or `define`")
        return None

    def import_path(self, start: int) -> Optional[Use]:
        first = self._expect(TokenType.IDENTIFIER)
        if first is None:
            return None
        segments = [first.lexeme]
        while self._check(TokenType.DOT):
            self._advance()
            segment = self._expect(TokenType.IDENTIFIER)
            if segment is None:
                return None
            segments.append(segment.lexeme)
        if self._check(TokenType.SEMICOLON):
            self._advance()
        return Use(span=self._span(start), path=tuple(segments))

    def define(self, start: int, hash_token: Token) -> Optional[MacroDefinition]:
        """
        `#define __NAME__(params) body` where the body is the rest of the line.
        """
        name_token = self._expect(TokenType.IDENTIFIER)
        if name_token is None:
            return None
        if not is_macro_name(name_token.lexeme):
            self._unsupported(f"#define {name_token.lexeme}", "a macro name of the form `__NAME__`", name_token)
            return None

        line = hash_token.span.start.line
        params = None
        paren = self._peek()
        if paren.type == TokenType.LPAREN and paren.span.start == name_token.span.end:
            self._advance()
            params = []
            if not self._check(TokenType.RPAREN):
                while True:
                    param = self._expect(TokenType.IDENTIFIER)
                    if param is None:
                        return None
                    params.append(param.lexeme)
                    if not self._check(TokenType.COMMA):
                        break
                    self._advance()
            if self._expect(TokenType.RPAREN) is None:
                return None
            params = tuple(params)

        body_start = self._pos
        while not self._check(TokenType.EOF) and self._peek().span.start.line == line:
            self._advance()
        body_tokens = self.tokens[body_start:self._pos]

        body = None
        if body_tokens:
            sub = Parser(body_tokens, self.filename, self.source_lines, self.known_types)
            body, fault = sub.parse_expression_only()
            if fault is not None:
                self._fault = fault
                return None

        return MacroDefinition(span=self._span(start), name=name_token.lexeme, params=params, body=body)

    def struct_def(self, start: int, is_static: bool, attributes: tuple = ()) -> Optional[Struct]:
        self._advance()
        name = self._expect(TokenType.IDENTIFIER)
        if name is None or self._expect(TokenType.LBRACE) is None:
            return None

        fields = []
        methods = []
        while not self._check(TokenType.RBRACE):
            member = self.struct_member()
            if member is None:
                return None
            if isinstance(member, Function):
                methods.append(member)
            else:
                fields.append(member)

        self._advance()
        if self._check(TokenType.SEMICOLON):
            self._advance()
        return Struct(
            span=self._span(start),
            name=name.lexeme,
            fields=tuple(fields),
            methods=tuple(methods),
            is_static=is_static,
            attributes=attributes,
        )

    @memoize
    def struct_member(self):
        start = self._pos
        field_type = self.type_ref()
        if field_type is not None:
            name = self._expect(TokenType.IDENTIFIER)
            if name is not None and self._check(TokenType.SEMICOLON):
                self._advance()
                return StructField(span=self._span(start), name=name.lexeme, type=field_type)
            if name is not None:
                self._record("`;`")

        self._pos = start
        is_static = False
        if self._check(TokenType.STATIC):
            self._advance()
            is_static = True
        return self.function(start, is_static, allow_receiver=True)

    def enum_def(self, start: int, is_static: bool, attributes: tuple = ()) -> Optional[Enum]:
        self._advance()
        name = self._expect(TokenType.IDENTIFIER)
        if name is None or self._expect(TokenType.LBRACE) is None:
            return None

        variants = []
        while not self._check(TokenType.RBRACE):
            variant = self.enum_variant()
            if variant is None:
                return None
            variants.append(variant)
            if self._check(TokenType.COMMA):
                self._advance()
            elif not self._check(TokenType.RBRACE):
                self._record("`,`")
                self._record("`}`")
                return None

        self._advance()
        if self._check(TokenType.SEMICOLON):
            self._advance()
        return Enum(
            span=self._span(start),
            name=name.lexeme,
            variants=tuple(variants),
            is_static=is_static,
            attributes=attributes,
        )

    def enum_variant(self) -> Optional[EnumVariant]:
        start = self._pos
        name = self._expect(TokenType.IDENTIFIER)
        if name is None:
            return None
        if self._check(TokenType.LPAREN, TokenType.LBRACE):
            self._unsupported("enum variant payload", "a struct with a tag field", self._peek())
            return None

        value = None
        value_text = None
        if self._check(TokenType.ASSIGN):
            self._advance()
            negative = False
            if self._check(TokenType.MINUS):
                self._advance()
                negative = True
            number = self._expect(TokenType.INTEGER)
            if number is None:
                return None
            value = -number.value if negative else number.value
            value_text = ("-" if negative else "") + number.lexeme
        return EnumVariant(span=self._span(start), name=name.lexeme, value=value, value_text=value_text)

    def typedef(self, start: int, is_static: bool) -> Optional[TypeDef]:
        self._advance()
        target = self.type_ref()
        if target is None:
            return None
        name = self._expect(TokenType.IDENTIFIER)
        if name is None or self._expect(TokenType.SEMICOLON) is None:
            return None
        return TypeDef(span=self._span(start), name=name.lexeme, target=target, is_static=is_static)

    def const_item(self, start: int, is_static: bool) -> Optional[Const]:
        self._advance()
        const_type = self.type_ref()
        if const_type is None:
            return None
        name = self._expect(TokenType.IDENTIFIER)
        if name is None or self._expect(TokenType.ASSIGN) is None:
            return None
        value = self.expression()
        if value is None or self._expect(TokenType.SEMICOLON) is None:
            return None
        return Const(span=self._span(start), name=name.lexeme, type=const_type, value=value, is_static=is_static)

    def extern_block(self) -> Optional[Extern]:
        start = self._pos
        self._advance()
        abi = self._expect(TokenType.STRING)
        if abi is None or self._expect(TokenType.LBRACE) is None:
            return None

        functions = []
        while not self._check(TokenType.RBRACE):
            proto_start = self._pos
            return_type = self.type_ref()
            if return_type is None:
                return None
            name = self._expect(TokenType.IDENTIFIER)
            if name is None or self._expect(TokenType.LPAREN) is None:
                return None
            params = self.parameters(allow_receiver=False)
            if params is None or self._expect(TokenType.SEMICOLON) is None:
                return None
            functions.append(ExternFunction(
                span=self._span(proto_start),
                name=name.lexeme,
                params=tuple(params[1]),
                return_type=return_type,
            ))

        self._advance()
        return Extern(span=self._span(start), abi=abi.value, functions=tuple(functions))

    def function(self, start: int, is_static: bool, allow_receiver: bool = False) -> Optional[Function]:
        return_type = self.type_ref()
        if return_type is None:
            return None
        name = self._expect(TokenType.IDENTIFIER)
        if name is None:
            return None

        if not allow_receiver and self._check(TokenType.ASSIGN, TokenType.SEMICOLON):
            self._unsupported("mutable global variable", "`const`", name)
            return None
        if self._expect(TokenType.LPAREN) is None:
            return None

        params = self.parameters(allow_receiver)
        if params is None:
            return None
        receiver, param_list = params

        body = self.block()
        if body is None:
            return None
        return Function(
            span=self._span(start),
            name=name.lexeme,
            params=tuple(param_list),
            return_type=return_type,
            body=body,
            is_static=is_static,
            receiver=receiver,
        )

    def parameters(self, allow_receiver: bool) -> Optional[tuple]:
        """
        Parse a parameter list after `(`, through `)`.

        Returns:
            (receiver, params), or None on failure
        """
        receiver = None
        params = []

        if self._check(TokenType.VOID) and self._peek(1).type == TokenType.RPAREN:
            self._advance()
            self._advance()
            return receiver, params

        if allow_receiver and self._at_receiver():
            self._advance()
            receiver = Receiver.SHARED
            if self._check(TokenType.VAR):
                self._advance()
                receiver = Receiver.MUTABLE
            if self._expect(TokenType.SELF) is None:
                return None
            if self._check(TokenType.COMMA):
                self._advance()
            elif not self._check(TokenType.RPAREN):
                self._record("`,`")
                self._record("`)`")
                return None

        if not self._check(TokenType.RPAREN):
            while True:
                param = self.parameter()
                if param is None:
                    return None
                params.append(param)
                if not self._check(TokenType.COMMA):
                    break
                self._advance()

        if self._expect(TokenType.RPAREN) is None:
            return None
        return receiver, params

    def _at_receiver(self) -> bool:
        """True at `&self` or `&var self`, as opposed to a `&T` parameter."""
        if not self._check(TokenType.AMPERSAND):
            return False
        if self._peek(1).type == TokenType.SELF:
            return True
        return self._peek(1).type == TokenType.VAR and self._peek(2).type == TokenType.SELF

    def parameter(self) -> Optional[Param]:
        start = self._pos
        mutable = False
        if self._check(TokenType.VAR):
            self._advance()
            mutable = True
        param_type = self.type_ref()
        if param_type is None:
            return None
        name = self._expect(TokenType.IDENTIFIER)
        if name is None:
            return None
        return Param(span=self._span(start), name=name.lexeme, type=param_type, mutable=mutable)

    # =========================================================================
    # Types
    # =========================================================================

    @memoize
    def type_ref(self) -> Optional[TypeRef]:
        """Any type: a primitive, any identifier, `char*`, then `[N]` suffixes."""
        start = self._pos
        token = self._peek()
        if token.type == TokenType.AMPERSAND:
            self._advance()
            mutable = False
            if self._check(TokenType.VAR):
                self._advance()
                mutable = True
            element = self.type_ref()
            if element is None:
                return None
            return ReferenceTypeRef(span=self._span(start), element=element, mutable=mutable)
        if token.type in PRIMITIVE_TYPE_TOKENS:
            base = self._primitive_type()
        elif token.type == TokenType.IDENTIFIER and not is_macro_name(token.lexeme):
            self._advance()
            base = TypeName(span=self._span(start), name=token.lexeme)
        else:
            self._record("type")
            return None
        return self._array_suffix(start, base)

    @memoize
    def known_type(self) -> Optional[TypeRef]:
        """A type whose name is known to denote a type (cast targets)."""
        start = self._pos
        token = self._peek()
        if token.type in PRIMITIVE_TYPE_TOKENS:
            base = self._primitive_type()
        elif token.type == TokenType.IDENTIFIER and token.lexeme in self.known_types:
            self._advance()
            base = TypeName(span=self._span(start), name=token.lexeme)
        else:
            return None
        return self._array_suffix(start, base)

    def _primitive_type(self) -> TypeName:
        start = self._pos
        token = self._advance()
        name = token.lexeme
        if token.type == TokenType.CHAR and self._check(TokenType.STAR):
            self._advance()
            name = "char*"
        return TypeName(span=self._span(start), name=name, primitive=True)

    def _array_suffix(self, start: int, base: TypeRef) -> Optional[TypeRef]:
        while self._check(TokenType.LBRACKET) and self._peek(1).type == TokenType.INTEGER \
                and self._peek(2).type == TokenType.RBRACKET:
            self._advance()
            size = self._advance().value
            self._advance()
            base = ArrayTypeRef(span=self._span(start), element=base, size=size)
        return base

    # =========================================================================
    # Statements
    # =========================================================================

    @memoize
    def block(self) -> Optional[Block]:
        start = self._pos
        if self._expect(TokenType.LBRACE) is None:
            return None
        statements = []
        while not self._check(TokenType.RBRACE):
            if self._check(TokenType.EOF):
                self._record("`}`")
                return None
            statement = self.statement()
            if statement is None:
                return None
            statements.append(statement)
        self._advance()
        return Block(span=self._span(start), statements=tuple(statements))

    def _body(self) -> Optional[Block]:
        """A loop or branch body; a lone statement is wrapped in a Block."""
        if self._check(TokenType.LBRACE):
            return self.block()
        start = self._pos
        statement = self.statement()
        if statement is None:
            return None
        return Block(span=self._span(start), statements=(statement,))

    @memoize
    def statement(self) -> Optional[Statement]:
        token = self._peek()
        kind = token.type

        if kind == TokenType.LBRACE:
            return self.block()
        if kind in (TokenType.LET, TokenType.VAR):
            return self.binding()
        if kind == TokenType.CONST:
            return self.const_statement()
        if kind == TokenType.IF:
            return self.if_statement()
        if kind == TokenType.WHILE:
            return self.while_statement(self._pos, None)
        if kind == TokenType.FOR:
            return self.for_statement(self._pos, None)
        if kind == TokenType.DOT and self._peek(1).type == TokenType.IDENTIFIER \
                and self._peek(2).type == TokenType.COLON:
            return self.labeled_loop()
        if kind == TokenType.RETURN:
            return self.return_statement()
        if kind in (TokenType.BREAK, TokenType.CONTINUE):
            return self.jump_statement()
        if kind == TokenType.GOTO:
            self._unsupported("goto", "labeled `break`/`continue`", token)
            return None
        if kind == TokenType.UNION:
            self._unsupported("union", "`struct` or `enum`", token)
            return None

        declaration = self.c_declaration()
        if declaration is not None:
            return declaration
        return self.expression_statement()

    @memoize
    def binding(self) -> Optional[Statement]:
        """`let [Type] name [= init];` or `var [Type] name [= init];`."""
        start = self._pos
        keyword = self._advance()
        node_class = LetDecl if keyword.type == TokenType.LET else VarDecl

        mark = self._pos
        binding_type = self.type_ref()
        name = None
        if binding_type is not None:
            name = self._expect(TokenType.IDENTIFIER)
        if name is None:
            self._pos = mark
            binding_type = None
            name = self._expect(TokenType.IDENTIFIER)
            if name is None:
                return None

        init = None
        if self._check(TokenType.ASSIGN):
            self._advance()
            init = self.expression()
            if init is None:
                return None
        else:
            self._record("`=`")
        if self._expect(TokenType.SEMICOLON) is None:
            return None
        return node_class(span=self._span(start), name=name.lexeme, type=binding_type, init=init)

    def const_statement(self) -> Optional[ConstDecl]:
        start = self._pos
        self._advance()
        const_type = self.type_ref()
        if const_type is None:
            return None
        name = self._expect(TokenType.IDENTIFIER)
        if name is None or self._expect(TokenType.ASSIGN) is None:
            return None
        init = self.expression()
        if init is None or self._expect(TokenType.SEMICOLON) is None:
            return None
        return ConstDecl(span=self._span(start), name=name.lexeme, type=const_type, init=init)

    @memoize
    def c_declaration(self) -> Optional[VarDecl]:
        """C-style `Type name [= init];`, a mutable binding."""
        start = self._pos
        decl_type = self.type_ref()
        if decl_type is None:
            return None
        name = self._expect(TokenType.IDENTIFIER)
        if name is None:
            return None

        init = None
        if self._check(TokenType.ASSIGN):
            self._advance()
            init = self.expression()
            if init is None:
                return None
        if self._expect(TokenType.SEMICOLON) is None:
            return None
        return VarDecl(span=self._span(start), name=name.lexeme, type=decl_type, init=init)

    def expression_statement(self) -> Optional[ExprStmt]:
        start = self._pos
        expr = self.expression()
        if expr is None or self._expect(TokenType.SEMICOLON) is None:
            return None
        return ExprStmt(span=self._span(start), expression=expr)

    def _condition(self) -> Optional[Expression]:
        if self._expect(TokenType.LPAREN) is None:
            return None
        condition = self.expression()
        if condition is None or self._expect(TokenType.RPAREN) is None:
            return None
        return condition

    def if_statement(self) -> Optional[If]:
        start = self._pos
        self._advance()
        condition = self._condition()
        if condition is None:
            return None
        then = self._body()
        if then is None:
            return None

        otherwise = None
        if self._check(TokenType.ELSE):
            self._advance()
            if self._check(TokenType.IF):
                otherwise = self.if_statement()
            else:
                otherwise = self._body()
            if otherwise is None:
                return None
        return If(span=self._span(start), condition=condition, then=then, otherwise=otherwise)

    def labeled_loop(self) -> Optional[Statement]:
        start = self._pos
        self._advance()
        label = self._advance().lexeme
        self._advance()
        if self._check(TokenType.WHILE):
            return self.while_statement(start, label)
        if self._check(TokenType.FOR):
            return self.for_statement(start, label)
        self._record("`while`")
        self._record("`for`")
        return None

    def while_statement(self, start: int, label: Optional[str]) -> Optional[While]:
        self._advance()
        condition = self._condition()
        if condition is None:
            return None
        body = self._body()
        if body is None:
            return None
        return While(span=self._span(start), condition=condition, body=body, label=label)

    def for_statement(self, start: int, label: Optional[str]) -> Optional[For]:
        self._advance()
        if self._expect(TokenType.LPAREN) is None:
            return None

        init = None
        if self._check(TokenType.SEMICOLON):
            self._advance()
        else:
            if self._check(TokenType.LET, TokenType.VAR):
                init = self.binding()
            else:
                init = self.c_declaration()
                if init is None:
                    init = self.expression_statement()
            if init is None:
                return None

        condition = None
        if not self._check(TokenType.SEMICOLON):
            condition = self.expression()
            if condition is None:
                return None
        if self._expect(TokenType.SEMICOLON) is None:
            return None

        step = None
        if not self._check(TokenType.RPAREN):
            step = self.expression()
            if step is None:
                return None
        if self._expect(TokenType.RPAREN) is None:
            return None

        body = self._body()
        if body is None:
            return None
        return For(span=self._span(start), init=init, condition=condition, step=step, body=body, label=label)

    def return_statement(self) -> Optional[Return]:
        start = self._pos
        self._advance()
        value = None
        if not self._check(TokenType.SEMICOLON):
            value = self.expression()
            if value is None:
                return None
        if self._expect(TokenType.SEMICOLON) is None:
            return None
        return Return(span=self._span(start), value=value)

    def jump_statement(self) -> Optional[Statement]:
        start = self._pos
        keyword = self._advance()
        label = None
        if self._check(TokenType.DOT) and self._peek(1).type == TokenType.IDENTIFIER:
            self._advance()
            label = self._advance().lexeme
        elif self._check(TokenType.IDENTIFIER):
            label = self._advance().lexeme
        if self._expect(TokenType.SEMICOLON) is None:
            return None
        node_class = Break if keyword.type == TokenType.BREAK else Continue
        return node_class(span=self._span(start), label=label)

    # =========================================================================
    # Expressions
    # =========================================================================

    def expression(self) -> Optional[Expression]:
        return self.assignment()

    @memoize
    def assignment(self) -> Optional[Expression]:
        start = self._pos
        target = self.unary()
        if target is not None and self._peek().type in ASSIGNMENT_TOKENS:
            op = ASSIGNMENT_TOKENS[self._advance().type]
            value = self.assignment()
            if value is not None:
                return Binary(span=self._span(start), op=op, left=target, right=value)
        self._pos = start
        return self.ternary()

    @memoize
    def ternary(self) -> Optional[Expression]:
        start = self._pos
        condition = self.binary(0)
        if condition is None or not self._check(TokenType.QUESTION):
            return condition

        self._advance()
        then = self.expression()
        if then is None or self._expect(TokenType.COLON) is None:
            return None
        otherwise = self.ternary()
        if otherwise is None:
            return None
        return Ternary(span=self._span(start), condition=condition, then=then, otherwise=otherwise)

    @memoize_left_rec
    def binary(self, level: int) -> Optional[Expression]:
        if level == len(BINARY_LEVELS):
            return self.unary()

        start = self._pos
        left = self.binary(level)
        if left is not None:
            op = BINARY_LEVELS[level].get(self._peek().type)
            if op is not None:
                self._advance()
                right = self.binary(level + 1)
                if right is not None:
                    return Binary(span=self._span(start), op=op, left=left, right=right)

        self._pos = start
        return self.binary(level + 1)

    @memoize
    def unary(self) -> Optional[Expression]:
        start = self._pos
        token = self._peek()

        if token.type == TokenType.LPAREN:
            committed, node = self.cast_or_init()
            if committed:
                return node
            self._pos = start

        op = PREFIX_TOKENS.get(token.type)
        if op is not None:
            self._advance()
            if op == UnaryOp.REF and self._check(TokenType.VAR):
                self._advance()
                op = UnaryOp.REF_MUT
            operand = self.unary()
            if operand is None:
                return None
            return Unary(span=self._span(start), op=op, operand=operand)

        if token.type == TokenType.SIZEOF:
            self._advance()
            if self._expect(TokenType.LPAREN) is None:
                return None
            sized = self.type_ref()
            if sized is None or self._expect(TokenType.RPAREN) is None:
                return None
            return Sizeof(span=self._span(start), type=sized)

        return self.postfix()

    def cast_or_init(self) -> tuple:
        """
        Try `(KnownType)operand` and `(KnownType){...}`.

        Returns:
            (committed, node). Not committed means the parenthesis opens a
            grouped expression instead; a committed failure has node None.
        """
        start = self._pos
        self._advance()
        target = self.known_type()
        if target is None and self._check(TokenType.IDENTIFIER) \
                and self._peek(1).type == TokenType.RPAREN and self._peek(2).type == TokenType.LBRACE:
            # (Name){ can only be an initializer, even for an imported type
            target = self.type_ref()
        if target is None or not self._check(TokenType.RPAREN):
            return False, None
        self._advance()

        if self._check(TokenType.LBRACE):
            return True, self.struct_init(start, target)
        if self._peek().type not in OPERAND_START:
            return False, None

        operand = self.unary()
        if operand is None:
            return True, None
        return True, Cast(span=self._span(start), type=target, operand=operand)

    def struct_init(self, start: int, target: TypeRef) -> Optional[StructInit]:
        self._advance()
        inits = []
        while not self._check(TokenType.RBRACE):
            field_start = self._pos
            if self._expect(TokenType.DOT) is None:
                self._record("`}`")
                return None
            name = self._expect(TokenType.IDENTIFIER)
            if name is None or self._expect(TokenType.ASSIGN) is None:
                return None
            value = self.expression()
            if value is None:
                return None
            inits.append(FieldInit(span=self._span(field_start), name=name.lexeme, value=value))
            if self._check(TokenType.COMMA):
                self._advance()
            elif not self._check(TokenType.RBRACE):
                self._record("`,`")
                self._record("`}`")
                return None
        self._advance()
        return StructInit(span=self._span(start), type=target, fields=tuple(inits))

    @memoize_left_rec
    def postfix(self) -> Optional[Expression]:
        start = self._pos
        base = self.postfix()
        if base is not None:
            token = self._peek()
            if token.type == TokenType.LPAREN:
                args = self.arguments()
                if args is not None:
                    return Call(span=self._span(start), callee=base, args=args)
            elif token.type == TokenType.LBRACKET:
                self._advance()
                index = self.expression()
                if index is not None and self._expect(TokenType.RBRACKET) is not None:
                    return Index(span=self._span(start), receiver=base, index=index)
            elif token.type == TokenType.DOT:
                self._advance()
                name = self._expect(TokenType.IDENTIFIER)
                if name is not None:
                    if self._check(TokenType.LPAREN):
                        args = self.arguments()
                        if args is not None:
                            return MethodCall(span=self._span(start), receiver=base, method=name.lexeme, args=args)
                    else:
                        return FieldAccess(span=self._span(start), receiver=base, field_name=name.lexeme)
            elif token.type in (TokenType.INCREMENT, TokenType.DECREMENT):
                self._advance()
                op = UnaryOp.POST_INC if token.type == TokenType.INCREMENT else UnaryOp.POST_DEC
                return Unary(span=self._span(start), op=op, operand=base)

        self._pos = start
        return self.primary()

    def arguments(self) -> Optional[tuple]:
        """`(` [expression (`,` expression)*] `)`."""
        if self._expect(TokenType.LPAREN) is None:
            return None
        args = []
        if not self._check(TokenType.RPAREN):
            while True:
                arg = self.expression()
                if arg is None:
                    return None
                args.append(arg)
                if not self._check(TokenType.COMMA):
                    break
                self._advance()
        if self._expect(TokenType.RPAREN) is None:
            return None
        return tuple(args)

    @memoize
    def primary(self) -> Optional[Expression]:
        start = self._pos
        token = self._peek()

        kind = LITERAL_TOKENS.get(token.type)
        if kind is not None:
            self._advance()
            return Literal(span=self._span(start), kind=kind, value=token.value, text=token.lexeme)

        if token.type == TokenType.IDENTIFIER:
            self._advance()
            if is_macro_name(token.lexeme):
                args = None
                if self._check(TokenType.LPAREN):
                    args = self.arguments()
                    if args is None:
                        return None
                return MacroInvocation(span=self._span(start), name=token.lexeme, args=args)
            return Identifier(span=self._span(start), name=token.lexeme)

        if token.type == TokenType.SELF:
            self._advance()
            return Identifier(span=self._span(start), name="self")

        if token.type == TokenType.LPAREN:
            self._advance()
            inner = self.expression()
            if inner is None or self._expect(TokenType.RPAREN) is None:
                return None
            return Grouped(span=self._span(start), inner=inner)

        if token.type == TokenType.LBRACKET:
            self._advance()
            elements = []
            if not self._check(TokenType.RBRACKET):
                while True:
                    element = self.expression()
                    if element is None:
                        return None
                    elements.append(element)
                    if not self._check(TokenType.COMMA):
                        break
                    self._advance()
                    if self._check(TokenType.RBRACKET):
                        break
            if self._expect(TokenType.RBRACKET) is None:
                return None
            return ArrayLiteral(span=self._span(start), elements=tuple(elements))

        self._record("expression")
        return None


# =============================================================================
# Convenience Functions
# =============================================================================

def parse(tokens: List[Token], filename: str = "<input>", source_lines: Optional[List[str]] = None) -> ParseResult:
    """Parse a token list produced by the lexer."""
    result = Parser(tokens, filename, source_lines).parse()
    if result.ast is not None:
        logger.debug(f"{filename}: parsed {len(result.ast.items)} items")
    return result


def parse_source(source: str, filename: str = "<input>", tab_width: int = 1) -> ParseResult:
    """
    Lex and parse Crusty source text.

    This is a convenience function that combines lexing and parsing. A
    lexical fault is returned as the result's error, like a parse fault.

    Args:
        source: Crusty source text
        filename: Source filename for diagnostics
        tab_width: Columns a tab advances

    Returns:
        ParseResult holding the SourceFile or the first fault
    """
    lexed = tokenize(source, filename, tab_width)
    if lexed.error is not None:
        return ParseResult(error=lexed.error)
    source_lines = source.replace("\r\n", "\n").split("\n")
    return parse(lexed.tokens, filename, source_lines)
