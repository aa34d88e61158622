"""
Crusty Lexer (Tokenizer)
========================

This module converts Crusty source text into a stream of tokens for the
parser. It knows nothing about grammar.

Token Categories
----------------
- Keywords: let, var, const, static, if, while, struct, int, i32, ...
- Identifiers: variable, function, type and macro names
- Literals: integers, floats, strings, characters, true/false, NULL
- Operators: +, -, <=, <<=, &&, ?, ., ...
- Delimiters: ( ) { } [ ] ; , #

Number Formats
--------------
| Format      | Prefix | Example     | Value  |
|-------------|--------|-------------|--------|
| Decimal     | (none) | 1_000       | 1000   |
| Hexadecimal | 0x/0X  | 0x7F        | 127    |
| Octal       | 0o/0O  | 0o177       | 127    |
| Binary      | 0b/0B  | 0b1010      | 10     |
| Float       | (none) | 2.5e-3      | 0.0025 |

Underscores group digits and must sit between two digits. A leading
zero on a multi-digit decimal is rejected (use `0o` for octal).

Fault Handling
--------------
The lexer is fail-fast. The first fault (unexpected character,
unterminated string or comment, malformed number) stops tokenization:
`Lexer.tokenize()` simply ends and `Lexer.error` holds the diagnostic.
No tokens after the fault are produced and no EOF token is emitted.

Positions
---------
Every token carries a Span with 1-indexed line/column. Comments and
whitespace are skipped but still advance the position counters. A tab
advances the column by `tab_width` (1 unless configured).

Example Usage
-------------
>>> from crusty.transpiler.lexer import tokenize
>>> result = tokenize('int main() { return 42; }', "main.crst")
>>> [t.lexeme for t in result.tokens]
['int', 'main', '(', ')', '{', 'return', '42', ';', '}', '']
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Iterator, List, Optional
import logging
import string

from crusty.errors import Position, Span
from crusty.transpiler.errors import Diagnostic, ErrorKind, Phase


logger = logging.getLogger(__name__)


# =============================================================================
# Token Type Enumeration
# =============================================================================

class TokenCategory(Enum):
    """Coarse token classes."""
    KEYWORD = auto()
    IDENTIFIER = auto()
    OPERATOR = auto()
    DELIMITER = auto()
    LITERAL = auto()
    EOF = auto()


class TokenType(Enum):
    """
    Token types for the Crusty language.

    Keywords are distinguished from identifiers to simplify parsing.
    Primitive type names are keywords too.
    """

    # === Structural ===
    EOF = auto()

    # === Identifiers and Literals ===
    IDENTIFIER = auto()
    INTEGER = auto()
    FLOAT = auto()
    STRING = auto()
    CHAR_LITERAL = auto()
    TRUE = auto()
    FALSE = auto()
    NULL = auto()

    # === Keywords - Declarations ===
    LET = auto()
    VAR = auto()
    CONST = auto()
    STATIC = auto()
    STRUCT = auto()
    ENUM = auto()
    TYPEDEF = auto()
    EXTERN = auto()
    UNION = auto()          # rejected by the parser
    SELF = auto()

    # === Keywords - Control Flow ===
    IF = auto()
    ELSE = auto()
    WHILE = auto()
    FOR = auto()
    RETURN = auto()
    BREAK = auto()
    CONTINUE = auto()
    GOTO = auto()           # rejected by the parser

    # === Keywords - Other ===
    SIZEOF = auto()

    # === Keywords - Primitive Types ===
    VOID = auto()
    BOOL = auto()
    CHAR = auto()
    INT = auto()
    FLOAT_KW = auto()       # float
    I8 = auto()
    I16 = auto()
    I32 = auto()
    I64 = auto()
    U8 = auto()
    U16 = auto()
    U32 = auto()
    U64 = auto()
    ISIZE = auto()
    USIZE = auto()
    F32 = auto()
    F64 = auto()

    # === Arithmetic Operators ===
    PLUS = auto()           # +
    MINUS = auto()          # -
    STAR = auto()           # *
    SLASH = auto()          # /
    PERCENT = auto()        # %
    INCREMENT = auto()      # ++
    DECREMENT = auto()      # --

    # === Comparison Operators ===
    EQ = auto()             # ==
    NE = auto()             # !=
    LT = auto()             # <
    GT = auto()             # >
    LE = auto()             # <=
    GE = auto()             # >=

    # === Logical Operators ===
    AND = auto()            # &&
    OR = auto()             # ||
    NOT = auto()            # !

    # === Bitwise Operators ===
    AMPERSAND = auto()      # &
    PIPE = auto()           # |
    CARET = auto()          # ^
    TILDE = auto()          # ~
    LSHIFT = auto()         # <<
    RSHIFT = auto()         # >>

    # === Assignment Operators ===
    ASSIGN = auto()         # =
    PLUS_ASSIGN = auto()    # +=
    MINUS_ASSIGN = auto()   # -=
    STAR_ASSIGN = auto()    # *=
    SLASH_ASSIGN = auto()   # /=
    PERCENT_ASSIGN = auto() # %=
    AND_ASSIGN = auto()     # &=
    OR_ASSIGN = auto()      # |=
    XOR_ASSIGN = auto()     # ^=
    LSHIFT_ASSIGN = auto()  # <<=
    RSHIFT_ASSIGN = auto()  # >>=

    # === Other Operators ===
    QUESTION = auto()       # ?
    COLON = auto()          # :
    DOT = auto()            # .

    # === Delimiters ===
    LPAREN = auto()         # (
    RPAREN = auto()         # )
    LBRACE = auto()         # {
    RBRACE = auto()         # }
    LBRACKET = auto()       # [
    RBRACKET = auto()       # ]
    SEMICOLON = auto()      # ;
    COMMA = auto()          # ,
    HASH = auto()           # # (directive start)


# =============================================================================
# Keyword and Operator Tables
# =============================================================================

KEYWORDS: dict[str, TokenType] = {
    # Declarations
    "let": TokenType.LET,
    "var": TokenType.VAR,
    "const": TokenType.CONST,
    "static": TokenType.STATIC,
    "struct": TokenType.STRUCT,
    "enum": TokenType.ENUM,
    "typedef": TokenType.TYPEDEF,
    "extern": TokenType.EXTERN,
    "union": TokenType.UNION,
    "self": TokenType.SELF,

    # Control flow
    "if": TokenType.IF,
    "else": TokenType.ELSE,
    "while": TokenType.WHILE,
    "for": TokenType.FOR,
    "return": TokenType.RETURN,
    "break": TokenType.BREAK,
    "continue": TokenType.CONTINUE,
    "goto": TokenType.GOTO,

    # Literals and other
    "true": TokenType.TRUE,
    "false": TokenType.FALSE,
    "NULL": TokenType.NULL,
    "sizeof": TokenType.SIZEOF,

    # Primitive types
    "void": TokenType.VOID,
    "bool": TokenType.BOOL,
    "char": TokenType.CHAR,
    "int": TokenType.INT,
    "float": TokenType.FLOAT_KW,
    "i8": TokenType.I8,
    "i16": TokenType.I16,
    "i32": TokenType.I32,
    "i64": TokenType.I64,
    "u8": TokenType.U8,
    "u16": TokenType.U16,
    "u32": TokenType.U32,
    "u64": TokenType.U64,
    "isize": TokenType.ISIZE,
    "usize": TokenType.USIZE,
    "f32": TokenType.F32,
    "f64": TokenType.F64,
}

PRIMITIVE_TYPE_TOKENS = frozenset({
    TokenType.VOID, TokenType.BOOL, TokenType.CHAR, TokenType.INT,
    TokenType.FLOAT_KW, TokenType.I8, TokenType.I16, TokenType.I32,
    TokenType.I64, TokenType.U8, TokenType.U16, TokenType.U32,
    TokenType.U64, TokenType.ISIZE, TokenType.USIZE, TokenType.F32,
    TokenType.F64,
})

# Longest first so that scanning is maximal munch
OPERATORS: list[tuple[str, TokenType]] = [
    ("<<=", TokenType.LSHIFT_ASSIGN),
    (">>=", TokenType.RSHIFT_ASSIGN),
    ("++", TokenType.INCREMENT),
    ("--", TokenType.DECREMENT),
    ("==", TokenType.EQ),
    ("!=", TokenType.NE),
    ("<=", TokenType.LE),
    (">=", TokenType.GE),
    ("&&", TokenType.AND),
    ("||", TokenType.OR),
    ("<<", TokenType.LSHIFT),
    (">>", TokenType.RSHIFT),
    ("+=", TokenType.PLUS_ASSIGN),
    ("-=", TokenType.MINUS_ASSIGN),
    ("*=", TokenType.STAR_ASSIGN),
    ("/=", TokenType.SLASH_ASSIGN),
    ("%=", TokenType.PERCENT_ASSIGN),
    ("&=", TokenType.AND_ASSIGN),
    ("|=", TokenType.OR_ASSIGN),
    ("^=", TokenType.XOR_ASSIGN),
    ("+", TokenType.PLUS),
    ("-", TokenType.MINUS),
    ("*", TokenType.STAR),
    ("/", TokenType.SLASH),
    ("%", TokenType.PERCENT),
    ("<", TokenType.LT),
    (">", TokenType.GT),
    ("!", TokenType.NOT),
    ("&", TokenType.AMPERSAND),
    ("|", TokenType.PIPE),
    ("^", TokenType.CARET),
    ("~", TokenType.TILDE),
    ("=", TokenType.ASSIGN),
    ("?", TokenType.QUESTION),
    (":", TokenType.COLON),
    (".", TokenType.DOT),
    ("(", TokenType.LPAREN),
    (")", TokenType.RPAREN),
    ("{", TokenType.LBRACE),
    ("}", TokenType.RBRACE),
    ("[", TokenType.LBRACKET),
    ("]", TokenType.RBRACKET),
    (";", TokenType.SEMICOLON),
    (",", TokenType.COMMA),
    ("#", TokenType.HASH),
]

DELIMITERS = frozenset({
    TokenType.LPAREN, TokenType.RPAREN, TokenType.LBRACE, TokenType.RBRACE,
    TokenType.LBRACKET, TokenType.RBRACKET, TokenType.SEMICOLON,
    TokenType.COMMA, TokenType.HASH,
})

LITERALS = frozenset({
    TokenType.INTEGER, TokenType.FLOAT, TokenType.STRING,
    TokenType.CHAR_LITERAL, TokenType.TRUE, TokenType.FALSE, TokenType.NULL,
})


# =============================================================================
# Token Data Class
# =============================================================================

@dataclass(frozen=True)
class Token:
    """
    A single lexical element.

    Attributes:
        type: The TokenType classification
        lexeme: Exact source text of the token ("" for EOF)
        span: Where the token sits in the source
        value: Decoded value for literals (int, float or str), else None
    """
    type: TokenType
    lexeme: str
    span: Span
    value: object = None

    def __repr__(self) -> str:
        return f"Token({self.type.name}, {self.lexeme!r}, {self.span.start})"

    @property
    def category(self) -> TokenCategory:
        if self.type == TokenType.EOF:
            return TokenCategory.EOF
        if self.type == TokenType.IDENTIFIER:
            return TokenCategory.IDENTIFIER
        if self.type in LITERALS:
            return TokenCategory.LITERAL
        if self.type in DELIMITERS:
            return TokenCategory.DELIMITER
        if self.lexeme in KEYWORDS:
            return TokenCategory.KEYWORD
        return TokenCategory.OPERATOR

    def is_primitive_type(self) -> bool:
        return self.type in PRIMITIVE_TYPE_TOKENS

    def describe(self) -> str:
        """Render the token for "found Y" messages."""
        if self.type == TokenType.EOF:
            return "end of input"
        return f"`{self.lexeme}`"


@dataclass
class LexResult:
    """
    Outcome of lexing one file.

    Attributes:
        tokens: Tokens produced (ending in EOF when successful)
        error: The fault that stopped lexing, or None
    """
    tokens: List[Token] = field(default_factory=list)
    error: Optional[Diagnostic] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# =============================================================================
# Lexer Implementation
# =============================================================================

class Lexer:
    """
    Tokenizes Crusty source code.

    Usage:
        lexer = Lexer(source_text, filename)
        tokens = list(lexer.tokenize())
        if lexer.error:
            report(lexer.error)

    The token sequence is lazy and cannot be restarted; create a new Lexer
    to scan the text again.

    Attributes:
        source: The source code being tokenized
        filename: Name of the source file (for diagnostics)
        tab_width: Columns a tab character advances
        error: The first fault met, or None
    """

    IDENT_START = string.ascii_letters + "_"
    IDENT_CHARS = string.ascii_letters + string.digits + "_"

    ESCAPE_SEQUENCES = {
        "n": "\n",
        "r": "\r",
        "t": "\t",
        "\\": "\\",
        "'": "'",
        '"': '"',
        "0": "\0",
    }

    RADIX_DIGITS = {
        "x": (16, string.hexdigits),
        "o": (8, string.octdigits),
        "b": (2, "01"),
    }

    def __init__(self, source: str, filename: str = "<input>", tab_width: int = 1):
        """
        Initialize the lexer with source code.

        Args:
            source: The Crusty source code to tokenize
            filename: Name of the source file (for diagnostics)
            tab_width: Columns a tab advances (1 counts a tab as one column)
        """
        self.source = source.replace("\r\n", "\n")
        self.filename = filename
        self.tab_width = tab_width
        self.error: Optional[Diagnostic] = None

        self._pos = 0
        self._line = 1
        self._column = 1
        self._started = False

    def tokenize(self) -> Iterator[Token]:
        """
        Generate tokens from the source code.

        Yields:
            Token objects, ending with EOF unless a fault stops the scan
            (in which case `self.error` is set and nothing more is yielded)
        """
        if self._started:
            return
        self._started = True

        while True:
            if not self._skip_whitespace_and_comments():
                return
            if self._at_end():
                break

            token = self._scan_token()
            if token is None:
                return
            yield token

        yield Token(TokenType.EOF, "", self._span_from(self._here()))

    # =========================================================================
    # Character Access Methods
    # =========================================================================

    def _at_end(self) -> bool:
        return self._pos >= len(self.source)

    def _peek(self, offset: int = 0) -> str:
        """Look ahead without consuming; "" past the end of source."""
        pos = self._pos + offset
        if pos >= len(self.source):
            return ""
        return self.source[pos]

    def _peek_in(self, chars: str, offset: int = 0) -> bool:
        """True if the character at `offset` exists and is one of `chars`."""
        char = self._peek(offset)
        return char != "" and char in chars

    def _advance(self) -> str:
        """Consume one character, keeping line/column exact."""
        if self._at_end():
            return ""

        char = self.source[self._pos]
        self._pos += 1

        if char == "\n":
            self._line += 1
            self._column = 1
        elif char == "\t":
            self._column += self.tab_width
        else:
            self._column += 1

        return char

    def _match(self, expected: str) -> bool:
        """Consume `expected` if the source continues with it."""
        if self.source.startswith(expected, self._pos):
            for _ in expected:
                self._advance()
            return True
        return False

    def _here(self) -> Position:
        return Position(self._line, self._column)

    def _span_from(self, start: Position) -> Span:
        return Span(start, self._here(), self.filename)

    # =========================================================================
    # Fault Recording
    # =========================================================================

    def _fail(
        self,
        kind: ErrorKind,
        message: str,
        start: Position,
        hint: Optional[str] = None,
    ) -> None:
        """Record the fault that ends this scan."""
        self.error = Diagnostic(
            Phase.LEX,
            kind,
            message,
            Span(start, self._here(), self.filename),
            hint=hint,
            source_line=self._line_text(start.line),
        )

    def _line_text(self, line: int) -> str:
        lines = self.source.split("\n")
        return lines[line - 1] if 0 < line <= len(lines) else ""

    # =========================================================================
    # Whitespace and Comment Handling
    # =========================================================================

    def _skip_whitespace_and_comments(self) -> bool:
        """Skip whitespace and comments; False if a comment is unterminated."""
        while not self._at_end():
            char = self._peek()

            if char in " \t\n\r\f\v":
                self._advance()
            elif char == "/" and self._peek(1) == "/":
                while not self._at_end() and self._peek() != "\n":
                    self._advance()
            elif char == "/" and self._peek(1) == "*":
                if not self._skip_multi_line_comment():
                    return False
            else:
                break
        return True

    def _skip_multi_line_comment(self) -> bool:
        start = self._here()
        self._advance()
        self._advance()

        while not self._at_end():
            if self._match("*/"):
                return True
            self._advance()

        self._fail(
            ErrorKind.UNTERMINATED_COMMENT,
            "unterminated block comment",
            start,
            hint="add `*/` to close the comment",
        )
        return False

    # =========================================================================
    # Token Scanning
    # =========================================================================

    def _scan_token(self) -> Optional[Token]:
        """Scan one token; None once a fault has been recorded."""
        start = self._here()
        char = self._peek()

        if char in self.IDENT_START:
            return self._scan_identifier(start)
        if char in string.digits:
            return self._scan_number(start)
        if char == '"':
            return self._scan_string(start)
        if char == "'":
            return self._scan_char(start)
        return self._scan_operator(start)

    def _scan_identifier(self, start: Position) -> Token:
        begin = self._pos
        while not self._at_end() and self._peek() in self.IDENT_CHARS:
            self._advance()

        text = self.source[begin:self._pos]
        token_type = KEYWORDS.get(text, TokenType.IDENTIFIER)
        value = None
        if token_type == TokenType.TRUE:
            value = True
        elif token_type == TokenType.FALSE:
            value = False
        return Token(token_type, text, self._span_from(start), value)

    def _scan_number(self, start: Position) -> Optional[Token]:
        """
        Scan an integer or float literal, validating its shape.

        Rejected forms: a second decimal point, a radix prefix without
        digits, misplaced `_`, digits outside the radix, a decimal with a
        leading zero and letters glued to the end.
        """
        begin = self._pos

        prefix = self._peek(1).lower()
        if self._peek() == "0" and prefix in self.RADIX_DIGITS:
            base, digits = self.RADIX_DIGITS[prefix]
            self._advance()
            self._advance()
            if not self._scan_digit_run(digits):
                return self._invalid_number(begin, start, "missing or badly grouped digits after radix prefix")
            if self._peek_in(self.IDENT_CHARS) or self._peek() == ".":
                return self._invalid_number(begin, start, f"invalid digit for base {base}")
            text = self.source[begin:self._pos]
            value = int(text[2:].replace("_", ""), base)
            return Token(TokenType.INTEGER, text, self._span_from(start), value)

        if not self._scan_digit_run(string.digits):
            return self._invalid_number(begin, start, "misplaced digit separator `_`")

        is_float = False
        if self._peek() == "." and self._peek_in(string.digits, 1):
            is_float = True
            self._advance()
            if not self._scan_digit_run(string.digits):
                return self._invalid_number(begin, start, "misplaced digit separator `_`")

        if self._peek_in("eE") and (
            self._peek_in(string.digits, 1)
            or (self._peek_in("+-", 1) and self._peek_in(string.digits, 2))
        ):
            is_float = True
            self._advance()
            if self._peek_in("+-"):
                self._advance()
            if not self._scan_digit_run(string.digits):
                return self._invalid_number(begin, start, "misplaced digit separator `_`")

        if self._peek() == "." and self._peek_in(string.digits, 1):
            return self._invalid_number(begin, start, "multiple decimal points")
        if self._peek_in(self.IDENT_CHARS):
            return self._invalid_number(begin, start, "unexpected characters after number")

        text = self.source[begin:self._pos]
        digits_only = text.replace("_", "")
        if is_float:
            return Token(TokenType.FLOAT, text, self._span_from(start), float(digits_only))
        if len(digits_only) > 1 and digits_only.startswith("0"):
            return self._invalid_number(begin, start, "leading zeros are not allowed (use `0o` for octal)")
        return Token(TokenType.INTEGER, text, self._span_from(start), int(digits_only))

    def _scan_digit_run(self, digits: str) -> bool:
        """
        Consume digits with `_` grouping.

        Returns False when there is no digit or an `_` is not surrounded by
        digits.
        """
        seen_digit = False
        while not self._at_end():
            char = self._peek()
            if char in digits:
                seen_digit = True
                self._advance()
            elif char == "_":
                if not seen_digit or not self._peek_in(digits, 1):
                    return False
                self._advance()
            else:
                break
        return seen_digit

    def _invalid_number(self, begin: int, start: Position, reason: str) -> None:
        # Swallow the rest of the malformed literal so the message shows it whole
        while not self._at_end() and (self._peek() in self.IDENT_CHARS or self._peek() == "."):
            self._advance()
        text = self.source[begin:self._pos]
        self._fail(ErrorKind.INVALID_NUMBER, f"invalid number literal `{text}`: {reason}", start)
        return None

    def _scan_string(self, start: Position) -> Optional[Token]:
        begin = self._pos
        self._advance()
        chars = []

        while True:
            char = self._peek()
            if char == "" or char == "\n":
                self._fail(
                    ErrorKind.UNTERMINATED_STRING,
                    "unterminated string literal",
                    start,
                    hint='add a closing `"` before the end of the line',
                )
                return None
            if char == '"':
                self._advance()
                break
            if char == "\\":
                decoded = self._scan_escape_sequence()
                if decoded is None:
                    return None
                chars.append(decoded)
            else:
                chars.append(self._advance())

        text = self.source[begin:self._pos]
        return Token(TokenType.STRING, text, self._span_from(start), "".join(chars))

    def _scan_char(self, start: Position) -> Optional[Token]:
        begin = self._pos
        self._advance()

        char = self._peek()
        if char == "" or char == "\n":
            self._fail(ErrorKind.UNTERMINATED_STRING, "unterminated character literal", start)
            return None
        if char == "'":
            self._advance()
            self._fail(ErrorKind.UNEXPECTED_CHARACTER, "empty character literal", start)
            return None
        if char == "\\":
            value = self._scan_escape_sequence()
            if value is None:
                return None
        else:
            value = self._advance()

        if self._peek() != "'":
            self._fail(
                ErrorKind.UNTERMINATED_STRING,
                "unterminated character literal",
                start,
                hint="character literals hold exactly one character; use a string for more",
            )
            return None
        self._advance()

        text = self.source[begin:self._pos]
        return Token(TokenType.CHAR_LITERAL, text, self._span_from(start), value)

    def _scan_escape_sequence(self) -> Optional[str]:
        """Consume a backslash escape; None (fault recorded) if unknown."""
        start = self._here()
        self._advance()
        char = self._peek()

        if char in self.ESCAPE_SEQUENCES and char != "":
            self._advance()
            return self.ESCAPE_SEQUENCES[char]

        if char == "x" and all(c != "" and c in string.hexdigits for c in (self._peek(1), self._peek(2))):
            self._advance()
            value = self._advance() + self._advance()
            return chr(int(value, 16))

        if char == "" or char == "\n":
            self._fail(ErrorKind.UNTERMINATED_STRING, "unterminated string literal", start)
            return None

        self._advance()
        self._fail(ErrorKind.UNEXPECTED_CHARACTER, f"unknown character escape `\\{char}`", start)
        return None

    def _scan_operator(self, start: Position) -> Optional[Token]:
        for text, token_type in OPERATORS:
            if self._match(text):
                return Token(token_type, text, self._span_from(start))

        char = self._advance()
        self._fail(
            ErrorKind.UNEXPECTED_CHARACTER,
            f"unexpected character `{char}`",
            start,
        )
        return None


# =============================================================================
# Convenience Function
# =============================================================================

def tokenize(source: str, filename: str = "<input>", tab_width: int = 1) -> LexResult:
    """
    Lex a whole file.

    Args:
        source: Crusty source text
        filename: Name used in spans and diagnostics
        tab_width: Columns a tab advances

    Returns:
        LexResult with every token produced before any fault, and the fault
    """
    lexer = Lexer(source, filename, tab_width)
    tokens = list(lexer.tokenize())
    if lexer.error is not None:
        logger.debug(f"{filename}: lexing stopped after {len(tokens)} tokens")
    else:
        logger.debug(f"{filename}: {len(tokens)} tokens")
    return LexResult(tokens=tokens, error=lexer.error)
