# =============================================================================
# test_lexer.py - Lexer Unit Tests
# =============================================================================
# Tests for the Crusty lexer/tokenizer.
#
# Test coverage includes:
#   - Keywords, identifiers and primitive type names
#   - Number formats: decimal, hex (0x), octal (0o), binary (0b), float
#   - String and character literals with escape sequences
#   - Maximal-munch operator scanning
#   - Exact 1-indexed positions, tabs and comments
#   - Fail-fast error conditions
# =============================================================================

import pytest

from crusty.errors import Position
from crusty.transpiler.errors import ErrorKind, Phase
from crusty.transpiler.lexer import Lexer, TokenCategory, TokenType, tokenize


# =============================================================================
# Helper Functions
# =============================================================================

def lex(source: str) -> list:
    """Tokenize and drop the EOF token; the scan must succeed."""
    result = tokenize(source, "<test>")
    assert result.error is None, result.error.format()
    assert result.tokens[-1].type == TokenType.EOF
    return result.tokens[:-1]


def types(source: str) -> list:
    return [t.type for t in lex(source)]


def lex_error(source: str):
    """Tokenize source that must fail and return the diagnostic."""
    result = tokenize(source, "<test>")
    assert result.error is not None
    return result.error


# =============================================================================
# Keywords and Identifiers
# =============================================================================

class TestKeywords:
    """Keywords are told apart from identifiers."""

    def test_declaration_keywords(self):
        """let, var, const and static are keywords."""
        assert types("let var const static") == [
            TokenType.LET, TokenType.VAR, TokenType.CONST, TokenType.STATIC,
        ]

    def test_control_flow_keywords(self):
        """Control-flow words scan as their own token types."""
        assert types("if else while for return break continue") == [
            TokenType.IF, TokenType.ELSE, TokenType.WHILE, TokenType.FOR,
            TokenType.RETURN, TokenType.BREAK, TokenType.CONTINUE,
        ]

    def test_primitive_types_are_keywords(self):
        """Primitive type names are keywords and report is_primitive_type."""
        tokens = lex("int i32 u64 float f64 bool char void usize")
        assert all(t.is_primitive_type() for t in tokens)
        assert all(t.category == TokenCategory.KEYWORD for t in tokens)

    def test_rejected_constructs_still_lex(self):
        """union and goto lex as keywords so the parser can reject them."""
        assert types("union goto") == [TokenType.UNION, TokenType.GOTO]

    def test_identifier(self):
        """Names with underscores and digits are identifiers."""
        tokens = lex("_count value2 letter")
        assert [t.type for t in tokens] == [TokenType.IDENTIFIER] * 3
        assert [t.lexeme for t in tokens] == ["_count", "value2", "letter"]

    def test_boolean_and_null_literals(self):
        """true/false carry Python booleans; NULL is a literal."""
        tokens = lex("true false NULL")
        assert [t.value for t in tokens[:2]] == [True, False]
        assert tokens[2].type == TokenType.NULL
        assert all(t.category == TokenCategory.LITERAL for t in tokens)


# =============================================================================
# Numbers
# =============================================================================

class TestNumbers:
    """Integer and float literal formats."""

    @pytest.mark.parametrize("text,value", [
        ("0", 0),
        ("42", 42),
        ("1_000_000", 1000000),
        ("0x7F", 127),
        ("0XfF", 255),
        ("0o177", 127),
        ("0b1010", 10),
        ("0b1111_0000", 240),
    ])
    def test_integer_formats(self, text, value):
        """Every radix decodes to the same integer value."""
        tokens = lex(text)
        assert len(tokens) == 1
        assert tokens[0].type == TokenType.INTEGER
        assert tokens[0].value == value
        assert tokens[0].lexeme == text

    @pytest.mark.parametrize("text,value", [
        ("3.14", 3.14),
        ("2.5e-3", 0.0025),
        ("1e10", 1e10),
        ("6.02E+23", 6.02e23),
    ])
    def test_float_formats(self, text, value):
        """Decimal points and exponents make a float."""
        tokens = lex(text)
        assert tokens[0].type == TokenType.FLOAT
        assert tokens[0].value == pytest.approx(value)

    def test_field_access_on_number_is_not_float(self):
        """A dot not followed by a digit is not part of the number."""
        assert types("1.x") == [TokenType.INTEGER, TokenType.DOT, TokenType.IDENTIFIER]

    @pytest.mark.parametrize("text", [
        "1.2.3",
        "0x",
        "0xZZ",
        "0b102",
        "1__0",
        "1_",
        "007",
        "12abc",
    ])
    def test_malformed_numbers(self, text):
        """Malformed literals stop the scan with InvalidNumber."""
        error = lex_error(text)
        assert error.kind == ErrorKind.INVALID_NUMBER
        assert error.phase == Phase.LEX
        assert error.span.start == Position(1, 1)

    def test_invalid_number_message_shows_whole_literal(self):
        """The message quotes the full malformed text."""
        error = lex_error("let x = 1.2.3;")
        assert "`1.2.3`" in error.message
        assert "multiple decimal points" in error.message


# =============================================================================
# Strings and Characters
# =============================================================================

class TestStringsAndChars:
    """String and character literals."""

    def test_string_value_and_lexeme(self):
        """The lexeme keeps the quotes; the value is decoded."""
        tokens = lex('"hi\\n"')
        assert tokens[0].type == TokenType.STRING
        assert tokens[0].lexeme == '"hi\\n"'
        assert tokens[0].value == "hi\n"

    def test_escape_sequences(self):
        """Known escapes decode, including hex escapes."""
        tokens = lex('"\\t\\\\\\"\\0\\x41"')
        assert tokens[0].value == '\t\\"\0A'

    def test_char_literal(self):
        """A character literal holds one character."""
        tokens = lex("'a' '\\n' '\\''")
        assert [t.type for t in tokens] == [TokenType.CHAR_LITERAL] * 3
        assert [t.value for t in tokens] == ["a", "\n", "'"]

    def test_unterminated_string(self):
        """A string running into the end of the line is unterminated."""
        error = lex_error('let s = "abc\nlet t = 1;')
        assert error.kind == ErrorKind.UNTERMINATED_STRING
        assert error.span.start == Position(1, 9)
        assert error.hint is not None

    def test_unterminated_string_at_eof(self):
        """A string running into the end of input is unterminated."""
        assert lex_error('"abc').kind == ErrorKind.UNTERMINATED_STRING

    def test_unknown_escape(self):
        """Unknown escapes are rejected."""
        error = lex_error('"\\q"')
        assert error.kind == ErrorKind.UNEXPECTED_CHARACTER
        assert "\\q" in error.message

    def test_multi_character_char_literal(self):
        """A char literal with two characters is unterminated."""
        error = lex_error("'ab'")
        assert error.kind == ErrorKind.UNTERMINATED_STRING

    def test_empty_char_literal(self):
        """'' is rejected."""
        assert lex_error("''").kind == ErrorKind.UNEXPECTED_CHARACTER


# =============================================================================
# Operators
# =============================================================================

class TestOperators:
    """Operators scan with maximal munch."""

    def test_compound_assignment(self):
        """<<= is one token, not << followed by =."""
        assert types("x <<= 2") == [TokenType.IDENTIFIER, TokenType.LSHIFT_ASSIGN, TokenType.INTEGER]

    def test_increment_versus_plus(self):
        """+++ scans as ++ then +."""
        assert types("a+++b") == [
            TokenType.IDENTIFIER, TokenType.INCREMENT, TokenType.PLUS, TokenType.IDENTIFIER,
        ]

    def test_comparison_and_logic(self):
        """Two-character comparisons and logical operators."""
        assert types("== != <= >= && ||") == [
            TokenType.EQ, TokenType.NE, TokenType.LE, TokenType.GE, TokenType.AND, TokenType.OR,
        ]

    def test_directive_hash(self):
        """# is a delimiter starting a directive."""
        tokens = lex("#import crate.a")
        assert tokens[0].type == TokenType.HASH
        assert tokens[0].category == TokenCategory.DELIMITER
        assert [t.lexeme for t in tokens[1:]] == ["import", "crate", ".", "a"]

    def test_unexpected_character(self):
        """Characters outside the language are rejected with their position."""
        error = lex_error("let x = 1;\nlet y = @;")
        assert error.kind == ErrorKind.UNEXPECTED_CHARACTER
        assert error.message == "unexpected character `@`"
        assert error.span.start == Position(2, 9)
        assert error.source_line == "let y = @;"


# =============================================================================
# Positions, Whitespace and Comments
# =============================================================================

class TestPositions:
    """Spans are exact and 1-indexed."""

    def test_token_columns(self):
        """Each token starts at its own column."""
        tokens = lex("int main() { return 42; }")
        ret = next(t for t in tokens if t.type == TokenType.RETURN)
        assert ret.span.start == Position(1, 14)
        assert ret.span.end == Position(1, 20)

    def test_lines_advance(self):
        """Newlines reset the column and advance the line."""
        tokens = lex("a\n  b\n\n    c")
        assert [t.span.start for t in tokens] == [
            Position(1, 1), Position(2, 3), Position(4, 5),
        ]

    def test_tab_width(self):
        """A tab advances the column by the configured width."""
        result = tokenize("\tx", "<test>", tab_width=4)
        assert result.tokens[0].span.start == Position(1, 5)
        result = tokenize("\tx", "<test>")
        assert result.tokens[0].span.start == Position(1, 2)

    def test_comments_are_skipped_but_counted(self):
        """Comments vanish but still move the position."""
        tokens = lex("// line\n/* block\n comment */ x")
        assert len(tokens) == 1
        assert tokens[0].span.start == Position(3, 13)

    def test_filename_in_span(self):
        """Spans carry the filename they were lexed from."""
        result = tokenize("x", "src/main.crst")
        assert str(result.tokens[0].span) == "src/main.crst:1:1"

    def test_unterminated_block_comment(self):
        """A block comment with no end is a fault at its start."""
        error = lex_error("x /* never closed")
        assert error.kind == ErrorKind.UNTERMINATED_COMMENT
        assert error.span.start == Position(1, 3)

    def test_crlf_line_endings(self):
        """Windows line endings count as one newline."""
        tokens = lex("a\r\nb")
        assert tokens[1].span.start == Position(2, 1)


# =============================================================================
# Fail-Fast Behavior
# =============================================================================

class TestFailFast:
    """Lexing stops at the first fault."""

    def test_no_tokens_after_fault(self):
        """Tokens before the fault are kept; nothing after it and no EOF."""
        result = tokenize("a b $ c d")
        assert [t.lexeme for t in result.tokens] == ["a", "b"]
        assert not result.ok

    def test_lexer_is_not_restartable(self):
        """A second tokenize() call yields nothing."""
        lexer = Lexer("a b")
        assert len(list(lexer.tokenize())) == 3
        assert list(lexer.tokenize()) == []

    def test_eof_token(self):
        """A successful scan ends with an empty EOF token."""
        result = tokenize("")
        assert len(result.tokens) == 1
        assert result.tokens[0].type == TokenType.EOF
        assert result.tokens[0].describe() == "end of input"
