# =============================================================================
# test_pretty.py - Source Formatter Tests
# =============================================================================
# Tests for the canonical formatter both generators share.
#
# Test coverage includes:
#   - Re-indentation by brace depth
#   - Braces inside strings, char literals, comments and Rust labels
#   - Blank-line and trailing-whitespace normalization
#   - Idempotence
# =============================================================================

import pytest

from crusty.transpiler.pretty import brace_balance, format_source


# =============================================================================
# Brace Counting
# =============================================================================

class TestBraceBalance:
    """Counting braces on a single line."""

    @pytest.mark.parametrize("line,expected", [
        ("fn f() {", (0, 1)),
        ("}", (1, -1)),
        ("} else {", (1, 0)),
        ("}}", (2, -2)),
        ('x = "}"; }', (0, -1)),
        ("let c = '{';", (0, 0)),
        ("let c = '\\'';", (0, 0)),
        ("// {", (0, 0)),
        ("x(); // }", (0, 0)),
        ("'outer: loop {", (0, 1)),
        ("{ let _old_1 = x; x += 1; _old_1 }", (0, 0)),
    ])
    def test_balance(self, line, expected):
        assert brace_balance(line) == expected


# =============================================================================
# Formatting
# =============================================================================

class TestFormatSource:
    """Layout normalization."""

    def test_reindents_by_depth(self):
        """Lines take the depth of the braces around them."""
        text = "fn f() {\nlet x = 1;\nif x {\n        g();\n}\n}"
        assert format_source(text) == "fn f() {\n    let x = 1;\n    if x {\n        g();\n    }\n}\n"

    def test_else_line_sits_at_opening_depth(self):
        """A line opening with `}` is outdented."""
        text = "if a {\nb();\n} else {\nc();\n}"
        assert format_source(text) == "if a {\n    b();\n} else {\n    c();\n}\n"

    def test_braces_in_strings_do_not_count(self):
        assert format_source('let s = "{";\nx();') == 'let s = "{";\nx();\n'

    def test_braces_in_char_literals_do_not_count(self):
        assert format_source("let c = '{';\nx();") == "let c = '{';\nx();\n"

    def test_lifetime_is_not_a_char_literal(self):
        """`&'static str` does not hide the brace that follows it."""
        text = "fn f(s: &'static str) {\nuse_it(s);\n}"
        assert format_source(text) == "fn f(s: &'static str) {\n    use_it(s);\n}\n"

    def test_label_is_not_a_char_literal(self):
        text = "'outer: loop {\nbreak 'outer;\n}"
        assert format_source(text) == "'outer: loop {\n    break 'outer;\n}\n"

    def test_comment_braces_do_not_count(self):
        assert format_source("// {\nx();") == "// {\nx();\n"

    def test_blank_line_runs_collapse(self):
        """Leading and trailing blank lines go; inner runs become one."""
        assert format_source("\n\na();\n\n\n\nb();\n\n") == "a();\n\nb();\n"

    def test_trailing_whitespace_is_removed(self):
        assert format_source("a();   \n\tb();\t") == "a();\nb();\n"

    def test_unbalanced_closer_does_not_go_negative(self):
        assert format_source("}\nx();") == "}\nx();\n"

    def test_indent_width(self):
        """The indent width is configurable."""
        assert format_source("f {\ng();\n}", indent=2) == "f {\n  g();\n}\n"

    def test_empty_text(self):
        assert format_source("") == "\n"

    @pytest.mark.parametrize("text", [
        "fn f() {\nlet x = 1;\n}",
        "impl P {\n\n\npub fn a() {}\n\n\npub fn b() {}\n}\n\n",
        "macro_rules! m {\n($a:expr) => {\n($a)\n};\n}",
    ])
    def test_idempotent(self, text):
        """Formatting formatted text changes nothing."""
        once = format_source(text)
        assert format_source(once) == once
