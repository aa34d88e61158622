"""
Canonical Source Formatter
==========================

Both generators pass their text through `format_source`, so the final
layout does not depend on the order or indentation the generators used
while emitting.

Rules
-----
- Every line is re-indented by its brace depth; a line that starts with
  `}` sits at the depth of the matching `{` line.
- Braces inside string literals, character literals and comments do not
  count. A quote that starts a Rust label or lifetime (`'outer:`,
  `&'static str`) is not a character literal.
- Trailing whitespace is removed, runs of blank lines collapse into one,
  blank lines at the start and end are dropped.
- The result ends with exactly one newline.

Formatting is idempotent: `format_source(format_source(s)) == format_source(s)`.
"""

from typing import Tuple


def _char_literal_length(line: str, i: int) -> int:
    """
    Length of the character literal starting at `line[i]`, or 0 if the
    quote at `i` is a label or lifetime marker.
    """
    if i + 1 >= len(line):
        return 0
    if line[i + 1] == "\\":
        search = line.find("}", i) if line.startswith("u{", i + 2) else i + 3
        end = line.find("'", search)
        return end - i + 1 if end != -1 and search != -1 else 0
    if i + 2 < len(line) and line[i + 2] == "'":
        return 3
    return 0


def brace_balance(line: str) -> Tuple[int, int]:
    """
    Count the braces of one line outside literals and comments.

    Returns:
        (leading_closers, net_change): how many `}` open the line and the
        overall change in depth
    """
    depth = 0
    leading = 0
    seen_code = False
    i = 0
    while i < len(line):
        ch = line[i]
        if ch == '"':
            i += 1
            while i < len(line) and line[i] != '"':
                i += 2 if line[i] == "\\" else 1
            seen_code = True
        elif ch == "'":
            i += max(_char_literal_length(line, i) - 1, 0)
            seen_code = True
        elif line.startswith("//", i):
            break
        elif ch == "{":
            depth += 1
            seen_code = True
        elif ch == "}":
            depth -= 1
            if not seen_code:
                leading += 1
        elif not ch.isspace():
            seen_code = True
        i += 1
    return leading, depth


def format_source(text: str, indent: int = 4) -> str:
    """
    Normalize indentation and blank lines.

    Args:
        text: Generated source text
        indent: Spaces per nesting level

    Returns:
        The formatted text, ending with a single newline
    """
    lines = []
    depth = 0
    blank = False

    for raw in text.split("\n"):
        stripped = raw.strip()
        if not stripped:
            blank = bool(lines)
            continue

        leading, change = brace_balance(stripped)
        level = max(depth - leading, 0)
        if blank:
            lines.append("")
            blank = False
        lines.append(" " * (indent * level) + stripped)
        depth = max(depth + change, 0)

    return "\n".join(lines) + "\n"
