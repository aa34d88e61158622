"""
Macro Naming
============

Crusty macros are written `__NAME__`, both when defined with `#define`
and when invoked. In Rust the same macro is `name!`: the surrounding
double underscores are dropped and the name is lowercased. A name that
collides with a Rust keyword gains a `_macro` suffix.

    __ADD__      -> add!
    __println__  -> println!
    __TYPE__     -> type_macro!

Macro bodies are never expanded; the analyzer only checks that an
invoked macro is either defined in the module or one of the standard
Rust macros below.
"""

RUST_KEYWORDS = frozenset({
    "as", "async", "await", "break", "const", "continue", "crate", "dyn",
    "else", "enum", "extern", "false", "fn", "for", "if", "impl", "in",
    "let", "loop", "match", "mod", "move", "mut", "pub", "ref", "return",
    "self", "Self", "static", "struct", "super", "trait", "true", "type",
    "unsafe", "use", "where", "while", "abstract", "become", "box", "do",
    "final", "macro", "override", "priv", "typeof", "unsized", "virtual",
    "yield", "try",
})

# Standard library macros callable as `__name__(...)`
BUILTIN_MACROS = frozenset({
    "println", "print", "eprintln", "eprint", "format", "write", "writeln",
    "panic", "assert", "assert_eq", "assert_ne", "debug_assert", "vec",
    "unreachable", "todo", "unimplemented", "dbg", "matches",
})

# Macros that never return control to the caller
DIVERGING_MACROS = frozenset({"panic", "unreachable", "todo", "unimplemented"})


def is_macro_name(name: str) -> bool:
    """True for `__NAME__` identifiers, which denote macros."""
    return len(name) > 4 and name.startswith("__") and name.endswith("__")


def rust_macro_name(name: str) -> str:
    """
    Convert a Crusty macro name to its Rust spelling (without the `!`).

    Example:
        >>> rust_macro_name("__MAX__")
        'max'
    """
    stripped = name[2:-2] if is_macro_name(name) else name
    rust_name = stripped.lower()
    if rust_name in RUST_KEYWORDS:
        rust_name += "_macro"
    return rust_name


def is_builtin_macro(name: str) -> bool:
    return rust_macro_name(name) in BUILTIN_MACROS


def is_diverging_macro(name: str) -> bool:
    return rust_macro_name(name) in DIVERGING_MACROS
