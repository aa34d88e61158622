"""
Crusty Type System
==================

Semantic types used by the analyzer. Types are nominal and exact: two
types are equal only when they are the same primitive, or the same named
struct/enum from the same module, or structurally identical arrays and
function signatures. There is no implicit numeric promotion; every
widening or narrowing needs an explicit cast.

Supported Types
---------------
| Crusty spelling         | Canonical | Rust          |
|-------------------------|-----------|---------------|
| void                    | void      | ()            |
| bool                    | bool      | bool          |
| char                    | char      | char          |
| int / i32               | i32       | i32           |
| i8 i16 i64 isize        | same      | same          |
| u8 u16 u32 u64 usize    | same      | same          |
| float / f64             | f64       | f64           |
| f32                     | f32       | f32           |
| char*                   | char*     | &'static str  |
| T[N]                    | T[N]      | [T; N]        |
| &T                      | &T        | &T            |
| &var T                  | &var T    | &mut T        |

Nominal kinds: Struct(name, fields, methods) and Enum(name, tags). Enums
are C-style: tags only, no per-variant payload.

A mutable reference is accepted where a shared one is expected, never the
other way round.

Sentinels
---------
- ERROR: assigned to an ill-typed expression. It is compatible with
  every type so enclosing expressions are not reported again.
- OPAQUE: the result of a macro invocation or `NULL`. Macro expansion is
  not modelled, so these values are accepted wherever a value is needed.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional


# =============================================================================
# Type Kind Enumeration
# =============================================================================

class TypeKind(Enum):
    PRIMITIVE = auto()
    STRUCT = auto()
    ENUM = auto()
    FUNCTION = auto()
    ARRAY = auto()
    REFERENCE = auto()
    ERROR = auto()
    OPAQUE = auto()


SIGNED_INTEGERS = ("i8", "i16", "i32", "i64", "isize")
UNSIGNED_INTEGERS = ("u8", "u16", "u32", "u64", "usize")
FLOATS = ("f32", "f64")


# =============================================================================
# Type Data Class
# =============================================================================

@dataclass(frozen=True)
class Type:
    """
    A semantic type.

    Equality is nominal for structs and enums: only kind, name and the
    defining module take part, so field and method tables can be filled
    in after the type is first referenced.

    Attributes:
        kind: Type category
        name: Canonical primitive name, or the struct/enum name
        module: Defining module for structs and enums
        fields: Struct fields as ((name, Type), ...)
        methods: Struct methods as ((name, Type, receiver), ...) where receiver
            is None for associated functions, False for `&self` and True
            for `&var self`
        tags: Enum tag names, in declaration order
        params: Function parameter types
        result: Function return type
        element: Array element type, or the referenced type
        size: Array length
        mutable: True for `&var T` references
    """
    kind: TypeKind
    name: str = ""
    module: str = ""
    fields: tuple = field(default=(), compare=False)
    methods: tuple = field(default=(), compare=False)
    tags: tuple = field(default=(), compare=False)
    params: tuple = ()
    result: Optional["Type"] = None
    element: Optional["Type"] = None
    size: int = 0
    mutable: bool = False

    # =========================================================================
    # Classification
    # =========================================================================

    @property
    def is_error(self) -> bool:
        return self.kind == TypeKind.ERROR

    @property
    def is_opaque(self) -> bool:
        return self.kind == TypeKind.OPAQUE

    @property
    def is_wildcard(self) -> bool:
        """True for the sentinels that match any type."""
        return self.kind in (TypeKind.ERROR, TypeKind.OPAQUE)

    @property
    def is_void(self) -> bool:
        return self.kind == TypeKind.PRIMITIVE and self.name == "void"

    @property
    def is_bool(self) -> bool:
        return self.kind == TypeKind.PRIMITIVE and self.name == "bool"

    @property
    def is_string(self) -> bool:
        return self.kind == TypeKind.PRIMITIVE and self.name == "char*"

    @property
    def is_integer(self) -> bool:
        return self.kind == TypeKind.PRIMITIVE and (
            self.name in SIGNED_INTEGERS or self.name in UNSIGNED_INTEGERS
        )

    @property
    def is_signed(self) -> bool:
        return self.kind == TypeKind.PRIMITIVE and (self.name in SIGNED_INTEGERS or self.name in FLOATS)

    @property
    def is_float(self) -> bool:
        return self.kind == TypeKind.PRIMITIVE and self.name in FLOATS

    @property
    def is_numeric(self) -> bool:
        return self.is_integer or self.is_float

    @property
    def is_struct(self) -> bool:
        return self.kind == TypeKind.STRUCT

    @property
    def is_enum(self) -> bool:
        return self.kind == TypeKind.ENUM

    @property
    def is_array(self) -> bool:
        return self.kind == TypeKind.ARRAY

    @property
    def is_function(self) -> bool:
        return self.kind == TypeKind.FUNCTION

    @property
    def is_reference(self) -> bool:
        return self.kind == TypeKind.REFERENCE

    def dereferenced(self) -> "Type":
        """Strip one level of reference, if any."""
        return self.element if self.is_reference else self

    # =========================================================================
    # Lookups
    # =========================================================================

    def field_type(self, name: str) -> Optional["Type"]:
        for field_name, field_type in self.fields:
            if field_name == name:
                return field_type
        return None

    def method(self, name: str) -> Optional[tuple]:
        """Return (function_type, receiver) for a method, or None."""
        for method_name, method_type, receiver in self.methods:
            if method_name == name:
                return method_type, receiver
        return None

    def __str__(self) -> str:
        if self.kind == TypeKind.ARRAY:
            return f"{self.element}[{self.size}]"
        if self.kind == TypeKind.REFERENCE:
            return f"&var {self.element}" if self.mutable else f"&{self.element}"
        if self.kind == TypeKind.FUNCTION:
            params = ", ".join(str(p) for p in self.params)
            return f"fn({params}) -> {self.result}"
        if self.kind == TypeKind.ERROR:
            return "{error}"
        if self.kind == TypeKind.OPAQUE:
            return "_"
        return self.name


# =============================================================================
# Predefined Types
# =============================================================================

def primitive(name: str) -> Type:
    return Type(TypeKind.PRIMITIVE, name)


ERROR = Type(TypeKind.ERROR)
OPAQUE = Type(TypeKind.OPAQUE)

VOID = primitive("void")
BOOL = primitive("bool")
CHAR = primitive("char")
I32 = primitive("i32")
USIZE = primitive("usize")
F64 = primitive("f64")
STRING = primitive("char*")

# Crusty spellings -> canonical primitive
PRIMITIVES: dict[str, Type] = {
    "void": VOID,
    "bool": BOOL,
    "char": CHAR,
    "int": I32,
    "float": F64,
    "char*": STRING,
}
for _name in SIGNED_INTEGERS + UNSIGNED_INTEGERS + FLOATS:
    PRIMITIVES.setdefault(_name, primitive(_name))


def struct_type(name: str, module: str = "", fields: tuple = (), methods: tuple = ()) -> Type:
    return Type(TypeKind.STRUCT, name, module, fields=fields, methods=methods)


def enum_type(name: str, module: str = "", tags: tuple = ()) -> Type:
    return Type(TypeKind.ENUM, name, module, tags=tags)


def function_type(params: tuple, result: Type) -> Type:
    return Type(TypeKind.FUNCTION, params=tuple(params), result=result)


def array_type(element: Type, size: int) -> Type:
    return Type(TypeKind.ARRAY, element=element, size=size)


def reference_type(element: Type, mutable: bool = False) -> Type:
    return Type(TypeKind.REFERENCE, element=element, mutable=mutable)


# =============================================================================
# Compatibility
# =============================================================================

def types_match(expected: Type, actual: Type) -> bool:
    """
    Check two types for exact equality, letting the sentinels through.

    Arrays and references match element-wise so an ERROR element does not
    cause a second report. `&var T` is accepted where `&T` is expected.
    """
    if expected.is_wildcard or actual.is_wildcard:
        return True
    if expected.is_array and actual.is_array:
        return expected.size == actual.size and types_match(expected.element, actual.element)
    if expected.is_reference and actual.is_reference:
        if expected.mutable and not actual.mutable:
            return False
        return types_match(expected.element, actual.element)
    return expected == actual


def can_cast(source: Type, target: Type) -> bool:
    """
    Return True if `(target)source` is a valid cast.

    Mirrors Rust's `as`: numeric to numeric, bool or char to integer,
    u8 to char, enum to integer, and any type to itself.
    """
    if source.is_wildcard or target.is_wildcard or source == target:
        return True
    if source.is_numeric and target.is_numeric:
        return True
    if (source.is_bool or source.kind == TypeKind.PRIMITIVE and source.name == "char") and target.is_integer:
        return True
    if source.name == "u8" and source.kind == TypeKind.PRIMITIVE and target == CHAR:
        return True
    if source.is_enum and target.is_integer:
        return True
    return False
