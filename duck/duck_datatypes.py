"""
Defines the core data types for the Duck language runtime.

This module provides the error hierarchy, the runtime value classes
(functions, lambdas, struct types and instances), the lexical `Scope`
chain and the struct type registry shared by a program and its modules.

Scalars map onto plain Python values (float, str, bool, None) and Duck
lists are plain Python lists, so aliasing a list or struct shares the
same object and mutation is visible through every binding.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


# =================================================================
# Errors
# =================================================================

class ErrorKind(Enum):
    # Fatal
    LEX_ERROR = "LexError"
    PARSE_ERROR = "ParseError"
    CONTROL_FLOW = "ControlFlowError"
    ASSERTION_FAILED = "AssertionFailed"
    CIRCULAR_IMPORT = "CircularImportError"
    # Recoverable
    TYPE_ERROR = "TypeError"
    UNDEFINED_VARIABLE = "UndefinedVariable"
    UNDEFINED_FIELD = "UndefinedField"
    DIVISION_BY_ZERO = "DivisionByZero"
    INDEX_OUT_OF_RANGE = "IndexOutOfRange"
    ARITY_MISMATCH = "ArityMismatch"
    CONVERSION_ERROR = "ConversionError"
    FILE_ERROR = "FileError"
    NETWORK_ERROR = "NetworkError"
    VALUE_ERROR = "ValueError"


class DuckError(Exception):
    """Base class for every error a Duck program can raise.

    Carries a kind tag, a human readable message and the source position
    (filled in by the evaluator when the raising code does not know it).
    """
    kind: ErrorKind = ErrorKind.TYPE_ERROR
    recoverable: bool = False

    def __init__(self, message: str, *, kind: Optional[ErrorKind] = None,
                 line: Optional[int] = None, column: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.line = line
        self.column = column
        # Module file the error was raised in, when it is not the main script.
        self.path: Optional[str] = None

    def __str__(self):
        return self.message


class FatalError(DuckError):
    """Structural errors: never caught by attempt/rescue."""


class LexError(FatalError):
    kind = ErrorKind.LEX_ERROR


class ParseError(FatalError):
    kind = ErrorKind.PARSE_ERROR


class ControlFlowError(FatalError):
    kind = ErrorKind.CONTROL_FLOW


class AssertionFailed(FatalError):
    kind = ErrorKind.ASSERTION_FAILED


class CircularImportError(FatalError):
    kind = ErrorKind.CIRCULAR_IMPORT


class DuckRuntimeError(DuckError):
    """Recoverable runtime errors; catchable by attempt/rescue."""
    recoverable = True


# =================================================================
# Core Runtime Types
# =================================================================

class Scope:
    """A lexical scope frame: name bindings plus a link to the enclosing frame.

    Lookup walks outward through `parent` links. Declaration always binds in
    this frame (shadowing anything outside); assignment goes through
    `find_owner` so it mutates the nearest frame that already has the name.
    """
    def __init__(self, parent: Optional['Scope'] = None):
        self.bindings: Dict[str, Any] = {}
        self.parent = parent

    def __setitem__(self, key: str, value: Any):
        if not isinstance(key, str):
            raise TypeError(f"Scope key must be a str, not {type(key)}")
        self.bindings[key] = value

    def __getitem__(self, key: str) -> Any:
        owner = self.find_owner(key)
        if owner is not None:
            return owner.bindings[key]
        raise KeyError(key)

    def __contains__(self, key: str) -> bool:
        return self.find_owner(key) is not None

    def find_owner(self, key: str) -> Optional['Scope']:
        """Finds the Scope in the lookup chain (self → parent ...) that owns key."""
        scope = self
        while scope is not None:
            if key in scope.bindings:
                return scope
            scope = scope.parent
        return None

    def declare(self, key: str, value: Any):
        self[key] = value

    def assign(self, key: str, value: Any) -> bool:
        """Rebinds key in its owning scope; returns False when no scope has it."""
        owner = self.find_owner(key)
        if owner is None:
            return False
        owner.bindings[key] = value
        return True

    def keys(self):
        return self.bindings.keys()

    def __repr__(self):
        return f"<Scope keys={list(self.bindings.keys())!r}>"


class DuckFunction:
    """A named function: parameters, a block body and its defining scope."""
    def __init__(self, name: str, params: List[str], body: list, closure: Scope):
        self.name = name
        self.params = list(params)
        self.body = body
        self.closure = closure

    def __repr__(self):
        return f"<DuckFunction {self.name}({', '.join(self.params)})>"


class DuckLambda:
    """An anonymous single-expression function.

    `closure` is the capture record built when the lambda literal was
    evaluated: a scope holding copies of the free variables visible at
    that moment, parented to the defining scope.
    """
    def __init__(self, params: List[str], body: Any, closure: Scope):
        self.params = list(params)
        self.body = body
        self.closure = closure

    def __repr__(self):
        return f"<DuckLambda ({', '.join(self.params)})>"


class StructType:
    def __init__(self, name: str, fields: List[str]):
        self.name = name
        self.fields = list(fields)

    def __eq__(self, other):
        return isinstance(other, StructType) and self.name == other.name and self.fields == other.fields

    def __hash__(self):
        return hash((self.name, tuple(self.fields)))

    def __repr__(self):
        return f"<StructType {self.name} {self.fields!r}>"


class StructInstance:
    """A struct value: a type tag plus an ordered, mutable field map."""
    def __init__(self, type_name: str, fields: Dict[str, Any]):
        self.type_name = type_name
        self.fields = dict(fields)

    def __repr__(self):
        return f"<StructInstance {self.type_name} {self.fields!r}>"


class StructRegistry:
    """Process-wide struct definitions, shared by a program and its modules."""
    def __init__(self):
        self._types: Dict[str, StructType] = {}

    def define(self, name: str, fields: List[str]) -> StructType:
        # Redefinition replaces the entry; existing instances keep their fields.
        struct_type = StructType(name, fields)
        self._types[name] = struct_type
        return struct_type

    def get(self, name: str) -> Optional[StructType]:
        return self._types.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._types

    def names(self) -> List[str]:
        return list(self._types.keys())


# =================================================================
# Value helpers
# =================================================================

def is_number(value: Any) -> bool:
    # bool is a subclass of int, so exclude it explicitly
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_whole(value: Any) -> bool:
    return is_number(value) and float(value).is_integer()


def type_name(value: Any) -> str:
    """The name `type-of` reports for a value."""
    if value is None:
        return 'nil'
    if isinstance(value, bool):
        return 'boolean'
    if is_number(value):
        return 'number'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, list):
        return 'list'
    if isinstance(value, StructInstance):
        return value.type_name
    if isinstance(value, StructType):
        return 'struct'
    if isinstance(value, DuckFunction):
        return 'function'
    if isinstance(value, DuckLambda):
        return 'lambda'
    if callable(value):
        return 'builtin'
    return type(value).__name__


def values_equal(a: Any, b: Any) -> bool:
    """Duck `==`: scalars by value, lists/structs by handle then element-wise."""
    if a is b:
        return True
    if is_number(a) and is_number(b):
        return float(a) == float(b)
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, StructInstance) and isinstance(b, StructInstance):
        if a.type_name != b.type_name or a.fields.keys() != b.fields.keys():
            return False
        return all(values_equal(v, b.fields[k]) for k, v in a.fields.items())
    if isinstance(a, StructType) and isinstance(b, StructType):
        return a == b
    return False
