"""
Syntax tree node definitions for Duck.

Every bracketed statement becomes a `Block` carrying the statement, the
authorization flag decided at parse time and its source position. Nodes
are frozen: the tree is never mutated after parsing.
"""

from dataclasses import dataclass
from typing import Any, Iterator, Optional, Tuple, Union


class Node:
    """Base class for all syntax tree nodes."""


# =================================================================
# Expressions
# =================================================================

@dataclass(frozen=True)
class Literal(Node):
    value: Any
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class Identifier(Node):
    name: str
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class ListLiteral(Node):
    items: Tuple[Node, ...]
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class Lambda(Node):
    """`[params] -> expr`; free_names lists what the body reads from outside."""
    params: Tuple[str, ...]
    body: Node
    free_names: Tuple[str, ...] = ()
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class BinaryOp(Node):
    op: str
    left: Node
    right: Node
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class UnaryOp(Node):
    op: str
    operand: Node
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class Call(Node):
    callee: Node
    args: Tuple[Node, ...]
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class FieldAccess(Node):
    target: Node
    field: str
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class IndexAccess(Node):
    target: Node
    index: Node
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class InterpolatedString(Node):
    # Literal text parts are str, interpolated parts are expression nodes.
    parts: Tuple[Union[str, Node], ...]
    line: int = 0
    column: int = 0


# =================================================================
# Patterns
# =================================================================

@dataclass(frozen=True)
class WildcardPattern(Node):
    line: int = 0


@dataclass(frozen=True)
class LiteralPattern(Node):
    value: Any
    line: int = 0


@dataclass(frozen=True)
class BindingPattern(Node):
    name: str
    line: int = 0


@dataclass(frozen=True)
class ListPattern(Node):
    items: Tuple[Node, ...]
    line: int = 0


# =================================================================
# Statements
# =================================================================

@dataclass(frozen=True)
class Block(Node):
    statement: Node
    authorized: bool
    line: int = 0
    column: int = 0


Body = Tuple[Block, ...]


@dataclass(frozen=True)
class Let(Node):
    name: str
    value: Node
    line: int = 0


@dataclass(frozen=True)
class Assign(Node):
    # Identifier, FieldAccess or IndexAccess
    target: Node
    value: Node
    line: int = 0


@dataclass(frozen=True)
class If(Node):
    condition: Node
    then_body: Body
    else_body: Optional[Body] = None
    line: int = 0


@dataclass(frozen=True)
class While(Node):
    condition: Node
    body: Body
    line: int = 0


@dataclass(frozen=True)
class Repeat(Node):
    count: Node
    body: Body
    line: int = 0


@dataclass(frozen=True)
class ForEach(Node):
    var: str
    iterable: Node
    body: Body
    line: int = 0


@dataclass(frozen=True)
class FunctionDef(Node):
    name: str
    params: Tuple[str, ...]
    body: Body
    line: int = 0


@dataclass(frozen=True)
class StructDef(Node):
    name: str
    fields: Tuple[str, ...]
    line: int = 0


@dataclass(frozen=True)
class Return(Node):
    value: Optional[Node] = None
    line: int = 0


@dataclass(frozen=True)
class Break(Node):
    line: int = 0


@dataclass(frozen=True)
class Continue(Node):
    line: int = 0


@dataclass(frozen=True)
class ExprStatement(Node):
    expr: Node
    line: int = 0


@dataclass(frozen=True)
class MatchArm(Node):
    patterns: Tuple[Node, ...]
    body: Body
    line: int = 0


@dataclass(frozen=True)
class Match(Node):
    subject: Node
    arms: Tuple[MatchArm, ...]
    line: int = 0


@dataclass(frozen=True)
class Attempt(Node):
    body: Body
    error_name: str
    rescue_body: Body
    line: int = 0


@dataclass(frozen=True)
class Honk(Node):
    condition: Node
    message: Optional[Node] = None
    line: int = 0


@dataclass(frozen=True)
class Migrate(Node):
    specifier: Node
    alias: Optional[str] = None
    line: int = 0


# =================================================================
# Tree helpers
# =================================================================

def bodies_of(stmt: Node) -> Iterator[Body]:
    """Yields the nested block bodies a statement owns."""
    match stmt:
        case If(then_body=then_body, else_body=else_body):
            yield then_body
            if else_body is not None:
                yield else_body
        case While(body=body) | Repeat(body=body) | ForEach(body=body) | FunctionDef(body=body):
            yield body
        case Match(arms=arms):
            for arm in arms:
                yield arm.body
        case Attempt(body=body, rescue_body=rescue_body):
            yield body
            yield rescue_body


def walk_blocks(blocks) -> Iterator[Block]:
    """Depth-first walk over blocks and every block nested in their bodies."""
    for block in blocks:
        yield block
        for body in bodies_of(block.statement):
            yield from walk_blocks(body)


def free_names(expr: Node, bound: frozenset = frozenset()) -> Tuple[str, ...]:
    """Names an expression reads that are not bound by an enclosing lambda."""
    seen: dict = {}

    def visit(node, bound):
        match node:
            case Identifier(name=name):
                if name not in bound:
                    seen.setdefault(name, None)
            case Lambda(params=params, body=body):
                visit(body, bound | frozenset(params))
            case BinaryOp(left=left, right=right):
                visit(left, bound)
                visit(right, bound)
            case UnaryOp(operand=operand):
                visit(operand, bound)
            case Call(callee=callee, args=args):
                visit(callee, bound)
                for a in args:
                    visit(a, bound)
            case FieldAccess(target=target):
                visit(target, bound)
            case IndexAccess(target=target, index=index):
                visit(target, bound)
                visit(index, bound)
            case ListLiteral(items=items):
                for item in items:
                    visit(item, bound)
            case InterpolatedString(parts=parts):
                for part in parts:
                    if isinstance(part, Node):
                        visit(part, bound)

    visit(expr, bound)
    return tuple(seen)
