"""
The core Duck interpreter: the Evaluator.

Statements complete with a `Completion` (normal, break, continue or
return-with-value) that is handed back up the execution chain; loops
consume break/continue and call boundaries consume return. Errors are
exceptions from the DuckError hierarchy.
"""
import inspect
import math
import os
import sys
from typing import Any, Callable, Dict, List, Optional, Set

from duck.duck_ast import (
    Block, Literal, Identifier, ListLiteral, Lambda, BinaryOp, UnaryOp, Call,
    FieldAccess, IndexAccess, InterpolatedString,
    WildcardPattern, LiteralPattern, BindingPattern, ListPattern,
    Let, Assign, If, While, Repeat, ForEach, FunctionDef, StructDef, Return,
    Break, Continue, ExprStatement, Match, Attempt, Honk, Migrate,
)
from duck.duck_datatypes import (
    Scope, DuckFunction, DuckLambda, StructType, StructInstance, StructRegistry,
    DuckError, DuckRuntimeError, ControlFlowError, AssertionFailed, ErrorKind,
    is_number, is_whole, type_name, values_equal,
)
from duck.duck_goose import ExecutionStats, refusal
from duck.duck_printer import display


class Completion:
    """How a statement finished."""
    __slots__ = ("kind", "value")

    def __init__(self, kind: str, value: Any = None):
        self.kind = kind
        self.value = value

    def __repr__(self):
        return f"<Completion {self.kind} {self.value!r}>"


NORMAL = Completion("normal")
BREAK = Completion("break")
CONTINUE = Completion("continue")


def type_error(message: str) -> DuckRuntimeError:
    return DuckRuntimeError(message, kind=ErrorKind.TYPE_ERROR)


class Evaluator:
    """The Duck execution engine."""

    def __init__(self, structs: Optional[StructRegistry] = None):
        self.side_effects: List[Dict] = []
        self.call_stack: List[Dict] = []
        self.stats = ExecutionStats()
        self.structs = structs if structs is not None else StructRegistry()
        # Lines of blocks skipped for lack of a quack, in execution order.
        self.skipped_lines: List[int] = []
        # Value of the most recent expression statement (shown by the REPL).
        self.last_value: Any = None
        # Live output streams; None means side effects are only recorded.
        self.stdout = None
        self.stderr = None
        self.stdin = None
        self.source_dir: Optional[str] = None
        # Module loading, wired up by ScriptRunner.
        self.loader: Optional[Callable] = None
        self.module_cache: Dict[str, Dict[str, Any]] = {}
        self.loading: Set[str] = set()

    def _dbg(self, *parts):
        if os.environ.get("GOOSE_DEBUG"):
            try:
                print("[DBG]", *parts, file=sys.stderr)
            except Exception:
                pass

    def _push_frame(self, name, func, args, line):
        self.call_stack.append({
            'name': name,
            'func': func,
            'args': args,
            'line': line,
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def emit(self, topic: str, message: str, **extra):
        """Record a side effect and echo it to the matching live stream."""
        effect = {'topics': [topic], 'message': message}
        effect.update(extra)
        self.side_effects.append(effect)
        stream = self.stdout if topic == 'stdout' else self.stderr
        if stream is not None:
            print(message, file=stream, flush=True)

    # ------------------------------------------------------------------ blocks

    async def run(self, blocks: List[Block], scope: Scope) -> Any:
        """Executes a top-level block sequence; returns the last expression value."""
        self.last_value = None
        for block in blocks:
            completion = await self.exec_block(block, scope)
            if completion is not NORMAL:
                raise ControlFlowError(self._stray_signal_message(completion), line=block.line)
        return self.last_value

    async def exec_block(self, block: Block, scope: Scope) -> Completion:
        self.stats.total_blocks += 1
        if not block.authorized:
            self.stats.unquacked_blocks += 1
            self.skipped_lines.append(block.line)
            self._dbg("skip unquacked block", "line", block.line)
            self.emit('refusal', refusal(block.line), line=block.line)
            return NORMAL
        self.stats.quacked_blocks += 1
        try:
            return await self._exec(block.statement, scope)
        except DuckError as e:
            if e.line is None:
                e.line = block.line
                e.column = block.column
            raise

    async def exec_body(self, blocks, scope: Scope) -> Completion:
        for block in blocks:
            completion = await self.exec_block(block, scope)
            if completion is not NORMAL:
                return completion
        return NORMAL

    def _stray_signal_message(self, completion: Completion) -> str:
        if completion.kind == "return":
            return "'return' used outside of a function"
        return f"'{completion.kind}' used outside of a loop"

    # ------------------------------------------------------------------ statements

    async def _exec(self, stmt, scope: Scope) -> Completion:
        match stmt:
            case Let(name=name, value=value):
                scope.declare(name, await self._eval(value, scope))
                return NORMAL

            case Assign(target=target, value=value):
                await self._assign(target, value, scope)
                return NORMAL

            case If(condition=condition, then_body=then_body, else_body=else_body):
                if self._truth(await self._eval(condition, scope), "if"):
                    return await self.exec_body(then_body, Scope(parent=scope))
                if else_body is not None:
                    return await self.exec_body(else_body, Scope(parent=scope))
                return NORMAL

            case While(condition=condition, body=body):
                self.stats.loops_executed += 1
                while self._truth(await self._eval(condition, scope), "while"):
                    completion = await self.exec_body(body, Scope(parent=scope))
                    if completion is BREAK:
                        break
                    if completion.kind == "return":
                        return completion
                return NORMAL

            case Repeat(count=count, body=body):
                self.stats.loops_executed += 1
                n = await self._eval(count, scope)
                if not is_whole(n) or n < 0:
                    raise type_error(f"repeat needs a non-negative whole number, got {display(n)} ({type_name(n)})")
                for _ in range(int(n)):
                    completion = await self.exec_body(body, Scope(parent=scope))
                    if completion is BREAK:
                        break
                    if completion.kind == "return":
                        return completion
                return NORMAL

            case ForEach(var=var, iterable=iterable, body=body):
                self.stats.loops_executed += 1
                source = await self._eval(iterable, scope)
                if isinstance(source, list):
                    items = list(source)
                elif isinstance(source, str):
                    items = list(source)
                else:
                    raise type_error(f"for each needs a list or a string, got {type_name(source)}")
                for item in items:
                    child = Scope(parent=scope)
                    child.declare(var, item)
                    completion = await self.exec_body(body, child)
                    if completion is BREAK:
                        break
                    if completion.kind == "return":
                        return completion
                return NORMAL

            case FunctionDef(name=name, params=params, body=body):
                self.stats.functions_defined += 1
                scope.declare(name, DuckFunction(name, list(params), body, scope))
                return NORMAL

            case StructDef(name=name, fields=fields):
                self.stats.structs_defined += 1
                if name in self.structs:
                    self._dbg("struct redefined", name)
                self.structs.define(name, list(fields))
                return NORMAL

            case Return(value=value):
                result = None if value is None else await self._eval(value, scope)
                return Completion("return", result)

            case Break():
                return BREAK

            case Continue():
                return CONTINUE

            case ExprStatement(expr=expr):
                self.last_value = await self._eval(expr, scope)
                return NORMAL

            case Match(subject=subject, arms=arms):
                value = await self._eval(subject, scope)
                for arm in arms:
                    for pattern in arm.patterns:
                        bindings: Dict[str, Any] = {}
                        if self._match_pattern(pattern, value, bindings):
                            child = Scope(parent=scope)
                            for k, v in bindings.items():
                                child.declare(k, v)
                            return await self.exec_body(arm.body, child)
                self._dbg("match fell through", display(value))
                return NORMAL

            case Attempt(body=body, error_name=error_name, rescue_body=rescue_body):
                depth = len(self.call_stack)
                try:
                    return await self.exec_body(body, Scope(parent=scope))
                except DuckRuntimeError as e:
                    del self.call_stack[depth:]
                    self._dbg("rescued", e.kind.value, e.message)
                    child = Scope(parent=scope)
                    child.declare(error_name, e.message)
                    return await self.exec_body(rescue_body, child)

            case Honk(condition=condition, message=message):
                if not self._truth(await self._eval(condition, scope), "honk"):
                    text = "Assertion failed"
                    if message is not None:
                        text = display(await self._eval(message, scope))
                    raise AssertionFailed(text, line=stmt.line)
                return NORMAL

            case Migrate(specifier=specifier, alias=alias):
                spec = await self._eval(specifier, scope)
                if not isinstance(spec, str):
                    raise type_error(f"migrate needs a string path, got {type_name(spec)}")
                if self.loader is None:
                    raise DuckRuntimeError("Modules cannot be loaded here", kind=ErrorKind.FILE_ERROR)
                await self.loader(spec, alias, scope)
                return NORMAL

            case _:
                raise TypeError(f"Unknown statement node: {stmt!r}")

    async def _assign(self, target, value_expr, scope: Scope):
        match target:
            case Identifier(name=name):
                value = await self._eval(value_expr, scope)
                if not scope.assign(name, value):
                    raise DuckRuntimeError(
                        f"Cannot assign to undefined variable '{name}'; declare it first with [let {name} be ...]",
                        kind=ErrorKind.UNDEFINED_VARIABLE)
            case FieldAccess(target=obj_expr, field=field):
                obj = await self._eval(obj_expr, scope)
                if not isinstance(obj, StructInstance):
                    raise type_error(f"Cannot set field '{field}' on a {type_name(obj)}")
                if field not in obj.fields:
                    raise DuckRuntimeError(f"{obj.type_name} has no field '{field}'", kind=ErrorKind.UNDEFINED_FIELD)
                obj.fields[field] = await self._eval(value_expr, scope)
            case IndexAccess(target=obj_expr, index=index_expr):
                obj = await self._eval(obj_expr, scope)
                index = await self._eval(index_expr, scope)
                if isinstance(obj, str):
                    raise type_error("Strings cannot be changed in place")
                if not isinstance(obj, list):
                    raise type_error(f"Cannot index into a {type_name(obj)}")
                i = self._index(obj, index)
                obj[i] = await self._eval(value_expr, scope)

    def _truth(self, value, construct: str) -> bool:
        if not isinstance(value, bool):
            raise type_error(f"The {construct} condition must be a boolean, got {type_name(value)}")
        return value

    def _index(self, seq, index) -> int:
        if not is_whole(index):
            raise type_error(f"Index must be a whole number, got {display(index)} ({type_name(index)})")
        i = int(index)
        n = len(seq)
        if i < 0:
            i += n
        if not 0 <= i < n:
            raise DuckRuntimeError(f"Index {int(index)} is out of range for length {n}",
                                   kind=ErrorKind.INDEX_OUT_OF_RANGE)
        return i

    def _match_pattern(self, pattern, value, bindings: Dict[str, Any]) -> bool:
        match pattern:
            case WildcardPattern():
                return True
            case LiteralPattern(value=literal):
                return values_equal(literal, value)
            case BindingPattern(name=name):
                bindings[name] = value
                return True
            case ListPattern(items=items):
                if not isinstance(value, list) or len(value) != len(items):
                    return False
                return all(self._match_pattern(p, v, bindings) for p, v in zip(items, value))
        return False

    # ------------------------------------------------------------------ expressions

    async def _eval(self, expr, scope: Scope) -> Any:
        match expr:
            case Literal(value=value):
                return value

            case Identifier(name=name):
                owner = scope.find_owner(name)
                if owner is not None:
                    return owner.bindings[name]
                struct_type = self.structs.get(name)
                if struct_type is not None:
                    return struct_type
                raise DuckRuntimeError(f"Undefined variable '{name}'", kind=ErrorKind.UNDEFINED_VARIABLE)

            case ListLiteral(items=items):
                return [await self._eval(item, scope) for item in items]

            case Lambda(params=params, body=body, free_names=names):
                # Capture record: copies of the free variables as they are right now.
                capture = Scope(parent=scope)
                for name in names:
                    owner = scope.find_owner(name)
                    if owner is not None:
                        capture.bindings[name] = owner.bindings[name]
                return DuckLambda(list(params), body, capture)

            case BinaryOp(op="and", left=left, right=right):
                if not self._logic_operand(await self._eval(left, scope), "and"):
                    return False
                return self._logic_operand(await self._eval(right, scope), "and")

            case BinaryOp(op="or", left=left, right=right):
                if self._logic_operand(await self._eval(left, scope), "or"):
                    return True
                return self._logic_operand(await self._eval(right, scope), "or")

            case BinaryOp(op=op, left=left, right=right):
                lhs = await self._eval(left, scope)
                rhs = await self._eval(right, scope)
                return self._binary(op, lhs, rhs)

            case UnaryOp(op="not", operand=operand):
                value = await self._eval(operand, scope)
                if not isinstance(value, bool):
                    raise type_error(f"'not' needs a boolean, got {type_name(value)}")
                return not value

            case UnaryOp(op="-", operand=operand):
                value = await self._eval(operand, scope)
                if not is_number(value):
                    raise type_error(f"Cannot negate a {type_name(value)}")
                return -float(value)

            case Call(callee=callee, args=args, line=line):
                func = await self._eval(callee, scope)
                values = [await self._eval(a, scope) for a in args]
                name = callee.name if isinstance(callee, Identifier) else None
                return await self.call(func, values, name=name, line=line)

            case FieldAccess(target=target, field=field):
                obj = await self._eval(target, scope)
                if not isinstance(obj, StructInstance):
                    raise type_error(f"Cannot read field '{field}' of a {type_name(obj)}")
                if field not in obj.fields:
                    raise DuckRuntimeError(f"{obj.type_name} has no field '{field}'", kind=ErrorKind.UNDEFINED_FIELD)
                return obj.fields[field]

            case IndexAccess(target=target, index=index):
                obj = await self._eval(target, scope)
                idx = await self._eval(index, scope)
                if isinstance(obj, (list, str)):
                    return obj[self._index(obj, idx)]
                raise type_error(f"Cannot index into a {type_name(obj)}")

            case InterpolatedString(parts=parts):
                pieces = []
                for part in parts:
                    if isinstance(part, str):
                        pieces.append(part)
                    else:
                        pieces.append(display(await self._eval(part, scope)))
                return "".join(pieces)

            case _:
                raise TypeError(f"Unknown expression node: {expr!r}")

    def _logic_operand(self, value, op: str) -> bool:
        if not isinstance(value, bool):
            raise type_error(f"'{op}' needs boolean operands, got {type_name(value)}")
        return value

    def _binary(self, op: str, lhs, rhs):
        match op:
            case "==":
                return values_equal(lhs, rhs)
            case "!=":
                return not values_equal(lhs, rhs)
            case "<" | ">" | "<=" | ">=":
                return self._compare(op, lhs, rhs)
            case "+":
                if is_number(lhs) and is_number(rhs):
                    return float(lhs) + float(rhs)
                if isinstance(lhs, str) and isinstance(rhs, str):
                    return lhs + rhs
                if isinstance(lhs, list) and isinstance(rhs, list):
                    return lhs + rhs
                raise type_error(f"Cannot add {type_name(lhs)} and {type_name(rhs)}")
            case "*":
                if isinstance(lhs, str) and is_number(rhs):
                    if not is_whole(rhs) or rhs < 0:
                        raise type_error("A string can only be repeated a non-negative whole number of times")
                    return lhs * int(rhs)
                self._numeric_operands(op, lhs, rhs)
                return float(lhs) * float(rhs)
            case "-":
                self._numeric_operands(op, lhs, rhs)
                return float(lhs) - float(rhs)
            case "/" | "%":
                self._numeric_operands(op, lhs, rhs)
                if rhs == 0:
                    raise DuckRuntimeError("Division by zero", kind=ErrorKind.DIVISION_BY_ZERO)
                if op == "/":
                    return float(lhs) / float(rhs)
                # Remainder takes the sign of the dividend
                return math.fmod(float(lhs), float(rhs))
        raise type_error(f"Unknown operator '{op}'")

    def _numeric_operands(self, op, lhs, rhs):
        if not (is_number(lhs) and is_number(rhs)):
            raise type_error(f"'{op}' needs two numbers, got {type_name(lhs)} and {type_name(rhs)}")

    def _compare(self, op, lhs, rhs) -> bool:
        same = (
            (is_number(lhs) and is_number(rhs))
            or (isinstance(lhs, str) and isinstance(rhs, str))
            or (isinstance(lhs, bool) and isinstance(rhs, bool))
        )
        if not same:
            raise type_error(f"Cannot compare {type_name(lhs)} with {type_name(rhs)}")
        match op:
            case "<":
                return lhs < rhs
            case ">":
                return lhs > rhs
            case "<=":
                return lhs <= rhs
            case _:
                return lhs >= rhs

    # ------------------------------------------------------------------ calls

    def _check_arity(self, label: str, expected: int, given: int):
        if expected != given:
            raise DuckRuntimeError(
                f"{label} expects {expected} argument{'s' if expected != 1 else ''}, got {given}",
                kind=ErrorKind.ARITY_MISMATCH)

    async def call(self, func: Any, args: List[Any], *, name: Optional[str] = None, line: Optional[int] = None):
        """Calls a Duck function, lambda, struct type or Python builtin."""
        self._dbg("Evaluator.call", type(func).__name__, name, "argc", len(args))
        try:
            match func:
                case DuckFunction():
                    self._check_arity(f"Function '{func.name}'", len(func.params), len(args))
                    call_scope = Scope(parent=func.closure)
                    for param, arg in zip(func.params, args):
                        call_scope.declare(param, arg)
                    self._push_frame(func.name, func, args, line)
                    completion = await self.exec_body(func.body, call_scope)
                    self._pop_frame()
                    if completion.kind == "return":
                        return completion.value
                    if completion is not NORMAL:
                        raise ControlFlowError(self._stray_signal_message(completion), line=line)
                    return None

                case DuckLambda():
                    self._check_arity("Lambda", len(func.params), len(args))
                    call_scope = Scope(parent=func.closure)
                    for param, arg in zip(func.params, args):
                        call_scope.declare(param, arg)
                    self._push_frame(name or '<lambda>', func, args, line)
                    result = await self._eval(func.body, call_scope)
                    self._pop_frame()
                    return result

                case StructType():
                    self._check_arity(f"Struct '{func.name}'", len(func.fields), len(args))
                    return StructInstance(func.name, dict(zip(func.fields, args)))

                case _ if callable(func):
                    return await self._call_builtin(func, args, name, line)

                case _:
                    raise type_error(f"Cannot call a {type_name(func)}" + (f" ('{name}')" if name else ""))
        except RecursionError:
            raise ControlFlowError("Stack overflow: recursion went too deep", line=line) from None

    async def _call_builtin(self, func, args, name, line):
        label = name or getattr(func, '__name__', 'builtin').lstrip('_').replace('_', '-')
        try:
            inspect.signature(func).bind(*args)
        except TypeError:
            raise DuckRuntimeError(f"Wrong number of arguments for '{label}' (got {len(args)})",
                                   kind=ErrorKind.ARITY_MISMATCH) from None
        self._push_frame(label, func, args, line)
        try:
            result = func(*args)
            if inspect.isawaitable(result):
                result = await result
        except DuckError:
            raise
        except FileNotFoundError as e:
            raise DuckRuntimeError(f"File not found: {e.filename or e}", kind=ErrorKind.FILE_ERROR) from e
        except OSError as e:
            raise DuckRuntimeError(f"{label}: {e.strerror or e}", kind=ErrorKind.FILE_ERROR) from e
        except OverflowError as e:
            raise DuckRuntimeError(f"{label}: {e}", kind=ErrorKind.VALUE_ERROR) from e
        except (ValueError, UnicodeError) as e:
            raise DuckRuntimeError(f"{label}: {e}", kind=ErrorKind.CONVERSION_ERROR) from e
        except TypeError as e:
            raise DuckRuntimeError(f"{label}: {e}", kind=ErrorKind.TYPE_ERROR) from e
        self._pop_frame()
        # Host ints (lengths, counts) become Duck numbers.
        if isinstance(result, int) and not isinstance(result, bool):
            return float(result)
        return result
