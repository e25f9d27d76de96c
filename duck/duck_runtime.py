# duck_runtime.py

import asyncio
import inspect
import math
import os
import random
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Set, Tuple

from duck.duck_ast import walk_blocks
from duck.duck_datatypes import (
    Scope, StructInstance, StructRegistry, DuckError, DuckRuntimeError,
    CircularImportError, ErrorKind, is_number, is_whole, type_name, values_equal,
)
from duck.duck_interpreter import Evaluator
from duck.duck_lexer import Lexer
from duck.duck_parser import Parser
from duck.duck_printer import display
from duck import duck_file, duck_http, duck_serialize

# ===================================================================
# 1. Built-ins
# ===================================================================


def _require(fn: str, value, check, expected: str):
    if not check(value):
        raise DuckRuntimeError(f"{fn} expects {expected}, got {type_name(value)}", kind=ErrorKind.TYPE_ERROR)
    return value


def _is_str(v): return isinstance(v, str)
def _is_list(v): return isinstance(v, list)
def _is_seq(v): return isinstance(v, (list, str))


def _whole(fn: str, value) -> int:
    if not is_whole(value):
        raise DuckRuntimeError(f"{fn} expects a whole number, got {display(value)} ({type_name(value)})",
                               kind=ErrorKind.TYPE_ERROR)
    return int(value)


def _numbers(fn: str, values) -> List[float]:
    # min/max accept either several numbers or a single list of numbers
    if len(values) == 1 and isinstance(values[0], list):
        values = values[0]
    if not values:
        raise DuckRuntimeError(f"{fn} needs at least one number", kind=ErrorKind.VALUE_ERROR)
    return [float(_require(fn, v, is_number, "numbers")) for v in values]


class StdLib:
    """Python implementations of the Duck builtins.

    Every method named `_some_name` is bound into the core scope as
    `some-name`. Non-builtin helpers live at module level.
    """
    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    # --- I/O ---
    def _print(self, *values):
        self.evaluator.emit('stdout', " ".join(display(v) for v in values))

    async def _input(self, prompt=None):
        ev = self.evaluator
        out = ev.stdout or sys.stdout
        if prompt is not None:
            out.write(display(prompt))
            out.flush()
        stdin = ev.stdin or sys.stdin
        loop = asyncio.get_running_loop()
        raw = await loop.run_in_executor(None, stdin.readline)
        if raw == "":
            return None
        return raw.rstrip("\r\n")

    # --- Lists and sequences ---
    def _len(self, seq):
        return len(_require("len", seq, _is_seq, "a list or a string"))

    def _push(self, items, value):
        _require("push", items, _is_list, "a list")
        items.append(value)
        return items

    def _pop(self, items):
        _require("pop", items, _is_list, "a list")
        if not items:
            raise DuckRuntimeError("pop called on an empty list", kind=ErrorKind.INDEX_OUT_OF_RANGE)
        return items.pop()

    def _range(self, *args):
        if not 1 <= len(args) <= 3:
            raise DuckRuntimeError(f"range expects 1 to 3 arguments, got {len(args)}",
                                   kind=ErrorKind.ARITY_MISMATCH)
        bounds = [_whole("range", a) for a in args]
        if len(bounds) == 3 and bounds[2] == 0:
            raise DuckRuntimeError("range step cannot be zero", kind=ErrorKind.VALUE_ERROR)
        return [float(i) for i in range(*bounds)]

    def _reverse(self, seq):
        _require("reverse", seq, _is_seq, "a list or a string")
        return seq[::-1]

    def _sort(self, items):
        _require("sort", items, _is_list, "a list")
        if all(is_number(x) for x in items) or all(isinstance(x, str) for x in items):
            return sorted(items)
        raise DuckRuntimeError("sort needs a list of only numbers or only strings", kind=ErrorKind.TYPE_ERROR)

    def _slice(self, seq, start, end=None):
        _require("slice", seq, _is_seq, "a list or a string")
        lo = _whole("slice", start)
        hi = len(seq) if end is None else _whole("slice", end)
        return seq[lo:hi]

    def _contains(self, seq, value):
        if isinstance(seq, str):
            return _require("contains", value, _is_str, "a string to search for") in seq
        _require("contains", seq, _is_list, "a list or a string")
        return any(values_equal(x, value) for x in seq)

    def _index_of(self, seq, value):
        if isinstance(seq, str):
            return seq.find(_require("index-of", value, _is_str, "a string to search for"))
        _require("index-of", seq, _is_list, "a list or a string")
        for i, x in enumerate(seq):
            if values_equal(x, value):
                return i
        return -1

    def _join(self, items, separator):
        _require("join", items, _is_list, "a list")
        _require("join", separator, _is_str, "a string separator")
        return separator.join(display(x) for x in items)

    # --- Higher-order ---
    async def predicate(self, fn: str, pred, item) -> bool:
        result = await self.evaluator.call(pred, [item])
        if not isinstance(result, bool):
            raise DuckRuntimeError(f"{fn} predicate must return a boolean, got {type_name(result)}",
                                   kind=ErrorKind.TYPE_ERROR)
        return result

    async def _map(self, items, func):
        _require("map", items, _is_list, "a list")
        return [await self.evaluator.call(func, [x]) for x in list(items)]

    async def _filter(self, items, pred):
        _require("filter", items, _is_list, "a list")
        return [x for x in list(items) if await self.predicate("filter", pred, x)]

    async def _fold(self, items, initial, func):
        _require("fold", items, _is_list, "a list")
        acc = initial
        for x in list(items):
            acc = await self.evaluator.call(func, [acc, x])
        return acc

    async def _find(self, items, pred):
        _require("find", items, _is_list, "a list")
        for x in list(items):
            if await self.predicate("find", pred, x):
                return x
        return None

    async def _any(self, items, pred):
        _require("any", items, _is_list, "a list")
        for x in list(items):
            if await self.predicate("any", pred, x):
                return True
        return False

    async def _all(self, items, pred):
        _require("all", items, _is_list, "a list")
        for x in list(items):
            if not await self.predicate("all", pred, x):
                return False
        return True

    # --- Files ---
    def _read_file(self, path):
        _require("read-file", path, _is_str, "a string path")
        return duck_file.read_file(path, base_dir=self.evaluator.source_dir)

    def _write_file(self, path, text):
        _require("write-file", path, _is_str, "a string path")
        _require("write-file", text, _is_str, "string contents")
        duck_file.write_file(path, text, base_dir=self.evaluator.source_dir)

    def _append_file(self, path, text):
        _require("append-file", path, _is_str, "a string path")
        _require("append-file", text, _is_str, "string contents")
        duck_file.append_file(path, text, base_dir=self.evaluator.source_dir)

    def _file_exists(self, path):
        _require("file-exists", path, _is_str, "a string path")
        return duck_file.file_exists(path, base_dir=self.evaluator.source_dir)

    # --- HTTP ---
    async def _http_get(self, url):
        _require("http-get", url, _is_str, "a string URL")
        return await duck_http.http_get(url)

    async def _http_post(self, url, body):
        _require("http-post", url, _is_str, "a string URL")
        _require("http-post", body, _is_str, "a string body")
        return await duck_http.http_post(url, body)

    # --- Codecs ---
    def _json_parse(self, text):
        return duck_serialize.deserialize(_require("json-parse", text, _is_str, "a string"), fmt='json')

    def _json_stringify(self, value, pretty=False):
        _require("json-stringify", pretty, lambda v: isinstance(v, bool), "a boolean for pretty")
        return duck_serialize.serialize(value, fmt='json', pretty=pretty)

    def _yaml_parse(self, text):
        return duck_serialize.deserialize(_require("yaml-parse", text, _is_str, "a string"), fmt='yaml')

    def _yaml_stringify(self, value):
        return duck_serialize.serialize(value, fmt='yaml')

    def _base64_encode(self, text):
        return duck_serialize.b64encode(_require("base64-encode", text, _is_str, "a string"))

    def _base64_decode(self, text):
        return duck_serialize.b64decode(_require("base64-decode", text, _is_str, "a string"))

    # --- Process ---
    async def _sleep(self, seconds):
        _require("sleep", seconds, is_number, "a number of seconds")
        if seconds < 0:
            raise DuckRuntimeError("sleep needs a non-negative duration", kind=ErrorKind.VALUE_ERROR)
        await asyncio.sleep(float(seconds))

    def _env(self, name):
        return os.environ.get(_require("env", name, _is_str, "a variable name"))

    def _now(self): return time.time()

    # --- Conversion ---
    def _string(self, value): return display(value)

    def _number(self, value):
        if is_number(value):
            return float(value)
        if isinstance(value, bool):
            return 1.0 if value else 0.0
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                raise DuckRuntimeError(f"Cannot convert '{value}' to a number",
                                       kind=ErrorKind.CONVERSION_ERROR) from None
        raise DuckRuntimeError(f"Cannot convert a {type_name(value)} to a number", kind=ErrorKind.CONVERSION_ERROR)

    def _type_of(self, value): return type_name(value)

    def _bool(self, value):
        if isinstance(value, bool):
            return value
        if value in ("true", "false"):
            return value == "true"
        raise DuckRuntimeError(f"Cannot convert {display(value)!r} to a boolean", kind=ErrorKind.CONVERSION_ERROR)

    # --- Strings ---
    def _upper(self, s): return _require("upper", s, _is_str, "a string").upper()
    def _lower(self, s): return _require("lower", s, _is_str, "a string").lower()
    def _trim(self, s): return _require("trim", s, _is_str, "a string").strip()
    def _chars(self, s): return list(_require("chars", s, _is_str, "a string"))

    def _split(self, s, separator):
        _require("split", s, _is_str, "a string")
        _require("split", separator, _is_str, "a string separator")
        if separator == "":
            return list(s)
        return s.split(separator)

    def _replace(self, s, old, new):
        for v in (s, old, new):
            _require("replace", v, _is_str, "strings")
        return s.replace(old, new)

    def _starts_with(self, s, prefix):
        return _require("starts-with", s, _is_str, "a string").startswith(
            _require("starts-with", prefix, _is_str, "a string prefix"))

    def _ends_with(self, s, suffix):
        return _require("ends-with", s, _is_str, "a string").endswith(
            _require("ends-with", suffix, _is_str, "a string suffix"))

    # --- Math ---
    def _floor(self, x): return float(math.floor(_require("floor", x, is_number, "a number")))
    def _ceil(self, x): return float(math.ceil(_require("ceil", x, is_number, "a number")))
    def _abs(self, x): return abs(float(_require("abs", x, is_number, "a number")))

    def _round(self, x):
        # Halves round away from zero
        n = float(_require("round", x, is_number, "a number"))
        return math.copysign(math.floor(abs(n) + 0.5), n)

    def _sqrt(self, x):
        _require("sqrt", x, is_number, "a number")
        if x < 0:
            raise DuckRuntimeError("sqrt called with a negative number", kind=ErrorKind.VALUE_ERROR)
        return math.sqrt(x)

    def _pow(self, base, exponent):
        _require("pow", base, is_number, "numbers")
        _require("pow", exponent, is_number, "numbers")
        try:
            return math.pow(base, exponent)
        except (ValueError, OverflowError) as e:
            raise DuckRuntimeError(f"pow({display(base)}, {display(exponent)}) is undefined: {e}",
                                   kind=ErrorKind.VALUE_ERROR) from None

    def _min(self, *values): return min(_numbers("min", values))
    def _max(self, *values): return max(_numbers("max", values))

    def _random(self, lo=None, hi=None):
        if lo is None and hi is None:
            return random.random()
        if hi is None:
            raise DuckRuntimeError("random takes no arguments or a low and a high bound",
                                   kind=ErrorKind.ARITY_MISMATCH)
        a, b = _whole("random", lo), _whole("random", hi)
        if a > b:
            raise DuckRuntimeError(f"random: low bound {a} is above high bound {b}", kind=ErrorKind.VALUE_ERROR)
        return float(random.randint(a, b))


CONSTANTS = {
    'PI': math.pi,
    'E': math.e,
    'TAU': math.tau,
    'INFINITY': math.inf,
}


# ===================================================================
# 2. Script Execution
# ===================================================================

Token = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    error_kind: Optional[str] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            where = f" in {self.error_token['path']}" if self.error_token.get('path') else ""
            col_info = f", col {col}" if col is not None else ""
            return f"Error{where} on line {line}{col_info}: {msg}"
        return msg


@dataclass
class CheckReport:
    """Every block of a program (nested ones included) with its authorization."""
    blocks: List[Tuple[int, bool]] = field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def unauthorized(self) -> List[int]:
        return [line for line, authorized in self.blocks if not authorized]

    @property
    def ok(self) -> bool:
        return self.error_message is None and not self.unauthorized


class ScriptRunner:
    """Parses and executes Duck code.

    A runner owns one program scope; its bindings persist across
    `handle_script` calls (the REPL relies on this). Module runners are
    created by `_load_module` and share the struct registry, the module
    cache and the "currently loading" set with their importer.
    """

    def __init__(self, args: Optional[List[str]] = None, *,
                 source_dir: Optional[str] = None,
                 stdout=None, stderr=None, stdin=None,
                 structs: Optional[StructRegistry] = None,
                 module_cache: Optional[Dict[str, Dict[str, Any]]] = None,
                 loading: Optional[Set[str]] = None,
                 path: Optional[str] = None):
        self.evaluator = Evaluator(structs)
        self.evaluator.stdout = stdout
        self.evaluator.stderr = stderr
        self.evaluator.stdin = stdin
        if source_dir is None and path:
            source_dir = os.path.dirname(os.path.abspath(path))
        self.evaluator.source_dir = source_dir or os.getcwd()
        self.source_dir = self.evaluator.source_dir
        if module_cache is not None:
            self.evaluator.module_cache = module_cache
        if loading is not None:
            self.evaluator.loading = loading
        self.evaluator.loader = self._load_module
        # The script being run counts as loading, so a cycle back to it is caught.
        self.path = os.path.abspath(path) if path else None
        if self.path:
            self.evaluator.loading.add(self.path)

        # Builtins and constants live in the core scope; the program scope
        # is its child, so program bindings shadow builtins without replacing them.
        self.core_scope = Scope()
        stdlib = StdLib(self.evaluator)
        for name, member in inspect.getmembers(stdlib):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                self.core_scope[name[1:].replace('_', '-')] = member
        for name, value in CONSTANTS.items():
            self.core_scope[name] = value

        self.root_scope = Scope(parent=self.core_scope)
        self.root_scope['args'] = list(args or [])

    # --- Parsing ---

    def parse(self, source: str):
        """Lexes and parses source into its top-level block list (raises on bad syntax)."""
        tokens = Lexer(source).tokenize()
        return Parser(tokens).parse()

    def check(self, source: str) -> CheckReport:
        """Parses without executing and reports the authorization of every block."""
        try:
            blocks = self.parse(source)
        except DuckError as e:
            msg, _ = self._format_runtime_error(e, source)
            return CheckReport(error_message=msg)
        return CheckReport(blocks=[(b.line, b.authorized) for b in walk_blocks(blocks)])

    # --- Error formatting ---

    def _format_runtime_error(self, e, source: str) -> Tuple[str, Optional[dict]]:
        match e:
            case DuckError(kind=kind, message=message):
                msg = f"{kind.value}: {message}"
            case RecursionError():
                msg = f"{ErrorKind.CONTROL_FLOW.value}: Stack overflow: recursion went too deep"
            case _:
                msg = f"InternalError: {e}"

        token = None
        line = getattr(e, 'line', None)
        if line is not None:
            col = getattr(e, 'column', None)
            path = getattr(e, 'path', None)
            token = {'line': line, 'col': col, 'path': path}
            context_source = source
            if path is not None:
                try:
                    with open(path, "r", encoding="utf-8") as f:
                        context_source = f.read()
                except OSError:
                    context_source = ""
            context = self._source_context(context_source, line, col)
            if context:
                msg = f"{msg}\n{context}"

        st = self._format_stacktrace()
        if st:
            msg += "\n" + st
        return msg, token

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            out.append(f"{prefix} {ln} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_stacktrace(self, limit: int = 8) -> str:
        stack = self.evaluator.call_stack
        if not stack:
            return ""

        def fmt(arg):
            match arg:
                case list():
                    return f"[{len(arg)} items]"
                case StructInstance():
                    return f"{arg.type_name} {{...}}"
                case str():
                    return display([arg])[1:-1]
                case _:
                    return display(arg)

        frames = []
        for frame in stack[-limit:]:
            name = frame.get('name') or '<call>'
            args_s = ", ".join(fmt(a) for a in frame.get('args') or [])
            where = f" (line {frame['line']})" if frame.get('line') else ""
            frames.append(f"  at {name}({args_s}){where}")
        if len(stack) > limit:
            frames.insert(0, f"  ... {len(stack) - limit} more")
        return "Duck stacktrace (innermost last):\n" + "\n".join(frames)

    # --- Modules ---

    def _resolve_module(self, spec: str) -> str:
        if spec.startswith("@"):
            from duck.duck_packages import resolve_library
            return resolve_library(spec[1:])
        return os.path.abspath(duck_file.resolve_path(spec, self.evaluator.source_dir))

    async def _load_module(self, spec: str, alias: Optional[str], scope: Scope):
        """Loads (or reuses) a module and binds its exports into `scope`."""
        ev = self.evaluator
        path = self._resolve_module(spec)
        if path in ev.loading:
            raise CircularImportError(f"Circular import: '{spec}' is already being loaded")

        exports = ev.module_cache.get(path)
        if exports is None:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    source = f.read()
            except OSError as e:
                raise DuckRuntimeError(f"Cannot load module '{spec}': {e.strerror or e}",
                                       kind=ErrorKind.FILE_ERROR) from e

            ev._dbg("loading module", path)
            child = ScriptRunner(
                source_dir=os.path.dirname(path),
                stdout=ev.stdout, stderr=ev.stderr, stdin=ev.stdin,
                structs=ev.structs, module_cache=ev.module_cache, loading=ev.loading,
            )
            child.evaluator.side_effects = ev.side_effects
            child.evaluator.stats = ev.stats
            child.evaluator.call_stack = ev.call_stack
            ev.loading.add(path)
            try:
                await child.evaluator.run(child.parse(source), child.root_scope)
            except DuckError as e:
                if e.path is None:
                    e.path = path
                raise
            finally:
                ev.loading.discard(path)
            exports = {k: v for k, v in child.root_scope.bindings.items() if k != 'args'}
            ev.module_cache[path] = exports

        if alias:
            scope.declare(alias, StructInstance('module', dict(exports)))
        else:
            for name, value in exports.items():
                scope.declare(name, value)

    # --- Execution ---

    async def handle_script(self, source_code: str) -> ExecutionResult:
        """The main entry point to execute a script."""
        ev = self.evaluator
        ev.side_effects.clear()
        ev.call_stack.clear()
        ev.skipped_lines.clear()
        try:
            blocks = self.parse(source_code)
            value = await ev.run(blocks, self.root_scope)
            return ExecutionResult(status='success', value=value, side_effects=ev.side_effects)
        except Exception as e:
            err_msg, err_token = self._format_runtime_error(e, source_code)
            ev.side_effects.append({'topics': ['stderr'], 'message': err_msg})
            kind = e.kind.value if isinstance(e, DuckError) else None
            if not isinstance(e, (DuckError, RecursionError)):
                ev._dbg("internal error", repr(e))
            return ExecutionResult(
                status='error',
                error_message=err_msg,
                error_token=err_token,
                error_kind=kind,
                side_effects=ev.side_effects,
            )
