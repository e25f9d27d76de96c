"""
Tokenizes Duck source code into a flat token stream.

The lexer is grammar-agnostic: it resolves comments, string escapes and
the segments of interpolated strings (`f"... {expr} ..."`), but it never
parses the text inside a segment. That happens later in the parser.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import List, NamedTuple, Tuple

from duck.duck_datatypes import LexError


class TokenType(Enum):
    # Literals
    NUMBER = auto()
    STRING = auto()
    FSTRING = auto()
    IDENTIFIER = auto()
    UNDERSCORE = auto()
    # Keywords
    QUACK = auto()
    LET = auto()
    BE = auto()
    BECOMES = auto()
    DEFINE = auto()
    TAKING = auto()
    AS = auto()
    IF = auto()
    THEN = auto()
    OTHERWISE = auto()
    MATCH = auto()
    WITH = auto()
    WHEN = auto()
    REPEAT = auto()
    TIMES = auto()
    WHILE = auto()
    DO = auto()
    FOR = auto()
    EACH = auto()
    IN = auto()
    STRUCT = auto()
    RETURN = auto()
    BREAK = auto()
    CONTINUE = auto()
    AND = auto()
    OR = auto()
    NOT = auto()
    AT = auto()
    HONK = auto()
    ATTEMPT = auto()
    RESCUE = auto()
    MIGRATE = auto()
    TRUE = auto()
    FALSE = auto()
    NIL = auto()
    # Operators
    PLUS = auto()       # +
    MINUS = auto()      # -
    STAR = auto()       # *
    SLASH = auto()      # /
    PERCENT = auto()    # %
    EQ = auto()         # ==
    NEQ = auto()        # !=
    LT = auto()         # <
    GT = auto()         # >
    LTE = auto()        # <=
    GTE = auto()        # >=
    ARROW = auto()      # ->
    # Punctuation
    LPAREN = auto()
    RPAREN = auto()
    LBRACKET = auto()
    RBRACKET = auto()
    COMMA = auto()
    DOT = auto()
    # Sentinel
    EOF = auto()


KEYWORDS = {
    "quack": TokenType.QUACK,
    "let": TokenType.LET,
    "be": TokenType.BE,
    "becomes": TokenType.BECOMES,
    "define": TokenType.DEFINE,
    "taking": TokenType.TAKING,
    "as": TokenType.AS,
    "if": TokenType.IF,
    "then": TokenType.THEN,
    "otherwise": TokenType.OTHERWISE,
    "match": TokenType.MATCH,
    "with": TokenType.WITH,
    "when": TokenType.WHEN,
    "repeat": TokenType.REPEAT,
    "times": TokenType.TIMES,
    "while": TokenType.WHILE,
    "do": TokenType.DO,
    "for": TokenType.FOR,
    "each": TokenType.EACH,
    "in": TokenType.IN,
    "struct": TokenType.STRUCT,
    "return": TokenType.RETURN,
    "break": TokenType.BREAK,
    "continue": TokenType.CONTINUE,
    "and": TokenType.AND,
    "or": TokenType.OR,
    "not": TokenType.NOT,
    "at": TokenType.AT,
    "honk": TokenType.HONK,
    "attempt": TokenType.ATTEMPT,
    "rescue": TokenType.RESCUE,
    "migrate": TokenType.MIGRATE,
    "true": TokenType.TRUE,
    "false": TokenType.FALSE,
    "nil": TokenType.NIL,
}

_SINGLE_CHAR = {
    "+": TokenType.PLUS,
    "*": TokenType.STAR,
    "/": TokenType.SLASH,
    "%": TokenType.PERCENT,
    "(": TokenType.LPAREN,
    ")": TokenType.RPAREN,
    "[": TokenType.LBRACKET,
    "]": TokenType.RBRACKET,
    ",": TokenType.COMMA,
    ".": TokenType.DOT,
}

_ESCAPES = {
    "n": "\n",
    "t": "\t",
    '"': '"',
    "\\": "\\",
    "{": "{",
    "}": "}",
}


class Segment(NamedTuple):
    """One piece of an interpolated string: literal text or raw expression source."""
    is_expr: bool
    text: str
    line: int
    column: int


@dataclass(frozen=True)
class Token:
    kind: TokenType
    text: str
    line: int
    column: int
    # Whitespace (or a comment, or start of input) came right before this token.
    spaced: bool = False
    # Only set for FSTRING tokens.
    parts: Tuple[Segment, ...] = ()

    def __repr__(self):
        return f"Token({self.kind.name}, {self.text!r}, line={self.line}, col={self.column})"


class Lexer:
    def __init__(self, source: str, line: int = 1, column: int = 1):
        self.source = source
        self.pos = 0
        self.line = line
        self.column = column

    # ------------------------------------------------------------------ helpers

    def _peek(self, offset: int = 0) -> str:
        i = self.pos + offset
        return self.source[i] if i < len(self.source) else ""

    def _advance(self) -> str:
        ch = self.source[self.pos]
        self.pos += 1
        if ch == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        return ch

    def _error(self, message: str, line: int, column: int) -> LexError:
        return LexError(message, line=line, column=column)

    # ------------------------------------------------------------------ public

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        spaced = True
        while self.pos < len(self.source):
            ch = self._peek()
            if ch in " \t\r\n":
                self._advance()
                spaced = True
                continue
            if ch == "-" and self._peek(1) == "-":
                while self.pos < len(self.source) and self._peek() != "\n":
                    self._advance()
                spaced = True
                continue
            tokens.append(self._scan_token(spaced))
            spaced = False
        tokens.append(Token(TokenType.EOF, "", self.line, self.column, spaced))
        return tokens

    # ------------------------------------------------------------------ scanning

    def _scan_token(self, spaced: bool) -> Token:
        line, col = self.line, self.column
        ch = self._peek()

        if ch == "f" and self._peek(1) == '"':
            self._advance()
            return self._scan_fstring(line, col, spaced)
        if ch == '"':
            text = self._scan_string(line, col)
            return Token(TokenType.STRING, text, line, col, spaced)
        if ch.isdigit():
            return self._scan_number(line, col, spaced)
        if ch.isalpha() or ch == "_":
            return self._scan_word(line, col, spaced)

        if ch == "-":
            self._advance()
            if self._peek() == ">":
                self._advance()
                return Token(TokenType.ARROW, "->", line, col, spaced)
            return Token(TokenType.MINUS, "-", line, col, spaced)
        if ch == "=":
            self._advance()
            if self._peek() == "=":
                self._advance()
                return Token(TokenType.EQ, "==", line, col, spaced)
            raise self._error("Unexpected '='. Use 'be' to declare, 'becomes' to assign, '==' to compare", line, col)
        if ch == "!":
            self._advance()
            if self._peek() == "=":
                self._advance()
                return Token(TokenType.NEQ, "!=", line, col, spaced)
            raise self._error("Unexpected '!'. Use 'not' for negation", line, col)
        if ch in "<>":
            self._advance()
            if self._peek() == "=":
                self._advance()
                kind = TokenType.LTE if ch == "<" else TokenType.GTE
                return Token(kind, ch + "=", line, col, spaced)
            return Token(TokenType.LT if ch == "<" else TokenType.GT, ch, line, col, spaced)
        if ch in _SINGLE_CHAR:
            self._advance()
            return Token(_SINGLE_CHAR[ch], ch, line, col, spaced)

        raise self._error(f"Unexpected character {ch!r}", line, col)

    def _scan_number(self, line: int, col: int, spaced: bool) -> Token:
        start = self.pos
        while self._peek().isdigit():
            self._advance()
        if self._peek() == "." and self._peek(1).isdigit():
            self._advance()
            while self._peek().isdigit():
                self._advance()
        return Token(TokenType.NUMBER, self.source[start:self.pos], line, col, spaced)

    def _scan_word(self, line: int, col: int, spaced: bool) -> Token:
        start = self.pos
        while True:
            ch = self._peek()
            if ch.isalnum() or ch == "_":
                self._advance()
            elif ch == "-" and self._peek(1).isalnum():
                # Hyphen glued between word characters is part of the name.
                self._advance()
            else:
                break
        word = self.source[start:self.pos]
        if word == "_":
            return Token(TokenType.UNDERSCORE, word, line, col, spaced)
        return Token(KEYWORDS.get(word, TokenType.IDENTIFIER), word, line, col, spaced)

    def _read_escape(self) -> str:
        line, col = self.line, self.column
        self._advance()  # backslash
        if self.pos >= len(self.source):
            raise self._error("Unterminated string", line, col)
        esc = self._advance()
        if esc not in _ESCAPES:
            raise self._error(f"Unknown escape sequence '\\{esc}'", line, col)
        return _ESCAPES[esc]

    def _scan_string(self, line: int, col: int) -> str:
        self._advance()  # opening quote
        out = []
        while True:
            if self.pos >= len(self.source):
                raise self._error("Unterminated string", line, col)
            ch = self._peek()
            if ch == '"':
                self._advance()
                return "".join(out)
            if ch == "\\":
                out.append(self._read_escape())
                continue
            out.append(self._advance())

    def _scan_fstring(self, line: int, col: int, spaced: bool) -> Token:
        self._advance()  # opening quote
        start = self.pos
        parts: List[Segment] = []
        buf: List[str] = []
        buf_line, buf_col = self.line, self.column

        def flush():
            if buf:
                parts.append(Segment(False, "".join(buf), buf_line, buf_col))
                buf.clear()

        while True:
            if self.pos >= len(self.source):
                raise self._error("Unterminated interpolated string", line, col)
            ch = self._peek()
            if ch == '"':
                raw = self.source[start:self.pos]
                self._advance()
                flush()
                return Token(TokenType.FSTRING, raw, line, col, spaced, tuple(parts))
            if ch == "\\":
                if not buf:
                    buf_line, buf_col = self.line, self.column
                buf.append(self._read_escape())
                continue
            if ch == "{":
                flush()
                parts.append(self._scan_segment())
                buf_line, buf_col = self.line, self.column
                continue
            if ch == "}":
                raise self._error("Unmatched '}' in interpolated string (use '\\}' for a literal brace)",
                                  self.line, self.column)
            if not buf:
                buf_line, buf_col = self.line, self.column
            buf.append(self._advance())

    def _scan_segment(self) -> Segment:
        open_line, open_col = self.line, self.column
        self._advance()  # '{'
        seg_line, seg_col = self.line, self.column
        start = self.pos
        depth = 1
        while True:
            if self.pos >= len(self.source):
                raise self._error("Unterminated '{' in interpolated string", open_line, open_col)
            ch = self._peek()
            if ch == '"':
                # Nested string literal: skip it whole, escapes included.
                self._skip_nested_string(open_line, open_col)
                continue
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    text = self.source[start:self.pos]
                    self._advance()
                    return Segment(True, text, seg_line, seg_col)
            self._advance()

    def _skip_nested_string(self, open_line: int, open_col: int):
        self._advance()
        while True:
            if self.pos >= len(self.source):
                raise self._error("Unterminated string inside interpolation", open_line, open_col)
            ch = self._advance()
            if ch == "\\" and self.pos < len(self.source):
                self._advance()
            elif ch == '"':
                return


def tokenize(source: str) -> List[Token]:
    return Lexer(source).tokenize()
