"""
Recursive descent parser for Duck.

Builds the complete tree for every block, including blocks that will
never run, so syntax errors anywhere in a file are reported up front.

Authorization: each `quack` adds one pending authorization; the next
bracketed block consumes one if any are pending and is marked
`authorized`. The pending count is a local of `_parse_blocks`, so every
nesting level (function, loop, branch, match arm and attempt/rescue
bodies) starts from zero and cannot see its parent's quacks.
"""

from typing import List, Optional, Tuple

from duck.duck_lexer import KEYWORDS, Lexer, Token, TokenType
from duck.duck_datatypes import ParseError
from duck.duck_ast import (
    Node, Block, Literal, Identifier, ListLiteral, Lambda, BinaryOp, UnaryOp,
    Call, FieldAccess, IndexAccess, InterpolatedString,
    WildcardPattern, LiteralPattern, BindingPattern, ListPattern,
    Let, Assign, If, While, Repeat, ForEach, FunctionDef, StructDef, Return,
    Break, Continue, ExprStatement, MatchArm, Match, Attempt, Honk, Migrate,
    free_names,
)

T = TokenType

# Tokens that end a nested body without being consumed by it.
_BODY_END = frozenset({T.RBRACKET, T.OTHERWISE, T.RESCUE, T.EOF})

# Tokens that can begin an argument of a bracket-prefix call: `[print x y]`.
_ARG_START = frozenset({
    T.NUMBER, T.STRING, T.FSTRING, T.IDENTIFIER,
    T.TRUE, T.FALSE, T.NIL, T.LBRACKET, T.NOT,
})

_COMPARISON = {
    T.EQ: "==", T.NEQ: "!=", T.LT: "<", T.GT: ">", T.LTE: "<=", T.GTE: ">=",
}
_MULTIPLICATIVE = {T.STAR: "*", T.SLASH: "/", T.PERCENT: "%"}


class Parser:
    def __init__(self, tokens: List[Token]):
        self._tokens = tokens
        self._pos = 0
        # Inside `[name arg arg]` a `-` glued to its right operand starts a new argument.
        self._bare_args = False

    # ------------------------------------------------------------------ helpers

    def _peek(self, offset: int = 0) -> Token:
        i = min(self._pos + offset, len(self._tokens) - 1)
        return self._tokens[i]

    def _advance(self) -> Token:
        tok = self._tokens[self._pos]
        if tok.kind is not T.EOF:
            self._pos += 1
        return tok

    def _check(self, *kinds: TokenType) -> bool:
        return self._peek().kind in kinds

    def _accept(self, kind: TokenType) -> Optional[Token]:
        if self._peek().kind is kind:
            return self._advance()
        return None

    def _error(self, message: str, tok: Optional[Token] = None) -> ParseError:
        tok = tok or self._peek()
        return ParseError(message, line=tok.line, column=tok.column)

    def _describe(self, tok: Token) -> str:
        if tok.kind is T.EOF:
            return "end of input"
        return f"'{tok.text}'"

    def _expect(self, kind: TokenType, what: str) -> Token:
        tok = self._peek()
        if tok.kind is not kind:
            raise self._error(f"Expected {what} but found {self._describe(tok)}", tok)
        return self._advance()

    def _expect_name(self, what: str) -> Token:
        tok = self._peek()
        if tok.kind is not T.IDENTIFIER:
            if tok.text in KEYWORDS:
                raise self._error(f"Expected {what} but found keyword '{tok.text}' (keywords cannot be used as names)", tok)
            return self._expect(T.IDENTIFIER, what)
        return self._advance()

    def _prefix_minus(self) -> bool:
        """A `-` with space before and none after, where it can only start an operand."""
        tok = self._peek()
        return (tok.kind is T.MINUS and tok.spaced
                and not self._peek(1).spaced and self._peek(1).kind is not T.EOF)

    # ------------------------------------------------------------------ public

    def parse(self) -> List[Block]:
        blocks = self._parse_blocks(frozenset({T.EOF}))
        self._expect(T.EOF, "end of input")
        return list(blocks)

    def parse_expression_only(self) -> Node:
        expr = self._parse_expression()
        tok = self._peek()
        if tok.kind is not T.EOF:
            raise self._error(f"Unexpected {self._describe(tok)} in interpolation", tok)
        return expr

    # ------------------------------------------------------------------ blocks

    def _parse_blocks(self, terminators: frozenset) -> Tuple[Block, ...]:
        pending = 0
        blocks: List[Block] = []
        while True:
            tok = self._peek()
            if tok.kind is T.QUACK:
                self._advance()
                pending += 1
                continue
            if tok.kind is T.LBRACKET:
                statement = self._parse_block_statement()
                authorized = pending > 0
                if authorized:
                    pending -= 1
                blocks.append(Block(statement, authorized, tok.line, tok.column))
                continue
            if tok.kind in terminators:
                return tuple(blocks)
            raise self._error(f"Expected a [block] or 'quack' but found {self._describe(tok)}", tok)

    def _parse_body(self) -> Tuple[Block, ...]:
        return self._parse_blocks(_BODY_END)

    def _parse_block_statement(self) -> Node:
        open_tok = self._expect(T.LBRACKET, "'['")
        if self._check(T.RBRACKET):
            raise self._error("Empty block: a block needs a statement", open_tok)
        statement = self._parse_statement()
        tok = self._peek()
        if tok.kind is not T.RBRACKET:
            raise self._error(
                f"Expected ']' to close the block opened on line {open_tok.line} "
                f"but found {self._describe(tok)}", tok)
        self._advance()
        return statement

    # ------------------------------------------------------------------ statements

    def _parse_statement(self) -> Node:
        tok = self._peek()
        match tok.kind:
            case T.LET:
                return self._parse_let()
            case T.IF:
                return self._parse_if()
            case T.WHILE:
                return self._parse_while()
            case T.REPEAT:
                return self._parse_repeat()
            case T.FOR:
                return self._parse_for_each()
            case T.DEFINE:
                return self._parse_define()
            case T.STRUCT:
                return self._parse_struct()
            case T.RETURN:
                self._advance()
                if self._check(T.RBRACKET):
                    return Return(None, line=tok.line)
                return Return(self._parse_expression(), line=tok.line)
            case T.BREAK:
                self._advance()
                return Break(line=tok.line)
            case T.CONTINUE:
                self._advance()
                return Continue(line=tok.line)
            case T.MATCH:
                return self._parse_match()
            case T.ATTEMPT:
                return self._parse_attempt()
            case T.HONK:
                return self._parse_honk()
            case T.MIGRATE:
                return self._parse_migrate()
            case T.IDENTIFIER if self._starts_bracket_call():
                return self._parse_bracket_call()
        return self._parse_expression_statement()

    def _parse_let(self) -> Let:
        tok = self._advance()
        name = self._expect_name("a variable name after 'let'")
        self._expect(T.BE, "'be' after the variable name")
        return Let(name.text, self._parse_expression(), line=tok.line)

    def _parse_if(self) -> If:
        tok = self._advance()
        condition = self._parse_expression()
        self._expect(T.THEN, "'then' after the if condition")
        then_body = self._parse_body()
        else_body = None
        if self._accept(T.OTHERWISE):
            else_body = self._parse_body()
        return If(condition, then_body, else_body, line=tok.line)

    def _parse_while(self) -> While:
        tok = self._advance()
        condition = self._parse_expression()
        self._expect(T.DO, "'do' after the while condition")
        return While(condition, self._parse_body(), line=tok.line)

    def _parse_repeat(self) -> Repeat:
        tok = self._advance()
        count = self._parse_expression()
        self._expect(T.TIMES, "'times' after the repeat count")
        return Repeat(count, self._parse_body(), line=tok.line)

    def _parse_for_each(self) -> ForEach:
        tok = self._advance()
        self._expect(T.EACH, "'each' after 'for'")
        self._expect(T.LBRACKET, "'[' around the loop variable")
        var = self._expect_name("a loop variable name")
        self._expect(T.RBRACKET, "']' after the loop variable")
        self._expect(T.IN, "'in' after the loop variable")
        iterable = self._parse_expression()
        self._expect(T.DO, "'do' after the for-each source")
        return ForEach(var.text, iterable, self._parse_body(), line=tok.line)

    def _parse_define(self) -> FunctionDef:
        tok = self._advance()
        name = self._expect_name("a function name after 'define'")
        params: Tuple[str, ...] = ()
        if self._accept(T.TAKING):
            params = self._parse_name_list("parameter")
        self._expect(T.AS, "'as' before the function body")
        return FunctionDef(name.text, params, self._parse_body(), line=tok.line)

    def _parse_struct(self) -> StructDef:
        tok = self._advance()
        name = self._expect_name("a struct name after 'struct'")
        self._expect(T.WITH, "'with' after the struct name")
        fields = self._parse_name_list("field")
        return StructDef(name.text, fields, line=tok.line)

    def _parse_name_list(self, what: str) -> Tuple[str, ...]:
        open_tok = self._expect(T.LBRACKET, f"'[' to start the {what} list")
        names: List[str] = []
        while not self._check(T.RBRACKET):
            name = self._expect_name(f"a {what} name")
            if name.text in names:
                raise self._error(f"Duplicate {what} name '{name.text}'", name)
            names.append(name.text)
            if not self._accept(T.COMMA):
                break
        if not self._check(T.RBRACKET):
            raise self._error(f"Expected ',' or ']' in the {what} list opened on line {open_tok.line}")
        self._advance()
        return tuple(names)

    def _parse_match(self) -> Match:
        tok = self._advance()
        subject = self._parse_expression()
        self._expect(T.WITH, "'with' after the match subject")
        arms: List[MatchArm] = []
        while self._check(T.LBRACKET) and self._peek(1).kind is T.WHEN:
            arms.append(self._parse_arm())
        if not arms:
            raise self._error("A match needs at least one [when ... then ...] arm")
        return Match(subject, tuple(arms), line=tok.line)

    def _parse_arm(self) -> MatchArm:
        open_tok = self._advance()
        self._advance()  # when
        patterns = [self._parse_pattern()]
        while self._accept(T.COMMA):
            patterns.append(self._parse_pattern())
        self._expect(T.THEN, "'then' after the match pattern")
        body = self._parse_body()
        self._expect(T.RBRACKET, f"']' to close the match arm opened on line {open_tok.line}")
        return MatchArm(tuple(patterns), body, line=open_tok.line)

    def _parse_pattern(self) -> Node:
        tok = self._peek()
        match tok.kind:
            case T.UNDERSCORE:
                self._advance()
                return WildcardPattern(line=tok.line)
            case T.NUMBER:
                self._advance()
                return LiteralPattern(float(tok.text), line=tok.line)
            case T.MINUS if self._peek(1).kind is T.NUMBER:
                self._advance()
                return LiteralPattern(-float(self._advance().text), line=tok.line)
            case T.STRING:
                self._advance()
                return LiteralPattern(tok.text, line=tok.line)
            case T.TRUE | T.FALSE:
                self._advance()
                return LiteralPattern(tok.kind is T.TRUE, line=tok.line)
            case T.NIL:
                self._advance()
                return LiteralPattern(None, line=tok.line)
            case T.IDENTIFIER:
                self._advance()
                return BindingPattern(tok.text, line=tok.line)
            case T.LBRACKET:
                self._advance()
                items: List[Node] = []
                while not self._check(T.RBRACKET):
                    items.append(self._parse_pattern())
                    if not self._accept(T.COMMA):
                        break
                self._expect(T.RBRACKET, "']' to close the list pattern")
                return ListPattern(tuple(items), line=tok.line)
        raise self._error(f"Malformed pattern: {self._describe(tok)}", tok)

    def _parse_attempt(self) -> Attempt:
        tok = self._advance()
        body = self._parse_body()
        self._expect(T.RESCUE, "'rescue' after the attempt body")
        self._expect(T.LBRACKET, "'[' around the rescue variable")
        name = self._expect_name("a rescue variable name")
        self._expect(T.RBRACKET, "']' after the rescue variable")
        return Attempt(body, name.text, self._parse_body(), line=tok.line)

    def _parse_honk(self) -> Honk:
        tok = self._advance()
        condition = self._parse_expression()
        message = None
        self._accept(T.COMMA)
        if not self._check(T.RBRACKET):
            message = self._parse_expression()
        return Honk(condition, message, line=tok.line)

    def _parse_migrate(self) -> Migrate:
        tok = self._advance()
        specifier = self._parse_expression()
        alias = None
        if self._accept(T.AS):
            alias = self._expect_name("a module alias after 'as'").text
        return Migrate(specifier, alias, line=tok.line)

    def _starts_bracket_call(self) -> bool:
        nxt = self._peek(1)
        if nxt.kind in _ARG_START or (nxt.kind is T.LPAREN and nxt.spaced):
            return True
        return (nxt.kind is T.MINUS and nxt.spaced
                and not self._peek(2).spaced and self._peek(2).kind is not T.EOF)

    def _parse_bracket_call(self) -> ExprStatement:
        tok = self._advance()
        callee = Identifier(tok.text, tok.line, tok.column)
        args: List[Node] = []
        prev = self._bare_args
        self._bare_args = True
        try:
            while not self._check(T.RBRACKET, T.EOF):
                args.append(self._parse_expression())
                self._accept(T.COMMA)
        finally:
            self._bare_args = prev
        return ExprStatement(Call(callee, tuple(args), tok.line, tok.column), line=tok.line)

    def _parse_expression_statement(self) -> Node:
        tok = self._peek()
        expr = self._parse_expression()
        if self._check(T.BECOMES):
            becomes = self._advance()
            if not isinstance(expr, (Identifier, FieldAccess, IndexAccess)):
                raise self._error("Only a name, a field or a list element can be assigned with 'becomes'", becomes)
            return Assign(expr, self._parse_expression(), line=tok.line)
        return ExprStatement(expr, line=tok.line)

    # ------------------------------------------------------------------ expressions

    def _parse_expression(self) -> Node:
        return self._parse_or()

    def _parse_or(self) -> Node:
        left = self._parse_and()
        while self._check(T.OR):
            tok = self._advance()
            left = BinaryOp("or", left, self._parse_and(), tok.line, tok.column)
        return left

    def _parse_and(self) -> Node:
        left = self._parse_comparison()
        while self._check(T.AND):
            tok = self._advance()
            left = BinaryOp("and", left, self._parse_comparison(), tok.line, tok.column)
        return left

    def _parse_comparison(self) -> Node:
        left = self._parse_additive()
        while self._peek().kind in _COMPARISON:
            tok = self._advance()
            left = BinaryOp(_COMPARISON[tok.kind], left, self._parse_additive(), tok.line, tok.column)
        return left

    def _parse_additive(self) -> Node:
        left = self._parse_multiplicative()
        while True:
            tok = self._peek()
            if tok.kind is T.PLUS or (tok.kind is T.MINUS and not (self._bare_args and self._prefix_minus())):
                self._advance()
                left = BinaryOp(tok.text, left, self._parse_multiplicative(), tok.line, tok.column)
            else:
                return left

    def _parse_multiplicative(self) -> Node:
        left = self._parse_unary()
        while self._peek().kind in _MULTIPLICATIVE:
            tok = self._advance()
            left = BinaryOp(_MULTIPLICATIVE[tok.kind], left, self._parse_unary(), tok.line, tok.column)
        return left

    def _parse_unary(self) -> Node:
        tok = self._peek()
        if tok.kind is T.NOT:
            self._advance()
            return UnaryOp("not", self._parse_unary(), tok.line, tok.column)
        if tok.kind is T.MINUS:
            self._advance()
            return UnaryOp("-", self._parse_unary(), tok.line, tok.column)
        return self._parse_postfix()

    def _parse_postfix(self) -> Node:
        expr = self._parse_primary()
        while True:
            tok = self._peek()
            if tok.kind is T.LPAREN and not (self._bare_args and tok.spaced):
                self._advance()
                args = self._parse_grouped(self._parse_arguments)
                expr = Call(expr, args, tok.line, tok.column)
            elif tok.kind is T.DOT:
                self._advance()
                name = self._expect_name("a field name after '.'")
                expr = FieldAccess(expr, name.text, tok.line, tok.column)
            elif tok.kind is T.AT:
                self._advance()
                expr = IndexAccess(expr, self._parse_index_operand(), tok.line, tok.column)
            else:
                return expr

    def _parse_index_operand(self) -> Node:
        tok = self._peek()
        if tok.kind is T.MINUS:
            self._advance()
            return UnaryOp("-", self._parse_primary(), tok.line, tok.column)
        return self._parse_primary()

    def _parse_grouped(self, parse_fn):
        # Grouping brackets reset the bare-argument mode of an enclosing `[name ...]` call.
        prev = self._bare_args
        self._bare_args = False
        try:
            return parse_fn()
        finally:
            self._bare_args = prev

    def _parse_arguments(self) -> Tuple[Node, ...]:
        args: List[Node] = []
        while not self._check(T.RPAREN):
            args.append(self._parse_expression())
            if not self._accept(T.COMMA):
                break
        self._expect(T.RPAREN, "')' to close the argument list")
        return tuple(args)

    def _parse_primary(self) -> Node:
        tok = self._peek()
        match tok.kind:
            case T.NUMBER:
                self._advance()
                return Literal(float(tok.text), tok.line, tok.column)
            case T.STRING:
                self._advance()
                return Literal(tok.text, tok.line, tok.column)
            case T.FSTRING:
                self._advance()
                return self._parse_fstring(tok)
            case T.TRUE | T.FALSE:
                self._advance()
                return Literal(tok.kind is T.TRUE, tok.line, tok.column)
            case T.NIL:
                self._advance()
                return Literal(None, tok.line, tok.column)
            case T.IDENTIFIER:
                self._advance()
                if self._check(T.ARROW):
                    self._advance()
                    return self._make_lambda((tok.text,), tok)
                return Identifier(tok.text, tok.line, tok.column)
            case T.LPAREN:
                self._advance()
                inner = self._parse_grouped(self._parse_expression)
                self._expect(T.RPAREN, "')' to close the parenthesis")
                return inner
            case T.LBRACKET:
                self._advance()
                return self._parse_grouped(lambda: self._parse_list_or_lambda(tok))
            case T.UNDERSCORE:
                raise self._error("'_' is only allowed as a match pattern", tok)
            case T.QUACK:
                raise self._error("'quack' authorizes blocks; it cannot be used inside an expression", tok)
        raise self._error(f"Unexpected {self._describe(tok)}", tok)

    def _parse_list_or_lambda(self, open_tok: Token) -> Node:
        items: List[Node] = []
        while not self._check(T.RBRACKET):
            items.append(self._parse_expression())
            if not self._accept(T.COMMA):
                break
        self._expect(T.RBRACKET, f"']' to close the list opened on line {open_tok.line}")
        if not self._check(T.ARROW):
            return ListLiteral(tuple(items), open_tok.line, open_tok.column)
        arrow = self._advance()
        params: List[str] = []
        for item in items:
            if not isinstance(item, Identifier):
                raise self._error("Lambda parameters must be plain names", arrow)
            if item.name in params:
                raise self._error(f"Duplicate parameter name '{item.name}'", arrow)
            params.append(item.name)
        return self._make_lambda(tuple(params), open_tok)

    def _make_lambda(self, params: Tuple[str, ...], tok: Token) -> Lambda:
        body = self._parse_expression()
        return Lambda(params, body, free_names(body, frozenset(params)), tok.line, tok.column)

    def _parse_fstring(self, tok: Token) -> InterpolatedString:
        parts = []
        for seg in tok.parts:
            if not seg.is_expr:
                parts.append(seg.text)
                continue
            if not seg.text.strip():
                raise ParseError("Empty interpolation '{}' in string", line=seg.line, column=seg.column)
            sub_tokens = Lexer(seg.text, seg.line, seg.column).tokenize()
            parts.append(Parser(sub_tokens).parse_expression_only())
        return InterpolatedString(tuple(parts), tok.line, tok.column)


def parse(source: str) -> List[Block]:
    return Parser(Lexer(source).tokenize()).parse()
