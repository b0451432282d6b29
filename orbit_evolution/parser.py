"""
orbit_evolution/parser.py - Recursive descent parser for scoring expressions

Grammar, lowest precedence first. Every binary tier groups to the left, so
2 ^ 3 ^ 2 is (2 ^ 3) ^ 2.

    expression     := multiplicative (('+' | '-') multiplicative)*
    multiplicative := power (('*' | '/') power)*
    power          := unary ('^' unary)*
    unary          := ('+' | '-') unary | ('ln' | 'log') '(' expression ')' | term
    term           := '(' expression ')' | number | identifier
"""
import re
from typing import List, NamedTuple, Optional

from .ast_nodes import (
    ASTNode, BinaryOp, BinaryOperator, Constant, FUNCTIONS, UnaryOp,
    UnaryOperator, VARIABLES, simplify,
)

NUMBER = 'number'
NAME = 'name'
SYMBOL = 'symbol'
END = 'end of input'

_WHITESPACE = re.compile(r'\s+')
# Deliberately greedy over digits and dots so that malformed literals such as
# "1.2.3" or "1e" reach float() whole and fail there.
_NUMBER = re.compile(r'[0-9.]+(?:[eE][+-]?[0-9]*)?')
_NAME = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')
_SYMBOLS = '+-*/^()'


class ParseError(ValueError):
    """Raised when scoring expression source text is malformed"""

    def __init__(self, message: str, source: str, offset: int,
                 cause: Optional[Exception] = None):
        self.message = message
        self.source = source
        self.offset = offset
        self.cause = cause
        self.line, self.column, self.source_line = _locate(source, offset)
        super().__init__(self._render())

    def _render(self) -> str:
        return (f"{self.message} on line {self.line}, column {self.column}\n"
                f"{self.source_line}\n{' ' * (self.column - 1)}^")


def _locate(source: str, offset: int):
    """Map a character offset to a 1-based (line, column) and the line text"""
    line_start = 0
    lines = source.split('\n')
    for line_idx, line in enumerate(lines):
        # +1 for the newline removed by split
        if offset - line_start < len(line) + 1:
            return line_idx + 1, offset - line_start + 1, line
        line_start += len(line) + 1
    last = lines[-1]
    return len(lines), len(last) + 1, last


class Token(NamedTuple):
    kind: str
    text: str
    offset: int

    def describe(self) -> str:
        return END if self.kind == END else repr(self.text)


def tokenize(source: str) -> List[Token]:
    """Split source text into tokens, ending with an END token"""
    tokens = []
    pos = 0
    while pos < len(source):
        match = _WHITESPACE.match(source, pos)
        if match:
            pos = match.end()
            continue
        match = _NUMBER.match(source, pos)
        if match:
            tokens.append(Token(NUMBER, match.group(), pos))
            pos = match.end()
            continue
        match = _NAME.match(source, pos)
        if match:
            tokens.append(Token(NAME, match.group(), pos))
            pos = match.end()
            continue
        if source[pos] in _SYMBOLS:
            tokens.append(Token(SYMBOL, source[pos], pos))
            pos += 1
            continue
        raise ParseError(f"Invalid token {source[pos]!r}", source, pos)
    tokens.append(Token(END, '', len(source)))
    return tokens


class Parser:
    """Builds an expression tree from a token stream.

    Binary operators are parsed by precedence climbing and prefix signs in a
    loop, so only parentheses and function calls recurse. Their nesting is
    capped to keep parsing clear of the interpreter's recursion limit.
    """

    BINARY = {
        '+': BinaryOperator.ADD, '-': BinaryOperator.SUBTRACT,
        '*': BinaryOperator.MULTIPLY, '/': BinaryOperator.DIVIDE,
        '^': BinaryOperator.EXPONENT,
    }
    PREFIX = {'+': UnaryOperator.POSITIVE, '-': UnaryOperator.NEGATIVE}
    MAX_NESTING = 64

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0
        self.nesting = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != END:
            self.index += 1
        return token

    def error(self, message: str, token: Optional[Token] = None,
              cause: Optional[Exception] = None) -> ParseError:
        token = token or self.current
        return ParseError(message, self.source, token.offset, cause)

    def expect(self, text: str) -> Token:
        token = self.current
        if token.kind != SYMBOL or token.text != text:
            raise self.error(f"Unexpected {token.describe()}; expected {text!r}")
        return self.advance()

    def parse(self) -> ASTNode:
        expr = self.parse_binary()
        if self.current.kind != END:
            raise self.error(f"Unexpected extra token {self.current.describe()}")
        return expr

    def _binary_operator(self) -> Optional[BinaryOperator]:
        token = self.current
        if token.kind == SYMBOL:
            return self.BINARY.get(token.text)
        return None

    def parse_binary(self, min_precedence: int = 1) -> ASTNode:
        """Operators of at least min_precedence; every tier groups to the left"""
        left = self.parse_unary()
        op = self._binary_operator()
        while op is not None and op.precedence >= min_precedence:
            self.advance()
            left = BinaryOp(left, op, self.parse_binary(op.precedence + 1))
            op = self._binary_operator()
        return left

    def parse_unary(self) -> ASTNode:
        signs = []
        while self.current.kind == SYMBOL and self.current.text in self.PREFIX:
            signs.append(self.PREFIX[self.advance().text])
        token = self.current
        if token.kind == NAME and token.text.lower() in FUNCTIONS:
            self.advance()
            expr = UnaryOp(FUNCTIONS[token.text.lower()], self.parse_group(token))
        else:
            expr = self.parse_term()
        for sign in reversed(signs):
            expr = UnaryOp(sign, expr)
        return expr

    def parse_group(self, opener: Token) -> ASTNode:
        """'(' expression ')', counting towards the nesting limit"""
        self.nesting += 1
        if self.nesting > self.MAX_NESTING:
            raise self.error("Expression nested too deeply", opener)
        self.expect('(')
        expr = self.parse_binary()
        self.expect(')')
        self.nesting -= 1
        return expr

    def parse_term(self) -> ASTNode:
        token = self.current
        if token.kind == SYMBOL and token.text == '(':
            return self.parse_group(token)
        if token.kind == NUMBER:
            self.advance()
            try:
                return Constant(float(token.text))
            except ValueError as err:
                raise self.error(f"Error parsing float {token.text!r}", token, err) from err
        if token.kind == NAME:
            variable = VARIABLES.get(token.text.lower())
            if variable is None:
                raise self.error(f"Unknown identifier {token.text!r}", token)
            self.advance()
            return variable()
        raise self.error(
            f"Unexpected {token.describe()}; expected a number, identifier, "
            f"unary operator or '('")


def parse_expression(source: str) -> ASTNode:
    """Parse scoring expression text into an expression tree"""
    return Parser(source).parse()


def compile_expression(source: str) -> ASTNode:
    """Parse and simplify an expression for repeated evaluation"""
    return simplify(parse_expression(source))
