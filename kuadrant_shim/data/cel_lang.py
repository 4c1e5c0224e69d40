"""A small Common Expression Language (CEL) parser and evaluator."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Union

_INT_MIN = -(2**63)
_INT_MAX = 2**63 - 1
_UINT_MAX = 2**64 - 1


class CelParseError(ValueError):
    """The expression text is not valid CEL."""

    def __init__(self, message: str, position: int | None = None) -> None:
        text = message if position is None else f"{message} at position {position}"
        super().__init__(text)
        self.message = message
        self.position = position


class ExecutionError(Exception):
    """Evaluating an expression failed."""

    def __init__(self, message: str, function: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.function = function

    def __str__(self) -> str:
        if self.function:
            return f"Error executing function '{self.function}': {self.message}"
        return self.message

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExecutionError):
            return NotImplemented
        return (self.message, self.function) == (other.message, other.function)

    __hash__ = Exception.__hash__


class ValueType(Enum):
    LIST = "list"
    MAP = "map"
    FUNCTION = "function"
    INT = "int"
    UINT = "uint"
    FLOAT = "float"
    STRING = "string"
    BYTES = "bytes"
    BOOL = "bool"
    DURATION = "duration"
    TIMESTAMP = "timestamp"
    NULL = "null"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def of(cls, value: Any) -> ValueType:
        """Return the CEL type of a runtime value."""
        if value is None:
            return cls.NULL
        if isinstance(value, bool):
            return cls.BOOL
        if isinstance(value, int):
            return cls.INT
        if isinstance(value, float):
            return cls.FLOAT
        if isinstance(value, str):
            return cls.STRING
        if isinstance(value, (bytes, bytearray)):
            return cls.BYTES
        if isinstance(value, list):
            return cls.LIST
        if isinstance(value, dict):
            return cls.MAP
        if isinstance(value, datetime):
            return cls.TIMESTAMP
        if isinstance(value, timedelta):
            return cls.DURATION
        if callable(value):
            return cls.FUNCTION
        raise ExecutionError(f"Unsupported value {value!r}")


# ---------------------------------------------------------------- syntax tree


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ident:
    name: str


@dataclass(frozen=True)
class Select:
    operand: Any
    field: str


@dataclass(frozen=True)
class Index:
    operand: Any
    index: Any


@dataclass(frozen=True)
class Call:
    name: str
    target: Any
    args: tuple


@dataclass(frozen=True)
class ListExpr:
    items: tuple


@dataclass(frozen=True)
class MapExpr:
    entries: tuple


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Ternary:
    condition: Any
    if_true: Any
    if_false: Any


Node = Union[Literal, Ident, Select, Index, Call, ListExpr, MapExpr, Unary, Binary, Ternary]

# ---------------------------------------------------------------- lexer

_OPERATORS = (
    "==", "!=", "<=", ">=", "&&", "||",
    "<", ">", "!", "+", "-", "*", "/", "%", "?", ":", ".", ",", "[", "]", "(", ")", "{", "}",
)
_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_NUMBER = re.compile(
    r"0[xX][0-9a-fA-F]+[uU]?|\d+\.\d+(?:[eE][+-]?\d+)?|\d+[eE][+-]?\d+|\d+[uU]?"
)
_SIMPLE_ESCAPES = {
    "a": "\a", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t", "v": "\v",
    "\\": "\\", "'": "'", '"': '"', "`": "`", "?": "?",
}

Token = tuple  # (kind, value, position)


def _read_escape(src: str, i: int, is_bytes: bool) -> tuple[str | int, int]:
    if i >= len(src):
        raise CelParseError("unterminated escape", i)
    c = src[i]
    if c in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[c], i + 1
    widths = {"x": 2, "X": 2, "u": 4, "U": 8}
    if c in widths:
        if is_bytes and c in "uU":
            raise CelParseError("unicode escape in bytes literal", i)
        digits = src[i + 1:i + 1 + widths[c]]
        if len(digits) != widths[c] or not re.fullmatch(r"[0-9a-fA-F]+", digits):
            raise CelParseError("invalid hex escape", i)
        code = int(digits, 16)
        if c in "uU":
            return chr(code), i + 1 + widths[c]
        return code, i + 1 + widths[c]
    digits = src[i:i + 3]
    if re.fullmatch(r"[0-3][0-7][0-7]", digits):
        return int(digits, 8), i + 3
    raise CelParseError(f"invalid escape \\{c}", i)


def _read_string(src: str, i: int, raw: bool, is_bytes: bool) -> tuple[Any, int]:
    quote = src[i]
    triple = src[i:i + 3] == quote * 3
    close = quote * 3 if triple else quote
    j = i + len(close)
    pieces: list[Any] = []
    while True:
        if j >= len(src):
            raise CelParseError("unterminated string literal", i)
        if src.startswith(close, j):
            j += len(close)
            break
        ch = src[j]
        if ch == "\n" and not triple:
            raise CelParseError("newline in string literal", j)
        if ch == "\\" and not raw:
            value, j = _read_escape(src, j + 1, is_bytes)
            pieces.append(value)
        else:
            pieces.append(ch)
            j += 1
    if is_bytes:
        out = bytearray()
        for piece in pieces:
            out.extend([piece] if isinstance(piece, int) else piece.encode("utf-8"))
        return bytes(out), j
    return "".join(chr(p) if isinstance(p, int) else p for p in pieces), j


def _tokenize(src: str) -> list[Token]:
    tokens: list[Token] = []
    i, n = 0, len(src)
    while i < n:
        ch = src[i]
        if ch.isspace():
            i += 1
            continue
        if src.startswith("//", i):
            end = src.find("\n", i)
            i = n if end < 0 else end + 1
            continue
        j = i
        while j < n and j - i < 2 and src[j] in "rRbB":
            j += 1
        prefix = src[i:j].lower()
        if j < n and src[j] in "'\"" and len(set(prefix)) == len(prefix):
            value, end = _read_string(src, j, "r" in prefix, "b" in prefix)
            tokens.append(("bytes" if "b" in prefix else "string", value, i))
            i = end
            continue
        m = _IDENT.match(src, i)
        if m:
            tokens.append(("ident", m.group(), i))
            i = m.end()
            continue
        m = _NUMBER.match(src, i)
        if m:
            text = m.group()
            if text[-1] in "uU":
                body = text[:-1]
                value = int(body, 16) if body[:2].lower() == "0x" else int(body)
                if value > _UINT_MAX:
                    raise CelParseError("uint literal out of range", i)
                tokens.append(("uint", value, i))
            elif text[:2].lower() == "0x":
                tokens.append(("int", int(text, 16), i))
            elif any(c in text for c in ".eE"):
                tokens.append(("float", float(text), i))
            else:
                tokens.append(("int", int(text), i))
            i = m.end()
            continue
        for op in _OPERATORS:
            if src.startswith(op, i):
                tokens.append(("op", op, i))
                i += len(op)
                break
        else:
            raise CelParseError(f"unexpected character {ch!r}", i)
    tokens.append(("eof", None, n))
    return tokens


# ---------------------------------------------------------------- parser

_RELATIONS = ("==", "!=", "<", "<=", ">", ">=")


class _Parser:
    def __init__(self, source: str) -> None:
        self.tokens = _tokenize(source)
        self.pos = 0

    def peek(self) -> Token:
        return self.tokens[self.pos]

    def advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def accept(self, op: str) -> bool:
        kind, value, _ = self.peek()
        if kind == "op" and value == op:
            self.pos += 1
            return True
        return False

    def expect(self, op: str) -> None:
        if not self.accept(op):
            _, value, position = self.peek()
            found = "end of input" if value is None else repr(value)
            raise CelParseError(f"expected {op!r}, found {found}", position)

    def parse(self) -> Node:
        node = self.expression()
        kind, value, position = self.peek()
        if kind != "eof":
            raise CelParseError(f"unexpected token {value!r}", position)
        return node

    def expression(self) -> Node:
        condition = self.logical_or()
        if self.accept("?"):
            if_true = self.logical_or()
            self.expect(":")
            return Ternary(condition, if_true, self.expression())
        return condition

    def logical_or(self) -> Node:
        node = self.logical_and()
        while self.accept("||"):
            node = Binary("||", node, self.logical_and())
        return node

    def logical_and(self) -> Node:
        node = self.relation()
        while self.accept("&&"):
            node = Binary("&&", node, self.relation())
        return node

    def relation(self) -> Node:
        node = self.additive()
        while True:
            kind, value, _ = self.peek()
            if (kind == "op" and value in _RELATIONS) or (kind == "ident" and value == "in"):
                self.advance()
                node = Binary(value, node, self.additive())
            else:
                return node

    def additive(self) -> Node:
        node = self.multiplicative()
        while True:
            kind, value, _ = self.peek()
            if kind == "op" and value in ("+", "-"):
                self.advance()
                node = Binary(value, node, self.multiplicative())
            else:
                return node

    def multiplicative(self) -> Node:
        node = self.unary()
        while True:
            kind, value, _ = self.peek()
            if kind == "op" and value in ("*", "/", "%"):
                self.advance()
                node = Binary(value, node, self.unary())
            else:
                return node

    def unary(self) -> Node:
        ops: list[str] = []
        while True:
            kind, value, _ = self.peek()
            if kind == "op" and value in ("!", "-"):
                ops.append(self.advance()[1])
            else:
                break
        node = self.member()
        for op in reversed(ops):
            if (
                op == "-"
                and isinstance(node, Literal)
                and isinstance(node.value, (int, float))
                and not isinstance(node.value, bool)
            ):
                node = Literal(-node.value)
            else:
                node = Unary(op, node)
        return node

    def arguments(self, close: str) -> tuple:
        items: list[Node] = []
        while not self.accept(close):
            items.append(self.expression())
            if not self.accept(","):
                self.expect(close)
                break
        return tuple(items)

    def member(self) -> Node:
        node = self.primary()
        while True:
            if self.accept("."):
                kind, name, position = self.advance()
                if kind != "ident":
                    raise CelParseError("expected field name", position)
                if self.accept("("):
                    node = Call(name, node, self.arguments(")"))
                else:
                    node = Select(node, name)
            elif self.accept("["):
                index = self.expression()
                self.expect("]")
                node = Index(node, index)
            else:
                return node

    def primary(self) -> Node:
        kind, value, position = self.advance()
        if kind in ("int", "uint", "float", "string", "bytes"):
            return Literal(value)
        if kind == "ident":
            if value == "true":
                return Literal(True)
            if value == "false":
                return Literal(False)
            if value == "null":
                return Literal(None)
            if self.accept("("):
                return Call(value, None, self.arguments(")"))
            return Ident(value)
        if kind == "op":
            if value == "(":
                node = self.expression()
                self.expect(")")
                return node
            if value == "[":
                return ListExpr(self.arguments("]"))
            if value == "{":
                entries: list[tuple] = []
                while not self.accept("}"):
                    key = self.expression()
                    self.expect(":")
                    entries.append((key, self.expression()))
                    if not self.accept(","):
                        self.expect("}")
                        break
                return MapExpr(tuple(entries))
        found = "end of input" if kind == "eof" else repr(value)
        raise CelParseError(f"unexpected {found}", position)


def parse(source: str) -> Node:
    """Parse CEL source text into a syntax tree."""
    return _Parser(source).parse()


# ---------------------------------------------------------------- values


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_num(value: Any) -> bool:
    return _is_int(value) or isinstance(value, float)


def _checked(value: int) -> int:
    if not _INT_MIN <= value <= _INT_MAX:
        raise ExecutionError("Overflow from binary operator")
    return value


def _equal(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if _is_num(a) and _is_num(b):
        return a == b
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(_equal(a[k], b[k]) for k in a)
    if a is None or b is None:
        return a is None and b is None
    return type(a) is type(b) and a == b


def _compare(a: Any, b: Any) -> int:
    comparable = (
        (_is_num(a) and _is_num(b))
        or any(isinstance(a, t) and isinstance(b, t) for t in (str, bytes, bool, datetime, timedelta))
    )
    if not comparable:
        raise ExecutionError(f"Unsupported comparison between {ValueType.of(a)} and {ValueType.of(b)}")
    return (a > b) - (a < b)


def _arith(op: str, a: Any, b: Any) -> Any:
    if _is_int(a) and _is_int(b):
        if op == "+":
            return _checked(a + b)
        if op == "-":
            return _checked(a - b)
        if op == "*":
            return _checked(a * b)
        if b == 0:
            raise ExecutionError("Division by zero" if op == "/" else "Modulus by zero")
        quotient = abs(a) // abs(b) * (1 if (a >= 0) == (b >= 0) else -1)
        return _checked(quotient) if op == "/" else a - b * quotient
    if _is_num(a) and _is_num(b):
        a, b = float(a), float(b)
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if op == "/":
            if b == 0.0:
                return float("nan") if a == 0.0 or a != a else float("inf") * (1 if a > 0 else -1)
            return a / b
    elif op == "+":
        for kind in (str, bytes, list, timedelta):
            if isinstance(a, kind) and isinstance(b, kind):
                return a + b
        if isinstance(a, datetime) and isinstance(b, timedelta):
            return a + b
        if isinstance(a, timedelta) and isinstance(b, datetime):
            return b + a
    elif op == "-":
        if isinstance(a, (datetime, timedelta)) and isinstance(b, timedelta):
            return a - b
        if isinstance(a, datetime) and isinstance(b, datetime):
            return a - b
    raise ExecutionError(
        f"Unsupported binary operator '{op}' for {ValueType.of(a)} and {ValueType.of(b)}"
    )


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|ns|h|m|s)")
_DURATION_NANOS = {"h": 3_600_000_000_000, "m": 60_000_000_000, "s": 1_000_000_000,
                   "ms": 1_000_000, "us": 1_000, "µs": 1_000, "ns": 1}


def _duration(text: Any) -> timedelta:
    if not isinstance(text, str):
        raise ExecutionError("duration expects a string", "duration")
    sign = -1 if text.startswith("-") else 1
    body = text.lstrip("+-") if text[:1] in "+-" else text
    if body == "0":
        return timedelta(0)
    total, position = Decimal(0), 0
    for match in _DURATION_PART.finditer(body):
        if match.start() != position:
            break
        total += Decimal(match.group(1)) * _DURATION_NANOS[match.group(2)]
        position = match.end()
    if not body or position != len(body):
        raise ExecutionError(f"invalid duration {text!r}", "duration")
    return timedelta(microseconds=sign * int(total) // 1000)


def _timestamp(text: Any) -> datetime:
    if not isinstance(text, str):
        raise ExecutionError("timestamp expects a string", "timestamp")
    try:
        value = datetime.fromisoformat(text.replace("Z", "+00:00").replace("z", "+00:00"))
    except ValueError as err:
        raise ExecutionError(str(err), "timestamp") from err
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _size(value: Any) -> int:
    if isinstance(value, (str, bytes, list, dict)):
        return len(value)
    raise ExecutionError(f"size is not supported for {ValueType.of(value)}", "size")


def _strings(name: str, this: Any, arg: Any) -> tuple[str, str]:
    if not isinstance(this, str) or not isinstance(arg, str):
        raise ExecutionError("expects string arguments", name)
    return this, arg


def _to_int(value: Any) -> int:
    if _is_int(value):
        return value
    if isinstance(value, float):
        if value != value or not _INT_MIN <= value <= _INT_MAX:
            raise ExecutionError("value out of int range", "int")
        return int(value)
    if isinstance(value, str):
        try:
            return _checked(int(value))
        except ValueError as err:
            raise ExecutionError(f"cannot convert {value!r} to int", "int") from err
    if isinstance(value, datetime):
        return int(value.timestamp())
    raise ExecutionError(f"cannot convert {ValueType.of(value)} to int", "int")


def _to_uint(value: Any) -> int:
    result = _to_int(value) if not (_is_int(value) and value > _INT_MAX) else value
    if not 0 <= result <= _UINT_MAX:
        raise ExecutionError("value out of uint range", "uint")
    return result


def _to_double(value: Any) -> float:
    if _is_num(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as err:
            raise ExecutionError(f"cannot convert {value!r} to double", "double") from err
    raise ExecutionError(f"cannot convert {ValueType.of(value)} to double", "double")


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if _is_num(value):
        return repr(value)
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as err:
            raise ExecutionError("bytes are not valid UTF-8", "string") from err
    if isinstance(value, datetime):
        return value.isoformat()
    raise ExecutionError(f"cannot convert {ValueType.of(value)} to string", "string")


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    raise ExecutionError(f"cannot convert {ValueType.of(value)} to bytes", "bytes")


def _matches(this: Any, pattern: Any) -> bool:
    this, pattern = _strings("matches", this, pattern)
    try:
        return re.search(pattern, this) is not None
    except re.error as err:
        raise ExecutionError(str(err), "matches") from err


_BUILTINS: dict[str, Callable[..., Any]] = {
    "size": _size,
    "contains": lambda this, arg: (lambda s, a: a in s)(*_strings("contains", this, arg)),
    "startsWith": lambda this, arg: (lambda s, a: s.startswith(a))(*_strings("startsWith", this, arg)),
    "endsWith": lambda this, arg: (lambda s, a: s.endswith(a))(*_strings("endsWith", this, arg)),
    "matches": _matches,
    "int": _to_int,
    "uint": _to_uint,
    "double": _to_double,
    "string": _to_string,
    "bytes": _to_bytes,
    "duration": _duration,
    "timestamp": _timestamp,
    "dyn": lambda value: value,
}

_MACROS = {"exists": (2,), "all": (2,), "exists_one": (2,), "map": (2, 3), "filter": (2,)}


# ---------------------------------------------------------------- evaluation


class Context:
    """Variables and functions available to an expression being resolved."""

    def __init__(self) -> None:
        self._functions: dict[str, Callable[..., Any]] = {}
        self._variables: dict[str, Any] = {}

    def add_function(self, name: str, function: Callable[..., Any]) -> None:
        """Register ``function``; a method call passes its target as the first argument."""
        self._functions[name] = function

    def add_variable(self, name: str, value: Any) -> None:
        self._variables[name] = value

    def resolve(self, expression: Node | str) -> Any:
        """Evaluate a syntax tree (or source text) against this context."""
        node = parse(expression) if isinstance(expression, str) else expression
        return self._eval(node, {})

    def _eval(self, node: Node, scope: dict[str, Any]) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Ident):
            if node.name in scope:
                return scope[node.name]
            if node.name in self._variables:
                return self._variables[node.name]
            raise ExecutionError(f"Undeclared reference to '{node.name}'")
        if isinstance(node, Select):
            operand = self._eval(node.operand, scope)
            if not isinstance(operand, dict):
                raise ExecutionError(
                    f"No such key: {node.field} on {ValueType.of(operand)}"
                )
            if node.field not in operand:
                raise ExecutionError(f"No such key: {node.field}")
            return operand[node.field]
        if isinstance(node, Index):
            return self._index(self._eval(node.operand, scope), self._eval(node.index, scope))
        if isinstance(node, Call):
            return self._call(node, scope)
        if isinstance(node, ListExpr):
            return [self._eval(item, scope) for item in node.items]
        if isinstance(node, MapExpr):
            result: dict[Any, Any] = {}
            for key_node, value_node in node.entries:
                key = self._eval(key_node, scope)
                if not isinstance(key, (str, int)):
                    raise ExecutionError(f"Unsupported map key type {ValueType.of(key)}")
                result[key] = self._eval(value_node, scope)
            return result
        if isinstance(node, Unary):
            return self._unary(node.op, self._eval(node.operand, scope))
        if isinstance(node, Binary):
            return self._binary(node, scope)
        if isinstance(node, Ternary):
            condition = self._eval(node.condition, scope)
            if not isinstance(condition, bool):
                raise ExecutionError("Ternary condition must be a bool")
            return self._eval(node.if_true if condition else node.if_false, scope)
        raise ExecutionError(f"Unknown expression node {node!r}")

    @staticmethod
    def _index(operand: Any, index: Any) -> Any:
        if isinstance(operand, list):
            if not _is_int(index):
                raise ExecutionError(f"List index must be an int, got {ValueType.of(index)}")
            if not 0 <= index < len(operand):
                raise ExecutionError(f"Index out of bounds: {index}")
            return operand[index]
        if isinstance(operand, dict):
            if isinstance(index, float) and index.is_integer():
                index = int(index)
            if isinstance(index, (list, dict)) or index not in operand:
                raise ExecutionError(f"No such key: {index}")
            return operand[index]
        raise ExecutionError(f"Cannot index into {ValueType.of(operand)}")

    @staticmethod
    def _unary(op: str, value: Any) -> Any:
        if op == "!":
            if not isinstance(value, bool):
                raise ExecutionError(f"Unsupported unary operator '!' for {ValueType.of(value)}")
            return not value
        if _is_int(value):
            return _checked(-value)
        if isinstance(value, (float, timedelta)):
            return -value
        raise ExecutionError(f"Unsupported unary operator '-' for {ValueType.of(value)}")

    def _binary(self, node: Binary, scope: dict[str, Any]) -> Any:
        op = node.op
        if op in ("&&", "||"):
            left = self._eval(node.left, scope)
            if not isinstance(left, bool):
                raise ExecutionError(f"Operator '{op}' expects bool operands")
            if (op == "&&" and not left) or (op == "||" and left):
                return left
            right = self._eval(node.right, scope)
            if not isinstance(right, bool):
                raise ExecutionError(f"Operator '{op}' expects bool operands")
            return right
        left = self._eval(node.left, scope)
        right = self._eval(node.right, scope)
        if op == "==":
            return _equal(left, right)
        if op == "!=":
            return not _equal(left, right)
        if op == "in":
            if isinstance(right, list):
                return any(_equal(left, item) for item in right)
            if isinstance(right, dict):
                return not isinstance(left, (list, dict)) and left in right
            raise ExecutionError(f"Operator 'in' is not supported for {ValueType.of(right)}")
        if op in ("<", "<=", ">", ">="):
            order = _compare(left, right)
            return {"<": order < 0, "<=": order <= 0, ">": order > 0, ">=": order >= 0}[op]
        return _arith(op, left, right)

    def _macro(self, node: Call, scope: dict[str, Any]) -> Any:
        target = self._eval(node.target, scope)
        if isinstance(target, dict):
            items = list(target)
        elif isinstance(target, list):
            items = target
        else:
            raise ExecutionError(f"'{node.name}' is not supported on {ValueType.of(target)}")
        var = node.args[0].name

        def run(body: Node, item: Any) -> Any:
            return self._eval(body, {**scope, var: item})

        def test(body: Node, item: Any) -> bool:
            result = run(body, item)
            if not isinstance(result, bool):
                raise ExecutionError(f"'{node.name}' predicate must return a bool", node.name)
            return result

        if node.name == "exists":
            return any(test(node.args[1], item) for item in items)
        if node.name == "all":
            return all(test(node.args[1], item) for item in items)
        if node.name == "exists_one":
            return sum(1 for item in items if test(node.args[1], item)) == 1
        if node.name == "filter":
            return [item for item in items if test(node.args[1], item)]
        if len(node.args) == 3:
            return [run(node.args[2], item) for item in items if test(node.args[1], item)]
        return [run(node.args[1], item) for item in items]

    def _call(self, node: Call, scope: dict[str, Any]) -> Any:
        if node.name == "has" and node.target is None and len(node.args) == 1:
            arg = node.args[0]
            if not isinstance(arg, Select):
                raise ExecutionError("has() expects a field selection", "has")
            operand = self._eval(arg.operand, scope)
            if not isinstance(operand, dict):
                raise ExecutionError(f"has() is not supported on {ValueType.of(operand)}", "has")
            return arg.field in operand
        if (
            node.name in _MACROS
            and node.target is not None
            and len(node.args) in _MACROS[node.name]
            and isinstance(node.args[0], Ident)
        ):
            return self._macro(node, scope)
        function = self._functions.get(node.name) or _BUILTINS.get(node.name)
        if function is None:
            raise ExecutionError(f"Undeclared reference to '{node.name}'")
        args = [self._eval(arg, scope) for arg in node.args]
        if node.target is not None:
            args.insert(0, self._eval(node.target, scope))
        try:
            return function(*args)
        except ExecutionError:
            raise
        except (TypeError, ValueError, IndexError, KeyError) as err:
            raise ExecutionError(str(err), node.name) from err