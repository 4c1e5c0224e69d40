"""CEL expressions and predicates evaluated against request attributes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from json import loads as _json_loads
from typing import Any, Callable, Iterable
from urllib.parse import unquote_to_bytes

from kuadrant_shim.data import cel_strings
from kuadrant_shim.data.attribute import (
    PropertyError,
    get_attribute,
    parse_bool,
    parse_bytes,
    parse_float,
    parse_int,
    parse_string,
    parse_timestamp,
    parse_uint,
)
from kuadrant_shim.data.cel_lang import (
    Binary,
    Call,
    Context,
    ExecutionError,
    Ident,
    Index,
    ListExpr,
    Literal,
    MapExpr,
    Select,
    Ternary,
    Unary,
    ValueType,
    parse,
)
from kuadrant_shim.data.property import HostError, Path, get_host, host_get_map

log = logging.getLogger(__name__)

_INT_MIN = -(2**63)
_UINT_MAX = 2**64 - 1

_BINDINGS = ("request", "metadata", "source", "destination", "auth")


class CelError(Exception):
    """Evaluating an expression failed, either reading a property or resolving it."""

    def __init__(self, error: Exception) -> None:
        super().__init__(error)
        self.error = error

    @property
    def kind(self) -> str:
        return "Property" if isinstance(self.error, PropertyError) else "Resolve"

    def __str__(self) -> str:
        return f"CelError::{self.kind} {{ {self.error!r} }}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CelError):
            return NotImplemented
        return type(self.error) is type(other.error) and self.error == other.error

    __hash__ = Exception.__hash__


class EvaluationError(Exception):
    """A predicate could not be evaluated to a boolean."""

    def __init__(self, expression: Expression, message: str) -> None:
        super().__init__(message)
        self.expression = expression
        self.message = message

    def __str__(self) -> str:
        return f"EvaluationError {{ expression: {self.expression!r}, message: {self.message} }}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EvaluationError):
            return NotImplemented
        return self.message == other.message

    __hash__ = Exception.__hash__


_PARSERS: dict[ValueType, Callable[[bytes], Any]] = {
    ValueType.STRING: parse_string,
    ValueType.INT: parse_int,
    ValueType.UINT: parse_uint,
    ValueType.FLOAT: parse_float,
    ValueType.BOOL: parse_bool,
    ValueType.BYTES: parse_bytes,
    ValueType.TIMESTAMP: parse_timestamp,
}


@dataclass(frozen=True)
class Attribute:
    """A property path referenced by an expression, with its type when well known."""

    path: Path
    cel_type: ValueType | None = None

    def get(self) -> Any:
        """Read the attribute's value from the host; None when absent."""
        if self.cel_type is None:
            raw = get_attribute(self.path, parse_string)
            return None if raw is None else json_to_cel(raw)
        if self.cel_type is ValueType.MAP:
            try:
                return host_get_map(self.path)
            except HostError:
                return None
        parser = _PARSERS.get(self.cel_type)
        if parser is None:
            raise TypeError(f"Need support for `{self.cel_type}`s!")
        return get_attribute(self.path, parser)


_WELL_KNOWN_ATTRIBUTES: dict[Path, ValueType] = {
    Path.from_str(name): value_type
    for name, value_type in (
        ("request.time", ValueType.TIMESTAMP),
        ("request.id", ValueType.STRING),
        ("request.protocol", ValueType.STRING),
        ("request.scheme", ValueType.STRING),
        ("request.host", ValueType.STRING),
        ("request.method", ValueType.STRING),
        ("request.path", ValueType.STRING),
        ("request.url_path", ValueType.STRING),
        ("request.query", ValueType.STRING),
        ("request.referer", ValueType.STRING),
        ("request.size", ValueType.INT),
        ("request.useragent", ValueType.STRING),
        ("request.body", ValueType.STRING),
        ("source.address", ValueType.STRING),
        ("source.remote_address", ValueType.STRING),
        ("source.port", ValueType.INT),
        ("source.service", ValueType.STRING),
        ("source.principal", ValueType.STRING),
        ("source.certificate", ValueType.STRING),
        ("destination.address", ValueType.STRING),
        ("destination.port", ValueType.INT),
        ("destination.service", ValueType.STRING),
        ("destination.principal", ValueType.STRING),
        ("destination.certificate", ValueType.STRING),
        ("connection.requested_server_name", ValueType.STRING),
        ("connection.tls_session.sni", ValueType.STRING),
        ("connection.tls_version", ValueType.STRING),
        ("connection.subject_local_certificate", ValueType.STRING),
        ("connection.subject_peer_certificate", ValueType.STRING),
        ("connection.dns_san_local_certificate", ValueType.STRING),
        ("connection.dns_san_peer_certificate", ValueType.STRING),
        ("connection.uri_san_local_certificate", ValueType.STRING),
        ("connection.uri_san_peer_certificate", ValueType.STRING),
        ("connection.sha256_peer_certificate_digest", ValueType.STRING),
        ("ratelimit.domain", ValueType.STRING),
        ("connection.id", ValueType.UINT),
        ("ratelimit.hits_addend", ValueType.INT),
        ("request.headers", ValueType.MAP),
        ("request.context_extensions", ValueType.MAP),
        ("source.labels", ValueType.MAP),
        ("destination.labels", ValueType.MAP),
        ("filter_state", ValueType.MAP),
        ("connection.mtls", ValueType.BOOL),
        ("request.raw_body", ValueType.BYTES),
    )
}


def known_attribute_for(path: Path | str) -> Attribute | None:
    """Return the typed attribute for a well-known path, or None."""
    if isinstance(path, str):
        path = Path.from_str(path)
    value_type = _WELL_KNOWN_ATTRIBUTES.get(path)
    return None if value_type is None else Attribute(path, value_type)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"not a JSON number: {name}")


def json_to_cel(json: str) -> Any:
    """Decode a JSON-encoded property; text that is not JSON is kept as a string."""
    try:
        value = _json_loads(json, parse_constant=_reject_constant)
    except ValueError:
        return json
    if isinstance(value, int) and not isinstance(value, bool):
        if not _INT_MIN <= value <= _UINT_MAX:
            return float(value)
    return value


class AttributeMap:
    """Attributes arranged as a tree of nested names, resolved into nested maps."""

    def __init__(self, attributes: Iterable[Attribute]) -> None:
        root: dict[str, Any] = {}
        for attr in attributes:
            tokens = attr.path.tokens
            if not tokens:
                continue
            *parents, last = tokens
            node = root
            for token in parents:
                child = node.setdefault(token, {})
                if isinstance(child, Attribute):
                    # a value already covers this path and resolves from there on
                    break
                node = child
            else:
                node[last] = attr
        self.data = root

    def to_value(self) -> dict[str, Any]:
        """Read every attribute and return the nested map of values."""
        return _resolve_tree(self.data)


def _resolve_tree(tree: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value.get() if isinstance(value, Attribute) else _resolve_tree(value)
        for key, value in tree.items()
    }


def _decode_component(text: str, what: str) -> str:
    try:
        return unquote_to_bytes(text).decode("utf-8")
    except UnicodeDecodeError as err:
        log.warning("failed to decode query %s, using default: %r", what, err)
        return text


def decode_query_string(this: Any, *args: Any) -> dict[str, Any]:
    """Decode a query string into a map of parameter names to values.

    A repeated name keeps its first value, unless the second argument is
    ``true``, in which case its values are gathered into a list.
    """
    if not isinstance(this, str):
        raise ExecutionError(f"Expected string, got {ValueType.of(this)}", "queryMap")
    allow_repeats = len(args) == 1 and args[0] is True
    result: dict[str, Any] = {}
    for part in this.split("&"):
        raw_key, _, rest = part.partition("=")
        raw_value = rest.split("=")[0]
        value = _decode_component(raw_value, "value")
        key = _decode_component(raw_key, "key")
        if key not in result:
            result[key] = value
        elif allow_repeats:
            existing = result[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[key] = [existing, value]
    return result


def get_host_property(this: Any) -> bytes | None:
    """Read a raw host property given as a list of path tokens."""
    function = "getHostProperty"
    if not isinstance(this, list):
        raise ExecutionError(f"Expected list, got {ValueType.of(this)}", function)
    if not all(isinstance(token, str) for token in this):
        raise ExecutionError("Expected a list of string values", function)
    path = Path(this)
    log.debug("get_property: %r", path)
    try:
        data = get_host().get_property(path)
    except HostError as err:
        raise ExecutionError(f"Status: {err.status}", "hostcalls::get_property") from err
    return None if data is None else bytes(data)


def create_context() -> Context:
    """Return a context with the string extension functions registered."""
    ctx = Context()
    ctx.add_function("charAt", cel_strings.char_at)
    ctx.add_function("indexOf", cel_strings.index_of)
    ctx.add_function("join", cel_strings.join)
    ctx.add_function("lastIndexOf", cel_strings.last_index_of)
    ctx.add_function("lowerAscii", cel_strings.lower_ascii)
    ctx.add_function("upperAscii", cel_strings.upper_ascii)
    ctx.add_function("trim", cel_strings.trim)
    ctx.add_function("replace", cel_strings.replace)
    ctx.add_function("split", cel_strings.split)
    ctx.add_function("substring", cel_strings.substring)
    return ctx


def _collect_properties(node: Any, found: list[list[str]], path: list[str]) -> None:
    """Gather the dotted attribute paths (``a.b.c``) referenced by an expression."""
    if isinstance(node, Binary):
        _collect_properties(node.left, found, path)
        _collect_properties(node.right, found, path)
    elif isinstance(node, Ternary):
        _collect_properties(node.condition, found, path)
        _collect_properties(node.if_true, found, path)
        _collect_properties(node.if_false, found, path)
    elif isinstance(node, Unary):
        _collect_properties(node.operand, found, path)
    elif isinstance(node, Select):
        path.insert(0, node.field)
        _collect_properties(node.operand, found, path)
    elif isinstance(node, Index):
        _collect_properties(node.operand, found, path)
    elif isinstance(node, Call):
        if node.target is not None:
            _collect_properties(node.target, found, path)
        for arg in node.args:
            _collect_properties(arg, found, path)
    elif isinstance(node, ListExpr):
        for item in node.items:
            _collect_properties(item, found, path)
    elif isinstance(node, MapExpr):
        for key, value in node.entries:
            _collect_properties(key, found, path)
            _collect_properties(value, found, path)
    elif isinstance(node, Ident):
        if path:
            path.insert(0, node.name)
            found.append(list(path))
            path.clear()
    elif not isinstance(node, Literal):
        raise TypeError(f"Unknown expression node {node!r}")


class Expression:
    """A parsed CEL expression together with the attributes it reads."""

    def __init__(self, expression: str, extended: bool = False) -> None:
        self.source = expression
        self.expression = parse(expression)
        self.extended = extended
        found: list[list[str]] = []
        _collect_properties(self.expression, found, [])
        attributes = []
        for tokens in found:
            path = Path(tokens)
            attributes.append(known_attribute_for(path) or Attribute(path, None))
        attributes.sort(key=lambda attr: len(attr.path.tokens))
        self.attributes: list[Attribute] = attributes

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"

    def eval(self) -> Any:
        """Evaluate against the current host's properties; raises CelError."""
        ctx = create_context()
        if self.extended:
            ctx.add_function("queryMap", decode_query_string)
        try:
            data = AttributeMap(self.attributes).to_value()
        except PropertyError as err:
            raise CelError(err) from err
        ctx.add_function("getHostProperty", get_host_property)
        for binding in _BINDINGS:
            ctx.add_variable(binding, data.get(binding))
        try:
            return ctx.resolve(self.expression)
        except ExecutionError as err:
            raise CelError(err) from err


class Predicate:
    """A CEL expression expected to evaluate to a boolean."""

    def __init__(self, predicate: str) -> None:
        self.expression = Expression(predicate, False)

    @classmethod
    def route_rule(cls, predicate: str) -> Predicate:
        """A predicate whose expression may also use ``queryMap``."""
        instance = cls.__new__(cls)
        instance.expression = Expression(predicate, True)
        return instance

    def __repr__(self) -> str:
        return f"Predicate({self.expression!r})"

    def test(self) -> bool:
        try:
            value = self.expression.eval()
        except CelError as err:
            raise EvaluationError(self.expression, str(err)) from err
        if not isinstance(value, bool):
            raise EvaluationError(
                self.expression, f"Expected boolean value, got {value!r}"
            )
        return value


def apply_predicates(predicates: Iterable[Predicate]) -> bool:
    """True when every predicate holds (or there are none); stops at the first failure."""
    for predicate in predicates:
        if not predicate.test():
            return False
    return True