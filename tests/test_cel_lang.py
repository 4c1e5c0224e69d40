import pytest

from kuadrant_shim.data.cel_lang import (
    Binary,
    Call,
    CelParseError,
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


def resolve(source, **variables):
    ctx = Context()
    for name, value in variables.items():
        ctx.add_variable(name, value)
    return ctx.resolve(source)


def test_parse_member_chain():
    assert parse("auth.identity.anonymous") == Select(
        Select(Ident("auth"), "identity"), "anonymous"
    )


def test_parse_calls_and_index():
    assert parse("queryMap(request.query, true)['param1']") == Index(
        Call("queryMap", None, (Select(Ident("request"), "query"), Literal(True))),
        Literal("param1"),
    )
    assert parse("'abc'.charAt(1)") == Call("charAt", Literal("abc"), (Literal(1),))


def test_parse_negative_literal_folds():
    assert parse("-1") == Literal(-1)
    assert parse("!x") == Unary("!", Ident("x"))


def test_parse_precedence_and_ternary():
    tree = parse("a || b && c ? [1] : {'k': 2}")
    assert tree == Ternary(
        Binary("||", Ident("a"), Binary("&&", Ident("b"), Ident("c"))),
        ListExpr((Literal(1),)),
        MapExpr(((Literal("k"), Literal(2)),)),
    )


@pytest.mark.parametrize("source", ["1 +", "'unterminated", "a ? b", "(1", "a.", "#"])
def test_parse_errors(source):
    with pytest.raises(CelParseError):
        parse(source)


def test_string_and_bytes_literals():
    assert resolve("'hello'") == "hello"
    assert resolve('"a\\tb"') == "a\tb"
    assert resolve("b'\\xCA\\xFE'") == b"\xca\xfe"
    assert resolve("r'a\\n'") == "a\\n"
    assert resolve("'\\U0001F47E'") == "👾"


def test_variables_and_members():
    request = {"method": "GET", "path": "/admin/toy"}
    assert resolve("request.method == 'GET'", request=request) is True
    assert resolve("request.path.startsWith('/admin')", request=request) is True


def test_undeclared_and_missing_key():
    with pytest.raises(ExecutionError):
        resolve("nope")
    with pytest.raises(ExecutionError):
        resolve("request.missing", request={})


def test_has_macro():
    assert resolve("has(a.b)", a={"b": 1}) is True
    assert resolve("has(a.c)", a={"b": 1}) is False


def test_exists_over_map_keys_with_custom_function():
    ctx = Context()
    ctx.add_variable("request", {"headers": {"X-Auth": "kuadrant"}})
    ctx.add_function("lowerAscii", lambda this: this.lower())
    expr = "request.headers.exists(h, h.lowerAscii() == 'x-auth' && request.headers[h] == 'kuadrant')"
    assert ctx.resolve(expr) is True


def test_list_macros():
    assert resolve("[1, 2, 3].all(x, x > 0)") is True
    assert resolve("[1, 2, 3].exists_one(x, x == 2)") is True
    assert resolve("[1, 2, 3].filter(x, x != 2)") == [1, 3]
    assert resolve("[1, 2, 3].map(x, x > 1, x)") == [2, 3]


def test_in_operator():
    assert resolve("'👾' in {'👾': ''}") is True
    assert resolve("2 in [1, 2]") is True
    assert resolve("'z' in ['a']") is False


def test_function_calling_convention():
    ctx = Context()
    ctx.add_function("collect", lambda this, *args: [this, list(args)])
    assert ctx.resolve("collect('a', 'b')") == ["a", ["b"]]
    assert ctx.resolve("'a'.collect('b')") == ["a", ["b"]]


def test_function_errors_propagate():
    def boom(this):
        raise ExecutionError("bad", "boom")

    ctx = Context()
    ctx.add_function("boom", boom)
    with pytest.raises(ExecutionError) as info:
        ctx.resolve("'x'.boom()")
    assert info.value.function == "boom"


def test_integer_arithmetic():
    assert resolve("-7 / 2 == -3") is True
    assert resolve("-7 % 2 == -1") is True
    with pytest.raises(ExecutionError):
        resolve("9223372036854775807 + 1")
    with pytest.raises(ExecutionError):
        resolve("1 / 0")


def test_equality_is_type_strict():
    assert resolve("1 == true") is False
    assert resolve("null == {}") is False
    assert resolve("[1] + [2] == [1, 2]") is True


def test_size_counts_code_points():
    assert resolve("size('👾') == 1") is True
    assert resolve("'abc'.size() == size(b'abc')") is True


def test_comparison_type_mismatch():
    with pytest.raises(ExecutionError):
        resolve("'a' < 1")


def test_ternary_requires_bool():
    with pytest.raises(ExecutionError):
        resolve("1 ? 2 : 3")
    assert resolve("true ? 'yes' : 'no'") == "yes"


def test_durations():
    assert resolve("duration('1m') == duration('60s')") is True
    with pytest.raises(ExecutionError):
        resolve("duration('forever')")


def test_value_type_of():
    assert ValueType.of(True) is ValueType.BOOL
    assert ValueType.of(1) is ValueType.INT
    assert ValueType.of(None) is ValueType.NULL
    assert ValueType.of({}) is ValueType.MAP
    assert str(ValueType.STRING) == "string"


def test_resolve_accepts_parsed_tree():
    tree = parse("x + 1 == 2")
    ctx = Context()
    ctx.add_variable("x", 1)
    assert ctx.resolve(tree) is True