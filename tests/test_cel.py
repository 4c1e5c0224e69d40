import pytest

from kuadrant_shim.data.cel import (
    Attribute,
    AttributeMap,
    CelError,
    EvaluationError,
    Expression,
    Predicate,
    apply_predicates,
    create_context,
    decode_query_string,
    get_host_property,
    json_to_cel,
    known_attribute_for,
)
from kuadrant_shim.data.attribute import ParsePropertyError
from kuadrant_shim.data.cel_lang import CelParseError, ExecutionError, ValueType
from kuadrant_shim.data.property import Path, PropertyHost, use_host

QUERY = (
    b"param1=%F0%9F%91%BE%20&param2=Exterminate%21&%F0%9F%91%BE=123"
    b"&%F0%9F%91%BE=456&%F0%9F%91%BE"
)


def le64(value):
    return value.to_bytes(8, "little", signed=True)


def auth_prop(name):
    return Path(["filter_state", f"wasm.kuadrant.auth.identity.{name}"])


def test_predicates():
    predicate = Predicate("source.port == 65432")
    with use_host(PropertyHost({"source.port": le64(65432)})):
        assert predicate.test() is True


def test_expressions_sort_properties():
    value = Expression(
        "auth.identity.anonymous && auth.identity != null && auth.identity.foo > 3"
    )
    assert len(value.attributes) == 3
    assert value.attributes[0].path == Path.from_str("auth.identity")


@pytest.mark.parametrize(
    "name, raw, expected",
    [
        ("anonymous", b"true", True),
        ("age", b"42", 42),
        ("age", b"42.3", 42.3),
        ("age", b'"John"', "John"),
        ("name", b"-42", -42),
        ("age", b"some random crap", "some random crap"),
    ],
)
def test_expressions_to_json_resolve(name, raw, expected):
    with use_host(PropertyHost({auth_prop(name): raw})):
        assert Expression(f"auth.identity.{name}").eval() == expected


def test_decodes_query_string_with_repeats():
    predicate = Predicate.route_rule(
        "queryMap(request.query, true)['param1'] == '👾 ' && "
        "queryMap(request.query, true)['param2'] == 'Exterminate!' && "
        "queryMap(request.query, true)['👾'][0] == '123' && "
        "queryMap(request.query, true)['👾'][1] == '456' && "
        "queryMap(request.query, true)['👾'][2] == ''"
    )
    with use_host(PropertyHost({"request.query": QUERY})):
        assert predicate.test() is True


def test_decodes_query_string_without_repeats():
    predicate = Predicate.route_rule(
        "queryMap(request.query, false)['param2'] == 'Exterminate!' && "
        "queryMap(request.query, false)['👾'] == '123'"
    )
    with use_host(PropertyHost({"request.query": QUERY})):
        assert predicate.test() is True


def test_decodes_query_string_lone_key():
    predicate = Predicate.route_rule("queryMap(request.query) == {'👾': ''}")
    with use_host(PropertyHost({"request.query": b"%F0%9F%91%BE"})):
        assert predicate.test() is True


def test_query_map_not_available_without_extension():
    predicate = Predicate("queryMap(request.query) == {}")
    with use_host(PropertyHost({"request.query": b"a=1"})):
        with pytest.raises(EvaluationError):
            predicate.test()


def test_kuadrant_generated_predicates():
    host = PropertyHost({"request.query": QUERY}, headers={"X-Auth": "kuadrant"})
    with use_host(host):
        predicate = Predicate.route_rule(
            "'👾' in queryMap(request.query) ? queryMap(request.query)['👾'] == '123' : false"
        )
        assert predicate.test() is True
        predicate = Predicate.route_rule(
            "request.headers.exists(h, h.lowerAscii() == 'x-auth' "
            "&& request.headers[h] == 'kuadrant')"
        )
        assert predicate.test() is True


def test_attribute_resolve():
    with use_host(PropertyHost({"destination.port": le64(80)})):
        assert known_attribute_for("destination.port").get() == 80
    with use_host(PropertyHost({"request.method": b"GET"})):
        assert known_attribute_for(Path.from_str("request.method")).get() == "GET"


def test_attribute_absent_is_none():
    with use_host(PropertyHost()):
        assert known_attribute_for("request.method").get() is None
        assert Attribute(Path(["auth", "x"])).get() is None


def test_finds_known_attributes():
    path = Path.from_str("request.method")
    attr = known_attribute_for(path)
    assert attr.path == path
    assert attr.cel_type is ValueType.STRING


def test_unknown_attribute_is_none():
    assert known_attribute_for("request.nothing") is None


def test_expression_access_host():
    host = PropertyHost({Path(["foo", "bar.baz"]): b"\xca\xfe"})
    with use_host(host):
        value = Expression("getHostProperty(['foo', 'bar.baz'])").eval()
    assert value == b"\xca\xfe"


def test_attribute_map_it_works():
    attribute_map = AttributeMap(
        [
            known_attribute_for("request.method"),
            known_attribute_for("request.referer"),
            known_attribute_for("source.address"),
            known_attribute_for("destination.port"),
        ]
    )
    data = attribute_map.data
    assert set(data) == {"source", "destination", "request"}
    assert len(data["source"]) == 1
    assert data["source"]["address"].path == Path.from_str("source.address")
    assert len(data["destination"]) == 1
    assert data["destination"]["port"].path == Path.from_str("destination.port")
    assert len(data["request"]) == 2
    assert data["request"]["method"].path == Path.from_str("request.method")
    assert data["request"]["referer"].path == Path.from_str("request.referer")


def test_attribute_map_shorter_path_covers_longer():
    attribute_map = AttributeMap(
        [Attribute(Path(["auth", "identity"])), Attribute(Path(["auth", "identity", "x"]))]
    )
    assert attribute_map.data["auth"]["identity"].path == Path(["auth", "identity"])


def test_attribute_map_to_value():
    host = PropertyHost({"request.method": b"POST", "destination.port": le64(8080)})
    attribute_map = AttributeMap(
        [known_attribute_for("request.method"), known_attribute_for("destination.port")]
    )
    with use_host(host):
        assert attribute_map.to_value() == {
            "request": {"method": "POST"},
            "destination": {"port": 8080},
        }


def test_parse_failure_is_cel_error():
    with use_host(PropertyHost({"destination.port": b"\x01\x02"})):
        with pytest.raises(CelError) as info:
            Expression("destination.port == 80").eval()
    assert isinstance(info.value.error, ParsePropertyError)
    assert info.value.kind == "Property"


def test_invalid_cel_raises_parse_error():
    with pytest.raises(CelParseError):
        Expression("1 +")


def test_non_boolean_predicate_fails():
    predicate = Predicate("1")
    with use_host(PropertyHost()):
        with pytest.raises(EvaluationError) as info:
            predicate.test()
    assert "Expected boolean value" in info.value.message


def test_apply_predicates():
    with use_host(PropertyHost()):
        assert apply_predicates([]) is True
        assert apply_predicates([Predicate("true"), Predicate("true")]) is True
        assert apply_predicates([Predicate("true"), Predicate("false")]) is False
        with pytest.raises(EvaluationError):
            apply_predicates([Predicate("true"), Predicate("1")])


def test_apply_predicates_stops_at_first_false():
    with use_host(PropertyHost()):
        assert apply_predicates([Predicate("false"), Predicate("1")]) is False


@pytest.mark.parametrize(
    "text, expected",
    [
        ("null", None),
        ("true", True),
        ("42", 42),
        ("-42", -42),
        ("42.3", 42.3),
        ('"John"', "John"),
        ("NaN", "NaN"),
        ("not json", "not json"),
    ],
)
def test_json_to_cel(text, expected):
    assert json_to_cel(text) == expected


def test_decode_query_string_direct():
    assert decode_query_string("a=1&a=2", True) == {"a": ["1", "2"]}
    assert decode_query_string("a=1&a=2", False) == {"a": "1"}
    assert decode_query_string("a=1&a=2") == {"a": "1"}
    assert decode_query_string("a=%FF") == {"a": "%FF"}
    assert decode_query_string("a=b=c") == {"a": "b"}


def test_decode_query_string_rejects_non_string():
    with pytest.raises(ExecutionError):
        decode_query_string(5)


def test_get_host_property_direct():
    with use_host(PropertyHost({Path(["a", "b"]): b"xy"})):
        assert get_host_property(["a", "b"]) == b"xy"
        assert get_host_property(["missing"]) is None
        with pytest.raises(ExecutionError):
            get_host_property("a.b")
        with pytest.raises(ExecutionError):
            get_host_property(["a", 1])


def test_create_context_has_string_functions():
    ctx = create_context()
    assert ctx.resolve("'TacoCat'.lowerAscii()") == "tacocat"
    assert ctx.resolve("['a', 'b'].join('-')") == "a-b"
    assert ctx.resolve("'tacocat'.substring(4)") == "cat"