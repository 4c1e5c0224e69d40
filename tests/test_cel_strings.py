import pytest

from kuadrant_shim.data import cel_strings
from kuadrant_shim.data.cel_lang import Context, ExecutionError


@pytest.fixture
def ctx():
    context = Context()
    context.add_function("charAt", cel_strings.char_at)
    context.add_function("indexOf", cel_strings.index_of)
    context.add_function("join", cel_strings.join)
    context.add_function("lastIndexOf", cel_strings.last_index_of)
    context.add_function("lowerAscii", cel_strings.lower_ascii)
    context.add_function("upperAscii", cel_strings.upper_ascii)
    context.add_function("trim", cel_strings.trim)
    context.add_function("replace", cel_strings.replace)
    context.add_function("split", cel_strings.split)
    context.add_function("substring", cel_strings.substring)
    return context


@pytest.mark.parametrize(
    "source, expected",
    [
        ("'abc'.charAt(1)", "b"),
        ("'hello mellow'.indexOf('')", 0),
        ("'hello mellow'.indexOf('ello')", 1),
        ("'hello mellow'.indexOf('jello')", -1),
        ("'hello mellow'.indexOf('', 2)", 2),
        ("'hello mellow'.indexOf('ello', 20)", -1),
        ("'hello mellow'.lastIndexOf('')", 12),
        ("'hello mellow'.lastIndexOf('ello')", 7),
        ("'hello mellow'.lastIndexOf('jello')", -1),
        ("'hello mellow'.lastIndexOf('ello', 6)", 1),
        ("'hello mellow'.lastIndexOf('ello', 20)", -1),
        ("['hello', 'mellow'].join()", "hellomellow"),
        ("[].join()", ""),
        ("['hello', 'mellow'].join(' ')", "hello mellow"),
        ("'TacoCat'.lowerAscii()", "tacocat"),
        ("'TacoCÆt Xii'.lowerAscii()", "tacocÆt xii"),
        ("'TacoCat'.upperAscii()", "TACOCAT"),
        ("'TacoCÆt Xii'.upperAscii()", "TACOCÆT XII"),
        ("'  \\ttrim\\n    '.trim()", "trim"),
        ("'hello hello'.replace('he', 'we')", "wello wello"),
        ("'hello hello'.replace('he', 'we', -1)", "wello wello"),
        ("'hello hello'.replace('he', 'we', 1)", "wello hello"),
        ("'hello hello'.replace('he', 'we', 0)", "hello hello"),
        ("'hello hello'.replace('', '_')", "_h_e_l_l_o_ _h_e_l_l_o_"),
        ("'hello hello'.replace('h', '')", "ello ello"),
        ("'hello hello hello'.split(' ')", ["hello", "hello", "hello"]),
        ("'hello hello hello'.split(' ', 0)", []),
        ("'hello hello hello'.split(' ', 1)", ["hello hello hello"]),
        ("'hello hello hello'.split(' ', 2)", ["hello", "hello hello"]),
        ("'hello hello hello'.split(' ', -1)", ["hello", "hello", "hello"]),
        ("'tacocat'.substring(4)", "cat"),
        ("'tacocat'.substring(0, 4)", "taco"),
        ("'ta©o©αT'.substring(2, 6)", "©o©α"),
    ],
)
def test_extended_string_functions(ctx, source, expected):
    assert ctx.resolve(source) == expected


def test_char_at_out_of_range():
    with pytest.raises(ExecutionError) as info:
        cel_strings.char_at("abc", 3)
    assert info.value.function == "String.charAt"
    assert info.value.message == "No index 3 on `abc`"


def test_char_at_negative_index_is_out_of_range():
    with pytest.raises(ExecutionError):
        cel_strings.char_at("abc", -1)


def test_index_of_counts_utf8_bytes():
    assert cel_strings.index_of("héllo", "l") == 3


def test_index_of_rejects_non_integer_base():
    with pytest.raises(ExecutionError) as info:
        cel_strings.index_of("hello", "l", "x")
    assert info.value.function == "String.indexOf"


def test_index_of_rejects_too_many_arguments():
    with pytest.raises(ExecutionError) as info:
        cel_strings.index_of("hello", "l", 1, 2)
    assert "at most" in info.value.message


def test_last_index_of_rejects_non_integer_base():
    with pytest.raises(ExecutionError) as info:
        cel_strings.last_index_of("hello", "l", 1.5)
    assert info.value.function == "String.lastIndexOf"


def test_join_requires_string_items():
    with pytest.raises(ExecutionError) as info:
        cel_strings.join(["a", 1])
    assert info.value.message == "Expects a list of String values!"


def test_join_requires_string_separator():
    with pytest.raises(ExecutionError) as info:
        cel_strings.join(["a", "b"], 3)
    assert info.value.function == "List.join"


def test_replace_argument_count():
    with pytest.raises(ExecutionError) as info:
        cel_strings.replace("hello", "h")
    assert info.value.function == "String.replace"


def test_replace_rejects_non_string_pattern():
    with pytest.raises(ExecutionError) as info:
        cel_strings.replace("hello", 1, "x")
    assert "First argument" in info.value.message


def test_split_rejects_non_string_separator():
    with pytest.raises(ExecutionError) as info:
        cel_strings.split("a b", 1)
    assert info.value.function == "String.split"


def test_split_on_empty_separator():
    assert cel_strings.split("ab", "") == ["", "a", "b", ""]
    assert cel_strings.split("ab", "", 2) == ["", "ab"]


def test_split_join_round_trip():
    text = "one,two,,three"
    assert cel_strings.join(cel_strings.split(text, ","), ",") == text


def test_substring_end_before_start():
    with pytest.raises(ExecutionError) as info:
        cel_strings.substring("tacocat", 4, 2)
    assert info.value.message == "Can't have end be before the start: `2 < 4"


def test_trim_keeps_inner_whitespace():
    assert cel_strings.trim("\u3000 a b \xa0") == "a b"


def test_error_surfaces_through_context(ctx):
    with pytest.raises(ExecutionError) as info:
        ctx.resolve("'abc'.charAt(5)")
    assert info.value.function == "String.charAt"