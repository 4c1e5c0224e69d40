"""String and list extension functions made available to CEL expressions.

Every function takes the receiver of the method call as ``this`` followed by
the call's arguments. Index arguments are taken as unsigned machine words, so a
negative index wraps around to a very large one.
"""

from __future__ import annotations

from typing import Any

from kuadrant_shim.data.cel_lang import ExecutionError

_USIZE_MASK = 2**64 - 1

_ASCII_LOWER = str.maketrans(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ", "abcdefghijklmnopqrstuvwxyz"
)
_ASCII_UPPER = str.maketrans(
    "abcdefghijklmnopqrstuvwxyz", "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
)

# Characters with the Unicode White_Space property.
_WHITESPACE = (
    "\t\n\x0b\x0c\r \x85\xa0\u1680"
    "\u2000\u2001\u2002\u2003\u2004\u2005\u2006\u2007\u2008\u2009\u200a"
    "\u2028\u2029\u202f\u205f\u3000"
)


def _integer(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _as_usize(value: int) -> int:
    return value & _USIZE_MASK


def _receiver(function: str, this: Any) -> str:
    if not isinstance(this, str):
        raise ExecutionError(f"Expects a String receiver, got `{this!r}`", function)
    return this


def _needle(function: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ExecutionError(
            f"Expects 1st argument to be a String, got `{value!r}`", function
        )
    return value


def _check_boundary(function: str, data: bytes, offset: int) -> None:
    if offset < len(data) and 0x80 <= data[offset] <= 0xBF:
        raise ExecutionError(f"Index {offset} is not on a character boundary", function)


def char_at(this: Any, *args: Any) -> str:
    """Return the character at the given position."""
    function = "String.charAt"
    text = _receiver(function, this)
    if len(args) != 1 or _integer(args[0]) is None:
        raise ExecutionError(f"Expects a single Integer argument, got `{list(args)!r}`", function)
    arg = args[0]
    index = _as_usize(arg)
    if index >= len(text):
        raise ExecutionError(f"No index {arg} on `{text}`", function)
    return text[index]


def _base_argument(function: str, args: tuple) -> int:
    base = _integer(args[1])
    if base is None:
        raise ExecutionError(
            f"Expects 2nd argument to be an Integer, got `{args[1]!r}`", function
        )
    return _as_usize(base)


def index_of(this: Any, *args: Any) -> int:
    """Byte offset of the first occurrence of a substring, or -1."""
    function = "String.indexOf"
    text = _receiver(function, this)
    if len(args) not in (1, 2):
        raise ExecutionError(f"Expects 2 arguments at most, got `{list(args)!r}`!", function)
    haystack = text.encode("utf-8")
    pattern = _needle(function, args[0]).encode("utf-8")
    if len(args) == 1:
        return haystack.find(pattern)
    base = _base_argument(function, args)
    if base >= len(haystack):
        return -1
    _check_boundary(function, haystack, base)
    return haystack.find(pattern, base)


def last_index_of(this: Any, *args: Any) -> int:
    """Byte offset of the last occurrence of a substring, or -1.

    With a start position, the offset is relative to that position.
    """
    function = "String.lastIndexOf"
    text = _receiver(function, this)
    if len(args) not in (1, 2):
        raise ExecutionError(f"Expects 2 arguments at most, got `{list(args)!r}`!", function)
    haystack = text.encode("utf-8")
    pattern = _needle(function, args[0]).encode("utf-8")
    if len(args) == 1:
        return haystack.rfind(pattern)
    base = _base_argument(function, args)
    if base >= len(haystack):
        return -1
    _check_boundary(function, haystack, base)
    return haystack[base:].rfind(pattern)


def join(this: Any, *args: Any) -> str:
    """Join a list of strings, with an optional separator."""
    function = "List.join"
    if not isinstance(this, list):
        raise ExecutionError(f"Expects a List receiver, got `{this!r}`", function)
    separator = ""
    if args:
        separator = args[0]
        if not isinstance(separator, str):
            raise ExecutionError(
                f"Expects seperator to be a String, got `{separator!r}`!", function
            )
    if not all(isinstance(item, str) for item in this):
        raise ExecutionError("Expects a list of String values!", function)
    return separator.join(this)


def lower_ascii(this: Any) -> str:
    return _receiver("String.lowerAscii", this).translate(_ASCII_LOWER)


def upper_ascii(this: Any) -> str:
    return _receiver("String.upperAscii", this).translate(_ASCII_UPPER)


def trim(this: Any) -> str:
    return _receiver("String.trim", this).strip(_WHITESPACE)


def replace(this: Any, *args: Any) -> str:
    """Replace occurrences of a substring, optionally only the first ``n``."""
    function = "String.replace"
    text = _receiver(function, this)
    if len(args) not in (2, 3):
        raise ExecutionError(f"Expects 2 or 3 arguments, got {list(args)!r}", function)
    old, new = args[0], args[1]
    if not isinstance(old, str):
        raise ExecutionError(
            f"First argument of type String expected, got `{old!r}`", function
        )
    if not isinstance(new, str):
        raise ExecutionError(
            f"Second argument of type String expected, got `{new!r}`", function
        )
    if len(args) == 2:
        return text.replace(old, new)
    count = _integer(args[2])
    if count is None:
        raise ExecutionError(
            f"Third argument of type Integer expected, got `{args[2]!r}`", function
        )
    return text.replace(old, new, min(_as_usize(count), len(text) + 1))


def _split_all(text: str, separator: str) -> list[str]:
    if separator:
        return text.split(separator)
    return ["", *text, ""]


def split(this: Any, *args: Any) -> list[str]:
    """Split on a separator, into at most ``n`` parts when ``n`` is given."""
    function = "String.split"
    text = _receiver(function, this)
    if len(args) not in (1, 2):
        raise ExecutionError(f"Expects at most 2 arguments, got {list(args)!r}", function)
    separator = args[0]
    if not isinstance(separator, str):
        raise ExecutionError(
            f"Expects a first argument of type String, got `{separator!r}`", function
        )
    if len(args) == 1:
        return _split_all(text, separator)
    limit = _integer(args[1])
    if limit is None:
        raise ExecutionError(
            f"Expects a second argument of type Integer, got `{args[1]!r}`", function
        )
    limit = _as_usize(limit)
    if limit == 0:
        return []
    if separator:
        return text.split(separator, min(limit, len(text) + 1) - 1)
    parts = _split_all(text, separator)
    if limit >= len(parts):
        return parts
    return [*parts[: limit - 1], "".join(parts[limit - 1:])]


def substring(this: Any, *args: Any) -> str:
    """Characters from ``start`` up to, not including, ``end``."""
    function = "String.substring"
    text = _receiver(function, this)
    if len(args) not in (1, 2):
        raise ExecutionError(f"Expects at most 2 arguments, got {list(args)!r}", function)
    start = _integer(args[0])
    if start is None:
        raise ExecutionError(
            f"Expects a first argument of type Integer, got `{args[0]!r}`", function
        )
    start = _as_usize(start)
    if len(args) == 2:
        end = _integer(args[1])
        if end is None:
            raise ExecutionError(
                f"Expects a second argument of type Integer, got `{args[0]!r}`", function
            )
        end = _as_usize(end)
    else:
        end = len(text)
    if end < start:
        raise ExecutionError(
            f"Can't have end be before the start: `{end} < {start}", function
        )
    return text[start:end]