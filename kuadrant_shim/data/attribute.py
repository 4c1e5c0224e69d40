"""Typed attribute values read from host properties, and auth metadata storage."""

from __future__ import annotations

import json
import logging
import math
import struct
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from kuadrant_shim.data import property as prop
from kuadrant_shim.data.property import KUADRANT_NAMESPACE, HostError, Path

log = logging.getLogger(__name__)

__all__ = ["KUADRANT_NAMESPACE"]

T = TypeVar("T")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class PropError(Exception):
    """A property could not be read or decoded."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"PropError {{ message: {json.dumps(self.message, ensure_ascii=False)} }}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PropError):
            return NotImplemented
        return self.message == other.message

    __hash__ = Exception.__hash__


class PropertyError(Exception):
    """Base class for failures getting or parsing a property."""

    kind = "PropertyError"

    def __init__(self, error: PropError) -> None:
        super().__init__(error)
        self.error = error

    def __str__(self) -> str:
        return f"{self.kind} {{ {self.error} }}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PropertyError):
            return NotImplemented
        return type(self) is type(other) and self.error == other.error

    __hash__ = Exception.__hash__


class GetPropertyError(PropertyError):
    kind = "PropertyError::Get"


class ParsePropertyError(PropertyError):
    kind = "PropertyError::Parse"


def _eight_bytes(raw: bytes, what: str) -> bytes:
    if len(raw) != 8:
        raise PropError(f"parse: {what} expected to be 8 bytes, but got {len(raw)}")
    return bytes(raw)


def parse_string(raw: bytes) -> str:
    try:
        return bytes(raw).decode("utf-8")
    except UnicodeDecodeError as err:
        raise PropError(
            f"parse: failed to parse selector String value, error: {err}"
        ) from err


def parse_int(raw: bytes) -> int:
    return int.from_bytes(_eight_bytes(raw, "Int value"), "little", signed=True)


def parse_uint(raw: bytes) -> int:
    return int.from_bytes(_eight_bytes(raw, "UInt value"), "little", signed=False)


def parse_float(raw: bytes) -> float:
    return struct.unpack("<d", _eight_bytes(raw, "Float value"))[0]


def parse_bytes(raw: bytes) -> bytes:
    return bytes(raw)


def parse_bool(raw: bytes) -> bool:
    if len(raw) == 1:
        return raw[0] & 1 == 1
    raise PropError(f"parse: Bool value expected to be 1 byte, but got {len(raw)}")


def parse_timestamp(raw: bytes) -> datetime:
    """Decode nanoseconds since the epoch into an aware UTC datetime."""
    nanos = int.from_bytes(_eight_bytes(raw, "Timestamp"), "little", signed=True)
    return _EPOCH + timedelta(microseconds=nanos // 1000)


def get_attribute(path: Path, parser: Callable[[bytes], T]) -> T | None:
    """Read the property at ``path`` and decode it with ``parser``; None if absent."""
    try:
        raw = prop.get_property(path)
    except HostError as err:
        raise GetPropertyError(PropError(f"get_attribute: error: {err!r}")) from err
    if raw is None:
        return None
    try:
        return parser(raw)
    except PropError as err:
        raise ParsePropertyError(err) from err


def set_attribute(attr: str, value: bytes) -> None:
    try:
        prop.set_property(Path.from_str(attr), bytes(value))
    except HostError as err:
        raise GetPropertyError(PropError(f"set_attribute: error: {err!r}")) from err


def store_metadata(metadata: Mapping[str, Any]) -> None:
    """Flatten auth metadata and store every leaf as a JSON-encoded property."""
    for key, value in process_metadata(metadata, ""):
        attr = f"{KUADRANT_NAMESPACE}\\.auth\\.{key}"
        log.debug("set_attribute: %s = %s", attr, value)
        try:
            set_attribute(attr, value.encode("utf-8"))
        except PropertyError as err:
            log.error("set_attribute: failed to set property %s: %s", attr, err)
            raise


def _json_leaf(value: Any) -> str | None:
    if value is None or isinstance(value, (bool, str)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (int, float)):
        number = float(value)
        return json.dumps(number) if math.isfinite(number) else "null"
    return None


def process_metadata(metadata: Mapping[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Return (escaped key path, JSON value) pairs for every scalar leaf."""
    result: list[tuple[str, str]] = []
    for key, value in metadata.items():
        current_prefix = key if not prefix else f"{prefix}\\.{key}"
        if isinstance(value, Mapping):
            result.extend(process_metadata(value, current_prefix))
            continue
        encoded = _json_leaf(value)
        if encoded is None:
            log.warning(
                "Don't know how to store Struct field `%s` of kind %s",
                key,
                type(value).__name__,
            )
        else:
            result.append((current_prefix, encoded))
    return result