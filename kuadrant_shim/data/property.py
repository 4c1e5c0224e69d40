"""Property paths and access to the properties exposed by the proxy host."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar

log = logging.getLogger(__name__)

KUADRANT_NAMESPACE = "kuadrant"


class Path:
    """A property path made of tokens; dots inside a token are escaped in text form."""

    __slots__ = ("tokens",)

    def __init__(self, tokens: Iterable[str]) -> None:
        if isinstance(tokens, str):
            raise TypeError("Path takes a sequence of tokens; use Path.from_str for text")
        self.tokens: tuple[str, ...] = tuple(str(token) for token in tokens)

    @classmethod
    def from_str(cls, value: str) -> Path:
        """Split on unescaped dots; a backslash makes the next character literal."""
        tokens: list[str] = []
        token: list[str] = []
        chars = iter(value)
        for ch in chars:
            if ch == ".":
                tokens.append("".join(token))
                token = []
            elif ch == "\\":
                escaped = next(chars, None)
                if escaped is not None:
                    token.append(escaped)
            else:
                token.append(ch)
        tokens.append("".join(token))
        return cls(tokens)

    def __str__(self) -> str:
        return ".".join(token.replace(".", "\\.") for token in self.tokens)

    def __repr__(self) -> str:
        return f"path: {json.dumps(list(self.tokens), ensure_ascii=False)}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Path):
            return NotImplemented
        return self.tokens == other.tokens

    def __hash__(self) -> int:
        return hash(self.tokens)

    def __iter__(self) -> Iterator[str]:
        return iter(self.tokens)

    def __len__(self) -> int:
        return len(self.tokens)


class HostError(Exception):
    """A failure reported by the host, carrying its status name."""

    def __init__(self, status: str, message: str = "") -> None:
        super().__init__(message or status)
        self.status = status
        self.message = message

    def __repr__(self) -> str:
        return f"HostError({self.status!r}, {self.message!r})"


def _as_path(key: Path | str) -> Path:
    return key if isinstance(key, Path) else Path.from_str(key)


class PropertyHost:
    """An in-memory property host holding raw property values and request headers."""

    def __init__(
        self,
        properties: Mapping[Path | str, bytes] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self.properties: dict[Path, bytes] = {
            _as_path(key): bytes(value) for key, value in (properties or {}).items()
        }
        self.headers: dict[str, str] = dict(headers or {})

    def get_property(self, path: Path) -> bytes | None:
        return self.properties.get(path)

    def set_property(self, path: Path, value: bytes | None) -> None:
        if value is None:
            self.properties.pop(path, None)
        else:
            self.properties[path] = bytes(value)

    def get_map(self, path: Path) -> dict[str, str]:
        if path.tokens == ("request", "headers"):
            return dict(self.headers)
        raise HostError("NotFound", f"Unknown map requested {path!r}")


_current_host: ContextVar[PropertyHost] = ContextVar("kuadrant_property_host")
_default_host = PropertyHost()


def get_host() -> PropertyHost:
    """Return the host in use for the current context."""
    return _current_host.get(_default_host)


@contextmanager
def use_host(host: PropertyHost) -> Iterator[PropertyHost]:
    """Make ``host`` the property host for the duration of the block."""
    token = _current_host.set(host)
    try:
        yield host
    finally:
        _current_host.reset(token)


def _host_get_property(path: Path) -> bytes | None:
    log.debug("get_property: %r", path)
    return get_host().get_property(path)


def wasm_prop(tokens: Iterable[str]) -> Path:
    """Map attribute tokens onto the flattened filter-state property."""
    flat = f"filter_state.wasm\\.{KUADRANT_NAMESPACE}\\." + "\\.".join(tokens)
    return Path.from_str(flat)


def remote_address() -> bytes:
    """Return the client address from ``source.address``, without its port."""
    raw = _host_get_property(Path(["source", "address"]))
    if raw is None:
        log.warning("source.address property not found")
        raise HostError("BadArgument", "source.address property not found")
    try:
        source_address = bytes(raw).decode("utf-8")
    except UnicodeDecodeError as err:
        log.warning("source.address property value not string: %s", err)
        raise HostError("BadArgument", f"source.address property value not string: {err}") from err
    return source_address.split(":")[0].encode("utf-8")


def get_property(path: Path) -> bytes | None:
    """Read a property, resolving the ones that need special handling."""
    tokens = path.tokens
    if tokens == ("source", "remote_address"):
        return remote_address()
    if tokens and tokens[0] == "auth":
        return _host_get_property(wasm_prop(tokens))
    return _host_get_property(path)


def set_property(path: Path, value: bytes | None) -> None:
    log.debug("set_property: %r", path)
    get_host().set_property(path, value)


def host_get_map(path: Path) -> dict[str, str]:
    return get_host().get_map(path)