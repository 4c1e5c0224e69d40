"""Index of action sets by hostname, supporting wildcard subdomains."""

from __future__ import annotations

from typing import Any


def reverse_subdomain(subdomain: str) -> str:
    """Turn a hostname into a reversed key so that wildcards become prefixes.

    A leading ``*`` is dropped; otherwise ``$`` (not a valid domain character)
    anchors the name so that it matches exactly.
    """
    key = subdomain + "."
    key = key[1:] if key.startswith("*") else "$" + key
    return key[::-1]


class _Node:
    __slots__ = ("children", "values")

    def __init__(self) -> None:
        self.children: dict[str, _Node] = {}
        self.values: list[Any] | None = None


class ActionSetIndex:
    """Maps hostnames to action sets, resolving lookups by the longest match."""

    def __init__(self) -> None:
        self._root = _Node()

    def insert(self, subdomain: str, action_set: Any) -> None:
        node = self._root
        for ch in reverse_subdomain(subdomain):
            node = node.children.setdefault(ch, _Node())
        if node.values is None:
            node.values = []
        node.values.append(action_set)

    def get_longest_match_action_sets(self, subdomain: str) -> list[Any] | None:
        """Return the action sets of the most specific matching entry, or None."""
        node = self._root
        best = node.values
        for ch in reverse_subdomain(subdomain):
            child = node.children.get(ch)
            if child is None:
                break
            node = child
            if node.values is not None:
                best = node.values
        return best