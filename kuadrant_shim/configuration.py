"""Plugin configuration: services, action sets and their actions."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Union

DEFAULT_TIMEOUT = timedelta(milliseconds=20)

_UNIT_NANOS = {
    "h": 3_600_000_000_000,
    "m": 60_000_000_000,
    "s": 1_000_000_000,
    "ms": 1_000_000,
    "us": 1_000,
    "ns": 1,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|ns|h|m|s)")


class ConfigurationError(ValueError):
    """The plugin configuration is malformed."""


def parse_duration(text: str) -> timedelta:
    """Parse a duration string such as ``24ms``, ``5s`` or ``1h30m``.

    Grammar: Sign? (Number Unit)+ with units h, m, s, ms, us, ns.
    Negative durations are rejected.
    """
    if not isinstance(text, str):
        raise ConfigurationError(f"duration must be a string, got {text!r}")
    body = text
    negative = body.startswith("-")
    if negative:
        body = body[1:]
    if not body:
        raise ConfigurationError(f"invalid duration {text!r}")
    total = Decimal(0)
    position = 0
    for match in _DURATION_PART.finditer(body):
        if match.start() != position:
            break
        total += Decimal(match.group(1)) * _UNIT_NANOS[match.group(2)]
        position = match.end()
    if position != len(body):
        raise ConfigurationError(f"invalid duration {text!r}")
    nanos = int(total)
    if negative and nanos != 0:
        raise ConfigurationError(f"duration must not be negative: {text!r}")
    return timedelta(microseconds=nanos // 1000)


def _require(data: Any, key: str, kind: type | tuple[type, ...]) -> Any:
    if not isinstance(data, dict):
        raise ConfigurationError(f"expected an object, got {data!r}")
    if key not in data:
        raise ConfigurationError(f"missing field `{key}`")
    value = data[key]
    if not isinstance(value, kind):
        raise ConfigurationError(f"field `{key}` has the wrong type: {value!r}")
    return value


def _optional(data: dict, key: str, kind: type, default: Any) -> Any:
    if key not in data:
        return default
    return _require(data, key, kind)


def _string_list(values: list, key: str) -> list[str]:
    if not all(isinstance(value, str) for value in values):
        raise ConfigurationError(f"field `{key}` must hold strings only")
    return list(values)


class FailureMode(Enum):
    """Whether to deny or allow a request when a service fails irrecoverably."""

    DENY = "deny"
    ALLOW = "allow"


class ServiceType(Enum):
    AUTH = "auth"
    RATE_LIMIT = "ratelimit"


def _enum(enum_type: type[Enum], value: Any, key: str) -> Any:
    try:
        return enum_type(value)
    except ValueError as err:
        raise ConfigurationError(f"unknown {key} {value!r}") from err


@dataclass(frozen=True)
class StaticItem:
    key: str
    value: str


@dataclass(frozen=True)
class ExpressionItem:
    key: str
    value: str


DataKind = Union[StaticItem, ExpressionItem]
_DATA_KINDS: dict[str, type] = {"static": StaticItem, "expression": ExpressionItem}


@dataclass(frozen=True)
class DataItem:
    """A descriptor entry: either a static value or a CEL expression."""

    item: DataKind

    @classmethod
    def from_dict(cls, data: Any) -> DataItem:
        if not isinstance(data, dict):
            raise ConfigurationError(f"data item must be an object, got {data!r}")
        unknown = set(data) - set(_DATA_KINDS)
        if unknown:
            raise ConfigurationError(f"unknown data item field(s): {sorted(unknown)}")
        if len(data) != 1:
            raise ConfigurationError(
                "data item must hold exactly one of `static` or `expression`"
            )
        ((kind, body),) = data.items()
        return cls(
            _DATA_KINDS[kind](
                key=_require(body, "key", str), value=_require(body, "value", str)
            )
        )


@dataclass
class Action:
    service: str
    scope: str
    predicates: list[str] = field(default_factory=list)
    data: list[DataItem] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> Action:
        service = _require(data, "service", str)
        scope = _require(data, "scope", str)
        predicates = _string_list(_optional(data, "predicates", list, []), "predicates")
        items = [DataItem.from_dict(item) for item in _optional(data, "data", list, [])]
        return cls(service=service, scope=scope, predicates=predicates, data=items)


@dataclass
class RouteRuleConditions:
    hostnames: list[str] = field(default_factory=list)
    predicates: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> RouteRuleConditions:
        hostnames = _string_list(_require(data, "hostnames", list), "hostnames")
        predicates = _string_list(_optional(data, "predicates", list, []), "predicates")
        return cls(hostnames=hostnames, predicates=predicates)


@dataclass
class ActionSet:
    name: str = ""
    route_rule_conditions: RouteRuleConditions = field(default_factory=RouteRuleConditions)
    actions: list[Action] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> ActionSet:
        return cls(
            name=_require(data, "name", str),
            route_rule_conditions=RouteRuleConditions.from_dict(
                _require(data, "routeRuleConditions", dict)
            ),
            actions=[Action.from_dict(a) for a in _require(data, "actions", list)],
        )


@dataclass
class Service:
    service_type: ServiceType = ServiceType.RATE_LIMIT
    endpoint: str = ""
    failure_mode: FailureMode = FailureMode.DENY
    timeout: timedelta = DEFAULT_TIMEOUT

    @classmethod
    def from_dict(cls, data: Any) -> Service:
        service_type = _enum(ServiceType, _require(data, "type", str), "service type")
        endpoint = _require(data, "endpoint", str)
        failure_mode = _enum(
            FailureMode, _require(data, "failureMode", str), "failure mode"
        )
        timeout = (
            parse_duration(_require(data, "timeout", str))
            if "timeout" in data
            else DEFAULT_TIMEOUT
        )
        return cls(
            service_type=service_type,
            endpoint=endpoint,
            failure_mode=failure_mode,
            timeout=timeout,
        )


@dataclass
class PluginConfiguration:
    services: dict[str, Service]
    action_sets: list[ActionSet]

    @classmethod
    def from_dict(cls, data: Any) -> PluginConfiguration:
        services = {
            str(name): Service.from_dict(body)
            for name, body in _require(data, "services", dict).items()
        }
        action_sets = [
            ActionSet.from_dict(item) for item in _require(data, "actionSets", list)
        ]
        return cls(services=services, action_sets=action_sets)

    @classmethod
    def from_json(cls, text: str | bytes) -> PluginConfiguration:
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as err:
            raise ConfigurationError(f"invalid JSON: {err}") from err
        return cls.from_dict(data)