# kuadrant-shim

Building blocks for a proxy filter that decides which actions apply to a
request. The actions are calls to authorization and rate-limit services.
The package reads the filter's configuration and picks action sets by
hostname. It also evaluates CEL predicates over request attributes. Those
attributes come from a swappable in-memory property host.

## Modules

- `kuadrant_shim.configuration` reads the plugin configuration.
  `PluginConfiguration.from_json` (or `from_dict`) reads `services` and
  `actionSets`. Each `Service` has a `ServiceType` (`auth` or `ratelimit`),
  an `endpoint` and a `FailureMode` (`deny` or `allow`). Its `timeout` is a
  duration string such as `"24ms"`, `"5s"` or `"1h30m"`, parsed into a
  `timedelta` by `parse_duration`. The timeout is 20 ms when left out.

  Each `ActionSet` has a `name`, `RouteRuleConditions` (`hostnames` and
  optional `predicates`) and a list of `Action`s. An `Action` has a
  `service`, a `scope`, optional `predicates` and optional `data`. Each
  `data` item (`DataItem`) holds exactly one of `static` (`StaticItem`) or
  `expression` (`ExpressionItem`).

  A malformed document raises `ConfigurationError`, a subclass of
  `ValueError`.
- `kuadrant_shim.action_set_index` holds `ActionSetIndex`. It maps
  hostnames to the action sets inserted under them.
  `get_longest_match_action_sets` returns the list stored under the most
  specific match, or `None`. An exact name such as `example.com` matches
  only itself. `*.example.com` matches subdomains but not `example.com`.
  `*` matches everything.
- `kuadrant_shim.data.property` covers paths and the property host:
  - `Path` is a sequence of tokens. `Path.from_str("a.b\\.c")` splits on
    unescaped dots.
  - `PropertyHost` holds raw property bytes and request headers.
  - `use_host(host)` is a context manager that makes `host` current for a
    block. `get_host()` returns the current host.
  - `get_property` and `set_property` read and write properties on the
    current host. `get_property` handles two kinds of path specially.
    `source.remote_address` returns the `source.address` value with its
    port removed. Paths under `auth.` are read from the flattened
    filter-state property that `wasm_prop` builds.
- `kuadrant_shim.data.attribute` decodes raw property bytes. The decoders
  are `parse_string`, `parse_int`, `parse_uint`, `parse_float`,
  `parse_bool`, `parse_bytes` and `parse_timestamp`; numbers are 8-byte
  little-endian.

  `get_attribute(path, parser)` reads a property and decodes it. It raises
  `GetPropertyError` or `ParsePropertyError`, both subclasses of
  `PropertyError`.

  `process_metadata` flattens a nested mapping into pairs of escaped key
  and JSON value. `store_metadata` writes each pair to the host under
  `kuadrant.auth.<key>`.
- `kuadrant_shim.data.cel_lang` is a small CEL parser and evaluator. It
  provides `parse` and `Context` with `add_function`, `add_variable` and
  `resolve`. Its built-ins include `size`, `contains`, `startsWith`,
  `endsWith`, `matches`, conversions, `has` and the `exists`, `all`,
  `exists_one`, `map` and `filter` macros. Failures raise `CelParseError`
  or `ExecutionError`.
- `kuadrant_shim.data.cel_strings` holds the string and list extensions
  `charAt`, `indexOf`, `lastIndexOf`, `join`, `lowerAscii`, `upperAscii`,
  `trim`, `replace`, `split` and `substring`.
- `kuadrant_shim.data.cel` evaluates expressions against request data.
  - `Expression` collects the request attributes an expression references.
    It reads them from the current host and evaluates the expression with
    the variables `request`, `metadata`, `source`, `destination` and
    `auth`.
  - `getHostProperty([...])` reads a raw property.
  - `Predicate(...).test()` returns a bool or raises `EvaluationError`.
  - `Predicate.route_rule(...)` also allows `queryMap(query, repeats)`.
  - `apply_predicates` is true when every predicate holds.

## Example

```python
from kuadrant_shim.configuration import PluginConfiguration
from kuadrant_shim.action_set_index import ActionSetIndex
from kuadrant_shim.data.property import PropertyHost, Path, use_host
from kuadrant_shim.data.cel import Predicate

config = PluginConfiguration.from_json("""{
    "services": {},
    "actionSets": [{
        "name": "toystore",
        "routeRuleConditions": {"hostnames": ["*.toystore.com"]},
        "actions": []
    }]
}""")

index = ActionSetIndex()
for action_set in config.action_sets:
    for hostname in action_set.route_rule_conditions.hostnames:
        index.insert(hostname, action_set)

print([s.name for s in index.get_longest_match_action_sets("cars.toystore.com")])

host = PropertyHost({Path.from_str("request.method"): b"POST"}, {})
with use_host(host):
    print(Predicate("request.method == 'POST'").test())
```

## What it does not do

This is a library, with no command and no proxy runtime. It does not
load into a proxy. It does not send requests to authorization or
rate-limit services or handle their responses. It does not carry out the
configured actions or apply failure modes. Property values come only from
a `PropertyHost` you fill in yourself.

## Tests

```
pip install -e ".[test]"
pytest
```