"""Plugin configuration, hostname routing of action sets and CEL predicates over request attributes."""

__version__ = "0.10.0.dev0"