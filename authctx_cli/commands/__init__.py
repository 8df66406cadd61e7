"""CLI command modules."""

from . import collect, inventory

__all__ = [
    "collect",
    "inventory",
]
