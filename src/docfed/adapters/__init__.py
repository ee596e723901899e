"""
Source adapters: uniform async access to external document stores.
"""

from docfed.adapters.base import (
    AdapterRegistry,
    FilterCondition,
    FilterSpec,
    SourceAdapter,
    default_registry,
)
from docfed.adapters.http import HttpJsonAdapter
from docfed.adapters.memory import InMemoryAdapter

__all__ = [
    "AdapterRegistry",
    "FilterCondition",
    "FilterSpec",
    "HttpJsonAdapter",
    "InMemoryAdapter",
    "SourceAdapter",
    "default_registry",
]
