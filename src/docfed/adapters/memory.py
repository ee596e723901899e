"""
In-memory source adapter.

Serves static documents held in process memory. Used for demo data and tests,
and as the reference implementation of the adapter contract.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from docfed.adapters.base import FilterSpec, SourceAdapter
from docfed.errors import SourceConnectionError
from docfed.models import Field, infer_schema
from docfed.values import Row

logger = logging.getLogger(__name__)


class InMemoryAdapter(SourceAdapter):
    """
    Adapter over a ``{collection: [documents]}`` dictionary.

    Documents can be given to the constructor or in the connect config under
    ``collections``. Explicit schemas go under ``schemas`` as
    ``{collection: [{"name": ..., "type": ...}]}``; otherwise the schema is
    inferred from the documents.
    """

    type_name = "memory"

    def __init__(self, collections: Optional[Dict[str, List[Row]]] = None):
        super().__init__()
        self._collections: Dict[str, List[Row]] = {
            name: [dict(r) for r in rows] for name, rows in (collections or {}).items()
        }
        self._schemas: Dict[str, List[Field]] = {}
        self.fetch_count = 0

    async def connect(self, config: Dict[str, Any]) -> bool:
        for name, rows in (config.get("collections") or {}).items():
            self._collections[name] = [dict(r) for r in rows]
        for name, fields in (config.get("schemas") or {}).items():
            self._schemas[name] = [Field(name=f["name"], type=f["type"]) for f in fields]
        self._connected = True
        logger.debug(f"In-memory source connected with {len(self._collections)} collections")
        return True

    def set_collection(self, name: str, rows: List[Row]) -> None:
        """Replace a collection's documents."""
        self._collections[name] = [dict(r) for r in rows]

    def remove_collection(self, name: str) -> bool:
        return self._collections.pop(name, None) is not None

    def _require_connected(self) -> None:
        if not self._connected:
            raise SourceConnectionError("In-memory source is not connected")

    async def list_collections(self) -> List[str]:
        self._require_connected()
        return list(self._collections)

    async def get_collection_schema(self, name: str) -> Optional[List[Field]]:
        self._require_connected()
        if name in self._schemas:
            return list(self._schemas[name])
        if name not in self._collections:
            return None
        return infer_schema(self._collections[name])

    async def execute_query(
        self, name: str, filter_spec: Optional[FilterSpec] = None
    ) -> List[Row]:
        self._require_connected()
        if name not in self._collections:
            raise SourceConnectionError(
                f"Collection '{name}' not found", collection=name
            )
        self.fetch_count += 1
        rows = [dict(r) for r in self._collections[name]]
        if filter_spec:
            rows = filter_spec.apply(rows)
        return rows

    async def disconnect(self) -> None:
        self._connected = False
