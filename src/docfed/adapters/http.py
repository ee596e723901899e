"""
JSON-over-HTTP source adapter.

Talks to a document service exposing:

    GET {base_url}/collections                  -> ["users", ...] or {"collections": [...]}
    GET {base_url}/collections/{name}           -> [{...}, ...] or {"documents": [...]}
    GET {base_url}/collections/{name}/schema    -> [{"name": ..., "type": ...}, ...]

Push-down filters are sent as a JSON-encoded ``filter`` query parameter.
Services may ignore it.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from docfed.adapters.base import FilterSpec, SourceAdapter
from docfed.errors import SourceConnectionError
from docfed.models import Field
from docfed.values import Row

logger = logging.getLogger(__name__)


class HttpJsonAdapter(SourceAdapter):
    """
    Adapter for a generic JSON document service.

    Connect config:
        base_url: Service root URL (required)
        timeout_seconds: Per-request timeout (default 30)
        auth_token: Optional bearer token
        headers: Extra request headers
        collections_path: Path of the collection listing (default ``/collections``)
    """

    type_name = "http"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._collections_path = "/collections"
        self.base_url: Optional[str] = None
        self.last_latency_ms: Optional[float] = None

    async def connect(self, config: Dict[str, Any]) -> bool:
        base_url = config.get("base_url") or config.get("url")
        if not base_url:
            raise SourceConnectionError("HTTP source config requires 'base_url'")

        headers = {"Accept": "application/json"}
        headers.update(config.get("headers") or {})
        if config.get("auth_token"):
            headers["Authorization"] = f"Bearer {config['auth_token']}"

        self._collections_path = "/" + str(config.get("collections_path", "collections")).strip("/")
        self.base_url = base_url.rstrip("/")

        await self.disconnect()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=float(config.get("timeout_seconds", 30.0)),
            transport=self._transport,
        )

        # Probe the listing endpoint so a bad URL fails at connect time
        try:
            await self._get_json(self._collections_path)
        except SourceConnectionError:
            await self.disconnect()
            raise

        self._connected = True
        logger.info(f"Connected to HTTP source {self.base_url}")
        return True

    async def list_collections(self) -> List[str]:
        data = await self._get_json(self._collections_path)
        if isinstance(data, dict):
            data = data.get("collections", [])
        return [str(name) for name in data]

    async def get_collection_schema(self, name: str) -> Optional[List[Field]]:
        data = await self._get_json(
            f"{self._collections_path}/{name}/schema", collection=name, missing_ok=True
        )
        if data is None:
            return None
        if isinstance(data, dict):
            data = data.get("fields", [])
        return [Field(name=f["name"], type=f.get("type", "mixed")) for f in data]

    async def execute_query(
        self, name: str, filter_spec: Optional[FilterSpec] = None
    ) -> List[Row]:
        params = {}
        if filter_spec:
            params["filter"] = json.dumps(
                [c.to_dict() for c in filter_spec.conditions], default=_encode_value
            )

        data = await self._get_json(
            f"{self._collections_path}/{name}", collection=name, params=params
        )
        if isinstance(data, dict):
            data = data.get("documents", [])
        if not isinstance(data, list):
            raise SourceConnectionError(
                f"Unexpected response for collection '{name}'",
                source_id=self.base_url,
                collection=name,
            )
        return [dict(doc) for doc in data if isinstance(doc, dict)]

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._connected = False

    async def _get_json(
        self,
        path: str,
        collection: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
        missing_ok: bool = False,
    ) -> Any:
        if self._client is None:
            raise SourceConnectionError(
                "HTTP source is not connected", source_id=self.base_url, collection=collection
            )

        start_time = time.perf_counter()
        try:
            response = await self._client.get(path, params=params)
            if missing_ok and response.status_code == 404:
                return None
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise SourceConnectionError(
                f"Request to {self.base_url}{path} failed: {e}",
                source_id=self.base_url,
                collection=collection,
            ) from e
        except ValueError as e:
            raise SourceConnectionError(
                f"Invalid JSON from {self.base_url}{path}: {e}",
                source_id=self.base_url,
                collection=collection,
            ) from e
        finally:
            self.last_latency_ms = (time.perf_counter() - start_time) * 1000

        return data


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
