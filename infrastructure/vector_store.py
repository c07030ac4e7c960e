# ============================================================================
# VECTOR STORE INFRASTRUCTURE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Infrastructure - Vector index over HTTP
# PURPOSE: Vector store adapter (upsert, query, delete_ids)
# CREATED: 12 OCT 2026
# ============================================================================
"""
Vector Store Infrastructure

VectorStore speaks the Pinecone-style data plane REST API:

    POST /vectors/upsert   {"namespace": ..., "vectors": [{"id", "values", "metadata"}]}
    POST /query            {"namespace": ..., "vector": [...], "topK": k, "filter": {...}}
    POST /vectors/delete   {"namespace": ..., "ids": [...]}

Error mapping: 404 -> NotFound, 429/5xx and transport errors -> TransientError.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from core.errors import ConfigError, FatalError, NotFound, TransientError

logger = logging.getLogger(__name__)

# Upsert request size limit of the index
UPSERT_BATCH_SIZE = 100


@dataclass
class VectorStoreConfig:
    index_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 15.0

    @classmethod
    def from_env(cls) -> "VectorStoreConfig":
        """
        Load from environment variables.

            JOBCORE_VECTOR_INDEX_URL (required)
            JOBCORE_VECTOR_API_KEY (required)
            JOBCORE_VECTOR_TIMEOUT_SECONDS (default 15)
        """
        url = os.environ.get("JOBCORE_VECTOR_INDEX_URL")
        key = os.environ.get("JOBCORE_VECTOR_API_KEY")
        if not url or not key:
            raise ConfigError("JOBCORE_VECTOR_INDEX_URL and JOBCORE_VECTOR_API_KEY are required")
        return cls(
            index_url=url.rstrip("/"),
            api_key=key,
            timeout_seconds=float(os.environ.get("JOBCORE_VECTOR_TIMEOUT_SECONDS", 15.0)),
        )


class VectorStore:
    """
    HTTP vector index client.

    Usage:
        store = VectorStore(VectorStoreConfig.from_env())
        await store.upsert("user-1", [{"id": "v1", "values": [...]}])
        await store.delete_ids("user-1", ["v1"])
        await store.close()
    """

    def __init__(self, config: VectorStoreConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.index_url,
            timeout=config.timeout_seconds,
            headers={"Api-Key": config.api_key, "Content-Type": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: Dict[str, Any], operation: str) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=body)
        except httpx.TransportError as e:
            raise TransientError(f"vector store {operation} failed: {e}", operation=operation) from e

        if response.status_code == 404:
            raise NotFound(f"vector store {operation}: not found", operation=operation)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(
                f"vector store {operation} returned {response.status_code}",
                operation=operation,
            )
        if response.status_code >= 400:
            raise FatalError(
                f"vector store {operation} rejected request ({response.status_code}): {response.text[:200]}",
                operation=operation,
            )
        if not response.content:
            return {}
        return response.json()

    async def upsert(self, namespace: str, vectors: Sequence[Dict[str, Any]]) -> int:
        """Upsert in batches; returns the upserted count."""
        total = 0
        for start in range(0, len(vectors), UPSERT_BATCH_SIZE):
            batch = list(vectors[start:start + UPSERT_BATCH_SIZE])
            data = await self._post(
                "/vectors/upsert",
                {"namespace": namespace, "vectors": batch},
                "vector.upsert",
            )
            total += int(data.get("upsertedCount", len(batch)))
        logger.info(f"Upserted {total} vector(s) into namespace {namespace}")
        return total

    async def query(
        self,
        namespace: str,
        vector: Sequence[float],
        k: int = 10,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        body: Dict[str, Any] = {
            "namespace": namespace,
            "vector": list(vector),
            "topK": k,
            "includeMetadata": True,
        }
        if filter:
            body["filter"] = filter
        data = await self._post("/query", body, "vector.query")
        return list(data.get("matches", []))

    async def delete_ids(self, namespace: str, ids: Sequence[str]) -> None:
        await self._post("/vectors/delete", {"namespace": namespace, "ids": list(ids)}, "vector.delete_ids")
        logger.info(f"Deleted {len(ids)} vector(s) from namespace {namespace}")


__all__ = ["VectorStoreConfig", "VectorStore", "UPSERT_BATCH_SIZE"]
