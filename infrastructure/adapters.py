# ============================================================================
# EXTERNAL ADAPTER INTERFACES
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Infrastructure - Collaborator contracts
# PURPOSE: Narrow interfaces for object store, vector store and LLM
# CREATED: 12 OCT 2026
# ============================================================================
"""
External Adapter Interfaces

The core only talks to external systems through these protocols. Handlers
get an Adapters bundle on their context; the saga compensation executor
uses the object and vector stores.

Adapter contract for errors:
- NotFound when the target does not exist (compensation treats as done)
- TransientError for timeouts and upstream 5xx
- anything else propagates as-is
"""

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

from core.contracts import ObjectCategory


class ObjectStoreAdapter(Protocol):
    async def upload(
        self,
        category: ObjectCategory,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> None:
        ...

    async def delete(self, category: ObjectCategory, key: str) -> None:
        ...

    async def delete_prefix(self, category: ObjectCategory, prefix: str) -> int:
        ...

    def download(self, category: ObjectCategory, key: str) -> AsyncIterator[bytes]:
        ...

    def public_url(self, category: ObjectCategory, key: str) -> str:
        ...


class VectorStoreAdapter(Protocol):
    async def upsert(self, namespace: str, vectors: Sequence[Dict[str, Any]]) -> int:
        ...

    async def query(
        self,
        namespace: str,
        vector: Sequence[float],
        k: int = 10,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        ...

    async def delete_ids(self, namespace: str, ids: Sequence[str]) -> None:
        ...


class LLMAdapter(Protocol):
    """Opaque to the core; only stage handlers call it."""

    async def generate_text(self, prompt: str, **options: Any) -> str:
        ...

    async def generate_json(self, prompt: str, schema: Dict[str, Any], **options: Any) -> Dict[str, Any]:
        ...

    async def generate_text_with_images(self, prompt: str, images: Sequence[bytes], **options: Any) -> str:
        ...

    async def embed(self, batch: Sequence[str]) -> List[List[float]]:
        ...


@dataclass
class Adapters:
    """Bundle handed to handlers and the compensation executor."""
    objects: Optional[ObjectStoreAdapter] = None
    vectors: Optional[VectorStoreAdapter] = None
    llm: Optional[LLMAdapter] = None

    async def close(self) -> None:
        for adapter in (self.objects, self.vectors, self.llm):
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()


__all__ = ["ObjectStoreAdapter", "VectorStoreAdapter", "LLMAdapter", "Adapters"]
