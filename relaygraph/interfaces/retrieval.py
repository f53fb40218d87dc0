from __future__ import annotations

import asyncio
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable
from uuid import uuid4

from langchain_core.documents import Document

__all__ = (
    "Embeddings",
    "VectorStore",
    "SearchResult",
    "InMemoryVectorStore",
    "cosine_similarity",
)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors, 0.0 if either is all zeros."""
    if len(a) != len(b):
        raise ValueError(f"Vectors have different dimensions: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


@runtime_checkable
class Embeddings(Protocol):
    dimension: int

    async def embed(self, text: str) -> list[float]: ...


@dataclass
class SearchResult:
    document: Document
    score: float


@runtime_checkable
class VectorStore(Protocol):
    async def add_documents(
        self, docs: Sequence[tuple[Document, Sequence[float]]]
    ) -> list[str]: ...

    async def similarity_search(
        self,
        query: Sequence[float],
        k: int = 4,
        *,
        score_threshold: Optional[float] = None,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[SearchResult]: ...

    async def delete(self, ids: Sequence[str]) -> None: ...


class InMemoryVectorStore:
    """Brute-force cosine search over documents kept in memory."""

    def __init__(self) -> None:
        self.docs: dict[str, tuple[Document, list[float]]] = {}
        self.lock = asyncio.Lock()

    async def add_documents(
        self, docs: Sequence[tuple[Document, Sequence[float]]]
    ) -> list[str]:
        ids = []
        async with self.lock:
            for doc, vector in docs:
                doc_id = doc.id or str(uuid4())
                self.docs[doc_id] = (
                    doc.model_copy(update={"id": doc_id}),
                    list(vector),
                )
                ids.append(doc_id)
        return ids

    async def similarity_search(
        self,
        query: Sequence[float],
        k: int = 4,
        *,
        score_threshold: Optional[float] = None,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[SearchResult]:
        async with self.lock:
            results = [
                SearchResult(doc, cosine_similarity(query, vector))
                for doc, vector in self.docs.values()
                if not filter
                or all(doc.metadata.get(k_) == v for k_, v in filter.items())
            ]
        if score_threshold is not None:
            results = [r for r in results if r.score >= score_threshold]
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:k]

    async def delete(self, ids: Sequence[str]) -> None:
        async with self.lock:
            for doc_id in ids:
                self.docs.pop(doc_id, None)
