"""Vector index implementations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.http.models import Filter

from kommunkb.errors import VectorStoreError


@dataclass(frozen=True)
class VectorHit:
    """Raw scored point returned by a vector index."""

    id: str
    score: float
    payload: Mapping[str, Any] = field(default_factory=dict)


class VectorIndex(Protocol):
    """Protocol for approximate nearest-neighbour search backends."""

    async def search(
        self,
        collection: str,
        vector: Sequence[float],
        *,
        limit: int,
        query_filter: Filter | None = None,
    ) -> Sequence[VectorHit]:
        """Return up to ``limit`` scored points, best first."""


@dataclass(frozen=True)
class QdrantConnection:
    url: str
    api_key: str | None = None
    timeout_seconds: int = 30


class QdrantVectorIndex:
    """Qdrant-backed vector index over one server connection."""

    def __init__(self, connection: QdrantConnection, *, client: AsyncQdrantClient | None = None) -> None:
        self._connection = connection
        self._client = client or AsyncQdrantClient(
            url=connection.url,
            api_key=connection.api_key,
            timeout=connection.timeout_seconds,
        )

    @property
    def connection(self) -> QdrantConnection:
        return self._connection

    async def search(
        self,
        collection: str,
        vector: Sequence[float],
        *,
        limit: int,
        query_filter: Filter | None = None,
    ) -> Sequence[VectorHit]:
        if limit <= 0:
            return []
        try:
            response = await self._client.query_points(
                collection_name=collection,
                query=list(vector),
                limit=limit,
                with_payload=True,
                query_filter=query_filter,
            )
        except UnexpectedResponse as exc:
            if exc.status_code == 404:
                raise VectorStoreError(f"Collection '{collection}' does not exist") from exc
            raise VectorStoreError(f"Vector search failed for '{collection}': {exc}") from exc
        except (ResponseHandlingException, OSError) as exc:
            raise VectorStoreError(f"Vector index unreachable at {self._connection.url}: {exc}") from exc
        return [
            VectorHit(id=str(point.id), score=float(point.score or 0.0), payload=dict(point.payload or {}))
            for point in response.points
        ]

    async def aclose(self) -> None:
        await self._client.close()
