"""Embedding backends for kommunkb."""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass
from typing import Protocol, Tuple

from openai import AsyncOpenAI, OpenAIError

from kommunkb.errors import EmbeddingError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "text-embedding-3-large"
    dim: int = 3072
    api_key: str | None = None
    normalize: bool = True


class EmbeddingBackend(Protocol):
    """Protocol describing embedding behaviour."""

    async def embed(self, text: str) -> Tuple[float, ...]:
        """Return a fixed-dimension embedding vector for the text."""


class HashEmbeddingBackend:
    """Deterministic lightweight embedding used for testing and offline runs."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    def _hash_to_vector(self, text: str) -> Tuple[float, ...]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._config.dim + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._config.dim]
        vector = [byte / 255.0 for byte in raw]
        if self._config.normalize:
            norm = math.sqrt(sum(value * value for value in vector)) or 1.0
            vector = [value / norm for value in vector]
        return tuple(vector)

    async def embed(self, text: str) -> Tuple[float, ...]:
        return self._hash_to_vector(text)


class OpenAIEmbeddingBackend:
    """Embedding backend calling the OpenAI embeddings API."""

    def __init__(self, config: EmbeddingConfig | None = None, *, client: AsyncOpenAI | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        # Created on first use so the app can start without credentials.
        if self._client is None:
            if not self._config.api_key:
                raise EmbeddingError("OpenAI API key not configured")
            self._client = AsyncOpenAI(api_key=self._config.api_key)
        return self._client

    async def embed(self, text: str) -> Tuple[float, ...]:
        client = self._get_client()
        try:
            response = await client.embeddings.create(input=text, model=self._config.model)
        except OpenAIError as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc
        if not response.data:
            raise EmbeddingError("Embedding provider returned no vectors")
        vector = tuple(response.data[0].embedding)
        if len(vector) != self._config.dim:
            LOGGER.warning(
                "Embedding dim mismatch: configured=%d, actual=%d",
                self._config.dim,
                len(vector),
            )
        return vector

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
