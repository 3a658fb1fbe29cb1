"""Error taxonomy shared by the search and chat layers."""

from __future__ import annotations

from typing import Literal

FailureReason = Literal["rate_limit", "auth", "vector_store", "embedding", "unknown"]


class KnowledgeBaseError(RuntimeError):
    """Base class for knowledge-base search and chat failures."""


class LexicalStoreError(KnowledgeBaseError):
    """Raised when the article store cannot be queried."""


class VectorStoreError(KnowledgeBaseError):
    """Raised when none of the requested vector indexes could be searched."""


class EmbeddingError(KnowledgeBaseError):
    """Raised when the embedding provider fails to embed a query."""


class ConfigurationError(KnowledgeBaseError):
    """Raised when the service is missing operator-provided configuration."""


class ChatProcessingError(KnowledgeBaseError):
    """Single error surfaced by the chat orchestrator on fatal failures."""

    def __init__(self, message: str, *, reason: FailureReason = "unknown") -> None:
        super().__init__(message)
        self.reason: FailureReason = reason


_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "resource_exhausted", "429", "quota")
_AUTH_MARKERS = ("api key", "api_key", "permission", "unauthorized", "unauthenticated", "401", "403")


def classify_failure(exc: BaseException) -> FailureReason:
    """Map an exception (and its cause chain) to a triage reason."""

    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ChatProcessingError) and current.reason != "unknown":
            return current.reason
        if isinstance(current, VectorStoreError):
            return "vector_store"
        if isinstance(current, EmbeddingError):
            return "embedding"
        if isinstance(current, ConfigurationError):
            return "auth"
        text = str(current).lower()
        if any(marker in text for marker in _RATE_LIMIT_MARKERS):
            return "rate_limit"
        if any(marker in text for marker in _AUTH_MARKERS):
            return "auth"
        module = type(current).__module__ or ""
        if module.startswith("qdrant_client"):
            return "vector_store"
        current = current.__cause__ or current.__context__
    return "unknown"


_USER_MESSAGES: dict[FailureReason, str] = {
    "rate_limit": "För många förfrågningar just nu. Vänta en stund och försök igen.",
    "auth": "Tjänsten är felkonfigurerad (API-nyckel eller behörighet saknas). Kontakta administratören.",
    "vector_store": "Kunskapsbasens sökindex är inte tillgängligt just nu. Försök igen senare.",
    "embedding": "Det gick inte att tolka din fråga för sökning just nu. Försök igen senare.",
    "unknown": "Ett fel uppstod när ditt meddelande behandlades. Försök igen.",
}

_STATUS_CODES: dict[FailureReason, int] = {
    "rate_limit": 429,
    "auth": 500,
    "vector_store": 503,
    "embedding": 502,
    "unknown": 500,
}


def user_message(reason: FailureReason) -> str:
    return _USER_MESSAGES[reason]


def status_code_for(reason: FailureReason) -> int:
    return _STATUS_CODES[reason]


__all__ = [
    "ChatProcessingError",
    "ConfigurationError",
    "EmbeddingError",
    "FailureReason",
    "KnowledgeBaseError",
    "LexicalStoreError",
    "VectorStoreError",
    "classify_failure",
    "status_code_for",
    "user_message",
]
