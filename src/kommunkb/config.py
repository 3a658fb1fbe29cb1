"""Runtime configuration for the kommunkb services."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    environment: Literal["dev", "test", "prod"] = "dev"

    # Gemini (chat + grounding)
    gemini_mode: Literal["aistudio", "vertexai"] = "aistudio"
    gemini_api_key: str | None = None
    google_cloud_project: str | None = None
    google_cloud_location: str = "europe-west4"
    gemini_model: str = "gemini-flash-latest"
    gemini_temperature: float = 0.7
    gemini_max_output_tokens: int = 2048
    google_grounding_enabled: bool = False

    # Embeddings
    openai_api_key: str | None = None
    embedding_model: str = "text-embedding-3-large"
    embedding_dim: int = 3072

    # Vector index
    qdrant_enabled: bool = False
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: str | None = None
    qdrant_collection: str = "articles"
    qdrant_timeout_seconds: int = 30
    department_filter_key: str = "department.id"

    # JSON array describing federated Qdrant collections
    external_qdrant_sources: str | None = None

    # Lexical store (Payload REST API)
    payload_url: str = "http://localhost:3000"
    payload_api_key: str | None = None
    payload_timeout_seconds: float = 15.0
    articles_collection: str = "articles"
    departments_collection: str = "departments"

    # Search tuning
    semantic_boost_weight: float = 0.2
    semantic_min_score: float = 0.3
    semantic_result_cap: int = 10
    exact_candidate_limit: int = 100
    knowledge_tool_result_cap: int = 10
    min_query_length: int = 2
    max_page_size: int = 100

    # Chat tuning
    chat_max_turns: int = 2
    excerpt_chars: int = 500
    article_context_max_chars: int = 10000

    # CORS
    cors_allow_origins: tuple[str, ...] = ()
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)

    # Security
    api_key: str | None = None  # if set, required in X-API-Key header
    rate_limit_requests: int = 120  # per window per client
    rate_limit_window_seconds: int = 60

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def vertex_mode(self) -> bool:
        return self.gemini_mode == "vertexai"

    @property
    def has_llm_credentials(self) -> bool:
        if self.vertex_mode:
            return bool(self.google_cloud_project)
        return bool(self.gemini_api_key)

    @property
    def has_embedding_credentials(self) -> bool:
        return bool(self.openai_api_key)

    @property
    def external_sources_json(self) -> str:
        return (self.external_qdrant_sources or "").strip() or "[]"


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
