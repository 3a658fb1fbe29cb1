"""FastAPI application exposing kommunkb search and chat."""

from __future__ import annotations

import math
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal, Sequence
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from kommunkb.api.schemas import (
    ArticleContextModel,
    ChatOptionsResponse,
    ChatRequestModel,
    ChatResponseModel,
    DepartmentArticlesResponse,
    ExternalResultModel,
    SearchResponse,
    SearchResultModel,
    SourceModel,
    TimingsModel,
)
from kommunkb.config import Settings, get_settings
from kommunkb.departments import DepartmentTree
from kommunkb.embeddings import (
    EmbeddingBackend,
    EmbeddingConfig,
    HashEmbeddingBackend,
    OpenAIEmbeddingBackend,
    QdrantConnection,
    QdrantVectorIndex,
)
from kommunkb.errors import (
    ChatProcessingError,
    ConfigurationError,
    KnowledgeBaseError,
    LexicalStoreError,
    status_code_for,
)
from kommunkb.metrics.observability import (
    bind_correlation_id,
    clear_correlation_id,
    configure_logging,
    get_correlation_id,
    get_logger,
)
from kommunkb.models import (
    Article,
    ArticleContext,
    ChatMessage,
    ChatRequest,
    HybridResult,
    PopulatedDepartment,
    SearchHit,
    SearchMode,
    SourceMetadata,
)
from kommunkb.retrieval import (
    ExactSearcher,
    HybridScoringConfig,
    HybridSearchEngine,
    HybridSearchRequest,
    SemanticSearchConfig,
    SemanticSearcher,
)
from kommunkb.services.chat import ChatOrchestrator
from kommunkb.services.generation import GeminiGenerator, GenerationConfig
from kommunkb.services.knowledge import KnowledgeSearchTool
from kommunkb.sources import ExternalSourceRegistry
from kommunkb.store import ArticleQuery, ArticleStore, PayloadArticleStore, PayloadConfig


@dataclass(frozen=True)
class AppDependencies:
    store: ArticleStore
    registry: ExternalSourceRegistry
    search_engine: HybridSearchEngine
    orchestrator: ChatOrchestrator
    closables: Sequence[Any] = ()


def _build_dependencies(settings: Settings) -> AppDependencies:
    store = PayloadArticleStore(
        PayloadConfig(
            base_url=settings.payload_url,
            api_key=settings.payload_api_key,
            timeout_seconds=settings.payload_timeout_seconds,
            articles_collection=settings.articles_collection,
            departments_collection=settings.departments_collection,
        )
    )
    registry = ExternalSourceRegistry.from_json(
        settings.external_sources_json,
        timeout_seconds=settings.qdrant_timeout_seconds,
    )
    embedding_config = EmbeddingConfig(
        model=settings.embedding_model,
        dim=settings.embedding_dim,
        api_key=settings.openai_api_key,
    )
    embedder: EmbeddingBackend
    if settings.is_test:
        embedder = HashEmbeddingBackend(embedding_config)
    else:
        embedder = OpenAIEmbeddingBackend(embedding_config)
    internal_index = QdrantVectorIndex(
        QdrantConnection(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            timeout_seconds=settings.qdrant_timeout_seconds,
        )
    )
    semantic = SemanticSearcher(
        embedder,
        internal_index,
        registry,
        SemanticSearchConfig(
            collection=settings.qdrant_collection,
            per_source_limit=settings.semantic_result_cap,
            department_filter_key=settings.department_filter_key,
        ),
    )
    search_engine = HybridSearchEngine(
        ExactSearcher(store, candidate_limit=settings.exact_candidate_limit),
        semantic,
        store,
        HybridScoringConfig(
            semantic_boost_weight=settings.semantic_boost_weight,
            semantic_min_score=settings.semantic_min_score,
            semantic_result_cap=settings.semantic_result_cap,
        ),
    )
    knowledge_tool = KnowledgeSearchTool(
        semantic,
        registry,
        result_cap=settings.knowledge_tool_result_cap,
        excerpt_chars=settings.excerpt_chars,
    )
    generator = GeminiGenerator(
        GenerationConfig(
            model=settings.gemini_model,
            temperature=settings.gemini_temperature,
            max_output_tokens=settings.gemini_max_output_tokens,
            api_key=settings.gemini_api_key,
            vertexai=settings.vertex_mode,
            project=settings.google_cloud_project,
            location=settings.google_cloud_location,
        )
    )
    orchestrator = ChatOrchestrator(
        generator,
        knowledge_tool,
        max_turns=settings.chat_max_turns,
        grounding_enabled=settings.google_grounding_enabled,
        article_context_max_chars=settings.article_context_max_chars,
    )
    return AppDependencies(
        store=store,
        registry=registry,
        search_engine=search_engine,
        orchestrator=orchestrator,
        closables=(store, registry, internal_index, embedder),
    )


def _split_ids(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def filter_history(entries: Sequence[Any]) -> list[ChatMessage]:
    """Keep well-formed ``{role, content}`` pairs; drop everything else."""

    history: list[ChatMessage] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        role = entry.get("role")
        content = entry.get("content")
        if role not in ("user", "assistant") or not isinstance(content, str) or not content.strip():
            continue
        history.append(ChatMessage(role=role, content=content))
    return history


def _article_model(article: Article, result: HybridResult | None = None) -> SearchResultModel:
    department = article.department
    return SearchResultModel(
        id=article.id,
        title=article.title,
        slug=article.slug,
        summary=article.summary,
        author=article.author,
        department_id=article.department_id,
        department=department.department.name if isinstance(department, PopulatedDepartment) else None,
        document_type=article.document_type,
        score=result.score if result else None,
        match_type=result.match_type if result else None,
        highlight_text=result.highlight_text if result else None,
    )


def _result_model(result: HybridResult) -> SearchResultModel:
    return _article_model(result.article, result)


def _source_model(source: SourceMetadata) -> SourceModel:
    return SourceModel(
        type=source.type,
        title=source.title,
        url=source.url,
        source=source.source,
        source_label=source.source_label,
        source_icon=source.source_icon,
        source_color=source.source_color,
        department=source.department,
        document_type=source.document_type,
        is_sub_source=source.is_sub_source,
    )


def _article_context(model: ArticleContextModel | None) -> ArticleContext | None:
    if model is None:
        return None
    return ArticleContext(
        id=str(model.id),
        title=model.title,
        slug=model.slug,
        content=model.content,
        summary=model.summary,
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        for resource in deps.closables:
            close = getattr(resource, "aclose", None)
            if close is not None:
                await close()

    app = FastAPI(title="kommunkb API", version="0.1.0", lifespan=lifespan)
    app.state.dependencies = deps

    # Optional CORS
    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    # Security dependencies
    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    class RateLimiter:
        def __init__(self, requests: int, window_seconds: int) -> None:
            self.requests = requests
            self.window = window_seconds
            self._buckets: dict[str, list[float]] = {}

        def __call__(self, request: Request) -> None:
            client_ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "-")
            key = f"{client_ip}:{request.url.path}"
            now = time.time()
            self.evict(now - self.window)
            bucket = self._buckets.setdefault(key, [])
            if len(bucket) >= self.requests:
                raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")
            bucket.append(now)

        def evict(self, cutoff: float) -> None:
            # Drop old entries; a client with none left loses its bucket.
            for key in list(self._buckets):
                bucket = [stamp for stamp in self._buckets[key] if stamp >= cutoff]
                if bucket:
                    self._buckets[key] = bucket
                else:
                    del self._buckets[key]

        def tracked_keys(self) -> list[str]:
            return list(self._buckets)

    rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)
    app.state.rate_limiter = rate_limiter

    def _correlation_id(request: Request) -> str:
        return getattr(request.state, "correlation_id", None) or get_correlation_id()

    @app.exception_handler(ChatProcessingError)
    async def handle_chat_error(request: Request, exc: ChatProcessingError) -> JSONResponse:
        correlation_id = _correlation_id(request)
        logger.error("chat.error", correlation_id=correlation_id, reason=exc.reason)
        return JSONResponse(
            status_code=status_code_for(exc.reason),
            content={"detail": str(exc), "reason": exc.reason, "correlation_id": correlation_id},
        )

    @app.exception_handler(ConfigurationError)
    async def handle_configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
        correlation_id = _correlation_id(request)
        logger.error("configuration.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": str(exc), "correlation_id": correlation_id},
        )

    @app.exception_handler(KnowledgeBaseError)
    async def handle_knowledge_base_error(request: Request, exc: KnowledgeBaseError) -> JSONResponse:
        correlation_id = _correlation_id(request)
        logger.error("knowledge_base.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": str(exc), "correlation_id": correlation_id},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = _correlation_id(request)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_store(dep: AppDependencies = Depends(get_dependencies)) -> ArticleStore:
        return dep.store

    def get_registry(dep: AppDependencies = Depends(get_dependencies)) -> ExternalSourceRegistry:
        return dep.registry

    def get_search_engine(dep: AppDependencies = Depends(get_dependencies)) -> HybridSearchEngine:
        return dep.search_engine

    def get_orchestrator(dep: AppDependencies = Depends(get_dependencies)) -> ChatOrchestrator:
        return dep.orchestrator

    def _effective_mode(mode: SearchMode) -> SearchMode:
        if settings.qdrant_enabled or mode == "exact":
            return mode
        if mode == "semantic":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Semantic search is not enabled",
            )
        return "exact"

    def _external_model(hit: SearchHit, registry: ExternalSourceRegistry) -> ExternalResultModel:
        label, _, _ = registry.describe(hit.source)
        return ExternalResultModel(
            id=hit.id,
            title=hit.title,
            url=hit.url,
            score=hit.score,
            source=hit.source,
            source_label=label,
            document_type=hit.document_type,
            text=hit.text[: settings.excerpt_chars],
        )

    async def _load_tree(store: ArticleStore) -> DepartmentTree:
        return DepartmentTree(await store.list_departments())

    @app.get("/search", response_model=SearchResponse)
    async def search(
        q: str | None = None,
        mode: Literal["hybrid", "semantic", "exact"] = "hybrid",
        limit: int = Query(default=50, ge=1),
        offset: int = Query(default=0, ge=0),
        departmentIds: str | None = None,  # noqa: N803 - public query parameter name
        externalSourceIds: str | None = None,  # noqa: N803 - public query parameter name
        engine: HybridSearchEngine = Depends(get_search_engine),
        registry: ExternalSourceRegistry = Depends(get_registry),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> SearchResponse:
        query = (q or "").strip()
        if len(query) < settings.min_query_length:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Query must be at least {settings.min_query_length} characters",
            )
        effective_mode = _effective_mode(mode)
        request = HybridSearchRequest(
            query=query,
            mode=effective_mode,
            department_ids=_split_ids(departmentIds),
            external_source_ids=registry.validate_external_source_ids(_split_ids(externalSourceIds)),
            limit=min(limit, settings.max_page_size),
            offset=offset,
        )
        try:
            result = await engine.search(request)
        except LexicalStoreError as exc:
            logger.error("search.failed", query=query, mode=effective_mode, detail=str(exc))
            return SearchResponse(results=[], total=0, mode=effective_mode)
        return SearchResponse(
            results=[_result_model(item) for item in result.results],
            total=result.total,
            mode=result.mode,
            timings=TimingsModel(
                exact_ms=result.timings.exact_ms,
                semantic_ms=result.timings.semantic_ms,
                total_ms=result.timings.total_ms,
            ),
            external_results=[_external_model(hit, registry) for hit in result.external_hits],
        )

    @app.get("/departments/articles", response_model=DepartmentArticlesResponse)
    async def department_articles(
        departmentId: str | None = None,  # noqa: N803 - public query parameter name
        search: str | None = None,
        mode: Literal["hybrid", "semantic", "exact"] = "hybrid",
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=50, ge=1),
        sort: str = "-updatedAt",
        store: ArticleStore = Depends(get_store),
        engine: HybridSearchEngine = Depends(get_search_engine),
        _auth: None = Depends(require_api_key),
    ) -> DepartmentArticlesResponse:
        if not departmentId:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="departmentId is required")
        limit = min(limit, settings.max_page_size)
        query = (search or "").strip()
        if not query:
            listing = await store.find_articles(
                ArticleQuery(department_ids=[departmentId], limit=limit, page=page, sort=sort)
            )
            return DepartmentArticlesResponse(
                docs=[_article_model(article) for article in listing.docs],
                total_docs=listing.total_docs,
                page=listing.page,
                limit=limit,
                total_pages=listing.total_pages,
                has_next_page=listing.has_next_page,
                has_prev_page=listing.has_prev_page,
            )

        if len(query) < settings.min_query_length:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Search must be at least {settings.min_query_length} characters",
            )
        effective_mode = _effective_mode(mode)
        try:
            result = await engine.search(
                HybridSearchRequest(
                    query=query,
                    mode=effective_mode,
                    department_ids=[departmentId],
                    limit=limit,
                    offset=(page - 1) * limit,
                )
            )
        except LexicalStoreError as exc:
            logger.error("departments.articles.failed", department_id=departmentId, query=query, detail=str(exc))
            return DepartmentArticlesResponse(
                docs=[],
                total_docs=0,
                page=page,
                limit=limit,
                total_pages=1,
                has_next_page=False,
                has_prev_page=page > 1,
                mode=effective_mode,
            )
        total_pages = max(math.ceil(result.total / limit), 1)
        return DepartmentArticlesResponse(
            docs=[_result_model(item) for item in result.results],
            total_docs=result.total,
            page=page,
            limit=limit,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
            mode=result.mode,
        )

    @app.post("/chat", response_model=ChatResponseModel, response_model_exclude_none=True)
    async def chat(
        payload: ChatRequestModel,
        store: ArticleStore = Depends(get_store),
        registry: ExternalSourceRegistry = Depends(get_registry),
        orchestrator: ChatOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> ChatResponseModel:
        message = (payload.message or "").strip()
        if not message:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message is required")
        if not settings.has_llm_credentials:
            raise ConfigurationError(
                "Vertex AI project not configured" if settings.vertex_mode else "Gemini API key not configured"
            )
        if not settings.has_embedding_credentials:
            raise ConfigurationError("OpenAI API key not configured")
        if not settings.qdrant_enabled:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Knowledge base search is not enabled",
            )

        external_ids = registry.validate_external_source_ids(payload.external_source_ids)
        department_ids = [str(item) for item in payload.department_ids if str(item).strip()]
        if department_ids:
            try:
                department_ids = (await _load_tree(store)).expand(department_ids)
            except LexicalStoreError as exc:
                logger.warning("chat.department_expansion_failed", detail=str(exc))

        result = await orchestrator.chat(
            ChatRequest(
                message=message,
                department_ids=department_ids,
                external_source_ids=external_ids,
                use_google_grounding=payload.use_google_grounding,
                history=filter_history(payload.history),
                article_context=_article_context(payload.article_context),
            )
        )
        return ChatResponseModel(
            response=result.response,
            sources=[_source_model(source) for source in result.sources],
            department_ids=department_ids,
            external_source_ids=external_ids,
            search_queries=list(result.search_queries),
        )

    @app.get("/chat", response_model=ChatOptionsResponse)
    async def chat_options(
        store: ArticleStore = Depends(get_store),
        registry: ExternalSourceRegistry = Depends(get_registry),
        _auth: None = Depends(require_api_key),
    ) -> ChatOptionsResponse:
        try:
            tree = await _load_tree(store)
        except LexicalStoreError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to fetch departments",
            ) from exc
        return ChatOptionsResponse(
            departments=tree.nested(),
            external_sources=registry.catalog(),
            google_grounding_enabled=settings.google_grounding_enabled,
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from kommunkb import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    async def readiness(store: ArticleStore = Depends(get_store)) -> dict[str, str]:
        try:
            await store.list_departments()
        except LexicalStoreError as exc:
            return {"status": "error", "detail": str(exc)}
        return {"status": "ready"}

    return app


app = create_app()
