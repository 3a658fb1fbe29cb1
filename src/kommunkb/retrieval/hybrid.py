"""Hybrid search: exact and semantic retrieval merged into one ranking."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Sequence, cast

from kommunkb.errors import EmbeddingError, VectorStoreError
from kommunkb.metrics.observability import PipelineMetrics, TimedSection, get_logger
from kommunkb.models import Article, HybridResult, HybridSearchResponse, SearchHit, SearchMode, SearchTimings
from kommunkb.retrieval.exact import ExactScoring, ExactSearcher, ExactSearchResult, score_exact_match
from kommunkb.retrieval.semantic import SemanticSearcher
from kommunkb.store.payload import ArticleStore


@dataclass(frozen=True)
class HybridScoringConfig:
    """Merge tuning.

    ``semantic_boost_weight`` is added (times the semantic score) to articles
    found by both methods; semantic-only articles below ``semantic_min_score``
    are dropped. Exact matches are never dropped.
    """

    semantic_boost_weight: float = 0.2
    semantic_min_score: float = 0.3
    semantic_result_cap: int = 10
    exact: ExactScoring = ExactScoring()


@dataclass(frozen=True)
class HybridSearchRequest:
    query: str
    mode: SearchMode = "hybrid"
    department_ids: Sequence[str] = ()
    external_source_ids: Sequence[str] = ()
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class _SemanticOutcome:
    hits: Sequence[SearchHit]
    elapsed_ms: float
    degraded: bool = False


def best_semantic_scores(hits: Sequence[SearchHit]) -> dict[str, SearchHit]:
    """Best-scoring chunk per article id, in first-seen order."""

    best: dict[str, SearchHit] = {}
    for hit in hits:
        if hit.is_external or not hit.article_id:
            continue
        current = best.get(hit.article_id)
        if current is None or hit.score > current.score:
            best[hit.article_id] = hit
    return best


def merge_results(
    exact_articles: Sequence[Article],
    semantic_hits: Sequence[SearchHit],
    semantic_articles: Sequence[Article],
    query: str,
    config: HybridScoringConfig | None = None,
) -> list[HybridResult]:
    """Merge exact and semantic results into one list, best first.

    Every exact hit is kept. Articles found by both methods score
    ``max(exact, semantic) + semantic * boost`` capped at 1.0 and keep their
    exact match type. Semantic-only articles must be hydrated (present in
    ``semantic_articles``) and clear the quality floor. The sort is stable, so
    ties keep merge order: exact hits first, then semantic-only by rank.
    """

    config = config or HybridScoringConfig()
    semantic_best = best_semantic_scores(semantic_hits)
    merged: dict[str, HybridResult] = {}

    for article in exact_articles:
        if article.id in merged:
            continue
        exact_score, match_type = score_exact_match(article, query, config.exact)
        result = HybridResult(article=article, score=exact_score, match_type=match_type)
        hit = semantic_best.get(article.id)
        if hit is not None:
            combined = max(exact_score, hit.score) + hit.score * config.semantic_boost_weight
            result.score = min(combined, 1.0)
            result.highlight_text = hit.text
        merged[article.id] = result

    hydrated = {article.id: article for article in semantic_articles}
    for article_id, hit in semantic_best.items():
        if article_id in merged:
            continue
        article = hydrated.get(article_id)
        if article is None:
            continue
        score = min(hit.score, 1.0)
        if score < config.semantic_min_score:
            continue
        merged[article_id] = HybridResult(article=article, score=score, match_type="semantic", highlight_text=hit.text)

    return sorted(merged.values(), key=lambda item: item.score, reverse=True)


class HybridSearchEngine:
    """Runs exact and/or semantic search and ranks the combined results."""

    def __init__(
        self,
        exact: ExactSearcher,
        semantic: SemanticSearcher,
        store: ArticleStore,
        config: HybridScoringConfig | None = None,
    ) -> None:
        self._exact = exact
        self._semantic = semantic
        self._store = store
        self._config = config or HybridScoringConfig()
        self._logger = get_logger("search.hybrid")

    async def search(self, request: HybridSearchRequest) -> HybridSearchResponse:
        with TimedSection() as timer:
            if request.mode == "exact":
                response = await self._exact_only(request)
            elif request.mode == "semantic":
                response = await self._semantic_only(request)
            else:
                response = await self._hybrid(request)
        response = HybridSearchResponse(
            results=response.results,
            total=response.total,
            mode=response.mode,
            timings=SearchTimings(
                exact_ms=response.timings.exact_ms,
                semantic_ms=response.timings.semantic_ms,
                total_ms=timer.elapsed_ms,
            ),
            external_hits=response.external_hits,
        )
        if request.mode == "hybrid":
            PipelineMetrics.observe_search(
                "hybrid", timer.elapsed, len(response.results), (item.score for item in response.results)
            )
        self._logger.info(
            "search.hybrid.complete",
            query=request.query,
            mode=request.mode,
            total=response.total,
            returned=len(response.results),
            exact_ms=response.timings.exact_ms,
            semantic_ms=response.timings.semantic_ms,
            total_ms=timer.elapsed_ms,
        )
        return response

    @staticmethod
    def _page(results: Sequence[HybridResult], request: HybridSearchRequest) -> list[HybridResult]:
        offset = max(request.offset, 0)
        return list(results[offset : offset + max(request.limit, 0)])

    async def _run_semantic(self, request: HybridSearchRequest) -> _SemanticOutcome:
        with TimedSection() as timer:
            try:
                hits = await self._semantic.search(
                    request.query,
                    department_ids=request.department_ids,
                    external_source_ids=request.external_source_ids,
                    include_internal=True,
                    limit=self._config.semantic_result_cap,
                )
                degraded = False
            except (VectorStoreError, EmbeddingError) as exc:
                PipelineMetrics.semantic_degraded.inc()
                self._logger.warning("search.semantic.degraded", query=request.query, detail=str(exc))
                hits = []
                degraded = True
        return _SemanticOutcome(hits=hits, elapsed_ms=timer.elapsed_ms, degraded=degraded)

    async def _exact_only(self, request: HybridSearchRequest) -> HybridSearchResponse:
        exact = await self._exact.search(request.query, department_ids=request.department_ids)
        scored = []
        for article in exact.articles:
            score, match_type = score_exact_match(article, request.query, self._config.exact)
            scored.append(HybridResult(article=article, score=score, match_type=match_type))
        scored.sort(key=lambda item: item.score, reverse=True)
        return HybridSearchResponse(
            results=self._page(scored, request),
            total=len(scored),
            mode="exact",
            timings=SearchTimings(exact_ms=exact.elapsed_ms),
        )

    async def _semantic_only(self, request: HybridSearchRequest) -> HybridSearchResponse:
        outcome = await self._run_semantic(request)
        best = best_semantic_scores(outcome.hits)
        articles = await self._store.get_articles(list(best)) if best else []
        by_id = {article.id: article for article in articles}
        results = [
            HybridResult(article=by_id[article_id], score=hit.score, match_type="semantic", highlight_text=hit.text)
            for article_id, hit in sorted(best.items(), key=lambda item: item[1].score, reverse=True)
            if article_id in by_id
        ]
        return HybridSearchResponse(
            results=self._page(results, request),
            total=len(results),
            mode="semantic",
            timings=SearchTimings(semantic_ms=outcome.elapsed_ms),
            external_hits=[hit for hit in outcome.hits if hit.is_external],
        )

    async def _hybrid(self, request: HybridSearchRequest) -> HybridSearchResponse:
        exact_outcome, semantic_outcome = await asyncio.gather(
            self._exact.search(request.query, department_ids=request.department_ids),
            self._run_semantic(request),
            return_exceptions=True,
        )
        # Both sub-searches have settled here; lexical failures fail the call.
        for outcome in (exact_outcome, semantic_outcome):
            if isinstance(outcome, BaseException):
                raise outcome
        exact_outcome = cast(ExactSearchResult, exact_outcome)
        semantic_outcome = cast(_SemanticOutcome, semantic_outcome)

        exact_ids = {article.id for article in exact_outcome.articles}
        semantic_only_ids = [
            article_id for article_id in best_semantic_scores(semantic_outcome.hits) if article_id not in exact_ids
        ]
        semantic_articles = await self._store.get_articles(semantic_only_ids) if semantic_only_ids else []

        merged = merge_results(
            exact_outcome.articles,
            semantic_outcome.hits,
            semantic_articles,
            request.query,
            self._config,
        )
        return HybridSearchResponse(
            results=self._page(merged, request),
            total=len(merged),
            mode="hybrid",
            timings=SearchTimings(exact_ms=exact_outcome.elapsed_ms, semantic_ms=semantic_outcome.elapsed_ms),
            external_hits=[hit for hit in semantic_outcome.hits if hit.is_external],
        )
