"""Exact (keyword) search against the lexical store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from kommunkb.metrics.observability import PipelineMetrics, TimedSection, get_logger
from kommunkb.models import Article, MatchType
from kommunkb.store.payload import ArticleQuery, ArticleStore


@dataclass(frozen=True)
class ExactScoring:
    """Scores assigned to keyword matches by where the query was found."""

    title_score: float = 1.0
    content_score: float = 0.85
    baseline_score: float = 0.5


def score_exact_match(article: Article, query: str, scoring: ExactScoring | None = None) -> tuple[float, MatchType]:
    """Score a row returned by the keyword predicate.

    Title substring hits always score ``title_score``; body hits score
    ``content_score``. Anything else the store matched (summary, author)
    gets the baseline.
    """

    scoring = scoring or ExactScoring()
    needle = query.strip().casefold()
    if needle and needle in (article.title or "").casefold():
        return scoring.title_score, "exact-title"
    if needle and needle in article.content_text.casefold():
        return scoring.content_score, "exact-content"
    return scoring.baseline_score, "exact-content"


@dataclass(frozen=True)
class ExactSearchResult:
    articles: Sequence[Article]
    total: int
    elapsed_ms: float


class ExactSearcher:
    """Keyword lookup over title/content/summary/author, published only.

    Fetches a fixed candidate window independent of the caller's page so that
    paging through merged results stays stable.
    """

    def __init__(self, store: ArticleStore, *, candidate_limit: int = 100) -> None:
        self._store = store
        self._candidate_limit = candidate_limit
        self._logger = get_logger("search.exact")

    async def search(self, query: str, *, department_ids: Sequence[str] = ()) -> ExactSearchResult:
        with TimedSection() as timer:
            page = await self._store.find_articles(
                ArticleQuery(
                    text=query,
                    department_ids=tuple(department_ids),
                    published_only=True,
                    limit=self._candidate_limit,
                    page=1,
                )
            )
        PipelineMetrics.observe_search("exact", timer.elapsed, len(page.docs))
        self._logger.info(
            "search.exact.complete",
            query=query,
            result_count=len(page.docs),
            total=page.total_docs,
            duration_ms=timer.elapsed_ms,
        )
        return ExactSearchResult(articles=page.docs, total=page.total_docs, elapsed_ms=timer.elapsed_ms)
