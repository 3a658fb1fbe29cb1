from __future__ import annotations

import asyncio

import pytest

from kommunkb.errors import EmbeddingError, LexicalStoreError, VectorStoreError
from kommunkb.models import SearchHit
from kommunkb.retrieval import (
    ExactSearcher,
    HybridScoringConfig,
    HybridSearchEngine,
    HybridSearchRequest,
    SemanticSearcher,
    merge_results,
    score_exact_match,
)
from kommunkb.retrieval.hybrid import best_semantic_scores
from kommunkb.sources import ExternalSourceRegistry

from support import FailingStore, StubArticleStore, StubEmbedder, StubVectorIndex, internal_point, make_article


def _engine(store, points=(), *, index_error=None, embed_error=None, config=None):
    semantic = SemanticSearcher(
        StubEmbedder(error=embed_error),
        StubVectorIndex(points, error=index_error),
        ExternalSourceRegistry([]),
    )
    return HybridSearchEngine(ExactSearcher(store), semantic, store, config)


def _search(engine, query, **kwargs):
    return asyncio.run(engine.search(HybridSearchRequest(query=query, **kwargs)))


def _remote_work_store() -> StubArticleStore:
    return StubArticleStore(
        [
            make_article("body", "Riktlinjer för arbetstid", "Regler om distansarbete gäller alla."),
            make_article("title", "Policy för distansarbete", "Innehåll."),
        ]
    )


def test_title_match_ranks_above_body_match():
    response = _search(_engine(_remote_work_store()), "distansarbete")

    assert [item.article.id for item in response.results] == ["title", "body"]
    first, second = response.results
    assert first.score == 1.0
    assert first.match_type == "exact-title"
    assert second.score <= 0.85
    assert second.match_type == "exact-content"
    assert response.mode == "hybrid"


def test_exact_scoring_flattens_rich_text_content():
    content = {"root": {"children": [{"children": [{"text": "Om Distansarbete"}]}]}}
    article = make_article("1", "Rutiner", content)

    assert score_exact_match(article, "distansarbete") == (0.85, "exact-content")
    assert score_exact_match(make_article("2", "Annat"), "distansarbete") == (0.5, "exact-content")


def test_article_in_both_sets_is_boosted_and_keeps_exact_match_type():
    store = _remote_work_store()
    response = _search(_engine(store, [internal_point("body", 0.6, text="best chunk")]), "distansarbete")

    merged = {item.article.id: item for item in response.results}["body"]
    assert merged.score == pytest.approx(0.85 + 0.6 * 0.2)
    assert merged.score >= max(0.85, 0.6)
    assert merged.match_type == "exact-content"
    assert merged.highlight_text == "best chunk"


def test_boosted_score_is_capped_at_one():
    response = _search(_engine(_remote_work_store(), [internal_point("title", 0.95)]), "distansarbete")

    assert response.results[0].score == 1.0


def test_semantic_only_hit_keeps_raw_score():
    store = _remote_work_store()
    store.articles.append(make_article("sem", "Hemarbete", "Arbete hemifrån."))
    response = _search(_engine(store, [internal_point("sem", 0.9)]), "distansarbete")

    semantic = [item for item in response.results if item.article.id == "sem"]
    assert len(semantic) == 1
    assert semantic[0].score == 0.9
    assert semantic[0].match_type == "semantic"
    assert store.hydrations == [(["sem"], True)]


def test_weak_semantic_only_hits_are_dropped_in_hybrid_mode():
    store = _remote_work_store()
    store.articles.append(make_article("weak", "Hemarbete"))
    response = _search(_engine(store, [internal_point("weak", 0.25)]), "distansarbete")

    assert "weak" not in [item.article.id for item in response.results]
    assert all(item.score >= 0.3 for item in response.results if item.match_type == "semantic")


def test_custom_floor_and_boost_are_honoured():
    store = _remote_work_store()
    store.articles.append(make_article("weak", "Hemarbete"))
    config = HybridScoringConfig(semantic_boost_weight=0.0, semantic_min_score=0.1)
    response = _search(_engine(store, [internal_point("weak", 0.25), internal_point("body", 0.6)], config=config), "distansarbete")

    by_id = {item.article.id: item for item in response.results}
    assert by_id["weak"].score == 0.25
    assert by_id["body"].score == 0.85


def test_unpublished_semantic_hits_are_not_returned():
    store = _remote_work_store()
    store.articles.append(make_article("draft", "Utkast", status="draft"))
    response = _search(_engine(store, [internal_point("draft", 0.9)]), "distansarbete")

    assert "draft" not in [item.article.id for item in response.results]


def test_semantic_mode_applies_no_floor():
    store = StubArticleStore([make_article("a", "A"), make_article("b", "B")])
    response = _search(
        _engine(store, [internal_point("a", 0.2), internal_point("b", 0.7)]), "hemarbete", mode="semantic"
    )

    assert [item.article.id for item in response.results] == ["b", "a"]
    assert response.mode == "semantic"
    assert response.timings.exact_ms is None


def test_exact_mode_is_idempotent():
    engine = _engine(_remote_work_store())

    first = _search(engine, "distansarbete", mode="exact")
    second = _search(engine, "distansarbete", mode="exact")

    assert [(r.article.id, r.match_type) for r in first.results] == [
        (r.article.id, r.match_type) for r in second.results
    ]
    assert first.results[0].score == 1.0
    assert first.timings.semantic_ms is None


def test_pagination_is_stable():
    articles = []
    for index in range(30):
        if index % 3 == 0:
            articles.append(make_article(f"t{index}", f"Policy {index} distans"))
        else:
            articles.append(make_article(f"c{index}", f"Dokument {index}", "om distans"))
    store = StubArticleStore(articles)
    points = [internal_point(f"c{index}", 0.5 + index / 100) for index in range(1, 30, 3)]
    engine = _engine(store, points)

    first = _search(engine, "distans", limit=10, offset=0)
    second = _search(engine, "distans", limit=10, offset=10)
    both = _search(engine, "distans", limit=20, offset=0)

    ids = [item.article.id for item in first.results + second.results]
    assert ids == [item.article.id for item in both.results]
    assert first.total == second.total == both.total == 30


def test_exact_search_uses_fixed_candidate_window():
    store = _remote_work_store()
    engine = _engine(store)

    _search(engine, "distansarbete", limit=5, offset=0)
    _search(engine, "distansarbete", limit=5, offset=5)

    assert {query.limit for query in store.queries} == {100}
    assert all(query.published_only for query in store.queries)


def test_exact_mode_total_matches_candidate_window():
    store = StubArticleStore([make_article(str(i), f"Distansarbete {i}") for i in range(250)])
    engine = _engine(store)

    middle = _search(engine, "distansarbete", mode="exact", limit=50, offset=50)
    beyond = _search(engine, "distansarbete", mode="exact", limit=50, offset=150)

    assert middle.total == beyond.total == 100
    assert len(middle.results) == 50
    assert beyond.results == []


class _WaitingStore(StubArticleStore):
    def __init__(self, articles, exact_started, semantic_started):
        super().__init__(articles)
        self.exact_started = exact_started
        self.semantic_started = semantic_started

    async def find_articles(self, query):
        self.exact_started.set()
        await self.semantic_started.wait()
        return await super().find_articles(query)


class _WaitingIndex(StubVectorIndex):
    def __init__(self, points, exact_started, semantic_started):
        super().__init__(points)
        self.exact_started = exact_started
        self.semantic_started = semantic_started

    async def search(self, collection, vector, *, limit, query_filter=None):
        self.semantic_started.set()
        await self.exact_started.wait()
        return await super().search(collection, vector, limit=limit, query_filter=query_filter)


def test_hybrid_runs_exact_and_semantic_concurrently():
    async def run():
        exact_started, semantic_started = asyncio.Event(), asyncio.Event()
        store = _WaitingStore(
            [make_article("a", "Distansarbete"), make_article("b", "Semester")], exact_started, semantic_started
        )
        index = _WaitingIndex([internal_point("b", 0.8)], exact_started, semantic_started)
        engine = HybridSearchEngine(
            ExactSearcher(store), SemanticSearcher(StubEmbedder(), index, ExternalSourceRegistry([])), store
        )
        # Each sub-search waits for the other to start; sequential execution never finishes.
        return await asyncio.wait_for(engine.search(HybridSearchRequest(query="distansarbete")), timeout=2)

    response = asyncio.run(run())

    assert [item.article.id for item in response.results] == ["a", "b"]


def test_vector_failure_degrades_to_exact_results():
    response = _search(
        _engine(_remote_work_store(), index_error=VectorStoreError("Collection does not exist")), "distansarbete"
    )

    assert [item.article.id for item in response.results] == ["title", "body"]
    assert response.total == 2


def test_embedding_failure_degrades_to_exact_results():
    response = _search(_engine(_remote_work_store(), embed_error=EmbeddingError("no key")), "distansarbete")

    assert len(response.results) == 2


def test_lexical_failure_fails_the_search():
    with pytest.raises(LexicalStoreError):
        _search(_engine(FailingStore()), "distansarbete")


def test_best_semantic_score_per_article_is_kept():
    hits = [
        SearchHit(id="1", title="A", text="low", score=0.4, article_id="a"),
        SearchHit(id="2", title="A", text="high", score=0.8, article_id="a"),
        SearchHit(id="3", title="X", text="ext", score=0.99, source="lagar"),
    ]

    best = best_semantic_scores(hits)

    assert list(best) == ["a"]
    assert best["a"].text == "high"


def test_merge_keeps_every_exact_hit_first_on_ties():
    exact = [make_article("x", "Annat"), make_article("y", "Övrigt")]

    merged = merge_results(exact, [], [], "saknas")

    assert [item.article.id for item in merged] == ["x", "y"]
    assert all(item.score == 0.5 for item in merged)
