"""Hand-written collaborators shared by the test modules."""

from __future__ import annotations

from typing import Any, Callable, Sequence

from kommunkb.embeddings.store import VectorHit
from kommunkb.errors import LexicalStoreError
from kommunkb.models import Article, Department, DepartmentId, PopulatedDepartment
from kommunkb.services.generation import FunctionCall, GenerationRequest, GenerationResult
from kommunkb.store.payload import ArticlePage, ArticleQuery


def make_article(
    article_id: str,
    title: str,
    content: Any = "",
    *,
    department: Department | str | None = "1",
    status: str = "published",
    slug: str | None = None,
    summary: str | None = None,
) -> Article:
    if isinstance(department, Department):
        ref = PopulatedDepartment(department)
    elif department is None:
        ref = None
    else:
        ref = DepartmentId(department)
    return Article(
        id=article_id,
        title=title,
        slug=slug or f"article-{article_id}",
        content=content,
        summary=summary,
        department=ref,
        status=status,
    )


class StubArticleStore:
    def __init__(
        self,
        articles: Sequence[Article] = (),
        departments: Sequence[Department] = (),
        *,
        error: Exception | None = None,
    ) -> None:
        self.articles = list(articles)
        self.departments = list(departments)
        self.error = error
        self.queries: list[ArticleQuery] = []
        self.hydrations: list[tuple[list[str], bool]] = []

    def _matches(self, article: Article, query: ArticleQuery) -> bool:
        if query.published_only and article.status != "published":
            return False
        if query.department_ids and article.department_id not in query.department_ids:
            return False
        text = (query.text or "").strip().casefold()
        if not text:
            return True
        fields = (article.title, article.content_text, article.summary or "", article.author or "")
        return any(text in value.casefold() for value in fields)

    async def find_articles(self, query: ArticleQuery) -> ArticlePage:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        matched = [article for article in self.articles if self._matches(article, query)]
        start = (query.page - 1) * query.limit
        docs = matched[start : start + query.limit]
        total_pages = max((len(matched) + query.limit - 1) // query.limit, 1)
        return ArticlePage(
            docs=docs,
            total_docs=len(matched),
            page=query.page,
            total_pages=total_pages,
            has_next_page=query.page < total_pages,
            has_prev_page=query.page > 1,
        )

    async def get_articles(self, article_ids: Sequence[str], *, published_only: bool = True) -> Sequence[Article]:
        self.hydrations.append((list(article_ids), published_only))
        if self.error is not None:
            raise self.error
        wanted = set(article_ids)
        return [
            article
            for article in self.articles
            if article.id in wanted and (not published_only or article.status == "published")
        ]

    async def list_departments(self) -> Sequence[Department]:
        if self.error is not None:
            raise self.error
        return list(self.departments)


class FailingStore(StubArticleStore):
    def __init__(self) -> None:
        super().__init__(error=LexicalStoreError("store down"))


class StubEmbedder:
    def __init__(self, *, error: Exception | None = None, dim: int = 4) -> None:
        self.error = error
        self.dim = dim
        self.calls: list[str] = []

    async def embed(self, text: str) -> tuple[float, ...]:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return tuple(0.5 for _ in range(self.dim))


class StubVectorIndex:
    def __init__(
        self,
        points: Sequence[VectorHit] | Callable[..., Sequence[VectorHit]] = (),
        *,
        error: Exception | None = None,
    ) -> None:
        self.points = points
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def search(self, collection, vector, *, limit, query_filter=None):
        self.calls.append({"collection": collection, "limit": limit, "query_filter": query_filter})
        if self.error is not None:
            raise self.error
        points = self.points(collection, query_filter) if callable(self.points) else self.points
        return list(points)[:limit]

    async def aclose(self) -> None:
        self.closed = True


def internal_point(article_id: str, score: float, *, title: str = "", text: str = "chunk", **payload: Any) -> VectorHit:
    data = {
        "articleId": article_id,
        "title": title or f"Article {article_id}",
        "text": text,
        "slug": f"article-{article_id}",
        "departmentPath": "hr",
        "department": {"id": 1, "name": "HR"},
    }
    data.update(payload)
    return VectorHit(id=f"{article_id}-chunk", score=score, payload=data)


class ScriptedGenerator:
    """Returns queued results in order; an exception in the queue is raised."""

    def __init__(self, results: Sequence[GenerationResult | Exception] = ()) -> None:
        self.results = list(results)
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if not self.results:
            return GenerationResult()
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class AlwaysSearchGenerator:
    """Calls the search tool whenever it is offered, otherwise answers."""

    def __init__(self, answer: str = "Final answer") -> None:
        self.answer = answer
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if request.tool_mode == "knowledge":
            return GenerationResult(
                function_calls=[FunctionCall(name="searchKnowledge", args={"query": f"q{len(self.requests)}"})]
            )
        return GenerationResult(text=self.answer)
