"""Lexical article store backed by the Payload CMS REST API."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

import httpx

from kommunkb.errors import LexicalStoreError
from kommunkb.metrics.observability import get_logger
from kommunkb.models import Article, Department, parse_department

PUBLISHED = "published"
KEYWORD_FIELDS = ("title", "content", "summary", "author")


@dataclass(frozen=True)
class ArticleQuery:
    """Structured article lookup: keyword predicate plus filters."""

    text: str | None = None
    department_ids: Sequence[str] = ()
    published_only: bool = True
    limit: int = 50
    page: int = 1
    sort: str | None = "-updatedAt"


@dataclass(frozen=True)
class ArticlePage:
    docs: Sequence[Article]
    total_docs: int
    page: int = 1
    total_pages: int = 1
    has_next_page: bool = False
    has_prev_page: bool = False


class ArticleStore(Protocol):
    """Read-only view of the system of record for articles and departments."""

    async def find_articles(self, query: ArticleQuery) -> ArticlePage:
        """Return one page of articles matching the query."""

    async def get_articles(self, article_ids: Sequence[str], *, published_only: bool = True) -> Sequence[Article]:
        """Hydrate articles by id in a single batch call."""

    async def list_departments(self) -> Sequence[Department]:
        """Return every department row."""


def build_where(query: ArticleQuery) -> dict[str, Any]:
    where: dict[str, Any] = {}
    if query.published_only:
        where["_status"] = {"equals": PUBLISHED}
    if len(query.department_ids) == 1:
        where["department"] = {"equals": query.department_ids[0]}
    elif query.department_ids:
        where["department"] = {"in": list(query.department_ids)}
    text = (query.text or "").strip()
    if text:
        where["or"] = [{name: {"contains": text}} for name in KEYWORD_FIELDS]
    return where


def encode_where(where: Mapping[str, Any], prefix: str = "where") -> list[tuple[str, str]]:
    """Flatten a nested where clause into Payload's bracketed query params."""

    params: list[tuple[str, str]] = []
    for key, value in where.items():
        name = f"{prefix}[{key}]"
        if isinstance(value, Mapping):
            params.extend(encode_where(value, name))
        elif isinstance(value, (list, tuple)):
            if key in ("or", "and"):
                for index, clause in enumerate(value):
                    params.extend(encode_where(clause, f"{name}[{index}]"))
            else:
                params.append((name, ",".join(str(item) for item in value)))
        elif isinstance(value, bool):
            params.append((name, "true" if value else "false"))
        else:
            params.append((name, str(value)))
    return params


@dataclass(frozen=True)
class PayloadConfig:
    base_url: str
    api_key: str | None = None
    timeout_seconds: float = 15.0
    articles_collection: str = "articles"
    departments_collection: str = "departments"
    depth: int = 3
    headers: Mapping[str, str] = field(default_factory=dict)


class PayloadArticleStore:
    """Article store querying Payload's ``/api/<collection>`` endpoints."""

    def __init__(self, config: PayloadConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        headers = dict(config.headers)
        if config.api_key:
            headers["Authorization"] = f"users API-Key {config.api_key}"
        self._headers = headers
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.timeout_seconds,
        )
        self._logger = get_logger("store.payload")

    async def _get(self, collection: str, params: list[tuple[str, str]]) -> Mapping[str, Any]:
        try:
            response = await self._client.get(f"/api/{collection}", params=params, headers=self._headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            self._logger.error(
                "payload.request_failed",
                collection=collection,
                status_code=exc.response.status_code,
            )
            raise LexicalStoreError(
                f"Article store returned {exc.response.status_code} for {collection}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            self._logger.error("payload.unreachable", collection=collection, detail=str(exc))
            raise LexicalStoreError(f"Article store unavailable: {exc}") from exc

    async def find_articles(self, query: ArticleQuery) -> ArticlePage:
        params = encode_where(build_where(query))
        params.extend(
            [
                ("depth", str(self._config.depth)),
                ("limit", str(query.limit)),
                ("page", str(query.page)),
            ]
        )
        if query.sort:
            params.append(("sort", query.sort))
        body = await self._get(self._config.articles_collection, params)
        return _page_from_body(body)

    async def get_articles(self, article_ids: Sequence[str], *, published_only: bool = True) -> Sequence[Article]:
        ids = [str(article_id) for article_id in article_ids if article_id not in (None, "")]
        if not ids:
            return []
        where: dict[str, Any] = {"id": {"in": ids}}
        if published_only:
            where["_status"] = {"equals": PUBLISHED}
        params = encode_where(where)
        params.extend([("depth", str(self._config.depth)), ("limit", str(len(ids)))])
        body = await self._get(self._config.articles_collection, params)
        return _page_from_body(body).docs

    async def list_departments(self) -> Sequence[Department]:
        params = [("depth", "0"), ("limit", "1000"), ("pagination", "false")]
        body = await self._get(self._config.departments_collection, params)
        return [parse_department(doc) for doc in body.get("docs", []) if isinstance(doc, Mapping)]

    async def aclose(self) -> None:
        await self._client.aclose()


def _page_from_body(body: Mapping[str, Any]) -> ArticlePage:
    docs = [Article.from_document(doc) for doc in body.get("docs", []) if isinstance(doc, Mapping)]
    return ArticlePage(
        docs=docs,
        total_docs=int(body.get("totalDocs", len(docs))),
        page=int(body.get("page") or 1),
        total_pages=int(body.get("totalPages") or 1),
        has_next_page=bool(body.get("hasNextPage", False)),
        has_prev_page=bool(body.get("hasPrevPage", False)),
    )
