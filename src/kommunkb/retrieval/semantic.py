"""Semantic search over the internal index and federated external sources."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Mapping, Sequence
from urllib.parse import urljoin

from qdrant_client.http.models import FieldCondition, Filter, MatchAny

from kommunkb.embeddings.service import EmbeddingBackend
from kommunkb.embeddings.store import VectorHit, VectorIndex
from kommunkb.errors import VectorStoreError
from kommunkb.metrics.observability import PipelineMetrics, TimedSection, get_logger
from kommunkb.models import INTERNAL_SOURCE, SearchHit
from kommunkb.sources.registry import ExternalSourceRegistry, SourceSelection, get_nested_value

UNTITLED = "Untitled"


@dataclass(frozen=True)
class SemanticSearchConfig:
    collection: str = "articles"
    per_source_limit: int = 10
    department_filter_key: str = "department.id"


def _filter_values(values: Sequence[str]) -> list[int] | list[str]:
    # Qdrant matches on the stored type; CMS department ids are stored as integers.
    if values and all(str(value).isdigit() for value in values):
        return [int(value) for value in values]
    return [str(value) for value in values]


def _department_label(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, Mapping):
        name = value.get("name") or value.get("title")
        return str(name) if name else None
    return str(value)


def internal_hit(hit: VectorHit) -> SearchHit:
    """Shape an internal index point into a SearchHit with a resolvable URL."""

    payload = hit.payload
    slug = payload.get("slug") or None
    department_path = payload.get("departmentPath") or None
    url = f"/{str(department_path).strip('/')}/{slug}" if slug and department_path else ""
    article_id = payload.get("articleId")
    return SearchHit(
        id=hit.id,
        title=str(payload.get("title") or UNTITLED),
        text=str(payload.get("text") or ""),
        score=hit.score,
        article_id="" if article_id is None else str(article_id),
        source=INTERNAL_SOURCE,
        department=_department_label(payload.get("department")),
        document_type=payload.get("documentType") or None,
        url=url,
        slug=slug,
    )


def external_hit(hit: VectorHit, selection: SourceSelection) -> SearchHit:
    """Shape a federated point using the source's field mapping."""

    source = selection.source
    mapping = source.mapping
    payload = hit.payload
    raw_url = get_nested_value(payload, mapping.url)
    url = str(raw_url) if raw_url else ""
    if url and source.url_base and not url.startswith(("http://", "https://")):
        url = urljoin(source.url_base.rstrip("/") + "/", url.lstrip("/"))
    source_id = source.id
    if source.is_hierarchical:
        sub_value = get_nested_value(payload, source.filter_field)
        if sub_value is not None and source.sub_source(str(sub_value)) is not None:
            source_id = f"{source.id}.{sub_value}"
    content = get_nested_value(payload, mapping.content)
    document_type = get_nested_value(payload, mapping.document_type) if mapping.document_type else None
    return SearchHit(
        id=hit.id,
        title=str(get_nested_value(payload, mapping.title) or UNTITLED),
        text="" if content is None else str(content),
        score=hit.score,
        article_id="",
        source=source_id,
        department=None,
        document_type=str(document_type) if document_type else None,
        url=url,
    )


class SemanticSearcher:
    """Embeds a query once and fans it out to every selected index.

    Individual index failures are logged and skipped; if every queried index
    fails a :class:`VectorStoreError` is raised so callers can degrade.
    """

    def __init__(
        self,
        embedder: EmbeddingBackend,
        internal_index: VectorIndex,
        registry: ExternalSourceRegistry,
        config: SemanticSearchConfig | None = None,
    ) -> None:
        self._embedder = embedder
        self._internal = internal_index
        self._registry = registry
        self._config = config or SemanticSearchConfig()
        self._logger = get_logger("search.semantic")

    async def search(
        self,
        query: str,
        *,
        department_ids: Sequence[str] = (),
        external_source_ids: Sequence[str] = (),
        include_internal: bool | None = None,
        limit: int | None = None,
    ) -> list[SearchHit]:
        per_source = limit or self._config.per_source_limit
        if include_internal is None:
            include_internal = bool(department_ids) or not external_source_ids
        selections = self._registry.resolve(external_source_ids) if external_source_ids else []
        if not include_internal and not selections:
            return []

        with TimedSection() as timer:
            vector = await self._embedder.embed(query)
            labels: list[str] = []
            calls = []
            if include_internal:
                labels.append(INTERNAL_SOURCE)
                calls.append(self._search_internal(vector, department_ids, per_source))
            for selection in selections:
                labels.append(selection.source.id)
                calls.append(self._search_external(vector, selection, per_source))
            outcomes = await asyncio.gather(*calls, return_exceptions=True)

        hits: list[SearchHit] = []
        failures: list[str] = []
        for label, outcome in zip(labels, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                failures.append(label)
                self._logger.warning("search.semantic.source_failed", source=label, detail=str(outcome))
                continue
            hits.extend(outcome)
        if failures and len(failures) == len(labels):
            raise VectorStoreError(f"All vector sources failed: {', '.join(failures)}")

        hits.sort(key=lambda item: item.score, reverse=True)
        PipelineMetrics.observe_search("semantic", timer.elapsed, len(hits), (hit.score for hit in hits))
        self._logger.info(
            "search.semantic.complete",
            query=query,
            sources=labels,
            failed_sources=failures,
            result_count=len(hits),
            duration_ms=timer.elapsed_ms,
        )
        return hits

    async def _search_internal(
        self, vector: Sequence[float], department_ids: Sequence[str], limit: int
    ) -> list[SearchHit]:
        query_filter = None
        if department_ids:
            query_filter = Filter(
                must=[
                    FieldCondition(
                        key=self._config.department_filter_key,
                        match=MatchAny(any=_filter_values(department_ids)),
                    )
                ]
            )
        points = await self._internal.search(
            self._config.collection, vector, limit=limit, query_filter=query_filter
        )
        return [internal_hit(point) for point in points]

    async def _search_external(
        self, vector: Sequence[float], selection: SourceSelection, limit: int
    ) -> list[SearchHit]:
        query_filter = None
        if not selection.whole_source:
            query_filter = Filter(
                must=[
                    FieldCondition(
                        key=selection.source.filter_field,
                        match=MatchAny(any=[str(value) for value in selection.sub_source_ids]),
                    )
                ]
            )
        index = self._registry.index_for(selection.source)
        points = await index.search(selection.source.collection, vector, limit=limit, query_filter=query_filter)
        return [external_hit(point, selection) for point in points]
