"""Knowledge search tool exposed to the chat model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from kommunkb.models import SearchHit, SourceMetadata, dedupe_sources
from kommunkb.retrieval.semantic import SemanticSearcher
from kommunkb.sources.registry import ExternalSourceRegistry

SEARCH_KNOWLEDGE_TOOL = "searchKnowledge"
SEARCH_KNOWLEDGE_DESCRIPTION = "Search the knowledge base for relevant information to answer user questions"
QUERY_PARAMETER_DESCRIPTION = "The search query to find relevant information"


@dataclass(frozen=True)
class KnowledgeSearchOutput:
    """Prompt-ready text plus the structured hits it was built from."""

    formatted: str
    hits: Sequence[SearchHit]

    @property
    def internal_count(self) -> int:
        return sum(1 for hit in self.hits if not hit.is_external)

    @property
    def external_count(self) -> int:
        return sum(1 for hit in self.hits if hit.is_external)

    @property
    def is_empty(self) -> bool:
        return not self.hits


class KnowledgeSearchTool:
    """``searchKnowledge(query)`` over the caller's selected sources."""

    name = SEARCH_KNOWLEDGE_TOOL
    description = SEARCH_KNOWLEDGE_DESCRIPTION

    def __init__(
        self,
        searcher: SemanticSearcher,
        registry: ExternalSourceRegistry,
        *,
        result_cap: int = 10,
        excerpt_chars: int = 500,
    ) -> None:
        self._searcher = searcher
        self._registry = registry
        self._result_cap = result_cap
        self._excerpt_chars = excerpt_chars

    async def run(
        self,
        query: str,
        *,
        department_ids: Sequence[str] = (),
        external_source_ids: Sequence[str] = (),
    ) -> KnowledgeSearchOutput:
        hits = await self._searcher.search(
            query,
            department_ids=department_ids,
            external_source_ids=external_source_ids,
            limit=self._result_cap,
        )
        return KnowledgeSearchOutput(formatted=self.format_hits(hits), hits=hits)

    def _excerpt(self, text: str) -> str:
        if len(text) <= self._excerpt_chars:
            return text
        return text[: self._excerpt_chars] + "..."

    def format_hits(self, hits: Sequence[SearchHit]) -> str:
        if not hits:
            return "No relevant information found in the knowledge base."
        blocks = []
        for index, hit in enumerate(hits, start=1):
            if hit.is_external:
                label, _, _ = self._registry.describe(hit.source)
                lines = [f"**Result {index}:** [External Source: {label}]"]
            else:
                lines = [f"**Result {index}:** [Internal Knowledge Base]"]
            lines.append(f"Title: {hit.title}")
            lines.append(f"Article URL: {hit.url or 'URL not available'}")
            if not hit.is_external:
                lines.append(f"Department: {hit.department or 'N/A'}")
            lines.append(f"Document Type: {hit.document_type or 'N/A'}")
            lines.append(f"Relevance Score: {hit.score:.2f}")
            lines.append("")
            lines.append("Content excerpt:")
            lines.append(self._excerpt(hit.text))
            lines.append("---")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)

    def source_metadata(self, hits: Sequence[SearchHit]) -> list[SourceMetadata]:
        """Citation records for hits with a usable URL, deduplicated by URL."""

        sources: list[SourceMetadata] = []
        for hit in hits:
            if not hit.url:
                continue
            if hit.is_external:
                label, is_sub, parent = self._registry.describe(hit.source)
                sources.append(
                    SourceMetadata(
                        type="external",
                        title=hit.title,
                        url=hit.url,
                        source=hit.source,
                        source_label=label,
                        source_icon=parent.icon if parent else None,
                        source_color=parent.color if parent else None,
                        document_type=hit.document_type,
                        is_sub_source=is_sub,
                    )
                )
            else:
                sources.append(
                    SourceMetadata(
                        type="internal",
                        title=hit.title,
                        url=hit.url,
                        department=hit.department,
                        document_type=hit.document_type,
                    )
                )
        return dedupe_sources(sources)
