"""Adapter for web-grounding citation metadata.

The metadata shape is provider specific and not guaranteed stable, so every
lookup probes both attribute and mapping access in snake_case and camelCase.
Missing or malformed metadata yields no citations rather than an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence
from urllib.parse import urlparse

from kommunkb.models import SourceMetadata, dedupe_sources


@dataclass(frozen=True)
class GroundingCitation:
    title: str
    url: str


def _field(obj: Any, *names: str) -> Any:
    if obj is None:
        return None
    for name in names:
        if isinstance(obj, Mapping):
            value = obj.get(name)
        else:
            value = getattr(obj, name, None)
        if value is not None:
            return value
    return None


def _as_list(value: Any) -> list[Any]:
    if value is None or isinstance(value, (str, bytes, Mapping)):
        return []
    try:
        return list(value)
    except TypeError:
        return []


def find_grounding_metadata(response: Any) -> Any | None:
    """Locate grounding metadata on a generation response, wherever it lives."""

    for candidate in _as_list(_field(response, "candidates"))[:1]:
        metadata = _field(candidate, "grounding_metadata", "groundingMetadata")
        if metadata is not None:
            return metadata
    return _field(response, "grounding_metadata", "groundingMetadata")


def _chunk_citation(chunk: Any) -> GroundingCitation | None:
    target = _field(chunk, "web") or _field(chunk, "retrieved_context", "retrievedContext")
    url = _field(target, "uri", "url")
    if not url:
        return None
    title = _field(target, "title") or _field(target, "domain") or urlparse(str(url)).netloc or str(url)
    return GroundingCitation(title=str(title), url=str(url))


def _support_indices(supports: Iterable[Any]) -> list[int]:
    ordered: list[int] = []
    for support in supports:
        for index in _as_list(_field(support, "grounding_chunk_indices", "groundingChunkIndices")):
            if isinstance(index, int) and index not in ordered:
                ordered.append(index)
    return ordered


def extract_grounding_citations(metadata: Any) -> list[GroundingCitation]:
    """Deduplicated citations, ordered by first use in the grounding supports.

    Chunks that no support references are appended after the referenced ones.
    """

    chunks = _as_list(_field(metadata, "grounding_chunks", "groundingChunks"))
    if not chunks:
        return []
    supports = _as_list(_field(metadata, "grounding_supports", "groundingSupports"))
    order = [index for index in _support_indices(supports) if 0 <= index < len(chunks)]
    order.extend(index for index in range(len(chunks)) if index not in order)

    citations: list[GroundingCitation] = []
    seen: set[str] = set()
    for index in order:
        citation = _chunk_citation(chunks[index])
        if citation is None or citation.url in seen:
            continue
        seen.add(citation.url)
        citations.append(citation)
    return citations


def grounding_sources(citations: Sequence[GroundingCitation]) -> list[SourceMetadata]:
    return dedupe_sources(
        [SourceMetadata(type="google", title=citation.title, url=citation.url) for citation in citations]
    )
