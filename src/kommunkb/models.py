"""Shared domain models used across the kommunkb search and chat layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence, Union

MatchType = Literal["exact-title", "exact-content", "semantic"]
SearchMode = Literal["hybrid", "semantic", "exact"]
SourceType = Literal["internal", "external", "google"]

INTERNAL_SOURCE = "internal"


@dataclass(frozen=True)
class Department:
    """Department snapshot row as stored in the CMS."""

    id: str
    name: str
    slug: str
    parent_id: str | None = None
    full_path: str | None = None


@dataclass(frozen=True)
class DepartmentId:
    """Unpopulated department relation (only the id was returned)."""

    id: str


@dataclass(frozen=True)
class PopulatedDepartment:
    """Populated department relation."""

    department: Department

    @property
    def id(self) -> str:
        return self.department.id


DepartmentRef = Union[DepartmentId, PopulatedDepartment]


def _parse_department(value: Mapping[str, Any]) -> Department:
    parent = value.get("parent")
    parent_id: str | None
    if isinstance(parent, Mapping):
        parent_id = str(parent["id"]) if parent.get("id") is not None else None
    elif parent is None or parent == "":
        parent_id = None
    else:
        parent_id = str(parent)
    return Department(
        id=str(value["id"]),
        name=str(value.get("name") or ""),
        slug=str(value.get("slug") or ""),
        parent_id=parent_id,
        full_path=value.get("fullPath") or None,
    )


def parse_department_ref(value: object) -> DepartmentRef | None:
    """Narrow a raw relation value (id or populated object) to a DepartmentRef."""

    if value is None or value == "":
        return None
    if isinstance(value, Mapping):
        if value.get("id") is None:
            return None
        return PopulatedDepartment(_parse_department(value))
    return DepartmentId(str(value))


def parse_department(value: Mapping[str, Any]) -> Department:
    return _parse_department(value)


@dataclass(frozen=True)
class Article:
    """Hydrated article document from the lexical store."""

    id: str
    title: str
    slug: str | None = None
    content: Any = None
    summary: str | None = None
    author: str | None = None
    department: DepartmentRef | None = None
    document_type: str | None = None
    status: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict)

    @property
    def department_id(self) -> str | None:
        return self.department.id if self.department is not None else None

    @property
    def content_text(self) -> str:
        return flatten_rich_text(self.content)

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Article":
        return cls(
            id=str(doc["id"]),
            title=str(doc.get("title") or ""),
            slug=doc.get("slug"),
            content=doc.get("content"),
            summary=doc.get("summary"),
            author=doc.get("author"),
            department=parse_department_ref(doc.get("department")),
            document_type=doc.get("documentType"),
            status=doc.get("_status"),
            raw=dict(doc),
        )


def flatten_rich_text(value: Any) -> str:
    """Return plain text from a string or a Lexical JSON tree."""

    if value is None:
        return ""
    if isinstance(value, str):
        return value
    parts: list[str] = []
    _collect_text(value, parts)
    return " ".join(part for part in parts if part)


def _collect_text(node: Any, parts: list[str]) -> None:
    if isinstance(node, Mapping):
        text = node.get("text")
        if isinstance(text, str):
            parts.append(text)
        for key in ("root", "children"):
            child = node.get(key)
            if child is not None:
                _collect_text(child, parts)
    elif isinstance(node, (list, tuple)):
        for item in node:
            _collect_text(item, parts)


@dataclass(frozen=True)
class SearchHit:
    """One scored retrieval result from a vector index."""

    id: str
    title: str
    text: str
    score: float
    article_id: str = ""
    source: str = INTERNAL_SOURCE
    department: str | None = None
    document_type: str | None = None
    url: str = ""
    slug: str | None = None

    @property
    def is_external(self) -> bool:
        return self.source != INTERNAL_SOURCE


@dataclass
class HybridResult:
    """Article-level result after merging exact and semantic search."""

    article: Article
    score: float
    match_type: MatchType
    highlight_text: str | None = None


@dataclass(frozen=True)
class SearchTimings:
    exact_ms: float | None = None
    semantic_ms: float | None = None
    total_ms: float = 0.0


@dataclass(frozen=True)
class HybridSearchResponse:
    results: Sequence[HybridResult]
    total: int
    mode: SearchMode
    timings: SearchTimings
    external_hits: Sequence[SearchHit] = ()


@dataclass(frozen=True)
class SourceMetadata:
    """Citation record returned alongside a chat answer."""

    type: SourceType
    title: str
    url: str
    source: str | None = None
    source_label: str | None = None
    source_icon: str | None = None
    source_color: str | None = None
    department: str | None = None
    document_type: str | None = None
    is_sub_source: bool | None = None


def dedupe_sources(sources: Sequence[SourceMetadata]) -> list[SourceMetadata]:
    """Keep the first entry per URL, preserving order."""

    seen: set[str] = set()
    ordered: list[SourceMetadata] = []
    for item in sources:
        if not item.url or item.url in seen:
            continue
        seen.add(item.url)
        ordered.append(item)
    return ordered


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["user", "assistant"]
    content: str


@dataclass(frozen=True)
class ArticleContext:
    """Document a chat session is scoped to."""

    id: str
    title: str
    slug: str | None = None
    content: Any = None
    summary: str | None = None


@dataclass(frozen=True)
class ChatRequest:
    message: str
    department_ids: Sequence[str] = ()
    external_source_ids: Sequence[str] = ()
    use_google_grounding: bool = False
    history: Sequence[ChatMessage] = ()
    article_context: ArticleContext | None = None

    @property
    def has_knowledge_base_sources(self) -> bool:
        return bool(self.department_ids) or bool(self.external_source_ids) or self.article_context is not None


@dataclass(frozen=True)
class ChatResponse:
    response: str
    sources: Sequence[SourceMetadata]
    search_queries: Sequence[str] = ()
    turns: int = 0
