"""Pydantic models for the kommunkb API."""

from __future__ import annotations

from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SearchResultModel(_ApiModel):
    id: str
    title: str
    slug: Optional[str] = None
    summary: Optional[str] = None
    author: Optional[str] = None
    department_id: Optional[str] = Field(default=None, alias="departmentId")
    department: Optional[str] = Field(default=None, description="Department name when the relation is populated")
    document_type: Optional[str] = Field(default=None, alias="documentType")
    score: Optional[float] = None
    match_type: Optional[Literal["exact-title", "exact-content", "semantic"]] = Field(default=None, alias="matchType")
    highlight_text: Optional[str] = Field(default=None, alias="highlightText")


class ExternalResultModel(_ApiModel):
    id: str
    title: str
    url: str
    score: float
    source: str
    source_label: str = Field(..., alias="sourceLabel")
    document_type: Optional[str] = Field(default=None, alias="documentType")
    text: str = ""


class TimingsModel(_ApiModel):
    exact_ms: Optional[float] = Field(default=None, alias="exactMs")
    semantic_ms: Optional[float] = Field(default=None, alias="semanticMs")
    total_ms: float = Field(..., alias="totalMs")


class SearchResponse(_ApiModel):
    results: List[SearchResultModel]
    total: int = Field(..., ge=0)
    mode: Literal["hybrid", "semantic", "exact"]
    timings: Optional[TimingsModel] = None
    external_results: List[ExternalResultModel] = Field(default_factory=list, alias="externalResults")


class DepartmentArticlesResponse(_ApiModel):
    """Payload-style page of articles for one department."""

    docs: List[SearchResultModel]
    total_docs: int = Field(..., alias="totalDocs")
    page: int
    limit: int
    total_pages: int = Field(..., alias="totalPages")
    has_next_page: bool = Field(..., alias="hasNextPage")
    has_prev_page: bool = Field(..., alias="hasPrevPage")
    mode: Optional[Literal["hybrid", "semantic", "exact"]] = None


class ArticleContextModel(_ApiModel):
    id: Union[str, int]
    title: str
    slug: Optional[str] = None
    content: Any = None
    summary: Optional[str] = None


class ChatRequestModel(_ApiModel):
    message: Optional[str] = Field(default=None, description="End-user message")
    department_ids: List[Union[str, int]] = Field(default_factory=list, alias="departmentIds")
    external_source_ids: List[Any] = Field(default_factory=list, alias="externalSourceIds")
    use_google_grounding: bool = Field(default=False, alias="useGoogleGrounding")
    # Entries are filtered server-side; malformed ones are dropped, not rejected.
    history: List[Any] = Field(default_factory=list)
    article_context: Optional[ArticleContextModel] = Field(default=None, alias="articleContext")


class SourceModel(_ApiModel):
    type: Literal["internal", "external", "google"]
    title: str
    url: str
    source: Optional[str] = None
    source_label: Optional[str] = Field(default=None, alias="sourceLabel")
    source_icon: Optional[str] = Field(default=None, alias="sourceIcon")
    source_color: Optional[str] = Field(default=None, alias="sourceColor")
    department: Optional[str] = None
    document_type: Optional[str] = Field(default=None, alias="documentType")
    is_sub_source: Optional[bool] = Field(default=None, alias="isSubSource")


class ChatResponseModel(_ApiModel):
    response: str
    sources: List[SourceModel]
    department_ids: List[str] = Field(..., alias="departmentIds")
    external_source_ids: List[str] = Field(..., alias="externalSourceIds")
    search_queries: List[str] = Field(default_factory=list, alias="searchQueries")


class SubSourceModel(_ApiModel):
    id: str
    label: str


class ExternalSourceModel(_ApiModel):
    id: str
    label: str
    icon: Optional[str] = None
    color: Optional[str] = None
    sub_sources: List[SubSourceModel] = Field(default_factory=list, alias="subSources")


class DepartmentNode(_ApiModel):
    id: str
    name: str
    slug: str
    full_path: str = Field(..., alias="fullPath")
    children: List["DepartmentNode"] = Field(default_factory=list)


class ChatOptionsResponse(_ApiModel):
    departments: List[DepartmentNode]
    external_sources: List[ExternalSourceModel] = Field(..., alias="externalSources")
    google_grounding_enabled: bool = Field(..., alias="googleGroundingEnabled")


DepartmentNode.model_rebuild()
