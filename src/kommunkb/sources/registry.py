"""Registry of federated (external) vector sources."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kommunkb.embeddings.store import QdrantConnection, QdrantVectorIndex, VectorIndex
from kommunkb.metrics.observability import get_logger

DEFAULT_URL_PATH = "metadata.url"
DEFAULT_TITLE_PATH = "metadata.title"
DEFAULT_CONTENT_PATH = "content"
DEFAULT_FILTER_FIELD = "metadata.filter_id"

logger = get_logger("sources")


class _ConfigModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class SourceMapping(_ConfigModel):
    """Dot-notation paths used to read fields out of stored payloads."""

    url: str = DEFAULT_URL_PATH
    title: str = DEFAULT_TITLE_PATH
    content: str = DEFAULT_CONTENT_PATH
    description: Optional[str] = None
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    document_type: Optional[str] = Field(default=None, alias="documentType")
    filter_field: Optional[str] = Field(default=None, alias="filterField")


class SubSource(_ConfigModel):
    id: str
    label: str


class ExternalSourceConfig(_ConfigModel):
    """Static description of one federated vector collection."""

    id: str
    label: str
    collection: str
    qdrant_url: str = Field(alias="qdrantUrl")
    qdrant_api_key: Optional[str] = Field(default=None, alias="qdrantApiKey")
    url_base: Optional[str] = Field(default=None, alias="urlBase")
    mapping: SourceMapping = Field(default_factory=SourceMapping)
    sub_sources: tuple[SubSource, ...] = Field(default=(), alias="subSources")
    icon: Optional[str] = None
    color: Optional[str] = None
    enabled: bool = True

    @property
    def is_hierarchical(self) -> bool:
        return bool(self.sub_sources)

    @property
    def filter_field(self) -> str:
        return self.mapping.filter_field or DEFAULT_FILTER_FIELD

    def sub_source(self, sub_id: str) -> SubSource | None:
        for sub in self.sub_sources:
            if sub.id == sub_id:
                return sub
        return None

    def connection(self, timeout_seconds: int = 30) -> QdrantConnection:
        return QdrantConnection(url=self.qdrant_url, api_key=self.qdrant_api_key, timeout_seconds=timeout_seconds)


def _with_default_mapping(raw: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(raw)
    mapping = dict(data.get("mapping") or {})
    # Empty strings count as "not provided".
    mapping["url"] = mapping.get("url") or DEFAULT_URL_PATH
    mapping["title"] = mapping.get("title") or DEFAULT_TITLE_PATH
    mapping["content"] = mapping.get("content") or DEFAULT_CONTENT_PATH
    if data.get("subSources") and not mapping.get("filterField"):
        mapping["filterField"] = DEFAULT_FILTER_FIELD
    data["mapping"] = mapping
    return data


def parse_external_sources(raw_json: str | None) -> list[ExternalSourceConfig]:
    """Parse the JSON source list, dropping disabled and malformed entries."""

    if not raw_json or not raw_json.strip():
        return []
    try:
        items = json.loads(raw_json)
    except json.JSONDecodeError as exc:
        logger.error("sources.config_invalid_json", detail=str(exc))
        return []
    if not isinstance(items, list):
        logger.error("sources.config_not_a_list", kind=type(items).__name__)
        return []
    sources: list[ExternalSourceConfig] = []
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            logger.error("sources.config_entry_invalid", index=index)
            continue
        if item.get("enabled") is False:
            continue
        try:
            sources.append(ExternalSourceConfig.model_validate(_with_default_mapping(item)))
        except ValidationError as exc:
            logger.error("sources.config_entry_invalid", index=index, detail=str(exc))
    return sources


def get_nested_value(payload: Any, path: str) -> Any:
    """Read ``a.b.c`` from nested mappings, returning None on any miss."""

    current = payload
    for key in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


@dataclass(frozen=True)
class SourceSelection:
    """Resolved selection for one external source."""

    source: ExternalSourceConfig
    sub_source_ids: tuple[str, ...] = ()

    @property
    def whole_source(self) -> bool:
        return not self.sub_source_ids


IndexFactory = Callable[[ExternalSourceConfig], VectorIndex]


class ExternalSourceRegistry:
    """Immutable source catalog plus a process-lifetime client cache.

    Clients are created once per source id and reused by every request. The
    cache is never refreshed on its own; callers that reload configuration
    must call :meth:`invalidate`.
    """

    def __init__(
        self,
        sources: Iterable[ExternalSourceConfig],
        *,
        index_factory: IndexFactory | None = None,
        timeout_seconds: int = 30,
    ) -> None:
        by_id: dict[str, ExternalSourceConfig] = {}
        for source in sources:
            # Last entry wins on id collisions.
            by_id[source.id] = source
        self._sources = by_id
        self._timeout_seconds = timeout_seconds
        self._index_factory = index_factory or self._default_factory
        self._clients: dict[str, VectorIndex] = {}

    @classmethod
    def from_json(cls, raw_json: str | None, **kwargs: Any) -> "ExternalSourceRegistry":
        return cls(parse_external_sources(raw_json), **kwargs)

    def _default_factory(self, source: ExternalSourceConfig) -> VectorIndex:
        return QdrantVectorIndex(source.connection(self._timeout_seconds))

    def get_external_sources(self) -> list[ExternalSourceConfig]:
        return list(self._sources.values())

    def get(self, source_id: str) -> ExternalSourceConfig | None:
        return self._sources.get(source_id)

    def is_valid_id(self, source_id: str) -> bool:
        if source_id in self._sources:
            return True
        parent_id, sep, sub_id = source_id.partition(".")
        if not sep:
            return False
        parent = self._sources.get(parent_id)
        return parent is not None and parent.is_hierarchical and parent.sub_source(sub_id) is not None

    def validate_external_source_ids(self, source_ids: Sequence[str]) -> list[str]:
        """Keep known ids in request order; unknown ids are logged and dropped."""

        valid: list[str] = []
        invalid: list[str] = []
        for source_id in source_ids:
            if not isinstance(source_id, str):
                invalid.append(repr(source_id))
                continue
            if self.is_valid_id(source_id):
                if source_id not in valid:
                    valid.append(source_id)
            else:
                invalid.append(source_id)
        if invalid:
            logger.warning("sources.invalid_ids", invalid=invalid, kept=valid)
        return valid

    def resolve(self, source_ids: Sequence[str]) -> list[SourceSelection]:
        """Group validated ids per parent source.

        Selecting a whole source supersedes any of its sub-source selections.
        """

        whole: set[str] = set()
        subs: dict[str, list[str]] = {}
        order: list[str] = []
        for source_id in self.validate_external_source_ids(source_ids):
            if source_id in self._sources:
                parent_id = source_id
                whole.add(parent_id)
            else:
                parent_id, _, sub_id = source_id.partition(".")
                subs.setdefault(parent_id, []).append(sub_id)
            if parent_id not in order:
                order.append(parent_id)
        selections: list[SourceSelection] = []
        for parent_id in order:
            source = self._sources[parent_id]
            if parent_id in whole:
                selections.append(SourceSelection(source))
            else:
                selections.append(SourceSelection(source, tuple(subs.get(parent_id, ()))))
        return selections

    def describe(self, source_id: str) -> tuple[str, bool, ExternalSourceConfig | None]:
        """Return ``(label, is_sub_source, parent)`` for a hit's source id."""

        if source_id in self._sources:
            source = self._sources[source_id]
            return source.label, False, source
        parent_id, sep, sub_id = source_id.partition(".")
        parent = self._sources.get(parent_id)
        if parent is None:
            return source_id, bool(sep), None
        sub = parent.sub_source(sub_id) if sep else None
        if sub is None:
            return parent.label, bool(sep), parent
        return f"{parent.label} – {sub.label}", True, parent

    def index_for(self, source: ExternalSourceConfig) -> VectorIndex:
        client = self._clients.get(source.id)
        if client is None:
            client = self._index_factory(source)
            self._clients[source.id] = client
        return client

    def cached_client_ids(self) -> list[str]:
        return list(self._clients)

    async def invalidate(self, source_id: str | None = None) -> None:
        """Close and drop cached clients (all, or one source) so the next call reconnects."""

        if source_id is None:
            dropped = list(self._clients.values())
            self._clients.clear()
        else:
            client = self._clients.pop(source_id, None)
            dropped = [client] if client is not None else []
        for client in dropped:
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()

    def catalog(self) -> list[dict[str, Any]]:
        return [
            {
                "id": source.id,
                "label": source.label,
                "icon": source.icon,
                "color": source.color,
                "subSources": [{"id": sub.id, "label": sub.label} for sub in source.sub_sources],
            }
            for source in self._sources.values()
        ]

    async def aclose(self) -> None:
        await self.invalidate()
