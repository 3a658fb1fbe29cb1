"""Federated source configuration."""

from .registry import (
    ExternalSourceConfig,
    ExternalSourceRegistry,
    SourceMapping,
    SourceSelection,
    SubSource,
    get_nested_value,
    parse_external_sources,
)

__all__ = [
    "ExternalSourceConfig",
    "ExternalSourceRegistry",
    "SourceMapping",
    "SourceSelection",
    "SubSource",
    "get_nested_value",
    "parse_external_sources",
]
