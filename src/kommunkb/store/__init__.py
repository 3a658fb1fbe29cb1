"""Lexical article store."""

from .payload import (
    ArticlePage,
    ArticleQuery,
    ArticleStore,
    PayloadArticleStore,
    PayloadConfig,
    build_where,
    encode_where,
)

__all__ = [
    "ArticlePage",
    "ArticleQuery",
    "ArticleStore",
    "PayloadArticleStore",
    "PayloadConfig",
    "build_where",
    "encode_where",
]
