"""Retrieval components."""

from .exact import ExactScoring, ExactSearcher, ExactSearchResult, score_exact_match
from .hybrid import HybridScoringConfig, HybridSearchEngine, HybridSearchRequest, merge_results
from .semantic import SemanticSearchConfig, SemanticSearcher

__all__ = [
    "ExactScoring",
    "ExactSearchResult",
    "ExactSearcher",
    "HybridScoringConfig",
    "HybridSearchEngine",
    "HybridSearchRequest",
    "SemanticSearchConfig",
    "SemanticSearcher",
    "merge_results",
    "score_exact_match",
]
