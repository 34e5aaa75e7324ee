"""Retrieval primitives, rank fusion, query expansion, reranking and mode orchestration."""

from .cache import SearchCache
from .expansion import ExpandedQuery, QueryExpansionService, extract_key_terms
from .fusion import RankedSource, deduplicate_results, weighted_rrf
from .orchestrator import (Capabilities, SearchMode, SearchOrchestrator,
                           SearchSettings, resolve_mode)
from .reranker import RerankerService
from .retrieval import LexicalRetriever, SearchScope, VectorRetriever

__all__ = [
    "Capabilities",
    "ExpandedQuery",
    "LexicalRetriever",
    "QueryExpansionService",
    "RankedSource",
    "RerankerService",
    "SearchCache",
    "SearchMode",
    "SearchOrchestrator",
    "SearchScope",
    "SearchSettings",
    "VectorRetriever",
    "deduplicate_results",
    "extract_key_terms",
    "resolve_mode",
    "weighted_rrf",
]
