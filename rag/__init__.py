"""
RAG (Retrieval-Augmented Generation) core for Scholar Context.

This module provides:
- Hybrid search (dense + BM25) over a pluggable search backend
- Cross-encoder reranking and RRF fusion
- Context compression, token budgeting and formatting
- Caching façades for generation and editor autocomplete
- Citation verification and relevance feedback
"""

from .schemas import (
    ContentStatus,
    EvidenceStrength,
    PaperMetadata,
    PaperRecord,
    RetrievedChunk,
    RetrievedClaim,
    SearchMode,
)
from .embeddings import EmbeddingService, get_embedding_service
from .reranker import CohereReranker, RerankError, RerankResult
from .search_backend import ChunkKeywordIndex, QdrantSearchBackend, SearchBackend
from .chunk_retriever import ChunkRetriever, RetrievalConfig, RetrievalResult
from .context_builder import BuiltContext, ContextBuilder, ContextConfig
from .generation_context import (
    GenerationContextService,
    GenerationRetrievalParams,
    GenerationRetrievalResult,
    OutlineSection,
    SectionContext,
)
from .editor_context import (
    CitationMarker,
    CitationVerificationResult,
    EditorContext,
    EditorContextService,
    EditorRetrievalOptions,
    format_editor_context_for_prompt,
)
from .error_handling import (
    ContentError,
    ContentQualityError,
    ContentRetrievalError,
    NoRelevantContentError,
)

__all__ = [
    # Data model
    "ContentStatus",
    "EvidenceStrength",
    "PaperMetadata",
    "PaperRecord",
    "RetrievedChunk",
    "RetrievedClaim",
    "SearchMode",
    # Embeddings
    "EmbeddingService",
    "get_embedding_service",
    # Reranker
    "CohereReranker",
    "RerankError",
    "RerankResult",
    # Search backend
    "ChunkKeywordIndex",
    "QdrantSearchBackend",
    "SearchBackend",
    # Retrieval
    "ChunkRetriever",
    "RetrievalConfig",
    "RetrievalResult",
    # Context
    "BuiltContext",
    "ContextBuilder",
    "ContextConfig",
    # Generation
    "GenerationContextService",
    "GenerationRetrievalParams",
    "GenerationRetrievalResult",
    "OutlineSection",
    "SectionContext",
    # Editor
    "CitationMarker",
    "CitationVerificationResult",
    "EditorContext",
    "EditorContextService",
    "EditorRetrievalOptions",
    "format_editor_context_for_prompt",
    # Errors
    "ContentError",
    "ContentQualityError",
    "ContentRetrievalError",
    "NoRelevantContentError",
]
