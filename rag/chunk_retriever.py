"""
Chunk Retriever - one retrieval request end to end.

Responsibilities:
- Multi-mode search (hybrid, vector, keyword) with fallback
- Cross-encoder reranking (Cohere), gated by config and credential
- Result deduplication and per-source balancing
- Multi-query retrieval fused with RRF

Context formatting lives in ContextBuilder and caching in the
façade services; this class is read-only against the backend.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any

from .embeddings import EmbeddingService, get_embedding_service
from .fallback import FallbackChain, Strategy, StrategyOutcome, non_empty
from .reranker import CohereReranker, RerankError
from .schemas import RetrievedChunk, SearchMode
from .scoring import balance_chunks, deduplicate_chunks, reciprocal_rank_fusion
from .search_backend import SearchBackend

logger = logging.getLogger(__name__)

MAX_QUERY_WORKERS = 4


@dataclass
class RetrievalConfig:
    """Tunable knobs for one retrieval request."""
    mode: SearchMode = SearchMode.HYBRID
    vector_weight: float = 0.7
    min_score: float = 0.1
    retrieve_limit: int = 100      # candidates fetched before reranking
    final_limit: int = 25
    use_citation_boost: bool = True
    citation_boost_factor: float = 0.1
    use_reranking: bool = True
    rerank_top_k: int = 30
    max_per_paper: int = 6

    def __post_init__(self):
        self.mode = SearchMode(self.mode)

    def merged(self, overrides: "dict[str, Any] | RetrievalConfig | None" = None) -> "RetrievalConfig":
        """Return a copy with ``overrides`` applied; unknown keys are rejected."""
        if overrides is None:
            return replace(self)
        if isinstance(overrides, RetrievalConfig):
            return replace(overrides)

        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown retrieval config keys: {sorted(unknown)}")
        return replace(self, **overrides)


@dataclass
class RetrievalMetrics:
    retrieval_time_ms: float = 0.0
    rerank_time_ms: float = 0.0
    unique_papers: int = 0


@dataclass
class RetrievalResult:
    """Chunks for one request plus what it took to get them."""
    chunks: list[RetrievedChunk] = field(default_factory=list)
    total_retrieved: int = 0
    was_reranked: bool = False
    metrics: RetrievalMetrics = field(default_factory=RetrievalMetrics)

    def to_dict(self) -> dict:
        return {
            "chunks": [c.to_dict() for c in self.chunks],
            "total_retrieved": self.total_retrieved,
            "was_reranked": self.was_reranked,
            "metrics": asdict(self.metrics),
        }


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class ChunkRetriever:
    """
    Runs retrieval requests against a SearchBackend.

    Usage:
        retriever = ChunkRetriever(backend)
        result = retriever.retrieve("transformer attention", ["paper-1", "paper-2"])
    """

    def __init__(
        self,
        backend: SearchBackend,
        embedding_service: EmbeddingService | None = None,
        reranker: CohereReranker | None = None,
        config: RetrievalConfig | None = None,
    ):
        """
        Initialize the retriever.

        Args:
            backend: Search backend to query
            embedding_service: Query embedder (global service if None)
            reranker: Cross-encoder client (COHERE_API_KEY-backed if None)
            config: Default config for every request
        """
        self.backend = backend
        self._embedding_service = embedding_service
        self.reranker = reranker or CohereReranker()
        self.config = config or RetrievalConfig()

    @property
    def embedding_service(self) -> EmbeddingService:
        if self._embedding_service is None:
            self._embedding_service = get_embedding_service()
        return self._embedding_service

    def set_config(self, **overrides):
        """Update the default configuration."""
        self.config = self.config.merged(overrides)

    def is_reranking_available(self) -> bool:
        return self.reranker.is_available

    def retrieve(
        self,
        query: str,
        paper_ids: list[str],
        config: dict[str, Any] | RetrievalConfig | None = None,
    ) -> RetrievalResult:
        """
        Retrieve, deduplicate, optionally rerank and balance chunks.

        Args:
            query: Search query
            paper_ids: Candidate source ids
            config: Per-request overrides of the default config

        Returns:
            RetrievalResult; empty for a blank query or no candidates
        """
        start = time.perf_counter()
        config = self.config.merged(config)

        if not query.strip() or not paper_ids:
            return RetrievalResult()

        raw_chunks = self._search_chunks(query, paper_ids, config)
        retrieval_time = _elapsed_ms(start)

        if not raw_chunks:
            return RetrievalResult(metrics=RetrievalMetrics(retrieval_time_ms=retrieval_time))

        chunks = deduplicate_chunks(raw_chunks)

        rerank_time = 0.0
        was_reranked = False
        if (
            config.use_reranking
            and len(chunks) > config.final_limit
            and self.reranker.is_available
        ):
            rerank_start = time.perf_counter()
            candidates = chunks[:config.rerank_top_k]
            try:
                chunks = self._rerank(query, candidates)
                was_reranked = True
                logger.info(f"Reranked {len(candidates)} chunks with Cohere")
            except RerankError as e:
                logger.warning(f"Cohere reranking failed, using original order: {e}")
            rerank_time = _elapsed_ms(rerank_start)

        chunks = balance_chunks(chunks, config.max_per_paper, config.final_limit)

        return RetrievalResult(
            chunks=chunks,
            total_retrieved=len(raw_chunks),
            was_reranked=was_reranked,
            metrics=RetrievalMetrics(
                retrieval_time_ms=retrieval_time,
                rerank_time_ms=rerank_time,
                unique_papers=len({c.paper_id for c in chunks}),
            ),
        )

    def retrieve_multi_query(
        self,
        queries: list[str],
        paper_ids: list[str],
        config: dict[str, Any] | RetrievalConfig | None = None,
    ) -> RetrievalResult:
        """
        Retrieve once per query variant and fuse with RRF instead of reranking.
        """
        start = time.perf_counter()
        config = self.config.merged(config)

        if not paper_ids:
            return RetrievalResult()

        active = [q for q in queries if q.strip()]
        if not active:
            return RetrievalResult(metrics=RetrievalMetrics(retrieval_time_ms=_elapsed_ms(start)))

        # map keeps result sets in query order so fusion is deterministic
        with ThreadPoolExecutor(max_workers=min(len(active), MAX_QUERY_WORKERS)) as executor:
            result_sets = list(executor.map(
                lambda query: self._search_chunks(query, paper_ids, config), active
            ))
        chunks = reciprocal_rank_fusion(result_sets)
        retrieval_time = _elapsed_ms(start)

        if not chunks:
            return RetrievalResult(metrics=RetrievalMetrics(retrieval_time_ms=retrieval_time))

        chunks = deduplicate_chunks(chunks)
        chunks = balance_chunks(chunks, config.max_per_paper, config.final_limit)

        return RetrievalResult(
            chunks=chunks,
            total_retrieved=sum(len(r) for r in result_sets),
            was_reranked=False,
            metrics=RetrievalMetrics(
                retrieval_time_ms=retrieval_time,
                unique_papers=len({c.paper_id for c in chunks}),
            ),
        )

    # =========================================================================
    # Search
    # =========================================================================

    def _search_chunks(
        self,
        query: str,
        paper_ids: list[str],
        config: RetrievalConfig,
    ) -> list[RetrievedChunk]:
        """Route to the configured search mode; every failure path ends in []."""
        embedding_holder: list[list[float]] = []

        def query_embedding() -> list[float]:
            if not embedding_holder:
                embedding_holder.append(self.embedding_service.embed(query))
            return embedding_holder[0]

        def run_hybrid() -> StrategyOutcome:
            return non_empty(self._hybrid_search(query_embedding(), query, paper_ids, config))

        def run_vector() -> StrategyOutcome:
            return non_empty(self._vector_search(query_embedding(), paper_ids, config))

        def run_keyword() -> StrategyOutcome:
            return non_empty(self._keyword_search(query, paper_ids, config))

        if config.mode == SearchMode.HYBRID:
            strategies = [
                Strategy("hybrid", run_hybrid),
                Strategy("vector", run_vector),
                Strategy("keyword", run_keyword),
            ]
        elif config.mode == SearchMode.KEYWORD:
            strategies = [Strategy("keyword", run_keyword)]
        else:
            strategies = [Strategy("vector", run_vector)]

        outcome = FallbackChain(f"search:{config.mode.value}", strategies).run()
        return outcome.result or []

    def _hybrid_search(self, embedding, query, paper_ids, config) -> list[RetrievedChunk]:
        return self.backend.hybrid_search(
            embedding,
            query,
            paper_ids,
            limit=config.retrieve_limit,
            min_vector_score=config.min_score,
            vector_weight=config.vector_weight,
            citation_boost=config.citation_boost_factor if config.use_citation_boost else None,
        )

    def _vector_search(self, embedding, paper_ids, config) -> list[RetrievedChunk]:
        rows = self.backend.vector_search(
            embedding, paper_ids, limit=config.retrieve_limit, min_score=config.min_score
        )
        return [
            row.copy(vector_score=row.score)
            for row in rows
            if row.score >= config.min_score
        ]

    def _keyword_search(self, query, paper_ids, config) -> list[RetrievedChunk]:
        rows = self.backend.keyword_search(query, paper_ids, limit=config.retrieve_limit)
        return [row.copy(keyword_score=row.score) for row in rows]

    def _rerank(self, query: str, chunks: list[RetrievedChunk]) -> list[RetrievedChunk]:
        results = self.reranker.rerank(query, [c.content for c in chunks])
        reranked = []
        for r in results:
            chunk = chunks[r.index]
            reranked.append(chunk.copy(
                score=r.relevance_score,
                metadata={
                    **chunk.metadata,
                    "original_score": chunk.score,
                    "rerank_score": r.relevance_score,
                },
            ))
        return reranked
