"""
Generation Context Service - retrieval for the paper generation pipeline.

Features:
- 5-minute result cache with a superset strategy: one wide retrieval is
  cached and narrowed per caller by limit and minimum score
- Content status check with a single ingestion attempt
- Chunk quality validation and abstract fallbacks
- Per-section contexts for an outline, each isolated from the others
"""

import logging
import re
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Protocol

from cache.memory_cache import TTLCache
from cache.redis_cache import RedisCache

from .chunk_retriever import ChunkRetriever
from .context_builder import ContextBuilder
from .error_handling import (
    ContentQualityError,
    ContentRetrievalError,
    NoRelevantContentError,
)
from .fallback import FallbackChain, Strategy, StrategyOutcome, non_empty
from .schemas import (
    ContentStatus,
    EvidenceStrength,
    PaperMetadata,
    PaperRecord,
    RetrievedChunk,
    SearchMode,
)
from .scoring import create_deterministic_chunk_id, normalize_score

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 300
CACHE_MAX_SIZE = 100

MIN_TOPIC_LENGTH = 10
MIN_CHUNK_CHARS = 30
MIN_CHUNK_WORDS = 5
MIN_AVERAGE_SCORE = 0.18
_NUMERIC_ONLY = re.compile(r"^[\d\s.,-]+$")


class PaperCatalogProtocol(Protocol):
    def fetch_metadata(self, paper_ids: list[str]) -> dict[str, PaperMetadata]: ...
    def get_papers(self, paper_ids: list[str]) -> list[PaperRecord]: ...
    def get_content_status(self, paper_ids: list[str]) -> dict[str, ContentStatus]: ...


@dataclass
class GenerationRetrievalParams:
    query: str
    paper_ids: list[str]
    limit: int = 20
    min_score: float = 0.2
    mode: SearchMode = SearchMode.HYBRID
    vector_weight: float = 0.7
    use_citation_boost: bool = True
    use_reranking: bool = True
    rerank_top_k: int = 30
    use_compression: bool = False
    sentence_min_score: float = 0.3
    max_tokens: int = 8000

    def cache_key(self) -> str:
        mode = SearchMode(self.mode).value
        boost = "boost" if self.use_citation_boost else "noboost"
        return f"gen:{mode}:{boost}:{self.query}:{','.join(sorted(self.paper_ids))}"


@dataclass
class GenerationMetrics:
    retrieval_time_ms: float = 0.0
    rerank_time_ms: float = 0.0
    compression_ratio: float = 1.0
    was_reranked: bool = False
    was_compressed: bool = False


@dataclass
class GenerationRetrievalResult:
    chunks: list[RetrievedChunk] = field(default_factory=list)
    papers: dict[str, PaperMetadata] = field(default_factory=dict)
    has_content: bool = False
    scores: list[float] = field(default_factory=list)
    total_results: int = 0
    formatted_context: str | None = None
    metrics: GenerationMetrics = field(default_factory=GenerationMetrics)

    def to_dict(self) -> dict:
        return {
            "chunks": [c.to_dict() for c in self.chunks],
            "papers": {pid: p.to_dict() for pid, p in self.papers.items()},
            "has_content": self.has_content,
            "scores": self.scores,
            "total_results": self.total_results,
            "formatted_context": self.formatted_context,
            "metrics": asdict(self.metrics),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GenerationRetrievalResult":
        return cls(
            chunks=[RetrievedChunk.from_dict(c) for c in data.get("chunks", [])],
            papers={pid: PaperMetadata.from_dict(p) for pid, p in data.get("papers", {}).items()},
            has_content=data.get("has_content", False),
            scores=list(data.get("scores", [])),
            total_results=data.get("total_results", 0),
            formatted_context=data.get("formatted_context"),
            metrics=GenerationMetrics(**data.get("metrics", {})),
        )


@dataclass
class OutlineSection:
    section_key: str
    title: str
    key_points: list[str] = field(default_factory=list)
    candidate_paper_ids: list[str] = field(default_factory=list)
    expected_words: int | None = None


@dataclass
class SectionContext:
    section_key: str
    title: str
    key_points: list[str]
    candidate_paper_ids: list[str]
    context_chunks: list[RetrievedChunk]
    expected_words: int | None = None


def _is_substantive(content: str) -> bool:
    text = content.strip()
    return (
        len(text) >= MIN_CHUNK_CHARS
        and len(text.split()) >= MIN_CHUNK_WORDS
        and not _NUMERIC_ONLY.match(text)
    )


def _abstract_chunks(
    papers: list[PaperRecord],
    min_length: int,
    max_papers: int,
    id_prefix: str,
    score: float,
    source: str,
) -> list[RetrievedChunk]:
    eligible = [p for p in papers if p.abstract and len(p.abstract.strip()) >= min_length]
    return [
        RetrievedChunk(
            id=f"{id_prefix}{p.id}",
            paper_id=p.id,
            content=f"Title: {p.title}\n\nAbstract: {p.abstract}",
            score=score,
            metadata={"source": source},
            # Abstract-only evidence should not back strong claims
            evidence_strength=EvidenceStrength.ABSTRACT,
            paper=p,
        )
        for p in eligible[:max_papers]
    ]


def redis_result_cache(redis_url: str | None = None) -> RedisCache:
    """Shared generation cache for multi-process deployments."""
    return RedisCache(
        CACHE_TTL_SECONDS,
        namespace="gen",
        redis_url=redis_url,
        encode=lambda result: result.to_dict(),
        decode=GenerationRetrievalResult.from_dict,
    )


class GenerationContextService:
    """
    Caching façade over ChunkRetriever and ContextBuilder for generation.

    Usage:
        service = GenerationContextService(retriever, builder, catalog, ingest_fn)
        chunks = service.get_relevant_chunks(topic, paper_ids, 20, all_papers)
    """

    def __init__(
        self,
        retriever: ChunkRetriever,
        context_builder: ContextBuilder,
        catalog: PaperCatalogProtocol,
        ingest_fn: Callable[[list[PaperRecord]], Any] | None = None,
        cache: Any = None,
    ):
        """
        Initialize the service.

        Args:
            retriever: Chunk retriever
            context_builder: Builds compressed context when requested
            catalog: Source metadata, records and content status
            ingest_fn: Triggers ingestion for papers without content
            cache: Result cache with get/set (TTLCache or RedisCache)
        """
        self.retriever = retriever
        self.context_builder = context_builder
        self.catalog = catalog
        self.ingest_fn = ingest_fn
        self.cache = cache if cache is not None else TTLCache(
            CACHE_TTL_SECONDS, CACHE_MAX_SIZE, name="generation"
        )

    def retrieve(self, params: GenerationRetrievalParams) -> GenerationRetrievalResult:
        """
        Retrieve chunks for a query, served from the superset cache when possible.
        """
        if not params.query.strip() or not params.paper_ids:
            return GenerationRetrievalResult()

        cache_key = params.cache_key()
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Cache HIT: '{params.query[:50]}'")
            return self._apply_filtering(cached, params.limit, params.min_score)

        logger.debug(f"Cache MISS: '{params.query[:50]}'")
        start = time.perf_counter()

        retrieval = self.retriever.retrieve(params.query, params.paper_ids, {
            "mode": params.mode,
            "vector_weight": params.vector_weight,
            "min_score": 0.1,
            "final_limit": max(params.limit * 3, 100),
            "use_citation_boost": params.use_citation_boost,
            "use_reranking": params.use_reranking,
            "rerank_top_k": params.rerank_top_k,
        })

        papers = self.catalog.fetch_metadata(sorted({c.paper_id for c in retrieval.chunks}))

        formatted_context = None
        compression_ratio = 1.0
        was_compressed = False
        if params.use_compression and retrieval.chunks:
            built = self.context_builder.build_context(retrieval.chunks, params.query, papers, {
                "max_tokens": params.max_tokens,
                "sentence_min_score": params.sentence_min_score,
                "enable_compression": True,
                "include_citations": True,
                "group_by_paper": False,
            })
            formatted_context = built.formatted_context
            compression_ratio = built.metrics.compression_ratio
            was_compressed = built.was_compressed

        result = GenerationRetrievalResult(
            chunks=retrieval.chunks,
            papers=papers,
            has_content=bool(retrieval.chunks),
            scores=[normalize_score(c.score) for c in retrieval.chunks],
            total_results=retrieval.total_retrieved,
            formatted_context=formatted_context,
            metrics=GenerationMetrics(
                retrieval_time_ms=retrieval.metrics.retrieval_time_ms,
                rerank_time_ms=retrieval.metrics.rerank_time_ms,
                compression_ratio=compression_ratio,
                was_reranked=retrieval.was_reranked,
                was_compressed=was_compressed,
            ),
        )

        elapsed = (time.perf_counter() - start) * 1000
        logger.info(
            f"Retrieved {len(retrieval.chunks)} chunks "
            f"({'reranked, ' if retrieval.was_reranked else ''}{elapsed:.0f}ms)"
        )

        self.cache.set(cache_key, result)
        return self._apply_filtering(result, params.limit, params.min_score)

    def _apply_filtering(
        self,
        result: GenerationRetrievalResult,
        limit: int,
        min_score: float,
    ) -> GenerationRetrievalResult:
        chunks = [c.copy() for c in result.chunks if normalize_score(c.score) >= min_score][:limit]
        return GenerationRetrievalResult(
            chunks=chunks,
            papers=dict(result.papers),
            has_content=result.has_content,
            scores=[normalize_score(c.score) for c in chunks],
            total_results=len(chunks),
            formatted_context=result.formatted_context,
            metrics=replace(result.metrics),
        )

    def _searchable_ids(self, paper_ids: list[str]) -> list[str]:
        statuses = self.catalog.get_content_status(paper_ids)
        return [pid for pid in paper_ids if pid in statuses and statuses[pid].is_searchable]

    def _ensure_content(self, paper_ids: list[str]) -> list[str]:
        """Ids with searchable content, triggering one ingestion pass if none have any."""
        with_content = self._searchable_ids(paper_ids)
        if with_content:
            return with_content

        logger.warning("No papers have content. Triggering ingestion...")
        papers = self.catalog.get_papers(paper_ids)
        if not papers:
            raise ContentRetrievalError("Failed to retrieve papers from library")

        if self.ingest_fn is not None:
            self.ingest_fn(papers)

        with_content = self._searchable_ids(paper_ids)
        if not with_content:
            raise ContentRetrievalError(
                "Failed to ingest content for any papers",
                {"attempted": len(papers), "paper_ids": list(paper_ids)},
            )
        return with_content

    def get_relevant_chunks(
        self,
        topic: str,
        paper_ids: list[str],
        chunk_limit: int,
        all_papers: list[PaperRecord],
    ) -> list[RetrievedChunk]:
        """
        Retrieve validated chunks for a topic.

        Raises:
            ContentRetrievalError: Topic too short, no ids, or nothing ingestible
            NoRelevantContentError: No usable chunks and no abstracts to fall back on
            ContentQualityError: Chunks found but their average score is too low
        """
        if not topic or len(topic.strip()) < MIN_TOPIC_LENGTH:
            raise ContentRetrievalError(
                f"Topic must be at least {MIN_TOPIC_LENGTH} characters long"
            )
        if not paper_ids:
            raise ContentRetrievalError("No papers provided for content retrieval")

        with_content = self._ensure_content(paper_ids)
        logger.info(f"Content availability: {len(with_content)}/{len(paper_ids)} papers")

        result = self.retrieve(GenerationRetrievalParams(
            query=topic,
            paper_ids=with_content,
            limit=max(chunk_limit * 2, 60),
            min_score=0.15,
            use_compression=False,
        ))

        papers_by_id = {p.id: p for p in all_papers}
        chunks = [
            chunk.copy(
                id=chunk.id or create_deterministic_chunk_id(chunk.paper_id, chunk.content, index),
                paper=papers_by_id.get(chunk.paper_id),
                metadata={"source": "generation_context_service", "score": chunk.score},
                evidence_strength=chunk.evidence_strength or EvidenceStrength.FULL_TEXT,
            )
            for index, chunk in enumerate(result.chunks)
        ]
        chunks = [c for c in chunks if _is_substantive(c.content)]

        if not chunks:
            logger.warning("No relevant chunks found. Using paper abstracts as fallback.")
            abstracts = _abstract_chunks(
                all_papers, min_length=100, max_papers=10,
                id_prefix="abstract-", score=0.5, source="abstract-fallback",
            )
            if not abstracts:
                raise NoRelevantContentError(
                    "Could not find any relevant content or abstracts for the selected papers."
                )
            logger.info(f"Using {len(abstracts)} abstracts as fallback context.")
            return abstracts

        avg_score = sum(normalize_score(c.score) for c in chunks) / len(chunks)
        if avg_score < MIN_AVERAGE_SCORE:
            raise ContentQualityError(
                f"Content relevance scores too low (avg: {avg_score:.3f}). "
                f"Consider adding more relevant papers.",
                {"scores": [c.score for c in chunks]},
            )

        return chunks[:chunk_limit]

    def build_contexts(
        self,
        sections: list[OutlineSection],
        topic: str,
        all_papers: list[PaperRecord] | None = None,
    ) -> list[SectionContext]:
        """Build a context per outline section; one section's failure never affects another."""
        all_papers = all_papers or []
        all_ids = [p.id for p in all_papers]

        logger.info(f"Building section contexts for {len(sections)} sections...")
        contexts = []
        for section in sections:
            chunks = self._section_chunks(section, topic, all_papers, all_ids)
            contexts.append(SectionContext(
                section_key=section.section_key,
                title=section.title,
                key_points=list(section.key_points or []),
                candidate_paper_ids=list(section.candidate_paper_ids or []),
                context_chunks=[
                    RetrievedChunk(
                        id=c.id,
                        paper_id=c.paper_id,
                        content=c.content,
                        score=c.score,
                        evidence_strength=c.evidence_strength or EvidenceStrength.FULL_TEXT,
                    )
                    for c in chunks
                ],
                expected_words=section.expected_words,
            ))

        logger.info(f"Section contexts built: {len(contexts)} sections processed")
        return contexts

    def _section_chunks(
        self,
        section: OutlineSection,
        topic: str,
        all_papers: list[PaperRecord],
        all_ids: list[str],
    ) -> list[RetrievedChunk]:
        own_ids = list(section.candidate_paper_ids or [])
        targets = own_ids or all_ids
        query = f"{section.title}: {'. '.join(section.key_points or [])}"

        def from_section_papers() -> StrategyOutcome:
            limit = min(25, max(len(targets) * 3, 15))
            return non_empty(self.get_relevant_chunks(query, targets, limit, all_papers))

        def from_all_papers() -> StrategyOutcome:
            if not own_ids or len(all_ids) <= len(own_ids):
                return StrategyOutcome.skip("no wider paper set")
            logger.warning(f"Assigned papers for '{section.title}' have no content, trying all papers...")
            limit = min(25, max(len(all_ids) * 2, 15))
            return non_empty(self.get_relevant_chunks(topic, all_ids, limit, all_papers))

        def from_abstracts() -> StrategyOutcome:
            return non_empty(_abstract_chunks(
                all_papers, min_length=50, max_papers=5,
                id_prefix="abstract-fallback-", score=0.4, source="abstract-fallback-section",
            ))

        outcome = FallbackChain(f"section:{section.section_key}", [
            Strategy("section-papers", from_section_papers),
            Strategy("all-papers", from_all_papers),
            Strategy("abstracts", from_abstracts),
        ]).run()

        if outcome.exhausted:
            logger.warning(f"No context available for section '{section.title}'")
            return []
        if outcome.strategy == "abstracts":
            logger.info(f"Using {len(outcome.result)} abstract fallbacks for '{section.title}'")
        return outcome.result

    def clear_cache(self):
        self.cache.clear()

    def get_cache_stats(self) -> dict:
        return self.cache.get_stats()
