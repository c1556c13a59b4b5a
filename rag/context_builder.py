"""
Context Builder - turns retrieved chunks into prompt-ready context.

Responsibilities:
- Sentence-level compression against the query
- Token budget management
- Optional grouping by source
- Formatting with citation headers

Retrieval lives in ChunkRetriever and caching in the façade services.
"""

import logging
import math
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any

from cache.memory_cache import EmbeddingCache

from .embeddings import EmbeddingService, get_embedding_service
from .schemas import PaperMetadata, RetrievedChunk
from .scoring import cosine_similarity, get_first_author_last_name, split_into_sentences

logger = logging.getLogger(__name__)

EMPTY_CONTEXT = "No relevant content found."
EMPTY_FORMATTED = "No relevant content found in the provided papers."
CHUNK_SEPARATOR = "\n\n---\n\n"
MIN_TRUNCATION_TOKENS = 100


@dataclass
class ContextConfig:
    max_tokens: int = 8000
    sentence_min_score: float = 0.3
    # Off by default: isolated sentences lose the surrounding text needed to paraphrase
    enable_compression: bool = False
    include_citations: bool = True
    group_by_paper: bool = False
    tokens_per_char: float = 0.25

    def merged(self, overrides: "dict[str, Any] | ContextConfig | None" = None) -> "ContextConfig":
        if overrides is None:
            return replace(self)
        if isinstance(overrides, ContextConfig):
            return replace(overrides)
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown context config keys: {sorted(unknown)}")
        return replace(self, **overrides)


@dataclass
class ContextMetrics:
    original_chunks: int = 0
    included_chunks: int = 0
    original_sentences: int = 0
    included_sentences: int = 0
    compression_ratio: float = 1.0


@dataclass
class BuiltContext:
    """Formatted context plus the chunks that made it into the budget."""
    formatted_context: str
    chunks: list[RetrievedChunk] = field(default_factory=list)
    estimated_tokens: int = 0
    was_compressed: bool = False
    metrics: ContextMetrics = field(default_factory=ContextMetrics)

    def to_dict(self) -> dict:
        return {
            "formatted_context": self.formatted_context,
            "chunks": [c.to_dict() for c in self.chunks],
            "estimated_tokens": self.estimated_tokens,
            "was_compressed": self.was_compressed,
            "metrics": asdict(self.metrics),
        }


@dataclass
class SectionInput:
    section_key: str
    section_title: str
    key_points: list[str]
    chunks: list[RetrievedChunk]


@dataclass
class SectionBuiltContext:
    section_key: str
    section_title: str
    key_points: list[str]
    context: BuiltContext


class ContextBuilder:
    """
    Compresses, budgets and formats chunks for LLM prompts.

    Usage:
        builder = ContextBuilder()
        built = builder.build_context(chunks, "attention mechanisms", papers)
        prompt_context = built.formatted_context
    """

    def __init__(
        self,
        embedding_service: EmbeddingService | None = None,
        embedding_cache: EmbeddingCache | None = None,
        config: ContextConfig | None = None,
    ):
        self._embedding_service = embedding_service
        self.embedding_cache = embedding_cache
        self.config = config or ContextConfig()

    @property
    def embedding_service(self) -> EmbeddingService:
        if self._embedding_service is None:
            self._embedding_service = get_embedding_service()
        return self._embedding_service

    def set_config(self, **overrides):
        self.config = self.config.merged(overrides)

    def build_context(
        self,
        chunks: list[RetrievedChunk],
        query: str,
        papers: dict[str, PaperMetadata],
        config: dict[str, Any] | ContextConfig | None = None,
    ) -> BuiltContext:
        """
        Build prompt context from retrieved chunks.

        Args:
            chunks: Chunks in relevance order
            query: Query the sentences are compressed against
            papers: Metadata by source id, for citation headers
            config: Per-call overrides

        Returns:
            BuiltContext with the formatted string and its metrics
        """
        config = self.config.merged(config)

        if not chunks:
            return BuiltContext(formatted_context=EMPTY_CONTEXT)

        processed = chunks
        was_compressed = False
        original_sentences = included_sentences = 0

        if config.enable_compression:
            try:
                processed, original_sentences, included_sentences = self._compress_chunks(
                    chunks, query, config.sentence_min_score
                )
                was_compressed = True
            except Exception as e:
                logger.warning(f"Compression failed, using uncompressed chunks: {e}")

        budgeted = self._apply_token_budget(processed, config.max_tokens, config.tokens_per_char)
        organized = self._group_by_paper(budgeted) if config.group_by_paper else budgeted

        formatted = self._format_context(organized, papers, config.include_citations)

        if was_compressed and original_sentences > 0:
            compression_ratio = included_sentences / original_sentences
        else:
            compression_ratio = 1.0

        return BuiltContext(
            formatted_context=formatted,
            chunks=organized,
            estimated_tokens=math.ceil(len(formatted) * config.tokens_per_char),
            was_compressed=was_compressed,
            metrics=ContextMetrics(
                original_chunks=len(chunks),
                included_chunks=len(organized),
                original_sentences=original_sentences,
                included_sentences=included_sentences,
                compression_ratio=compression_ratio,
            ),
        )

    def build_section_contexts(
        self,
        sections: list[SectionInput],
        papers: dict[str, PaperMetadata],
        total_token_budget: int,
        config: dict[str, Any] | ContextConfig | None = None,
    ) -> list[SectionBuiltContext]:
        """Build one context per section, splitting the token budget evenly."""
        if not sections:
            return []

        section_config = self.config.merged(config)
        section_config.max_tokens = total_token_budget // len(sections)

        results = []
        for section in sections:
            query = f"{section.section_title}: {'. '.join(section.key_points)}"
            results.append(SectionBuiltContext(
                section_key=section.section_key,
                section_title=section.section_title,
                key_points=section.key_points,
                context=self.build_context(section.chunks, query, papers, section_config),
            ))
        return results

    # =========================================================================
    # Compression
    # =========================================================================

    def _embed(self, texts: list[str]) -> list[list[float]]:
        if self.embedding_cache is not None:
            return self.embedding_cache.embed_with_cache(texts, self.embedding_service.embed_texts)
        return self.embedding_service.embed_texts(texts)

    def _compress_chunks(
        self,
        chunks: list[RetrievedChunk],
        query: str,
        min_score: float,
    ) -> tuple[list[RetrievedChunk], int, int]:
        """Keep the sentences of each chunk that score at least ``min_score``."""
        query_embedding = self._embed([query])[0]

        total_original = total_included = 0
        compressed = []

        for chunk in chunks:
            sentences = split_into_sentences(chunk.content)
            total_original += len(sentences)

            if len(sentences) <= 2:
                compressed.append(chunk)
                total_included += len(sentences)
                continue

            scores = [
                cosine_similarity(query_embedding, emb)
                for emb in self._embed(sentences)
            ]
            kept = [s for s, score in zip(sentences, scores) if score >= min_score]
            if not kept:
                kept = [sentences[scores.index(max(scores))]]

            total_included += len(kept)
            compressed.append(chunk.copy(
                content=" ".join(kept),
                metadata={
                    **chunk.metadata,
                    "compressed": True,
                    "original_length": len(chunk.content),
                    "compression_ratio": len(kept) / len(sentences),
                },
            ))

        logger.debug(f"Compressed {total_original} sentences to {total_included}")
        return compressed, total_original, total_included

    # =========================================================================
    # Budget and organization
    # =========================================================================

    def _apply_token_budget(
        self,
        chunks: list[RetrievedChunk],
        max_tokens: int,
        tokens_per_char: float,
    ) -> list[RetrievedChunk]:
        current = 0
        result = []

        for chunk in chunks:
            chunk_tokens = math.ceil(len(chunk.content) * tokens_per_char)
            if current + chunk_tokens <= max_tokens:
                result.append(chunk)
                current += chunk_tokens
                continue

            remaining = max_tokens - current
            if remaining > MIN_TRUNCATION_TOKENS:
                remaining_chars = math.floor(remaining / tokens_per_char)
                result.append(chunk.copy(
                    content=chunk.content[:remaining_chars] + "...",
                    metadata={**chunk.metadata, "truncated": True},
                ))
            break

        return result

    def _group_by_paper(self, chunks: list[RetrievedChunk]) -> list[RetrievedChunk]:
        by_paper: dict[str, list[RetrievedChunk]] = {}
        for chunk in chunks:
            by_paper.setdefault(chunk.paper_id, []).append(chunk)

        for paper_chunks in by_paper.values():
            paper_chunks.sort(key=lambda c: c.chunk_index or 0)

        ordered = sorted(
            by_paper.values(),
            key=lambda paper_chunks: max(c.score for c in paper_chunks),
            reverse=True,
        )
        return [chunk for paper_chunks in ordered for chunk in paper_chunks]

    def _format_context(
        self,
        chunks: list[RetrievedChunk],
        papers: dict[str, PaperMetadata],
        include_citations: bool,
    ) -> str:
        if not chunks:
            return EMPTY_FORMATTED

        blocks = []
        for idx, chunk in enumerate(chunks, start=1):
            paper = papers.get(chunk.paper_id)
            if include_citations and paper:
                header = f"[{get_first_author_last_name(paper.authors)}, {paper.year} - {paper.id}]"
            else:
                header = f"[Source {idx}]"
            blocks.append(f"{header}\n{chunk.content.strip()}")

        return CHUNK_SEPARATOR.join(blocks)
