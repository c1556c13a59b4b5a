"""
Editor Context Service - retrieval for editor autocomplete.

Features:
- Chunk and claim search run concurrently; a failing branch only empties itself
- Result cache across requests (2 minute TTL) and an embedding cache shared by
  query embedding and citation verification
- Semantic citation verification against already-retrieved content
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace

from cache.memory_cache import EmbeddingCache, TTLCache

from .embeddings import EmbeddingService, get_embedding_service
from .schemas import PaperMetadata, RetrievedChunk, RetrievedClaim
from .scoring import (
    cosine_similarity,
    format_chunks_for_prompt,
    format_papers_for_prompt,
    get_first_author_last_name,
)
from .search_backend import SearchBackend

logger = logging.getLogger(__name__)

RESULT_CACHE_TTL_SECONDS = 120
RESULT_CACHE_MAX_SIZE = 200
CITATION_WINDOW_CHARS = 200
_SENTENCE_END = re.compile(r"[.!?]+")


@dataclass
class EditorRetrievalOptions:
    max_chunks: int = 10
    max_claims: int = 7
    min_chunk_score: float = 0.3
    min_claim_score: float = 0.3


@dataclass
class EditorContext:
    chunks: list[RetrievedChunk] = field(default_factory=list)
    claims: list[RetrievedClaim] = field(default_factory=list)
    papers: dict[str, PaperMetadata] = field(default_factory=dict)
    has_content: bool = False

    def copy(self) -> "EditorContext":
        """Detached copy so callers can edit results without touching the cache."""
        return EditorContext(
            chunks=[c.copy() for c in self.chunks],
            claims=[replace(c) for c in self.claims],
            papers=dict(self.papers),
            has_content=self.has_content,
        )


@dataclass
class CitationVerificationResult:
    verified: bool
    confidence: float
    evidence: str | None = None


@dataclass
class CitationMarker:
    """A citation placed in a completion, with its character offsets."""
    paper_id: str
    marker: str
    start_offset: int
    end_offset: int
    verified: bool | None = None


@dataclass
class EditorPromptContext:
    chunks_text: str
    claims_text: str
    papers_text: str


def result_cache_key(query: str, paper_ids: list[str], options: EditorRetrievalOptions) -> str:
    normalized_query = query.strip().lower()[:200]
    options_key = (
        f"{options.max_chunks}:{options.max_claims}:"
        f"{options.min_chunk_score}:{options.min_claim_score}"
    )
    return f"{normalized_query}|{','.join(sorted(paper_ids))}|{options_key}"


class EditorContextService:
    """
    Retrieves chunks and claims for the text around the editor cursor.

    Usage:
        service = EditorContextService(backend, catalog=catalog)
        context = service.retrieve_editor_context(preceding_text, paper_ids)
        check = service.verify_citation(sentence, paper_id, context)
    """

    def __init__(
        self,
        backend: SearchBackend,
        embedding_service: EmbeddingService | None = None,
        catalog=None,
        result_cache: TTLCache | None = None,
        embedding_cache: EmbeddingCache | None = None,
    ):
        self.backend = backend
        self._embedding_service = embedding_service
        self.catalog = catalog
        self.result_cache = result_cache if result_cache is not None else TTLCache(
            RESULT_CACHE_TTL_SECONDS, RESULT_CACHE_MAX_SIZE, name="editor"
        )
        self.embedding_cache = embedding_cache if embedding_cache is not None else EmbeddingCache()

    @property
    def embedding_service(self) -> EmbeddingService:
        if self._embedding_service is None:
            self._embedding_service = get_embedding_service()
        return self._embedding_service

    def _embed_with_cache(self, texts: list[str]) -> list[list[float]]:
        return self.embedding_cache.embed_with_cache(texts, self.embedding_service.embed_texts)

    def retrieve_editor_context(
        self,
        query: str,
        paper_ids: list[str],
        options: EditorRetrievalOptions | None = None,
    ) -> EditorContext:
        """
        Retrieve chunks, claims and source metadata for an editor query.

        Args:
            query: Text preceding the cursor plus section context
            paper_ids: Sources to search
            options: Limits and score floors

        Returns:
            EditorContext; empty when no sources are given
        """
        options = options or EditorRetrievalOptions()

        if not paper_ids:
            return EditorContext()

        cache_key = result_cache_key(query, paper_ids, options)
        cached = self.result_cache.get(cache_key)
        if cached is not None:
            logger.debug("Editor context cache hit")
            return cached.copy()

        logger.debug("Editor context cache miss, fetching fresh context")
        query_embedding = self._embed_with_cache([query])[0]

        with ThreadPoolExecutor(max_workers=2) as executor:
            chunk_future = executor.submit(
                self._search_chunks, query_embedding, paper_ids, options
            )
            claim_future = executor.submit(
                self._search_claims, query_embedding, paper_ids, options
            )
            chunks = chunk_future.result()
            claims = claim_future.result()

        retrieved_ids = sorted({c.paper_id for c in chunks} | {c.paper_id for c in claims})
        papers = self.catalog.fetch_metadata(retrieved_ids) if self.catalog and retrieved_ids else {}

        context = EditorContext(
            chunks=chunks,
            claims=claims,
            papers=papers,
            has_content=bool(chunks or claims),
        )
        self.result_cache.set(cache_key, context)
        return context.copy()

    def _search_chunks(
        self,
        embedding: list[float],
        paper_ids: list[str],
        options: EditorRetrievalOptions,
    ) -> list[RetrievedChunk]:
        try:
            rows = self.backend.vector_search(
                embedding, paper_ids, limit=options.max_chunks * 2, min_score=options.min_chunk_score
            )
        except Exception as e:
            logger.warning(f"Chunk search failed: {e}")
            return []
        return [c for c in rows if c.score >= options.min_chunk_score][:options.max_chunks]

    def _search_claims(
        self,
        embedding: list[float],
        paper_ids: list[str],
        options: EditorRetrievalOptions,
    ) -> list[RetrievedClaim]:
        try:
            rows = self.backend.match_claims(embedding, paper_ids, limit=options.max_claims * 2)
        except Exception as e:
            logger.warning(f"Claim search failed: {e}")
            return []
        return [c for c in rows if c.score >= options.min_claim_score][:options.max_claims]

    # =========================================================================
    # Citation verification
    # =========================================================================

    def verify_citation(
        self,
        claim_text: str,
        paper_id: str,
        context: EditorContext,
        threshold: float = 0.5,
    ) -> CitationVerificationResult:
        """
        Check that ``claim_text`` is supported by content already retrieved for a source.

        No new retrieval happens; only the chunks and claims in ``context`` count.
        """
        content_texts = [c.content for c in context.chunks if c.paper_id == paper_id]
        content_texts += [c.claim_text for c in context.claims if c.paper_id == paper_id]

        if not content_texts:
            return CitationVerificationResult(verified=False, confidence=0.0)

        embeddings = self._embed_with_cache([claim_text, *content_texts])
        claim_embedding, content_embeddings = embeddings[0], embeddings[1:]

        best_score = 0.0
        best_evidence = ""
        for text, embedding in zip(content_texts, content_embeddings):
            score = cosine_similarity(claim_embedding, embedding)
            if score > best_score:
                best_score = score
                best_evidence = text

        return CitationVerificationResult(
            verified=best_score >= threshold,
            confidence=best_score,
            evidence=best_evidence,
        )

    def verify_all_citations(
        self,
        citations: list[CitationMarker],
        suggestion_text: str,
        context: EditorContext,
        threshold: float = 0.4,
    ) -> list[CitationMarker]:
        """Verify each citation against the sentence that precedes its marker."""
        if not citations:
            return []

        def verify(citation: CitationMarker) -> CitationMarker:
            window = suggestion_text[
                max(0, citation.start_offset - CITATION_WINDOW_CHARS):citation.start_offset
            ].strip()
            sentence = _SENTENCE_END.split(window)[-1].strip() or window
            result = self.verify_citation(sentence, citation.paper_id, context, threshold)
            return replace(citation, verified=result.verified)

        with ThreadPoolExecutor(max_workers=min(len(citations), 8)) as executor:
            return list(executor.map(verify, citations))


def format_editor_context_for_prompt(context: EditorContext) -> EditorPromptContext:
    """Render chunks, claims and sources as prompt sections."""
    if context.claims:
        lines = []
        for claim in context.claims:
            paper = context.papers.get(claim.paper_id)
            citation = (
                f"({get_first_author_last_name(paper.authors)}, {paper.year})"
                if paper else "(Unknown source)"
            )
            lines.append(f'- {claim.claim_text} {citation}\n  Evidence: "{claim.evidence_quote}"')
        claims_text = "\n\n".join(lines)
    else:
        claims_text = "No relevant claims found."

    return EditorPromptContext(
        chunks_text=format_chunks_for_prompt(context.chunks, context.papers),
        claims_text=claims_text,
        papers_text=format_papers_for_prompt(context.papers),
    )
