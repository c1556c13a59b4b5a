"""
Search backend contract and its Qdrant implementation.

The retriever and the editor service only see SearchBackend:
vector, keyword and hybrid chunk search plus claim search, all
restricted to a set of source ids. QdrantSearchBackend serves vectors
from Qdrant and keyword matches from an in-process BM25 index built over
the candidate sources' chunks.
"""

import logging
import math
import os
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable

from qdrant_client import QdrantClient
from qdrant_client.http.models import FieldCondition, Filter, MatchAny

from .schemas import RetrievedChunk, RetrievedClaim
from .scoring import normalize_score

logger = logging.getLogger(__name__)

_WORD = re.compile(r"\w+")


class SearchBackend(ABC):
    """Narrow read-only contract over the durable search engine."""

    @abstractmethod
    def vector_search(
        self,
        embedding: list[float],
        paper_ids: list[str],
        limit: int,
        min_score: float = 0.0,
    ) -> list[RetrievedChunk]:
        """Chunks ranked by embedding similarity."""

    @abstractmethod
    def keyword_search(self, query: str, paper_ids: list[str], limit: int) -> list[RetrievedChunk]:
        """Chunks ranked by full-text relevance."""

    @abstractmethod
    def hybrid_search(
        self,
        embedding: list[float],
        query: str,
        paper_ids: list[str],
        limit: int,
        min_vector_score: float = 0.0,
        vector_weight: float = 0.7,
        citation_boost: float | None = None,
    ) -> list[RetrievedChunk]:
        """Weighted vector + keyword search, optionally boosted by citation history."""

    @abstractmethod
    def match_claims(
        self,
        embedding: list[float],
        paper_ids: list[str],
        limit: int,
    ) -> list[RetrievedClaim]:
        """Pre-extracted claims ranked by similarity."""


class ChunkKeywordIndex:
    """
    BM25 index over passage chunks, grouped by source.

    Chunks are keyed by id, so a chunk scrolled twice is indexed once.
    Document frequencies cover every indexed source; ``search`` can then
    rank within any subset of sources without rebuilding the index.
    Scores come back scaled to 0..1 against the best hit so they mix
    with cosine similarities in hybrid search.
    """

    # Function words that dominate cursor text but carry no topic
    STOPWORDS = frozenset({
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in",
        "is", "it", "of", "on", "or", "that", "the", "this", "to", "was", "were",
        "with",
    })

    def __init__(self, k1: float = 1.5, b: float = 0.75):
        self.k1 = k1
        self.b = b

        self.chunks: list[RetrievedChunk] = []
        self.chunk_lengths: list[int] = []
        self.positions: dict[str, int] = {}
        self.paper_chunks: dict[str, list[int]] = defaultdict(list)
        self.doc_freqs: dict[str, int] = defaultdict(int)
        # term -> list of (position, term_freq)
        self.postings: dict[str, list[tuple[int, int]]] = defaultdict(list)
        self.avg_length: float = 0.0

    def __len__(self) -> int:
        return len(self.chunks)

    @property
    def paper_ids(self) -> set[str]:
        return set(self.paper_chunks)

    @classmethod
    def tokenize(cls, text: str) -> list[str]:
        return [t for t in _WORD.findall(text.lower()) if t not in cls.STOPWORDS]

    def add_chunks(self, chunks: list[RetrievedChunk]):
        for chunk in chunks:
            if chunk.id is not None and chunk.id in self.positions:
                continue

            position = len(self.chunks)
            tokens = self.tokenize(chunk.content)
            self.chunks.append(chunk)
            self.chunk_lengths.append(len(tokens))
            self.paper_chunks[chunk.paper_id].append(position)
            if chunk.id is not None:
                self.positions[chunk.id] = position

            term_freqs: dict[str, int] = defaultdict(int)
            for token in tokens:
                term_freqs[token] += 1
            for term, freq in term_freqs.items():
                self.postings[term].append((position, freq))
                self.doc_freqs[term] += 1

        self.avg_length = sum(self.chunk_lengths) / max(len(self.chunks), 1)

    def _idf(self, term: str) -> float:
        df = self.doc_freqs.get(term, 0)
        if df == 0:
            return 0.0
        return math.log((len(self.chunks) - df + 0.5) / (df + 0.5) + 1)

    def search(
        self,
        query: str,
        top_k: int = 10,
        paper_ids: list[str] | None = None,
    ) -> list[RetrievedChunk]:
        """
        Rank chunks against ``query``.

        Args:
            query: Free text; repeated words count once
            top_k: Maximum chunks returned
            paper_ids: Restrict ranking to these sources (None means all)

        Returns:
            Copies of the matching chunks, best first, with ``score`` and
            ``keyword_score`` set to the scaled BM25 score
        """
        terms = list(dict.fromkeys(self.tokenize(query)))
        if not self.chunks or not terms:
            return []

        allowed: set[int] | None = None
        if paper_ids is not None:
            allowed = {pos for pid in paper_ids for pos in self.paper_chunks.get(pid, [])}
            if not allowed:
                return []

        raw: dict[int, float] = defaultdict(float)
        for term in terms:
            idf = self._idf(term)
            if idf == 0:
                continue
            for position, tf in self.postings.get(term, []):
                if allowed is not None and position not in allowed:
                    continue
                length_norm = 1 - self.b + self.b * (self.chunk_lengths[position] / self.avg_length)
                raw[position] += idf * (tf * (self.k1 + 1)) / (tf + self.k1 * length_norm)

        ranked = sorted(raw.items(), key=lambda item: item[1], reverse=True)[:top_k]
        if not ranked:
            return []

        top_score = ranked[0][1] or 1.0
        return [
            self.chunks[position].copy(score=score / top_score, keyword_score=score / top_score)
            for position, score in ranked
        ]


class QdrantSearchBackend(SearchBackend):
    """
    SearchBackend over Qdrant collections.

    Chunk points carry ``paper_id``, ``content`` and ``chunk_index`` in their
    payload; claim points carry the claim fields. Keyword search scrolls the
    candidate sources' chunks into a BM25 index per call.
    """

    CHUNK_COLLECTION = "paper_chunks"
    CLAIM_COLLECTION = "paper_claims"
    SCROLL_BATCH = 256
    MAX_KEYWORD_CORPUS = 5000

    def __init__(
        self,
        qdrant_url: str | None = None,
        qdrant_api_key: str | None = None,
        client: QdrantClient | None = None,
        chunk_collection: str | None = None,
        claim_collection: str | None = None,
        citation_counts: Callable[[list[str]], dict[str, int]] | None = None,
    ):
        """
        Initialize the backend.

        Args:
            qdrant_url: Qdrant server URL (defaults to QDRANT_URL env var)
            qdrant_api_key: Qdrant API key (defaults to QDRANT_API_KEY env var)
            client: Pre-built client (tests inject a mock)
            chunk_collection: Override the chunk collection name
            claim_collection: Override the claim collection name
            citation_counts: Returns chunk id -> times cited, for the citation boost
        """
        if client is None:
            url = qdrant_url or os.environ.get("QDRANT_URL", "http://localhost:6333")
            api_key = qdrant_api_key or os.environ.get("QDRANT_API_KEY")
            client = QdrantClient(url=url, api_key=api_key) if api_key else QdrantClient(url=url)

        self.client = client
        self.chunk_collection = chunk_collection or self.CHUNK_COLLECTION
        self.claim_collection = claim_collection or self.CLAIM_COLLECTION
        self.citation_counts = citation_counts

        logger.info(
            f"QdrantSearchBackend initialized (chunks={self.chunk_collection}, "
            f"claims={self.claim_collection})"
        )

    def _paper_filter(self, paper_ids: list[str]) -> Filter:
        return Filter(must=[FieldCondition(key="paper_id", match=MatchAny(any=list(paper_ids)))])

    def _to_chunk(self, point_id, payload: dict, score: float | None = None) -> RetrievedChunk:
        return RetrievedChunk(
            id=str(point_id),
            paper_id=payload.get("paper_id", ""),
            content=payload.get("content", ""),
            score=normalize_score(score),
            chunk_index=payload.get("chunk_index"),
        )

    def vector_search(self, embedding, paper_ids, limit, min_score=0.0):
        points = self.client.query_points(
            collection_name=self.chunk_collection,
            query=embedding,
            query_filter=self._paper_filter(paper_ids),
            limit=limit,
            score_threshold=min_score,
            with_payload=True,
        ).points

        chunks = []
        for hit in points:
            chunk = self._to_chunk(hit.id, hit.payload or {}, hit.score)
            chunk.vector_score = chunk.score
            chunks.append(chunk)

        logger.debug(f"Vector search returned {len(chunks)} chunks for {len(paper_ids)} papers")
        return chunks

    def _load_corpus(self, paper_ids: list[str]) -> list[RetrievedChunk]:
        corpus: list[RetrievedChunk] = []
        offset = None
        while len(corpus) < self.MAX_KEYWORD_CORPUS:
            records, offset = self.client.scroll(
                collection_name=self.chunk_collection,
                scroll_filter=self._paper_filter(paper_ids),
                limit=self.SCROLL_BATCH,
                offset=offset,
                with_payload=True,
                with_vectors=False,
            )
            corpus.extend(self._to_chunk(r.id, r.payload or {}) for r in records)
            if offset is None:
                break
        return corpus

    def keyword_search(self, query, paper_ids, limit):
        index = ChunkKeywordIndex()
        index.add_chunks(self._load_corpus(paper_ids))
        return index.search(query, top_k=limit, paper_ids=paper_ids)

    def hybrid_search(
        self,
        embedding,
        query,
        paper_ids,
        limit,
        min_vector_score=0.0,
        vector_weight=0.7,
        citation_boost=None,
    ):
        vector_hits = self.vector_search(embedding, paper_ids, limit, min_vector_score)
        keyword_hits = self.keyword_search(query, paper_ids, limit)

        merged: dict[str, RetrievedChunk] = {}
        for chunk in vector_hits:
            merged[chunk.id] = chunk.copy(keyword_score=0.0)
        for chunk in keyword_hits:
            if chunk.id in merged:
                merged[chunk.id].keyword_score = chunk.keyword_score
            else:
                merged[chunk.id] = chunk.copy(vector_score=0.0)

        keyword_weight = 1.0 - vector_weight
        for chunk in merged.values():
            chunk.score = (
                vector_weight * normalize_score(chunk.vector_score)
                + keyword_weight * normalize_score(chunk.keyword_score)
            )

        if citation_boost and self.citation_counts and merged:
            self._apply_citation_boost(list(merged.values()), citation_boost)

        ranked = sorted(merged.values(), key=lambda c: c.score, reverse=True)
        return ranked[:limit]

    def _apply_citation_boost(self, chunks: list[RetrievedChunk], boost_factor: float):
        counts = self.citation_counts([c.id for c in chunks])
        max_count = max(counts.values(), default=0)
        if max_count <= 0:
            return

        for chunk in chunks:
            count = counts.get(chunk.id, 0)
            if count:
                boost = boost_factor * math.log1p(count) / math.log1p(max_count)
                chunk.score += boost
                chunk.metadata["citation_boost"] = boost

    def match_claims(self, embedding, paper_ids, limit):
        points = self.client.query_points(
            collection_name=self.claim_collection,
            query=embedding,
            query_filter=self._paper_filter(paper_ids),
            limit=limit,
            with_payload=True,
        ).points

        claims = []
        for hit in points:
            payload = hit.payload or {}
            claims.append(RetrievedClaim(
                id=str(hit.id),
                paper_id=payload.get("paper_id", ""),
                claim_text=payload.get("claim_text", ""),
                evidence_quote=payload.get("evidence_quote", ""),
                section=payload.get("section", ""),
                claim_type=payload.get("claim_type", ""),
                confidence=normalize_score(payload.get("confidence")),
                score=normalize_score(hit.score),
            ))
        return claims
