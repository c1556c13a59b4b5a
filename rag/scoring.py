"""
Scoring utilities for the retrieval pipeline.

Pure functions shared by the retriever, the context builder and the
editor service:
- Cosine similarity and score normalization
- Reciprocal Rank Fusion (RRF) across ranked result sets
- Abbreviation-aware sentence splitting
- Content-fingerprint deduplication and per-source balancing
- Prompt formatting helpers
"""

import logging
import math
import re
import uuid
from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import Any

from .schemas import PaperMetadata, RetrievedChunk

logger = logging.getLogger(__name__)

RRF_K = 60
FINGERPRINT_LENGTH = 100
MIN_SENTENCE_LENGTH = 10

DEFAULT_ABBREVIATIONS = frozenset({
    "Dr", "Mr", "Mrs", "Ms", "Prof", "vs", "etc", "e.g", "i.e",
    "U.S", "Fig", "No", "Vol", "pp", "al", "et",
})

# Surname particles kept with the family name ("van Gogh", "de Silva")
NAME_PREFIXES = frozenset({
    "van", "von", "de", "del", "della", "di", "da", "le", "la", "el", "al", "bin", "ibn",
})

CHUNK_NAMESPACE = uuid.UUID("6ba7b812-9dad-11d1-80b4-00c04fd430c8")

_SENTENCE_BREAK = re.compile(r"\.\s+|[!?]\s+")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors.

    Returns 0.0 for mismatched lengths, zero vectors or malformed input
    instead of raising; this sits on the hot path of every verification.
    """
    try:
        if len(a) != len(b) or not a:
            return 0.0

        dot = norm_a = norm_b = 0.0
        for x, y in zip(a, b):
            dot += x * y
            norm_a += x * x
            norm_b += y * y

        magnitude = math.sqrt(norm_a) * math.sqrt(norm_b)
        return dot / magnitude if magnitude else 0.0
    except (TypeError, ValueError, OverflowError) as e:
        logger.debug(f"cosine_similarity failed on malformed input: {e}")
        return 0.0


def normalize_score(score: float | None) -> float:
    """Treat a missing score as 0.0."""
    return float(score) if score is not None else 0.0


def _fusion_key(chunk: RetrievedChunk) -> Any:
    if chunk.id:
        return chunk.id
    return (chunk.paper_id, chunk.content[:FINGERPRINT_LENGTH])


def reciprocal_rank_fusion(
    result_sets: Iterable[Sequence[RetrievedChunk]],
    k: int = RRF_K,
) -> list[RetrievedChunk]:
    """
    Merge ranked chunk lists with Reciprocal Rank Fusion.

    RRF score = sum(1 / (k + rank + 1)) over every list a chunk appears in,
    with 0-based ranks. Only rank positions matter; raw scores are used
    solely to pick which variant of a duplicated chunk is kept.

    Args:
        result_sets: Ranked lists, best first
        k: RRF constant (higher = flatter weighting)

    Returns:
        Fused chunks sorted by RRF score, with ``score`` set to the fused
        value and the kept variant's score under ``metadata["original_score"]``
    """
    fused: dict[Any, float] = defaultdict(float)
    best: dict[Any, RetrievedChunk] = {}

    for result_set in result_sets:
        for rank, chunk in enumerate(result_set):
            key = _fusion_key(chunk)
            fused[key] += 1.0 / (k + rank + 1)

            current = best.get(key)
            if current is None or normalize_score(chunk.score) > normalize_score(current.score):
                best[key] = chunk

    ordered = sorted(fused.items(), key=lambda item: item[1], reverse=True)

    merged = []
    for key, rrf_score in ordered:
        chunk = best[key]
        merged.append(chunk.copy(
            score=rrf_score,
            metadata={
                **chunk.metadata,
                "original_score": normalize_score(chunk.score),
                "rrf_score": rrf_score,
            },
        ))
    return merged


def _ends_with_abbreviation(segment: str, abbreviations: frozenset[str]) -> bool:
    tokens = segment.rsplit(None, 1)
    if not tokens:
        return False
    return tokens[-1].lstrip("([\"'") in abbreviations


def split_into_sentences(
    text: str,
    abbreviations: frozenset[str] = DEFAULT_ABBREVIATIONS,
    min_length: int = MIN_SENTENCE_LENGTH,
) -> list[str]:
    """
    Split text into sentences without breaking after common abbreviations.

    A period followed by whitespace ends a sentence unless the word before it
    is in ``abbreviations``; "!" and "?" followed by whitespace always do.
    Fragments of ``min_length`` characters or fewer are dropped.
    """
    if not text:
        return []

    pieces = []
    start = 0
    for match in _SENTENCE_BREAK.finditer(text):
        if match.group().startswith(".") and _ends_with_abbreviation(
            text[start:match.start()], abbreviations
        ):
            continue
        # keep the terminating punctuation with its sentence
        pieces.append(text[start:match.start() + 1])
        start = match.end()
    pieces.append(text[start:])

    return [p.strip() for p in pieces if len(p.strip()) > min_length]


def content_fingerprint(content: str) -> str:
    return content.strip().lower()[:FINGERPRINT_LENGTH]


def deduplicate_chunks(chunks: Iterable[RetrievedChunk]) -> list[RetrievedChunk]:
    """Drop chunks whose normalized content prefix was already seen (first wins)."""
    seen: set[str] = set()
    unique = []
    for chunk in chunks:
        fingerprint = content_fingerprint(chunk.content)
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        unique.append(chunk)
    return unique


def balance_chunks(
    chunks: Iterable[RetrievedChunk],
    max_per_paper: int,
    total_limit: int,
) -> list[RetrievedChunk]:
    """
    Cap chunks per source, then sort by score and apply the global limit.

    The cap is applied in input order, so callers pass chunks best-first.
    """
    by_paper: dict[str, list[RetrievedChunk]] = defaultdict(list)
    for chunk in chunks:
        if len(by_paper[chunk.paper_id]) < max_per_paper:
            by_paper[chunk.paper_id].append(chunk)

    balanced = [chunk for paper_chunks in by_paper.values() for chunk in paper_chunks]
    balanced.sort(key=lambda c: normalize_score(c.score), reverse=True)
    return balanced[:total_limit]


def get_first_author_last_name(authors: Sequence[str] | None) -> str:
    """
    Family name of the first author.

    Handles "Family, Given" order and keeps surname particles such as
    "van" or "de" ("Vincent van Gogh" -> "van Gogh").
    """
    if not authors:
        return "Unknown"

    first_author = (authors[0] or "").strip()
    if not first_author:
        return "Unknown"
    if "," in first_author:
        return first_author.split(",")[0].strip() or "Unknown"

    parts = first_author.split()
    if len(parts) == 1:
        return parts[0]

    if parts[-2].lower() in NAME_PREFIXES:
        return f"{parts[-2]} {parts[-1]}"
    return parts[-1]


def create_deterministic_chunk_id(paper_id: str, content: str, chunk_index: int) -> str:
    """Stable UUID for a chunk that came back from search without an id."""
    key = f"{paper_id}|{chunk_index}|{content[:FINGERPRINT_LENGTH]}"
    return str(uuid.uuid5(CHUNK_NAMESPACE, key))


def format_chunks_for_prompt(
    chunks: Sequence[RetrievedChunk],
    papers: dict[str, PaperMetadata],
) -> str:
    """Render chunks as ``[Source: (Author, year)]`` blocks."""
    if not chunks:
        return "No relevant content found in papers."

    blocks = []
    for chunk in chunks:
        paper = papers.get(chunk.paper_id)
        citation = (
            f"({get_first_author_last_name(paper.authors)}, {paper.year})"
            if paper else "(Unknown source)"
        )
        blocks.append(f"[Source: {citation}]\n{chunk.content.strip()}")
    return "\n\n".join(blocks)


def format_papers_for_prompt(papers: dict[str, PaperMetadata]) -> str:
    """One line per paper with its id, for citation instructions."""
    if not papers:
        return "No papers available."

    return "\n".join(
        f'- {get_first_author_last_name(p.authors)} ({p.year}): "{p.title}" [ID: {p.id}]'
        for p in papers.values()
    )
