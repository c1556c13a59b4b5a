"""
Relevance feedback: remembers which retrieved chunks ended up cited.

The loop:
1. Generation retrieves chunks
2. Generated text cites sources with [CITE: paper_id] markers
3. Chunks from cited sources are logged per project and section
4. Later hybrid searches boost chunks by their citation counts
"""

import logging
import re
from collections.abc import Callable, Iterable

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.database import ChunkCitationLog

from .schemas import RetrievedChunk

logger = logging.getLogger(__name__)

_CITE_MARKER = re.compile(r"\[CITE:\s*([^\]]+)\]")
_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def is_valid_uuid(value: str) -> bool:
    return bool(_UUID.match(value or ""))


def extract_cited_paper_ids(content: str) -> set[str]:
    return {match.group(1).strip() for match in _CITE_MARKER.finditer(content or "")}


def extract_cited_chunk_ids(content: str, retrieved_chunks: Iterable[RetrievedChunk]) -> list[str]:
    """Ids of retrieved chunks whose source is cited somewhere in ``content``."""
    cited = extract_cited_paper_ids(content)
    return [c.id for c in retrieved_chunks if c.id and c.paper_id in cited]


def log_chunk_citations(
    db: Session,
    project_id: str,
    chunks: Iterable[RetrievedChunk],
    section: str | None = None,
) -> int:
    """
    Persist one log row per cited chunk.

    Synthetic ids such as ``abstract-{paper_id}`` are skipped. Storage
    failures are logged and reported as zero rows; they never interrupt
    generation.

    Returns:
        Number of rows written
    """
    chunks = [c for c in chunks if c.id]
    valid = [c for c in chunks if is_valid_uuid(c.id)]

    if len(valid) < len(chunks):
        logger.info(f"Skipped {len(chunks) - len(valid)} fallback chunks from citation logging")
    if not valid:
        return 0

    try:
        db.add_all([
            ChunkCitationLog(
                project_id=project_id,
                chunk_id=c.id,
                paper_id=c.paper_id,
                section=section,
            )
            for c in valid
        ])
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Failed to log chunk citations: {e}")
        return 0

    logger.info(f"Logged {len(valid)} chunk citations for relevance feedback")
    return len(valid)


def log_section_citations(
    db: Session,
    project_id: str,
    section: str,
    generated_content: str,
    context_chunks: list[RetrievedChunk],
) -> int:
    """Log the context chunks a generated section actually cited."""
    cited_ids = set(extract_cited_chunk_ids(generated_content, context_chunks))
    if not cited_ids:
        return 0
    return log_chunk_citations(
        db, project_id, [c for c in context_chunks if c.id in cited_ids], section
    )


def get_chunk_citation_counts(db: Session, chunk_ids: list[str]) -> dict[str, int]:
    """Times each chunk has been cited, across all projects."""
    if not chunk_ids:
        return {}

    rows = (
        db.query(ChunkCitationLog.chunk_id, func.count(ChunkCitationLog.id))
        .filter(ChunkCitationLog.chunk_id.in_(list(chunk_ids)))
        .group_by(ChunkCitationLog.chunk_id)
        .all()
    )
    return {chunk_id: count for chunk_id, count in rows}


def citation_counts_provider(session_factory: Callable[[], Session]) -> Callable[[list[str]], dict[str, int]]:
    """Callable for QdrantSearchBackend's citation boost, opening a session per lookup."""
    def counts(chunk_ids: list[str]) -> dict[str, int]:
        db = session_factory()
        try:
            return get_chunk_citation_counts(db, chunk_ids)
        finally:
            db.close()
    return counts
