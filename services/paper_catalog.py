# Paper Catalog Service
# Read access to source metadata, abstracts and ingestion status for the retrieval services

import logging

from sqlalchemy.orm import Session

from models.database import Paper
from rag.schemas import ContentStatus, PaperMetadata, PaperRecord

logger = logging.getLogger(__name__)


class PaperCatalog:
    """
    Looks up papers by id.

    Features:
    - Bibliographic metadata for citation headers
    - Paper records (with abstracts) for the abstract fallbacks
    - Content status so retrieval only targets ingested papers
    """

    def __init__(self, db: Session):
        self.db = db

    def _load(self, paper_ids: list[str]) -> list[Paper]:
        if not paper_ids:
            return []
        return self.db.query(Paper).filter(Paper.id.in_(list(paper_ids))).all()

    def fetch_metadata(self, paper_ids: list[str]) -> dict[str, PaperMetadata]:
        """Metadata keyed by paper id; unknown ids are left out."""
        return {
            paper.id: PaperMetadata(
                id=paper.id,
                title=paper.title or "Unknown",
                authors=list(paper.authors or []),
                year=paper.year or 0,
                doi=paper.doi,
                venue=paper.venue,
            )
            for paper in self._load(paper_ids)
        }

    def get_papers(self, paper_ids: list[str]) -> list[PaperRecord]:
        """Paper records in the order requested."""
        by_id = {paper.id: paper for paper in self._load(paper_ids)}
        return [
            PaperRecord(
                id=paper.id,
                title=paper.title,
                abstract=paper.abstract,
                authors=list(paper.authors or []),
                year=paper.year,
                doi=paper.doi,
                venue=paper.venue,
            )
            for paper in (by_id.get(pid) for pid in paper_ids)
            if paper is not None
        ]

    def get_content_status(self, paper_ids: list[str]) -> dict[str, ContentStatus]:
        """Ingestion status for every requested id, unknown ids included."""
        statuses = {pid: ContentStatus(paper_id=pid) for pid in paper_ids}
        for paper in self._load(paper_ids):
            statuses[paper.id] = ContentStatus(
                paper_id=paper.id,
                has_content=bool(paper.content_type),
                chunk_count=paper.chunk_count or 0,
                content_type=paper.content_type,
            )
        return statuses
