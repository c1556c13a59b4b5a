"""
Data model shared by the retrieval pipeline.

Chunks and claims are produced by the search backend and treated as
read-only once retrieved; scores are request-scoped and never persisted.
"""

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any


class SearchMode(str, Enum):
    """Which backend search to run for a retrieval request."""
    HYBRID = "hybrid"
    VECTOR = "vector"
    KEYWORD = "keyword"


class EvidenceStrength(str, Enum):
    """Coarse label for how much of a source backs a chunk."""
    FULL_TEXT = "full_text"
    ABSTRACT = "abstract"
    TITLE_ONLY = "title_only"


@dataclass
class RetrievedChunk:
    """A retrievable span of source content with a relevance score."""
    paper_id: str
    content: str
    score: float = 0.0
    id: str | None = None
    chunk_index: int | None = None
    vector_score: float | None = None
    keyword_score: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    evidence_strength: EvidenceStrength = EvidenceStrength.FULL_TEXT
    paper: Any = None

    def copy(self, **changes) -> "RetrievedChunk":
        """Return a new chunk with ``changes`` applied; metadata is copied."""
        changes.setdefault("metadata", dict(self.metadata))
        return replace(self, **changes)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["evidence_strength"] = self.evidence_strength.value
        data.pop("paper", None)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RetrievedChunk":
        return cls(
            paper_id=data["paper_id"],
            content=data.get("content", ""),
            score=data.get("score") or 0.0,
            id=data.get("id"),
            chunk_index=data.get("chunk_index"),
            vector_score=data.get("vector_score"),
            keyword_score=data.get("keyword_score"),
            metadata=dict(data.get("metadata") or {}),
            evidence_strength=EvidenceStrength(
                data.get("evidence_strength") or EvidenceStrength.FULL_TEXT.value
            ),
        )


@dataclass
class RetrievedClaim:
    """A pre-extracted assertion attributed to a source."""
    id: str
    paper_id: str
    claim_text: str
    evidence_quote: str = ""
    section: str = ""
    claim_type: str = ""
    confidence: float = 0.0
    score: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PaperMetadata:
    """Bibliographic metadata for one source, fetched on demand."""
    id: str
    title: str = "Unknown"
    authors: list[str] = field(default_factory=list)
    year: int = 0
    doi: str | None = None
    venue: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PaperMetadata":
        return cls(
            id=data["id"],
            title=data.get("title") or "Unknown",
            authors=list(data.get("authors") or []),
            year=data.get("year") or 0,
            doi=data.get("doi"),
            venue=data.get("venue"),
        )


@dataclass
class PaperRecord:
    """A library paper as seen by the generation fallbacks."""
    id: str
    title: str
    abstract: str | None = None
    authors: list[str] = field(default_factory=list)
    year: int | None = None
    doi: str | None = None
    venue: str | None = None


@dataclass
class ContentStatus:
    """Ingestion state of one source."""
    paper_id: str
    has_content: bool = False
    chunk_count: int = 0
    content_type: str | None = None

    @property
    def is_searchable(self) -> bool:
        return self.has_content and (self.chunk_count > 0 or self.content_type == "abstract")
