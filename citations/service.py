# Citation Resolution Service
# Resolves loose references to papers and keeps one canonical citation per (project, paper)

import hashlib
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from rapidfuzz import fuzz
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.database import LibraryPaper, Paper, ProjectCitation

from .csl import CSLRecord, build_csl_from_paper
from .formatter import (
    csl_last_names,
    format_bibliography,
    format_inline_citation,
    normalize_style,
)
from .markers import extract_citation_markers, extract_unique_placeholders
from .matcher import normalize_title

logger = logging.getLogger(__name__)

TITLE_MATCH_FLOOR = 0.85
EXACT_YEAR_BONUS = 0.1
NEAR_YEAR_BONUS = 0.05
MAX_TITLE_CANDIDATES = 200
MAX_TITLE_ANCHORS = 5
MIN_ANCHOR_LENGTH = 4

_DOI_IN_URL = re.compile(r"doi\.org/([^\s?#]+)", re.IGNORECASE)
_TITLE_WORD = re.compile(r"\w+")
_DOI_PREFIXES = ("https://doi.org/", "http://doi.org/", "https://dx.doi.org/", "http://dx.doi.org/", "doi:")


class CitationResolutionError(Exception):
    """A reference could not be resolved to a known paper."""

    def __init__(self, message: str, source_ref: "SourceRef | None" = None):
        super().__init__(message)
        self.message = message
        self.source_ref = source_ref


@dataclass
class SourceRef:
    paper_id: str | None = None
    doi: str | None = None
    title: str | None = None
    year: int | None = None
    url: str | None = None


@dataclass
class AddCitationResult:
    cite_key: str
    project_citation_id: str
    citation_number: int
    csl_json: dict
    is_new: bool


@dataclass
class BibliographyResult:
    bibliography: str
    entries: list[dict] = field(default_factory=list)
    count: int = 0


@dataclass
class ContentScanResult:
    created: int = 0
    existing: int = 0
    failed: int = 0
    cite_keys: list[str] = field(default_factory=list)


def normalize_doi(doi: str | None) -> str | None:
    if not doi:
        return None
    value = doi.strip()
    lowered = value.lower()
    for prefix in _DOI_PREFIXES:
        if lowered.startswith(prefix):
            value = value[len(prefix):]
            break
    return value.strip().lower() or None


def doi_from_url(url: str | None) -> str | None:
    if not url:
        return None
    match = _DOI_IN_URL.search(url)
    return normalize_doi(match.group(1)) if match else None


def generate_cite_key(project_id: str, title: str, year: int | None, doi: str | None = None) -> str:
    """Lowercased DOI when known, else a short hash of project, title and year."""
    normalized = normalize_doi(doi)
    if normalized:
        return normalized
    hash_input = f"{project_id}|{(title or '').lower()}|{year or 'unknown'}"
    return hashlib.sha256(hash_input.encode()).hexdigest()[:16]


def _year_bonus(wanted: int | None, actual: int | None) -> float:
    if not wanted or not actual:
        return 0.0
    if wanted == actual:
        return EXACT_YEAR_BONUS
    if abs(wanted - actual) == 1:
        return NEAR_YEAR_BONUS
    return 0.0


class CitationResolutionService:
    """
    Canonical citations for a project.

    Features:
    - Reference resolution by paper id, DOI (including DOIs inside URLs) or fuzzy title
    - Idempotent add with optimistic insert and read-back on a uniqueness race
    - Inline and bibliography rendering in APA, MLA, Chicago, Harvard and IEEE
    - Recovery scan that creates citations for every marker in a document
    """

    def __init__(self, session_factory: Callable[[], Session] | None = None):
        if session_factory is None:
            from db import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve_source_ref(
        self,
        source_ref: SourceRef,
        project_id: str | None = None,
        user_id: str | None = None,
    ) -> str | None:
        """
        Resolve a reference to a paper id.

        Returns:
            The paper id, or None when nothing matches well enough
        """
        db = self.session_factory()
        try:
            return self._resolve(db, source_ref, project_id, user_id)
        finally:
            db.close()

    def _resolve(
        self,
        db: Session,
        source_ref: SourceRef,
        project_id: str | None,
        user_id: str | None,
    ) -> str | None:
        if source_ref.paper_id and db.get(Paper, source_ref.paper_id) is not None:
            return source_ref.paper_id

        doi = normalize_doi(source_ref.doi) or doi_from_url(source_ref.url)
        if doi:
            paper_id = self._match_doi(db, doi)
            if paper_id:
                return paper_id

        if source_ref.title:
            return self._match_title(db, source_ref.title, source_ref.year, project_id, user_id)

        return None

    def _match_doi(self, db: Session, doi: str) -> str | None:
        paper = db.query(Paper).filter(func.lower(Paper.doi) == doi).first()
        if paper:
            return paper.id

        alternates = [f"{prefix}{doi}" for prefix in _DOI_PREFIXES]
        paper = db.query(Paper).filter(func.lower(Paper.doi).in_(alternates)).first()
        return paper.id if paper else None

    def _match_title(
        self,
        db: Session,
        title: str,
        year: int | None,
        project_id: str | None,
        user_id: str | None,
    ) -> str | None:
        wanted = normalize_title(title)
        if not wanted:
            return None

        candidates = self._title_candidates(db, title, year)
        if not candidates:
            return None

        preferred = self._preferred_ids(db, [p.id for p in candidates], project_id, user_id)

        scored = []
        for paper in candidates:
            similarity = fuzz.token_sort_ratio(wanted, normalize_title(paper.title)) / 100.0
            score = similarity + _year_bonus(year, paper.year)
            scored.append((score, paper.id in preferred, paper.id))

        score, _, paper_id = max(scored)
        if score < TITLE_MATCH_FLOOR:
            logger.debug(f"Best title match for '{title[:60]}' scored {score:.2f}, below floor")
            return None
        return paper_id

    def _title_candidates(self, db: Session, title: str, year: int | None) -> list[Paper]:
        """
        Papers sharing a word with ``title``, or published near ``year``.

        Words are taken from the raw title so hyphenated and accented words
        keep the spelling they have in storage. The year window covers
        titles whose only words differ in non-ASCII case, which the
        database's case folding does not match.
        """
        words = list(dict.fromkeys(_TITLE_WORD.findall(title)))
        anchors = sorted((w for w in words if len(w) >= MIN_ANCHOR_LENGTH), key=len, reverse=True)
        anchors = anchors[:MAX_TITLE_ANCHORS] or words[:MAX_TITLE_ANCHORS]

        candidates: list[Paper] = []
        if anchors:
            candidates = (
                db.query(Paper)
                .filter(or_(*[Paper.title.ilike(f"%{word}%") for word in anchors]))
                .limit(MAX_TITLE_CANDIDATES)
                .all()
            )
        if not candidates and year:
            candidates = (
                db.query(Paper)
                .filter(Paper.year.between(year - 1, year + 1))
                .limit(MAX_TITLE_CANDIDATES)
                .all()
            )
        return candidates

    def _preferred_ids(
        self,
        db: Session,
        candidate_ids: list[str],
        project_id: str | None,
        user_id: str | None,
    ) -> set[str]:
        preferred: set[str] = set()
        if user_id:
            rows = db.query(LibraryPaper.paper_id).filter(
                LibraryPaper.user_id == user_id,
                LibraryPaper.paper_id.in_(candidate_ids),
            ).all()
            preferred.update(r[0] for r in rows)
        if project_id:
            rows = db.query(ProjectCitation.paper_id).filter(
                ProjectCitation.project_id == project_id,
                ProjectCitation.paper_id.in_(candidate_ids),
            ).all()
            preferred.update(r[0] for r in rows)
        return preferred

    # =========================================================================
    # Canonical citations
    # =========================================================================

    def add(
        self,
        project_id: str,
        source_ref: SourceRef,
        reason: str,
        quote: str | None = None,
        user_id: str | None = None,
    ) -> AddCitationResult:
        """
        Add a citation to a project, or return the one already there.

        Raises:
            CitationResolutionError: The reference matches no known paper
        """
        db = self.session_factory()
        try:
            paper_id = self._resolve(db, source_ref, project_id, user_id)
            if not paper_id:
                raise CitationResolutionError("Could not resolve citation source", source_ref)

            existing = self._find_citation(db, project_id, paper_id)
            if existing is not None:
                return self._to_result(existing, is_new=False)

            paper = db.get(Paper, paper_id)
            csl = build_csl_from_paper(paper)
            row = ProjectCitation(
                project_id=project_id,
                paper_id=paper_id,
                csl_json=csl.to_json(),
                cite_key=generate_cite_key(project_id, paper.title, paper.year, paper.doi),
                citation_number=self._next_citation_number(db, project_id),
                reason=reason,
                quote=quote,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                winner = self._find_citation(db, project_id, paper_id)
                if winner is None:
                    raise
                logger.info(f"Citation for paper {paper_id} in project {project_id} created concurrently")
                return self._to_result(winner, is_new=False)

            logger.info(f"Added citation {row.cite_key} (#{row.citation_number}) to project {project_id}")
            return self._to_result(row, is_new=True)
        finally:
            db.close()

    def _find_citation(self, db: Session, project_id: str, paper_id: str) -> ProjectCitation | None:
        return db.query(ProjectCitation).filter(
            ProjectCitation.project_id == project_id,
            ProjectCitation.paper_id == paper_id,
        ).first()

    def _next_citation_number(self, db: Session, project_id: str) -> int:
        current = db.query(func.max(ProjectCitation.citation_number)).filter(
            ProjectCitation.project_id == project_id
        ).scalar()
        return (current or 0) + 1

    def _to_result(self, row: ProjectCitation, is_new: bool) -> AddCitationResult:
        return AddCitationResult(
            cite_key=row.cite_key,
            project_citation_id=row.id,
            citation_number=row.citation_number,
            csl_json=dict(row.csl_json),
            is_new=is_new,
        )

    def _project_citations(self, db: Session, project_id: str) -> list[ProjectCitation]:
        return (
            db.query(ProjectCitation)
            .filter(ProjectCitation.project_id == project_id)
            .order_by(ProjectCitation.citation_number)
            .all()
        )

    # =========================================================================
    # Rendering
    # =========================================================================

    def render_inline(self, project_id: str, cite_keys: list[str], style: str = "apa") -> list[str]:
        """Inline citations in the order of ``cite_keys``; unknown keys are skipped."""
        style = normalize_style(style)
        db = self.session_factory()
        try:
            rows = {row.cite_key: row for row in self._project_citations(db, project_id)}
        finally:
            db.close()

        rendered = []
        for key in cite_keys:
            row = rows.get(key)
            if row is None:
                logger.warning(f"Unknown cite key {key} for project {project_id}")
                continue
            csl = CSLRecord.from_json(row.csl_json)
            rendered.append(format_inline_citation(
                csl_last_names(csl.author), csl.year, style, number=row.citation_number
            ))
        return rendered

    def render_bibliography(self, project_id: str, style: str = "apa") -> BibliographyResult:
        """Reference list for a project in citation-number order."""
        db = self.session_factory()
        try:
            rows = self._project_citations(db, project_id)
        finally:
            db.close()

        if not rows:
            return BibliographyResult(bibliography="")

        records = [(row.citation_number, CSLRecord.from_json(row.csl_json)) for row in rows]
        return BibliographyResult(
            bibliography=format_bibliography(records, normalize_style(style)),
            entries=[
                {
                    "number": row.citation_number,
                    "paper_id": row.paper_id,
                    "csl_json": row.csl_json,
                    "reason": row.reason,
                    "quote": row.quote,
                }
                for row in rows
            ],
            count=len(rows),
        )

    # =========================================================================
    # Content scan
    # =========================================================================

    def extract_and_create_from_content(self, project_id: str, content: str) -> ContentScanResult:
        """
        Create citations for every marker in a document.

        Each distinct reference is resolved once however often it appears.
        """
        refs: dict[str, SourceRef] = {}
        for marker in extract_citation_markers(content):
            refs.setdefault(f"paperId:{marker.paper_id.lower()}", SourceRef(paper_id=marker.paper_id))

        for placeholder in extract_unique_placeholders(content):
            if placeholder.type == "paperId":
                ref = SourceRef(paper_id=placeholder.value)
            elif placeholder.type == "doi":
                ref = SourceRef(doi=placeholder.value)
            elif placeholder.type == "url":
                ref = SourceRef(url=placeholder.value)
            else:
                ref = SourceRef(title=placeholder.value)
            key = f"paperId:{placeholder.value.lower()}" if placeholder.type == "paperId" else placeholder.key
            refs.setdefault(key, ref)

        result = ContentScanResult()
        for ref in refs.values():
            try:
                added = self.add(project_id, ref, reason="Recovered from document content")
            except CitationResolutionError as e:
                logger.warning(f"Failed to create citation from content: {e.message} ({e.source_ref})")
                result.failed += 1
                continue

            if added.is_new:
                result.created += 1
            else:
                result.existing += 1
            if added.cite_key not in result.cite_keys:
                result.cite_keys.append(added.cite_key)

        logger.info(
            f"Content scan for project {project_id}: {result.created} created, "
            f"{result.existing} existing, {result.failed} failed"
        )
        return result
