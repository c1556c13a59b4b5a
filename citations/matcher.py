# Matches free-text references (DOIs, "Author (2020)", titles) against known papers

import re
from dataclasses import dataclass

from rag.schemas import PaperRecord

from .csl import parse_author_name

DOI_PATTERN = re.compile(r"10\.\d{4,}/[-._;()/:a-zA-Z0-9]+")

AUTHOR_YEAR_PATTERNS = [
    re.compile(r"([A-Z][a-z]+)(?:\s+et\s+al\.?)?\s*\((\d{4})\)"),
    re.compile(r"\(([A-Z][a-z]+)(?:\s+et\s+al\.?)?,?\s*(\d{4})\)"),
    re.compile(r"([A-Z][a-z]+)(?:\s+et\s+al\.?)?,?\s*(\d{4})"),
]

DOI_CONFIDENCE = 0.95
AUTHOR_YEAR_CONFIDENCE = 0.85
TITLE_SIMILARITY_FLOOR = 0.7
TITLE_CONFIDENCE_SCALE = 0.8
FUZZY_SIMILARITY_FLOOR = 0.5
FUZZY_CONFIDENCE_SCALE = 0.6


@dataclass
class CitationMatch:
    paper: PaperRecord
    confidence: float
    match_type: str  # doi, author-year, title, fuzzy
    matched_text: str


def normalize_title(title: str) -> str:
    text = re.sub(r"[^\w\s]", "", (title or "").lower())
    return re.sub(r"\s+", " ", text).strip()


def jaccard_similarity(text1: str, text2: str) -> float:
    """Word-set Jaccard similarity, ignoring words of two characters or fewer."""
    words1 = {w for w in text1.split(" ") if len(w) > 2}
    words2 = {w for w in text2.split(" ") if len(w) > 2}
    union = words1 | words2
    return len(words1 & words2) / len(union) if union else 0.0


class CitationMatcher:
    """
    Finds which known paper a piece of text refers to.

    Tries DOI, author-year and title matches; falls back to a fuzzy
    word-overlap match over title, authors, venue and abstract.
    """

    def __init__(self, papers: list[PaperRecord]):
        self.update_papers(papers)

    def update_papers(self, papers: list[PaperRecord]):
        self.papers = list(papers)
        self.by_doi: dict[str, PaperRecord] = {}
        self.by_title: dict[str, PaperRecord] = {}
        self.by_author_year: dict[str, PaperRecord] = {}

        for paper in self.papers:
            if paper.doi:
                self.by_doi[paper.doi.lower()] = paper
            self.by_title[normalize_title(paper.title)] = paper
            key = self._author_year_key(paper)
            if key:
                self.by_author_year[key] = paper

    def _author_year_key(self, paper: PaperRecord) -> str | None:
        if not paper.authors or not paper.year:
            return None
        family = parse_author_name(paper.authors[0]).family or paper.authors[0].strip()
        family = family.split()[-1] if family else ""
        return f"{family.lower()}_{paper.year}" if family else None

    def find_best_match(self, text: str) -> CitationMatch | None:
        matches = (
            self._find_doi_matches(text, first_only=True)
            + self._find_author_year_matches(text, first_only=True)
            + self._find_title_matches(text, first_only=True)
        )
        if not matches:
            fuzzy = self._find_fuzzy_match(text)
            if fuzzy:
                matches.append(fuzzy)

        return max(matches, key=lambda m: m.confidence, default=None)

    def find_all_matches(self, text: str, min_confidence: float = 0.6) -> list[CitationMatch]:
        matches = (
            self._find_doi_matches(text)
            + self._find_author_year_matches(text)
            + self._find_title_matches(text)
        )

        best: dict[str, CitationMatch] = {}
        for match in matches:
            current = best.get(match.paper.id)
            if current is None or match.confidence > current.confidence:
                best[match.paper.id] = match
        return [m for m in best.values() if m.confidence >= min_confidence]

    def _find_doi_matches(self, text: str, first_only: bool = False) -> list[CitationMatch]:
        found = []
        for match in DOI_PATTERN.finditer(text):
            paper = self.by_doi.get(match.group(0).lower())
            if paper:
                found.append(CitationMatch(paper, DOI_CONFIDENCE, "doi", match.group(0)))
            if first_only:
                break
        return found

    def _find_author_year_matches(self, text: str, first_only: bool = False) -> list[CitationMatch]:
        found = []
        for pattern in AUTHOR_YEAR_PATTERNS:
            for match in pattern.finditer(text):
                paper = self.by_author_year.get(f"{match.group(1).lower()}_{match.group(2)}")
                if paper:
                    found.append(CitationMatch(paper, AUTHOR_YEAR_CONFIDENCE, "author-year", match.group(0)))
                    if first_only:
                        return found
                if first_only:
                    break
        return found

    def _find_title_matches(self, text: str, first_only: bool = False) -> list[CitationMatch]:
        normalized = normalize_title(text)
        found = []
        for title_key, paper in self.by_title.items():
            if not title_key or not normalized:
                continue
            if title_key in normalized or normalized in title_key:
                similarity = jaccard_similarity(normalized, title_key)
                if similarity > TITLE_SIMILARITY_FLOOR:
                    found.append(CitationMatch(
                        paper, similarity * TITLE_CONFIDENCE_SCALE, "title", paper.title
                    ))
                    if first_only:
                        break
        return found

    def _find_fuzzy_match(self, text: str) -> CitationMatch | None:
        normalized = normalize_title(text)
        best = None
        best_similarity = 0.0

        for paper in self.papers:
            search_text = " ".join(filter(None, [
                paper.title,
                " ".join(paper.authors or []),
                paper.venue,
                (paper.abstract or "")[:200],
            ]))
            similarity = jaccard_similarity(normalized, normalize_title(search_text))
            if similarity > best_similarity and similarity > FUZZY_SIMILARITY_FLOOR:
                best_similarity = similarity
                best = CitationMatch(paper, similarity * FUZZY_CONFIDENCE_SCALE, "fuzzy", text)

        return best

    def get_stats(self) -> dict:
        return {
            "total_papers": len(self.papers),
            "with_doi": len(self.by_doi),
            "indexed_titles": len(self.by_title),
            "author_year_entries": len(self.by_author_year),
        }
