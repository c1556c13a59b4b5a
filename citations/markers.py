# Citation markers in generated text
# [CITE: paper_id] markers from generation and [[CITE:type:value]] placeholders from the model

import re
from dataclasses import dataclass, field

from rag.schemas import PaperMetadata

from .formatter import DEFAULT_STYLE, format_inline_citation, last_names

CITE_MARKER_PATTERN = re.compile(r"\[CITE:\s*([a-f0-9-]+)\]", re.IGNORECASE)

PLACEHOLDER_PATTERN = re.compile(r"\[\[CITE:([^:]+):([^\]]+)\]\]")
PLACEHOLDER_WITH_CONTEXT_PATTERN = re.compile(r"\[\[CITE:([^:]+):([^|]+)\|([^\]]+)\]\]")
ANY_PLACEHOLDER_PATTERN = re.compile(r"\[\[CITE:[^\]]+\]\]")

REFERENCE_TYPES = frozenset({"doi", "paperId", "title", "url"})

_ARTIFACT_PATTERNS = [
    re.compile(r"\[CITE:\s*[^\]]*\]", re.IGNORECASE),
    re.compile(r"\[CONTEXT FROM:\s*[^\]]+\]", re.IGNORECASE),
    re.compile(r"addCitation\s*\([^)]*\)", re.IGNORECASE),
    re.compile(r"CITATION_\d+"),
    re.compile(r"\[(citation needed|cite|citation|ref|source needed)\]", re.IGNORECASE),
]


@dataclass
class MarkerMatch:
    marker: str
    paper_id: str
    start: int
    end: int


@dataclass
class FormattedCitation:
    marker: str
    formatted: str
    paper_id: str
    paper: PaperMetadata


@dataclass
class ProcessCitationsResult:
    content: str
    citations: list[FormattedCitation] = field(default_factory=list)
    invalid_paper_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PlaceholderCitation:
    type: str
    value: str
    context: str | None = None

    @property
    def key(self) -> str:
        return f"{self.type}:{self.value}"


def extract_citation_markers(content: str) -> list[MarkerMatch]:
    return [
        MarkerMatch(marker=m.group(0), paper_id=m.group(1), start=m.start(), end=m.end())
        for m in CITE_MARKER_PATTERN.finditer(content or "")
    ]


def has_citation_markers(content: str) -> bool:
    return bool(CITE_MARKER_PATTERN.search(content or ""))


def process_citation_markers(
    content: str,
    papers: list[PaperMetadata],
    style: str = DEFAULT_STYLE,
) -> ProcessCitationsResult:
    """
    Replace [CITE: id] markers with inline citations.

    Markers naming an unknown source are removed and reported in
    ``invalid_paper_ids``.
    """
    markers = extract_citation_markers(content)
    if not markers:
        return ProcessCitationsResult(content=content)

    paper_map = {p.id: p for p in papers}
    citations: list[FormattedCitation] = []
    invalid: list[str] = []
    processed = content

    # Right to left so earlier offsets stay valid
    for marker in sorted(markers, key=lambda m: m.start, reverse=True):
        paper = paper_map.get(marker.paper_id)
        if paper is None:
            invalid.append(marker.paper_id)
            processed = processed[:marker.start] + processed[marker.end:]
            continue

        formatted = format_inline_citation(last_names(paper.authors), paper.year, style)
        citations.insert(0, FormattedCitation(
            marker=marker.marker,
            formatted=formatted,
            paper_id=marker.paper_id,
            paper=paper,
        ))
        processed = processed[:marker.start] + formatted + processed[marker.end:]

    return ProcessCitationsResult(content=processed, citations=citations, invalid_paper_ids=invalid)


def parse_citation_placeholders(text: str) -> list[PlaceholderCitation]:
    """[[CITE:type:value|context]] and [[CITE:type:value]] placeholders with a known type."""
    placeholders = []
    with_context = list(PLACEHOLDER_WITH_CONTEXT_PATTERN.finditer(text or ""))
    seen_full = {m.group(0) for m in with_context}

    for match in with_context:
        ref_type, value, context = match.groups()
        if ref_type in REFERENCE_TYPES:
            placeholders.append(PlaceholderCitation(ref_type, value.strip(), context.strip()))

    for match in PLACEHOLDER_PATTERN.finditer(text or ""):
        if match.group(0) in seen_full:
            continue
        ref_type, value = match.groups()
        if ref_type in REFERENCE_TYPES:
            placeholders.append(PlaceholderCitation(ref_type, value.strip()))

    return placeholders


def extract_unique_placeholders(text: str) -> list[PlaceholderCitation]:
    unique: dict[str, PlaceholderCitation] = {}
    for placeholder in parse_citation_placeholders(text):
        unique.setdefault(placeholder.key, placeholder)
    return list(unique.values())


def create_citation_placeholder(ref_type: str, value: str, context: str | None = None) -> str:
    if context:
        return f"[[CITE:{ref_type}:{value}|{context}]]"
    return f"[[CITE:{ref_type}:{value}]]"


def replace_placeholders(text: str, cite_key_map: dict[str, str]) -> tuple[str, int]:
    """
    Swap placeholders for resolved inline citations.

    Unresolved placeholders fall back to "(value)"; malformed ones become a
    visible error marker.

    Returns:
        (new text, number of unresolved placeholders)
    """
    unresolved = 0

    def substitute(match: re.Match) -> str:
        nonlocal unresolved
        parsed = parse_citation_placeholders(match.group(0))
        if not parsed:
            unresolved += 1
            return f"[CITATION ERROR: {match.group(0)}]"

        placeholder = parsed[0]
        resolved = cite_key_map.get(placeholder.key)
        if resolved:
            return resolved
        unresolved += 1
        return f"({placeholder.value})"

    return ANY_PLACEHOLDER_PATTERN.sub(substitute, text), unresolved


def clean_citation_artifacts(content: str) -> str:
    """Strip leftover markers and placeholder text, then tidy whitespace."""
    cleaned = content
    for pattern in _ARTIFACT_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()
