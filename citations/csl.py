# CSL-JSON records for canonical citations
# Built from paper metadata and validated once at the persistence boundary

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

PublicationType = Literal[
    "article-journal",
    "article",
    "book",
    "chapter",
    "paper-conference",
    "thesis",
    "report",
    "webpage",
    "manuscript",
]

# Particles that belong to the family name ("van der Berg", "de la Cruz")
AUTHOR_PREFIXES = frozenset({
    "van", "der", "de", "la", "del", "von", "di", "du", "le", "da", "dos", "das",
})

CONFERENCE_VENUES = frozenset({
    "icml", "iclr", "nips", "neurips", "siggraph", "cvpr", "iccv", "eccv",
    "aaai", "ijcai", "acl", "emnlp", "naacl", "icdm", "kdd", "www",
})
CONFERENCE_KEYWORDS = ("proceedings", "conference", "workshop", "symposium", "summit", "meeting")
PREPRINT_KEYWORDS = ("arxiv", "biorxiv", "preprint", "prepub")


class CSLAuthor(BaseModel):
    family: str | None = None
    given: str | None = None
    literal: str | None = None

    @property
    def display_family(self) -> str:
        return self.family or self.literal or "Unknown"


class CSLDate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date_parts: list[list[int]] = Field(alias="date-parts")


class CSLRecord(BaseModel):
    """A bibliographic record in CSL-JSON shape."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    type: PublicationType = "article-journal"
    title: str = Field(min_length=1)
    author: list[CSLAuthor] = Field(default_factory=list)
    container_title: str | None = Field(default=None, alias="container-title")
    issued: CSLDate | None = None
    DOI: str | None = None
    URL: str | None = None
    abstract: str | None = None
    page: str | None = None
    volume: str | None = None
    issue: str | None = None
    publisher: str | None = None

    @field_validator("URL")
    @classmethod
    def url_has_scheme(cls, value: str | None) -> str | None:
        if value is not None and not value.startswith(("http://", "https://")):
            raise ValueError(f"URL must be absolute: {value}")
        return value

    @property
    def year(self) -> int | None:
        if self.issued and self.issued.date_parts and self.issued.date_parts[0]:
            return self.issued.date_parts[0][0]
        return None

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, data: dict) -> "CSLRecord":
        return cls.model_validate(data)


def parse_author_name(name: str) -> CSLAuthor:
    """
    Split a display name into CSL parts.

    Handles "Family, Given", "Given Family", surname particles
    ("Ludwig van Beethoven" -> family "van Beethoven") and single names,
    which are kept as a literal.
    """
    trimmed = name.strip()

    if ", " in trimmed:
        family, given = trimmed.split(", ", 1)
        return CSLAuthor(family=family.strip(), given=given.strip(), literal=trimmed)

    parts = trimmed.split()
    if len(parts) < 2:
        return CSLAuthor(family="", given="", literal=trimmed)

    family_start = len(parts) - 1
    for i in range(len(parts) - 2, -1, -1):
        if parts[i].lower() in AUTHOR_PREFIXES:
            family_start = i
        else:
            break

    if family_start == 0:
        family_start = len(parts) - 1

    return CSLAuthor(
        family=" ".join(parts[family_start:]),
        given=" ".join(parts[:family_start]),
        literal=trimmed,
    )


def determine_publication_type(venue: str) -> str:
    lower = venue.lower()
    if any(name in lower for name in CONFERENCE_VENUES):
        return "paper-conference"
    if any(keyword in lower for keyword in CONFERENCE_KEYWORDS):
        return "paper-conference"
    if any(keyword in lower for keyword in PREPRINT_KEYWORDS):
        return "manuscript"
    return "article-journal"


def build_csl_from_paper(paper) -> CSLRecord:
    """
    Build a validated CSL record from a paper row or record.

    ``paper`` needs ``id``, ``title``, ``authors``, ``year``, ``doi`` and
    ``venue``; ``url`` and ``abstract`` are used when present.
    """
    authors = [parse_author_name(name) for name in (paper.authors or []) if name and name.strip()]

    url = getattr(paper, "url", None)
    return CSLRecord(
        id=paper.doi or paper.id,
        type=determine_publication_type(paper.venue) if paper.venue else "article-journal",
        title=paper.title or "Untitled",
        author=authors,
        container_title=paper.venue or None,
        issued=CSLDate(date_parts=[[paper.year]]) if paper.year else None,
        DOI=paper.doi or None,
        URL=url if url and url.startswith(("http://", "https://")) else None,
        abstract=getattr(paper, "abstract", None) or None,
    )
