# Inline and bibliography formatting for APA, MLA, Chicago, Harvard and IEEE
# Pure functions over CSL records; persistence lives in citations.service

import re
from collections.abc import Sequence

from .csl import CSLAuthor, CSLRecord

DEFAULT_STYLE = "apa"
NO_DATE = "n.d."

STYLE_DISPLAY_NAMES = {
    "apa": "APA 7th Edition",
    "mla": "MLA 9th Edition",
    "chicago": "Chicago 17th Edition",
    "ieee": "IEEE",
    "harvard": "Harvard",
}

BIBLIOGRAPHY_STYLES = ("apa", "mla", "chicago", "ieee")


def normalize_style(style: str | None) -> str:
    style = (style or "").strip().lower()
    return style if style in STYLE_DISPLAY_NAMES else DEFAULT_STYLE


def get_style_display_name(style: str) -> str:
    return STYLE_DISPLAY_NAMES.get(style, STYLE_DISPLAY_NAMES[DEFAULT_STYLE])


def last_names(authors: Sequence[str]) -> list[str]:
    """Family names from display names ("Family, Given" or "Given Family")."""
    names = []
    for author in authors:
        if not author or not author.strip():
            continue
        if "," in author:
            names.append(author.split(",")[0].strip())
        else:
            names.append(author.strip().split()[-1])
    return names


def csl_last_names(authors: Sequence[CSLAuthor]) -> list[str]:
    return [a.display_family for a in authors]


# =========================================================================
# Inline citations
# =========================================================================

def format_inline_citation(
    names: Sequence[str],
    year: int | None,
    style: str = DEFAULT_STYLE,
    number: int | None = None,
) -> str:
    """
    Inline citation for an author list.

    Args:
        names: Family names in author order
        year: Publication year; missing years render as "n.d."
        style: apa, mla, chicago, harvard or ieee (unknown styles use apa)
        number: Citation number, required for a numbered ieee citation
    """
    style = normalize_style(style)
    year_text = str(year) if year else NO_DATE

    if style == "ieee":
        return f"[{number}]" if number else "[citation]"

    if style == "mla":
        if not names:
            return "(Anonymous)"
        if len(names) == 1:
            return f"({names[0]})"
        if len(names) == 2:
            return f"({names[0]} and {names[1]})"
        return f"({names[0]} et al.)"

    if style == "chicago":
        if not names:
            return f"(Anonymous {year_text})"
        if len(names) == 1:
            return f"({names[0]} {year_text})"
        if len(names) == 2:
            return f"({names[0]} and {names[1]} {year_text})"
        return f"({names[0]} et al. {year_text})"

    if style == "harvard":
        if not names:
            return f"(Anonymous {year_text})"
        if len(names) == 1:
            return f"({names[0]} {year_text})"
        if len(names) == 2:
            return f"({names[0]} & {names[1]} {year_text})"
        return f"({names[0]} et al. {year_text})"

    if not names:
        return f"(Anonymous, {year_text})"
    if len(names) == 1:
        return f"({names[0]}, {year_text})"
    if len(names) == 2:
        return f"({names[0]} & {names[1]}, {year_text})"
    return f"({names[0]} et al., {year_text})"


# =========================================================================
# Bibliography entries
# =========================================================================

def _family(author: CSLAuthor) -> str:
    return author.family or author.literal or "Unknown"


def format_authors_apa(authors: Sequence[CSLAuthor]) -> str:
    if not authors:
        return "Anonymous"

    names = [
        f"{_family(a)}, {a.given[0]}." if a.given else _family(a)
        for a in authors
    ]
    if len(names) == 1:
        return names[0]
    if len(names) <= 20:
        return ", ".join(names[:-1]) + ", & " + names[-1]
    return ", ".join(names[:19]) + ", ... " + names[-1]


def format_authors_mla(authors: Sequence[CSLAuthor]) -> str:
    if not authors:
        return "Anonymous"

    first = authors[0]
    first_formatted = f"{_family(first)}, {first.given}" if first.given else _family(first)
    if len(authors) == 1:
        return first_formatted
    if len(authors) == 2:
        second = authors[1]
        second_name = f"{second.given} {_family(second)}" if second.given else _family(second)
        return f"{first_formatted}, and {second_name}"
    return f"{first_formatted}, et al."


def format_authors_chicago(authors: Sequence[CSLAuthor]) -> str:
    if not authors:
        return "Anonymous"
    first = authors[0]
    return f"{_family(first)}, {first.given}" if first.given else _family(first)


def format_authors_ieee(authors: Sequence[CSLAuthor]) -> str:
    if not authors:
        return "Anonymous"

    names = []
    for a in authors:
        if a.given:
            initials = ". ".join(part[0] for part in a.given.split())
            names.append(f"{initials}. {_family(a)}")
        else:
            names.append(_family(a))

    if len(names) <= 3:
        return ", ".join(names)
    return f"{names[0]} et al."


def format_bibliography_entry(csl: CSLRecord, number: int, style: str = DEFAULT_STYLE) -> str:
    """One reference-list entry; markdown italics mark the container title."""
    style = style if style in BIBLIOGRAPHY_STYLES else DEFAULT_STYLE
    year = csl.year or NO_DATE
    title = csl.title or "No title"
    journal = csl.container_title

    if style == "mla":
        journal_part = f" *{journal}*" if journal else ""
        doi = f", doi:{csl.DOI}" if csl.DOI else ""
        url = f", {csl.URL}" if not csl.DOI and csl.URL else ""
        return f'{format_authors_mla(csl.author)}. "{title}"{journal_part}, {year}{doi}{url}.'

    if style == "chicago":
        journal_part = f" *{journal}*." if journal else ""
        doi = f" https://doi.org/{csl.DOI}" if csl.DOI else ""
        url = f" {csl.URL}" if not csl.DOI and csl.URL else ""
        return f'{format_authors_chicago(csl.author)}. {year}. "{title}".{journal_part}{doi}{url}'

    if style == "ieee":
        journal_part = f" *{journal}*" if journal else ""
        doi = f", doi: {csl.DOI}" if csl.DOI else ""
        url = f", [Online]. Available: {csl.URL}" if not csl.DOI and csl.URL else ""
        return f'[{number}] {format_authors_ieee(csl.author)}, "{title}"{journal_part}, {year}{doi}{url}.'

    doi = f" https://doi.org/{csl.DOI}" if csl.DOI else ""
    url = f" Retrieved from {csl.URL}" if not csl.DOI and csl.URL else ""
    if journal:
        return f"{format_authors_apa(csl.author)} ({year}). {title}. *{journal}*.{doi}{url}"
    return f"{format_authors_apa(csl.author)} ({year}). {title}.{doi}{url}"


def format_bibliography(entries: Sequence[tuple[int, CSLRecord]], style: str = DEFAULT_STYLE) -> str:
    """
    Render a "## References" block from (citation_number, record) pairs.

    Entries are emitted in the order given, each collapsed to one line.
    """
    if not entries:
        return ""

    lines = [
        re.sub(r"\s+", " ", format_bibliography_entry(csl, number, style)).strip()
        for number, csl in entries
    ]
    return "\n".join(["## References", "", *lines, ""])
