"""
Citations package.

Canonical per-project citations, reference resolution and
style-aware rendering:
- CSL-JSON records built from paper metadata
- Inline and bibliography formatting (APA, MLA, Chicago, Harvard, IEEE)
- Citation markers and placeholders in generated text
- CitationResolutionService for idempotent citation creation
"""

from .csl import CSLAuthor, CSLRecord, build_csl_from_paper, parse_author_name
from .formatter import (
    format_bibliography,
    format_bibliography_entry,
    format_inline_citation,
    get_style_display_name,
)
from .markers import (
    PlaceholderCitation,
    clean_citation_artifacts,
    extract_citation_markers,
    extract_unique_placeholders,
    process_citation_markers,
    replace_placeholders,
)
from .matcher import CitationMatch, CitationMatcher
from .service import (
    AddCitationResult,
    BibliographyResult,
    CitationResolutionError,
    CitationResolutionService,
    ContentScanResult,
    SourceRef,
    generate_cite_key,
    normalize_doi,
)

__all__ = [
    "CSLAuthor",
    "CSLRecord",
    "build_csl_from_paper",
    "parse_author_name",
    "format_bibliography",
    "format_bibliography_entry",
    "format_inline_citation",
    "get_style_display_name",
    "PlaceholderCitation",
    "clean_citation_artifacts",
    "extract_citation_markers",
    "extract_unique_placeholders",
    "process_citation_markers",
    "replace_placeholders",
    "CitationMatch",
    "CitationMatcher",
    "AddCitationResult",
    "BibliographyResult",
    "CitationResolutionError",
    "CitationResolutionService",
    "ContentScanResult",
    "SourceRef",
    "generate_cite_key",
    "normalize_doi",
]
