# Tests for the scoring utilities shared by the retrieval pipeline
import uuid

import pytest

from rag.schemas import PaperMetadata, RetrievedChunk
from rag.scoring import (
    balance_chunks,
    content_fingerprint,
    cosine_similarity,
    create_deterministic_chunk_id,
    deduplicate_chunks,
    format_chunks_for_prompt,
    format_papers_for_prompt,
    get_first_author_last_name,
    normalize_score,
    reciprocal_rank_fusion,
    split_into_sentences,
)


def chunk(paper_id, content, score=0.0, id=None):
    return RetrievedChunk(paper_id=paper_id, content=content, score=score, id=id)


class TestCosineSimilarity:
    """Tests for cosine_similarity."""

    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 1.0], [-1.0, -1.0]) == pytest.approx(-1.0)

    def test_mismatched_lengths_return_zero(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0

    def test_zero_vector_returns_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_empty_vectors_return_zero(self):
        assert cosine_similarity([], []) == 0.0

    def test_malformed_input_does_not_raise(self):
        assert cosine_similarity([1.0, "x"], [1.0, 2.0]) == 0.0


class TestNormalizeScore:
    """Tests for normalize_score."""

    def test_none_becomes_zero(self):
        assert normalize_score(None) == 0.0

    def test_value_passes_through(self):
        assert normalize_score(0.42) == 0.42


class TestReciprocalRankFusion:
    """Tests for RRF fusion."""

    def test_scores_follow_rank_formula(self):
        a, b, c = chunk("p1", "alpha", id="a"), chunk("p1", "beta", id="b"), chunk("p2", "gamma", id="c")

        fused = reciprocal_rank_fusion([[a, b, c], [b, c]])

        assert [f.id for f in fused] == ["b", "c", "a"]
        assert fused[0].score == pytest.approx(1 / 62 + 1 / 61)
        assert fused[2].score == pytest.approx(1 / 61)

    def test_depends_only_on_rank_not_raw_score(self):
        low = [chunk("p1", "alpha", 0.01, "a"), chunk("p1", "beta", 0.02, "b")]
        high = [chunk("p1", "alpha", 0.99, "a"), chunk("p1", "beta", 0.98, "b")]

        fused_low = reciprocal_rank_fusion([low])
        fused_high = reciprocal_rank_fusion([high])

        assert [c.score for c in fused_low] == [c.score for c in fused_high]
        assert [c.id for c in fused_low] == ["a", "b"]

    def test_keeps_highest_scoring_variant(self):
        weak = chunk("p1", "alpha", 0.3, "a")
        strong = chunk("p1", "alpha", 0.8, "a")

        fused = reciprocal_rank_fusion([[weak], [strong]])

        assert len(fused) == 1
        assert fused[0].metadata["original_score"] == 0.8
        assert fused[0].metadata["rrf_score"] == pytest.approx(2 / 61)

    def test_chunks_without_id_key_on_source_and_prefix(self):
        first = chunk("p1", "same content here")
        second = chunk("p1", "same content here")
        other_source = chunk("p2", "same content here")

        fused = reciprocal_rank_fusion([[first, other_source], [second]])

        assert len(fused) == 2

    def test_custom_k(self):
        fused = reciprocal_rank_fusion([[chunk("p1", "alpha", id="a")]], k=10)
        assert fused[0].score == pytest.approx(1 / 11)

    def test_empty_input(self):
        assert reciprocal_rank_fusion([]) == []


class TestSentenceSplitting:
    """Tests for abbreviation-aware sentence splitting."""

    def test_splits_on_terminators(self):
        text = "Dr. Smith proposed a model. It works very well! Does it scale up? Yes."
        assert split_into_sentences(text) == [
            "Dr. Smith proposed a model.",
            "It works very well!",
            "Does it scale up?",
        ]

    def test_does_not_split_after_et_al(self):
        text = "Vaswani et al. showed that attention helps translation quality."
        assert split_into_sentences(text) == [text]

    def test_abbreviation_must_be_whole_word(self):
        text = "The results held across every piano. Later runs confirmed the finding."
        assert len(split_into_sentences(text)) == 2

    def test_drops_short_fragments(self):
        assert split_into_sentences("Ok. Short. This sentence is long enough.") == [
            "This sentence is long enough."
        ]

    def test_empty_text(self):
        assert split_into_sentences("") == []


class TestDeduplication:
    """Tests for content-fingerprint deduplication."""

    def test_first_occurrence_wins(self):
        chunks = [
            chunk("p1", "Attention is useful.", 0.5, "a"),
            chunk("p2", "  ATTENTION is useful.  ", 0.9, "b"),
            chunk("p3", "Something else entirely.", 0.4, "c"),
        ]

        result = deduplicate_chunks(chunks)

        assert [c.id for c in result] == ["a", "c"]

    def test_idempotent(self, sample_chunks):
        once = deduplicate_chunks(sample_chunks + sample_chunks)
        twice = deduplicate_chunks(once)
        assert [c.id for c in once] == [c.id for c in twice]

    def test_fingerprint_uses_first_hundred_chars(self):
        base = "x" * 100
        assert content_fingerprint(base + "tail one") == content_fingerprint(base + "tail two")


class TestBalanceChunks:
    """Tests for per-source balancing."""

    def test_caps_per_source_then_limits(self):
        chunks = [
            chunk("S1", "first from s1", 0.9),
            chunk("S1", "second from s1", 0.2),
            chunk("S2", "only from s2", 0.8),
        ]

        result = balance_chunks(chunks, max_per_paper=1, total_limit=2)

        assert [(c.paper_id, c.score) for c in result] == [("S1", 0.9), ("S2", 0.8)]

    def test_cap_applies_in_input_order(self):
        chunks = [chunk("p1", "low", 0.1), chunk("p1", "high", 0.9)]
        result = balance_chunks(chunks, max_per_paper=1, total_limit=5)
        assert result[0].content == "low"

    def test_output_sorted_by_score(self, sample_chunks):
        result = balance_chunks(list(reversed(sample_chunks)), max_per_paper=6, total_limit=10)
        scores = [c.score for c in result]
        assert scores == sorted(scores, reverse=True)


class TestAuthorNames:
    """Tests for first-author surname extraction."""

    @pytest.mark.parametrize("authors,expected", [
        (["Ashish Vaswani", "Noam Shazeer"], "Vaswani"),
        (["Vaswani, Ashish"], "Vaswani"),
        (["Vincent van Gogh"], "van Gogh"),
        (["Plato"], "Plato"),
        ([], "Unknown"),
        (None, "Unknown"),
        ([""], "Unknown"),
    ])
    def test_first_author_last_name(self, authors, expected):
        assert get_first_author_last_name(authors) == expected


class TestDeterministicIds:
    """Tests for deterministic chunk ids."""

    def test_same_input_same_id(self):
        assert create_deterministic_chunk_id("p1", "text", 0) == create_deterministic_chunk_id("p1", "text", 0)

    def test_index_changes_id(self):
        assert create_deterministic_chunk_id("p1", "text", 0) != create_deterministic_chunk_id("p1", "text", 1)

    def test_is_uuid(self):
        uuid.UUID(create_deterministic_chunk_id("p1", "text", 3))


class TestPromptFormatting:
    """Tests for prompt formatting helpers."""

    def test_chunks_with_citations(self, sample_chunks, sample_papers):
        text = format_chunks_for_prompt(sample_chunks[:1], sample_papers)
        assert text.startswith("[Source: (Vaswani, 2017)]\n")

    def test_chunk_with_unknown_source(self):
        text = format_chunks_for_prompt([chunk("missing", "content")], {})
        assert text == "[Source: (Unknown source)]\ncontent"

    def test_empty_chunks(self):
        assert format_chunks_for_prompt([], {}) == "No relevant content found in papers."

    def test_papers_listing(self):
        papers = {"p1": PaperMetadata(id="p1", title="A Title", authors=["Jane Doe"], year=2020)}
        assert format_papers_for_prompt(papers) == '- Doe (2020): "A Title" [ID: p1]'

    def test_no_papers(self):
        assert format_papers_for_prompt({}) == "No papers available."
