# Tests for the BM25 index and the Qdrant search backend
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock

import pytest

from rag.schemas import RetrievedChunk
from rag.search_backend import ChunkKeywordIndex, QdrantSearchBackend


def point(point_id, paper_id, content, score=None, chunk_index=0):
    return SimpleNamespace(
        id=point_id,
        score=score,
        payload={"paper_id": paper_id, "content": content, "chunk_index": chunk_index},
    )


@pytest.fixture
def qdrant():
    client = MagicMock()
    client.query_points.return_value = SimpleNamespace(points=[])
    client.scroll.return_value = ([], None)
    return client


@pytest.fixture
def backend(qdrant):
    return QdrantSearchBackend(client=qdrant)


class TestChunkKeywordIndex:
    """Tests for BM25 ranking over chunks."""

    @pytest.fixture
    def index(self):
        index = ChunkKeywordIndex()
        index.add_chunks([
            RetrievedChunk(id="a", paper_id="p1", content="Gradient descent converges slowly."),
            RetrievedChunk(id="b", paper_id="p1", content="Gradient clipping stabilises gradient updates."),
            RetrievedChunk(id="c", paper_id="p2", content="Protein structures fold quickly."),
            RetrievedChunk(id="d", paper_id="p3", content="Gradient boosting for protein design in practice."),
        ])
        return index

    def test_ranks_matching_chunks(self, index):
        ranked = index.search("gradient", top_k=5)

        assert [c.id for c in ranked] == ["b", "a", "d"]
        assert ranked[0].score == ranked[0].keyword_score == 1.0
        assert all(0 < c.score <= 1.0 for c in ranked)

    def test_restricts_to_requested_papers(self, index):
        ranked = index.search("gradient protein", top_k=5, paper_ids=["p2", "p3"])

        assert {c.paper_id for c in ranked} == {"p2", "p3"}
        assert ranked[0].id == "d"

    def test_unknown_papers_return_nothing(self, index):
        assert index.search("gradient", paper_ids=["missing"]) == []

    def test_results_are_copies(self, index):
        index.search("protein")[0].content = "changed"
        assert index.chunks[2].content == "Protein structures fold quickly."

    def test_duplicate_chunk_ids_indexed_once(self, index):
        index.add_chunks([RetrievedChunk(id="a", paper_id="p1", content="Gradient again.")])

        assert len(index) == 4
        assert [c.id for c in index.search("again")] == []

    def test_stopwords_and_punctuation_ignored(self):
        index = ChunkKeywordIndex()
        index.add_chunks([RetrievedChunk(id="a", paper_id="p", content="Self-attention, explained!")])

        assert index.search("the ATTENTION of")[0].id == "a"
        assert index.search("the of and") == []

    def test_empty_index_and_query(self):
        index = ChunkKeywordIndex()
        assert index.search("anything") == []
        index.add_chunks([RetrievedChunk(id="a", paper_id="p", content="text")])
        assert index.search("  ?! ") == []
        assert index.paper_ids == {"p"}


class TestVectorSearch:
    """Tests for Qdrant vector search."""

    def test_maps_points_to_chunks(self, backend, qdrant):
        qdrant.query_points.return_value = SimpleNamespace(points=[
            point("c1", "p1", "First chunk", score=0.9, chunk_index=3),
        ])

        chunks = backend.vector_search([0.1, 0.2], ["p1"], limit=5, min_score=0.3)

        assert chunks[0].id == "c1"
        assert chunks[0].chunk_index == 3
        assert chunks[0].score == chunks[0].vector_score == 0.9
        kwargs = qdrant.query_points.call_args.kwargs
        assert kwargs["collection_name"] == "paper_chunks"
        assert kwargs["score_threshold"] == 0.3
        assert kwargs["limit"] == 5
        assert kwargs["query_filter"].must[0].match.any == ["p1"]

    def test_missing_score_is_zero(self, backend, qdrant):
        qdrant.query_points.return_value = SimpleNamespace(points=[point("c1", "p1", "x")])
        assert backend.vector_search([0.1], ["p1"], limit=1)[0].score == 0.0


class TestKeywordSearch:
    """Tests for BM25 over scrolled chunks."""

    def test_scrolls_every_page(self, backend, qdrant):
        qdrant.scroll.side_effect = [
            ([point("c1", "p1", "dropout regularizes networks"), point("c2", "p1", "batch norm")], "next"),
            ([point("c3", "p2", "dropout again dropout")], None),
        ]

        chunks = backend.keyword_search("dropout", ["p1", "p2"], limit=10)

        assert [c.id for c in chunks] == ["c3", "c1"]
        assert chunks[0].score == chunks[0].keyword_score == 1.0
        assert 0 < chunks[1].keyword_score < 1.0
        offsets = [call.kwargs["offset"] for call in qdrant.scroll.call_args_list]
        assert offsets == [None, "next"]

    def test_no_matches(self, backend, qdrant):
        qdrant.scroll.return_value = ([point("c1", "p1", "batch norm")], None)
        assert backend.keyword_search("dropout", ["p1"], limit=10) == []

    def test_repeated_and_foreign_chunks_dropped(self, backend, qdrant):
        qdrant.scroll.side_effect = [
            ([point("c1", "p1", "dropout helps"), point("x9", "p9", "dropout dropout")], "next"),
            ([point("c1", "p1", "dropout helps")], None),
        ]

        chunks = backend.keyword_search("dropout", ["p1"], limit=10)

        assert [c.id for c in chunks] == ["c1"]


class TestHybridSearch:
    """Tests for weighted score fusion and citation boost."""

    @pytest.fixture
    def stubbed(self, backend):
        backend.vector_search = Mock(return_value=[
            RetrievedChunk(id="v", paper_id="p1", content="vector only", score=0.9, vector_score=0.9),
            RetrievedChunk(id="s", paper_id="p1", content="shared", score=0.6, vector_score=0.6),
        ])
        backend.keyword_search = Mock(return_value=[
            RetrievedChunk(id="s", paper_id="p1", content="shared", score=1.0, keyword_score=1.0),
            RetrievedChunk(id="k", paper_id="p2", content="keyword only", score=0.5, keyword_score=0.5),
        ])
        return backend

    def test_weighted_merge(self, stubbed):
        results = stubbed.hybrid_search([0.1], "q", ["p1", "p2"], limit=10, vector_weight=0.7)

        scores = {c.id: c.score for c in results}
        assert scores["v"] == pytest.approx(0.63)
        assert scores["s"] == pytest.approx(0.72)
        assert scores["k"] == pytest.approx(0.15)
        assert [c.id for c in results] == ["s", "v", "k"]

    def test_min_vector_score_forwarded(self, stubbed):
        stubbed.hybrid_search([0.1], "q", ["p1"], limit=2, min_vector_score=0.4)

        stubbed.vector_search.assert_called_once_with([0.1], ["p1"], 2, 0.4)

    def test_limit(self, stubbed):
        assert len(stubbed.hybrid_search([0.1], "q", ["p1"], limit=1)) == 1

    def test_citation_boost(self, stubbed):
        stubbed.citation_counts = Mock(return_value={"k": 3})

        results = stubbed.hybrid_search([0.1], "q", ["p1", "p2"], limit=10, citation_boost=0.6)

        boosted = next(c for c in results if c.id == "k")
        assert boosted.score == pytest.approx(0.75)
        assert boosted.metadata["citation_boost"] == pytest.approx(0.6)
        assert results[0].id == "k"

    def test_boost_ignored_without_provider(self, stubbed):
        results = stubbed.hybrid_search([0.1], "q", ["p1"], limit=10, citation_boost=0.6)
        assert all("citation_boost" not in c.metadata for c in results)


class TestMatchClaims:
    """Tests for claim search."""

    def test_maps_claim_payload(self, backend, qdrant):
        qdrant.query_points.return_value = SimpleNamespace(points=[SimpleNamespace(
            id=7,
            score=0.8,
            payload={
                "paper_id": "p1",
                "claim_text": "Dropout reduces overfitting.",
                "evidence_quote": "test error fell",
                "claim_type": "finding",
                "confidence": 0.9,
            },
        )])

        claims = backend.match_claims([0.1], ["p1"], limit=3)

        assert claims[0].id == "7"
        assert claims[0].claim_type == "finding"
        assert (claims[0].confidence, claims[0].score) == (0.9, 0.8)
        assert qdrant.query_points.call_args.kwargs["collection_name"] == "paper_claims"
