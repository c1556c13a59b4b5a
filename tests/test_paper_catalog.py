# Tests for PaperCatalog lookups
import pytest

from models.database import Paper
from services.paper_catalog import PaperCatalog


@pytest.fixture
def catalog(in_memory_db):
    in_memory_db.add_all([
        Paper(id="p1", title="Attention Is All You Need", abstract="Transformers.", authors=["Ashish Vaswani"],
              year=2017, doi="10.5555/3295222", venue="NeurIPS", content_type="full_text", chunk_count=42),
        Paper(id="p2", title="Unprocessed Draft", authors=None, year=None),
    ])
    in_memory_db.commit()
    return PaperCatalog(in_memory_db)


class TestFetchMetadata:
    """Tests for metadata lookups."""

    def test_known_papers(self, catalog):
        metadata = catalog.fetch_metadata(["p1", "p2", "missing"])

        assert set(metadata) == {"p1", "p2"}
        assert metadata["p1"].authors == ["Ashish Vaswani"]
        assert metadata["p1"].venue == "NeurIPS"
        assert (metadata["p2"].authors, metadata["p2"].year) == ([], 0)

    def test_no_ids(self, catalog):
        assert catalog.fetch_metadata([]) == {}


class TestGetPapers:
    """Tests for paper records."""

    def test_requested_order(self, catalog):
        records = catalog.get_papers(["p2", "missing", "p1"])

        assert [r.id for r in records] == ["p2", "p1"]
        assert records[1].abstract == "Transformers."


class TestContentStatus:
    """Tests for ingestion status."""

    def test_status_for_every_id(self, catalog):
        statuses = catalog.get_content_status(["p1", "p2", "missing"])

        assert statuses["p1"].is_searchable is True
        assert statuses["p1"].chunk_count == 42
        assert statuses["p2"].has_content is False
        assert statuses["missing"].is_searchable is False
