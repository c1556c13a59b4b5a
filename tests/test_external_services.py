# Tests for the HTTP-backed embedding and rerank clients
from unittest.mock import Mock, patch

import pytest
import requests

from rag.embeddings import EmbeddingService
from rag.error_handling import NonRetryableError
from rag.reranker import CohereReranker, RerankError


def response(status_code=200, payload=None, reason="OK"):
    mock = Mock()
    mock.status_code = status_code
    mock.reason = reason
    mock.json.return_value = payload if payload is not None else {}
    return mock


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("rag.error_handling.time.sleep"):
        yield


class TestCohereReranker:
    """Tests for the Cohere rerank client."""

    def test_availability_follows_credential(self, monkeypatch):
        monkeypatch.delenv("COHERE_API_KEY", raising=False)
        assert CohereReranker().is_available is False
        assert CohereReranker(api_key="key").is_available is True

    def test_results_sorted_by_relevance(self):
        payload = {"results": [
            {"index": 0, "relevance_score": 0.2},
            {"index": 1, "relevance_score": 0.9},
        ]}
        with patch("rag.reranker.requests.post", return_value=response(payload=payload)) as post:
            results = CohereReranker(api_key="key").rerank("query", ["doc a", "doc b"])

        assert [(r.index, r.relevance_score) for r in results] == [(1, 0.9), (0, 0.2)]
        body = post.call_args.kwargs["json"]
        assert body["top_n"] == 2
        assert body["model"] == "rerank-english-v3.0"
        assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer key"

    def test_empty_documents_skip_the_call(self):
        with patch("rag.reranker.requests.post") as post:
            assert CohereReranker(api_key="key").rerank("query", []) == []
        post.assert_not_called()

    def test_missing_credential(self, monkeypatch):
        monkeypatch.delenv("COHERE_API_KEY", raising=False)
        with pytest.raises(RerankError):
            CohereReranker().rerank("query", ["doc"])

    def test_http_error(self):
        with patch("rag.reranker.requests.post", return_value=response(500, reason="Server Error")):
            with pytest.raises(RerankError, match="500"):
                CohereReranker(api_key="key").rerank("query", ["doc"])

    def test_network_error_is_not_retried(self):
        with patch("rag.reranker.requests.post", side_effect=requests.exceptions.Timeout("slow")) as post:
            with pytest.raises(RerankError):
                CohereReranker(api_key="key").rerank("query", ["doc"])
        assert post.call_count == 1

    @pytest.mark.parametrize("payload", [
        {"unexpected": []},
        {"results": [{"index": 5, "relevance_score": 0.5}]},
        {"results": [{"index": "x", "relevance_score": 0.5}]},
    ])
    def test_bad_payload(self, payload):
        with patch("rag.reranker.requests.post", return_value=response(payload=payload)):
            with pytest.raises(RerankError):
                CohereReranker(api_key="key").rerank("query", ["doc"])


class TestEmbeddingService:
    """Tests for the batch embedding client."""

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        with pytest.raises(ValueError):
            EmbeddingService()

    def test_embed_texts_preserves_order(self):
        payload = {"embeddings": [{"values": [0.1, 0.2]}, {"embedding": {"values": [0.3, 0.4]}}]}
        with patch("rag.embeddings.requests.post", return_value=response(payload=payload)) as post:
            service = EmbeddingService(api_key="key")
            vectors = service.embed_texts(["first", "second text"])

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]
        requests_sent = post.call_args.kwargs["json"]["requests"]
        assert [r["content"]["parts"][0]["text"] for r in requests_sent] == ["first", "second text"]
        assert service.get_stats() == {"total_requests": 1, "total_tokens": 3}

    def test_embed_single(self):
        payload = {"embeddings": [{"values": [1.0]}]}
        with patch("rag.embeddings.requests.post", return_value=response(payload=payload)):
            assert EmbeddingService(api_key="key").embed("hello") == [1.0]

    def test_batches_large_inputs(self):
        def reply(url, headers, json, timeout):
            return response(payload={"embeddings": [{"values": [0.0]} for _ in json["requests"]]})

        with patch("rag.embeddings.requests.post", side_effect=reply) as post:
            vectors = EmbeddingService(api_key="key").embed_texts([f"t{i}" for i in range(150)])

        assert len(vectors) == 150
        assert post.call_count == 2

    def test_empty_input(self):
        with patch("rag.embeddings.requests.post") as post:
            assert EmbeddingService(api_key="key").embed_texts([]) == []
        post.assert_not_called()

    def test_server_error_retried_once(self):
        replies = [response(503), response(payload={"embeddings": [{"values": [0.5]}]})]
        with patch("rag.embeddings.requests.post", side_effect=replies) as post:
            assert EmbeddingService(api_key="key").embed_texts(["x"]) == [[0.5]]
        assert post.call_count == 2

    def test_client_error_not_retried(self):
        with patch("rag.embeddings.requests.post", return_value=response(400)) as post:
            with pytest.raises(NonRetryableError):
                EmbeddingService(api_key="key").embed_texts(["x"])
        assert post.call_count == 1

    def test_count_mismatch(self):
        with patch("rag.embeddings.requests.post", return_value=response(payload={"embeddings": []})):
            with pytest.raises(ValueError):
                EmbeddingService(api_key="key").embed_texts(["x"])
