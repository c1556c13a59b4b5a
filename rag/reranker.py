"""
Cross-Encoder Reranker for the retrieval pipeline.

Sends candidate passages to Cohere's rerank endpoint and returns their
relevance scores. Reranking is an enhancement: callers keep their
original order when this raises.
"""

import logging
import os
from dataclasses import dataclass

import requests

logger = logging.getLogger(__name__)


@dataclass
class RerankResult:
    """Relevance score for one document, by its position in the request."""
    index: int
    relevance_score: float


class RerankError(Exception):
    """Raised when the rerank API call fails or returns garbage."""


class CohereReranker:
    """
    Cross-encoder reranker backed by the Cohere rerank API.

    Gated by a credential: without COHERE_API_KEY the reranker reports
    itself unavailable and callers skip it.
    """

    API_URL = "https://api.cohere.ai/v1/rerank"
    MODEL_NAME = "rerank-english-v3.0"
    TIMEOUT_SECONDS = 10

    def __init__(self, api_key: str | None = None, model: str | None = None):
        """
        Initialize the reranker.

        Args:
            api_key: Cohere API key (defaults to COHERE_API_KEY)
            model: Rerank model name
        """
        self.api_key = api_key or os.environ.get("COHERE_API_KEY")
        self.model = model or self.MODEL_NAME

        logger.info(f"CohereReranker initialized (available={self.is_available})")

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    def rerank(self, query: str, documents: list[str]) -> list[RerankResult]:
        """
        Score documents against a query. Single attempt, no retry.

        Args:
            query: Search query
            documents: Candidate passages, in their current order

        Returns:
            Results sorted by relevance, best first

        Raises:
            RerankError: on missing credential, HTTP failure or bad payload
        """
        if not documents:
            return []
        if not self.api_key:
            raise RerankError("COHERE_API_KEY is not configured")

        try:
            response = requests.post(
                self.API_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "query": query,
                    "documents": documents,
                    "top_n": len(documents),
                    "return_documents": False,
                },
                timeout=self.TIMEOUT_SECONDS,
            )
        except requests.exceptions.RequestException as e:
            raise RerankError(f"Cohere request failed: {e}") from e

        if response.status_code != 200:
            raise RerankError(f"Cohere API error: {response.status_code} {response.reason}")

        try:
            results = [
                RerankResult(index=int(r["index"]), relevance_score=float(r["relevance_score"]))
                for r in response.json()["results"]
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise RerankError(f"Unexpected rerank response: {e}") from e

        if any(r.index < 0 or r.index >= len(documents) for r in results):
            raise RerankError("Rerank response referenced an unknown document index")

        results.sort(key=lambda r: r.relevance_score, reverse=True)
        logger.debug(f"Reranked {len(documents)} documents")
        return results
