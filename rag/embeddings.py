"""
Embedding Service for the retrieval pipeline.

Uses Google's text-embedding model (Gemini) for generating embeddings.
Caching is owned by the callers (see cache.memory_cache.EmbeddingCache),
so every call here goes to the API.
"""

import logging
import os

import requests
from dotenv import load_dotenv

from .error_handling import NonRetryableError, RetryableError, RetryConfig, with_retry

load_dotenv()

logger = logging.getLogger(__name__)

_TRANSIENT = (
    RetryableError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


class EmbeddingService:
    """
    Service for generating text embeddings using Google's embedding API.

    Features:
    - Batch embedding in API-sized slices
    - One bounded retry on rate limits and server errors
    - Token counting for cost tracking
    """

    MODEL_NAME = "text-embedding-004"
    EMBEDDING_DIM = 768

    MAX_BATCH_SIZE = 100
    TIMEOUT_SECONDS = 30

    def __init__(self, api_key: str | None = None):
        """
        Initialize the embedding service.

        Args:
            api_key: Google API key (defaults to GEMINI_API_KEY env var)
        """
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY")
        if not self.api_key:
            raise ValueError("GEMINI_API_KEY environment variable is required")

        self.batch_url = (
            "https://generativelanguage.googleapis.com/v1beta/models/"
            f"{self.MODEL_NAME}:batchEmbedContents"
        )

        self.total_tokens = 0
        self.total_requests = 0

        logger.info(f"EmbeddingService initialized with model {self.MODEL_NAME}")

    def _estimate_tokens(self, text: str) -> int:
        """Rough token estimate (approximately 4 chars per token)."""
        return len(text) // 4

    def embed(self, text: str) -> list[float]:
        """Generate the embedding for a single text."""
        return self.embed_texts([text])[0]

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts, preserving order.

        Args:
            texts: Texts to embed

        Returns:
            One embedding vector per input text
        """
        if not texts:
            return []

        embeddings: list[list[float]] = []
        for i in range(0, len(texts), self.MAX_BATCH_SIZE):
            batch = texts[i:i + self.MAX_BATCH_SIZE]
            embeddings.extend(self._call_batch_api(batch))
        return embeddings

    @with_retry(
        config=RetryConfig(max_retries=1),
        retryable_exceptions=_TRANSIENT,
        non_retryable_exceptions=(NonRetryableError, ValueError),
    )
    def _call_batch_api(self, texts: list[str]) -> list[list[float]]:
        """Make a batch embedding API call."""
        payload = {
            "requests": [
                {"model": f"models/{self.MODEL_NAME}", "content": {"parts": [{"text": text}]}}
                for text in texts
            ]
        }

        response = requests.post(
            f"{self.batch_url}?key={self.api_key}",
            headers={"Content-Type": "application/json"},
            json=payload,
            timeout=self.TIMEOUT_SECONDS,
        )

        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableError(f"Embedding API error: {response.status_code}")
        if response.status_code != 200:
            raise NonRetryableError(f"Embedding API error: {response.status_code}")

        result = response.json()
        self.total_requests += 1
        self.total_tokens += sum(self._estimate_tokens(t) for t in texts)

        embeddings = []
        for item in result.get("embeddings", []):
            if "values" in item:
                embeddings.append(item["values"])
            elif "embedding" in item:
                embeddings.append(item["embedding"]["values"])
            else:
                raise ValueError(f"Unexpected embedding item format: {item}")

        if len(embeddings) != len(texts):
            raise ValueError(
                f"Embedding API returned {len(embeddings)} vectors for {len(texts)} texts"
            )
        return embeddings

    def get_stats(self) -> dict:
        """Get usage statistics."""
        return {
            "total_requests": self.total_requests,
            "total_tokens": self.total_tokens,
        }


_embedding_service: EmbeddingService | None = None


def get_embedding_service() -> EmbeddingService:
    """Get or create the global embedding service instance."""
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
    return _embedding_service
