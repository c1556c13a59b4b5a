# Error types and bounded retry for the retrieval pipeline
# Typed exhaustion errors surface to callers; transient failures are retried at most once

import functools
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(str, Enum):
    """Categories of errors for handling strategy."""
    RATE_LIMIT = "rate_limit"           # API rate limit exceeded
    TIMEOUT = "timeout"                 # Request timed out
    SERVER_ERROR = "server_error"       # 5xx errors
    CLIENT_ERROR = "client_error"       # 4xx errors (non-retryable)
    NETWORK = "network"                 # Network connectivity issues
    VALIDATION = "validation"           # Input validation failed
    UNKNOWN = "unknown"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 1
    initial_delay: float = 0.5  # seconds
    max_delay: float = 5.0      # seconds
    exponential_base: float = 2.0
    jitter: bool = True


@dataclass
class ErrorContext:
    """Details handed to retry callbacks."""
    category: ErrorCategory
    message: str
    original_exception: Exception | None = None
    retry_count: int = 0
    total_delay: float = 0.0
    context: dict[str, Any] = field(default_factory=dict)


# =========================================================================
# Content errors surfaced to generation callers
# =========================================================================

class ContentError(Exception):
    """Base class for content retrieval failures that reach the caller."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ContentRetrievalError(ContentError):
    """Input was insufficient or sources could not be made searchable."""


class NoRelevantContentError(ContentError):
    """Every fallback (hybrid, broadened, abstracts) came back empty."""


class ContentQualityError(ContentError):
    """Chunks were found but their aggregate relevance is below the floor."""


# =========================================================================
# Retry
# =========================================================================

class RetryableError(Exception):
    """Errors that should be retried."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        super().__init__(message)
        self.category = category


class NonRetryableError(Exception):
    """Errors that should NOT be retried."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.CLIENT_ERROR):
        super().__init__(message)
        self.category = category


def with_retry(
    config: RetryConfig | None = None,
    retryable_exceptions: tuple = (Exception,),
    non_retryable_exceptions: tuple = (NonRetryableError,),
    on_retry: Callable[[ErrorContext], None] | None = None,
):
    """
    Decorator for bounded retry with exponential backoff.

    Args:
        config: Retry configuration (one retry by default)
        retryable_exceptions: Tuple of exception types to retry
        non_retryable_exceptions: Tuple of exception types to never retry
        on_retry: Optional callback called before each retry

    Example:
        @with_retry(config=RetryConfig(max_retries=1))
        def embed(texts):
            return client.embed(texts)
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            total_delay = 0.0

            for attempt in range(config.max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except non_retryable_exceptions as e:
                    logger.error(f"{func.__name__} failed with non-retryable error: {e}")
                    raise

                except retryable_exceptions as e:
                    if attempt == config.max_retries:
                        logger.error(f"{func.__name__} failed after {config.max_retries} retries: {e}")
                        raise

                    delay = min(
                        config.initial_delay * (config.exponential_base ** attempt),
                        config.max_delay,
                    )
                    if config.jitter:
                        delay = delay * (0.5 + random.random() * 0.5)
                    total_delay += delay

                    logger.warning(
                        f"{func.__name__} attempt {attempt + 1}/{config.max_retries} failed: {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )

                    if on_retry:
                        on_retry(ErrorContext(
                            category=categorize_error(e),
                            message=str(e),
                            original_exception=e,
                            retry_count=attempt + 1,
                            total_delay=total_delay,
                            context={"function": func.__name__},
                        ))

                    time.sleep(delay)

            raise RuntimeError(f"{func.__name__} failed without exception")

        return wrapper
    return decorator


def categorize_error(exception: Exception) -> ErrorCategory:
    """Categorize exception into error types."""
    error_str = str(exception).lower()
    exception_name = type(exception).__name__.lower()

    if "429" in error_str or "rate limit" in error_str or "too many requests" in error_str:
        return ErrorCategory.RATE_LIMIT
    elif "timeout" in error_str or "timeout" in exception_name:
        return ErrorCategory.TIMEOUT
    elif any(code in error_str for code in ("500", "502", "503", "504")):
        return ErrorCategory.SERVER_ERROR
    elif any(code in error_str for code in ("400", "401", "403", "404")):
        return ErrorCategory.CLIENT_ERROR
    elif "network" in error_str or "connection" in error_str:
        return ErrorCategory.NETWORK
    elif "validation" in error_str:
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN
