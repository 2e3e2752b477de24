"""
Retry with Exponential Backoff

Every upstream call (embeddings, chat completion, vision, PDF analysis) goes
through `call_with_retry`. Transient failures are retried with exponential
backoff plus jitter; once the ceiling is reached a ServiceUnavailableError is
raised instead of the raw client exception.

Usage:
    from app.rag.retry import call_with_retry, RETRY_CONFIGS

    response = call_with_retry(
        lambda: client.embeddings.create(...),
        RETRY_CONFIGS["embedding"],
        service="embedding",
    )
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, TypeVar

import openai
import requests

from app.rag.errors import ServiceUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUSES = (429, 500, 502, 503, 504, 529)
RETRYABLE_MESSAGES = ("timeout", "timed out", "network", "connection", "socket hang up", "aborted")

# Exceptions that are always transient
TRANSIENT_EXCEPTIONS: Tuple[type, ...] = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
    requests.Timeout,
    requests.ConnectionError,
    TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float = 60.0
    retryable_statuses: Tuple[int, ...] = field(default=RETRYABLE_STATUSES)


RETRY_CONFIGS = {
    "chat": RetryConfig(max_retries=3, initial_delay=2.0, max_delay=15.0, timeout=60.0),
    "embedding": RetryConfig(max_retries=2, initial_delay=0.5, max_delay=5.0, timeout=10.0),
    "rerank": RetryConfig(max_retries=1, initial_delay=0.5, max_delay=2.0, timeout=15.0),
    "vision": RetryConfig(max_retries=2, initial_delay=3.0, max_delay=20.0, timeout=45.0),
    "pdf": RetryConfig(max_retries=2, initial_delay=3.0, max_delay=20.0, timeout=180.0),
    "storage": RetryConfig(max_retries=3, initial_delay=0.1, max_delay=2.0, timeout=10.0),
}


def compute_backoff(attempt: int, config: RetryConfig) -> float:
    """Exponential delay for a zero-based attempt, with up to 30% jitter."""
    delay = config.initial_delay * (2 ** attempt)
    jitter = random.random() * 0.3 * delay
    return min(delay + jitter, config.max_delay)


def is_retryable(error: Exception, config: RetryConfig) -> bool:
    """Decide whether an exception looks transient."""
    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return True

    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    if status is not None:
        return status in config.retryable_statuses

    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_MESSAGES)


def call_with_retry(
    func: Callable[[], T],
    config: RetryConfig,
    service: str,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
) -> T:
    """
    Run `func` until it succeeds or the retry ceiling is reached.

    Non-transient errors are re-raised immediately. Transient errors that
    exhaust the ceiling become ServiceUnavailableError.
    """
    last_error: Optional[Exception] = None
    for attempt in range(config.max_retries + 1):
        try:
            return func()
        except Exception as e:
            last_error = e
            if not is_retryable(e, config):
                raise
            if attempt >= config.max_retries:
                break
            delay = compute_backoff(attempt, config)
            logger.warning(
                f"{service} attempt {attempt + 1}/{config.max_retries + 1} failed "
                f"({type(e).__name__}: {e}), retrying in {delay:.2f}s"
            )
            if on_retry:
                on_retry(attempt + 1, e, delay)
            sleep(delay)

    logger.error(f"{service} unavailable after {config.max_retries + 1} attempts: {last_error}")
    raise ServiceUnavailableError(
        service=service,
        attempts=config.max_retries + 1,
        last_error=str(last_error) if last_error else None,
    )
