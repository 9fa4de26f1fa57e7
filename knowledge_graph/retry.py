"""
Timeout + bounded retry for calls to the embedding function and vector store.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar
import asyncio
import logging
import random

from config import settings
from errors import MemoryGraphError, UpstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    attempts: int = settings.UPSTREAM_RETRY_ATTEMPTS
    delay: float = settings.UPSTREAM_RETRY_DELAY
    max_delay: float = settings.UPSTREAM_RETRY_MAX_DELAY
    timeout: Optional[float] = None

    def backoff(self, attempt: int) -> float:
        return min(self.delay * (2 ** attempt) + random.uniform(0, self.delay), self.max_delay)


async def call_with_retry(
    upstream: str,
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
) -> T:
    """
    Await fn() under the policy's timeout, retrying with exponential backoff.

    Our own non-retryable errors (bad input, dimension mismatch) propagate
    immediately. Everything else counts as an upstream failure.

    Raises:
        UpstreamUnavailable: every attempt failed or timed out
    """
    policy = policy or RetryPolicy()
    last_error: Optional[BaseException] = None

    for attempt in range(policy.attempts):
        try:
            if policy.timeout:
                return await asyncio.wait_for(fn(), timeout=policy.timeout)
            return await fn()
        except MemoryGraphError as e:
            if not getattr(e, "retryable", False):
                raise
            last_error = e
        except asyncio.TimeoutError as e:
            last_error = e
            logger.warning(f"{upstream} attempt {attempt + 1}/{policy.attempts} timed out after {policy.timeout}s")
        except Exception as e:
            last_error = e
            logger.warning(f"{upstream} attempt {attempt + 1}/{policy.attempts} failed: {e}")

        if attempt < policy.attempts - 1:
            await asyncio.sleep(policy.backoff(attempt))

    if isinstance(last_error, asyncio.TimeoutError):
        reason = "timed out"
    else:
        reason = str(last_error) or type(last_error).__name__
    raise UpstreamUnavailable(upstream, f"failed after {policy.attempts} attempts: {reason}")
