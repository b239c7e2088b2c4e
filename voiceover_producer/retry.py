"""Exponential-backoff retry shared by the synthesis and transcription clients."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from voiceover_producer.constants import TTS_RETRY_BASE_DELAY, TTS_RETRY_COUNT, TTS_RETRY_MAX_DELAY
from voiceover_producer.errors import SynthesisError

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    max_attempts: int = TTS_RETRY_COUNT
    base_delay: float = TTS_RETRY_BASE_DELAY
    max_delay: float = TTS_RETRY_MAX_DELAY
    retry_on: tuple[type[BaseException], ...] = (SynthesisError,)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay(self, attempt: int) -> float:
        """Backoff before retrying after failed ``attempt`` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


async def with_retry(fn: Callable[[int], Awaitable], policy: RetryPolicy | None = None):
    """Await ``fn(attempt)`` until it succeeds or the policy is exhausted.

    ``fn`` receives the 0-based attempt number so it can relax its own checks
    on the last try. Exceptions outside ``policy.retry_on`` propagate at once;
    the last retryable error is re-raised when attempts run out.
    """
    policy = policy or RetryPolicy()
    for attempt in range(policy.max_attempts):
        try:
            return await fn(attempt)
        except policy.retry_on as exc:
            if attempt == policy.max_attempts - 1:
                raise
            delay = policy.delay(attempt)
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.1fs",
                attempt + 1, policy.max_attempts, exc, delay,
            )
            await policy.sleep(delay)
    raise ValueError("max_attempts must be at least 1")
