"""
LLM service interface and the sequential batch runner.

Batches run one at a time. Each attempt is bounded by a timeout; a batch
whose attempts all fail, by LLMError, OSError or timeout, is replaced by the
caller's deterministic fallback.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import structlog

from ..errors import LLMError

logger = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")


class LLMService(ABC):
    """Text completion backend."""

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        options: Optional[dict[str, Any]] = None,
    ) -> str:
        """Return the model's text response.

        Raises LLMError on failure. Network errors (OSError, ConnectionError)
        are treated the same way by the batch runner.
        """


class NullLLMService(LLMService):
    """Backend used when no model is configured. Every call fails."""

    async def complete(self, system_prompt, user_prompt, options=None) -> str:
        raise LLMError.request_failed("no LLM backend configured")


async def run_batches(
    items: Sequence[T],
    batch_size: int,
    worker: Callable[[list[T]], Awaitable[list[R]]],
    fallback: Callable[[list[T]], list[R]],
    timeout: float = 60.0,
    retries: int = 0,
) -> list[R]:
    """Run ``worker`` over consecutive batches, in order, one batch in flight."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    results: list[R] = []
    for start in range(0, len(items), batch_size):
        batch = list(items[start:start + batch_size])
        index = start // batch_size
        for attempt in range(retries + 1):
            try:
                results.extend(await asyncio.wait_for(worker(batch), timeout=timeout))
                break
            except asyncio.TimeoutError:
                logger.warning("llm_batch_timeout", batch=index, attempt=attempt + 1, timeout=timeout)
            except (LLMError, OSError) as e:
                logger.warning("llm_batch_failed", batch=index, attempt=attempt + 1, error=str(e))
        else:
            results.extend(fallback(batch))
    return results
