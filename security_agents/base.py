"""Base class for upstream clients (model completion and embeddings)."""
from __future__ import annotations
import asyncio
import logging
from abc import ABC
from typing import Any, Awaitable, Callable

import httpx

from tools.config import BACKOFF_BASE, MAX_ATTEMPTS, UPSTREAM_TIMEOUT
from tools.errors import UpstreamError

logger = logging.getLogger(__name__)


class BaseAgent(ABC):
    """Runs upstream calls under a hard deadline with bounded retry."""

    MAX_ATTEMPTS = MAX_ATTEMPTS
    BACKOFF_BASE = BACKOFF_BASE
    DEADLINE = UPSTREAM_TIMEOUT
    TIMEOUT = httpx.Timeout(UPSTREAM_TIMEOUT, connect=10.0)

    def __init__(
        self,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        deadline: float | None = None,
    ):
        self.max_attempts = max_attempts or self.MAX_ATTEMPTS
        self.backoff_base = self.BACKOFF_BASE if backoff_base is None else backoff_base
        self.deadline = deadline or self.DEADLINE

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff before retrying after ``attempt`` (1-based)."""
        return self.backoff_base * (2 ** (attempt - 1))

    async def _call_with_retry(self, label: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Await ``call()`` until it succeeds or attempts run out.

        Raises:
            UpstreamError: When every attempt failed or timed out.
        """
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await asyncio.wait_for(call(), timeout=self.deadline)
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"[{label}] Attempt {attempt}/{self.max_attempts} timed out after {self.deadline}s")
            except Exception as e:
                last_error = e
                logger.warning(f"[{label}] Attempt {attempt}/{self.max_attempts} failed: {e}")

            if attempt < self.max_attempts:
                await asyncio.sleep(self.backoff_delay(attempt))

        logger.error(f"[{label}] Giving up after {self.max_attempts} attempts")
        raise UpstreamError(f"{label} failed after {self.max_attempts} attempts: {last_error}") from last_error
