"""Embedding client used by the L2 cache tier and the similar-request lookup."""
from __future__ import annotations
import logging
from typing import List, Optional

from openai import AsyncOpenAI

from tools.config import EMBEDDING_MODEL
from .base import BaseAgent

logger = logging.getLogger(__name__)


class EmbeddingClient(BaseAgent):
    """Turns text into embedding vectors through the OpenAI API."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: str = EMBEDDING_MODEL, **kwargs):
        super().__init__(**kwargs)
        self._client = client
        self.model = model

    @property
    def client(self) -> AsyncOpenAI:
        # Created lazily so that importing never requires an API key
        if self._client is None:
            self._client = AsyncOpenAI(timeout=self.TIMEOUT, max_retries=0)
        return self._client

    async def embed(self, text: str) -> List[float]:
        """Return the embedding of ``text``.

        Raises:
            UpstreamError: If the embedding service failed on every attempt.
        """
        logger.debug(f"[EMBEDDING] Embedding {len(text)} chars with {self.model}")
        response = await self._call_with_retry(
            "EMBEDDING",
            lambda: self.client.embeddings.create(model=self.model, input=text),
        )
        return list(response.data[0].embedding)
