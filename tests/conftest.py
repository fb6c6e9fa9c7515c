"""
Pytest configuration and fixtures for LogicProbe tests.
"""

from pathlib import Path
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio

from models.pydantic_models import Project
from tools.compressor import RequestCompressor
from tools.errors import UpstreamError
from tools.store import SQLiteStore


PAYMENT_REQUEST = "GET /api/payment/process?amount=-1 HTTP/1.1\nHost: example.com\n\n"

AUTH_REQUEST = (
    "POST /auth/login HTTP/1.1\r\n"
    "Host: shop.example.com\r\n"
    "Content-Type: application/json\r\n"
    "\r\n"
    '{"email": "victim@example.com", "providers": ["Google", "Apple"], '
    '"token": "eyJhbGciOiJIUzI1NiJ9.e30.sig", "remember": true, "locale": "en-GB"}'
)


class FakeEmbedder:
    """Returns a fixed vector and records what it was asked to embed."""

    def __init__(self, vector: Optional[List[float]] = None, fail: bool = False):
        self.vector = vector or [1.0, 0.0, 0.0]
        self.fail = fail
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise UpstreamError("embedding service unavailable")
        return list(self.vector)


class FakeRunner:
    """Stands in for the model: answers every prompt with the same text."""

    def __init__(self, answer: str = "1. Send amount=-1\n2. Send amount=0\n3. Replay twice", fail: bool = False):
        self.answer = answer
        self.fail = fail
        self.prompts: List[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise UpstreamError("model call timed out")
        return self.answer


@pytest.fixture
def compressor() -> RequestCompressor:
    return RequestCompressor()


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncGenerator[SQLiteStore, None]:
    """A fresh SQLite store in a temporary directory."""
    db = SQLiteStore(tmp_path / "store.db")
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def project(store: SQLiteStore) -> Project:
    """A seeded project."""
    return await store.create_project(Project(
        id="shop",
        name="Shop",
        url="shop.example.com",
        business_type="ecommerce",
    ))


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()
