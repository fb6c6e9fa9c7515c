"""
Tests for the upstream clients: retry policy, model runner and embeddings.
"""

import asyncio
from types import SimpleNamespace

import pytest

from security_agents import agent_sdk
from security_agents.base import BaseAgent
from security_agents.embeddings import EmbeddingClient
from tools.errors import UpstreamError


class _Client(BaseAgent):
    pass


class _Flaky:
    """Fails ``failures`` times before answering."""

    def __init__(self, failures: int, answer="ok"):
        self.failures = failures
        self.answer = answer
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("connection reset")
        return self.answer


class TestRetry:
    """Bounded retry with a hard deadline."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        call = _Flaky(failures=2)

        result = await _Client(max_attempts=3, backoff_base=0)._call_with_retry("TEST", call)

        assert result == "ok"
        assert call.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        call = _Flaky(failures=10)

        with pytest.raises(UpstreamError):
            await _Client(max_attempts=3, backoff_base=0)._call_with_retry("TEST", call)

        assert call.calls == 3

    @pytest.mark.asyncio
    async def test_deadline_counts_as_failure(self):
        async def slow():
            await asyncio.sleep(5)

        client = _Client(max_attempts=2, backoff_base=0, deadline=0.01)

        with pytest.raises(UpstreamError, match="2 attempts"):
            await client._call_with_retry("TEST", slow)

    def test_backoff_doubles(self):
        client = _Client(backoff_base=1.0)

        assert [client.backoff_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


class TestSecurityAgentRunner:
    """Model completion through the agents runner."""

    @pytest.mark.asyncio
    async def test_complete_returns_final_output(self, monkeypatch):
        seen = []

        class FakeRunner:
            @staticmethod
            async def run(agent, prompt):
                seen.append((agent.name, prompt))
                return SimpleNamespace(final_output="1. amount=-1")

        monkeypatch.setattr(agent_sdk, "Runner", FakeRunner)

        answer = await agent_sdk.SecurityAgentRunner(backoff_base=0).complete("analyze this")

        assert answer == "1. amount=-1"
        assert seen == [("Business Logic Analyst", "analyze this")]

    @pytest.mark.asyncio
    async def test_complete_raises_upstream_error(self, monkeypatch):
        class FailingRunner:
            @staticmethod
            async def run(agent, prompt):
                raise TimeoutError("read timeout")

        monkeypatch.setattr(agent_sdk, "Runner", FailingRunner)

        with pytest.raises(UpstreamError):
            await agent_sdk.SecurityAgentRunner(max_attempts=2, backoff_base=0).complete("analyze this")


class TestEmbeddingClient:
    """Embedding requests."""

    @pytest.mark.asyncio
    async def test_embed_returns_vector(self):
        requests = []

        async def create(model, input):
            requests.append((model, input))
            return SimpleNamespace(data=[SimpleNamespace(embedding=[0.1, 0.2, 0.3])])

        fake = SimpleNamespace(embeddings=SimpleNamespace(create=create))
        client = EmbeddingClient(client=fake, model="test-embedding")

        assert await client.embed("GET /x") == [0.1, 0.2, 0.3]
        assert requests == [("test-embedding", "GET /x")]

    @pytest.mark.asyncio
    async def test_embed_failure(self):
        async def create(model, input):
            raise ConnectionError("refused")

        fake = SimpleNamespace(embeddings=SimpleNamespace(create=create))
        client = EmbeddingClient(client=fake, max_attempts=2, backoff_base=0)

        with pytest.raises(UpstreamError):
            await client.embed("GET /x")
