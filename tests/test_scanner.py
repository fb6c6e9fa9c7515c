"""
End-to-end tests for analysis and feedback orchestration.
"""

import pytest

from models.pydantic_models import CacheTier, FeedbackType, Project, RequestCategory, TestResult
from tools.context_builder import NextStepAdvisor, PrunePolicy
from tools.errors import NotFoundError, UpstreamError, ValidationError
from tools.scanner import analyze_raw_request, get_learning_stats, submit_feedback
from tools.store import SQLiteStore

from conftest import AUTH_REQUEST, PAYMENT_REQUEST, FakeEmbedder, FakeRunner


class TestAnalyze:
    """analyze_raw_request"""

    @pytest.mark.asyncio
    async def test_miss_then_exact_hit(self, store: SQLiteStore, project: Project, runner: FakeRunner):
        first = await analyze_raw_request(PAYMENT_REQUEST, "shop", store, runner=runner)
        second = await analyze_raw_request(PAYMENT_REQUEST, "shop", store, runner=runner)

        assert first.cache_hit == CacheTier.MISS
        assert first.category == RequestCategory.PAYMENT
        assert first.request_id is not None
        assert first.analysis == runner.answer
        assert first.compression.ratio.endswith("%")
        assert first.token_estimate > 0

        assert second.cache_hit == CacheTier.L1
        assert second.analysis == runner.answer
        assert second.confidence == 1.0
        assert second.tokens_saved == 100
        assert len(runner.prompts) == 1

        refreshed = await store.get_project("shop")
        assert refreshed.total_requests_analyzed == 1
        assert refreshed.last_analysis is not None

    @pytest.mark.asyncio
    async def test_cache_bypass(self, store: SQLiteStore, project: Project, runner: FakeRunner):
        await analyze_raw_request(PAYMENT_REQUEST, "shop", store, runner=runner)

        result = await analyze_raw_request(PAYMENT_REQUEST, "shop", store, runner=runner, use_cache=False)

        assert result.cache_hit == CacheTier.MISS
        assert len(runner.prompts) == 2

    @pytest.mark.asyncio
    async def test_pattern_tier_uses_short_prompt(self, store: SQLiteStore, project: Project, runner: FakeRunner):
        await analyze_raw_request(PAYMENT_REQUEST, "shop", store, runner=runner)

        result = await analyze_raw_request(
            PAYMENT_REQUEST.replace("amount=-1", "amount=-5"), "shop", store, runner=runner
        )

        assert result.cache_hit == CacheTier.L3
        prompt = runner.prompts[-1]
        assert "ENRICHED CONTEXT:" in prompt
        assert "negative-value: seen 1 times" in prompt
        assert "PROJECT: shop.example.com (ecommerce)" in prompt
        assert "PROJECT CONTEXT" not in prompt

    @pytest.mark.asyncio
    async def test_similar_requests_are_listed(self, store: SQLiteStore, project: Project, runner: FakeRunner):
        embedder = FakeEmbedder()
        await analyze_raw_request(PAYMENT_REQUEST, "shop", store, runner=runner, embedder=embedder)

        result = await analyze_raw_request(
            AUTH_REQUEST, "shop", store, runner=runner, embedder=embedder, force_new_analysis=True
        )

        assert result.cache_hit == CacheTier.MISS
        assert result.similar_requests == 1
        assert "SIMILAR REQUESTS ALREADY ANALYZED:" in runner.prompts[-1]
        assert "- GET /api/payment/process: similarity 1.00" in runner.prompts[-1]

    @pytest.mark.asyncio
    async def test_embedding_failure_is_soft(self, store: SQLiteStore, project: Project, runner: FakeRunner):
        result = await analyze_raw_request(
            AUTH_REQUEST, "shop", store, runner=runner, embedder=FakeEmbedder(fail=True)
        )

        assert result.cache_hit == CacheTier.MISS
        assert result.similar_requests == 0

    @pytest.mark.asyncio
    async def test_input_validation(self, store: SQLiteStore, project: Project, runner: FakeRunner):
        with pytest.raises(ValidationError):
            await analyze_raw_request("", "shop", store, runner=runner)
        with pytest.raises(ValidationError):
            await analyze_raw_request(PAYMENT_REQUEST, "", store, runner=runner)
        with pytest.raises(NotFoundError):
            await analyze_raw_request(PAYMENT_REQUEST, "ghost", store, runner=runner)
        assert runner.prompts == []

    @pytest.mark.asyncio
    async def test_model_failure_propagates(self, store: SQLiteStore, project: Project):
        with pytest.raises(UpstreamError):
            await analyze_raw_request(PAYMENT_REQUEST, "shop", store, runner=FakeRunner(fail=True))

        assert await store.list_cache_entries("shop") == []


class TestFeedback:
    """submit_feedback"""

    @pytest.mark.asyncio
    async def test_success_feedback_learns(self, store: SQLiteStore, project: Project, runner: FakeRunner):
        analyzed = await analyze_raw_request(PAYMENT_REQUEST, "shop", store, runner=runner)

        result = await submit_feedback("shop", TestResult(
            suggestion="Send a negative amount",
            user_action="amount=-1",
            result="account credited",
            feedback_type=FeedbackType.SUCCESS,
            pattern_learned="credit-on-negative",
            request_id=analyzed.request_id,
        ), store, advisor=NextStepAdvisor(seed=3))

        assert result.success is True
        assert result.learning_loop_id is not None
        assert result.next_suggestion
        assert result.stats.total == 1
        assert result.stats.success_rate == 100
        assert result.pruned is False

        patterns = {p.pattern_name: p for p in await store.list_patterns("shop")}
        assert patterns["negative-value"].confidence_score == pytest.approx(0.6)
        assert patterns["credit-on-negative"].confidence_score == 0.8

        refreshed = await store.get_project("shop")
        assert refreshed.success_count == 1
        assert refreshed.feedback_events == 1
        assert refreshed.memory.learned_patterns == ["credit-on-negative"]

    @pytest.mark.asyncio
    async def test_failure_lowers_confidence(self, store: SQLiteStore, project: Project, runner: FakeRunner):
        analyzed = await analyze_raw_request(PAYMENT_REQUEST, "shop", store, runner=runner)

        await submit_feedback("shop", TestResult(
            user_action="amount=-1", result="422", feedback_type=FeedbackType.FAILURE,
            request_id=analyzed.request_id,
        ), store)

        [pattern] = await store.list_patterns("shop")
        assert pattern.confidence_score == pytest.approx(0.45)
        assert (await store.get_project("shop")).failure_count == 1

    @pytest.mark.asyncio
    async def test_prune_runs_on_schedule(self, store: SQLiteStore, project: Project):
        policy = PrunePolicy(every=2)
        feedback = TestResult(user_action="x", result="y", feedback_type=FeedbackType.PARTIAL)

        first = await submit_feedback("shop", feedback, store, policy=policy)
        second = await submit_feedback("shop", feedback, store, policy=policy)

        assert first.pruned is False
        assert second.pruned is True
        assert second.next_suggestion == ""

    @pytest.mark.asyncio
    async def test_unknown_project(self, store: SQLiteStore):
        with pytest.raises(NotFoundError):
            await submit_feedback("ghost", TestResult(feedback_type=FeedbackType.OTHER), store)

    @pytest.mark.asyncio
    async def test_learning_stats(self, store: SQLiteStore, project: Project):
        for feedback_type in (FeedbackType.SUCCESS, FeedbackType.FAILURE, FeedbackType.FAILURE):
            await submit_feedback("shop", TestResult(feedback_type=feedback_type), store)

        stats = await get_learning_stats(store, "shop")

        assert (stats.total, stats.success, stats.failure, stats.partial) == (3, 1, 2, 0)
        assert stats.success_rate == 33
