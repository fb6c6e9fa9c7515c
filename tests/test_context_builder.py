"""
Tests for prompt assembly and project memory updates.
"""

import random

import pytest

from models.pydantic_models import (
    FeedbackType,
    MemoryEntry,
    PatternRecord,
    Project,
    TestResult,
)
from prompts.prompts import (
    ALTERNATIVE_TEMPLATES,
    BUSINESS_LOGIC_MINDSET,
    CLOSING_INSTRUCTION,
    NEXT_STEP_TEMPLATES,
    SHORT_CLOSING_INSTRUCTION,
)
from tools.compressor import RequestCompressor
from tools.context_builder import (
    ContextAssembler,
    NextStepAdvisor,
    PrunePolicy,
    summarize_critical,
)
from tools.errors import NotFoundError, StoreError, ValidationError
from tools.store import SQLiteStore

from conftest import AUTH_REQUEST, PAYMENT_REQUEST


def _success(action: str = "amount=-1", pattern: str = "negative-value") -> TestResult:
    return TestResult(
        suggestion="Try a negative amount",
        user_action=action,
        result="balance credited",
        feedback_type=FeedbackType.SUCCESS,
        pattern_learned=pattern,
    )


class TestBuildContext:
    """Prompt layout."""

    @pytest.mark.asyncio
    async def test_unknown_project(self, store: SQLiteStore):
        with pytest.raises(NotFoundError):
            await ContextAssembler(store, "ghost").load_project_context()

    def test_requires_project_id(self, store: SQLiteStore):
        with pytest.raises(ValidationError):
            ContextAssembler(store, "")

    @pytest.mark.asyncio
    async def test_full_context_sections(self, store: SQLiteStore, project: Project, compressor: RequestCompressor):
        assembler = ContextAssembler(store, "shop")

        built = await assembler.build_context(compressor.parse(PAYMENT_REQUEST))

        assert built.full_context.startswith(BUSINESS_LOGIC_MINDSET)
        assert built.full_context.endswith(CLOSING_INSTRUCTION)
        assert built.project_memory_block.startswith("PROJECT CONTEXT: shop.example.com")
        assert "BUSINESS TYPE: ecommerce" in built.project_memory_block
        assert "Endpoint: GET /api/payment/process" in built.request_context_block
        assert "negative-value" in built.request_context_block
        assert built.full_context.index("PROJECT CONTEXT") < built.full_context.index("CURRENT REQUEST")
        assert built.token_estimate == -(-len(built.full_context) // 4)

    @pytest.mark.asyncio
    async def test_short_context_with_enrichment(self, store: SQLiteStore, project: Project, compressor: RequestCompressor):
        assembler = ContextAssembler(store, "shop")

        built = await assembler.build_context(
            compressor.parse(PAYMENT_REQUEST),
            include_history=False,
            enriched_context="ENRICHED CONTEXT:\nsomething known",
        )

        sections = built.full_context.split("\n\n")
        assert "PROJECT: shop.example.com (ecommerce)" in sections
        assert "PROJECT CONTEXT" not in built.full_context
        assert built.project_memory_block == ""
        assert "ENRICHED CONTEXT:\nsomething known" in built.full_context
        assert built.full_context.endswith(SHORT_CLOSING_INSTRUCTION)

    @pytest.mark.asyncio
    async def test_store_failure_builds_without_memory(self, store: SQLiteStore, project: Project, compressor: RequestCompressor, monkeypatch):
        async def broken(*args, **kwargs):
            raise StoreError("database is locked")

        monkeypatch.setattr(store, "get_project", broken)

        built = await ContextAssembler(store, "shop").build_context(compressor.parse(AUTH_REQUEST))

        assert built.project_memory_block == ""
        assert "PROJECT CONTEXT" not in built.full_context
        assert "CURRENT REQUEST" in built.full_context

    @pytest.mark.asyncio
    async def test_memory_block_lists_confident_patterns(self, store: SQLiteStore, project: Project, compressor: RequestCompressor):
        await store.register_pattern(PatternRecord(
            project_id="shop", pattern_type="payment", pattern_name="negative-value", confidence_score=0.9
        ))
        await store.register_pattern(PatternRecord(
            project_id="shop", pattern_type="payment", pattern_name="zero-amount", confidence_score=0.5
        ))

        built = await ContextAssembler(store, "shop").build_context(compressor.parse(PAYMENT_REQUEST))

        assert "- payment/negative-value: seen 1x, confidence 90%" in built.project_memory_block
        assert "zero-amount" not in built.project_memory_block


class TestUpdateMemory:
    """Recording feedback in the project memory."""

    @pytest.mark.asyncio
    async def test_success_grows_memory(self, store: SQLiteStore, project: Project):
        assembler = ContextAssembler(store, "shop")

        loop_id = await assembler.update_memory(_success())
        await assembler.update_memory(_success(action="amount=-2"))

        assert loop_id is not None
        [latest, first] = await store.recent_learning_loops("shop", 5)
        assert first.id == loop_id
        assert first.confidence == 0.9

        memories = await store.recent_memories("shop", "success", 10)
        assert {m.memory_value for m in memories} == {
            "amount=-1 → balance credited",
            "amount=-2 → balance credited",
        }

        refreshed = await store.get_project("shop")
        assert refreshed.memory.learned_patterns == ["negative-value"]
        assert len(refreshed.memory.success_exploits) == 2
        assert refreshed.memory.ai_context_notes.startswith("✓ ")
        assert refreshed.memory.ai_context_notes.endswith("amount=-2 → balance credited")

    @pytest.mark.asyncio
    async def test_failure_records_loop_only(self, store: SQLiteStore, project: Project):
        assembler = ContextAssembler(store, "shop")

        await assembler.update_memory(TestResult(
            user_action="amount=-1", result="400 Bad Request", feedback_type=FeedbackType.FAILURE
        ))

        [loop] = await store.recent_learning_loops("shop", 5)
        assert loop.confidence == 0.2
        assert await store.recent_memories("shop", "success", 10) == []
        assert (await store.get_project("shop")).memory.ai_context_notes == ""

    @pytest.mark.asyncio
    async def test_memory_failure_still_updates_notes(self, store: SQLiteStore, project: Project, monkeypatch):
        async def broken(*args, **kwargs):
            raise StoreError("database is locked")

        monkeypatch.setattr(store, "upsert_memory", broken)

        await ContextAssembler(store, "shop").update_memory(_success())

        refreshed = await store.get_project("shop")
        assert refreshed.memory.learned_patterns == ["negative-value"]
        assert refreshed.memory.ai_context_notes.endswith("amount=-1 → balance credited")

    @pytest.mark.asyncio
    async def test_notes_stay_bounded(self, store: SQLiteStore, project: Project):
        assembler = ContextAssembler(store, "shop", notes_max_chars=60)

        for i in range(6):
            await assembler.update_memory(_success(action=f"attempt {i}"))

        notes = (await store.get_project("shop")).memory.ai_context_notes
        assert len(notes) <= 60
        assert notes.endswith("attempt 5 → balance credited")

    @pytest.mark.asyncio
    async def test_memory_reloads_after_update(self, store: SQLiteStore, project: Project, compressor: RequestCompressor):
        assembler = ContextAssembler(store, "shop")
        await assembler.build_context(compressor.parse(PAYMENT_REQUEST))

        await assembler.update_memory(_success())
        built = await assembler.build_context(compressor.parse(PAYMENT_REQUEST))

        assert "✓ amount=-1 → balance credited" in built.project_memory_block
        assert "amount=-1 → balance credited (success)" in built.project_memory_block


class TestPruneAndConfidence:
    """Pruning and confidence bookkeeping."""

    @pytest.mark.asyncio
    async def test_prune_keeps_most_seen_patterns_and_newest_memories(self, store: SQLiteStore, project: Project):
        for i in range(55):
            await store.register_pattern(PatternRecord(
                project_id="shop", pattern_type="payment", pattern_name=f"p{i}", times_seen=i + 1
            ))
        for i in range(25):
            await store.upsert_memory(MemoryEntry(
                project_id="shop", memory_key=f"exploit_{i}", memory_value=f"m{i}",
                updated_at=f"2026-01-01T00:00:{i:02d}.000000+00:00",
            ))

        removed = await ContextAssembler(store, "shop").prune_context()

        assert removed == {"patterns": 5, "memories": 5}
        names = {p.pattern_name for p in await store.list_patterns("shop")}
        assert names == {f"p{i}" for i in range(5, 55)}
        values = {m.memory_value for m in await store.recent_memories("shop", "success", 50)}
        assert values == {f"m{i}" for i in range(5, 25)}

    @pytest.mark.asyncio
    async def test_pattern_prune_failure_still_prunes_memories(self, store: SQLiteStore, project: Project, monkeypatch):
        async def broken(*args, **kwargs):
            raise StoreError("database is locked")

        for i in range(3):
            await store.upsert_memory(MemoryEntry(
                project_id="shop", memory_key=f"exploit_{i}", memory_value=f"m{i}",
                updated_at=f"2026-01-01T00:00:{i:02d}.000000+00:00",
            ))
        monkeypatch.setattr(store, "prune_patterns", broken)

        removed = await ContextAssembler(store, "shop", memories_kept=1).prune_context()

        assert removed == {"patterns": 0, "memories": 2}
        assert [m.memory_value for m in await store.recent_memories("shop", "success", 10)] == ["m2"]

    @pytest.mark.asyncio
    async def test_confidence_deltas(self, store: SQLiteStore, project: Project):
        await store.register_pattern(PatternRecord(
            project_id="shop", pattern_type="payment", pattern_name="negative-value", confidence_score=0.95
        ))
        assembler = ContextAssembler(store, "shop")

        assert await assembler.adjust_pattern_confidence(["negative-value"], FeedbackType.SUCCESS) == 1
        [pattern] = await store.list_patterns("shop")
        assert pattern.confidence_score == 1.0

        assert await assembler.adjust_pattern_confidence(["negative-value"], FeedbackType.OTHER) == 0
        await assembler.adjust_pattern_confidence(["negative-value"], FeedbackType.FAILURE)
        [pattern] = await store.list_patterns("shop")
        assert pattern.confidence_score == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_discovered_pattern_confidence(self, store: SQLiteStore, project: Project):
        assembler = ContextAssembler(store, "shop")

        assert await assembler.register_discovered_pattern("double-refund", FeedbackType.SUCCESS) is True
        assert await assembler.register_discovered_pattern("double-refund", FeedbackType.FAILURE) is False
        assert await assembler.register_discovered_pattern("coupon-stack", FeedbackType.OTHER) is True

        patterns = {p.pattern_name: p for p in await store.list_patterns("shop")}
        assert patterns["double-refund"].confidence_score == 0.8
        assert patterns["double-refund"].pattern_type == "discovered"
        assert patterns["coupon-stack"].confidence_score == 0.2


class TestHelpers:
    """Prune policy, follow-up advice and critical summaries."""

    def test_prune_policy(self):
        policy = PrunePolicy(every=3)

        assert [n for n in range(10) if policy.should_prune(n)] == [3, 6, 9]
        with pytest.raises(ValueError):
            PrunePolicy(every=0)

    def test_advisor_is_deterministic_with_seed(self):
        result = _success()

        first = NextStepAdvisor(seed=7).suggest(result)
        second = NextStepAdvisor(seed=7).suggest(result)

        assert first == second
        assert first in [
            t.format(last_success="amount=-1 → balance credited", pattern="negative-value")
            for t in NEXT_STEP_TEMPLATES
        ]

    def test_advisor_failure_and_other(self):
        advisor = NextStepAdvisor(rng=random.Random(1))
        failure = TestResult(user_action="amount=-1", result="400", feedback_type=FeedbackType.FAILURE)

        assert advisor.suggest(failure) in [
            t.format(failed_attempt="amount=-1", error_message="400") for t in ALTERNATIVE_TEMPLATES
        ]
        assert advisor.suggest(TestResult(feedback_type=FeedbackType.PARTIAL)) == ""

    def test_critical_summary_is_bounded(self, compressor: RequestCompressor):
        raw = "POST /api/report HTTP/1.1\n\n" + "&".join(f"field{i}={'v' * 40}" for i in range(50))
        parsed = compressor.parse(raw + "&query=" + "q" * 800)

        summary = summarize_critical(parsed)

        assert len(summary) <= 500
        assert summarize_critical(compressor.parse(AUTH_REQUEST)).startswith('{\n  "authentication"')
