"""Analysis and feedback orchestration."""
from __future__ import annotations
import logging
from typing import List, Optional, Protocol

from models.pydantic_models import (
    AnalysisResult,
    CacheTier,
    CompressionInfo,
    FeedbackResult,
    FeedbackType,
    LearningStats,
    TestResult,
)
from .cache import Embedder, TieredCache
from .compressor import RequestCompressor
from .config import (
    CHARS_PER_TOKEN,
    SIMILAR_REQUEST_LIMIT,
    SIMILAR_REQUEST_THRESHOLD,
)
from .context_builder import ContextAssembler, NextStepAdvisor, PrunePolicy
from .errors import NotFoundError, StoreError, UpstreamError, ValidationError
from .store import AnalysisStore
from prompts.prompts import SIMILAR_REQUESTS_HEADER

logger = logging.getLogger(__name__)

OUTCOME_COUNTERS = {
    FeedbackType.SUCCESS: "success_count",
    FeedbackType.FAILURE: "failure_count",
    FeedbackType.PARTIAL: "partial_count",
}


class Completer(Protocol):
    async def complete(self, prompt: str) -> str: ...


async def _require_project(store: AnalysisStore, project_id: str) -> None:
    if not project_id:
        raise ValidationError("project_id is required")
    if await store.get_project(project_id) is None:
        raise NotFoundError(f"Project not found: {project_id}")


async def _similar_requests_block(
    store: AnalysisStore, project_id: str, embedding: List[float], request_hash: str
) -> tuple[str, int]:
    """Describe prior requests close to the current one."""
    try:
        matches = await store.similarity_search(
            project_id, embedding, SIMILAR_REQUEST_THRESHOLD, SIMILAR_REQUEST_LIMIT + 1
        )
    except StoreError as e:
        logger.warning(f"[SIMILAR] Lookup failed: {e}")
        return "", 0

    matches = [(entry, score) for entry, score in matches if entry.request_hash != request_hash]
    matches = matches[:SIMILAR_REQUEST_LIMIT]
    if not matches:
        return "", 0

    logger.info(f"[SIMILAR] Found {len(matches)} similar requests")
    lines = "\n".join(
        f"- {entry.request_summary}: similarity {score:.2f}" for entry, score in matches
    )
    return f"{SIMILAR_REQUESTS_HEADER}\n{lines}", len(matches)


async def analyze_raw_request(
    raw_request: str,
    project_id: str,
    store: AnalysisStore,
    *,
    runner: Completer,
    embedder: Optional[Embedder] = None,
    compressor: Optional[RequestCompressor] = None,
    use_cache: bool = True,
    force_new_analysis: bool = False,
    expires_at: Optional[str] = None,
) -> AnalysisResult:
    """Analyze a raw HTTP request for business logic flaws.

    Cached analyses are returned when the tiered cache allows it; otherwise a
    bounded prompt is assembled and sent to the model.

    Raises:
        ValidationError: If the request or project id is empty.
        NotFoundError: If the project does not exist.
        UpstreamError: If the model call failed.
    """
    if not raw_request or not raw_request.strip():
        raise ValidationError("raw_request is required")
    await _require_project(store, project_id)

    compressor = compressor or RequestCompressor()
    parsed = compressor.parse(raw_request)
    compression = CompressionInfo(
        original=parsed.original_size,
        compressed=parsed.compressed_size,
        ratio=f"{parsed.compression_ratio * 100:.1f}%",
    )
    logger.info(
        f"[PARSE] {parsed.method} {parsed.endpoint} -> {parsed.category.value}, "
        f"patterns={parsed.patterns}, compression={compression.ratio}"
    )

    cache = TieredCache(store, project_id, embedder=embedder, compressor=compressor)
    tier = CacheTier.MISS
    enriched_context = None
    embedding = None

    if use_cache and not force_new_analysis:
        cached = await cache.check_cache(parsed)
        tier = cached.tier
        embedding = cached.embedding
        if cached.tier in (CacheTier.L1, CacheTier.L2):
            return AnalysisResult(
                analysis=cached.analysis or "",
                cache_hit=cached.tier,
                confidence=cached.confidence,
                category=parsed.category,
                patterns=parsed.patterns,
                attack_vectors=parsed.attack_vectors,
                compression=compression,
                tokens_saved=cache.tokens_per_hit,
            )
        if cached.tier == CacheTier.L3:
            enriched_context = cached.context

    request_id = None
    try:
        request_id = await store.record_compressed_request(project_id, parsed)
    except StoreError as e:
        logger.warning(f"[PARSE] Failed to record compressed request: {e}")

    if embedding is None and embedder is not None:
        try:
            embedding = await embedder.embed(compressor.compress_for_context(parsed))
        except UpstreamError as e:
            logger.warning(f"[EMBEDDING] Continuing without embedding: {e}")

    assembler = ContextAssembler(store, project_id)
    context = await assembler.build_context(
        parsed,
        include_history=tier != CacheTier.L3,
        enriched_context=enriched_context,
    )
    final_context = context.full_context

    similar_count = 0
    if embedding is not None:
        block, similar_count = await _similar_requests_block(store, project_id, embedding, parsed.hash)
        if block:
            final_context = f"{final_context}\n\n{block}"

    token_estimate = assembler.estimate_tokens(final_context)
    logger.info(f"[MODEL] Prompt ready, ~{token_estimate} tokens (tier {tier.value})")
    analysis = await runner.complete(final_context)

    await cache.store_in_cache(parsed, analysis, embedding=embedding, expires_at=expires_at)
    try:
        await store.touch_project(project_id)
    except StoreError as e:
        logger.warning(f"[CACHE] Failed to update last analysis time: {e}")

    return AnalysisResult(
        analysis=analysis,
        cache_hit=tier,
        confidence=None,
        request_id=request_id,
        category=parsed.category,
        patterns=parsed.patterns,
        attack_vectors=parsed.attack_vectors,
        compression=compression,
        similar_requests=similar_count,
        tokens_saved=max(parsed.original_size - parsed.compressed_size, 0) // CHARS_PER_TOKEN,
        token_estimate=token_estimate,
    )


async def get_learning_stats(store: AnalysisStore, project_id: str) -> LearningStats:
    """Feedback outcome counts and success rate for a project."""
    counts = await store.learning_counts(project_id)
    stats = LearningStats(
        total=sum(counts.values()),
        success=counts.get(FeedbackType.SUCCESS.value, 0),
        failure=counts.get(FeedbackType.FAILURE.value, 0),
        partial=counts.get(FeedbackType.PARTIAL.value, 0),
    )
    if stats.total:
        stats.success_rate = round(stats.success / stats.total * 100)
    return stats


async def submit_feedback(
    project_id: str,
    test_result: TestResult,
    store: AnalysisStore,
    *,
    policy: Optional[PrunePolicy] = None,
    advisor: Optional[NextStepAdvisor] = None,
) -> FeedbackResult:
    """Record the outcome of a suggested test and learn from it.

    Raises:
        ValidationError: If the project id or test result is missing.
        NotFoundError: If the project does not exist.
    """
    if test_result is None:
        raise ValidationError("test_result is required")
    await _require_project(store, project_id)
    policy = policy or PrunePolicy()
    advisor = advisor or NextStepAdvisor()

    feedback_type = test_result.feedback_type
    logger.info(f"[FEEDBACK] {feedback_type.value}: {test_result.user_action}")

    assembler = ContextAssembler(store, project_id)
    loop_id = await assembler.update_memory(test_result)

    if test_result.pattern_learned:
        await assembler.register_discovered_pattern(test_result.pattern_learned, feedback_type)

    if test_result.request_id is not None:
        try:
            names = await store.get_request_patterns(project_id, test_result.request_id)
        except StoreError as e:
            logger.warning(f"[FEEDBACK] Failed to load patterns of request {test_result.request_id}: {e}")
            names = []
        await assembler.adjust_pattern_confidence(names, feedback_type)

    next_suggestion = advisor.suggest(test_result)

    deltas = {"feedback_events": 1}
    if feedback_type in OUTCOME_COUNTERS:
        deltas[OUTCOME_COUNTERS[feedback_type]] = 1
    feedback_events = 0
    try:
        counters = await store.increment("projects", {"id": project_id}, **deltas)
        feedback_events = int(counters.get("feedback_events", 0))
    except StoreError as e:
        logger.warning(f"[FEEDBACK] Failed to update project counters: {e}")

    pruned = False
    if policy.should_prune(feedback_events):
        await assembler.prune_context()
        pruned = True

    try:
        stats = await get_learning_stats(store, project_id)
    except StoreError as e:
        logger.warning(f"[FEEDBACK] Failed to load learning stats: {e}")
        stats = LearningStats()

    return FeedbackResult(
        success=True,
        learning_loop_id=loop_id,
        next_suggestion=next_suggestion,
        stats=stats,
        pruned=pruned,
    )
