"""Context assembler: builds bounded prompts from project memory and the current request."""
from __future__ import annotations
import json
import logging
import math
import random
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from models.pydantic_models import (
    BuiltContext,
    FeedbackType,
    LearningLoopEntry,
    MemoryEntry,
    ParsedRequest,
    PatternRecord,
    ProjectContext,
    RequestCategory,
    TestResult,
)
from prompts.prompts import (
    ALTERNATIVE_TEMPLATES,
    BUSINESS_LOGIC_MINDSET,
    CLOSING_INSTRUCTION,
    NEXT_STEP_TEMPLATES,
    NO_EXPLOITS,
    NO_NOTES,
    NO_PATTERNS,
    NO_TESTS,
    PROJECT_MEMORY_TEMPLATE,
    REQUEST_CONTEXT_TEMPLATE,
    SHORT_CLOSING_INSTRUCTION,
)
from .config import (
    CHARS_PER_TOKEN,
    MAX_SUCCESS_EXPLOITS,
    NOTES_MAX_CHARS,
    PATTERNS_KEPT_ON_PRUNE,
    PRUNE_EVERY,
    SUCCESS_MEMORIES_KEPT_ON_PRUNE,
)
from .errors import StoreError, NotFoundError, ValidationError
from .store import AnalysisStore

logger = logging.getLogger(__name__)

TOP_PATTERNS_LIMIT = 20
TOP_PATTERNS_MIN_CONFIDENCE = 0.7
SUCCESS_MEMORIES_LIMIT = 10
RECENT_TESTS_LIMIT = 5
CRITICAL_SUMMARY_CHARS = 500
REQUEST_VECTORS_LIMIT = 5

# Confidence recorded with each learning-loop entry
LEARNING_CONFIDENCE = {
    FeedbackType.SUCCESS: 0.9,
    FeedbackType.PARTIAL: 0.5,
    FeedbackType.FAILURE: 0.2,
    FeedbackType.OTHER: 0.3,
}

# Initial confidence of a pattern reported by the tester
DISCOVERED_CONFIDENCE = {
    FeedbackType.SUCCESS: 0.8,
    FeedbackType.PARTIAL: 0.5,
}
DISCOVERED_DEFAULT_CONFIDENCE = 0.2

# Signed confidence deltas applied to patterns of a tested request
CONFIDENCE_DELTAS = {
    FeedbackType.SUCCESS: 0.1,
    FeedbackType.PARTIAL: 0.05,
    FeedbackType.FAILURE: -0.05,
    FeedbackType.OTHER: 0.0,
}


class ContextAssembler:
    """Build prompts for one project and keep its memory up to date."""

    def __init__(
        self,
        store: AnalysisStore,
        project_id: str,
        *,
        chars_per_token: int = CHARS_PER_TOKEN,
        notes_max_chars: int = NOTES_MAX_CHARS,
        max_success_exploits: int = MAX_SUCCESS_EXPLOITS,
        patterns_kept: int = PATTERNS_KEPT_ON_PRUNE,
        memories_kept: int = SUCCESS_MEMORIES_KEPT_ON_PRUNE,
    ):
        if not project_id:
            raise ValidationError("project_id is required")
        self.store = store
        self.project_id = project_id
        self.chars_per_token = chars_per_token
        self.notes_max_chars = notes_max_chars
        self.max_success_exploits = max_success_exploits
        self.patterns_kept = patterns_kept
        self.memories_kept = memories_kept
        self.project_context: Optional[ProjectContext] = None

    async def load_project_context(self) -> ProjectContext:
        """Fetch the project with its top patterns, successes and recent tests.

        Raises:
            NotFoundError: If the project does not exist.
        """
        project = await self.store.get_project(self.project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {self.project_id}")

        self.project_context = ProjectContext(
            project=project,
            top_patterns=await self.store.top_patterns(
                self.project_id, TOP_PATTERNS_MIN_CONFIDENCE, TOP_PATTERNS_LIMIT
            ),
            success_memories=await self.store.recent_memories(
                self.project_id, "success", SUCCESS_MEMORIES_LIMIT
            ),
            recent_tests=await self.store.recent_learning_loops(self.project_id, RECENT_TESTS_LIMIT),
        )
        logger.debug(
            f"[CONTEXT] Loaded {len(self.project_context.top_patterns)} patterns, "
            f"{len(self.project_context.success_memories)} successes, "
            f"{len(self.project_context.recent_tests)} recent tests"
        )
        return self.project_context

    async def build_context(
        self,
        parsed: ParsedRequest,
        include_history: bool = True,
        enriched_context: Optional[str] = None,
    ) -> BuiltContext:
        """Assemble the full prompt for a parsed request."""
        if self.project_context is None:
            try:
                await self.load_project_context()
            except StoreError as e:
                logger.warning(f"[CONTEXT] Project memory unavailable, building without it: {e}")

        system_prompt = BUSINESS_LOGIC_MINDSET
        project_memory = self._format_project_memory()
        request_context = self._format_request_context(parsed)

        if include_history:
            sections = [system_prompt]
            if project_memory:
                sections.append(project_memory)
            sections.append(request_context)
            if enriched_context:
                sections.append(enriched_context)
            sections.append(CLOSING_INSTRUCTION)
        else:
            project_memory = ""
            sections = [system_prompt, self._project_header(), request_context]
            if enriched_context:
                sections.append(enriched_context)
            sections.append(SHORT_CLOSING_INSTRUCTION)

        full_context = "\n\n".join(sections)
        return BuiltContext(
            system_prompt=system_prompt,
            project_memory_block=project_memory,
            request_context_block=request_context,
            full_context=full_context,
            token_estimate=self.estimate_tokens(full_context),
        )

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)

    def _project_header(self) -> str:
        if self.project_context is None:
            return f"PROJECT: {self.project_id}"
        project = self.project_context.project
        return f"PROJECT: {project.url or project.name} ({project.business_type})"

    def _format_project_memory(self) -> str:
        if self.project_context is None:
            return ""
        ctx = self.project_context
        project = ctx.project

        patterns = "\n".join(
            f"- {p.pattern_type}/{p.pattern_name}: seen {p.times_seen}x, "
            f"confidence {p.confidence_score * 100:.0f}%"
            for p in ctx.top_patterns
        ) or NO_PATTERNS
        exploits = "\n".join(f"✓ {m.memory_value}" for m in ctx.success_memories) or NO_EXPLOITS
        tests = "\n".join(
            f"{t.user_action} → {t.result} ({t.feedback_type.value})" for t in ctx.recent_tests
        ) or NO_TESTS

        return PROJECT_MEMORY_TEMPLATE.format(
            domain=project.url or project.name,
            business_type=project.business_type,
            patterns=patterns,
            exploits=exploits,
            tests=tests,
            learned=", ".join(project.memory.learned_patterns) or NO_PATTERNS,
            notes=project.memory.ai_context_notes or NO_NOTES,
        )

    @staticmethod
    def _format_request_context(parsed: ParsedRequest) -> str:
        return REQUEST_CONTEXT_TEMPLATE.format(
            method=parsed.method,
            endpoint=parsed.endpoint,
            domain=parsed.domain,
            category=parsed.category.value,
            critical=summarize_critical(parsed),
            patterns=", ".join(parsed.patterns) or "None",
            vectors=", ".join(parsed.attack_vectors[:REQUEST_VECTORS_LIMIT]),
        )

    async def update_memory(self, test_result: TestResult) -> Optional[int]:
        """Record a test attempt and, on success, grow the project memory.

        Returns the learning-loop id, or None if it could not be stored.
        """
        feedback_type = test_result.feedback_type
        loop_id: Optional[int] = None
        try:
            loop_id = await self.store.add_learning_loop(LearningLoopEntry(
                project_id=self.project_id,
                request_id=test_result.request_id,
                suggestion=test_result.suggestion,
                user_action=test_result.user_action,
                result=test_result.result,
                feedback_type=feedback_type,
                pattern_learned=test_result.pattern_learned,
                next_step=test_result.next_step,
                confidence=LEARNING_CONFIDENCE[feedback_type],
            ))
        except StoreError as e:
            logger.warning(f"[FEEDBACK] Failed to record learning loop: {e}")

        if feedback_type == FeedbackType.SUCCESS:
            outcome = f"{test_result.user_action} → {test_result.result}"
            today = datetime.now(timezone.utc).date().isoformat()
            try:
                await self.store.upsert_memory(MemoryEntry(
                    project_id=self.project_id,
                    memory_type="success",
                    memory_key=f"exploit_{time.time_ns()}",
                    memory_value=outcome,
                    metadata={"pattern": test_result.pattern_learned},
                ))
            except StoreError as e:
                logger.warning(f"[FEEDBACK] Failed to store success memory: {e}")
            try:
                await self.store.append_project_memory(
                    self.project_id,
                    note=f"✓ {today}: {outcome}",
                    pattern=test_result.pattern_learned,
                    exploit={
                        "action": test_result.user_action,
                        "result": test_result.result,
                        "date": today,
                    },
                    notes_limit=self.notes_max_chars,
                    exploits_limit=self.max_success_exploits,
                )
            except StoreError as e:
                logger.warning(f"[FEEDBACK] Failed to update project memory: {e}")
            logger.info(f"[FEEDBACK] Success recorded: {outcome}")

        # Next build_context reloads the memory
        self.project_context = None
        return loop_id

    async def prune_context(self) -> Dict[str, int]:
        """Keep only the most seen patterns and the most recent success memories."""
        removed = {"patterns": 0, "memories": 0}
        try:
            removed["patterns"] = await self.store.prune_patterns(self.project_id, self.patterns_kept)
        except StoreError as e:
            logger.warning(f"[CONTEXT] Pattern prune failed: {e}")
        try:
            removed["memories"] = await self.store.prune_memories(
                self.project_id, "success", self.memories_kept
            )
        except StoreError as e:
            logger.warning(f"[CONTEXT] Memory prune failed: {e}")
        logger.info(
            f"[CONTEXT] Pruned {removed['patterns']} patterns and {removed['memories']} success memories"
        )
        self.project_context = None
        return removed

    async def adjust_pattern_confidence(self, names: Sequence[str], feedback_type: FeedbackType) -> int:
        """Apply the feedback delta to every named pattern. Returns rows updated."""
        delta = CONFIDENCE_DELTAS[feedback_type]
        if not delta:
            return 0
        updated = 0
        for name in names:
            try:
                updated += await self.store.adjust_pattern_confidence(self.project_id, name, delta)
            except StoreError as e:
                logger.warning(f"[FEEDBACK] Failed to adjust confidence of {name}: {e}")
        return updated

    async def register_discovered_pattern(self, name: str, feedback_type: FeedbackType) -> bool:
        """Create a 'discovered' pattern unless one with that name already exists."""
        now = datetime.now(timezone.utc).isoformat()
        try:
            return await self.store.register_pattern(PatternRecord(
                project_id=self.project_id,
                pattern_type="discovered",
                pattern_name=name,
                confidence_score=DISCOVERED_CONFIDENCE.get(feedback_type, DISCOVERED_DEFAULT_CONFIDENCE),
                pattern_value={"discovered_via": feedback_type.value, "timestamp": now},
                last_seen=now,
            ))
        except StoreError as e:
            logger.warning(f"[FEEDBACK] Failed to register pattern {name}: {e}")
            return False


def summarize_critical(parsed: ParsedRequest) -> str:
    """Short JSON summary of the most critical fields, at most 500 characters."""
    body = parsed.body
    summary: Dict[str, Any]
    if parsed.category == RequestCategory.AUTH:
        summary = {"authentication": {
            "email": body.get("email"),
            "providers": body.get("providers"),
            "token_present": bool(body.get("token")),
        }}
    elif parsed.category == RequestCategory.PAYMENT:
        items = body.get("items")
        summary = {"payment": {
            "amount": body.get("amount"),
            "currency": body.get("currency"),
            "items": len(items) if isinstance(items, (list, dict)) else 0,
        }}
    elif parsed.category == RequestCategory.API:
        summary = {"api": {
            "endpoint": parsed.endpoint,
            "has_query": bool(body.get("query")),
            "params_count": len(parsed.params),
        }}
    else:
        summary = {"general": {
            "has_id": bool(body.get("id")),
            "body_size": len(json.dumps(body, default=str)),
            "params": list(parsed.params)[:5],
        }}
    return json.dumps(summary, indent=2, ensure_ascii=False, default=str)[:CRITICAL_SUMMARY_CHARS]


class PrunePolicy:
    """Decide when feedback should trigger a context prune.

    Pruning fires on every ``every``-th feedback event of a project, using the
    counter returned by the store's atomic increment.
    """

    def __init__(self, every: int = PRUNE_EVERY):
        if every < 1:
            raise ValueError("every must be at least 1")
        self.every = every

    def should_prune(self, feedback_events: int) -> bool:
        return feedback_events > 0 and feedback_events % self.every == 0


class NextStepAdvisor:
    """Pick a follow-up suggestion after a test outcome."""

    def __init__(self, rng: Optional[random.Random] = None, seed: Optional[int] = None):
        self.rng = rng or random.Random(seed)

    def suggest(self, test_result: TestResult) -> str:
        if test_result.feedback_type == FeedbackType.SUCCESS:
            template = self.rng.choice(NEXT_STEP_TEMPLATES)
            return template.format(
                last_success=f"{test_result.user_action} → {test_result.result}",
                pattern=test_result.pattern_learned or "unknown",
            )
        if test_result.feedback_type == FeedbackType.FAILURE:
            template = self.rng.choice(ALTERNATIVE_TEMPLATES)
            return template.format(
                failed_attempt=test_result.user_action,
                error_message=test_result.result,
            )
        return ""
