"""Tiered cache deciding whether a prior analysis can replace a model call.

Tiers are evaluated in order and the first applicable one wins:

- L1: exact hash match, cached analysis returned verbatim
- L2: embedding similarity above a threshold, matched analysis returned
- L3: known patterns of the same category, enriched context returned
- miss: full model call required
"""
from __future__ import annotations
import logging
import json
from typing import List, Optional, Protocol

from models.pydantic_models import (
    CacheEntry,
    CacheResult,
    CacheStats,
    CacheTier,
    ParsedRequest,
    PatternRecord,
    TierStats,
)
from .compressor import RequestCompressor
from .config import (
    CHARS_PER_TOKEN,
    L2_SIMILARITY_THRESHOLD,
    L3_CONFIDENCE,
    PRICE_PER_TOKEN,
    TOKENS_PER_HIT,
)
from .errors import StoreError, UpstreamError, ValidationError
from .store import AnalysisStore

logger = logging.getLogger(__name__)

L3_PATTERN_LIMIT = 10
L3_VECTOR_LIMIT = 5
L3_CRITICAL_CHARS = 200


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]: ...


class TieredCache:
    """Three-tier analysis cache scoped to one project."""

    def __init__(
        self,
        store: AnalysisStore,
        project_id: str,
        embedder: Optional[Embedder] = None,
        compressor: Optional[RequestCompressor] = None,
        *,
        similarity_threshold: float = L2_SIMILARITY_THRESHOLD,
        tokens_per_hit: int = TOKENS_PER_HIT,
        price_per_token: float = PRICE_PER_TOKEN,
        chars_per_token: int = CHARS_PER_TOKEN,
    ):
        if not project_id:
            raise ValidationError("project_id is required")
        self.store = store
        self.project_id = project_id
        self.embedder = embedder
        self.compressor = compressor or RequestCompressor()
        self.similarity_threshold = similarity_threshold
        self.tokens_per_hit = tokens_per_hit
        self.price_per_token = price_per_token
        self.chars_per_token = chars_per_token

    async def check_cache(self, parsed: ParsedRequest) -> CacheResult:
        """Return the first applicable cache tier for a parsed request."""
        # L1: exact match
        try:
            entry = await self.store.get_cache_entry(self.project_id, parsed.hash, level=1)
        except StoreError as e:
            logger.warning(f"[CACHE] L1 lookup failed, treating as miss: {e}")
            entry = None
        if entry and entry.cached_analysis is not None:
            logger.info(f"[CACHE] L1 hit for {parsed.method} {parsed.endpoint}")
            await self.increment_hit_count(1, parsed.hash)
            return CacheResult(
                tier=CacheTier.L1,
                analysis=entry.cached_analysis,
                cost=0,
                confidence=1.0,
                matched_hash=parsed.hash,
            )

        # L2: near-duplicate
        embedding: Optional[List[float]] = None
        if self.embedder is not None:
            try:
                embedding = await self._request_embedding(parsed)
                matches = await self.store.similarity_search(
                    self.project_id, embedding, self.similarity_threshold, 1
                )
            except (StoreError, UpstreamError) as e:
                logger.warning(f"[CACHE] L2 lookup failed, skipping tier: {e}")
                matches = []
            if matches:
                match, similarity = matches[0]
                if similarity > self.similarity_threshold:
                    logger.info(
                        f"[CACHE] L2 hit for {parsed.method} {parsed.endpoint} "
                        f"(similarity {similarity:.3f})"
                    )
                    await self.increment_hit_count(2, match.request_hash)
                    return CacheResult(
                        tier=CacheTier.L2,
                        analysis=match.cached_analysis,
                        cost="minimal",
                        confidence=similarity,
                        embedding=embedding,
                        matched_hash=match.request_hash,
                    )

        # L3: known patterns
        try:
            patterns = await self.store.find_patterns(
                self.project_id, parsed.category.value, parsed.patterns, L3_PATTERN_LIMIT
            )
        except StoreError as e:
            logger.warning(f"[CACHE] L3 lookup failed, treating as miss: {e}")
            patterns = []
        if patterns:
            logger.info(f"[CACHE] L3 hit with {len(patterns)} known patterns")
            return CacheResult(
                tier=CacheTier.L3,
                context=self.build_enriched_context(patterns, parsed),
                cost="reduced",
                confidence=L3_CONFIDENCE,
                embedding=embedding,
            )

        logger.info(f"[CACHE] Miss for {parsed.method} {parsed.endpoint}")
        return CacheResult(tier=CacheTier.MISS, cost="full", embedding=embedding)

    async def _request_embedding(self, parsed: ParsedRequest) -> List[float]:
        """Reuse a stored embedding for the same endpoint and method, else embed the digest."""
        stored = await self.store.find_embedding(self.project_id, parsed.endpoint, parsed.method)
        if stored:
            return stored
        return await self.embedder.embed(self.compressor.compress_for_context(parsed))

    @staticmethod
    def build_enriched_context(patterns: List[PatternRecord], parsed: ParsedRequest) -> str:
        pattern_summary = "\n".join(
            f"- {p.pattern_name}: seen {p.times_seen} times, confidence {p.confidence_score * 100:.0f}%"
            for p in patterns
        )
        vectors = list(dict.fromkeys(v for p in patterns for v in p.attack_vectors))
        critical = json.dumps(parsed.body, separators=(",", ":"), default=str)
        return (
            "ENRICHED CONTEXT:\n"
            f"Category: {parsed.category.value}\n"
            f"Endpoint: {parsed.method} {parsed.endpoint}\n"
            "\n"
            "KNOWN SIMILAR PATTERNS:\n"
            f"{pattern_summary}\n"
            "\n"
            "POSSIBLE ATTACK VECTORS:\n"
            f"{', '.join(vectors[:L3_VECTOR_LIMIT])}\n"
            "\n"
            "CRITICAL DATA:\n"
            f"{critical[:L3_CRITICAL_CHARS]}"
        )

    async def store_in_cache(
        self,
        parsed: ParsedRequest,
        analysis: str,
        embedding: Optional[List[float]] = None,
        expires_at: Optional[str] = None,
    ) -> None:
        """Store a fresh analysis and update pattern and project counters.

        Each step is independent: a store failure in one is logged and the
        remaining steps still run.
        """
        entry = CacheEntry(
            project_id=self.project_id,
            request_hash=parsed.hash,
            cache_level=1,
            request_summary=f"{parsed.method} {parsed.endpoint}",
            endpoint=parsed.endpoint,
            method=parsed.method,
            cached_analysis=analysis,
            embedding=embedding,
            expires_at=expires_at,
        )
        try:
            await self.store.upsert_cache_entry(entry)
        except StoreError as e:
            logger.warning(f"[CACHE] Failed to store L1 entry: {e}")

        for pattern in parsed.patterns:
            try:
                await self.store.record_pattern(PatternRecord(
                    project_id=self.project_id,
                    pattern_type=parsed.category.value,
                    pattern_name=pattern,
                    pattern_value={"endpoint": parsed.endpoint, "method": parsed.method},
                    attack_vectors=parsed.attack_vectors,
                ))
            except StoreError as e:
                logger.warning(f"[CACHE] Failed to record pattern {pattern}: {e}")

        saved = max(parsed.original_size - parsed.compressed_size, 0) // self.chars_per_token
        try:
            await self.store.increment(
                "projects",
                {"id": self.project_id},
                total_requests_analyzed=1,
                tokens_saved=saved,
            )
        except StoreError as e:
            logger.warning(f"[CACHE] Failed to update project counters: {e}")

    async def increment_hit_count(self, level: int, request_hash: str) -> None:
        """Count a hit on a cached entry and credit the per-hit token estimate."""
        try:
            await self.store.increment(
                "cache",
                {"project_id": self.project_id, "request_hash": request_hash},
                hit_count=1,
                tokens_saved=self.tokens_per_hit,
            )
        except StoreError as e:
            logger.warning(f"[CACHE] Failed to count L{level} hit: {e}")

    async def cleanup_expired_cache(self) -> int:
        """Delete expired entries. Returns the number removed."""
        try:
            removed = await self.store.delete_expired_cache()
        except StoreError as e:
            logger.warning(f"[CACHE] Expiry sweep failed: {e}")
            return 0
        logger.info(f"[CACHE] Removed {removed} expired entries")
        return removed

    async def get_cache_stats(self) -> CacheStats:
        stats = CacheStats()
        try:
            entries = await self.store.list_cache_entries(self.project_id)
        except StoreError as e:
            logger.warning(f"[CACHE] Failed to load stats: {e}")
            return stats

        for entry in entries:
            tier: TierStats = getattr(stats, f"L{entry.cache_level}")
            tier.hits += entry.hit_count
            tier.tokens_saved += entry.tokens_saved
            stats.total.hits += entry.hit_count
            stats.total.tokens_saved += entry.tokens_saved
        stats.total.cost_saved = stats.total.tokens_saved * self.price_per_token
        return stats
