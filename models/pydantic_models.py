"""Pydantic models for parsed requests, cache records and project memory."""
from __future__ import annotations
from pydantic import BaseModel, Field, computed_field
from typing import Annotated, List, Optional, Literal, Dict, Any, Union
from enum import Enum


class RequestCategory(str, Enum):
    """Business categories a request can be classified into."""
    AUTH = "auth"
    PAYMENT = "payment"
    REFUND = "refund"
    API = "api"
    PROFILE = "profile"
    WORKFLOW = "workflow"
    ADMIN = "admin"
    SEARCH = "search"
    UNKNOWN = "unknown"


class CacheTier(str, Enum):
    """Cache tiers, in decreasing order of confidence."""
    L1 = "L1"
    L2 = "L2"
    L3 = "L3"
    MISS = "miss"


class FeedbackType(str, Enum):
    """Outcome reported by the tester for a suggested test."""
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"
    OTHER = "other"


# Critical data projections, one per category
class AuthCriticalData(BaseModel):
    """Security-relevant fields of an authentication request."""
    kind: Literal["auth"] = "auth"
    email: Optional[Any] = None
    providers: Optional[Any] = None
    token: Optional[Any] = None
    service: Optional[Any] = None


class PaymentCriticalData(BaseModel):
    """Security-relevant fields of a payment request."""
    kind: Literal["payment"] = "payment"
    amount: Optional[Any] = None
    currency: Optional[Any] = "EUR"
    method: Optional[Any] = None
    items: Optional[Any] = None


class RefundCriticalData(BaseModel):
    """Security-relevant fields of a refund request."""
    kind: Literal["refund"] = "refund"
    amount: Optional[Any] = None
    order_id: Optional[Any] = None
    reason: Optional[Any] = None


class ApiCriticalData(BaseModel):
    """Security-relevant fields of a generic API call."""
    kind: Literal["api"] = "api"
    endpoint: Optional[str] = None
    query: Optional[Any] = None
    variables: Optional[Any] = None


class WorkflowCriticalData(BaseModel):
    """Security-relevant fields of a multi-step workflow request."""
    kind: Literal["workflow"] = "workflow"
    step: Optional[Any] = None
    skip: Optional[Any] = None
    id: Optional[Any] = None
    action: Optional[Any] = None


class GenericCriticalData(BaseModel):
    """Fallback projection for every other category."""
    kind: Literal["generic"] = "generic"
    id: Optional[Any] = None
    action: Optional[Any] = None
    data: Optional[Any] = None


CriticalData = Annotated[
    Union[
        AuthCriticalData,
        PaymentCriticalData,
        RefundCriticalData,
        ApiCriticalData,
        WorkflowCriticalData,
        GenericCriticalData,
    ],
    Field(discriminator="kind"),
]


def project_critical(critical: BaseModel) -> Dict[str, Any]:
    """Return the populated fields of a critical data projection."""
    return critical.model_dump(exclude={"kind"}, exclude_none=True)


class ParsedRequest(BaseModel):
    """Structured, size-reduced representation of a raw HTTP request."""
    hash: str = Field(description="SHA-256 of the raw request text")
    method: str = Field(description="HTTP method", default="GET")
    endpoint: str = Field(description="Request path without query string", default="/")
    domain: str = Field(description="Host the request was sent to", default="")
    params: Dict[str, str] = Field(description="Query parameters, in order", default_factory=dict)
    critical: CriticalData = Field(description="Category-specific critical fields")
    headers: Dict[str, str] = Field(description="Security-relevant headers only", default_factory=dict)
    patterns: List[str] = Field(description="Detected pattern names", default_factory=list)
    category: RequestCategory = Field(description="Detected business category")
    attack_vectors: List[str] = Field(description="Candidate attack vectors", default_factory=list)
    original_size: int = Field(description="Length of the raw request text")
    compressed_size: int = Field(description="Length of the serialized critical data")
    compression_ratio: float = Field(description="1 - compressed_size / original_size")

    @computed_field
    @property
    def body(self) -> Dict[str, Any]:
        """Critical-field projection of the body and parameters."""
        return project_critical(self.critical)


# Cache models
class CacheEntry(BaseModel):
    """Cached analysis for one request of a project."""
    project_id: str
    request_hash: str
    cache_level: int = Field(description="1, 2 or 3", ge=1, le=3, default=1)
    request_summary: str = ""
    endpoint: str = ""
    method: str = ""
    cached_analysis: Optional[str] = None
    embedding: Optional[List[float]] = None
    hit_count: int = 0
    tokens_saved: int = 0
    expires_at: Optional[str] = None
    created_at: Optional[str] = None


class CacheResult(BaseModel):
    """Outcome of a tiered cache lookup."""
    tier: CacheTier
    analysis: Optional[str] = Field(description="Reusable analysis (L1/L2)", default=None)
    context: Optional[str] = Field(description="Enriched pattern context (L3)", default=None)
    cost: Union[int, Literal["minimal", "reduced", "full"]] = "full"
    confidence: Optional[float] = None
    embedding: Optional[List[float]] = Field(
        description="Request embedding computed during the L2 lookup",
        default=None
    )
    matched_hash: Optional[str] = None


class TierStats(BaseModel):
    """Hit and token counters for one cache tier."""
    hits: int = 0
    tokens_saved: int = 0


class TotalStats(TierStats):
    """Totals across tiers with the estimated cost saved."""
    cost_saved: float = 0.0


class CacheStats(BaseModel):
    """Aggregated cache statistics for a project."""
    L1: TierStats = Field(default_factory=TierStats)
    L2: TierStats = Field(default_factory=TierStats)
    L3: TierStats = Field(default_factory=TierStats)
    total: TotalStats = Field(default_factory=TotalStats)


# Project memory models
class PatternRecord(BaseModel):
    """Statistics about one pattern seen in a project."""
    project_id: str
    pattern_type: str = Field(description="Request category or 'discovered'")
    pattern_name: str
    confidence_score: float = Field(ge=0.0, le=1.0, default=0.5)
    times_seen: int = 1
    last_seen: Optional[str] = None
    pattern_value: Dict[str, Any] = Field(default_factory=dict)
    attack_vectors: List[str] = Field(default_factory=list)


class ProjectMemory(BaseModel):
    """Long-lived memory accumulated for a project."""
    learned_patterns: List[str] = Field(default_factory=list)
    success_exploits: List[Dict[str, Any]] = Field(default_factory=list)
    ai_context_notes: str = ""


class Project(BaseModel):
    """Project descriptor with aggregate counters."""
    id: str
    name: str = ""
    url: str = ""
    business_type: str = "unknown"
    memory: ProjectMemory = Field(default_factory=ProjectMemory)
    total_requests_analyzed: int = 0
    tokens_saved: int = 0
    success_count: int = 0
    failure_count: int = 0
    partial_count: int = 0
    feedback_events: int = 0
    last_analysis: Optional[str] = None


class MemoryEntry(BaseModel):
    """A success memory kept for prompt enrichment."""
    project_id: str
    memory_type: str = "success"
    memory_key: str
    memory_value: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[str] = None


class LearningLoopEntry(BaseModel):
    """One recorded test attempt and its outcome."""
    id: Optional[int] = None
    project_id: str
    request_id: Optional[int] = None
    suggestion: str = ""
    user_action: str = ""
    result: str = ""
    feedback_type: FeedbackType = FeedbackType.OTHER
    pattern_learned: Optional[str] = None
    next_step: Optional[str] = None
    confidence: float = 0.3
    created_at: Optional[str] = None


class TestResult(BaseModel):
    """Feedback submitted by the tester after trying a suggestion."""
    __test__ = False

    suggestion: str = ""
    user_action: str = ""
    result: str = ""
    feedback_type: FeedbackType
    pattern_learned: Optional[str] = None
    request_id: Optional[int] = None
    next_step: Optional[str] = None


class ProjectContext(BaseModel):
    """Everything the context builder knows about a project."""
    project: Project
    top_patterns: List[PatternRecord] = Field(default_factory=list)
    success_memories: List[MemoryEntry] = Field(default_factory=list)
    recent_tests: List[LearningLoopEntry] = Field(default_factory=list)


class BuiltContext(BaseModel):
    """Prompt assembled for the model, with its size estimate."""
    system_prompt: str
    project_memory_block: str
    request_context_block: str
    full_context: str
    token_estimate: int


# Orchestrator results
class CompressionInfo(BaseModel):
    """Size accounting reported with an analysis."""
    original: int
    compressed: int
    ratio: str


class AnalysisResult(BaseModel):
    """Result of analyzing one raw request."""
    analysis: str
    cache_hit: CacheTier
    confidence: Optional[float] = None
    request_id: Optional[int] = None
    category: RequestCategory
    patterns: List[str] = Field(default_factory=list)
    attack_vectors: List[str] = Field(default_factory=list)
    compression: CompressionInfo
    similar_requests: int = 0
    tokens_saved: int = 0
    token_estimate: int = 0


class LearningStats(BaseModel):
    """Feedback outcome counts for a project."""
    total: int = 0
    success: int = 0
    failure: int = 0
    partial: int = 0
    success_rate: int = 0


class FeedbackResult(BaseModel):
    """Result of submitting tester feedback."""
    success: bool = True
    learning_loop_id: Optional[int] = None
    next_suggestion: str = ""
    stats: LearningStats = Field(default_factory=LearningStats)
    pruned: bool = False
