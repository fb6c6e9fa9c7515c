"""Pydantic models for parsed requests, cache records and project memory."""
from .pydantic_models import (
    # Enums
    RequestCategory,
    CacheTier,
    FeedbackType,

    # Parsed requests
    AuthCriticalData,
    PaymentCriticalData,
    RefundCriticalData,
    ApiCriticalData,
    WorkflowCriticalData,
    GenericCriticalData,
    CriticalData,
    ParsedRequest,

    # Cache
    CacheEntry,
    CacheResult,
    CacheStats,

    # Project memory
    PatternRecord,
    ProjectMemory,
    Project,
    MemoryEntry,
    LearningLoopEntry,
    TestResult,
    ProjectContext,
    BuiltContext,

    # Results
    CompressionInfo,
    AnalysisResult,
    LearningStats,
    FeedbackResult
)

__all__ = [
    'RequestCategory',
    'CacheTier',
    'FeedbackType',
    'AuthCriticalData',
    'PaymentCriticalData',
    'RefundCriticalData',
    'ApiCriticalData',
    'WorkflowCriticalData',
    'GenericCriticalData',
    'CriticalData',
    'ParsedRequest',
    'CacheEntry',
    'CacheResult',
    'CacheStats',
    'PatternRecord',
    'ProjectMemory',
    'Project',
    'MemoryEntry',
    'LearningLoopEntry',
    'TestResult',
    'ProjectContext',
    'BuiltContext',
    'CompressionInfo',
    'AnalysisResult',
    'LearningStats',
    'FeedbackResult'
]
