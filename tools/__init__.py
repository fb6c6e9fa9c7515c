"""Request compression, tiered caching, context assembly and storage."""
from .config import OPENAI_MODEL, EMBEDDING_MODEL, USE_OPENAI
from .errors import ProbeError, ValidationError, NotFoundError, UpstreamError, StoreError
from .compressor import RequestCompressor
from .store import AnalysisStore, SQLiteStore
from .cache import TieredCache
from .context_builder import ContextAssembler, PrunePolicy, NextStepAdvisor
from .scanner import analyze_raw_request, submit_feedback, get_learning_stats

__all__ = [
    'OPENAI_MODEL',
    'EMBEDDING_MODEL',
    'USE_OPENAI',
    'ProbeError',
    'ValidationError',
    'NotFoundError',
    'UpstreamError',
    'StoreError',
    'RequestCompressor',
    'AnalysisStore',
    'SQLiteStore',
    'TieredCache',
    'ContextAssembler',
    'PrunePolicy',
    'NextStepAdvisor',
    'analyze_raw_request',
    'submit_feedback',
    'get_learning_stats'
]
