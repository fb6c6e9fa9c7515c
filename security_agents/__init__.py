"""Upstream clients for model completion and embeddings."""

from .base import BaseAgent
from .agent_sdk import business_logic_agent, SecurityAgentRunner
from .embeddings import EmbeddingClient

__all__ = [
    'BaseAgent',
    'business_logic_agent',
    'SecurityAgentRunner',
    'EmbeddingClient',
]
