"""Prompt templates used by the analyst agent and the context builder."""
