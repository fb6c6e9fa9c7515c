"""OpenAI Agents SDK implementation of the business logic analyst."""
from __future__ import annotations
import logging
from typing import Optional

from agents import Agent, Runner  # OpenAI Agents SDK (NOT the local package)

from prompts.prompts import BUSINESS_LOGIC_ANALYST_PROMPT
from tools.config import OPENAI_MODEL
from .base import BaseAgent

logger = logging.getLogger(__name__)


business_logic_agent = Agent(
    name="Business Logic Analyst",
    instructions=BUSINESS_LOGIC_ANALYST_PROMPT,
    model=OPENAI_MODEL
)


class SecurityAgentRunner(BaseAgent):
    """Runs the analyst agent with retry and a hard deadline."""

    def __init__(self, agent: Optional[Agent] = None, **kwargs):
        super().__init__(**kwargs)
        self.agent = agent or business_logic_agent

    async def complete(self, prompt: str) -> str:
        """Send an assembled prompt to the analyst and return its answer.

        Raises:
            UpstreamError: If the model did not answer within the retry budget.
        """
        logger.info(f"[MODEL] Sending prompt ({len(prompt)} chars) to {self.agent.name}")
        result = await self._call_with_retry("MODEL", lambda: Runner.run(self.agent, prompt))
        output = result.final_output
        return output if isinstance(output, str) else str(output)
