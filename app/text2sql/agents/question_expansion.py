"""Rewrite short follow-up questions into self-contained ones."""
from __future__ import annotations

import logging
import re
from typing import Optional

from ..config import agent_config
from ..llm_providers import LLMProviderError
from ..prompts import build_question_expansion_prompt
from .base import LLMAgent

logger = logging.getLogger(__name__)

_QUOTES = "\"'“”‘’«»"
_TRAILING_PUNCTUATION = re.compile(r"[.!?]+$")


def clean_expanded_question(text: str) -> str:
    value = (text or "").strip().splitlines()[0].strip() if (text or "").strip() else ""
    value = value.strip(_QUOTES).strip()
    return _TRAILING_PUNCTUATION.sub("", value).strip()


class QuestionExpansionAgent(LLMAgent):
    stage = "question_expansion"

    async def expand_question(
        self,
        short_question: str,
        previous_sql: str,
        previous_canonical: Optional[str] = None,
    ) -> str:
        """Return the self-contained question, or ``short_question`` when expansion fails."""

        prompt = build_question_expansion_prompt(short_question, previous_sql, previous_canonical)
        try:
            content = await self._complete(
                prompt,
                temperature=agent_config.temperature_standard,
                max_tokens=agent_config.max_tokens_expansion,
            )
        except LLMProviderError as e:
            logger.warning("Question expansion failed, keeping original question: %s", e)
            return short_question

        expanded = clean_expanded_question(content)
        if not expanded:
            return short_question
        if expanded != short_question:
            logger.info("Expanded question %r -> %r", short_question, expanded)
        return expanded
