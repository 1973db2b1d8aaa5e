"""Conversation titles and rolling summaries."""
from __future__ import annotations

import logging
import re
from typing import Any, Iterable, List, Mapping, Optional

from app.models.chat import DEFAULT_SESSION_TITLE

from ..config import agent_config
from ..llm_providers import LLMProviderError
from ..prompts import build_rolling_summary_prompt, build_title_prompt
from .base import LLMAgent

logger = logging.getLogger(__name__)

INCOMPLETE_ENDINGS = frozenset(
    ("của", "và", "hoặc", "với", "cho", "từ", "đến", "trong", "ngoài", "theo", "về")
)
_SURROUNDING_QUOTES = re.compile(r"^[\"'“”]+|[\"'“”]+$")
_TRAILING_PUNCTUATION = re.compile(r"[.!?]+$")


def _drop_incomplete_tail(words: List[str]) -> List[str]:
    while len(words) > 1 and words[-1].lower() in INCOMPLETE_ENDINGS:
        words = words[:-1]
    return words


def clean_title(raw: str) -> str:
    """Apply the word, character and trailing-connective limits to a title."""

    title = _SURROUNDING_QUOTES.sub("", (raw or "").strip().splitlines()[0] if (raw or "").strip() else "")
    title = _TRAILING_PUNCTUATION.sub("", title).strip()
    words = title.split()
    if len(words) > agent_config.title_max_words:
        words = words[: agent_config.title_max_words]
    title = " ".join(_drop_incomplete_tail(words))

    max_chars = agent_config.title_max_chars
    if len(title) > max_chars:
        truncated = title[:max_chars]
        last_space = truncated.rfind(" ")
        title = truncated[:last_space] if last_space > max_chars * 0.7 else truncated
        title = " ".join(_drop_incomplete_tail(title.split()))
    return title.strip()


def truncate_words(text: str, max_words: int) -> str:
    words = text.split()
    return " ".join(words[:max_words]) if len(words) > max_words else text


class SummaryAgent(LLMAgent):
    stage = "summary"

    async def generate_title(self, first_user_message: str, first_ai_message: Optional[str] = None) -> str:
        try:
            content = await self._complete(
                build_title_prompt(first_user_message, first_ai_message),
                stage="title",
                temperature=agent_config.temperature_standard,
                max_tokens=agent_config.max_tokens_title,
            )
        except LLMProviderError as e:
            logger.error("Failed to generate title: %s", e)
            content = first_user_message

        title = clean_title(content) or clean_title(first_user_message)
        logger.debug("Generated title %r", title)
        return title or DEFAULT_SESSION_TITLE

    async def generate_rolling_summary(
        self,
        existing_summary: Optional[str],
        old_messages: Iterable[Mapping[str, Any]],
    ) -> str:
        messages = list(old_messages)
        if not messages:
            return existing_summary or ""
        try:
            content = await self._complete(
                build_rolling_summary_prompt(existing_summary, messages),
                stage="rolling_summary",
                temperature=agent_config.temperature_standard,
                max_tokens=agent_config.max_tokens_summary * 2,
            )
        except LLMProviderError as e:
            logger.error("Failed to generate rolling summary: %s", e)
            return existing_summary or ""

        summary = _SURROUNDING_QUOTES.sub("", content.strip()).strip()
        if not summary:
            return existing_summary or ""
        return truncate_words(summary, agent_config.summary_max_words)
