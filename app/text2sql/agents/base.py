"""Shared plumbing for the single-call LLM agents."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..config import agent_config
from ..llm_providers import LLMProvider

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "Bạn là trợ lý AI của Trustay, nền tảng cho thuê phòng trọ. Luôn làm đúng định dạng được yêu cầu."


def _preview(text: str, limit: int = agent_config.preview_log) -> str:
    text = text or ""
    return text if len(text) <= limit else f"{text[:limit]}..."


class LLMAgent:
    """Base class holding the provider and logging every exchange."""

    stage = "agent"

    def __init__(self, provider: LLMProvider):
        self.provider = provider
        self.last_usage: Dict[str, int] = {}

    async def _complete(
        self,
        prompt: str,
        *,
        stage: Optional[str] = None,
        system_prompt: str = SYSTEM_PROMPT,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> str:
        stage = stage or self.stage
        response: Dict[str, Any] = await self.provider.query(
            system_prompt,
            prompt,
            json_mode=json_mode,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        content = (response.get("content") or "").strip()
        self.last_usage = dict(response.get("usage") or {})
        self._log_llm_exchange(stage=stage, prompt=prompt, response_content=content)
        return content

    def _log_llm_exchange(self, *, stage: str, prompt: str, response_content: str) -> None:
        logger.info("LLM exchange stage=%s provider=%s", stage, getattr(self.provider, "name", "unknown"))
        logger.debug("Prompt [%s]: %s", stage, _preview(prompt))
        logger.debug("Response [%s]: %s", stage, _preview(response_content))
