"""
LLM provider abstraction layer
Supports Google Gemini, Anthropic Claude and OpenAI GPT models over plain HTTP
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import httpx

from .config import llm_config

logger = logging.getLogger(__name__)

JSON_ONLY_SUFFIX = "\n\nIMPORTANT: Respond with valid JSON only."


class LLMProviderError(RuntimeError):
    """Raised when the upstream model API fails or returns an unusable payload."""


def normalize_usage(usage: Optional[Dict[str, Any]]) -> Dict[str, int]:
    """Map the provider-specific usage block to prompt/completion/total token counts."""
    usage = usage or {}
    prompt = (
        usage.get("prompt_tokens")
        or usage.get("input_tokens")
        or usage.get("promptTokenCount")
        or 0
    )
    completion = (
        usage.get("completion_tokens")
        or usage.get("output_tokens")
        or usage.get("candidatesTokenCount")
        or 0
    )
    total = usage.get("total_tokens") or usage.get("totalTokenCount") or prompt + completion
    return {
        "prompt_tokens": int(prompt),
        "completion_tokens": int(completion),
        "total_tokens": int(total),
    }


def read_json_body(response: httpx.Response, provider: str) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise LLMProviderError(f"{provider} returned a non-JSON response") from e
    if not isinstance(data, dict):
        raise LLMProviderError(f"{provider} returned an unexpected response body")
    return data


class LLMProvider(ABC):
    """Base class for LLM providers"""

    name: str = "base"

    @abstractmethod
    async def query(
        self,
        system_prompt: str,
        user_prompt: str,
        conversation_history: Optional[list] = None,
        json_mode: bool = False,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Query the LLM; returns ``{"content", "model", "provider", "usage"}``"""
        raise NotImplementedError


class GeminiProvider(LLMProvider):
    """Google Gemini ``generateContent`` provider"""

    name = "gemini"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

    def __init__(self, model: Optional[str] = None):
        self.api_key = llm_config.gemini_api_key
        self.model = model or llm_config.gemini_model
        self.max_tokens = llm_config.gemini_max_tokens

        if not self.api_key:
            raise ValueError("Gemini API key not configured. Set GEMINI_API_KEY environment variable.")

    @staticmethod
    def _to_contents(conversation_history: Optional[list], user_prompt: str) -> list:
        contents = []
        for msg in conversation_history or []:
            role = "model" if msg.get("role") == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": msg.get("content", "")}]})
        contents.append({"role": "user", "parts": [{"text": user_prompt}]})
        return contents

    async def query(
        self,
        system_prompt: str,
        user_prompt: str,
        conversation_history: Optional[list] = None,
        json_mode: bool = False,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Query Gemini API"""

        generation_config: Dict[str, Any] = {"maxOutputTokens": max_tokens or self.max_tokens}
        if temperature is not None:
            generation_config["temperature"] = temperature
        if json_mode:
            generation_config["responseMimeType"] = "application/json"

        payload: Dict[str, Any] = {
            "contents": self._to_contents(conversation_history, user_prompt),
            "generationConfig": generation_config,
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        try:
            async with httpx.AsyncClient(timeout=llm_config.request_timeout) as client:
                response = await client.post(
                    f"{self.BASE_URL}/{self.model}:generateContent",
                    params={"key": self.api_key},
                    json=payload,
                )
                response.raise_for_status()
                data = read_json_body(response, "Gemini")
        except httpx.HTTPError as e:
            logger.error(f"Gemini API error: {str(e)}")
            raise LLMProviderError(f"Gemini API request failed: {str(e)}") from e

        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            raise LLMProviderError(f"Gemini returned no candidates (blockReason={block_reason})")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        content = "".join(part.get("text", "") for part in parts)

        return {
            "content": content,
            "model": self.model,
            "provider": self.name,
            "usage": normalize_usage(data.get("usageMetadata")),
        }


class ClaudeProvider(LLMProvider):
    """Anthropic Claude API provider"""

    name = "claude"

    def __init__(self, model: Optional[str] = None):
        self.api_key = llm_config.claude_api_key
        self.model = model or llm_config.claude_model
        self.max_tokens = llm_config.claude_max_tokens

        if not self.api_key:
            raise ValueError("Claude API key not configured. Set CLAUDE_API_KEY environment variable.")

    async def query(
        self,
        system_prompt: str,
        user_prompt: str,
        conversation_history: Optional[list] = None,
        json_mode: bool = False,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Query Claude API"""

        messages = list(conversation_history or [])
        user_content = user_prompt + (JSON_ONLY_SUFFIX if json_mode else "")
        messages.append({"role": "user", "content": user_content})

        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": messages,
        }
        if system_prompt:
            payload["system"] = system_prompt
        if temperature is not None:
            payload["temperature"] = temperature

        try:
            async with httpx.AsyncClient(timeout=llm_config.request_timeout) as client:
                response = await client.post(
                    "https://api.anthropic.com/v1/messages",
                    headers={
                        "x-api-key": self.api_key,
                        "anthropic-version": "2023-06-01",
                        "content-type": "application/json",
                    },
                    json=payload,
                )
                response.raise_for_status()
                data = read_json_body(response, "Claude")
        except httpx.HTTPError as e:
            logger.error(f"Claude API error: {str(e)}")
            raise LLMProviderError(f"Claude API request failed: {str(e)}") from e

        content = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
        return {
            "content": content,
            "model": self.model,
            "provider": self.name,
            "usage": normalize_usage(data.get("usage")),
        }


class ChatGPTProvider(LLMProvider):
    """OpenAI GPT API provider"""

    name = "chatgpt"

    def __init__(self, model: Optional[str] = None):
        self.api_key = llm_config.openai_api_key
        self.model = model or llm_config.openai_model
        self.max_tokens = llm_config.openai_max_tokens

        if not self.api_key:
            raise ValueError("OpenAI API key not configured. Set OPENAI_API_KEY environment variable.")

    def _use_responses_api(self) -> bool:
        """Newer model families are only served by the Responses API."""
        lowered = (self.model or "").lower()
        return any(token in lowered for token in ("gpt-5", "gpt-4.1"))

    async def query(
        self,
        system_prompt: str,
        user_prompt: str,
        conversation_history: Optional[list] = None,
        json_mode: bool = False,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Query OpenAI using the endpoint that matches the model family"""

        history = []
        if system_prompt:
            history.append({"role": "system", "content": system_prompt})
        history.extend(conversation_history or [])
        history.append(
            {"role": "user", "content": user_prompt + (JSON_ONLY_SUFFIX if json_mode else "")}
        )

        use_responses_api = self._use_responses_api()
        if use_responses_api:
            endpoint = "https://api.openai.com/v1/responses"
            payload: Dict[str, Any] = {
                "model": self.model,
                "input": [
                    {"role": msg["role"], "content": [{"type": "input_text", "text": msg["content"]}]}
                    for msg in history
                ],
                "max_output_tokens": max_tokens or self.max_tokens,
            }
        else:
            endpoint = "https://api.openai.com/v1/chat/completions"
            payload = {
                "model": self.model,
                "messages": history,
                "max_tokens": max_tokens or self.max_tokens,
            }
            if temperature is not None:
                payload["temperature"] = temperature
            if json_mode:
                payload["response_format"] = {"type": "json_object"}

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=llm_config.request_timeout) as client:
                response = await client.post(endpoint, headers=headers, json=payload)
                if response.status_code == 400 and "response_format" in payload:
                    # Retry once without response_format for models that dropped support
                    payload.pop("response_format", None)
                    response = await client.post(endpoint, headers=headers, json=payload)
                response.raise_for_status()
                data = read_json_body(response, "OpenAI")
        except httpx.HTTPError as e:
            logger.error(f"OpenAI API error: {str(e)}")
            raise LLMProviderError(f"OpenAI API request failed: {str(e)}") from e

        if use_responses_api:
            content = self._extract_responses_text(data)
        else:
            choices = data.get("choices") or []
            if not choices:
                raise LLMProviderError("OpenAI returned no choices")
            content = (choices[0].get("message") or {}).get("content") or ""

        return {
            "content": content,
            "model": self.model,
            "provider": self.name,
            "usage": normalize_usage(data.get("usage")),
        }

    @staticmethod
    def _extract_responses_text(payload: Dict[str, Any]) -> str:
        """Flatten the ``output`` array from the Responses API."""
        texts: list[str] = []
        for item in payload.get("output", []):
            if item.get("type") != "message":
                continue
            for content in item.get("content", []):
                if content.get("type") in ("output_text", "text"):
                    texts.append(content.get("text", ""))
        return "\n".join(texts).strip()


class LLMProviderFactory:
    """Factory to create the appropriate LLM provider"""

    FRIENDLY_ALIASES: Dict[str, tuple[str, Callable[[], Optional[str]]]] = {
        "gemini": ("gemini", lambda: llm_config.gemini_model),
        "gemini-light": ("gemini", lambda: llm_config.gemini_light_model),
        "claude": ("claude", lambda: llm_config.claude_model),
        "claude-haiku-4.5": ("claude", lambda: llm_config.claude_model),
        "chatgpt": ("chatgpt", lambda: llm_config.openai_model),
        "gpt-4o-mini": ("chatgpt", lambda: llm_config.openai_model),
    }

    LEGACY_NAMES = {
        "google": "gemini",
        "anthropic": "claude",
        "openai": "chatgpt",
    }

    @staticmethod
    def create(provider_name: Optional[str]) -> LLMProvider:
        """
        Create LLM provider instance

        Args:
            provider_name: Supported model identifier or friendly alias; empty means Gemini

        Returns:
            Configured LLM provider instance
        """
        normalized = (provider_name or "").strip().lower()
        normalized = LLMProviderFactory.LEGACY_NAMES.get(normalized, normalized)

        if not normalized:
            return GeminiProvider()

        alias_entry = LLMProviderFactory.FRIENDLY_ALIASES.get(normalized)
        if alias_entry:
            provider_key, resolver = alias_entry
            return LLMProviderFactory._build_provider(provider_key, resolver())

        if normalized.startswith("gemini"):
            return GeminiProvider(model=provider_name.strip())
        if normalized.startswith("claude"):
            return ClaudeProvider(model=provider_name.strip())
        if normalized.startswith("gpt") or normalized.startswith("o"):
            return ChatGPTProvider(model=provider_name.strip())

        raise ValueError(f"Unknown LLM provider: {provider_name}")

    @staticmethod
    def _build_provider(provider_key: str, model_override: Optional[str]) -> LLMProvider:
        if provider_key == "gemini":
            return GeminiProvider(model=model_override)
        if provider_key == "claude":
            return ClaudeProvider(model=model_override)
        if provider_key == "chatgpt":
            return ChatGPTProvider(model=model_override)
        raise ValueError(f"Unsupported provider key: {provider_key}")
