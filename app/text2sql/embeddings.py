"""Text embedding clients used by the knowledge store."""
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import httpx

from app.core.config import AiSettings

from .config import llm_config
from .llm_providers import LLMProviderError, read_json_body

logger = logging.getLogger(__name__)


class EmbeddingClient(ABC):
    """Turn text into dense vectors"""

    name: str = "base"

    @abstractmethod
    async def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed ``texts`` in order; one vector per input"""
        raise NotImplementedError

    async def embed_query(self, text: str) -> List[float]:
        vectors = await self.embed_documents([text])
        if not vectors:
            raise LLMProviderError("Embedding API returned no vectors")
        return vectors[0]


class GeminiEmbeddingClient(EmbeddingClient):
    """Google ``batchEmbedContents`` client"""

    name = "gemini"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

    def __init__(self, model: str = "text-embedding-004", batch_size: int = 10, api_key: Optional[str] = None):
        self.api_key = api_key or llm_config.gemini_api_key
        self.model = model
        self.batch_size = max(1, batch_size)
        if not self.api_key:
            raise ValueError("Gemini API key not configured. Set GEMINI_API_KEY environment variable.")

    async def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        vectors: List[List[float]] = []
        if not texts:
            return vectors

        async with httpx.AsyncClient(timeout=llm_config.request_timeout) as client:
            for start in range(0, len(texts), self.batch_size):
                batch = texts[start:start + self.batch_size]
                payload = {
                    "requests": [
                        {"model": f"models/{self.model}", "content": {"parts": [{"text": text}]}}
                        for text in batch
                    ]
                }
                try:
                    response = await client.post(
                        f"{self.BASE_URL}/{self.model}:batchEmbedContents",
                        params={"key": self.api_key},
                        json=payload,
                    )
                    response.raise_for_status()
                except httpx.HTTPError as e:
                    logger.error(f"Gemini embedding error: {str(e)}")
                    raise LLMProviderError(f"Gemini embedding request failed: {str(e)}") from e

                embeddings = read_json_body(response, "Gemini").get("embeddings") or []
                if len(embeddings) != len(batch):
                    raise LLMProviderError(
                        f"Gemini returned {len(embeddings)} embeddings for {len(batch)} inputs"
                    )
                vectors.extend([float(v) for v in item.get("values", [])] for item in embeddings)

        return vectors


class OpenAIEmbeddingClient(EmbeddingClient):
    """OpenAI ``/v1/embeddings`` client"""

    name = "openai"

    def __init__(self, model: Optional[str] = None, batch_size: int = 100, api_key: Optional[str] = None):
        self.api_key = api_key or llm_config.openai_api_key
        self.model = model or llm_config.openai_embedding_model
        self.batch_size = max(1, batch_size)
        if not self.api_key:
            raise ValueError("OpenAI API key not configured. Set OPENAI_API_KEY environment variable.")

    async def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        vectors: List[List[float]] = []
        if not texts:
            return vectors

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        async with httpx.AsyncClient(timeout=llm_config.request_timeout) as client:
            for start in range(0, len(texts), self.batch_size):
                batch = list(texts[start:start + self.batch_size])
                try:
                    response = await client.post(
                        "https://api.openai.com/v1/embeddings",
                        headers=headers,
                        json={"model": self.model, "input": batch},
                    )
                    response.raise_for_status()
                except httpx.HTTPError as e:
                    logger.error(f"OpenAI embedding error: {str(e)}")
                    raise LLMProviderError(f"OpenAI embedding request failed: {str(e)}") from e

                data = sorted(
                    read_json_body(response, "OpenAI").get("data") or [],
                    key=lambda item: item.get("index", 0),
                )
                if len(data) != len(batch):
                    raise LLMProviderError(
                        f"OpenAI returned {len(data)} embeddings for {len(batch)} inputs"
                    )
                vectors.extend([float(v) for v in item["embedding"]] for item in data)

        return vectors


def create_embedding_client(settings: AiSettings) -> EmbeddingClient:
    """Pick the embedding client named by ``settings.embedding_provider``"""

    provider = (settings.embedding_provider or "gemini").strip().lower()
    if provider in ("gemini", "google"):
        return GeminiEmbeddingClient(
            model=settings.embedding_model,
            batch_size=settings.embedding_batch_size,
        )
    if provider in ("openai", "chatgpt"):
        model = settings.embedding_model
        if model.startswith("text-embedding-004"):
            model = llm_config.openai_embedding_model
        return OpenAIEmbeddingClient(model=model)
    raise ValueError(f"Unknown embedding provider: {settings.embedding_provider}")
