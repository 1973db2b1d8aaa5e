"""ORM models owned by the AI service."""
from __future__ import annotations

from .base import Base, TimestampMixin
from .chat import DEFAULT_SESSION_TITLE, AiChatMessage, AiChatSession, MessageRole
from .knowledge import AiChunk, ChunkCollection, SqlQa

__all__ = [
    "Base",
    "TimestampMixin",
    "DEFAULT_SESSION_TITLE",
    "AiChatMessage",
    "AiChatSession",
    "MessageRole",
    "AiChunk",
    "ChunkCollection",
    "SqlQa",
]
