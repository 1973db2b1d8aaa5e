"""Service layer entrypoints for conversation storage."""

from .chat_session_service import ChatSessionService, build_session_id

__all__ = ["ChatSessionService", "build_session_id"]
