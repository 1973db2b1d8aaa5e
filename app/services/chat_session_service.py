"""Persistence of AI chat sessions and their messages."""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.logger import get_logger
from app.models.chat import DEFAULT_SESSION_TITLE, AiChatMessage, AiChatSession, MessageRole

LOGGER = get_logger(__name__)

APPEND_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_session_id(user_id: str | None = None, client_ip: str | None = None) -> str:
    """Stable id for clients that do not send a conversation id."""

    if user_id:
        return f"user_{user_id}"
    if client_ip:
        return f"ip_{re.sub(r'[.:]', '_', client_ip)}"
    return f"anon_{int(_utcnow().timestamp() * 1000)}"


def message_to_dict(message: AiChatMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "metadata": message.meta or {},
        "sequence_number": message.sequence_number,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


def session_to_dict(chat_session: AiChatSession) -> dict[str, Any]:
    return {
        "id": chat_session.id,
        "user_id": chat_session.user_id,
        "title": chat_session.title,
        "summary": chat_session.summary,
        "message_count": chat_session.message_count,
        "last_message_at": (
            chat_session.last_message_at.isoformat() if chat_session.last_message_at else None
        ),
        "created_at": chat_session.created_at.isoformat() if chat_session.created_at else None,
        "updated_at": chat_session.updated_at.isoformat() if chat_session.updated_at else None,
    }


class ChatSessionService:
    """CRUD for conversations; every write commits."""

    def create_session(
        self, session: Session, user_id: str | None = None, title: str | None = None
    ) -> AiChatSession:
        chat_session = AiChatSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=(title or "").strip() or DEFAULT_SESSION_TITLE,
            message_count=0,
            summarized_message_count=0,
        )
        session.add(chat_session)
        session.commit()
        LOGGER.info("Created chat session id=%s user=%s", chat_session.id, user_id or "anonymous")
        return chat_session

    def get_session(self, session: Session, session_id: str) -> AiChatSession | None:
        return session.get(AiChatSession, session_id)

    def get_or_create_session(
        self, session: Session, session_id: str, user_id: str | None = None
    ) -> AiChatSession:
        chat_session = self.get_session(session, session_id)
        if chat_session is not None:
            return chat_session
        chat_session = AiChatSession(
            id=session_id,
            user_id=user_id,
            title=DEFAULT_SESSION_TITLE,
            message_count=0,
            summarized_message_count=0,
        )
        session.add(chat_session)
        session.commit()
        return chat_session

    def _lock_session(self, session: Session, session_id: str) -> AiChatSession | None:
        """Re-read the row under ``FOR UPDATE`` so the counter reflects other writers."""

        return session.execute(
            select(AiChatSession)
            .where(AiChatSession.id == session_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def add_message(
        self,
        session: Session,
        session_id: str,
        role: MessageRole | str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> AiChatMessage:
        role_value = role.value if isinstance(role, MessageRole) else str(role)
        attempt = 0
        while True:
            attempt += 1
            chat_session = self._lock_session(session, session_id)
            if chat_session is None:
                raise LookupError(f"Chat session {session_id} not found")

            now = _utcnow()
            message = AiChatMessage(
                session_id=session_id,
                role=role_value,
                content=content,
                meta=metadata,
                sequence_number=chat_session.message_count + 1,
                created_at=now,
            )
            chat_session.message_count += 1
            chat_session.last_message_at = now
            session.add(message)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if attempt >= APPEND_ATTEMPTS:
                    raise
                LOGGER.warning(
                    "Sequence conflict in session id=%s, retrying (%d/%d)",
                    session_id,
                    attempt,
                    APPEND_ATTEMPTS,
                )
                continue
            return message

    def get_recent_messages(
        self, session: Session, session_id: str, limit: int = 10
    ) -> list[AiChatMessage]:
        """The last ``limit`` messages, oldest first."""

        rows = session.execute(
            select(AiChatMessage)
            .where(AiChatMessage.session_id == session_id)
            .order_by(AiChatMessage.sequence_number.desc())
            .limit(limit)
        ).scalars().all()
        return list(reversed(rows))

    def get_messages(self, session: Session, session_id: str, limit: int = 100) -> list[AiChatMessage]:
        return list(
            session.execute(
                select(AiChatMessage)
                .where(AiChatMessage.session_id == session_id)
                .order_by(AiChatMessage.sequence_number)
                .limit(limit)
            ).scalars()
        )

    def get_old_messages(
        self, session: Session, session_id: str, keep_recent: int, limit: int = 5
    ) -> list[AiChatMessage]:
        """Oldest messages outside the recent window that the summary does not cover yet."""

        chat_session = self.get_session(session, session_id)
        if chat_session is None:
            return []
        upper = chat_session.message_count - keep_recent
        lower = chat_session.summarized_message_count
        if upper <= lower:
            return []
        return list(
            session.execute(
                select(AiChatMessage)
                .where(
                    AiChatMessage.session_id == session_id,
                    AiChatMessage.sequence_number > lower,
                    AiChatMessage.sequence_number <= upper,
                )
                .order_by(AiChatMessage.sequence_number)
                .limit(limit)
            ).scalars()
        )

    def update_summary(
        self,
        session: Session,
        session_id: str,
        summary: str,
        *,
        summarized_through: int | None = None,
    ) -> AiChatSession | None:
        chat_session = self.get_session(session, session_id)
        if chat_session is None:
            return None
        chat_session.summary = summary
        if summarized_through is not None:
            chat_session.summarized_message_count = max(
                chat_session.summarized_message_count, summarized_through
            )
        session.commit()
        return chat_session

    def update_title(self, session: Session, session_id: str, title: str) -> AiChatSession | None:
        chat_session = self.get_session(session, session_id)
        if chat_session is None:
            return None
        chat_session.title = title.strip()[:200] or DEFAULT_SESSION_TITLE
        session.commit()
        return chat_session

    def list_user_sessions(self, session: Session, user_id: str, limit: int = 50) -> list[AiChatSession]:
        return list(
            session.execute(
                select(AiChatSession)
                .where(AiChatSession.user_id == user_id)
                .order_by(
                    AiChatSession.last_message_at.desc().nulls_last(),
                    AiChatSession.created_at.desc(),
                )
                .limit(limit)
            ).scalars()
        )

    def delete_session(self, session: Session, session_id: str) -> bool:
        chat_session = self.get_session(session, session_id)
        if chat_session is None:
            return False
        session.execute(delete(AiChatMessage).where(AiChatMessage.session_id == session_id))
        session.delete(chat_session)
        session.commit()
        LOGGER.info("Deleted chat session id=%s", session_id)
        return True

    def clear_messages(self, session: Session, session_id: str) -> int:
        chat_session = self.get_session(session, session_id)
        if chat_session is None:
            return 0
        deleted = session.execute(
            delete(AiChatMessage).where(AiChatMessage.session_id == session_id)
        ).rowcount or 0
        chat_session.message_count = 0
        chat_session.summarized_message_count = 0
        chat_session.last_message_at = None
        chat_session.summary = None
        session.commit()
        session.expire(chat_session, ["messages"])
        LOGGER.info("Cleared %d messages from session id=%s", deleted, session_id)
        return deleted

    def purge_expired_sessions(self, session: Session, idle_minutes: int) -> int:
        """Delete anonymous conversations with no activity for ``idle_minutes``.

        Conversations owned by a user are kept regardless of age.
        """

        if idle_minutes <= 0:
            return 0
        cutoff = _utcnow() - timedelta(minutes=idle_minutes)
        last_activity = func.coalesce(AiChatSession.last_message_at, AiChatSession.created_at)
        expired = list(
            session.scalars(
                select(AiChatSession.id).where(
                    AiChatSession.user_id.is_(None), last_activity < cutoff
                )
            )
        )
        if not expired:
            return 0
        session.execute(delete(AiChatMessage).where(AiChatMessage.session_id.in_(expired)))
        session.execute(delete(AiChatSession).where(AiChatSession.id.in_(expired)))
        session.commit()
        LOGGER.info("Purged %d idle anonymous chat sessions", len(expired))
        return len(expired)

    def count_messages(self, session: Session, session_id: str) -> int:
        return session.execute(
            select(func.count(AiChatMessage.id)).where(AiChatMessage.session_id == session_id)
        ).scalar_one()
