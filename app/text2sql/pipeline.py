"""
Conversation pipeline
Runs one user turn through orchestration, RAG, SQL generation, validation and response
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import AiSettings, get_settings
from app.core.logger import get_logger, log_context, timeit
from app.models.chat import DEFAULT_SESSION_TITLE, AiChatSession, MessageRole
from app.services.chat_session_service import ChatSessionService

from .access import AccessDeniedError, resolve_user_role
from .agents import (
    ErrorHandler,
    OrchestratorAgent,
    OrchestratorResult,
    QuestionExpansionAgent,
    ResponseGenerator,
    ResultValidatorAgent,
    SqlGenerationAgent,
    SqlGenerationError,
    SqlGenerationResult,
    SummaryAgent,
)
from .agents.orchestrator import MissingParam
from .chart_generator import ChartGenerator
from .config import agent_config, rag_config
from .embeddings import EmbeddingClient
from .knowledge import CanonicalDecision, KnowledgeService
from .llm_providers import LLMProvider, LLMProviderError
from .prompts import build_canonical_hint, build_modification_context
from .schemas import ChatResponse, ControlPayload
from .session_view import SessionView
from .vector_store import VectorStore

logger = get_logger(__name__)

CLARIFY_PREFIX = "Mình cần thêm chút thông tin để trả lời chính xác: "

CHART_KEYWORDS = (
    "biểu đồ", "chart", "thống kê", "statistics", "so sánh", "compare", "tỷ lệ", "tỉ lệ",
    "ratio", "phân bố", "distribution", "xu hướng", "trend", "theo tháng", "theo quý",
    "theo năm", "by month", "by quarter", "doanh thu", "revenue", "doanh số", "thu chi",
)
LIST_KEYWORDS = (
    "tìm", "tim ", "có phòng", "bài đăng", "find", "search", "gần", "near", "trong khu vực",
)


class ConversationNotFoundError(LookupError):
    pass


class ConversationAccessError(PermissionError):
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def resolve_desired_mode(query: str, mode_hint: Optional[str] = None) -> str:
    """Pick LIST/TABLE/CHART/INSIGHT from the orchestrator hint and the wording of the question."""

    if mode_hint == "INSIGHT":
        return "INSIGHT"
    lowered = (query or "").lower()
    if any(keyword in lowered for keyword in CHART_KEYWORDS):
        return "CHART"
    if mode_hint in ("LIST", "CHART"):
        return mode_hint
    if any(keyword in lowered for keyword in LIST_KEYWORDS):
        return "LIST"
    return mode_hint or "TABLE"


def format_page_context(page_context: Mapping[str, Any]) -> str:
    lines = ["[CONTEXT]"]
    for key in ("entity", "identifier", "type"):
        value = page_context.get(key)
        if value:
            lines.append(f"{key.capitalize()}: {value}")
    return "\n".join(lines)


def clarification_questions(missing: List[MissingParam]) -> List[str]:
    questions = []
    for param in missing:
        question = param.reason or param.name
        if param.examples:
            question = f"{question} (ví dụ: {', '.join(param.examples)})"
        questions.append(question)
    return questions


class Text2SqlPipeline:
    """Conversation-aware Text2SQL turn runner.

    One instance is shared by all requests. Everything bound to a database
    session (vector store, knowledge service) is built per turn from the
    ``db`` handed to :meth:`chat_in_conversation`.
    """

    def __init__(
        self,
        provider: LLMProvider,
        *,
        embedder: Optional[EmbeddingClient] = None,
        sessions: Optional[ChatSessionService] = None,
        settings: Optional[AiSettings] = None,
        chart_generator: Optional[ChartGenerator] = None,
    ):
        self.provider = provider
        self.embedder = embedder
        self.sessions = sessions or ChatSessionService()
        self.settings = settings or get_settings().ai

        self.expander = QuestionExpansionAgent(provider)
        self.sql_agent = SqlGenerationAgent(
            provider,
            max_attempts=self.settings.sql_max_attempts,
            retry_delay=self.settings.sql_retry_delay_seconds,
        )
        self.validator = ResultValidatorAgent(provider)
        self.responder = ResponseGenerator(provider, chart_generator)
        self.summarizer = SummaryAgent(provider)

    def knowledge_for(self, db: Session) -> Optional[KnowledgeService]:
        if self.embedder is None:
            return None
        store = VectorStore(
            db, self.embedder, tenant_id=self.settings.tenant_id, db_key=self.settings.db_key
        )
        return KnowledgeService(store)

    def load_session_view(self, db: Session, chat_session: AiChatSession) -> SessionView:
        messages = self.sessions.get_recent_messages(
            db, chat_session.id, limit=agent_config.max_messages_before_summary
        )
        return SessionView(
            session_id=chat_session.id,
            summary=chat_session.summary,
            messages=[
                {"role": m.role, "content": m.content, "metadata": m.meta or {}} for m in messages
            ],
        )

    # ------------------------------------------------------------------ entry point
    async def chat_in_conversation(
        self,
        db: Session,
        conversation_id: str,
        message: str,
        user_id: Optional[str] = None,
        page_context: Optional[Mapping[str, Any]] = None,
    ) -> ChatResponse:
        chat_session = self.sessions.get_session(db, conversation_id)
        if chat_session is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        if chat_session.user_id and chat_session.user_id != user_id:
            raise ConversationAccessError(f"Conversation {conversation_id} belongs to another user")

        with log_context.scope(session_id=conversation_id, user_id=user_id or "anonymous"):
            self.sessions.add_message(db, conversation_id, MessageRole.USER, message)
            if page_context:
                self.sessions.add_message(
                    db, conversation_id, MessageRole.SYSTEM, format_page_context(page_context)
                )

            try:
                response = await self._run_turn(db, chat_session, message, user_id, page_context)
            except (AccessDeniedError, SqlGenerationError, LLMProviderError) as e:
                logger.warning("Turn failed: %s", e)
                response = self._error_response(db, conversation_id, str(e))
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Database error during turn: %s", e)
                response = self._error_response(db, conversation_id, str(e))
            except Exception as e:
                db.rollback()
                logger.exception("Unexpected error during turn")
                response = self._error_response(db, conversation_id, str(e))

            await self._maintain_session(db, conversation_id)
            return response

    # ------------------------------------------------------------------ steps
    async def _run_turn(
        self,
        db: Session,
        chat_session: AiChatSession,
        message: str,
        user_id: Optional[str],
        page_context: Optional[Mapping[str, Any]],
    ) -> ChatResponse:
        session_id = chat_session.id
        view = self.load_session_view(db, chat_session)
        knowledge = self.knowledge_for(db)

        user_role = resolve_user_role(db, user_id).value
        with timeit("Orchestrate", logger=logger):
            decision = await OrchestratorAgent(self.provider, knowledge).process(
                message, view, user_id=user_id, user_role=user_role,
                page_context=dict(page_context) if page_context else None,
            )
        if not decision.ready_for_sql:
            return self._control_response(db, session_id, decision)

        question, modification_context = message, ""
        previous = view.last_assistant_metadata()
        if previous.get("sql"):
            with timeit("Expand question", logger=logger):
                question = await self.expander.expand_question(
                    message, previous["sql"], previous.get("canonical_question")
                )
            modification_context = build_modification_context(
                message, previous["sql"], previous.get("canonical_question")
            )

        canonical = await self._canonical_decision(knowledge, question)
        canonical_hint = (
            build_canonical_hint(canonical.mode, canonical.question, canonical.sql, canonical.score)
            if canonical.mode != "new"
            else ""
        )
        rag_text = modification_context + await self._rag_context(knowledge, question)

        sql_kwargs: Dict[str, Any] = dict(
            rag_context=rag_text,
            user_id=user_id,
            user_role=user_role,
            intent_action=decision.intent_action,
            canonical_hint=canonical_hint,
            tables_hint=decision.tables_hint,
        )
        with timeit("Generate SQL", logger=logger):
            sql_result = await self.sql_agent.process(question, view, db, **sql_kwargs)

        with timeit("Validate results", logger=logger):
            validation = await self.validator.validate(
                question, sql_result.sql, sql_result.results, original_query=message
            )
        if not validation.is_valid:
            logger.info("Regenerating SQL after validation failure: %s", validation.reason)
            with timeit("Regenerate SQL", logger=logger):
                sql_result = await self.sql_agent.process(
                    question, view, db,
                    last_error=validation.feedback, last_sql=sql_result.sql, **sql_kwargs,
                )
            with timeit("Validate results", logger=logger):
                validation = await self.validator.validate(
                    question, sql_result.sql, sql_result.results, original_query=message
                )
            if not validation.is_valid:
                return self._error_response(
                    db, session_id, "Failed to generate valid SQL: " + validation.feedback,
                    extra={"sql": sql_result.sql, "canonical_question": question},
                )

        desired_mode = resolve_desired_mode(message, decision.mode_hint)
        with timeit("Generate response", logger=logger):
            envelope = await self.responder.generate_final_response(
                decision.message, sql_result, view, desired_mode,
                chat_session.summary, query=question,
            )

        payload = envelope.payload.model_dump(mode="json") if envelope.payload else None
        self.sessions.add_message(
            db,
            session_id,
            MessageRole.ASSISTANT,
            envelope.message,
            {
                "kind": "DATA",
                "sql": sql_result.sql,
                "canonical_question": question,
                "payload": payload,
                "count": sql_result.count,
                "token_usage": envelope.meta.token_usage,
            },
        )

        if sql_result.count > 0:
            await self._save_interaction(knowledge, question, sql_result)

        return ChatResponse(
            kind="DATA",
            session_id=session_id,
            timestamp=_now_iso(),
            message=envelope.message,
            payload=envelope.payload,
            sql=sql_result.sql,
            results=sql_result.results,
            count=sql_result.count,
        )

    async def _canonical_decision(
        self, knowledge: Optional[KnowledgeService], question: str
    ) -> CanonicalDecision:
        if knowledge is None:
            return CanonicalDecision(mode="new")
        try:
            with timeit("Canonical lookup", logger=logger):
                decision = await knowledge.decide_canonical_reuse(question)
        except LLMProviderError as e:
            logger.warning("Canonical lookup skipped: %s", e)
            return CanonicalDecision(mode="new")
        except SQLAlchemyError as e:
            knowledge.session.rollback()
            logger.error("Canonical lookup failed: %s", e)
            return CanonicalDecision(mode="new")
        logger.info("Canonical decision mode=%s score=%.2f", decision.mode, decision.score)
        return decision

    async def _rag_context(self, knowledge: Optional[KnowledgeService], question: str) -> str:
        if knowledge is None:
            return ""
        try:
            with timeit("Retrieve context", logger=logger):
                context = await knowledge.build_rag_context(
                    question,
                    schema_limit=rag_config.schema_limit,
                    threshold=rag_config.schema_threshold,
                    include_business=True,
                    include_qa=True,
                    qa_limit=rag_config.qa_limit,
                )
        except LLMProviderError as e:
            logger.warning("RAG retrieval skipped: %s", e)
            return ""
        except SQLAlchemyError as e:
            knowledge.session.rollback()
            logger.error("RAG retrieval failed: %s", e)
            return ""
        return context.text

    async def _save_interaction(
        self, knowledge: Optional[KnowledgeService], question: str, sql_result: SqlGenerationResult
    ) -> None:
        if knowledge is None:
            return
        try:
            saved = await knowledge.save_qa_interaction(question, sql_result.sql)
        except LLMProviderError as e:
            logger.warning("Could not save QA interaction: %s", e)
            return
        except SQLAlchemyError as e:
            knowledge.session.rollback()
            logger.error("Could not save QA interaction: %s", e)
            return
        logger.debug("QA interaction chunk=%s sql_qa=%s reused=%s", saved.chunk_id, saved.sql_qa_id, saved.reused)

    # ------------------------------------------------------------------ responses
    def _control_response(
        self, db: Session, session_id: str, decision: OrchestratorResult
    ) -> ChatResponse:
        questions = clarification_questions(decision.missing_params)
        if decision.request_type in ("QUERY", "CLARIFICATION") and decision.missing_params:
            message = CLARIFY_PREFIX + decision.message
        else:
            message = decision.message
        self.sessions.add_message(
            db,
            session_id,
            MessageRole.ASSISTANT,
            message,
            {"kind": "CONTROL", "request_type": decision.request_type, "questions": questions},
        )
        return ChatResponse(
            kind="CONTROL",
            session_id=session_id,
            timestamp=_now_iso(),
            message=message,
            payload=ControlPayload(mode="CLARIFY", questions=questions),
        )

    def _error_response(
        self,
        db: Session,
        session_id: str,
        error: str,
        *,
        extra: Optional[Dict[str, Any]] = None,
    ) -> ChatResponse:
        message = ErrorHandler.generate_error_response(error)
        self.sessions.add_message(
            db,
            session_id,
            MessageRole.ASSISTANT,
            message,
            {"kind": "CONTROL", "error": error, **(extra or {})},
        )
        return ChatResponse(
            kind="CONTROL",
            session_id=session_id,
            timestamp=_now_iso(),
            message=message,
            payload=ControlPayload(mode="ERROR", details=error),
        )

    # ------------------------------------------------------------------ session upkeep
    async def _maintain_session(self, db: Session, session_id: str) -> None:
        """Title the conversation after its first exchange and fold old messages into the summary."""

        try:
            chat_session = self.sessions.get_session(db, session_id)
            if chat_session is None:
                return
            if chat_session.title == DEFAULT_SESSION_TITLE:
                await self._generate_title(db, chat_session)
            if chat_session.message_count > agent_config.max_messages_before_summary:
                await self._fold_summary(db, chat_session)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Session maintenance failed: %s", e)

    async def _generate_title(self, db: Session, chat_session: AiChatSession) -> None:
        messages = self.sessions.get_messages(db, chat_session.id, limit=10)
        first_user = next((m.content for m in messages if m.role == MessageRole.USER.value), None)
        first_ai = next((m.content for m in messages if m.role == MessageRole.ASSISTANT.value), None)
        if not first_user or not first_ai:
            return
        with timeit("Generate title", logger=logger):
            title = await self.summarizer.generate_title(first_user, first_ai)
        if title and title != DEFAULT_SESSION_TITLE:
            self.sessions.update_title(db, chat_session.id, title)

    async def _fold_summary(self, db: Session, chat_session: AiChatSession) -> None:
        old = self.sessions.get_old_messages(
            db,
            chat_session.id,
            keep_recent=agent_config.recent_messages_orchestrator,
            limit=agent_config.summary_batch,
        )
        if not old:
            return
        with timeit("Rolling summary", logger=logger, unit="messages", total=len(old)):
            summary = await self.summarizer.generate_rolling_summary(
                chat_session.summary,
                [{"role": m.role, "content": m.content} for m in old],
            )
        if summary and summary != (chat_session.summary or ""):
            self.sessions.update_summary(
                db, chat_session.id, summary, summarized_through=old[-1].sequence_number
            )


__all__ = [
    "ConversationAccessError",
    "ConversationNotFoundError",
    "Text2SqlPipeline",
    "clarification_questions",
    "format_page_context",
    "resolve_desired_mode",
]
