"""
Orchestrator agent
Labels the user role, classifies the request and decides whether SQL is needed
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config import agent_config, rag_config
from ..knowledge import KnowledgeService
from ..llm_providers import LLMProvider, LLMProviderError
from ..prompts import build_orchestrator_prompt
from ..session_view import SessionView
from .base import LLMAgent

logger = logging.getLogger(__name__)

DEFAULT_LOGIN_MESSAGE = (
    "Để xem thông tin dãy trọ/phòng/hóa đơn của bạn, vui lòng đăng nhập vào hệ thống nhé! 🔐"
)
DEFAULT_GREETING_MESSAGE = (
    "Xin chào! 👋 Tôi là AI Assistant của Trustay, rất vui được trò chuyện với bạn!\n\n"
    "Tôi có thể giúp bạn tìm hiểu về dữ liệu phòng trọ, thống kê doanh thu, thông tin người dùng "
    "và nhiều thứ khác.\n\nBạn muốn tìm hiểu điều gì? 😊"
)
DEFAULT_SEARCH_MESSAGE = "Tôi sẽ tìm kiếm thông tin cho bạn ngay! 🔍"
DEFAULT_CHAT_MESSAGE = "Mình có thể giúp gì cho bạn về phòng trọ, hóa đơn hay thống kê? 😊"

REQUEST_TYPES = ("QUERY", "GREETING", "CLARIFICATION", "GENERAL_CHAT")
MODE_HINTS = ("LIST", "TABLE", "CHART", "INSIGHT")

_TAGS = (
    "REQUEST_TYPE", "MODE_HINT", "ENTITY_HINT", "FILTERS_HINT", "TABLES_HINT",
    "RELATIONSHIPS_HINT", "INTENT_ACTION", "MISSING_PARAMS", "RESPONSE",
)
_NEXT_TAG = "|".join(_TAGS)
_REQUEST_TYPE = re.compile(r"REQUEST_TYPE:\s*(QUERY|GREETING|CLARIFICATION|GENERAL_CHAT)", re.IGNORECASE)
_MODE_HINT = re.compile(r"MODE_HINT:\s*(LIST|TABLE|CHART|INSIGHT)", re.IGNORECASE)
_ENTITY_HINT = re.compile(r"ENTITY_HINT:\s*(room_seeking_post|room|post|none)", re.IGNORECASE)
_INTENT_ACTION = re.compile(r"INTENT_ACTION:\s*(search|own|stats)", re.IGNORECASE)
_ROLE_TAG = re.compile(r"\[(LANDLORD|TENANT|GUEST)\]\s*", re.IGNORECASE)
_TAG_LINE = re.compile(rf"^\s*(?:{_NEXT_TAG}):.*$", re.MULTILINE)

_DATA_QUESTION = re.compile(
    r"tìm|phòng|giá|bao nhiêu|thống kê|danh sách|hóa đơn|hoá đơn|doanh thu|quận|tòa nhà|toà nhà|"
    r"dãy trọ|thanh toán|hợp đồng|\bshow\b|\blist\b|how many|\bcount\b|\brooms?\b|\bbills?\b",
    re.IGNORECASE,
)


@dataclass(slots=True)
class MissingParam:
    name: str
    reason: str
    examples: List[str] = field(default_factory=list)


@dataclass(slots=True)
class OrchestratorResult:
    request_type: str
    message: str
    user_role: str = "GUEST"
    ready_for_sql: bool = False
    mode_hint: str = "TABLE"
    entity_hint: Optional[str] = None
    filters_hint: str = ""
    tables_hint: str = ""
    relationships_hint: str = ""
    intent_action: Optional[str] = None
    missing_params: List[MissingParam] = field(default_factory=list)
    business_context: str = ""
    page_context: Optional[Dict[str, Any]] = None


def looks_like_data_question(query: str) -> bool:
    return bool(_DATA_QUESTION.search(query or ""))


def _free_text(content: str, tag: str) -> str:
    match = re.search(rf"{tag}:\s*(.*?)(?=\n\s*(?:{_NEXT_TAG}):|$)", content, re.DOTALL)
    if not match:
        return ""
    value = match.group(1).strip()
    return "" if value.lower() in ("none", "null", "[]") else value


def _hint(content: str, tag: str) -> str:
    value = _free_text(content, tag)
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1].strip()
    return "" if value.lower() in ("none", "null") else value


def parse_missing_params(raw: str) -> List[MissingParam]:
    """Parse ``name:reason:ex1,ex2|...``; ``none``/``null`` and role tags are skipped."""

    params: List[MissingParam] = []
    for entry in (raw or "").split("|"):
        entry = _ROLE_TAG.sub("", entry).strip()
        if not entry or entry.lower() in ("none", "null"):
            continue
        parts = [part.strip() for part in entry.split(":")]
        if not parts[0] or parts[0].lower() in ("none", "null"):
            continue
        examples = [ex.strip() for ex in parts[2].split(",") if ex.strip()] if len(parts) > 2 else []
        params.append(MissingParam(name=parts[0], reason=parts[1] if len(parts) > 1 else "", examples=examples))
    return params


def clean_message(text: str) -> str:
    """Drop role labels and any stray tag lines from the conversational reply."""

    text = _TAG_LINE.sub("", text or "")
    text = _ROLE_TAG.sub("", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


class OrchestratorAgent(LLMAgent):
    """Decides what to do with a user turn"""

    stage = "orchestrator"

    def __init__(self, provider: LLMProvider, knowledge: Optional[KnowledgeService] = None):
        super().__init__(provider)
        self.knowledge = knowledge

    async def _business_context(self, query: str) -> str:
        if self.knowledge is None:
            return ""
        try:
            hits = await self.knowledge.retrieve_business_context(
                query,
                limit=rag_config.business_limit_orchestrator,
                threshold=rag_config.orchestrator_business_threshold,
            )
        except LLMProviderError as e:
            logger.warning("Business context retrieval failed: %s", e)
            return ""
        return "\n".join(hit.content for hit in hits)

    async def process(
        self,
        query: str,
        session_view: SessionView,
        user_id: Optional[str] = None,
        user_role: str = "GUEST",
        page_context: Optional[Dict[str, Any]] = None,
    ) -> OrchestratorResult:
        page_context = page_context or session_view.page_context()
        business_context = await self._business_context(query)
        prompt = build_orchestrator_prompt(
            query=query,
            is_first_message=session_view.is_first_message,
            user_role=user_role,
            user_id=user_id,
            recent_messages=session_view.history_text(agent_config.recent_messages_orchestrator),
            business_context=business_context,
            page_context=page_context,
        )

        try:
            content = await self._complete(
                prompt,
                temperature=agent_config.temperature_complex,
                max_tokens=agent_config.max_tokens_orchestration,
            )
        except LLMProviderError as e:
            logger.error("Orchestrator LLM call failed: %s", e)
            return self._fallback(query, user_role, business_context, page_context)

        result = self.parse(content, user_role=user_role, user_id=user_id)
        result.business_context = business_context
        result.page_context = page_context
        logger.info(
            "Orchestrator decision type=%s mode=%s intent=%s ready=%s",
            result.request_type, result.mode_hint, result.intent_action, result.ready_for_sql,
        )
        return result

    def parse(self, content: str, *, user_role: str = "GUEST", user_id: Optional[str] = None) -> OrchestratorResult:
        request_match = _REQUEST_TYPE.search(content)
        request_type = request_match.group(1).upper() if request_match else "GENERAL_CHAT"
        mode_match = _MODE_HINT.search(content)
        entity_match = _ENTITY_HINT.search(content)
        intent_match = _INTENT_ACTION.search(content)

        entity = entity_match.group(1).lower() if entity_match else None
        response_text = _free_text(content, "RESPONSE")
        if not response_text and not request_match:
            response_text = content
        message = clean_message(response_text)
        missing = parse_missing_params(_hint(content, "MISSING_PARAMS"))
        intent_action = intent_match.group(1).lower() if intent_match else None

        if intent_action == "own" and not user_id:
            request_type = "CLARIFICATION"
            message = DEFAULT_LOGIN_MESSAGE
        if not message:
            message = {
                "GREETING": DEFAULT_GREETING_MESSAGE,
                "QUERY": DEFAULT_SEARCH_MESSAGE,
            }.get(request_type, DEFAULT_CHAT_MESSAGE)

        return OrchestratorResult(
            request_type=request_type,
            message=message,
            user_role=user_role,
            ready_for_sql=request_type == "QUERY" and not missing,
            mode_hint=mode_match.group(1).upper() if mode_match else "TABLE",
            entity_hint=None if entity in (None, "none") else entity,
            filters_hint=_hint(content, "FILTERS_HINT"),
            tables_hint=_hint(content, "TABLES_HINT"),
            relationships_hint=_hint(content, "RELATIONSHIPS_HINT"),
            intent_action=intent_action,
            missing_params=missing,
        )

    @staticmethod
    def _fallback(
        query: str, user_role: str, business_context: str, page_context: Optional[Dict[str, Any]]
    ) -> OrchestratorResult:
        if looks_like_data_question(query):
            return OrchestratorResult(
                request_type="QUERY",
                message=DEFAULT_SEARCH_MESSAGE,
                user_role=user_role,
                ready_for_sql=True,
                business_context=business_context,
                page_context=page_context,
            )
        return OrchestratorResult(
            request_type="GENERAL_CHAT",
            message=DEFAULT_CHAT_MESSAGE,
            user_role=user_role,
            business_context=business_context,
            page_context=page_context,
        )
