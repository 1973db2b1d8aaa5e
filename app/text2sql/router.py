"""
FastAPI router for the AI assistant
Conversation endpoints, knowledge administration and health
"""
from __future__ import annotations

import csv
import io
import json
import logging
from datetime import date
from typing import Any, Callable, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.orm import Session

from app.core.security import AuthenticatedUser, ensure_admin
from app.services.chat_session_service import ChatSessionService, message_to_dict, session_to_dict

from .knowledge import KnowledgeService
from .llm_providers import LLMProviderError
from .pipeline import ConversationAccessError, ConversationNotFoundError, Text2SqlPipeline
from .schemas import (
    CreateConversationRequest,
    GoldenQaRequest,
    IngestRequest,
    SendMessageRequest,
    TeachBatchRequest,
    TeachRequest,
    UpdateTitleRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai", tags=["AI Assistant"])

# Dependency injection placeholders (configured by create_app)
_get_db_session: Optional[Callable] = None
_get_current_user: Optional[Callable] = None
_pipeline: Optional[Text2SqlPipeline] = None
_sessions = ChatSessionService()


def configure_dependencies(
    get_db: Callable,
    get_user: Callable,
    pipeline: Text2SqlPipeline,
) -> None:
    """
    Configure dependencies for the AI router

    Args:
        get_db: Generator dependency yielding a database session
        get_user: Callable taking the request and returning the caller or None
        pipeline: Shared conversation pipeline
    """
    global _get_db_session, _get_current_user, _pipeline, _sessions

    _get_db_session = get_db
    _get_current_user = get_user
    _pipeline = pipeline
    _sessions = pipeline.sessions


def get_db_session():
    if _get_db_session is None:
        raise RuntimeError("Database dependency not configured. Call configure_dependencies() first.")
    yield from _get_db_session()


def get_current_user(request: Request) -> Optional[AuthenticatedUser]:
    if _get_current_user is None:
        raise RuntimeError("User dependency not configured. Call configure_dependencies() first.")
    return _get_current_user(request)


def get_pipeline() -> Text2SqlPipeline:
    if _pipeline is None:
        raise RuntimeError("Pipeline not initialized. Call configure_dependencies() first.")
    return _pipeline


def get_admin_user(
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
) -> AuthenticatedUser:
    return ensure_admin(user)


def get_knowledge(db: Session = Depends(get_db_session)) -> KnowledgeService:
    knowledge = get_pipeline().knowledge_for(db)
    if knowledge is None:
        raise HTTPException(status_code=503, detail="Knowledge base is not configured")
    return knowledge


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def _user_id(user: Optional[AuthenticatedUser]) -> Optional[str]:
    return user.user_id if user else None


def _owned_session(db: Session, conversation_id: str, user: Optional[AuthenticatedUser]):
    chat_session = _sessions.get_session(db, conversation_id)
    if chat_session is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if chat_session.user_id and chat_session.user_id != _user_id(user):
        raise HTTPException(status_code=403, detail="Access denied to this conversation")
    return chat_session


async def _chat(
    db: Session,
    conversation_id: str,
    message: str,
    user: Optional[AuthenticatedUser],
    page_context: Optional[dict[str, Any]],
):
    try:
        return await get_pipeline().chat_in_conversation(
            db, conversation_id, message, user_id=_user_id(user), page_context=page_context
        )
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConversationAccessError as e:
        raise HTTPException(status_code=403, detail=str(e))


# ---------------------------------------------------------------- conversations
@router.get("/conversations")
async def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db_session),
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
):
    if user is None:
        return _ok([])
    return _ok([session_to_dict(s) for s in _sessions.list_user_sessions(db, user.user_id, limit)])


@router.post("/conversations")
async def create_conversation(
    payload: CreateConversationRequest,
    db: Session = Depends(get_db_session),
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
):
    _sessions.purge_expired_sessions(db, get_pipeline().settings.session_timeout_minutes)
    chat_session = _sessions.create_session(db, user_id=_user_id(user), title=payload.title)
    data: dict[str, Any] = {"conversation": session_to_dict(chat_session)}
    if payload.initial_message and payload.initial_message.strip():
        page_context = payload.page_context.model_dump() if payload.page_context else None
        response = await _chat(db, chat_session.id, payload.initial_message, user, page_context)
        data["response"] = response.model_dump(mode="json")
        data["conversation"] = session_to_dict(_sessions.get_session(db, chat_session.id))
    return _ok(data)


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    db: Session = Depends(get_db_session),
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
):
    return _ok(session_to_dict(_owned_session(db, conversation_id, user)))


@router.post("/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    payload: SendMessageRequest,
    db: Session = Depends(get_db_session),
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
):
    page_context = payload.page_context.model_dump() if payload.page_context else None
    response = await _chat(db, conversation_id, payload.message, user, page_context)
    return _ok(response.model_dump(mode="json"))


@router.get("/conversations/{conversation_id}/messages")
async def get_messages(
    conversation_id: str,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db_session),
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
):
    _owned_session(db, conversation_id, user)
    messages = _sessions.get_messages(db, conversation_id, limit)
    return _ok([message_to_dict(m) for m in messages])


@router.patch("/conversations/{conversation_id}/title")
async def update_title(
    conversation_id: str,
    payload: UpdateTitleRequest,
    db: Session = Depends(get_db_session),
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
):
    _owned_session(db, conversation_id, user)
    chat_session = _sessions.update_title(db, conversation_id, payload.title)
    return _ok(session_to_dict(chat_session))


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    db: Session = Depends(get_db_session),
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
):
    _owned_session(db, conversation_id, user)
    _sessions.delete_session(db, conversation_id)
    return _ok({"id": conversation_id, "deleted": True})


@router.post("/conversations/{conversation_id}/clear")
async def clear_conversation(
    conversation_id: str,
    db: Session = Depends(get_db_session),
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
):
    _owned_session(db, conversation_id, user)
    deleted = _sessions.clear_messages(db, conversation_id)
    return _ok({"id": conversation_id, "deleted_messages": deleted})


# ---------------------------------------------------------------- knowledge admin
@router.post("/knowledge/ingest")
async def ingest_knowledge(
    payload: IngestRequest,
    knowledge: KnowledgeService = Depends(get_knowledge),
    admin: AuthenticatedUser = Depends(get_admin_user),
):
    logger.info("Knowledge ingestion requested by %s", admin.user_id)
    result: dict[str, Any] = {}
    try:
        if payload.schema_:
            result["schema_chunks"] = len(await knowledge.ingest_database_schema())
        if payload.business:
            result["business_chunks"] = len(await knowledge.ingest_business_knowledge())
        if payload.narrative:
            result["narrative_chunks"] = len(await knowledge.ingest_business_narrative())
    except LLMProviderError as e:
        logger.error("Knowledge ingestion failed: %s", e)
        raise HTTPException(status_code=502, detail=str(e))
    return _ok(result)


@router.post("/knowledge/teach")
async def teach_knowledge(
    payload: TeachRequest,
    knowledge: KnowledgeService = Depends(get_knowledge),
    admin: AuthenticatedUser = Depends(get_admin_user),
):
    try:
        result = await knowledge.teach_or_update_knowledge(
            payload.question, payload.sql, sql_qa_id=payload.id
        )
    except LLMProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _ok(
        {"chunk_id": result.chunk_id, "sql_qa_id": result.sql_qa_id, "is_update": result.is_update}
    )


@router.delete("/knowledge/{kind}/{item_id}")
async def delete_knowledge(
    kind: str,
    item_id: int,
    knowledge: KnowledgeService = Depends(get_knowledge),
    admin: AuthenticatedUser = Depends(get_admin_user),
):
    try:
        return _ok(knowledge.delete_knowledge(kind, item_id))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/knowledge/canonical")
async def list_canonical(
    search: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    knowledge: KnowledgeService = Depends(get_knowledge),
    admin: AuthenticatedUser = Depends(get_admin_user),
):
    return _ok(knowledge.get_canonical_list(search=search, limit=limit, offset=offset))


@router.get("/knowledge/chunks")
async def list_chunks(
    search: Optional[str] = None,
    collection: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    knowledge: KnowledgeService = Depends(get_knowledge),
    admin: AuthenticatedUser = Depends(get_admin_user),
):
    try:
        chunks = knowledge.get_chunks_list(
            search=search, collection=collection, limit=limit, offset=offset
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _ok(chunks)


@router.get("/knowledge/canonical/{sql_qa_id}/chunk")
async def get_canonical_chunk(
    sql_qa_id: int,
    knowledge: KnowledgeService = Depends(get_knowledge),
    admin: AuthenticatedUser = Depends(get_admin_user),
):
    try:
        return _ok(knowledge.get_chunk_for_canonical(sql_qa_id))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/knowledge/chunk/{chunk_id}/canonical")
async def get_chunk_canonical(
    chunk_id: int,
    knowledge: KnowledgeService = Depends(get_knowledge),
    admin: AuthenticatedUser = Depends(get_admin_user),
):
    try:
        return _ok(knowledge.get_canonical_for_chunk(chunk_id))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/knowledge/teach-json")
async def teach_knowledge_batch(
    payload: TeachBatchRequest,
    knowledge: KnowledgeService = Depends(get_knowledge),
    admin: AuthenticatedUser = Depends(get_admin_user),
):
    logger.info("Batch teach of %d items requested by %s", len(payload.items), admin.user_id)
    result = await knowledge.teach_batch(
        [item.model_dump() for item in payload.items], fail_fast=payload.fail_fast
    )
    return _ok(result)


@router.post("/knowledge/confirm-golden-qa")
async def confirm_golden_qa(
    payload: GoldenQaRequest,
    knowledge: KnowledgeService = Depends(get_knowledge),
    admin: AuthenticatedUser = Depends(get_admin_user),
):
    try:
        saved = await knowledge.confirm_golden_qa(payload.question, payload.sql)
    except LLMProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return _ok(
        {
            "message": "Golden QA saved successfully",
            "chunk_id": saved.chunk_id,
            "sql_qa_id": saved.sql_qa_id,
        }
    )


@router.post("/knowledge/re-embed-schema")
async def re_embed_schema(
    knowledge: KnowledgeService = Depends(get_knowledge),
    admin: AuthenticatedUser = Depends(get_admin_user),
):
    logger.info("Schema re-embedding requested by %s", admin.user_id)
    try:
        report = await knowledge.re_embed_schema()
    except LLMProviderError as e:
        logger.error("Schema re-embedding failed: %s", e)
        raise HTTPException(status_code=502, detail=str(e))
    return _ok(
        {
            "inserted": len(report.schema_ids) + len(report.business_ids),
            "schema_chunks": len(report.schema_ids),
            "reference_data_chunks": len(report.business_ids),
        }
    )


def _golden_csv(rows: list[dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(
        buffer, fieldnames=["id", "question", "sql", "parameters", "created_at"], lineterminator="\n"
    )
    writer.writeheader()
    for row in rows:
        writer.writerow(
            {
                "id": row["id"],
                "question": row["question"],
                "sql": row["sql"],
                "parameters": json.dumps(row["parameters"] or {}, ensure_ascii=False),
                "created_at": row["created_at"].isoformat() if row["created_at"] else "",
            }
        )
    return "\ufeff" + buffer.getvalue()


@router.get("/knowledge/export-golden-data")
async def export_golden_data(
    export_format: Literal["json", "csv"] = Query("json", alias="format"),
    search: Optional[str] = None,
    limit: int = Query(1000, ge=1, le=10000),
    offset: int = Query(0, ge=0),
    knowledge: KnowledgeService = Depends(get_knowledge),
    admin: AuthenticatedUser = Depends(get_admin_user),
):
    exported = knowledge.export_golden_data(search=search, limit=limit, offset=offset)
    if export_format == "csv":
        filename = f"golden-data-{date.today().isoformat()}.csv"
        return Response(
            content=_golden_csv(exported["data"]),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return _ok({**exported, "format": "json"})


# ---------------------------------------------------------------- health
@router.get("/health")
async def health_check():
    return _ok(
        {
            "status": "healthy",
            "pipeline_initialized": _pipeline is not None,
            "knowledge_enabled": _pipeline is not None and _pipeline.embedder is not None,
            "dependencies_configured": all([_get_db_session is not None, _get_current_user is not None]),
        }
    )
