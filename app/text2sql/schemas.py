"""Pydantic models for structured answers and the conversation API."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

EntityType = Literal["room", "post", "room_seeking_post"]
ColumnType = Literal["string", "number", "date", "boolean", "url", "image"]
ResponseMode = Literal["LIST", "TABLE", "CHART", "INSIGHT"]


class ListItem(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    entity: Optional[EntityType] = None
    path: Optional[str] = None
    external_url: Optional[str] = None


class TableColumn(BaseModel):
    key: str
    label: str
    type: ColumnType = "string"


class TablePayload(BaseModel):
    columns: List[TableColumn]
    rows: List[Dict[str, Any]]
    preview_limit: Optional[int] = None


class ChartPayload(BaseModel):
    mime_type: str = "image/png"
    url: str
    width: int
    height: int
    alt: Optional[str] = None
    type: str = "bar"


class ListPayload(BaseModel):
    items: List[ListItem]
    total: int


class ResponsePayload(BaseModel):
    mode: ResponseMode
    list: Optional[ListPayload] = None
    table: Optional[TablePayload] = None
    chart: Optional[ChartPayload] = None


class EnvelopeMeta(BaseModel):
    session_id: Optional[str] = None
    token_usage: Dict[str, int] = Field(default_factory=dict)


class ChatEnvelope(BaseModel):
    message: str
    payload: Optional[ResponsePayload] = None
    meta: EnvelopeMeta = Field(default_factory=EnvelopeMeta)


class PageContext(BaseModel):
    """What the user is looking at in the web client (e.g. a room detail page)."""

    entity: Optional[str] = None
    identifier: Optional[str] = None
    type: Optional[str] = None


class CreateConversationRequest(BaseModel):
    title: Optional[str] = None
    initial_message: Optional[str] = None
    page_context: Optional[PageContext] = None


class SendMessageRequest(BaseModel):
    message: str = Field(..., min_length=1)
    page_context: Optional[PageContext] = None


class UpdateTitleRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)


class IngestRequest(BaseModel):
    schema_: bool = Field(True, alias="schema")
    business: bool = True
    narrative: bool = False

    model_config = {"populate_by_name": True}


class TeachRequest(BaseModel):
    question: str = Field(..., min_length=1)
    sql: str = Field(..., min_length=1)
    id: Optional[int] = None


class TeachBatchRequest(BaseModel):
    items: List[TeachRequest] = Field(default_factory=list)
    fail_fast: bool = False


class GoldenQaRequest(BaseModel):
    question: str = Field(..., min_length=1)
    sql: str = Field(..., min_length=1)


class ControlPayload(BaseModel):
    mode: Literal["CLARIFY", "ERROR"]
    questions: List[str] = Field(default_factory=list)
    details: Optional[str] = None


class ChatResponse(BaseModel):
    """One assistant turn: ``DATA`` carries query results, ``CONTROL`` asks or apologises."""

    kind: Literal["DATA", "CONTROL"]
    session_id: str
    timestamp: str
    message: str
    payload: Optional[Union[ResponsePayload, ControlPayload]] = None
    sql: Optional[str] = None
    results: Optional[List[Dict[str, Any]]] = None
    count: Optional[int] = None
