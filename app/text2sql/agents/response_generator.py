"""
Response generator
Builds the structured LIST/TABLE/CHART payload and asks the LLM for the message around it
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..chart_generator import ChartGenerator, chart_generator as default_chart_generator
from ..config import agent_config, response_config
from ..data_utils import (
    ENTITY_ROUTE_MAP,
    build_entity_path,
    has_column_mapping,
    infer_columns,
    is_list_like,
    normalize_rows,
    select_important_columns,
    to_list_items,
)
from ..llm_providers import LLMProvider, LLMProviderError
from ..prompts import (
    build_column_labels_prompt,
    build_final_message_prompt,
    build_insight_prompt,
    format_history,
    no_results_message,
    success_message,
)
from ..response_parser import extract_json_object, parse_response
from ..schemas import (
    ChartPayload,
    ChatEnvelope,
    EnvelopeMeta,
    ListPayload,
    ResponsePayload,
    TableColumn,
    TablePayload,
)
from ..session_view import SessionView
from .base import LLMAgent
from .sql_generation import SqlGenerationResult

logger = logging.getLogger(__name__)

INSIGHT_FALLBACK_MESSAGE = "Đã có thông tin phòng nhưng không thể tạo insight chi tiết."


def _merge_usage(total: Dict[str, int], usage: Dict[str, int]) -> None:
    for key, value in usage.items():
        total[key] = total.get(key, 0) + int(value or 0)


class ResponseGenerator(LLMAgent):
    """Turns SQL results into the chat envelope shown to the user"""

    stage = "response_generation"

    def __init__(self, provider: LLMProvider, chart_generator: Optional[ChartGenerator] = None):
        super().__init__(provider)
        self.chart_generator = chart_generator or default_chart_generator

    async def translate_column_labels(self, columns: List[TableColumn]) -> List[TableColumn]:
        """Ask the LLM for Vietnamese labels of columns missing from the static mapping."""

        pending = [column.key for column in columns if not has_column_mapping(column.key)]
        if not pending:
            return columns
        try:
            content = await self._complete(
                build_column_labels_prompt(pending),
                stage="column_labels",
                temperature=agent_config.temperature_standard,
                max_tokens=agent_config.max_tokens_column_labels,
                json_mode=True,
            )
        except LLMProviderError as e:
            logger.warning("Column label translation failed, keeping raw labels: %s", e)
            return columns

        translations = extract_json_object(content) or {}
        return [
            column.model_copy(update={"label": str(translations[column.key])})
            if translations.get(column.key)
            else column
            for column in columns
        ]

    async def build_payload(
        self,
        rows: Sequence[Dict[str, Any]],
        desired_mode: Optional[str] = None,
        query: Optional[str] = None,
    ) -> Optional[ResponsePayload]:
        if not rows or not isinstance(rows[0], dict):
            return None

        if desired_mode == "LIST" or is_list_like(rows):
            items = to_list_items(rows)[: response_config.list_items_limit]
            return ResponsePayload(mode="LIST", list=ListPayload(items=items, total=len(rows)))

        if desired_mode == "CHART":
            chart = self.chart_generator.try_build_chart(rows, query=query)
            if chart is not None:
                return ResponsePayload(
                    mode="CHART",
                    chart=ChartPayload(
                        mime_type=response_config.chart_mime_type,
                        url=chart.url,
                        width=chart.width,
                        height=chart.height,
                        alt=response_config.chart_alt_text,
                        type=chart.type,
                    ),
                )
            logger.info("Chart requested but data is not chartable, falling back to table")

        columns = select_important_columns(infer_columns(rows), rows)
        columns = await self.translate_column_labels(columns)
        table_rows = normalize_rows(rows[: response_config.table_rows_limit], columns)
        for source, row in zip(rows, table_rows):
            entity, identifier = source.get("entity"), source.get("id")
            if entity in ENTITY_ROUTE_MAP and identifier not in (None, ""):
                row["path"] = build_entity_path(entity, str(identifier))
        return ResponsePayload(
            mode="TABLE",
            table=TablePayload(
                columns=columns, rows=table_rows, preview_limit=response_config.preview_limit
            ),
        )

    async def generate_final_response(
        self,
        conversational_message: str,
        sql_result: SqlGenerationResult,
        session_view: SessionView,
        desired_mode: Optional[str] = None,
        session_summary: Optional[str] = None,
        *,
        query: Optional[str] = None,
    ) -> ChatEnvelope:
        recent = format_history(session_view.recent(agent_config.recent_messages_response))
        meta = EnvelopeMeta(session_id=session_view.session_id)
        rows = sql_result.results

        if desired_mode == "INSIGHT":
            prompt = build_insight_prompt(
                conversational_message=conversational_message,
                data=json.dumps(rows, ensure_ascii=False, default=str),
                recent_messages=recent,
            )
            try:
                message = await self._complete(
                    prompt,
                    stage="response_insight",
                    temperature=agent_config.temperature_standard,
                    max_tokens=agent_config.max_tokens_response_insight,
                )
                meta.token_usage = dict(self.last_usage)
            except LLMProviderError as e:
                logger.warning("Insight generation failed, using fallback: %s", e)
                message = no_results_message() if sql_result.count == 0 else INSIGHT_FALLBACK_MESSAGE
            return ChatEnvelope(message=message, payload=ResponsePayload(mode="INSIGHT"), meta=meta)

        usage: Dict[str, int] = {}
        self.last_usage = {}
        payload = await self.build_payload(rows, desired_mode, query)
        _merge_usage(usage, self.last_usage)

        structured = None
        if payload is not None:
            structured = {
                "list": payload.list.items if payload.list else None,
                "table": payload.table,
                "chart": payload.chart,
            }
        prompt = build_final_message_prompt(
            conversational_message=conversational_message,
            count=sql_result.count,
            data_preview=json.dumps(rows, ensure_ascii=False, default=str)[: agent_config.preview_data_final],
            recent_messages=recent,
            session_summary=session_summary or "",
            structured=structured,
        )
        try:
            content = await self._complete(
                prompt,
                stage="response_final",
                temperature=agent_config.temperature_standard,
                max_tokens=agent_config.max_tokens_response_final,
            )
            _merge_usage(usage, self.last_usage)
            message = parse_response(content).message
        except LLMProviderError as e:
            logger.warning("Final response generation failed, using fallback: %s", e)
            message = ""

        if not message:
            message = no_results_message() if sql_result.count == 0 else success_message(sql_result.count)
        meta.token_usage = usage
        return ChatEnvelope(message=message, payload=payload, meta=meta)

