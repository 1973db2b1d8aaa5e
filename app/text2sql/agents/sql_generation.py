"""
SQL generation agent
Asks the LLM for a SELECT, checks it against the guard rails and executes it with retries
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..access import (
    AccessDeniedError,
    UserRole,
    classify_query,
    generate_user_where_clauses,
    sensitive_restrictions,
    validate_sql_security,
    validate_user_access,
)
from ..config import agent_config, sql_safety_config
from ..llm_providers import LLMProvider, LLMProviderError
from ..prompts import build_sql_prompt
from ..schema_provider import get_complete_database_schema
from ..session_view import SessionView
from ..sql_safety import is_aggregate_query, validate_sql_safety
from .base import LLMAgent

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:sql)?\s*([\s\S]*?)```", re.IGNORECASE)
_SQL_PREFIX = re.compile(r"^\s*SQL\s*:\s*", re.IGNORECASE)
_RAG_SCHEMA_MARKER = "RELEVANT SCHEMA CONTEXT"


class SqlGenerationError(RuntimeError):
    """Raised when no valid, executable SQL was produced within the attempt budget."""


@dataclass(slots=True)
class SqlGenerationResult:
    sql: str
    results: List[Dict[str, Any]] = field(default_factory=list)
    count: int = 0
    attempts: int = 1
    user_id: Optional[str] = None
    user_role: str = UserRole.GUEST.value


def clean_sql(content: str) -> str:
    """Strip markdown fences and a leading ``SQL:`` label; terminate with ``;``."""

    content = (content or "").strip()
    fenced = _FENCE.search(content)
    if fenced:
        content = fenced.group(1)
    content = _SQL_PREFIX.sub("", content).strip()
    if not content:
        return ""
    return content if content.endswith(";") else f"{content};"


def _convert_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def convert_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Make a result row JSON friendly (Decimal to float, temporal values to ISO strings)."""

    return {key: _convert_value(value) for key, value in row.items()}


class SqlGenerationAgent(LLMAgent):
    """Generates and executes read-only SQL"""

    stage = "sql_generation"

    def __init__(self, provider: LLMProvider, *, max_attempts: int = 5, retry_delay: float = 1.0):
        super().__init__(provider)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = max(0.0, retry_delay)

    def execute_sql(self, db: Session, sql: str) -> List[Dict[str, Any]]:
        """Run ``sql`` and return rows as dicts; the session is rolled back on failure."""

        try:
            result = db.execute(text(sql))
            rows = result.mappings().all()
        except SQLAlchemyError:
            db.rollback()
            raise
        return [convert_row(dict(row)) for row in rows]

    def _security_error(self, sql: str, user_id: Optional[str], intent_action: Optional[str]) -> Optional[str]:
        restrictions = sensitive_restrictions(sql)
        if not restrictions:
            return None
        if not user_id:
            return "Security violation: personal data tables require an authenticated user"
        if intent_action in ("own", "stats") and not validate_sql_security(sql, restrictions, user_id=user_id):
            return (
                "Security violation: sensitive tables must be filtered by the current user "
                f"({'; '.join(restrictions)})"
            )
        return None

    async def process(
        self,
        query: str,
        session_view: Optional[SessionView],
        db: Session,
        *,
        rag_context: str = "",
        user_id: Optional[str] = None,
        user_role: Optional[str] = None,
        intent_action: Optional[str] = None,
        canonical_hint: str = "",
        tables_hint: str = "",
        last_error: str = "",
        last_sql: str = "",
    ) -> SqlGenerationResult:
        query_type = classify_query(query)
        access = validate_user_access(db, user_id, query_type)
        if not access.has_access:
            reason = access.restrictions[0] if access.restrictions else "Access denied"
            if not reason.startswith("Authentication required"):
                reason = f"Security violation: {reason}"
            raise AccessDeniedError(reason)
        role = user_role or access.user_role.value

        schema = "" if _RAG_SCHEMA_MARKER in rag_context else get_complete_database_schema(db.get_bind())
        recent = session_view.history_text(agent_config.recent_messages_sql) if session_view else ""
        where_hint = generate_user_where_clauses(user_id, role, query) if user_id else ""

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1 and self.retry_delay:
                await asyncio.sleep(self.retry_delay)

            prompt = build_sql_prompt(
                query=query,
                schema=schema,
                rag_context=rag_context,
                recent_messages=recent,
                user_id=user_id,
                user_role=role,
                intent_action=intent_action,
                where_hint=where_hint,
                canonical_hint=canonical_hint,
                tables_hint=tables_hint,
                last_error=last_error,
                last_sql=last_sql,
                attempt=attempt,
                limit=sql_safety_config.default_limit,
            )
            try:
                content = await self._complete(
                    prompt,
                    temperature=agent_config.temperature_precise,
                    max_tokens=agent_config.max_tokens_sql,
                )
            except LLMProviderError as e:
                last_error = str(e)
                logger.warning("SQL attempt %d: LLM call failed: %s", attempt, e)
                continue

            sql = clean_sql(content)
            if not sql:
                last_error = "Model returned an empty SQL statement"
                continue

            safety = validate_sql_safety(sql, is_aggregate_query(sql))
            if not safety.is_valid:
                last_error, last_sql = "; ".join(safety.violations), sql
                logger.warning("SQL attempt %d rejected: %s", attempt, last_error)
                continue
            sql = safety.enforced_sql or sql

            security_error = self._security_error(sql, user_id, intent_action)
            if security_error:
                last_error, last_sql = security_error, sql
                logger.warning("SQL attempt %d rejected: %s", attempt, security_error)
                continue

            try:
                results = self.execute_sql(db, sql)
            except SQLAlchemyError as e:
                last_error = str(getattr(e, "orig", None) or e)
                last_sql = sql
                logger.warning("SQL attempt %d failed to execute: %s", attempt, last_error)
                continue

            logger.info("SQL generated on attempt %d (%d rows)", attempt, len(results))
            return SqlGenerationResult(
                sql=sql,
                results=results,
                count=len(results),
                attempts=attempt,
                user_id=user_id,
                user_role=role,
            )

        raise SqlGenerationError(
            f"Failed to generate valid SQL after {self.max_attempts} attempts. Last error: {last_error}"
        )
