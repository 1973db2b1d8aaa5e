"""Knowledge ingestion, canonical SQL reuse and RAG context assembly."""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.logger import get_logger, timeit
from app.models.knowledge import ChunkCollection

from .business_context import BUSINESS_CONTEXT
from .config import rag_config
from .llm_providers import LLMProviderError
from .schema_provider import get_complete_database_schema
from .vector_store import ChunkInput, VectorSearchResult, VectorStore

LOGGER = get_logger(__name__)

_PUNCTUATION = re.compile(r"[.,!?;:]+")
_WHITESPACE = re.compile(r"\s+")
_DISTRICT_LITERAL = re.compile(
    r"(district_name\s+(?:ILIKE|LIKE)\s+)(['\"])%([^%]+)%\2", re.IGNORECASE
)
_BUSINESS_HEADING = re.compile(r"\n(?=CHƯƠNG\s+\d+|\d+\.[^\n]+)")
GOLDEN_EXPORT_MAX = 10000


def normalize_question(value: str | None) -> str:
    """Lowercase, NFC-normalise, drop ``.,!?;:`` and collapse whitespace."""

    lowered = unicodedata.normalize("NFC", (value or "").lower())
    return _WHITESPACE.sub(" ", _PUNCTUATION.sub(" ", lowered)).strip()


def build_sql_template(sql: str) -> tuple[str, dict[str, Any]]:
    """Replace a ``district_name (I)LIKE '%x%'`` literal with ``:district``."""

    parameters: dict[str, Any] = {}
    match = _DISTRICT_LITERAL.search(sql)
    if not match:
        return sql, parameters
    parameters["district"] = match.group(3).strip()
    return _DISTRICT_LITERAL.sub(lambda m: f"{m.group(1)}:district", sql, count=1), parameters


def split_by_lines(document: str, max_lines: int) -> list[str]:
    lines = document.split("\n")
    chunks = ["\n".join(lines[i:i + max_lines]) for i in range(0, len(lines), max_lines)]
    return [chunk for chunk in chunks if chunk.strip()]


def split_business_sections(document: str) -> list[str]:
    normalized = (document or "").replace("\r\n", "\n").strip()
    return [section.strip() for section in _BUSINESS_HEADING.split(normalized) if section.strip()]


@dataclass(slots=True)
class CanonicalDecision:
    mode: Literal["reuse", "hint", "new"]
    sql: str | None = None
    question: str | None = None
    score: float = 0.0
    chunk_id: int | None = None
    sql_qa_id: int | None = None
    reuse_preferred: bool = False


@dataclass(slots=True)
class RagContext:
    schema_block: str = ""
    business_block: str = ""
    qa_block: str = ""
    schema_count: int = 0
    business_count: int = 0
    qa_count: int = 0

    @property
    def text(self) -> str:
        return f"{self.schema_block}{self.business_block}{self.qa_block}"


@dataclass(slots=True)
class QaSaveResult:
    chunk_id: int
    sql_qa_id: int
    reused: bool = False


@dataclass(slots=True)
class TeachResult:
    chunk_id: int
    sql_qa_id: int
    is_update: bool


@dataclass(slots=True)
class IngestionReport:
    schema_ids: list[int] = field(default_factory=list)
    business_ids: list[int] = field(default_factory=list)
    narrative_ids: list[int] = field(default_factory=list)


class KnowledgeService:
    """Self-learning knowledge base backed by :class:`VectorStore`."""

    def __init__(self, store: VectorStore) -> None:
        self.store = store

    @property
    def session(self):
        return self.store.session

    # ---------------------------------------------------------------- ingestion
    async def ingest_database_schema(self) -> list[int]:
        deleted = self.store.delete_chunks_by_collection(ChunkCollection.SCHEMA)
        LOGGER.info("Cleared %d schema chunks before ingestion", deleted)
        schema = get_complete_database_schema(self.session.get_bind())
        chunks = split_by_lines(schema, rag_config.schema_chunk_lines)
        with timeit("Schema ingestion", logger=LOGGER, unit="chunks", total=len(chunks)):
            return await self.store.add_chunks(
                [ChunkInput(content, ChunkCollection.SCHEMA) for content in chunks]
            )

    def _fetch_reference_rows(self, sql: str) -> list[dict[str, Any]]:
        try:
            return [dict(row) for row in self.session.execute(text(sql)).mappings()]
        except SQLAlchemyError as exc:
            self.session.rollback()
            LOGGER.warning("Reference table query failed: %s", exc)
            return []

    def build_business_knowledge_text(
        self,
        amenities: list[dict[str, Any]],
        cost_types: list[dict[str, Any]],
        room_rules: list[dict[str, Any]],
    ) -> str:
        def _value(raw: Any) -> str:
            return str(raw).strip() if raw is not None and str(raw).strip() else "-"

        sections = [
            ["# Business: Amenities"]
            + [
                f"Amenity | id={a['id']} | key={a['name_en']} | name={a['name']} | "
                f"category={a['category']} | description={_value(a.get('description'))}"
                for a in amenities
            ],
            ["# Business: Cost Types"]
            + [
                f"CostType | id={c['id']} | key={c['name_en']} | name={c['name']} | "
                f"category={c['category']} | unit={_value(c.get('default_unit'))} | "
                f"description={_value(c.get('description'))}"
                for c in cost_types
            ],
            ["# Business: Room Rules"]
            + [
                f"RoomRule | id={r['id']} | key={r['name_en']} | name={r['name']} | "
                f"category={r['category']} | type={r['rule_type']} | "
                f"description={_value(r.get('description'))}"
                for r in room_rules
            ],
        ]
        return "\n\n".join("\n".join(section) for section in sections)

    async def ingest_business_knowledge(self) -> list[int]:
        amenities = self._fetch_reference_rows(
            "SELECT id, name, name_en, category, description FROM amenities "
            "WHERE is_active = true ORDER BY sort_order, name_en"
        )
        cost_types = self._fetch_reference_rows(
            "SELECT id, name, name_en, category, default_unit, description FROM cost_type_templates "
            "WHERE is_active = true ORDER BY sort_order, name_en"
        )
        room_rules = self._fetch_reference_rows(
            "SELECT id, name, name_en, category, rule_type, description FROM room_rule_templates "
            "WHERE is_active = true ORDER BY sort_order, name_en"
        )
        document = self.build_business_knowledge_text(amenities, cost_types, room_rules)
        chunks = split_by_lines(document, rag_config.schema_chunk_lines)
        deleted = self.store.delete_chunks_by_collection(ChunkCollection.BUSINESS)
        LOGGER.info("Cleared %d business chunks before ingestion", deleted)
        return await self.store.add_chunks(
            [ChunkInput(content, ChunkCollection.BUSINESS) for content in chunks]
        )

    async def ingest_business_narrative(self, document: str = BUSINESS_CONTEXT) -> list[int]:
        """Store the narrative under ``docs`` so reference-data refreshes leave it alone."""

        sections = split_business_sections(document)
        deleted = self.store.delete_chunks_by_collection(ChunkCollection.DOCS)
        LOGGER.info("Cleared %d narrative chunks before ingestion", deleted)
        return await self.store.add_chunks(
            [ChunkInput(content, ChunkCollection.DOCS) for content in sections]
        )

    async def ingest_all_knowledge(self) -> IngestionReport:
        return IngestionReport(
            schema_ids=await self.ingest_database_schema(),
            business_ids=await self.ingest_business_knowledge(),
            narrative_ids=await self.ingest_business_narrative(),
        )

    # ---------------------------------------------------------------- canonical SQL
    def _find_exact(self, question: str):
        normalized = normalize_question(question)
        for entry in self.store.search_sql_qa(normalized, limit=5):
            if normalize_question(entry.question) == normalized:
                return entry
        return None

    def _entry_for_chunk(self, hit: VectorSearchResult):
        if hit.sql_qa_id is not None:
            entry = self.store.get_sql_qa(hit.sql_qa_id)
            if entry is not None:
                return entry
        matches = self.store.search_sql_qa(hit.content.strip(), limit=1)
        return matches[0] if matches else None

    async def decide_canonical_reuse(
        self,
        question: str,
        *,
        hard: float = rag_config.canonical_hard_threshold,
        soft: float = rag_config.canonical_soft_threshold,
    ) -> CanonicalDecision:
        """Classify the best stored answer as ``reuse``, ``hint`` or ``new``.

        The returned SQL is only ever offered to the generator as a reference;
        the pipeline always regenerates SQL against the current schema.
        """

        exact = self._find_exact(question)
        if exact is not None and exact.sql_canonical:
            return CanonicalDecision(
                mode="reuse",
                sql=exact.sql_canonical,
                question=exact.question,
                score=1.0,
                chunk_id=None,
                sql_qa_id=exact.id,
                reuse_preferred=True,
            )

        hits = await self.store.similarity_search(
            normalize_question(question), ChunkCollection.QA, limit=1
        )
        if not hits:
            return CanonicalDecision(mode="new")
        top = hits[0]
        entry = self._entry_for_chunk(top)
        if entry is None or not entry.sql_canonical:
            return CanonicalDecision(mode="new")

        if top.score >= hard:
            mode = "reuse"
        elif top.score >= soft:
            mode = "hint"
        else:
            return CanonicalDecision(mode="new", score=top.score)
        return CanonicalDecision(
            mode=mode,
            sql=entry.sql_canonical,
            question=entry.question,
            score=top.score,
            chunk_id=top.id,
            sql_qa_id=entry.id,
            reuse_preferred=mode == "reuse" and top.score >= rag_config.canonical_prefer_threshold,
        )

    async def save_qa_interaction(self, question: str, sql: str | None = None) -> QaSaveResult:
        """Store a successful question/SQL pair unless an equivalent one exists."""

        exact = self._find_exact(question)
        if exact is not None:
            LOGGER.debug("Reusing existing QA (exact) %s", exact.id)
            return QaSaveResult(
                chunk_id=self.store.find_chunk_by_sql_qa_id(exact.id) or 0,
                sql_qa_id=exact.id,
                reused=True,
            )

        hits = await self.store.similarity_search(
            normalize_question(question), ChunkCollection.QA, limit=1
        )
        if hits and hits[0].score >= rag_config.qa_save_reuse_threshold:
            top = hits[0]
            if not sql:
                return QaSaveResult(chunk_id=top.id, sql_qa_id=top.sql_qa_id or 0, reused=True)
            entry = self._entry_for_chunk(top)
            if entry is not None and entry.sql_canonical == sql:
                LOGGER.debug("Skipping QA insert, near duplicate %s (score=%.2f)", top.id, top.score)
                return QaSaveResult(chunk_id=top.id, sql_qa_id=entry.id, reused=True)
            LOGGER.debug("Similar question (score=%.2f) with different SQL, saving new QA", top.score)

        sql_qa_id: int | None = None
        if sql:
            template, parameters = build_sql_template(sql)
            sql_qa_id = self.store.save_sql_qa(
                question, sql, sql_template=template, parameters=parameters
            )
        chunk_id = await self.store.add_chunk(question, ChunkCollection.QA, sql_qa_id=sql_qa_id)
        LOGGER.info("Saved QA interaction", extra={"chunk_id": chunk_id, "sql_qa_id": sql_qa_id})
        return QaSaveResult(chunk_id=chunk_id, sql_qa_id=sql_qa_id or 0)

    # ---------------------------------------------------------------- retrieval
    async def retrieve_schema_context(
        self, query: str, *, limit: int = 5, threshold: float = rag_config.default_threshold
    ) -> list[VectorSearchResult]:
        return await self.store.similarity_search(
            query, ChunkCollection.SCHEMA, limit=limit, threshold=threshold
        )

    async def retrieve_business_context(
        self, query: str, *, limit: int = 5, threshold: float = rag_config.default_threshold
    ) -> list[VectorSearchResult]:
        hits = []
        for collection in (ChunkCollection.BUSINESS, ChunkCollection.DOCS):
            hits.extend(
                await self.store.similarity_search(
                    query, collection, limit=limit, threshold=threshold
                )
            )
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]

    async def retrieve_knowledge_context(
        self, query: str, *, limit: int = 5, threshold: float = rag_config.default_threshold
    ) -> list[VectorSearchResult]:
        return await self.store.similarity_search(
            query, ChunkCollection.QA, limit=limit, threshold=threshold
        )

    async def build_rag_context(
        self,
        query: str,
        *,
        schema_limit: int = rag_config.schema_limit,
        threshold: float = rag_config.schema_threshold,
        include_business: bool = True,
        include_qa: bool = True,
        qa_limit: int = rag_config.qa_limit,
        business_limit: int = rag_config.business_limit,
    ) -> RagContext:
        context = RagContext()
        schema = await self.retrieve_schema_context(query, limit=schema_limit, threshold=threshold)
        if schema:
            context.schema_block = (
                "RELEVANT SCHEMA CONTEXT (from vector search):\n"
                + "\n".join(hit.content for hit in schema)
                + "\n"
            )
            context.schema_count = len(schema)

        if include_business:
            business = await self.retrieve_business_context(
                query, limit=business_limit, threshold=rag_config.business_threshold
            )
            if business:
                context.business_block = (
                    "RELEVANT BUSINESS CONTEXT:\n" + "\n".join(hit.content for hit in business) + "\n"
                )
                context.business_count = len(business)

        if include_qa:
            examples = await self.retrieve_knowledge_context(
                query, limit=qa_limit, threshold=rag_config.qa_threshold
            )
            if examples:
                lines = []
                for hit in examples[:qa_limit]:
                    entry = self._entry_for_chunk(hit)
                    if entry is not None and entry.sql_canonical:
                        lines.append(f"Q: {hit.content}\nSQL: {entry.sql_canonical}")
                    else:
                        lines.append(f"Q: {hit.content}")
                context.qa_block = "RELEVANT Q&A EXAMPLES:\n" + "\n".join(lines) + "\n"
                context.qa_count = len(lines)

        LOGGER.debug(
            "RAG context built",
            extra={
                "schema": context.schema_count,
                "business": context.business_count,
                "qa": context.qa_count,
            },
        )
        return context

    # ---------------------------------------------------------------- admin
    async def teach_or_update_knowledge(
        self, question: str, sql: str, *, sql_qa_id: int | None = None
    ) -> TeachResult:
        if sql_qa_id is None:
            saved = await self.save_qa_interaction(question, sql)
            return TeachResult(chunk_id=saved.chunk_id, sql_qa_id=saved.sql_qa_id, is_update=False)

        template, parameters = build_sql_template(sql)
        self.store.update_sql_qa(
            sql_qa_id,
            question=question,
            sql_canonical=sql,
            sql_template=" ".join(template.split()),
            parameters=parameters or None,
        )
        chunk_id = self.store.find_chunk_by_sql_qa_id(sql_qa_id)
        if chunk_id is not None:
            await self.store.update_chunk(chunk_id, question)
        else:
            chunk_id = await self.store.add_chunk(question, ChunkCollection.QA, sql_qa_id=sql_qa_id)
        return TeachResult(chunk_id=chunk_id, sql_qa_id=sql_qa_id, is_update=True)

    def delete_knowledge(self, kind: str, item_id: int) -> dict[str, Any]:
        """Delete a chunk (its sql_qa survives) or a sql_qa (its chunks go with it)."""

        if kind == "chunk":
            linked = self.store.find_sql_qa_id_by_chunk_id(item_id)
            deleted = self.store.delete_chunks([item_id])
            if linked:
                message = f"Deleted chunk {item_id}. Linked SQL QA {linked} was kept."
            else:
                message = f"Deleted chunk {item_id}."
            LOGGER.info(message)
            return {"success": deleted > 0, "deleted_chunks": deleted, "message": message}
        if kind == "sql_qa":
            counts = self.store.delete_sql_qa(item_id)
            message = f"Deleted SQL QA {item_id} and {counts['deleted_chunks']} linked chunks."
            LOGGER.info(message)
            return {"success": counts["deleted_sql_qa"] > 0, **counts, "message": message}
        raise ValueError(f"Invalid delete type: {kind}")

    def get_chunk_for_canonical(self, sql_qa_id: int) -> dict[str, Any]:
        if self.store.get_sql_qa(sql_qa_id) is None:
            raise LookupError(f"SQL QA {sql_qa_id} not found")
        return {"sql_qa_id": sql_qa_id, "chunk_id": self.store.find_chunk_by_sql_qa_id(sql_qa_id)}

    def get_canonical_for_chunk(self, chunk_id: int) -> dict[str, Any]:
        if self.store.get_chunk(chunk_id) is None:
            raise LookupError(f"Chunk {chunk_id} not found")
        return {"chunk_id": chunk_id, "sql_qa_id": self.store.find_sql_qa_id_by_chunk_id(chunk_id)}

    async def teach_batch(
        self, items: Sequence[Mapping[str, Any]], *, fail_fast: bool = False
    ) -> dict[str, Any]:
        """Teach each ``{question, sql, id?}`` item in order, collecting per-item errors.

        With ``fail_fast`` the first failure stops the batch and ``success`` is false.
        """

        results: list[dict[str, Any]] = []
        for item in items:
            question = item["question"]
            try:
                taught = await self.teach_or_update_knowledge(
                    question, item["sql"], sql_qa_id=item.get("id")
                )
            except (LookupError, LLMProviderError, SQLAlchemyError) as e:
                if isinstance(e, SQLAlchemyError):
                    self.session.rollback()
                LOGGER.warning("Teaching %r failed: %s", question, e)
                results.append({"question": question, "error": str(e)})
                if fail_fast:
                    return {
                        "success": False,
                        "message": "Stopped due to error (fail_fast=true)",
                        "count": len(results),
                        "items": results,
                    }
                continue
            results.append(
                {
                    "question": question,
                    "sql_qa_id": taught.sql_qa_id,
                    "chunk_id": taught.chunk_id,
                    "is_update": taught.is_update,
                }
            )
        return {"success": True, "count": len(results), "items": results}

    async def confirm_golden_qa(self, question: str, sql: str) -> QaSaveResult:
        return await self.save_qa_interaction(question, sql)

    async def re_embed_schema(self) -> IngestionReport:
        """Refresh schema and reference-data chunks; the narrative is left as is."""

        with timeit("Re-embed schema", logger=LOGGER):
            return IngestionReport(
                schema_ids=await self.ingest_database_schema(),
                business_ids=await self.ingest_business_knowledge(),
            )

    def export_golden_data(
        self, *, search: str | None = None, limit: int = 1000, offset: int = 0
    ) -> dict[str, Any]:
        listing = self.store.get_canonical_list(
            search=search, limit=min(limit, GOLDEN_EXPORT_MAX), offset=offset
        )
        data = [
            {
                "id": item["id"],
                "question": item["question"],
                "sql": item["sql_canonical"],
                "sql_template": item["sql_template"],
                "parameters": item["parameters"],
                "created_at": item["created_at"],
                "updated_at": item["updated_at"],
            }
            for item in listing["items"]
        ]
        return {"total": listing["total"], "exported": len(data), "data": data}

    def get_canonical_list(self, *, search: str | None = None, limit: int = 20, offset: int = 0):
        return self.store.get_canonical_list(search=search, limit=limit, offset=offset)

    def get_chunks_list(
        self,
        *,
        search: str | None = None,
        collection: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ):
        return self.store.get_chunks_list(
            search=search, collection=collection, limit=limit, offset=offset
        )


__all__ = [
    "CanonicalDecision",
    "IngestionReport",
    "KnowledgeService",
    "QaSaveResult",
    "RagContext",
    "TeachResult",
    "build_sql_template",
    "normalize_question",
    "split_business_sections",
    "split_by_lines",
]
